import logging
from contextlib import asynccontextmanager

import sentry_sdk
from fastapi import FastAPI, Request, status
from fastapi.routing import APIRoute
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.cors import CORSMiddleware
from sqlmodel import Session

from ridedispatch.api.main import api_router
from ridedispatch.core.config import settings
from ridedispatch.core.db import engine, init_db
from ridedispatch.services.debounce import TriggerDebouncer
from ridedispatch.services.eta import EtaCalculator
from ridedispatch.services.events import EventPublisher
from ridedispatch.services.optimization import OptimizationService
from ridedispatch.services.osrm_service import OsrmService

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


def custom_generate_unique_id(route: APIRoute) -> str:
    return f"{route.tags[0]}-{route.name}"


def format_validation_error(error: RequestValidationError) -> dict:
    """Flatten request validation errors into "<where>.<field>: <problem>" messages"""
    messages = []
    for err in error.errors():
        # ("body", "pickup_lat") -> "pickup_lat", ("header", "x-tenant-id") -> "header.x-tenant-id"
        location = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        kind = err.get("type", "")
        if kind == "missing":
            problem = "required"
        elif kind.startswith("uuid"):
            problem = "not a valid UUID"
        elif kind == "enum":
            problem = f"must be one of {err.get('ctx', {}).get('expected', 'the allowed values')}"
        else:
            problem = err.get("msg", "invalid")
        messages.append(f"{location}: {problem}")

    return {
        "detail": "; ".join(messages) or "Invalid request",
        "errors": messages,
    }


if settings.SENTRY_DSN and settings.ENVIRONMENT != "local":
    sentry_sdk.init(dsn=str(settings.SENTRY_DSN), enable_tracing=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.ENVIRONMENT == "local":
        with Session(engine) as session:
            init_db(session)

    osrm = OsrmService()
    publisher = EventPublisher()
    optimizer = OptimizationService(osrm, publisher)

    app.state.osrm = osrm
    app.state.publisher = publisher
    app.state.optimizer = optimizer
    app.state.debouncer = TriggerDebouncer(optimizer.run_optimization)
    app.state.eta_calculator = EtaCalculator(osrm)
    logger.info(f"Dispatch services started (OSRM at {osrm.base_url})")

    try:
        yield
    finally:
        await app.state.debouncer.shutdown()
        await osrm.close()
        logger.info("Dispatch services stopped")


app = FastAPI(
    title=settings.PROJECT_NAME,
    openapi_url=f"{settings.API_V1_STR}/openapi.json",
    generate_unique_id_function=custom_generate_unique_id,
    lifespan=lifespan,
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle validation errors with readable messages"""
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=format_validation_error(exc),
    )

# Dispatcher dashboards call the API (and the event stream) cross-origin
if settings.all_cors_origins:
    local = settings.ENVIRONMENT == "local"
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if local else settings.all_cors_origins,
        allow_credentials=not local,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.include_router(api_router, prefix=settings.API_V1_STR)
