from fastapi import APIRouter

from ridedispatch.api.routes import optimization, rides, stream, tenants, vans

api_router = APIRouter()
api_router.include_router(tenants.router)
api_router.include_router(vans.router)
api_router.include_router(rides.router)
api_router.include_router(optimization.router)
api_router.include_router(stream.router)


# Add health check endpoint
@api_router.get("/health", tags=["utils"])
def health_check():
    return {"status": "healthy", "service": "ride-dispatch"}


# Add version info
@api_router.get("/version", tags=["utils"])
def version_info():
    return {
        "version": "1.0.0",
        "api_version": "v1",
        "features": [
            "auto_dispatch",
            "debounced_optimization",
            "pickup_eta",
            "van_suggestions",
            "event_stream",
        ]
    }
