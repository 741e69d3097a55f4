from collections.abc import Generator
from typing import Annotated
from uuid import UUID

from fastapi import Depends, Header, HTTPException, Request
from sqlmodel import Session

from ridedispatch.core.db import engine
from ridedispatch.models import Ride, Tenant, Van
from ridedispatch.services.debounce import TriggerDebouncer
from ridedispatch.services.eta import EtaCalculator
from ridedispatch.services.events import EventPublisher
from ridedispatch.services.optimization import OptimizationService


def get_db() -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session


SessionDep = Annotated[Session, Depends(get_db)]


# ============= TENANT DEPENDENCIES =============

def get_current_tenant(
    session: SessionDep,
    x_tenant_id: Annotated[UUID, Header()],
) -> Tenant:
    """
    Resolve the tenant from the X-Tenant-ID header.

    Authentication happens upstream; this only checks that the tenant exists
    and is active.
    """
    tenant = session.get(Tenant, x_tenant_id)
    if not tenant:
        raise HTTPException(status_code=404, detail="Tenant not found")

    if not tenant.is_active:
        raise HTTPException(status_code=403, detail="Tenant is inactive")

    return tenant


CurrentTenant = Annotated[Tenant, Depends(get_current_tenant)]


def verify_tenant_van(
    session: SessionDep,
    current_tenant: CurrentTenant,
    van_id: UUID,
) -> Van:
    """
    Verify that a van belongs to the current tenant.
    """
    van = session.get(Van, van_id)
    if not van or van.tenant_id != current_tenant.id:
        raise HTTPException(status_code=404, detail="Van not found")
    return van


TenantVan = Annotated[Van, Depends(verify_tenant_van)]


def verify_tenant_ride(
    session: SessionDep,
    current_tenant: CurrentTenant,
    ride_id: UUID,
) -> Ride:
    """
    Verify that a ride belongs to the current tenant.
    """
    ride = session.get(Ride, ride_id)
    if not ride or ride.tenant_id != current_tenant.id:
        raise HTTPException(status_code=404, detail="Ride not found")
    return ride


TenantRide = Annotated[Ride, Depends(verify_tenant_ride)]


# ============= SERVICE DEPENDENCIES =============
# Long-lived services are created in the app lifespan.

def get_optimizer(request: Request) -> OptimizationService:
    return request.app.state.optimizer


def get_debouncer(request: Request) -> TriggerDebouncer:
    return request.app.state.debouncer


def get_eta_calculator(request: Request) -> EtaCalculator:
    return request.app.state.eta_calculator


def get_publisher(request: Request) -> EventPublisher:
    return request.app.state.publisher


OptimizerDep = Annotated[OptimizationService, Depends(get_optimizer)]
DebouncerDep = Annotated[TriggerDebouncer, Depends(get_debouncer)]
EtaDep = Annotated[EtaCalculator, Depends(get_eta_calculator)]
PublisherDep = Annotated[EventPublisher, Depends(get_publisher)]
