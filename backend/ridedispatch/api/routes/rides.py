"""
API Routes for Ride Management

Request Lifecycle Example for POST /rides/:
1. Request hits FastAPI router
2. Dependency injection: SessionDep provides DB session, CurrentTenant resolves X-Tenant-ID
3. Business logic layer: crud.create_ride() persists the ride as PENDING
4. Auto-assign gate: listener decides whether to schedule a debounced dispatch pass
5. Response serialization: Returns RidePublic model
"""
from typing import Any, Optional

from fastapi import APIRouter, HTTPException

from ridedispatch import crud
from ridedispatch.api.deps import CurrentTenant, DebouncerDep, PublisherDep, SessionDep, TenantRide
from ridedispatch.models import (
    RideAssign,
    RideCancel,
    RideCreate,
    RidePublic,
    RidesPublic,
    RideStatus,
)
from ridedispatch.services import listener
from ridedispatch.services.events import ride_payload, tasks_payload

router = APIRouter(prefix="/rides", tags=["rides"])


@router.post("/", response_model=RidePublic)
async def create_ride(
    *,
    session: SessionDep,
    current_tenant: CurrentTenant,
    debouncer: DebouncerDep,
    publisher: PublisherDep,
    ride_in: RideCreate,
) -> Any:
    """
    Create a ride request.

    Lifecycle:
    1. Persist ride as PENDING
    2. Notify subscribers
    3. Schedule an optimization pass unless auto-assign is off for this ride or tenant
    """
    ride = crud.create_ride(session=session, ride_create=ride_in, tenant_id=current_tenant.id)
    publisher.publish("ride.created", ride_payload(ride), current_tenant.id)
    listener.handle_ride_created(debouncer, ride)
    return ride


@router.get("/", response_model=RidesPublic)
def list_rides(
    session: SessionDep,
    current_tenant: CurrentTenant,
    status: Optional[RideStatus] = None,
    skip: int = 0,
    limit: int = 100,
) -> Any:
    rides, count = crud.list_rides(
        session=session, tenant_id=current_tenant.id, status=status, skip=skip, limit=limit
    )
    return RidesPublic(data=rides, count=count)


@router.get("/{ride_id}", response_model=RidePublic)
def get_ride(ride: TenantRide) -> Any:
    return ride


@router.post("/{ride_id}/assign", response_model=RidePublic)
def assign_ride(
    *,
    session: SessionDep,
    current_tenant: CurrentTenant,
    publisher: PublisherDep,
    ride: TenantRide,
    assign_in: RideAssign,
) -> Any:
    """
    Dispatcher assignment: the ride's stops are appended to the van's sequence.
    """
    van = crud.get_van(session=session, van_id=assign_in.van_id, tenant_id=current_tenant.id)
    if not van:
        raise HTTPException(status_code=404, detail="Van not found")

    if ride.status != RideStatus.PENDING:
        raise HTTPException(status_code=409, detail=f"Ride is {ride.status.value}, not PENDING")

    try:
        ride = crud.assign_ride(session=session, db_ride=ride, van=van)
    except crud.AssignmentConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))

    publisher.publish("ride.updated", ride_payload(ride), current_tenant.id)
    publisher.publish(
        "tasks.reordered",
        tasks_payload(van.id, crud.get_open_tasks(session=session, van_id=van.id)),
        current_tenant.id,
    )
    return ride


@router.post("/{ride_id}/cancel", response_model=RidePublic)
def cancel_ride(
    *,
    session: SessionDep,
    current_tenant: CurrentTenant,
    publisher: PublisherDep,
    ride: TenantRide,
    cancel_in: RideCancel,
) -> Any:
    if ride.status in (RideStatus.COMPLETED, RideStatus.CANCELLED):
        raise HTTPException(status_code=400, detail=f"Ride is already {ride.status.value}")

    van_id = ride.van_id
    ride = crud.cancel_ride(session=session, db_ride=ride, reason=cancel_in.reason)

    publisher.publish("ride.updated", ride_payload(ride), current_tenant.id)
    if van_id is not None:
        publisher.publish(
            "tasks.reordered",
            tasks_payload(van_id, crud.get_open_tasks(session=session, van_id=van_id)),
            current_tenant.id,
        )
    return ride
