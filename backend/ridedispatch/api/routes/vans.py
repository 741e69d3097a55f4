"""
API Routes for Vans and their Task Sequences

Request Lifecycle Example for POST /vans/{van_id}/tasks/{task_id}/complete:
1. Request hits FastAPI router
2. Dependency injection: TenantVan checks the van belongs to the X-Tenant-ID tenant
3. Business logic layer: crud.complete_task() marks the stop done and moves the ride along
4. Auto-assign gate: freed seats schedule a debounced dispatch pass
5. Response serialization: Returns VanTaskPublic model
"""
import uuid
from collections import Counter
from typing import Any

from fastapi import APIRouter, HTTPException

from ridedispatch import crud
from ridedispatch.api.deps import CurrentTenant, DebouncerDep, PublisherDep, SessionDep, TenantVan
from ridedispatch.models import (
    TaskReorder,
    TaskType,
    VanCreate,
    VanLocationUpdate,
    VanPublic,
    VanStatus,
    VanTaskCreate,
    VanTaskPublic,
)
from ridedispatch.services import listener
from ridedispatch.services.events import ride_payload, tasks_payload

router = APIRouter(prefix="/vans", tags=["vans"])


# ============= VAN ROUTES =============
@router.post("/", response_model=VanPublic)
def create_van(
    *,
    session: SessionDep,
    current_tenant: CurrentTenant,
    van_in: VanCreate,
) -> Any:
    return crud.create_van(session=session, van_create=van_in, tenant_id=current_tenant.id)


@router.get("/{van_id}", response_model=VanPublic)
def get_van(van: TenantVan) -> Any:
    return van


@router.post("/{van_id}/online", response_model=VanPublic)
async def set_van_online(
    *,
    session: SessionDep,
    current_tenant: CurrentTenant,
    debouncer: DebouncerDep,
    publisher: PublisherDep,
    van: TenantVan,
    location_in: VanLocationUpdate,
) -> Any:
    """
    Put a van in service at its current position; it becomes dispatchable.
    """
    van = crud.set_van_online(session=session, db_van=van, location=location_in)
    publisher.publish("van.updated", VanPublic.model_validate(van).model_dump(mode="json"), current_tenant.id)
    listener.handle_van_updated(debouncer, van)
    return van


@router.post("/{van_id}/offline", response_model=VanPublic)
async def set_van_offline(
    *,
    session: SessionDep,
    current_tenant: CurrentTenant,
    debouncer: DebouncerDep,
    publisher: PublisherDep,
    van: TenantVan,
) -> Any:
    van = crud.set_van_offline(session=session, db_van=van)
    publisher.publish("van.updated", VanPublic.model_validate(van).model_dump(mode="json"), current_tenant.id)
    listener.handle_van_updated(debouncer, van)
    return van


@router.patch("/{van_id}/location", response_model=VanPublic)
def update_van_location(
    *,
    session: SessionDep,
    van: TenantVan,
    location_in: VanLocationUpdate,
) -> Any:
    if van.status != VanStatus.IN_USE:
        raise HTTPException(status_code=400, detail="Van is not in service")
    return crud.update_van_location(session=session, db_van=van, location=location_in)


# ============= TASK ROUTES =============
@router.get("/{van_id}/tasks", response_model=list[VanTaskPublic])
def list_van_tasks(session: SessionDep, van: TenantVan) -> Any:
    """Open tasks in driving order."""
    return crud.get_open_tasks(session=session, van_id=van.id)


@router.post("/{van_id}/tasks", response_model=VanTaskPublic)
def add_van_task(
    *,
    session: SessionDep,
    current_tenant: CurrentTenant,
    publisher: PublisherDep,
    van: TenantVan,
    task_in: VanTaskCreate,
) -> Any:
    """
    Append an ad hoc stop (fuel, depot, ...). Ride stops are created by
    assignment only.
    """
    if task_in.ride_id is not None:
        raise HTTPException(status_code=400, detail="Ride stops are created by assigning the ride")

    task = crud.add_task(session=session, van=van, task_create=task_in)
    publisher.publish(
        "tasks.reordered",
        tasks_payload(van.id, crud.get_open_tasks(session=session, van_id=van.id)),
        current_tenant.id,
    )
    return task


@router.post("/{van_id}/tasks/{task_id}/complete", response_model=VanTaskPublic)
async def complete_van_task(
    *,
    session: SessionDep,
    current_tenant: CurrentTenant,
    debouncer: DebouncerDep,
    publisher: PublisherDep,
    van: TenantVan,
    task_id: uuid.UUID,
) -> Any:
    task = crud.get_task(session=session, task_id=task_id, van_id=van.id)
    if not task:
        raise HTTPException(status_code=404, detail="Task not found")
    if task.completed_at is not None:
        raise HTTPException(status_code=400, detail="Task is already completed")

    try:
        task = crud.complete_task(session=session, db_task=task)
    except crud.TaskSequenceError as e:
        raise HTTPException(status_code=409, detail=str(e))

    if task.ride is not None:
        publisher.publish("ride.updated", ride_payload(task.ride), current_tenant.id)
    publisher.publish(
        "tasks.reordered",
        tasks_payload(van.id, crud.get_open_tasks(session=session, van_id=van.id)),
        current_tenant.id,
    )
    listener.handle_task_completed(debouncer, task)
    return task


@router.delete("/{van_id}/tasks/{task_id}", response_model=list[VanTaskPublic])
def remove_van_task(
    *,
    session: SessionDep,
    current_tenant: CurrentTenant,
    publisher: PublisherDep,
    van: TenantVan,
    task_id: uuid.UUID,
) -> Any:
    """
    Remove a stop. Removing one stop of a ride removes its partner and sends
    the ride back to the pending queue.
    """
    task = crud.get_task(session=session, task_id=task_id, van_id=van.id)
    if not task:
        raise HTTPException(status_code=404, detail="Task not found")
    if task.completed_at is not None:
        raise HTTPException(status_code=400, detail="Completed tasks cannot be removed")

    ride = task.ride
    crud.remove_task(session=session, db_task=task)

    if ride is not None:
        session.refresh(ride)
        publisher.publish("ride.updated", ride_payload(ride), current_tenant.id)
    tasks = crud.get_open_tasks(session=session, van_id=van.id)
    publisher.publish("tasks.reordered", tasks_payload(van.id, tasks), current_tenant.id)
    return tasks


@router.put("/{van_id}/tasks/order", response_model=list[VanTaskPublic])
def reorder_van_tasks(
    *,
    session: SessionDep,
    current_tenant: CurrentTenant,
    publisher: PublisherDep,
    van: TenantVan,
    reorder_in: TaskReorder,
) -> Any:
    """
    Persist a dispatcher-chosen order for the van's open tasks.

    Every open task must be listed once, and each ride's pickup must come
    before its dropoff.
    """
    open_tasks = {task.id: task for task in crud.get_open_tasks(session=session, van_id=van.id)}

    duplicates = [task_id for task_id, n in Counter(reorder_in.task_ids).items() if n > 1]
    if duplicates or set(reorder_in.task_ids) != set(open_tasks):
        raise HTTPException(status_code=400, detail="Task list must contain each open task exactly once")

    open_pickups = {
        task.ride_id for task in open_tasks.values()
        if task.ride_id is not None and task.type == TaskType.PICKUP
    }
    seen_pickups = set()
    for task_id in reorder_in.task_ids:
        task = open_tasks[task_id]
        if task.type == TaskType.PICKUP:
            seen_pickups.add(task.ride_id)
        elif task.ride_id in open_pickups and task.ride_id not in seen_pickups:
            raise HTTPException(status_code=400, detail=f"Dropoff for ride {task.ride_id} is placed before its pickup")

    tasks = crud.renumber_tasks(session=session, van_id=van.id, ordered_task_ids=reorder_in.task_ids)
    publisher.publish("tasks.reordered", tasks_payload(van.id, tasks), current_tenant.id)
    return tasks
