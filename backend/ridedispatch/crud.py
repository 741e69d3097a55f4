from datetime import datetime
from typing import Any, Optional, Sequence, cast
import logging
import uuid

from sqlmodel import Session, select, col

from ridedispatch.models.tenant_models import Tenant, TenantCreate, TenantUpdate
from ridedispatch.models.fleet_models import (
    TaskType,
    Van,
    VanCreate,
    VanLocationUpdate,
    VanStatus,
    VanTask,
    VanTaskCreate,
)
from ridedispatch.models.ride_models import Ride, RideCreate, RideStatus
from ridedispatch.models.optimization_models import TaskOrder

logger = logging.getLogger(__name__)


class AssignmentConflictError(Exception):
    """The ride changed underneath an optimization pass and was left alone."""


class TaskSequenceError(Exception):
    """A stop was completed out of order (a ride's dropoff before its pickup)."""


# ============= TENANT CRUD =============
def create_tenant(*, session: Session, tenant_create: TenantCreate) -> Tenant:
    db_tenant = Tenant.model_validate(tenant_create)
    session.add(db_tenant)
    session.commit()
    session.refresh(db_tenant)
    return db_tenant


def get_tenant(*, session: Session, tenant_id: uuid.UUID) -> Optional[Tenant]:
    return session.get(Tenant, tenant_id)


def update_tenant(*, session: Session, db_tenant: Tenant, tenant_update: TenantUpdate) -> Tenant:
    tenant_data = tenant_update.model_dump(exclude_unset=True)
    db_tenant.sqlmodel_update(tenant_data)
    db_tenant.updated_at = datetime.utcnow()
    session.add(db_tenant)
    session.commit()
    session.refresh(db_tenant)
    return db_tenant


# ============= VAN CRUD =============
def create_van(*, session: Session, van_create: VanCreate, tenant_id: uuid.UUID) -> Van:
    db_van = Van.model_validate(van_create, update={"tenant_id": tenant_id})
    session.add(db_van)
    session.commit()
    session.refresh(db_van)
    return db_van


def get_van(*, session: Session, van_id: uuid.UUID, tenant_id: Optional[uuid.UUID] = None) -> Optional[Van]:
    """Get van by ID, optionally scoped to a tenant"""
    van = session.get(Van, van_id)
    if van is None or (tenant_id is not None and van.tenant_id != tenant_id):
        return None
    return van


def set_van_online(*, session: Session, db_van: Van, location: VanLocationUpdate) -> Van:
    """Put a van in service at a known position"""
    db_van.status = VanStatus.IN_USE
    return update_van_location(session=session, db_van=db_van, location=location)


def set_van_offline(*, session: Session, db_van: Van) -> Van:
    """Take a van out of service; its position is no longer known"""
    db_van.status = VanStatus.AVAILABLE
    db_van.current_lat = None
    db_van.current_lng = None
    db_van.updated_at = datetime.utcnow()
    session.add(db_van)
    session.commit()
    session.refresh(db_van)
    return db_van


def update_van_location(*, session: Session, db_van: Van, location: VanLocationUpdate) -> Van:
    db_van.current_lat = location.lat
    db_van.current_lng = location.lng
    if location.passenger_count is not None:
        db_van.passenger_count = location.passenger_count
    db_van.updated_at = datetime.utcnow()
    session.add(db_van)
    session.commit()
    session.refresh(db_van)
    return db_van


def load_online_vans(*, session: Session, tenant_id: uuid.UUID) -> list[tuple[Van, list[VanTask]]]:
    """In-service vans with a known position, each with its open tasks by position"""
    statement = (
        select(Van)
        .where(Van.tenant_id == tenant_id)
        .where(Van.status == VanStatus.IN_USE)
        .where(col(Van.current_lat).is_not(None))
        .where(col(Van.current_lng).is_not(None))
        .order_by(col(Van.created_at), col(Van.id))
    )
    vans = session.exec(statement).all()
    return [(van, get_open_tasks(session=session, van_id=van.id)) for van in vans]


# ============= RIDE CRUD =============
def create_ride(*, session: Session, ride_create: RideCreate, tenant_id: uuid.UUID) -> Ride:
    db_ride = Ride.model_validate(ride_create, update={"tenant_id": tenant_id})
    session.add(db_ride)
    session.commit()
    session.refresh(db_ride)
    return db_ride


def get_ride(*, session: Session, ride_id: uuid.UUID, tenant_id: Optional[uuid.UUID] = None) -> Optional[Ride]:
    """Get ride by ID, optionally scoped to a tenant"""
    ride = session.get(Ride, ride_id)
    if ride is None or (tenant_id is not None and ride.tenant_id != tenant_id):
        return None
    return ride


def load_pending_rides(*, session: Session, tenant_id: uuid.UUID) -> list[Ride]:
    """Unassigned, coordinate-complete rides: priority desc, then oldest first"""
    statement = (
        select(Ride)
        .where(Ride.tenant_id == tenant_id)
        .where(Ride.status == RideStatus.PENDING)
        .where(col(Ride.van_id).is_(None))
        .where(col(Ride.pickup_lat).is_not(None))
        .where(col(Ride.pickup_lng).is_not(None))
        .where(col(Ride.dropoff_lat).is_not(None))
        .where(col(Ride.dropoff_lng).is_not(None))
        .order_by(col(Ride.priority).desc(), col(Ride.created_at), col(Ride.id))
    )
    return list(session.exec(statement).all())


def assign_ride(*, session: Session, db_ride: Ride, van: Van) -> Ride:
    """Dispatcher assignment: bind the ride and append its stops to the van"""
    if db_ride.van_id is not None:
        raise AssignmentConflictError(f"Ride {db_ride.id} is already assigned to van {db_ride.van_id}")
    db_ride.van_id = van.id
    db_ride.status = RideStatus.ASSIGNED
    db_ride.assigned_at = datetime.utcnow()
    db_ride.updated_at = datetime.utcnow()
    session.add(db_ride)
    ensure_ride_tasks(session=session, ride=db_ride, commit=False)
    session.commit()
    session.refresh(db_ride)
    return db_ride


def cancel_ride(*, session: Session, db_ride: Ride, reason: Optional[str] = None) -> Ride:
    """Cancel a ride and drop its open stops from the van"""
    van_id = db_ride.van_id
    for task in _open_tasks_for_ride(session=session, ride_id=db_ride.id):
        session.delete(task)
    db_ride.status = RideStatus.CANCELLED
    db_ride.cancelled_at = datetime.utcnow()
    db_ride.cancel_reason = reason
    db_ride.updated_at = datetime.utcnow()
    session.add(db_ride)
    session.flush()
    if van_id is not None:
        _compact_positions(session=session, van_id=van_id)
    session.commit()
    session.refresh(db_ride)
    return db_ride


# ============= TASK CRUD =============
def get_open_tasks(*, session: Session, van_id: uuid.UUID) -> list[VanTask]:
    statement = (
        select(VanTask)
        .where(VanTask.van_id == van_id)
        .where(col(VanTask.completed_at).is_(None))
        .order_by(col(VanTask.position), col(VanTask.created_at))
    )
    return list(session.exec(statement).all())


def get_task(*, session: Session, task_id: uuid.UUID, van_id: uuid.UUID) -> Optional[VanTask]:
    task = session.get(VanTask, task_id)
    if task is None or task.van_id != van_id:
        return None
    return task


def _open_tasks_for_ride(*, session: Session, ride_id: uuid.UUID) -> list[VanTask]:
    statement = (
        select(VanTask)
        .where(VanTask.ride_id == ride_id)
        .where(col(VanTask.completed_at).is_(None))
    )
    return list(session.exec(statement).all())


def _next_position(*, session: Session, van_id: uuid.UUID) -> int:
    open_tasks = get_open_tasks(session=session, van_id=van_id)
    return max((task.position for task in open_tasks), default=-1) + 1


def _compact_positions(*, session: Session, van_id: uuid.UUID) -> None:
    """Renumber the van's open tasks densely from 0, keeping their order"""
    for index, task in enumerate(get_open_tasks(session=session, van_id=van_id)):
        if task.position != index:
            task.position = index
            session.add(task)
    session.flush()


def add_task(*, session: Session, van: Van, task_create: VanTaskCreate) -> VanTask:
    """Append an ad hoc stop to the end of the van's sequence"""
    db_task = VanTask.model_validate(
        task_create,
        update={"van_id": van.id, "position": _next_position(session=session, van_id=van.id)},
    )
    session.add(db_task)
    session.commit()
    session.refresh(db_task)
    return db_task


def ensure_ride_tasks(*, session: Session, ride: Ride, commit: bool = True) -> list[VanTask]:
    """
    Repair path: an assigned ride must own a pickup/dropoff pair.

    When the ride has a van but no task rows at all, the pair is appended to
    the end of the van's sequence. Rides that already have tasks are left
    as they are.
    """
    if ride.van_id is None:
        return []
    existing = list(session.exec(select(VanTask).where(VanTask.ride_id == ride.id)).all())
    if existing:
        return existing

    base_position = _next_position(session=session, van_id=ride.van_id)
    picked_up = ride.status in (RideStatus.PICKED_UP, RideStatus.COMPLETED)
    pickup = VanTask(
        van_id=ride.van_id,
        ride_id=ride.id,
        type=TaskType.PICKUP,
        address=ride.pickup_address,
        lat=ride.pickup_lat,
        lng=ride.pickup_lng,
        position=base_position,
        completed_at=(ride.picked_up_at or datetime.utcnow()) if picked_up else None,
    )
    dropoff = VanTask(
        van_id=ride.van_id,
        ride_id=ride.id,
        type=TaskType.DROPOFF,
        address=ride.dropoff_address,
        lat=ride.dropoff_lat,
        lng=ride.dropoff_lng,
        position=base_position if picked_up else base_position + 1,
    )
    session.add(pickup)
    session.add(dropoff)
    logger.info(f"Synthesized missing tasks for ride {ride.id} on van {ride.van_id}")
    if commit:
        session.commit()
        session.refresh(pickup)
        session.refresh(dropoff)
    else:
        session.flush()
    return [pickup, dropoff]


def complete_task(*, session: Session, db_task: VanTask) -> VanTask:
    """Mark a stop done, move the ride along and free or take up seats"""
    if db_task.type == TaskType.DROPOFF and db_task.ride_id is not None:
        open_stops = _open_tasks_for_ride(session=session, ride_id=db_task.ride_id)
        if any(task.type == TaskType.PICKUP for task in open_stops):
            raise TaskSequenceError(f"Ride {db_task.ride_id} has not been picked up yet")

    now = datetime.utcnow()
    db_task.completed_at = now
    session.add(db_task)

    van = db_task.van
    van.passenger_count = max(0, min(van.capacity, van.passenger_count + db_task.passenger_delta))
    van.updated_at = now
    session.add(van)

    ride = db_task.ride
    if ride is not None:
        if db_task.type == TaskType.PICKUP:
            ride.status = RideStatus.PICKED_UP
            ride.picked_up_at = now
        else:
            ride.status = RideStatus.COMPLETED
            ride.completed_at = now
        ride.updated_at = now
        session.add(ride)

    session.flush()
    _compact_positions(session=session, van_id=db_task.van_id)
    session.commit()
    session.refresh(db_task)
    return db_task


def remove_task(*, session: Session, db_task: VanTask) -> None:
    """
    Dispatcher removal of a stop.

    A ride's stops only exist as a pair, so removing one removes its open
    partner and returns the ride to the pending queue.
    """
    van_id = db_task.van_id
    ride = db_task.ride
    if ride is not None:
        for task in _open_tasks_for_ride(session=session, ride_id=ride.id):
            session.delete(task)
        if ride.status in (RideStatus.ASSIGNED, RideStatus.EN_ROUTE):
            ride.status = RideStatus.PENDING
            ride.van_id = None
            ride.assigned_at = None
            ride.updated_at = datetime.utcnow()
            session.add(ride)
    else:
        session.delete(db_task)
    session.flush()
    _compact_positions(session=session, van_id=van_id)
    session.commit()


def renumber_tasks(*, session: Session, van_id: uuid.UUID, ordered_task_ids: Sequence[uuid.UUID]) -> list[VanTask]:
    """
    Persist a new order for the van's open tasks.

    Ids not belonging to the van's open tasks are ignored; open tasks missing
    from the list keep their relative order after the listed ones.
    """
    _apply_positions(session=session, van_id=van_id, ordered_task_ids=ordered_task_ids)
    session.commit()
    return get_open_tasks(session=session, van_id=van_id)


def _apply_positions(*, session: Session, van_id: uuid.UUID, ordered_task_ids: Sequence[uuid.UUID]) -> None:
    open_tasks = {task.id: task for task in get_open_tasks(session=session, van_id=van_id)}
    ordered = [open_tasks.pop(task_id) for task_id in ordered_task_ids if task_id in open_tasks]
    ordered.extend(sorted(open_tasks.values(), key=lambda task: task.position))
    for index, task in enumerate(ordered):
        if task.position != index:
            task.position = index
            session.add(task)
    session.flush()


def commit_assignment(
    *,
    session: Session,
    ride_id: uuid.UUID,
    van_id: uuid.UUID,
    task_order: Sequence[TaskOrder],
) -> tuple[Ride, VanTask, VanTask]:
    """
    Persist one optimizer assignment as a single transaction.

    ``task_order`` is the van's sequence right after this ride was inserted.
    The ride is bound to the van, its pickup/dropoff rows are created, and
    every open task on the van is renumbered to follow ``task_order``. Stops
    of other rides from the same pass that are not (yet) persisted are
    skipped, so positions stay dense whatever happened to those rides.

    Raises AssignmentConflictError if the ride is gone or no longer pending,
    or if the van left service since the pass loaded it; any database error
    rolls the whole ride back.
    """
    try:
        ride = session.exec(
            select(Ride).where(Ride.id == ride_id).with_for_update()
        ).first()
        if ride is None:
            raise AssignmentConflictError(f"Ride {ride_id} no longer exists; skipping")
        if ride.status != RideStatus.PENDING or ride.van_id is not None:
            raise AssignmentConflictError(
                f"Ride {ride_id} is {ride.status.value} (van {ride.van_id}); skipping"
            )

        van = session.get(Van, van_id)
        if van is None or van.status != VanStatus.IN_USE or not van.has_position:
            raise AssignmentConflictError(f"Van {van_id} went out of service; skipping ride {ride_id}")

        now = datetime.utcnow()
        ride.van_id = van_id
        ride.status = RideStatus.ASSIGNED
        ride.assigned_at = now
        ride.updated_at = now
        session.add(ride)

        open_tasks = get_open_tasks(session=session, van_id=van_id)
        by_id = {task.id: task for task in open_tasks}
        by_ride_stop = {
            (task.ride_id, task.type): task for task in open_tasks if task.ride_id is not None
        }

        created: dict[TaskType, VanTask] = {}
        ordered_ids: list[uuid.UUID] = []
        for entry in task_order:
            if entry.ride_id == ride_id and entry.task_id is None:
                db_task = VanTask(
                    van_id=van_id,
                    ride_id=ride_id,
                    type=entry.type,
                    address=ride.pickup_address if entry.type == TaskType.PICKUP else ride.dropoff_address,
                    lat=entry.lat,
                    lng=entry.lng,
                    position=entry.position,
                )
                session.add(db_task)
                created[entry.type] = db_task
                ordered_ids.append(db_task.id)
            elif entry.task_id is not None and entry.task_id in by_id:
                ordered_ids.append(entry.task_id)
            elif (entry.ride_id, entry.type) in by_ride_stop:
                ordered_ids.append(by_ride_stop[(entry.ride_id, entry.type)].id)

        if set(created) != {TaskType.PICKUP, TaskType.DROPOFF}:
            raise ValueError(f"Task order for van {van_id} does not contain both stops of ride {ride_id}")

        session.flush()
        _apply_positions(session=session, van_id=van_id, ordered_task_ids=ordered_ids)
        session.commit()
    except Exception:
        session.rollback()
        raise

    session.refresh(ride)
    pickup, dropoff = created[TaskType.PICKUP], created[TaskType.DROPOFF]
    session.refresh(pickup)
    session.refresh(dropoff)
    return ride, pickup, dropoff


def list_rides(
    *,
    session: Session,
    tenant_id: uuid.UUID,
    status: Optional[RideStatus] = None,
    skip: int = 0,
    limit: int = 100,
) -> tuple[list[Ride], int]:
    """Rides for a tenant, highest priority first"""
    base_query = select(Ride).where(Ride.tenant_id == tenant_id)
    if status:
        base_query = base_query.where(Ride.status == status)

    statement = base_query.order_by(
        cast(Any, col(Ride.priority)).desc(), col(Ride.created_at).desc()
    ).offset(skip).limit(limit)
    rides = session.exec(statement).all()

    count = len(session.exec(base_query).all())
    return list(rides), count
