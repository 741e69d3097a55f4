import asyncio
import logging
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Sequence

from sqlmodel import Session

from ridedispatch import crud
from ridedispatch.core.db import engine
from ridedispatch.models.fleet_models import Van, VanTask
from ridedispatch.models.ride_models import Ride
from ridedispatch.models.optimization_models import (
    InsertionCandidate,
    OptimizationResult,
    OptimizerState,
    RideAssignment,
    RideInput,
    TaskOrder,
    VanInput,
    VanSuggestion,
    VanTaskOrder,
)
from ridedispatch.services.events import EventPublisher, ride_payload, tasks_payload
from ridedispatch.services.insertion import find_valid_insertions, insert_tasks
from ridedispatch.services.osrm_service import METERS_PER_MILE, OsrmService, haversine_miles

logger = logging.getLogger(__name__)


class CommitError(Exception):
    """Persisting one ride's assignment failed; earlier rides stay committed."""

    def __init__(self, ride_id: uuid.UUID, committed: Sequence[RideAssignment]):
        super().__init__(f"Failed to commit assignment for ride {ride_id}")
        self.ride_id = ride_id
        self.committed = list(committed)


def build_van_input(van: Van, tasks: Sequence[VanTask]) -> VanInput:
    """Working copy of a van and its open tasks for one pass."""
    previous = (van.current_lat, van.current_lng)
    orders: List[TaskOrder] = []
    for index, task in enumerate(tasks):
        # Stops without coordinates are treated as being at the previous stop
        if task.lat is not None and task.lng is not None:
            previous = (task.lat, task.lng)
        orders.append(
            TaskOrder(
                type=task.type,
                position=index,
                lat=previous[0],
                lng=previous[1],
                passenger_delta=task.passenger_delta,
                task_id=task.id,
                ride_id=task.ride_id,
            )
        )
    return VanInput(
        id=van.id,
        current_lat=van.current_lat,
        current_lng=van.current_lng,
        capacity=van.capacity,
        passenger_count=van.passenger_count,
        tasks=orders,
    )


def build_ride_input(ride: Ride) -> RideInput:
    return RideInput(
        id=ride.id,
        priority=ride.priority,
        passenger_count=ride.passenger_count,
        pickup_lat=ride.pickup_lat,
        pickup_lng=ride.pickup_lng,
        dropoff_lat=ride.dropoff_lat,
        dropoff_lng=ride.dropoff_lng,
    )


class OptimizationService:
    """
    Greedy insertion dispatcher, one pass per tenant at a time.

    A pass loads the tenant's pending rides and online vans, inserts rides
    one by one (highest priority first) at the cheapest feasible position
    across all vans, then commits each assignment in its own transaction and
    notifies subscribers.

    Request Lifecycle:
    1. Load phase: short-lived session, converted to in-memory inputs
    2. Search phase: routing calls only, no database access
    3. Commit phase: no await points, so a cancelled pass commits nothing
    """

    def __init__(
        self,
        osrm: OsrmService,
        publisher: EventPublisher,
        session_factory: Optional[Callable[[], Session]] = None,
    ):
        self.osrm = osrm
        self.publisher = publisher
        self.session_factory = session_factory or (lambda: Session(engine))
        self._locks: Dict[uuid.UUID, asyncio.Lock] = {}

    def _lock_for(self, tenant_id: uuid.UUID) -> asyncio.Lock:
        lock = self._locks.get(tenant_id)
        if lock is None:
            lock = self._locks[tenant_id] = asyncio.Lock()
        return lock

    def state(self, tenant_id: uuid.UUID) -> OptimizerState:
        lock = self._locks.get(tenant_id)
        if lock is not None and lock.locked():
            return OptimizerState.RUNNING
        return OptimizerState.IDLE

    def forget_tenant(self, tenant_id: uuid.UUID) -> None:
        """Drop per-tenant bookkeeping once the tenant is gone."""
        lock = self._locks.get(tenant_id)
        if lock is not None and not lock.locked():
            del self._locks[tenant_id]

    async def run_optimization(self, tenant_id: uuid.UUID) -> Optional[OptimizationResult]:
        """
        Run one dispatch pass for a tenant.

        Returns None when there is nothing to do (no pending rides or no
        online vans). Raises CommitError if persisting an assignment fails.
        """
        async with self._lock_for(tenant_id):
            logger.info(f"Starting dispatch optimization for tenant {tenant_id}")

            # Step 1: Load pending rides and online vans
            with self.session_factory() as session:
                rides = crud.load_pending_rides(session=session, tenant_id=tenant_id)
                vans = crud.load_online_vans(session=session, tenant_id=tenant_id)
                ride_inputs = [build_ride_input(ride) for ride in rides]
                van_inputs = [build_van_input(van, tasks) for van, tasks in vans]

            logger.info(f"Found {len(ride_inputs)} pending rides and {len(van_inputs)} online vans")

            if not ride_inputs or not van_inputs:
                logger.info(f"Nothing to optimize for tenant {tenant_id}")
                return None

            # Step 2: Insert rides one by one
            result = await self.greedy_insertion(van_inputs, ride_inputs)
            logger.info(
                f"Insertion search produced {len(result.assignments)} assignments "
                f"for {len(ride_inputs)} rides"
            )

            # Step 3: Persist and notify
            if result.assignments:
                self.apply_assignments(tenant_id, result)

            self.publisher.publish(
                "optimization.complete",
                {
                    "assignments": len(result.assignments),
                    "total_duration": result.total_duration,
                    "optimized_at": result.optimized_at.isoformat(),
                },
                tenant_id,
            )
            logger.info(
                f"Dispatch optimization completed for tenant {tenant_id}: "
                f"{len(result.assignments)} rides assigned"
            )
            return result

    async def greedy_insertion(
        self, vans: Sequence[VanInput], rides: Sequence[RideInput]
    ) -> OptimizationResult:
        """
        Assign rides in the given order, each to its cheapest feasible slot.

        Every assignment updates that van's working sequence, so later rides
        see the seats and stops taken by earlier ones.
        """
        orders: Dict[uuid.UUID, List[TaskOrder]] = {van.id: list(van.tasks) for van in vans}
        eligible = [van for van in vans if van.position is not None]
        assignments: List[RideAssignment] = []

        for ride in rides:
            candidate_lists = await asyncio.gather(
                *(find_valid_insertions(self.osrm, van, orders[van.id], ride) for van in eligible)
            )

            best: Optional[InsertionCandidate] = None
            for candidates in candidate_lists:
                for candidate in candidates:
                    if best is None or candidate.added_duration < best.added_duration:
                        best = candidate

            if best is None:
                logger.debug(f"No feasible insertion for ride {ride.id}; leaving it pending")
                continue

            new_tasks = insert_tasks(orders[best.van_id], ride, best.pickup_pos, best.dropoff_pos)
            orders[best.van_id] = new_tasks
            assignments.append(
                RideAssignment(
                    ride_id=ride.id,
                    van_id=best.van_id,
                    pickup_position=best.pickup_pos,
                    dropoff_position=best.dropoff_pos,
                    added_duration=best.added_duration,
                    task_order=[replace(task) for task in new_tasks],
                )
            )

        result = OptimizationResult(
            assignments=assignments,
            van_task_orders=[],
            total_duration=sum(a.added_duration for a in assignments),
            optimized_at=datetime.utcnow(),
        )
        result.van_task_orders = [
            VanTaskOrder(van_id=van_id, task_order=orders[van_id]) for van_id in result.touched_van_ids()
        ]
        return result

    def apply_assignments(self, tenant_id: uuid.UUID, result: OptimizationResult) -> List[RideAssignment]:
        """
        Commit each assignment in its own transaction.

        Rides that were assigned or cancelled elsewhere since the load phase
        are skipped. ``result`` is narrowed to what was actually committed.
        """
        committed: List[RideAssignment] = []
        touched: List[uuid.UUID] = []

        with self.session_factory() as session:
            try:
                for assignment in result.assignments:
                    try:
                        ride, _, _ = crud.commit_assignment(
                            session=session,
                            ride_id=assignment.ride_id,
                            van_id=assignment.van_id,
                            task_order=assignment.task_order,
                        )
                    except crud.AssignmentConflictError as e:
                        logger.warning(str(e))
                        continue
                    except Exception as e:
                        logger.exception(f"Failed to commit assignment for ride {assignment.ride_id}")
                        raise CommitError(assignment.ride_id, committed) from e

                    committed.append(assignment)
                    if assignment.van_id not in touched:
                        touched.append(assignment.van_id)
                    self.publisher.publish("ride.updated", ride_payload(ride), tenant_id)
            finally:
                for van_id in touched:
                    tasks = crud.get_open_tasks(session=session, van_id=van_id)
                    self.publisher.publish("tasks.reordered", tasks_payload(van_id, tasks), tenant_id)

        result.assignments = committed
        result.van_task_orders = [o for o in result.van_task_orders if o.van_id in touched]
        result.total_duration = sum(a.added_duration for a in committed)
        logger.info(f"Committed {len(committed)} assignments across {len(touched)} vans")
        return committed

    async def suggest_vans(
        self, tenant_id: uuid.UUID, lat: float, lng: float, limit: int = 5
    ) -> List[VanSuggestion]:
        """Online vans ranked by drive time to a pickup point."""
        with self.session_factory() as session:
            vans = [
                (van.id, van.name, (van.current_lat, van.current_lng), len(tasks))
                for van, tasks in crud.load_online_vans(session=session, tenant_id=tenant_id)
            ]

        if not vans:
            return []

        pickup = (lat, lng)
        locations = [position for _, _, position, _ in vans] + [pickup]
        matrix = await self.osrm.get_drive_matrix(locations)
        durations = matrix["durations"]
        distances = matrix.get("distances")

        now = datetime.utcnow()
        suggestions = []
        for i, (van_id, name, position, open_tasks) in enumerate(vans):
            duration = durations[i][len(vans)]
            if distances:
                distance = distances[i][len(vans)]
            else:
                distance = haversine_miles(position, pickup) * METERS_PER_MILE
            suggestions.append(
                VanSuggestion(
                    van_id=van_id,
                    name=name,
                    open_tasks=open_tasks,
                    drive_time_seconds=duration,
                    drive_time_minutes=round(duration / 60),
                    distance_meters=distance,
                    distance_miles=round(distance / METERS_PER_MILE, 1),
                    eta=now + timedelta(seconds=duration),
                )
            )

        suggestions.sort(key=lambda s: s.drive_time_seconds)
        return suggestions[:limit]
