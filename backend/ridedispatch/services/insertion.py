"""
Insertion search for one ride against one van.

Positions follow one convention throughout: for a van with T open tasks,
``pickup_pos = p`` makes the pickup the p-th stop of the new sequence
(0 <= p <= T) and ``dropoff_pos = d`` makes the dropoff the d-th stop of the
new sequence (p < d <= T + 1). Exactly ``d - 1 - p`` existing tasks sit
between the two new stops, so the ride is onboard while existing tasks
``p .. d - 2`` are served.

Duration matrix layout, for waypoints [van, task_0 .. task_{T-1}, pickup, dropoff]:
    0          van position
    k + 1      existing task k
    T + 1      new pickup
    T + 2      new dropoff
"""
import logging
from typing import List, Sequence

from ridedispatch.models.fleet_models import TaskType
from ridedispatch.models.optimization_models import (
    InsertionCandidate,
    RideInput,
    TaskOrder,
    VanInput,
)
from ridedispatch.services.osrm_service import OsrmService

logger = logging.getLogger(__name__)


def check_capacity_constraints(
    van: VanInput,
    tasks: Sequence[TaskOrder],
    ride_passengers: int,
    pickup_pos: int,
    dropoff_pos: int,
) -> bool:
    """
    Simulate onboard passengers along the sequence with the ride inserted.

    Any step outside [0, capacity] rejects the whole insertion.
    """
    passengers = van.passenger_count

    for i in range(len(tasks) + 1):
        # New stops placed before existing task i
        if i == pickup_pos:
            passengers += ride_passengers
            if passengers > van.capacity:
                return False
        if i == dropoff_pos - 1:
            passengers -= ride_passengers

        if i < len(tasks):
            passengers += tasks[i].passenger_delta
            if passengers > van.capacity or passengers < 0:
                return False

    return True


def calculate_added_duration(
    durations: Sequence[Sequence[float]],
    existing_task_count: int,
    pickup_pos: int,
    dropoff_pos: int,
) -> float:
    """
    Extra drive seconds caused by the insertion (local estimate).

    Each new stop replaces the edge between its neighbours with two edges;
    when both new stops are adjacent they share one replaced edge.
    """
    pickup_idx = existing_task_count + 1
    dropoff_idx = existing_task_count + 2

    before_pickup = pickup_pos  # van when pickup_pos == 0
    added = durations[before_pickup][pickup_idx]

    if dropoff_pos == pickup_pos + 1:
        added += durations[pickup_idx][dropoff_idx]
        if pickup_pos < existing_task_count:
            after_dropoff = pickup_pos + 1
            added += durations[dropoff_idx][after_dropoff]
            added -= durations[before_pickup][after_dropoff]
    else:
        after_pickup = pickup_pos + 1
        added += durations[pickup_idx][after_pickup]
        added -= durations[before_pickup][after_pickup]

        before_dropoff = dropoff_pos - 1  # existing task dropoff_pos - 2
        added += durations[before_dropoff][dropoff_idx]
        if dropoff_pos <= existing_task_count:
            after_dropoff = dropoff_pos
            added += durations[dropoff_idx][after_dropoff]
            added -= durations[before_dropoff][after_dropoff]

    return max(0.0, float(added))


async def find_valid_insertions(
    osrm: OsrmService,
    van: VanInput,
    tasks: Sequence[TaskOrder],
    ride: RideInput,
) -> List[InsertionCandidate]:
    """All capacity-feasible (pickup, dropoff) insertions of ``ride`` into ``van``."""
    if van.position is None or not ride.has_coordinates:
        return []

    waypoints = [van.position, *(task.coordinate for task in tasks), ride.pickup, ride.dropoff]
    matrix = await osrm.get_drive_matrix(waypoints)
    durations = matrix["durations"]

    task_count = len(tasks)
    candidates: List[InsertionCandidate] = []

    for pickup_pos in range(task_count + 1):
        for dropoff_pos in range(pickup_pos + 1, task_count + 2):
            if not check_capacity_constraints(
                van, tasks, ride.passenger_count, pickup_pos, dropoff_pos
            ):
                continue

            candidates.append(
                InsertionCandidate(
                    van_id=van.id,
                    pickup_pos=pickup_pos,
                    dropoff_pos=dropoff_pos,
                    added_duration=calculate_added_duration(
                        durations, task_count, pickup_pos, dropoff_pos
                    ),
                )
            )

    logger.debug(
        f"Ride {ride.id} / van {van.id}: {len(candidates)} feasible insertions over {task_count} tasks"
    )
    return candidates


def insert_tasks(
    tasks: Sequence[TaskOrder],
    ride: RideInput,
    pickup_pos: int,
    dropoff_pos: int,
) -> List[TaskOrder]:
    """New task sequence with the ride's pickup and dropoff spliced in, renumbered from 0."""
    new_tasks = list(tasks)

    new_tasks.insert(
        pickup_pos,
        TaskOrder(
            type=TaskType.PICKUP,
            position=pickup_pos,
            lat=ride.pickup[0],
            lng=ride.pickup[1],
            passenger_delta=ride.passenger_count,
            ride_id=ride.id,
        ),
    )
    # dropoff_pos already counts the pickup inserted above
    new_tasks.insert(
        dropoff_pos,
        TaskOrder(
            type=TaskType.DROPOFF,
            position=dropoff_pos,
            lat=ride.dropoff[0],
            lng=ride.dropoff[1],
            passenger_delta=-ride.passenger_count,
            ride_id=ride.id,
        ),
    )

    for index, task in enumerate(new_tasks):
        task.position = index

    return new_tasks
