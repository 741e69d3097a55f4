"""
In-memory structures for a dispatch optimization pass.

None of these are persisted: they describe the working copy of each van's
task sequence while rides are inserted one after another, and the results
returned to callers.
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Tuple
from enum import Enum

from sqlmodel import SQLModel

from .fleet_models import TaskType

# (lat, lng)
Coordinate = Tuple[float, float]


class OptimizerState(str, Enum):
    IDLE = "IDLE"
    RUNNING = "RUNNING"


@dataclass
class TaskOrder:
    type: TaskType
    position: int
    lat: float
    lng: float
    passenger_delta: int
    task_id: Optional[uuid.UUID] = None  # None until the row is created
    ride_id: Optional[uuid.UUID] = None

    @property
    def coordinate(self) -> Coordinate:
        return (self.lat, self.lng)


@dataclass
class VanInput:
    id: uuid.UUID
    current_lat: Optional[float]
    current_lng: Optional[float]
    capacity: int
    passenger_count: int
    tasks: List[TaskOrder] = field(default_factory=list)

    @property
    def position(self) -> Optional[Coordinate]:
        if self.current_lat is None or self.current_lng is None:
            return None
        return (self.current_lat, self.current_lng)


@dataclass
class RideInput:
    id: uuid.UUID
    priority: int
    passenger_count: int
    pickup_lat: Optional[float]
    pickup_lng: Optional[float]
    dropoff_lat: Optional[float]
    dropoff_lng: Optional[float]

    @property
    def has_coordinates(self) -> bool:
        return None not in (self.pickup_lat, self.pickup_lng, self.dropoff_lat, self.dropoff_lng)

    @property
    def pickup(self) -> Coordinate:
        assert self.pickup_lat is not None and self.pickup_lng is not None
        return (self.pickup_lat, self.pickup_lng)

    @property
    def dropoff(self) -> Coordinate:
        assert self.dropoff_lat is not None and self.dropoff_lng is not None
        return (self.dropoff_lat, self.dropoff_lng)


@dataclass(frozen=True)
class InsertionCandidate:
    van_id: uuid.UUID
    pickup_pos: int
    dropoff_pos: int
    added_duration: float


@dataclass
class RideAssignment:
    ride_id: uuid.UUID
    van_id: uuid.UUID
    pickup_position: int
    dropoff_position: int
    added_duration: float
    # The van's sequence right after this ride was inserted
    task_order: List[TaskOrder] = field(default_factory=list, repr=False)


@dataclass
class VanTaskOrder:
    van_id: uuid.UUID
    task_order: List[TaskOrder]


@dataclass
class OptimizationResult:
    assignments: List[RideAssignment]
    van_task_orders: List[VanTaskOrder]
    total_duration: float
    optimized_at: datetime

    def touched_van_ids(self) -> List[uuid.UUID]:
        seen: List[uuid.UUID] = []
        for assignment in self.assignments:
            if assignment.van_id not in seen:
                seen.append(assignment.van_id)
        return seen


# ============= RESPONSE MODELS =============
class OptimizationSummary(SQLModel):
    """Response model for a manual optimization run"""
    success: bool = True
    message: Optional[str] = None
    assignments: int = 0
    total_duration: float = 0.0
    optimized_at: Optional[datetime] = None


class EtaResult(SQLModel):
    eta: Optional[datetime] = None
    duration_seconds: Optional[float] = None


class VanSuggestion(SQLModel):
    van_id: uuid.UUID
    name: str
    open_tasks: int
    drive_time_seconds: float
    drive_time_minutes: int
    distance_meters: float
    distance_miles: float
    eta: datetime


class OptimizerStatus(SQLModel):
    tenant_id: uuid.UUID
    state: OptimizerState
    debounce_pending: bool
