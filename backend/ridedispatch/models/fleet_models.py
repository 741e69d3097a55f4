import uuid
from datetime import datetime
from typing import ClassVar, Optional, TYPE_CHECKING
from enum import Enum

from sqlmodel import Field, Relationship, SQLModel

if TYPE_CHECKING:
    from .tenant_models import Tenant
    from .ride_models import Ride


# ============= ENUMS =============
class VanStatus(str, Enum):
    AVAILABLE = "AVAILABLE"
    IN_USE = "IN_USE"  # online, eligible for dispatch
    MAINTENANCE = "MAINTENANCE"
    INACTIVE = "INACTIVE"


class TaskType(str, Enum):
    PICKUP = "PICKUP"
    DROPOFF = "DROPOFF"


# ============= VAN MODELS =============
class VanBase(SQLModel):
    name: str = Field(max_length=100)
    capacity: int = Field(default=8, ge=1)
    passenger_count: int = Field(default=0, ge=0)
    status: VanStatus = VanStatus.AVAILABLE
    current_lat: Optional[float] = Field(default=None, ge=-90, le=90)
    current_lng: Optional[float] = Field(default=None, ge=-180, le=180)


class VanCreate(SQLModel):
    name: str = Field(max_length=100)
    capacity: int = Field(default=8, ge=1)


class VanLocationUpdate(SQLModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    passenger_count: Optional[int] = Field(default=None, ge=0)


class Van(VanBase, table=True):
    __tablename__: ClassVar[str] = "vans"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    # Foreign Keys
    tenant_id: uuid.UUID = Field(foreign_key="tenants.id", nullable=False, index=True)

    # Relationships
    tenant: "Tenant" = Relationship(back_populates="vans")
    tasks: list["VanTask"] = Relationship(back_populates="van", cascade_delete=True)
    rides: list["Ride"] = Relationship(back_populates="van")

    @property
    def has_position(self) -> bool:
        return self.current_lat is not None and self.current_lng is not None


class VanPublic(VanBase):
    id: uuid.UUID
    tenant_id: uuid.UUID
    created_at: datetime


class VansPublic(SQLModel):
    data: list[VanPublic]
    count: int


# ============= TASK MODELS =============
class VanTaskBase(SQLModel):
    type: TaskType
    address: Optional[str] = Field(default=None, max_length=500)
    lat: Optional[float] = Field(default=None, ge=-90, le=90)
    lng: Optional[float] = Field(default=None, ge=-180, le=180)
    notes: Optional[str] = Field(default=None, max_length=1000)


class VanTaskCreate(VanTaskBase):
    ride_id: Optional[uuid.UUID] = None


class VanTask(VanTaskBase, table=True):
    __tablename__: ClassVar[str] = "van_tasks"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    position: int = Field(default=0, ge=0, index=True)
    completed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    # Foreign Keys
    van_id: uuid.UUID = Field(foreign_key="vans.id", nullable=False, index=True)
    ride_id: Optional[uuid.UUID] = Field(default=None, foreign_key="rides.id", nullable=True)

    # Relationships
    van: Van = Relationship(back_populates="tasks")
    ride: Optional["Ride"] = Relationship(back_populates="tasks")

    @property
    def passenger_delta(self) -> int:
        """Signed passenger change at this stop (+N pickup, -N dropoff)."""
        count = self.ride.passenger_count if self.ride is not None else 1
        return count if self.type == TaskType.PICKUP else -count


class VanTaskPublic(VanTaskBase):
    id: uuid.UUID
    van_id: uuid.UUID
    ride_id: Optional[uuid.UUID]
    position: int
    completed_at: Optional[datetime]


class TaskReorder(SQLModel):
    task_ids: list[uuid.UUID]
