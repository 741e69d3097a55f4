import uuid
from datetime import datetime
from typing import ClassVar, Optional, TYPE_CHECKING
from enum import Enum

from sqlmodel import Field, Relationship, SQLModel

if TYPE_CHECKING:
    from .tenant_models import Tenant
    from .fleet_models import Van, VanTask


class RideStatus(str, Enum):
    PENDING = "PENDING"
    ASSIGNED = "ASSIGNED"
    EN_ROUTE = "EN_ROUTE"
    PICKED_UP = "PICKED_UP"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


# ============= RIDE MODELS =============
class RideBase(SQLModel):
    rider_name: str = Field(max_length=255)
    rider_phone: Optional[str] = Field(default=None, max_length=50)
    passenger_count: int = Field(default=1, ge=1)
    priority: int = Field(default=0, ge=0, le=10)

    pickup_address: str = Field(max_length=500)
    pickup_lat: Optional[float] = Field(default=None, ge=-90, le=90)
    pickup_lng: Optional[float] = Field(default=None, ge=-180, le=180)

    dropoff_address: str = Field(max_length=500)
    dropoff_lat: Optional[float] = Field(default=None, ge=-90, le=90)
    dropoff_lng: Optional[float] = Field(default=None, ge=-180, le=180)

    notes: Optional[str] = Field(default=None, max_length=1000)


class RideCreate(RideBase):
    skip_auto_assign: bool = False


class RideAssign(SQLModel):
    van_id: uuid.UUID


class RideCancel(SQLModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class Ride(RideBase, table=True):
    __tablename__: ClassVar[str] = "rides"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    status: RideStatus = Field(default=RideStatus.PENDING, index=True)
    skip_auto_assign: bool = False

    created_at: datetime = Field(default_factory=datetime.utcnow, index=True)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    assigned_at: Optional[datetime] = None
    picked_up_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = Field(default=None, max_length=500)

    # Foreign Keys
    tenant_id: uuid.UUID = Field(foreign_key="tenants.id", nullable=False, index=True)
    van_id: Optional[uuid.UUID] = Field(default=None, foreign_key="vans.id", nullable=True)

    # Relationships
    tenant: "Tenant" = Relationship(back_populates="rides")
    van: Optional["Van"] = Relationship(back_populates="rides")
    tasks: list["VanTask"] = Relationship(back_populates="ride")

    @property
    def has_coordinates(self) -> bool:
        return None not in (self.pickup_lat, self.pickup_lng, self.dropoff_lat, self.dropoff_lng)


class RidePublic(RideBase):
    id: uuid.UUID
    tenant_id: uuid.UUID
    status: RideStatus
    van_id: Optional[uuid.UUID]
    created_at: datetime
    assigned_at: Optional[datetime]


class RidesPublic(SQLModel):
    data: list[RidePublic]
    count: int
