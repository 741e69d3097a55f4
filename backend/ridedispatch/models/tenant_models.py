import uuid
from datetime import datetime
from typing import ClassVar, Optional, TYPE_CHECKING

from sqlmodel import Field, Relationship, SQLModel

if TYPE_CHECKING:
    from .fleet_models import Van
    from .ride_models import Ride


# ============= TENANT MODELS =============
class TenantBase(SQLModel):
    name: str = Field(max_length=255, index=True)
    slug: str = Field(max_length=100, unique=True, index=True)
    auto_assign_enabled: bool = Field(
        default=True,
        description="When false, new rides wait for a dispatcher instead of triggering the optimizer",
    )
    is_active: bool = True


class TenantCreate(TenantBase):
    pass


class TenantUpdate(SQLModel):
    name: Optional[str] = Field(default=None, max_length=255)
    auto_assign_enabled: Optional[bool] = None
    is_active: Optional[bool] = None


class Tenant(TenantBase, table=True):
    __tablename__: ClassVar[str] = "tenants"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    # Relationships
    vans: list["Van"] = Relationship(back_populates="tenant", cascade_delete=True)
    rides: list["Ride"] = Relationship(back_populates="tenant", cascade_delete=True)


class TenantPublic(TenantBase):
    id: uuid.UUID
    created_at: datetime


# Generic message
class Message(SQLModel):
    message: str
