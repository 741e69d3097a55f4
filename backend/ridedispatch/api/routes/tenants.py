from typing import Any

from fastapi import APIRouter, HTTPException
from sqlmodel import select

from ridedispatch import crud
from ridedispatch.api.deps import CurrentTenant, DebouncerDep, OptimizerDep, SessionDep
from ridedispatch.models import Message, Tenant, TenantCreate, TenantPublic, TenantUpdate

router = APIRouter(prefix="/tenants", tags=["tenants"])


@router.post("/", response_model=TenantPublic)
def create_tenant(*, session: SessionDep, tenant_in: TenantCreate) -> Any:
    existing = session.exec(select(Tenant).where(Tenant.slug == tenant_in.slug)).first()
    if existing:
        raise HTTPException(status_code=400, detail="Tenant slug already in use")
    return crud.create_tenant(session=session, tenant_create=tenant_in)


@router.get("/me", response_model=TenantPublic)
def read_current_tenant(current_tenant: CurrentTenant) -> Any:
    return current_tenant


@router.patch("/me", response_model=TenantPublic)
def update_current_tenant(
    *,
    session: SessionDep,
    current_tenant: CurrentTenant,
    tenant_in: TenantUpdate,
) -> Any:
    """
    Update tenant settings, e.g. turn auto-assign off so new rides wait
    for a dispatcher.
    """
    return crud.update_tenant(session=session, db_tenant=current_tenant, tenant_update=tenant_in)


@router.delete("/me", response_model=Message)
async def delete_current_tenant(
    *,
    session: SessionDep,
    current_tenant: CurrentTenant,
    debouncer: DebouncerDep,
    optimizer: OptimizerDep,
) -> Any:
    """
    Delete the tenant with its fleet and rides. Pending or running dispatch
    passes for it are cancelled first.
    """
    tenant_id = current_tenant.id
    debouncer.cancel(tenant_id)
    optimizer.forget_tenant(tenant_id)
    session.delete(current_tenant)
    session.commit()
    return Message(message="Tenant deleted successfully")
