"""
API Routes for Dispatch Optimization

Request Lifecycle Example for POST /optimization/run:
1. Request hits FastAPI router
2. Dependency injection: CurrentTenant resolves X-Tenant-ID, OptimizerDep provides the shared optimizer
3. Business logic layer: OptimizationService.run_optimization() loads, searches and commits
4. Response serialization: Returns OptimizationSummary model
"""
import uuid
from typing import Any

from fastapi import APIRouter, HTTPException, Query

from ridedispatch import crud
from ridedispatch.api.deps import CurrentTenant, DebouncerDep, EtaDep, OptimizerDep, SessionDep
from ridedispatch.models import EtaResult, OptimizationSummary, OptimizerStatus, VanSuggestion
from ridedispatch.services.optimization import CommitError

router = APIRouter(prefix="/optimization", tags=["optimization"])


@router.post("/run", response_model=OptimizationSummary)
async def run_optimization(
    *,
    current_tenant: CurrentTenant,
    optimizer: OptimizerDep,
) -> Any:
    """
    Run a dispatch pass now, bypassing the debounce window.
    """
    try:
        result = await optimizer.run_optimization(current_tenant.id)
    except CommitError as e:
        raise HTTPException(
            status_code=500,
            detail=f"Optimization stopped after {len(e.committed)} assignments: {e}",
        )

    if result is None:
        return OptimizationSummary(success=True, message="No pending rides or online vans")

    return OptimizationSummary(
        success=True,
        message=f"Assigned {len(result.assignments)} rides",
        assignments=len(result.assignments),
        total_duration=result.total_duration,
        optimized_at=result.optimized_at,
    )


@router.get("/eta/{ride_id}", response_model=EtaResult)
async def get_ride_eta(
    *,
    session: SessionDep,
    current_tenant: CurrentTenant,
    eta_calculator: EtaDep,
    ride_id: uuid.UUID,
) -> Any:
    """
    Pickup ETA for a ride; empty when the ride has no van on the road.
    """
    ride = crud.get_ride(session=session, ride_id=ride_id, tenant_id=current_tenant.id)
    if not ride:
        raise HTTPException(status_code=404, detail="Ride not found")

    return await eta_calculator.get_eta(ride_id, tenant_id=current_tenant.id)


@router.get("/suggest-vans", response_model=list[VanSuggestion])
async def suggest_vans(
    *,
    current_tenant: CurrentTenant,
    optimizer: OptimizerDep,
    lat: float = Query(ge=-90, le=90),
    lng: float = Query(ge=-180, le=180),
    limit: int = Query(default=5, ge=1, le=50),
) -> Any:
    """
    Online vans closest (by drive time) to a pickup point.
    """
    return await optimizer.suggest_vans(current_tenant.id, lat, lng, limit=limit)


@router.get("/status", response_model=OptimizerStatus)
def get_optimizer_status(
    current_tenant: CurrentTenant,
    optimizer: OptimizerDep,
    debouncer: DebouncerDep,
) -> Any:
    return OptimizerStatus(
        tenant_id=current_tenant.id,
        state=optimizer.state(current_tenant.id),
        debounce_pending=debouncer.is_pending(current_tenant.id),
    )
