"""
Domain events that may warrant a new dispatch pass.

The auto-assign gate is evaluated here, before anything reaches the
debouncer: the optimizer itself never looks at these flags.
"""
import logging
from typing import Optional

from ridedispatch.core.config import settings
from ridedispatch.models.fleet_models import Van, VanStatus, VanTask
from ridedispatch.models.ride_models import Ride
from ridedispatch.models.tenant_models import Tenant
from ridedispatch.services.debounce import TriggerDebouncer

logger = logging.getLogger(__name__)


def auto_assign_enabled(tenant: Optional[Tenant]) -> bool:
    return settings.AUTO_ASSIGN_ENABLED and tenant is not None and tenant.auto_assign_enabled


def handle_ride_created(debouncer: TriggerDebouncer, ride: Ride) -> bool:
    if not auto_assign_enabled(ride.tenant):
        return False
    if ride.skip_auto_assign:
        logger.info(f"Ride {ride.id} opted out of auto-assign")
        return False
    if not ride.has_coordinates:
        logger.info(f"Ride {ride.id} has no coordinates; waiting for manual dispatch")
        return False

    logger.info(f"Ride created - triggering optimization for tenant {ride.tenant_id}")
    debouncer.trigger(ride.tenant_id)
    return True


def handle_task_completed(debouncer: TriggerDebouncer, task: VanTask) -> bool:
    """Completed stops free seats (or change positions) on the van."""
    van = task.van
    if not auto_assign_enabled(van.tenant):
        return False

    logger.info(f"Task completed - triggering optimization for tenant {van.tenant_id}")
    debouncer.trigger(van.tenant_id)
    return True


def handle_van_updated(debouncer: TriggerDebouncer, van: Van) -> bool:
    """Vans going online or offline change the dispatchable fleet."""
    if van.status not in (VanStatus.IN_USE, VanStatus.AVAILABLE):
        return False
    if not auto_assign_enabled(van.tenant):
        return False

    logger.info(f"Van {van.id} is now {van.status.value} - triggering optimization for tenant {van.tenant_id}")
    debouncer.trigger(van.tenant_id)
    return True
