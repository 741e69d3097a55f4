import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlmodel import Session

from ridedispatch import crud
from ridedispatch.core.db import engine
from ridedispatch.models.fleet_models import TaskType
from ridedispatch.models.optimization_models import EtaResult
from ridedispatch.services.osrm_service import OsrmService

logger = logging.getLogger(__name__)


class EtaCalculator:
    """Pickup ETA for a ride from its van's position and the stops before it."""

    def __init__(self, osrm: OsrmService, session_factory: Optional[Callable[[], Session]] = None):
        self.osrm = osrm
        self.session_factory = session_factory or (lambda: Session(engine))

    async def get_eta(self, ride_id: uuid.UUID, tenant_id: Optional[uuid.UUID] = None) -> EtaResult:
        """
        A ride without a van, a van without a position, or a ride whose
        pickup is already done has no ETA; that is an empty result, not an
        error.
        """
        with self.session_factory() as session:
            ride = crud.get_ride(session=session, ride_id=ride_id, tenant_id=tenant_id)
            if ride is None or ride.van is None or not ride.van.has_position:
                return EtaResult()

            open_tasks = crud.get_open_tasks(session=session, van_id=ride.van.id)
            pickup = next(
                (t for t in open_tasks if t.ride_id == ride.id and t.type == TaskType.PICKUP),
                None,
            )
            if pickup is None or pickup.lat is None or pickup.lng is None:
                return EtaResult()

            legs = [(ride.van.current_lat, ride.van.current_lng)]
            legs.extend(
                (t.lat, t.lng)
                for t in open_tasks
                if t.position < pickup.position and t.lat is not None and t.lng is not None
            )
            legs.append((pickup.lat, pickup.lng))

        results = await asyncio.gather(
            *(self.osrm.get_drive_time(a, b) for a, b in zip(legs, legs[1:]))
        )
        total = sum(leg["duration"] for leg in results)
        logger.debug(f"ETA for ride {ride_id}: {total:.0f}s over {len(legs) - 1} legs")
        return EtaResult(eta=datetime.utcnow() + timedelta(seconds=total), duration_seconds=total)
