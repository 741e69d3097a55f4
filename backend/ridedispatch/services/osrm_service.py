import asyncio
import logging
import math
from typing import Any, Dict, List, Optional, Sequence

import httpx
import polyline as pl

from ridedispatch.core.config import settings
from ridedispatch.models.optimization_models import Coordinate

logger = logging.getLogger(__name__)

EARTH_RADIUS_MILES = 3959.0
METERS_PER_MILE = 1609.34


class OsrmError(Exception):
    """OSRM answered, but not with something we can use."""


def haversine_miles(origin: Coordinate, destination: Coordinate) -> float:
    """Great-circle distance between two (lat, lng) points in miles."""
    lat1, lon1, lat2, lon2 = map(
        math.radians, [origin[0], origin[1], destination[0], destination[1]]
    )
    dlat = lat2 - lat1
    dlon = lon2 - lon1

    a = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_MILES * c


# Everything that sends a request down the fallback path. Task cancellation
# is deliberately absent so superseded runs stop instead of falling back.
_FALLBACK_ERRORS = (
    httpx.HTTPError,
    asyncio.TimeoutError,
    OsrmError,
    ValueError,
    KeyError,
    IndexError,
    TypeError,
)


class OsrmService:
    """
    Drive time / distance provider backed by an OSRM server.

    Every public method always returns a result: when OSRM is unreachable,
    slow, or answers with an error, a Haversine estimate at a fixed speed is
    returned instead and flagged with ``"fallback": True``. Durations are
    seconds and distances are meters in both cases.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        profile: Optional[str] = None,
        timeout: Optional[float] = None,
        speed_mph: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = (base_url or settings.OSRM_BASE_URL).rstrip("/")
        self.profile = profile or settings.OSRM_PROFILE
        self.timeout = timeout if timeout is not None else settings.OSRM_TIMEOUT_SECONDS
        self.speed_mph = speed_mph if speed_mph is not None else settings.OSRM_FALLBACK_SPEED_MPH
        self.client = client or httpx.AsyncClient(timeout=self.timeout)

    @staticmethod
    def format_coordinates(coordinates: Sequence[Coordinate]) -> str:
        """Convert (lat, lng) pairs to OSRM's 'lng,lat;lng,lat' form."""
        return ";".join(f"{lng},{lat}" for lat, lng in coordinates)

    async def _request(
        self,
        service: str,
        coordinates: Sequence[Coordinate],
        params: Dict[str, str],
    ) -> Dict[str, Any]:
        url = f"{self.base_url}/{service}/v1/{self.profile}/{self.format_coordinates(coordinates)}"

        # The client timeout bounds each phase; wait_for bounds the whole call.
        response = await asyncio.wait_for(
            self.client.get(url, params=params), timeout=self.timeout
        )
        if response.status_code != 200:
            raise OsrmError(f"OSRM {service} returned HTTP {response.status_code}")

        data = response.json()
        if not isinstance(data, dict):
            raise OsrmError(f"OSRM {service} returned a non-object payload")
        if data.get("code") != "Ok":
            raise OsrmError(f"OSRM {service} failed: {data.get('code')} {data.get('message', '')}".strip())
        return data

    async def get_drive_time(self, origin: Coordinate, destination: Coordinate) -> Dict[str, Any]:
        """Drive time (seconds) and distance (meters) between two points."""
        try:
            data = await self._request("route", [origin, destination], {"overview": "false"})
            route = data["routes"][0]
            return {
                "duration": float(route["duration"]),
                "distance": float(route["distance"]),
                "success": True,
            }
        except _FALLBACK_ERRORS as e:
            logger.warning(f"OSRM get_drive_time failed, using fallback: {e!r}")
            return self._get_fallback_route(origin, destination)

    async def get_drive_matrix(self, locations: Sequence[Coordinate]) -> Dict[str, Any]:
        """
        NxN drive time matrix (and distance matrix when OSRM provides one).

        The first location is typically the van, the rest are waypoints.
        Unroutable cells (null in the OSRM answer) are filled from the
        Haversine estimate so callers always get a complete matrix.
        """
        n = len(locations)
        if n < 2:
            return {"durations": [[0.0]], "distances": [[0.0]], "success": True}

        try:
            data = await self._request(
                "table", locations, {"annotations": "duration,distance"}
            )
            raw_durations = data["durations"]
            if len(raw_durations) != n or any(len(row) != n for row in raw_durations):
                raise OsrmError(f"OSRM table returned a malformed {len(raw_durations)}-row matrix for {n} points")

            raw_distances = data.get("distances")
            durations: List[List[float]] = []
            distances: Optional[List[List[float]]] = [] if raw_distances else None

            for i in range(n):
                duration_row: List[float] = []
                distance_row: List[float] = []
                for j in range(n):
                    duration = raw_durations[i][j]
                    distance = raw_distances[i][j] if raw_distances else None
                    if duration is None or (raw_distances and distance is None):
                        estimate = self._get_fallback_route(locations[i], locations[j])
                        duration = estimate["duration"] if duration is None else duration
                        distance = estimate["distance"] if distance is None else distance
                    duration_row.append(float(duration))
                    distance_row.append(float(distance or 0.0))
                durations.append(duration_row)
                if distances is not None:
                    distances.append(distance_row)

            return {"durations": durations, "distances": distances, "success": True}
        except _FALLBACK_ERRORS as e:
            logger.warning(f"OSRM get_drive_matrix failed for {n} points, using fallback: {e!r}")
            return self._get_fallback_matrix(locations)

    async def get_optimal_route(
        self, origin: Coordinate, waypoints: Sequence[Coordinate]
    ) -> Dict[str, Any]:
        """
        Visiting order for ``waypoints`` starting at ``origin`` (OSRM trip).

        ``order`` lists waypoint indices (0-based, origin excluded) in the
        sequence they should be visited. Falls back to the given order.
        """
        if not waypoints:
            return {"order": [], "duration": 0.0, "distance": 0.0, "success": True}

        try:
            data = await self._request(
                "trip",
                [origin, *waypoints],
                {"source": "first", "roundtrip": "false", "overview": "false"},
            )
            # waypoints[i].waypoint_index is input point i's slot in the trip
            slots = [int(wp["waypoint_index"]) for wp in data["waypoints"]]
            if len(slots) != len(waypoints) + 1:
                raise OsrmError("OSRM trip returned a different number of waypoints")
            visiting = sorted(range(1, len(slots)), key=lambda i: slots[i])
            trip = data["trips"][0]
            return {
                "order": [i - 1 for i in visiting],
                "duration": float(trip["duration"]),
                "distance": float(trip["distance"]),
                "success": True,
            }
        except _FALLBACK_ERRORS as e:
            logger.warning(f"OSRM get_optimal_route failed, keeping original order: {e!r}")
            legs = [origin, *waypoints]
            total = [self._get_fallback_route(a, b) for a, b in zip(legs, legs[1:])]
            return {
                "order": list(range(len(waypoints))),
                "duration": sum(leg["duration"] for leg in total),
                "distance": sum(leg["distance"] for leg in total),
                "success": False,
                "fallback": True,
            }

    async def get_route_with_geometry(
        self,
        origin: Coordinate,
        destination: Coordinate,
        waypoints: Sequence[Coordinate] = (),
    ) -> Dict[str, Any]:
        """Route through ``waypoints`` with an encoded polyline for map display."""
        points = [origin, *waypoints, destination]
        try:
            data = await self._request(
                "route", points, {"overview": "full", "geometries": "polyline"}
            )
            route = data["routes"][0]
            return {
                "duration": float(route["duration"]),
                "distance": float(route["distance"]),
                "polyline": route.get("geometry") or "",
                "success": True,
            }
        except _FALLBACK_ERRORS as e:
            logger.warning(f"OSRM get_route_with_geometry failed, using straight lines: {e!r}")
            legs = [self._get_fallback_route(a, b) for a, b in zip(points, points[1:])]
            return {
                "duration": sum(leg["duration"] for leg in legs),
                "distance": sum(leg["distance"] for leg in legs),
                "polyline": pl.encode(points),
                "success": False,
                "fallback": True,
            }

    def _get_fallback_route(self, origin: Coordinate, destination: Coordinate) -> Dict[str, Any]:
        """Fallback drive time using Haversine distance at a fixed speed."""
        distance_miles = haversine_miles(origin, destination)
        return {
            "duration": distance_miles / self.speed_mph * 3600,
            "distance": distance_miles * METERS_PER_MILE,
            "success": False,
            "fallback": True,
        }

    def _get_fallback_matrix(self, locations: Sequence[Coordinate]) -> Dict[str, Any]:
        """Fallback matrix calculation using Haversine distance."""
        n = len(locations)
        durations = [[0.0] * n for _ in range(n)]
        distances = [[0.0] * n for _ in range(n)]

        for i in range(n):
            for j in range(n):
                if i != j:
                    estimate = self._get_fallback_route(locations[i], locations[j])
                    durations[i][j] = estimate["duration"]
                    distances[i][j] = estimate["distance"]

        return {
            "durations": durations,
            "distances": distances,
            "success": False,
            "fallback": True,
        }

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()
