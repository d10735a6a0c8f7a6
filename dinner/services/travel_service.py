"""
Travel time lookup between two homes

Uses OpenRouteService cycling directions when an API key is configured and
falls back to a haversine estimate (15 km/h) otherwise. Any failure yields
the estimate or None, so envelope timing can always fall back to the
un-adjusted offsets.
"""

from __future__ import annotations

import logging
import math
from typing import Dict, Optional, Tuple

import httpx

from dinner.core.config import settings

logger = logging.getLogger(__name__)

ORS_CYCLING_URL = "https://api.openrouteservice.org/v2/directions/cycling-regular"
EARTH_RADIUS_KM = 6371.0
CYCLING_MINUTES_PER_KM = 4

Coordinates = Tuple[float, float]


def haversine_km(origin: Coordinates, destination: Coordinates) -> float:
    lat1, lng1 = map(math.radians, origin)
    lat2, lng2 = map(math.radians, destination)
    d_lat = lat2 - lat1
    d_lng = lng2 - lng1
    a = math.sin(d_lat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(d_lng / 2) ** 2
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def estimate_cycling_minutes(origin: Coordinates, destination: Coordinates) -> int:
    return round(haversine_km(origin, destination) * CYCLING_MINUTES_PER_KM)


class TravelTimeLookup:
    """Minutes between two coordinates, cached per pair for one request"""

    def __init__(self, api_key: Optional[str] = None, client: Optional[httpx.Client] = None):
        self.api_key = api_key if api_key is not None else settings.OPENROUTESERVICE_API_KEY
        self.client = client
        self._cache: Dict[tuple, Optional[int]] = {}

    def minutes(self, origin: Optional[Coordinates], destination: Optional[Coordinates]) -> Optional[int]:
        if origin is None or destination is None:
            return None
        key = (origin, destination)
        if key not in self._cache:
            self._cache[key] = self._lookup(origin, destination)
        return self._cache[key]

    def _lookup(self, origin: Coordinates, destination: Coordinates) -> Optional[int]:
        if not self.api_key:
            return estimate_cycling_minutes(origin, destination)
        try:
            return self._routed_minutes(origin, destination)
        except (httpx.HTTPError, KeyError, IndexError, ValueError) as exc:
            logger.warning(f"Travel lookup failed, using haversine estimate: {exc}")
            return estimate_cycling_minutes(origin, destination)

    def _routed_minutes(self, origin: Coordinates, destination: Coordinates) -> int:
        payload = {"coordinates": [[origin[1], origin[0]], [destination[1], destination[0]]]}
        headers = {"Authorization": self.api_key, "Content-Type": "application/json"}
        if self.client is not None:
            response = self.client.post(ORS_CYCLING_URL, json=payload, headers=headers)
        else:
            with httpx.Client(timeout=settings.TRAVEL_LOOKUP_TIMEOUT_SECONDS) as client:
                response = client.post(ORS_CYCLING_URL, json=payload, headers=headers)
        response.raise_for_status()
        summary = response.json()["routes"][0]["summary"]
        return round(summary["duration"] / 60)
