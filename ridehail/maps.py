from math import radians, cos, sin, asin, sqrt
from typing import NamedTuple, Tuple
import logging

import httpx

from .config import settings
from .errors import RouteUnavailable

logger = logging.getLogger(__name__)


class RouteEstimate(NamedTuple):
    distance_km: float
    duration_min: float


def haversine_km(a: Tuple[float, float], b: Tuple[float, float]) -> float:
    lat1, lon1 = a
    lat2, lon2 = b
    # convert decimal degrees to radians
    lon1, lat1, lon2, lat2 = map(radians, [lon1, lat1, lon2, lat2])
    # haversine
    dlon = lon2 - lon1
    dlat = lat2 - lat1
    a = sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlon / 2) ** 2
    c = 2 * asin(sqrt(a))
    km = 6371 * c
    return km


class HaversineRouteProvider:
    """Offline estimate: great-circle distance stretched by a road factor at an average speed."""

    def __init__(self, road_factor: float | None = None, average_speed_kmh: float | None = None):
        self.road_factor = road_factor or settings.ROAD_FACTOR
        self.average_speed_kmh = average_speed_kmh or settings.AVERAGE_SPEED_KMH

    async def estimate(self, origin: Tuple[float, float], destination: Tuple[float, float]) -> RouteEstimate:
        distance = haversine_km(origin, destination) * self.road_factor
        duration = distance / self.average_speed_kmh * 60.0
        return RouteEstimate(round(distance, 2), round(duration, 2))


class GoogleRouteProvider:
    """Distance Matrix API client (driving mode, metric)."""

    def __init__(self, api_key: str | None = None, base_url: str | None = None, timeout: float = 5.0, transport=None):
        self.api_key = api_key or settings.GOOGLE_MAPS_API_KEY
        self.base_url = base_url or settings.GOOGLE_MAPS_BASE_URL
        self.timeout = timeout
        self.transport = transport

    async def estimate(self, origin: Tuple[float, float], destination: Tuple[float, float]) -> RouteEstimate:
        params = {
            "origins": f"{origin[0]},{origin[1]}",
            "destinations": f"{destination[0]},{destination[1]}",
            "mode": "driving",
            "units": "metric",
            "key": self.api_key,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                resp = await client.get(f"{self.base_url}/distancematrix/json", params=params)
                resp.raise_for_status()
                data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("route_estimate_failed: origin=%s destination=%s error=%s", origin, destination, e)
            raise RouteUnavailable("unable to calculate route") from e

        try:
            element = data["rows"][0]["elements"][0]
            if data.get("status") != "OK" or element.get("status") != "OK":
                raise KeyError("status")
            distance_km = element["distance"]["value"] / 1000
            duration_min = element["duration"]["value"] / 60
        except (KeyError, IndexError, TypeError) as e:
            logger.warning("route_estimate_rejected: origin=%s destination=%s status=%s", origin, destination, data.get("status"))
            raise RouteUnavailable("unable to calculate route") from e
        return RouteEstimate(distance_km, duration_min)


def make_route_provider(name: str | None = None):
    name = (name or settings.ROUTE_PROVIDER).lower()
    if name == "google":
        return GoogleRouteProvider()
    if name == "haversine":
        return HaversineRouteProvider()
    raise ValueError(f"unknown route provider: {name}")
