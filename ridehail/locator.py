from datetime import datetime, timezone
from typing import Iterable, List, Optional, Tuple
import logging

from .config import settings
from .maps import haversine_km
from . import models

logger = logging.getLogger(__name__)


def _geo_key(vehicle_class: str) -> str:
    return f"drivers_geo:{vehicle_class}"


def _driver_key(driver_id: int) -> str:
    return f"driver:{driver_id}"


def _busy_key(driver_id: int) -> str:
    return f"driver_busy:{driver_id}"


class DriverLocator:
    """Driver availability and proximity index kept in Redis.

    Each driver has a hash ``driver:{id}`` (lat, lon, vehicle_class, available,
    timestamp) that expires when the driver stops reporting. Available drivers
    are also members of the GEO set for their vehicle class, so a proximity
    query never has to look at busy drivers or other classes. Writes are
    last-write-wins.

    A driver on a ride also has a ``driver_busy:{id}`` key with no expiry, so
    a location hash that lapses mid-ride does not put them back on offer.
    """

    def __init__(self, redis, ttl_sec: int | None = None):
        self.redis = redis
        self.ttl_sec = ttl_sec or settings.DRIVER_LOCATION_TTL_SEC

    async def update_location(self, driver_id: int, lat: float, lon: float, vehicle_class: str) -> dict:
        key = _driver_key(driver_id)
        current = await self.redis.hgetall(key)
        available = current.get("available")
        if available is None:
            # first sighting counts as available unless a ride is in progress
            available = "0" if await self.redis.exists(_busy_key(driver_id)) else "1"
        previous_class = current.get("vehicle_class")
        await self.redis.hset(key, mapping={
            "lat": lat,
            "lon": lon,
            "vehicle_class": vehicle_class,
            "available": available,
            "timestamp": datetime.now(timezone.utc).timestamp(),
        })
        await self.redis.expire(key, self.ttl_sec)
        if previous_class and previous_class != vehicle_class:
            await self.redis.zrem(_geo_key(previous_class), str(driver_id))
        if available == "1":
            await self.redis.geoadd(_geo_key(vehicle_class), [lon, lat, str(driver_id)])
        logger.debug("update_driver_location: driver=%s lat=%s lon=%s class=%s", driver_id, lat, lon, vehicle_class)
        return {"driver_id": driver_id, "lat": lat, "lon": lon, "vehicle_class": vehicle_class, "available": available == "1"}

    async def set_availability(self, driver_id: int, available: bool) -> bool:
        """Flip a driver's offer availability. Returns False when no fresh location is known."""
        key = _driver_key(driver_id)
        data = await self.redis.hgetall(key)
        if not data:
            logger.info("set_availability: driver=%s has no known location", driver_id)
            return False
        await self.redis.hset(key, mapping={"available": "1" if available else "0"})
        geo_key = _geo_key(data.get("vehicle_class", settings.DEFAULT_VEHICLE_CLASS))
        if available:
            await self.redis.geoadd(geo_key, [float(data["lon"]), float(data["lat"]), str(driver_id)])
        else:
            await self.redis.zrem(geo_key, str(driver_id))
        logger.info("set_availability: driver=%s available=%s", driver_id, available)
        return True

    async def mark_busy(self, driver_id: int, ride_id: int) -> bool:
        """Take a driver off offer for the length of a ride."""
        await self.redis.set(_busy_key(driver_id), ride_id)
        return await self.set_availability(driver_id, False)

    async def release(self, driver_id: int) -> bool:
        """Put a driver back on offer once their ride is over."""
        await self.redis.delete(_busy_key(driver_id))
        return await self.set_availability(driver_id, True)

    async def get_state(self, driver_id: int, max_age_sec: int | None = None) -> Optional[dict]:
        """Cached driver state, or None if unknown or stale."""
        max_age_sec = max_age_sec or self.ttl_sec
        data = await self.redis.hgetall(_driver_key(driver_id))
        if not data:
            return None
        try:
            if "timestamp" in data:
                age = datetime.now(timezone.utc).timestamp() - float(data["timestamp"])
                if age > max_age_sec:
                    logger.debug("get_state: driver=%s location stale (age=%.1fs), invalidating", driver_id, age)
                    await self.invalidate(driver_id, data.get("vehicle_class"))
                    return None
            return {
                "driver_id": driver_id,
                "lat": float(data["lat"]),
                "lon": float(data["lon"]),
                "vehicle_class": data.get("vehicle_class"),
                "available": data.get("available") == "1",
            }
        except (KeyError, ValueError) as e:
            logger.warning("get_state: driver=%s error parsing data: %s", driver_id, e)
            return None

    async def nearby(
        self,
        lat: float,
        lon: float,
        radius_km: float,
        vehicle_class: str,
        limit: int,
        exclude: Iterable[int] = (),
    ) -> List[Tuple[int, float]]:
        """Available drivers of `vehicle_class` within `radius_km`, nearest first.

        Returns at most `limit` (driver_id, distance_km) pairs.
        """
        excluded = set(exclude)
        res = await self.redis.geosearch(
            _geo_key(vehicle_class),
            longitude=lon,
            latitude=lat,
            radius=radius_km,
            unit="km",
            withdist=True,
            sort="ASC",
            count=limit + len(excluded),
        )
        found = []
        for member, _ in res or []:
            try:
                driver_id = int(member)
            except (TypeError, ValueError):
                continue
            if driver_id in excluded:
                continue
            # the GEO set can lag behind the hash; the hash is authoritative
            state = await self.get_state(driver_id)
            if not state or not state["available"]:
                continue
            dist = haversine_km((lat, lon), (state["lat"], state["lon"]))
            if dist <= radius_km:
                found.append((driver_id, round(dist, 3)))
            if len(found) >= limit:
                break
        return found

    async def invalidate(self, driver_id: int, vehicle_class: str | None = None):
        """Remove driver from the hash and the geo index."""
        await self.redis.delete(_driver_key(driver_id))
        classes = [vehicle_class] if vehicle_class else models.VEHICLE_CLASSES
        for cls in classes:
            await self.redis.zrem(_geo_key(cls), str(driver_id))
        logger.info("cache_invalidated: driver=%s", driver_id)

    async def cleanup_stale(self) -> int:
        """Drop geo members whose driver hash has expired."""
        removed = 0
        try:
            for cls in models.VEHICLE_CLASSES:
                geo_key = _geo_key(cls)
                for member in await self.redis.zrange(geo_key, 0, -1):
                    if not await self.redis.exists(_driver_key(member)):
                        await self.redis.zrem(geo_key, member)
                        removed += 1
            if removed:
                logger.info("cleanup_stale_drivers: removed %d stale drivers from geo index", removed)
        except Exception as e:
            logger.error("cleanup_stale_drivers: error during cleanup: %s", e)
        return removed
