"""Matching: find nearby drivers, offer them a ride, settle who gets it.

Offer rounds live only in this process's memory. The store's conditional
claim decides the winner, so a round that is lost on restart costs at most a
re-dispatch, never a double assignment.
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Set, Tuple
import logging

from .config import settings
from .errors import RideError, RideNotFound, RideUnavailable
from .lifecycle import ride_summary
from . import events, models

logger = logging.getLogger(__name__)

OFFERED = "offered"
NO_DRIVER_FOUND = "no_driver_found"


@dataclass
class OfferRound:
    ride_id: int
    candidates: Set[int]
    expires_at: datetime
    radius_km: float
    attempt: int = 1
    notified: Set[int] = field(default_factory=set)


@dataclass
class DispatchResult:
    ride_id: int
    outcome: str
    candidates: List[Tuple[int, float]]
    radius_km: float
    attempt: int
    expires_at: Optional[datetime] = None


class Dispatcher:
    def __init__(
        self,
        lifecycle,
        locator,
        bus,
        radius_km: float | None = None,
        max_radius_km: float | None = None,
        radius_growth: float | None = None,
        fanout: int | None = None,
        offer_timeout_sec: float | None = None,
        max_rounds: int | None = None,
    ):
        self.lifecycle = lifecycle
        self.locator = locator
        self.bus = bus
        self.radius_km = radius_km or settings.MATCH_RADIUS_KM
        self.max_radius_km = max(max_radius_km or settings.MAX_RADIUS_KM, self.radius_km)
        self.radius_growth = radius_growth or settings.RADIUS_GROWTH
        self.fanout = fanout or settings.OFFER_FANOUT
        self.offer_timeout_sec = offer_timeout_sec if offer_timeout_sec is not None else settings.OFFER_TIMEOUT_SEC
        self.max_rounds = max_rounds or settings.MAX_OFFER_ROUNDS
        self._rounds: Dict[int, OfferRound] = {}
        self._declined: Dict[int, Set[int]] = {}
        self._timers: Dict[int, asyncio.Task] = {}

    def current_round(self, ride_id: int) -> Optional[OfferRound]:
        return self._rounds.get(ride_id)

    def _relaxed(self, radius_km: float) -> float:
        return min(radius_km * self.radius_growth, self.max_radius_km)

    def _cancel_timer(self, ride_id: int):
        task = self._timers.pop(ride_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def dispatch(self, ride_id: int, attempt: int = 1, radius_km: float | None = None) -> DispatchResult:
        """Run one matching attempt for an open ride.

        Moves the ride to `searching`, looks for available drivers of the
        ride's class, widening the radius while nobody is found, and offers
        the ride to the nearest `fanout` of them. Raises RideUnavailable or
        AlreadyFinalized if the ride is no longer open.
        """
        ride = await self.lifecycle.begin_search(ride_id)
        radius = radius_km or self.radius_km
        pickup = ride["pickup"]
        declined = self._declined.get(ride_id, set())
        self._cancel_timer(ride_id)
        self._rounds.pop(ride_id, None)

        while True:
            found = await self.locator.nearby(
                pickup["lat"], pickup["lon"], radius, ride["vehicle_class"], self.fanout, exclude=declined
            )
            if found or attempt >= self.max_rounds or radius >= self.max_radius_km:
                break
            logger.info("dispatch_widen: ride=%s attempt=%s radius_km=%s", ride_id, attempt, radius)
            attempt += 1
            radius = self._relaxed(radius)

        if not found:
            logger.info("dispatch_no_driver: ride=%s radius_km=%s attempt=%s", ride_id, radius, attempt)
            self._declined.pop(ride_id, None)
            await self.bus.publish(events.user_room(ride["rider_id"]), events.NO_DRIVER_FOUND, {
                "rideId": ride_id,
                "message": "No drivers found nearby. Please try again later.",
            })
            return DispatchResult(ride_id, NO_DRIVER_FOUND, [], radius, attempt)

        expires_at = datetime.now(timezone.utc) + timedelta(seconds=self.offer_timeout_sec)
        offer_round = OfferRound(
            ride_id=ride_id,
            candidates={driver_id for driver_id, _ in found},
            expires_at=expires_at,
            radius_km=radius,
            attempt=attempt,
        )
        self._rounds[ride_id] = offer_round

        summary = ride_summary(ride)
        for driver_id, distance in found:
            await self.bus.publish(events.user_room(driver_id), events.NEW_RIDE_REQUEST, dict(
                summary, distanceToPickup=distance, expiresAt=expires_at,
            ))
            offer_round.notified.add(driver_id)
        self._timers[ride_id] = asyncio.create_task(self._round_timer(offer_round))
        logger.info("dispatch_offered: ride=%s candidates=%d radius_km=%s attempt=%s", ride_id, len(found), radius, attempt)
        return DispatchResult(ride_id, OFFERED, found, radius, attempt, expires_at)

    async def _round_timer(self, offer_round: OfferRound):
        await asyncio.sleep(self.offer_timeout_sec)
        if self._rounds.get(offer_round.ride_id) is not offer_round:
            return
        self._timers.pop(offer_round.ride_id, None)
        logger.info("offer_round_expired: ride=%s attempt=%s", offer_round.ride_id, offer_round.attempt)
        try:
            await self._next_round(offer_round)
        except Exception:
            # nobody awaits this task
            logger.exception("offer_round_failed: ride=%s attempt=%s", offer_round.ride_id, offer_round.attempt)

    async def _next_round(self, offer_round: OfferRound) -> Optional[DispatchResult]:
        """Re-broadcast with a relaxed radius, or tell the requester nobody took it."""
        ride_id = offer_round.ride_id
        self._rounds.pop(ride_id, None)
        if offer_round.attempt >= self.max_rounds:
            self._declined.pop(ride_id, None)
            ride = await self.lifecycle.store.get_ride(ride_id)
            if ride:
                await self.bus.publish(events.user_room(ride["rider_id"]), events.NO_DRIVER_FOUND, {
                    "rideId": ride_id,
                    "message": "No drivers accepted your ride request. Please try again later.",
                })
            logger.info("offer_rounds_exhausted: ride=%s", ride_id)
            return None
        try:
            return await self.dispatch(ride_id, offer_round.attempt + 1, self._relaxed(offer_round.radius_km))
        except RideError as e:
            # accepted or cancelled in the meantime
            logger.info("redispatch_skipped: ride=%s reason=%s", ride_id, e.code)
            return None

    async def accept(self, ride_id: int, driver) -> dict:
        """First accept wins; every other caller gets RideUnavailable."""
        ride = await self.lifecycle.claim(ride_id, driver)
        offer_round = self._rounds.pop(ride_id, None)
        self._cancel_timer(ride_id)
        self._declined.pop(ride_id, None)
        losers = [d for d in offer_round.notified if d != driver.id] if offer_round else []
        rooms = [events.user_room(d) for d in losers] + [events.drivers_room(ride["vehicle_class"])]
        await self.bus.publish(rooms, events.OFFER_WITHDRAWN, {
            "rideId": ride_id,
            "reason": "accepted",
        })
        return ride

    async def decline(self, ride_id: int, driver_id: int) -> Optional[DispatchResult]:
        """Drop a driver from the ride's offers; an emptied round is re-broadcast right away.

        Raises RideNotFound or RideUnavailable unless the ride is still looking for a driver.
        """
        ride = await self.lifecycle.store.get_ride(ride_id)
        if ride is None:
            raise RideNotFound(f"ride {ride_id} not found")
        if ride["status"] not in models.OPEN_STATUSES or ride["driver_id"] is not None:
            raise RideUnavailable(f"ride {ride_id} is no longer open")
        self._declined.setdefault(ride_id, set()).add(driver_id)
        offer_round = self._rounds.get(ride_id)
        logger.info("offer_declined: ride=%s driver=%s", ride_id, driver_id)
        if offer_round is None or driver_id not in offer_round.candidates:
            return None
        offer_round.candidates.discard(driver_id)
        if offer_round.candidates:
            return None
        self._cancel_timer(ride_id)
        return await self._next_round(offer_round)

    async def withdraw(self, ride_id: int, reason: str = "cancelled"):
        offer_round = self._rounds.pop(ride_id, None)
        self._cancel_timer(ride_id)
        self._declined.pop(ride_id, None)
        rooms = [events.user_room(d) for d in offer_round.notified] if offer_round else []
        ride = await self.lifecycle.store.get_ride(ride_id)
        if ride is not None:
            rooms.append(events.drivers_room(ride["vehicle_class"]))
        if rooms:
            await self.bus.publish(rooms, events.OFFER_WITHDRAWN, {
                "rideId": ride_id,
                "reason": reason,
            })

    async def cancel(self, ride_id: int, principal, reason: str = ""):
        result = await self.lifecycle.cancel(ride_id, principal, reason)
        await self.withdraw(ride_id)
        return result

    async def shutdown(self):
        for task in list(self._timers.values()):
            task.cancel()
        self._timers.clear()
        self._rounds.clear()
