"""Ride state machine.

pending -> searching -> accepted -> arrived -> started -> completed, with
cancelled reachable from every non-terminal state. Each transition is applied
as one conditional update against the store; the guard that decides whether
it may happen is re-checked by the update's WHERE clause, so a stale read can
only ever turn into a rejected transition, never a wrong one.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
import logging

from . import events, fares, models
from .auth import Principal
from .errors import (
    AlreadyFinalized,
    InvalidTransition,
    RideNotFound,
    RideUnavailable,
    Unauthorized,
    ValidationError,
    VehicleMismatch,
)
from .ratings import recompute_driver_rating
from .store import utcnow

logger = logging.getLogger(__name__)


TRANSITIONS = {
    models.RIDE_PENDING: {models.RIDE_SEARCHING, models.RIDE_ACCEPTED, models.RIDE_CANCELLED},
    models.RIDE_SEARCHING: {models.RIDE_ACCEPTED, models.RIDE_CANCELLED},
    models.RIDE_ACCEPTED: {models.RIDE_ARRIVED, models.RIDE_CANCELLED},
    models.RIDE_ARRIVED: {models.RIDE_STARTED, models.RIDE_CANCELLED},
    models.RIDE_STARTED: {models.RIDE_COMPLETED, models.RIDE_CANCELLED},
    models.RIDE_COMPLETED: set(),
    models.RIDE_CANCELLED: set(),
}

# driver-initiated step -> the status it must come from
DRIVER_STEPS = {
    models.RIDE_ARRIVED: models.RIDE_ACCEPTED,
    models.RIDE_STARTED: models.RIDE_ARRIVED,
    models.RIDE_COMPLETED: models.RIDE_STARTED,
}

TIMESTAMP_COLUMNS = {
    models.RIDE_SEARCHING: "searching_at",
    models.RIDE_ACCEPTED: "accepted_at",
    models.RIDE_ARRIVED: "arrived_at",
    models.RIDE_STARTED: "started_at",
    models.RIDE_COMPLETED: "completed_at",
    models.RIDE_CANCELLED: "cancelled_at",
}

REQUESTER_CANCELLABLE = (models.RIDE_PENDING, models.RIDE_SEARCHING, models.RIDE_ACCEPTED, models.RIDE_ARRIVED)
DRIVER_CANCELLABLE = (models.RIDE_ACCEPTED, models.RIDE_ARRIVED, models.RIDE_STARTED)

CANCEL_RETRIES = 3


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, set())


@dataclass
class CancelResult:
    ride: dict
    fee: float
    refund: float


def ride_summary(ride: dict) -> dict:
    return {
        "rideId": ride["id"],
        "status": ride["status"],
        "riderId": ride["rider_id"],
        "driverId": ride["driver_id"],
        "vehicleClass": ride["vehicle_class"],
        "pickup": ride["pickup"],
        "destination": ride["destination"],
        "fare": ride["final_amount"],
        "distance": ride["distance_km"],
        "duration": ride["duration_min"],
    }


class RideLifecycle:
    def __init__(self, store, bus, locator, notifier, route_provider):
        self.store = store
        self.bus = bus
        self.locator = locator
        self.notifier = notifier
        self.route_provider = route_provider

    # ---- helpers ----

    async def _load(self, ride_id: int) -> dict:
        ride = await self.store.get_ride(ride_id)
        if not ride:
            raise RideNotFound(f"ride {ride_id} not found")
        return ride

    async def _emit(self, ride: dict, event: str, extra: Optional[dict] = None):
        rooms = [events.ride_room(ride["id"]), events.user_room(ride["rider_id"])]
        if ride.get("driver_id"):
            rooms.append(events.user_room(ride["driver_id"]))
        payload = ride_summary(ride)
        if extra:
            payload.update(extra)
        await self.bus.publish(rooms, event, payload)

    async def _restore_driver(self, driver_id: Optional[int]):
        # policy: a driver goes back on offer automatically once their ride ends
        if not driver_id:
            return
        try:
            await self.locator.release(driver_id)
        except Exception:
            logger.exception("restore_driver: driver=%s failed to restore availability", driver_id)

    # ---- creation ----

    async def create_ride(self, principal: Principal, req, surge: float = 1.0) -> dict:
        """Price and persist a new ride in `pending`.

        The route estimate is fetched before anything is written, so a
        RouteUnavailable leaves no trace in the store.
        """
        if principal.role != models.ROLE_REQUESTER:
            raise Unauthorized("only requesters can request rides")
        if not principal.is_verified:
            raise Unauthorized("account is not verified")
        pickup = (req.pickup.lat, req.pickup.lon)
        destination = (req.destination.lat, req.destination.lon)
        if pickup == destination:
            raise ValidationError("pickup and destination must differ")
        if req.vehicle_class not in models.VEHICLE_CLASSES:
            raise ValidationError(f"unknown vehicle class {req.vehicle_class!r}")
        if req.payment_method not in models.PAYMENT_METHODS:
            raise ValidationError(f"unsupported payment method {req.payment_method!r}")
        if req.scheduled_time is not None:
            scheduled = req.scheduled_time
            if scheduled.tzinfo is None:
                scheduled = scheduled.replace(tzinfo=timezone.utc)
            if scheduled < datetime.now(timezone.utc):
                raise ValidationError("scheduled time is in the past")
        existing = await self.store.active_ride_for(principal.id, principal.role)
        if existing:
            raise InvalidTransition(f"ride {existing['id']} is still active")

        route = await self.route_provider.estimate(pickup, destination)
        price = fares.fare(route.distance_km, route.duration_min, req.vehicle_class, surge)

        ride = await self.store.insert_ride({
            "rider_id": principal.id,
            "vehicle_class": req.vehicle_class,
            "pickup": req.pickup.model_dump(),
            "destination": req.destination.model_dump(),
            "distance_km": route.distance_km,
            "duration_min": route.duration_min,
            "base_fare": price.base,
            "distance_fare": price.distance_fare,
            "time_fare": price.time_fare,
            "total_fare": price.total,
            "surge_multiplier": price.surge_multiplier,
            "final_amount": price.total,
            "passengers": req.passengers,
            "luggage": req.luggage,
            "special_requests": req.special_requests,
            "scheduled_time": req.scheduled_time,
            "payment_method": req.payment_method,
            "status": models.RIDE_PENDING,
            "created_at": utcnow(),
        })
        logger.info("ride_created: ride=%s rider=%s class=%s fare=%s", ride["id"], principal.id, ride["vehicle_class"], ride["final_amount"])
        return ride

    # ---- transitions ----

    async def begin_search(self, ride_id: int) -> dict:
        """pending -> searching. A ride already searching is returned unchanged."""
        ride = await self.store.conditional_update(
            ride_id,
            {"status": models.RIDE_SEARCHING, "searching_at": utcnow()},
            [models.RIDE_PENDING],
        )
        if ride is not None:
            logger.info("begin_search: ride=%s", ride_id)
            await self._emit(ride, events.RIDE_STATUS_UPDATE)
            return ride
        ride = await self._load(ride_id)
        if ride["status"] == models.RIDE_SEARCHING:
            return ride
        if ride["status"] in models.TERMINAL_STATUSES:
            raise AlreadyFinalized(f"ride {ride_id} is {ride['status']}")
        raise RideUnavailable(f"ride {ride_id} is already {ride['status']}")

    async def claim(self, ride_id: int, driver: Principal) -> dict:
        """Atomically assign `driver` to an open ride.

        Only the dispatcher calls this. Among concurrent callers for one ride
        exactly one claim matches; everyone else gets RideUnavailable. A driver
        racing for two rides gets at most one and InvalidTransition for the rest.
        """
        if not driver.is_driver:
            raise Unauthorized("only drivers can accept rides")
        ride = await self._load(ride_id)
        if ride["status"] not in models.OPEN_STATUSES or ride["driver_id"] is not None:
            raise RideUnavailable(f"ride {ride_id} is no longer available")
        if driver.vehicle_class != ride["vehicle_class"]:
            raise VehicleMismatch(f"ride needs {ride['vehicle_class']}, driver has {driver.vehicle_class}")
        busy = await self.store.active_ride_for(driver.id, models.ROLE_DRIVER)
        if busy:
            raise InvalidTransition(f"driver already has active ride {busy['id']}")

        claimed = await self.store.claim_ride(
            ride_id,
            driver.id,
            driver.vehicle_class,
            {"status": models.RIDE_ACCEPTED, "accepted_at": utcnow()},
        )
        if claimed is None:
            logger.info("claim_lost: ride=%s driver=%s", ride_id, driver.id)
            busy = await self.store.active_ride_for(driver.id, models.ROLE_DRIVER)
            if busy:
                raise InvalidTransition(f"driver already has active ride {busy['id']}")
            raise RideUnavailable(f"ride {ride_id} is no longer available")
        logger.info("claim_won: ride=%s driver=%s", ride_id, driver.id)

        try:
            await self.locator.mark_busy(driver.id, ride_id)
        except Exception:
            logger.exception("claim: driver=%s failed to clear availability", driver.id)

        await self._emit(claimed, events.RIDE_ACCEPTED, {"driver": {
            "id": driver.id,
            "name": driver.name,
            "phone": driver.phone,
            "vehicleClass": driver.vehicle_class,
            "vehicleNumber": driver.vehicle_number,
            "rating": driver.rating,
        }})
        rider = await self.store.get_user(claimed["rider_id"])
        self.notifier.ride_accepted(rider, claimed, {"name": driver.name, "phone": driver.phone})
        return claimed

    async def advance(self, ride_id: int, driver: Principal, target: str) -> dict:
        """Driver-initiated step: accepted -> arrived -> started -> completed."""
        ride = await self._load(ride_id)
        if ride["driver_id"] is None or ride["driver_id"] != driver.id:
            raise Unauthorized("only the assigned driver can update this ride")
        if ride["status"] in models.TERMINAL_STATUSES:
            raise AlreadyFinalized(f"ride {ride_id} is {ride['status']}")
        previous = DRIVER_STEPS.get(target)
        if previous is None or ride["status"] != previous:
            raise InvalidTransition(f"cannot move ride from {ride['status']} to {target}")

        updated = await self.store.conditional_update(
            ride_id,
            {"status": target, TIMESTAMP_COLUMNS[target]: utcnow()},
            [previous],
            driver_id=driver.id,
        )
        if updated is None:
            current = await self._load(ride_id)
            if current["status"] in models.TERMINAL_STATUSES:
                raise AlreadyFinalized(f"ride {ride_id} is {current['status']}")
            raise InvalidTransition(f"cannot move ride from {current['status']} to {target}")
        logger.info("ride_status: ride=%s %s -> %s", ride_id, previous, target)

        if target == models.RIDE_COMPLETED:
            await self._restore_driver(driver.id)
        await self._emit(updated, events.RIDE_STATUS_UPDATE)
        return updated

    async def cancel(self, ride_id: int, principal: Principal, reason: str = "") -> CancelResult:
        """Cancel a non-terminal ride.

        The requester may cancel up to `arrived` and pays a fee once a driver
        is on the way; the assigned driver may cancel from `accepted` through
        `started` at no charge to the requester. The update is a
        compare-and-swap on the status that was read, retried if another
        transition lands in between.
        """
        for _ in range(CANCEL_RETRIES):
            ride = await self._load(ride_id)
            if principal.id == ride["rider_id"]:
                actor, allowed = models.ROLE_REQUESTER, REQUESTER_CANCELLABLE
            elif ride["driver_id"] is not None and principal.id == ride["driver_id"]:
                actor, allowed = models.ROLE_DRIVER, DRIVER_CANCELLABLE
            else:
                raise Unauthorized("only the requester or assigned driver can cancel")
            status = ride["status"]
            if status in models.TERMINAL_STATUSES:
                raise AlreadyFinalized(f"ride {ride_id} is {status}")
            if status not in allowed:
                raise InvalidTransition(f"{actor} cannot cancel a ride that is {status}")

            fee = fares.cancellation_fee(ride["final_amount"], status) if actor == models.ROLE_REQUESTER else 0.0
            updated = await self.store.conditional_update(
                ride_id,
                {
                    "status": models.RIDE_CANCELLED,
                    "cancelled_at": utcnow(),
                    "cancelled_by": actor,
                    "cancel_reason": reason or "No reason provided",
                    "cancellation_fee": fee,
                },
                [status],
                driver_id=ride["driver_id"],
            )
            if updated is not None:
                break
            logger.info("cancel_retry: ride=%s status moved from %s", ride_id, status)
        else:
            raise InvalidTransition(f"ride {ride_id} changed while cancelling; retry")

        refund = fares.refund_amount(updated["final_amount"], fee)
        logger.info("ride_cancelled: ride=%s by=%s status_was=%s fee=%s refund=%s", ride_id, actor, status, fee, refund)

        driver_id = updated["driver_id"]
        await self._restore_driver(driver_id)
        await self._emit(updated, events.RIDE_CANCELLED, {"cancelledBy": actor, "fee": fee})
        if driver_id:
            counterparty_id = driver_id if actor == models.ROLE_REQUESTER else updated["rider_id"]
            counterparty = await self.store.get_user(counterparty_id)
            self.notifier.ride_cancelled(counterparty, updated)
        return CancelResult(ride=updated, fee=fee, refund=refund)

    # ---- ride data ----

    async def track(self, ride_id: int, driver: Principal, lat: float, lon: float, speed: float = 0.0, heading: float = 0.0) -> dict:
        ride = await self._load(ride_id)
        if ride["driver_id"] is None or ride["driver_id"] != driver.id:
            raise Unauthorized("only the assigned driver can track this ride")
        if ride["status"] in models.TERMINAL_STATUSES:
            raise AlreadyFinalized(f"ride {ride_id} is {ride['status']}")
        if ride["status"] != models.RIDE_STARTED:
            raise InvalidTransition("tracking is only accepted while the ride is started")
        point = await self.store.append_tracking(ride_id, driver.id, lat, lon, speed, heading)
        if point is None:
            raise InvalidTransition("ride is no longer in progress")
        try:
            await self.locator.update_location(driver.id, lat, lon, ride["vehicle_class"])
        except Exception:
            logger.exception("track: driver=%s failed to refresh location", driver.id)
        await self.bus.publish(events.ride_room(ride_id), events.RIDE_LOCATION_UPDATE, {
            "rideId": ride_id,
            "coordinates": {"lat": lat, "lon": lon},
            "speed": speed,
            "heading": heading,
            "timestamp": point["recorded_at"],
        })
        return point

    async def rate(self, ride_id: int, principal: Principal, rating: int, feedback: str = "") -> dict:
        """Record the requester's rating once, then refresh the driver's average."""
        if not 1 <= rating <= 5:
            raise ValidationError("rating must be between 1 and 5")
        ride = await self._load(ride_id)
        if principal.id != ride["rider_id"]:
            raise Unauthorized("only the requester can rate this ride")
        if ride["status"] != models.RIDE_COMPLETED:
            raise InvalidTransition("only completed rides can be rated")
        updated = await self.store.conditional_update(
            ride_id,
            {"rating": rating, "feedback": feedback, "rated_at": utcnow()},
            [models.RIDE_COMPLETED],
            rating=None,
        )
        if updated is None:
            raise InvalidTransition("ride already rated")
        logger.info("ride_rated: ride=%s driver=%s rating=%s", ride_id, updated["driver_id"], rating)
        if updated["driver_id"]:
            await recompute_driver_rating(self.store, updated["driver_id"])
        return updated

    async def get_ride(self, ride_id: int, principal: Principal) -> dict:
        ride = await self._load(ride_id)
        if principal.id not in (ride["rider_id"], ride["driver_id"]):
            raise Unauthorized("unauthorized access to ride")
        return ride

    async def current_ride(self, principal: Principal) -> Optional[dict]:
        return await self.store.active_ride_for(principal.id, principal.role)
