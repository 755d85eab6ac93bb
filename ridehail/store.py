"""Ride record store.

Every mutation the core needs is a single statement in its own short
transaction. Status changes go through `conditional_update`, an
``UPDATE ... WHERE status IN (...) AND <field preconditions> RETURNING *``;
whichever caller's statement matches first wins and the others get ``None``.
That is the only synchronization the matching and lifecycle code rely on.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional
import logging

from sqlalchemy import select, insert, update, and_, or_, func, literal, desc
from sqlalchemy.ext.asyncio import AsyncEngine

from . import models
from .db import init_db

logger = logging.getLogger(__name__)

rides = models.rides


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # sqlite hands back naive datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class RideStore:
    def __init__(self, engine: AsyncEngine):
        self.engine = engine

    async def create_schema(self):
        await init_db(self.engine)

    # ---- rides ----

    async def insert_ride(self, values: Dict[str, Any]) -> dict:
        async with self.engine.begin() as conn:
            res = await conn.execute(insert(rides).returning(*rides.c).values(**values))
            row = res.first()
        logger.info("insert_ride: ride=%s rider=%s status=%s", row.id, row.rider_id, row.status)
        return dict(row._mapping)

    async def get_ride(self, ride_id: int) -> Optional[dict]:
        async with self.engine.connect() as conn:
            row = (await conn.execute(select(rides).where(rides.c.id == ride_id))).first()
        return dict(row._mapping) if row else None

    async def conditional_update(
        self,
        ride_id: int,
        values: Dict[str, Any],
        statuses: Iterable[str],
        **expected: Any,
    ) -> Optional[dict]:
        """Apply `values` only if the ride's status is in `statuses` and every
        `expected` column holds the given value (None means IS NULL).

        Returns the updated row, or None when the precondition did not hold.
        """
        conds = [rides.c.id == ride_id, rides.c.status.in_(list(statuses))]
        for name, value in expected.items():
            col = rides.c[name]
            conds.append(col.is_(None) if value is None else col == value)
        async with self.engine.begin() as conn:
            res = await conn.execute(update(rides).where(and_(*conds)).values(**values).returning(*rides.c))
            row = res.first()
        if row is None:
            logger.debug("conditional_update: ride=%s precondition failed statuses=%s expected=%s", ride_id, statuses, expected)
            return None
        return dict(row._mapping)

    async def claim_ride(self, ride_id: int, driver_id: int, vehicle_class: str, values: Dict[str, Any]) -> Optional[dict]:
        """Assign an open, unassigned ride of `vehicle_class` to a driver who has no active ride.

        The driver's user row is written first so that two claims by the same
        driver run one after the other; the second then sees the first ride in
        its NOT EXISTS check. Returns None when any precondition fails.
        """
        u = models.users
        other = rides.alias("other")
        busy = select(other.c.id).where(and_(
            other.c.driver_id == driver_id,
            other.c.status.in_(models.ACTIVE_STATUSES),
        )).exists()
        stmt = (
            update(rides)
            .where(and_(
                rides.c.id == ride_id,
                rides.c.status.in_(models.OPEN_STATUSES),
                rides.c.driver_id.is_(None),
                rides.c.vehicle_class == vehicle_class,
                ~busy,
            ))
            .values(driver_id=driver_id, **values)
            .returning(*rides.c)
        )
        async with self.engine.begin() as conn:
            await conn.execute(update(u).where(u.c.id == driver_id).values(id=u.c.id))
            row = (await conn.execute(stmt)).first()
        if row is None:
            logger.debug("claim_ride: ride=%s driver=%s precondition failed", ride_id, driver_id)
            return None
        return dict(row._mapping)

    async def open_rides(self, vehicle_class: str, limit: int = 200) -> list:
        """Newest unassigned rides of a class still looking for a driver."""
        cond = and_(
            rides.c.vehicle_class == vehicle_class,
            rides.c.status.in_(models.OPEN_STATUSES),
            rides.c.driver_id.is_(None),
        )
        async with self.engine.connect() as conn:
            res = await conn.execute(select(rides).where(cond).order_by(desc(rides.c.created_at)).limit(limit))
            return [dict(r._mapping) for r in res]

    async def active_ride_for(self, user_id: int, role: str) -> Optional[dict]:
        if role == models.ROLE_DRIVER:
            cond = and_(rides.c.driver_id == user_id, rides.c.status.in_(models.ACTIVE_STATUSES))
        else:
            statuses = models.OPEN_STATUSES + models.ACTIVE_STATUSES
            cond = and_(rides.c.rider_id == user_id, rides.c.status.in_(statuses))
        async with self.engine.connect() as conn:
            row = (await conn.execute(select(rides).where(cond).order_by(desc(rides.c.id)).limit(1))).first()
        return dict(row._mapping) if row else None

    # ---- tracking ----

    async def append_tracking(self, ride_id: int, driver_id: int, lat: float, lon: float, speed: float, heading: float) -> Optional[dict]:
        """Append a tracking point iff the ride is `started` and driven by `driver_id`.

        Timestamps never go backwards within a ride.
        """
        t = models.ride_tracking
        async with self.engine.begin() as conn:
            last = (await conn.execute(select(func.max(t.c.recorded_at)).where(t.c.ride_id == ride_id))).scalar()
            recorded_at = utcnow()
            last = as_utc(last)
            if last is not None and last > recorded_at:
                recorded_at = last
            guard = select(
                literal(ride_id), literal(lat), literal(lon), literal(speed), literal(heading), literal(recorded_at, models.ride_tracking.c.recorded_at.type)
            ).where(and_(rides.c.id == ride_id, rides.c.status == models.RIDE_STARTED, rides.c.driver_id == driver_id))
            res = await conn.execute(
                insert(t).from_select(["ride_id", "lat", "lon", "speed", "heading", "recorded_at"], guard)
            )
            if res.rowcount != 1:
                return None
        return {"ride_id": ride_id, "lat": lat, "lon": lon, "speed": speed, "heading": heading, "recorded_at": recorded_at}

    async def tracking_log(self, ride_id: int) -> list:
        t = models.ride_tracking
        async with self.engine.connect() as conn:
            res = await conn.execute(select(t).where(t.c.ride_id == ride_id).order_by(t.c.id))
            return [dict(r._mapping) for r in res]

    # ---- users ----

    async def get_user(self, user_id: int) -> Optional[dict]:
        u = models.users
        async with self.engine.connect() as conn:
            row = (await conn.execute(select(u).where(u.c.id == user_id))).first()
        return dict(row._mapping) if row else None

    async def find_user(self, email: str | None = None, phone: str | None = None) -> Optional[dict]:
        u = models.users
        conds = []
        if email:
            conds.append(u.c.email == email)
        if phone:
            conds.append(u.c.phone == phone)
        if not conds:
            return None
        async with self.engine.connect() as conn:
            row = (await conn.execute(select(u).where(or_(*conds)))).first()
        return dict(row._mapping) if row else None

    async def insert_user(self, values: Dict[str, Any]) -> dict:
        u = models.users
        values.setdefault("created_at", utcnow())
        async with self.engine.begin() as conn:
            row = (await conn.execute(insert(u).returning(*u.c).values(**values))).first()
        logger.info("insert_user: user=%s role=%s", row.id, row.role)
        return dict(row._mapping)

    async def update_user(self, user_id: int, values: Dict[str, Any]) -> Optional[dict]:
        u = models.users
        async with self.engine.begin() as conn:
            row = (await conn.execute(update(u).where(u.c.id == user_id).values(**values).returning(*u.c))).first()
        return dict(row._mapping) if row else None

    # ---- aggregates ----

    async def average_rating(self, driver_id: int) -> Optional[float]:
        cond = and_(
            rides.c.driver_id == driver_id,
            rides.c.status == models.RIDE_COMPLETED,
            rides.c.rating.is_not(None),
        )
        async with self.engine.connect() as conn:
            avg = (await conn.execute(select(func.avg(rides.c.rating)).where(cond))).scalar()
        return float(avg) if avg is not None else None

    async def earnings_summary(self, driver_id: int, since: datetime) -> dict:
        cond = and_(
            rides.c.driver_id == driver_id,
            rides.c.status == models.RIDE_COMPLETED,
            rides.c.completed_at >= since,
        )
        stmt = select(
            func.coalesce(func.sum(rides.c.final_amount), 0.0),
            func.count(rides.c.id),
            func.avg(rides.c.final_amount),
        ).where(cond)
        async with self.engine.connect() as conn:
            total, count, average = (await conn.execute(stmt)).one()
        return {
            "total_earnings": round(float(total or 0), 2),
            "total_rides": int(count or 0),
            "average_fare": round(float(average), 2) if average is not None else 0.0,
        }

    # ---- idempotency ----

    async def get_idempotent_response(self, key: str, rider_id: int) -> Optional[dict]:
        ik = models.idempotency_keys
        async with self.engine.connect() as conn:
            row = (await conn.execute(
                select(ik.c.response).where(and_(ik.c.key == key, ik.c.rider_id == rider_id))
            )).first()
        return row[0] if row else None

    async def save_idempotent_response(self, key: str, rider_id: int, response: dict):
        ik = models.idempotency_keys
        async with self.engine.begin() as conn:
            await conn.execute(insert(ik).values(key=key, rider_id=rider_id, response=response, created_at=utcnow()))
