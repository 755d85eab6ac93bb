import asyncio

import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from ridehail import models, services
from ridehail.auth import Principal
from ridehail.errors import RouteUnavailable
from ridehail.maps import RouteEstimate, haversine_km
from ridehail.schemas import Place, RideCreate


class FakeRedis:
    """In-memory async stand-in for the Redis commands the service uses."""

    def __init__(self):
        self.hashes = {}
        self.strings = {}
        self.geo = {}
        self.ttls = {}

    async def ping(self):
        return True

    async def hset(self, key, mapping=None):
        self.hashes.setdefault(key, {}).update({k: str(v) for k, v in (mapping or {}).items()})
        return len(mapping or {})

    async def hgetall(self, key):
        return dict(self.hashes.get(key, {}))

    async def hincrby(self, key, field, amount=1):
        h = self.hashes.setdefault(key, {})
        h[field] = str(int(h.get(field, 0)) + amount)
        return int(h[field])

    async def expire(self, key, seconds):
        self.ttls[key] = seconds
        return True

    async def set(self, key, value):
        self.strings[key] = str(value)
        return True

    async def get(self, key):
        return self.strings.get(key)

    async def exists(self, *keys):
        return sum(1 for k in keys if k in self.hashes or k in self.strings)

    async def delete(self, *keys):
        removed = 0
        for k in keys:
            removed += int(self.hashes.pop(k, None) is not None)
            removed += int(self.strings.pop(k, None) is not None)
            self.ttls.pop(k, None)
        return removed

    async def geoadd(self, name, values):
        lon, lat, member = values
        self.geo.setdefault(name, {})[str(member)] = (float(lon), float(lat))
        return 1

    async def zrem(self, name, *members):
        s = self.geo.get(name, {})
        return sum(1 for m in members if s.pop(str(m), None) is not None)

    async def zrange(self, name, start, end):
        return list(self.geo.get(name, {}))

    async def geosearch(self, name, longitude=None, latitude=None, radius=None, unit="m",
                        withdist=False, sort=None, count=None, **kwargs):
        hits = []
        for member, (lon, lat) in self.geo.get(name, {}).items():
            dist = haversine_km((latitude, longitude), (lat, lon))
            if dist <= radius:
                hits.append([member, round(dist, 4)])
        hits.sort(key=lambda h: h[1], reverse=(sort == "DESC"))
        if count:
            hits = hits[:count]
        return hits if withdist else [h[0] for h in hits]


class StubRoutes:
    def __init__(self, distance_km=6.2, duration_min=18.0, fail=False):
        self.estimate_value = RouteEstimate(distance_km, duration_min)
        self.fail = fail
        self.calls = 0

    async def estimate(self, origin, destination):
        self.calls += 1
        if self.fail:
            raise RouteUnavailable("unable to calculate route")
        return self.estimate_value


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    def ride_accepted(self, rider, ride, driver):
        self.sent.append(("ride_accepted", rider and rider.get("email"), ride["id"]))

    def ride_cancelled(self, recipient, ride):
        self.sent.append(("ride_cancelled", recipient and recipient.get("email"), ride["id"]))

    def otp(self, email, code, template="signup_otp"):
        self.sent.append((template, email, code))


class Collector:
    """Fake WebSocket connection recording what the bus sends it."""

    def __init__(self, fail=False):
        self.messages = []
        self.fail = fail

    async def send_json(self, message):
        if self.fail:
            raise RuntimeError("socket closed")
        self.messages.append(message)

    def events(self):
        return [m["event"] for m in self.messages]


PICKUP = {"lat": 12.9, "lon": 77.6, "address": "MG Road"}
DESTINATION = {"lat": 12.95, "lon": 77.65, "address": "Indiranagar"}


def ride_request(**overrides) -> RideCreate:
    data = {
        "pickup": Place(**PICKUP),
        "destination": Place(**DESTINATION),
        "vehicle_class": "Car",
        "payment_method": "card",
    }
    data.update(overrides)
    return RideCreate(**data)


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def routes_stub():
    return StubRoutes()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
async def engine(tmp_path):
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ridehail.db'}", poolclass=NullPool)
    async with eng.begin() as conn:
        await conn.run_sync(models.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
async def core(engine, fake_redis, routes_stub, notifier):
    services.configure(
        engine=engine,
        redis=fake_redis,
        route_provider=routes_stub,
        notifier_=notifier,
        offer_timeout_sec=5,
        max_rounds=2,
    )
    yield services
    await services.dispatcher.shutdown()


@pytest.fixture
def make_user(core):
    counter = {"n": 0}

    async def _make(role=models.ROLE_REQUESTER, vehicle_class=None, is_active=True, is_verified=True, **extra):
        counter["n"] += 1
        n = counter["n"]
        user = await core.store.insert_user(dict({
            "name": f"{role}-{n}",
            "email": f"{role}{n}@example.com",
            "phone": f"+91990000{n:04d}",
            "role": role,
            "is_active": is_active,
            "is_verified": is_verified,
            "vehicle_class": vehicle_class,
        }, **extra))
        return Principal.from_user(user)

    return _make


@pytest.fixture
def online_driver(core, make_user):
    """Driver registered near the default pickup and available for offers."""

    async def _online(vehicle_class="Car", lat=PICKUP["lat"] + 0.01, lon=PICKUP["lon"]):
        driver = await make_user(models.ROLE_DRIVER, vehicle_class=vehicle_class)
        await core.locator.update_location(driver.id, lat, lon, vehicle_class)
        return driver

    return _online


def settle():
    """Give fire-and-forget tasks a chance to run."""
    return asyncio.sleep(0)
