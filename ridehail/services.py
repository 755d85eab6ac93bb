"""Process-wide service objects.

Routes and the WebSocket endpoint reach the core through these module
attributes; `configure()` rebuilds them around a different engine or Redis
client (tests use it with SQLite and an in-memory Redis stand-in).
"""
import logging

from . import db
from .cache import redis_client
from .dispatch import Dispatcher
from .events import EventBus
from .lifecycle import RideLifecycle
from .locator import DriverLocator
from .maps import make_route_provider
from .notifications import Notifier
from .signup import SignupStore
from .store import RideStore

logger = logging.getLogger(__name__)

store: RideStore
locator: DriverLocator
bus: EventBus
notifier: Notifier
signups: SignupStore
logins: SignupStore
lifecycle: RideLifecycle
dispatcher: Dispatcher


def configure(engine=None, redis=None, route_provider=None, notifier_=None, **dispatch_options):
    global store, locator, bus, notifier, signups, logins, lifecycle, dispatcher
    redis = redis if redis is not None else redis_client
    store = RideStore(engine if engine is not None else db.engine)
    locator = DriverLocator(redis)
    bus = EventBus()
    notifier = notifier_ if notifier_ is not None else Notifier()
    signups = SignupStore(redis)
    logins = SignupStore(redis, prefix="login")
    lifecycle = RideLifecycle(store, bus, locator, notifier, route_provider or make_route_provider())
    dispatcher = Dispatcher(lifecycle, locator, bus, **dispatch_options)
    logger.debug("services_configured: engine=%s", store.engine.url)


configure()
