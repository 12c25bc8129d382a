import threading
from datetime import datetime, timedelta, timezone

import mongomock
import pytest

from database import MemoryDatastore, MongoDatastore
from schemas import COLLECTORS, Actor, CollectionRequestIn, CollectorIn, GeoPoint, LocationIn
from wastebolt.container import build_services
from wastebolt.notifications import MessageChannel
from wastebolt.settings import Settings

# Nairobi CBD
CBD = GeoPoint(lat=-1.2864, lng=36.8172)


class RecordingChannel(MessageChannel):
    def __init__(self):
        self.sent = []
        self._lock = threading.Lock()

    def send(self, recipient, message):
        with self._lock:
            self.sent.append((recipient, message))

    def to(self, recipient):
        with self._lock:
            return [m for r, m in self.sent if r == recipient]


class FailingChannel(MessageChannel):
    def __init__(self):
        self.calls = 0

    def send(self, recipient, message):
        self.calls += 1
        raise RuntimeError("gateway down")


class FixedClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    # 12:00 in Nairobi, outside the evening peak
    return FixedClock(datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def settings(tmp_path):
    return Settings(
        jwt_secret="test-secret",
        admin_emails=["admin@example.com"],
        storage_dir=str(tmp_path / "uploads"),
        enable_background_jobs=False,
        notification_workers=2,
    )


@pytest.fixture
def channel():
    return RecordingChannel()


STORE_BACKENDS = ["memory", "mongo"]


def make_store(backend):
    if backend == "mongo":
        client = mongomock.MongoClient(tz_aware=True)
        return MongoDatastore("mongodb://localhost", "wastebolt_test", retry_base_s=0, client=client)
    return MemoryDatastore()


@pytest.fixture
def store():
    return make_store("memory")


@pytest.fixture
def services(settings, store, channel, clock):
    svc = build_services(settings, store=store, channel=channel, clock=clock)
    yield svc
    svc.notifier.shutdown()


@pytest.fixture
def customer():
    return Actor(id="cust-1", role="user")


@pytest.fixture
def admin():
    return Actor(id="admin-1", role="admin")


def offset(point, north_km=0.0, east_km=0.0):
    """A point roughly north_km/east_km away from point."""
    return GeoPoint(lat=point.lat + north_km / 111.32, lng=point.lng + east_km / 111.32)


def add_collector(
    services,
    user_id="col-user-1",
    at=CBD,
    specializations=("plastic", "organic", "hazardous", "electronic", "mixed"),
    capacity_kg=500.0,
    rating=0.0,
    online=True,
    phone="+254700000001",
    name="Juma",
):
    actor = Actor(id=user_id, role="collector")
    collector = services.collectors.register(
        CollectorIn(
            name=name,
            phone=phone,
            vehicle_type="truck",
            capacity_kg=capacity_kg,
            specializations=list(specializations),
        ),
        actor,
    )
    services.collectors.update_location(collector.id, at, actor)
    if online:
        services.collectors.set_availability(collector.id, True, actor)
    if rating:
        services.store.update_document(COLLECTORS, collector.id, {"rating_avg": rating, "rating_count": 10})
    return services.collectors.get(collector.id), actor


def request_in(waste_type="plastic", quantity=50, urgency="normal", at=CBD, **kwargs):
    return CollectionRequestIn(
        waste_type=waste_type,
        quantity=quantity,
        urgency=urgency,
        location=LocationIn(address="Kenyatta Ave", lat=at.lat, lng=at.lng),
        **kwargs,
    )


def add_request(services, actor, **kwargs):
    kwargs.setdefault("contact_phone", "+254711111111")
    return services.intake.submit(request_in(**kwargs), actor)
