"""
Shared fixtures for the crisis service tests.

Collaborators are in-memory fakes; SQL tests run against in-memory SQLite.

Run with: python -m pytest tests -v
"""

import asyncio
import os

# settings are read at import time
os.environ.setdefault("DB_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret")

import pytest
from sqlalchemy.orm import sessionmaker

from safeguard.core.events import EventBus
from safeguard.core.scheduler import TaskScheduler
from safeguard.db.database import build_engine, initialize_database
from safeguard.schemas.alert import AlertSeverity, AlertType
from safeguard.schemas.contact import (
    Availability,
    ContactEscalationLevel,
    ContactMethod,
    EmergencyContact,
    EmergencyContactCreate,
)
from safeguard.schemas.detection import ContextFactors, UserHistory
from safeguard.schemas.notification import NotificationMethod
from safeguard.schemas.panic import GeoLocation
from safeguard.services.persistence import select_for_level
from safeguard.utils.date_utils import new_id


# =============================================================================
# FAKE COLLABORATORS
# =============================================================================

def make_contact(
    user_id="client-1",
    *,
    contact_id=None,
    level=ContactEscalationLevel.PRIMARY,
    methods=None,
    availability=None,
):
    return EmergencyContact(
        id=contact_id or new_id("contact"),
        user_id=user_id,
        name="Dana Reyes",
        relationship="therapist",
        contact_methods=methods or [
            ContactMethod(type=NotificationMethod.PUSH, value="ExponentPushToken[abc]", priority=1),
            ContactMethod(type=NotificationMethod.SMS, value="+15550100", priority=2),
        ],
        availability=availability or Availability(),
        escalation_level=level,
    )


class FakeDirectory:
    """Contact directory; ``fail_lookups`` makes the next N lookups raise."""

    def __init__(self, contacts=None):
        self.contacts = list(contacts or [])
        self.fail_lookups = 0
        self.lookups = []

    async def resolve_contacts(self, user_id, level, severity, alert_type):
        self.lookups.append((user_id, level))
        if self.fail_lookups > 0:
            self.fail_lookups -= 1
            raise ConnectionError("directory unavailable")
        mine = [c for c in self.contacts if c.user_id == user_id]
        return select_for_level(mine, level, severity)

    async def get_contacts(self, user_id):
        return [c for c in self.contacts if c.user_id == user_id]

    async def get_contact(self, contact_id):
        return next((c for c in self.contacts if c.id == contact_id), None)

    async def add_contact(self, payload: EmergencyContactCreate):
        contact = EmergencyContact(id=new_id("contact"), **payload.model_dump())
        self.contacts.append(contact)
        return contact

    async def update_contact(self, contact_id, changes):
        contact = await self.get_contact(contact_id)
        updated = EmergencyContact.model_validate({
            **contact.model_dump(), **changes.model_dump(exclude_unset=True),
        })
        self.contacts = [updated if c.id == contact_id else c for c in self.contacts]
        return updated


class FakeChannel:
    """Records sends; ``fail_times`` failures first, or every send with ``always_fail``."""

    def __init__(self, *, fail_times=0, always_fail=False, delay=0.0):
        self.fail_times = fail_times
        self.always_fail = always_fail
        self.delay = delay
        self.attempts = 0
        self.sent = []

    async def send(self, contact, content, *, target):
        self.attempts += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.always_fail or self.fail_times > 0:
            self.fail_times = max(0, self.fail_times - 1)
            raise ConnectionError("gateway unavailable")
        self.sent.append((contact.id, target, content))


class FakeReferenceSource:
    def __init__(self, keywords=None, patterns=None, *, fail_patterns=False):
        self.keywords = keywords or []
        self.patterns = patterns or []
        self.fail_patterns = fail_patterns

    async def fetch_keywords(self):
        return list(self.keywords)

    async def fetch_patterns(self):
        if self.fail_patterns:
            raise ConnectionError("patterns endpoint down")
        return list(self.patterns)


class FakeContextSource:
    def __init__(self, context=None, *, delay=0.0):
        self.context = context
        self.delay = delay
        self.calls = 0

    async def fetch_context(self, user_id, conversation_id):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.context


class FakeGeolocation:
    def __init__(self, location=None, *, delay=0.0):
        self.location = location
        self.delay = delay

    async def current_location(self, user_id):
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.location

    async def watch(self, user_id):
        await asyncio.sleep(3600)
        return None


class FakeDispatch:
    def __init__(self, *, fail=False):
        self.fail = fail
        self.payloads = []

    async def dispatch(self, payload):
        if self.fail:
            raise ConnectionError("dispatch rejected")
        self.payloads.append(payload)


class FakeProtocolSource:
    def __init__(self, protocol=None):
        self.protocol = protocol

    async def get_protocol(self, alert_type: AlertType, severity: AlertSeverity):
        return self.protocol


def late_night_context(previous_alerts=3):
    return ContextFactors(
        time_of_day=23,
        day_of_week=5,
        previous_alerts=previous_alerts,
        user_history=UserHistory(has_history=True, frequency=2),
    )


def next_event(bus, name):
    """Future resolved with the data of the next ``name`` event."""
    future = asyncio.get_running_loop().create_future()

    def _resolve(data):
        if not future.done():
            future.set_result(data)

    bus.on(name, _resolve)
    return future


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
async def scheduler():
    sched = TaskScheduler()
    yield sched
    sched.cancel_all()


@pytest.fixture
def recorder(bus):
    """Collects emitted events as (name, data) pairs for the given names."""
    class Recorder:
        def __init__(self):
            self.events = []

        def watch(self, *names):
            for name in names:
                bus.on(name, lambda data, name=name: self.events.append((name, data)))
            return self

        def of(self, name):
            return [data for event, data in self.events if event == name]

    return Recorder()


@pytest.fixture
def sqlite_session_factory():
    engine = build_engine("sqlite://")
    initialize_database(engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def location():
    return GeoLocation(latitude=10.3157, longitude=123.8854, accuracy=12.0)
