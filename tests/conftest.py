from datetime import date, datetime

import pytest
import pytz

from adherence import AdherenceTracker
from config import Settings
from database import MemoryStore
from relations import AccessPolicy, RelationManager
from reminders import ReminderService, ScheduleRuleIn
from schemas import SENIOR_PROFILES
from signals import SignalBus, SignalRecorder

SENIOR = "senior-1"
CREATOR = "creator-1"


@pytest.fixture
def settings():
    return Settings(default_timezone="UTC", batch_window_minutes=30, missed_grace_minutes=30)


@pytest.fixture
def store():
    store = MemoryStore()
    store.put(SENIOR_PROFILES, SENIOR, {"name": "Grandpa Li", "creator_id": CREATOR, "time_zone": "UTC"})
    return store


@pytest.fixture
def policy(store):
    return AccessPolicy(store)


@pytest.fixture
def recorder():
    return SignalRecorder()


@pytest.fixture
def bus(recorder):
    bus = SignalBus()
    bus.subscribe(recorder)
    return bus


@pytest.fixture
def reminders(store, policy, settings, bus):
    return ReminderService(store, policy, settings, bus)


@pytest.fixture
def tracker(store, policy, settings, bus):
    return AdherenceTracker(store, policy, settings, bus)


@pytest.fixture
def relations(store, policy):
    return RelationManager(store, policy)


@pytest.fixture
def make_rule(reminders):
    def _make(**overrides):
        payload = dict(senior_id=SENIOR, name="Aspirin", time_slots=["08:00"], start_date=date(2024, 1, 1),
                       current_stock=10)
        payload.update(overrides)
        return reminders.create_rule(CREATOR, ScheduleRuleIn(**payload),
                                     now=datetime(2024, 1, 1, tzinfo=pytz.utc))
    return _make
