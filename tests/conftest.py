from datetime import datetime, timedelta, timezone

import pytest

from checkin_config import CheckinConfig
from checkin_models import CheckinRecord
from checkin_store import InMemoryRecordStore
from checkin_system import CheckinSystem
from notifications import LoggingDispatcher, LoggingInheritanceTrigger

DAY0 = datetime(2026, 1, 1, 9, 0, tzinfo=timezone.utc)


def day(n: float) -> datetime:
    """Timestamp ``n`` days after DAY0"""
    return DAY0 + timedelta(days=n)


def make_record(**overrides) -> CheckinRecord:
    fields = dict(user_id="user-1", last_checkin_at=DAY0, version=1)
    fields.update(overrides)
    return CheckinRecord(**fields)


@pytest.fixture
def config():
    return CheckinConfig(
        log_file=None,
        retry_attempts=2,
        retry_base_delay_seconds=0,
        retry_max_delay_seconds=0,
        internal_api_key="test-key",
        contacts={
            "user-1": {
                "name": "Ada",
                "email": "ada@example.com",
                "beneficiaries": [{"name": "Grace", "email": "grace@example.com"}],
            }
        },
    )


@pytest.fixture
def store():
    return InMemoryRecordStore()


@pytest.fixture
def dispatcher():
    return LoggingDispatcher()


@pytest.fixture
def trigger():
    return LoggingInheritanceTrigger()


@pytest.fixture
def system(config, store, dispatcher, trigger):
    return CheckinSystem(config, store=store, dispatcher=dispatcher, trigger=trigger)
