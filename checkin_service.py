"""
Check-in API: the operations a user-facing client calls

record_checkin is an upsert and never needs a prior read by the client.
get_status is read-only and reports NotFoundError for unknown users.
"""

import logging
from dataclasses import replace
from datetime import datetime
from typing import List, Optional

from checkin_config import CheckinConfig, transient_retry
from checkin_errors import ConflictError, InheritanceLockedError, NotFoundError
from checkin_models import (
    BeneficiaryNotification,
    CheckinRecord,
    CheckinStatus,
    PrivacyPreferences,
    as_utc,
    utcnow,
)
from checkin_store import RecordStore

logger = logging.getLogger(__name__)

# A check-in retries this many times when it loses a race with a scheduler tick
MAX_CONFLICT_RETRIES = 5


class CheckinService:
    """User-triggered check-ins and status reads"""

    def __init__(self, store: RecordStore, config: CheckinConfig):
        self.store = store
        self.config = config

    def record_checkin(self, user_id: str, now: Optional[datetime] = None) -> CheckinRecord:
        """Record a successful check-in, creating the record on first use"""
        now = as_utc(now or utcnow())
        for _ in range(MAX_CONFLICT_RETRIES):
            try:
                record = self._retry(self._apply_checkin, user_id, now)
                logger.info(f"Check-in recorded for {user_id}, next due {record.next_due_at.isoformat()}")
                return record
            except ConflictError:
                logger.info(f"Check-in for {user_id} raced with another write, retrying")
        raise ConflictError(f"Could not record check-in for {user_id} after {MAX_CONFLICT_RETRIES} attempts")

    def _apply_checkin(self, user_id: str, now: datetime) -> CheckinRecord:
        current = self.store.get(user_id)
        if current is None:
            record = CheckinRecord(user_id=user_id, last_checkin_at=now, created_at=now,
                                   updated_at=now, **self.config.record_defaults)
            return self.store.insert(record)

        if current.status is CheckinStatus.INHERITANCE_TRIGGERED:
            logger.warning(f"Check-in refused for {user_id}: inheritance already triggered")
            raise InheritanceLockedError(user_id)

        return self.store.compare_and_set(current.reset(now), current.version)

    def get_status(self, user_id: str) -> CheckinRecord:
        record = self._retry(self.store.get, user_id)
        if record is None:
            raise NotFoundError(user_id)
        return record

    def list_notifications(self, user_id: str) -> List[BeneficiaryNotification]:
        """Delivered notifications for a user, newest first"""
        return self._retry(self.store.list_notifications, user_id)

    def update_privacy_preferences(self, user_id: str, preferences: PrivacyPreferences) -> CheckinRecord:
        for _ in range(MAX_CONFLICT_RETRIES):
            current = self.get_status(user_id)
            try:
                record = self._retry(self.store.compare_and_set,
                                     replace(current, privacy=preferences), current.version)
                logger.info(f"Privacy preferences updated for {user_id}")
                return record
            except ConflictError:
                continue
        raise ConflictError(f"Could not update preferences for {user_id}")

    def _retry(self, fn, *args):
        return transient_retry(self.config)(fn, *args)
