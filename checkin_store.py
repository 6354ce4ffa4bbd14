"""
Check-in record store

The store is the only shared mutable state. Every record write is a
compare-and-set on the record's version so that a user's live check-in is
never overwritten by a scheduler tick that read the record earlier. Effects
produced by a tick are written to an outbox in the same transaction as the
record change, so a crash between persisting and dispatching loses nothing.
"""

import json
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterable, Iterator, List, Optional

from checkin_errors import ConflictError, StoreUnavailableError
from checkin_models import (
    BeneficiaryNotification,
    CheckinRecord,
    CheckinStatus,
    Effect,
    NotificationType,
    OutboxEntry,
    PrivacyPreferences,
    RecipientType,
    as_utc,
    format_timestamp,
    parse_timestamp,
    utcnow,
)

logger = logging.getLogger(__name__)

OUTBOX_PENDING = "pending"
OUTBOX_DONE = "done"
OUTBOX_FAILED = "failed"


class RecordStore(ABC):
    """Access contract for check-in records, the notification log and the effect outbox"""

    @abstractmethod
    def get(self, user_id: str) -> Optional[CheckinRecord]:
        ...

    @abstractmethod
    def insert(self, record: CheckinRecord) -> CheckinRecord:
        """Create a record; raises ConflictError if the user already has one"""

    @abstractmethod
    def compare_and_set(self, record: CheckinRecord, expected_version: int,
                        pending: Iterable[OutboxEntry] = ()) -> CheckinRecord:
        """Write ``record`` if the stored version is still ``expected_version``"""

    @abstractmethod
    def iter_batches(self, batch_size: int = 500) -> Iterator[List[CheckinRecord]]:
        """Yield every record in user_id order, ``batch_size`` at a time"""

    @abstractmethod
    def append_notification(self, notification: BeneficiaryNotification) -> None:
        ...

    @abstractmethod
    def list_notifications(self, user_id: str) -> List[BeneficiaryNotification]:
        """Notifications for a user, newest first"""

    @abstractmethod
    def has_notification(self, dedupe_key: str) -> bool:
        ...

    @abstractmethod
    def due_outbox(self, now: datetime) -> List[OutboxEntry]:
        """Pending outbox entries whose next attempt is due"""

    @abstractmethod
    def mark_outbox_done(self, entry_id: str) -> None:
        ...

    @abstractmethod
    def reschedule_outbox(self, entry_id: str, attempts: int,
                          next_attempt_at: datetime, error: str) -> None:
        ...

    @abstractmethod
    def mark_outbox_failed(self, entry_id: str, error: str) -> None:
        ...

    def iter_records(self, batch_size: int = 500) -> Iterator[CheckinRecord]:
        for batch in self.iter_batches(batch_size):
            yield from batch


class InMemoryRecordStore(RecordStore):
    """Thread-safe store kept in process memory"""

    def __init__(self):
        self._lock = threading.RLock()
        self._records: Dict[str, CheckinRecord] = {}
        self._notifications: List[BeneficiaryNotification] = []
        self._outbox: Dict[str, Dict] = {}

    def get(self, user_id: str) -> Optional[CheckinRecord]:
        with self._lock:
            record = self._records.get(user_id)
            return replace(record) if record else None

    def insert(self, record: CheckinRecord) -> CheckinRecord:
        with self._lock:
            if record.user_id in self._records:
                raise ConflictError(f"Record already exists for {record.user_id}")
            now = utcnow()
            stored = replace(record, version=1, created_at=record.created_at or now,
                             updated_at=record.updated_at or now)
            self._records[record.user_id] = stored
            return replace(stored)

    def compare_and_set(self, record: CheckinRecord, expected_version: int,
                        pending: Iterable[OutboxEntry] = ()) -> CheckinRecord:
        with self._lock:
            current = self._records.get(record.user_id)
            if current is None or current.version != expected_version:
                raise ConflictError(f"Record for {record.user_id} changed since version {expected_version}")
            stored = replace(record, version=expected_version + 1, updated_at=utcnow())
            self._records[record.user_id] = stored
            for entry in pending:
                self._outbox[entry.id] = {"entry": replace(entry), "state": OUTBOX_PENDING}
            return replace(stored)

    def iter_batches(self, batch_size: int = 500) -> Iterator[List[CheckinRecord]]:
        with self._lock:
            user_ids = sorted(self._records)
        for start in range(0, len(user_ids), batch_size):
            batch = []
            for user_id in user_ids[start:start + batch_size]:
                record = self.get(user_id)
                if record is not None:
                    batch.append(record)
            yield batch

    def append_notification(self, notification: BeneficiaryNotification) -> None:
        with self._lock:
            if notification.dedupe_key and self.has_notification(notification.dedupe_key):
                return
            self._notifications.append(notification)

    def list_notifications(self, user_id: str) -> List[BeneficiaryNotification]:
        with self._lock:
            entries = [n for n in reversed(self._notifications) if n.user_id == user_id]
        return sorted(entries, key=lambda n: n.sent_at, reverse=True)

    def has_notification(self, dedupe_key: str) -> bool:
        with self._lock:
            return any(n.dedupe_key == dedupe_key for n in self._notifications)

    def due_outbox(self, now: datetime) -> List[OutboxEntry]:
        now = as_utc(now)
        with self._lock:
            return [
                replace(slot["entry"])
                for slot in self._outbox.values()
                if slot["state"] == OUTBOX_PENDING
                and (slot["entry"].next_attempt_at is None or slot["entry"].next_attempt_at <= now)
            ]

    def mark_outbox_done(self, entry_id: str) -> None:
        with self._lock:
            self._outbox[entry_id]["state"] = OUTBOX_DONE

    def reschedule_outbox(self, entry_id: str, attempts: int,
                          next_attempt_at: datetime, error: str) -> None:
        with self._lock:
            slot = self._outbox[entry_id]
            slot["entry"] = replace(slot["entry"], attempts=attempts,
                                    next_attempt_at=as_utc(next_attempt_at), last_error=error)

    def mark_outbox_failed(self, entry_id: str, error: str) -> None:
        with self._lock:
            slot = self._outbox[entry_id]
            slot["state"] = OUTBOX_FAILED
            slot["entry"] = replace(slot["entry"], last_error=error)

    def outbox_state(self, entry_id: str) -> str:
        with self._lock:
            return self._outbox[entry_id]["state"]


class SQLiteRecordStore(RecordStore):
    """Manages SQLite persistence for check-in records"""

    def __init__(self, db_path: str = "checkin_switch.db", timeout: float = 5.0):
        self.db_path = db_path
        self.timeout = timeout
        self.init_database()

    @contextmanager
    def _connection(self):
        try:
            conn = sqlite3.connect(self.db_path, timeout=self.timeout)
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"Cannot open {self.db_path}: {e}") from e
        try:
            yield conn
            conn.commit()
        except sqlite3.IntegrityError:
            conn.rollback()
            raise
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreUnavailableError(str(e)) from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def init_database(self):
        """Initialize the database with required tables"""
        with self._connection() as conn:
            cursor = conn.cursor()

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS checkin_records (
                    user_id TEXT PRIMARY KEY,
                    last_checkin_at TEXT NOT NULL,
                    next_due_at TEXT NOT NULL,
                    interval_days INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    reminders_sent INTEGER NOT NULL DEFAULT 0,
                    max_reminders INTEGER NOT NULL,
                    grace_period_days INTEGER NOT NULL,
                    reminder_schedule_days TEXT NOT NULL,
                    confirmation_window_days INTEGER NOT NULL,
                    last_reminder_offset INTEGER,
                    escalated_at TEXT,
                    privacy_preferences TEXT NOT NULL DEFAULT '{}',
                    version INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            ''')

            # Append-only log of delivered effects
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS notification_log (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    type TEXT NOT NULL,
                    sent_at TEXT NOT NULL,
                    message TEXT NOT NULL,
                    action_required INTEGER NOT NULL DEFAULT 0,
                    dedupe_key TEXT UNIQUE,
                    recipient_type TEXT NOT NULL DEFAULT 'beneficiary',
                    recipient TEXT
                )
            ''')
            for column in ("recipient_type TEXT NOT NULL DEFAULT 'beneficiary'", "recipient TEXT"):
                try:
                    cursor.execute(f"ALTER TABLE notification_log ADD COLUMN {column}")
                    logger.info(f"Added {column.split()[0]} column to notification_log")
                except sqlite3.OperationalError:
                    # Column already exists
                    pass
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_notification_user ON notification_log (user_id)"
            )

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS effect_outbox (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    effect TEXT NOT NULL,
                    state TEXT NOT NULL DEFAULT 'pending',
                    attempts INTEGER NOT NULL DEFAULT 0,
                    next_attempt_at TEXT,
                    last_error TEXT,
                    created_at TEXT NOT NULL
                )
            ''')

    def get(self, user_id: str) -> Optional[CheckinRecord]:
        with self._connection() as conn:
            conn.row_factory = sqlite3.Row
            row = conn.execute(
                "SELECT * FROM checkin_records WHERE user_id = ?", (user_id,)
            ).fetchone()
        return self._row_to_record(row) if row else None

    def insert(self, record: CheckinRecord) -> CheckinRecord:
        now = utcnow()
        stored = replace(record, version=1, created_at=record.created_at or now,
                         updated_at=record.updated_at or now)
        try:
            with self._connection() as conn:
                conn.execute('''
                    INSERT INTO checkin_records (
                        user_id, last_checkin_at, next_due_at, interval_days, status,
                        reminders_sent, max_reminders, grace_period_days,
                        reminder_schedule_days, confirmation_window_days,
                        last_reminder_offset, escalated_at, privacy_preferences,
                        version, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ''', (
                    stored.user_id,
                    format_timestamp(stored.last_checkin_at),
                    format_timestamp(stored.next_due_at),
                    stored.interval_days,
                    stored.status.value,
                    stored.reminders_sent,
                    stored.max_reminders,
                    stored.grace_period_days,
                    json.dumps(list(stored.reminder_schedule_days)),
                    stored.confirmation_window_days,
                    stored.last_reminder_offset,
                    format_timestamp(stored.escalated_at),
                    json.dumps(stored.privacy.to_dict()),
                    stored.version,
                    format_timestamp(stored.created_at),
                    format_timestamp(stored.updated_at),
                ))
        except sqlite3.IntegrityError as e:
            raise ConflictError(f"Record already exists for {record.user_id}") from e
        logger.info(f"Check-in record created for {record.user_id}")
        return stored

    def compare_and_set(self, record: CheckinRecord, expected_version: int,
                        pending: Iterable[OutboxEntry] = ()) -> CheckinRecord:
        now = utcnow()
        stored = replace(record, version=expected_version + 1, updated_at=now)
        with self._connection() as conn:
            cursor = conn.execute('''
                UPDATE checkin_records SET
                    last_checkin_at = ?, next_due_at = ?, interval_days = ?, status = ?,
                    reminders_sent = ?, max_reminders = ?, grace_period_days = ?,
                    reminder_schedule_days = ?, confirmation_window_days = ?,
                    last_reminder_offset = ?, escalated_at = ?, privacy_preferences = ?,
                    version = ?, updated_at = ?
                WHERE user_id = ? AND version = ?
            ''', (
                format_timestamp(stored.last_checkin_at),
                format_timestamp(stored.next_due_at),
                stored.interval_days,
                stored.status.value,
                stored.reminders_sent,
                stored.max_reminders,
                stored.grace_period_days,
                json.dumps(list(stored.reminder_schedule_days)),
                stored.confirmation_window_days,
                stored.last_reminder_offset,
                format_timestamp(stored.escalated_at),
                json.dumps(stored.privacy.to_dict()),
                stored.version,
                format_timestamp(now),
                stored.user_id,
                expected_version,
            ))
            if cursor.rowcount == 0:
                raise ConflictError(
                    f"Record for {record.user_id} changed since version {expected_version}"
                )
            for entry in pending:
                conn.execute(
                    "INSERT INTO effect_outbox (id, user_id, effect, created_at) VALUES (?, ?, ?, ?)",
                    (entry.id, entry.effect.user_id, json.dumps(entry.effect.to_dict()),
                     format_timestamp(now))
                )
        return stored

    def iter_batches(self, batch_size: int = 500) -> Iterator[List[CheckinRecord]]:
        last_user_id = ""
        while True:
            with self._connection() as conn:
                conn.row_factory = sqlite3.Row
                rows = conn.execute(
                    "SELECT * FROM checkin_records WHERE user_id > ? ORDER BY user_id LIMIT ?",
                    (last_user_id, batch_size)
                ).fetchall()
            if not rows:
                return
            batch = [self._row_to_record(row) for row in rows]
            last_user_id = batch[-1].user_id
            yield batch

    def append_notification(self, notification: BeneficiaryNotification) -> None:
        with self._connection() as conn:
            conn.execute('''
                INSERT OR IGNORE INTO notification_log
                    (id, user_id, type, sent_at, message, action_required, dedupe_key,
                     recipient_type, recipient)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''', (
                notification.id,
                notification.user_id,
                notification.type.value,
                format_timestamp(notification.sent_at),
                notification.message,
                int(notification.action_required),
                notification.dedupe_key,
                notification.recipient_type.value,
                notification.recipient,
            ))

    def list_notifications(self, user_id: str) -> List[BeneficiaryNotification]:
        with self._connection() as conn:
            conn.row_factory = sqlite3.Row
            rows = conn.execute(
                "SELECT * FROM notification_log WHERE user_id = ? ORDER BY rowid DESC", (user_id,)
            ).fetchall()
        notifications = [
            BeneficiaryNotification(
                id=row["id"],
                user_id=row["user_id"],
                type=NotificationType(row["type"]),
                sent_at=parse_timestamp(row["sent_at"]),
                message=row["message"],
                action_required=bool(row["action_required"]),
                dedupe_key=row["dedupe_key"],
                recipient_type=RecipientType(row["recipient_type"]),
                recipient=row["recipient"],
            )
            for row in rows
        ]
        return sorted(notifications, key=lambda n: n.sent_at, reverse=True)

    def has_notification(self, dedupe_key: str) -> bool:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT 1 FROM notification_log WHERE dedupe_key = ?", (dedupe_key,)
            ).fetchone()
        return row is not None

    def due_outbox(self, now: datetime) -> List[OutboxEntry]:
        now = as_utc(now)
        with self._connection() as conn:
            conn.row_factory = sqlite3.Row
            rows = conn.execute(
                "SELECT * FROM effect_outbox WHERE state = ? ORDER BY rowid", (OUTBOX_PENDING,)
            ).fetchall()
        entries = []
        for row in rows:
            next_attempt_at = parse_timestamp(row["next_attempt_at"])
            if next_attempt_at is not None and next_attempt_at > now:
                continue
            entries.append(OutboxEntry(
                id=row["id"],
                effect=Effect.from_dict(json.loads(row["effect"])),
                attempts=row["attempts"],
                next_attempt_at=next_attempt_at,
                last_error=row["last_error"],
            ))
        return entries

    def mark_outbox_done(self, entry_id: str) -> None:
        self._set_outbox_state(entry_id, OUTBOX_DONE)

    def reschedule_outbox(self, entry_id: str, attempts: int,
                          next_attempt_at: datetime, error: str) -> None:
        with self._connection() as conn:
            conn.execute(
                "UPDATE effect_outbox SET attempts = ?, next_attempt_at = ?, last_error = ? WHERE id = ?",
                (attempts, format_timestamp(next_attempt_at), error, entry_id)
            )

    def mark_outbox_failed(self, entry_id: str, error: str) -> None:
        self._set_outbox_state(entry_id, OUTBOX_FAILED, error)

    def _set_outbox_state(self, entry_id: str, state: str, error: Optional[str] = None):
        with self._connection() as conn:
            conn.execute(
                "UPDATE effect_outbox SET state = ?, last_error = COALESCE(?, last_error) WHERE id = ?",
                (state, error, entry_id)
            )

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> CheckinRecord:
        return CheckinRecord(
            user_id=row["user_id"],
            last_checkin_at=parse_timestamp(row["last_checkin_at"]),
            interval_days=row["interval_days"],
            status=CheckinStatus(row["status"]),
            reminders_sent=row["reminders_sent"],
            max_reminders=row["max_reminders"],
            grace_period_days=row["grace_period_days"],
            reminder_schedule_days=tuple(json.loads(row["reminder_schedule_days"])),
            confirmation_window_days=row["confirmation_window_days"],
            last_reminder_offset=row["last_reminder_offset"],
            escalated_at=parse_timestamp(row["escalated_at"]),
            privacy=PrivacyPreferences.from_dict(json.loads(row["privacy_preferences"] or "{}")),
            version=row["version"],
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
        )
