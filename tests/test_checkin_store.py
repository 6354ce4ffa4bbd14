"""
Tests for the record stores
"""
import sqlite3
from dataclasses import replace

import pytest

from checkin_errors import ConflictError, StoreUnavailableError
from checkin_models import (
    AlertType,
    BeneficiaryNotification,
    CheckinStatus,
    Effect,
    EffectKind,
    NotificationType,
    OutboxEntry,
    PrivacyPreferences,
    RecipientType,
)
from checkin_store import InMemoryRecordStore, SQLiteRecordStore

from conftest import DAY0, day, make_record


@pytest.fixture(params=["memory", "sqlite"])
def any_store(request, tmp_path):
    if request.param == "memory":
        return InMemoryRecordStore()
    return SQLiteRecordStore(str(tmp_path / "checkin.db"))


def reminder_entry(entry_id="e1", user_id="user-1", offset=30):
    effect = Effect(kind=EffectKind.SEND_REMINDER, user_id=user_id,
                    cycle_started_at=DAY0, offset_days=offset)
    return OutboxEntry(id=entry_id, effect=effect)


class TestRecords:

    def test_insert_and_get(self, any_store):
        prefs = PrivacyPreferences(alert_type=AlertType.DIRECT_INHERITANCE, custom_message="hello")
        stored = any_store.insert(make_record(privacy=prefs))
        assert stored.version == 1

        loaded = any_store.get("user-1")
        assert loaded.user_id == "user-1"
        assert loaded.last_checkin_at == DAY0
        assert loaded.next_due_at == day(182)
        assert loaded.reminder_schedule_days == (30, 14, 7, 1)
        assert loaded.privacy == prefs
        assert loaded.version == 1

    def test_get_missing(self, any_store):
        assert any_store.get("nobody") is None

    def test_duplicate_insert_conflicts(self, any_store):
        any_store.insert(make_record())
        with pytest.raises(ConflictError):
            any_store.insert(make_record())

    def test_compare_and_set_bumps_version(self, any_store):
        stored = any_store.insert(make_record())
        updated = replace(stored, status=CheckinStatus.ESCALATED, escalated_at=day(213))
        written = any_store.compare_and_set(updated, stored.version)
        assert written.version == 2

        loaded = any_store.get("user-1")
        assert loaded.status is CheckinStatus.ESCALATED
        assert loaded.escalated_at == day(213)
        assert loaded.version == 2

    def test_compare_and_set_rejects_stale_version(self, any_store):
        stored = any_store.insert(make_record())
        any_store.compare_and_set(replace(stored, reminders_sent=1), stored.version)

        with pytest.raises(ConflictError):
            any_store.compare_and_set(replace(stored, reminders_sent=2), stored.version)
        assert any_store.get("user-1").reminders_sent == 1

    def test_conflict_leaves_outbox_untouched(self, any_store):
        stored = any_store.insert(make_record())
        any_store.compare_and_set(stored, stored.version)
        with pytest.raises(ConflictError):
            any_store.compare_and_set(stored, stored.version, [reminder_entry()])
        assert any_store.due_outbox(day(1)) == []

    def test_iter_batches_pages_in_user_order(self, any_store):
        for i in (3, 1, 4, 0, 2):
            any_store.insert(make_record(user_id=f"user-{i}"))
        batches = list(any_store.iter_batches(batch_size=2))
        assert [len(b) for b in batches] == [2, 2, 1]
        assert [r.user_id for r in any_store.iter_records(batch_size=2)] == [f"user-{i}" for i in range(5)]


class TestNotificationLog:

    def test_newest_first(self, any_store):
        for n, kind in ((1, NotificationType.REMINDER_SENT), (3, NotificationType.INHERITANCE_TRIGGERED),
                        (2, NotificationType.BENEFICIARY_ALERTED)):
            any_store.append_notification(BeneficiaryNotification(
                user_id="user-1", type=kind, sent_at=day(n), message=kind.value, dedupe_key=kind.value))
        any_store.append_notification(BeneficiaryNotification(
            user_id="user-2", type=NotificationType.REMINDER_SENT, sent_at=day(5), message="other"))

        notes = any_store.list_notifications("user-1")
        assert [n.sent_at for n in notes] == [day(3), day(2), day(1)]
        assert notes[0].type is NotificationType.INHERITANCE_TRIGGERED

    def test_dedupe_key_lookup(self, any_store):
        assert not any_store.has_notification("k1")
        note = BeneficiaryNotification(user_id="user-1", type=NotificationType.REMINDER_SENT,
                                       sent_at=day(1), message="m", dedupe_key="k1")
        any_store.append_notification(note)
        any_store.append_notification(replace(note, id="another"))
        assert any_store.has_notification("k1")
        assert len(any_store.list_notifications("user-1")) == 1

    def test_recipient_round_trip(self, any_store):
        any_store.append_notification(BeneficiaryNotification(
            user_id="user-1", type=NotificationType.PROFESSIONAL_CONCERN, sent_at=day(1), message="m",
            action_required=True, recipient_type=RecipientType.PROFESSIONAL, recipient="gp"))

        note = any_store.list_notifications("user-1")[0]
        assert note.type is NotificationType.PROFESSIONAL_CONCERN
        assert note.recipient_type is RecipientType.PROFESSIONAL
        assert note.recipient == "gp"
        assert note.to_dict()["recipient_type"] == "professional"


class TestOutbox:

    def test_pending_effects_written_with_record(self, any_store):
        stored = any_store.insert(make_record())
        any_store.compare_and_set(replace(stored, reminders_sent=1), stored.version, [reminder_entry()])

        entries = any_store.due_outbox(day(152))
        assert len(entries) == 1
        assert entries[0].id == "e1"
        assert entries[0].effect.kind is EffectKind.SEND_REMINDER
        assert entries[0].effect.offset_days == 30
        assert entries[0].effect.cycle_started_at == DAY0

    def test_reschedule_hides_entry_until_due(self, any_store):
        stored = any_store.insert(make_record())
        any_store.compare_and_set(stored, stored.version, [reminder_entry()])

        any_store.reschedule_outbox("e1", 1, day(2), "smtp down")
        assert any_store.due_outbox(day(1)) == []
        entries = any_store.due_outbox(day(2))
        assert entries[0].attempts == 1
        assert entries[0].last_error == "smtp down"

    def test_done_and_failed_entries_are_not_due(self, any_store):
        stored = any_store.insert(make_record())
        any_store.compare_and_set(stored, stored.version, [reminder_entry("e1"), reminder_entry("e2", offset=14)])

        any_store.mark_outbox_done("e1")
        any_store.mark_outbox_failed("e2", "gave up")
        assert any_store.due_outbox(day(10)) == []


def test_sqlite_unavailable(tmp_path):
    store = SQLiteRecordStore(str(tmp_path / "checkin.db"))
    store.db_path = str(tmp_path / "missing-dir" / "checkin.db")
    with pytest.raises(StoreUnavailableError):
        store.get("user-1")


def test_sqlite_persists_across_instances(tmp_path):
    path = str(tmp_path / "checkin.db")
    SQLiteRecordStore(path).insert(make_record())
    assert SQLiteRecordStore(path).get("user-1").next_due_at == day(182)


def test_sqlite_adds_recipient_columns_to_old_log(tmp_path):
    path = str(tmp_path / "old.db")
    conn = sqlite3.connect(path)
    conn.execute('''
        CREATE TABLE notification_log (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            type TEXT NOT NULL,
            sent_at TEXT NOT NULL,
            message TEXT NOT NULL,
            action_required INTEGER NOT NULL DEFAULT 0,
            dedupe_key TEXT UNIQUE
        )
    ''')
    conn.execute(
        "INSERT INTO notification_log (id, user_id, type, sent_at, message) VALUES (?, ?, ?, ?, ?)",
        ("n1", "user-1", "beneficiary_alerted", DAY0.isoformat(), "old alert"),
    )
    conn.commit()
    conn.close()

    store = SQLiteRecordStore(path)
    store.append_notification(BeneficiaryNotification(
        user_id="user-1", type=NotificationType.REMINDER_SENT, sent_at=day(1), message="new",
        recipient_type=RecipientType.ACCOUNT_HOLDER))

    new, old = store.list_notifications("user-1")
    assert new.recipient_type is RecipientType.ACCOUNT_HOLDER
    assert old.message == "old alert"
    assert old.recipient_type is RecipientType.BENEFICIARY
    assert old.recipient is None
