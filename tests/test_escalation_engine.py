"""
Tests for the escalation engine state machine
"""
from datetime import datetime, timedelta, timezone

from checkin_models import AlertType, CheckinStatus, EffectKind, PrivacyPreferences
from escalation_engine import evaluate, next_reminder_offset

from conftest import DAY0, day, make_record


class TestReminders:

    def test_no_effect_before_first_threshold(self):
        record = make_record()
        updated, effects = evaluate(record, day(100))
        assert updated.status is CheckinStatus.ACTIVE
        assert updated.reminders_sent == 0
        assert effects == []

    def test_first_reminder_at_day_152(self):
        record = make_record()
        updated, effects = evaluate(record, day(152))

        assert updated.status is CheckinStatus.WARNING
        assert updated.reminders_sent == 1
        assert len(effects) == 1
        assert effects[0].kind is EffectKind.SEND_REMINDER
        assert effects[0].offset_days == 30
        assert effects[0].user_id == "user-1"

    def test_same_threshold_does_not_fire_twice(self):
        record, _ = evaluate(make_record(), day(152))
        again, effects = evaluate(record, day(153))
        assert effects == []
        assert again.reminders_sent == 1
        assert again.status is CheckinStatus.WARNING

    def test_missed_ticks_fire_only_most_urgent_reminder(self):
        # Jumping from day 0 to day 170 crosses the 30- and 14-day thresholds
        record = make_record()
        updated, effects = evaluate(record, day(170))
        assert len(effects) == 1
        assert effects[0].offset_days == 14
        assert updated.reminders_sent == 1

        # The skipped 30-day reminder is never sent afterwards
        later, effects = evaluate(updated, day(171))
        assert effects == []
        assert later.last_reminder_offset == 14

    def test_full_schedule_in_daily_ticks(self):
        record = make_record()
        offsets = []
        for n in range(0, 182):
            record, effects = evaluate(record, day(n))
            offsets.extend(e.offset_days for e in effects)
        assert offsets == [30, 14, 7, 1]
        assert record.reminders_sent == 4

    def test_reminder_count_is_monotonic_and_capped(self):
        record = make_record(max_reminders=2)
        previous = 0
        for n in range(0, 182):
            record, _ = evaluate(record, day(n))
            assert record.reminders_sent >= previous
            assert record.reminders_sent <= 2
            previous = record.reminders_sent
        assert record.reminders_sent == 2

    def test_next_reminder_offset_respects_last_offset(self):
        record = make_record(reminders_sent=1, last_reminder_offset=14)
        assert next_reminder_offset(record, day(170)) is None
        assert next_reminder_offset(record, day(175)) == 7


class TestOverdueAndEscalation:

    def test_overdue_after_due_date(self):
        record = make_record()
        updated, effects = evaluate(record, day(183))
        assert updated.status is CheckinStatus.OVERDUE
        assert effects == []

    def test_no_reminder_after_due_date(self):
        record = make_record()
        _, effects = evaluate(record, day(190))
        assert effects == []

    def test_escalates_after_grace_period(self):
        record = make_record()
        updated, effects = evaluate(record, day(213))
        assert updated.status is CheckinStatus.ESCALATED
        assert updated.escalated_at == day(213)
        assert [e.kind for e in effects] == [EffectKind.ALERT_BENEFICIARIES]

    def test_escalation_alerts_only_once(self):
        record, _ = evaluate(make_record(), day(213))
        again, effects = evaluate(record, day(214))
        assert again.status is CheckinStatus.ESCALATED
        assert effects == []

    def test_inheritance_triggered_after_confirmation_window(self):
        record, _ = evaluate(make_record(confirmation_window_days=14), day(213))

        waiting, effects = evaluate(record, day(226))
        assert waiting.status is CheckinStatus.ESCALATED
        assert effects == []

        final, effects = evaluate(record, day(227))
        assert final.status is CheckinStatus.INHERITANCE_TRIGGERED
        assert [e.kind for e in effects] == [EffectKind.TRIGGER_INHERITANCE]

    def test_zero_confirmation_window_triggers_on_next_tick(self):
        record, effects = evaluate(make_record(confirmation_window_days=0), day(213))
        assert record.status is CheckinStatus.ESCALATED
        final, effects = evaluate(record, day(213))
        assert final.status is CheckinStatus.INHERITANCE_TRIGGERED

    def test_inheritance_triggered_is_terminal(self):
        record = make_record(status=CheckinStatus.INHERITANCE_TRIGGERED, escalated_at=day(213))
        for n in (0, 100, 300, 1000):
            updated, effects = evaluate(record, day(n))
            assert updated.status is CheckinStatus.INHERITANCE_TRIGGERED
            assert effects == []

    def test_privacy_can_suppress_beneficiary_alert(self):
        prefs = PrivacyPreferences(inheritance_only_mode=True)
        record, effects = evaluate(make_record(privacy=prefs), day(213))
        assert record.status is CheckinStatus.ESCALATED
        assert effects == []

        prefs = PrivacyPreferences(alert_beneficiaries_when_overdue=False, alert_type=AlertType.DIRECT_INHERITANCE)
        record, effects = evaluate(make_record(privacy=prefs), day(213))
        assert effects == []


class TestRobustness:

    def test_clock_skew_is_a_no_op(self):
        record = make_record(status=CheckinStatus.WARNING, reminders_sent=1, last_reminder_offset=30)
        updated, effects = evaluate(record, DAY0 - timedelta(days=3))
        assert updated is record
        assert effects == []

    def test_naive_now_is_treated_as_utc(self):
        naive = datetime(2026, 6, 2, 9, 0)  # day 152
        updated, effects = evaluate(make_record(), naive)
        assert updated.reminders_sent == 1

    def test_status_never_regresses(self):
        record = make_record(status=CheckinStatus.OVERDUE)
        updated, _ = evaluate(record, day(10))
        assert updated.status is CheckinStatus.OVERDUE

    def test_extreme_timestamps_do_not_raise(self):
        record = make_record(last_checkin_at=datetime.max.replace(tzinfo=timezone.utc) - timedelta(days=1))
        updated, effects = evaluate(record, datetime.max.replace(tzinfo=timezone.utc))
        assert updated is record
        assert effects == []

    def test_effect_dedupe_key_is_per_cycle(self):
        _, first = evaluate(make_record(), day(152))
        _, second = evaluate(make_record(last_checkin_at=day(1)), day(153))
        assert first[0].dedupe_key != second[0].dedupe_key
