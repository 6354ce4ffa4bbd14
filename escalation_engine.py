"""
Escalation engine for the check-in liveness switch

evaluate() is a pure decision function: given a record and the current time it
returns the record's next state and the side effects the caller must carry
out. It performs no I/O and never raises; the scheduler driver persists the
result and dispatches the effects.

Timeline for one check-in cycle (defaults in brackets):

    last_checkin_at
      |-- reminders at next_due_at - d, for d in reminder_schedule_days [30, 14, 7, 1]
    next_due_at = last_checkin_at + interval_days [182]     -> OVERDUE
    grace_deadline = next_due_at + grace_period_days [30]   -> ESCALATED, alert beneficiaries
    escalated_at + confirmation_window_days [14]            -> INHERITANCE_TRIGGERED
"""

import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from checkin_models import CheckinRecord, CheckinStatus, Effect, EffectKind, advance, as_utc

logger = logging.getLogger(__name__)


def evaluate(record: CheckinRecord, now: datetime) -> Tuple[CheckinRecord, List[Effect]]:
    """Decide the next state of ``record`` at time ``now``"""
    try:
        now = as_utc(now)
        if record.status is CheckinStatus.INHERITANCE_TRIGGERED:
            return record, []
        if now < record.last_checkin_at:
            # Clock skew: nothing is decided on a time before the check-in
            return record, []

        if now >= record.grace_deadline:
            return _evaluate_timeout(record, now)

        if now >= record.next_due_at:
            status = advance(record.status, CheckinStatus.OVERDUE)
            return _with_status(record, status), []

        return _evaluate_reminders(record, now)
    except OverflowError:
        # Dates at the edge of the datetime range cannot be compared
        logger.warning(f"Skipping evaluation for {record.user_id}: timestamp out of range")
        return record, []


def _evaluate_timeout(record: CheckinRecord, now: datetime) -> Tuple[CheckinRecord, List[Effect]]:
    if record.status is not CheckinStatus.ESCALATED:
        updated = replace(record, status=CheckinStatus.ESCALATED, escalated_at=now)
        effects = []
        if record.privacy.beneficiary_alerts_enabled:
            effects.append(_effect(record, EffectKind.ALERT_BENEFICIARIES))
        return updated, effects

    deadline = record.inheritance_deadline
    if deadline is not None and now >= deadline:
        updated = replace(record, status=CheckinStatus.INHERITANCE_TRIGGERED)
        return updated, [_effect(record, EffectKind.TRIGGER_INHERITANCE)]

    return record, []


def _evaluate_reminders(record: CheckinRecord, now: datetime) -> Tuple[CheckinRecord, List[Effect]]:
    offset = next_reminder_offset(record, now)
    if offset is not None:
        updated = replace(
            record,
            status=advance(record.status, CheckinStatus.WARNING),
            reminders_sent=record.reminders_sent + 1,
            last_reminder_offset=offset,
        )
        return updated, [_effect(record, EffectKind.SEND_REMINDER, offset)]

    status = CheckinStatus.WARNING if record.reminders_sent > 0 else CheckinStatus.ACTIVE
    return _with_status(record, advance(record.status, status)), []


def next_reminder_offset(record: CheckinRecord, now: datetime) -> Optional[int]:
    """Offset of the reminder to fire at ``now``, if any.

    Thresholds are walked in descending order of offset. When several have
    been crossed since the last reminder only the most urgent (smallest
    offset) fires; the ones skipped over are not sent later.
    """
    if record.reminders_sent >= record.max_reminders:
        return None
    due = record.next_due_at
    outstanding = None
    for offset in record.reminder_schedule_days:
        if record.last_reminder_offset is not None and offset >= record.last_reminder_offset:
            continue
        if now >= due - timedelta(days=offset):
            outstanding = offset
    return outstanding


def _with_status(record: CheckinRecord, status: CheckinStatus) -> CheckinRecord:
    if status is record.status:
        return record
    return replace(record, status=status)


def _effect(record: CheckinRecord, kind: EffectKind, offset: Optional[int] = None) -> Effect:
    return Effect(kind=kind, user_id=record.user_id,
                  cycle_started_at=record.last_checkin_at, offset_days=offset)
