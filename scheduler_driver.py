#!/usr/bin/env python3
"""
Scheduler driver for the check-in liveness switch

Runs the escalation engine over every record once per tick, commits the new
state together with its effects, then delivers the effects. Delivery is
at-least-once: the notification log is checked before each dispatch so a
redelivered effect is skipped, and effects that could not be delivered stay
in the outbox and are retried on later ticks with exponential backoff.
"""

import logging
import threading
import uuid
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Tuple

import schedule

from checkin_config import CheckinConfig, transient_retry
from checkin_errors import ConflictError, DispatchFailedError, StoreUnavailableError
from checkin_models import (
    BeneficiaryNotification,
    CheckinRecord,
    Effect,
    EffectKind,
    NotificationType,
    OutboxEntry,
    RecipientType,
    as_utc,
    utcnow,
)
from checkin_store import RecordStore
from escalation_engine import evaluate
from notifications import (
    AlertDelivery,
    ContactDirectory,
    InheritanceTrigger,
    NotificationDispatcher,
    inheritance_notice,
    plan_alert,
    reminder_message,
)

logger = logging.getLogger(__name__)

_KIND_COUNTERS = {
    EffectKind.SEND_REMINDER: "reminders_sent",
    EffectKind.TRIGGER_INHERITANCE: "inheritance_triggered",
}


@dataclass
class TickSummary:
    """Counts for one scheduler tick"""
    processed: int = 0
    reminders_sent: int = 0
    beneficiary_alerts: int = 0
    professional_alerts: int = 0
    inheritance_triggered: int = 0
    conflicts: int = 0
    failures: int = 0
    retried: int = 0

    def merge(self, counts: Counter):
        for name, value in counts.items():
            setattr(self, name, getattr(self, name) + value)

    def to_dict(self) -> Dict[str, int]:
        return dict(self.__dict__)


class SchedulerDriver:
    """Evaluates every check-in record on each tick and carries out the results"""

    def __init__(self, store: RecordStore, dispatcher: NotificationDispatcher,
                 trigger: InheritanceTrigger, config: CheckinConfig,
                 directory: Optional[ContactDirectory] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.dispatcher = dispatcher
        self.trigger = trigger
        self.config = config
        self.directory = directory or ContactDirectory()
        self.clock = clock
        self.scheduler = schedule.Scheduler()
        self.is_running = False
        self._stopped = threading.Event()

    def run_tick(self, now: Optional[datetime] = None) -> TickSummary:
        """Evaluate all records at ``now`` and deliver the resulting effects"""
        now = as_utc(now or self.clock())
        summary = TickSummary()
        logger.info(f"Starting check-in tick at {now.isoformat()}")

        summary.merge(self._retry_outbox(now))

        try:
            if self.config.tick_workers > 1:
                with ThreadPoolExecutor(max_workers=self.config.tick_workers) as pool:
                    for batch in self.store.iter_batches(self.config.batch_size):
                        for counts in pool.map(lambda r: self.process_record(r, now), batch):
                            summary.merge(counts)
            else:
                for record in self.store.iter_records(self.config.batch_size):
                    summary.merge(self.process_record(record, now))
        except StoreUnavailableError as e:
            logger.error(f"Record store unavailable, tick stopped early: {e}")
            summary.failures += 1

        logger.info(f"Tick complete: {summary.to_dict()}")
        return summary

    def process_record(self, record: CheckinRecord, now: datetime) -> Counter:
        """Evaluate one record, persist it and deliver its effects"""
        counts = Counter(processed=1)
        try:
            updated, effects = evaluate(record, now)
            if updated is record and not effects:
                return counts

            entries = [OutboxEntry(id=uuid.uuid4().hex, effect=effect) for effect in effects]
            try:
                self._retry(self.store.compare_and_set, updated, record.version, entries)
            except ConflictError:
                # A check-in landed after our read; it wins and this tick skips the user
                logger.info(f"Skipping {record.user_id}: record changed during tick")
                counts["conflicts"] += 1
                return counts

            if updated.status is not record.status:
                logger.info(f"{record.user_id}: {record.status.value} -> {updated.status.value}")

            for entry in entries:
                counts.update(self._deliver(entry, updated, now))
        except Exception as e:
            logger.exception(f"Failed to process check-in record for {record.user_id}: {e}")
            counts["failures"] += 1
        return counts

    def _retry_outbox(self, now: datetime) -> Counter:
        counts = Counter()
        try:
            entries = self._retry(self.store.due_outbox, now)
        except StoreUnavailableError as e:
            logger.error(f"Could not read effect outbox: {e}")
            counts["failures"] += 1
            return counts

        for entry in entries:
            effect = entry.effect
            try:
                record = self._retry(self.store.get, effect.user_id)
                if record is None:
                    self.store.mark_outbox_failed(entry.id, "record no longer exists")
                    continue
                if self._is_stale(effect, record, now):
                    logger.info(f"Dropping stale {effect.kind.value} for {effect.user_id}")
                    self.store.mark_outbox_done(entry.id)
                    continue
                counts["retried"] += 1
                counts.update(self._deliver(entry, record, now))
            except Exception as e:
                logger.exception(f"Failed to retry {effect.kind.value} for {effect.user_id}: {e}")
                counts["failures"] += 1
        return counts

    @staticmethod
    def _is_stale(effect: Effect, record: CheckinRecord, now: datetime) -> bool:
        """Whether an undelivered effect no longer applies to the current record"""
        if effect.kind is EffectKind.TRIGGER_INHERITANCE:
            return False
        if record.last_checkin_at != effect.cycle_started_at:
            return True
        if effect.kind is EffectKind.SEND_REMINDER:
            # A reminder applies only until the next more urgent threshold or the due date
            if now >= record.next_due_at:
                return True
            for offset in record.reminder_schedule_days:
                if offset < effect.offset_days and now >= record.next_due_at - timedelta(days=offset):
                    return True
        return False

    def _deliver(self, entry: OutboxEntry, record: CheckinRecord, now: datetime) -> Counter:
        effect = entry.effect
        if effect.kind is EffectKind.ALERT_BENEFICIARIES:
            return self._deliver_alert(entry, record, now)

        counts = Counter()
        if self.store.has_notification(effect.dedupe_key):
            logger.info(f"{effect.kind.value} for {effect.user_id} already delivered, skipping")
            self.store.mark_outbox_done(entry.id)
            return counts

        try:
            message, action_required = self._retry(self._dispatch, entry, record)
        except DispatchFailedError as e:
            self._reschedule(entry, now, str(e))
            counts["failures"] += 1
            return counts

        reminder = effect.kind is EffectKind.SEND_REMINDER
        self.store.append_notification(BeneficiaryNotification(
            user_id=effect.user_id,
            type=effect.kind.notification_type,
            sent_at=now,
            message=message,
            action_required=action_required,
            dedupe_key=effect.dedupe_key,
            recipient_type=RecipientType.ACCOUNT_HOLDER if reminder else RecipientType.BENEFICIARY,
        ))
        self.store.mark_outbox_done(entry.id)
        counts[_KIND_COUNTERS[effect.kind]] += 1
        return counts

    def _deliver_alert(self, entry: OutboxEntry, record: CheckinRecord, now: datetime) -> Counter:
        """Send an escalation alert person by person.

        Each recipient is logged under its own dedupe key, so a retry of a
        partly delivered alert only reaches the people who were missed.
        """
        effect = entry.effect
        counts = Counter()
        deliveries = plan_alert(record, self.directory.lookup(effect.user_id))
        if not deliveries:
            logger.warning(f"No alert recipients configured for {effect.user_id}")
            self.store.mark_outbox_done(entry.id)
            return counts

        errors = []
        for delivery in deliveries:
            dedupe_key = f"{effect.dedupe_key}:{delivery.key}"
            if self.store.has_notification(dedupe_key):
                continue
            try:
                self._retry(self._send_alert, effect, delivery)
            except DispatchFailedError as e:
                errors.append(str(e))
                continue

            professional = delivery.recipient_type is RecipientType.PROFESSIONAL
            self.store.append_notification(BeneficiaryNotification(
                user_id=effect.user_id,
                type=NotificationType.PROFESSIONAL_CONCERN if professional else NotificationType.BENEFICIARY_ALERTED,
                sent_at=now,
                message=delivery.message,
                action_required=delivery.action_required,
                dedupe_key=dedupe_key,
                recipient_type=delivery.recipient_type,
                recipient=delivery.contact.key,
            ))
            counts["professional_alerts" if professional else "beneficiary_alerts"] += 1

        if errors:
            self._reschedule(entry, now, "; ".join(errors))
            counts["failures"] += 1
        else:
            self.store.mark_outbox_done(entry.id)
        return counts

    def _send_alert(self, effect: Effect, delivery: AlertDelivery):
        target = delivery.contact.key
        try:
            ok = self.dispatcher.send_to_contact(effect.user_id, delivery.contact, delivery.message,
                                                 subject=delivery.subject)
        except Exception as e:
            raise DispatchFailedError(f"alert to {target} for {effect.user_id} raised: {e}") from e
        if not ok:
            raise DispatchFailedError(f"alert to {target} for {effect.user_id} was not delivered")
        logger.info(f"Delivered {delivery.recipient_type.value} alert to {target} for {effect.user_id}")

    def _dispatch(self, entry: OutboxEntry, record: CheckinRecord) -> Tuple[str, bool]:
        effect = entry.effect
        try:
            if effect.kind is EffectKind.SEND_REMINDER:
                subject, body = reminder_message(record, effect.offset_days)
                ok = self.dispatcher.send(effect.user_id, body, self.config.reminder_channel, subject=subject)
                action_required = False
            else:
                subject, body = inheritance_notice(record)
                ok = self.trigger.begin_release(effect.user_id)
                action_required = True
        except Exception as e:
            raise DispatchFailedError(f"{effect.kind.value} for {effect.user_id} raised: {e}") from e

        if not ok:
            raise DispatchFailedError(f"{effect.kind.value} for {effect.user_id} was not delivered")
        logger.info(f"Delivered {effect.kind.value} for {effect.user_id}")
        return body, action_required

    def _reschedule(self, entry: OutboxEntry, now: datetime, error: str):
        effect = entry.effect
        attempts = entry.attempts + 1
        is_trigger = effect.kind is EffectKind.TRIGGER_INHERITANCE

        if not is_trigger and attempts >= self.config.max_outbox_attempts:
            logger.error(f"Giving up on {effect.kind.value} for {effect.user_id} after {attempts} ticks: {error}")
            self.store.mark_outbox_failed(entry.id, error)
            return

        delay_hours = min(self.config.outbox_retry_base_hours * (2 ** (attempts - 1)),
                          self.config.trigger_retry_max_hours)
        next_attempt_at = now + timedelta(hours=delay_hours)
        self.store.reschedule_outbox(entry.id, attempts, next_attempt_at, error)
        if is_trigger:
            # A missed release has real-world consequences; it is never dropped
            logger.error(f"Inheritance trigger for {effect.user_id} failed (attempt {attempts}), "
                         f"retrying at {next_attempt_at.isoformat()}: {error}")
        else:
            logger.warning(f"{effect.kind.value} for {effect.user_id} failed (attempt {attempts}), "
                           f"retrying at {next_attempt_at.isoformat()}")

    def _retry(self, fn, *args):
        return transient_retry(self.config)(fn, *args)

    def run_scheduled_tick(self):
        """Tick entry point for the periodic loop; errors are logged so the loop survives"""
        try:
            self.run_tick()
        except Exception as e:
            logger.error(f"Error in scheduled tick: {e}")

    def start_monitoring(self, poll_seconds: int = 60):
        """Run one tick per day at the configured time until stop() is called"""
        logger.info(f"Starting check-in scheduler, daily tick at {self.config.tick_time}")
        self.scheduler.every().day.at(self.config.tick_time).do(self.run_scheduled_tick)
        self.is_running = True
        self._stopped.clear()

        while self.is_running:
            self.scheduler.run_pending()
            if self._stopped.wait(poll_seconds):
                break

        self.scheduler.clear()
        logger.info("Check-in scheduler stopped")

    def stop(self):
        self.is_running = False
        self._stopped.set()
