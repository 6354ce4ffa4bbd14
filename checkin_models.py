"""
Data model for the check-in liveness switch

A CheckinRecord is kept per user. The scheduler moves it forward through the
CheckinStatus ladder; a successful check-in puts it back to ACTIVE.
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Optional, Tuple

DEFAULT_INTERVAL_DAYS = 182
DEFAULT_REMINDER_SCHEDULE_DAYS = (30, 14, 7, 1)
DEFAULT_GRACE_PERIOD_DAYS = 30
DEFAULT_MAX_REMINDERS = 4
DEFAULT_CONFIRMATION_WINDOW_DAYS = 14


def utcnow() -> datetime:
    """Current time as an aware UTC datetime"""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return as_utc(datetime.fromisoformat(value))


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return as_utc(value).isoformat()


class CheckinStatus(Enum):
    """Liveness status, listed in escalation order"""
    ACTIVE = "active"
    WARNING = "warning"
    OVERDUE = "overdue"
    ESCALATED = "escalated"
    INHERITANCE_TRIGGERED = "inheritance_triggered"

    @property
    def rank(self) -> int:
        return _STATUS_ORDER.index(self)


_STATUS_ORDER = list(CheckinStatus)


def advance(current: CheckinStatus, target: CheckinStatus) -> CheckinStatus:
    """Return the later of two statuses; time never moves a record backwards"""
    return target if target.rank > current.rank else current


class AlertType(Enum):
    CONCERN = "concern"
    DIRECT_INHERITANCE = "direct_inheritance"


class NotificationType(Enum):
    REMINDER_SENT = "reminder_sent"
    BENEFICIARY_ALERTED = "beneficiary_alerted"
    PROFESSIONAL_CONCERN = "professional_concern"
    INHERITANCE_TRIGGERED = "inheritance_triggered"


class RecipientType(Enum):
    """Who a logged notification went to"""
    ACCOUNT_HOLDER = "account_holder"
    BENEFICIARY = "beneficiary"
    PROFESSIONAL = "professional"


class EffectKind(Enum):
    SEND_REMINDER = "send_reminder"
    ALERT_BENEFICIARIES = "alert_beneficiaries"
    TRIGGER_INHERITANCE = "trigger_inheritance"

    @property
    def notification_type(self) -> NotificationType:
        return _EFFECT_NOTIFICATIONS[self]


_EFFECT_NOTIFICATIONS = {
    EffectKind.SEND_REMINDER: NotificationType.REMINDER_SENT,
    EffectKind.ALERT_BENEFICIARIES: NotificationType.BENEFICIARY_ALERTED,
    EffectKind.TRIGGER_INHERITANCE: NotificationType.INHERITANCE_TRIGGERED,
}


@dataclass(frozen=True)
class PrivacyPreferences:
    """How much beneficiaries and professional contacts are told, and when

    Professional contacts (a lawyer, doctor or care worker) only ever receive
    concern alerts; inheritance notices go to beneficiaries alone.
    """
    alert_beneficiaries_when_overdue: bool = True
    alert_type: AlertType = AlertType.CONCERN
    allow_wellness_checks: bool = True
    inheritance_only_mode: bool = False
    custom_message: Optional[str] = None
    use_professional_contacts_only: bool = False
    # Empty means every professional contact on file
    professional_contact_ids: Tuple[str, ...] = ()
    professional_concern_message: Optional[str] = None
    separate_professional_and_family: bool = True

    def __post_init__(self):
        ids = self.professional_contact_ids
        if isinstance(ids, str) or not all(isinstance(i, str) for i in ids):
            raise TypeError("professional_contact_ids must be a list of contact ids")
        object.__setattr__(self, "professional_contact_ids", tuple(ids))

    @property
    def beneficiary_alerts_enabled(self) -> bool:
        return self.alert_beneficiaries_when_overdue and not self.inheritance_only_mode

    def to_dict(self) -> Dict:
        return {
            "alert_beneficiaries_when_overdue": self.alert_beneficiaries_when_overdue,
            "alert_type": self.alert_type.value,
            "allow_wellness_checks": self.allow_wellness_checks,
            "inheritance_only_mode": self.inheritance_only_mode,
            "custom_message": self.custom_message,
            "use_professional_contacts_only": self.use_professional_contacts_only,
            "professional_contact_ids": list(self.professional_contact_ids),
            "professional_concern_message": self.professional_concern_message,
            "separate_professional_and_family": self.separate_professional_and_family,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "PrivacyPreferences":
        if not data:
            return cls()
        if not isinstance(data, dict):
            raise TypeError("privacy preferences must be an object")
        return cls(
            alert_beneficiaries_when_overdue=bool(data.get("alert_beneficiaries_when_overdue", True)),
            alert_type=AlertType(data.get("alert_type", AlertType.CONCERN.value)),
            allow_wellness_checks=bool(data.get("allow_wellness_checks", True)),
            inheritance_only_mode=bool(data.get("inheritance_only_mode", False)),
            custom_message=data.get("custom_message") or None,
            use_professional_contacts_only=bool(data.get("use_professional_contacts_only", False)),
            professional_contact_ids=data.get("professional_contact_ids") or (),
            professional_concern_message=data.get("professional_concern_message") or None,
            separate_professional_and_family=bool(data.get("separate_professional_and_family", True)),
        )


@dataclass
class CheckinRecord:
    """Liveness state for one user"""
    user_id: str
    last_checkin_at: datetime
    interval_days: int = DEFAULT_INTERVAL_DAYS
    status: CheckinStatus = CheckinStatus.ACTIVE
    reminders_sent: int = 0
    max_reminders: int = DEFAULT_MAX_REMINDERS
    grace_period_days: int = DEFAULT_GRACE_PERIOD_DAYS
    reminder_schedule_days: Tuple[int, ...] = DEFAULT_REMINDER_SCHEDULE_DAYS
    confirmation_window_days: int = DEFAULT_CONFIRMATION_WINDOW_DAYS
    last_reminder_offset: Optional[int] = None
    escalated_at: Optional[datetime] = None
    privacy: PrivacyPreferences = field(default_factory=PrivacyPreferences)
    version: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        self.last_checkin_at = as_utc(self.last_checkin_at)
        self.reminder_schedule_days = tuple(sorted(set(self.reminder_schedule_days), reverse=True))
        if self.escalated_at is not None:
            self.escalated_at = as_utc(self.escalated_at)

    @property
    def next_due_at(self) -> datetime:
        return self.last_checkin_at + timedelta(days=self.interval_days)

    @property
    def grace_deadline(self) -> datetime:
        return self.next_due_at + timedelta(days=self.grace_period_days)

    @property
    def inheritance_deadline(self) -> Optional[datetime]:
        if self.escalated_at is None:
            return None
        return self.escalated_at + timedelta(days=self.confirmation_window_days)

    def reset(self, now: datetime) -> "CheckinRecord":
        """Copy of this record after a successful check-in at ``now``"""
        return replace(
            self,
            last_checkin_at=as_utc(now),
            status=CheckinStatus.ACTIVE,
            reminders_sent=0,
            last_reminder_offset=None,
            escalated_at=None,
            updated_at=as_utc(now),
        )

    def to_dict(self) -> Dict:
        return {
            "user_id": self.user_id,
            "status": self.status.value,
            "last_checkin_at": format_timestamp(self.last_checkin_at),
            "next_due_at": format_timestamp(self.next_due_at),
            "interval_days": self.interval_days,
            "reminders_sent": self.reminders_sent,
            "max_reminders": self.max_reminders,
            "grace_period_days": self.grace_period_days,
            "reminder_schedule_days": list(self.reminder_schedule_days),
            "confirmation_window_days": self.confirmation_window_days,
            "last_reminder_offset": self.last_reminder_offset,
            "escalated_at": format_timestamp(self.escalated_at),
            "privacy": self.privacy.to_dict(),
            "version": self.version,
        }


@dataclass(frozen=True)
class Effect:
    """A side effect requested by the escalation engine"""
    kind: EffectKind
    user_id: str
    cycle_started_at: datetime
    offset_days: Optional[int] = None

    @property
    def dedupe_key(self) -> str:
        # One delivery per (user, kind, offset) within a check-in cycle
        offset = "-" if self.offset_days is None else str(self.offset_days)
        return f"{self.user_id}:{self.kind.value}:{offset}:{format_timestamp(self.cycle_started_at)}"

    def to_dict(self) -> Dict:
        return {
            "kind": self.kind.value,
            "user_id": self.user_id,
            "cycle_started_at": format_timestamp(self.cycle_started_at),
            "offset_days": self.offset_days,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "Effect":
        return cls(
            kind=EffectKind(data["kind"]),
            user_id=data["user_id"],
            cycle_started_at=parse_timestamp(data["cycle_started_at"]),
            offset_days=data.get("offset_days"),
        )


@dataclass(frozen=True)
class BeneficiaryNotification:
    """Append-only log entry for a delivered effect"""
    user_id: str
    type: NotificationType
    sent_at: datetime
    message: str
    action_required: bool = False
    dedupe_key: Optional[str] = None
    recipient_type: RecipientType = RecipientType.BENEFICIARY
    # Contact key of the person reached, when the notification went to one person
    recipient: Optional[str] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "type": self.type.value,
            "sent_at": format_timestamp(self.sent_at),
            "message": self.message,
            "recipient_type": self.recipient_type.value,
            "recipient": self.recipient,
            "action_required": self.action_required,
        }


@dataclass
class OutboxEntry:
    """An effect persisted alongside the record change that produced it"""
    id: str
    effect: Effect
    attempts: int = 0
    next_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None
