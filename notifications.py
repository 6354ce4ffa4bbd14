#!/usr/bin/env python3
"""
Notification delivery for the check-in liveness switch
Email/SMS dispatch to users, beneficiaries and professional contacts, alert
routing, and the inheritance release hook
"""

import logging
import smtplib
from dataclasses import dataclass, field
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Dict, List, Optional, Tuple

import requests

from checkin_models import AlertType, CheckinRecord, RecipientType, utcnow

logger = logging.getLogger(__name__)

CHANNEL_EMAIL = "email"
CHANNEL_SMS = "sms"


@dataclass
class Contact:
    """A person who can be notified"""
    name: str
    email: str = ""
    phone: str = ""
    preferred_channel: str = CHANNEL_EMAIL
    id: str = ""

    @property
    def key(self) -> str:
        """Stable identifier used for routing and per-person delivery tracking"""
        return self.id or self.email or self.phone or self.name


@dataclass
class UserContacts:
    """The account holder and the people to alert on their behalf"""
    owner: Contact
    beneficiaries: List[Contact] = field(default_factory=list)
    professionals: List[Contact] = field(default_factory=list)


@dataclass
class AlertDelivery:
    """One recipient of an escalation alert, with the text they receive"""
    contact: Contact
    recipient_type: RecipientType
    subject: str
    message: str
    action_required: bool = True

    @property
    def key(self) -> str:
        return f"{self.recipient_type.value}:{self.contact.key}"


class ContactDirectory:
    """Looks up contact details by user id"""

    def __init__(self, contacts: Optional[Dict[str, Dict]] = None):
        self._contacts: Dict[str, UserContacts] = {}
        for user_id, entry in (contacts or {}).items():
            self._contacts[user_id] = UserContacts(
                owner=Contact(
                    name=entry.get("name", user_id),
                    email=entry.get("email", ""),
                    phone=entry.get("phone", ""),
                ),
                beneficiaries=[Contact(**b) for b in entry.get("beneficiaries", [])],
                professionals=[Contact(**p) for p in entry.get("professionals", [])],
            )

    def lookup(self, user_id: str) -> Optional[UserContacts]:
        return self._contacts.get(user_id)


class NotificationDispatcher:
    """Sends a message to a user, or to one person on their behalf"""

    def send(self, user_id: str, message: str, channel: str, subject: Optional[str] = None) -> bool:
        raise NotImplementedError

    def send_to_contact(self, user_id: str, contact: Contact, message: str,
                        subject: Optional[str] = None) -> bool:
        raise NotImplementedError


class InheritanceTrigger:
    """Starts the downstream asset release for a user"""

    def begin_release(self, user_id: str) -> bool:
        raise NotImplementedError


class EmailSmsDispatcher(NotificationDispatcher):
    """Handles email and SMS notifications"""

    def __init__(self, config: Dict, directory: ContactDirectory):
        self.directory = directory
        self.smtp_server = config.get('smtp_server', 'smtp.gmail.com')
        self.smtp_port = config.get('smtp_port', 587)
        self.smtp_timeout = config.get('dispatch_timeout_seconds', 10)
        self.email = config.get('email')
        self.email_password = config.get('email_password')
        self.twilio_sid = config.get('twilio_sid')
        self.twilio_token = config.get('twilio_token')
        self.twilio_phone = config.get('twilio_phone')

    def send(self, user_id: str, message: str, channel: str, subject: Optional[str] = None) -> bool:
        contacts = self.directory.lookup(user_id)
        if contacts is None:
            logger.error(f"No contact details configured for user {user_id}")
            return False

        subject = subject or "Check-in notice"
        if channel == CHANNEL_EMAIL:
            return self.send_email(contacts.owner.email, subject, message)
        if channel == CHANNEL_SMS:
            return self.send_sms(contacts.owner.phone, message)

        logger.error(f"Unknown notification channel: {channel}")
        return False

    def send_to_contact(self, user_id: str, contact: Contact, message: str,
                        subject: Optional[str] = None) -> bool:
        logger.info(f"Notifying {contact.name} for {user_id} via {contact.preferred_channel}")
        if contact.preferred_channel == CHANNEL_SMS and contact.phone:
            return self.send_sms(contact.phone, message)
        return self.send_email(contact.email, subject or "Check-in notice", message)

    def send_email(self, to_email: str, subject: str, body: str) -> bool:
        """Send a plain-text email"""
        if not to_email:
            logger.error("No email address to send to")
            return False
        if not self.email or not self.email_password:
            logger.warning("SMTP credentials not configured, skipping email")
            return False

        try:
            msg = MIMEMultipart()
            msg['From'] = self.email
            msg['To'] = to_email
            msg['Subject'] = subject
            msg.attach(MIMEText(body, 'plain'))

            with smtplib.SMTP(self.smtp_server, self.smtp_port, timeout=self.smtp_timeout) as server:
                server.starttls()
                server.login(self.email, self.email_password)
                server.sendmail(self.email, to_email, msg.as_string())

            logger.info(f"Email sent successfully to {to_email}")
            return True

        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Failed to send email to {to_email}: {str(e)}")
            return False

    def send_sms(self, phone_number: str, message: str) -> bool:
        """Send SMS using Twilio"""
        if not all([self.twilio_sid, self.twilio_token, self.twilio_phone]):
            logger.warning("Twilio credentials not configured, skipping SMS")
            return False
        if not phone_number:
            logger.error("No phone number to send to")
            return False

        from twilio.base.exceptions import TwilioException
        from twilio.rest import Client

        try:
            client = Client(self.twilio_sid, self.twilio_token)
            sms = client.messages.create(
                body=message,
                from_=self.twilio_phone,
                to=phone_number
            )
            logger.info(f"SMS sent successfully to {phone_number}, SID: {sms.sid}")
            return True

        except (TwilioException, OSError) as e:
            logger.error(f"Failed to send SMS to {phone_number}: {str(e)}")
            return False


class LoggingDispatcher(NotificationDispatcher):
    """Logs messages instead of delivering them; keeps a copy of each"""

    def __init__(self):
        self.sent: List[Tuple[str, str, str]] = []

    def send(self, user_id: str, message: str, channel: str, subject: Optional[str] = None) -> bool:
        logger.info(f"[{channel}] {user_id}: {subject or ''} {message}")
        self.sent.append((user_id, channel, message))
        return True

    def send_to_contact(self, user_id: str, contact: Contact, message: str,
                        subject: Optional[str] = None) -> bool:
        logger.info(f"[{contact.key}] on behalf of {user_id}: {subject or ''} {message}")
        self.sent.append((user_id, contact.key, message))
        return True


class WebhookInheritanceTrigger(InheritanceTrigger):
    """Posts the release request to the inheritance service"""

    def __init__(self, url: str, api_key: Optional[str] = None, timeout: float = 10):
        self.url = url
        self.api_key = api_key
        self.timeout = timeout

    def begin_release(self, user_id: str) -> bool:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        payload = {
            "user_id": user_id,
            "event": "inheritance_triggered",
            "requested_at": utcnow().isoformat(),
        }

        try:
            response = requests.post(self.url, json=payload, headers=headers, timeout=self.timeout)
            response.raise_for_status()
            logger.info(f"Inheritance release requested for {user_id}")
            return True
        except requests.RequestException as e:
            logger.error(f"Inheritance release request failed for {user_id}: {e}")
            return False


class LoggingInheritanceTrigger(InheritanceTrigger):
    def __init__(self):
        self.released: List[str] = []

    def begin_release(self, user_id: str) -> bool:
        logger.warning(f"Inheritance release for {user_id} (logging trigger, nothing sent)")
        self.released.append(user_id)
        return True


def reminder_message(record: CheckinRecord, offset_days: int) -> Tuple[str, str]:
    """Subject and body of a pre-due reminder to the account holder"""
    due = record.next_due_at.strftime('%Y-%m-%d')
    day_word = "day" if offset_days == 1 else "days"
    subject = f"Check-in due in {offset_days} {day_word}"
    body = (
        f"Your periodic check-in is due on {due} ({offset_days} {day_word} from now).\n\n"
        f"Please sign in and confirm you are well. If you do not check in within "
        f"{record.grace_period_days} days of the due date, your beneficiaries will be contacted."
    )
    return subject, body


def beneficiary_alert_message(record: CheckinRecord, owner_name: Optional[str] = None) -> Tuple[str, str]:
    """Subject and body of the alert sent to beneficiaries once the grace period ends"""
    name = owner_name or "The account holder"
    last_seen = record.last_checkin_at.strftime('%Y-%m-%d')
    if record.privacy.alert_type is AlertType.DIRECT_INHERITANCE:
        subject = "Inheritance process notice"
        body = (
            f"{name} has not checked in since {last_seen}. Unless they respond within "
            f"{record.confirmation_window_days} days, the inheritance release will begin "
            f"and you will receive instructions."
        )
    elif record.privacy.allow_wellness_checks:
        subject = "Please check on a loved one"
        body = (
            f"{name} has missed their scheduled check-in (last seen {last_seen}). "
            f"Please try to reach them and make sure they are well."
        )
    else:
        subject = "Missed check-in notice"
        body = (
            f"{name} has missed their scheduled check-in (last seen {last_seen}). "
            f"They have asked that no wellness check be made; you will be contacted "
            f"again if anything further is needed."
        )
    if record.privacy.custom_message:
        body = f"{body}\n\n{record.privacy.custom_message}"
    return subject, body


def professional_concern_message(record: CheckinRecord, owner_name: Optional[str] = None) -> Tuple[str, str]:
    """Subject and body of the concern alert sent to professional contacts"""
    name = owner_name or "Your client"
    subject = "Client missed scheduled check-in"
    body = record.privacy.professional_concern_message or (
        f"{name} has missed their scheduled check-in "
        f"(last seen {record.last_checkin_at.strftime('%Y-%m-%d')}). "
        f"Please check on the account holder as agreed."
    )
    return subject, body


def plan_alert(record: CheckinRecord, contacts: Optional[UserContacts]) -> List[AlertDelivery]:
    """Who receives the escalation alert for ``record``, and what each is sent

    Inheritance notices go to beneficiaries only. Concern alerts go to the
    selected professional contacts as well, or to them alone when the user
    asked for professional contacts only. Unless family and professionals are
    kept separate, both receive the family wording.
    """
    if contacts is None:
        return []
    prefs = record.privacy
    owner_name = contacts.owner.name
    family_subject, family_body = beneficiary_alert_message(record, owner_name)
    # Without wellness checks a concern alert informs family but asks nothing of them
    family_action = prefs.alert_type is AlertType.DIRECT_INHERITANCE or prefs.allow_wellness_checks
    family = [AlertDelivery(c, RecipientType.BENEFICIARY, family_subject, family_body, family_action)
              for c in contacts.beneficiaries]
    if prefs.alert_type is AlertType.DIRECT_INHERITANCE:
        return family

    professionals = contacts.professionals
    if prefs.professional_contact_ids:
        wanted = set(prefs.professional_contact_ids)
        professionals = [c for c in professionals if c.key in wanted]
    if prefs.separate_professional_and_family:
        pro_subject, pro_body = professional_concern_message(record, owner_name)
    else:
        pro_subject, pro_body = family_subject, family_body
    staff = [AlertDelivery(c, RecipientType.PROFESSIONAL, pro_subject, pro_body) for c in professionals]

    if prefs.use_professional_contacts_only:
        return staff
    return family + staff


def inheritance_notice(record: CheckinRecord) -> Tuple[str, str]:
    subject = "Inheritance release started"
    body = (
        f"No check-in was received for {record.user_id} since "
        f"{record.last_checkin_at.strftime('%Y-%m-%d')}. The inheritance release has begun."
    )
    return subject, body
