#!/usr/bin/env python3
"""
Configuration and logging for the check-in liveness switch

Configuration is read once at startup from a JSON file; a sample file is
written when none exists. It is never reloaded while the process runs.
"""

import json
import logging
import os
from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional, Tuple

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from checkin_errors import ConfigError, DispatchFailedError, StoreUnavailableError
from checkin_models import (
    DEFAULT_CONFIRMATION_WINDOW_DAYS,
    DEFAULT_GRACE_PERIOD_DAYS,
    DEFAULT_INTERVAL_DAYS,
    DEFAULT_MAX_REMINDERS,
    DEFAULT_REMINDER_SCHEDULE_DAYS,
)

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'
DEFAULT_CONFIG_FILE = "config.json"
# Placeholder written to sample configs; the internal API stays closed while it is set
DEFAULT_INTERNAL_API_KEY = "change-me"


@dataclass
class CheckinConfig:
    """Settings loaded from the config file"""
    interval_days: int = DEFAULT_INTERVAL_DAYS
    reminder_schedule_days: List[int] = field(default_factory=lambda: list(DEFAULT_REMINDER_SCHEDULE_DAYS))
    grace_period_days: int = DEFAULT_GRACE_PERIOD_DAYS
    max_reminders: int = DEFAULT_MAX_REMINDERS
    confirmation_window_days: int = DEFAULT_CONFIRMATION_WINDOW_DAYS

    db_path: str = "checkin_switch.db"
    log_file: Optional[str] = "checkin_switch.log"
    log_level: str = "INFO"

    # Scheduler
    tick_time: str = "02:00"
    tick_workers: int = 1
    batch_size: int = 500
    reminder_channel: str = "email"

    # Retries: bounded in-tick attempts, then backoff across ticks
    retry_attempts: int = 3
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 30.0
    max_outbox_attempts: int = 5
    outbox_retry_base_hours: float = 1.0
    trigger_retry_max_hours: float = 24.0

    # HTTP API
    internal_api_key: str = DEFAULT_INTERNAL_API_KEY

    # Collaborators
    email: Optional[str] = None
    email_password: Optional[str] = None
    smtp_server: str = "smtp.gmail.com"
    smtp_port: int = 587
    twilio_sid: Optional[str] = None
    twilio_token: Optional[str] = None
    twilio_phone: Optional[str] = None
    inheritance_webhook_url: Optional[str] = None
    inheritance_webhook_key: Optional[str] = None
    dispatch_timeout_seconds: float = 10.0
    contacts: Dict[str, Dict] = field(default_factory=dict)

    def __post_init__(self):
        self.validate()

    def validate(self):
        """Reject settings the escalation engine cannot work with"""
        if self.interval_days <= 0:
            raise ConfigError("interval_days must be positive")
        if self.grace_period_days < 0:
            raise ConfigError("grace_period_days must not be negative")
        if self.confirmation_window_days < 0:
            raise ConfigError("confirmation_window_days must not be negative")
        if self.max_reminders < 0:
            raise ConfigError("max_reminders must not be negative")
        for offset in self.reminder_schedule_days:
            if not isinstance(offset, int) or offset <= 0 or offset >= self.interval_days:
                raise ConfigError(
                    f"reminder offset {offset!r} must be a whole number of days between 1 and {self.interval_days - 1}"
                )
        if self.tick_workers < 1 or self.batch_size < 1:
            raise ConfigError("tick_workers and batch_size must be at least 1")
        if self.retry_attempts < 1:
            raise ConfigError("retry_attempts must be at least 1")

    @property
    def internal_api_enabled(self) -> bool:
        return bool(self.internal_api_key) and self.internal_api_key != DEFAULT_INTERNAL_API_KEY

    @property
    def record_defaults(self) -> Dict:
        """Per-record policy fields copied onto newly created records"""
        return {
            "interval_days": self.interval_days,
            "reminder_schedule_days": tuple(self.reminder_schedule_days),
            "grace_period_days": self.grace_period_days,
            "max_reminders": self.max_reminders,
            "confirmation_window_days": self.confirmation_window_days,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "CheckinConfig":
        known = set(cls.__dataclass_fields__)
        unknown = sorted(set(data) - known)
        if unknown:
            logger.warning(f"Ignoring unknown config keys: {', '.join(unknown)}")
        try:
            return cls(**{k: v for k, v in data.items() if k in known})
        except TypeError as e:
            raise ConfigError(f"Invalid config: {e}") from e


def load_config(config_file: Optional[str] = None) -> CheckinConfig:
    """Load configuration from JSON file"""
    config_file = config_file or os.getenv("CHECKIN_CONFIG", DEFAULT_CONFIG_FILE)
    try:
        with open(config_file, 'r') as f:
            data = json.load(f)
    except FileNotFoundError:
        logger.warning(f"Config file {config_file} not found, writing sample and using defaults")
        create_sample_config(config_file)
        data = {}
    except json.JSONDecodeError as e:
        raise ConfigError(f"Config file {config_file} is not valid JSON: {e}") from e

    config = CheckinConfig.from_dict(data)
    db_override = os.getenv("CHECKIN_DB_PATH")
    if db_override:
        config.db_path = db_override
    return config


def create_sample_config(config_file: str):
    """Create a sample configuration file"""
    sample = asdict(CheckinConfig())
    sample.update({
        "email": "your_email@gmail.com",
        "email_password": "your_app_password",
        "inheritance_webhook_url": "https://example.com/inheritance/release",
        "contacts": {
            "user-123": {
                "name": "Account Holder",
                "email": "holder@example.com",
                "phone": "+1234567890",
                "beneficiaries": [
                    {
                        "name": "Jane Smith",
                        "email": "jane@example.com",
                        "phone": "+9876543210",
                        "preferred_channel": "email"
                    }
                ],
                "professionals": [
                    {
                        "id": "lawyer-1",
                        "name": "Sam Counsel",
                        "email": "sam@lawfirm.example.com",
                        "preferred_channel": "email"
                    }
                ]
            }
        }
    })
    try:
        with open(config_file, 'w') as f:
            json.dump(sample, f, indent=2)
        logger.info(f"Sample config created at {config_file}")
    except OSError as e:
        logger.error(f"Could not write sample config to {config_file}: {e}")


def setup_logging(config: CheckinConfig, handlers: Optional[List[logging.Handler]] = None):
    """Configure root logging once for the process

    By default logs go to stderr and to ``config.log_file``; a daemon passes
    its own handler list since its standard streams are detached.
    """
    if handlers is None:
        handlers = [logging.StreamHandler()]
        if config.log_file:
            handlers.append(logging.FileHandler(config.log_file))
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers
    )


TRANSIENT_ERRORS: Tuple = (StoreUnavailableError, DispatchFailedError)


def transient_retry(config: CheckinConfig) -> Retrying:
    """Bounded exponential backoff for store and dispatch calls"""
    return Retrying(
        stop=stop_after_attempt(config.retry_attempts),
        wait=wait_exponential(multiplier=config.retry_base_delay_seconds,
                              max=config.retry_max_delay_seconds),
        retry=retry_if_exception_type(TRANSIENT_ERRORS),
        reraise=True,
    )
