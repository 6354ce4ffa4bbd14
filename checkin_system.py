#!/usr/bin/env python3
"""
Check-in Liveness Switch
Tracks periodic user check-ins, escalates reminders, alerts beneficiaries and
starts the inheritance release when a user stops responding
"""

import json
import logging
import sys
from dataclasses import asdict
from typing import Optional

from checkin_config import CheckinConfig, load_config, setup_logging
from checkin_errors import CheckinError
from checkin_service import CheckinService
from checkin_store import RecordStore, SQLiteRecordStore
from notifications import (
    ContactDirectory,
    EmailSmsDispatcher,
    InheritanceTrigger,
    LoggingDispatcher,
    LoggingInheritanceTrigger,
    NotificationDispatcher,
    WebhookInheritanceTrigger,
)
from scheduler_driver import SchedulerDriver

logger = logging.getLogger(__name__)


class CheckinSystem:
    """Wires the record store, check-in API and scheduler together"""

    def __init__(self, config: CheckinConfig,
                 store: Optional[RecordStore] = None,
                 dispatcher: Optional[NotificationDispatcher] = None,
                 trigger: Optional[InheritanceTrigger] = None):
        self.config = config
        self.directory = ContactDirectory(config.contacts)
        self.store = store or SQLiteRecordStore(config.db_path)
        self.dispatcher = dispatcher or self._default_dispatcher()
        self.trigger = trigger or self._default_trigger()
        self.service = CheckinService(self.store, config)
        self.driver = SchedulerDriver(self.store, self.dispatcher, self.trigger, config,
                                      directory=self.directory)

    @classmethod
    def from_config_file(cls, config_file: Optional[str] = None) -> "CheckinSystem":
        config = load_config(config_file)
        setup_logging(config)
        return cls(config)

    def _default_dispatcher(self) -> NotificationDispatcher:
        if self.config.email and self.config.email_password:
            return EmailSmsDispatcher(asdict(self.config), self.directory)
        logger.warning("No SMTP credentials configured - notifications will only be logged")
        return LoggingDispatcher()

    def _default_trigger(self) -> InheritanceTrigger:
        if self.config.inheritance_webhook_url:
            return WebhookInheritanceTrigger(
                self.config.inheritance_webhook_url,
                api_key=self.config.inheritance_webhook_key,
                timeout=self.config.dispatch_timeout_seconds,
            )
        logger.warning("No inheritance webhook configured - releases will only be logged")
        return LoggingInheritanceTrigger()


USAGE = """Check-in Liveness Switch
Usage: python checkin_system.py <command> [args]

  checkin <user_id>         Record a check-in
  status <user_id>          Show the check-in record
  notifications <user_id>   List delivered notifications
  tick                      Run one scheduler tick now
  monitor                   Run the daily scheduler until interrupted
"""


def main(argv=None) -> int:
    """Command-line entry point"""
    argv = list(sys.argv[1:] if argv is None else argv)
    if not argv or argv[0] not in ("checkin", "status", "notifications", "tick", "monitor"):
        print(USAGE)
        return 2

    command, args = argv[0], argv[1:]
    if command in ("checkin", "status", "notifications") and len(args) != 1:
        print(USAGE)
        return 2

    try:
        system = CheckinSystem.from_config_file()

        if command == "checkin":
            record = system.service.record_checkin(args[0])
            print(json.dumps(record.to_dict(), indent=2))
        elif command == "status":
            record = system.service.get_status(args[0])
            print(json.dumps(record.to_dict(), indent=2))
        elif command == "notifications":
            notes = system.service.list_notifications(args[0])
            print(json.dumps([n.to_dict() for n in notes], indent=2))
        elif command == "tick":
            summary = system.driver.run_tick()
            print(json.dumps(summary.to_dict(), indent=2))
        else:
            print("Starting monitoring system... press Ctrl+C to stop")
            try:
                system.driver.start_monitoring()
            except KeyboardInterrupt:
                system.driver.stop()
                print("\nMonitoring stopped by user")

    except CheckinError as e:
        logger.error(f"{command} failed: {e}")
        print(f"Error: {e}")
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
