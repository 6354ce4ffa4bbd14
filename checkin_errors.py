"""
Error types shared by the check-in store, service and scheduler
"""


class CheckinError(Exception):
    """Base class for check-in errors"""


class ConfigError(CheckinError):
    """Invalid or missing configuration"""


class NotFoundError(CheckinError):
    """No check-in record exists for the user"""

    def __init__(self, user_id: str):
        super().__init__(f"No check-in record for user {user_id}")
        self.user_id = user_id


class ConflictError(CheckinError):
    """The stored record changed since it was read"""


class StoreUnavailableError(CheckinError):
    """Persistence I/O failed; safe to retry"""


class DispatchFailedError(CheckinError):
    """A notification or inheritance trigger call failed; safe to retry"""


class InheritanceLockedError(CheckinError):
    """Inheritance has been triggered; a check-in can no longer reset the record"""

    def __init__(self, user_id: str):
        super().__init__(f"Inheritance already triggered for user {user_id}")
        self.user_id = user_id
