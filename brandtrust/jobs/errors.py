from datetime import datetime


class JobDeferred(Exception):
    """Raised by a handler to push its job to ``not_before`` without spending an attempt."""

    def __init__(self, not_before: datetime, reason: str) -> None:
        super().__init__(f"deferred until {not_before.isoformat()}: {reason}")
        self.not_before = not_before
        self.reason = reason


class InvalidJobPayload(Exception):
    """Raised when a job payload can never be executed as stored."""
