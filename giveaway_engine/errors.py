"""Exception hierarchy shared by the giveaway engine."""

from __future__ import annotations

from datetime import datetime


class GiveawayError(RuntimeError):
    """Base class for engine errors."""


class ValidationError(GiveawayError):
    """Raised when a giveaway configuration is invalid. Nothing is persisted."""


class TransientInfraError(GiveawayError):
    """Raised when the store or a collaborator is temporarily unavailable."""


class StaleWriteError(GiveawayError):
    """Raised when a compare-and-set finds the row already moved on."""


class JobDeferred(GiveawayError):
    """Raised by a job handler that fired before its time."""

    def __init__(self, run_at: datetime) -> None:
        super().__init__(f"job deferred until {run_at.isoformat()}")
        self.run_at = run_at
