"""Data models for giveaways, entries, and scheduled jobs."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Dict, FrozenSet, List, Optional


class GiveawayStatus(str, enum.Enum):
    ACTIVE = "active"
    ENDED = "ended"
    AWAITING_CLAIM = "awaiting_claim"
    COMPLETED = "completed"
    EXHAUSTED_NO_WINNER = "exhausted_no_winner"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset(
    {
        GiveawayStatus.COMPLETED,
        GiveawayStatus.EXHAUSTED_NO_WINNER,
        GiveawayStatus.CANCELLED,
    }
)

# Edges of the lifecycle graph. AwaitingClaim -> AwaitingClaim is a reroll.
ALLOWED_TRANSITIONS: Dict[GiveawayStatus, FrozenSet[GiveawayStatus]] = {
    GiveawayStatus.ACTIVE: frozenset({GiveawayStatus.ENDED, GiveawayStatus.CANCELLED}),
    GiveawayStatus.ENDED: frozenset(
        {GiveawayStatus.AWAITING_CLAIM, GiveawayStatus.EXHAUSTED_NO_WINNER}
    ),
    GiveawayStatus.AWAITING_CLAIM: frozenset(
        {
            GiveawayStatus.AWAITING_CLAIM,
            GiveawayStatus.COMPLETED,
            GiveawayStatus.EXHAUSTED_NO_WINNER,
        }
    ),
    GiveawayStatus.COMPLETED: frozenset(),
    GiveawayStatus.EXHAUSTED_NO_WINNER: frozenset(),
    GiveawayStatus.CANCELLED: frozenset(),
}


def can_transition(current: GiveawayStatus, target: GiveawayStatus) -> bool:
    """Return True when ``current -> target`` is a forward edge of the lifecycle."""
    return target in ALLOWED_TRANSITIONS[current]


class JobStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    DEAD_LETTERED = "dead_lettered"


class Transition(str, enum.Enum):
    END = "end"
    CLAIM_TIMEOUT = "claim_timeout"
    MANUAL_REROLL = "manual_reroll"
    ANNOUNCE = "announce"


class MessageKind(str, enum.Enum):
    WINNER_ANNOUNCED = "winner_announced"
    REROLLED = "rerolled"
    NO_WINNER = "no_winner"
    EXHAUSTED = "exhausted"
    CLAIM_CONFIRMED = "claim_confirmed"
    CANCELLED = "cancelled"


class RejectionReason(str, enum.Enum):
    NOT_FOUND = "not_found"
    GIVEAWAY_CLOSED = "giveaway_closed"
    DUPLICATE_ENTRY = "duplicate_entry"
    BLACKLISTED = "blacklisted"
    NOT_IN_GUILD = "not_in_guild"
    MISSING_ROLES = "missing_roles"
    LEVEL_TOO_LOW = "level_too_low"
    ACCOUNT_TOO_NEW = "account_too_new"
    NOT_WINNER = "not_winner"
    ALREADY_RESOLVED = "already_resolved"
    NOT_AUTHORIZED = "not_authorized"
    INVALID_STATE = "invalid_state"


@dataclass(slots=True, frozen=True)
class Decision:
    """Outcome of an entry, claim, or administrative request."""
    accepted: bool
    reason: Optional[RejectionReason] = None

    @classmethod
    def accept(cls) -> "Decision":
        return cls(accepted=True)

    @classmethod
    def reject(cls, reason: RejectionReason) -> "Decision":
        return cls(accepted=False, reason=reason)


def format_timestamp(value: datetime) -> str:
    """Serialize a timestamp as fixed-width UTC so string order equals time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def make_job_key(tenant_id: int, giveaway_id: str, transition: str, epoch: Any) -> str:
    """Build the deterministic key for one logical job.

    Re-enqueuing the same ``(giveaway, transition, epoch)`` always yields the same key,
    which is what lets the job store and the idempotency ledger collapse duplicates.
    """
    name = transition.value if isinstance(transition, Transition) else str(transition)
    return f"{tenant_id}:{giveaway_id}:{name}:{epoch}"


@dataclass(slots=True)
class Requirements:
    """Eligibility rules a candidate must satisfy to enter and to win."""
    required_role_ids: List[int] = field(default_factory=list)
    min_level: int = 0
    min_account_age_days: int = 0
    blacklisted_user_ids: List[int] = field(default_factory=list)

    def to_payload(self) -> dict:
        return {
            "required_role_ids": list(self.required_role_ids),
            "min_level": self.min_level,
            "min_account_age_days": self.min_account_age_days,
            "blacklisted_user_ids": list(self.blacklisted_user_ids),
        }

    @classmethod
    def from_payload(cls, payload: Optional[dict]) -> "Requirements":
        payload = payload or {}
        return cls(
            required_role_ids=[int(r) for r in payload.get("required_role_ids", [])],
            min_level=int(payload.get("min_level", 0) or 0),
            min_account_age_days=int(payload.get("min_account_age_days", 0) or 0),
            blacklisted_user_ids=[
                int(u) for u in payload.get("blacklisted_user_ids", [])
            ],
        )


@dataclass(slots=True)
class GiveawayConfig:
    """Administrator input for a new giveaway.

    ``claim_timeout_seconds`` and ``max_reroll_count`` fall back to the configured
    defaults when left as ``None``.
    """
    prize: str
    channel_id: int
    ends_at: datetime
    winner_count: int = 1
    description: str = ""
    created_by: Optional[int] = None
    requirements: Requirements = field(default_factory=Requirements)
    claim_timeout_seconds: Optional[int] = None
    max_reroll_count: Optional[int] = None


@dataclass(slots=True)
class Giveaway:
    """A time-boxed prize drawing scoped to one tenant."""
    tenant_id: int
    giveaway_id: str
    prize: str
    channel_id: int
    ends_at: datetime
    created_at: datetime
    winner_count: int = 1
    description: str = ""
    created_by: Optional[int] = None
    requirements: Requirements = field(default_factory=Requirements)
    claim_timeout_seconds: int = 300
    max_reroll_count: int = 5
    status: GiveawayStatus = GiveawayStatus.ACTIVE
    reroll_count: int = 0
    announced_winner_id: Optional[int] = None
    excluded_user_ids: List[int] = field(default_factory=list)
    claim_expires_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass(slots=True, frozen=True)
class Entry:
    """A validated participation record. Immutable once written."""
    tenant_id: int
    giveaway_id: str
    user_id: int
    entered_at: datetime


@dataclass(slots=True, frozen=True)
class CandidateProfile:
    """Current view of a guild member, as far as eligibility rules care."""
    user_id: int
    role_ids: FrozenSet[int]
    level: int
    account_created_at: datetime

    def account_age_days(self, now: datetime) -> float:
        return (now - self.account_created_at).total_seconds() / 86400


@dataclass(slots=True)
class ScheduledJob:
    """A durable "fire at time T" record and its execution bookkeeping."""
    job_key: str
    tenant_id: int
    giveaway_id: str
    transition: str
    run_at: datetime
    payload: Dict[str, Any] = field(default_factory=dict)
    status: JobStatus = JobStatus.PENDING
    attempt_count: int = 0
    next_retry_at: Optional[datetime] = None
    lease_owner: Optional[str] = None
    lease_expires_at: Optional[datetime] = None
    last_error: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def due_at(self) -> datetime:
        return self.next_retry_at or self.run_at


@dataclass(slots=True, frozen=True)
class LedgerEntry:
    """One idempotency-ledger record: ``step`` of ``job_key`` has succeeded."""
    job_key: str
    step: str
    outcome: Dict[str, Any] = field(default_factory=dict)
