"""Contracts for the external systems the engine talks to."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any, Callable, Dict, Optional, Protocol

from .models import CandidateProfile, MessageKind

log = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


class NotificationSink(Protocol):
    """Delivers announcements. May be slow, may fail with ``TransientInfraError``."""

    async def announce(
        self,
        tenant_id: int,
        channel_ref: int,
        message_kind: MessageKind,
        payload: Dict[str, Any],
    ) -> None: ...


class MemberDirectory(Protocol):
    """Looks up the current eligibility profile of a tenant member.

    Returns ``None`` when the user is no longer present in the tenant.
    """

    async def fetch_candidate(
        self, tenant_id: int, user_id: int
    ) -> Optional[CandidateProfile]: ...


class Authorizer(Protocol):
    """Answers whether an actor may cancel or reroll a giveaway."""

    async def is_permitted(
        self, tenant_id: int, giveaway_id: str, actor_id: int, action: str
    ) -> bool: ...


class OperatorAlerts(Protocol):
    """Operator-facing channel for jobs that need manual intervention."""

    async def alert(self, message: str, *, tenant_id: Optional[int] = None) -> None: ...


class LogOperatorAlerts:
    """Fallback alert channel that only writes to the log."""

    async def alert(self, message: str, *, tenant_id: Optional[int] = None) -> None:
        log.error("[Giveaway] %s (tenant=%s)", message, tenant_id)
