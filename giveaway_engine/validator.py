"""Eligibility rules for entering and winning a giveaway.

Both entry points are pure: they look only at their arguments and never touch storage.
Checks run in a fixed order and stop at the first failure so callers always get the
same reason for the same situation.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from .models import (
    CandidateProfile,
    Decision,
    Giveaway,
    GiveawayStatus,
    RejectionReason,
)


def validate_entry(
    giveaway: Giveaway,
    user_id: int,
    candidate: Optional[CandidateProfile],
    *,
    already_entered: bool,
    now: datetime,
) -> Decision:
    """Decide whether ``user_id`` may enter ``giveaway`` at ``now``."""
    if giveaway.status is not GiveawayStatus.ACTIVE or now >= giveaway.ends_at:
        return Decision.reject(RejectionReason.GIVEAWAY_CLOSED)
    if already_entered:
        return Decision.reject(RejectionReason.DUPLICATE_ENTRY)
    return check_eligibility(giveaway, user_id, candidate, now=now)


def check_eligibility(
    giveaway: Giveaway,
    user_id: int,
    candidate: Optional[CandidateProfile],
    *,
    now: datetime,
) -> Decision:
    """Apply the per-user rules: blacklist, presence, roles, level, account age.

    Used on entry and again right before a pick is finalized, since roles and
    membership can change while the giveaway runs.
    """
    requirements = giveaway.requirements
    if user_id in requirements.blacklisted_user_ids:
        return Decision.reject(RejectionReason.BLACKLISTED)
    if candidate is None:
        return Decision.reject(RejectionReason.NOT_IN_GUILD)
    if not set(requirements.required_role_ids).issubset(candidate.role_ids):
        return Decision.reject(RejectionReason.MISSING_ROLES)
    if candidate.level < requirements.min_level:
        return Decision.reject(RejectionReason.LEVEL_TOO_LOW)
    if candidate.account_age_days(now) < requirements.min_account_age_days:
        return Decision.reject(RejectionReason.ACCOUNT_TOO_NEW)
    return Decision.accept()
