from __future__ import annotations

import logging
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set

from .collaborators import (
    Authorizer,
    Clock,
    MemberDirectory,
    NotificationSink,
    OperatorAlerts,
    utc_now,
)
from .config import GiveawayDefaults, SchedulerConfig
from .errors import JobDeferred, StaleWriteError, ValidationError
from .models import (
    Decision,
    Entry,
    Giveaway,
    GiveawayConfig,
    GiveawayStatus,
    LedgerEntry,
    MessageKind,
    RejectionReason,
    ScheduledJob,
    Transition,
)
from .scheduler import JobScheduler, build_job
from .selector import WinnerSelector
from .storage import Database, GiveawayRepository, IdempotencyLedger, JobStore
from .validator import check_eligibility, validate_entry

log = logging.getLogger(__name__)

STATE_STEP = "state"
ANNOUNCE_STEP = "announce"

CANCEL_ACTION = "cancel"
REROLL_ACTION = "reroll"


class GiveawayEngine:
    """Drives giveaways through their lifecycle.

    Every state change is a compare-and-set on ``(status, version)``. Scheduled
    transitions record their outcome in the idempotency ledger in the same write, and
    announcements are sent at most once per job key.
    """

    def __init__(
        self,
        repository: GiveawayRepository,
        scheduler: JobScheduler,
        *,
        sink: NotificationSink,
        directory: MemberDirectory,
        authorizer: Authorizer,
        selector: Optional[WinnerSelector] = None,
        defaults: Optional[GiveawayDefaults] = None,
        clock: Clock = utc_now,
    ) -> None:
        self.repository = repository
        self.scheduler = scheduler
        self.ledger = scheduler.ledger
        self.sink = sink
        self.directory = directory
        self.authorizer = authorizer
        self.selector = selector or WinnerSelector()
        self.defaults = defaults or GiveawayDefaults()
        self._clock = clock

        scheduler.register(Transition.END, self.handle_end)
        scheduler.register(Transition.CLAIM_TIMEOUT, self.handle_reroll)
        scheduler.register(Transition.MANUAL_REROLL, self.handle_reroll)
        scheduler.register(Transition.ANNOUNCE, self.handle_announce)

    # --- Commands ---------------------------------------------------------

    async def create_giveaway(self, tenant_id: int, config: GiveawayConfig) -> Giveaway:
        now = self._clock()
        claim_timeout = (
            config.claim_timeout_seconds
            if config.claim_timeout_seconds is not None
            else self.defaults.claim_timeout_seconds
        )
        max_rerolls = (
            config.max_reroll_count
            if config.max_reroll_count is not None
            else self.defaults.max_reroll_count
        )
        _validate_config(config, claim_timeout, max_rerolls, now)

        giveaway = Giveaway(
            tenant_id=tenant_id,
            giveaway_id=uuid.uuid4().hex,
            prize=config.prize.strip(),
            channel_id=config.channel_id,
            ends_at=config.ends_at,
            created_at=now,
            winner_count=config.winner_count,
            description=config.description,
            created_by=config.created_by,
            requirements=config.requirements,
            claim_timeout_seconds=claim_timeout,
            max_reroll_count=max_rerolls,
            updated_at=now,
        )
        end_job = build_job(
            tenant_id,
            giveaway.giveaway_id,
            Transition.END,
            epoch=0,
            run_at=giveaway.ends_at,
        )
        await self.repository.create(giveaway, [end_job])
        log.info(
            "Created giveaway %s in tenant %s for '%s' ending at %s",
            giveaway.giveaway_id,
            tenant_id,
            giveaway.prize,
            giveaway.ends_at.isoformat(),
        )
        return giveaway

    async def enter(self, tenant_id: int, giveaway_id: str, user_id: int) -> Decision:
        giveaway = await self.repository.get(tenant_id, giveaway_id)
        if giveaway is None:
            return Decision.reject(RejectionReason.NOT_FOUND)

        now = self._clock()
        already_entered = await self.repository.has_entry(tenant_id, giveaway_id, user_id)
        is_open = giveaway.status is GiveawayStatus.ACTIVE and now < giveaway.ends_at
        candidate = None
        if is_open and not already_entered:
            candidate = await self.directory.fetch_candidate(tenant_id, user_id)

        decision = validate_entry(
            giveaway, user_id, candidate, already_entered=already_entered, now=now
        )
        if decision.accepted:
            reason = await self.repository.add_entry(tenant_id, giveaway_id, user_id, now)
            if reason is not None:
                decision = Decision.reject(reason)

        if decision.accepted:
            log.info("User %s entered giveaway %s", user_id, giveaway_id)
        else:
            log.debug(
                "Rejected entry of user %s into giveaway %s: %s",
                user_id,
                giveaway_id,
                decision.reason.value,
            )
        return decision

    async def claim(self, tenant_id: int, giveaway_id: str, user_id: int) -> Decision:
        giveaway = await self.repository.get(tenant_id, giveaway_id)
        if giveaway is None:
            return Decision.reject(RejectionReason.NOT_FOUND)
        if giveaway.is_terminal:
            return Decision.reject(RejectionReason.ALREADY_RESOLVED)
        if (
            giveaway.status is not GiveawayStatus.AWAITING_CLAIM
            or giveaway.announced_winner_id != user_id
        ):
            log.debug(
                "User %s tried to claim giveaway %s won by %s",
                user_id,
                giveaway_id,
                giveaway.announced_winner_id,
            )
            return Decision.reject(RejectionReason.NOT_WINNER)

        now = self._clock()
        updated = replace(
            giveaway,
            status=GiveawayStatus.COMPLETED,
            completed_at=now,
            claim_expires_at=None,
        )
        announcement = self._announce_job(
            updated,
            MessageKind.CLAIM_CONFIRMED,
            {"winner_id": user_id},
            tag=f"claim-{giveaway.reroll_count}",
            now=now,
        )
        try:
            await self.repository.compare_and_set(
                updated,
                expected_status=GiveawayStatus.AWAITING_CLAIM,
                expected_version=giveaway.version,
                now=now,
                jobs=[announcement],
            )
        except StaleWriteError:
            log.info(
                "Claim by %s on giveaway %s lost the race; it was already resolved.",
                user_id,
                giveaway_id,
            )
            return Decision.reject(RejectionReason.ALREADY_RESOLVED)

        log.info("User %s claimed giveaway %s", user_id, giveaway_id)
        return Decision.accept()

    async def cancel(self, tenant_id: int, giveaway_id: str, actor_id: int) -> Decision:
        giveaway = await self.repository.get(tenant_id, giveaway_id)
        if giveaway is None:
            return Decision.reject(RejectionReason.NOT_FOUND)
        if not await self.authorizer.is_permitted(
            tenant_id, giveaway_id, actor_id, CANCEL_ACTION
        ):
            return Decision.reject(RejectionReason.NOT_AUTHORIZED)
        if giveaway.status is not GiveawayStatus.ACTIVE:
            return Decision.reject(RejectionReason.INVALID_STATE)

        now = self._clock()
        updated = replace(giveaway, status=GiveawayStatus.CANCELLED)
        announcement = self._announce_job(
            updated,
            MessageKind.CANCELLED,
            {"cancelled_by": actor_id},
            tag="cancel",
            now=now,
        )
        try:
            await self.repository.compare_and_set(
                updated,
                expected_status=GiveawayStatus.ACTIVE,
                expected_version=giveaway.version,
                now=now,
                jobs=[announcement],
            )
        except StaleWriteError:
            log.info("Cancel of giveaway %s lost the race with another transition.", giveaway_id)
            return Decision.reject(RejectionReason.INVALID_STATE)

        log.info("Giveaway %s cancelled by %s", giveaway_id, actor_id)
        return Decision.accept()

    async def manual_reroll(
        self, tenant_id: int, giveaway_id: str, actor_id: int
    ) -> Decision:
        """Force a reroll of the current winner, as if the claim window had expired.

        The reroll runs as a scheduled job keyed by the current reroll epoch, so a
        double-clicked command and a concurrent claim timeout collapse into one reroll.
        """
        giveaway = await self.repository.get(tenant_id, giveaway_id)
        if giveaway is None:
            return Decision.reject(RejectionReason.NOT_FOUND)
        if not await self.authorizer.is_permitted(
            tenant_id, giveaway_id, actor_id, REROLL_ACTION
        ):
            return Decision.reject(RejectionReason.NOT_AUTHORIZED)
        if giveaway.status is not GiveawayStatus.AWAITING_CLAIM:
            return Decision.reject(RejectionReason.INVALID_STATE)

        job = build_job(
            tenant_id,
            giveaway_id,
            Transition.MANUAL_REROLL,
            epoch=giveaway.reroll_count,
            run_at=self._clock(),
            payload={"epoch": giveaway.reroll_count, "actor_id": actor_id},
        )
        await self.scheduler.enqueue(job)
        await self.scheduler.run_job_now(job.job_key)
        log.info(
            "Manual reroll of giveaway %s requested by %s at epoch %s",
            giveaway_id,
            actor_id,
            giveaway.reroll_count,
        )

        # No recorded outcome plus a moved version means a claim or timeout won the CAS.
        if not await self.ledger.has(job.job_key, STATE_STEP):
            current = await self.repository.get(tenant_id, giveaway_id)
            if current is None or current.version != giveaway.version:
                log.info(
                    "Manual reroll of giveaway %s lost the race to another transition.",
                    giveaway_id,
                )
                return Decision.reject(RejectionReason.ALREADY_RESOLVED)
        return Decision.accept()

    # --- Queries ----------------------------------------------------------

    async def get_state(self, tenant_id: int, giveaway_id: str) -> Optional[Giveaway]:
        return await self.repository.get(tenant_id, giveaway_id)

    async def list_entries(self, tenant_id: int, giveaway_id: str) -> List[Entry]:
        return await self.repository.list_entries(tenant_id, giveaway_id)

    async def list_active(self, tenant_id: Optional[int] = None) -> List[Giveaway]:
        return await self.repository.list_by_status(
            [GiveawayStatus.ACTIVE, GiveawayStatus.AWAITING_CLAIM], tenant_id=tenant_id
        )

    # --- Job handlers -----------------------------------------------------

    async def handle_end(self, job: ScheduledJob) -> None:
        """Close entries, pick a winner and announce it."""
        state = await self.ledger.get(job.job_key, STATE_STEP)
        if state is None:
            giveaway = await self.repository.get(job.tenant_id, job.giveaway_id)
            if giveaway is None:
                log.warning("End job %s refers to a missing giveaway.", job.job_key)
                return
            now = self._clock()
            if giveaway.status is GiveawayStatus.ACTIVE:
                if now < giveaway.ends_at:
                    raise JobDeferred(giveaway.ends_at)
                giveaway = await self._close_entries(giveaway, now)
                if giveaway is None:
                    return
            if giveaway.status is not GiveawayStatus.ENDED:
                log.info(
                    "End job %s found giveaway %s already %s; nothing to do.",
                    job.job_key,
                    giveaway.giveaway_id,
                    giveaway.status.value,
                )
                return
            state = await self._draw_first_winner(giveaway, job.job_key, now)
            if state is None:
                return
        await self._announce_once(job.job_key, job.tenant_id, state.outcome)

    async def handle_reroll(self, job: ScheduledJob) -> None:
        """Exclude the silent winner and draw again, or exhaust the giveaway.

        Serves both claim timeouts and manual rerolls. A job whose epoch no longer
        matches the giveaway's reroll count belongs to an earlier winner and is a no-op.
        """
        state = await self.ledger.get(job.job_key, STATE_STEP)
        if state is None:
            giveaway = await self.repository.get(job.tenant_id, job.giveaway_id)
            if giveaway is None:
                log.warning("Reroll job %s refers to a missing giveaway.", job.job_key)
                return
            if giveaway.status is not GiveawayStatus.AWAITING_CLAIM:
                log.debug(
                    "Reroll job %s skipped: giveaway %s is %s",
                    job.job_key,
                    giveaway.giveaway_id,
                    giveaway.status.value,
                )
                return
            epoch = int(job.payload.get("epoch", giveaway.reroll_count))
            if epoch != giveaway.reroll_count:
                log.debug(
                    "Reroll job %s is stale (epoch %s, giveaway at %s)",
                    job.job_key,
                    epoch,
                    giveaway.reroll_count,
                )
                return
            now = self._clock()
            if (
                job.transition == Transition.CLAIM_TIMEOUT.value
                and giveaway.claim_expires_at is not None
                and now < giveaway.claim_expires_at
            ):
                raise JobDeferred(giveaway.claim_expires_at)
            state = await self._reroll(giveaway, job.job_key, now)
            if state is None:
                return
        await self._announce_once(job.job_key, job.tenant_id, state.outcome)

    async def handle_announce(self, job: ScheduledJob) -> None:
        await self._announce_once(job.job_key, job.tenant_id, job.payload)

    # --- Internal helpers -------------------------------------------------

    async def _close_entries(self, giveaway: Giveaway, now: datetime) -> Optional[Giveaway]:
        closed = replace(giveaway, status=GiveawayStatus.ENDED, ended_at=now)
        try:
            closed = await self.repository.compare_and_set(
                closed,
                expected_status=GiveawayStatus.ACTIVE,
                expected_version=giveaway.version,
                now=now,
            )
        except StaleWriteError:
            log.info(
                "Giveaway %s changed while ending; another transition already applied.",
                giveaway.giveaway_id,
            )
            return None
        entries = await self.repository.count_entries(giveaway.tenant_id, giveaway.giveaway_id)
        log.info("Giveaway %s ended with %s entries", giveaway.giveaway_id, entries)
        return closed

    async def _draw_first_winner(
        self, giveaway: Giveaway, job_key: str, now: datetime
    ) -> Optional[LedgerEntry]:
        pool = await self.repository.list_entry_user_ids(giveaway.tenant_id, giveaway.giveaway_id)
        winner = await self._pick_eligible(giveaway, pool, giveaway.excluded_user_ids, now)
        jobs: List[ScheduledJob] = []
        if winner is None:
            updated = replace(
                giveaway, status=GiveawayStatus.EXHAUSTED_NO_WINNER, claim_expires_at=None
            )
            kind = MessageKind.NO_WINNER
        else:
            updated = replace(
                giveaway,
                status=GiveawayStatus.AWAITING_CLAIM,
                announced_winner_id=winner,
                claim_expires_at=now + timedelta(seconds=giveaway.claim_timeout_seconds),
            )
            kind = MessageKind.WINNER_ANNOUNCED
            jobs.append(self._claim_timeout_job(updated))
        outcome = self._outcome(updated, kind, {"entries": len(pool)})
        return await self._commit_draw(
            giveaway, updated, job_key, outcome, jobs, expected=GiveawayStatus.ENDED, now=now
        )

    async def _reroll(
        self, giveaway: Giveaway, job_key: str, now: datetime
    ) -> Optional[LedgerEntry]:
        previous_winner = giveaway.announced_winner_id
        excluded = list(giveaway.excluded_user_ids)
        if previous_winner is not None and previous_winner not in excluded:
            excluded.append(previous_winner)

        winner: Optional[int] = None
        if giveaway.reroll_count < giveaway.max_reroll_count:
            pool = await self.repository.list_entry_user_ids(
                giveaway.tenant_id, giveaway.giveaway_id
            )
            winner = await self._pick_eligible(giveaway, pool, excluded, now)

        jobs: List[ScheduledJob] = []
        if winner is None:
            # announced_winner_id stays for audit; the status says nobody holds the prize.
            updated = replace(
                giveaway,
                status=GiveawayStatus.EXHAUSTED_NO_WINNER,
                excluded_user_ids=excluded,
                claim_expires_at=None,
            )
            kind = MessageKind.EXHAUSTED
        else:
            updated = replace(
                giveaway,
                reroll_count=giveaway.reroll_count + 1,
                announced_winner_id=winner,
                excluded_user_ids=excluded,
                claim_expires_at=now + timedelta(seconds=giveaway.claim_timeout_seconds),
            )
            kind = MessageKind.REROLLED
            jobs.append(self._claim_timeout_job(updated))
        outcome = self._outcome(updated, kind, {"previous_winner_id": previous_winner})
        return await self._commit_draw(
            giveaway,
            updated,
            job_key,
            outcome,
            jobs,
            expected=GiveawayStatus.AWAITING_CLAIM,
            now=now,
        )

    async def _commit_draw(
        self,
        current: Giveaway,
        updated: Giveaway,
        job_key: str,
        outcome: Dict[str, Any],
        jobs: Sequence[ScheduledJob],
        *,
        expected: GiveawayStatus,
        now: datetime,
    ) -> Optional[LedgerEntry]:
        state = LedgerEntry(job_key=job_key, step=STATE_STEP, outcome=outcome)
        try:
            await self.repository.compare_and_set(
                updated,
                expected_status=expected,
                expected_version=current.version,
                now=now,
                ledger=[state],
                jobs=jobs,
            )
        except StaleWriteError:
            log.info(
                "Job %s lost the race on giveaway %s; another transition already applied.",
                job_key,
                current.giveaway_id,
            )
            return None
        log.info(
            "Giveaway %s moved %s -> %s (winner=%s, rerolls=%s)",
            current.giveaway_id,
            current.status.value,
            updated.status.value,
            updated.announced_winner_id,
            updated.reroll_count,
        )
        return state

    async def _pick_eligible(
        self,
        giveaway: Giveaway,
        pool: Iterable[int],
        excluded: Iterable[int],
        now: datetime,
    ) -> Optional[int]:
        """Draw until someone still passes the eligibility rules.

        Ineligible picks are skipped for this draw only. They are not added to the
        persistent exclusion list, so they can win later if they become eligible again.
        """
        pool_set = set(pool)
        skipped: Set[int] = set(excluded)
        while True:
            user_id = self.selector.select(pool_set, skipped)
            if user_id is None:
                return None
            candidate = await self.directory.fetch_candidate(giveaway.tenant_id, user_id)
            decision = check_eligibility(giveaway, user_id, candidate, now=now)
            if decision.accepted:
                return user_id
            log.info(
                "Skipping pick %s for giveaway %s: %s",
                user_id,
                giveaway.giveaway_id,
                decision.reason.value,
            )
            skipped.add(user_id)

    async def _announce_once(
        self, job_key: str, tenant_id: int, outcome: Dict[str, Any]
    ) -> None:
        if await self.ledger.has(job_key, ANNOUNCE_STEP):
            log.debug("Announcement for %s already sent; skipping.", job_key)
            return
        kind = MessageKind(outcome["kind"])
        await self.sink.announce(
            tenant_id, int(outcome["channel_id"]), kind, dict(outcome["message"])
        )
        await self.ledger.record(
            LedgerEntry(job_key=job_key, step=ANNOUNCE_STEP, outcome={"kind": kind.value}),
            self._clock(),
        )

    def _claim_timeout_job(self, giveaway: Giveaway) -> ScheduledJob:
        return build_job(
            giveaway.tenant_id,
            giveaway.giveaway_id,
            Transition.CLAIM_TIMEOUT,
            epoch=giveaway.reroll_count,
            run_at=giveaway.claim_expires_at,
            payload={"epoch": giveaway.reroll_count},
        )

    def _announce_job(
        self,
        giveaway: Giveaway,
        kind: MessageKind,
        extra: Dict[str, Any],
        *,
        tag: str,
        now: datetime,
    ) -> ScheduledJob:
        return build_job(
            giveaway.tenant_id,
            giveaway.giveaway_id,
            Transition.ANNOUNCE,
            epoch=tag,
            run_at=now,
            payload=self._outcome(giveaway, kind, extra),
        )

    @staticmethod
    def _outcome(
        giveaway: Giveaway, kind: MessageKind, extra: Dict[str, Any]
    ) -> Dict[str, Any]:
        message: Dict[str, Any] = {
            "giveaway_id": giveaway.giveaway_id,
            "prize": giveaway.prize,
            "status": giveaway.status.value,
            "winner_id": giveaway.announced_winner_id,
            "reroll_count": giveaway.reroll_count,
            "max_reroll_count": giveaway.max_reroll_count,
            "claim_expires_at": (
                giveaway.claim_expires_at.isoformat()
                if giveaway.claim_expires_at is not None
                else None
            ),
        }
        message.update(extra)
        return {"kind": kind.value, "channel_id": giveaway.channel_id, "message": message}


def _validate_config(
    config: GiveawayConfig, claim_timeout: int, max_rerolls: int, now: datetime
) -> None:
    if not config.prize or not config.prize.strip():
        raise ValidationError("Prize must not be empty.")
    if config.winner_count != 1:
        raise ValidationError(
            "Only single-winner giveaways are supported; winner_count must be 1."
        )
    if config.channel_id <= 0:
        raise ValidationError("channel_id must be a positive channel reference.")
    if config.ends_at.tzinfo is None:
        raise ValidationError("ends_at must be timezone-aware.")
    if config.ends_at <= now:
        raise ValidationError("ends_at must be in the future.")
    if claim_timeout <= 0:
        raise ValidationError("claim_timeout_seconds must be positive.")
    if max_rerolls < 0:
        raise ValidationError("max_reroll_count must be zero or greater.")
    requirements = config.requirements
    if requirements.min_level < 0:
        raise ValidationError("min_level must be zero or greater.")
    if requirements.min_account_age_days < 0:
        raise ValidationError("min_account_age_days must be zero or greater.")


async def build_engine(
    database_path,
    *,
    sink: NotificationSink,
    directory: MemberDirectory,
    authorizer: Authorizer,
    alerts: Optional[OperatorAlerts] = None,
    defaults: Optional[GiveawayDefaults] = None,
    scheduler_config: Optional[SchedulerConfig] = None,
    selector: Optional[WinnerSelector] = None,
    clock: Clock = utc_now,
) -> GiveawayEngine:
    """Open the SQLite store and wire the engine together with its scheduler."""
    database = Database(database_path)
    await database.initialise()
    scheduler = JobScheduler(
        JobStore(database),
        IdempotencyLedger(database),
        config=scheduler_config,
        alerts=alerts,
        clock=clock,
    )
    return GiveawayEngine(
        GiveawayRepository(database),
        scheduler,
        sink=sink,
        directory=directory,
        authorizer=authorizer,
        selector=selector,
        defaults=defaults,
        clock=clock,
    )
