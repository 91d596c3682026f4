"""Shared fakes and fixtures for the giveaway engine tests.

Async code is driven with ``asyncio.run`` from plain test functions; every test gets
its own SQLite file under ``tmp_path``.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Dict, List, Optional, Set, Tuple

import pytest

from giveaway_engine.config import GiveawayDefaults, SchedulerConfig
from giveaway_engine.engine import GiveawayEngine, build_engine
from giveaway_engine.errors import TransientInfraError
from giveaway_engine.models import CandidateProfile, GiveawayConfig, MessageKind
from giveaway_engine.selector import WinnerSelector

TENANT = 1001
OTHER_TENANT = 2002
ADMIN_ID = 900
START = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)


class FakeClock:
    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


class RecordingSink:
    """Collects announcements; fails the first ``fail_times`` calls."""

    def __init__(self, fail_times: int = 0) -> None:
        self.fail_times = fail_times
        self.calls = 0
        self.messages: List[Tuple[int, int, MessageKind, Dict[str, Any]]] = []

    async def announce(self, tenant_id, channel_ref, message_kind, payload) -> None:
        self.calls += 1
        if self.fail_times > 0:
            self.fail_times -= 1
            raise TransientInfraError("notification sink timed out")
        self.messages.append((tenant_id, channel_ref, message_kind, dict(payload)))

    @property
    def kinds(self) -> List[MessageKind]:
        return [kind for _, _, kind, _ in self.messages]


class StaticDirectory:
    """Every user is a long-standing member unless overridden or marked absent."""

    def __init__(self) -> None:
        self.profiles: Dict[int, CandidateProfile] = {}
        self.absent: Set[int] = set()

    def set_profile(
        self,
        user_id: int,
        *,
        role_ids=(),
        level: int = 0,
        account_created_at: Optional[datetime] = None,
    ) -> None:
        self.profiles[user_id] = CandidateProfile(
            user_id=user_id,
            role_ids=frozenset(role_ids),
            level=level,
            account_created_at=account_created_at or START - timedelta(days=365),
        )

    async def fetch_candidate(self, tenant_id, user_id):
        if user_id in self.absent:
            return None
        return self.profiles.get(
            user_id,
            CandidateProfile(
                user_id=user_id,
                role_ids=frozenset(),
                level=0,
                account_created_at=START - timedelta(days=365),
            ),
        )


class AdminAuthorizer:
    def __init__(self, admins=(ADMIN_ID,)) -> None:
        self.admins = set(admins)
        self.checks: List[Tuple[int, str, int, str]] = []

    async def is_permitted(self, tenant_id, giveaway_id, actor_id, action) -> bool:
        self.checks.append((tenant_id, giveaway_id, actor_id, action))
        return actor_id in self.admins


class RecordingAlerts:
    def __init__(self) -> None:
        self.alerts: List[Tuple[str, Optional[int]]] = []

    async def alert(self, message, *, tenant_id=None) -> None:
        self.alerts.append((message, tenant_id))


@dataclass
class Harness:
    engine: GiveawayEngine
    clock: FakeClock
    sink: RecordingSink
    directory: StaticDirectory
    authorizer: AdminAuthorizer
    alerts: RecordingAlerts
    worker_ids: List[str] = field(default_factory=lambda: ["worker-1"])

    @property
    def scheduler(self):
        return self.engine.scheduler

    @property
    def repository(self):
        return self.engine.repository

    def run(self, coro):
        return asyncio.run(coro)

    def run_due(self) -> int:
        return asyncio.run(self.scheduler.run_due(self.worker_ids[0]))

    def create(self, **overrides):
        values = dict(
            prize="Discord Nitro",
            channel_id=555,
            ends_at=self.clock() + timedelta(minutes=10),
            claim_timeout_seconds=60,
            max_reroll_count=5,
        )
        values.update(overrides)
        return asyncio.run(
            self.engine.create_giveaway(TENANT, GiveawayConfig(**values))
        )

    def enter_all(self, giveaway_id: str, user_ids) -> None:
        for user_id in user_ids:
            decision = asyncio.run(self.engine.enter(TENANT, giveaway_id, user_id))
            assert decision.accepted, decision

    def state(self, giveaway_id: str):
        return asyncio.run(self.engine.get_state(TENANT, giveaway_id))

    def end(self, giveaway) -> None:
        """Move the clock to ``ends_at`` and run the end job."""
        self.clock.now = giveaway.ends_at
        self.run_due()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_harness(tmp_path, clock):
    def factory(*, sink: Optional[RecordingSink] = None, seed: int = 7, **scheduler_overrides):
        scheduler_config = SchedulerConfig(
            workers=1,
            poll_interval_seconds=0.01,
            lease_seconds=30,
            max_retries=3,
            base_delay_seconds=1.0,
        )
        for key, value in scheduler_overrides.items():
            setattr(scheduler_config, key, value)
        sink = sink or RecordingSink()
        directory = StaticDirectory()
        authorizer = AdminAuthorizer()
        alerts = RecordingAlerts()
        engine = asyncio.run(
            build_engine(
                tmp_path / "giveaways.sqlite",
                sink=sink,
                directory=directory,
                authorizer=authorizer,
                alerts=alerts,
                defaults=GiveawayDefaults(),
                scheduler_config=scheduler_config,
                selector=WinnerSelector(seed=seed),
                clock=clock,
            )
        )
        return Harness(
            engine=engine,
            clock=clock,
            sink=sink,
            directory=directory,
            authorizer=authorizer,
            alerts=alerts,
        )

    return factory


@pytest.fixture
def harness(make_harness):
    return make_harness()
