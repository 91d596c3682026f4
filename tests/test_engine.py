import asyncio
from dataclasses import replace
from datetime import timedelta

import pytest

from conftest import ADMIN_ID, OTHER_TENANT, TENANT, RecordingSink
from giveaway_engine.errors import ValidationError
from giveaway_engine.models import (
    GiveawayStatus,
    JobStatus,
    MessageKind,
    RejectionReason,
    Requirements,
    Transition,
    make_job_key,
)


def end_key(giveaway):
    return make_job_key(TENANT, giveaway.giveaway_id, Transition.END, 0)


def announced_winners(sink):
    return [payload["winner_id"] for _, _, _, payload in sink.messages]


# --- Creation -------------------------------------------------------------


def test_create_applies_defaults_and_schedules_the_end_job(harness):
    giveaway = harness.create(claim_timeout_seconds=None, max_reroll_count=None)

    assert giveaway.status is GiveawayStatus.ACTIVE
    assert giveaway.claim_timeout_seconds == 300
    assert giveaway.max_reroll_count == 5
    job = harness.run(harness.scheduler.jobs.get(end_key(giveaway)))
    assert job.run_at == giveaway.ends_at
    assert job.status is JobStatus.PENDING


@pytest.mark.parametrize(
    "overrides",
    [
        {"winner_count": 0},
        {"winner_count": -3},
        {"winner_count": 3},
        {"prize": "   "},
        {"channel_id": 0},
        {"claim_timeout_seconds": 0},
        {"max_reroll_count": -1},
        {"requirements": Requirements(min_level=-1)},
    ],
)
def test_invalid_configuration_is_rejected_and_not_persisted(harness, overrides):
    with pytest.raises(ValidationError):
        harness.create(**overrides)
    assert harness.run(harness.engine.list_active()) == []


def test_multiple_winners_are_refused_up_front(harness):
    with pytest.raises(ValidationError, match="single-winner"):
        harness.create(winner_count=3)
    assert harness.run(harness.engine.list_active()) == []


def test_end_time_must_be_in_the_future(harness):
    with pytest.raises(ValidationError):
        harness.create(ends_at=harness.clock() - timedelta(seconds=1))


# --- Entries --------------------------------------------------------------


def test_entry_is_recorded_once(harness):
    giveaway = harness.create()
    first = harness.run(harness.engine.enter(TENANT, giveaway.giveaway_id, 1))
    second = harness.run(harness.engine.enter(TENANT, giveaway.giveaway_id, 1))

    assert first.accepted
    assert second.reason is RejectionReason.DUPLICATE_ENTRY
    entries = harness.run(harness.engine.list_entries(TENANT, giveaway.giveaway_id))
    assert [entry.user_id for entry in entries] == [1]


def test_entries_close_at_end_time(harness):
    giveaway = harness.create()
    harness.clock.now = giveaway.ends_at
    decision = harness.run(harness.engine.enter(TENANT, giveaway.giveaway_id, 1))
    assert decision.reason is RejectionReason.GIVEAWAY_CLOSED


def test_entry_respects_requirements(harness):
    giveaway = harness.create(requirements=Requirements(required_role_ids=[44]))
    harness.directory.set_profile(2, role_ids=[44])
    harness.directory.absent.add(3)

    missing = harness.run(harness.engine.enter(TENANT, giveaway.giveaway_id, 1))
    accepted = harness.run(harness.engine.enter(TENANT, giveaway.giveaway_id, 2))
    absent = harness.run(harness.engine.enter(TENANT, giveaway.giveaway_id, 3))

    assert missing.reason is RejectionReason.MISSING_ROLES
    assert accepted.accepted
    assert absent.reason is RejectionReason.NOT_IN_GUILD


def test_giveaways_are_invisible_to_other_tenants(harness):
    giveaway = harness.create()
    decision = harness.run(harness.engine.enter(OTHER_TENANT, giveaway.giveaway_id, 1))
    assert decision.reason is RejectionReason.NOT_FOUND
    assert harness.run(harness.engine.get_state(OTHER_TENANT, giveaway.giveaway_id)) is None


# --- Lifecycle scenarios --------------------------------------------------


def test_winner_claims_in_time(harness):
    giveaway = harness.create()
    harness.enter_all(giveaway.giveaway_id, [1, 2, 3])

    harness.end(giveaway)
    state = harness.state(giveaway.giveaway_id)
    assert state.status is GiveawayStatus.AWAITING_CLAIM
    assert state.announced_winner_id in {1, 2, 3}
    assert state.claim_expires_at == giveaway.ends_at + timedelta(seconds=60)
    assert state.ended_at == giveaway.ends_at
    assert harness.sink.kinds == [MessageKind.WINNER_ANNOUNCED]
    tenant_id, channel_id, _, payload = harness.sink.messages[0]
    assert (tenant_id, channel_id) == (TENANT, 555)
    assert payload["winner_id"] == state.announced_winner_id

    harness.clock.advance(30)
    decision = harness.run(
        harness.engine.claim(TENANT, giveaway.giveaway_id, state.announced_winner_id)
    )
    assert decision.accepted
    # Exactly one write moves the giveaway into Completed.
    assert harness.state(giveaway.giveaway_id).version == state.version + 1
    harness.run_due()

    # The claim timeout fires later and finds nothing to do.
    harness.clock.advance(31)
    harness.run_due()

    final = harness.state(giveaway.giveaway_id)
    assert final.status is GiveawayStatus.COMPLETED
    assert final.completed_at == giveaway.ends_at + timedelta(seconds=30)
    assert final.reroll_count == 0
    assert final.version == state.version + 1
    assert harness.sink.kinds == [MessageKind.WINNER_ANNOUNCED, MessageKind.CLAIM_CONFIRMED]


def test_unclaimed_prize_rerolls_until_the_pool_runs_dry(harness):
    giveaway = harness.create()
    harness.enter_all(giveaway.giveaway_id, [1, 2])

    harness.end(giveaway)
    first_winner = harness.state(giveaway.giveaway_id).announced_winner_id

    harness.clock.advance(61)
    harness.run_due()
    rerolled = harness.state(giveaway.giveaway_id)
    assert rerolled.status is GiveawayStatus.AWAITING_CLAIM
    assert rerolled.reroll_count == 1
    assert rerolled.announced_winner_id == ({1, 2} - {first_winner}).pop()
    assert rerolled.excluded_user_ids == [first_winner]

    harness.clock.advance(61)
    harness.run_due()
    final = harness.state(giveaway.giveaway_id)
    assert final.status is GiveawayStatus.EXHAUSTED_NO_WINNER
    assert final.reroll_count == 1
    assert sorted(final.excluded_user_ids) == [1, 2]
    assert harness.sink.kinds == [
        MessageKind.WINNER_ANNOUNCED,
        MessageKind.REROLLED,
        MessageKind.EXHAUSTED,
    ]


def test_rerolls_stop_at_the_configured_maximum(harness):
    giveaway = harness.create(max_reroll_count=2)
    harness.enter_all(giveaway.giveaway_id, [1, 2, 3, 4, 5])
    harness.end(giveaway)

    for _ in range(5):
        harness.clock.advance(61)
        harness.run_due()

    final = harness.state(giveaway.giveaway_id)
    assert final.status is GiveawayStatus.EXHAUSTED_NO_WINNER
    assert final.reroll_count == 2
    assert harness.sink.kinds == [
        MessageKind.WINNER_ANNOUNCED,
        MessageKind.REROLLED,
        MessageKind.REROLLED,
        MessageKind.EXHAUSTED,
    ]
    winners = announced_winners(harness.sink)[:3]
    assert len(set(winners)) == 3
    assert final.excluded_user_ids == winners


def test_claim_arriving_before_the_timeout_wins(harness):
    giveaway = harness.create()
    harness.enter_all(giveaway.giveaway_id, [1])
    harness.end(giveaway)

    harness.clock.advance(61)
    decision = harness.run(harness.engine.claim(TENANT, giveaway.giveaway_id, 1))
    harness.run_due()

    assert decision.accepted
    assert harness.state(giveaway.giveaway_id).status is GiveawayStatus.COMPLETED
    assert MessageKind.EXHAUSTED not in harness.sink.kinds


def test_claim_after_the_timeout_fired_is_already_resolved(harness):
    giveaway = harness.create()
    harness.enter_all(giveaway.giveaway_id, [1])
    harness.end(giveaway)

    harness.clock.advance(61)
    harness.run_due()
    decision = harness.run(harness.engine.claim(TENANT, giveaway.giveaway_id, 1))

    assert decision.reason is RejectionReason.ALREADY_RESOLVED
    final = harness.state(giveaway.giveaway_id)
    assert final.status is GiveawayStatus.EXHAUSTED_NO_WINNER
    assert final.reroll_count == 0
    assert final.max_reroll_count == 5
    assert final.excluded_user_ids == [1]
    assert harness.sink.kinds == [MessageKind.WINNER_ANNOUNCED, MessageKind.EXHAUSTED]


def test_concurrent_claim_and_timeout_converge_on_one_outcome(harness):
    giveaway = harness.create()
    harness.enter_all(giveaway.giveaway_id, [1])
    harness.end(giveaway)
    harness.clock.advance(61)

    async def race():
        return await asyncio.gather(
            harness.engine.claim(TENANT, giveaway.giveaway_id, 1),
            harness.scheduler.run_due("worker-2"),
        )

    decision, _ = harness.run(race())
    harness.run_due()
    final = harness.state(giveaway.giveaway_id)

    if decision.accepted:
        assert final.status is GiveawayStatus.COMPLETED
        assert harness.sink.kinds == [
            MessageKind.WINNER_ANNOUNCED,
            MessageKind.CLAIM_CONFIRMED,
        ]
    else:
        assert decision.reason is RejectionReason.ALREADY_RESOLVED
        assert final.status is GiveawayStatus.EXHAUSTED_NO_WINNER
        assert harness.sink.kinds == [MessageKind.WINNER_ANNOUNCED, MessageKind.EXHAUSTED]


def test_empty_giveaway_ends_without_a_winner(harness):
    giveaway = harness.create()
    harness.end(giveaway)

    final = harness.state(giveaway.giveaway_id)
    assert final.status is GiveawayStatus.EXHAUSTED_NO_WINNER
    assert final.announced_winner_id is None
    assert harness.sink.kinds == [MessageKind.NO_WINNER]


def test_ineligible_pick_is_skipped_without_being_excluded(harness):
    giveaway = harness.create()
    harness.enter_all(giveaway.giveaway_id, [1, 2])
    # User 1 leaves the guild after entering.
    harness.directory.absent.add(1)

    harness.end(giveaway)

    state = harness.state(giveaway.giveaway_id)
    assert state.announced_winner_id == 2
    assert state.excluded_user_ids == []


def test_end_job_resumes_a_giveaway_that_was_closed_before_a_crash(harness):
    giveaway = harness.create()
    harness.enter_all(giveaway.giveaway_id, [7])
    harness.clock.now = giveaway.ends_at
    closed = replace(giveaway, status=GiveawayStatus.ENDED, ended_at=giveaway.ends_at)
    harness.run(
        harness.repository.compare_and_set(
            closed,
            expected_status=GiveawayStatus.ACTIVE,
            expected_version=0,
            now=harness.clock(),
        )
    )

    harness.run_due()

    state = harness.state(giveaway.giveaway_id)
    assert state.status is GiveawayStatus.AWAITING_CLAIM
    assert state.announced_winner_id == 7


# --- Idempotency ----------------------------------------------------------


def test_replaying_the_end_job_sends_one_announcement(harness):
    giveaway = harness.create()
    harness.enter_all(giveaway.giveaway_id, [1, 2, 3])
    harness.end(giveaway)
    before = harness.state(giveaway.giveaway_id)

    job = harness.run(harness.scheduler.jobs.get(end_key(giveaway)))
    harness.run(harness.scheduler.execute(job))
    harness.run(harness.engine.handle_end(job))

    after = harness.state(giveaway.giveaway_id)
    assert after.version == before.version
    assert after.announced_winner_id == before.announced_winner_id
    assert harness.sink.kinds == [MessageKind.WINNER_ANNOUNCED]


def test_failed_announcement_is_retried_with_the_same_winner(make_harness):
    harness = make_harness(sink=RecordingSink(fail_times=1))
    giveaway = harness.create()
    harness.enter_all(giveaway.giveaway_id, [1, 2, 3])

    harness.end(giveaway)
    state = harness.state(giveaway.giveaway_id)
    job = harness.run(harness.scheduler.jobs.get(end_key(giveaway)))
    assert state.status is GiveawayStatus.AWAITING_CLAIM
    assert job.status is JobStatus.PENDING
    assert job.attempt_count == 1
    assert harness.sink.messages == []

    harness.clock.advance(1)
    harness.run_due()

    assert harness.state(giveaway.giveaway_id).version == state.version
    assert announced_winners(harness.sink) == [state.announced_winner_id]
    job = harness.run(harness.scheduler.jobs.get(end_key(giveaway)))
    assert job.status is JobStatus.SUCCEEDED


# --- Claims ---------------------------------------------------------------


def test_claim_rejections(harness):
    giveaway = harness.create()
    harness.enter_all(giveaway.giveaway_id, [1, 2])

    early = harness.run(harness.engine.claim(TENANT, giveaway.giveaway_id, 1))
    assert early.reason is RejectionReason.NOT_WINNER

    harness.end(giveaway)
    winner = harness.state(giveaway.giveaway_id).announced_winner_id
    loser = ({1, 2} - {winner}).pop()
    wrong = harness.run(harness.engine.claim(TENANT, giveaway.giveaway_id, loser))
    assert wrong.reason is RejectionReason.NOT_WINNER

    assert harness.run(harness.engine.claim(TENANT, giveaway.giveaway_id, winner)).accepted
    again = harness.run(harness.engine.claim(TENANT, giveaway.giveaway_id, winner))
    assert again.reason is RejectionReason.ALREADY_RESOLVED

    missing = harness.run(harness.engine.claim(TENANT, "nope", winner))
    assert missing.reason is RejectionReason.NOT_FOUND


# --- Administrative actions ----------------------------------------------


def test_cancel_requires_permission_and_stops_the_lifecycle(harness):
    giveaway = harness.create()
    harness.enter_all(giveaway.giveaway_id, [1, 2])

    denied = harness.run(harness.engine.cancel(TENANT, giveaway.giveaway_id, 1))
    assert denied.reason is RejectionReason.NOT_AUTHORIZED

    assert harness.run(harness.engine.cancel(TENANT, giveaway.giveaway_id, ADMIN_ID)).accepted
    harness.run_due()
    assert harness.sink.kinds == [MessageKind.CANCELLED]

    # The end job still fires but finds a cancelled giveaway.
    harness.end(giveaway)
    assert harness.state(giveaway.giveaway_id).status is GiveawayStatus.CANCELLED
    assert harness.sink.kinds == [MessageKind.CANCELLED]

    again = harness.run(harness.engine.cancel(TENANT, giveaway.giveaway_id, ADMIN_ID))
    assert again.reason is RejectionReason.INVALID_STATE
    late_entry = harness.run(harness.engine.enter(TENANT, giveaway.giveaway_id, 3))
    assert late_entry.reason is RejectionReason.GIVEAWAY_CLOSED


def test_manual_reroll_replaces_the_winner_immediately(harness):
    giveaway = harness.create()
    harness.enter_all(giveaway.giveaway_id, [1, 2, 3])
    harness.end(giveaway)
    first_winner = harness.state(giveaway.giveaway_id).announced_winner_id

    decision = harness.run(
        harness.engine.manual_reroll(TENANT, giveaway.giveaway_id, ADMIN_ID)
    )

    assert decision.accepted
    state = harness.state(giveaway.giveaway_id)
    assert state.reroll_count == 1
    assert state.announced_winner_id != first_winner
    assert state.excluded_user_ids == [first_winner]
    assert harness.sink.kinds == [MessageKind.WINNER_ANNOUNCED, MessageKind.REROLLED]

    # The timeout scheduled for the first winner is stale; only the new one rerolls.
    harness.clock.advance(61)
    harness.run_due()
    assert harness.state(giveaway.giveaway_id).reroll_count == 2
    assert harness.sink.kinds.count(MessageKind.REROLLED) == 2


def test_manual_reroll_rejections(harness):
    giveaway = harness.create()
    harness.enter_all(giveaway.giveaway_id, [1, 2])

    too_early = harness.run(
        harness.engine.manual_reroll(TENANT, giveaway.giveaway_id, ADMIN_ID)
    )
    assert too_early.reason is RejectionReason.INVALID_STATE

    harness.end(giveaway)
    denied = harness.run(harness.engine.manual_reroll(TENANT, giveaway.giveaway_id, 1))
    assert denied.reason is RejectionReason.NOT_AUTHORIZED
    assert harness.state(giveaway.giveaway_id).reroll_count == 0


def test_manual_reroll_that_loses_to_a_claim_is_already_resolved(harness):
    giveaway = harness.create()
    harness.enter_all(giveaway.giveaway_id, [1, 2, 3])
    harness.end(giveaway)
    winner = harness.state(giveaway.giveaway_id).announced_winner_id
    fetch_candidate = harness.directory.fetch_candidate
    claims = []

    async def claim_during_draw(tenant_id, user_id):
        # The winner claims while the reroll is still looking for a replacement.
        if not claims:
            claims.append(await harness.engine.claim(TENANT, giveaway.giveaway_id, winner))
        return await fetch_candidate(tenant_id, user_id)

    harness.directory.fetch_candidate = claim_during_draw
    decision = harness.run(
        harness.engine.manual_reroll(TENANT, giveaway.giveaway_id, ADMIN_ID)
    )

    assert claims[0].accepted
    assert decision.reason is RejectionReason.ALREADY_RESOLVED
    final = harness.state(giveaway.giveaway_id)
    assert final.status is GiveawayStatus.COMPLETED
    assert final.announced_winner_id == winner
    assert final.reroll_count == 0
