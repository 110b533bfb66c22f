"""
Tests for the Job Engine.

Covers: posting and policy layering, claims, submissions, votes, lazy expiry,
resolution and settlement, replay of stored resolutions, diagnostics.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from consensus_tools.consensus import ConsensusInput, HighestConfidenceSingle, resolve_consensus
from consensus_tools.errors import (
    InsufficientBalance,
    InvalidTransition,
    NotFound,
    StorageCorruption,
    Unauthorized,
    ValidationError,
)
from consensus_tools.jobs import JobDraft, JobEngine, SubmissionDraft, VoteDraft, calculate_slash_amount
from consensus_tools.ledger import LedgerEngine, compute_balances, ledger_reputation
from consensus_tools.models import (
    ClaimStatus,
    JobStatus,
    LedgerEntryType,
    SlashingPolicy,
    SubmissionStatus,
)
from consensus_tools.storage import JsonStateStore

pytestmark = pytest.mark.anyio


async def _fund(ledger: LedgerEngine, *agents: str, amount: float = 10) -> None:
    for agent in agents:
        await ledger.faucet(agent, amount)


async def _assert_balances_consistent(ledger: LedgerEngine) -> None:
    state = await ledger.store.get()
    balances = compute_balances(state.ledger)
    assert balances == await ledger.get_balances()
    assert all(amount >= 0 for amount in balances.values())


# ═══════════════════════════════════════════════════════════════════════════
# POSTING
# ═══════════════════════════════════════════════════════════════════════════


class TestPostJob:
    async def test_defaults_applied(self, engine: JobEngine):
        """Test that unset draft fields take the configured job defaults."""
        job = await engine.post_job("owner", JobDraft(title="Summarize"))
        assert job.status == JobStatus.OPEN
        assert job.reward == 10
        assert job.stake_required == 1
        assert job.max_participants == 3
        assert job.consensus_policy.type == "FIRST_SUBMISSION_WINS"
        assert job.created_at == "2026-01-01T00:00:00+00:00"
        assert job.expires_at == "2026-01-02T00:00:00+00:00"
        assert job.closes_at == job.expires_at

    async def test_audit_event_recorded(self, engine: JobEngine):
        """Test that posting a job writes a job_posted audit event."""
        job = await engine.post_job("owner", JobDraft(title="Summarize"))
        state = await engine.store.get()
        assert [(e.type, e.job_id, e.actor_agent_id) for e in state.audit] == [("job_posted", job.id, "owner")]

    async def test_preset_then_override(self, engine: JobEngine):
        """Test that an explicit policy overrides the named preset."""
        job = await engine.post_job(
            "owner",
            JobDraft(
                title="Pick best",
                policy_key="HIGHEST_CONFIDENCE_SINGLE",
                consensus_policy={"min_confidence": 0.7},
            ),
        )
        assert job.consensus_policy == HighestConfidenceSingle(min_confidence=0.7)
        assert job.policy_key == "HIGHEST_CONFIDENCE_SINGLE"

    async def test_policy_config_sits_between_preset_and_override(self, engine: JobEngine):
        """Test the layering order of preset, policy config and explicit policy."""
        job = await engine.post_job(
            "owner",
            JobDraft(
                title="Vote",
                policy_key="APPROVAL_VOTE",
                policy_config={"quorum": 3, "min_margin": 1},
                consensus_policy={"quorum": 5},
            ),
        )
        assert job.consensus_policy.quorum == 5
        assert job.consensus_policy.min_margin == 1

    async def test_unknown_preset(self, engine: JobEngine):
        """Test that an unknown preset name is rejected."""
        with pytest.raises(ValidationError):
            await engine.post_job("owner", JobDraft(title="x", policy_key="NOPE"))

    async def test_invalid_participants(self, engine: JobEngine):
        """Test participant limit validation."""
        with pytest.raises(ValidationError):
            await engine.post_job("owner", JobDraft(title="x", min_participants=3, max_participants=2))

    async def test_blank_title(self, engine: JobEngine):
        """Test that a blank title is rejected."""
        with pytest.raises(ValidationError):
            await engine.post_job("owner", JobDraft(title="  "))

    async def test_list_filters(self, engine: JobEngine):
        """Test listing jobs by status, tag and creator."""
        a = await engine.post_job("owner", JobDraft(title="a", tags=["nlp"]))
        b = await engine.post_job("other", JobDraft(title="b", tags=["vision"]))
        assert [j.id for j in await engine.list_jobs(tag="nlp")] == [a.id]
        assert [j.id for j in await engine.list_jobs(creator="other")] == [b.id]
        assert len(await engine.list_jobs(status="OPEN")) == 2
        assert await engine.list_jobs(status="RESOLVED") == []

    async def test_get_job_missing(self, engine: JobEngine):
        """Test looking up a job that does not exist."""
        assert await engine.get_job("job-missing") is None
        with pytest.raises(NotFound):
            await engine.get_status("job-missing")


# ═══════════════════════════════════════════════════════════════════════════
# CLAIMS
# ═══════════════════════════════════════════════════════════════════════════


class TestClaims:
    async def test_claim_stakes_and_moves_in_progress(self, engines):
        """Test that a claim stakes credits and moves the job to IN_PROGRESS."""
        engine, ledger = engines
        await _fund(ledger, "worker")
        job = await engine.post_job("owner", JobDraft(title="t", stake_required=2))
        assignment = await engine.claim_job("worker", job.id, stake_amount=1)
        assert assignment.stake_amount == 2
        assert assignment.lease_until == "2026-01-01T01:00:00+00:00"
        assert await ledger.get_balance("worker") == 8
        report = await engine.get_status(job.id)
        assert report.job.status == JobStatus.IN_PROGRESS
        assert [bid.stake_amount for bid in report.bids] == [2]

    async def test_larger_requested_stake_wins(self, engines):
        """Test that a requested stake above the minimum is honoured."""
        engine, ledger = engines
        await _fund(ledger, "worker")
        job = await engine.post_job("owner", JobDraft(title="t", stake_required=1))
        assignment = await engine.claim_job("worker", job.id, stake_amount=5)
        assert assignment.stake_amount == 5

    async def test_insufficient_balance_changes_nothing(self, engines):
        """Test that an unaffordable claim leaves state unchanged."""
        engine, ledger = engines
        job = await engine.post_job("owner", JobDraft(title="t", stake_required=3))
        with pytest.raises(InsufficientBalance):
            await engine.claim_job("broke", job.id)
        report = await engine.get_status(job.id)
        assert report.claims == []
        assert report.job.status == JobStatus.OPEN
        assert await ledger.get_balance("broke") == 0

    async def test_initial_credits_fund_first_claim(self, make_engines):
        """Test initial credits granted before a first claim."""
        engine, ledger = make_engines({"ledger": {"initial_credits_per_agent": 5}})
        job = await engine.post_job("owner", JobDraft(title="t", stake_required=3))
        await engine.claim_job("newcomer", job.id)
        assert await ledger.get_balance("newcomer") == 2

    async def test_duplicate_claim(self, engines):
        """Test that an agent cannot claim the same job twice."""
        engine, ledger = engines
        await _fund(ledger, "worker")
        job = await engine.post_job("owner", JobDraft(title="t"))
        await engine.claim_job("worker", job.id)
        with pytest.raises(InvalidTransition):
            await engine.claim_job("worker", job.id)

    async def test_full_job(self, engines):
        """Test claiming a job that has no free places."""
        engine, ledger = engines
        await _fund(ledger, "w1", "w2")
        job = await engine.post_job("owner", JobDraft(title="t", max_participants=1))
        await engine.claim_job("w1", job.id)
        with pytest.raises(InvalidTransition):
            await engine.claim_job("w2", job.id)

    async def test_unknown_job(self, engine: JobEngine):
        """Test claiming a missing job."""
        with pytest.raises(NotFound):
            await engine.claim_job("worker", "job-missing")

    async def test_heartbeat_extends_lease(self, engines, clock):
        """Test that a heartbeat pushes the lease forward."""
        engine, ledger = engines
        await _fund(ledger, "worker")
        job = await engine.post_job("owner", JobDraft(title="t"))
        await engine.claim_job("worker", job.id)
        clock.advance(600)
        assignment = await engine.heartbeat("worker", job.id)
        assert assignment is not None
        assert assignment.heartbeat_at == "2026-01-01T00:10:00+00:00"
        assert assignment.lease_until == "2026-01-01T01:10:00+00:00"

    async def test_heartbeat_without_claim_is_noop(self, engine: JobEngine):
        """Test heartbeat for an agent with no claim."""
        job = await engine.post_job("owner", JobDraft(title="t"))
        assert await engine.heartbeat("stranger", job.id) is None


# ═══════════════════════════════════════════════════════════════════════════
# SUBMISSIONS, VOTES, EXPIRY
# ═══════════════════════════════════════════════════════════════════════════


class TestSubmissionsAndVotes:
    async def test_submit_without_claim(self, engine: JobEngine):
        """Test submitting work without claiming first."""
        job = await engine.post_job("owner", JobDraft(title="t"))
        submission = await engine.submit_job("drive-by", job.id, SubmissionDraft(summary="done", confidence=0.4))
        assert submission.status == SubmissionStatus.SUBMITTED
        assert (await engine.get_job(job.id)).status == JobStatus.SUBMITTED

    async def test_confidence_range(self, engine: JobEngine):
        """Test confidence bounds on submissions."""
        job = await engine.post_job("owner", JobDraft(title="t"))
        with pytest.raises(ValidationError):
            await engine.submit_job("a", job.id, SubmissionDraft(confidence=1.5))

    async def test_vote_rejected_for_submission_only_policy(self, engine: JobEngine):
        """Test that submission-only policies refuse votes."""
        job = await engine.post_job("owner", JobDraft(title="t"))
        sub = await engine.submit_job("a", job.id, SubmissionDraft())
        with pytest.raises(InvalidTransition):
            await engine.vote("v", job.id, VoteDraft(submission_id=sub.id))

    async def test_voting_mode_enables_votes(self, engine: JobEngine):
        """Test that VOTING mode accepts votes under any policy."""
        job = await engine.post_job(
            "owner", JobDraft(title="t", mode="VOTING", consensus_policy={"type": "TOP_K_SPLIT", "ordering": "score"})
        )
        sub = await engine.submit_job("a", job.id, SubmissionDraft())
        vote = await engine.vote("v", job.id, VoteDraft(submission_id=sub.id))
        assert vote.score == 1.0

    async def test_vote_target_validation(self, engine: JobEngine):
        """Test vote target checks."""
        job = await engine.post_job("owner", JobDraft(title="t", policy_key="MAJORITY_VOTE"))
        with pytest.raises(NotFound):
            await engine.vote("v", job.id, VoteDraft(submission_id="sub-ghost"))
        with pytest.raises(ValidationError):
            await engine.vote("v", job.id, VoteDraft())
        vote = await engine.vote("v", job.id, VoteDraft(choice_key="yes"))
        assert vote.target_type == "CHOICE"

    async def test_vote_stake_is_debited(self, engines):
        """Test that a vote stake is debited from the voter."""
        engine, ledger = engines
        await _fund(ledger, "v")
        job = await engine.post_job("owner", JobDraft(title="t", policy_key="APPROVAL_VOTE"))
        sub = await engine.submit_job("a", job.id, SubmissionDraft())
        await engine.vote("v", job.id, VoteDraft(submission_id=sub.id, stake_amount=4))
        assert await ledger.get_balance("v") == 6
        with pytest.raises(InsufficientBalance):
            await engine.vote("v", job.id, VoteDraft(submission_id=sub.id, stake_amount=7))


class TestExpiry:
    async def test_listing_expires_and_persists(self, engine: JobEngine, clock):
        """Test lazy expiry on read and its persistence."""
        job = await engine.post_job("owner", JobDraft(title="t", expires_seconds=60))
        clock.advance(61)
        assert [j.status for j in await engine.list_jobs()] == [JobStatus.EXPIRED]
        state = await engine.store.get()
        assert state.jobs[0].status == JobStatus.EXPIRED
        assert state.audit[-1].type == "job_expired"
        assert state.audit[-1].job_id == job.id

    async def test_closed_job_rejects_work(self, engines, clock):
        """Test that expired jobs refuse claims and submissions."""
        engine, ledger = engines
        await _fund(ledger, "worker")
        job = await engine.post_job("owner", JobDraft(title="t", expires_seconds=60))
        clock.advance(120)
        with pytest.raises(InvalidTransition):
            await engine.claim_job("worker", job.id)
        with pytest.raises(InvalidTransition):
            await engine.submit_job("worker", job.id, SubmissionDraft())

    async def test_expired_job_can_still_be_resolved(self, engines, clock):
        """Test resolving a job after it expired."""
        engine, ledger = engines
        await _fund(ledger, "worker")
        job = await engine.post_job("owner", JobDraft(title="t", expires_seconds=60))
        await engine.claim_job("worker", job.id)
        clock.advance(120)
        assert (await engine.get_job(job.id)).status == JobStatus.EXPIRED
        resolution = await engine.resolve_job("owner", job.id)
        assert resolution.winners == []
        assert resolution.consensus_trace["reason"] == "no_submissions"
        assert await ledger.get_balance("worker") == 10


# ═══════════════════════════════════════════════════════════════════════════
# RESOLUTION
# ═══════════════════════════════════════════════════════════════════════════


class TestResolution:
    async def test_first_submission_wins_regardless_of_confidence(self, engines, clock):
        """Test first submission wins even with lower confidence."""
        engine, ledger = engines
        job = await engine.post_job("owner", JobDraft(title="t", policy_key="FIRST_SUBMISSION_WINS"))
        first = await engine.submit_job("early", job.id, SubmissionDraft(confidence=0.1))
        clock.advance(5)
        await engine.submit_job("late", job.id, SubmissionDraft(confidence=0.99))
        resolution = await engine.resolve_job("owner", job.id)
        assert resolution.winners == ["early"]
        assert resolution.winning_submission_ids == [first.id]
        assert await ledger.get_balance("early") == 10

    async def test_resolve_once(self, engine: JobEngine):
        """Test that a job resolves exactly once."""
        job = await engine.post_job("owner", JobDraft(title="t"))
        await engine.submit_job("a", job.id, SubmissionDraft())
        await engine.resolve_job("owner", job.id)
        with pytest.raises(InvalidTransition):
            await engine.resolve_job("owner", job.id)
        state = await engine.store.get()
        assert len([r for r in state.resolutions if r.job_id == job.id]) == 1

    async def test_records_are_finalized(self, engines, clock):
        """Test submission, claim and job statuses after resolution."""
        engine, ledger = engines
        await _fund(ledger, "a", "b")
        job = await engine.post_job("owner", JobDraft(title="t"))
        await engine.claim_job("a", job.id)
        await engine.claim_job("b", job.id)
        win = await engine.submit_job("a", job.id, SubmissionDraft())
        clock.advance(1)
        lose = await engine.submit_job("b", job.id, SubmissionDraft())
        await engine.resolve_job("owner", job.id)

        report = await engine.get_status(job.id)
        assert report.job.status == JobStatus.RESOLVED
        statuses = {sub.id: sub.status for sub in report.submissions}
        assert statuses == {win.id: SubmissionStatus.SELECTED, lose.id: SubmissionStatus.REJECTED}
        assert {claim.status for claim in report.claims} == {ClaimStatus.COMPLETED}
        assert report.resolution is not None
        assert report.resolution.payouts[0].agent_id == "a"
        assert await ledger.get_balance("a") == 20
        assert await ledger.get_balance("b") == 10
        assert (await engine.store.get()).audit[-1].type == "job_resolved"
        await _assert_balances_consistent(ledger)

    async def test_top_k_splits_reward(self, engines, clock):
        """Test the reward split between top-k winners."""
        engine, ledger = engines
        job = await engine.post_job("owner", JobDraft(title="t", reward=9, policy_key="TOP_K_SPLIT"))
        for agent, confidence in (("a", 0.9), ("b", 0.5), ("c", 0.7)):
            await engine.submit_job(agent, job.id, SubmissionDraft(confidence=confidence))
            clock.advance(1)
        resolution = await engine.resolve_job("owner", job.id)
        assert resolution.winners == ["a", "c"]
        assert [p.amount for p in resolution.payouts] == [4.5, 4.5]
        assert await ledger.get_balance("b") == 0

    async def test_highest_confidence_replay_and_tamper(self, engines, clock, tmp_path: Path):
        """Test replaying a stored resolution and detecting a tampered one."""
        engine, ledger = engines
        job = await engine.post_job("owner", JobDraft(title="t", policy_key="HIGHEST_CONFIDENCE_SINGLE"))
        await engine.submit_job("low", job.id, SubmissionDraft(confidence=0.2, artifacts={"v": "low"}))
        clock.advance(1)
        await engine.submit_job("high", job.id, SubmissionDraft(confidence=0.9, artifacts={"v": "high"}))
        stored = await engine.resolve_job("owner", job.id)
        assert stored.winners == ["high"]

        def recompute(state):
            return resolve_consensus(
                ConsensusInput(
                    job=state.find_job(job.id),
                    submissions=state.submissions_for(job.id),
                    votes=state.votes_for(job.id),
                    reputation=lambda agent: ledger_reputation(state.ledger, agent),
                )
            )

        path = tmp_path / "state.json"
        replay = recompute(await JsonStateStore(path).get())
        assert replay.winners == stored.winners
        assert replay.winning_submission_ids == stored.winning_submission_ids
        assert replay.final_artifact == stored.final_artifact

        data = json.loads(path.read_text())
        for sub in data["submissions"]:
            sub["confidence"] = 0.95 if sub["agent_id"] == "low" else 0.1
        path.write_text(json.dumps(data))
        assert recompute(await JsonStateStore(path).get()).winners == ["low"]

    async def test_approval_vote_beats_submission_order(self, engines, clock):
        """Test that approval votes outrank submission order."""
        engine, _ = engines
        job = await engine.post_job(
            "owner",
            JobDraft(
                title="t",
                consensus_policy={
                    "type": "APPROVAL_VOTE",
                    "quorum": 1,
                    "min_score": 1,
                    "min_margin": 0,
                    "tie_break": "earliest",
                },
            ),
        )
        await engine.submit_job("alice", job.id, SubmissionDraft())
        clock.advance(1)
        b = await engine.submit_job("bob", job.id, SubmissionDraft())
        await engine.vote("carol", job.id, VoteDraft(submission_id=b.id, score=1))
        resolution = await engine.resolve_job("owner", job.id)
        assert resolution.winners == ["bob"]
        assert resolution.winning_submission_ids == [b.id]

    async def test_staked_vote_on_loser_is_slashed_once(self, engines, clock):
        """Test a single vote_wrong slash for a staked vote on a loser."""
        engine, ledger = engines
        await _fund(ledger, "loser", "backer1", "backer2")
        job = await engine.post_job(
            "owner",
            JobDraft(
                title="t",
                consensus_policy={
                    "type": "APPROVAL_VOTE",
                    "quorum": 1,
                    "approval_vote": {"settlement": "staked", "vote_slash_percent": 0.5},
                },
            ),
        )
        a = await engine.submit_job("alice", job.id, SubmissionDraft())
        clock.advance(1)
        b = await engine.submit_job("bob", job.id, SubmissionDraft())
        await engine.vote("loser", job.id, VoteDraft(submission_id=a.id, stake_amount=4))
        await engine.vote("backer1", job.id, VoteDraft(submission_id=b.id, stake_amount=1))
        await engine.vote("backer2", job.id, VoteDraft(submission_id=b.id))
        resolution = await engine.resolve_job("owner", job.id)
        assert resolution.winners == ["bob"]

        history = await ledger.history("loser")
        slashes = [e for e in history if e.type == LedgerEntryType.SLASH]
        assert len(slashes) == 1
        assert slashes[0].reason == "vote_wrong"
        assert slashes[0].amount == -2
        assert await ledger.get_balance("loser") == 8
        assert await ledger.get_balance("backer1") == 10
        state = await engine.store.get()
        assert len([e for e in state.ledger if e.reason == "vote_wrong"]) == 1
        await _assert_balances_consistent(ledger)

    async def test_staked_choice_vote_is_not_slashed(self, engines, clock):
        """Test that a staked vote on a choice key is released, never slashed."""
        engine, ledger = engines
        await _fund(ledger, "chooser", "backer")
        job = await engine.post_job(
            "owner",
            JobDraft(
                title="t",
                consensus_policy={
                    "type": "APPROVAL_VOTE",
                    "quorum": 1,
                    "approval_vote": {"settlement": "staked", "vote_slash_percent": 0.5},
                },
            ),
        )
        await engine.submit_job("alice", job.id, SubmissionDraft())
        clock.advance(1)
        b = await engine.submit_job("bob", job.id, SubmissionDraft())
        await engine.vote("chooser", job.id, VoteDraft(choice_key="yes", stake_amount=4))
        await engine.vote("backer", job.id, VoteDraft(submission_id=b.id))
        resolution = await engine.resolve_job("owner", job.id)

        assert resolution.winners == ["bob"]
        assert resolution.slashes == []
        history = await ledger.history("chooser")
        assert not [e for e in history if e.type == LedgerEntryType.SLASH]
        assert await ledger.get_balance("chooser") == 10
        await _assert_balances_consistent(ledger)

    async def test_timeout_slash_for_non_submitter(self, make_engines, clock):
        """Test the timeout slash for a claimant who never submitted."""
        engine, ledger = make_engines({"slashing_enabled": True})
        await _fund(ledger, "idle", "worker")
        job = await engine.post_job(
            "owner",
            JobDraft(title="t", slashing_policy={"enabled": True, "slash_percent": 0.5}),
        )
        await engine.claim_job("idle", job.id, stake_amount=6)
        await engine.claim_job("worker", job.id)
        await engine.submit_job("worker", job.id, SubmissionDraft())
        resolution = await engine.resolve_job("owner", job.id)

        history = await ledger.history("idle", job_id=job.id)
        slashes = [e for e in history if e.type == LedgerEntryType.SLASH]
        assert len(slashes) == 1
        assert slashes[0].reason == "timeout"
        assert abs(slashes[0].amount) <= 6
        assert await ledger.get_balance("idle") == 7
        assert [s.agent_id for s in resolution.slashes] == ["idle"]
        assert not [e for e in await ledger.history("worker") if e.type == LedgerEntryType.SLASH]
        await _assert_balances_consistent(ledger)

    async def test_flat_slash_capped_at_stake(self, make_engines):
        """Test that a flat slash never exceeds the stake."""
        engine, ledger = make_engines({"slashing_enabled": True})
        await _fund(ledger, "idle")
        job = await engine.post_job("owner", JobDraft(title="t", slashing_policy={"enabled": True, "slash_flat": 100}))
        await engine.claim_job("idle", job.id, stake_amount=6)
        await engine.resolve_job("owner", job.id)
        assert await ledger.get_balance("idle") == 4

    async def test_no_slash_when_globally_disabled(self, engines):
        """Test that global slashing off overrides the job policy."""
        engine, ledger = engines
        await _fund(ledger, "idle")
        job = await engine.post_job("owner", JobDraft(title="t", slashing_policy={"enabled": True, "slash_percent": 1}))
        await engine.claim_job("idle", job.id, stake_amount=6)
        resolution = await engine.resolve_job("owner", job.id)
        assert resolution.slashes == []
        assert await ledger.get_balance("idle") == 10


class TestResolutionAuthorization:
    async def test_trusted_arbiter(self, engine: JobEngine):
        """Test trusted arbiter authorization."""
        job = await engine.post_job(
            "owner",
            JobDraft(title="t", consensus_policy={"type": "TRUSTED_ARBITER", "trusted_arbiter_agent_id": "arb"}),
        )
        sub = await engine.submit_job("a", job.id, SubmissionDraft())
        with pytest.raises(Unauthorized):
            await engine.resolve_job("owner", job.id, manual_winners=["a"], manual_submission_id=sub.id)
        with pytest.raises(InvalidTransition):
            await engine.resolve_job("arb", job.id)
        assert (await engine.get_job(job.id)).status == JobStatus.SUBMITTED

        resolution = await engine.resolve_job("arb", job.id, manual_winners=["a"], manual_submission_id=sub.id)
        assert resolution.winners == ["a"]
        assert resolution.winning_submission_ids == [sub.id]

    async def test_owner_pick(self, engine: JobEngine):
        """Test owner pick authorization."""
        job = await engine.post_job("owner", JobDraft(title="t", policy_key="OWNER_PICK"))
        sub = await engine.submit_job("a", job.id, SubmissionDraft())
        with pytest.raises(Unauthorized):
            await engine.resolve_job("a", job.id, manual_submission_id=sub.id)
        with pytest.raises(InvalidTransition):
            await engine.resolve_job("owner", job.id)
        resolution = await engine.resolve_job("owner", job.id, manual_winners=["a"], manual_submission_id=sub.id)
        assert resolution.winners == ["a"]

    async def test_unknown_manual_submission(self, engine: JobEngine):
        """Test a manual decision naming a missing submission."""
        job = await engine.post_job("owner", JobDraft(title="t", policy_key="OWNER_PICK"))
        with pytest.raises(NotFound):
            await engine.resolve_job("owner", job.id, manual_winners=["a"], manual_submission_id="sub-ghost")

    async def test_oracle_settlement_requires_arbiter(self, engine: JobEngine):
        """Test that oracle settlement waits for the arbiter."""
        job = await engine.post_job(
            "owner",
            JobDraft(
                title="t",
                consensus_policy={
                    "type": "APPROVAL_VOTE",
                    "trusted_arbiter_agent_id": "arb",
                    "approval_vote": {"settlement": "oracle", "oracle": "trusted_arbiter"},
                },
            ),
        )
        sub = await engine.submit_job("a", job.id, SubmissionDraft())
        await engine.vote("v", job.id, VoteDraft(submission_id=sub.id))
        with pytest.raises(Unauthorized):
            await engine.resolve_job("owner", job.id)
        with pytest.raises(InvalidTransition):
            await engine.resolve_job("arb", job.id)
        resolution = await engine.resolve_job("arb", job.id, manual_submission_id=sub.id)
        assert resolution.winners == ["a"]

    async def test_arbiter_tie_break(self, engines, clock):
        """Test that only the named arbiter can break a tied approval vote."""
        engine, ledger = engines
        job = await engine.post_job(
            "owner",
            JobDraft(
                title="t",
                reward=10,
                consensus_policy={
                    "type": "APPROVAL_VOTE",
                    "quorum": 1,
                    "min_score": 0,
                    "min_margin": 0,
                    "tie_break": "arbiter",
                    "trusted_arbiter_agent_id": "arb",
                },
            ),
        )
        a = await engine.submit_job("alice", job.id, SubmissionDraft())
        clock.advance(1)
        b = await engine.submit_job("bob", job.id, SubmissionDraft())
        await engine.vote("v1", job.id, VoteDraft(submission_id=a.id))
        await engine.vote("v2", job.id, VoteDraft(submission_id=b.id))

        with pytest.raises(Unauthorized):
            await engine.resolve_job("mallory", job.id, manual_winners=["mallory"])
        with pytest.raises(InvalidTransition):
            await engine.resolve_job("mallory", job.id)
        assert await ledger.get_balance("mallory") == 0
        assert (await engine.get_job(job.id)).status == JobStatus.SUBMITTED

        resolution = await engine.resolve_job("arb", job.id, manual_submission_id=b.id)
        assert resolution.winners == ["bob"]
        assert await ledger.get_balance("bob") == 10

    async def test_owner_breaks_tie_without_arbiter(self, engine: JobEngine):
        """Test that the owner breaks ties when no arbiter is named."""
        job = await engine.post_job(
            "owner",
            JobDraft(title="t", consensus_policy={"type": "APPROVAL_VOTE", "quorum": 1, "tie_break": "arbiter"}),
        )
        a = await engine.submit_job("alice", job.id, SubmissionDraft())
        b = await engine.submit_job("bob", job.id, SubmissionDraft())
        await engine.vote("v1", job.id, VoteDraft(submission_id=a.id))
        await engine.vote("v2", job.id, VoteDraft(submission_id=b.id))
        with pytest.raises(Unauthorized):
            await engine.resolve_job("alice", job.id, manual_submission_id=a.id)
        resolution = await engine.resolve_job("owner", job.id, manual_submission_id=a.id)
        assert resolution.winners == ["alice"]

    async def test_manual_winners_must_be_a_list(self, engine: JobEngine):
        """Test that a bare string or blank id is rejected as manual winners."""
        job = await engine.post_job("owner", JobDraft(title="t", policy_key="OWNER_PICK"))
        await engine.submit_job("alice", job.id, SubmissionDraft())
        with pytest.raises(ValidationError):
            await engine.resolve_job("owner", job.id, manual_winners="alice")  # type: ignore[arg-type]
        with pytest.raises(ValidationError):
            await engine.resolve_job("owner", job.id, manual_winners=["alice", ""])
        assert (await engine.get_job(job.id)).status == JobStatus.SUBMITTED


# ═══════════════════════════════════════════════════════════════════════════
# DIAGNOSTICS & HELPERS
# ═══════════════════════════════════════════════════════════════════════════


class TestDiagnostics:
    async def test_failures_are_recorded(self, engine: JobEngine):
        """Test that a failed operation leaves a diagnostic."""
        with pytest.raises(NotFound):
            await engine.claim_job("worker", "job-missing")
        state = await engine.store.get()
        assert len(state.errors) == 1
        assert state.errors[0].context["operation"] == "claim_job"
        assert state.errors[0].context["job_id"] == "job-missing"

    async def test_log_is_capped(self, engine: JobEngine):
        """Test the diagnostic log cap."""
        for i in range(55):
            await engine.record_error(f"error {i}")
        state = await engine.store.get()
        assert len(state.errors) == 50
        assert state.errors[0].message == "error 5"
        assert state.errors[-1].message == "error 54"

    async def test_unrecordable_failure_keeps_original_error(self, engine: JobEngine, tmp_path: Path):
        """Test that a failed diagnostic write keeps the original error."""
        (tmp_path / "state.json").write_text("{broken")
        with pytest.raises(StorageCorruption):
            await engine.claim_job("worker", "job-1")
        with pytest.raises(StorageCorruption):
            await engine.list_jobs()


class TestSlashAmount:
    def test_percent_or_flat_capped(self):
        """Test slash amount from percent or flat, capped at stake."""
        policy = SlashingPolicy(enabled=True, slash_percent=0.25, slash_flat=2)
        assert calculate_slash_amount(policy, 4) == 2
        assert calculate_slash_amount(policy, 40) == 10
        assert calculate_slash_amount(SlashingPolicy(enabled=True, slash_flat=9), 3) == 3

    def test_disabled(self):
        """Test that disabled slashing yields zero."""
        assert calculate_slash_amount(SlashingPolicy(enabled=False, slash_percent=1), 5) == 0
        assert calculate_slash_amount(SlashingPolicy(enabled=True, slash_percent=1), 5, slashing_enabled=False) == 0
