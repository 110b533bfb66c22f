"""
Consensus Resolver: turns a job's submissions and votes into winners.

``resolve_consensus`` is a pure function: no I/O, no clock, no randomness.
Replaying it against the same job, submissions, votes and reputation lookup
reproduces the same winners, winning submission ids and final artifact, which
is what makes a stored resolution recomputable.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, cast

from consensus_tools.clock import parse_iso
from consensus_tools.consensus.policy import (
    ApprovalVote,
    FirstSubmissionWins,
    HighestConfidenceSingle,
    OwnerPick,
    TallyPolicy,
    TopKSplit,
    TrustedArbiter,
    WeightedReputation,
    WeightedVoteSimple,
)

if TYPE_CHECKING:
    from consensus_tools.models import Job, Submission, Vote

ReputationFn = Callable[[str], float]


@dataclass
class ConsensusInput:
    """Everything a resolution depends on."""

    job: Job
    submissions: Sequence[Submission]
    votes: Sequence[Vote]
    reputation: ReputationFn = lambda agent_id: 1.0
    manual_winners: Sequence[str] = ()
    manual_submission_id: str | None = None


@dataclass
class ConsensusResult:
    """Winners plus a trace sufficient to audit the decision."""

    winners: list[str] = field(default_factory=list)
    winning_submission_ids: list[str] = field(default_factory=list)
    consensus_trace: dict[str, Any] = field(default_factory=dict)
    final_artifact: dict[str, Any] | None = None
    # True when the policy is waiting on an explicit manual decision.
    needs_decision: bool = False


def _submitted_key(submission: Submission) -> Any:
    return parse_iso(submission.submitted_at)


def _empty(trace: dict[str, Any], needs_decision: bool = False) -> ConsensusResult:
    return ConsensusResult(consensus_trace=trace, needs_decision=needs_decision)


def _single(submission: Submission, trace: dict[str, Any]) -> ConsensusResult:
    return ConsensusResult(
        winners=[submission.agent_id],
        winning_submission_ids=[submission.id],
        consensus_trace=trace,
        final_artifact=submission.artifacts,
    )


def _find(submissions: Sequence[Submission], submission_id: str | None) -> Submission | None:
    if not submission_id:
        return None
    return next((sub for sub in submissions if sub.id == submission_id), None)


def _manual(data: ConsensusInput, trace: dict[str, Any]) -> ConsensusResult | None:
    """Apply an explicit manual decision, if one was supplied."""
    chosen = _find(data.submissions, data.manual_submission_id)
    winners = list(data.manual_winners)
    if not winners and chosen is not None:
        winners = [chosen.agent_id]
    if not winners:
        return None
    return ConsensusResult(
        winners=winners,
        winning_submission_ids=[data.manual_submission_id] if data.manual_submission_id else [],
        consensus_trace={**trace, "mode": "manual"},
        final_artifact=chosen.artifacts if chosen is not None else None,
    )


def _dedupe(votes: Sequence[Vote], duplicate_votes: str) -> list[Vote]:
    """Keep every vote, or only the latest vote per (agent, target)."""
    if duplicate_votes != "latest_wins":
        return list(votes)
    latest: dict[tuple[str, str | None, str | None], int] = {}
    ordered = sorted(range(len(votes)), key=lambda i: (parse_iso(votes[i].created_at), i))
    for index in ordered:
        vote = votes[index]
        latest[(vote.agent_id, vote.submission_id, vote.choice_key)] = index
    keep = set(latest.values())
    return [vote for i, vote in enumerate(votes) if i in keep]


def _resolve_manual_only(data: ConsensusInput) -> ConsensusResult:
    policy = data.job.consensus_policy
    trace: dict[str, Any] = {"policy": policy.type.value}
    decided = _manual(data, trace)
    if decided is not None:
        return decided
    if isinstance(policy, TrustedArbiter):
        return _empty({**trace, "mode": "awaiting_arbiter"}, needs_decision=True)
    return _empty({**trace, "reason": "no_owner_selection"}, needs_decision=True)


def _resolve_first_submission(data: ConsensusInput) -> ConsensusResult:
    winner = sorted(data.submissions, key=_submitted_key)[0]
    return _single(winner, {"policy": data.job.consensus_policy.type.value, "method": "first_submission"})


def _resolve_highest_confidence(data: ConsensusInput) -> ConsensusResult:
    policy = cast(HighestConfidenceSingle, data.job.consensus_policy)
    trace: dict[str, Any] = {"policy": policy.type.value, "min_confidence": policy.min_confidence}
    eligible = [sub for sub in data.submissions if sub.confidence >= policy.min_confidence]
    if not eligible:
        return _empty({**trace, "reason": "min_confidence_not_met"})
    ranked = sorted(eligible, key=lambda sub: (-sub.confidence, _submitted_key(sub)))
    return _single(ranked[0], {**trace, "method": "highest_confidence"})


def _resolve_top_k(data: ConsensusInput) -> ConsensusResult:
    policy = cast(TopKSplit, data.job.consensus_policy)
    scores: dict[str, float] = {}
    if policy.ordering == "score":
        for vote in _dedupe(data.votes, policy.duplicate_votes):
            if not vote.submission_id:
                continue
            weight = vote.weight if vote.weight is not None else 1.0
            scores[vote.submission_id] = scores.get(vote.submission_id, 0.0) + vote.score * weight

    def metric(sub: Submission) -> float:
        return scores.get(sub.id, 0.0) if policy.ordering == "score" else sub.confidence

    ranked = sorted(data.submissions, key=lambda sub: (-metric(sub), _submitted_key(sub)))
    chosen = ranked[: policy.top_k]
    return ConsensusResult(
        winners=[sub.agent_id for sub in chosen],
        winning_submission_ids=[sub.id for sub in chosen],
        consensus_trace={
            "policy": policy.type.value,
            "ordering": policy.ordering,
            "top_k": policy.top_k,
            "scores": scores,
        },
        final_artifact=chosen[0].artifacts,
    )


def _approval_weight(policy: ApprovalVote, vote: Vote, reputation: ReputationFn) -> float:
    mode = policy.approval_vote.weight_mode
    if mode == "explicit":
        return vote.weight if vote.weight is not None else 1.0
    if mode == "reputation":
        return reputation(vote.agent_id)
    return 1.0


def _resolve_approval(data: ConsensusInput) -> ConsensusResult:
    policy = cast(ApprovalVote, data.job.consensus_policy)
    settlement = policy.approval_vote.settlement
    trace: dict[str, Any] = {
        "policy": policy.type.value,
        "settlement": settlement,
        "weight_mode": policy.approval_vote.weight_mode,
        "tie_break": policy.tie_break,
    }
    known = {sub.id for sub in data.submissions}
    votes = [
        vote
        for vote in _dedupe(data.votes, policy.duplicate_votes)
        if vote.submission_id and vote.submission_id in known
    ]

    if settlement == "oracle":
        decided = _manual(data, trace)
        if decided is not None:
            return decided

    if policy.quorum and len(votes) < policy.quorum:
        return _empty(
            {**trace, "reason": "quorum_not_met", "quorum": policy.quorum, "votes": len(votes)},
            needs_decision=settlement == "oracle",
        )

    scores: dict[str, float] = {}
    vote_counts: dict[str, int] = {}
    for vote in votes:
        target = cast(str, vote.submission_id)
        clamped = max(-1.0, min(1.0, vote.score))
        weight = _approval_weight(policy, vote, data.reputation)
        scores[target] = scores.get(target, 0.0) + clamped * weight
        vote_counts[target] = vote_counts.get(target, 0) + 1
    trace.update({"scores": scores, "vote_counts": vote_counts})

    def rank_key(sub: Submission) -> tuple[Any, ...]:
        score = -scores.get(sub.id, 0.0)
        if policy.tie_break == "confidence":
            return (score, -sub.confidence, _submitted_key(sub))
        return (score, _submitted_key(sub))

    ranked = sorted(data.submissions, key=rank_key)
    best = ranked[0]
    best_score = scores.get(best.id, 0.0)
    runner_up = scores.get(ranked[1].id, 0.0) if len(ranked) > 1 else 0.0
    margin = best_score - runner_up
    trace.update({"best_submission_id": best.id, "margin": margin})

    reason = None
    if not vote_counts.get(best.id):
        reason = "no_votes"
    elif best_score < policy.min_score or margin < policy.min_margin:
        reason = "threshold_not_met"

    tied = len(ranked) > 1 and margin == 0
    if settlement == "oracle" or (policy.tie_break == "arbiter" and tied):
        decided = _manual(data, trace)
        if decided is not None:
            return decided
        mode = "awaiting_oracle" if settlement == "oracle" else "awaiting_arbiter"
        recommended = None if reason else best.id
        return _empty({**trace, "mode": mode, "recommended_submission_id": recommended}, needs_decision=True)

    if reason:
        return _empty({**trace, "reason": reason, "min_score": policy.min_score, "min_margin": policy.min_margin})
    return _single(best, {**trace, "method": "approval_vote"})


def _resolve_tally(data: ConsensusInput) -> ConsensusResult:
    policy = cast(TallyPolicy, data.job.consensus_policy)
    votes = _dedupe(data.votes, policy.duplicate_votes)
    trace: dict[str, Any] = {"policy": policy.type.value}
    if policy.quorum and len(votes) < policy.quorum:
        return _empty({**trace, "reason": "quorum_not_met", "quorum": policy.quorum, "votes": len(votes)})

    scores: dict[str, float] = {}
    vote_counts: dict[str, int] = {}
    for vote in votes:
        if isinstance(policy, WeightedReputation):
            weight = data.reputation(vote.agent_id)
        elif isinstance(policy, WeightedVoteSimple):
            weight = vote.weight if vote.weight is not None else 1.0
        else:
            weight = 1.0
        if vote.submission_id:
            scores[vote.submission_id] = scores.get(vote.submission_id, 0.0) + vote.score * weight
            vote_counts[vote.submission_id] = vote_counts.get(vote.submission_id, 0) + 1

    best = sorted(data.submissions, key=lambda sub: (-scores.get(sub.id, 0.0), _submitted_key(sub)))[0]
    return _single(best, {**trace, "scores": scores, "vote_counts": vote_counts})


def resolve_consensus(data: ConsensusInput) -> ConsensusResult:
    """
    Resolve a job under its consensus policy.

    Args:
        data: Job (with its typed policy), submissions, votes, reputation
            lookup and an optional manual decision.

    Returns:
        ConsensusResult. Empty winners with a ``reason`` in the trace when no
        winner qualifies; ``needs_decision`` set when the policy is waiting on
        an arbiter, owner or oracle.
    """
    policy = data.job.consensus_policy
    if isinstance(policy, (TrustedArbiter, OwnerPick)):
        return _resolve_manual_only(data)
    if not data.submissions:
        trace: dict[str, Any] = {"policy": policy.type.value, "reason": "no_submissions"}
        needs_decision = isinstance(policy, ApprovalVote) and policy.approval_vote.settlement == "oracle"
        return _empty(trace, needs_decision=needs_decision)
    if isinstance(policy, FirstSubmissionWins):
        return _resolve_first_submission(data)
    if isinstance(policy, HighestConfidenceSingle):
        return _resolve_highest_confidence(data)
    if isinstance(policy, TopKSplit):
        return _resolve_top_k(data)
    if isinstance(policy, ApprovalVote):
        return _resolve_approval(data)
    return _resolve_tally(data)
