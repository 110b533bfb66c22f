"""
Job Engine: lifecycle of posted jobs, from OPEN through claims, submissions
and votes to a single economic resolution.

Every mutation runs as one mutator inside ``StateStore.update``: either the
whole transition (status change, ledger entries, audit event) is persisted,
or nothing is.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from consensus_tools.clock import Clock, add_seconds, is_past, to_iso, utc_now
from consensus_tools.config import Settings
from consensus_tools.consensus.policy import (
    ApprovalVote,
    OwnerPick,
    TrustedArbiter,
    accepts_votes,
    merge_layers,
    parse_policy,
)
from consensus_tools.consensus.resolver import ConsensusInput, resolve_consensus
from consensus_tools.errors import (
    InvalidTransition,
    NotFound,
    Unauthorized,
    ValidationError,
)
from consensus_tools.jobs.slashing import calculate_slash_amount
from consensus_tools.ledger.engine import LedgerEngine
from consensus_tools.ledger.rules import append_entry, ledger_reputation
from consensus_tools.models import (
    EXPIRABLE_STATUSES,
    Assignment,
    AuditEvent,
    Bid,
    ClaimStatus,
    DiagnosticEntry,
    Job,
    JobMode,
    JobStatus,
    LedgerEntryType,
    Payout,
    Resolution,
    Slash,
    SlashingPolicy,
    StateDocument,
    Submission,
    SubmissionStatus,
    Vote,
    VoteTarget,
    new_id,
)
from consensus_tools.storage.base import StateStore

logger = logging.getLogger(__name__)

MAX_DIAGNOSTICS = 50
CLOSED_STATUSES = frozenset({JobStatus.RESOLVED, JobStatus.CANCELLED, JobStatus.EXPIRED})


@dataclass
class JobDraft:
    """What a poster supplies; unset fields fall back to ``JobDefaults``."""

    title: str
    description: str = ""
    input_ref: str | None = None
    inputs: dict[str, Any] = field(default_factory=dict)
    tags: list[str] = field(default_factory=list)
    priority: int = 0
    required_capabilities: list[str] = field(default_factory=list)
    mode: str = JobMode.SUBMISSION
    policy_key: str | None = None
    policy_config: dict[str, Any] | None = None
    consensus_policy: dict[str, Any] | None = None
    reward: float | None = None
    stake_required: float | None = None
    currency: str = "CREDITS"
    max_participants: int | None = None
    min_participants: int | None = None
    slashing_policy: dict[str, Any] | None = None
    expires_seconds: int | None = None
    opens_at: str | None = None
    closes_at: str | None = None
    resolves_at: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> JobDraft:
        try:
            return cls(**{k: v for k, v in data.items() if k != "agent_id"})
        except TypeError as exc:
            raise ValidationError(f"Invalid job: {exc}") from exc


@dataclass
class SubmissionDraft:
    summary: str = ""
    artifacts: dict[str, Any] = field(default_factory=dict)
    artifact_ref: str | None = None
    confidence: float = 0.0
    requested_payout: float | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> SubmissionDraft:
        try:
            return cls(**{k: v for k, v in data.items() if k != "agent_id"})
        except TypeError as exc:
            raise ValidationError(f"Invalid submission: {exc}") from exc


@dataclass
class VoteDraft:
    """A vote targets either a submission or an abstract choice key."""

    submission_id: str | None = None
    choice_key: str | None = None
    score: float = 1.0
    weight: float | None = None
    stake_amount: float | None = None
    rationale: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> VoteDraft:
        try:
            return cls(**{k: v for k, v in data.items() if k != "agent_id"})
        except TypeError as exc:
            raise ValidationError(f"Invalid vote: {exc}") from exc


@dataclass
class JobStatusReport:
    job: Job
    claims: list[Assignment]
    bids: list[Bid]
    submissions: list[Submission]
    votes: list[Vote]
    resolution: Resolution | None = None


def _require_job(state: StateDocument, job_id: str) -> Job:
    job = state.find_job(job_id)
    if job is None:
        raise NotFound(f"Job not found: {job_id}")
    return job


def _manual_winners(value: Any) -> tuple[str, ...]:
    """Check manual winners: a list of non-empty agent ids, never a bare string."""
    if value is None:
        return ()
    if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
        raise ValidationError("manual_winners must be a list of agent ids")
    if not all(isinstance(agent, str) and agent for agent in value):
        raise ValidationError("manual_winners must contain non-empty agent ids")
    return tuple(value)


def _ensure_open(job: Job, now: datetime, action: str) -> None:
    if job.status in CLOSED_STATUSES:
        raise InvalidTransition(f"Cannot {action} job {job.id}: status is {job.status}")
    if is_past(job.expires_at, now):
        raise InvalidTransition(f"Cannot {action} job {job.id}: it has expired")


class JobEngine:
    """
    Drives jobs through OPEN -> IN_PROGRESS -> SUBMITTED -> RESOLVED.

    The engine keeps no state of its own; every operation re-reads the
    document from the store, so several engines may share one store.
    """

    def __init__(
        self,
        store: StateStore,
        ledger: LedgerEngine,
        settings: Settings | None = None,
        clock: Clock | None = None,
        reputation: Callable[[str], float] | None = None,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.settings = settings or Settings()
        self.clock = clock or utc_now
        self.reputation = reputation

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    async def record_error(self, message: str, context: Mapping[str, Any] | None = None) -> DiagnosticEntry:
        """Append to the diagnostic log, keeping only the newest entries."""
        entry = DiagnosticEntry(
            id=new_id("err"), at=to_iso(self.clock()), message=message, context=dict(context or {})
        )

        def append(state: StateDocument) -> DiagnosticEntry:
            state.errors.append(entry)
            del state.errors[:-MAX_DIAGNOSTICS]
            return entry

        logger.warning("Recorded error: %s %s", message, entry.context)
        return await self.store.update(append)

    async def _guarded(self, operation: str, context: dict[str, Any], run: Callable[[], Any]) -> Any:
        try:
            return await run()
        except Exception as exc:
            try:
                await self.record_error(str(exc), {"operation": operation, "kind": type(exc).__name__, **context})
            except Exception:
                logger.exception("Failed to record diagnostic for %s", operation)
            raise

    def _audit(self, state: StateDocument, event_type: str, job_id: str, actor: str, **details: Any) -> None:
        state.audit.append(
            AuditEvent(
                id=new_id("audit"),
                at=to_iso(self.clock()),
                type=event_type,
                job_id=job_id,
                actor_agent_id=actor,
                details=details,
            )
        )

    # ------------------------------------------------------------------
    # Posting
    # ------------------------------------------------------------------

    def _build_job(self, agent_id: str, draft: JobDraft) -> Job:
        defaults = self.settings.job_defaults
        if not draft.title or not draft.title.strip():
            raise ValidationError("Job title is required")

        preset = None
        if draft.policy_key:
            preset = self.settings.consensus_policies.get(draft.policy_key)
            if preset is None:
                raise ValidationError(f"Unknown consensus policy preset: {draft.policy_key}")
        policy = parse_policy(
            merge_layers(defaults.consensus_policy, preset, draft.policy_config, draft.consensus_policy)
        )

        try:
            mode = JobMode(draft.mode)
        except ValueError:
            raise ValidationError(f"Unknown job mode: {draft.mode!r}") from None

        slashing = defaults.slashing_policy
        if draft.slashing_policy is not None:
            slashing = SlashingPolicy.from_dict(merge_layers(asdict(defaults.slashing_policy), draft.slashing_policy))

        reward = defaults.reward if draft.reward is None else draft.reward
        stake_required = defaults.stake_required if draft.stake_required is None else draft.stake_required
        max_participants = draft.max_participants or defaults.max_participants
        min_participants = draft.min_participants or defaults.min_participants
        if reward < 0 or stake_required < 0:
            raise ValidationError("reward and stake_required must be non-negative")
        if min_participants < 1 or max_participants < min_participants:
            raise ValidationError("participants must satisfy 1 <= min_participants <= max_participants")
        if not 0.0 <= slashing.slash_percent <= 1.0 or slashing.slash_flat < 0:
            raise ValidationError("slash_percent must be in [0.0, 1.0] and slash_flat non-negative")

        now = to_iso(self.clock())
        expires_at = add_seconds(now, draft.expires_seconds or defaults.expires_seconds)
        return Job(
            id=new_id("job"),
            created_by_agent_id=agent_id,
            title=draft.title,
            created_at=now,
            expires_at=expires_at,
            description=draft.description,
            input_ref=draft.input_ref,
            inputs=dict(draft.inputs),
            tags=list(draft.tags),
            priority=draft.priority,
            required_capabilities=list(draft.required_capabilities),
            mode=mode,
            policy_key=draft.policy_key,
            consensus_policy=policy,
            reward=float(reward),
            stake_required=float(stake_required),
            currency=draft.currency,
            min_participants=min_participants,
            max_participants=max_participants,
            slashing_policy=slashing,
            opens_at=draft.opens_at or now,
            closes_at=draft.closes_at or expires_at,
            resolves_at=draft.resolves_at,
        )

    async def post_job(self, agent_id: str, draft: JobDraft) -> Job:
        async def run() -> Job:
            job = self._build_job(agent_id, draft)

            def post(state: StateDocument) -> Job:
                state.jobs.append(job)
                self._audit(state, "job_posted", job.id, agent_id, title=job.title)
                return job

            await self.store.update(post)
            logger.info("Job posted %s by %s (%s)", job.id, agent_id, job.consensus_policy.type)
            return job

        return await self._guarded("post_job", {"agent_id": agent_id}, run)

    # ------------------------------------------------------------------
    # Reads (with lazy expiry)
    # ------------------------------------------------------------------

    def _apply_expiry(self, state: StateDocument, now: datetime) -> list[Job]:
        expired = []
        for job in state.jobs:
            if job.status in EXPIRABLE_STATUSES and is_past(job.expires_at, now):
                job.advance(JobStatus.EXPIRED)
                self._audit(state, "job_expired", job.id, "system")
                expired.append(job)
        return expired

    async def _read(self) -> StateDocument:
        state = await self.store.get()
        now = self.clock()
        if not any(job.status in EXPIRABLE_STATUSES and is_past(job.expires_at, now) for job in state.jobs):
            return state

        def expire(doc: StateDocument) -> StateDocument:
            for job in self._apply_expiry(doc, now):
                logger.debug("Job %s expired", job.id)
            return doc

        return await self.store.update(expire)

    async def list_jobs(
        self, status: str | None = None, tag: str | None = None, creator: str | None = None
    ) -> list[Job]:
        state = await self._read()
        return [
            job
            for job in state.jobs
            if (status is None or job.status == status)
            and (tag is None or tag in job.tags)
            and (creator is None or job.created_by_agent_id == creator)
        ]

    async def get_job(self, job_id: str) -> Job | None:
        state = await self._read()
        return state.find_job(job_id)

    async def get_status(self, job_id: str) -> JobStatusReport:
        state = await self._read()
        return JobStatusReport(
            job=_require_job(state, job_id),
            claims=state.claims_for(job_id),
            bids=state.bids_for(job_id),
            submissions=state.submissions_for(job_id),
            votes=state.votes_for(job_id),
            resolution=state.find_resolution(job_id),
        )

    # ------------------------------------------------------------------
    # Claims
    # ------------------------------------------------------------------

    async def claim_job(
        self,
        agent_id: str,
        job_id: str,
        stake_amount: float = 0.0,
        lease_seconds: int | None = None,
    ) -> Assignment:
        """Take a slot on the job, staking at least ``job.stake_required``."""

        async def run() -> Assignment:
            await self.ledger.ensure_initial_credits(agent_id)
            now = self.clock()
            at = to_iso(now)
            lease = lease_seconds or self.settings.job_defaults.lease_seconds

            def claim(state: StateDocument) -> Assignment:
                job = _require_job(state, job_id)
                _ensure_open(job, now, "claim")
                active = [c for c in state.claims_for(job_id) if c.status == ClaimStatus.ACTIVE]
                if any(c.agent_id == agent_id for c in active):
                    raise InvalidTransition(f"Agent {agent_id} already holds a claim on job {job_id}")
                if len(active) >= job.max_participants:
                    raise InvalidTransition(f"Job {job_id} is full")

                stake = max(abs(stake_amount or 0.0), job.stake_required)
                if stake > 0:
                    append_entry(
                        state.ledger,
                        self.ledger.new_entry(LedgerEntryType.STAKE, agent_id, -stake, job_id, "claim_stake"),
                    )
                state.bids.append(Bid(agent_id=agent_id, job_id=job_id, stake_amount=stake, stake_at=at))
                assignment = Assignment(
                    agent_id=agent_id,
                    job_id=job_id,
                    stake_amount=stake,
                    claim_at=at,
                    lease_until=add_seconds(at, lease),
                    heartbeat_at=at,
                )
                state.claims.append(assignment)
                if job.status == JobStatus.OPEN:
                    job.advance(JobStatus.IN_PROGRESS)
                self._audit(state, "job_claimed", job_id, agent_id, stake_amount=stake)
                return assignment

            assignment = await self.store.update(claim)
            logger.info("Job %s claimed by %s (stake %s)", job_id, agent_id, assignment.stake_amount)
            return assignment

        return await self._guarded("claim_job", {"agent_id": agent_id, "job_id": job_id}, run)

    async def heartbeat(self, agent_id: str, job_id: str) -> Assignment | None:
        """Refresh the agent's active lease; returns None when there is none."""

        async def run() -> Assignment | None:
            at = to_iso(self.clock())
            lease = self.settings.job_defaults.lease_seconds

            def beat(state: StateDocument) -> Assignment | None:
                for claim in state.claims_for(job_id):
                    if claim.agent_id == agent_id and claim.status == ClaimStatus.ACTIVE:
                        claim.heartbeat_at = at
                        claim.lease_until = add_seconds(at, lease)
                        return claim
                return None

            return await self.store.update(beat)

        return await self._guarded("heartbeat", {"agent_id": agent_id, "job_id": job_id}, run)

    # ------------------------------------------------------------------
    # Submissions and votes
    # ------------------------------------------------------------------

    async def submit_job(self, agent_id: str, job_id: str, draft: SubmissionDraft) -> Submission:
        async def run() -> Submission:
            if not 0.0 <= draft.confidence <= 1.0:
                raise ValidationError(f"confidence must be in [0.0, 1.0], got {draft.confidence}")
            now = self.clock()
            submission = Submission(
                id=new_id("sub"),
                job_id=job_id,
                agent_id=agent_id,
                submitted_at=to_iso(now),
                summary=draft.summary,
                artifacts=dict(draft.artifacts),
                artifact_ref=draft.artifact_ref,
                confidence=float(draft.confidence),
                requested_payout=float(draft.requested_payout or 0.0),
            )

            def submit(state: StateDocument) -> Submission:
                job = _require_job(state, job_id)
                _ensure_open(job, now, "submit to")
                state.submissions.append(submission)
                job.advance(JobStatus.SUBMITTED)
                self._audit(state, "job_submitted", job_id, agent_id, submission_id=submission.id)
                return submission

            await self.store.update(submit)
            logger.info("Submission %s for job %s by %s", submission.id, job_id, agent_id)
            return submission

        return await self._guarded("submit_job", {"agent_id": agent_id, "job_id": job_id}, run)

    async def vote(self, agent_id: str, job_id: str, draft: VoteDraft) -> Vote:
        async def run() -> Vote:
            if not draft.submission_id and not draft.choice_key:
                raise ValidationError("A vote needs a submission_id or a choice_key")
            if draft.stake_amount is not None and draft.stake_amount < 0:
                raise ValidationError("stake_amount must be non-negative")
            now = self.clock()
            vote = Vote(
                id=new_id("vote"),
                job_id=job_id,
                agent_id=agent_id,
                created_at=to_iso(now),
                target_type=VoteTarget.SUBMISSION if draft.submission_id else VoteTarget.CHOICE,
                submission_id=draft.submission_id,
                choice_key=draft.choice_key,
                score=float(draft.score),
                weight=draft.weight,
                stake_amount=draft.stake_amount,
                rationale=draft.rationale,
            )

            def cast_vote(state: StateDocument) -> Vote:
                job = _require_job(state, job_id)
                if job.mode == JobMode.SUBMISSION and not accepts_votes(job.consensus_policy):
                    raise InvalidTransition(f"Voting is not enabled for job {job_id}")
                _ensure_open(job, now, "vote on")
                if vote.submission_id and not any(
                    sub.id == vote.submission_id for sub in state.submissions_for(job_id)
                ):
                    raise NotFound(f"Submission not found: {vote.submission_id}")
                if vote.stake_amount:
                    append_entry(
                        state.ledger,
                        self.ledger.new_entry(
                            LedgerEntryType.STAKE, agent_id, -vote.stake_amount, job_id, "vote_stake"
                        ),
                    )
                state.votes.append(vote)
                self._audit(
                    state,
                    "vote_cast",
                    job_id,
                    agent_id,
                    submission_id=vote.submission_id,
                    choice_key=vote.choice_key,
                    score=vote.score,
                )
                return vote

            await self.store.update(cast_vote)
            logger.info("Vote %s on job %s by %s", vote.id, job_id, agent_id)
            return vote

        return await self._guarded("vote", {"agent_id": agent_id, "job_id": job_id}, run)

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    @staticmethod
    def _authorize(job: Job, agent_id: str, manual: bool = False) -> None:
        policy = job.consensus_policy
        if isinstance(policy, TrustedArbiter):
            if policy.trusted_arbiter_agent_id and policy.trusted_arbiter_agent_id != agent_id:
                raise Unauthorized(f"Only the trusted arbiter can resolve job {job.id}")
        elif isinstance(policy, OwnerPick):
            if job.created_by_agent_id != agent_id:
                raise Unauthorized(f"Only the job owner can resolve job {job.id}")
        elif isinstance(policy, ApprovalVote) and policy.approval_vote.settlement == "oracle":
            if policy.trusted_arbiter_agent_id and policy.trusted_arbiter_agent_id != agent_id:
                raise Unauthorized(f"Only the trusted arbiter can settle job {job.id}")
        elif isinstance(policy, ApprovalVote) and policy.tie_break == "arbiter" and manual:
            # ties are broken by the arbiter, or by the owner when none is named
            decider = policy.trusted_arbiter_agent_id or job.created_by_agent_id
            if decider != agent_id:
                raise Unauthorized(f"Only {decider} can break a tie on job {job.id}")

    def _settle(
        self,
        state: StateDocument,
        job: Job,
        winners: Sequence[str],
        winning_submission_ids: Sequence[str],
    ) -> tuple[list[Payout], list[Slash]]:
        """Release stakes, pay winners and burn slashed stakes, in that order."""
        submitters = {sub.agent_id for sub in state.submissions_for(job.id)}
        slashing_on = self.settings.slashing_enabled and job.slashing_policy.enabled
        unstakes: list[tuple[str, float]] = []
        slashes: list[Slash] = []

        for bid in state.bids_for(job.id):
            if bid.stake_amount <= 0:
                continue
            unstakes.append((bid.agent_id, bid.stake_amount))
            if slashing_on and bid.agent_id not in submitters:
                amount = calculate_slash_amount(job.slashing_policy, bid.stake_amount)
                if amount > 0:
                    slashes.append(Slash(agent_id=bid.agent_id, amount=amount, reason="timeout"))

        policy = job.consensus_policy
        vote_slash_percent = 0.0
        if isinstance(policy, ApprovalVote) and policy.approval_vote.settlement == "staked":
            vote_slash_percent = policy.approval_vote.vote_slash_percent
        winning = set(winning_submission_ids)
        for vote in state.votes_for(job.id):
            stake = vote.stake_amount or 0.0
            if stake <= 0:
                continue
            unstakes.append((vote.agent_id, stake))
            if vote_slash_percent and winning and vote.submission_id and vote.submission_id not in winning:
                amount = stake * vote_slash_percent
                if amount > 0:
                    slashes.append(Slash(agent_id=vote.agent_id, amount=amount, reason="vote_wrong"))

        payouts = []
        if winners and job.reward > 0:
            share = job.reward / len(winners)
            payouts = [Payout(agent_id=winner, amount=share) for winner in winners]

        new_entry = self.ledger.new_entry
        for agent, amount in unstakes:
            append_entry(state.ledger, new_entry(LedgerEntryType.UNSTAKE, agent, amount, job.id, "stake_release"))
        for payout in payouts:
            append_entry(state.ledger, new_entry(LedgerEntryType.PAYOUT, payout.agent_id, payout.amount, job.id))
        for slash in slashes:
            append_entry(
                state.ledger, new_entry(LedgerEntryType.SLASH, slash.agent_id, -slash.amount, job.id, slash.reason)
            )
        return payouts, slashes

    async def resolve_job(
        self,
        agent_id: str,
        job_id: str,
        manual_winners: Sequence[str] | None = None,
        manual_submission_id: str | None = None,
    ) -> Resolution:
        """
        Decide the job's winners and settle every stake, exactly once.

        Args:
            agent_id: Caller; checked against the policy's arbiter or owner.
            job_id: Job to resolve. EXPIRED jobs may still be resolved.
            manual_winners: Explicit winners for arbiter, owner and oracle policies.
            manual_submission_id: Explicit winning submission.

        Raises:
            InvalidTransition: Job already resolved or cancelled, or the policy
                is still waiting on a manual decision.
            Unauthorized: Caller may not decide this job.
            InsufficientBalance: A settlement entry would overdraw an agent.
        """

        async def run() -> Resolution:
            winners_in = _manual_winners(manual_winners)
            manual_ok = manual_submission_id is None or (isinstance(manual_submission_id, str) and manual_submission_id)
            if not manual_ok:
                raise ValidationError("manual_submission_id must be a non-empty string")
            now = self.clock()

            def resolve(state: StateDocument) -> Resolution:
                job = _require_job(state, job_id)
                if job.status == JobStatus.RESOLVED or state.find_resolution(job_id) is not None:
                    raise InvalidTransition(f"Job {job_id} is already resolved")
                if job.status == JobStatus.CANCELLED:
                    raise InvalidTransition(f"Job {job_id} is cancelled")
                self._authorize(job, agent_id, manual=bool(winners_in or manual_submission_id))
                submissions = state.submissions_for(job_id)
                if manual_submission_id and not any(sub.id == manual_submission_id for sub in submissions):
                    raise NotFound(f"Submission not found: {manual_submission_id}")

                entries = list(state.ledger)
                result = resolve_consensus(
                    ConsensusInput(
                        job=job,
                        submissions=submissions,
                        votes=state.votes_for(job_id),
                        reputation=self.reputation or (lambda agent: ledger_reputation(entries, agent)),
                        manual_winners=winners_in,
                        manual_submission_id=manual_submission_id,
                    )
                )
                if result.needs_decision:
                    mode = result.consensus_trace.get("mode") or result.consensus_trace.get("reason")
                    raise InvalidTransition(f"Job {job_id} needs a manual decision ({mode})")

                payouts, slashes = self._settle(state, job, result.winners, result.winning_submission_ids)

                winning = set(result.winning_submission_ids)
                for sub in submissions:
                    sub.status = SubmissionStatus.SELECTED if sub.id in winning else SubmissionStatus.REJECTED
                for claim in state.claims_for(job_id):
                    if claim.status == ClaimStatus.ACTIVE:
                        claim.status = ClaimStatus.COMPLETED

                resolution = Resolution(
                    job_id=job_id,
                    resolved_at=to_iso(now),
                    winners=list(result.winners),
                    winning_submission_ids=list(result.winning_submission_ids),
                    payouts=payouts,
                    slashes=slashes,
                    consensus_trace=result.consensus_trace,
                    final_artifact=result.final_artifact,
                    audit_log=[f"resolved_by:{agent_id}"],
                )
                state.resolutions.append(resolution)
                job.advance(JobStatus.RESOLVED)
                self._audit(
                    state,
                    "job_resolved",
                    job_id,
                    agent_id,
                    winners=resolution.winners,
                    winning_submission_ids=resolution.winning_submission_ids,
                )
                return resolution

            resolution = await self.store.update(resolve)
            logger.info(
                "Job %s resolved by %s: winners=%s slashes=%d",
                job_id,
                agent_id,
                resolution.winners,
                len(resolution.slashes),
            )
            return resolution

        return await self._guarded("resolve_job", {"agent_id": agent_id, "job_id": job_id}, run)
