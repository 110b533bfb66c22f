"""Entities of the job board, the ledger and the persisted state document."""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field, fields
from enum import StrEnum
from typing import Any, TypeVar

from consensus_tools.consensus.policy import (
    ConsensusPolicy,
    FirstSubmissionWins,
    parse_policy,
    policy_to_dict,
)
from consensus_tools.errors import InvalidTransition

T = TypeVar("T")


class JobStatus(StrEnum):
    """Job lifecycle states."""

    OPEN = "OPEN"
    IN_PROGRESS = "IN_PROGRESS"
    SUBMITTED = "SUBMITTED"
    RESOLVED = "RESOLVED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


class JobMode(StrEnum):
    SUBMISSION = "SUBMISSION"
    VOTING = "VOTING"


class ClaimStatus(StrEnum):
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


class SubmissionStatus(StrEnum):
    SUBMITTED = "SUBMITTED"
    SELECTED = "SELECTED"
    REJECTED = "REJECTED"
    WITHDRAWN = "WITHDRAWN"


class VoteTarget(StrEnum):
    SUBMISSION = "SUBMISSION"
    CHOICE = "CHOICE"


class LedgerEntryType(StrEnum):
    """Signed credit movements. STAKE and SLASH are stored negative."""

    FAUCET = "FAUCET"
    STAKE = "STAKE"
    UNSTAKE = "UNSTAKE"
    PAYOUT = "PAYOUT"
    SLASH = "SLASH"
    ADJUST = "ADJUST"


# Forward lattice: OPEN -> {IN_PROGRESS, SUBMITTED} -> {RESOLVED, EXPIRED, CANCELLED}
_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.OPEN: frozenset(
        {
            JobStatus.IN_PROGRESS,
            JobStatus.SUBMITTED,
            JobStatus.RESOLVED,
            JobStatus.EXPIRED,
            JobStatus.CANCELLED,
        }
    ),
    JobStatus.IN_PROGRESS: frozenset(
        {JobStatus.SUBMITTED, JobStatus.RESOLVED, JobStatus.EXPIRED, JobStatus.CANCELLED}
    ),
    JobStatus.SUBMITTED: frozenset({JobStatus.RESOLVED, JobStatus.EXPIRED, JobStatus.CANCELLED}),
    JobStatus.EXPIRED: frozenset({JobStatus.RESOLVED, JobStatus.CANCELLED}),
    JobStatus.RESOLVED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}

TERMINAL_STATUSES = frozenset({JobStatus.RESOLVED, JobStatus.CANCELLED})
EXPIRABLE_STATUSES = frozenset({JobStatus.OPEN, JobStatus.IN_PROGRESS, JobStatus.SUBMITTED})


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def _build(cls: type[T], data: dict[str, Any]) -> T:
    """Build a dataclass from a mapping, ignoring keys it does not declare."""
    names = {f.name for f in fields(cls)}  # type: ignore[arg-type]
    return cls(**{k: v for k, v in data.items() if k in names})


@dataclass
class SlashingPolicy:
    """Per-job slashing of stakes held by claimants who never submit."""

    enabled: bool = False
    slash_percent: float = 0.0
    slash_flat: float = 0.0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SlashingPolicy:
        return _build(cls, data)


@dataclass
class Job:
    """A posted task with an economic policy and a resolution policy."""

    id: str
    created_by_agent_id: str
    title: str
    created_at: str
    expires_at: str
    description: str = ""
    input_ref: str | None = None
    inputs: dict[str, Any] = field(default_factory=dict)
    tags: list[str] = field(default_factory=list)
    priority: int = 0
    required_capabilities: list[str] = field(default_factory=list)
    mode: JobMode = JobMode.SUBMISSION
    policy_key: str | None = None
    consensus_policy: ConsensusPolicy = field(default_factory=FirstSubmissionWins)
    reward: float = 0.0
    stake_required: float = 0.0
    currency: str = "CREDITS"
    min_participants: int = 1
    max_participants: int = 1
    slashing_policy: SlashingPolicy = field(default_factory=SlashingPolicy)
    opens_at: str | None = None
    closes_at: str | None = None
    resolves_at: str | None = None
    status: JobStatus = JobStatus.OPEN

    def advance(self, status: JobStatus) -> None:
        """Move along the status lattice; RESOLVED and CANCELLED are terminal."""
        if status == self.status:
            return
        if status not in _TRANSITIONS[self.status]:
            raise InvalidTransition(f"Job {self.id} cannot move from {self.status} to {status}")
        self.status = status

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["consensus_policy"] = policy_to_dict(self.consensus_policy)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Job:
        job = _build(cls, data)
        job.consensus_policy = parse_policy(data.get("consensus_policy") or {})
        job.slashing_policy = SlashingPolicy.from_dict(data.get("slashing_policy") or {})
        job.status = JobStatus(job.status)
        job.mode = JobMode(job.mode)
        return job


@dataclass
class Bid:
    """Stake put up by an agent when claiming a job."""

    agent_id: str
    job_id: str
    stake_amount: float
    stake_at: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Bid:
        return _build(cls, data)


@dataclass
class Assignment:
    """One agent's active engagement with a job."""

    agent_id: str
    job_id: str
    stake_amount: float
    claim_at: str
    lease_until: str
    heartbeat_at: str
    status: ClaimStatus = ClaimStatus.ACTIVE

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Assignment:
        assignment = _build(cls, data)
        assignment.status = ClaimStatus(assignment.status)
        return assignment


@dataclass
class Submission:
    """An agent's proposed artifact for a job."""

    id: str
    job_id: str
    agent_id: str
    submitted_at: str
    summary: str = ""
    artifacts: dict[str, Any] = field(default_factory=dict)
    artifact_ref: str | None = None
    confidence: float = 0.0
    requested_payout: float = 0.0
    status: SubmissionStatus = SubmissionStatus.SUBMITTED

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Submission:
        submission = _build(cls, data)
        submission.status = SubmissionStatus(submission.status)
        return submission


@dataclass
class Vote:
    """An agent's weighted opinion on a submission or an abstract choice."""

    id: str
    job_id: str
    agent_id: str
    created_at: str
    target_type: VoteTarget = VoteTarget.SUBMISSION
    submission_id: str | None = None
    choice_key: str | None = None
    score: float = 1.0
    weight: float | None = None
    stake_amount: float | None = None
    rationale: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Vote:
        vote = _build(cls, data)
        vote.target_type = VoteTarget(vote.target_type)
        return vote


@dataclass
class LedgerEntry:
    """Immutable signed credit movement."""

    id: str
    at: str
    type: LedgerEntryType
    agent_id: str
    amount: float
    job_id: str | None = None
    reason: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LedgerEntry:
        entry = _build(cls, data)
        entry.type = LedgerEntryType(entry.type)
        return entry


@dataclass
class Payout:
    agent_id: str
    amount: float


@dataclass
class Slash:
    agent_id: str
    amount: float
    reason: str


@dataclass
class Resolution:
    """Final, one-time decision record for a job."""

    job_id: str
    resolved_at: str
    winners: list[str] = field(default_factory=list)
    winning_submission_ids: list[str] = field(default_factory=list)
    payouts: list[Payout] = field(default_factory=list)
    slashes: list[Slash] = field(default_factory=list)
    consensus_trace: dict[str, Any] = field(default_factory=dict)
    final_artifact: dict[str, Any] | None = None
    audit_log: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Resolution:
        resolution = _build(cls, data)
        resolution.payouts = [_build(Payout, p) for p in data.get("payouts", [])]
        resolution.slashes = [_build(Slash, s) for s in data.get("slashes", [])]
        return resolution


@dataclass
class AuditEvent:
    id: str
    at: str
    type: str
    job_id: str | None = None
    actor_agent_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AuditEvent:
        return _build(cls, data)


@dataclass
class DiagnosticEntry:
    id: str
    at: str
    message: str
    context: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DiagnosticEntry:
        return _build(cls, data)


@dataclass
class StateDocument:
    """
    The single document of truth.

    Every collection lives here; engines never hold their own copies and
    re-read the document for every operation.
    """

    jobs: list[Job] = field(default_factory=list)
    bids: list[Bid] = field(default_factory=list)
    claims: list[Assignment] = field(default_factory=list)
    submissions: list[Submission] = field(default_factory=list)
    votes: list[Vote] = field(default_factory=list)
    resolutions: list[Resolution] = field(default_factory=list)
    ledger: list[LedgerEntry] = field(default_factory=list)
    audit: list[AuditEvent] = field(default_factory=list)
    errors: list[DiagnosticEntry] = field(default_factory=list)

    def find_job(self, job_id: str) -> Job | None:
        return next((job for job in self.jobs if job.id == job_id), None)

    def find_resolution(self, job_id: str) -> Resolution | None:
        return next((res for res in self.resolutions if res.job_id == job_id), None)

    def submissions_for(self, job_id: str) -> list[Submission]:
        return [sub for sub in self.submissions if sub.job_id == job_id]

    def votes_for(self, job_id: str) -> list[Vote]:
        return [vote for vote in self.votes if vote.job_id == job_id]

    def claims_for(self, job_id: str) -> list[Assignment]:
        return [claim for claim in self.claims if claim.job_id == job_id]

    def bids_for(self, job_id: str) -> list[Bid]:
        return [bid for bid in self.bids if bid.job_id == job_id]

    def to_dict(self) -> dict[str, Any]:
        return {
            "jobs": [job.to_dict() for job in self.jobs],
            "bids": [asdict(bid) for bid in self.bids],
            "claims": [asdict(claim) for claim in self.claims],
            "submissions": [asdict(sub) for sub in self.submissions],
            "votes": [asdict(vote) for vote in self.votes],
            "resolutions": [asdict(res) for res in self.resolutions],
            "ledger": [asdict(entry) for entry in self.ledger],
            "audit": [asdict(event) for event in self.audit],
            "errors": [asdict(err) for err in self.errors],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StateDocument:
        return cls(
            jobs=[Job.from_dict(d) for d in data.get("jobs", [])],
            bids=[Bid.from_dict(d) for d in data.get("bids", [])],
            claims=[Assignment.from_dict(d) for d in data.get("claims", [])],
            submissions=[Submission.from_dict(d) for d in data.get("submissions", [])],
            votes=[Vote.from_dict(d) for d in data.get("votes", [])],
            resolutions=[Resolution.from_dict(d) for d in data.get("resolutions", [])],
            ledger=[LedgerEntry.from_dict(d) for d in data.get("ledger", [])],
            audit=[AuditEvent.from_dict(d) for d in data.get("audit", [])],
            errors=[DiagnosticEntry.from_dict(d) for d in data.get("errors", [])],
        )
