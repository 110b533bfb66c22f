"""Job lifecycle and economic settlement."""

from consensus_tools.jobs.engine import JobDraft, JobEngine, JobStatusReport, SubmissionDraft, VoteDraft
from consensus_tools.jobs.slashing import calculate_slash_amount

__all__ = [
    "JobDraft",
    "JobEngine",
    "JobStatusReport",
    "SubmissionDraft",
    "VoteDraft",
    "calculate_slash_amount",
]
