"""Consensus policies and the pure resolver."""

from consensus_tools.consensus.policy import (
    ApprovalSettings,
    ApprovalVote,
    ConsensusPolicy,
    FirstSubmissionWins,
    HighestConfidenceSingle,
    MajorityVote,
    OwnerPick,
    PolicyType,
    TopKSplit,
    TrustedArbiter,
    WeightedReputation,
    WeightedVoteSimple,
    accepts_votes,
    merge_layers,
    parse_policy,
    policy_to_dict,
)
from consensus_tools.consensus.resolver import (
    ConsensusInput,
    ConsensusResult,
    resolve_consensus,
)

__all__ = [
    "ApprovalSettings",
    "ApprovalVote",
    "ConsensusInput",
    "ConsensusPolicy",
    "ConsensusResult",
    "FirstSubmissionWins",
    "HighestConfidenceSingle",
    "MajorityVote",
    "OwnerPick",
    "PolicyType",
    "TopKSplit",
    "TrustedArbiter",
    "WeightedReputation",
    "WeightedVoteSimple",
    "accepts_votes",
    "merge_layers",
    "parse_policy",
    "policy_to_dict",
    "resolve_consensus",
]
