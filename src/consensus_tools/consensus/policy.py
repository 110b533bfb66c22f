"""
Consensus policies as a closed sum type.

One frozen dataclass per policy type, so every resolver branch only sees the
parameters relevant to it. Policies are built from plain mappings with
``parse_policy`` after the layers (defaults, named preset, caller overrides)
have been combined by ``merge_layers``.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from enum import StrEnum
from typing import Any, ClassVar, Union

from consensus_tools.errors import ValidationError


class PolicyType(StrEnum):
    """Consensus policy tags."""

    FIRST_SUBMISSION_WINS = "FIRST_SUBMISSION_WINS"
    HIGHEST_CONFIDENCE_SINGLE = "HIGHEST_CONFIDENCE_SINGLE"
    TOP_K_SPLIT = "TOP_K_SPLIT"
    APPROVAL_VOTE = "APPROVAL_VOTE"
    OWNER_PICK = "OWNER_PICK"
    TRUSTED_ARBITER = "TRUSTED_ARBITER"
    MAJORITY_VOTE = "MAJORITY_VOTE"
    WEIGHTED_VOTE_SIMPLE = "WEIGHTED_VOTE_SIMPLE"
    WEIGHTED_REPUTATION = "WEIGHTED_REPUTATION"


# Policies without a voting phase.
SUBMISSION_ONLY = frozenset(
    {
        PolicyType.FIRST_SUBMISSION_WINS,
        PolicyType.HIGHEST_CONFIDENCE_SINGLE,
        PolicyType.OWNER_PICK,
        PolicyType.TOP_K_SPLIT,
        PolicyType.TRUSTED_ARBITER,
    }
)

LEGACY_ALIASES = {"SINGLE_WINNER": PolicyType.FIRST_SUBMISSION_WINS}

DUPLICATE_VOTE_MODES = ("count_all", "latest_wins")


@dataclass(frozen=True)
class FirstSubmissionWins:
    type: ClassVar[PolicyType] = PolicyType.FIRST_SUBMISSION_WINS


@dataclass(frozen=True)
class HighestConfidenceSingle:
    type: ClassVar[PolicyType] = PolicyType.HIGHEST_CONFIDENCE_SINGLE

    min_confidence: float = 0.0


@dataclass(frozen=True)
class TopKSplit:
    type: ClassVar[PolicyType] = PolicyType.TOP_K_SPLIT

    top_k: int = 2
    ordering: str = "confidence"  # confidence | score
    duplicate_votes: str = "count_all"


@dataclass(frozen=True)
class OwnerPick:
    type: ClassVar[PolicyType] = PolicyType.OWNER_PICK


@dataclass(frozen=True)
class TrustedArbiter:
    type: ClassVar[PolicyType] = PolicyType.TRUSTED_ARBITER

    trusted_arbiter_agent_id: str = ""


@dataclass(frozen=True)
class ApprovalSettings:
    """Approval-vote sub-configuration."""

    weight_mode: str = "equal"  # equal | explicit | reputation
    settlement: str = "immediate"  # immediate | staked | oracle
    oracle: str | None = None  # trusted_arbiter
    vote_slash_percent: float = 0.0


@dataclass(frozen=True)
class ApprovalVote:
    type: ClassVar[PolicyType] = PolicyType.APPROVAL_VOTE

    quorum: int | None = None
    min_score: float = 1.0
    min_margin: float = 0.0
    tie_break: str = "earliest"  # earliest | confidence | arbiter
    trusted_arbiter_agent_id: str = ""
    approval_vote: ApprovalSettings = field(default_factory=ApprovalSettings)
    duplicate_votes: str = "count_all"


@dataclass(frozen=True)
class TallyPolicy:
    """Shared parameters of the plain vote-tally policies."""

    quorum: int | None = None
    duplicate_votes: str = "count_all"


@dataclass(frozen=True)
class MajorityVote(TallyPolicy):
    type: ClassVar[PolicyType] = PolicyType.MAJORITY_VOTE


@dataclass(frozen=True)
class WeightedVoteSimple(TallyPolicy):
    type: ClassVar[PolicyType] = PolicyType.WEIGHTED_VOTE_SIMPLE


@dataclass(frozen=True)
class WeightedReputation(TallyPolicy):
    type: ClassVar[PolicyType] = PolicyType.WEIGHTED_REPUTATION


ConsensusPolicy = Union[
    FirstSubmissionWins,
    HighestConfidenceSingle,
    TopKSplit,
    ApprovalVote,
    OwnerPick,
    TrustedArbiter,
    MajorityVote,
    WeightedVoteSimple,
    WeightedReputation,
]

_KNOWN_KEYS = frozenset(
    {
        "type",
        "trusted_arbiter_agent_id",
        "min_confidence",
        "top_k",
        "ordering",
        "quorum",
        "min_score",
        "min_margin",
        "tie_break",
        "approval_vote",
        "duplicate_votes",
    }
)
_APPROVAL_KEYS = frozenset({"weight_mode", "settlement", "oracle", "vote_slash_percent"})


def merge_layers(*layers: Mapping[str, Any] | None) -> dict[str, Any]:
    """
    Merge configuration layers, lowest priority first.

    Nested mappings are merged key by key; ``None`` layers and ``None`` values
    are skipped so an absent setting never hides a lower layer.
    """
    merged: dict[str, Any] = {}
    for layer in layers:
        if not layer:
            continue
        for key, value in layer.items():
            if value is None:
                continue
            current = merged.get(key)
            if isinstance(value, Mapping) and isinstance(current, Mapping):
                merged[key] = merge_layers(current, value)
            elif isinstance(value, Mapping):
                merged[key] = merge_layers(value)
            else:
                merged[key] = value
    return merged


def _number(data: Mapping[str, Any], key: str, default: float) -> float:
    value = data.get(key)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise ValidationError(f"{key} must be a finite number, got {value!r}")
    return float(value)


def _fraction(data: Mapping[str, Any], key: str, default: float) -> float:
    value = _number(data, key, default)
    if not 0.0 <= value <= 1.0:
        raise ValidationError(f"{key} must be in [0.0, 1.0], got {value}")
    return value


def _positive_int(data: Mapping[str, Any], key: str) -> int | None:
    value = data.get(key)
    if value is None or value == 0:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ValidationError(f"{key} must be a positive integer, got {value!r}")
    return value


def _choice(data: Mapping[str, Any], key: str, options: tuple[str, ...], default: str) -> str:
    value = data.get(key, default)
    if value is None:
        return default
    if value not in options:
        raise ValidationError(f"{key} must be one of {', '.join(options)}, got {value!r}")
    return str(value)


def _policy_type(raw: Any) -> PolicyType:
    if raw in LEGACY_ALIASES:
        return LEGACY_ALIASES[raw]
    try:
        return PolicyType(raw)
    except ValueError:
        raise ValidationError(f"Unknown consensus policy type: {raw!r}") from None


def _approval_settings(raw: Any) -> ApprovalSettings:
    if raw is None:
        return ApprovalSettings()
    if not isinstance(raw, Mapping):
        raise ValidationError("approval_vote must be a mapping")
    unknown = set(raw) - _APPROVAL_KEYS
    if unknown:
        raise ValidationError(f"Unknown approval_vote keys: {', '.join(sorted(unknown))}")
    oracle = raw.get("oracle")
    if oracle not in (None, "trusted_arbiter"):
        raise ValidationError(f"oracle must be trusted_arbiter, got {oracle!r}")
    return ApprovalSettings(
        weight_mode=_choice(raw, "weight_mode", ("equal", "explicit", "reputation"), "equal"),
        settlement=_choice(raw, "settlement", ("immediate", "staked", "oracle"), "immediate"),
        oracle=oracle,
        vote_slash_percent=_fraction(raw, "vote_slash_percent", 0.0),
    )


def parse_policy(data: Mapping[str, Any]) -> ConsensusPolicy:
    """
    Build a typed policy from a merged configuration mapping.

    Keys that belong to other policy types are ignored, since merged layers
    carry generic defaults. Unknown keys and out-of-range values raise
    ``ValidationError``.
    """
    if not isinstance(data, Mapping):
        raise ValidationError("consensus policy must be a mapping")
    unknown = set(data) - _KNOWN_KEYS
    if unknown:
        raise ValidationError(f"Unknown consensus policy keys: {', '.join(sorted(unknown))}")
    if "type" not in data:
        raise ValidationError("consensus policy requires a type")

    policy_type = _policy_type(data["type"])
    arbiter = str(data.get("trusted_arbiter_agent_id") or "")
    duplicate_votes = _choice(data, "duplicate_votes", DUPLICATE_VOTE_MODES, "count_all")

    if policy_type is PolicyType.FIRST_SUBMISSION_WINS:
        return FirstSubmissionWins()
    if policy_type is PolicyType.HIGHEST_CONFIDENCE_SINGLE:
        return HighestConfidenceSingle(min_confidence=_fraction(data, "min_confidence", 0.0))
    if policy_type is PolicyType.TOP_K_SPLIT:
        return TopKSplit(
            top_k=_positive_int(data, "top_k") or 2,
            ordering=_choice(data, "ordering", ("confidence", "score"), "confidence"),
            duplicate_votes=duplicate_votes,
        )
    if policy_type is PolicyType.OWNER_PICK:
        return OwnerPick()
    if policy_type is PolicyType.TRUSTED_ARBITER:
        return TrustedArbiter(trusted_arbiter_agent_id=arbiter)
    if policy_type is PolicyType.APPROVAL_VOTE:
        return ApprovalVote(
            quorum=_positive_int(data, "quorum"),
            min_score=_number(data, "min_score", 1.0),
            min_margin=_number(data, "min_margin", 0.0),
            tie_break=_choice(data, "tie_break", ("earliest", "confidence", "arbiter"), "earliest"),
            trusted_arbiter_agent_id=arbiter,
            approval_vote=_approval_settings(data.get("approval_vote")),
            duplicate_votes=duplicate_votes,
        )

    tally = {
        PolicyType.MAJORITY_VOTE: MajorityVote,
        PolicyType.WEIGHTED_VOTE_SIMPLE: WeightedVoteSimple,
        PolicyType.WEIGHTED_REPUTATION: WeightedReputation,
    }[policy_type]
    return tally(quorum=_positive_int(data, "quorum"), duplicate_votes=duplicate_votes)


def policy_to_dict(policy: ConsensusPolicy) -> dict[str, Any]:
    return {"type": policy.type.value, **asdict(policy)}


def accepts_votes(policy: ConsensusPolicy) -> bool:
    return policy.type not in SUBMISSION_ONLY
