"""Error taxonomy shared by the engines, the HTTP layer and the CLI."""

from __future__ import annotations


class ConsensusToolsError(Exception):
    """Base class for every failure surfaced by a core operation."""

    kind = "error"


class NotFound(ConsensusToolsError):
    """Unknown job or submission id."""

    kind = "not_found"


class InvalidTransition(ConsensusToolsError):
    """Operation not allowed in the job's current state or policy."""

    kind = "invalid_transition"


class Unauthorized(ConsensusToolsError):
    """Caller is not allowed to perform the operation."""

    kind = "unauthorized"


class InsufficientBalance(ConsensusToolsError):
    """A ledger entry would drive an agent's balance below zero."""

    kind = "insufficient_balance"


class ValidationError(ConsensusToolsError):
    """Malformed input, policy configuration or settings."""

    kind = "validation_error"


class StorageCorruption(ConsensusToolsError):
    """The persisted state document cannot be parsed."""

    kind = "storage_corruption"


ERRORS_BY_KIND: dict[str, type[ConsensusToolsError]] = {
    cls.kind: cls
    for cls in (
        ConsensusToolsError,
        NotFound,
        InvalidTransition,
        Unauthorized,
        InsufficientBalance,
        ValidationError,
        StorageCorruption,
    )
}
