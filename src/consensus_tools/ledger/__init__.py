"""Credit ledger: pure balance rules and the async Ledger Engine."""

from consensus_tools.ledger.engine import LedgerEngine
from consensus_tools.ledger.rules import (
    append_entry,
    compute_balances,
    ensure_non_negative,
    get_balance,
    ledger_reputation,
)

__all__ = [
    "LedgerEngine",
    "append_entry",
    "compute_balances",
    "ensure_non_negative",
    "get_balance",
    "ledger_reputation",
]
