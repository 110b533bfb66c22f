"""Pure ledger folds: balances and reputation are derived, never stored."""

from __future__ import annotations

from collections.abc import Iterable

from consensus_tools.errors import InsufficientBalance
from consensus_tools.models import LedgerEntry, LedgerEntryType

REPUTATION_FLOOR = 0.1


def compute_balances(entries: Iterable[LedgerEntry]) -> dict[str, float]:
    balances: dict[str, float] = {}
    for entry in entries:
        balances[entry.agent_id] = balances.get(entry.agent_id, 0.0) + entry.amount
    return balances


def get_balance(entries: Iterable[LedgerEntry], agent_id: str) -> float:
    return sum((entry.amount for entry in entries if entry.agent_id == agent_id), 0.0)


def ensure_non_negative(balance: float, context: str) -> None:
    if balance < 0:
        raise InsufficientBalance(f"Insufficient credits for {context}")


def ledger_reputation(entries: Iterable[LedgerEntry], agent_id: str) -> float:
    """1 + the agent's PAYOUT and SLASH amounts, floored at 0.1."""
    score = 1.0
    for entry in entries:
        if entry.agent_id != agent_id:
            continue
        if entry.type in (LedgerEntryType.PAYOUT, LedgerEntryType.SLASH):
            score += entry.amount
    return max(REPUTATION_FLOOR, score)


def append_entry(ledger: list[LedgerEntry], entry: LedgerEntry) -> LedgerEntry:
    """Append ``entry`` after checking the agent's post-entry balance."""
    balance = get_balance(ledger, entry.agent_id) + entry.amount
    context = f"{entry.agent_id} after {entry.type}"
    if entry.job_id:
        context += f" on {entry.job_id}"
    ensure_non_negative(balance, context)
    ledger.append(entry)
    return entry
