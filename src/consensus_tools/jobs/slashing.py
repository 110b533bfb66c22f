"""Slash amounts for stakes held by claimants who never submitted."""

from __future__ import annotations

from consensus_tools.models import SlashingPolicy


def calculate_slash_amount(policy: SlashingPolicy, stake_amount: float, slashing_enabled: bool = True) -> float:
    """
    How much of ``stake_amount`` to burn under ``policy``.

    The larger of the percentage and the flat amount, never more than the
    stake itself. Zero unless slashing is enabled both globally and on the job.
    """
    if not slashing_enabled or not policy.enabled or stake_amount <= 0:
        return 0.0
    amount = max(stake_amount * policy.slash_percent, policy.slash_flat)
    return min(amount, stake_amount)
