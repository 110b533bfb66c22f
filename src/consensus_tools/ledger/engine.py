"""
Ledger Engine: signed credit movements against the state store.

Every write appends exactly one entry inside ``StateStore.update`` after
checking that the agent's balance stays non-negative; a rejected entry leaves
the document unchanged.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Mapping

from consensus_tools.clock import Clock, to_iso, utc_now
from consensus_tools.config import LedgerSettings
from consensus_tools.errors import ValidationError
from consensus_tools.ledger.rules import append_entry, compute_balances, ensure_non_negative, get_balance
from consensus_tools.models import LedgerEntry, LedgerEntryType, StateDocument, new_id
from consensus_tools.storage.base import StateStore

logger = logging.getLogger(__name__)


def _checked(amount: float) -> float:
    if isinstance(amount, bool) or not isinstance(amount, (int, float)) or not math.isfinite(amount):
        raise ValidationError(f"Amount must be a finite number, got {amount!r}")
    return float(amount)


class LedgerEngine:
    """
    Internal credit ledger.

    Entry signs:
    - FAUCET, UNSTAKE, PAYOUT: positive
    - STAKE, SLASH: negative
    - ADJUST: signed delta toward a configured balance
    """

    def __init__(
        self,
        store: StateStore,
        settings: LedgerSettings | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.store = store
        self.settings = settings or LedgerSettings()
        self.clock = clock or utc_now

    def new_entry(
        self,
        entry_type: LedgerEntryType,
        agent_id: str,
        amount: float,
        job_id: str | None = None,
        reason: str | None = None,
    ) -> LedgerEntry:
        return LedgerEntry(
            id=new_id("ledger"),
            at=to_iso(self.clock()),
            type=entry_type,
            agent_id=agent_id,
            amount=amount,
            job_id=job_id,
            reason=reason,
        )

    async def _append(self, entry: LedgerEntry) -> LedgerEntry:
        await self.store.update(lambda state: append_entry(state.ledger, entry))
        logger.info(
            "Ledger entry %s %s agent=%s job=%s", entry.type, entry.amount, entry.agent_id, entry.job_id
        )
        if self.settings.balances_mode == "override":
            await self.apply_config_balances(self.settings.balances, "override")
        return entry

    async def faucet(self, agent_id: str, amount: float, reason: str = "faucet") -> LedgerEntry:
        entry = self.new_entry(LedgerEntryType.FAUCET, agent_id, abs(_checked(amount)), reason=reason)
        return await self._append(entry)

    async def stake(self, agent_id: str, amount: float, job_id: str | None = None) -> LedgerEntry:
        entry = self.new_entry(LedgerEntryType.STAKE, agent_id, -abs(_checked(amount)), job_id)
        return await self._append(entry)

    async def unstake(self, agent_id: str, amount: float, job_id: str | None = None) -> LedgerEntry:
        entry = self.new_entry(LedgerEntryType.UNSTAKE, agent_id, abs(_checked(amount)), job_id)
        return await self._append(entry)

    async def payout(self, agent_id: str, amount: float, job_id: str | None = None) -> LedgerEntry:
        entry = self.new_entry(LedgerEntryType.PAYOUT, agent_id, abs(_checked(amount)), job_id)
        return await self._append(entry)

    async def slash(
        self, agent_id: str, amount: float, job_id: str | None = None, reason: str | None = None
    ) -> LedgerEntry:
        entry = self.new_entry(LedgerEntryType.SLASH, agent_id, -abs(_checked(amount)), job_id, reason)
        return await self._append(entry)

    def _config_adjustments(
        self, state: StateDocument, targets: Mapping[str, float], mode: str
    ) -> list[LedgerEntry]:
        added: list[LedgerEntry] = []
        for agent_id, target in targets.items():
            current = get_balance(state.ledger, agent_id)
            if mode == "initial" and current > 0:
                continue
            delta = _checked(target) - current
            if delta == 0:
                continue
            ensure_non_negative(current + delta, f"{agent_id} config balance")
            entry = self.new_entry(LedgerEntryType.ADJUST, agent_id, delta, reason="config_balance")
            state.ledger.append(entry)
            added.append(entry)
        return added

    async def apply_config_balances(self, targets: Mapping[str, float], mode: str = "initial") -> list[LedgerEntry]:
        """
        Bring agents to configured balances with ADJUST entries.

        ``initial`` only touches agents whose balance is zero or absent, so it
        is idempotent. ``override`` pins every listed agent to its exact
        target each time it runs, re-correcting any drift.
        """
        if mode not in ("initial", "override"):
            raise ValidationError(f"balances mode must be initial or override, got {mode!r}")
        if not targets:
            return []
        return await self.store.update(lambda state: self._config_adjustments(state, targets, mode))

    async def ensure_initial_credits(self, agent_id: str) -> LedgerEntry | None:
        """Grant ``initial_credits_per_agent`` to an agent with no credits."""
        credits = self.settings.initial_credits_per_agent
        if credits <= 0:
            return None

        def grant(state: StateDocument) -> LedgerEntry | None:
            if get_balance(state.ledger, agent_id) > 0:
                return None
            entry = self.new_entry(LedgerEntryType.FAUCET, agent_id, credits, reason="initial_credit")
            state.ledger.append(entry)
            return entry

        return await self.store.update(grant)

    async def _refresh_overrides(self) -> None:
        # Read paths re-pin configured balances in override mode.
        if self.settings.balances_mode == "override":
            await self.apply_config_balances(self.settings.balances, "override")

    async def get_balance(self, agent_id: str) -> float:
        await self._refresh_overrides()
        state = await self.store.get()
        return get_balance(state.ledger, agent_id)

    async def get_balances(self) -> dict[str, float]:
        await self._refresh_overrides()
        state = await self.store.get()
        return compute_balances(state.ledger)

    async def history(self, agent_id: str | None = None, job_id: str | None = None) -> list[LedgerEntry]:
        state = await self.store.get()
        return [
            entry
            for entry in state.ledger
            if (agent_id is None or entry.agent_id == agent_id) and (job_id is None or entry.job_id == job_id)
        ]
