"""Consensus Tools: job boards, consensus resolution and a staking ledger for agents."""

__version__ = "0.1.0"
