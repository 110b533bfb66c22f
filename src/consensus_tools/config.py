"""Runtime settings for the job board, ledger, storage and server."""

from __future__ import annotations

import os
import tomllib
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from consensus_tools.consensus.policy import merge_layers, parse_policy
from consensus_tools.errors import ValidationError
from consensus_tools.models import SlashingPolicy

DEFAULT_STATE_PATH = Path(".consensus") / "state.json"


def default_policy_presets() -> dict[str, dict[str, Any]]:
    """Named consensus policy presets selectable by ``policy_key``."""
    return {
        "FIRST_SUBMISSION_WINS": {"type": "FIRST_SUBMISSION_WINS"},
        "SINGLE_WINNER": {"type": "FIRST_SUBMISSION_WINS"},
        "HIGHEST_CONFIDENCE_SINGLE": {"type": "HIGHEST_CONFIDENCE_SINGLE", "min_confidence": 0},
        "APPROVAL_VOTE": {
            "type": "APPROVAL_VOTE",
            "quorum": 1,
            "min_score": 1,
            "min_margin": 0,
            "tie_break": "earliest",
            "approval_vote": {"weight_mode": "equal", "settlement": "immediate"},
        },
        "OWNER_PICK": {"type": "OWNER_PICK"},
        "TOP_K_SPLIT": {"type": "TOP_K_SPLIT", "top_k": 2, "ordering": "confidence"},
        "MAJORITY_VOTE": {"type": "MAJORITY_VOTE"},
        "WEIGHTED_VOTE_SIMPLE": {"type": "WEIGHTED_VOTE_SIMPLE"},
        "WEIGHTED_REPUTATION": {"type": "WEIGHTED_REPUTATION"},
        "TRUSTED_ARBITER": {"type": "TRUSTED_ARBITER", "trusted_arbiter_agent_id": ""},
    }


@dataclass(slots=True)
class StorageSettings:
    """Where the state document lives."""

    kind: str = "json"  # json | sqlite
    path: Path = DEFAULT_STATE_PATH


@dataclass(slots=True)
class ServerSettings:
    host: str = "127.0.0.1"
    port: int = 9888
    auth_token: str = ""


@dataclass(slots=True)
class JobDefaults:
    """Fallback values for fields a job poster leaves out."""

    reward: float = 10.0
    stake_required: float = 1.0
    max_participants: int = 3
    min_participants: int = 1
    expires_seconds: int = 86_400
    lease_seconds: int = 3_600
    consensus_policy: dict[str, Any] = field(
        default_factory=lambda: {"type": "FIRST_SUBMISSION_WINS", "tie_break": "earliest"}
    )
    slashing_policy: SlashingPolicy = field(default_factory=SlashingPolicy)


@dataclass(slots=True)
class LedgerSettings:
    """Credit bootstrap and operator-pinned balances."""

    faucet_enabled: bool = False
    initial_credits_per_agent: float = 0.0
    balances_mode: str = "initial"  # initial | override
    balances: dict[str, float] = field(default_factory=dict)


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    storage: StorageSettings = field(default_factory=StorageSettings)
    server: ServerSettings = field(default_factory=ServerSettings)
    slashing_enabled: bool = False
    job_defaults: JobDefaults = field(default_factory=JobDefaults)
    consensus_policies: dict[str, dict[str, Any]] = field(default_factory=default_policy_presets)
    ledger: LedgerSettings = field(default_factory=LedgerSettings)

    def validate(self) -> Settings:
        """Check enum-like fields and every policy; raises ValidationError."""
        if self.storage.kind not in ("json", "sqlite"):
            raise ValidationError(f"storage.kind must be json or sqlite, got {self.storage.kind!r}")
        if self.ledger.balances_mode not in ("initial", "override"):
            raise ValidationError(
                f"ledger.balances_mode must be initial or override, got {self.ledger.balances_mode!r}"
            )
        if any(amount < 0 for amount in self.ledger.balances.values()):
            raise ValidationError("ledger.balances must be non-negative")
        defaults = self.job_defaults
        if defaults.max_participants < 1 or defaults.min_participants < 1:
            raise ValidationError("job_defaults participants must be >= 1")
        if not 0.0 <= defaults.slashing_policy.slash_percent <= 1.0:
            raise ValidationError("job_defaults.slashing_policy.slash_percent must be in [0.0, 1.0]")
        parse_policy(defaults.consensus_policy)
        for name, preset in self.consensus_policies.items():
            try:
                parse_policy(merge_layers(defaults.consensus_policy, preset))
            except ValidationError as exc:
                raise ValidationError(f"consensus_policies.{name}: {exc}") from exc
        return self

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["storage"]["path"] = str(self.storage.path)
        return data

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None = None) -> Settings:
        """Layer ``data`` over the defaults and validate the result."""
        merged = merge_layers(cls().to_dict(), data)
        try:
            storage = merged["storage"]
            defaults = dict(merged["job_defaults"])
            defaults["slashing_policy"] = SlashingPolicy(**defaults["slashing_policy"])
            settings = cls(
                storage=StorageSettings(kind=storage["kind"], path=Path(storage["path"])),
                server=ServerSettings(**merged["server"]),
                slashing_enabled=bool(merged["slashing_enabled"]),
                job_defaults=JobDefaults(**defaults),
                consensus_policies=dict(merged["consensus_policies"]),
                ledger=LedgerSettings(**merged["ledger"]),
            )
        except TypeError as exc:
            raise ValidationError(f"Invalid settings: {exc}") from exc
        return settings.validate()

    @classmethod
    def from_env(cls, base: Mapping[str, Any] | None = None) -> Settings:
        """Load settings, letting ``CONSENSUS_*`` environment variables win."""
        env: dict[str, Any] = {}
        if path := os.getenv("CONSENSUS_STATE_PATH"):
            env.setdefault("storage", {})["path"] = path
        if kind := os.getenv("CONSENSUS_STORAGE_KIND"):
            env.setdefault("storage", {})["kind"] = kind
        if host := os.getenv("CONSENSUS_SERVER_HOST"):
            env.setdefault("server", {})["host"] = host
        if port := os.getenv("CONSENSUS_SERVER_PORT"):
            env.setdefault("server", {})["port"] = int(port)
        if token := os.getenv("CONSENSUS_AUTH_TOKEN"):
            env.setdefault("server", {})["auth_token"] = token
        if slashing := os.getenv("CONSENSUS_SLASHING_ENABLED"):
            env["slashing_enabled"] = slashing.lower() in ("1", "true", "yes")
        if faucet := os.getenv("CONSENSUS_FAUCET_ENABLED"):
            env.setdefault("ledger", {})["faucet_enabled"] = faucet.lower() in ("1", "true", "yes")
        return cls.from_mapping(merge_layers(base, env))


def load_settings(path: Path | None = None) -> Settings:
    """Read a TOML settings file (if given and present), then apply env overrides."""
    data: dict[str, Any] = {}
    if path is not None and path.exists():
        try:
            data = tomllib.loads(path.read_text(encoding="utf-8"))
        except tomllib.TOMLDecodeError as exc:
            raise ValidationError(f"Cannot parse settings file {path}: {exc}") from exc
    return Settings.from_env(data)
