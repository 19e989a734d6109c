# src/magicplace/config.py
from __future__ import annotations

import json
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Optional

from solders.pubkey import Pubkey

from magicplace.errors import ConfigError

Json = Dict[str, Any]

LAMPORTS_PER_SOL = 1_000_000_000


def _as_int(v: Any, default: int) -> int:
    try:
        return int(v)
    except (TypeError, ValueError):
        return int(default)


def _as_float(v: Any, default: float) -> float:
    try:
        return float(v)
    except (TypeError, ValueError):
        return float(default)


def _as_str(v: Any, default: str) -> str:
    if v is None:
        return str(default)
    s = str(v)
    return s if s.strip() else str(default)


@dataclass(frozen=True)
class ClientConfig:
    cluster: str  # "localnet" | "devnet" | "mainnet"

    base_rpc_url: str
    fast_rpc_url: str
    rpc_timeout_s: float
    confirm_poll_interval_s: float

    program_id: str
    delegation_program_id: str
    validator_hint: str
    magic_program_id: str
    magic_context_id: str

    # "legacy" | "versioned"; picks the transaction builder once.
    transaction_format: str
    priority_fee_micro_lamports: int

    session_db_path: str
    session_salt: str
    # 0 means the session never expires.
    session_duration_s: int
    min_session_balance_lamports: int
    session_funding_lamports: int

    shard_rent_lamports: int
    tx_fee_lamports: int
    delegation_fee_lamports: int

    settle_delay_s: float
    visibility_poll_attempts: int
    visibility_poll_interval_s: float
    delegate_max_attempts: int
    delegate_backoff_s: float

    cooldown_limit: int
    cooldown_period_s: int

    log_level: str

    @property
    def program_pubkey(self) -> Pubkey:
        return Pubkey.from_string(self.program_id)

    @property
    def delegation_program_pubkey(self) -> Pubkey:
        return Pubkey.from_string(self.delegation_program_id)

    @property
    def validator_pubkey(self) -> Pubkey:
        return Pubkey.from_string(self.validator_hint)


_ALLOWED_CLUSTERS = {"localnet", "devnet", "mainnet"}
_ALLOWED_TX_FORMATS = {"legacy", "versioned"}


def validate_client_config(cfg: ClientConfig) -> None:
    """Fail-fast validation so a misconfigured client never submits anything."""

    cluster = str(cfg.cluster or "").strip().lower()
    if cluster not in _ALLOWED_CLUSTERS:
        raise ConfigError(f"cluster must be one of {sorted(_ALLOWED_CLUSTERS)}; got: {cfg.cluster!r}")

    for name, url in (("base_rpc_url", cfg.base_rpc_url), ("fast_rpc_url", cfg.fast_rpc_url)):
        if not str(url).startswith(("http://", "https://")):
            raise ConfigError(f"{name} must be an http(s) URL; got: {url!r}")

    for name in ("program_id", "delegation_program_id", "validator_hint", "magic_program_id", "magic_context_id"):
        value = getattr(cfg, name)
        try:
            Pubkey.from_string(str(value))
        except ValueError as e:
            raise ConfigError(f"{name} is not a valid base58 public key: {value!r}") from e

    if cfg.transaction_format not in _ALLOWED_TX_FORMATS:
        raise ConfigError(f"transaction_format must be one of {sorted(_ALLOWED_TX_FORMATS)}; got: {cfg.transaction_format!r}")

    if not cfg.session_salt.strip():
        raise ConfigError("session_salt must be a non-empty string")

    if int(cfg.session_duration_s) < 0:
        raise ConfigError(f"session_duration_s must be >= 0; got: {cfg.session_duration_s}")

    for name in (
        "priority_fee_micro_lamports",
        "min_session_balance_lamports",
        "session_funding_lamports",
        "shard_rent_lamports",
        "tx_fee_lamports",
        "delegation_fee_lamports",
    ):
        if int(getattr(cfg, name)) < 0:
            raise ConfigError(f"{name} must be >= 0; got: {getattr(cfg, name)}")

    if int(cfg.delegate_max_attempts) < 1:
        raise ConfigError(f"delegate_max_attempts must be >= 1; got: {cfg.delegate_max_attempts}")

    if int(cfg.visibility_poll_attempts) < 1:
        raise ConfigError(f"visibility_poll_attempts must be >= 1; got: {cfg.visibility_poll_attempts}")

    if int(cfg.cooldown_limit) <= 0 or int(cfg.cooldown_period_s) <= 0:
        raise ConfigError("cooldown_limit and cooldown_period_s must be > 0")

    if float(cfg.rpc_timeout_s) <= 0:
        raise ConfigError(f"rpc_timeout_s must be > 0; got: {cfg.rpc_timeout_s}")


def default_client_config() -> ClientConfig:
    return ClientConfig(
        cluster="devnet",
        base_rpc_url="https://api.devnet.solana.com",
        fast_rpc_url="https://devnet.magicblock.app",
        rpc_timeout_s=30.0,
        confirm_poll_interval_s=0.5,
        program_id="CHhht9A6W95JYGm3AA1yH34n112uexmrpKqoSwKwfmxE",
        delegation_program_id="DELeGGvXpWV2fqJUhqcF5ZSYMS4JTLjteaAMARRSaeSh",
        validator_hint="MAS1Dt9qreoRMQ14YQuhg8UTZMMzDdKhmkZMECCzk57",
        magic_program_id="Magic11111111111111111111111111111111111111",
        magic_context_id="MagicContext1111111111111111111111111111111",
        transaction_format="legacy",
        priority_fee_micro_lamports=200_000,
        session_db_path="./data/magicplace.db",
        session_salt="default",
        session_duration_s=24 * 60 * 60,
        min_session_balance_lamports=5_000_000,
        session_funding_lamports=10_000_000,
        shard_rent_lamports=60_000_000,
        tx_fee_lamports=500_000,
        delegation_fee_lamports=1_000_000,
        settle_delay_s=3.0,
        visibility_poll_attempts=40,
        visibility_poll_interval_s=0.5,
        delegate_max_attempts=3,
        delegate_backoff_s=2.0,
        cooldown_limit=50,
        cooldown_period_s=30,
        log_level="INFO",
    )


def config_from_mapping(raw: Json, *, base: Optional[ClientConfig] = None) -> ClientConfig:
    d = base or default_client_config()
    return ClientConfig(
        cluster=_as_str(raw.get("cluster"), d.cluster).strip().lower(),
        base_rpc_url=_as_str(raw.get("base_rpc_url"), d.base_rpc_url).rstrip("/"),
        fast_rpc_url=_as_str(raw.get("fast_rpc_url"), d.fast_rpc_url).rstrip("/"),
        rpc_timeout_s=_as_float(raw.get("rpc_timeout_s"), d.rpc_timeout_s),
        confirm_poll_interval_s=_as_float(raw.get("confirm_poll_interval_s"), d.confirm_poll_interval_s),
        program_id=_as_str(raw.get("program_id"), d.program_id),
        delegation_program_id=_as_str(raw.get("delegation_program_id"), d.delegation_program_id),
        validator_hint=_as_str(raw.get("validator_hint"), d.validator_hint),
        magic_program_id=_as_str(raw.get("magic_program_id"), d.magic_program_id),
        magic_context_id=_as_str(raw.get("magic_context_id"), d.magic_context_id),
        transaction_format=_as_str(raw.get("transaction_format"), d.transaction_format).strip().lower(),
        priority_fee_micro_lamports=_as_int(raw.get("priority_fee_micro_lamports"), d.priority_fee_micro_lamports),
        session_db_path=_as_str(raw.get("session_db_path"), d.session_db_path),
        session_salt=_as_str(raw.get("session_salt"), d.session_salt),
        session_duration_s=_as_int(raw.get("session_duration_s"), d.session_duration_s),
        min_session_balance_lamports=_as_int(raw.get("min_session_balance_lamports"), d.min_session_balance_lamports),
        session_funding_lamports=_as_int(raw.get("session_funding_lamports"), d.session_funding_lamports),
        shard_rent_lamports=_as_int(raw.get("shard_rent_lamports"), d.shard_rent_lamports),
        tx_fee_lamports=_as_int(raw.get("tx_fee_lamports"), d.tx_fee_lamports),
        delegation_fee_lamports=_as_int(raw.get("delegation_fee_lamports"), d.delegation_fee_lamports),
        settle_delay_s=_as_float(raw.get("settle_delay_s"), d.settle_delay_s),
        visibility_poll_attempts=_as_int(raw.get("visibility_poll_attempts"), d.visibility_poll_attempts),
        visibility_poll_interval_s=_as_float(raw.get("visibility_poll_interval_s"), d.visibility_poll_interval_s),
        delegate_max_attempts=_as_int(raw.get("delegate_max_attempts"), d.delegate_max_attempts),
        delegate_backoff_s=_as_float(raw.get("delegate_backoff_s"), d.delegate_backoff_s),
        cooldown_limit=_as_int(raw.get("cooldown_limit"), d.cooldown_limit),
        cooldown_period_s=_as_int(raw.get("cooldown_period_s"), d.cooldown_period_s),
        log_level=_as_str(raw.get("log_level"), d.log_level).strip().upper(),
    )


def read_client_config_file(path: str) -> ClientConfig:
    try:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigError(f"cannot read client config {path}: {e}") from e
    except ValueError as e:
        raise ConfigError(f"client config {path} is not valid JSON: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigError("client config must be a JSON object")
    cfg = config_from_mapping(raw)
    validate_client_config(cfg)
    return cfg


def _apply_env_overrides(cfg: ClientConfig) -> ClientConfig:
    overrides: Json = {}
    for field_name, env_name in (
        ("base_rpc_url", "MAGICPLACE_BASE_RPC_URL"),
        ("fast_rpc_url", "MAGICPLACE_FAST_RPC_URL"),
        ("session_db_path", "MAGICPLACE_SESSION_DB_PATH"),
        ("session_salt", "MAGICPLACE_SESSION_SALT"),
        ("log_level", "MAGICPLACE_LOG_LEVEL"),
    ):
        v = (os.environ.get(env_name) or "").strip()
        if v:
            overrides[field_name] = v.rstrip("/") if field_name.endswith("_url") else v
    return replace(cfg, **overrides) if overrides else cfg


def load_client_config(*, config_path: Optional[str] = None) -> ClientConfig:
    p = config_path or os.environ.get("MAGICPLACE_CONFIG_PATH")
    cfg = read_client_config_file(p) if p else default_client_config()
    cfg = _apply_env_overrides(cfg)
    validate_client_config(cfg)
    return cfg
