"""
TOML-based configuration for ShieldPool nodes.

Loads settings from a TOML file and/or environment variables.
Environment variables take precedence over file values.

Usage:
    from shieldpool_core.config import load_config
    cfg = load_config("shieldpool.toml")
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib  # type: ignore[import,no-redef]


@dataclass
class PoolConfig:
    """Accumulator shape and per-operation limits."""
    pool_address: str = "0x" + "5e" * 20
    tree_depth: int = 20
    root_history_size: int = 30
    min_shield_amount: int = 1
    max_memo_bytes: int = 1024
    max_batch_size: int = 10
    max_multi_inputs: int = 5
    hasher: str = "mimc"    # "mimc" or "sha256" (dev only)


@dataclass
class SwapConfig:
    """Swap pricing and platform fee.

    ``rates`` is a list of ``{token_in, token_out, rate, scale}`` tables fed
    to the static quoter; ``rate * 10**-scale`` units of token_out per unit
    of token_in.
    """
    slippage_bps: int = 500
    platform_fee: int = 0
    treasury: str = ""
    quote_max_age: float | None = None
    rates: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class AdminConfig:
    """Initial owner, relayer policy and token whitelist."""
    owner: str = ""
    relayer_router: str = ""
    relayers: list[str] = field(default_factory=list)
    supported_tokens: list[str] = field(default_factory=list)


@dataclass
class VerifierConfig:
    """How proofs are checked.

    ``stub`` accepts every well-formed proof and must only be used for
    development pools.  ``attestation`` checks a secp256k1 signature by
    ``prover_pubkey`` (64- or 65-byte hex).
    """
    mode: str = "stub"
    prover_pubkey: str = ""
    require_shield_proof: bool = False


@dataclass
class APIConfig:
    """REST API settings."""
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 8080
    api_key: str = ""                 # require this key on POST endpoints (empty = no auth)
    rate_limit_rpm: int = 120          # max requests per minute per IP (0 = unlimited)
    cors_origins: list[str] = field(default_factory=list)  # allowed CORS origins (empty = no CORS)
    max_body_bytes: int = 1_048_576    # 1 MiB max request body


@dataclass
class StorageConfig:
    """Persistence settings."""
    enabled: bool = False
    backend: str = "sqlite"
    path: str = "data/shieldpool.db"
    snapshot_interval: float = 30.0


@dataclass
class LoggingConfig:
    """Logging settings."""
    level: str = "INFO"
    format: str = "human"   # "human" or "json"
    file: str | None = None


@dataclass
class ShieldPoolConfig:
    """Top-level configuration container."""
    pool: PoolConfig = field(default_factory=PoolConfig)
    swap: SwapConfig = field(default_factory=SwapConfig)
    admin: AdminConfig = field(default_factory=AdminConfig)
    verifier: VerifierConfig = field(default_factory=VerifierConfig)
    api: APIConfig = field(default_factory=APIConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _merge(dc: Any, raw: dict[str, Any]) -> None:
    """Merge a raw dict into a dataclass instance (in-place)."""
    for key, value in raw.items():
        key_under = key.replace("-", "_")
        if hasattr(dc, key_under):
            setattr(dc, key_under, value)


def _split(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def load_config(path: str | None = None) -> ShieldPoolConfig:
    """
    Load configuration from a TOML file, then overlay environment variables.

    Env-var mapping:
        SHIELDPOOL_TREE_DEPTH    -> pool.tree_depth
        SHIELDPOOL_ROOT_HISTORY  -> pool.root_history_size
        SHIELDPOOL_OWNER         -> admin.owner
        SHIELDPOOL_SLIPPAGE_BPS  -> swap.slippage_bps
        SHIELDPOOL_API_PORT      -> api.port (and enables the API)
        SHIELDPOOL_API_KEY       -> api.api_key
        SHIELDPOOL_CORS_ORIGINS  -> api.cors_origins (comma-separated)
        SHIELDPOOL_LOG_LEVEL     -> logging.level
        SHIELDPOOL_LOG_FMT       -> logging.format
        SHIELDPOOL_DB_PATH       -> storage.path (and enables storage)
    """
    cfg = ShieldPoolConfig()

    # ── TOML file ────────────────────────────────────────────────
    if path is not None:
        p = Path(path)
        if p.exists():
            with open(p, "rb") as f:
                data = tomllib.load(f)
            for section_name, section_dc in [
                ("pool", cfg.pool),
                ("swap", cfg.swap),
                ("admin", cfg.admin),
                ("verifier", cfg.verifier),
                ("api", cfg.api),
                ("storage", cfg.storage),
                ("logging", cfg.logging),
            ]:
                if section_name in data:
                    _merge(section_dc, data[section_name])

    # ── Environment variable overrides ───────────────────────────
    if v := os.environ.get("SHIELDPOOL_TREE_DEPTH"):
        cfg.pool.tree_depth = int(v)
    if v := os.environ.get("SHIELDPOOL_ROOT_HISTORY"):
        cfg.pool.root_history_size = int(v)
    if v := os.environ.get("SHIELDPOOL_OWNER"):
        cfg.admin.owner = v
    if v := os.environ.get("SHIELDPOOL_SLIPPAGE_BPS"):
        cfg.swap.slippage_bps = int(v)
    if v := os.environ.get("SHIELDPOOL_API_PORT"):
        cfg.api.port = int(v)
        cfg.api.enabled = True
    if v := os.environ.get("SHIELDPOOL_API_KEY"):
        cfg.api.api_key = v
    if v := os.environ.get("SHIELDPOOL_CORS_ORIGINS"):
        cfg.api.cors_origins = _split(v)
    if v := os.environ.get("SHIELDPOOL_LOG_LEVEL"):
        cfg.logging.level = v.upper()
    if v := os.environ.get("SHIELDPOOL_LOG_FMT"):
        cfg.logging.format = v
    if v := os.environ.get("SHIELDPOOL_DB_PATH"):
        cfg.storage.path = v
        cfg.storage.enabled = True

    return cfg
