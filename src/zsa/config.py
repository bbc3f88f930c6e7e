# src/zsa/config.py
from __future__ import annotations

import json
import os
import shlex
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

Json = Dict[str, Any]

DEFAULT_TX_TOOL_COMMAND: Tuple[str, ...] = (
    "cargo",
    "run",
    "--release",
    "--package",
    "zcash_tx_tool",
    "--bin",
    "zcash_tx_tool",
    "issue",
)


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


def _as_bool(v: Any, default: bool) -> bool:
    if v is None:
        return bool(default)
    if isinstance(v, bool):
        return v
    s = str(v).strip().lower()
    if s in {"1", "true", "yes", "y", "on"}:
        return True
    if s in {"0", "false", "no", "n", "off"}:
        return False
    return bool(default)


def _as_command(v: Any, default: Tuple[str, ...]) -> Tuple[str, ...]:
    if v is None:
        return tuple(default)
    if isinstance(v, (list, tuple)):
        parts = tuple(str(p) for p in v if str(p).strip())
    else:
        parts = tuple(shlex.split(str(v)))
    return parts or tuple(default)


@dataclass(frozen=True)
class IssuanceConfig:
    mode: str  # "dev" | "testnet" | "prod"

    # Token store + issuer key record.
    data_dir: str
    keys_path: str
    store_backend: str  # "json" | "sqlite"
    sqlite_path: str

    network: str

    # External transaction tool (deploy only).
    tx_tool_command: Tuple[str, ...]
    tx_tool_cwd: str
    tx_tool_timeout_s: float
    mine_by_default: bool

    # Cross-process store lock wait.
    lock_timeout_s: float

    log_level: str

    @property
    def tokens_dir(self) -> str:
        return str(Path(self.data_dir) / "tokens")


_ALLOWED_MODES = {"dev", "testnet", "prod"}
_ALLOWED_BACKENDS = {"json", "sqlite"}


def validate_config(cfg: IssuanceConfig) -> None:
    """Fail-fast validation for operator config."""

    mode = str(cfg.mode or "").strip().lower()
    if mode not in _ALLOWED_MODES:
        raise ValueError(f"mode must be one of {sorted(_ALLOWED_MODES)}; got: {cfg.mode!r}")

    if cfg.store_backend not in _ALLOWED_BACKENDS:
        raise ValueError(f"store_backend must be one of {sorted(_ALLOWED_BACKENDS)}; got: {cfg.store_backend!r}")

    for name, p in (("data_dir", cfg.data_dir), ("keys_path", cfg.keys_path), ("sqlite_path", cfg.sqlite_path)):
        if not isinstance(p, str) or not p.strip():
            raise ValueError(f"{name} must be a non-empty string")

    if not cfg.network.strip():
        raise ValueError("network must be a non-empty string")

    if not cfg.tx_tool_command:
        raise ValueError("tx_tool_command must not be empty")

    if float(cfg.tx_tool_timeout_s) <= 0:
        raise ValueError(f"tx_tool_timeout_s must be > 0; got: {cfg.tx_tool_timeout_s}")

    if float(cfg.lock_timeout_s) <= 0:
        raise ValueError(f"lock_timeout_s must be > 0; got: {cfg.lock_timeout_s}")


def default_config() -> IssuanceConfig:
    return IssuanceConfig(
        mode="testnet",
        data_dir="./data",
        keys_path="./data/keys/issuance-keys.json",
        store_backend="json",
        sqlite_path="./data/tokens.db",
        network="zcash-testnet",
        tx_tool_command=DEFAULT_TX_TOOL_COMMAND,
        tx_tool_cwd="tx-tool",
        # Building + proving an issuance bundle is slow; mining even slower.
        tx_tool_timeout_s=900.0,
        mine_by_default=False,
        lock_timeout_s=30.0,
        log_level="INFO",
    )


def _config_from_mapping(raw: Json, base: IssuanceConfig) -> IssuanceConfig:
    return IssuanceConfig(
        mode=_as_str(raw.get("mode"), base.mode).strip().lower(),
        data_dir=_as_str(raw.get("data_dir"), base.data_dir),
        keys_path=_as_str(raw.get("keys_path"), base.keys_path),
        store_backend=_as_str(raw.get("store_backend"), base.store_backend).strip().lower(),
        sqlite_path=_as_str(raw.get("sqlite_path"), base.sqlite_path),
        network=_as_str(raw.get("network"), base.network),
        tx_tool_command=_as_command(raw.get("tx_tool_command"), base.tx_tool_command),
        tx_tool_cwd=_as_str(raw.get("tx_tool_cwd"), base.tx_tool_cwd),
        tx_tool_timeout_s=_as_float(raw.get("tx_tool_timeout_s"), base.tx_tool_timeout_s),
        mine_by_default=_as_bool(raw.get("mine_by_default"), base.mine_by_default),
        lock_timeout_s=_as_float(raw.get("lock_timeout_s"), base.lock_timeout_s),
        log_level=_as_str(raw.get("log_level"), base.log_level).strip().upper(),
    )


def read_config_file(path: str) -> IssuanceConfig:
    """Read a JSON or YAML config file (by suffix) over the defaults."""
    p = Path(path)
    text = p.read_text(encoding="utf-8")
    if p.suffix.lower() in {".yaml", ".yml"}:
        raw = yaml.safe_load(text)
    else:
        raw = json.loads(text)
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ValueError("issuance config must be a mapping")

    cfg = _config_from_mapping(raw, default_config())
    validate_config(cfg)
    return cfg


_ENV_KEYS = {
    "mode": "ZSA_MODE",
    "data_dir": "ZSA_DATA_DIR",
    "keys_path": "ZSA_KEYS_PATH",
    "store_backend": "ZSA_STORE_BACKEND",
    "sqlite_path": "ZSA_SQLITE_PATH",
    "network": "ZSA_NETWORK",
    "tx_tool_command": "ZSA_TX_TOOL_COMMAND",
    "tx_tool_cwd": "ZSA_TX_TOOL_CWD",
    "tx_tool_timeout_s": "ZSA_TX_TOOL_TIMEOUT_S",
    "mine_by_default": "ZSA_MINE",
    "lock_timeout_s": "ZSA_LOCK_TIMEOUT_S",
    "log_level": "ZSA_LOG_LEVEL",
}


def apply_env_overrides(cfg: IssuanceConfig) -> IssuanceConfig:
    raw: Json = {}
    for field_name, env_name in _ENV_KEYS.items():
        v = os.environ.get(env_name)
        if v is not None and v.strip():
            raw[field_name] = v

    # A data_dir override drags keys_path/sqlite_path along while they still
    # sit at their default spot under the old data_dir.
    if "data_dir" in raw:
        old, new = Path(cfg.data_dir), Path(raw["data_dir"])
        if Path(cfg.keys_path) == old / "keys" / "issuance-keys.json":
            raw.setdefault("keys_path", str(new / "keys" / "issuance-keys.json"))
        if Path(cfg.sqlite_path) == old / "tokens.db":
            raw.setdefault("sqlite_path", str(new / "tokens.db"))

    return _config_from_mapping(raw, cfg)


def load_config(*, config_path: Optional[str] = None) -> IssuanceConfig:
    p = config_path or os.environ.get("ZSA_CONFIG_PATH")
    cfg = read_config_file(p) if p else default_config()
    cfg = apply_env_overrides(cfg)
    validate_config(cfg)
    return cfg


def config_for_data_dir(data_dir: str, **overrides: Any) -> IssuanceConfig:
    """Defaults rooted at `data_dir` (tests and embedding callers)."""
    d = Path(data_dir)
    cfg = replace(
        default_config(),
        data_dir=str(d),
        keys_path=str(d / "keys" / "issuance-keys.json"),
        sqlite_path=str(d / "tokens.db"),
    )
    if overrides:
        cfg = replace(cfg, **overrides)
    validate_config(cfg)
    return cfg
