"""Indexer configuration: JSON file plus environment overrides."""

import os
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from .utils import load_json, to_checksum


DEFAULTS: Dict[str, Any] = {
    "rpc_http": None,
    "rpc_ws": None,
    "db_path": "./indexer.db",
    "contracts": {},
    "start_block": 0,
    "batch_size": 1000,
    "poll_interval": 12.0,
    "reconcile_threshold": 100,
    "rpc_timeout": 30.0,
    "reconnect_delay": 5,
    "queue_size": 1000,
}

ENV_OVERRIDES: Dict[str, Tuple[str, Callable[[str], Any]]] = {
    "RPC_URL": ("rpc_http", str),
    "RPC_WS_URL": ("rpc_ws", str),
    "INDEXER_DB_PATH": ("db_path", str),
    "INDEXER_START_BLOCK": ("start_block", int),
    "INDEXER_BATCH_SIZE": ("batch_size", int),
    "INDEXER_POLL_INTERVAL": ("poll_interval", float),
    "INDEXER_RECONCILE_THRESHOLD": ("reconcile_threshold", int),
    "INDEXER_RPC_TIMEOUT": ("rpc_timeout", float),
}


class ConfigError(ValueError):
    pass


def load_config(path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    environ = os.environ if environ is None else environ
    cfg: Dict[str, Any] = dict(DEFAULTS)
    cfg["contracts"] = {}
    if path and os.path.exists(path):
        file_cfg = load_json(path)
        if not isinstance(file_cfg, dict):
            raise ConfigError(f"config file {path} must contain a JSON object")
        cfg.update(file_cfg)
    elif path and path != "config.json":
        raise ConfigError(f"config file not found: {path}")

    for env_name, (key, cast) in ENV_OVERRIDES.items():
        raw = environ.get(env_name)
        if raw is None or raw == "":
            continue
        try:
            cfg[key] = cast(raw)
        except ValueError as exc:
            raise ConfigError(f"invalid value for {env_name}: {raw!r}") from exc

    contracts = dict(cfg.get("contracts") or {})
    if environ.get("ADLV_ADDRESS"):
        contracts["ADLV"] = environ["ADLV_ADDRESS"]
    extra = environ.get("INDEXER_CONTRACTS")
    if extra:
        for idx, address in enumerate(a.strip() for a in extra.split(",")):
            if address:
                contracts.setdefault(f"contract{idx}", address)
    cfg["contracts"] = contracts
    return cfg


def validate_config(cfg: Dict[str, Any], require_rpc: bool = True) -> None:
    if not cfg.get("contracts"):
        raise ConfigError("config.contracts is empty")
    if require_rpc and not cfg.get("rpc_http"):
        raise ConfigError("rpc_http (or RPC_URL) is required")
    for key in ("batch_size", "poll_interval", "rpc_timeout", "reconnect_delay", "queue_size"):
        if float(cfg.get(key, 0)) <= 0:
            raise ConfigError(f"{key} must be positive")
    if int(cfg.get("reconcile_threshold", 0)) < 0:
        raise ConfigError("reconcile_threshold must not be negative")
    tracked_addresses(cfg)


def tracked_addresses(cfg: Dict[str, Any]) -> List[str]:
    addresses = set()
    for name, entry in (cfg.get("contracts") or {}).items():
        address = entry.get("address") if isinstance(entry, dict) else entry
        if not address:
            raise ConfigError(f"Missing address for contract {name}")
        try:
            addresses.add(to_checksum(address))
        except ValueError as exc:
            raise ConfigError(f"Invalid address for contract {name}: {address}") from exc
    return sorted(addresses)
