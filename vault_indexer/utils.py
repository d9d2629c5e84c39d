"""Log normalisation, JSON output and stderr logging shared by the indexer."""

import json
import sys
import time
from typing import Any, Dict, Optional

from hexbytes import HexBytes
from web3 import Web3


ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
ZERO_BYTES32 = "0x" + "00" * 32


def log(msg: str) -> None:
    ts = time.strftime("%Y-%m-%d %H:%M:%S", time.gmtime())
    sys.stderr.write(f"[{ts} UTC] {msg}\n")
    sys.stderr.flush()


def _json_default(obj: Any) -> Any:
    if isinstance(obj, (bytes, bytearray)):
        return hex_str(obj)
    if isinstance(obj, set):
        return sorted(obj)
    return str(obj)


def json_dumps(obj: Any, indent: Optional[int] = None) -> str:
    return json.dumps(obj, default=_json_default, ensure_ascii=True, indent=indent)


def load_json(path: str) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def to_checksum(addr: str) -> str:
    return Web3.to_checksum_address(addr)


def db_addr(addr: Optional[str]) -> Optional[str]:
    if addr is None:
        return None
    return str(addr).lower()


def hex_str(value: Any) -> Optional[str]:
    """Lower-case 0x-prefixed hex for bytes-like or hex string values."""
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    text = str(value).lower()
    return text if text.startswith("0x") else "0x" + text


def parse_int(value: Any) -> int:
    if isinstance(value, bool):
        raise TypeError(f"boolean is not an integer quantity: {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        if value.startswith("0x"):
            return int(value, 16)
        return int(value)
    return int(value)


def normalize_log(log_entry: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(log_entry)
    if isinstance(out.get("transactionHash"), str):
        out["transactionHash"] = HexBytes(out["transactionHash"])
    if isinstance(out.get("blockHash"), str):
        out["blockHash"] = HexBytes(out["blockHash"])
    if isinstance(out.get("data"), str):
        out["data"] = HexBytes(out["data"])
    if isinstance(out.get("topics"), (list, tuple)):
        out["topics"] = [HexBytes(t) if isinstance(t, str) else t for t in out["topics"]]
    for key in ("blockNumber", "transactionIndex", "logIndex"):
        if out.get(key) is not None:
            out[key] = parse_int(out[key])
    if "address" in out and isinstance(out["address"], str):
        out["address"] = to_checksum(out["address"])
    out.setdefault("transactionIndex", 0)
    out.setdefault("blockHash", None)
    return out


def log_sort_key(log_entry: Dict[str, Any]) -> tuple:
    return (
        parse_int(log_entry.get("blockNumber", 0) or 0),
        parse_int(log_entry.get("logIndex", 0) or 0),
    )
