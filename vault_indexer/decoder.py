"""Decode raw vault contract logs into plain event records.

An event record is a dict::

    {
        "event_name": "LicenseSold",
        "args": {"vaultAddress": "0xabc...", "price": 1000, ...},
        "block_number": 123,
        "log_index": 4,
        "transaction_hash": "0x...",
        "contract_address": "0x...",
        "block_timestamp": None,
    }

Addresses and byte strings are lower-case hex, integers stay Python ints.
``block_timestamp`` is filled in by whichever ingestion path fetched the log.
"""

from typing import Any, Dict, List, Optional

from eth_abi.abi import default_codec
from web3._utils.events import get_event_data

from .abi import EVENT_ABIS, event_topic
from .utils import db_addr, hex_str, normalize_log


class DecodeError(ValueError):
    pass


class EventDecoder:
    def __init__(self, event_abis: Optional[List[Dict[str, Any]]] = None, codec: Any = None):
        self.codec = codec or default_codec
        self.topic_to_abi: Dict[str, Dict[str, Any]] = {}
        for event_abi in event_abis or EVENT_ABIS:
            if event_abi.get("anonymous"):
                continue
            self.topic_to_abi[event_topic(event_abi)] = event_abi

    @property
    def topics(self) -> List[str]:
        return list(self.topic_to_abi.keys())

    def decode(self, raw_log: Dict[str, Any]) -> Dict[str, Any]:
        try:
            log_entry = normalize_log(raw_log)
        except (TypeError, ValueError) as exc:
            raise DecodeError(f"malformed log envelope: {exc}") from exc

        topics = log_entry.get("topics") or []
        if not topics:
            raise DecodeError("log has no topics")
        topic0 = hex_str(topics[0])
        event_abi = self.topic_to_abi.get(topic0)
        if event_abi is None:
            raise DecodeError(f"untracked event topic {topic0}")

        block_number = log_entry.get("blockNumber")
        log_index = log_entry.get("logIndex")
        tx_hash = log_entry.get("transactionHash")
        if block_number is None or log_index is None or tx_hash is None:
            raise DecodeError(f"{event_abi['name']} log is missing its block position")

        try:
            event_data = get_event_data(self.codec, event_abi, log_entry)
        except Exception as exc:
            raise DecodeError(f"failed decoding {event_abi['name']}: {exc}") from exc

        return {
            "event_name": event_abi["name"],
            "args": self._plain_args(event_abi, dict(event_data["args"])),
            "block_number": block_number,
            "log_index": log_index,
            "transaction_hash": hex_str(tx_hash),
            "contract_address": db_addr(log_entry.get("address")),
            "block_timestamp": None,
        }

    @staticmethod
    def _plain_args(event_abi: Dict[str, Any], args: Dict[str, Any]) -> Dict[str, Any]:
        plain = {}
        for item in event_abi.get("inputs", []):
            name = item["name"]
            value = args.get(name)
            if item["type"] == "address":
                value = db_addr(value)
            elif item["type"].startswith("bytes"):
                value = hex_str(value)
            plain[name] = value
        return plain
