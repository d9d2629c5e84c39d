"""Shared test fixtures for the vault indexer."""

import asyncio

import pytest
from eth_abi import encode
from eth_utils import event_abi_to_log_topic
from hexbytes import HexBytes

from vault_indexer.abi import EVENTS_BY_NAME
from vault_indexer.checkpoint import CheckpointStore
from vault_indexer.handlers import HandlerSet
from vault_indexer.store import MaterializedStore
from vault_indexer.utils import hex_str, to_checksum


CONTRACT = "0x" + "5e" * 20
VAULT = "0x" + "a1" * 20
OTHER_VAULT = "0x" + "a2" * 20
CREATOR = "0x" + "c0" * 20
BORROWER = "0x" + "b0" * 20
LICENSEE = "0x" + "d0" * 20
IP_ID = "0x" + "ab" * 32

BASE_TIMESTAMP = 1_700_000_000


def block_timestamp(block_number):
    return BASE_TIMESTAMP + block_number * 12


def tx_hash_for(block_number, log_index):
    return "0x" + f"{block_number:032x}{log_index:032x}"


def _abi_value(arg_type, value):
    if arg_type.startswith("bytes") and isinstance(value, str):
        return bytes.fromhex(value[2:])
    return value


def encode_log(name, args, block_number, log_index=0, address=CONTRACT, tx_hash=None):
    """Build a raw log the way web3's ``get_logs`` returns it."""
    event_abi = EVENTS_BY_NAME[name]
    topics = [HexBytes(event_abi_to_log_topic(event_abi))]
    data_types, data_values = [], []
    for item in event_abi["inputs"]:
        value = _abi_value(item["type"], args[item["name"]])
        if item["indexed"]:
            topics.append(HexBytes(encode([item["type"]], [value])))
        else:
            data_types.append(item["type"])
            data_values.append(value)
    return {
        "address": to_checksum(address),
        "topics": topics,
        "data": HexBytes(encode(data_types, data_values)),
        "blockNumber": block_number,
        "logIndex": log_index,
        "transactionIndex": 0,
        "transactionHash": HexBytes(tx_hash or tx_hash_for(block_number, log_index)),
        "blockHash": HexBytes("0x" + f"{block_number:064x}"),
        "removed": False,
    }


def as_json_rpc(raw_log):
    """The same log as a websocket subscription delivers it: hex strings only."""
    return {
        "address": raw_log["address"].lower(),
        "topics": [hex_str(t) for t in raw_log["topics"]],
        "data": hex_str(raw_log["data"]),
        "blockNumber": hex(raw_log["blockNumber"]),
        "logIndex": hex(raw_log["logIndex"]),
        "transactionIndex": hex(raw_log["transactionIndex"]),
        "transactionHash": hex_str(raw_log["transactionHash"]),
        "blockHash": hex_str(raw_log["blockHash"]),
        "removed": raw_log.get("removed", False),
    }


def make_event(name, args, block_number, log_index=0, tx_hash=None, timestamp=None):
    """A decoded event record as the decoder hands it to the handlers."""
    return {
        "event_name": name,
        "args": dict(args),
        "block_number": block_number,
        "log_index": log_index,
        "transaction_hash": tx_hash or tx_hash_for(block_number, log_index),
        "contract_address": CONTRACT,
        "block_timestamp": block_timestamp(block_number) if timestamp is None else timestamp,
    }


def vault_created(block_number, vault=VAULT, initial_score=1000, log_index=0):
    return make_event(
        "VaultCreated",
        {"vaultAddress": vault, "ipId": IP_ID, "creator": CREATOR, "initialCVS": initial_score},
        block_number,
        log_index,
    )


def license_sold(block_number, price, license_type="commercial", vault=VAULT, log_index=0):
    return make_event(
        "LicenseSold",
        {
            "vaultAddress": vault,
            "ipId": IP_ID,
            "licensee": LICENSEE,
            "price": price,
            "licenseType": license_type,
        },
        block_number,
        log_index,
    )


def loan_issued(block_number, loan_id=1, amount=500, duration=86400, vault=VAULT, log_index=0):
    return make_event(
        "LoanIssued",
        {
            "vaultAddress": vault,
            "borrower": BORROWER,
            "loanId": loan_id,
            "amount": amount,
            "collateral": amount * 3 // 2,
            "interestRate": 500,
            "duration": duration,
        },
        block_number,
        log_index,
    )


def loan_repaid(block_number, amount, loan_id=1, vault=VAULT, log_index=0):
    return make_event(
        "LoanRepaid",
        {"vaultAddress": vault, "borrower": BORROWER, "loanId": loan_id, "amount": amount},
        block_number,
        log_index,
    )


def score_updated(block_number, old_value, new_value, vault=VAULT, log_index=0):
    return make_event(
        "CVSUpdated",
        {"vaultAddress": vault, "oldCVS": old_value, "newCVS": new_value},
        block_number,
        log_index,
    )


def deposited(block_number, amount, vault=VAULT, log_index=0):
    return make_event(
        "Deposited",
        {"vaultAddress": vault, "depositor": CREATOR, "amount": amount, "shares": amount},
        block_number,
        log_index,
    )


class FakeChain:
    """Scripted chain client: a fixed log set, a movable head and injectable failures."""

    def __init__(self, head=0, logs=None):
        self.head = head
        self.logs = list(logs or [])
        self.calls = []
        self.fail_blocks = set()
        self.max_range = None
        self.live_batches = []
        self.watch_calls = 0

    async def get_block_number(self):
        return self.head

    async def get_logs(self, addresses, topic, from_block, to_block):
        self.calls.append((topic, from_block, to_block))
        if self.max_range is not None and to_block - from_block + 1 > self.max_range:
            raise ValueError("query returned more than 10000 results")
        if any(from_block <= b <= to_block for b in self.fail_blocks):
            raise ConnectionError(f"upstream error for {from_block}-{to_block}")
        tracked = {a.lower() for a in addresses}
        return [
            dict(entry)
            for entry in self.logs
            if from_block <= entry["blockNumber"] <= to_block
            and hex_str(entry["topics"][0]) == topic
            and entry["address"].lower() in tracked
        ]

    async def get_block_timestamp(self, block_number):
        return block_timestamp(block_number)

    async def watch_events(self, addresses, topics, on_logs):
        self.watch_calls += 1
        for batch in self.live_batches:
            await on_logs(batch)
        self.live_batches = []
        await asyncio.Event().wait()


@pytest.fixture
def store():
    db = MaterializedStore(":memory:").open()
    yield db
    db.close()


@pytest.fixture
def handlers(store):
    return HandlerSet(store)


@pytest.fixture
def checkpoint(store):
    return CheckpointStore(store)


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def indexer_config(tmp_path):
    return {
        "rpc_http": "http://localhost:8545",
        "db_path": str(tmp_path / "indexer.db"),
        "contracts": {"ADLV": CONTRACT},
        "start_block": 0,
        "batch_size": 100,
        "poll_interval": 0.05,
        "reconcile_threshold": 100,
        "rpc_timeout": 5.0,
        "reconnect_delay": 0.05,
        "queue_size": 100,
    }
