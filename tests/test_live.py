"""Tests for the live log subscriber."""

import asyncio

import pytest

from conftest import CONTRACT, CREATOR, IP_ID, VAULT, FakeChain, as_json_rpc, encode_log
from vault_indexer.decoder import EventDecoder
from vault_indexer.handlers import HandlerSet
from vault_indexer.live import LiveTailSubscriber
from vault_indexer.utils import to_checksum
from vault_indexer.writer import SerializedWriter


def live_vault_created(block_number):
    return as_json_rpc(
        encode_log(
            "VaultCreated",
            {"vaultAddress": VAULT, "ipId": IP_ID, "creator": CREATOR, "initialCVS": 1000},
            block_number,
        )
    )


class FlakyChain(FakeChain):
    """Drops the first subscription, then behaves."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.attempts = 0

    async def watch_events(self, addresses, topics, on_logs):
        self.attempts += 1
        if self.attempts == 1:
            raise ConnectionError("socket reset")
        await super().watch_events(addresses, topics, on_logs)


class BrokenTimestampChain(FakeChain):
    async def get_block_timestamp(self, block_number):
        raise ConnectionError("no block")


@pytest.fixture
async def writer(store, checkpoint):
    w = SerializedWriter(store, HandlerSet(store), checkpoint)
    w.start()
    yield w
    await w.close()


def subscriber_for(chain, writer):
    return LiveTailSubscriber(
        chain, EventDecoder(), writer, [to_checksum(CONTRACT)], rpc_timeout=5.0, reconnect_delay=0.01
    )


async def wait_for(predicate, attempts=300):
    for _ in range(attempts):
        if predicate():
            return True
        await asyncio.sleep(0.01)
    return False


class TestOnLogs:
    async def test_live_events_are_written_without_checkpoint(self, chain, writer, store, checkpoint):
        subscriber = subscriber_for(chain, writer)
        await subscriber.on_logs([live_vault_created(600)])
        await writer.queue.join()
        vault = store.get_vault(VAULT)
        assert vault["initial_score"] == 1000
        assert vault["created_at"] == await chain.get_block_timestamp(600)
        assert checkpoint.get() == 0

    async def test_removed_logs_are_ignored(self, chain, writer, store):
        subscriber = subscriber_for(chain, writer)
        removed = live_vault_created(600)
        removed["removed"] = True
        await subscriber.on_logs([removed])
        await writer.queue.join()
        assert store.get_vault(VAULT) is None
        assert subscriber.counters["removed"] == 1

    async def test_undecodable_log_is_counted(self, chain, writer, store):
        subscriber = subscriber_for(chain, writer)
        await subscriber.on_logs([{"topics": ["0x" + "ee" * 32], "data": "0x", "blockNumber": "0x1", "logIndex": "0x0"}])
        assert subscriber.counters["malformed"] == 1
        assert writer.queue.empty()

    async def test_timestamp_failure_drops_delivery(self, writer, store):
        chain = BrokenTimestampChain()
        subscriber = subscriber_for(chain, writer)
        await subscriber.on_logs([live_vault_created(600)])
        await writer.queue.join()
        assert store.get_vault(VAULT) is None
        assert subscriber.counters["dropped"] == 1


class TestRun:
    async def test_delivers_until_stopped(self, chain, writer, store):
        chain.live_batches = [[live_vault_created(700)]]
        subscriber = subscriber_for(chain, writer)
        stop = asyncio.Event()
        task = asyncio.create_task(subscriber.run(stop))

        assert await wait_for(lambda: store.get_vault(VAULT) is not None)
        stop.set()
        await asyncio.wait_for(task, timeout=2)
        assert chain.watch_calls == 1
        assert subscriber.counters["reconnects"] == 0

    async def test_reconnects_after_socket_error(self, writer, store):
        chain = FlakyChain()
        chain.live_batches = [[live_vault_created(700)]]
        subscriber = subscriber_for(chain, writer)
        stop = asyncio.Event()
        task = asyncio.create_task(subscriber.run(stop))

        assert await wait_for(lambda: store.get_vault(VAULT) is not None)
        stop.set()
        await asyncio.wait_for(task, timeout=2)
        assert chain.attempts == 2
        # only the second attempt reached a live subscription
        assert chain.watch_calls == 1
        assert subscriber.counters["reconnects"] == 1
