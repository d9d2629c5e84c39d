"""Live log subscription and periodic gap reconciliation."""

import asyncio
import sqlite3
from collections import defaultdict
from typing import Any, Dict, List

from .checkpoint import CheckpointError, CheckpointStore
from .decoder import DecodeError, EventDecoder
from .scanner import BackfillScanner, stamp_events
from .store import MaterializedStore
from .utils import log as _log, log_sort_key
from .writer import SerializedWriter


async def _sleep_until_stopped(stop_event: asyncio.Event, seconds: float) -> bool:
    """Sleep up to ``seconds``; True when the stop event fired first."""
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=seconds)
        return True
    except asyncio.TimeoutError:
        return False


class LiveTailSubscriber:
    """Best-effort subscriber; anything it misses is picked up by reconciliation."""

    def __init__(
        self,
        chain: Any,
        decoder: EventDecoder,
        writer: SerializedWriter,
        addresses: List[str],
        rpc_timeout: float = 30.0,
        reconnect_delay: float = 5,
        max_backoff: float = 60,
    ):
        self.chain = chain
        self.decoder = decoder
        self.writer = writer
        self.addresses = addresses
        self.rpc_timeout = rpc_timeout
        self.reconnect_delay = reconnect_delay
        self.max_backoff = max_backoff
        self.counters: Dict[str, int] = defaultdict(int)

    async def run(self, stop_event: asyncio.Event) -> None:
        backoff = self.reconnect_delay
        while not stop_event.is_set():
            watch = asyncio.ensure_future(
                self.chain.watch_events(self.addresses, self.decoder.topics, self.on_logs)
            )
            stopped = asyncio.ensure_future(stop_event.wait())
            done, _pending = await asyncio.wait({watch, stopped}, return_when=asyncio.FIRST_COMPLETED)
            if stopped in done:
                watch.cancel()
                await asyncio.gather(watch, return_exceptions=True)
                break
            stopped.cancel()

            exc = watch.exception()
            if exc is None:
                _log("Websocket closed, reconnecting...")
                backoff = self.reconnect_delay
            else:
                _log(f"Websocket error: {exc}")
            self.counters["reconnects"] += 1
            if await _sleep_until_stopped(stop_event, backoff):
                break
            if exc is not None:
                backoff = min(backoff * 2, self.max_backoff)

    async def on_logs(self, logs: List[Dict[str, Any]]) -> None:
        self.counters["deliveries"] += 1
        events = []
        for entry in sorted(logs, key=log_sort_key):
            if entry.get("removed"):
                self.counters["removed"] += 1
                _log(f"WARN: ignoring removed log in block {entry.get('blockNumber')}")
                continue
            try:
                events.append(self.decoder.decode(entry))
            except DecodeError as exc:
                self.counters["malformed"] += 1
                _log(f"WARN: skipping undecodable live log: {exc}")
        if not events:
            return
        try:
            await stamp_events(self.chain, events, self.rpc_timeout)
        except Exception as exc:
            # The reconciler re-reads the range from history.
            self.counters["dropped"] += len(events)
            _log(f"WARN: dropping {len(events)} live events, block timestamp lookup failed: {exc}")
            return
        await self.writer.submit(events, source="live", wait=False)


class GapReconciler:
    def __init__(
        self,
        chain: Any,
        scanner: BackfillScanner,
        checkpoint: CheckpointStore,
        store: MaterializedStore,
        interval: float = 12.0,
        threshold: int = 100,
        rpc_timeout: float = 30.0,
    ):
        self.chain = chain
        self.scanner = scanner
        self.checkpoint = checkpoint
        self.store = store
        self.interval = float(interval)
        self.threshold = int(threshold)
        self.rpc_timeout = float(rpc_timeout)
        self.counters: Dict[str, int] = defaultdict(int)

    async def run(self, stop_event: asyncio.Event) -> None:
        while not await _sleep_until_stopped(stop_event, self.interval):
            try:
                await self.reconcile_once()
            except (CheckpointError, sqlite3.Error):
                raise
            except Exception as exc:
                self.counters["errors"] += 1
                _log(f"Reconcile error: {exc}")

    async def reconcile_once(self) -> Dict[str, Any]:
        self.counters["passes"] += 1
        retried = await self.retry_failed_ranges()
        head = await asyncio.wait_for(self.chain.get_block_number(), timeout=self.rpc_timeout)
        last = self.checkpoint.get()
        gap = head - last
        result: Dict[str, Any] = {"head": head, "checkpoint": last, "gap": gap, "retried": retried, "scan": None}
        if gap > self.threshold:
            _log(f"Behind chain head by {gap} blocks, reconciling {last + 1}-{head}")
            result["scan"] = await self.scanner.scan(last + 1, head)
        return result

    async def retry_failed_ranges(self) -> int:
        resolved = 0
        for entry in self.store.pending_failed_ranges():
            from_block, to_block = entry["from_block"], entry["to_block"]
            _log(f"Retrying failed range {from_block}-{to_block} (attempt {entry['attempts'] + 1})")
            summary = await self.scanner.scan(from_block, to_block, advance_checkpoint=False)
            if summary["failed"] == 0 and summary["batches"] > 0:
                await self.scanner.writer.submit(
                    [], source="reconcile", resolved_range=(from_block, to_block)
                )
                resolved += 1
        self.counters["ranges_resolved"] += resolved
        return resolved
