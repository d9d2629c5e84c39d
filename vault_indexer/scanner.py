"""Batched historical log scanner."""

import asyncio
from collections import defaultdict
from typing import Any, Awaitable, Dict, List, Optional

from .checkpoint import CheckpointStore
from .decoder import DecodeError, EventDecoder
from .utils import hex_str, log as _log, log_sort_key, parse_int
from .writer import SerializedWriter


class BackfillScanner:
    """Walk a block range in fixed-size batches through the store writer.

    A batch whose RPC calls fail or time out is recorded as a failed range
    and skipped; the checkpoint only moves when a batch commits.
    """

    def __init__(
        self,
        chain: Any,
        decoder: EventDecoder,
        writer: SerializedWriter,
        checkpoint: CheckpointStore,
        addresses: List[str],
        batch_size: int = 1000,
        rpc_timeout: float = 30.0,
        stop_event: Optional[asyncio.Event] = None,
    ):
        self.chain = chain
        self.decoder = decoder
        self.writer = writer
        self.checkpoint = checkpoint
        self.addresses = addresses
        self.batch_size = int(batch_size)
        self.rpc_timeout = float(rpc_timeout)
        self.stop_event = stop_event
        self.counters: Dict[str, int] = defaultdict(int)

    async def scan(self, from_block: int, to_block: int, advance_checkpoint: bool = True) -> Dict[str, int]:
        summary = {"batches": 0, "failed": 0, "applied": 0, "duplicates": 0, "malformed": 0}
        if from_block > to_block:
            return summary
        _log(f"Backfilling blocks {from_block}-{to_block}")
        current = from_block
        batch_size = self.batch_size
        # A range that starts past the frontier leaves a hole below it.
        contiguous = from_block <= self.checkpoint.get() + 1
        if advance_checkpoint and not contiguous:
            _log(f"Range starts after checkpoint {self.checkpoint.get()}; checkpoint will not move")

        while current <= to_block:
            if self.stop_event is not None and self.stop_event.is_set():
                _log(f"Backfill stopped before block {current}")
                break
            batch_to = min(current + batch_size - 1, to_block)
            try:
                events, malformed = await self.fetch_batch(current, batch_to)
            except Exception as exc:
                if batch_size > 1 and _is_range_too_large(exc):
                    batch_size = max(batch_size // 2, 1)
                    _log(f"WARN: get_logs too large ({current}-{batch_to}), reducing batch size to {batch_size}")
                    continue
                reason = _describe(exc)
                _log(f"WARN: batch {current}-{batch_to} failed, skipping: {reason}")
                summary["failed"] += 1
                self.counters["batches_failed"] += 1
                await self.writer.submit(
                    [], source="backfill", failed_range=(current, batch_to, reason)
                )
                current = batch_to + 1
                continue

            advance_to = None
            if advance_checkpoint and contiguous and batch_to > self.checkpoint.get():
                advance_to = batch_to
            result = await self.writer.submit(events, advance_to=advance_to, source="backfill")
            summary["batches"] += 1
            summary["applied"] += result["applied"]
            summary["duplicates"] += result["duplicates"]
            summary["malformed"] += result["malformed"] + malformed
            self.counters["batches_applied"] += 1
            _log(
                f"Indexed blocks {current}-{batch_to}: {len(events)} events, "
                f"{result['applied']} applied, {result['duplicates']} duplicates"
            )
            current = batch_to + 1

        return summary

    async def fetch_batch(self, from_block: int, to_block: int) -> tuple:
        """Fetch, order, decode and timestamp every tracked log in the range."""
        raw_logs: Dict[tuple, Dict[str, Any]] = {}
        for topic in self.decoder.topics:
            logs = await self._rpc(self.chain.get_logs(self.addresses, topic, from_block, to_block))
            for entry in logs:
                key = (hex_str(entry.get("transactionHash")), parse_int(entry.get("logIndex", 0)))
                raw_logs[key] = entry

        events = []
        malformed = 0
        for entry in sorted(raw_logs.values(), key=log_sort_key):
            try:
                events.append(self.decoder.decode(entry))
            except DecodeError as exc:
                malformed += 1
                self.counters["malformed"] += 1
                _log(f"WARN: skipping undecodable log in block {entry.get('blockNumber')}: {exc}")

        await stamp_events(self.chain, events, self.rpc_timeout)
        return events, malformed

    async def _rpc(self, call: Awaitable[Any]) -> Any:
        return await asyncio.wait_for(call, timeout=self.rpc_timeout)


async def stamp_events(chain: Any, events: List[Dict[str, Any]], rpc_timeout: float) -> None:
    stamps: Dict[int, int] = {}
    for event in events:
        block_number = event["block_number"]
        if block_number not in stamps:
            stamps[block_number] = await asyncio.wait_for(
                chain.get_block_timestamp(block_number), timeout=rpc_timeout
            )
        event["block_timestamp"] = stamps[block_number]


def _is_range_too_large(exc: Exception) -> bool:
    msg = str(exc).lower()
    return "query returned more than" in msg or "too many" in msg


def _describe(exc: Exception) -> str:
    if isinstance(exc, asyncio.TimeoutError):
        return "RPC call timed out"
    return f"{type(exc).__name__}: {exc}"
