"""Single serialized writer for the materialized store.

Backfill, live tail and reconciliation never touch the store directly: they
enqueue jobs here and one task applies them in arrival order. A job is applied
in one SQLite transaction together with its checkpoint advance, so readers
only ever see whole batches.
"""

import asyncio
import sqlite3
from collections import defaultdict
from typing import Any, Dict, List, Optional, Tuple

from .checkpoint import CheckpointError, CheckpointStore
from .handlers import HandlerSet
from .store import MaterializedStore
from .utils import log as _log


class WriterClosedError(RuntimeError):
    pass


class WriteJob:
    __slots__ = ("events", "advance_to", "source", "failed_range", "resolved_range", "future")

    def __init__(
        self,
        events: List[Dict[str, Any]],
        advance_to: Optional[int] = None,
        source: str = "live",
        failed_range: Optional[Tuple[int, int, str]] = None,
        resolved_range: Optional[Tuple[int, int]] = None,
        future: Optional[asyncio.Future] = None,
    ):
        self.events = events
        self.advance_to = advance_to
        self.source = source
        self.failed_range = failed_range
        self.resolved_range = resolved_range
        self.future = future


class SerializedWriter:
    def __init__(
        self,
        store: MaterializedStore,
        handlers: HandlerSet,
        checkpoint: CheckpointStore,
        queue_size: int = 1000,
    ):
        self.store = store
        self.handlers = handlers
        self.checkpoint = checkpoint
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self.counters: Dict[str, int] = defaultdict(int)
        self._task: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._closed = False
        self._task = asyncio.create_task(self._run(), name="store-writer")

    async def submit(
        self,
        events: List[Dict[str, Any]],
        advance_to: Optional[int] = None,
        source: str = "live",
        failed_range: Optional[Tuple[int, int, str]] = None,
        resolved_range: Optional[Tuple[int, int]] = None,
        wait: bool = True,
    ) -> Optional[Dict[str, int]]:
        if self._closed or not self.running:
            raise WriterClosedError("store writer is not accepting work")
        future = asyncio.get_running_loop().create_future() if wait else None
        await self.queue.put(WriteJob(events, advance_to, source, failed_range, resolved_range, future))
        if future is None:
            return None
        return await future

    async def close(self) -> None:
        """Stop accepting jobs and drain everything already queued."""
        if self._closed:
            return
        self._closed = True
        if self._task is None:
            return
        if not self._task.done():
            await self.queue.put(None)
        await self._task

    async def _run(self) -> None:
        while True:
            job = await self.queue.get()
            try:
                if job is None:
                    return
                try:
                    result = self.apply_job(job)
                except Exception as exc:
                    self.counters["jobs_failed"] += 1
                    if job.future is not None:
                        if not job.future.done():
                            job.future.set_exception(exc)
                    else:
                        _log(f"ERROR: {job.source} write job failed: {exc}")
                else:
                    if job.future is not None and not job.future.done():
                        job.future.set_result(result)
            finally:
                self.queue.task_done()

    def apply_job(self, job: WriteJob) -> Dict[str, int]:
        """Apply one job atomically. Runs only on the writer task."""
        result = {"applied": 0, "duplicates": 0, "malformed": 0}
        try:
            with self.store.transaction():
                for event in job.events:
                    try:
                        with self.store.savepoint():
                            applied = self.handlers.apply(event)
                    except (KeyError, TypeError, ValueError) as exc:
                        result["malformed"] += 1
                        _log(
                            f"WARN: skipping malformed {event.get('event_name')} log "
                            f"{event.get('transaction_hash')}:{event.get('log_index')}: {exc}"
                        )
                        continue
                    result["applied" if applied else "duplicates"] += 1

                if job.failed_range is not None:
                    from_block, to_block, error = job.failed_range
                    self.store.record_failed_range(from_block, to_block, error)
                if job.resolved_range is not None:
                    self.store.resolve_failed_range(*job.resolved_range)
                if job.advance_to is not None:
                    self.checkpoint.set(job.advance_to, self._batch_timestamp(job))
        except sqlite3.Error as exc:
            if job.advance_to is not None:
                raise CheckpointError(f"batch ending at {job.advance_to} was not persisted: {exc}") from exc
            raise

        for key, value in result.items():
            self.counters[f"events_{key}"] += value
        self.counters[f"{job.source}_jobs"] += 1
        return result

    @staticmethod
    def _batch_timestamp(job: WriteJob) -> Optional[int]:
        stamps = [e.get("block_timestamp") for e in job.events if e.get("block_timestamp") is not None]
        return max(stamps) if stamps else None
