"""Ingestion engine: backfill to head, then live tail plus gap reconciliation."""

import asyncio
from typing import Any, Dict, Optional

from .chain import ChainClient
from .checkpoint import CheckpointStore
from .config import tracked_addresses
from .decoder import EventDecoder
from .handlers import HandlerSet, verify_vault
from .live import GapReconciler, LiveTailSubscriber
from .scanner import BackfillScanner
from .store import MaterializedStore
from .utils import log as _log
from .writer import SerializedWriter


class IndexerEngine:
    """Owns every ingestion component for one store.

    Built once per process and handed the chain client explicitly, so tests
    can run the whole engine against a scripted fake chain.
    """

    def __init__(self, config: Dict[str, Any], chain: Any = None, store: Optional[MaterializedStore] = None):
        self.config = config
        self.chain = chain if chain is not None else ChainClient.from_config(config)
        self.store = store if store is not None else MaterializedStore(config.get("db_path", "./indexer.db"))
        self.addresses = tracked_addresses(config)
        rpc_timeout = float(config.get("rpc_timeout", 30.0))

        self.stop_event = asyncio.Event()
        self.decoder = EventDecoder(codec=getattr(self.chain, "codec", None))
        self.handlers = HandlerSet(self.store)
        self.checkpoint = CheckpointStore(self.store, int(config.get("start_block", 0)))
        self.writer = SerializedWriter(
            self.store, self.handlers, self.checkpoint, int(config.get("queue_size", 1000))
        )
        self.scanner = BackfillScanner(
            self.chain,
            self.decoder,
            self.writer,
            self.checkpoint,
            self.addresses,
            batch_size=int(config.get("batch_size", 1000)),
            rpc_timeout=rpc_timeout,
            stop_event=self.stop_event,
        )
        self.subscriber = LiveTailSubscriber(
            self.chain,
            self.decoder,
            self.writer,
            self.addresses,
            rpc_timeout=rpc_timeout,
            reconnect_delay=float(config.get("reconnect_delay", 5)),
        )
        self.reconciler = GapReconciler(
            self.chain,
            self.scanner,
            self.checkpoint,
            self.store,
            interval=float(config.get("poll_interval", 12.0)),
            threshold=int(config.get("reconcile_threshold", 100)),
            rpc_timeout=rpc_timeout,
        )
        self._opened = False

    async def open(self) -> None:
        if self._opened:
            return
        self.store.open()
        self.writer.start()
        self._opened = True

    async def start(self) -> None:
        """Run until ``stop()`` is called or a fatal error occurs."""
        await self.open()
        try:
            await self.catch_up()
            if not self.stop_event.is_set():
                await self._run_tasks()
        except Exception as exc:
            _log(f"FATAL: indexer stopped: {exc}")
            raise
        finally:
            await self.shutdown()

    async def catch_up(self) -> Dict[str, int]:
        head = await asyncio.wait_for(self.chain.get_block_number(), timeout=self.scanner.rpc_timeout)
        from_block = self.checkpoint.get() + 1
        if from_block > head:
            _log(f"Checkpoint {from_block - 1} is at chain head {head}")
            return {"batches": 0, "failed": 0, "applied": 0, "duplicates": 0, "malformed": 0}
        summary = await self.scanner.scan(from_block, head)
        _log(f"Catch-up complete through block {self.checkpoint.get()}: {summary}")
        return summary

    async def backfill(self, from_block: int, to_block: Optional[int] = None) -> Dict[str, int]:
        await self.open()
        if to_block is None:
            to_block = await asyncio.wait_for(self.chain.get_block_number(), timeout=self.scanner.rpc_timeout)
        return await self.scanner.scan(from_block, to_block)

    async def _run_tasks(self) -> None:
        live = asyncio.create_task(self.subscriber.run(self.stop_event), name="live-tail")
        reconcile = asyncio.create_task(self.reconciler.run(self.stop_event), name="gap-reconciler")
        stopped = asyncio.create_task(self.stop_event.wait(), name="stop-wait")
        _log("Live tail and reconciler started")
        try:
            await asyncio.wait(
                {live, reconcile, stopped}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            self.stop_event.set()
            results = await asyncio.gather(live, reconcile, stopped, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                raise result

    def stop(self) -> None:
        if not self.stop_event.is_set():
            _log("Shutdown requested, finishing in-flight work...")
        self.stop_event.set()

    async def shutdown(self) -> None:
        self.stop_event.set()
        if not self._opened:
            return
        await self.writer.close()
        self.store.close()
        self._opened = False
        _log("Indexer stopped")

    # -- read API ------------------------------------------------------------

    def get_checkpoint(self) -> int:
        return self.checkpoint.get()

    def get_vault(self, address: str) -> Optional[Dict[str, Any]]:
        return self.store.get_vault(address)

    def get_loan(self, vault_address: str, loan_id: Any) -> Optional[Dict[str, Any]]:
        return self.store.get_loan(vault_address, loan_id)

    def list_vaults_by_creator(self, creator: str):
        return self.store.list_vaults_by_creator(creator)

    def verify_vault(self, address: str) -> Dict[str, Any]:
        return verify_vault(self.store, address)

    def stats(self) -> Dict[str, Any]:
        counters: Dict[str, int] = {}
        for component in (self.handlers, self.writer, self.scanner, self.subscriber, self.reconciler):
            for key, value in component.counters.items():
                counters[key] = counters.get(key, 0) + value
        return {
            "checkpoint": self.checkpoint.get(),
            "counters": counters,
            "tables": self.store.stats(),
        }
