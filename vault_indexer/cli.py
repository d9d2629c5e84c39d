"""Command line entry point.

Usage:
  vault-indexer --config config.json run
  vault-indexer --config config.json backfill --from-block 0
  vault-indexer --config config.json vault --address 0x...
  vault-indexer --config config.json loan --vault 0x... --loan-id 7
  vault-indexer --config config.json stats

Every setting can also come from the environment (RPC_URL, RPC_WS_URL,
ADLV_ADDRESS, INDEXER_DB_PATH, INDEXER_BATCH_SIZE, ...).
"""

import argparse
import asyncio
import signal
import sys
from typing import Any, Dict, List, Optional

from .checkpoint import CheckpointError, CheckpointStore
from .config import ConfigError, load_config, validate_config
from .engine import IndexerEngine
from .handlers import verify_vault
from .store import MaterializedStore
from .utils import json_dumps, log as _log


def _print(obj: Any) -> None:
    print(json_dumps(obj, indent=2))


async def _run_engine(cfg: Dict[str, Any]) -> None:
    engine = IndexerEngine(cfg)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, engine.stop)
        except NotImplementedError:
            pass
    await engine.start()


async def _run_backfill(cfg: Dict[str, Any], from_block: int, to_block: Optional[int]) -> Dict[str, int]:
    engine = IndexerEngine(cfg)
    try:
        return await engine.backfill(from_block, to_block)
    finally:
        await engine.shutdown()


def _query(cfg: Dict[str, Any], args: argparse.Namespace) -> Any:
    store = MaterializedStore(cfg.get("db_path", "./indexer.db")).open()
    try:
        if args.command == "checkpoint":
            return {"checkpoint": CheckpointStore(store, int(cfg.get("start_block", 0))).get()}
        if args.command == "vault":
            vault = store.get_vault(args.address)
            if vault is not None and args.history:
                vault["license_sales"] = store.list_license_sales(args.address)
                vault["score_updates"] = store.list_score_updates(args.address)
            return vault
        if args.command == "vaults":
            if args.creator:
                return store.list_vaults_by_creator(args.creator)
            return store.list_vaults()
        if args.command == "loan":
            loan = store.get_loan(args.vault, args.loan_id)
            if loan is not None:
                loan["repayments"] = store.list_repayments(args.vault, args.loan_id)
            return loan
        if args.command == "loans":
            return store.list_loans(args.vault, args.limit)
        if args.command == "verify":
            return verify_vault(store, args.address)
        if args.command == "stats":
            stats: Dict[str, Any] = dict(store.stats())
            stats["checkpoint"] = CheckpointStore(store, int(cfg.get("start_block", 0))).get()
            stats["failed_ranges"] = store.pending_failed_ranges()
            return stats
        raise ValueError(f"unknown command {args.command}")
    finally:
        store.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="IP vault event indexer")
    parser.add_argument("--config", default="config.json", help="Path to config JSON")

    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("run", help="Backfill to head, then tail live events")

    backfill_parser = sub.add_parser("backfill", help="Manual backfill")
    backfill_parser.add_argument("--from-block", type=int, required=True)
    backfill_parser.add_argument("--to-block", type=int, default=None)

    sub.add_parser("checkpoint", help="Show the last fully processed block")

    vault_parser = sub.add_parser("vault", help="Show one vault")
    vault_parser.add_argument("--address", required=True)
    vault_parser.add_argument("--history", action="store_true", help="Include sales and score updates")

    vaults_parser = sub.add_parser("vaults", help="List vaults")
    vaults_parser.add_argument("--creator", default=None)

    loan_parser = sub.add_parser("loan", help="Show one loan")
    loan_parser.add_argument("--vault", required=True)
    loan_parser.add_argument("--loan-id", type=int, required=True)

    loans_parser = sub.add_parser("loans", help="List loans")
    loans_parser.add_argument("--vault", default=None)
    loans_parser.add_argument("--limit", type=int, default=100)

    verify_parser = sub.add_parser("verify", help="Re-fold a vault's score from its history")
    verify_parser.add_argument("--address", required=True)

    sub.add_parser("stats", help="Row counts, checkpoint and failed ranges")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        cfg = load_config(args.config)
        if args.command in ("run", "backfill"):
            validate_config(cfg)
    except ConfigError as exc:
        _log(f"FATAL: {exc}")
        return 2

    if args.command == "run":
        try:
            asyncio.run(_run_engine(cfg))
        except CheckpointError as exc:
            _log(f"FATAL: checkpoint not persisted: {exc}")
            return 1
        return 0

    if args.command == "backfill":
        try:
            summary = asyncio.run(_run_backfill(cfg, args.from_block, args.to_block))
        except CheckpointError as exc:
            _log(f"FATAL: checkpoint not persisted: {exc}")
            return 1
        _print(summary)
        return 0

    result = _query(cfg, args)
    if result is None:
        _log("Not found")
        return 1
    _print(result)
    return 0


if __name__ == "__main__":
    sys.exit(main())
