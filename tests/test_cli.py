"""Tests for the command line query surface."""

import json

import pytest

from conftest import CREATOR, VAULT, license_sold, loan_issued, loan_repaid, vault_created
from vault_indexer.checkpoint import CheckpointStore
from vault_indexer.cli import build_parser, main
from vault_indexer.handlers import HandlerSet
from vault_indexer.store import MaterializedStore


ENV_KEYS = (
    "RPC_URL",
    "RPC_WS_URL",
    "ADLV_ADDRESS",
    "INDEXER_CONTRACTS",
    "INDEXER_DB_PATH",
    "INDEXER_START_BLOCK",
    "INDEXER_BATCH_SIZE",
)


@pytest.fixture
def config_path(tmp_path, monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    db_path = str(tmp_path / "indexer.db")
    db = MaterializedStore(db_path).open()
    handlers = HandlerSet(db)
    for event in (
        vault_created(10),
        license_sold(11, 1000),
        loan_issued(12, amount=500),
        loan_repaid(13, 200),
    ):
        handlers.apply(event)
    CheckpointStore(db).set(99)
    db.close()

    path = tmp_path / "config.json"
    path.write_text(json.dumps({"db_path": db_path}))
    return str(path)


def run_cli(capsys, *argv):
    code = main(list(argv))
    return code, capsys.readouterr().out


class TestQueries:
    def test_checkpoint(self, config_path, capsys):
        code, out = run_cli(capsys, "--config", config_path, "checkpoint")
        assert code == 0
        assert json.loads(out) == {"checkpoint": 99}

    def test_vault_with_history(self, config_path, capsys):
        code, out = run_cli(capsys, "--config", config_path, "vault", "--address", VAULT, "--history")
        assert code == 0
        vault = json.loads(out)
        assert vault["current_score"] == 1050
        assert len(vault["license_sales"]) == 1

    def test_vaults_by_creator(self, config_path, capsys):
        code, out = run_cli(capsys, "--config", config_path, "vaults", "--creator", CREATOR)
        assert code == 0
        assert [v["vault_address"] for v in json.loads(out)] == [VAULT]

    def test_loan_includes_repayments(self, config_path, capsys):
        code, out = run_cli(capsys, "--config", config_path, "loan", "--vault", VAULT, "--loan-id", "1")
        assert code == 0
        loan = json.loads(out)
        assert loan["outstanding_amount"] == 300
        assert [r["amount"] for r in loan["repayments"]] == [200]

    def test_loans(self, config_path, capsys):
        code, out = run_cli(capsys, "--config", config_path, "loans", "--vault", VAULT)
        assert code == 0
        assert len(json.loads(out)) == 1

    def test_verify(self, config_path, capsys):
        code, out = run_cli(capsys, "--config", config_path, "verify", "--address", VAULT)
        assert code == 0
        assert json.loads(out)["consistent"] is True

    def test_stats(self, config_path, capsys):
        code, out = run_cli(capsys, "--config", config_path, "stats")
        assert code == 0
        stats = json.loads(out)
        assert stats["vaults"] == 1
        assert stats["loan_repayments"] == 1
        assert stats["checkpoint"] == 99
        assert stats["failed_ranges"] == []

    def test_unknown_vault(self, config_path, capsys):
        code, out = run_cli(capsys, "--config", config_path, "vault", "--address", "0x" + "99" * 20)
        assert code == 1
        assert out == ""


class TestCommands:
    def test_run_requires_contracts(self, config_path, capsys):
        code, _ = run_cli(capsys, "--config", config_path, "run")
        assert code == 2

    def test_missing_config_file(self, tmp_path, capsys):
        code, _ = run_cli(capsys, "--config", str(tmp_path / "absent.json"), "stats")
        assert code == 2

    def test_backfill_arguments(self):
        args = build_parser().parse_args(["backfill", "--from-block", "100", "--to-block", "200"])
        assert (args.from_block, args.to_block) == (100, 200)

    def test_command_is_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])
