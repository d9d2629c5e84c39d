"""Tests for configuration loading and validation."""

import json

import pytest

from conftest import CONTRACT, VAULT
from vault_indexer.config import (
    DEFAULTS,
    ConfigError,
    load_config,
    tracked_addresses,
    validate_config,
)
from vault_indexer.utils import to_checksum


class TestLoadConfig:
    def test_defaults_without_file(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        cfg = load_config("config.json", environ={})
        assert cfg["batch_size"] == DEFAULTS["batch_size"] == 1000
        assert cfg["poll_interval"] == 12.0
        assert cfg["reconcile_threshold"] == 100
        assert cfg["rpc_timeout"] == 30.0
        assert cfg["contracts"] == {}

    def test_file_values(self, tmp_path):
        path = tmp_path / "indexer.json"
        path.write_text(
            json.dumps(
                {
                    "rpc_http": "http://node:8545",
                    "contracts": {"ADLV": {"address": CONTRACT, "deployed_block": 5}},
                    "batch_size": 250,
                }
            )
        )
        cfg = load_config(str(path), environ={})
        assert cfg["rpc_http"] == "http://node:8545"
        assert cfg["batch_size"] == 250
        assert tracked_addresses(cfg) == [to_checksum(CONTRACT)]

    def test_environment_overrides_file(self, tmp_path):
        path = tmp_path / "indexer.json"
        path.write_text(json.dumps({"batch_size": 250, "rpc_http": "http://file"}))
        cfg = load_config(
            str(path),
            environ={
                "RPC_URL": "http://env:8545",
                "RPC_WS_URL": "ws://env:8546",
                "INDEXER_BATCH_SIZE": "50",
                "INDEXER_RPC_TIMEOUT": "2.5",
                "INDEXER_DB_PATH": "/tmp/other.db",
            },
        )
        assert cfg["rpc_http"] == "http://env:8545"
        assert cfg["rpc_ws"] == "ws://env:8546"
        assert cfg["batch_size"] == 50
        assert cfg["rpc_timeout"] == 2.5
        assert cfg["db_path"] == "/tmp/other.db"

    def test_contract_addresses_from_environment(self):
        cfg = load_config(None, environ={"ADLV_ADDRESS": CONTRACT, "INDEXER_CONTRACTS": f"{VAULT}, "})
        assert cfg["contracts"]["ADLV"] == CONTRACT
        assert tracked_addresses(cfg) == sorted([to_checksum(CONTRACT), to_checksum(VAULT)])

    def test_missing_explicit_file(self, tmp_path):
        with pytest.raises(ConfigError):
            load_config(str(tmp_path / "nope.json"), environ={})

    def test_invalid_number(self):
        with pytest.raises(ConfigError):
            load_config(None, environ={"INDEXER_BATCH_SIZE": "lots"})

    def test_non_object_file(self, tmp_path):
        path = tmp_path / "indexer.json"
        path.write_text("[1, 2]")
        with pytest.raises(ConfigError):
            load_config(str(path), environ={})


class TestValidateConfig:
    def _cfg(self, **overrides):
        cfg = load_config(None, environ={"ADLV_ADDRESS": CONTRACT, "RPC_URL": "http://node"})
        cfg.update(overrides)
        return cfg

    def test_valid(self):
        validate_config(self._cfg())

    def test_requires_contracts(self):
        with pytest.raises(ConfigError):
            validate_config(self._cfg(contracts={}))

    def test_requires_rpc(self):
        with pytest.raises(ConfigError):
            validate_config(self._cfg(rpc_http=None))
        validate_config(self._cfg(rpc_http=None), require_rpc=False)

    @pytest.mark.parametrize("key", ["batch_size", "poll_interval", "rpc_timeout", "reconnect_delay", "queue_size"])
    def test_rejects_non_positive(self, key):
        with pytest.raises(ConfigError):
            validate_config(self._cfg(**{key: 0}))

    def test_rejects_bad_address(self):
        with pytest.raises(ConfigError):
            validate_config(self._cfg(contracts={"ADLV": "0x1234"}))
