"""
Veil Configuration Tests
"""

import json
import logging

import pytest

from veil.config import LogConfig, SubmissionConfig, VeilConfig, setup_logging


class TestVeilConfig:
    """Test validation and persistence."""

    def test_defaults_valid(self):
        """Test the default configuration passes validation."""
        assert VeilConfig().validate() == []

    @pytest.mark.parametrize("mutate,fragment", [
        (lambda c: setattr(c.ledger, "rpc_url", "ftp://node"), "RPC URL"),
        (lambda c: setattr(c.submission, "max_attempts", 0), "max_attempts"),
        (lambda c: setattr(c.submission, "backoff_sec", -1.0), "backoff_sec"),
        (lambda c: setattr(c.submission, "confirm_attempts", 0), "confirm_attempts"),
        (lambda c: setattr(c.token, "decimals", 19), "decimals"),
        (lambda c: setattr(c.token, "auditor_pubkey", "abcd"), "32 bytes"),
        (lambda c: setattr(c.token, "auditor_pubkey", "xyz"), "hex"),
        (lambda c: setattr(c.prover, "timeout_sec", 0), "timeout"),
    ])
    def test_invalid(self, mutate, fragment):
        """Test each rule reports its own error."""
        config = VeilConfig()
        mutate(config)
        errors = config.validate()
        assert len(errors) == 1
        assert fragment in errors[0]

    def test_save_load(self, tmp_path):
        """Test a saved configuration loads back equal."""
        config = VeilConfig(name="merchant")
        config.ledger.rpc_url = "https://rpc.example.org"
        config.submission = SubmissionConfig(max_attempts=5, backoff_sec=0.5)
        config.token.auditor_pubkey = "11" * 32
        config.prover.timeout_sec = None

        path = tmp_path / "veil.json"
        config.save(str(path))
        loaded = VeilConfig.load(str(path))

        assert loaded == config
        assert json.loads(path.read_text())["submission"]["max_attempts"] == 5

    def test_partial_file(self, tmp_path):
        """Test missing sections fall back to defaults."""
        path = tmp_path / "veil.json"
        path.write_text(json.dumps({"token": {"decimals": 6}}))
        loaded = VeilConfig.load(str(path))
        assert loaded.token.decimals == 6
        assert loaded.submission == SubmissionConfig()
        assert loaded.name == "veil"


class TestLogging:
    def test_file_handler(self, tmp_path, monkeypatch):
        """Test a log file adds a rotating handler."""
        captured = {}
        monkeypatch.setattr(logging, "basicConfig", lambda **kw: captured.update(kw))
        setup_logging(LogConfig(level="debug", file=str(tmp_path / "veil.log")))
        assert captured["level"] == logging.DEBUG
        assert len(captured["handlers"]) == 2
        for handler in captured["handlers"]:
            handler.close()
