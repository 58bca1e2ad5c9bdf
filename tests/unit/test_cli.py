"""Tests for the stashu CLI."""

from typer.testing import CliRunner

from stashu_engine.cli import app
from stashu_engine.vault.cipher import TokenVault

runner = CliRunner()


class TestKeygen:
    def test_prints_usable_key(self):
        result = runner.invoke(app, ["keygen"])
        assert result.exit_code == 0
        key = result.output.strip()
        assert len(key) == 64
        TokenVault.from_hex(key)

    def test_keys_differ(self):
        first = runner.invoke(app, ["keygen"]).output
        second = runner.invoke(app, ["keygen"]).output
        assert first != second


class TestHealth:
    def test_unreachable_server_exits_nonzero(self):
        result = runner.invoke(app, ["health", "--url", "http://127.0.0.1:9"])
        assert result.exit_code == 1
        assert "Error" in result.output
