"""Tests for queryspine.cli.config: config show/validate commands."""

from __future__ import annotations

import json

from typer.testing import CliRunner

from queryspine.cli.config import app

runner = CliRunner()


class TestShowConfig:
    def test_show_json_format(self):
        result = runner.invoke(app, ["show", "--format", "json"])
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["cache_ttl_seconds"] == 300.0
        assert data["retry_max_attempts"] == 3

    def test_show_env_format(self, monkeypatch):
        monkeypatch.setenv("QUERYSPINE_CACHE_TTL_SECONDS", "120")
        result = runner.invoke(app, ["show", "--format", "env"])
        assert result.exit_code == 0
        assert "QUERYSPINE_CACHE_TTL_SECONDS=120.0" in result.output
        assert "QUERYSPINE_LOG_JSON=\n" in result.output

    def test_show_table_format(self):
        result = runner.invoke(app, ["show"])
        assert result.exit_code == 0
        assert "admission_max_concurrent" in result.output


class TestValidateConfig:
    def test_valid(self):
        result = runner.invoke(app, ["validate"])
        assert result.exit_code == 0
        assert "Configuration is valid" in result.output

    def test_invalid_value(self, monkeypatch):
        monkeypatch.setenv("QUERYSPINE_CACHE_TTL_SECONDS", "-5")
        result = runner.invoke(app, ["validate"])
        assert result.exit_code == 1
        assert "Configuration Error" in result.output

    def test_invalid_bounds(self, monkeypatch):
        monkeypatch.setenv("QUERYSPINE_RETRY_BASE_DELAY", "10")
        monkeypatch.setenv("QUERYSPINE_RETRY_MAX_DELAY", "1")
        result = runner.invoke(app, ["validate"])
        assert result.exit_code == 1
