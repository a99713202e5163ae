"""Tests for the command line interface."""

import json
import logging
import os

import pytest
from typer.testing import CliRunner

from clinical_vault.cli import app

runner = CliRunner()


@pytest.fixture(autouse=True)
def memory_env(monkeypatch, tmp_path):
    for key in list(os.environ):
        if key.startswith("CV_"):
            monkeypatch.delenv(key)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("CV_DB_TYPE", "memory")
    monkeypatch.setenv("CV_MASTER_KEY", "cli-test-master-key")
    monkeypatch.setenv("CV_PBKDF2_ITERATIONS", "1000")
    root_logger = logging.getLogger()
    handlers, level = list(root_logger.handlers), root_logger.level
    yield monkeypatch
    # setup_logging binds a handler to the runner's stdout
    root_logger.handlers[:] = handlers
    root_logger.setLevel(level)


def test_version():
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert "Clinical-Vault v1.0.0" in result.output


def test_info():
    result = runner.invoke(app, ["info"])
    assert result.exit_code == 0
    assert "memory" in result.output
    assert "Configured" in result.output
    assert "cli-test-master-key" not in result.output


def test_info_invalid_configuration(memory_env):
    memory_env.setenv("CV_DB_TYPE", "oracle")
    result = runner.invoke(app, ["info"])
    assert result.exit_code == 1
    assert "Invalid configuration" in result.output


def test_init_db():
    result = runner.invoke(app, ["init-db"])
    assert result.exit_code == 0
    assert "Schema ready (7 tables)" in result.output


def test_init_db_with_duckdb_file(memory_env, tmp_path):
    memory_env.setenv("CV_DB_TYPE", "duckdb")
    memory_env.setenv("CV_DB_PATH", str(tmp_path / "vault.duckdb"))
    result = runner.invoke(app, ["init-db"])
    assert result.exit_code == 0
    assert (tmp_path / "vault.duckdb").exists()


def test_health():
    result = runner.invoke(app, ["health"])
    assert result.exit_code == 0
    assert "healthy" in result.output
    assert "patients" in result.output


def test_orphans():
    result = runner.invoke(app, ["orphans"])
    assert result.exit_code == 0
    assert "No orphaned rows" in result.output


def test_audit_stats_empty():
    result = runner.invoke(app, ["audit-stats"])
    assert result.exit_code == 0
    assert "Total entries:" in result.output


def test_audit_export_to_file(tmp_path):
    output = tmp_path / "audit.json"
    result = runner.invoke(app, ["audit-export", "--format", "json", "--output", str(output)])
    assert result.exit_code == 0
    assert json.loads(output.read_text()) == []


def test_audit_export_unsupported_format():
    result = runner.invoke(app, ["audit-export", "--format", "pdf"])
    assert result.exit_code == 1


def test_audit_purge():
    result = runner.invoke(app, ["audit-purge", "--yes", "--retention-years", "5"])
    assert result.exit_code == 0
    assert "Purged 0 audit entries" in result.output


def test_audit_purge_requires_confirmation():
    result = runner.invoke(app, ["audit-purge"], input="n\n")
    assert result.exit_code == 1


def test_audit_purge_invalid_retention():
    result = runner.invoke(app, ["audit-purge", "--yes", "--retention-years", "0"])
    assert result.exit_code == 1
