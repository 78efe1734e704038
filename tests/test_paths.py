"""Tests for configuration directory resolution."""

from pathlib import Path

from crm_dedupe.utils.paths import CONFIG_DIR_ENV_VAR, resolve_config_dir


def test_default_is_crm_dedupe_dir_in_home(monkeypatch):
    monkeypatch.delenv("CRM_DEDUPE_CONFIG_DIR", raising=False)
    assert resolve_config_dir() == (Path.home() / ".crm-dedupe").resolve()


def test_crm_dedupe_config_dir_env(tmp_path, monkeypatch):
    """Test CRM_DEDUPE_CONFIG_DIR relocates the config, logs and database."""
    monkeypatch.setenv("CRM_DEDUPE_CONFIG_DIR", str(tmp_path / "ledger"))
    assert CONFIG_DIR_ENV_VAR == "CRM_DEDUPE_CONFIG_DIR"
    assert resolve_config_dir() == (tmp_path / "ledger").resolve()


def test_cli_option_beats_env(tmp_path, monkeypatch):
    """Test an explicit --config-dir wins over CRM_DEDUPE_CONFIG_DIR."""
    monkeypatch.setenv("CRM_DEDUPE_CONFIG_DIR", str(tmp_path / "env"))
    assert resolve_config_dir(tmp_path / "cli") == (tmp_path / "cli").resolve()


def test_empty_env_falls_back_to_default(monkeypatch):
    monkeypatch.setenv("CRM_DEDUPE_CONFIG_DIR", "")
    assert resolve_config_dir() == (Path.home() / ".crm-dedupe").resolve()
