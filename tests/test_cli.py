"""
Tests for the CLI module.

Tests the command-line interface using Click's testing utilities. Commands
run against a real SQLite file in a temporary config directory; HubSpot
network calls are patched.
"""

import json
from pathlib import Path
from unittest.mock import patch
from urllib.parse import parse_qs, urlparse

import click
import pytest
import yaml
from click.testing import CliRunner

from crm_dedupe import __version__
from crm_dedupe.api.hubspot_api import HubSpotAPI, HubSpotTimeoutError, TokenSet
from crm_dedupe.cli import CONFIG_FILE_NAME, cli, get_config_dir
from crm_dedupe.cli.main import get_config_file, parse_field_values
from crm_dedupe.config.settings import Settings
from crm_dedupe.service import DedupeService

CLUSTERS = [
    [
        {"id": "101", "properties": {"firstname": "Ann", "email": "ann@x.com"}},
        {"id": "102", "properties": {"email": "ann@y.com"}},
    ],
    [{"id": "201"}, {"id": "202"}, {"id": "203"}],
]


@pytest.fixture(autouse=True)
def quiet_logging():
    with patch("crm_dedupe.cli.main.setup_logging"), patch(
        "crm_dedupe.cli.main.cleanup_old_logs"
    ):
        yield


@pytest.fixture
def config_dir(tmp_path):
    config = {
        "hubspot_client_id": "client-id",
        "hubspot_client_secret": "client-secret",
        "db_path": str(tmp_path / "dedupe.db"),
        "export_dir": str(tmp_path / "exports"),
    }
    (tmp_path / CONFIG_FILE_NAME).write_text(yaml.dump(config))
    return tmp_path


@pytest.fixture
def hubspot():
    """Patch the network methods of HubSpotAPI."""
    with patch.object(
        HubSpotAPI, "exchange_code", return_value=TokenSet("at-1", "rt-1", 1800)
    ), patch.object(
        HubSpotAPI,
        "get_account_info",
        return_value={"portalId": 42, "hubDomain": "acme.com", "accountName": "Acme"},
    ), patch.object(
        HubSpotAPI, "merge_contacts", return_value={}
    ) as merge, patch.object(
        HubSpotAPI, "update_contact", return_value={}
    ) as update, patch.object(
        HubSpotAPI,
        "list_contacts",
        return_value=[{"id": "101", "properties": {"email": "ann@x.com"}}],
    ):
        yield {"merge_contacts": merge, "update_contact": update}


@pytest.fixture
def invoke(config_dir):
    runner = CliRunner()

    def run(*args, **kwargs):
        return runner.invoke(cli, ["--config-dir", str(config_dir), *args], **kwargs)

    return run


@pytest.fixture
def connected(invoke, hubspot):
    """Register and connect account 'alice'."""
    assert invoke("register", "alice").exit_code == 0
    result = invoke("connect", "--account", "alice")
    url = next(line for line in result.output.splitlines() if line.startswith("https"))
    state = parse_qs(urlparse(url).query)["state"][0]
    result = invoke("callback", "--code", "code", "--state", state)
    assert result.exit_code == 0, result.output
    return invoke


@pytest.fixture
def ingested(connected, tmp_path):
    clusters_file = tmp_path / "clusters.json"
    clusters_file.write_text(json.dumps(CLUSTERS))
    result = connected(
        "ingest", "--account", "alice", "--run-key", "run-1", str(clusters_file)
    )
    assert result.exit_code == 0, result.output
    return connected


@pytest.fixture
def group_ids(ingested, config_dir):
    """Ids of the ingested groups, in creation order."""
    settings = Settings.from_dict(
        yaml.safe_load((config_dir / CONFIG_FILE_NAME).read_text()),
        config_dir=config_dir,
        environ={},
    )
    service = DedupeService.from_settings(settings)
    try:
        groups = service.duplicate_groups("alice", "run-1", page_size=10)["groups"]
    finally:
        service.close()
    return [g["id"] for g in groups]


class TestHelperFunctions:
    """Tests for CLI helper functions."""

    def test_get_config_dir_with_custom_path(self, tmp_path):
        """Test get_config_dir returns custom path when provided."""
        assert get_config_dir(str(tmp_path)) == tmp_path.resolve()

    def test_get_config_file_default(self, tmp_path):
        assert get_config_file(tmp_path, None) == tmp_path / CONFIG_FILE_NAME

    def test_get_config_file_override(self, tmp_path):
        assert get_config_file(tmp_path, "/etc/other.yaml") == Path("/etc/other.yaml")

    def test_parse_field_values(self):
        """Test name=value pairs are parsed, keeping '=' inside values."""
        assert parse_field_values(("phone=+1555", "note=a=b")) == {
            "phone": "+1555",
            "note": "a=b",
        }

    @pytest.mark.parametrize("item", ["novalue", "=x"])
    def test_parse_field_values_invalid(self, item):
        with pytest.raises(click.BadParameter):
            parse_field_values((item,))


class TestCliGroup:
    """Tests for the main CLI group."""

    def test_cli_help(self):
        """Test that CLI shows help."""
        result = CliRunner().invoke(cli, ["--help"])
        assert result.exit_code == 0
        assert "HubSpot duplicate contact merging" in result.output

    def test_cli_version(self):
        """Test that CLI shows version."""
        result = CliRunner().invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_invalid_config_warns(self, tmp_path, monkeypatch):
        """Test an invalid config file is reported and then ignored."""
        monkeypatch.setenv("CRM_DEDUPE_CLIENT_SECRET", "env-secret")
        (tmp_path / CONFIG_FILE_NAME).write_text(
            f"api_timeout: -5\ndb_path: {tmp_path / 'ignored.db'}\n"
        )

        result = CliRunner().invoke(
            cli, ["--config-dir", str(tmp_path), "register", "alice"]
        )

        assert result.exit_code == 0
        assert "Warning: Configuration error" in result.output
        assert (tmp_path / "dedupe.db").exists()

    def test_missing_secret_is_reported(self, tmp_path, monkeypatch):
        """Test commands fail cleanly without a signing secret."""
        monkeypatch.delenv("CRM_DEDUPE_CLIENT_SECRET", raising=False)
        monkeypatch.delenv("CRM_DEDUPE_STATE_SECRET", raising=False)

        result = CliRunner().invoke(
            cli, ["--config-dir", str(tmp_path), "register", "alice"]
        )

        assert result.exit_code == 1
        assert "signing secret" in result.output


class TestConnectionCommands:
    """Tests for register, connect, callback, status and disconnect."""

    def test_register(self, invoke):
        result = invoke("register", "alice", "--email", "alice@example.com")
        assert result.exit_code == 0
        assert "Registered account alice" in result.output

        again = invoke("register", "alice")
        assert "already registered" in again.output

    def test_connect_unknown_account(self, invoke):
        result = invoke("connect", "--account", "nobody")
        assert result.exit_code == 1
        assert "Unknown account" in result.output

    def test_connect_opens_browser(self, invoke):
        invoke("register", "alice")
        with patch("crm_dedupe.cli.main.click.launch") as mock_launch:
            result = invoke("connect", "--account", "alice", "--open-browser")

        assert result.exit_code == 0
        mock_launch.assert_called_once()
        assert mock_launch.call_args.args[0].startswith("https://app.hubspot.com")

    def test_callback_connects(self, connected):
        result = connected("status", "--account", "alice")

        assert result.exit_code == 0
        assert "Connected" in result.output
        assert "Acme" in result.output
        assert "42" in result.output

    def test_callback_rejects_bad_state(self, invoke, hubspot):
        result = invoke("callback", "--code", "code", "--state", "forged.state")

        assert result.exit_code == 1
        assert "Connection failed" in result.output

    def test_callback_error_parameter(self, invoke):
        result = invoke("callback", "--state", "x", "--error", "access_denied")

        assert result.exit_code == 1
        assert "access_denied" in result.output

    def test_status_not_connected(self, invoke):
        invoke("register", "alice")
        result = invoke("status", "--account", "alice")

        assert result.exit_code == 0
        assert "Not connected" in result.output

    def test_disconnect(self, connected):
        result = connected("disconnect", "--account", "alice")
        assert "Disconnected alice" in result.output

        again = connected("disconnect", "--account", "alice")
        assert "was not connected" in again.output

    def test_contacts_written_to_file(self, connected, tmp_path):
        output = tmp_path / "contacts.json"

        result = connected("contacts", "--account", "alice", "--output", str(output))

        assert result.exit_code == 0
        assert "Contacts: 1" in result.output
        assert json.loads(output.read_text())[0]["id"] == "101"

    def test_contacts_not_connected(self, invoke):
        invoke("register", "bob")
        result = invoke("contacts", "--account", "bob")

        assert result.exit_code == 1
        assert "not connected" in result.output


class TestRunCommands:
    """Tests for ingest, groups, merge, remove, reset, history and finish."""

    def test_ingest(self, ingested):
        result = ingested("run-status", "--account", "alice", "--run-key", "run-1")

        assert result.exit_code == 0
        assert "Phase: ready_to_merge" in result.output
        assert "0/2 resolved" in result.output

    def test_ingest_yaml(self, connected, tmp_path):
        """Test clusters may be given as YAML with named record lists."""
        clusters_file = tmp_path / "clusters.yaml"
        clusters_file.write_text(
            yaml.dump({"groups": [{"records": [{"id": "1"}, {"id": "2"}]}]})
        )

        result = connected(
            "ingest", "-a", "alice", "-r", "run-y", "--name", "YAML", str(clusters_file)
        )

        assert result.exit_code == 0
        assert "Imported 1 duplicate groups" in result.output

    def test_ingest_invalid_file(self, connected, tmp_path):
        clusters_file = tmp_path / "clusters.json"
        clusters_file.write_text(json.dumps({"unexpected": True}))

        result = connected("ingest", "-a", "alice", "-r", "run-x", str(clusters_file))

        assert result.exit_code == 1
        assert "Could not read clusters" in result.output

    def test_ingest_singleton_cluster(self, connected, tmp_path):
        clusters_file = tmp_path / "clusters.json"
        clusters_file.write_text(json.dumps([[{"id": "1"}]]))

        result = connected("ingest", "-a", "alice", "-r", "run-x", str(clusters_file))

        assert result.exit_code == 1
        assert "at least two distinct" in result.output

    def test_groups_page(self, ingested):
        result = ingested(
            "groups", "-a", "alice", "-r", "run-1", "--page", "2", "--page-size", "1"
        )

        assert result.exit_code == 0
        assert "page 2 of 2" in result.output
        assert "201" in result.output

    def test_groups_invalid_page(self, ingested):
        result = ingested("groups", "-a", "alice", "-r", "run-1", "--page", "0")

        assert result.exit_code == 1
        assert "must be positive" in result.output

    def test_merge_with_field_values(self, ingested, group_ids, hubspot):
        pair_id = group_ids[0]

        result = ingested(
            "merge",
            "-a", "alice",
            "-g", str(pair_id),
            "--keep", "101",
            "--retire", "102",
            "--set", "email=ann@y.com",
        )

        assert result.exit_code == 0, result.output
        assert "Merged 102 into 101" in result.output
        assert "merged" in result.output
        hubspot["update_contact"].assert_called_once()
        assert hubspot["update_contact"].call_args.args[-1] == {"email": "ann@y.com"}

    def test_merge_failure_is_retryable(self, ingested, group_ids, hubspot):
        pair_id = group_ids[0]
        hubspot["merge_contacts"].side_effect = HubSpotTimeoutError("timed out")

        result = ingested(
            "merge", "-a", "alice", "-g", str(pair_id), "--keep", "101", "--retire", "102"
        )

        assert result.exit_code == 1
        assert "you can retry" in result.output

    def test_merge_non_member(self, ingested, group_ids):
        pair_id = group_ids[0]

        result = ingested(
            "merge", "-a", "alice", "-g", str(pair_id), "--keep", "101", "--retire", "9"
        )

        assert result.exit_code == 1
        assert "not a member" in result.output

    def test_remove_reset_and_history(self, ingested, group_ids):
        triple_id = group_ids[1]

        removed = ingested("remove", "-a", "alice", "-g", str(triple_id), "--record", "203")
        assert removed.exit_code == 0
        assert "Removed 203" in removed.output

        reset = ingested("reset", "-a", "alice", "-g", str(triple_id), "--yes")
        assert reset.exit_code == 0
        assert "3/3 member(s)" in reset.output

        history = ingested("history", "-a", "alice", "-g", str(triple_id))
        assert "removed 203" in history.output
        assert "membership restored" in history.output

    def test_reset_requires_confirmation(self, ingested, group_ids):
        triple_id = group_ids[1]

        result = ingested("reset", "-a", "alice", "-g", str(triple_id), input="n\n")

        assert result.exit_code == 1
        assert "will NOT be undone" in result.output

    def test_finish_pending(self, ingested):
        result = ingested("finish", "-a", "alice", "-r", "run-1")

        assert result.exit_code == 1
        assert "Resolve them before finishing" in result.output

    def test_finish(self, ingested, group_ids):
        pair_id, triple_id = group_ids
        ingested("merge", "-a", "alice", "-g", str(pair_id), "-k", "101", "-x", "102")
        ingested("merge", "-a", "alice", "-g", str(triple_id), "-k", "201", "-x", "202")
        ingested("remove", "-a", "alice", "-g", str(triple_id), "--record", "203")

        result = ingested("finish", "-a", "alice", "-r", "run-1")

        assert result.exit_code == 0, result.output
        assert "Run run-1 finished" in result.output
        export_line = next(
            line for line in result.output.splitlines() if line.startswith("Export:")
        )
        assert Path(export_line.split(": ", 1)[1]).exists()

    def test_run_status_lists_all_runs(self, ingested):
        result = ingested("run-status", "-a", "alice")

        assert result.exit_code == 0
        assert "run-1" in result.output

    def test_run_status_no_runs(self, connected):
        result = connected("run-status", "-a", "alice")
        assert "No runs yet" in result.output

    def test_other_account_cannot_see_run(self, ingested):
        result = ingested("groups", "-a", "mallory", "-r", "run-1")

        assert result.exit_code == 1
        assert "not found" in result.output
