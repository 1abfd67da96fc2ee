import sqlite3
from pathlib import Path

import pytest
from typer.testing import CliRunner

from dealflow import cli

SCHEMA_PATH = Path(__file__).resolve().parents[1] / "resources" / "schema" / "canonical.yaml"

runner = CliRunner()


@pytest.fixture
def workspace(tmp_path: Path, monkeypatch) -> Path:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(cli, "SCHEMA_PATH", SCHEMA_PATH)
    result = runner.invoke(cli.app, ["workspace", "add", "demo", "--org", "acme"])
    assert result.exit_code == 0, result.output
    result = runner.invoke(cli.app, ["schema", "apply"])
    assert result.exit_code == 0, result.output
    return tmp_path / "workspaces" / "demo"


def test_broken_workspace_yaml_is_reported(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    ws_dir = tmp_path / "workspaces" / "demo"
    ws_dir.mkdir(parents=True)
    (ws_dir / "workspace.yaml").write_text("store: [unclosed\n")
    (tmp_path / "workspaces" / ".current").write_text("demo\n")

    result = runner.invoke(cli.app, ["lead", "list"])

    assert result.exit_code == 1
    assert "Invalid YAML" in result.output


def test_schema_apply_reports_newer_database(workspace: Path) -> None:
    conn = sqlite3.connect(workspace / "local.sqlite")
    conn.execute("INSERT INTO __schema_meta (version, applied_at) VALUES (99, 'now')")
    conn.commit()
    conn.close()

    result = runner.invoke(cli.app, ["schema", "apply"])

    assert result.exit_code == 1
    assert "Error:" in result.output
    assert "newer" in result.output


def test_lead_show_includes_offer_spread(workspace: Path) -> None:
    result = runner.invoke(
        cli.app,
        [
            "lead", "add", "12 Oak St", "--city", "Austin", "--state", "TX", "--zip", "78701",
            "--arv", "250000", "--repairs", "35000", "--offer", "90000",
        ],
    )
    assert result.exit_code == 0, result.output
    lead_id = result.output.split("Created lead: ")[1].split()[0]

    result = runner.invoke(cli.app, ["lead", "show", lead_id])

    assert result.exit_code == 0, result.output
    assert "offer_spread: " in result.output
    assert "meets_profit_threshold: True" in result.output


def test_event_list_shows_added_events(workspace: Path) -> None:
    result = runner.invoke(
        cli.app,
        ["event", "add", "Walkthrough", "--user", "user-1", "--start", "2099-05-01T15:00:00"],
    )
    assert result.exit_code == 0, result.output
    event_id = result.output.split("Created event: ")[1].split()[0]

    result = runner.invoke(cli.app, ["event", "list"])

    assert result.exit_code == 0, result.output
    assert event_id in result.output
    assert "scheduled" in result.output
    assert "Walkthrough" in result.output
