from __future__ import annotations

import json

import click
import pytest
import yaml
from click.testing import CliRunner

from discord_transcripts.cli import cli, load_config


@pytest.fixture(autouse=True)
def _isolated_config(monkeypatch, tmp_path):
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.setattr("discord_transcripts.settings._load_dotenv", lambda: None)


def _write_export(tmp_path, payload) -> str:
    path = tmp_path / "export.json"
    path.write_text(json.dumps(payload), encoding="utf-8")
    return str(path)


EXPORT = {
    "guild_id": "900",
    "messages": [
        {
            "id": "1",
            "type": 0,
            "author": {"id": "100", "username": "author"},
            "content": "hi <@7>\n\nsecond line",
        }
    ],
    "users": [{"id": "7", "username": "mia"}],
}


def test_render_json_to_stdout(tmp_path) -> None:
    result = CliRunner().invoke(cli, ["render", _write_export(tmp_path, EXPORT)])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["profiles"]["7"]["author"] == "mia"
    assert payload["messages"][0]["content"][1] == {
        "type": "mention",
        "kind": "user",
        "label": "mia",
    }


def test_render_yaml_with_entities_file(tmp_path) -> None:
    entities = tmp_path / "entities.yaml"
    entities.write_text(
        yaml.safe_dump({"channels": [{"id": "20", "name": "general"}]}), encoding="utf-8"
    )
    export = {"messages": [{"id": "1", "author": {"id": "100"}, "content": "see <#20>"}]}
    out = tmp_path / "out.yaml"

    result = CliRunner().invoke(
        cli,
        [
            "render",
            _write_export(tmp_path, export),
            "--entities",
            str(entities),
            "-f",
            "yaml",
            "-o",
            str(out),
        ],
    )

    assert result.exit_code == 0, result.output
    data = yaml.safe_load(out.read_text(encoding="utf-8"))
    assert data["profiles"]["_channels"]["20"] == {"name": "general", "kind": "text"}


def test_config_file_settings_apply(tmp_path) -> None:
    config_dir = tmp_path / "config" / "discord-transcripts"
    config_dir.mkdir(parents=True)
    (config_dir / "config.yaml").write_text("components_version: 9.9.9\n", encoding="utf-8")

    result = CliRunner().invoke(cli, ["render", _write_export(tmp_path, EXPORT)])

    assert result.exit_code == 0, result.output
    assert json.loads(result.output)["components_version"] == "9.9.9"


def test_invalid_inputs_fail(tmp_path) -> None:
    bad = tmp_path / "bad.json"
    bad.write_text("{not json", encoding="utf-8")
    wrong_shape = _write_export(tmp_path, {"items": []})

    runner = CliRunner()
    assert runner.invoke(cli, ["render", str(bad)]).exit_code == 1
    assert runner.invoke(cli, ["render", wrong_shape]).exit_code == 1
    assert runner.invoke(cli, ["render", str(tmp_path / "missing.json")]).exit_code == 1


def test_rest_and_entities_are_exclusive(tmp_path) -> None:
    path = _write_export(tmp_path, EXPORT)

    result = CliRunner().invoke(cli, ["render", path, "--rest", "--entities", path])

    assert result.exit_code == 2


def test_rest_without_token_is_reported(tmp_path, monkeypatch) -> None:
    monkeypatch.delenv("DISCORD_BOT_TOKEN", raising=False)
    monkeypatch.setattr("discord_transcripts.directory._load_dotenv", lambda: None)

    result = CliRunner().invoke(cli, ["render", _write_export(tmp_path, EXPORT), "--rest"])

    assert result.exit_code == 1
    assert "DISCORD_BOT_TOKEN" in result.output


def test_non_mapping_config_is_rejected(tmp_path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text("- a\n- b\n", encoding="utf-8")

    with pytest.raises(click.ClickException, match="must be a mapping"):
        load_config(path)
