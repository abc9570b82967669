"""CLI commands against a temporary config and database."""

import asyncio
import json

import pytest
from click.testing import CliRunner

from phantom_chat import config as config_module
from phantom_chat.cli.main import main
from phantom_chat.config import ChatConfig, load_config, save_config
from phantom_chat.models.message import StoredMessage
from phantom_chat.store.sqlite import SqliteStore


@pytest.fixture
def cfg(tmp_path, monkeypatch):
    path = tmp_path / "config.json"
    monkeypatch.setattr(config_module, "CONFIG_FILE", path)
    cfg = ChatConfig(db_path=str(tmp_path / "chat.db"))
    save_config(cfg, path)
    return cfg


def seed(db_path: str, *messages: StoredMessage) -> None:
    async def _seed():
        store = SqliteStore(db_path)
        for msg in messages:
            await store.save_message(msg)
        await store.close()
    asyncio.run(_seed())


def test_profile(cfg):
    runner = CliRunner()
    result = runner.invoke(main, ["profile"])
    assert result.exit_code == 0
    assert "not set" in result.output

    result = runner.invoke(main, ["profile", "Ana"])
    assert result.exit_code == 0
    assert runner.invoke(main, ["profile"]).output.strip() == "Ana"


def test_contacts(cfg):
    runner = CliRunner()
    assert runner.invoke(main, ["contacts", "add", "12D3KooWBob", "Bob"]).exit_code == 0

    result = runner.invoke(main, ["contacts", "list", "--json"])
    assert result.exit_code == 0
    contacts = json.loads(result.output)
    assert [(c["peer_id"], c["name"]) for c in contacts] == [("12D3KooWBob", "Bob")]

    assert runner.invoke(main, ["contacts", "rm", "12D3KooWBob"]).exit_code == 0
    assert json.loads(runner.invoke(main, ["contacts", "list", "--json"]).output) == []


def test_config_set_node(cfg):
    result = CliRunner().invoke(main, ["config", "set-node", "http://10.0.0.5:7733"])
    assert result.exit_code == 0
    assert load_config().node_url == "http://10.0.0.5:7733"
    assert load_config().db_path == cfg.db_path


def test_history(cfg):
    seed(
        cfg.db_path,
        StoredMessage(uuid="m1", sender="Alice", content="first", channel="global-gossip", timestamp=1_700_000_000_000),
        StoredMessage(uuid="m2", sender="Bob", content="second", channel="global-gossip", timestamp=1_700_000_060_000),
        StoredMessage(uuid="m3", sender="Eve", content="elsewhere", channel="12D3KooWEve", timestamp=1_700_000_000_000),
    )
    result = CliRunner().invoke(main, ["history"])
    assert result.exit_code == 0
    assert "first" in result.output
    assert "second" in result.output
    assert "elsewhere" not in result.output

    result = CliRunner().invoke(main, ["history", "--search", "sec"])
    assert "first" not in result.output
    assert "second" in result.output


def test_history_empty_channel(cfg):
    result = CliRunner().invoke(main, ["history", "nobody"])
    assert result.exit_code == 0
    assert "no messages" in result.output


def test_invalid_config_falls_back_to_defaults(tmp_path):
    path = tmp_path / "config.json"
    path.write_text("{not json")
    assert load_config(path) == ChatConfig()
