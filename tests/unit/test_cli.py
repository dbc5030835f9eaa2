"""Test the click CLI."""

import asyncio

from click.testing import CliRunner

from eventcore.cli import main
from eventcore.domain.events import NewEvent
from eventcore.infrastructure.event_store import EventStore
from eventcore.infrastructure.repository import JsonFileEventRepository


class TestCli:
    def test_help(self):
        result = CliRunner().invoke(main, ["--help"])
        assert result.exit_code == 0
        for command in ("run", "demo", "inspect"):
            assert command in result.output

    def test_demo_prints_statistics(self):
        result = CliRunner().invoke(main, ["demo", "--log-level", "ERROR"])
        assert result.exit_code == 0, result.output
        assert "UserCreated" in result.output
        assert "OrderCreated" in result.output
        assert "InventoryReleased" in result.output
        assert "Sagas:        2" in result.output

    def test_inspect_jsonl(self, tmp_path):
        path = tmp_path / "events.jsonl"

        async def seed():
            store = EventStore(JsonFileEventRepository(path))
            await store.append_events("n-1", "Note", [NewEvent("Noted"), NewEvent("Noted")])
            await store.append_events("n-2", "Note", [NewEvent("Archived")])

        asyncio.run(seed())
        result = CliRunner().invoke(main, ["inspect", str(path)])
        assert result.exit_code == 0, result.output
        assert "Events:       3  (last sequence 3)" in result.output
        assert "Streams:      2" in result.output
        assert "Noted" in result.output

    def test_inspect_missing_file(self, tmp_path):
        result = CliRunner().invoke(main, ["inspect", str(tmp_path / "nope.jsonl")])
        assert result.exit_code != 0
