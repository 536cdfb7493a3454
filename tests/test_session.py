"""Tests for huddle.session and huddle.main argument parsing."""

import os

import pytest

from huddle.main import parse_args
from huddle.session import SessionRegistry
from huddle.store import ChannelStore

from conftest import FakeRunner


class TestSessionRegistry:
    def test_created_once_per_channel(self, tmpdir: str) -> None:
        created: list[str] = []

        def factory(channel_id: str) -> FakeRunner:
            created.append(channel_id)
            return FakeRunner()

        registry = SessionRegistry(ChannelStore(tmpdir, "xoxb-fake"), factory)
        first = registry.get_or_create("C1")
        assert registry.get_or_create("C1") is first
        registry.get_or_create("C2")

        assert created == ["C1", "C2"]
        assert len(registry) == 2
        assert "C1" in registry
        assert first.channel_dir == os.path.join(tmpdir, "C1")

    def test_is_running(self, tmpdir: str) -> None:
        registry = SessionRegistry(ChannelStore(tmpdir, "xoxb-fake"), lambda _c: FakeRunner())
        assert not registry.is_running("C1")
        registry.get_or_create("C1").running = True
        assert registry.is_running("C1")
        assert registry.get("C9") is None


class TestParseArgs:
    def test_working_dir_and_sandbox(self, tmpdir: str) -> None:
        parsed = parse_args(["--sandbox=docker:box", tmpdir])
        assert parsed["working_dir"] == os.path.abspath(tmpdir)
        assert parsed["sandbox"].container == "box"

    def test_separate_sandbox_value(self) -> None:
        parsed = parse_args(["--sandbox", "host", "work"])
        assert parsed["sandbox"].type == "host"
        assert parsed["working_dir"] == os.path.abspath("work")

    def test_missing_working_dir(self) -> None:
        assert parse_args([])["working_dir"] is None

    def test_bad_sandbox_exits(self) -> None:
        with pytest.raises(SystemExit):
            parse_args(["--sandbox=vm", "work"])
