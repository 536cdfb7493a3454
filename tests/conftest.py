"""Shared fixtures and fakes for the huddle tests."""

from __future__ import annotations

import asyncio
import json
import os
import tempfile
from typing import Any

import pytest

from huddle.agent import RunRequest, RunResult
from huddle.responder import ChannelInfo, ResponseStream, UserInfo
from huddle.store import LoggedMessage


@pytest.fixture
def tmpdir() -> str:
    with tempfile.TemporaryDirectory() as d:
        yield d


@pytest.fixture
def no_env_credentials(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    monkeypatch.delenv("ANTHROPIC_OAUTH_TOKEN", raising=False)


@pytest.fixture
def api_key_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("ANTHROPIC_OAUTH_TOKEN", raising=False)
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-test")


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTransport:
    """Records every outbound call; timestamps are handed out in order."""

    def __init__(self, *, delay: float = 0.0) -> None:
        self.calls: list[tuple[Any, ...]] = []
        self.fail_deletes: set[str] = set()
        self.delay = delay
        self._next_ts = 2000
        self.users = {"U1": UserInfo(id="U1", user_name="mario", display_name="Mario")}
        self.channels = {"C1": ChannelInfo(id="C1", name="general")}

    def _ts(self) -> str:
        self._next_ts += 1
        return f"{self._next_ts}.000100"

    async def _pause(self) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)

    async def post_message(self, channel: str, text: str) -> str:
        await self._pause()
        ts = self._ts()
        self.calls.append(("post", channel, text, ts))
        return ts

    async def update_message(self, channel: str, ts: str, text: str) -> None:
        await self._pause()
        self.calls.append(("update", channel, ts, text))

    async def post_in_thread(self, channel: str, thread_ts: str, text: str) -> str:
        await self._pause()
        ts = self._ts()
        self.calls.append(("thread", channel, thread_ts, text, ts))
        return ts

    async def delete_message(self, channel: str, ts: str) -> None:
        await self._pause()
        if ts in self.fail_deletes:
            raise RuntimeError(f"cannot delete {ts}")
        self.calls.append(("delete", channel, ts))

    async def upload_file(
        self,
        channel: str,
        file_path: str,
        title: str | None = None,
        thread_ts: str | None = None,
    ) -> None:
        self.calls.append(("upload", channel, file_path, title, thread_ts))

    def get_user(self, user_id: str) -> UserInfo | None:
        return self.users.get(user_id)

    def get_channel(self, channel_id: str) -> ChannelInfo | None:
        return self.channels.get(channel_id)

    def get_all_users(self) -> list[UserInfo]:
        return list(self.users.values())

    def get_all_channels(self) -> list[ChannelInfo]:
        return list(self.channels.values())

    # helpers

    def posted_texts(self) -> list[str]:
        return [c[2] for c in self.calls if c[0] == "post"]

    def of_kind(self, kind: str) -> list[tuple[Any, ...]]:
        return [c for c in self.calls if c[0] == kind]


class FakeRunner:
    """Agent runner double.

    ``block=True`` keeps the run open until ``release`` is set or the run is
    aborted; ``error`` makes the run raise.
    """

    def __init__(
        self,
        *,
        block: bool = False,
        error: Exception | None = None,
        reply: str | None = None,
    ) -> None:
        self.block = block
        self.error = error
        self.reply = reply
        self.requests: list[RunRequest] = []
        self.abort_calls = 0
        self.results: list[str] = []
        self.active = 0
        self.max_active = 0
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.finished = asyncio.Event()
        self._abort = asyncio.Event()

    def abort(self) -> None:
        self.abort_calls += 1
        self._abort.set()

    def reset(self) -> None:
        self._abort.clear()

    async def run(self, request: RunRequest, stream: ResponseStream) -> RunResult:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            result = await self._run(request, stream)
            self.results.append(result.stop_reason)
            return result
        finally:
            self.active -= 1
            self.finished.set()

    async def _run(self, request: RunRequest, stream: ResponseStream) -> RunResult:
        self.requests.append(request)
        self.started.set()
        if self.error is not None:
            raise self.error
        if self.reply is not None:
            await stream.replace_message(self.reply, should_log=True)
        if self.block:
            waiters = {
                asyncio.ensure_future(self._abort.wait()),
                asyncio.ensure_future(self.release.wait()),
            }
            _, pending = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
            for w in pending:
                w.cancel()
        if self._abort.is_set():
            self._abort.clear()
            return RunResult("aborted")
        return RunResult("completed")


def make_entry(
    ts: str,
    text: str = "hello",
    *,
    user: str = "U1",
    is_bot: bool = False,
    date: str = "2025-01-01T10:00:00+00:00",
) -> LoggedMessage:
    return LoggedMessage(
        date=date,
        ts=ts,
        user="bot" if is_bot else user,
        text=text,
        is_bot=is_bot,
        user_name=None if is_bot else "mario",
    )


def write_log(channel_dir: str, entries: list[LoggedMessage]) -> None:
    os.makedirs(channel_dir, exist_ok=True)
    with open(os.path.join(channel_dir, "log.jsonl"), "a", encoding="utf-8") as fh:
        for e in entries:
            fh.write(json.dumps(e.to_dict()) + "\n")
