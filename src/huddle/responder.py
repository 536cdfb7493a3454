"""Streaming response adapter: one evolving chat message per run.

Agent output arrives in pieces. ``ResponseStream`` folds them into a single
primary message (posted once, edited afterwards), optional thread replies
under it, and a `` ...`` suffix while the run is still working. Every
mutation goes through the stream's ``OperationQueue`` so edits to the same
message are applied strictly in the order they were requested.
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Protocol, TypeVar

from huddle import log
from huddle.store import ChannelStore

T = TypeVar("T")

WORKING_INDICATOR = " ..."

_EVENT_RE = re.compile(r"^\[EVENT:([^:]+):")


# ============================================================================
# Transport interface
# ============================================================================


@dataclass
class UserInfo:
    id: str
    user_name: str
    display_name: str


@dataclass
class ChannelInfo:
    id: str
    name: str


class ChatTransport(Protocol):
    """Outbound side of the chat platform, as the core sees it."""

    async def post_message(self, channel: str, text: str) -> str: ...

    async def update_message(self, channel: str, ts: str, text: str) -> None: ...

    async def post_in_thread(self, channel: str, thread_ts: str, text: str) -> str: ...

    async def delete_message(self, channel: str, ts: str) -> None: ...

    async def upload_file(
        self,
        channel: str,
        file_path: str,
        title: str | None = None,
        thread_ts: str | None = None,
    ) -> None: ...

    def get_user(self, user_id: str) -> UserInfo | None: ...

    def get_channel(self, channel_id: str) -> ChannelInfo | None: ...

    def get_all_users(self) -> list[UserInfo]: ...

    def get_all_channels(self) -> list[ChannelInfo]: ...


# ============================================================================
# Serialized operations
# ============================================================================


class OperationQueue:
    """Runs submitted coroutine factories one at a time, in arrival order.

    A single worker task drains the queue and exits when it is empty; the
    next ``submit`` starts a new one.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[tuple[Callable[[], Awaitable[Any]], asyncio.Future[Any]]] = (
            asyncio.Queue()
        )
        self._worker: asyncio.Task[None] | None = None

    async def submit(self, fn: Callable[[], Awaitable[T]]) -> T:
        loop = asyncio.get_running_loop()
        fut: asyncio.Future[T] = loop.create_future()
        self._queue.put_nowait((fn, fut))
        if self._worker is None or self._worker.done():
            self._worker = loop.create_task(self._drain())
        return await fut

    async def _drain(self) -> None:
        while not self._queue.empty():
            fn, fut = self._queue.get_nowait()
            if fut.cancelled():
                continue
            try:
                result = await fn()
            except Exception as exc:
                if not fut.done():
                    fut.set_exception(exc)
            else:
                if not fut.done():
                    fut.set_result(result)


# ============================================================================
# Response stream
# ============================================================================


@dataclass
class DeleteResult:
    deleted: int = 0
    failed: list[str] = field(default_factory=list)


class ResponseStream:
    def __init__(
        self,
        transport: ChatTransport,
        channel_id: str,
        *,
        store: ChannelStore | None = None,
        thread_ts: str | None = None,
        event_text: str | None = None,
    ) -> None:
        self._transport = transport
        self._channel_id = channel_id
        self._store = store
        self._thread_ts = thread_ts
        self._ops = OperationQueue()

        self._message_ts: str | None = None
        self._thread_message_ts: list[str] = []
        self._accumulated = ""
        self._working = True

        self._event_filename: str | None = None
        if event_text:
            m = _EVENT_RE.match(event_text)
            self._event_filename = m.group(1) if m else None

    @property
    def channel_id(self) -> str:
        return self._channel_id

    @property
    def message_ts(self) -> str | None:
        return self._message_ts

    @property
    def thread_message_ts(self) -> list[str]:
        return list(self._thread_message_ts)

    @property
    def text(self) -> str:
        return self._accumulated

    def _display(self) -> str:
        return self._accumulated + WORKING_INDICATOR if self._working else self._accumulated

    async def _render(self) -> None:
        display = self._display()
        if self._message_ts:
            await self._transport.update_message(self._channel_id, self._message_ts, display)
        elif self._thread_ts:
            self._message_ts = await self._transport.post_in_thread(
                self._channel_id, self._thread_ts, display
            )
        else:
            self._message_ts = await self._transport.post_message(self._channel_id, display)

    # ── Operations ───────────────────────────────────────────────────

    async def respond(self, text: str, should_log: bool = True) -> None:
        """Append *text* as a new line of the primary message."""

        async def op() -> None:
            self._accumulated = f"{self._accumulated}\n{text}" if self._accumulated else text
            await self._render()
            if should_log and self._store is not None and self._message_ts:
                self._store.log_bot_response(self._channel_id, text, self._message_ts)

        await self._ops.submit(op)

    async def replace_message(self, text: str, should_log: bool = False) -> None:
        async def op() -> None:
            self._accumulated = text
            await self._render()
            if should_log and self._store is not None and self._message_ts:
                self._store.log_bot_response(self._channel_id, text, self._message_ts)

        await self._ops.submit(op)

    async def respond_in_thread(self, text: str) -> None:
        """Post under the primary message. Ignored until one exists."""

        async def op() -> None:
            if self._message_ts:
                ts = await self._transport.post_in_thread(self._channel_id, self._message_ts, text)
                self._thread_message_ts.append(ts)

        await self._ops.submit(op)

    async def set_typing(self, typing: bool) -> None:
        """Post the placeholder if nothing has been posted yet."""
        if not typing or self._message_ts:
            return

        async def op() -> None:
            if self._message_ts:
                return
            self._accumulated = (
                f"_Starting event: {self._event_filename}_" if self._event_filename else "_Thinking_"
            )
            await self._render()

        await self._ops.submit(op)

    async def set_working(self, working: bool) -> None:
        async def op() -> None:
            self._working = working
            if self._message_ts:
                await self._transport.update_message(
                    self._channel_id, self._message_ts, self._display()
                )

        await self._ops.submit(op)

    async def upload_file(self, file_path: str, title: str | None = None) -> None:
        async def op() -> None:
            await self._transport.upload_file(self._channel_id, file_path, title, self._thread_ts)

        await self._ops.submit(op)

    async def delete_message(self) -> DeleteResult:
        """Delete everything this stream posted: thread replies newest first, then the primary.

        Thread deletions are best-effort. Safe to call when nothing was posted.
        """

        async def op() -> DeleteResult:
            result = DeleteResult()
            for ts in reversed(self._thread_message_ts):
                try:
                    await self._transport.delete_message(self._channel_id, ts)
                    result.deleted += 1
                except Exception as exc:
                    log.log_warning(f"[{self._channel_id}] Could not delete thread message", str(exc))
                    result.failed.append(ts)
            self._thread_message_ts.clear()
            if self._message_ts:
                ts, self._message_ts = self._message_ts, None
                self._accumulated = ""
                await self._transport.delete_message(self._channel_id, ts)
                result.deleted += 1
            return result

        return await self._ops.submit(op)
