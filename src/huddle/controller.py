"""Run lifecycle: routes inbound channel events and drives one run per channel.

``dispatch`` is synchronous on purpose: it checks and sets
``session.running`` before yielding to the event loop, so two events for the
same channel can never both start a run. A busy channel does not queue; the
event only gets the stop/command fast path.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Coroutine

from huddle import log
from huddle.agent import RunRequest, build_system_prompt, get_memory
from huddle.auth import OAuthFlow, resolve_credential
from huddle.commands import NOT_AUTHENTICATED_TEXT, CommandHandler, is_command
from huddle.context import ContextBudget
from huddle.log import LogContext
from huddle.responder import ChatTransport, ResponseStream
from huddle.sandbox import SandboxConfig
from huddle.session import ChannelSession, SessionRegistry
from huddle.settings import SettingsManager
from huddle.store import Attachment

BUSY_TEXT = "_Already working. Say `stop` to cancel._"

# dispatch outcomes
STOP = "stop"
COMMAND = "command"
BUSY = "busy"
STARTED = "started"


@dataclass
class InboundEvent:
    channel: str
    user: str
    text: str
    ts: str
    thread_ts: str | None = None
    attachments: list[Attachment] = field(default_factory=list)
    is_event: bool = False


class RunController:
    def __init__(
        self,
        registry: SessionRegistry,
        transport: ChatTransport,
        flow: OAuthFlow,
        settings: SettingsManager,
        sandbox: SandboxConfig,
        working_dir: str,
    ) -> None:
        self._registry = registry
        self._transport = transport
        self._flow = flow
        self._commands = CommandHandler(flow, transport)
        self._settings = settings
        self._sandbox = sandbox
        self._working_dir = working_dir
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def commands(self) -> CommandHandler:
        return self._commands

    def is_running(self, channel_id: str) -> bool:
        return self._registry.is_running(channel_id)

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for every task dispatched so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ── Routing ──────────────────────────────────────────────────────

    def dispatch(self, event: InboundEvent) -> str:
        """Route one inbound event and return what was done with it."""
        text = event.text.strip()

        if not event.is_event:
            if text.lower() == "stop":
                self._spawn(self.handle_stop(event.channel))
                return STOP
            if is_command(text) or self._flow.is_auth_response(event.channel, text):
                self._spawn(self._commands.try_handle(event.channel, text))
                return COMMAND

        session = self._registry.get_or_create(event.channel)
        if session.running:
            if not event.is_event:
                self._spawn(self._post_busy(event.channel))
            return BUSY

        session.running = True
        session.stop_requested = False
        session.stop_message_ts = None
        session.runner.reset()
        self._spawn(self.handle_event(event, session))
        return STARTED

    async def _post_busy(self, channel_id: str) -> None:
        try:
            await self._transport.post_message(channel_id, BUSY_TEXT)
        except Exception as exc:
            log.log_warning(f"[{channel_id}] Could not post busy notice", str(exc))

    # ── Stop ─────────────────────────────────────────────────────────

    async def handle_stop(self, channel_id: str) -> None:
        session = self._registry.get(channel_id)
        if session is not None and session.running:
            session.stop_requested = True
            session.runner.abort()
            log.log_stop_request(self._log_context(channel_id, None))
            ts = await self._transport.post_message(channel_id, "_Stopping..._")
            # the run may have ended while the notice was being posted
            if session.running and session.stop_requested:
                session.stop_message_ts = ts
        else:
            await self._transport.post_message(channel_id, "_Nothing running_")

    # ── Run ──────────────────────────────────────────────────────────

    def _log_context(self, channel_id: str, user_id: str | None) -> LogContext:
        user = self._transport.get_user(user_id) if user_id else None
        channel = self._transport.get_channel(channel_id)
        return LogContext(
            channel_id=channel_id,
            user_name=user.user_name if user else user_id,
            channel_name=channel.name if channel else None,
        )

    async def handle_event(self, event: InboundEvent, session: ChannelSession) -> None:
        """Run the agent for *event*. Callers must already have set ``session.running``."""
        log_ctx = self._log_context(event.channel, event.user)
        started = time.monotonic()
        stop_reason = "error"
        stream: ResponseStream | None = None
        log.log_run_start(log_ctx, event.text)

        try:
            credential = await resolve_credential(self._flow)
            if credential is None:
                stop_reason = "unauthenticated"
                await self._transport.post_message(event.channel, NOT_AUTHENTICATED_TEXT)
                return

            synced = session.history.sync(exclude_from_ts=event.ts)
            if synced > 0:
                log.log_info(f"[{event.channel}] Synced {synced} messages from log")

            workspace_path = self._sandbox.get_workspace_path(self._working_dir)
            memory = get_memory(session.channel_dir)
            system_prompt = build_system_prompt(
                workspace_path,
                event.channel,
                self._sandbox,
                self._transport.get_all_channels(),
                self._transport.get_all_users(),
            )
            budget = ContextBudget.compute(
                self._settings.get_max_input_tokens(),
                self._settings.get_reserve_tokens(),
                system_prompt=system_prompt,
                memory=memory,
                prompt=event.text,
            )
            window = session.history.window(budget)
            log.log_context_window(
                log_ctx,
                window.message_count,
                window.total_tokens,
                budget.available_for_history,
                window.dropped_count,
            )

            stream = ResponseStream(
                self._transport,
                event.channel,
                store=session.store,
                thread_ts=event.thread_ts,
                event_text=event.text if event.is_event else None,
            )
            await stream.set_typing(True)
            await stream.set_working(True)

            request = RunRequest(
                channel_id=event.channel,
                channel_dir=session.channel_dir,
                workspace_path=workspace_path,
                ts=event.ts,
                text=event.text,
                user_name=log_ctx.user_name,
                system_prompt=system_prompt,
                memory=memory,
                history=window.entries,
                credential=credential,
                model=self._settings.get_default_model(),
                max_output_tokens=self._settings.get_reserve_tokens(),
                context_window=self._settings.get_max_input_tokens(),
                attachments=event.attachments,
                channel_name=log_ctx.channel_name,
            )
            result = await session.runner.run(request, stream)
            stop_reason = result.stop_reason
            await stream.set_working(False)

            if result.stop_reason == "aborted" and session.stop_requested:
                if session.stop_message_ts:
                    await self._transport.update_message(
                        event.channel, session.stop_message_ts, "_Stopped_"
                    )
                    session.stop_message_ts = None
                else:
                    await self._transport.post_message(event.channel, "_Stopped_")
        except Exception as exc:
            log.log_agent_error(log_ctx, f"Run error: {exc}")
            if stream is not None:
                try:
                    await stream.set_working(False)
                except Exception as post_exc:
                    log.log_warning(
                        f"[{event.channel}] Could not clear working indicator", str(post_exc)
                    )
        finally:
            session.running = False
            log.log_run_end(log_ctx, stop_reason, (time.monotonic() - started) * 1000)
