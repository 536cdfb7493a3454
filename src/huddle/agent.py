"""Agent runner: system prompt, history rendering and the Anthropic-backed runner."""

from __future__ import annotations

import asyncio
import base64
import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Protocol

import anthropic

from huddle import log
from huddle.auth import ResolvedCredential
from huddle.log import LogContext
from huddle.responder import ChannelInfo, ResponseStream, UserInfo
from huddle.sandbox import SandboxConfig
from huddle.store import Attachment, LoggedMessage

SLACK_MAX_LENGTH = 40000
OAUTH_BETA = "oauth-2025-04-20"
SILENT_MARKER = "[SILENT]"

# $ per million tokens: input, output, cache read, cache write
_PRICING: dict[str, tuple[float, float, float, float]] = {
    "claude-opus-4-6": (5, 25, 0.5, 6.25),
    "claude-opus-4-5": (5, 25, 0.5, 6.25),
    "claude-opus-4-1": (15, 75, 1.5, 18.75),
    "claude-sonnet-4-5": (3, 15, 0.3, 3.75),
    "claude-sonnet-4-0": (3, 15, 0.3, 3.75),
    "claude-haiku-4-5": (1, 5, 0.1, 1.25),
}

_IMAGE_MIME_TYPES: dict[str, str] = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
}


def _get_image_mime_type(filename: str) -> str | None:
    ext = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
    return _IMAGE_MIME_TYPES.get(ext)


# ============================================================================
# Run contract
# ============================================================================


@dataclass
class RunRequest:
    channel_id: str
    channel_dir: str
    workspace_path: str
    ts: str
    text: str
    user_name: str | None
    system_prompt: str
    memory: str
    history: list[LoggedMessage]
    credential: ResolvedCredential
    model: str
    max_output_tokens: int
    context_window: int
    attachments: list[Attachment] = field(default_factory=list)
    channel_name: str | None = None


@dataclass
class RunResult:
    stop_reason: str  # "completed" | "aborted" | "error"
    error_message: str | None = None
    usage: dict[str, Any] | None = None


class AgentRunner(Protocol):
    async def run(self, request: RunRequest, stream: ResponseStream) -> RunResult: ...

    def abort(self) -> None: ...

    def reset(self) -> None: ...


# ============================================================================
# Memory & system prompt
# ============================================================================


def get_memory(channel_dir: str) -> str:
    parts: list[str] = []

    workspace_memory = os.path.join(channel_dir, "..", "MEMORY.md")
    if os.path.exists(workspace_memory):
        try:
            content = Path(workspace_memory).read_text("utf-8").strip()
            if content:
                parts.append(f"### Global Workspace Memory\n{content}")
        except OSError as exc:
            log.log_warning("Failed to read workspace memory", f"{workspace_memory}: {exc}")

    channel_memory = os.path.join(channel_dir, "MEMORY.md")
    if os.path.exists(channel_memory):
        try:
            content = Path(channel_memory).read_text("utf-8").strip()
            if content:
                parts.append(f"### Channel-Specific Memory\n{content}")
        except OSError as exc:
            log.log_warning("Failed to read channel memory", f"{channel_memory}: {exc}")

    return "\n\n".join(parts) if parts else "(no working memory yet)"


def build_system_prompt(
    workspace_path: str,
    channel_id: str,
    sandbox_config: SandboxConfig,
    channels: list[ChannelInfo],
    users: list[UserInfo],
) -> str:
    channel_path = f"{workspace_path}/{channel_id}"

    channel_mappings = (
        "\n".join(f"{c.id}\t#{c.name}" for c in channels) if channels else "(no channels loaded)"
    )
    user_mappings = (
        "\n".join(f"{u.id}\t@{u.user_name}\t{u.display_name}" for u in users)
        if users
        else "(no users loaded)"
    )

    tz_name = str(datetime.now().astimezone().tzinfo or "UTC")

    if sandbox_config.type == "docker":
        env_desc = f"The workspace is mounted inside the Docker container `{sandbox_config.container}`."
    else:
        env_desc = "The workspace lives directly on the host machine."

    return f"""You are huddle, a Slack bot assistant. Be concise. No emojis.

## Context
- Each user message starts with its local time and author: [YYYY-MM-DD HH:MM:SS+ZZ:ZZ] [username].
- You see the most recent part of this channel's history. Older messages are kept in {channel_path}/log.jsonl.

## Slack Formatting (mrkdwn, NOT Markdown)
Bold: *text*, Italic: _text_, Code: `code`, Block: ```code```, Links: <url|text>
Do NOT use **double asterisks** or [markdown](links).

## Slack IDs
Channels: {channel_mappings}

Users: {user_mappings}

When mentioning users, use <@username> format (e.g., <@mario>).

## Environment
{env_desc}

## Workspace Layout
{workspace_path}/
├── MEMORY.md                    # Global memory (all channels)
├── events/                      # Scheduled events
└── {channel_id}/                # This channel
    ├── MEMORY.md                # Channel-specific memory
    ├── log.jsonl                # Message history
    └── attachments/             # User-shared files

## Events
Scheduled events wake you up with a message like:
```
[EVENT:dentist-reminder.json:one-shot:2025-12-14T09:00:00+01:00] Dentist tomorrow
```
Periodic events use cron schedules in the {tz_name} timezone unless they name another one.

### Silent Completion
For periodic events where there's nothing to report, respond with just `{SILENT_MARKER}` (no other text). This deletes the status message and posts nothing to Slack.

## Memory
MEMORY.md files persist context across conversations.
- Global ({workspace_path}/MEMORY.md): preferences, project info
- Channel ({channel_path}/MEMORY.md): channel-specific decisions, ongoing work
Their current contents follow this prompt.
"""


# ============================================================================
# Message rendering
# ============================================================================


def _format_local_time(when: datetime) -> str:
    ts_str = when.strftime("%Y-%m-%d %H:%M:%S%z")
    # +0100 -> +01:00
    if len(ts_str) > 5 and ts_str[-5] in "+-":
        ts_str = ts_str[:-2] + ":" + ts_str[-2:]
    return ts_str


def _attachment_paths(attachments: list[Attachment], workspace_path: str) -> str:
    if not attachments:
        return ""
    paths = "\n".join(f"{workspace_path}/{a.local}" for a in attachments)
    return f"\n\n<slack_attachments>\n{paths}\n</slack_attachments>"


def render_entry(entry: LoggedMessage, workspace_path: str) -> str:
    if entry.is_bot:
        return entry.text
    date = entry.date[:19].replace("T", " ")
    return (
        f"[{date}] [{entry.author}]: {entry.text}"
        + _attachment_paths(entry.attachments, workspace_path)
    )


def history_to_messages(entries: list[LoggedMessage], workspace_path: str) -> list[dict[str, Any]]:
    """Turn log entries into alternating user/assistant messages.

    Consecutive entries from the same side are merged; the conversation
    must open with a user turn, so leading bot entries are dropped.
    """
    messages: list[dict[str, Any]] = []
    for entry in entries:
        role = "assistant" if entry.is_bot else "user"
        if not messages and role == "assistant":
            continue
        text = render_entry(entry, workspace_path)
        if messages and messages[-1]["role"] == role:
            messages[-1]["content"] += "\n\n" + text
        else:
            messages.append({"role": role, "content": text})
    return messages


def build_user_content(request: RunRequest, now: datetime | None = None) -> list[dict[str, Any]]:
    """The triggering message, with images inlined and other files as paths."""
    when = (now or datetime.now()).astimezone()
    text = f"[{_format_local_time(when)}] [{request.user_name or 'unknown'}]: {request.text}"

    images: list[dict[str, Any]] = []
    others: list[Attachment] = []
    for a in request.attachments:
        host_path = os.path.join(request.channel_dir, "..", a.local)
        mime_type = _get_image_mime_type(a.local)
        if mime_type and os.path.exists(host_path):
            try:
                data = base64.b64encode(Path(host_path).read_bytes()).decode("ascii")
            except OSError:
                others.append(a)
                continue
            images.append(
                {"type": "image", "source": {"type": "base64", "media_type": mime_type, "data": data}}
            )
        else:
            others.append(a)

    text += _attachment_paths(others, request.workspace_path)
    return [{"type": "text", "text": text}, *images]


def build_messages(request: RunRequest, now: datetime | None = None) -> list[dict[str, Any]]:
    messages = history_to_messages(request.history, request.workspace_path)
    content = build_user_content(request, now)
    if messages and messages[-1]["role"] == "user":
        messages[-1] = {
            "role": "user",
            "content": [{"type": "text", "text": messages[-1]["content"]}, *content],
        }
    else:
        messages.append({"role": "user", "content": content})
    return messages


def split_for_slack(text: str) -> list[str]:
    if len(text) <= SLACK_MAX_LENGTH:
        return [text]
    parts: list[str] = []
    remaining = text
    part_num = 1
    while remaining:
        chunk = remaining[: SLACK_MAX_LENGTH - 50]
        remaining = remaining[SLACK_MAX_LENGTH - 50 :]
        suffix = f"\n_(continued {part_num}...)_" if remaining else ""
        parts.append(chunk + suffix)
        part_num += 1
    return parts


def calculate_cost(model: str, usage: dict[str, Any]) -> dict[str, Any]:
    """Fill ``usage["cost"]`` from per-million-token prices; unknown models cost 0."""
    price = next((p for prefix, p in _PRICING.items() if model.startswith(prefix)), (0, 0, 0, 0))
    cost = {
        "input": price[0] / 1_000_000 * usage.get("input", 0),
        "output": price[1] / 1_000_000 * usage.get("output", 0),
        "cacheRead": price[2] / 1_000_000 * usage.get("cacheRead", 0),
        "cacheWrite": price[3] / 1_000_000 * usage.get("cacheWrite", 0),
    }
    cost["total"] = sum(cost.values())
    usage["cost"] = cost
    return usage


# ============================================================================
# Anthropic runner
# ============================================================================


def create_client(credential: ResolvedCredential) -> anthropic.AsyncAnthropic:
    if credential.kind == "oauth" or "sk-ant-oat" in credential.value:
        return anthropic.AsyncAnthropic(
            api_key=None,
            auth_token=credential.value,
            default_headers={"anthropic-beta": OAUTH_BETA},
        )
    return anthropic.AsyncAnthropic(api_key=credential.value)


class AnthropicRunner:
    """Streams one assistant reply per run into a ``ResponseStream``.

    Completed paragraphs are posted as they arrive; the final text then
    replaces the streamed message. ``abort()`` cancels the in-flight stream
    and the run reports ``aborted``.
    """

    def __init__(
        self,
        *,
        client_factory: Callable[[ResolvedCredential], Any] = create_client,
    ) -> None:
        self._client_factory = client_factory
        self._abort = asyncio.Event()

    def abort(self) -> None:
        self._abort.set()

    def reset(self) -> None:
        """Forget an abort that arrived after the previous run had already returned."""
        self._abort.clear()

    async def run(self, request: RunRequest, stream: ResponseStream) -> RunResult:
        log_ctx = LogContext(request.channel_id, request.user_name, request.channel_name)
        usage: dict[str, Any] = {"input": 0, "output": 0, "cacheRead": 0, "cacheWrite": 0}

        try:
            task = asyncio.ensure_future(self._stream(request, stream, log_ctx, usage))
            abort_wait = asyncio.ensure_future(self._abort.wait())
            done, _ = await asyncio.wait({task, abort_wait}, return_when=asyncio.FIRST_COMPLETED)

            if task not in done:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                return RunResult("aborted", usage=calculate_cost(request.model, usage))

            abort_wait.cancel()
            try:
                final_text = task.result()
            except anthropic.APIError as exc:
                log.log_agent_error(log_ctx, str(exc))
                try:
                    await stream.replace_message("_Sorry, something went wrong_")
                    await stream.respond_in_thread(f"_Error: {exc}_")
                except Exception as post_exc:
                    log.log_warning("Failed to post error message", str(post_exc))
                return RunResult("error", str(exc), calculate_cost(request.model, usage))
        finally:
            self._abort.clear()

        calculate_cost(request.model, usage)
        await self._finish(request, stream, log_ctx, final_text, usage)
        return RunResult("completed", usage=usage)

    async def _stream(
        self,
        request: RunRequest,
        stream: ResponseStream,
        log_ctx: LogContext,
        usage: dict[str, Any],
    ) -> str:
        client = self._client_factory(request.credential)
        params: dict[str, Any] = {
            "model": request.model,
            "max_tokens": request.max_output_tokens,
            "system": [
                {"type": "text", "text": request.system_prompt},
                {"type": "text", "text": f"## Current Memory\n{request.memory}"},
            ],
            "messages": build_messages(request),
        }

        log.log_response_start(log_ctx)
        text = ""
        flushed = 0
        async with client.messages.stream(**params) as events:
            async for event in events:
                if event.type == "message_start":
                    u = event.message.usage
                    usage["input"] = u.input_tokens or 0
                    usage["output"] = u.output_tokens or 0
                    usage["cacheRead"] = getattr(u, "cache_read_input_tokens", 0) or 0
                    usage["cacheWrite"] = getattr(u, "cache_creation_input_tokens", 0) or 0
                elif event.type == "content_block_delta" and event.delta.type == "text_delta":
                    text += event.delta.text
                    # post whole paragraphs only
                    boundary = text.rfind("\n\n")
                    if boundary > flushed:
                        chunk = text[flushed:boundary].strip()
                        flushed = boundary + 2
                        if chunk and not text.lstrip().startswith(SILENT_MARKER):
                            await stream.respond(chunk, should_log=False)
                elif event.type == "message_delta":
                    u = event.usage
                    if getattr(u, "output_tokens", None) is not None:
                        usage["output"] = u.output_tokens
                    if getattr(u, "input_tokens", None) is not None:
                        usage["input"] = u.input_tokens
        return text

    async def _finish(
        self,
        request: RunRequest,
        stream: ResponseStream,
        log_ctx: LogContext,
        final_text: str,
        usage: dict[str, Any],
    ) -> None:
        if final_text.strip().startswith(SILENT_MARKER):
            try:
                await stream.delete_message()
                log.log_info("Silent response - deleted message and thread")
            except Exception as exc:
                log.log_warning("Failed to delete message for silent response", str(exc))
            return

        if final_text.strip():
            log.log_response(log_ctx, final_text)
            parts = split_for_slack(final_text)
            main_text = (
                final_text[: SLACK_MAX_LENGTH - 50] + "\n\n_(see thread for full response)_"
                if len(parts) > 1
                else final_text
            )
            try:
                await stream.replace_message(main_text, should_log=True)
                if len(parts) > 1:
                    for part in parts:
                        await stream.respond_in_thread(part)
            except Exception as exc:
                log.log_warning("Failed to replace message with final text", str(exc))

        if usage["cost"]["total"] > 0:
            context_tokens = usage["input"] + usage["output"] + usage["cacheRead"] + usage["cacheWrite"]
            summary = log.log_usage_summary(log_ctx, usage, context_tokens, request.context_window)
            try:
                await stream.respond_in_thread(summary)
            except Exception as exc:
                log.log_warning("Failed to post usage summary", str(exc))


def create_runner() -> AgentRunner:
    return AnthropicRunner()
