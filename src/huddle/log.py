"""Colored console logging with timestamps and channel context."""

from __future__ import annotations

from datetime import datetime
from typing import Any


class LogContext:
    __slots__ = ("channel_id", "user_name", "channel_name")

    def __init__(
        self,
        channel_id: str,
        user_name: str | None = None,
        channel_name: str | None = None,
    ) -> None:
        self.channel_id = channel_id
        self.user_name = user_name
        self.channel_name = channel_name


# ── ANSI helpers ─────────────────────────────────────────────────────

_GREEN = "\033[32m"
_YELLOW = "\033[33m"
_BLUE = "\033[34m"
_RED = "\033[31m"
_DIM = "\033[2m"
_RESET = "\033[0m"

_MAX_DETAIL = 1000


def _timestamp() -> str:
    return f"[{datetime.now().strftime('%H:%M:%S')}]"


def _format_context(ctx: LogContext) -> str:
    if ctx.channel_id.startswith("D"):
        return f"[DM:{ctx.user_name or ctx.channel_id}]"
    channel = ctx.channel_name or ctx.channel_id
    user = ctx.user_name or "unknown"
    ch = channel if channel.startswith("#") else f"#{channel}"
    return f"[{ch}:{user}]"


def _truncate(text: str, max_len: int = _MAX_DETAIL) -> str:
    if len(text) <= max_len:
        return text
    return f"{text[:max_len]}\n(truncated at {max_len} chars)"


def _indent(text: str) -> str:
    return "\n".join(f"           {line}" for line in text.split("\n"))


def _line(color: str, context: str, message: str) -> None:
    print(f"{color}{_timestamp()} {context} {message}{_RESET}")


def _detail(text: str) -> None:
    print(f"{_DIM}{_indent(_truncate(text))}{_RESET}")


def format_tokens(count: int) -> str:
    if count < 1000:
        return str(count)
    if count < 10000:
        return f"{count / 1000:.1f}k"
    if count < 1_000_000:
        return f"{round(count / 1000)}k"
    return f"{count / 1_000_000:.1f}M"


# ── Channel activity ─────────────────────────────────────────────────


def log_user_message(ctx: LogContext, text: str) -> None:
    _line(_GREEN, _format_context(ctx), text)


def log_run_start(ctx: LogContext, text: str) -> None:
    _line(_YELLOW, _format_context(ctx), f"▶ Starting run: {text[:50]}")


def log_run_end(ctx: LogContext, stop_reason: str, duration_ms: float) -> None:
    _line(
        _YELLOW,
        _format_context(ctx),
        f"■ Run finished ({stop_reason}, {duration_ms / 1000:.1f}s)",
    )


def log_stop_request(ctx: LogContext) -> None:
    _line(_GREEN, _format_context(ctx), "stop")
    _line(_YELLOW, _format_context(ctx), "⊗ Stop requested - aborting")


def log_response_start(ctx: LogContext) -> None:
    _line(_YELLOW, _format_context(ctx), "→ Streaming response...")


def log_response(ctx: LogContext, text: str) -> None:
    _line(_YELLOW, _format_context(ctx), "💬 Response")
    _detail(text)


def log_context_window(
    ctx: LogContext,
    message_count: int,
    total_tokens: int,
    available_tokens: int,
    dropped_count: int,
) -> None:
    _line(
        _BLUE,
        _format_context(ctx),
        f"⧉ Context window: {message_count} messages, "
        f"{format_tokens(total_tokens)} / {format_tokens(max(available_tokens, 0))} tokens"
        + (f", {dropped_count} older dropped" if dropped_count else ""),
    )


def log_agent_error(ctx: LogContext | str, error: str) -> None:
    context = "[system]" if isinstance(ctx, str) else _format_context(ctx)
    _line(_RED, context, "✗ Agent error")
    _detail(error)


# ── Authentication ───────────────────────────────────────────────────


def log_login_started(channel_id: str) -> None:
    _line(_BLUE, f"[{channel_id}]", "🔑 Starting OAuth login")


def log_login_result(channel_id: str, success: bool, error: str | None = None) -> None:
    if success:
        _line(_BLUE, f"[{channel_id}]", "✓ OAuth login successful")
    else:
        _line(_YELLOW, f"[{channel_id}]", "✗ OAuth login failed")
        if error:
            _detail(error)


# ── System ───────────────────────────────────────────────────────────


def log_info(message: str) -> None:
    _line(_BLUE, "[system]", message)


def log_warning(message: str, details: str | None = None) -> None:
    _line(_YELLOW, "[system]", f"⚠ {message}")
    if details:
        _detail(details)


def log_usage_summary(
    ctx: LogContext,
    usage: dict[str, Any],
    context_tokens: int | None = None,
    context_window: int | None = None,
) -> str:
    """Print a one-line usage summary and return the Slack-formatted version."""
    cost = usage.get("cost", {})
    has_cache = usage.get("cacheRead", 0) > 0 or usage.get("cacheWrite", 0) > 0

    lines = ["*Usage Summary*", f"Tokens: {usage['input']:,} in, {usage['output']:,} out"]
    if has_cache:
        lines.append(f"Cache: {usage['cacheRead']:,} read, {usage['cacheWrite']:,} write")
    if context_tokens and context_window:
        pct = (context_tokens / context_window) * 100
        lines.append(
            f"Context: {format_tokens(context_tokens)} / "
            f"{format_tokens(context_window)} ({pct:.1f}%)"
        )
    cost_line = f"Cost: ${cost.get('input', 0):.4f} in, ${cost.get('output', 0):.4f} out"
    if has_cache:
        cost_line += (
            f", ${cost.get('cacheRead', 0):.4f} cache read, "
            f"${cost.get('cacheWrite', 0):.4f} cache write"
        )
    lines.append(cost_line)
    lines.append(f"*Total: ${cost.get('total', 0):.4f}*")

    console = f"{usage['input']:,} in + {usage['output']:,} out"
    if has_cache:
        console += f" ({usage['cacheRead']:,} cache read, {usage['cacheWrite']:,} cache write)"
    console += f" = ${cost.get('total', 0):.4f}"
    _line(_YELLOW, _format_context(ctx), "💰 Usage")
    print(f"{_DIM}           {console}{_RESET}")

    return "\n".join(lines)


def log_startup(working_dir: str, sandbox: str) -> None:
    print("Starting huddle...")
    print(f"  Working directory: {working_dir}")
    print(f"  Sandbox: {sandbox}")


def log_connected() -> None:
    print("⚡️ huddle connected and listening!")
    print()


def log_disconnected() -> None:
    print("huddle disconnected.")


def log_backfill_start(channel_count: int) -> None:
    log_info(f"Backfilling {channel_count} channels...")


def log_backfill_channel(channel_name: str, message_count: int) -> None:
    log_info(f"  #{channel_name}: {message_count} messages")


def log_backfill_complete(total_messages: int, duration_ms: float) -> None:
    log_info(f"Backfill complete: {total_messages} messages in {duration_ms / 1000:.1f}s")
