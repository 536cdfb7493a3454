"""Context window: log sync and token-budgeted history selection.

The channel log is unbounded; the model input is not. Before every run the
session's ``ChannelHistory`` picks up whatever was appended to ``log.jsonl``
since it last looked (including everything logged while the process was
down), then ``select_window`` walks that history newest-first and keeps the
longest suffix that fits the budget left after the fixed overhead.
"""

from __future__ import annotations

import dataclasses
import os
from dataclasses import dataclass, field
from typing import Any

from huddle.store import LOG_FILENAME, LoggedMessage, read_log, ts_to_float
from huddle.tokens import (
    ATTACHMENT_TOKENS,
    ENTRY_METADATA_TOKENS,
    STRUCTURED_CHARS_PER_TOKEN,
    estimate_entry_tokens,
    estimate_structured_tokens,
    estimate_text_tokens,
)

# Floor for the single oversized entry kept when nothing else fits.
MIN_TRUNCATED_TOKENS = 256

TRUNCATION_MARKER = "\n[... truncated {omitted} chars ...]"


# ============================================================================
# Budget
# ============================================================================


@dataclass(frozen=True)
class ContextBudget:
    max_input_tokens: int
    reserved_for_output: int
    system_prompt_tokens: int = 0
    memory_tokens: int = 0
    tool_schema_tokens: int = 0
    # the triggering message is sent alongside the history
    prompt_tokens: int = 0

    @property
    def fixed_overhead(self) -> int:
        return (
            self.system_prompt_tokens
            + self.memory_tokens
            + self.tool_schema_tokens
            + self.prompt_tokens
        )

    @property
    def available_for_history(self) -> int:
        return self.max_input_tokens - self.reserved_for_output - self.fixed_overhead

    @classmethod
    def compute(
        cls,
        max_input_tokens: int,
        reserved_for_output: int,
        *,
        system_prompt: str = "",
        memory: str = "",
        tools: list[dict[str, Any]] | None = None,
        prompt: str = "",
    ) -> ContextBudget:
        return cls(
            max_input_tokens=max_input_tokens,
            reserved_for_output=reserved_for_output,
            system_prompt_tokens=estimate_text_tokens(system_prompt),
            memory_tokens=estimate_text_tokens(memory),
            tool_schema_tokens=estimate_structured_tokens(tools) if tools else 0,
            prompt_tokens=estimate_text_tokens(prompt),
        )


# ============================================================================
# Window selection
# ============================================================================


@dataclass(frozen=True)
class WindowResult:
    entries: list[LoggedMessage] = field(default_factory=list)
    total_tokens: int = 0
    dropped_count: int = 0
    truncated: bool = False

    @property
    def message_count(self) -> int:
        return len(self.entries)

    @property
    def date_range(self) -> tuple[str, str] | None:
        if not self.entries:
            return None
        return (self.entries[0].date, self.entries[-1].date)


def _truncate_entry(entry: LoggedMessage, token_budget: int) -> LoggedMessage:
    fixed = ENTRY_METADATA_TOKENS + ATTACHMENT_TOKENS * len(entry.attachments)
    text_budget = max(token_budget - fixed, 1)
    text = entry.text
    if estimate_text_tokens(text) <= text_budget:
        return entry
    # densest divisor first, then shrink until the estimate fits
    keep = min(len(text), int(text_budget * STRUCTURED_CHARS_PER_TOKEN))
    while True:
        omitted = len(text) - keep
        candidate = text[:keep] + TRUNCATION_MARKER.format(omitted=omitted)
        if keep == 0 or estimate_text_tokens(candidate) <= text_budget:
            break
        keep = int(keep * 0.8)
    return dataclasses.replace(entry, text=candidate)


def select_window(entries: list[LoggedMessage], available_tokens: int) -> WindowResult:
    """Keep the newest entries whose estimated cost fits *available_tokens*.

    Selection stops at the first entry (walking backward) that would exceed
    the budget, so the result is always a contiguous suffix in chronological
    order. If not even the newest entry fits, it is kept anyway, its text cut
    to ``max(available_tokens, MIN_TRUNCATED_TOKENS)`` with a truncation marker.
    """
    selected: list[LoggedMessage] = []
    total = 0
    for entry in reversed(entries):
        cost = estimate_entry_tokens(entry)
        if total + cost > available_tokens:
            break
        selected.append(entry)
        total += cost

    if not selected and entries:
        newest = _truncate_entry(entries[-1], max(available_tokens, MIN_TRUNCATED_TOKENS))
        return WindowResult(
            entries=[newest],
            total_tokens=estimate_entry_tokens(newest),
            dropped_count=len(entries) - 1,
            truncated=newest is not entries[-1],
        )

    selected.reverse()
    return WindowResult(
        entries=selected,
        total_tokens=total,
        dropped_count=len(entries) - len(selected),
    )


def build_context_window(
    channel_dir: str,
    budget: ContextBudget,
    before_ts: str | None = None,
) -> WindowResult:
    """Read the channel log and select the window for *budget*.

    Entries at or after *before_ts* belong to the current run and are left out.
    """
    entries = read_log(os.path.join(channel_dir, LOG_FILENAME))
    if before_ts is not None:
        limit = ts_to_float(before_ts)
        entries = [e for e in entries if e.ts_value < limit]
    entries.sort(key=lambda e: e.ts_value)
    return select_window(entries, budget.available_for_history)


# ============================================================================
# Pre-run sync
# ============================================================================


class ChannelHistory:
    """In-memory view of a channel log, advanced by ``sync`` before each run.

    Starts empty, so the first sync after a restart replays the whole log.
    Every synced entry stays in memory for the life of the session, and each
    sync still parses the whole file before skipping lines behind the cursor.
    """

    def __init__(self, channel_dir: str) -> None:
        self._log_path = os.path.join(channel_dir, LOG_FILENAME)
        self._entries: list[LoggedMessage] = []
        self._seen: set[tuple[str, str, str]] = set()
        self._cursor: str | None = None

    @property
    def entries(self) -> list[LoggedMessage]:
        return list(self._entries)

    @property
    def cursor(self) -> str | None:
        return self._cursor

    def sync(self, exclude_from_ts: str | None = None) -> int:
        """Add log entries not seen yet and older than *exclude_from_ts*.

        Returns the number of entries added. Calling it again with no new
        log lines adds nothing.
        """
        limit = ts_to_float(exclude_from_ts) if exclude_from_ts else None
        added = 0
        for entry in read_log(self._log_path, self._cursor):
            if limit is not None and entry.ts_value >= limit:
                continue
            key = (entry.ts, entry.user, entry.text)
            if key in self._seen:
                continue
            self._seen.add(key)
            self._entries.append(entry)
            added += 1

        if added:
            self._entries.sort(key=lambda e: e.ts_value)
            self._cursor = self._entries[-1].ts
            # only lines at or after the cursor are read again
            floor = self._entries[-1].ts_value
            self._seen = {key for key in self._seen if ts_to_float(key[0]) >= floor}
        return added

    def window(self, budget: ContextBudget) -> WindowResult:
        return select_window(self._entries, budget.available_for_history)
