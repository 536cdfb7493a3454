"""Tests for huddle.context."""

import os

from huddle.context import (
    MIN_TRUNCATED_TOKENS,
    ChannelHistory,
    ContextBudget,
    build_context_window,
    select_window,
)
from huddle.tokens import estimate_entry_tokens, estimate_text_tokens

from conftest import make_entry, write_log


def _entries(count: int) -> list:
    # 40 chars each, so every entry costs the same
    return [make_entry(f"{1000 + i}.000000", f"{'a' * 36}{i:04d}") for i in range(count)]


class TestContextBudget:
    def test_available_subtracts_overhead(self) -> None:
        budget = ContextBudget(
            max_input_tokens=10000,
            reserved_for_output=2000,
            system_prompt_tokens=500,
            memory_tokens=100,
            tool_schema_tokens=300,
            prompt_tokens=50,
        )
        assert budget.fixed_overhead == 950
        assert budget.available_for_history == 7050

    def test_compute_estimates_each_part(self) -> None:
        budget = ContextBudget.compute(
            200000,
            16384,
            system_prompt="s" * 400,
            memory="m" * 80,
            tools=[{"name": "bash"}],
            prompt="p" * 8,
        )
        assert budget.system_prompt_tokens == 100
        assert budget.memory_tokens == 20
        assert budget.tool_schema_tokens > 0
        assert budget.prompt_tokens == 2

    def test_can_go_negative(self) -> None:
        budget = ContextBudget.compute(1000, 900, system_prompt="s" * 4000)
        assert budget.available_for_history < 0


class TestSelectWindow:
    def test_everything_fits(self) -> None:
        entries = _entries(3)
        result = select_window(entries, 10000)
        assert result.entries == entries
        assert result.dropped_count == 0
        assert not result.truncated
        assert result.total_tokens == sum(estimate_entry_tokens(e) for e in entries)

    def test_keeps_newest_suffix(self) -> None:
        entries = _entries(1000)
        per_entry = estimate_entry_tokens(entries[0])
        result = select_window(entries, per_entry * 120)
        assert result.message_count == 120
        assert result.dropped_count == 880
        assert result.entries == entries[-120:]
        assert result.total_tokens <= per_entry * 120

    def test_stops_at_first_entry_that_does_not_fit(self) -> None:
        entries = [
            make_entry("1.0", "small"),
            make_entry("2.0", "x" * 4000),
            make_entry("3.0", "small"),
            make_entry("4.0", "small"),
        ]
        budget = estimate_entry_tokens(entries[-1]) * 3
        result = select_window(entries, budget)
        # the small first entry would fit but is behind the big one
        assert [e.ts for e in result.entries] == ["3.0", "4.0"]
        assert result.dropped_count == 2

    def test_deterministic(self) -> None:
        entries = _entries(200)
        a = select_window(entries, 1500)
        b = select_window(entries, 1500)
        assert a == b

    def test_oversized_newest_entry_is_truncated(self) -> None:
        entries = [make_entry("1.0", "older"), make_entry("2.0", "word " * 10000)]
        result = select_window(entries, 500)
        assert result.truncated
        assert result.message_count == 1
        assert result.dropped_count == 1
        kept = result.entries[0]
        assert kept.ts == "2.0"
        assert "[... truncated" in kept.text
        assert result.total_tokens <= 500
        # the stored entry is left alone
        assert entries[1].text == "word " * 10000

    def test_non_positive_budget_still_keeps_one_entry(self) -> None:
        entries = _entries(5)
        for available in (0, -5000):
            result = select_window(entries, available)
            assert result.message_count == 1
            assert result.entries[0].ts == entries[-1].ts
            assert result.total_tokens <= MIN_TRUNCATED_TOKENS

    def test_empty(self) -> None:
        result = select_window([], 1000)
        assert result.entries == []
        assert result.dropped_count == 0
        assert result.date_range is None

    def test_date_range(self) -> None:
        entries = [
            make_entry("1.0", date="2025-01-01T10:00:00+00:00"),
            make_entry("2.0", date="2025-01-02T10:00:00+00:00"),
        ]
        result = select_window(entries, 10000)
        assert result.date_range == ("2025-01-01T10:00:00+00:00", "2025-01-02T10:00:00+00:00")


class TestBuildContextWindow:
    def test_reads_log_and_excludes_current_run(self, tmpdir: str) -> None:
        write_log(tmpdir, _entries(10))
        budget = ContextBudget(max_input_tokens=100000, reserved_for_output=1000)
        result = build_context_window(tmpdir, budget, before_ts="1008.000000")
        assert result.message_count == 8
        assert result.entries[-1].ts == "1007.000000"

    def test_missing_log(self, tmpdir: str) -> None:
        budget = ContextBudget(max_input_tokens=100000, reserved_for_output=1000)
        assert build_context_window(tmpdir, budget).entries == []


class TestChannelHistory:
    def test_first_sync_replays_whole_log(self, tmpdir: str) -> None:
        write_log(tmpdir, _entries(4))
        history = ChannelHistory(tmpdir)
        assert history.sync() == 4
        assert len(history.entries) == 4
        assert history.cursor == "1003.000000"

    def test_sync_is_idempotent(self, tmpdir: str) -> None:
        write_log(tmpdir, _entries(4))
        history = ChannelHistory(tmpdir)
        history.sync()
        assert history.sync() == 0
        assert len(history.entries) == 4

    def test_excludes_triggering_message_until_later(self, tmpdir: str) -> None:
        write_log(tmpdir, [make_entry("100.0", "a"), make_entry("101.0", "b"), make_entry("102.0", "trigger")])
        history = ChannelHistory(tmpdir)
        assert history.sync(exclude_from_ts="102.0") == 2
        assert [e.text for e in history.entries] == ["a", "b"]

        write_log(tmpdir, [make_entry("102.0", "reply", is_bot=True), make_entry("103.0", "next")])
        assert history.sync(exclude_from_ts="103.0") == 2
        assert [e.text for e in history.entries] == ["a", "b", "trigger", "reply"]

    def test_dedupe_keys_only_cover_the_cursor(self, tmpdir: str) -> None:
        write_log(tmpdir, _entries(4))
        history = ChannelHistory(tmpdir)
        history.sync()
        assert history._seen == {("1003.000000", "U1", history.entries[-1].text)}
        assert history.sync() == 0

    def test_picks_up_lines_appended_while_down(self, tmpdir: str) -> None:
        write_log(tmpdir, _entries(2))
        history = ChannelHistory(tmpdir)
        history.sync()
        write_log(tmpdir, [make_entry("2000.0", "offline 1"), make_entry("2001.0", "offline 2")])
        assert history.sync() == 2
        assert [e.text for e in history.entries][-2:] == ["offline 1", "offline 2"]

    def test_bot_chunks_sharing_a_ts_are_kept(self, tmpdir: str) -> None:
        write_log(
            tmpdir,
            [
                make_entry("100.0", "question"),
                make_entry("101.0", "part one", is_bot=True),
                make_entry("101.0", "part two", is_bot=True),
            ],
        )
        history = ChannelHistory(tmpdir)
        assert history.sync() == 3

    def test_window_uses_budget(self, tmpdir: str) -> None:
        entries = _entries(50)
        write_log(tmpdir, entries)
        history = ChannelHistory(tmpdir)
        history.sync()
        per_entry = estimate_entry_tokens(entries[0])
        budget = ContextBudget(
            max_input_tokens=per_entry * 10 + 100,
            reserved_for_output=100,
        )
        result = history.window(budget)
        assert result.message_count == 10
        assert result.dropped_count == 40

    def test_missing_log(self, tmpdir: str) -> None:
        history = ChannelHistory(os.path.join(tmpdir, "C-none"))
        assert history.sync() == 0
        assert history.cursor is None


def test_marker_estimate_fits_truncation_budget() -> None:
    entry = make_entry("1.0", "```\n" + "x = 1\n" * 5000 + "```")
    result = select_window([entry], 300)
    assert estimate_text_tokens(result.entries[0].text) + 12 <= 300
