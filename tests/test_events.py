"""Tests for huddle.events."""

import asyncio
import json
import os
import time
from datetime import datetime, timedelta, timezone

import pytest

from huddle.controller import BUSY, STARTED, InboundEvent
from huddle.events import (
    EventsWatcher,
    ImmediateEvent,
    OneShotEvent,
    PeriodicEvent,
    format_event_text,
    parse_event,
)


class TestParseEvent:
    def test_parse_immediate(self) -> None:
        content = json.dumps({"type": "immediate", "channelId": "C1", "text": "hello"})
        event = parse_event(content, "test.json")
        assert isinstance(event, ImmediateEvent)
        assert event.channel_id == "C1"
        assert event.text == "hello"

    def test_parse_one_shot(self) -> None:
        content = json.dumps(
            {
                "type": "one-shot",
                "channelId": "C1",
                "text": "reminder",
                "at": "2025-12-15T09:00:00+01:00",
            }
        )
        event = parse_event(content, "test.json")
        assert isinstance(event, OneShotEvent)
        assert event.at == "2025-12-15T09:00:00+01:00"

    def test_parse_periodic(self) -> None:
        content = json.dumps(
            {
                "type": "periodic",
                "channelId": "C1",
                "text": "check inbox",
                "schedule": "0 9 * * 1-5",
                "timezone": "Europe/Vienna",
            }
        )
        event = parse_event(content, "test.json")
        assert isinstance(event, PeriodicEvent)
        assert event.schedule == "0 9 * * 1-5"
        assert event.tz == "Europe/Vienna"

    def test_parse_missing_fields(self) -> None:
        with pytest.raises(ValueError, match="Missing required fields"):
            parse_event(json.dumps({"type": "immediate"}), "test.json")

    def test_parse_unknown_type(self) -> None:
        content = json.dumps({"type": "unknown", "channelId": "C1", "text": "hi"})
        with pytest.raises(ValueError, match="Unknown event type"):
            parse_event(content, "test.json")

    def test_parse_one_shot_missing_at(self) -> None:
        content = json.dumps({"type": "one-shot", "channelId": "C1", "text": "hi"})
        with pytest.raises(ValueError, match="Missing 'at'"):
            parse_event(content, "test.json")

    def test_parse_periodic_missing_timezone(self) -> None:
        content = json.dumps(
            {"type": "periodic", "channelId": "C1", "text": "hi", "schedule": "* * * * *"}
        )
        with pytest.raises(ValueError, match="Missing 'timezone'"):
            parse_event(content, "test.json")

    def test_parse_not_an_object(self) -> None:
        with pytest.raises(ValueError, match="not a JSON object"):
            parse_event("[1, 2]", "test.json")

    def test_parse_invalid_json(self) -> None:
        with pytest.raises(json.JSONDecodeError):
            parse_event("not json", "test.json")


class TestFormatEventText:
    def test_immediate(self) -> None:
        event = ImmediateEvent(type="immediate", channel_id="C1", text="New mail")
        assert format_event_text("mail.json", event) == "[EVENT:mail.json:immediate:immediate] New mail"

    def test_one_shot(self) -> None:
        event = OneShotEvent(type="one-shot", channel_id="C1", text="Dentist", at="2025-12-14T09:00:00+01:00")
        assert (
            format_event_text("dentist.json", event)
            == "[EVENT:dentist.json:one-shot:2025-12-14T09:00:00+01:00] Dentist"
        )

    def test_periodic(self) -> None:
        event = PeriodicEvent(
            type="periodic", channel_id="C1", text="Standup", schedule="0 9 * * 1-5", tz="UTC"
        )
        assert format_event_text("s.json", event) == "[EVENT:s.json:periodic:0 9 * * 1-5] Standup"


class _Dispatch:
    """Records synthetic events; answers from a script, then STARTED."""

    def __init__(self, *outcomes: str) -> None:
        self.outcomes = list(outcomes)
        self.events: list[InboundEvent] = []

    def __call__(self, event: InboundEvent) -> str:
        self.events.append(event)
        return self.outcomes.pop(0) if self.outcomes else STARTED


def _write(events_dir: str, filename: str, data: dict) -> str:
    os.makedirs(events_dir, exist_ok=True)
    path = os.path.join(events_dir, filename)
    with open(path, "w") as f:
        json.dump(data, f)
    return path


async def _fresh_watcher(tmpdir: str, dispatch: _Dispatch, **kwargs) -> EventsWatcher:
    watcher = EventsWatcher(os.path.join(tmpdir, "events"), dispatch, **kwargs)
    # coarse filesystem clocks can stamp a new file slightly before time.time()
    await asyncio.sleep(0.05)
    return watcher


class TestEventsWatcher:
    @pytest.mark.asyncio
    async def test_immediate_fires_and_is_deleted(self, tmpdir: str) -> None:
        dispatch = _Dispatch()
        watcher = await _fresh_watcher(tmpdir, dispatch)
        path = _write(os.path.join(tmpdir, "events"), "mail.json", {"type": "immediate", "channelId": "C1", "text": "New mail"})

        await watcher.handle_file("mail.json")

        assert len(dispatch.events) == 1
        event = dispatch.events[0]
        assert event.channel == "C1"
        assert event.user == "EVENT"
        assert event.is_event
        assert event.text == "[EVENT:mail.json:immediate:immediate] New mail"
        assert not os.path.exists(path)
        assert "mail.json" not in watcher.known_files

    @pytest.mark.asyncio
    async def test_stale_immediate_is_deleted_without_firing(self, tmpdir: str) -> None:
        dispatch = _Dispatch()
        watcher = await _fresh_watcher(tmpdir, dispatch)
        path = _write(os.path.join(tmpdir, "events"), "old.json", {"type": "immediate", "channelId": "C1", "text": "x"})
        past = time.time() - 3600
        os.utime(path, (past, past))

        await watcher.handle_file("old.json")

        assert dispatch.events == []
        assert not os.path.exists(path)

    @pytest.mark.asyncio
    async def test_busy_channel_is_retried(self, tmpdir: str) -> None:
        dispatch = _Dispatch(BUSY, BUSY)
        watcher = await _fresh_watcher(tmpdir, dispatch, busy_retry_s=0.01)
        path = _write(os.path.join(tmpdir, "events"), "e.json", {"type": "immediate", "channelId": "C1", "text": "x"})

        await watcher.handle_file("e.json")
        assert os.path.exists(path)
        await asyncio.sleep(0.1)

        assert len(dispatch.events) == 3
        assert not os.path.exists(path)

    @pytest.mark.asyncio
    async def test_busy_channel_gives_up(self, tmpdir: str) -> None:
        dispatch = _Dispatch(*([BUSY] * 10))
        watcher = await _fresh_watcher(tmpdir, dispatch, busy_retry_s=0.01, busy_max_attempts=3)
        path = _write(os.path.join(tmpdir, "events"), "e.json", {"type": "immediate", "channelId": "C1", "text": "x"})

        await watcher.handle_file("e.json")
        await asyncio.sleep(0.1)

        assert len(dispatch.events) == 3
        assert not os.path.exists(path)

    @pytest.mark.asyncio
    async def test_one_shot_in_past_is_deleted(self, tmpdir: str) -> None:
        dispatch = _Dispatch()
        watcher = await _fresh_watcher(tmpdir, dispatch)
        path = _write(
            os.path.join(tmpdir, "events"),
            "past.json",
            {"type": "one-shot", "channelId": "C1", "text": "x", "at": "2020-01-01T09:00:00+00:00"},
        )

        await watcher.handle_file("past.json")

        assert dispatch.events == []
        assert not os.path.exists(path)

    @pytest.mark.asyncio
    async def test_one_shot_fires_at_time(self, tmpdir: str) -> None:
        dispatch = _Dispatch()
        watcher = await _fresh_watcher(tmpdir, dispatch)
        at = (datetime.now(timezone.utc) + timedelta(seconds=0.1)).isoformat()
        path = _write(os.path.join(tmpdir, "events"), "soon.json", {"type": "one-shot", "channelId": "C1", "text": "ping", "at": at})

        await watcher.handle_file("soon.json")
        assert dispatch.events == []
        assert "soon.json" in watcher.known_files

        await asyncio.sleep(0.3)
        assert len(dispatch.events) == 1
        assert dispatch.events[0].text == f"[EVENT:soon.json:one-shot:{at}] ping"
        assert not os.path.exists(path)

    @pytest.mark.asyncio
    async def test_periodic_is_scheduled_and_kept(self, tmpdir: str) -> None:
        dispatch = _Dispatch()
        watcher = await _fresh_watcher(tmpdir, dispatch)
        path = _write(
            os.path.join(tmpdir, "events"),
            "daily.json",
            {"type": "periodic", "channelId": "C1", "text": "x", "schedule": "0 9 * * *", "timezone": "Europe/Vienna"},
        )

        await watcher.handle_file("daily.json")

        assert "daily.json" in watcher.known_files
        assert os.path.exists(path)
        watcher.stop()
        assert watcher.known_files == set()

    @pytest.mark.asyncio
    async def test_periodic_with_bad_timezone_is_deleted(self, tmpdir: str) -> None:
        dispatch = _Dispatch()
        watcher = await _fresh_watcher(tmpdir, dispatch)
        path = _write(
            os.path.join(tmpdir, "events"),
            "bad.json",
            {"type": "periodic", "channelId": "C1", "text": "x", "schedule": "0 9 * * *", "timezone": "Mars/Olympus"},
        )

        await watcher.handle_file("bad.json")

        assert not os.path.exists(path)
        assert "bad.json" not in watcher.known_files

    @pytest.mark.asyncio
    async def test_unparseable_file_is_deleted(self, tmpdir: str) -> None:
        dispatch = _Dispatch()
        watcher = await _fresh_watcher(tmpdir, dispatch)
        os.makedirs(os.path.join(tmpdir, "events"), exist_ok=True)
        path = os.path.join(os.path.join(tmpdir, "events"), "broken.json")
        with open(path, "w") as f:
            f.write("{nope")

        await watcher.handle_file("broken.json")

        assert dispatch.events == []
        assert not os.path.exists(path)

    @pytest.mark.asyncio
    async def test_start_scans_existing_files(self, tmpdir: str) -> None:
        dispatch = _Dispatch()
        watcher = await _fresh_watcher(tmpdir, dispatch)
        at = (datetime.now(timezone.utc) + timedelta(hours=1)).isoformat()
        _write(os.path.join(tmpdir, "events"), "later.json", {"type": "one-shot", "channelId": "C1", "text": "x", "at": at})

        watcher.start()
        try:
            await asyncio.sleep(0.05)
            assert "later.json" in watcher.known_files
        finally:
            watcher.stop()
