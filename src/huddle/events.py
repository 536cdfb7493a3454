"""EventsWatcher: scheduled and external triggers from ``<working_dir>/events/*.json``.

Event files:

- ``{"type": "immediate", "channelId": ..., "text": ...}`` fires when seen.
  Files older than process start are stale and deleted.
- ``{"type": "one-shot", ..., "at": "2025-12-15T09:00:00+01:00"}`` fires once.
- ``{"type": "periodic", ..., "schedule": "0 9 * * 1-5", "timezone": "Europe/Vienna"}``
  fires on a cron schedule until the file is deleted.

A fired event becomes a synthetic inbound event for the run controller.
Runs are never queued, so an event for a busy channel is offered again
every ``BUSY_RETRY_S`` seconds, up to ``BUSY_MAX_ATTEMPTS`` times.
"""

from __future__ import annotations

import asyncio
import json
import os
import time
import zoneinfo
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from croniter import croniter
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from huddle import log
from huddle.controller import BUSY, InboundEvent


# ============================================================================
# Event Types
# ============================================================================


@dataclass
class ImmediateEvent:
    type: str  # "immediate"
    channel_id: str
    text: str


@dataclass
class OneShotEvent:
    type: str  # "one-shot"
    channel_id: str
    text: str
    at: str  # ISO 8601 with timezone offset


@dataclass
class PeriodicEvent:
    type: str  # "periodic"
    channel_id: str
    text: str
    schedule: str  # cron syntax
    tz: str  # IANA timezone


ScheduledEvent = ImmediateEvent | OneShotEvent | PeriodicEvent


def parse_event(content: str, filename: str) -> ScheduledEvent:
    data = json.loads(content)
    if not isinstance(data, dict):
        raise ValueError(f"Event file is not a JSON object: {filename}")
    if not data.get("type") or not data.get("channelId") or not data.get("text"):
        raise ValueError(f"Missing required fields (type, channelId, text) in {filename}")

    etype = data["type"]
    if etype == "immediate":
        return ImmediateEvent(type="immediate", channel_id=data["channelId"], text=data["text"])
    if etype == "one-shot":
        if not data.get("at"):
            raise ValueError(f"Missing 'at' field for one-shot event in {filename}")
        return OneShotEvent(
            type="one-shot", channel_id=data["channelId"], text=data["text"], at=data["at"]
        )
    if etype == "periodic":
        if not data.get("schedule"):
            raise ValueError(f"Missing 'schedule' field for periodic event in {filename}")
        if not data.get("timezone"):
            raise ValueError(f"Missing 'timezone' field for periodic event in {filename}")
        return PeriodicEvent(
            type="periodic",
            channel_id=data["channelId"],
            text=data["text"],
            schedule=data["schedule"],
            tz=data["timezone"],
        )
    raise ValueError(f"Unknown event type '{etype}' in {filename}")


def format_event_text(filename: str, event: ScheduledEvent) -> str:
    if isinstance(event, OneShotEvent):
        schedule_info = event.at
    elif isinstance(event, PeriodicEvent):
        schedule_info = event.schedule
    else:
        schedule_info = "immediate"
    return f"[EVENT:{filename}:{event.type}:{schedule_info}] {event.text}"


# ============================================================================
# EventsWatcher
# ============================================================================

_DEBOUNCE_S = 0.1
_MAX_RETRIES = 3
_RETRY_BASE_S = 0.1

BUSY_RETRY_S = 30.0
BUSY_MAX_ATTEMPTS = 5


class _DirHandler(FileSystemEventHandler):
    """Forwards ``*.json`` changes from the observer thread onto the event loop."""

    def __init__(self, watcher: EventsWatcher, loop: asyncio.AbstractEventLoop) -> None:
        self._watcher = watcher
        self._loop = loop

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        paths = [event.src_path, getattr(event, "dest_path", "")]
        for path in paths:
            path = os.fsdecode(path) if path else ""
            if path.endswith(".json"):
                self._loop.call_soon_threadsafe(self._watcher.on_file_event, os.path.basename(path))


class EventsWatcher:
    def __init__(
        self,
        events_dir: str,
        dispatch: Callable[[InboundEvent], str],
        *,
        busy_retry_s: float = BUSY_RETRY_S,
        busy_max_attempts: int = BUSY_MAX_ATTEMPTS,
    ) -> None:
        self._events_dir = events_dir
        self._dispatch = dispatch
        self._busy_retry_s = busy_retry_s
        self._busy_max_attempts = busy_max_attempts
        self._start_time = time.time()
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._cron_tasks: dict[str, asyncio.Task[None]] = {}
        self._debounce_handles: dict[str, asyncio.TimerHandle] = {}
        self._retry_handles: set[asyncio.TimerHandle] = set()
        self._known_files: set[str] = set()
        self._observer: Any = None

    @property
    def known_files(self) -> set[str]:
        return set(self._known_files)

    def start(self) -> None:
        """Scan existing files and watch the directory. Must run inside the event loop."""
        os.makedirs(self._events_dir, exist_ok=True)
        log.log_info(f"Events watcher starting, dir: {self._events_dir}")

        self._scan_existing()

        self._observer = Observer()
        self._observer.schedule(
            _DirHandler(self, asyncio.get_running_loop()), self._events_dir, recursive=False
        )
        self._observer.start()
        log.log_info(f"Events watcher started, tracking {len(self._known_files)} files")

    def stop(self) -> None:
        if self._observer is not None:
            self._observer.stop()
            self._observer.join()
            self._observer = None

        for handle in [*self._debounce_handles.values(), *self._timers.values(), *self._retry_handles]:
            handle.cancel()
        self._debounce_handles.clear()
        self._timers.clear()
        self._retry_handles.clear()

        for task in self._cron_tasks.values():
            task.cancel()
        self._cron_tasks.clear()

        self._known_files.clear()
        log.log_info("Events watcher stopped")

    # ── File tracking ────────────────────────────────────────────────

    def on_file_event(self, filename: str) -> None:
        existing = self._debounce_handles.pop(filename, None)
        if existing is not None:
            existing.cancel()
        loop = asyncio.get_running_loop()
        self._debounce_handles[filename] = loop.call_later(
            _DEBOUNCE_S, self._handle_file_change, filename
        )

    def _scan_existing(self) -> None:
        try:
            files = sorted(f for f in os.listdir(self._events_dir) if f.endswith(".json"))
        except OSError as exc:
            log.log_warning("Failed to read events directory", str(exc))
            return
        for filename in files:
            asyncio.ensure_future(self.handle_file(filename))

    def _handle_file_change(self, filename: str) -> None:
        self._debounce_handles.pop(filename, None)
        file_path = os.path.join(self._events_dir, filename)
        if not os.path.exists(file_path):
            self._handle_delete(filename)
            return
        if filename in self._known_files:
            self._cancel_scheduled(filename)
        asyncio.ensure_future(self.handle_file(filename))

    def _handle_delete(self, filename: str) -> None:
        if filename not in self._known_files:
            return
        log.log_info(f"Event file deleted: {filename}")
        self._cancel_scheduled(filename)
        self._known_files.discard(filename)

    def _cancel_scheduled(self, filename: str) -> None:
        handle = self._timers.pop(filename, None)
        if handle is not None:
            handle.cancel()
        task = self._cron_tasks.pop(filename, None)
        if task is not None:
            task.cancel()

    async def handle_file(self, filename: str) -> None:
        file_path = os.path.join(self._events_dir, filename)

        event: ScheduledEvent | None = None
        last_error: Exception | None = None

        for i in range(_MAX_RETRIES):
            try:
                with open(file_path, "r", encoding="utf-8") as fh:
                    event = parse_event(fh.read(), filename)
                break
            except (OSError, ValueError) as exc:
                last_error = exc
                if i < _MAX_RETRIES - 1:
                    await asyncio.sleep(_RETRY_BASE_S * (2**i))

        if event is None:
            log.log_warning(
                f"Failed to parse event file after {_MAX_RETRIES} retries: {filename}",
                str(last_error) if last_error else None,
            )
            self._delete_file(filename)
            return

        self._known_files.add(filename)

        if isinstance(event, ImmediateEvent):
            self._handle_immediate(filename, event)
        elif isinstance(event, OneShotEvent):
            self._handle_one_shot(filename, event)
        else:
            self._handle_periodic(filename, event)

    # ── Scheduling ───────────────────────────────────────────────────

    def _handle_immediate(self, filename: str, event: ImmediateEvent) -> None:
        file_path = os.path.join(self._events_dir, filename)
        try:
            mtime = os.path.getmtime(file_path)
        except OSError:
            return
        if mtime < self._start_time:
            log.log_info(f"Stale immediate event, deleting: {filename}")
            self._delete_file(filename)
            return

        log.log_info(f"Executing immediate event: {filename}")
        self._execute(filename, event)

    def _handle_one_shot(self, filename: str, event: OneShotEvent) -> None:
        try:
            at_time = datetime.fromisoformat(event.at).timestamp()
        except ValueError as exc:
            log.log_warning(f"Invalid 'at' for {filename}: {event.at}", str(exc))
            self._delete_file(filename)
            return

        now = time.time()
        if at_time <= now:
            log.log_info(f"One-shot event in the past, deleting: {filename}")
            self._delete_file(filename)
            return

        delay = at_time - now
        log.log_info(f"Scheduling one-shot event: {filename} in {round(delay)}s")
        self._timers[filename] = asyncio.get_running_loop().call_later(
            delay, self._fire_one_shot, filename, event
        )

    def _fire_one_shot(self, filename: str, event: OneShotEvent) -> None:
        self._timers.pop(filename, None)
        log.log_info(f"Executing one-shot event: {filename}")
        self._execute(filename, event)

    def _handle_periodic(self, filename: str, event: PeriodicEvent) -> None:
        try:
            tz = zoneinfo.ZoneInfo(event.tz)
            cron = croniter(event.schedule, datetime.now(tz))
        except (ValueError, KeyError, zoneinfo.ZoneInfoNotFoundError) as exc:
            log.log_warning(f"Invalid cron schedule for {filename}: {event.schedule}", str(exc))
            self._delete_file(filename)
            return

        async def _cron_loop() -> None:
            while True:
                next_dt = cron.get_next(datetime)
                delay = (next_dt - datetime.now(tz)).total_seconds()
                if delay > 0:
                    await asyncio.sleep(delay)
                log.log_info(f"Executing periodic event: {filename}")
                self._execute(filename, event, delete_after=False)

        log.log_info(f"Scheduled periodic event: {filename} ({event.schedule}, {event.tz})")
        self._cron_tasks[filename] = asyncio.ensure_future(_cron_loop())

    # ── Firing ───────────────────────────────────────────────────────

    def _execute(
        self,
        filename: str,
        event: ScheduledEvent,
        delete_after: bool = True,
        attempt: int = 1,
    ) -> None:
        synthetic = InboundEvent(
            channel=event.channel_id,
            user="EVENT",
            text=format_event_text(filename, event),
            ts=f"{time.time():.6f}",
            is_event=True,
        )

        if self._dispatch(synthetic) != BUSY:
            if delete_after:
                self._delete_file(filename)
            return

        if attempt >= self._busy_max_attempts:
            log.log_warning(
                f"Channel busy, discarded event after {attempt} attempts: {filename}"
            )
            if delete_after:
                self._delete_file(filename)
            return

        log.log_info(f"Channel busy, retrying event in {self._busy_retry_s:.0f}s: {filename}")
        loop = asyncio.get_running_loop()
        handle: asyncio.TimerHandle

        def _retry() -> None:
            self._retry_handles.discard(handle)
            self._execute(filename, event, delete_after, attempt + 1)

        handle = loop.call_later(self._busy_retry_s, _retry)
        self._retry_handles.add(handle)

    def _delete_file(self, filename: str) -> None:
        file_path = os.path.join(self._events_dir, filename)
        try:
            os.unlink(file_path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            log.log_warning(f"Failed to delete event file: {filename}", str(exc))
        self._known_files.discard(filename)


def create_events_watcher(
    working_dir: str, dispatch: Callable[[InboundEvent], str]
) -> EventsWatcher:
    return EventsWatcher(os.path.join(working_dir, "events"), dispatch)
