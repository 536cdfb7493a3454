"""ChannelStore: the append-only per-channel message log and attachment downloads.

Each channel owns ``<working_dir>/<channel_id>/log.jsonl``. Lines are written
once and never rewritten; the file is the source of truth for conversation
history.
"""

from __future__ import annotations

import asyncio
import json
import math
import os
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import httpx

from huddle import log

LOG_FILENAME = "log.jsonl"

_DEDUPE_WINDOW_S = 60.0


@dataclass
class Attachment:
    original: str  # original filename from uploader
    local: str  # path relative to working dir


@dataclass
class LoggedMessage:
    date: str  # ISO 8601
    ts: str  # slack timestamp or epoch seconds
    user: str  # user ID (or "bot" for agent responses)
    text: str
    attachments: list[Attachment] = field(default_factory=list)
    is_bot: bool = False
    user_name: str | None = None
    display_name: str | None = None

    @property
    def ts_value(self) -> float:
        return ts_to_float(self.ts)

    @property
    def author(self) -> str:
        if self.is_bot:
            return "bot"
        return self.user_name or self.user or "unknown"

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "date": self.date,
            "ts": self.ts,
            "user": self.user,
            "text": self.text,
            "attachments": [
                {"original": a.original, "local": a.local} for a in self.attachments
            ],
            "isBot": self.is_bot,
        }
        if self.user_name is not None:
            d["userName"] = self.user_name
        if self.display_name is not None:
            d["displayName"] = self.display_name
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LoggedMessage:
        return cls(
            date=data.get("date") or "",
            ts=str(data["ts"]),
            user=data.get("user") or "unknown",
            text=data.get("text") or "",
            attachments=[
                Attachment(original=a.get("original", ""), local=a.get("local", ""))
                for a in data.get("attachments") or []
                if isinstance(a, dict)
            ],
            is_bot=bool(data.get("isBot")),
            user_name=data.get("userName"),
            display_name=data.get("displayName"),
        )


def ts_to_float(ts: str) -> float:
    """Slack ts ("1732531234.567890") or epoch ms ("1732531234567") to seconds."""
    try:
        if "." in ts:
            return float(ts)
        return int(ts) / 1000
    except ValueError:
        return 0.0


def ts_to_iso(ts: str) -> str:
    return datetime.fromtimestamp(ts_to_float(ts), tz=timezone.utc).isoformat()


def read_log(path: str, since: str | None = None) -> list[LoggedMessage]:
    """Read log entries in append order, optionally only those with ts >= *since*.

    The bound is inclusive because agent chunks share a ts; callers
    de-duplicate. Malformed lines are skipped.
    """
    if not os.path.exists(path):
        return []

    cursor = ts_to_float(since) if since else None
    entries: list[LoggedMessage] = []
    with open(path, "r", encoding="utf-8") as fh:
        for line in fh:
            line = line.strip()
            if not line:
                continue
            try:
                data = json.loads(line)
            except json.JSONDecodeError:
                continue
            if not isinstance(data, dict) or not data.get("ts"):
                continue
            entry = LoggedMessage.from_dict(data)
            if cursor is not None and entry.ts_value < cursor:
                continue
            entries.append(entry)
    return entries


@dataclass
class _PendingDownload:
    local_path: str
    url: str


class ChannelStore:
    def __init__(
        self,
        working_dir: str,
        bot_token: str,
        *,
        http_client_factory: Any = None,
    ) -> None:
        self._working_dir = working_dir
        self._bot_token = bot_token
        self._http_client_factory = http_client_factory or httpx.AsyncClient
        self._pending_downloads: list[_PendingDownload] = []
        self._is_downloading = False
        # channel:ts -> time logged, for inbound messages seen twice (live + backfill)
        self._recently_logged: dict[str, float] = {}

        os.makedirs(self._working_dir, exist_ok=True)

    @property
    def working_dir(self) -> str:
        return self._working_dir

    # ── Paths ────────────────────────────────────────────────────────

    def get_channel_dir(self, channel_id: str) -> str:
        d = os.path.join(self._working_dir, channel_id)
        os.makedirs(d, exist_ok=True)
        return d

    def log_path(self, channel_id: str) -> str:
        return os.path.join(self._working_dir, channel_id, LOG_FILENAME)

    # ── Log ──────────────────────────────────────────────────────────

    def append_entry(
        self, channel_id: str, message: LoggedMessage, *, dedupe: bool = True
    ) -> bool:
        """Append one entry to the channel log.

        Returns False if the same inbound message was already logged in the
        last minute. Agent responses pass ``dedupe=False`` because several
        chunks share the ts of the message they were streamed into.
        """
        if dedupe:
            now = time.time()
            self._recently_logged = {
                k: t for k, t in self._recently_logged.items() if now - t < _DEDUPE_WINDOW_S
            }
            key = f"{channel_id}:{message.ts}"
            if key in self._recently_logged:
                return False
            self._recently_logged[key] = now

        if not message.date:
            message.date = ts_to_iso(message.ts)

        path = os.path.join(self.get_channel_dir(channel_id), LOG_FILENAME)
        with open(path, "a", encoding="utf-8") as fh:
            fh.write(json.dumps(message.to_dict()) + "\n")
        return True

    def log_bot_response(self, channel_id: str, text: str, ts: str) -> None:
        self.append_entry(
            channel_id,
            LoggedMessage(
                date=datetime.now(timezone.utc).isoformat(),
                ts=ts,
                user="bot",
                text=text,
                is_bot=True,
            ),
            dedupe=False,
        )

    def read_entries(self, channel_id: str, since: str | None = None) -> list[LoggedMessage]:
        return read_log(self.log_path(channel_id), since)

    def get_last_timestamp(self, channel_id: str) -> str | None:
        entries = self.read_entries(channel_id)
        return entries[-1].ts if entries else None

    def get_logged_timestamps(self, channel_id: str) -> set[str]:
        return {e.ts for e in self.read_entries(channel_id)}

    # ── Attachments ──────────────────────────────────────────────────

    @staticmethod
    def generate_local_filename(original_name: str, timestamp: str) -> str:
        ts = math.floor(float(timestamp) * 1000)
        sanitized = re.sub(r"[^a-zA-Z0-9._-]", "_", original_name)
        return f"{ts}_{sanitized}"

    def process_attachments(
        self,
        channel_id: str,
        files: list[dict[str, Any]],
        timestamp: str,
    ) -> list[Attachment]:
        """Record attachment references and queue their download."""
        attachments: list[Attachment] = []

        for f in files:
            url = f.get("url_private_download") or f.get("url_private")
            if not url:
                continue
            name = f.get("name")
            if not name:
                log.log_warning("Attachment missing name, skipping", url)
                continue

            filename = self.generate_local_filename(name, timestamp)
            local_path = f"{channel_id}/attachments/{filename}"
            attachments.append(Attachment(original=name, local=local_path))
            self._pending_downloads.append(_PendingDownload(local_path=local_path, url=url))

        if self._pending_downloads:
            try:
                asyncio.get_running_loop().create_task(self.process_download_queue())
            except RuntimeError:
                pass  # no loop yet; the next call with a loop drains the queue

        return attachments

    async def process_download_queue(self) -> None:
        if self._is_downloading or not self._pending_downloads:
            return

        self._is_downloading = True
        try:
            async with self._http_client_factory() as client:
                while self._pending_downloads:
                    item = self._pending_downloads.pop(0)
                    try:
                        await self._download(client, item)
                    except Exception as exc:
                        log.log_warning(
                            "Failed to download attachment", f"{item.local_path}: {exc}"
                        )
        finally:
            self._is_downloading = False

    async def _download(self, client: httpx.AsyncClient, item: _PendingDownload) -> None:
        file_path = os.path.join(self._working_dir, item.local_path)
        os.makedirs(os.path.dirname(file_path), exist_ok=True)

        resp = await client.get(
            item.url, headers={"Authorization": f"Bearer {self._bot_token}"}
        )
        resp.raise_for_status()
        with open(file_path, "wb") as fh:
            fh.write(resp.content)
