"""SlackBot: Socket Mode events in, Web API calls out, backfill on start."""

from __future__ import annotations

import os
import re
import time
from typing import Any, Callable

from slack_sdk.socket_mode.aiohttp import SocketModeClient
from slack_sdk.socket_mode.request import SocketModeRequest
from slack_sdk.socket_mode.response import SocketModeResponse
from slack_sdk.web.async_client import AsyncWebClient

from huddle import log
from huddle.controller import InboundEvent
from huddle.log import LogContext
from huddle.responder import ChannelInfo, UserInfo
from huddle.store import ChannelStore, LoggedMessage, ts_to_float, ts_to_iso

_MENTION_RE = re.compile(r"<@[A-Z0-9]+>", re.IGNORECASE)

_BACKFILL_MAX_PAGES = 3


def strip_mentions(text: str) -> str:
    return _MENTION_RE.sub("", text or "").strip()


class SlackBot:
    """Chat transport backed by Slack.

    Every human message is appended to the channel log before it is routed,
    so the log stays complete even for messages that never start a run.
    """

    def __init__(
        self,
        *,
        app_token: str,
        bot_token: str,
        store: ChannelStore,
        web_client: AsyncWebClient | None = None,
    ) -> None:
        self._store = store
        self._web_client = web_client or AsyncWebClient(token=bot_token)
        self._app_token = app_token
        self._socket_client: SocketModeClient | None = None
        self._dispatch: Callable[[InboundEvent], str] | None = None
        self._bot_user_id: str | None = None
        self._startup_ts: float | None = None

        self._users: dict[str, UserInfo] = {}
        self._channels: dict[str, ChannelInfo] = {}

    def bind(self, dispatch: Callable[[InboundEvent], str]) -> None:
        self._dispatch = dispatch

    # ── Lifecycle ────────────────────────────────────────────────────

    async def start(self) -> None:
        auth = await self._web_client.auth_test()
        self._bot_user_id = auth["user_id"]

        await self._fetch_users()
        await self._fetch_channels()
        log.log_info(f"Loaded {len(self._channels)} channels, {len(self._users)} users")

        await self._backfill_all_channels()

        self._socket_client = SocketModeClient(
            app_token=self._app_token, web_client=self._web_client
        )
        self._socket_client.socket_mode_request_listeners.append(self._on_request)
        await self._socket_client.connect()

        self._startup_ts = time.time()
        log.log_connected()

    async def stop(self) -> None:
        if self._socket_client is not None:
            await self._socket_client.close()
            self._socket_client = None
            log.log_disconnected()

    # ── Directories ──────────────────────────────────────────────────

    def get_user(self, user_id: str) -> UserInfo | None:
        return self._users.get(user_id)

    def get_channel(self, channel_id: str) -> ChannelInfo | None:
        return self._channels.get(channel_id)

    def get_all_users(self) -> list[UserInfo]:
        return list(self._users.values())

    def get_all_channels(self) -> list[ChannelInfo]:
        return list(self._channels.values())

    # ── Outbound ─────────────────────────────────────────────────────

    async def post_message(self, channel: str, text: str) -> str:
        result = await self._web_client.chat_postMessage(channel=channel, text=text)
        return result["ts"]

    async def update_message(self, channel: str, ts: str, text: str) -> None:
        await self._web_client.chat_update(channel=channel, ts=ts, text=text)

    async def delete_message(self, channel: str, ts: str) -> None:
        await self._web_client.chat_delete(channel=channel, ts=ts)

    async def post_in_thread(self, channel: str, thread_ts: str, text: str) -> str:
        result = await self._web_client.chat_postMessage(
            channel=channel, thread_ts=thread_ts, text=text
        )
        return result["ts"]

    async def upload_file(
        self,
        channel: str,
        file_path: str,
        title: str | None = None,
        thread_ts: str | None = None,
    ) -> None:
        file_name = title or os.path.basename(file_path)
        with open(file_path, "rb") as fh:
            file_content = fh.read()
        kwargs: dict[str, Any] = {
            "channel": channel,
            "file": file_content,
            "filename": file_name,
            "title": file_name,
        }
        if thread_ts:
            kwargs["thread_ts"] = thread_ts
        await self._web_client.files_upload_v2(**kwargs)

    # ── Inbound ──────────────────────────────────────────────────────

    async def _on_request(self, client: SocketModeClient, req: SocketModeRequest) -> None:
        await client.send_socket_mode_response(SocketModeResponse(envelope_id=req.envelope_id))
        if req.type != "events_api":
            return

        event = (req.payload or {}).get("event", {})
        event_type = event.get("type")
        if event_type == "app_mention":
            self.handle_app_mention(event)
        elif event_type == "message":
            self.handle_message(event)

    def handle_app_mention(self, event: dict[str, Any]) -> None:
        channel = event.get("channel", "")
        if channel.startswith("D"):
            return  # DMs arrive as message events
        self._accept(event)

    def handle_message(self, event: dict[str, Any]) -> None:
        user = event.get("user")
        text = event.get("text") or ""
        subtype = event.get("subtype")

        if event.get("bot_id") or not user or user == self._bot_user_id:
            return
        if subtype is not None and subtype != "file_share":
            return
        if not text and not event.get("files"):
            return

        if event.get("channel_type") == "im":
            self._accept(event)
        elif not (self._bot_user_id and f"<@{self._bot_user_id}>" in text):
            # plain channel chatter is logged for context; mentions arrive as app_mention
            self._accept(event, trigger=False)

    def _accept(self, event: dict[str, Any], trigger: bool = True) -> None:
        channel = event.get("channel", "")
        user_id = event.get("user", "")
        ts = event.get("ts", "")
        text = strip_mentions(event.get("text", ""))
        files = event.get("files") or []

        attachments = self._store.process_attachments(channel, files, ts) if files else []
        user = self._users.get(user_id)
        logged = self._store.append_entry(
            channel,
            LoggedMessage(
                date=ts_to_iso(ts),
                ts=ts,
                user=user_id,
                text=text,
                attachments=attachments,
                user_name=user.user_name if user else None,
                display_name=user.display_name if user else None,
            ),
        )
        if not logged:
            return

        ch = self._channels.get(channel)
        log.log_user_message(
            LogContext(channel, user.user_name if user else user_id, ch.name if ch else None),
            text,
        )

        if self._startup_ts is not None and ts_to_float(ts) < self._startup_ts:
            log.log_info(f"[{channel}] Logged old message (pre-startup), not triggering: {text[:30]}")
            return
        if not trigger or self._dispatch is None:
            return

        self._dispatch(
            InboundEvent(
                channel=channel,
                user=user_id,
                text=text,
                ts=ts,
                thread_ts=event.get("thread_ts"),
                attachments=attachments,
            )
        )

    # ── Backfill ─────────────────────────────────────────────────────

    async def backfill_channel(self, channel_id: str) -> int:
        existing_ts = self._store.get_logged_timestamps(channel_id)
        latest_ts = max(existing_ts, key=ts_to_float) if existing_ts else None

        all_messages: list[dict[str, Any]] = []
        cursor: str | None = None
        for _ in range(_BACKFILL_MAX_PAGES):
            kwargs: dict[str, Any] = {"channel": channel_id, "inclusive": False, "limit": 1000}
            if latest_ts:
                kwargs["oldest"] = latest_ts
            if cursor:
                kwargs["cursor"] = cursor

            result = await self._web_client.conversations_history(**kwargs)
            all_messages.extend(result.get("messages", []))
            cursor = (result.get("response_metadata") or {}).get("next_cursor")
            if not cursor:
                break

        relevant = [
            msg
            for msg in all_messages
            if msg.get("ts")
            and msg["ts"] not in existing_ts
            and (
                msg.get("user") == self._bot_user_id
                or (
                    not msg.get("bot_id")
                    and msg.get("subtype") in (None, "file_share")
                    and msg.get("user")
                    and (msg.get("text") or msg.get("files"))
                )
            )
        ]
        # Slack returns newest first
        relevant.sort(key=lambda m: ts_to_float(m["ts"]))

        for msg in relevant:
            is_bot = msg.get("user") == self._bot_user_id
            user = None if is_bot else self._users.get(msg["user"])
            files = msg.get("files") or []
            attachments = (
                self._store.process_attachments(channel_id, files, msg["ts"]) if files else []
            )
            self._store.append_entry(
                channel_id,
                LoggedMessage(
                    date=ts_to_iso(msg["ts"]),
                    ts=msg["ts"],
                    user="bot" if is_bot else msg["user"],
                    text=strip_mentions(msg.get("text", "")),
                    attachments=attachments,
                    is_bot=is_bot,
                    user_name=user.user_name if user else None,
                    display_name=user.display_name if user else None,
                ),
                dedupe=False,
            )

        return len(relevant)

    async def _backfill_all_channels(self) -> None:
        start_time = time.time()
        channels = [
            ch for ch in self._channels.values() if os.path.exists(self._store.log_path(ch.id))
        ]
        log.log_backfill_start(len(channels))

        total = 0
        for ch in channels:
            try:
                count = await self.backfill_channel(ch.id)
            except Exception as exc:
                log.log_warning(f"Failed to backfill #{ch.name}", str(exc))
                continue
            if count > 0:
                log.log_backfill_channel(ch.name, count)
            total += count

        log.log_backfill_complete(total, (time.time() - start_time) * 1000)

    # ── Directories loading ──────────────────────────────────────────

    async def _fetch_users(self) -> None:
        cursor: str | None = None
        while True:
            kwargs: dict[str, Any] = {"limit": 200}
            if cursor:
                kwargs["cursor"] = cursor
            result = await self._web_client.users_list(**kwargs)
            for u in result.get("members", []):
                uid = u.get("id")
                name = u.get("name")
                if uid and name and not u.get("deleted"):
                    self._users[uid] = UserInfo(
                        id=uid, user_name=name, display_name=u.get("real_name") or name
                    )
            cursor = (result.get("response_metadata") or {}).get("next_cursor")
            if not cursor:
                break

    async def _fetch_channels(self) -> None:
        cursor: str | None = None
        while True:
            kwargs: dict[str, Any] = {
                "types": "public_channel,private_channel",
                "exclude_archived": True,
                "limit": 200,
            }
            if cursor:
                kwargs["cursor"] = cursor
            result = await self._web_client.conversations_list(**kwargs)
            for c in result.get("channels", []):
                cid = c.get("id")
                cname = c.get("name")
                if cid and cname and c.get("is_member"):
                    self._channels[cid] = ChannelInfo(id=cid, name=cname)
            cursor = (result.get("response_metadata") or {}).get("next_cursor")
            if not cursor:
                break

        cursor = None
        while True:
            kwargs = {"types": "im", "limit": 200}
            if cursor:
                kwargs["cursor"] = cursor
            result = await self._web_client.conversations_list(**kwargs)
            for im in result.get("channels", []):
                im_id = im.get("id")
                if not im_id:
                    continue
                user = self._users.get(im.get("user") or "")
                name = f"DM:{user.user_name}" if user else f"DM:{im_id}"
                self._channels[im_id] = ChannelInfo(id=im_id, name=name)
            cursor = (result.get("response_metadata") or {}).get("next_cursor")
            if not cursor:
                break
