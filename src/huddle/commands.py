"""Channel commands handled before the agent: ``/login``, ``/logout``, ``/auth-status``.

Matching is exact and case-sensitive on the trimmed text. A pasted
``code#state`` while a login is pending is intercepted here too.
"""

from __future__ import annotations

import asyncio
import os

from huddle import log
from huddle.auth import LoginCancelledError, LoginError, LoginResult, OAuthFlow
from huddle.responder import ChatTransport

LOGIN_COMMANDS = ("/login", "/login anthropic")
LOGOUT_COMMANDS = ("/logout", "/logout anthropic")
STATUS_COMMANDS = ("/auth-status", "/auth")

LOGIN_SUCCESS_TEXT = (
    "✓ Successfully logged in to Anthropic!\n\nYou can now use Claude without an API key."
)
NOT_AUTHENTICATED_TEXT = "✗ Not authenticated. Use /login to authenticate."


def login_prompt(url: str) -> str:
    return (
        "*Login to Anthropic*\n\n"
        f"1. Open this URL:\n{url}\n\n"
        "2. Sign in and authorize\n\n"
        "3. Copy the code and paste it here\n\n"
        "_The code looks like: abc123...#xyz789..._"
    )


def is_command(text: str) -> bool:
    return text.strip() in (*LOGIN_COMMANDS, *LOGOUT_COMMANDS, *STATUS_COMMANDS)


class CommandHandler:
    def __init__(self, flow: OAuthFlow, transport: ChatTransport) -> None:
        self._flow = flow
        self._transport = transport
        self._watchers: set[asyncio.Task[None]] = set()

    async def try_handle(self, channel_id: str, text: str) -> bool:
        """Handle *text* if it is a command or a pending login's code. Returns True if handled."""
        text = text.strip()

        if text in LOGIN_COMMANDS:
            await self.handle_login(channel_id)
            return True
        if text in LOGOUT_COMMANDS:
            await self.handle_logout(channel_id)
            return True
        if text in STATUS_COMMANDS:
            await self.handle_auth_status(channel_id)
            return True
        if self._flow.is_auth_response(channel_id, text):
            await self.handle_auth_code(channel_id, text)
            return True
        return False

    async def handle_login(self, channel_id: str) -> None:
        url = self._flow.start_login(channel_id)
        waiter = self._flow.waiter(channel_id)
        if waiter is not None:
            task = asyncio.ensure_future(self._watch_login(channel_id, waiter))
            self._watchers.add(task)
            task.add_done_callback(self._watchers.discard)
        await self._transport.post_message(channel_id, login_prompt(url))

    async def _watch_login(self, channel_id: str, waiter: asyncio.Future[LoginResult]) -> None:
        try:
            await waiter
        except LoginCancelledError:
            return
        except LoginError as exc:
            log.log_login_result(channel_id, False, str(exc))
            try:
                await self._transport.post_message(channel_id, f"✗ Login failed: {exc}")
            except Exception as post_exc:
                log.log_warning(f"[{channel_id}] Could not post login failure", str(post_exc))

    async def handle_auth_code(self, channel_id: str, text: str) -> None:
        result = await self._flow.complete_login(channel_id, text)
        if result.success:
            await self._transport.post_message(channel_id, LOGIN_SUCCESS_TEXT)
        else:
            await self._transport.post_message(channel_id, f"✗ Login failed: {result.error}")

    async def handle_logout(self, channel_id: str) -> None:
        self._flow.logout()
        log.log_info(f"[{channel_id}] Logged out of Anthropic")
        await self._transport.post_message(channel_id, "✓ Logged out of Anthropic")

    async def handle_auth_status(self, channel_id: str) -> None:
        if self._flow.credentials.is_logged_in():
            status = "✓ Logged in via OAuth"
        elif os.environ.get("ANTHROPIC_OAUTH_TOKEN") or os.environ.get("ANTHROPIC_API_KEY"):
            status = "Using API key from environment"
        else:
            status = NOT_AUTHENTICATED_TEXT
        await self._transport.post_message(channel_id, status)
