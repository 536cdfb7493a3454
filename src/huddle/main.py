"""Entry point: CLI args, wiring, signal handling."""

from __future__ import annotations

import asyncio
import os
import signal
import sys
from typing import Any

from huddle import log
from huddle.agent import create_runner
from huddle.auth import CredentialStore, OAuthFlow
from huddle.controller import RunController
from huddle.events import create_events_watcher
from huddle.sandbox import SandboxConfig, parse_sandbox_arg, validate_sandbox
from huddle.session import SessionRegistry
from huddle.settings import SettingsManager
from huddle.slack import SlackBot
from huddle.store import ChannelStore

USAGE = "Usage: huddle [--sandbox=host|docker:<name>] <working-directory>"


def parse_args(args: list[str]) -> dict[str, Any]:
    sandbox = SandboxConfig(type="host")
    working_dir: str | None = None

    i = 0
    while i < len(args):
        arg = args[i]
        if arg.startswith("--sandbox="):
            sandbox = parse_sandbox_arg(arg[len("--sandbox="):])
        elif arg == "--sandbox":
            i += 1
            sandbox = parse_sandbox_arg(args[i] if i < len(args) else "")
        elif not arg.startswith("-"):
            working_dir = os.path.abspath(arg)
        i += 1

    return {"working_dir": working_dir, "sandbox": sandbox}


async def _async_main() -> None:
    parsed = parse_args(sys.argv[1:])

    app_token = os.environ.get("HUDDLE_SLACK_APP_TOKEN")
    bot_token = os.environ.get("HUDDLE_SLACK_BOT_TOKEN")

    working_dir: str | None = parsed["working_dir"]
    sandbox: SandboxConfig = parsed["sandbox"]

    if not working_dir:
        print(USAGE, file=sys.stderr)
        sys.exit(1)

    if not app_token or not bot_token:
        print("Missing env: HUDDLE_SLACK_APP_TOKEN, HUDDLE_SLACK_BOT_TOKEN", file=sys.stderr)
        sys.exit(1)

    await validate_sandbox(sandbox)
    log.log_startup(working_dir, sandbox.describe())

    store = ChannelStore(working_dir, bot_token)
    settings = SettingsManager(working_dir)
    flow = OAuthFlow(CredentialStore(working_dir))
    registry = SessionRegistry(store, lambda _channel_id: create_runner())

    bot = SlackBot(app_token=app_token, bot_token=bot_token, store=store)
    controller = RunController(registry, bot, flow, settings, sandbox, working_dir)
    bot.bind(controller.dispatch)

    events_watcher = create_events_watcher(working_dir, controller.dispatch)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _shutdown() -> None:
        log.log_info("Shutting down...")
        stop_event.set()

    loop.add_signal_handler(signal.SIGINT, _shutdown)
    loop.add_signal_handler(signal.SIGTERM, _shutdown)

    await bot.start()
    events_watcher.start()

    await stop_event.wait()
    events_watcher.stop()
    await bot.stop()


def main() -> None:
    asyncio.run(_async_main())


if __name__ == "__main__":
    main()
