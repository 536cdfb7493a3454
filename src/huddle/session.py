"""Per-channel session state and the registry that owns it."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from huddle.agent import AgentRunner
from huddle.context import ChannelHistory
from huddle.store import ChannelStore


@dataclass
class ChannelSession:
    """Run state for one channel.

    Only the run controller mutates these fields. ``running`` is the single
    source of truth for whether a run is in flight.
    """

    channel_id: str
    channel_dir: str
    runner: AgentRunner
    store: ChannelStore
    history: ChannelHistory
    running: bool = False
    stop_requested: bool = False
    stop_message_ts: str | None = None


class SessionRegistry:
    """``channel_id -> ChannelSession``, created on first use and kept for the process lifetime."""

    def __init__(
        self,
        store: ChannelStore,
        runner_factory: Callable[[str], AgentRunner],
    ) -> None:
        self._store = store
        self._runner_factory = runner_factory
        self._sessions: dict[str, ChannelSession] = {}

    def get(self, channel_id: str) -> ChannelSession | None:
        return self._sessions.get(channel_id)

    def get_or_create(self, channel_id: str) -> ChannelSession:
        session = self._sessions.get(channel_id)
        if session is None:
            channel_dir = self._store.get_channel_dir(channel_id)
            session = ChannelSession(
                channel_id=channel_id,
                channel_dir=channel_dir,
                runner=self._runner_factory(channel_id),
                store=self._store,
                history=ChannelHistory(channel_dir),
            )
            self._sessions[channel_id] = session
        return session

    def is_running(self, channel_id: str) -> bool:
        session = self._sessions.get(channel_id)
        return session.running if session else False

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, channel_id: object) -> bool:
        return channel_id in self._sessions
