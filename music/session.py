from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Coroutine, Iterator

import discord

from .audio_source import TrackInfo
from .messages import discard_message
from .metrics import active_sessions, queue_size
from .queue_manager import TRACKS_PER_PAGE, LoopMode, TrackQueue
from .settings import Settings
from .transport import VoiceTransport

log = logging.getLogger(__name__)


class PlaybackState(Enum):
    IDLE = auto()
    ADVANCING = auto()
    PLAYING = auto()
    PAUSED = auto()
    TORN_DOWN = auto()


@dataclass(eq=False)
class Session:
    """All mutable playback state for one guild."""

    guild_id: int
    queue: TrackQueue
    volume: int = 50
    status_channel: discord.abc.Messageable | None = None
    transport: VoiceTransport | None = None
    current_track: TrackInfo | None = None
    loop_mode: LoopMode = LoopMode.NONE
    state: PlaybackState = PlaybackState.IDLE
    timer: asyncio.TimerHandle | None = None
    retry: asyncio.TimerHandle | None = None
    now_playing_message: discord.Message | None = None
    queue_message: discord.Message | None = None
    queue_page: int = 0
    skip_requested: bool = False
    views: dict[int, discord.ui.View] = field(default_factory=dict)
    tasks: set[asyncio.Task] = field(default_factory=set)

    @property
    def busy(self) -> bool:
        return self.state is PlaybackState.ADVANCING

    @property
    def torn_down(self) -> bool:
        return self.state is PlaybackState.TORN_DOWN

    def select_next(self) -> TrackInfo | None:
        """Pick the track to play next according to the loop mode.

        An explicit skip moves past a looped track instead of replaying it.
        """
        skipping, self.skip_requested = self.skip_requested, False
        if self.loop_mode is LoopMode.TRACK and self.current_track is not None and not skipping:
            return self.current_track
        if self.loop_mode is LoopMode.QUEUE and self.current_track is not None:
            self.queue.requeue(self.current_track)
        return self.queue.pop_front()

    def total_pages(self) -> int:
        return self.queue.total_pages(TRACKS_PER_PAGE)

    def clamp_page(self) -> int:
        self.queue_page = max(0, min(self.queue_page, self.total_pages() - 1))
        return self.queue_page

    def cancel_timer(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None

    def cancel_retry(self) -> None:
        if self.retry is not None:
            self.retry.cancel()
            self.retry = None

    def spawn(self, coro: Coroutine) -> asyncio.Task:
        """Run ``coro`` as a background task owned by this session."""
        task = asyncio.ensure_future(coro)
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)
        task.add_done_callback(self._log_task_error)
        return task

    def _log_task_error(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error("[%s] Background task failed", self.guild_id, exc_info=exc)


class SessionRegistry:
    """Keyed store of live sessions, one per guild."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._sessions: dict[int, Session] = {}

    def __contains__(self, guild_id: int) -> bool:
        return guild_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def __iter__(self) -> Iterator[Session]:
        return iter(list(self._sessions.values()))

    def get(self, guild_id: int) -> Session | None:
        return self._sessions.get(guild_id)

    def ensure(self, guild_id: int, channel: discord.abc.Messageable | None = None) -> Session:
        """Return the live session for ``guild_id``, creating one if needed.

        A session that is still finishing its teardown counts as absent and is
        replaced by a fresh one.
        """
        session = self._sessions.get(guild_id)
        if session is None or session.torn_down:
            session = Session(
                guild_id=guild_id,
                queue=TrackQueue(self.settings.max_queue_size),
                volume=self.settings.default_volume,
                status_channel=channel,
            )
            self._sessions[guild_id] = session
            active_sessions.set(len(self._sessions))
            log.info("[%s] Session created", guild_id)
        elif channel is not None:
            session.status_channel = channel
        return session

    def is_live(self, session: Session) -> bool:
        """True while ``session`` is still the registered, non-torn-down session for its guild."""
        return self._sessions.get(session.guild_id) is session and not session.torn_down

    async def teardown(self, guild_id: int, reason: str = "") -> bool:
        """Tear a session down. Returns False when there was nothing to do."""
        session = self._sessions.get(guild_id)
        if session is None or session.torn_down:
            return False
        log.info("[%s] Tearing down session%s", guild_id, f" ({reason})" if reason else "")
        session.state = PlaybackState.TORN_DOWN
        session.cancel_timer()
        session.cancel_retry()
        session.current_track = None
        session.queue.clear()
        for task in list(session.tasks):
            if task is not asyncio.current_task():
                task.cancel()

        transport = session.transport
        if transport is not None:
            try:
                transport.stop(force=True)
            except Exception:
                log.exception("[%s] Failed to stop transport", guild_id)

        np_message, session.now_playing_message = session.now_playing_message, None
        q_message, session.queue_message = session.queue_message, None
        for message in (np_message, q_message):
            try:
                await discard_message(message, session.views)
            except Exception:
                log.exception("[%s] Failed to delete status message", guild_id)

        if transport is not None and not transport.is_destroyed:
            try:
                await transport.destroy()
            except Exception:
                log.exception("[%s] Failed to destroy voice connection", guild_id)

        if self._sessions.get(guild_id) is session:
            del self._sessions[guild_id]
            try:
                queue_size.remove(str(guild_id))
            except KeyError:
                pass
        active_sessions.set(len(self._sessions))
        return True

    async def shutdown(self) -> None:
        for guild_id in list(self._sessions):
            await self.teardown(guild_id, "shutdown")
