"""Per-guild playback state machine.

``PlaybackDriver`` is the only component that moves a session between
``IDLE``, ``ADVANCING``, ``PLAYING`` and ``PAUSED``. ``ADVANCING`` doubles as
the busy flag: while one advance is in flight every other trigger (end of
track, skip, retry timer, enqueue) is a no-op. Every await inside the driver
is followed by a ``registry.is_live`` check because the session may have been
torn down in the meantime.
"""
from __future__ import annotations

import asyncio
import functools
import logging
from typing import Awaitable, Callable, Coroutine

import discord

from .audio_source import MediaResolver, TrackInfo, volume_to_gain
from .errors import (
    InvalidVolume,
    MusicError,
    NoActiveSession,
    NotInVoiceChannel,
    QueueFull,
    ResolutionFailed,
    TransportJoinFailed,
)
from .inactivity import InactivitySupervisor
from .metrics import playback_errors_total, queue_size, tracks_started_total
from .queue_manager import LoopMode
from .session import PlaybackState, Session, SessionRegistry
from .settings import Settings
from .transport import PlayerStatus, VoiceTransport
from .ui_sync import RenderState, UISync, error_embed, snapshot

log = logging.getLogger(__name__)

Connect = Callable[..., Awaitable[VoiceTransport]]

NOTHING_PLAYING = "Nothing is currently playing."
TRACK_LOADING = "A track is loading, try again in a moment."


class PlaybackDriver:
    def __init__(
        self,
        settings: Settings,
        registry: SessionRegistry | None = None,
        resolver: MediaResolver | None = None,
        supervisor: InactivitySupervisor | None = None,
        connect: Connect | None = None,
    ) -> None:
        self.settings = settings
        self.registry = registry or SessionRegistry(settings)
        self.resolver = resolver or MediaResolver(cookiefile=settings.cookiefile)
        self.supervisor = supervisor or InactivitySupervisor(self.registry, settings)
        self._connect: Connect = connect or VoiceTransport.join
        self.ui = UISync(self)

    # ── helpers ──────────────────────────────────────────────────────────

    def _require(self, guild_id: int, message: str | None = None) -> Session:
        session = self.registry.get(guild_id)
        if session is None or session.torn_down:
            raise NoActiveSession(message) if message else NoActiveSession()
        return session

    def _require_track(
        self, guild_id: int, message: str = NOTHING_PLAYING
    ) -> tuple[Session, TrackInfo, VoiceTransport]:
        session = self._require(guild_id, message)
        track, transport = session.current_track, session.transport
        if track is None or transport is None:
            raise NoActiveSession(message)
        return session, track, transport

    def _spawn(self, session: Session, coro: Coroutine) -> asyncio.Task:
        return session.spawn(coro)

    def _update_queue_metric(self, session: Session) -> None:
        queue_size.labels(guild_id=str(session.guild_id)).set(len(session.queue))

    def _attach(self, session: Session, transport: VoiceTransport) -> None:
        session.transport = transport
        transport.subscribe(
            functools.partial(self._on_status, session),
            functools.partial(self._on_error, session),
        )

    def _schedule_retry(self, session: Session) -> None:
        session.cancel_retry()
        loop = asyncio.get_running_loop()
        session.retry = loop.call_later(self.settings.advance_retry_delay, self._retry, session)

    def _retry(self, session: Session) -> None:
        session.retry = None
        if self.registry.is_live(session):
            self._spawn(session, self.advance(session))

    # ── advance ──────────────────────────────────────────────────────────

    async def advance(self, session: Session) -> None:
        """Select and start the next track, or go idle when there is none."""
        if not self.registry.is_live(session) or session.busy:
            return
        transport = session.transport
        if transport is None or transport.is_destroyed:
            return

        guild_id = session.guild_id
        session.state = PlaybackState.ADVANCING
        session.cancel_timer()
        session.cancel_retry()
        source: discord.AudioSource | None = None
        track: TrackInfo | None = None
        try:
            await self.ui.retire_now_playing(session)
            if not self.registry.is_live(session):
                return

            track = session.select_next()
            self._update_queue_metric(session)
            if track is None:
                log.info("[%s] Queue empty, ending playback", guild_id)
                session.current_track = None
                session.state = PlaybackState.IDLE
                self.supervisor.arm(guild_id, self.settings.inactivity_timeout)
                await self.ui.refresh_queue(session)
                return

            session.current_track = track
            log.info("[%s] Starting %s", guild_id, track.title)
            source = await self.resolver.open(track, session.volume)
            if not self.registry.is_live(session):
                return
            transport.play(source)
            source = None
            await transport.wait_for(PlayerStatus.PLAYING, self.settings.play_confirm_timeout)
            if not self.registry.is_live(session):
                return

            tracks_started_total.inc()
            session.state = PlaybackState.PLAYING
            log.info("[%s] Now playing: %s", guild_id, track.title)
            await self.ui.publish_now_playing(session)
            await self.ui.refresh_queue(session)
        except MusicError as exc:
            self._start_failed(session, track, exc.message)
        except Exception as exc:
            log.exception("[%s] Unexpected error while starting playback", guild_id)
            self._start_failed(session, track, str(exc) or type(exc).__name__)
        finally:
            if source is not None:
                source.cleanup()
            if session.state is PlaybackState.ADVANCING:
                session.state = PlaybackState.PLAYING if session.current_track else PlaybackState.IDLE

    def _start_failed(self, session: Session, track: TrackInfo | None, reason: str) -> None:
        if not self.registry.is_live(session):
            return
        playback_errors_total.inc()
        title = track.title if track else "track"
        log.warning("[%s] Failed to play %s: %s", session.guild_id, title, reason)
        session.current_track = None
        session.skip_requested = False
        transport = session.transport
        if transport is not None and transport.status is not PlayerStatus.IDLE:
            transport.stop(force=True)
        session.state = PlaybackState.IDLE
        self._schedule_retry(session)
        self._spawn(
            session,
            self.ui.notify(session, error_embed(f"❌ Failed to play **{title}**. Skipping. Error: {reason[:100]}")),
        )

    # ── transport events ─────────────────────────────────────────────────

    def _on_status(self, session: Session, old: PlayerStatus, new: PlayerStatus) -> None:
        if not self.registry.is_live(session) or new is not PlayerStatus.IDLE:
            return
        if old in (PlayerStatus.PLAYING, PlayerStatus.PAUSED) and session.current_track is not None:
            self._spawn(session, self.advance(session))
        elif old is not PlayerStatus.IDLE and session.current_track is None and not session.busy:
            if session.queue:
                if session.retry is None:
                    self._spawn(session, self.advance(session))
            else:
                self.supervisor.arm(session.guild_id, self.settings.inactivity_timeout)

    def _on_error(self, session: Session, error: Exception) -> None:
        if not self.registry.is_live(session) or session.busy:
            return
        playback_errors_total.inc()
        log.error("[%s] Audio player error: %s", session.guild_id, error)
        session.current_track = None
        session.skip_requested = False
        session.state = PlaybackState.IDLE
        self._schedule_retry(session)
        self._spawn(session, self.ui.notify(session, error_embed(f"Audio player error: {error}. Skipping.")))

    # ── operations ───────────────────────────────────────────────────────

    async def enqueue(
        self,
        guild_id: int,
        query: str,
        requester: discord.Member,
        channel: discord.abc.Messageable,
    ) -> tuple[TrackInfo, int]:
        """Resolve ``query`` and append it; joins the requester's voice channel if needed.

        Returns the track and its 1-based queue position.
        """
        voice = getattr(requester, "voice", None)
        voice_channel = voice.channel if voice else None
        if voice_channel is None:
            raise NotInVoiceChannel()

        existing = self.registry.get(guild_id)
        if existing is not None and not existing.torn_down:
            if len(existing.queue) >= existing.queue.max_size:
                raise QueueFull(existing.queue.max_size)
            current = existing.transport
            if current is not None and not current.is_destroyed and voice_channel.id != current.channel_id:
                raise NotInVoiceChannel("You must be in the same voice channel as the bot.")

        session = self.registry.ensure(guild_id, channel)
        if session.transport is None or session.transport.is_destroyed:
            try:
                transport = await self._connect(voice_channel, timeout=self.settings.join_timeout)
            except TransportJoinFailed:
                log.warning("[%s] Could not join voice channel %s", guild_id, voice_channel)
                await self.registry.teardown(guild_id, "join failed")
                raise
            if not self.registry.is_live(session):
                await transport.destroy()
                raise NoActiveSession("Session expired while joining. Please try again.")
            if session.transport is None or session.transport.is_destroyed:
                self._attach(session, transport)
                log.info("[%s] Joined voice channel %s", guild_id, voice_channel)

        try:
            track = await self.resolver.resolve(query, requester)
        except ResolutionFailed:
            if self.registry.is_live(session) and session.state is PlaybackState.IDLE and not session.queue:
                self.supervisor.arm(guild_id, self.settings.inactivity_timeout)
            raise
        if not self.registry.is_live(session):
            raise NoActiveSession("Session expired while searching. Please try again.")

        position = session.queue.enqueue(track)
        self._update_queue_metric(session)
        log.info("[%s] Queued %s at #%d", guild_id, track.title, position)

        transport = session.transport
        if (
            transport is not None
            and transport.status is PlayerStatus.IDLE
            and session.current_track is None
            and not session.busy
            and session.retry is None
        ):
            self._spawn(session, self.advance(session))
        else:
            await self.ui.refresh_queue(session)
        return track, position

    async def skip(self, guild_id: int) -> TrackInfo:
        session, track, transport = self._require_track(guild_id, "Nothing is playing to skip.")
        if session.busy:
            raise MusicError(TRACK_LOADING)
        log.info("[%s] Skipping %s", guild_id, track.title)
        session.skip_requested = True
        transport.stop()
        return track

    async def stop(self, guild_id: int, reason: str = "stop requested") -> None:
        self._require(guild_id, "The bot is not in a voice channel or playing.")
        await self.registry.teardown(guild_id, reason)

    async def pause(self, guild_id: int) -> bool:
        """Pause playback; False when it was not playing (already paused)."""
        session, _, transport = self._require_track(guild_id, "Nothing is playing to pause.")
        if not transport.pause():
            return False
        session.state = PlaybackState.PAUSED
        await self.ui.refresh_now_playing(session)
        return True

    async def resume(self, guild_id: int) -> bool:
        session, _, transport = self._require_track(guild_id, "The player is not active.")
        if not transport.unpause():
            return False
        session.state = PlaybackState.PLAYING
        await self.ui.refresh_now_playing(session)
        return True

    async def set_volume(self, guild_id: int, level: int) -> int:
        session = self._require(guild_id)
        if not 0 <= level <= 200:
            raise InvalidVolume(level)
        session.volume = level
        if session.transport is not None and session.current_track is not None:
            session.transport.set_volume(volume_to_gain(level))
        log.info("[%s] Volume set to %d%%", guild_id, level)
        await self.ui.refresh_now_playing(session)
        return level

    async def set_loop_mode(self, guild_id: int, mode: LoopMode | None = None) -> LoopMode:
        """Set the loop mode, or cycle none -> track -> queue when ``mode`` is None."""
        session = self._require(guild_id)
        session.loop_mode = mode if mode is not None else session.loop_mode.next()
        log.info("[%s] Loop mode: %s", guild_id, session.loop_mode.label())
        await self.ui.refresh_now_playing(session)
        return session.loop_mode

    async def shuffle(self, guild_id: int) -> None:
        session = self._require(guild_id)
        if len(session.queue) < 2:
            raise MusicError("Need at least 2 songs in the queue to shuffle.")
        session.queue.shuffle()
        await self.ui.refresh_queue(session)

    async def remove_at(self, guild_id: int, position: int) -> TrackInfo:
        session = self._require(guild_id)
        removed = session.queue.remove_at(position)
        session.clamp_page()
        self._update_queue_metric(session)
        await self.ui.refresh_queue(session)
        await self.ui.refresh_now_playing(session)
        return removed

    async def clear_queue(self, guild_id: int) -> int:
        session = self._require(guild_id)
        if not session.queue:
            raise MusicError("The queue is already empty.")
        count = session.queue.clear()
        session.queue_page = 0
        self._update_queue_metric(session)
        await self.ui.refresh_queue(session)
        await self.ui.refresh_now_playing(session)
        return count

    def get_render_state(self, guild_id: int) -> RenderState:
        return snapshot(self._require(guild_id))

    def page_queue(self, guild_id: int, direction: str) -> int:
        session = self._require(guild_id)
        step = 1 if direction == "next" else -1
        session.queue_page += step
        return session.clamp_page()

    async def show_queue(self, guild_id: int, channel: discord.abc.Messageable) -> None:
        session = self.registry.get(guild_id)
        if session is None or session.torn_down or (not session.queue and session.current_track is None):
            raise NoActiveSession("The queue is empty and nothing is playing.")
        session.status_channel = channel
        await self.ui.show_queue(session)

    async def show_now_playing(self, guild_id: int, channel: discord.abc.Messageable) -> None:
        session, _, _ = self._require_track(guild_id)
        session.status_channel = channel
        await self.ui.show_now_playing(session)

    async def handle_bot_disconnected(self, guild_id: int) -> None:
        session = self.registry.get(guild_id)
        if session is None:
            return
        if session.transport is not None:
            session.transport.mark_disconnected()
        await self.registry.teardown(guild_id, "voice connection lost")
