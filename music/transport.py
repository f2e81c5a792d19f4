"""Voice transport: one guild's voice connection plus its audio player.

discord.py's ``VoiceClient`` runs audio on its own thread and reports the end
of a source through an ``after`` callback on that thread. ``VoiceTransport``
marshals those callbacks back onto the event loop and exposes them as player
status transitions, which is what the playback driver reacts to.
"""
from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum, auto
from typing import Callable, Optional

import discord

from .errors import TransportJoinFailed, TransportPlaybackFailed
from .metrics import voice_connections

log = logging.getLogger(__name__)

StatusListener = Callable[["PlayerStatus", "PlayerStatus"], None]
ErrorListener = Callable[[Exception], None]


class PlayerStatus(Enum):
    IDLE = auto()
    BUFFERING = auto()
    PLAYING = auto()
    PAUSED = auto()


class ConnectionStatus(Enum):
    SIGNALLING = auto()
    CONNECTING = auto()
    READY = auto()
    DISCONNECTED = auto()
    DESTROYED = auto()


class VoiceTransport:
    def __init__(self, voice_client: discord.VoiceClient) -> None:
        self.voice_client = voice_client
        self.status = PlayerStatus.IDLE
        self.connection_status = (
            ConnectionStatus.READY if voice_client.is_connected() else ConnectionStatus.CONNECTING
        )
        self._loop = asyncio.get_running_loop()
        self._status_listeners: list[StatusListener] = []
        self._error_listeners: list[ErrorListener] = []
        self._waiters: list[tuple[PlayerStatus, asyncio.Future]] = []
        self._generation = 0
        self._started_at: float | None = None
        self._paused_at: float | None = None
        self._paused_total = 0.0

    @classmethod
    async def join(cls, channel: discord.VoiceChannel, *, timeout: float = 20.0) -> VoiceTransport:
        """Connect to ``channel`` (or move an existing connection there) and wait until ready."""
        vc: Optional[discord.VoiceClient] = channel.guild.voice_client  # type: ignore[assignment]
        try:
            if vc is None:
                vc = await channel.connect(self_deaf=True, timeout=timeout)
                voice_connections.inc()
            elif vc.channel != channel:
                await vc.move_to(channel)
        except asyncio.TimeoutError as exc:
            raise TransportJoinFailed(f"timed out after {timeout:g}s") from exc
        except discord.DiscordException as exc:
            raise TransportJoinFailed(str(exc) or type(exc).__name__) from exc
        return cls(vc)

    # ── state ────────────────────────────────────────────────────────────

    @property
    def channel(self) -> discord.abc.Connectable:
        return self.voice_client.channel

    @property
    def channel_id(self) -> int:
        return self.voice_client.channel.id

    @property
    def is_destroyed(self) -> bool:
        return self.connection_status is ConnectionStatus.DESTROYED

    @property
    def playback_seconds(self) -> float:
        """Seconds of audio played for the current source, excluding pauses."""
        if self._started_at is None:
            return 0.0
        end = self._paused_at if self._paused_at is not None else time.monotonic()
        return max(0.0, end - self._started_at - self._paused_total)

    def subscribe(self, on_status: StatusListener, on_error: ErrorListener) -> None:
        self._status_listeners.append(on_status)
        self._error_listeners.append(on_error)

    def _set_status(self, new: PlayerStatus) -> None:
        old = self.status
        if old is new:
            return
        self.status = new
        for target, fut in list(self._waiters):
            if fut.done():
                continue
            if target is new:
                fut.set_result(None)
            elif new is PlayerStatus.IDLE:
                fut.set_exception(
                    TransportPlaybackFailed(f"player went idle before {target.name.lower()}")
                )
        for listener in list(self._status_listeners):
            listener(old, new)

    async def wait_for(self, status: PlayerStatus, timeout: float) -> None:
        """Wait until the player reaches ``status``; raises TransportPlaybackFailed otherwise."""
        if self.status is status:
            return
        fut = self._loop.create_future()
        entry = (status, fut)
        self._waiters.append(entry)
        try:
            await asyncio.wait_for(fut, timeout)
        except asyncio.TimeoutError as exc:
            raise TransportPlaybackFailed(
                f"did not start {status.name.lower()} within {timeout:g}s"
            ) from exc
        finally:
            self._waiters.remove(entry)

    # ── player controls ──────────────────────────────────────────────────

    def play(self, source: discord.AudioSource) -> None:
        if self.is_destroyed or not self.voice_client.is_connected():
            raise TransportPlaybackFailed("voice connection is not ready")
        self._generation += 1
        generation = self._generation
        self._set_status(PlayerStatus.BUFFERING)
        try:
            self.voice_client.play(
                source,
                after=lambda e: self._loop.call_soon_threadsafe(self._finished, generation, e),
            )
        except discord.ClientException as exc:
            # Revert without notifying: nothing ever started.
            self.status = PlayerStatus.IDLE
            raise TransportPlaybackFailed(str(exc)) from exc
        self._started_at = time.monotonic()
        self._paused_at = None
        self._paused_total = 0.0
        if self.voice_client.is_playing():
            self._set_status(PlayerStatus.PLAYING)

    def _finished(self, generation: int, error: Exception | None) -> None:
        if generation != self._generation:
            return
        self._started_at = None
        self._paused_at = None
        if error is not None:
            log.error("Audio player error: %s", error)
            for listener in list(self._error_listeners):
                listener(error)
        self._set_status(PlayerStatus.IDLE)

    def pause(self) -> bool:
        if self.status is not PlayerStatus.PLAYING:
            return False
        self.voice_client.pause()
        self._paused_at = time.monotonic()
        self._set_status(PlayerStatus.PAUSED)
        return True

    def unpause(self) -> bool:
        if self.status is not PlayerStatus.PAUSED:
            return False
        self.voice_client.resume()
        if self._paused_at is not None:
            self._paused_total += time.monotonic() - self._paused_at
        self._paused_at = None
        self._set_status(PlayerStatus.PLAYING)
        return True

    def stop(self, force: bool = False) -> None:
        """Stop the current source.

        A normal stop lets the audio thread report the end, which surfaces as an
        idle transition. ``force`` marks the player idle immediately and drops the
        late end-of-source callback.
        """
        self.voice_client.stop()
        if force:
            self._generation += 1
            self._started_at = None
            self._paused_at = None
            self._set_status(PlayerStatus.IDLE)

    def set_volume(self, gain: float) -> bool:
        source = self.voice_client.source
        if isinstance(source, discord.PCMVolumeTransformer):
            source.volume = gain
            return True
        return False

    # ── connection ───────────────────────────────────────────────────────

    def mark_disconnected(self) -> None:
        if not self.is_destroyed:
            self.connection_status = ConnectionStatus.DISCONNECTED

    async def destroy(self) -> None:
        if self.is_destroyed:
            return
        self.connection_status = ConnectionStatus.DESTROYED
        try:
            await self.voice_client.disconnect(force=True)
        finally:
            voice_connections.dec()
