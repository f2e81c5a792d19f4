"""Companion status messages: one now-playing and one queue message per session."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Optional

import discord

from .audio_source import TrackInfo
from .errors import MessageNotFound, MessageOperationFailed, MusicError
from .messages import discard_message, edit_message
from .queue_manager import TRACKS_PER_PAGE, LoopMode
from .session import PlaybackState, Session

if TYPE_CHECKING:
    from .playback import PlaybackDriver

log = logging.getLogger(__name__)

INFO_COLOR = 0x0099FF
ERROR_COLOR = 0xFF0000
SUCCESS_COLOR = 0x00FF00
PROGRESS_BAR_LENGTH = 15

SESSION_ENDED = "This music session has ended."
WRONG_CHANNEL = "You must be in the same voice channel as the bot to use player controls."
PLAYBACK_ENDED = "Playback has ended."


# ── formatting ───────────────────────────────────────────────────────────


def format_duration(seconds: float) -> str:
    if not seconds or seconds <= 0:
        return "00:00"
    seconds = int(seconds)
    h, rem = divmod(seconds, 3600)
    m, s = divmod(rem, 60)
    if h:
        return f"{h}:{m:02d}:{s:02d}"
    return f"{m:02d}:{s:02d}"


def progress_bar(elapsed: float, total: int, length: int = PROGRESS_BAR_LENGTH) -> str:
    if not total or total <= 0 or elapsed < 0:
        return "`[──────────────────]`"
    ratio = min(1.0, max(0.0, elapsed / total))
    filled = round(length * ratio)
    bar = "🔘" * filled + "─" * (length - filled)
    return f"`[{format_duration(elapsed)} / {format_duration(total)}] [{bar}]`"


def simple_embed(message: str) -> discord.Embed:
    return discord.Embed(description=message, color=INFO_COLOR)


def error_embed(message: str) -> discord.Embed:
    return discord.Embed(title="❌ Error", description=message, color=ERROR_COLOR)


def success_embed(message: str) -> discord.Embed:
    return discord.Embed(title="✅ Success", description=message, color=SUCCESS_COLOR)


def _track_line(track: TrackInfo) -> str:
    return f"[{track.title}]({track.url}) `[{format_duration(track.duration)}]` - Req by <@{track.requester_id}>"


# ── render state ─────────────────────────────────────────────────────────


@dataclass(frozen=True)
class RenderState:
    """Everything needed to draw a session's status messages."""

    current_track: Optional[TrackInfo]
    queue_slice: list[TrackInfo]
    loop_mode: LoopMode
    volume: int
    page: int
    total_pages: int
    paused: bool
    elapsed: float
    queue_length: int

    def as_dict(self) -> dict[str, Any]:
        def track(t: TrackInfo) -> dict[str, Any]:
            return {
                "title": t.title,
                "url": t.url,
                "duration": t.duration,
                "thumbnail": t.thumbnail,
                "requester_id": t.requester_id,
                "requester": t.requester,
                "source": t.source.value,
            }

        return {
            "current_track": track(self.current_track) if self.current_track else None,
            "queue": [track(t) for t in self.queue_slice],
            "queue_length": self.queue_length,
            "loop_mode": self.loop_mode.label(),
            "volume": self.volume,
            "page": self.page,
            "total_pages": self.total_pages,
            "paused": self.paused,
            "elapsed": round(self.elapsed, 1),
        }


def snapshot(session: Session) -> RenderState:
    page = session.clamp_page()
    transport = session.transport
    return RenderState(
        current_track=session.current_track,
        queue_slice=session.queue.page(page, TRACKS_PER_PAGE),
        loop_mode=session.loop_mode,
        volume=session.volume,
        page=page,
        total_pages=session.total_pages(),
        paused=session.state is PlaybackState.PAUSED,
        elapsed=transport.playback_seconds if transport is not None and session.current_track else 0.0,
        queue_length=len(session.queue),
    )


def build_now_playing_embed(state: RenderState) -> discord.Embed:
    track = state.current_track
    if track is None:
        raise ValueError("cannot render now playing without a current track")
    embed = discord.Embed(
        title=f"{state.loop_mode.emoji()} Now Playing",
        description=f"**[{track.title}]({track.url})**",
        color=INFO_COLOR,
        timestamp=discord.utils.utcnow(),
    )
    if track.thumbnail:
        embed.set_thumbnail(url=track.thumbnail)
    embed.add_field(name="Requested by", value=f"<@{track.requester_id}>", inline=True)
    embed.add_field(name="Duration", value=format_duration(track.duration), inline=True)
    embed.add_field(name="Volume", value=f"{state.volume}%", inline=True)
    embed.add_field(name="Queue", value=f"{state.queue_length} songs left", inline=True)
    embed.add_field(name="Looping", value=state.loop_mode.label(), inline=True)
    embed.add_field(name="Progress", value=progress_bar(state.elapsed, track.duration), inline=False)
    return embed


def build_queue_embed(state: RenderState) -> discord.Embed:
    start = state.page * TRACKS_PER_PAGE
    lines = [f"**{start + i + 1}.** {_track_line(t)}" for i, t in enumerate(state.queue_slice)]
    embed = discord.Embed(
        title="🎵 Music Queue",
        description="\n".join(lines) or "The queue is empty.",
        color=INFO_COLOR,
    )
    embed.set_footer(text=f"Page {state.page + 1}/{state.total_pages} | Total songs: {state.queue_length}")
    if state.current_track is not None:
        embed.add_field(name="Now Playing", value=f"▶️ **{_track_line(state.current_track)}**", inline=False)
    return embed


# ── views ────────────────────────────────────────────────────────────────


class NowPlayingView(discord.ui.View):
    """Player controls under the now-playing message."""

    def __init__(self, ui: UISync, *, paused: bool, loop_mode: LoopMode) -> None:
        super().__init__(timeout=None)
        self.ui = ui
        loop_labels = {LoopMode.NONE: "▶️ Off", LoopMode.TRACK: "🔂 Track", LoopMode.QUEUE: "🔁 Queue"}
        buttons = [
            (
                "np_pause_resume",
                "▶️ Resume" if paused else "⏸️ Pause",
                discord.ButtonStyle.success if paused else discord.ButtonStyle.secondary,
            ),
            ("np_skip", "⏭️ Skip", discord.ButtonStyle.primary),
            ("np_stop", "⏹️ Stop", discord.ButtonStyle.danger),
            (
                "np_loop",
                loop_labels[loop_mode],
                discord.ButtonStyle.success if loop_mode is not LoopMode.NONE else discord.ButtonStyle.secondary,
            ),
        ]
        for custom_id, label, style in buttons:
            button = discord.ui.Button(label=label, style=style, custom_id=custom_id)
            button.callback = self._make_callback(custom_id)
            self.add_item(button)

    def _make_callback(self, action: str):
        async def callback(interaction: discord.Interaction) -> None:
            await self.ui.handle_control(interaction, action)
        return callback


class QueueView(discord.ui.View):
    """Prev/next buttons that remember the page they were rendered for."""

    def __init__(self, ui: UISync, page: int, total_pages: int) -> None:
        super().__init__(timeout=None)
        self.ui = ui
        self.page = page
        for direction, label, disabled in (
            ("prev", "◀️ Prev", page <= 0),
            ("next", "Next ▶️", page >= total_pages - 1),
        ):
            button = discord.ui.Button(
                label=label,
                style=discord.ButtonStyle.primary,
                custom_id=f"queue_{direction}_{page}",
                disabled=disabled,
            )
            button.callback = self._make_callback(direction)
            self.add_item(button)

    def _make_callback(self, direction: str):
        async def callback(interaction: discord.Interaction) -> None:
            await self.ui.handle_page(interaction, direction, self.page)
        return callback


class UISync:
    def __init__(self, driver: PlaybackDriver) -> None:
        self.driver = driver

    @property
    def registry(self):
        return self.driver.registry

    def _now_playing(self, session: Session) -> tuple[discord.Embed, NowPlayingView]:
        state = snapshot(session)
        view = NowPlayingView(self, paused=state.paused, loop_mode=state.loop_mode)
        return build_now_playing_embed(state), view

    def _queue(self, session: Session) -> tuple[discord.Embed, QueueView | None]:
        state = snapshot(session)
        view = QueueView(self, state.page, state.total_pages) if state.total_pages > 1 else None
        return build_queue_embed(state), view

    def _remember(self, session: Session, message: discord.Message, view: discord.ui.View | None) -> None:
        old = session.views.pop(message.id, None)
        if old is not None and old is not view:
            old.stop()
        if view is not None:
            session.views[message.id] = view

    async def _send(self, session: Session, **fields: Any) -> discord.Message | None:
        channel = session.status_channel
        if channel is None:
            return None
        try:
            return await channel.send(**fields)
        except discord.HTTPException as exc:
            log.warning("[%s] Could not send status message: %s", session.guild_id, exc)
            return None

    async def _discard(self, session: Session, message: discord.Message | None, view: discord.ui.View | None = None) -> None:
        if view is not None:
            view.stop()
        try:
            await discard_message(message, session.views)
        except MessageOperationFailed as exc:
            log.warning("[%s] Could not delete status message: %s", session.guild_id, exc)

    async def notify(self, session: Session, embed: discord.Embed) -> None:
        """Post a one-off notice to the session's status channel."""
        await self._send(session, embed=embed)

    # ── now playing ──────────────────────────────────────────────────────

    async def retire_now_playing(self, session: Session) -> None:
        message, session.now_playing_message = session.now_playing_message, None
        await self._discard(session, message)

    async def publish_now_playing(self, session: Session) -> None:
        """Replace the now-playing message with a fresh one at the bottom of the channel."""
        await self.retire_now_playing(session)
        if not self.registry.is_live(session) or session.current_track is None:
            return
        embed, view = self._now_playing(session)
        message = await self._send(session, embed=embed, view=view)
        if message is None:
            view.stop()
            return
        if not self.registry.is_live(session):
            await self._discard(session, message, view)
            return
        # Another publish may have finished while this one was sending.
        await self.retire_now_playing(session)
        session.now_playing_message = message
        self._remember(session, message, view)

    async def refresh_now_playing(self, session: Session) -> None:
        if not self.registry.is_live(session) or session.current_track is None:
            return
        message = session.now_playing_message
        if message is None:
            await self.publish_now_playing(session)
            return
        embed, view = self._now_playing(session)
        try:
            await edit_message(message, embed=embed, view=view)
        except MessageNotFound:
            view.stop()
            if session.now_playing_message is message:
                session.now_playing_message = None
            session.views.pop(message.id, None)
        except MessageOperationFailed as exc:
            view.stop()
            log.warning("[%s] Could not edit now-playing message: %s", session.guild_id, exc)
        else:
            self._remember(session, message, view)

    # ── queue ────────────────────────────────────────────────────────────

    async def refresh_queue(self, session: Session) -> None:
        if not self.registry.is_live(session):
            return
        embed, view = self._queue(session)
        message = session.queue_message
        if message is None:
            if not session.queue and session.current_track is None:
                return
            message = await self._send(session, embed=embed, view=view)
            if message is None:
                return
            if not self.registry.is_live(session) or session.queue_message is not None:
                await self._discard(session, message, view)
                return
            session.queue_message = message
            self._remember(session, message, view)
            return
        try:
            await edit_message(message, embed=embed, view=view)
        except MessageNotFound:
            if session.queue_message is message:
                session.queue_message = None
            session.views.pop(message.id, None)
        except MessageOperationFailed as exc:
            log.warning("[%s] Could not edit queue message: %s", session.guild_id, exc)
        else:
            self._remember(session, message, view)

    async def show_queue(self, session: Session) -> None:
        """Re-post the queue message from its first page."""
        message, session.queue_message = session.queue_message, None
        await self._discard(session, message)
        if not self.registry.is_live(session):
            return
        session.queue_page = 0
        embed, view = self._queue(session)
        message = await self._send(session, embed=embed, view=view)
        if message is None:
            return
        if not self.registry.is_live(session):
            await self._discard(session, message, view)
            return
        previous, session.queue_message = session.queue_message, message
        self._remember(session, message, view)
        await self._discard(session, previous)

    async def show_now_playing(self, session: Session) -> None:
        await self.publish_now_playing(session)

    # ── interactions ─────────────────────────────────────────────────────

    async def _session_for(self, interaction: discord.Interaction) -> Session | None:
        session = self.registry.get(interaction.guild_id) if interaction.guild_id else None
        if session is not None and not session.torn_down:
            return session
        await interaction.response.send_message(SESSION_ENDED, ephemeral=True)
        if interaction.message is not None:
            try:
                await interaction.message.edit(view=None)
            except discord.HTTPException:
                pass
        return None

    async def handle_control(self, interaction: discord.Interaction, action: str) -> None:
        session = await self._session_for(interaction)
        if session is None:
            return
        voice = getattr(interaction.user, "voice", None)
        member_channel = voice.channel if voice else None
        if session.transport is None or member_channel is None or member_channel.id != session.transport.channel_id:
            await interaction.response.send_message(WRONG_CHANNEL, ephemeral=True)
            return
        live = session.now_playing_message
        if live is None or interaction.message is None or interaction.message.id != live.id:
            await interaction.response.send_message("This now playing message is outdated.", ephemeral=True)
            return

        await interaction.response.defer()
        guild_id = session.guild_id
        try:
            if session.current_track is None:
                try:
                    await edit_message(interaction.message, content=PLAYBACK_ENDED, embed=None, view=None)
                except (MessageNotFound, MessageOperationFailed):
                    pass
                return

            feedback: str | None = None
            if action == "np_pause_resume":
                if session.state is PlaybackState.PAUSED:
                    feedback = "▶️ Resumed." if await self.driver.resume(guild_id) else "❌ Failed to resume."
                elif session.state is PlaybackState.PLAYING:
                    feedback = "⏸️ Paused." if await self.driver.pause(guild_id) else "❌ Failed to pause."
            elif action == "np_skip":
                try:
                    track = await self.driver.skip(guild_id)
                except MusicError as exc:
                    feedback = exc.message
                else:
                    await interaction.followup.send(f"⏭️ Skipping {track.title}...", ephemeral=True)
                    return
            elif action == "np_stop":
                await interaction.followup.send("⏹️ Stopping playback...", ephemeral=True)
                try:
                    await edit_message(interaction.message, content="⏹️ Playback stopped.", embed=None, view=None)
                except (MessageNotFound, MessageOperationFailed):
                    pass
                await self.driver.stop(guild_id, f"stop button by {interaction.user}")
                return
            elif action == "np_loop":
                mode = await self.driver.set_loop_mode(guild_id, None)
                feedback = f"Loop mode set to: {mode.label()}"

            if feedback:
                await interaction.followup.send(feedback, ephemeral=True)
        except Exception:
            log.exception("[%s] Error handling button %s", guild_id, action)
            await interaction.followup.send("An error occurred while processing this action.", ephemeral=True)

    async def handle_page(self, interaction: discord.Interaction, direction: str, rendered_page: int) -> None:
        session = await self._session_for(interaction)
        if session is None:
            return
        live = session.queue_message
        if live is None or interaction.message is None or interaction.message.id != live.id:
            await interaction.response.send_message("This queue message is outdated.", ephemeral=True)
            return
        await interaction.response.defer()
        if rendered_page != session.queue_page:
            log.debug(
                "[%s] Ignoring stale queue button (page %s, current %s)",
                session.guild_id, rendered_page, session.queue_page,
            )
            return
        self.driver.page_queue(session.guild_id, direction)
        await self.refresh_queue(session)
