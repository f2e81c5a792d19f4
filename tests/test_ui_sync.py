from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import discord
import pytest

from music.queue_manager import LoopMode
from music.session import PlaybackState
from music.ui_sync import (
    PLAYBACK_ENDED,
    SESSION_ENDED,
    WRONG_CHANNEL,
    NowPlayingView,
    QueueView,
    RenderState,
    build_now_playing_embed,
    build_queue_embed,
    format_duration,
    progress_bar,
)
from tests.fakes import FakeMessage, drain, make_member, make_track, make_voice_channel


def _interaction(message=None, voice_channel=None, guild_id=1):
    interaction = MagicMock()
    interaction.guild_id = guild_id
    interaction.message = message
    interaction.user = make_member(voice_channel)
    interaction.response.send_message = AsyncMock()
    interaction.response.defer = AsyncMock()
    interaction.followup.send = AsyncMock()
    return interaction


def _state(**overrides):
    fields = dict(
        current_track=make_track("A", 200),
        queue_slice=[],
        loop_mode=LoopMode.NONE,
        volume=50,
        page=0,
        total_pages=1,
        paused=False,
        elapsed=0.0,
        queue_length=0,
    )
    fields.update(overrides)
    return RenderState(**fields)


async def _playing(driver, session, *titles):
    for title in titles:
        session.queue.enqueue(make_track(title))
    await driver.advance(session)


# ─── Formatting ──────────────────────────────────────────────────────────────


class TestFormatting:
    @pytest.mark.parametrize(
        "seconds, expected",
        [(0, "00:00"), (-3, "00:00"), (65, "01:05"), (600, "10:00"), (3661, "1:01:01")],
    )
    def test_format_duration(self, seconds, expected):
        assert format_duration(seconds) == expected

    def test_progress_bar_unknown_duration(self):
        assert progress_bar(30, 0) == "`[──────────────────]`"

    def test_progress_bar_third(self):
        assert progress_bar(60, 180) == "`[01:00 / 03:00] [" + "🔘" * 5 + "─" * 10 + "]`"

    def test_progress_bar_is_capped(self):
        assert progress_bar(500, 180).endswith("[" + "🔘" * 15 + "]`")


class TestEmbeds:
    def test_queue_embed_pages(self):
        tracks = [make_track(f"T{i}") for i in range(25)]
        embed = build_queue_embed(
            _state(queue_slice=tracks[20:], page=2, total_pages=3, queue_length=25)
        )
        assert embed.title == "🎵 Music Queue"
        assert embed.description.startswith("**21.** [T20]")
        assert embed.footer.text == "Page 3/3 | Total songs: 25"
        assert embed.fields[0].name == "Now Playing"

    def test_empty_queue_embed(self):
        embed = build_queue_embed(_state(current_track=None))
        assert embed.description == "The queue is empty."
        assert embed.fields == []

    def test_now_playing_embed(self):
        embed = build_now_playing_embed(_state(loop_mode=LoopMode.TRACK, volume=150, queue_length=4))
        fields = {f.name: f.value for f in embed.fields}
        assert embed.title == "🔂 Now Playing"
        assert fields["Volume"] == "150%"
        assert fields["Queue"] == "4 songs left"
        assert fields["Looping"] == "track"
        assert fields["Duration"] == "03:20"

    def test_now_playing_embed_needs_a_track(self):
        with pytest.raises(ValueError):
            build_now_playing_embed(_state(current_track=None))


# ─── Views ───────────────────────────────────────────────────────────────────


class TestViews:
    @pytest.mark.asyncio
    async def test_now_playing_buttons_reflect_state(self):
        view = NowPlayingView(MagicMock(), paused=True, loop_mode=LoopMode.QUEUE)
        buttons = {b.custom_id: b for b in view.children}
        assert list(buttons) == ["np_pause_resume", "np_skip", "np_stop", "np_loop"]
        assert buttons["np_pause_resume"].label == "▶️ Resume"
        assert buttons["np_loop"].label == "🔁 Queue"
        assert view.timeout is None

    @pytest.mark.asyncio
    async def test_queue_buttons_disabled_at_bounds(self):
        first = QueueView(MagicMock(), 0, 3)
        last = QueueView(MagicMock(), 2, 3)
        assert [(b.custom_id, b.disabled) for b in first.children] == [("queue_prev_0", True), ("queue_next_0", False)]
        assert [(b.custom_id, b.disabled) for b in last.children] == [("queue_prev_2", False), ("queue_next_2", True)]

    @pytest.mark.asyncio
    async def test_button_callback_routes_to_ui(self):
        ui = MagicMock()
        ui.handle_page = AsyncMock()
        view = QueueView(ui, 1, 3)
        interaction = MagicMock()

        await view.children[1].callback(interaction)

        ui.handle_page.assert_awaited_once_with(interaction, "next", 1)


# ─── Status messages ─────────────────────────────────────────────────────────


class TestStatusMessages:
    @pytest.mark.asyncio
    async def test_publish_replaces_previous_now_playing(self, driver, session):
        await _playing(driver, session, "A")
        old = session.now_playing_message

        await driver.ui.publish_now_playing(session)

        old.delete.assert_awaited_once()
        assert session.now_playing_message is not old
        assert set(session.views) == {session.now_playing_message.id}

    @pytest.mark.asyncio
    async def test_refresh_of_deleted_message_clears_reference(self, driver, session):
        await _playing(driver, session, "A")
        message = session.now_playing_message
        message.edit = AsyncMock(
            side_effect=discord.NotFound(MagicMock(status=404, reason="Not Found"), "Unknown Message")
        )

        await driver.ui.refresh_now_playing(session)

        assert session.now_playing_message is None
        assert message.id not in session.views

    @pytest.mark.asyncio
    async def test_queue_message_is_not_posted_for_empty_session(self, driver, session, channel):
        await driver.ui.refresh_queue(session)
        channel.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_show_queue_reposts_from_first_page(self, driver, session, channel):
        for i in range(15):
            session.queue.enqueue(make_track(f"T{i}"))
        session.queue_page = 1
        await driver.ui.refresh_queue(session)
        old = session.queue_message

        await driver.show_queue(1, channel)

        old.delete.assert_awaited_once()
        assert session.queue_page == 0
        assert session.queue_message is not old
        assert session.queue_message.fields["embed"].footer.text == "Page 1/2 | Total songs: 15"

    @pytest.mark.asyncio
    async def test_send_failure_is_tolerated(self, driver, session, channel):
        channel.send = AsyncMock(side_effect=discord.Forbidden(MagicMock(status=403, reason="Forbidden"), "no"))
        await _playing(driver, session, "A")

        assert session.state is PlaybackState.PLAYING
        assert session.now_playing_message is None


# ─── Interactions ────────────────────────────────────────────────────────────


class TestInteractions:
    @pytest.mark.asyncio
    async def test_session_ended(self, driver):
        message = FakeMessage()
        interaction = _interaction(message)

        await driver.ui.handle_control(interaction, "np_skip")

        interaction.response.send_message.assert_awaited_once_with(SESSION_ENDED, ephemeral=True)
        message.edit.assert_awaited_once_with(view=None)

    @pytest.mark.asyncio
    async def test_control_from_other_channel(self, driver, session):
        await _playing(driver, session, "A")
        interaction = _interaction(session.now_playing_message, make_voice_channel(99))

        await driver.ui.handle_control(interaction, "np_skip")

        interaction.response.send_message.assert_awaited_once_with(WRONG_CHANNEL, ephemeral=True)
        assert session.current_track.title == "A"

    @pytest.mark.asyncio
    async def test_control_on_outdated_message(self, driver, session, voice_channel):
        await _playing(driver, session, "A")
        interaction = _interaction(FakeMessage(), voice_channel)

        await driver.ui.handle_control(interaction, "np_pause_resume")

        interaction.response.send_message.assert_awaited_once_with(
            "This now playing message is outdated.", ephemeral=True
        )
        assert session.state is PlaybackState.PLAYING

    @pytest.mark.asyncio
    async def test_pause_button(self, driver, session, voice_channel):
        await _playing(driver, session, "A")
        interaction = _interaction(session.now_playing_message, voice_channel)

        await driver.ui.handle_control(interaction, "np_pause_resume")

        interaction.response.defer.assert_awaited_once()
        interaction.followup.send.assert_awaited_once_with("⏸️ Paused.", ephemeral=True)
        assert session.state is PlaybackState.PAUSED

    @pytest.mark.asyncio
    async def test_skip_button(self, driver, session, voice_channel):
        await _playing(driver, session, "A", "B")
        interaction = _interaction(session.now_playing_message, voice_channel)

        await driver.ui.handle_control(interaction, "np_skip")
        await drain(session)

        interaction.followup.send.assert_awaited_once_with("⏭️ Skipping A...", ephemeral=True)
        assert session.current_track.title == "B"

    @pytest.mark.asyncio
    async def test_loop_button_cycles(self, driver, session, voice_channel):
        await _playing(driver, session, "A")
        interaction = _interaction(session.now_playing_message, voice_channel)

        await driver.ui.handle_control(interaction, "np_loop")

        assert session.loop_mode is LoopMode.TRACK
        interaction.followup.send.assert_awaited_once_with("Loop mode set to: track", ephemeral=True)

    @pytest.mark.asyncio
    async def test_stop_button(self, driver, session, voice_channel):
        await _playing(driver, session, "A")
        message = session.now_playing_message
        interaction = _interaction(message, voice_channel)

        await driver.ui.handle_control(interaction, "np_stop")

        message.edit.assert_any_await(content="⏹️ Playback stopped.", embed=None, view=None)
        assert 1 not in driver.registry

    @pytest.mark.asyncio
    async def test_control_after_playback_ended(self, driver, session, voice_channel):
        await _playing(driver, session, "A")
        message = session.now_playing_message
        session.current_track = None
        interaction = _interaction(message, voice_channel)

        await driver.ui.handle_control(interaction, "np_skip")

        message.edit.assert_awaited_with(content=PLAYBACK_ENDED, embed=None, view=None)

    @pytest.mark.asyncio
    async def test_page_next(self, driver, session):
        for i in range(25):
            session.queue.enqueue(make_track(f"T{i}"))
        await driver.ui.refresh_queue(session)
        message = session.queue_message
        interaction = _interaction(message)

        await driver.ui.handle_page(interaction, "next", 0)

        assert session.queue_page == 1
        embed = message.edit.await_args.kwargs["embed"]
        assert embed.footer.text == "Page 2/3 | Total songs: 25"

    @pytest.mark.asyncio
    async def test_stale_page_button_is_ignored(self, driver, session):
        for i in range(25):
            session.queue.enqueue(make_track(f"T{i}"))
        await driver.ui.refresh_queue(session)
        message = session.queue_message
        interaction = _interaction(message)

        await driver.ui.handle_page(interaction, "next", 2)

        interaction.response.defer.assert_awaited_once()
        assert session.queue_page == 0
        message.edit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_page_on_outdated_queue_message(self, driver, session):
        session.queue.enqueue(make_track("A"))
        await driver.ui.refresh_queue(session)
        interaction = _interaction(FakeMessage())

        await driver.ui.handle_page(interaction, "next", 0)

        interaction.response.send_message.assert_awaited_once_with(
            "This queue message is outdated.", ephemeral=True
        )
