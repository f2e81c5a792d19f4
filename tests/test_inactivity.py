import asyncio
import logging
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import discord
import pytest

from music.inactivity import INACTIVITY_MESSAGE, InactivitySupervisor
from music.session import PlaybackState
from tests.fakes import drain, make_track, make_voice_channel


def _remaining(handle):
    return handle.when() - asyncio.get_running_loop().time()


def _human():
    return SimpleNamespace(bot=False)


def _bot():
    return SimpleNamespace(bot=True)


@pytest.fixture
def supervisor(driver):
    return driver.supervisor


# ─── Timer ───────────────────────────────────────────────────────────────────


class TestTimer:
    @pytest.mark.asyncio
    async def test_arm_replaces_pending_timer(self, supervisor, session):
        supervisor.arm(1, 50)
        first = session.timer
        supervisor.arm(1, 10)

        assert first.cancelled()
        assert session.timer is not first
        assert 9 < _remaining(session.timer) <= 10

    @pytest.mark.asyncio
    async def test_arm_defaults_to_long_timeout(self, supervisor, session, settings):
        supervisor.arm(1)
        assert settings.inactivity_timeout - 1 < _remaining(session.timer) <= settings.inactivity_timeout

    @pytest.mark.asyncio
    async def test_disarm(self, supervisor, session):
        supervisor.arm(1, 10)
        handle = session.timer
        supervisor.disarm(1)
        assert session.timer is None
        assert handle.cancelled()

    @pytest.mark.asyncio
    async def test_arm_without_session_is_ignored(self, supervisor, driver):
        supervisor.arm(99, 10)
        assert 99 not in driver.registry

    @pytest.mark.asyncio
    async def test_timer_fires_teardown(self, supervisor, session, channel, driver):
        supervisor.arm(1, 0.01)
        await asyncio.sleep(0.03)
        await drain(session)

        assert 1 not in driver.registry
        assert [e.description for e in channel.embeds()] == [INACTIVITY_MESSAGE]

    @pytest.mark.asyncio
    async def test_failed_expiry_is_logged(self, supervisor, session, driver, caplog):
        driver.registry.teardown = AsyncMock(side_effect=RuntimeError("gateway gone"))

        with caplog.at_level(logging.ERROR, logger="music.session"):
            supervisor.arm(1, 0.01)
            await asyncio.sleep(0.03)
            await drain(session)

        assert "Background task failed" in caplog.text
        assert not session.tasks


# ─── Expire ──────────────────────────────────────────────────────────────────


class TestExpire:
    @pytest.mark.asyncio
    async def test_posts_notice_and_tears_down(self, supervisor, session, channel, transport, driver):
        await supervisor.expire(1)

        assert [e.description for e in channel.embeds()] == [INACTIVITY_MESSAGE]
        assert transport.destroy_calls == 1
        assert 1 not in driver.registry

    @pytest.mark.asyncio
    async def test_no_notice_when_transport_gone(self, supervisor, session, channel, transport, driver):
        transport.is_destroyed = True
        await supervisor.expire(1)

        channel.send.assert_not_awaited()
        assert 1 not in driver.registry

    @pytest.mark.asyncio
    async def test_notice_failure_still_tears_down(self, supervisor, session, channel, driver):
        channel.send = AsyncMock(side_effect=discord.Forbidden(MagicMock(status=403, reason="Forbidden"), "no"))
        await supervisor.expire(1)
        assert 1 not in driver.registry

    @pytest.mark.asyncio
    async def test_expire_after_teardown_is_noop(self, supervisor, session, channel, driver):
        await driver.registry.teardown(1)
        await supervisor.expire(1)
        channel.send.assert_not_awaited()


# ─── Voice-state policy ──────────────────────────────────────────────────────


class TestVoiceState:
    @pytest.mark.asyncio
    async def test_last_human_leaving_arms_short_timer(self, supervisor, session, voice_channel, settings):
        voice_channel.members = [_bot()]
        supervisor.member_left(1, voice_channel)

        assert session.timer is not None
        assert settings.empty_channel_timeout - 1 < _remaining(session.timer) <= settings.empty_channel_timeout

    @pytest.mark.asyncio
    async def test_humans_remaining_keeps_timer_off(self, supervisor, session, voice_channel):
        voice_channel.members = [_bot(), _human()]
        supervisor.member_left(1, voice_channel)
        assert session.timer is None

    @pytest.mark.asyncio
    async def test_other_channel_is_ignored(self, supervisor, session):
        supervisor.member_left(1, make_voice_channel(99))
        assert session.timer is None

    @pytest.mark.asyncio
    async def test_join_while_playing_disarms(self, supervisor, session, voice_channel):
        session.current_track = make_track("A")
        session.state = PlaybackState.PLAYING
        supervisor.arm(1, 10)

        supervisor.member_joined(1, voice_channel)

        assert session.timer is None

    @pytest.mark.asyncio
    async def test_join_while_idle_rearms_long_timer(self, supervisor, session, voice_channel, settings):
        supervisor.arm(1, 10)
        supervisor.member_joined(1, voice_channel)

        assert session.timer is not None
        assert _remaining(session.timer) > settings.inactivity_timeout - 1
