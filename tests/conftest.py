"""Pytest configuration helpers."""

import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]

if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("DISCORD_TOKEN", "TEST_TOKEN")

from unittest.mock import AsyncMock

import pytest

from music.playback import PlaybackDriver
from music.settings import Settings
from tests.fakes import FakeChannel, FakeResolver, FakeTransport, make_voice_channel


@pytest.fixture
def settings():
    return Settings(token="t", advance_retry_delay=0.01, play_confirm_timeout=0.05)


@pytest.fixture
def channel():
    return FakeChannel()


@pytest.fixture
def voice_channel():
    return make_voice_channel()


@pytest.fixture
def transport(voice_channel):
    return FakeTransport(voice_channel.id)


@pytest.fixture
def resolver():
    return FakeResolver()


@pytest.fixture
def driver(settings, resolver, transport):
    return PlaybackDriver(settings, resolver=resolver, connect=AsyncMock(return_value=transport))


@pytest.fixture
def session(driver, channel, transport):
    """A session that has already joined voice and is idle."""
    session = driver.registry.ensure(1, channel)
    driver._attach(session, transport)
    return session
