from __future__ import annotations

import asyncio
import logging

import discord

from .session import SessionRegistry
from .settings import Settings
from .ui_sync import simple_embed

log = logging.getLogger(__name__)

INACTIVITY_MESSAGE = "👋 Left the voice channel due to inactivity."


class InactivitySupervisor:
    """Delayed teardown of sessions that have nothing to do."""

    def __init__(self, registry: SessionRegistry, settings: Settings) -> None:
        self.registry = registry
        self.settings = settings

    def arm(self, guild_id: int, timeout: float | None = None) -> None:
        """(Re)start the inactivity timer; any pending timer is replaced."""
        session = self.registry.get(guild_id)
        if session is None or session.torn_down:
            return
        if timeout is None:
            timeout = self.settings.inactivity_timeout
        session.cancel_timer()
        loop = asyncio.get_running_loop()
        session.timer = loop.call_later(timeout, self._fire, guild_id)
        log.debug("[%s] Inactivity timer armed for %ss", guild_id, timeout)

    def disarm(self, guild_id: int) -> None:
        session = self.registry.get(guild_id)
        if session is not None and session.timer is not None:
            session.cancel_timer()
            log.debug("[%s] Inactivity timer cancelled", guild_id)

    def _fire(self, guild_id: int) -> None:
        session = self.registry.get(guild_id)
        if session is None:
            return
        session.timer = None
        session.spawn(self.expire(guild_id))

    async def expire(self, guild_id: int) -> None:
        session = self.registry.get(guild_id)
        if session is None or session.torn_down:
            return
        transport = session.transport
        if transport is not None and not transport.is_destroyed and session.status_channel is not None:
            try:
                await session.status_channel.send(embed=simple_embed(INACTIVITY_MESSAGE))
            except discord.HTTPException as exc:
                log.warning("[%s] Could not post inactivity notice: %s", guild_id, exc)
        await self.registry.teardown(guild_id, "inactivity")

    # ── voice-state policy ───────────────────────────────────────────────

    def member_left(self, guild_id: int, channel: discord.abc.GuildChannel) -> None:
        """A member left ``channel``; start the short timer if only bots remain in it."""
        session = self.registry.get(guild_id)
        if session is None or session.transport is None:
            return
        if channel.id != session.transport.channel_id:
            return
        humans = [m for m in channel.members if not m.bot]  # type: ignore[attr-defined]
        if not humans:
            log.info("[%s] Voice channel is empty, leaving in %ss", guild_id, self.settings.empty_channel_timeout)
            self.arm(guild_id, self.settings.empty_channel_timeout)

    def member_joined(self, guild_id: int, channel: discord.abc.GuildChannel) -> None:
        session = self.registry.get(guild_id)
        if session is None or session.transport is None:
            return
        if channel.id != session.transport.channel_id:
            return
        self.disarm(guild_id)
        if session.current_track is None and not session.busy:
            self.arm(guild_id, self.settings.inactivity_timeout)
