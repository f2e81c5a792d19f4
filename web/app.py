"""Embedded status API for guildplay.

Shares the bot process and talks to the same ``PlaybackDriver`` as the slash
commands. Started from ``setup_hook`` when the WEB_PORT env var is set.
"""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import aiohttp.web as web

from music.errors import MusicError, NoActiveSession

if TYPE_CHECKING:
    from discord.ext import commands

    from music.playback import PlaybackDriver

log = logging.getLogger(__name__)

routes = web.RouteTableDef()


def _driver(request: web.Request) -> PlaybackDriver:
    return request.app["driver"]


def _guild_id(request: web.Request) -> int:
    try:
        return int(request.match_info["guild_id"])
    except ValueError:
        raise web.HTTPBadRequest(text="Invalid guild id")


# ── Health ───────────────────────────────────────────────────────────────

@routes.get("/health")
async def health(request: web.Request) -> web.Response:
    bot = request.app.get("bot")
    return web.json_response({
        "status": "ok",
        "guilds": len(bot.guilds) if bot is not None else 0,
        "sessions": len(_driver(request).registry),
    })


# ── Queue ────────────────────────────────────────────────────────────────

@routes.get("/api/guilds/{guild_id}/queue")
async def get_queue(request: web.Request) -> web.Response:
    guild_id = _guild_id(request)
    try:
        state = _driver(request).get_render_state(guild_id)
    except NoActiveSession:
        raise web.HTTPNotFound(text="No active session")
    return web.json_response(state.as_dict())


@routes.post("/api/guilds/{guild_id}/skip")
async def skip(request: web.Request) -> web.Response:
    guild_id = _guild_id(request)
    try:
        track = await _driver(request).skip(guild_id)
    except NoActiveSession as exc:
        raise web.HTTPNotFound(text=exc.message)
    except MusicError as exc:
        raise web.HTTPConflict(text=exc.message)
    log.info("[%s] Skipped %s via web API", guild_id, track.title)
    return web.json_response({"status": "skipped", "title": track.title})


@routes.post("/api/guilds/{guild_id}/volume")
async def set_volume(request: web.Request) -> web.Response:
    guild_id = _guild_id(request)
    try:
        body = await request.json()
    except ValueError:
        raise web.HTTPBadRequest(text="Body must be JSON")
    level = body.get("level") if isinstance(body, dict) else None
    if not isinstance(level, int) or isinstance(level, bool) or not 0 <= level <= 200:
        raise web.HTTPBadRequest(text="Volume must be 0-200")
    try:
        level = await _driver(request).set_volume(guild_id, level)
    except NoActiveSession as exc:
        raise web.HTTPNotFound(text=exc.message)
    except MusicError as exc:
        raise web.HTTPBadRequest(text=exc.message)
    return web.json_response({"volume": level})


# ── Server lifecycle ─────────────────────────────────────────────────────

def create_app(driver: PlaybackDriver, bot: commands.Bot | None = None) -> web.Application:
    app = web.Application()
    app["driver"] = driver
    app["bot"] = bot
    app.router.add_routes(routes)
    return app


async def start_web_server(bot: commands.Bot, driver: PlaybackDriver, port: int = 8080) -> web.AppRunner:
    runner = web.AppRunner(create_app(driver, bot))
    await runner.setup()
    site = web.TCPSite(runner, "0.0.0.0", port)
    await site.start()
    return runner
