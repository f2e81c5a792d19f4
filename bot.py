import asyncio
import logging

import discord
from discord.ext import commands

from music.settings import Settings

log = logging.getLogger("guildplay")


def _log_loop_exception(loop: asyncio.AbstractEventLoop, context: dict) -> None:
    exc = context.get("exception")
    log.error("Unhandled error in event loop: %s", context.get("message", ""), exc_info=exc)


class Guildplay(commands.AutoShardedBot):
    def __init__(self, settings: Settings) -> None:
        intents = discord.Intents.default()
        intents.voice_states = True
        super().__init__(command_prefix=commands.when_mentioned, intents=intents)
        self.settings = settings
        self._web_runner = None

    async def setup_hook(self) -> None:
        asyncio.get_running_loop().set_exception_handler(_log_loop_exception)

        await self.load_extension("cogs.music_cog")
        await self.tree.sync()
        log.info("Command tree synced.")

        if self.settings.metrics_port:
            try:
                from music.metrics import start_metrics_server
                start_metrics_server(self.settings.metrics_port)
                log.info("Prometheus metrics server started on :%s", self.settings.metrics_port)
            except OSError as exc:
                log.warning("Failed to start metrics server: %s", exc)

        if self.settings.web_port:
            from web.app import start_web_server
            cog = self.get_cog("MusicCog")
            try:
                self._web_runner = await start_web_server(self, cog.driver, self.settings.web_port)
                log.info("Status API started on :%s", self.settings.web_port)
            except OSError as exc:
                log.warning("Failed to start status API: %s", exc)

    async def close(self) -> None:
        if self._web_runner is not None:
            await self._web_runner.cleanup()
        await super().close()

    async def on_ready(self) -> None:
        log.info("Logged in as %s (ID: %s) in %d guilds, %s shard(s)",
                 self.user, self.user.id, len(self.guilds),
                 self.shard_count or 1)
        activity = discord.Activity(type=discord.ActivityType.listening, name="/play")
        await self.change_presence(activity=activity)


def main() -> None:
    settings = Settings.from_env()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    if not settings.token:
        raise SystemExit("DISCORD_TOKEN not set in .env")

    bot = Guildplay(settings)
    bot.run(settings.token, log_handler=None)


if __name__ == "__main__":
    main()
