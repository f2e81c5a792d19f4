from __future__ import annotations

import logging
from typing import Optional

import discord
from discord import app_commands
from discord.ext import commands

from music.errors import MusicError, NotInVoiceChannel
from music.metrics import command_latency_seconds
from music.playback import PlaybackDriver
from music.queue_manager import LoopMode
from music.settings import Settings
from music.ui_sync import INFO_COLOR, error_embed, format_duration, simple_embed, success_embed

log = logging.getLogger(__name__)

GENERIC_ERROR = "An error occurred while executing that command."

_HELP_COMMANDS: list[tuple[str, str]] = [
    ("/play <query>", "Play a song from a YouTube URL or search keywords, or add it to the queue"),
    ("/skip", "Skip the current song"),
    ("/stop", "Stop playback, clear the queue and leave the voice channel"),
    ("/queue", "Show the queue"),
    ("/nowplaying", "Show the song that is playing"),
    ("/pause", "Pause playback"),
    ("/resume", "Resume playback"),
    ("/loop [mode]", "Set the loop mode (none, track, queue) or cycle through them"),
    ("/volume [level]", "Show or set the volume (0-200)"),
    ("/shuffle", "Shuffle the queue"),
    ("/remove <position>", "Remove a song from the queue"),
    ("/clear", "Clear the queue"),
    ("/help", "Show this list"),
]

_LOOP_REPLIES = {
    LoopMode.TRACK: "🔂 Looping current track.",
    LoopMode.QUEUE: "🔁 Looping queue.",
    LoopMode.NONE: "▶️ Loop disabled.",
}


def _build_help_embed() -> discord.Embed:
    embed = discord.Embed(
        title="🎵 Music Bot Commands",
        description="All commands are slash commands.",
        color=INFO_COLOR,
    )
    lines = [f"**{name}**: {desc}" for name, desc in _HELP_COMMANDS]
    embed.add_field(name="Commands", value="\n".join(lines), inline=False)
    return embed


def _member_channel(interaction: discord.Interaction) -> Optional[discord.VoiceChannel]:
    voice = getattr(interaction.user, "voice", None)
    return voice.channel if voice else None  # type: ignore[return-value]


class MusicCog(commands.Cog):
    def __init__(
        self,
        bot: commands.Bot,
        settings: Settings | None = None,
        driver: PlaybackDriver | None = None,
    ) -> None:
        self.bot = bot
        self.settings = settings or getattr(bot, "settings", None) or Settings.from_env()
        self.driver = driver or PlaybackDriver(self.settings)

    async def cog_unload(self) -> None:
        await self.driver.registry.shutdown()

    # ── helpers ──────────────────────────────────────────────────────────

    def _check_voice(self, interaction: discord.Interaction) -> discord.VoiceChannel:
        """The caller must be in a voice channel, and in the bot's one once it has joined."""
        channel = _member_channel(interaction)
        if channel is None:
            raise NotInVoiceChannel()
        session = self.driver.registry.get(interaction.guild_id)  # type: ignore[arg-type]
        if session is not None and session.transport is not None and channel.id != session.transport.channel_id:
            raise NotInVoiceChannel("You must be in the same voice channel as the bot.")
        return channel

    async def _reply(self, interaction: discord.Interaction, embed: discord.Embed, *, ephemeral: bool = False) -> None:
        if interaction.response.is_done():
            await interaction.followup.send(embed=embed, ephemeral=ephemeral)
        else:
            await interaction.response.send_message(embed=embed, ephemeral=ephemeral)

    async def cog_app_command_error(
        self, interaction: discord.Interaction, error: app_commands.AppCommandError
    ) -> None:
        original = getattr(error, "original", error)
        if isinstance(original, MusicError):
            embed = error_embed(original.message)
        else:
            name = interaction.command.name if interaction.command else "?"
            log.error("Error in /%s", name, exc_info=original)
            embed = error_embed(GENERIC_ERROR)
        try:
            await self._reply(interaction, embed, ephemeral=True)
        except discord.HTTPException as exc:
            log.warning("Could not send error reply: %s", exc)

    # ── commands ─────────────────────────────────────────────────────────

    @app_commands.command(name="play", description="Play a song from YouTube or add it to the queue")
    @app_commands.describe(query="YouTube URL or search keywords")
    @app_commands.guild_only()
    async def play(self, interaction: discord.Interaction, query: str) -> None:
        channel = self._check_voice(interaction)
        permissions = channel.permissions_for(interaction.guild.me)  # type: ignore[union-attr]
        if not permissions.connect:
            raise MusicError("I need permission to **Connect** to your voice channel!")
        if not permissions.speak:
            raise MusicError("I need permission to **Speak** in your voice channel!")

        await interaction.response.send_message(embed=simple_embed(f'🔍 Searching for "{query}"...'))
        try:
            track, position = await self.driver.enqueue(
                interaction.guild_id,  # type: ignore[arg-type]
                query,
                interaction.user,  # type: ignore[arg-type]
                interaction.channel,  # type: ignore[arg-type]
            )
        except MusicError as exc:
            await interaction.edit_original_response(embed=error_embed(exc.message))
            return

        embed = success_embed(f"Added to queue (#{position})")
        embed.add_field(name="Song", value=f"[{track.title}]({track.url})", inline=False)
        embed.add_field(name="Duration", value=format_duration(track.duration), inline=True)
        if track.thumbnail:
            embed.set_thumbnail(url=track.thumbnail)
        await interaction.edit_original_response(embed=embed)

    @app_commands.command(name="skip", description="Skip the current song")
    @app_commands.guild_only()
    async def skip(self, interaction: discord.Interaction) -> None:
        self._check_voice(interaction)
        track = await self.driver.skip(interaction.guild_id)  # type: ignore[arg-type]
        await interaction.response.send_message(embed=success_embed(f"⏭️ Skipping **{track.title}**..."))

    @app_commands.command(name="stop", description="Stop playback, clear the queue and leave the voice channel")
    @app_commands.guild_only()
    async def stop(self, interaction: discord.Interaction) -> None:
        self._check_voice(interaction)
        await interaction.response.defer()
        await self.driver.stop(interaction.guild_id, f"/stop by {interaction.user}")  # type: ignore[arg-type]
        await interaction.followup.send(embed=success_embed("⏹️ Stopped playback and left the channel."))

    @app_commands.command(name="queue", description="Show the queue")
    @app_commands.guild_only()
    async def queue(self, interaction: discord.Interaction) -> None:
        await interaction.response.defer(ephemeral=True)
        await self.driver.show_queue(interaction.guild_id, interaction.channel)  # type: ignore[arg-type]
        await interaction.followup.send("📋 Queue posted.", ephemeral=True)

    @app_commands.command(name="nowplaying", description="Show the song that is playing")
    @app_commands.guild_only()
    async def nowplaying(self, interaction: discord.Interaction) -> None:
        await interaction.response.defer(ephemeral=True)
        await self.driver.show_now_playing(interaction.guild_id, interaction.channel)  # type: ignore[arg-type]
        await interaction.followup.send("🎶 Now playing posted.", ephemeral=True)

    @app_commands.command(name="pause", description="Pause playback")
    @app_commands.guild_only()
    async def pause(self, interaction: discord.Interaction) -> None:
        self._check_voice(interaction)
        if await self.driver.pause(interaction.guild_id):  # type: ignore[arg-type]
            await interaction.response.send_message(embed=success_embed("⏸️ Playback paused."))
        else:
            await interaction.response.send_message(embed=simple_embed("Playback is already paused."))

    @app_commands.command(name="resume", description="Resume playback")
    @app_commands.guild_only()
    async def resume(self, interaction: discord.Interaction) -> None:
        self._check_voice(interaction)
        if await self.driver.resume(interaction.guild_id):  # type: ignore[arg-type]
            await interaction.response.send_message(embed=success_embed("▶️ Playback resumed."))
        else:
            await interaction.response.send_message(embed=simple_embed("Playback is not paused."))

    @app_commands.command(name="loop", description="Set the loop mode, or cycle none → track → queue")
    @app_commands.describe(mode="none/off, track/song, queue/all")
    @app_commands.guild_only()
    async def loop(self, interaction: discord.Interaction, mode: Optional[str] = None) -> None:
        self._check_voice(interaction)
        parsed: LoopMode | None = None
        if mode is not None:
            parsed = LoopMode.parse(mode)
            if parsed is None:
                raise MusicError("Unknown loop mode. Use none, track or queue.")
        new_mode = await self.driver.set_loop_mode(interaction.guild_id, parsed)  # type: ignore[arg-type]
        await interaction.response.send_message(embed=success_embed(_LOOP_REPLIES[new_mode]))

    @app_commands.command(name="volume", description="Show or set the volume (0-200)")
    @app_commands.describe(level="Volume from 0 to 200")
    @app_commands.guild_only()
    async def volume(self, interaction: discord.Interaction, level: Optional[int] = None) -> None:
        self._check_voice(interaction)
        guild_id: int = interaction.guild_id  # type: ignore[assignment]
        if level is None:
            state = self.driver.get_render_state(guild_id)
            await interaction.response.send_message(embed=simple_embed(f"Current volume is {state.volume}%."))
            return
        new_level = await self.driver.set_volume(guild_id, level)
        await interaction.response.send_message(embed=success_embed(f"🔊 Volume set to {new_level}%."))

    @app_commands.command(name="shuffle", description="Shuffle the queue")
    @app_commands.guild_only()
    async def shuffle(self, interaction: discord.Interaction) -> None:
        self._check_voice(interaction)
        await self.driver.shuffle(interaction.guild_id)  # type: ignore[arg-type]
        await interaction.response.send_message(embed=success_embed("🔀 Queue shuffled!"))

    @app_commands.command(name="remove", description="Remove a song from the queue")
    @app_commands.describe(position="Position in the queue (1 = next song)")
    @app_commands.guild_only()
    async def remove(self, interaction: discord.Interaction, position: int) -> None:
        self._check_voice(interaction)
        removed = await self.driver.remove_at(interaction.guild_id, position)  # type: ignore[arg-type]
        await interaction.response.send_message(embed=success_embed(f"Removed **{removed.title}** from the queue."))

    @app_commands.command(name="clear", description="Clear the queue")
    @app_commands.guild_only()
    async def clear(self, interaction: discord.Interaction) -> None:
        self._check_voice(interaction)
        count = await self.driver.clear_queue(interaction.guild_id)  # type: ignore[arg-type]
        await interaction.response.send_message(embed=success_embed(f"🗑️ Cleared {count} songs from the queue."))

    @app_commands.command(name="help", description="Show the list of commands")
    async def help(self, interaction: discord.Interaction) -> None:
        await interaction.response.send_message(embed=_build_help_embed(), ephemeral=True)

    # ── listeners ────────────────────────────────────────────────────────

    @commands.Cog.listener()
    async def on_app_command_completion(
        self, interaction: discord.Interaction, command: app_commands.Command
    ) -> None:
        elapsed = (discord.utils.utcnow() - interaction.created_at).total_seconds()
        command_latency_seconds.observe(elapsed)

    @commands.Cog.listener()
    async def on_voice_state_update(
        self,
        member: discord.Member,
        before: discord.VoiceState,
        after: discord.VoiceState,
    ) -> None:
        """Tear down when the bot is disconnected; time out when it is left alone."""
        guild_id = member.guild.id
        if self.bot.user is not None and member.id == self.bot.user.id:
            if before.channel is not None and after.channel is None:
                log.info("[%s] Bot was disconnected from voice", guild_id)
                await self.driver.handle_bot_disconnected(guild_id)
            return
        if member.bot or before.channel == after.channel:
            return

        supervisor = self.driver.supervisor
        if before.channel is not None:
            supervisor.member_left(guild_id, before.channel)
        if after.channel is not None:
            supervisor.member_joined(guild_id, after.channel)


async def setup(bot: commands.Bot) -> None:
    await bot.add_cog(MusicCog(bot))
