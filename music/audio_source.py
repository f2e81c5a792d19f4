from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum

import discord
import yt_dlp

from .errors import ResolutionFailed, ResolutionFailure
from .metrics import ytdl_fetch_seconds
from .url_parser import InputType, classify

log = logging.getLogger(__name__)

YTDL_OPTIONS = {
    "format": "bestaudio[acodec=opus]/bestaudio/best",
    "noplaylist": True,
    "nocheckcertificate": True,
    "ignoreerrors": False,
    "quiet": True,
    "no_warnings": True,
    "default_search": "ytsearch",
    "source_address": "0.0.0.0",
}

FFMPEG_OPTIONS = {
    "before_options": (
        "-reconnect 1 -reconnect_streamed 1 -reconnect_on_network_error 1"
        " -reconnect_on_http_error 5xx -reconnect_delay_max 5"
    ),
    "options": "-vn -ar 48000 -bufsize 64k",
}

# Exponent of the perceptual loudness curve: 100% -> 1.0, 50% -> ~0.32, 200% -> ~3.16.
LOG_VOLUME_EXPONENT = 1.660964

# (substring of the yt-dlp error, failure reason); first match wins.
_ERROR_MARKERS: list[tuple[str, ResolutionFailure]] = [
    ("confirm your age", ResolutionFailure.AGE_RESTRICTED),
    ("age-restricted", ResolutionFailure.AGE_RESTRICTED),
    ("age restricted", ResolutionFailure.AGE_RESTRICTED),
    ("private video", ResolutionFailure.PRIVATE),
    ("video is private", ResolutionFailure.PRIVATE),
    ("not available in your country", ResolutionFailure.REGION_LOCKED),
    ("geo restrict", ResolutionFailure.REGION_LOCKED),
    ("http error 410", ResolutionFailure.REGION_LOCKED),
    ("video unavailable", ResolutionFailure.UNAVAILABLE),
    ("video is unavailable", ResolutionFailure.UNAVAILABLE),
    ("live event will begin", ResolutionFailure.LIVE_NOT_SUPPORTED),
]


class TrackSource(Enum):
    URL = "url"
    SEARCH = "search"


@dataclass(frozen=True)
class TrackInfo:
    """Metadata kept in the queue; the stream URL is resolved just-in-time."""

    title: str
    url: str
    duration: int = 0  # seconds, 0 = unknown
    thumbnail: str | None = None
    requester_id: int = 0
    requester: str = ""
    source: TrackSource = TrackSource.SEARCH


def volume_to_gain(percent: int) -> float:
    """Convert a 0-200 volume percentage into a logarithmic output gain."""
    percent = max(0, min(200, percent))
    return (percent / 100) ** LOG_VOLUME_EXPONENT


def classify_error(message: str) -> ResolutionFailure:
    lowered = message.lower()
    for marker, reason in _ERROR_MARKERS:
        if marker in lowered:
            return reason
    return ResolutionFailure.GENERIC


def _is_live(data: dict) -> bool:
    return bool(data.get("is_live")) or data.get("live_status") in ("is_live", "is_upcoming")


class YTDLSource(discord.PCMVolumeTransformer):
    """Wraps FFmpegPCMAudio with volume control and the track it plays."""

    def __init__(
        self,
        source: discord.AudioSource,
        *,
        track: TrackInfo,
        gain: float,
        stream_url: str = "",
    ) -> None:
        super().__init__(source, gain)
        self.track = track
        self.stream_url = stream_url


class MediaResolver:
    """Turns URLs and free-text queries into tracks, and tracks into audio sources."""

    def __init__(self, *, cookiefile: str | None = None) -> None:
        self._options = dict(YTDL_OPTIONS)
        if cookiefile:
            self._options["cookiefile"] = cookiefile

    async def _extract(self, query: str) -> dict:
        loop = asyncio.get_running_loop()
        ytdl = yt_dlp.YoutubeDL(self._options)
        with ytdl_fetch_seconds.time():
            data = await loop.run_in_executor(
                None, lambda: ytdl.extract_info(query, download=False)
            )
        if data is None:
            raise ResolutionFailed(ResolutionFailure.UNAVAILABLE)
        return data

    async def resolve(self, query: str, requester: discord.abc.User) -> TrackInfo:
        """Resolve a URL or search query to a single non-live track."""
        input_type, value = classify(query)
        data: dict | None = None
        source = TrackSource.SEARCH

        if input_type is InputType.YOUTUBE_URL:
            try:
                data = await self._extract(value)
                source = TrackSource.URL
            except yt_dlp.utils.DownloadError as exc:
                reason = classify_error(str(exc))
                if reason is not ResolutionFailure.GENERIC:
                    raise ResolutionFailed(reason, value) from exc
                log.warning("Failed to get info directly from URL %s: %s", value, exc)

        if data is None:
            try:
                data = await self._extract(f"ytsearch1:{value}")
            except yt_dlp.utils.DownloadError as exc:
                raise ResolutionFailed(classify_error(str(exc)), value) from exc
            entries = [e for e in data.get("entries") or [] if e]
            if not entries:
                raise ResolutionFailed(ResolutionFailure.NO_RESULTS, value)
            data = entries[0]

        if "entries" in data:
            entries = [e for e in data["entries"] or [] if e]
            if not entries:
                raise ResolutionFailed(ResolutionFailure.NO_RESULTS, value)
            data = entries[0]

        if _is_live(data):
            raise ResolutionFailed(ResolutionFailure.LIVE_NOT_SUPPORTED, value)

        return TrackInfo(
            title=data.get("title", "Unknown"),
            url=data.get("webpage_url") or data.get("original_url") or value,
            duration=int(data.get("duration", 0) or 0),
            thumbnail=data.get("thumbnail") or None,
            requester_id=requester.id,
            requester=requester.display_name,
            source=source,
        )

    async def open(self, track: TrackInfo, volume: int) -> YTDLSource:
        """Fetch a fresh stream URL for ``track`` and wrap it at the given volume."""
        try:
            data = await self._extract(track.url)
        except yt_dlp.utils.DownloadError as exc:
            raise ResolutionFailed(classify_error(str(exc)), track.url) from exc
        if "entries" in data:
            data = data["entries"][0]
        if _is_live(data):
            raise ResolutionFailed(ResolutionFailure.LIVE_NOT_SUPPORTED, track.url)

        stream_url = data["url"]
        ffmpeg = discord.FFmpegPCMAudio(
            stream_url,
            before_options=FFMPEG_OPTIONS["before_options"],
            options=FFMPEG_OPTIONS["options"],
        )
        return YTDLSource(ffmpeg, track=track, gain=volume_to_gain(volume), stream_url=stream_url)
