"""Prometheus metric definitions for guildplay."""
from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram, start_http_server

tracks_started_total = Counter(
    "guildplay_tracks_started_total",
    "Total tracks that reached the playing state",
)
playback_errors_total = Counter(
    "guildplay_playback_errors_total",
    "Total failures while starting or playing a track",
)
queue_size = Gauge(
    "guildplay_queue_size",
    "Current queue size",
    ["guild_id"],
)
active_sessions = Gauge(
    "guildplay_active_sessions",
    "Number of guilds with a live playback session",
)
voice_connections = Gauge(
    "guildplay_voice_connections",
    "Number of active voice connections",
)
command_latency_seconds = Histogram(
    "guildplay_command_latency_seconds",
    "Slash command processing latency",
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)
ytdl_fetch_seconds = Histogram(
    "guildplay_ytdl_fetch_seconds",
    "Time to fetch media info from yt-dlp",
    buckets=[0.5, 1.0, 2.0, 5.0, 10.0, 30.0],
)


def start_metrics_server(port: int = 9090) -> None:
    start_http_server(port)
