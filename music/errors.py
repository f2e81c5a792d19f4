"""Exception types raised by the playback core.

Every subclass of :class:`MusicError` carries a message that is safe to show
to users as-is; the cog turns them into error embeds.
"""
from __future__ import annotations

from enum import Enum


class MusicError(Exception):
    """Base class for errors that should be presented to users."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class QueueFull(MusicError):
    def __init__(self, limit: int) -> None:
        super().__init__(f"The queue is full (max {limit} songs).")
        self.limit = limit


class InvalidPosition(MusicError):
    def __init__(self, position: int, length: int) -> None:
        if length == 0:
            message = "The queue is empty."
        else:
            message = f"Invalid position. Enter a number between 1 and {length}."
        super().__init__(message)
        self.position = position
        self.length = length


class InvalidVolume(MusicError):
    def __init__(self, value: int) -> None:
        super().__init__("Volume must be a number between 0 and 200.")
        self.value = value


class NotInVoiceChannel(MusicError):
    def __init__(self, message: str = "You need to be in a voice channel!") -> None:
        super().__init__(message)


class NoActiveSession(MusicError):
    def __init__(self, message: str = "The player is not active.") -> None:
        super().__init__(message)


class ResolutionFailure(Enum):
    PRIVATE = "private"
    AGE_RESTRICTED = "age_restricted"
    UNAVAILABLE = "unavailable"
    REGION_LOCKED = "region_locked"
    LIVE_NOT_SUPPORTED = "live_not_supported"
    NO_RESULTS = "no_results"
    GENERIC = "generic"


_RESOLUTION_MESSAGES = {
    ResolutionFailure.PRIVATE: "This video is private or unavailable.",
    ResolutionFailure.AGE_RESTRICTED: "Cannot play age-restricted video.",
    ResolutionFailure.UNAVAILABLE: "This video is private or unavailable.",
    ResolutionFailure.REGION_LOCKED: "Could not fetch video information (region locked/removed?).",
    ResolutionFailure.LIVE_NOT_SUPPORTED: "Live streams are not supported.",
    ResolutionFailure.NO_RESULTS: "No results found.",
    ResolutionFailure.GENERIC: "An error occurred while searching or adding the song.",
}


class ResolutionFailed(MusicError):
    """The media resolver could not turn a query into a playable track."""

    def __init__(self, reason: ResolutionFailure, detail: str = "") -> None:
        message = _RESOLUTION_MESSAGES[reason]
        if reason is ResolutionFailure.NO_RESULTS and detail:
            message = f'No results found for "{detail}".'
        super().__init__(message)
        self.reason = reason
        self.detail = detail


class TransportJoinFailed(MusicError):
    def __init__(self, detail: str) -> None:
        super().__init__(f"Failed to join voice channel: {detail}")
        self.detail = detail


class TransportPlaybackFailed(MusicError):
    def __init__(self, detail: str) -> None:
        super().__init__(f"Playback could not be started: {detail}")
        self.detail = detail


class MessageNotFound(MusicError):
    """The status message was already deleted; callers treat this as success."""

    def __init__(self) -> None:
        super().__init__("Unknown message.")


class MessageOperationFailed(MusicError):
    def __init__(self, detail: str) -> None:
        super().__init__(f"Message operation failed: {detail}")
        self.detail = detail
