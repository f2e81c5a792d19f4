import re
from enum import Enum, auto


class InputType(Enum):
    YOUTUBE_URL = auto()
    SEARCH_QUERY = auto()


_YOUTUBE_RE = re.compile(
    r"(?:https?://)?(?:www\.|m\.|music\.)?(?:youtube\.com/(?:watch\?\S*v=|shorts/|embed/|live/)|youtu\.be/)"
    r"[\w-]{11}\S*$"
)


def classify(query: str) -> tuple[InputType, str]:
    """Return (InputType, cleaned_value) for a user query.

    A single-video YouTube URL is returned unchanged; anything else is treated
    as free-text search.
    """
    query = query.strip()
    if _YOUTUBE_RE.match(query):
        return InputType.YOUTUBE_URL, query
    return InputType.SEARCH_QUERY, query
