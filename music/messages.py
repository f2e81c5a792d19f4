"""Thin wrappers over ``discord.Message`` edit/delete.

discord.py's HTTP errors are translated into ``MessageNotFound`` and
``MessageOperationFailed`` so callers can treat a message that is already
gone as a success.
"""
from __future__ import annotations

from typing import Any

import discord

from .errors import MessageNotFound, MessageOperationFailed


async def edit_message(message: discord.Message, **fields: Any) -> discord.Message:
    try:
        return await message.edit(**fields)
    except discord.NotFound as exc:
        raise MessageNotFound() from exc
    except discord.HTTPException as exc:
        raise MessageOperationFailed(str(exc)) from exc


async def discard_message(
    message: discord.Message | None,
    views: dict[int, discord.ui.View] | None = None,
) -> None:
    """Delete ``message`` and stop the view attached to it."""
    if message is None:
        return
    try:
        await message.delete()
    except discord.NotFound:
        pass
    except discord.HTTPException as exc:
        raise MessageOperationFailed(str(exc)) from exc
    if views is not None:
        view = views.pop(message.id, None)
        if view is not None:
            view.stop()
