"""
Discord side of the relay: post, edit and un-react in threads.
"""
from __future__ import annotations

import logging
from typing import Union

import discord

from .models import Err, MessageRef, Ok, Result, SinkError


log = logging.getLogger("red.issue_relay.sinks")

Messageable = Union[discord.Thread, discord.TextChannel]


class DiscordThreadSink:
    def __init__(self, bot: discord.Client, indicator_emoji: str = "👀") -> None:
        self.bot = bot
        self.indicator_emoji = indicator_emoji

    async def _resolve_channel(self, channel_id: int) -> Messageable:
        channel = self.bot.get_channel(channel_id)
        if channel is None:
            channel = await self.bot.fetch_channel(channel_id)
        if not isinstance(channel, (discord.Thread, discord.TextChannel)):
            raise SinkError(f"Channel {channel_id} is not a text channel or thread")
        return channel

    async def post(self, thread_id: int, text: str) -> Result[MessageRef, SinkError]:
        try:
            channel = await self._resolve_channel(thread_id)
            message = await channel.send(text, allowed_mentions=discord.AllowedMentions.none())
        except SinkError as e:
            return Err(e)
        except (discord.HTTPException, discord.InvalidData) as e:
            log.debug("Posting to thread %s failed", thread_id, exc_info=True)
            return Err(SinkError(f"Could not post to thread {thread_id}: {e}", getattr(e, "status", None)))
        return Ok(MessageRef(channel_id=channel.id, message_id=message.id))

    async def edit(self, ref: MessageRef, text: str) -> Result[MessageRef, SinkError]:
        try:
            channel = await self._resolve_channel(ref.channel_id)
            message = await channel.get_partial_message(ref.message_id).edit(
                content=text, allowed_mentions=discord.AllowedMentions.none()
            )
        except SinkError as e:
            return Err(e)
        except (discord.HTTPException, discord.InvalidData) as e:
            log.debug("Editing message %s failed", ref.message_id, exc_info=True)
            return Err(SinkError(f"Could not edit message {ref.message_id}: {e}", getattr(e, "status", None)))
        return Ok(MessageRef(channel_id=ref.channel_id, message_id=message.id))

    async def add_indicator(self, ref: MessageRef) -> Result[None, SinkError]:
        try:
            channel = await self._resolve_channel(ref.channel_id)
            await channel.get_partial_message(ref.message_id).add_reaction(self.indicator_emoji)
        except SinkError as e:
            return Err(e)
        except (discord.HTTPException, discord.InvalidData) as e:
            return Err(SinkError(f"Could not react to message {ref.message_id}: {e}", getattr(e, "status", None)))
        return Ok(None)

    async def clear_indicator(self, ref: MessageRef) -> Result[None, SinkError]:
        try:
            channel = await self._resolve_channel(ref.channel_id)
            await channel.get_partial_message(ref.message_id).remove_reaction(self.indicator_emoji, self.bot.user)
        except SinkError as e:
            return Err(e)
        except discord.NotFound:
            # Message or reaction already gone
            return Ok(None)
        except (discord.HTTPException, discord.InvalidData) as e:
            return Err(SinkError(f"Could not clear indicator on message {ref.message_id}: {e}", getattr(e, "status", None)))
        log.debug("Removed %s from message %s", self.indicator_emoji, ref.message_id)
        return Ok(None)
