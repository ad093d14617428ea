"""Post-flow cleanup: delete transient messages, post one audit line."""
import asyncio
import logging
from typing import Any, Iterable

import discord

from delivery import DeliveryHandle, Deduplicator

log = logging.getLogger("rosterbot.cleanup")


async def delete_quietly(dedup: Deduplicator, item: Any) -> bool:
    """Best-effort delete of a discord.Message or a DeliveryHandle. Never raises."""
    if item is None:
        return False
    try:
        if isinstance(item, DeliveryHandle):
            return await _delete_handle(dedup, item)
        await item.delete()
        return True
    except Exception as e:
        log.debug(f"delete skipped: {e}")
        return False


async def _delete_handle(dedup: Deduplicator, handle: DeliveryHandle) -> bool:
    message_id = handle.message_id
    deleted = False

    if handle.message is not None:
        try:
            await handle.message.delete()
            deleted = True
        except discord.HTTPException as e:
            log.debug(f"message.delete() failed for {message_id}: {e}")

    if not deleted and message_id is None:
        # Sentinel: only delete what the exact-match rules find.
        match = await dedup.resolve_sentinel(handle)
        if match is None:
            log.info(f"No message matched sentinel in {handle.channel_id}; nothing deleted")
            return False
        message_id = match.id

    if not deleted and handle.store is not None:
        deleted = await handle.store.delete(message_id)

    if message_id is not None:
        dedup.store.drop_records_for_message(handle.channel_id, message_id)
    return deleted


async def delete_all(dedup: Deduplicator, messages: Iterable[Any]) -> int:
    """Delete every message/handle independently; returns how many went through."""
    items = [m for m in messages if m is not None]
    results = await asyncio.gather(*(delete_quietly(dedup, m) for m in items))
    return sum(1 for ok in results if ok)


async def resolve_log_channel(client: discord.Client, channel_id: int | None) -> Any:
    if not channel_id:
        return None
    channel = client.get_channel(channel_id)
    if channel is not None:
        return channel
    try:
        return await client.fetch_channel(channel_id)
    except discord.HTTPException as e:
        log.warning(f"⚠ Log channel {channel_id} unavailable: {e}")
        return None


async def cleanup_and_log(
    dedup: Deduplicator,
    *,
    actor_id: int,
    messages: Iterable[Any] = (),
    log_channel: Any = None,
    log_text: str = "",
) -> int:
    """Delete every message/handle independently, then post the audit line.

    Returns the number of deletions that went through.
    """
    deleted = await delete_all(dedup, messages)

    if log_channel is None:
        log.warning("BOT_LOG_CHANNEL_ID not set or channel not found; skipping log send.")
        return deleted

    content = f"<@{actor_id}> — {log_text}" if log_text else f"<@{actor_id}> performed an action."
    try:
        await log_channel.send(content=content, allowed_mentions=discord.AllowedMentions.none())
    except Exception as e:
        log.error(f"Failed to send log message: {e}")
    return deleted
