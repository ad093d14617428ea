"""Exactly-one-visible-reply delivery for interaction responses.

A response is a dict of discord.py send kwargs (content / embeds / view /
ephemeral). `Deduplicator.send_once` materializes it through the first
transport path that works:

    direct reply -> edit original response -> follow-up -> channel post

and refuses to show the same thing twice for one interaction, for one
actor+key inside the cooldown, or for one channel+signature inside the
signature TTL.
"""
import logging
from dataclasses import dataclass
from typing import Any

import discord

from dedupe_store import DedupeStore, DeliveryRecord

log = logging.getLogger("rosterbot.delivery")

SIGNATURE_MAX = 512
HINT_MAX = 200
SCAN_LIMIT = 50
SEP = "||"


# ==================== Signatures ====================
def first_embed(payload: dict) -> Any:
    embeds = payload.get("embeds") or []
    if not embeds and payload.get("embed") is not None:
        embeds = [payload["embed"]]
    return embeds[0] if embeds else None


def embed_summary(payload: dict) -> tuple[str, str] | None:
    embed = first_embed(payload)
    if embed is None:
        return None
    title = (getattr(embed, "title", None) or "").strip()
    description = (getattr(embed, "description", None) or "").strip()
    if not title and not description:
        return None
    return title, description


def component_summary(payload: dict) -> list[str]:
    """Flatten a view into custom ids, placeholders and option labels."""
    view = payload.get("view")
    if view is None:
        return []
    out: list[str] = []
    for item in getattr(view, "children", None) or []:
        custom_id = getattr(item, "custom_id", None)
        if custom_id:
            out.append(str(custom_id))
        placeholder = getattr(item, "placeholder", None)
        if placeholder:
            out.append(str(placeholder))
        for opt in getattr(item, "options", None) or []:
            out.append(str(getattr(opt, "label", opt)))
    return out


def content_hint(payload: dict) -> str:
    return (payload.get("content") or "").strip()[:HINT_MAX]


def signature(payload: dict) -> str:
    title, description = embed_summary(payload) or ("", "")
    parts = [
        (payload.get("content") or "").strip(),
        title,
        description,
        ",".join(component_summary(payload)),
    ]
    return SEP.join(parts)[:SIGNATURE_MAX]


def message_matches(message: Any, text_hint: str, embed_hint: tuple[str, str] | None) -> bool:
    if text_hint and (getattr(message, "content", None) or "").strip()[:HINT_MAX] == text_hint:
        return True
    embeds = getattr(message, "embeds", None) or []
    if embed_hint and embeds:
        e = embeds[0]
        return ((e.title or "").strip(), (e.description or "").strip()) == embed_hint
    return False


# ==================== Payload -> discord.py kwargs ====================
def _send_kwargs(payload: dict, *, ephemeral_ok: bool = True) -> dict:
    kw: dict[str, Any] = {}
    if payload.get("content") is not None:
        kw["content"] = payload["content"]
    embeds = payload.get("embeds") or ([payload["embed"]] if payload.get("embed") is not None else [])
    if embeds:
        kw["embeds"] = list(embeds)
    if payload.get("view") is not None:
        kw["view"] = payload["view"]
    if payload.get("allowed_mentions") is not None:
        kw["allowed_mentions"] = payload["allowed_mentions"]
    if ephemeral_ok and payload.get("ephemeral"):
        kw["ephemeral"] = True
    return kw


def _edit_kwargs(payload: dict) -> dict:
    # An explicit view=None clears the components of the edited message.
    kw: dict[str, Any] = {}
    if "content" in payload:
        kw["content"] = payload["content"]
    if "embeds" in payload:
        kw["embeds"] = list(payload["embeds"] or [])
    if "view" in payload:
        kw["view"] = payload["view"]
    if payload.get("allowed_mentions") is not None:
        kw["allowed_mentions"] = payload["allowed_mentions"]
    return kw


# ==================== Handles ====================
@dataclass
class DeliveryHandle:
    """A delivered message. message_id None means sentinel (sent, never seen)."""

    channel_id: int
    message_id: int | None = None
    content_hint: str = ""
    embed_hint: tuple[str, str] | None = None
    message: Any = None
    store: "ChannelMessageStore | None" = None
    signature: str = ""

    @property
    def is_sentinel(self) -> bool:
        return self.message_id is None


# ==================== Message store ====================
class ChannelMessageStore:
    """Fetch / scan / post / delete in one channel."""

    def __init__(self, channel: Any, bot_user_id: int | None = None):
        self.channel = channel
        self.bot_user_id = bot_user_id

    @property
    def channel_id(self) -> int:
        return self.channel.id

    async def fetch_by_id(self, message_id: int) -> discord.Message | None:
        try:
            return await self.channel.fetch_message(message_id)
        except discord.HTTPException as e:
            log.debug(f"fetch_message({message_id}) failed: {e}")
            return None

    async def fetch_recent(self, limit: int = SCAN_LIMIT) -> list[discord.Message]:
        try:
            return [m async for m in self.channel.history(limit=limit)]
        except discord.HTTPException as e:
            log.debug(f"history scan in {self.channel_id} failed: {e}")
            return []

    async def find_matching(
        self, text_hint: str, embed_hint: tuple[str, str] | None, limit: int = SCAN_LIMIT
    ) -> discord.Message | None:
        """Exact trimmed text first, then exact embed title/description."""
        recent = await self.fetch_recent(limit)
        if self.bot_user_id is not None:
            recent = [m for m in recent if getattr(m.author, "id", None) == self.bot_user_id]
        if text_hint:
            for m in recent:
                if message_matches(m, text_hint, None):
                    return m
        if embed_hint:
            for m in recent:
                if message_matches(m, "", embed_hint):
                    return m
        return None

    async def delete(self, message_id: int) -> bool:
        try:
            await self.channel.get_partial_message(message_id).delete()
            return True
        except discord.HTTPException as e:
            log.debug(f"delete({message_id}) in {self.channel_id} failed: {e}")
            return False

    async def post(self, payload: dict) -> discord.Message:
        return await self.channel.send(**_send_kwargs(payload, ephemeral_ok=False))


# ==================== Interaction transport ====================
class InteractionTransport:
    """One triggering event: a discord.Interaction plus its response state."""

    def __init__(self, interaction: discord.Interaction):
        self.interaction = interaction
        self._deferred = False
        self._edited = False

    @property
    def id(self) -> int:
        return self.interaction.id

    @property
    def actor_id(self) -> int:
        return self.interaction.user.id

    @property
    def channel_id(self) -> int | None:
        return self.interaction.channel_id

    def message_store(self) -> ChannelMessageStore | None:
        channel = self.interaction.channel
        if channel is None or not hasattr(channel, "send"):
            return None
        me = getattr(self.interaction.client, "user", None)
        return ChannelMessageStore(channel, me.id if me else None)

    def has_responded(self) -> bool:
        return self.interaction.response.is_done() and not self.is_acknowledged_pending()

    def is_acknowledged_pending(self) -> bool:
        return self._deferred and not self._edited

    async def defer(self, *, ephemeral: bool = False) -> bool:
        """Deferred reply, falling back to a deferred update. Never raises."""
        if self.interaction.response.is_done():
            return False
        try:
            await self.interaction.response.defer(ephemeral=ephemeral, thinking=True)
            self._deferred = True
            return True
        except Exception as e:
            log.warning(f"⚠ defer (thinking) failed for {self.id}: {e}")
        if self.interaction.type is not discord.InteractionType.component:
            return False
        try:
            await self.interaction.response.defer()
            self._deferred = True
            return True
        except Exception as e:
            log.warning(f"⚠ defer (update) failed for {self.id}: {e}")
            return False

    async def reply(self, payload: dict) -> None:
        await self.interaction.response.send_message(**_send_kwargs(payload))

    async def fetch_reply(self) -> discord.Message:
        return await self.interaction.original_response()

    async def edit(self, payload: dict) -> discord.Message:
        message = await self.interaction.edit_original_response(**_edit_kwargs(payload))
        self._edited = True
        return message

    async def follow_up(self, payload: dict) -> discord.Message | None:
        return await self.interaction.followup.send(**_send_kwargs(payload), wait=True)

    async def acknowledge_silently(self) -> None:
        if self.interaction.response.is_done():
            return
        # Commands can't be acknowledged without a visible "thinking" state.
        if self.interaction.type is discord.InteractionType.application_command:
            return
        await self.interaction.response.defer()


# ==================== Deduplicator ====================
class Deduplicator:
    def __init__(self, store: DedupeStore, scan_limit: int = SCAN_LIMIT):
        self.store = store
        self.scan_limit = scan_limit

    async def send_once(
        self, event: Any, logical_key: str, payload: dict, channel: Any = None
    ) -> DeliveryHandle | None:
        """Deliver `payload` at most once for this event / actor+key / channel+signature.

        `event` is an InteractionTransport (or anything with the same surface),
        or None for a plain channel post with no dedupe.
        Returns None when suppressed or when every transport path failed.
        """
        if event is None:
            return await self._post_without_event(channel, payload)

        if self.store.on_cooldown(event.actor_id, logical_key):
            log.debug(f"suppressed {logical_key!r} for actor {event.actor_id} (cooldown)")
            return None
        if self.store.sent_for_event(event.id, logical_key):
            log.debug(f"suppressed {logical_key!r} for event {event.id} (already sent)")
            return None

        sig = signature(payload)
        msg_store = event.message_store()
        stale = self.store.get_record(sig, event.channel_id) if event.channel_id is not None else None
        if stale is not None and stale.in_flight:
            # Another handler is mid-post with this exact response.
            log.info(f"🔁 Post already in flight for {logical_key!r}; not delivering again")
            await self._ack_quietly(event)
            self._mark_sent(event, logical_key)
            return self._pending_handle(stale, msg_store, sig)
        if stale is not None:
            handle = await self.resolve_record(stale, msg_store, sig)
            if handle is not None:
                await self._ack_quietly(event)
                log.info(f"🔁 Reusing message {handle.message_id} for {logical_key!r}")
                self._mark_sent(event, logical_key)
                return handle

        handle = await self._waterfall(event, payload, sig, msg_store, stale)
        if handle is None:
            log.error(f"❌ All delivery paths failed for {logical_key!r} (event {event.id})")
            return None

        if handle.message_id is not None:
            # An edit may have turned an earlier response into this one.
            self.store.drop_records_for_message(handle.channel_id, handle.message_id)
        self.store.put_record(
            sig,
            handle.channel_id,
            message_id=handle.message_id,
            content_hint=handle.content_hint,
            embed_hint=handle.embed_hint,
        )
        self._mark_sent(event, logical_key)
        return handle

    def _mark_sent(self, event: Any, logical_key: str) -> None:
        self.store.mark_sent_for_event(event.id, logical_key)
        self.store.start_cooldown(event.actor_id, logical_key)

    async def _ack_quietly(self, event: Any) -> None:
        try:
            await event.acknowledge_silently()
        except Exception as e:
            log.debug(f"silent ack failed for {event.id}: {e}")

    def _pending_handle(
        self, record: DeliveryRecord, msg_store: ChannelMessageStore | None, sig: str
    ) -> DeliveryHandle:
        return DeliveryHandle(
            channel_id=record.channel_id, message_id=record.message_id,
            content_hint=record.content_hint, embed_hint=record.embed_hint,
            store=msg_store, signature=sig,
        )

    async def resolve_record(
        self, record: DeliveryRecord, msg_store: ChannelMessageStore | None, sig: str = ""
    ) -> DeliveryHandle | None:
        """Find the real message behind a record, or None."""
        if msg_store is None:
            return None
        if record.message_id is not None:
            message = await msg_store.fetch_by_id(record.message_id)
            if message is not None and (record.content_hint or record.embed_hint):
                if not message_matches(message, record.content_hint, record.embed_hint):
                    log.debug(f"message {record.message_id} no longer shows its recorded content")
                    return None
        else:
            message = await msg_store.find_matching(record.content_hint, record.embed_hint, self.scan_limit)
        if message is None:
            return None
        return DeliveryHandle(
            channel_id=record.channel_id,
            message_id=message.id,
            content_hint=record.content_hint,
            embed_hint=record.embed_hint,
            message=message,
            store=msg_store,
            signature=sig,
        )

    async def resolve_sentinel(self, handle: DeliveryHandle) -> Any:
        if handle.store is None:
            return None
        return await handle.store.find_matching(handle.content_hint, handle.embed_hint, self.scan_limit)

    # ---------- waterfall ----------
    async def _waterfall(
        self,
        event: Any,
        payload: dict,
        sig: str,
        msg_store: ChannelMessageStore | None,
        stale: DeliveryRecord | None,
    ) -> DeliveryHandle | None:
        hint = content_hint(payload)
        embed = embed_summary(payload)

        def handle_for(message: Any) -> DeliveryHandle:
            if message is None:
                return DeliveryHandle(
                    channel_id=event.channel_id, content_hint=hint,
                    embed_hint=embed, store=msg_store, signature=sig,
                )
            return DeliveryHandle(
                channel_id=getattr(message, "channel_id", None) or event.channel_id,
                message_id=message.id,
                content_hint=hint,
                embed_hint=embed,
                message=message,
                store=msg_store,
                signature=sig,
            )

        # 1. direct reply
        if not event.has_responded() and not event.is_acknowledged_pending():
            try:
                await event.reply(payload)
            except Exception as e:
                log.warning(f"⚠ reply failed for {event.id}: {e}")
            else:
                try:
                    return handle_for(await event.fetch_reply())
                except Exception as e:
                    log.info(f"reply sent for {event.id} but not fetchable ({e}); keeping a sentinel")
                    return handle_for(None)

        # 2. edit of the existing response
        if event.has_responded() or event.is_acknowledged_pending():
            try:
                return handle_for(await event.edit(payload))
            except Exception as e:
                log.warning(f"⚠ edit failed for {event.id}: {e}")

        # 3. follow-up
        try:
            return handle_for(await event.follow_up(payload))
        except Exception as e:
            log.warning(f"⚠ follow-up failed for {event.id}: {e}")

        # 4. raw channel post
        log.warning(f"Falling back to channel post for {event.id} (interaction token likely expired)")
        return await self._post_to_channel(msg_store, payload, sig, stale)

    async def _post_to_channel(
        self,
        msg_store: ChannelMessageStore | None,
        payload: dict,
        sig: str,
        stale: DeliveryRecord | None,
    ) -> DeliveryHandle | None:
        if msg_store is None:
            return None
        channel_id = msg_store.channel_id
        hint = content_hint(payload)
        embed = embed_summary(payload)

        current = self.store.get_record(sig, channel_id)
        if current is not None and (current is not stale or current.in_flight):
            log.info(f"🔁 Concurrent delivery already registered in {channel_id}; not posting again")
            resolved = await self.resolve_record(current, msg_store, sig)
            if resolved is not None:
                return resolved
            return self._pending_handle(current, msg_store, sig)

        pending = self.store.put_record(sig, channel_id, content_hint=hint, embed_hint=embed, in_flight=True)
        try:
            message = await msg_store.post(payload)
        except Exception as e:
            if self.store.get_record(sig, channel_id) is pending:
                self.store.drop_record(sig, channel_id)
            log.warning(f"⚠ channel post failed in {channel_id}: {e}")
            return None

        self.store.put_record(sig, channel_id, message_id=message.id, content_hint=hint, embed_hint=embed)
        return DeliveryHandle(
            channel_id=channel_id, message_id=message.id, content_hint=hint,
            embed_hint=embed, message=message, store=msg_store, signature=sig,
        )

    async def _post_without_event(self, channel: Any, payload: dict) -> DeliveryHandle | None:
        if channel is None:
            return None
        msg_store = ChannelMessageStore(channel)
        try:
            message = await msg_store.post(payload)
        except Exception as e:
            log.warning(f"⚠ channel post failed in {getattr(channel, 'id', '?')}: {e}")
            return None
        return DeliveryHandle(
            channel_id=msg_store.channel_id,
            message_id=message.id,
            content_hint=content_hint(payload),
            embed_hint=embed_summary(payload),
            message=message,
            store=msg_store,
            signature=signature(payload),
        )
