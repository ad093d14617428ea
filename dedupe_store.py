"""In-process caches behind the delivery deduplicator.

Three short-lived maps:
  - delivery records, keyed by (signature, channel_id)
  - per-actor cooldowns, keyed by (actor_id, logical_key)
  - per-event sent keys, keyed by interaction id

Everything runs on the bot's single event loop, so plain dicts are enough:
mutations between awaits can't interleave.
"""
import time
from dataclasses import dataclass
from typing import Callable

DEFAULT_SIGNATURE_TTL = 5.0
DEFAULT_COOLDOWN = 3.0
DEFAULT_EVENT_TTL = 900.0  # interaction tokens live 15 minutes


@dataclass
class DeliveryRecord:
    channel_id: int
    expires_at: float
    message_id: int | None = None
    content_hint: str = ""
    embed_hint: tuple[str, str] | None = None
    # set while a channel post for this signature is still awaiting Discord
    in_flight: bool = False

    @property
    def is_sentinel(self) -> bool:
        return self.message_id is None


class DedupeStore:
    def __init__(
        self,
        signature_ttl: float = DEFAULT_SIGNATURE_TTL,
        cooldown: float = DEFAULT_COOLDOWN,
        event_ttl: float = DEFAULT_EVENT_TTL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.signature_ttl = signature_ttl
        self.cooldown = cooldown
        self.event_ttl = event_ttl
        self.clock = clock
        self._records: dict[tuple[str, int], DeliveryRecord] = {}
        self._cooldowns: dict[tuple[int, str], float] = {}
        self._event_sent: dict[int, tuple[float, set[str]]] = {}

    # ---------- delivery records ----------
    def get_record(self, signature: str, channel_id: int) -> DeliveryRecord | None:
        key = (signature, channel_id)
        rec = self._records.get(key)
        if rec is None:
            return None
        if rec.expires_at <= self.clock():
            del self._records[key]
            return None
        return rec

    def put_record(
        self,
        signature: str,
        channel_id: int,
        message_id: int | None = None,
        content_hint: str = "",
        embed_hint: tuple[str, str] | None = None,
        in_flight: bool = False,
    ) -> DeliveryRecord:
        """Write (or supersede) the record for this signature in this channel."""
        rec = DeliveryRecord(
            channel_id=channel_id,
            expires_at=self.clock() + self.signature_ttl,
            message_id=message_id,
            content_hint=content_hint,
            embed_hint=embed_hint,
            in_flight=in_flight,
        )
        self._records[(signature, channel_id)] = rec
        return rec

    def drop_record(self, signature: str, channel_id: int) -> None:
        self._records.pop((signature, channel_id), None)

    def drop_records_for_message(self, channel_id: int, message_id: int) -> int:
        stale = [
            k for k, rec in self._records.items()
            if rec.channel_id == channel_id and rec.message_id == message_id
        ]
        for k in stale:
            del self._records[k]
        return len(stale)

    # ---------- per-actor cooldowns ----------
    def on_cooldown(self, actor_id: int, logical_key: str) -> bool:
        key = (actor_id, logical_key)
        expires = self._cooldowns.get(key)
        if expires is None:
            return False
        if expires <= self.clock():
            del self._cooldowns[key]
            return False
        return True

    def start_cooldown(self, actor_id: int, logical_key: str) -> None:
        self._cooldowns[(actor_id, logical_key)] = self.clock() + self.cooldown

    # ---------- per-event sent keys ----------
    def sent_for_event(self, event_id: int, logical_key: str) -> bool:
        entry = self._event_sent.get(event_id)
        if entry is None:
            return False
        expires, keys = entry
        if expires <= self.clock():
            del self._event_sent[event_id]
            return False
        return logical_key in keys

    def mark_sent_for_event(self, event_id: int, logical_key: str) -> None:
        entry = self._event_sent.get(event_id)
        if entry is None or entry[0] <= self.clock():
            entry = (self.clock() + self.event_ttl, set())
            self._event_sent[event_id] = entry
        entry[1].add(logical_key)

    def purge_expired(self) -> int:
        """Drop every expired entry; returns how many were removed."""
        now = self.clock()
        removed = 0
        for k in [k for k, r in self._records.items() if r.expires_at <= now]:
            del self._records[k]
            removed += 1
        for k in [k for k, exp in self._cooldowns.items() if exp <= now]:
            del self._cooldowns[k]
            removed += 1
        for k in [k for k, (exp, _) in self._event_sent.items() if exp <= now]:
            del self._event_sent[k]
            removed += 1
        return removed

    def stats(self) -> dict[str, int]:
        return {
            "records": len(self._records),
            "cooldowns": len(self._cooldowns),
            "events": len(self._event_sent),
        }
