"""
Correlation index: short-lived keys that point back at an order.

    msg:<provider message id>   -> order ref
    phone:<canonical phone>     -> most recent order ref (last write wins)
    name:<storefront order name> -> order ref
    seen:<event id>             -> claim marker for duplicate suppression

Every entry carries ``exp`` (epoch seconds), the DynamoDB TTL attribute.
TTL deletion is lazy, so reads also treat expired entries as absent. This
is an accelerator, not a source of truth: losing an entry only loses the
ability to route a very old reply.
"""
import time
from typing import Callable, Optional

from orderrelay.utils.logger import get_logger
from orderrelay.utils.tables import Table

logger = get_logger("correlation")

DEFAULT_TTL_SECS = 30 * 86400


class CorrelationIndex:
    def __init__(self, table: Table, ttl_secs: int = DEFAULT_TTL_SECS, clock: Callable[[], float] = time.time):
        self.table = table
        self.ttl_secs = ttl_secs
        self.clock = clock

    def _put(self, key: str, order_ref: str) -> None:
        self.table.put(key, {"orderRef": str(order_ref), "exp": int(self.clock()) + self.ttl_secs})

    def _resolve(self, key: str) -> Optional[str]:
        item = self.table.get(key)
        if not item or item.get("exp", 0) <= self.clock():
            return None
        return item.get("orderRef")

    def record_outbound_message(self, message_id: str, order_ref: str) -> None:
        self._put(f"msg:{message_id}", order_ref)

    def resolve_by_message_id(self, message_id: str) -> Optional[str]:
        if not message_id:
            return None
        return self._resolve(f"msg:{message_id}")

    def record_latest_order_for_phone(self, phone: str, order_ref: str) -> None:
        self._put(f"phone:{phone}", order_ref)

    def resolve_by_phone(self, phone: str) -> Optional[str]:
        if not phone:
            return None
        return self._resolve(f"phone:{phone}")

    def record_order_name(self, name: str, order_ref: str) -> None:
        self._put(f"name:{_name_key(name)}", order_ref)

    def resolve_by_name(self, name: str) -> Optional[str]:
        if not name:
            return None
        return self._resolve(f"name:{_name_key(name)}")

    def seen(self, event_id: str) -> bool:
        """True if ``event_id`` was claimed and the claim has not expired."""
        item = self.table.get(f"seen:{event_id}")
        if item and item.get("exp", 0) > self.clock():
            logger.info("correlation.duplicate_event", extra={"event_id": event_id})
            return True
        return False

    def claim(self, event_id: str, ttl_secs: int = 86400) -> bool:
        """
        Mark ``event_id`` as taken. Returns False if it was already claimed
        and the claim has not expired. Safe across processes: both the first
        write and the takeover of an expired claim are conditional.
        """
        now = int(self.clock())
        key = f"seen:{event_id}"
        if self.table.put_new(key, {"exp": now + ttl_secs}):
            return True
        item = self.table.get(key) or {}
        if item.get("exp", 0) > now:
            logger.info("correlation.duplicate_event", extra={"event_id": event_id})
            return False
        # Expired but not yet reaped by TTL.
        return self.table.update(key, {"exp": now + ttl_secs}, expect={"exp": item.get("exp")})

    def release(self, event_id: str) -> None:
        """Give up a claim early so the next attempt can take it."""
        self.table.update(f"seen:{event_id}", {"exp": 0})


def _name_key(name: str) -> str:
    return str(name).strip().lstrip("#").lower()
