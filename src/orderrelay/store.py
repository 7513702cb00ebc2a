"""
Order Store Adapter and the abandoned-checkout store.

The only code that writes order and checkout records. ``update`` is a
per-attribute merge; single-record writes are atomic in the backing table.
"""
from typing import Any, Dict, Iterator, Optional

from orderrelay.utils.tables import Table

# Order statuses
PENDING_CONFIRMATION = "pending_confirmation"
CONFIRMED = "confirmed"
CANCELLED = "cancelled"
SHIPPED = "shipped"
OUT_FOR_DELIVERY = "out_for_delivery"
DELIVERY_ATTEMPTED = "delivery_attempted"
DELIVERED = "delivered"
RETURN_INITIATED = "return_initiated"
REDELIVERY_SCHEDULED = "redelivery_scheduled"

STATUSES = frozenset(
    {
        PENDING_CONFIRMATION,
        CONFIRMED,
        CANCELLED,
        SHIPPED,
        OUT_FOR_DELIVERY,
        DELIVERY_ATTEMPTED,
        DELIVERED,
        RETURN_INITIATED,
        REDELIVERY_SCHEDULED,
    }
)


class OrderStore:
    def __init__(self, table: Table):
        self.table = table

    def get(self, order_ref: str) -> Optional[Dict[str, Any]]:
        return self.table.get(str(order_ref))

    def create(self, order_ref: str, fields: Dict[str, Any], now: float) -> bool:
        """
        Create the record if it does not exist yet. Returns False when a
        record with this reference is already stored (duplicate webhook).
        """
        record = {
            "status": PENDING_CONFIRMATION,
            "reminderSent": False,
            "feedbackRequested": False,
            "confirmationSent": False,
            "fulfillments": {},
            **fields,
            "orderRef": str(order_ref),
            "createdAt": int(now),
            "updatedAt": int(now),
        }
        return self.table.put_new(str(order_ref), record)

    def update(self, order_ref: str, fields: Dict[str, Any], now: float) -> None:
        self.table.update(str(order_ref), {**fields, "updatedAt": int(now)})

    def transition(
        self,
        order_ref: str,
        expected_status: str,
        fields: Dict[str, Any],
        now: float,
        guard: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Write ``fields`` only if the stored status is still ``expected_status``
        (and every ``guard`` attribute still holds its value). Returns False
        when another writer got there first; the caller re-reads and decides
        again.
        """
        expect = {"status": expected_status, **(guard or {})}
        return self.table.update(str(order_ref), {**fields, "updatedAt": int(now)}, expect=expect)

    def awaiting_confirmation(self) -> Iterator[Dict[str, Any]]:
        return self.table.scan(status=PENDING_CONFIRMATION, reminderSent=False)


class CheckoutStore:
    def __init__(self, table: Table):
        self.table = table

    def get(self, checkout_ref: str) -> Optional[Dict[str, Any]]:
        return self.table.get(str(checkout_ref))

    def create(self, checkout_ref: str, fields: Dict[str, Any], now: float) -> bool:
        record = {
            **fields,
            "checkoutRef": str(checkout_ref),
            "createdAt": int(now),
            "reminded": False,
        }
        return self.table.put_new(str(checkout_ref), record)

    def mark_reminded(self, checkout_ref: str, now: float) -> None:
        self.table.update(str(checkout_ref), {"reminded": True, "remindedAt": int(now)})

    def not_reminded(self) -> Iterator[Dict[str, Any]]:
        return self.table.scan(reminded=False)
