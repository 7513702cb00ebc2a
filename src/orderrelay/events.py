"""
Normalized events consumed by the router.

Webhook payloads are mapped onto these in ``payloads``; the worker moves
them through SQS as ``{"kind": ..., **fields}``.
"""
from dataclasses import asdict, dataclass, field, fields
from typing import Any, ClassVar, Dict, List, Optional


@dataclass
class Event:
    kind: ClassVar[str] = ""

    def order_key(self) -> str:
        """Key that serializes processing (SQS message group)."""
        return str(getattr(self, "order_ref", "") or "")

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, **asdict(self)}


@dataclass
class LineItem:
    title: str
    quantity: int = 1


@dataclass
class OrderCreated(Event):
    kind: ClassVar[str] = "order_created"

    order_ref: str
    phones: List[str] = field(default_factory=list)
    customer_name: Optional[str] = None
    order_name: Optional[str] = None
    line_items: List[LineItem] = field(default_factory=list)
    total_price: str = "0"
    currency: str = ""


@dataclass
class OrderCancelled(Event):
    kind: ClassVar[str] = "order_cancelled"

    order_ref: str
    reason: Optional[str] = None


@dataclass
class CourierStatus(Event):
    kind: ClassVar[str] = "courier_status"

    order_ref: str
    status: str
    phone: Optional[str] = None
    tracking_url: Optional[str] = None
    tracking_number: Optional[str] = None
    event_id: Optional[str] = None


@dataclass
class FulfillmentUpdate(Event):
    kind: ClassVar[str] = "fulfillment_update"

    order_ref: str
    fulfillment_id: str
    status: str
    phone: Optional[str] = None
    tracking_url: Optional[str] = None
    tracking_number: Optional[str] = None


@dataclass
class InboundMessage(Event):
    kind: ClassVar[str] = "inbound_message"

    sender_phone: str
    type: str  # text | button | interactive | audio | ...
    payload: Optional[str] = None
    text: Optional[str] = None
    message_id: Optional[str] = None
    context_message_id: Optional[str] = None
    media_id: Optional[str] = None

    def order_key(self) -> str:
        return f"phone:{self.sender_phone}"


@dataclass
class ReminderTick(Event):
    kind: ClassVar[str] = "reminder_tick"

    order_ref: str
    now: float


@dataclass
class CheckoutAbandoned(Event):
    kind: ClassVar[str] = "checkout_abandoned"

    checkout_ref: str
    phones: List[str] = field(default_factory=list)
    customer_name: Optional[str] = None
    product: Optional[str] = None
    recovery_url: Optional[str] = None

    def order_key(self) -> str:
        return f"checkout:{self.checkout_ref}"


@dataclass
class CheckoutReminderTick(Event):
    kind: ClassVar[str] = "checkout_reminder_tick"

    checkout_ref: str
    now: float

    def order_key(self) -> str:
        return f"checkout:{self.checkout_ref}"


EVENT_TYPES = {
    cls.kind: cls
    for cls in (
        OrderCreated,
        OrderCancelled,
        CourierStatus,
        FulfillmentUpdate,
        InboundMessage,
        ReminderTick,
        CheckoutAbandoned,
        CheckoutReminderTick,
    )
}


def event_from_dict(data: Dict[str, Any]) -> Event:
    data = dict(data)
    kind = data.pop("kind", None)
    cls = EVENT_TYPES.get(kind)
    if cls is None:
        raise ValueError(f"Unsupported event kind: {kind}")
    known = {f.name for f in fields(cls)}
    kwargs = {k: v for k, v in data.items() if k in known}
    if cls is OrderCreated:
        kwargs["line_items"] = [
            item if isinstance(item, LineItem) else LineItem(**item)
            for item in kwargs.get("line_items") or []
        ]
    return cls(**kwargs)
