"""
Map raw webhook bodies onto normalized events.

Storefront (Shopify), courier, WhatsApp Cloud API and Twilio WhatsApp
payloads each have one mapper here; the ingest handlers only verify,
call a mapper and enqueue what comes back.
"""
from typing import Any, Dict, List, Optional

from orderrelay.events import (
    CheckoutAbandoned,
    CourierStatus,
    Event,
    FulfillmentUpdate,
    InboundMessage,
    LineItem,
    OrderCancelled,
    OrderCreated,
)


def _get(data: Optional[Dict[str, Any]], *path: str):
    for key in path:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data


def _phone_candidates(data: Dict[str, Any]) -> List[str]:
    candidates = [
        _get(data, "shipping_address", "phone"),
        _get(data, "customer", "phone"),
        _get(data, "billing_address", "phone"),
        data.get("phone"),
    ]
    return [c for c in candidates if c]


def _customer_name(data: Dict[str, Any]) -> Optional[str]:
    return (
        _get(data, "customer", "first_name")
        or _get(data, "shipping_address", "first_name")
        or _get(data, "billing_address", "first_name")
    )


def shopify_event(topic: str, body: Dict[str, Any]) -> Optional[Event]:
    """One storefront webhook -> event, or None for topics we do not act on."""
    topic = (topic or "").lower()

    if topic == "orders/create":
        return OrderCreated(
            order_ref=str(body["id"]),
            phones=_phone_candidates(body),
            customer_name=_customer_name(body),
            order_name=body.get("name"),
            line_items=[
                LineItem(title=item.get("title") or "Product", quantity=int(item.get("quantity") or 1))
                for item in body.get("line_items") or []
            ],
            total_price=str(body.get("total_price") or "0"),
            currency=body.get("currency") or "",
        )

    if topic == "orders/cancelled":
        return OrderCancelled(order_ref=str(body["id"]), reason=body.get("cancel_reason"))

    if topic in ("fulfillments/create", "fulfillments/update", "fulfillment_events/create"):
        status = body.get("shipment_status") or body.get("status")
        if not status or not body.get("order_id"):
            return None
        return FulfillmentUpdate(
            order_ref=str(body["order_id"]),
            fulfillment_id=str(body.get("fulfillment_id") or body.get("id")),
            status=status,
            phone=_get(body, "destination", "phone"),
            tracking_url=body.get("tracking_url") or (body.get("tracking_urls") or [None])[0],
            tracking_number=body.get("tracking_number") or (body.get("tracking_numbers") or [None])[0],
        )

    if topic in ("checkouts/create", "checkouts/update"):
        if body.get("completed_at"):
            return None
        items = body.get("line_items") or []
        return CheckoutAbandoned(
            checkout_ref=str(body.get("token") or body["id"]),
            phones=_phone_candidates(body),
            customer_name=_customer_name(body),
            product=items[0].get("title") if items else None,
            recovery_url=body.get("abandoned_checkout_url"),
        )

    return None


def courier_event(body: Dict[str, Any]) -> Optional[CourierStatus]:
    order_ref = body.get("orderId") or body.get("order_id")
    if not order_ref or not body.get("status"):
        return None
    return CourierStatus(
        order_ref=str(order_ref),
        status=str(body["status"]),
        phone=body.get("phone"),
        tracking_url=body.get("tracking_url") or body.get("trackingUrl"),
        tracking_number=body.get("tracking_no") or body.get("tracking_number"),
        event_id=body.get("event_id") or body.get("eventId"),
    )


def _cloud_message(msg: Dict[str, Any]) -> InboundMessage:
    kind = msg.get("type") or "unknown"
    payload = None
    if kind == "button":
        payload = _get(msg, "button", "payload")
    elif kind == "interactive":
        payload = _get(msg, "interactive", "button_reply", "id") or _get(
            msg, "interactive", "list_reply", "id"
        )
    return InboundMessage(
        sender_phone=msg.get("from") or "",
        type=kind,
        payload=payload,
        text=_get(msg, "text", "body") or _get(msg, "button", "text"),
        message_id=msg.get("id"),
        context_message_id=_get(msg, "context", "id"),
        media_id=_get(msg, kind, "id") if kind in ("audio", "image", "video", "document") else None,
    )


def whatsapp_messages(body: Dict[str, Any]) -> List[InboundMessage]:
    """Every inbound customer message in a Cloud API webhook body."""
    events = []
    for entry in body.get("entry") or []:
        for change in entry.get("changes") or []:
            for msg in _get(change, "value", "messages") or []:
                events.append(_cloud_message(msg))
    return events


def whatsapp_statuses(body: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Delivery receipts in a Cloud API webhook body."""
    statuses = []
    for entry in body.get("entry") or []:
        for change in entry.get("changes") or []:
            for s in _get(change, "value", "statuses") or []:
                errors = s.get("errors") or [{}]
                statuses.append(
                    {
                        "message_id": s.get("id"),
                        "status": s.get("status"),
                        "error": errors[0].get("title"),
                    }
                )
    return statuses


def twilio_message(form: Dict[str, str]) -> Optional[InboundMessage]:
    """Twilio WhatsApp inbound webhook (form fields) -> event."""
    sender = (form.get("From") or "").replace("whatsapp:", "")
    if not sender:
        return None
    payload = form.get("ButtonPayload")
    media_type = form.get("MediaContentType0") or ""
    if payload:
        kind = "button"
    elif media_type.startswith("audio/"):
        kind = "audio"
    else:
        kind = "text"
    return InboundMessage(
        sender_phone=sender,
        type=kind,
        payload=payload,
        text=form.get("Body") or form.get("ButtonText"),
        message_id=form.get("MessageSid"),
        context_message_id=form.get("OriginalRepliedMessageSid"),
        media_id=form.get("MediaUrl0"),
    )
