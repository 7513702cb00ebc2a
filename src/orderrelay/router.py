"""
Event Router: the order-status state machine.

Every normalized event goes through ``EventRouter.handle``. For one order
the router takes the order's lock, re-reads the record, checks the guard,
writes the new status, sends the notification(s) and writes any flags
that depend on the provider accepting them, then releases the lock.

Rules the transitions follow:

- A status change that reflects something that already happened upstream
  (courier delivered, customer tapped confirm) is committed even when the
  notification fails.
- ``reminderSent``, ``feedbackRequested`` and ``confirmationSent`` are only
  set when the provider accepted the message, so a failed send is picked
  up again later.
- A repeated action on an order that is already confirmed, cancelled or
  delivered gets an informational reply, never the original side effect.
- Unknown triggers leave the record untouched.
- Status writes are compare-and-set on the status that was read, so a
  writer in another process is detected and the guard is evaluated again
  on the fresh record. The in-process lock only avoids that round trip.
- StoreUnavailable propagates; nothing else does.
"""
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Tuple

from orderrelay import templates as tpl
from orderrelay.correlation import CorrelationIndex
from orderrelay.dispatcher import Delivered, Dispatcher
from orderrelay.errors import AnnotationFailed, InputError, StoreUnavailable
from orderrelay.events import (
    CheckoutAbandoned,
    CheckoutReminderTick,
    CourierStatus,
    Event,
    FulfillmentUpdate,
    InboundMessage,
    OrderCancelled,
    OrderCreated,
    ReminderTick,
)
from orderrelay.phone import first_valid, normalize
from orderrelay.store import (
    CANCELLED,
    CONFIRMED,
    DELIVERED,
    DELIVERY_ATTEMPTED,
    OUT_FOR_DELIVERY,
    PENDING_CONFIRMATION,
    REDELIVERY_SCHEDULED,
    RETURN_INITIATED,
    SHIPPED,
    CheckoutStore,
    OrderStore,
)
from orderrelay.templates import QUICK_REPLY, URL, Button
from orderrelay.utils.config import Settings
from orderrelay.utils.locks import KeyedLock
from orderrelay.utils.logger import get_logger

logger = get_logger("router")

# Re-reads allowed when another process changes the order between read and write.
MAX_WRITE_CONFLICTS = 3

# How long a sweep owns a record while its reminder is in flight.
REMINDER_LEASE_SECS = 15 * 60

SHIPPED_STAGE = frozenset({SHIPPED, OUT_FOR_DELIVERY, DELIVERY_ATTEMPTED, REDELIVERY_SCHEDULED})
TERMINAL = frozenset({CONFIRMED, CANCELLED, DELIVERED})

# Courier status strings -> trigger
COURIER_TRIGGERS = {
    "shipped": "shipped",
    "in_transit": "shipped",
    "out_for_delivery": "out_for_delivery",
    "dispatch_reminder": "out_for_delivery",
    "attempted": "attempted",
    "pending": "failed",
    "failed": "failed",
    "delivered": "delivered",
    "rto": "return",
    "return_initiated": "return",
    "returned": "return",
}

# Storefront shipment_status / fulfillment status -> courier status
FULFILLMENT_STATUSES = {
    "confirmed": "shipped",
    "label_printed": "shipped",
    "label_purchased": "shipped",
    "in_transit": "shipped",
    "success": "shipped",
    "out_for_delivery": "out_for_delivery",
    "attempted_delivery": "attempted",
    "failure": "failed",
    "delivered": "delivered",
}

# trigger -> (allowed from, to, re-entrant)
COURIER_TRANSITIONS: Dict[str, Tuple[FrozenSet[str], str, bool]] = {
    "shipped": (frozenset({PENDING_CONFIRMATION, CONFIRMED}), SHIPPED, False),
    "out_for_delivery": (
        frozenset({SHIPPED, DELIVERY_ATTEMPTED, REDELIVERY_SCHEDULED}),
        OUT_FOR_DELIVERY,
        False,
    ),
    "attempted": (
        frozenset({SHIPPED, OUT_FOR_DELIVERY, REDELIVERY_SCHEDULED}),
        DELIVERY_ATTEMPTED,
        False,
    ),
    "failed": (
        frozenset({DELIVERY_ATTEMPTED, OUT_FOR_DELIVERY, REDELIVERY_SCHEDULED}),
        DELIVERY_ATTEMPTED,
        True,
    ),
    "delivered": (SHIPPED_STAGE, DELIVERED, False),
    "return": (SHIPPED_STAGE, RETURN_INITIATED, False),
}

# Customer button payloads -> (action, extra)
REPLY_ACTIONS: Dict[str, Tuple[str, Optional[str]]] = {
    "CONFIRM_ORDER": ("confirm", None),
    "CANCEL_ORDER": ("cancel", None),
    "REDELIVER_TOMORROW": ("redeliver", "Tomorrow"),
    "RETRY_DELIVERY": ("redeliver", "Tomorrow"),
    "TRY_AGAIN": ("redeliver", "Tomorrow"),
    "CONFIRM_AVAILABLE_TODAY": ("redeliver", "Today"),
    "CANCEL_FAILED": ("return", "Customer cancelled after failed delivery"),
    "CANCEL_ORDER_RETURN": ("return", "Customer requested return"),
    "RET_WRONG_ADDRESS": ("return", "Wrong address"),
    "RET_NOT_AVAILABLE": ("return", "Customer not available"),
    "RET_CHANGED_MIND": ("return", "Customer changed mind"),
    "RET_CONTACT_SUPPORT": ("return", "Customer asked for support"),
    "DELIVERED_OK": ("delivered", None),
    "NEED_HELP": ("help", None),
    "FEEDBACK_POSITIVE": ("feedback", "positive"),
    "FEEDBACK_NEGATIVE": ("feedback", "negative"),
}

# action -> (allowed from, to)
ACTION_TRANSITIONS: Dict[str, Tuple[FrozenSet[str], str]] = {
    "confirm": (frozenset({PENDING_CONFIRMATION}), CONFIRMED),
    "cancel": (frozenset({PENDING_CONFIRMATION}), CANCELLED),
    "redeliver": (frozenset({DELIVERY_ATTEMPTED}), REDELIVERY_SCHEDULED),
    "return": (SHIPPED_STAGE, RETURN_INITIATED),
    "delivered": (SHIPPED_STAGE, DELIVERED),
}

ACTION_NOTES = {
    "confirm": "Customer confirmed the order on WhatsApp",
    "cancel": "Customer cancelled the order on WhatsApp",
    "redeliver": "Customer asked for redelivery ({extra}) on WhatsApp",
    "return": "Return initiated on WhatsApp: {extra}",
    "delivered": "Customer confirmed delivery on WhatsApp",
    "help": "Customer asked for help on WhatsApp",
}


@dataclass
class Outcome:
    """What the router did with one event."""

    action: str  # created | transitioned | reminded | duplicate | recorded | ignored | dropped | failed
    order_ref: Optional[str] = None
    status: Optional[str] = None
    sent: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


def parse_payload(payload: Optional[str]) -> Tuple[str, Optional[str]]:
    """``"CONFIRM_ORDER:1001"`` -> ``("CONFIRM_ORDER", "1001")``."""
    if not payload:
        return "", None
    action, _, ref = str(payload).strip().partition(":")
    return action.strip().upper(), (ref.strip() or None)


def _label(status: Optional[str]) -> str:
    return (status or "unknown").replace("_", " ")


class EventRouter:
    def __init__(
        self,
        orders: OrderStore,
        checkouts: CheckoutStore,
        correlation: CorrelationIndex,
        dispatcher: Dispatcher,
        settings: Settings,
        commerce=None,
        clock: Callable[[], float] = time.time,
        locks: Optional[KeyedLock] = None,
    ):
        self.orders = orders
        self.checkouts = checkouts
        self.correlation = correlation
        self.dispatcher = dispatcher
        self.settings = settings
        self.commerce = commerce
        self.clock = clock
        self.locks = locks or KeyedLock()
        self._handlers = {
            OrderCreated: self._order_created,
            OrderCancelled: self._order_cancelled,
            CourierStatus: self._courier_status,
            FulfillmentUpdate: self._fulfillment_update,
            InboundMessage: self._inbound_message,
            ReminderTick: self._reminder_tick,
            CheckoutAbandoned: self._checkout_abandoned,
            CheckoutReminderTick: self._checkout_reminder_tick,
        }

    def handle(self, event: Event) -> Outcome:
        handler = self._handlers.get(type(event))
        if handler is None:
            logger.warning("router.unsupported_event", extra={"kind": getattr(event, "kind", None)})
            return Outcome("ignored")
        try:
            outcome = handler(event)
        except InputError as e:
            logger.warning(
                "router.event_dropped",
                extra={"kind": event.kind, "reason": str(e), "order_key": event.order_key()},
            )
            return Outcome("dropped")
        logger.info(
            "router.handled",
            extra={
                "kind": event.kind,
                "outcome": outcome.action,
                "order_ref": outcome.order_ref,
                "status": outcome.status,
                "sent": outcome.sent,
                "failed": outcome.failed,
            },
        )
        return outcome

    # ── helpers ───────────────────────────────────────────────────────────

    def _phone(self, raw) -> Optional[str]:
        return normalize(raw, self.settings.default_country_code)

    def _send(self, outcome: Outcome, contact: str, template, params, buttons=None, correlate=True) -> bool:
        result = self.dispatcher.dispatch(
            contact, template, params, buttons, order_ref=outcome.order_ref if correlate else None
        )
        if isinstance(result, Delivered):
            outcome.sent.append(template.name)
            return True
        outcome.failed.append(template.name)
        return False

    def _annotate(self, order_ref: str, note: str) -> None:
        if self.commerce is None:
            return
        try:
            self.commerce.annotate_order(order_ref, f"WhatsApp relay: {note}")
        except AnnotationFailed as e:
            logger.warning("router.annotation_failed", extra={"order_ref": order_ref, "error": str(e)})

    def _require_order(self, order_ref: str) -> Dict[str, Any]:
        record = self.orders.get(order_ref)
        if record is None:
            raise InputError(f"unknown order {order_ref}")
        return record

    def _reread(self, order_ref: str, attempt: int) -> Dict[str, Any]:
        if attempt >= MAX_WRITE_CONFLICTS:
            raise StoreUnavailable(f"order {order_ref} kept changing under concurrent writes")
        logger.info("router.write_conflict", extra={"order_ref": order_ref, "attempt": attempt + 1})
        return self._require_order(order_ref)

    @staticmethod
    def _name(record: Dict[str, Any]) -> str:
        return record.get("customerName") or "Customer"

    def _confirmation(self, outcome: Outcome, record: Dict[str, Any]) -> bool:
        ref = record["orderRef"]
        params = [
            self._name(record),
            ref,
            record.get("product") or "Product",
            record.get("quantity", 1),
            record.get("storeName") or self.settings.store_name,
            record.get("totalPrice") or "0",
            record.get("currency") or "",
        ]
        buttons = [
            Button(QUICK_REPLY, f"CONFIRM_ORDER:{ref}"),
            Button(QUICK_REPLY, f"CANCEL_ORDER:{ref}"),
        ]
        return self._send(outcome, record["phone"], tpl.ORDER_CONFIRMATION, params, buttons)

    # ── storefront orders ─────────────────────────────────────────────────

    def _order_created(self, event: OrderCreated) -> Outcome:
        ref = str(event.order_ref)
        phone = first_valid(event.phones, self.settings.default_country_code)
        if not phone:
            raise InputError(f"order {ref} has no resolvable phone")

        first = event.line_items[0] if event.line_items else None
        fields = {
            "phone": phone,
            "customerName": event.customer_name or "Customer",
            "orderName": event.order_name,
            "product": first.title if first else "Product",
            "quantity": first.quantity if first else 1,
            "totalPrice": str(event.total_price),
            "currency": event.currency,
            "storeName": self.settings.store_name,
        }
        outcome = Outcome("created", ref, PENDING_CONFIRMATION)
        with self.locks.hold(ref):
            now = self.clock()
            if not self.orders.create(ref, fields, now):
                return Outcome("duplicate", ref, (self.orders.get(ref) or {}).get("status"))
            self.correlation.record_latest_order_for_phone(phone, ref)
            if event.order_name:
                self.correlation.record_order_name(event.order_name, ref)

            if self._confirmation(outcome, {"orderRef": ref, **fields}):
                self.orders.update(ref, {"confirmationSent": True}, self.clock())
        return outcome

    def _order_cancelled(self, event: OrderCancelled) -> Outcome:
        ref = str(event.order_ref)
        fields = {"status": CANCELLED}
        if event.reason:
            fields["cancelReason"] = event.reason
        with self.locks.hold(ref):
            record = self._require_order(ref)
            attempt = 0
            while True:
                status = record.get("status")
                if status == CANCELLED:
                    return Outcome("duplicate", ref, status)
                if status not in (PENDING_CONFIRMATION, CONFIRMED):
                    logger.warning(
                        "router.transition_rejected",
                        extra={"order_ref": ref, "status": status, "trigger": "merchant_cancel"},
                    )
                    return Outcome("ignored", ref, status)
                if self.orders.transition(ref, status, fields, self.clock()):
                    break
                record = self._reread(ref, attempt)
                attempt += 1

            outcome = Outcome("transitioned", ref, CANCELLED)
            self._send(outcome, record["phone"], tpl.ORDER_CANCELLED_REPLY, [ref])
        return outcome

    # ── courier and fulfillment ───────────────────────────────────────────

    def _courier_status(self, event: CourierStatus) -> Outcome:
        ref = str(event.order_ref)
        seen_key = f"courier:{event.event_id}" if event.event_id else None
        with self.locks.hold(ref):
            if seen_key and self.correlation.seen(seen_key):
                return Outcome("duplicate", ref)
            record = self._require_order(ref)
            outcome = self._apply_courier(
                record, event.status, event.phone, event.tracking_url, event.tracking_number
            )
            if seen_key:
                self.correlation.claim(seen_key)
        return outcome

    def _fulfillment_update(self, event: FulfillmentUpdate) -> Outcome:
        ref = str(event.order_ref)
        with self.locks.hold(ref):
            record = self._require_order(ref)
            now = self.clock()
            self.orders.update(
                ref,
                {
                    f"fulfillments.{event.fulfillment_id}": {
                        "status": event.status,
                        "trackingUrl": event.tracking_url,
                        "updatedAt": int(now),
                    }
                },
                now,
            )
            return self._apply_courier(
                record,
                FULFILLMENT_STATUSES.get(str(event.status).lower()),
                event.phone,
                event.tracking_url,
                event.tracking_number,
            )

    def _tracking_url(self, record, tracking_url, tracking_number) -> str:
        if tracking_url:
            return tracking_url
        if tracking_number:
            return self.settings.tracking_url_template.format(tracking_number=tracking_number)
        return record.get("trackingUrl") or f"{self.settings.shop_url}/account"

    def _apply_courier(
        self, record, raw_status, event_phone, tracking_url, tracking_number, attempt: int = 0
    ) -> Outcome:
        ref = record["orderRef"]
        status = record.get("status")
        trigger = COURIER_TRIGGERS.get(str(raw_status or "").strip().lower())
        if trigger is None:
            logger.info("router.unknown_courier_status", extra={"order_ref": ref, "courier_status": raw_status})
            return Outcome("ignored", ref, status)

        sources, target, reentrant = COURIER_TRANSITIONS[trigger]
        if status == target and not reentrant:
            return Outcome("duplicate", ref, status)
        if status not in sources:
            logger.warning(
                "router.transition_rejected",
                extra={"order_ref": ref, "status": status, "trigger": trigger},
            )
            return Outcome("ignored", ref, status)

        now = self.clock()
        fields: Dict[str, Any] = {"status": target, "courierStatus": raw_status}
        phone = self._phone(event_phone) or record.get("phone")
        if not phone:
            raise InputError(f"order {ref} has no contact phone")
        if phone != record.get("phone"):
            fields["phone"] = phone
        if trigger == "shipped":
            fields["trackingUrl"] = self._tracking_url(record, tracking_url, tracking_number)
        guard = None
        if trigger == "failed":
            guard = {"failedAttempts": record.get("failedAttempts")}
            fields["failedAttempts"] = int(record.get("failedAttempts") or 0) + 1
        if not self.orders.transition(ref, status, fields, now, guard=guard):
            record = self._reread(ref, attempt)
            return self._apply_courier(
                record, raw_status, event_phone, tracking_url, tracking_number, attempt + 1
            )
        if "phone" in fields:
            self.correlation.record_latest_order_for_phone(phone, ref)

        record = {**record, **fields}
        outcome = Outcome("transitioned", ref, target)
        name = self._name(record)
        if trigger == "shipped":
            self._send(outcome, phone, tpl.SHIPMENT_NOTICE, [ref], [Button(URL, fields["trackingUrl"])])
        elif trigger == "out_for_delivery":
            self._send(
                outcome, phone, tpl.ORDER_DISPATCH_REMINDER, [name, ref, record.get("product") or "Product"]
            )
        elif trigger == "attempted":
            self._send(
                outcome,
                phone,
                tpl.DELIVERY_ATTEMPTED,
                [name, ref],
                [Button(QUICK_REPLY, f"REDELIVER_TOMORROW:{ref}"), Button(QUICK_REPLY, f"CANCEL_FAILED:{ref}")],
            )
        elif trigger == "failed":
            self._send(
                outcome,
                phone,
                tpl.FAILED_DELIVERY_FOLLOWUP,
                [name, ref],
                [Button(QUICK_REPLY, f"TRY_AGAIN:{ref}"), Button(QUICK_REPLY, f"CANCEL_FAILED:{ref}")],
            )
        elif trigger == "delivered":
            self._delivered_notices(outcome, record)
        elif trigger == "return":
            self._send(outcome, phone, tpl.RETURN_INITIATED, [ref])
        return outcome

    def _delivered_notices(self, outcome: Outcome, record: Dict[str, Any]) -> None:
        ref, phone = record["orderRef"], record["phone"]
        self._send(outcome, phone, tpl.ORDER_DELIVERED, [self._name(record), ref])
        if not self.settings.feedback_enabled or record.get("feedbackRequested"):
            return
        if self._send(
            outcome, phone, tpl.FEEDBACK_REQUEST, [self._name(record)], [Button(URL, self.settings.feedback_url)]
        ):
            self.orders.update(ref, {"feedbackRequested": True}, self.clock())

    # ── inbound customer messages ─────────────────────────────────────────

    def _resolve_reply(self, phone: str, explicit_ref: Optional[str], context_id: Optional[str]) -> str:
        """
        Order lookup for a reply: explicit reference in the payload, then
        storefront order name, then the message being replied to, then the
        sender's most recent order.

        A reference found in the payload or through the replied-to message
        only counts when the order belongs to the sender; anyone can put
        another customer's order number in a payload.
        """
        candidates = []
        if explicit_ref:
            candidates += [explicit_ref, self.correlation.resolve_by_name(explicit_ref)]
        candidates.append(self.correlation.resolve_by_message_id(context_id))
        for ref in candidates:
            record = self.orders.get(ref) if ref else None
            if record is None:
                continue
            if record.get("phone") == phone:
                return ref
            logger.warning("router.foreign_order_ref", extra={"order_ref": ref, "from": phone})
        by_phone = self.correlation.resolve_by_phone(phone)
        if by_phone:
            return by_phone
        raise InputError(f"no order found for reply from {phone}")

    def _inbound_message(self, event: InboundMessage) -> Outcome:
        phone = self._phone(event.sender_phone)
        if not phone:
            raise InputError("inbound message without sender")
        seen_key = f"inbound:{event.message_id}" if event.message_id else None

        if event.type not in ("button", "interactive"):
            ref = self._resolve_reply(phone, None, event.context_message_id)
            with self.locks.hold(ref):
                if seen_key and self.correlation.seen(seen_key):
                    return Outcome("duplicate", ref)
                self._require_order(ref)
                now = self.clock()
                self.orders.update(
                    ref,
                    {
                        "lastInbound": {
                            "type": event.type,
                            "text": event.text,
                            "mediaId": event.media_id,
                            "at": int(now),
                        }
                    },
                    now,
                )
                if seen_key:
                    self.correlation.claim(seen_key)
            return Outcome("recorded", ref)

        code, explicit_ref = parse_payload(event.payload)
        action, extra = REPLY_ACTIONS.get(code, (None, None))
        if action is None:
            logger.info("router.unknown_action", extra={"payload": event.payload, "from": phone})
            return Outcome("ignored")

        ref = self._resolve_reply(phone, explicit_ref, event.context_message_id)
        with self.locks.hold(ref):
            if seen_key and self.correlation.seen(seen_key):
                return Outcome("duplicate", ref)
            record = self._require_order(ref)
            if action == "feedback":
                outcome = self._feedback(record, phone, extra)
            elif action == "help":
                outcome = self._help(record, phone)
            else:
                outcome = self._customer_action(record, phone, action, extra)
            if seen_key:
                self.correlation.claim(seen_key)
        return outcome

    def _customer_action(
        self, record, phone: str, action: str, extra: Optional[str], attempt: int = 0
    ) -> Outcome:
        ref = record["orderRef"]
        status = record.get("status")
        sources, target = ACTION_TRANSITIONS[action]

        if status not in sources:
            if status in TERMINAL or status == target:
                outcome = Outcome("duplicate", ref, status)
                self.dispatcher.reply(
                    phone,
                    f"We already have your response for order {ref}. "
                    f"Current status: {_label(status)}. No further action is needed.",
                    order_ref=ref,
                )
                return outcome
            logger.warning(
                "router.transition_rejected",
                extra={"order_ref": ref, "status": status, "trigger": action},
            )
            return Outcome("ignored", ref, status)

        fields: Dict[str, Any] = {"status": target, "lastAction": action}
        if action == "return":
            fields["returnReason"] = extra
        if action == "redeliver":
            fields["redeliveryDay"] = extra
        if not self.orders.transition(ref, status, fields, self.clock()):
            record = self._reread(ref, attempt)
            return self._customer_action(record, phone, action, extra, attempt + 1)
        record = {**record, **fields}

        outcome = Outcome("transitioned", ref, target)
        name = self._name(record)
        if action == "confirm":
            self._send(outcome, phone, tpl.ORDER_CONFIRMED_REPLY, [name, ref])
        elif action == "cancel":
            self._send(outcome, phone, tpl.ORDER_CANCELLED_REPLY, [ref])
        elif action == "redeliver":
            self._send(
                outcome,
                phone,
                tpl.REDELIVERY_SCHEDULED,
                [
                    ref,
                    extra,
                    self.settings.redelivery_window,
                    self.settings.courier_name,
                    record.get("totalPrice") or "0",
                    record.get("currency") or "",
                ],
            )
        elif action == "return":
            self._send(outcome, phone, tpl.RETURN_INITIATED, [ref])
        elif action == "delivered":
            self._delivered_notices(outcome, record)

        self._annotate(ref, ACTION_NOTES[action].format(extra=extra))
        return outcome

    def _feedback(self, record, phone: str, rating: str) -> Outcome:
        ref = record["orderRef"]
        if record.get("feedback"):
            return Outcome("duplicate", ref, record.get("status"))
        self.orders.update(ref, {"feedback": rating}, self.clock())
        self.dispatcher.reply(phone, "Thank you for your feedback!", order_ref=ref)
        return Outcome("recorded", ref, record.get("status"))

    def _help(self, record, phone: str) -> Outcome:
        ref = record["orderRef"]
        self.orders.update(ref, {"helpRequested": True}, self.clock())
        self.dispatcher.reply(
            phone, f"Thanks, our team will contact you shortly about order {ref}.", order_ref=ref
        )
        self._annotate(ref, ACTION_NOTES["help"])
        return Outcome("recorded", ref, record.get("status"))

    # ── reminders ─────────────────────────────────────────────────────────

    def _reminder_due(self, record: Optional[Dict[str, Any]], now: float) -> bool:
        return bool(
            record
            and record.get("status") == PENDING_CONFIRMATION
            and not record.get("reminderSent")
            and record.get("phone")
            and now - record.get("createdAt", now) > self.settings.order_reminder_seconds
        )

    def _take_lease(self, lease: str) -> bool:
        if self.correlation.claim(lease, ttl_secs=REMINDER_LEASE_SECS):
            return True
        logger.info("router.reminder_in_flight", extra={"lease": lease})
        return False

    def _reminder_tick(self, event: ReminderTick) -> Outcome:
        ref = str(event.order_ref)
        lease = f"reminder:order:{ref}"
        with self.locks.hold(ref):
            record = self._require_order(ref)
            if not self._reminder_due(record, event.now) or not self._take_lease(lease):
                return Outcome("ignored", ref, record.get("status"))
            # Another sweep may have finished between the read and the claim.
            record = self._require_order(ref)
            if not self._reminder_due(record, event.now):
                return Outcome("ignored", ref, record.get("status"))

            outcome = Outcome("reminded", ref, record.get("status"))
            if self._confirmation(outcome, record):
                self.orders.update(
                    ref, {"reminderSent": True, "reminderSentAt": int(event.now)}, self.clock()
                )
            else:
                self.correlation.release(lease)
                outcome.action = "failed"
        return outcome

    # ── abandoned checkouts ───────────────────────────────────────────────

    def _checkout_abandoned(self, event: CheckoutAbandoned) -> Outcome:
        ref = str(event.checkout_ref)
        phone = first_valid(event.phones, self.settings.default_country_code)
        if not phone:
            raise InputError(f"checkout {ref} has no resolvable phone")
        fields = {
            "phone": phone,
            "customerName": event.customer_name or "Customer",
            "product": event.product or "your product",
            "recoveryUrl": event.recovery_url or self.settings.default_checkout_url,
        }
        with self.locks.hold(f"checkout:{ref}"):
            if not self.checkouts.create(ref, fields, self.clock()):
                return Outcome("duplicate", ref)
        return Outcome("created", ref)

    def _checkout_due(self, record: Optional[Dict[str, Any]], now: float) -> bool:
        return bool(
            record
            and not record.get("reminded")
            and now - record.get("createdAt", now) > self.settings.checkout_reminder_seconds
        )

    def _checkout_reminder_tick(self, event: CheckoutReminderTick) -> Outcome:
        ref = str(event.checkout_ref)
        lease = f"reminder:checkout:{ref}"
        with self.locks.hold(f"checkout:{ref}"):
            record = self.checkouts.get(ref)
            if record is None:
                raise InputError(f"unknown checkout {ref}")
            if not self._checkout_due(record, event.now) or not self._take_lease(lease):
                return Outcome("ignored", ref)
            record = self.checkouts.get(ref)
            if not self._checkout_due(record, event.now):
                return Outcome("ignored", ref)

            outcome = Outcome("reminded", ref)
            delivered = self._send(
                outcome,
                record["phone"],
                tpl.ABANDONED_CHECKOUT,
                [record.get("customerName") or "Customer", record.get("product") or "your product"],
                [Button(URL, record.get("recoveryUrl") or self.settings.default_checkout_url)],
                correlate=False,
            )
            if delivered:
                self.checkouts.mark_reminded(ref, event.now)
            else:
                self.correlation.release(lease)
                outcome.action = "failed"
        return outcome
