import threading

import pytest
from conftest import T0, RelayHarness

from orderrelay.errors import StoreUnavailable

from orderrelay.events import (
    CheckoutAbandoned,
    CheckoutReminderTick,
    CourierStatus,
    FulfillmentUpdate,
    InboundMessage,
    LineItem,
    OrderCancelled,
    OrderCreated,
    ReminderTick,
)
from orderrelay.router import parse_payload


def _created(ref="1001", phones=("03001234567",), **kw):
    kw.setdefault("line_items", [LineItem("Widget", 1)])
    kw.setdefault("total_price", "500")
    kw.setdefault("currency", "PKR")
    return OrderCreated(order_ref=ref, phones=list(phones), **kw)


def _button(payload, phone="923001234567", message_id=None, context=None):
    return InboundMessage(
        sender_phone=phone,
        type="button",
        payload=payload,
        message_id=message_id,
        context_message_id=context,
    )


def _set_status(relay, status, ref="1001"):
    relay.orders.update(ref, {"status": status}, relay.clock())


def test_parse_payload():
    assert parse_payload("CONFIRM_ORDER:1001") == ("CONFIRM_ORDER", "1001")
    assert parse_payload(" cancel_order ") == ("CANCEL_ORDER", None)
    assert parse_payload(None) == ("", None)


def test_order_created_sends_confirmation_with_exact_params(relay):
    out = relay.router.handle(_created())

    assert out.action == "created"
    record = relay.order()
    assert record["status"] == "pending_confirmation"
    assert record["phone"] == "923001234567"
    assert record["confirmationSent"] is True
    assert record["reminderSent"] is False

    assert relay.provider.names() == ["order_confirmation"]
    req = relay.provider.templates[0]
    assert req.recipient == "923001234567"
    assert req.body_parameters == ["Customer", "1001", "Widget", "1", "StoreName", "500", "PKR"]
    assert [b.value for b in req.buttons] == ["CONFIRM_ORDER:1001", "CANCEL_ORDER:1001"]


def test_order_created_without_phone_creates_nothing(relay):
    out = relay.router.handle(_created(phones=["", None, "n/a"]))

    assert out.action == "dropped"
    assert relay.order() is None
    assert relay.provider.templates == []


def test_duplicate_order_created_sends_once(relay):
    relay.router.handle(_created())
    out = relay.router.handle(_created())

    assert out.action == "duplicate"
    assert relay.provider.names() == ["order_confirmation"]


def test_order_created_commits_even_when_provider_fails(relay):
    relay.provider.fail = True
    out = relay.router.handle(_created())

    assert out.failed == ["order_confirmation"]
    record = relay.order()
    assert record["status"] == "pending_confirmation"
    assert record["confirmationSent"] is False


def test_first_phone_candidate_that_normalizes_wins(relay):
    relay.router.handle(_created(phones=["---", "3001234567"]))
    assert relay.order()["phone"] == "923001234567"


def test_confirm_button_confirms_order(relay):
    relay.router.handle(_created(customer_name="Ayesha"))
    out = relay.router.handle(_button("CONFIRM_ORDER:1001"))

    assert out.action == "transitioned"
    assert relay.order()["status"] == "confirmed"
    req = relay.provider.templates[-1]
    assert req.template_name == "order_confirmed_reply"
    assert req.body_parameters == ["Ayesha", "1001"]
    assert relay.commerce.notes == [("1001", "WhatsApp relay: Customer confirmed the order on WhatsApp")]


def test_cancel_button_cancels_order(relay):
    relay.router.handle(_created())
    relay.router.handle(_button("CANCEL_ORDER:1001"))

    assert relay.order()["status"] == "cancelled"
    assert relay.provider.names()[-1] == "order_cancelled_reply_auto"


def test_terminal_states_only_get_informational_reply(relay):
    relay.router.handle(_created())
    relay.router.handle(_button("CONFIRM_ORDER:1001"))
    sent_before = len(relay.provider.templates)

    for payload in ("CONFIRM_ORDER:1001", "CANCEL_ORDER:1001"):
        out = relay.router.handle(_button(payload))
        assert out.action == "duplicate"

    assert relay.order()["status"] == "confirmed"
    assert len(relay.provider.templates) == sent_before
    assert len(relay.provider.texts) == 2
    assert "Current status: confirmed" in relay.provider.texts[0][1]


def test_reply_without_ref_resolves_latest_order_for_phone(relay):
    relay.router.handle(_created(ref="1001"))
    relay.router.handle(_created(ref="1002"))
    relay.router.handle(_button("CONFIRM_ORDER"))

    assert relay.order("1002")["status"] == "confirmed"
    assert relay.order("1001")["status"] == "pending_confirmation"


def test_reply_to_message_resolves_that_order(relay):
    relay.router.handle(_created(ref="1001"))
    relay.router.handle(_created(ref="1002"))
    first_message_id = "wamid.1"

    relay.router.handle(_button("CONFIRM_ORDER", context=first_message_id))
    assert relay.order("1001")["status"] == "confirmed"
    assert relay.order("1002")["status"] == "pending_confirmation"


def test_reply_payload_with_order_name(relay):
    relay.router.handle(_created(order_name="#1001-PK"))
    relay.router.handle(_button("CONFIRM_ORDER:#1001-pk"))
    assert relay.order()["status"] == "confirmed"


def test_reply_from_unknown_phone_is_dropped(relay):
    out = relay.router.handle(_button("CONFIRM_ORDER", phone="15550001111"))
    assert out.action == "dropped"


def test_unknown_button_payload_is_ignored(relay):
    relay.router.handle(_created())
    out = relay.router.handle(_button("SOMETHING_ELSE:1001"))
    assert out.action == "ignored"
    assert relay.order()["status"] == "pending_confirmation"


def test_duplicate_inbound_message_id_is_processed_once(relay):
    relay.router.handle(_created())
    relay.router.handle(_button("CONFIRM_ORDER:1001", message_id="wamid.in1"))
    out = relay.router.handle(_button("CONFIRM_ORDER:1001", message_id="wamid.in1"))

    assert out.action == "duplicate"
    assert relay.provider.texts == []


def test_text_message_recorded_as_last_inbound(relay):
    relay.router.handle(_created())
    out = relay.router.handle(
        InboundMessage(sender_phone="923001234567", type="text", text="where is my order?")
    )

    assert out.action == "recorded"
    last = relay.order()["lastInbound"]
    assert last["type"] == "text"
    assert last["text"] == "where is my order?"


def test_courier_delivered_sends_delivered_then_feedback(relay):
    relay.router.handle(_created())
    _set_status(relay, "shipped")

    out = relay.router.handle(CourierStatus(order_ref="1001", status="delivered"))

    assert out.status == "delivered"
    assert relay.provider.names()[-2:] == ["order_delivered", "feedback_request"]
    record = relay.order()
    assert record["status"] == "delivered"
    assert record["feedbackRequested"] is True
    assert relay.provider.templates[-1].buttons[0].value == relay.settings.feedback_url


def test_feedback_flag_not_set_when_request_fails(relay):
    relay.router.handle(_created())
    _set_status(relay, "shipped")
    relay.provider.fail = True

    relay.router.handle(CourierStatus(order_ref="1001", status="delivered"))

    record = relay.order()
    assert record["status"] == "delivered"
    assert record["feedbackRequested"] is False


def test_feedback_disabled():
    relay = RelayHarness(feedback_enabled=False)
    relay.router.handle(_created())
    _set_status(relay, "shipped")
    relay.router.handle(CourierStatus(order_ref="1001", status="delivered"))
    assert relay.provider.names()[-1] == "order_delivered"


def test_courier_shipped_uses_tracking_number_fallback(relay):
    relay.router.handle(_created())
    relay.router.handle(CourierStatus(order_ref="1001", status="in_transit", tracking_number="TN42"))

    record = relay.order()
    assert record["status"] == "shipped"
    assert record["trackingUrl"] == "https://shop.example.com/apps/track?tn=TN42"
    req = relay.provider.templates[-1]
    assert req.template_name == "your_order_is_shipped_2025"
    assert req.buttons[0].value == record["trackingUrl"]


def test_courier_unknown_status_leaves_record(relay):
    relay.router.handle(_created())
    out = relay.router.handle(CourierStatus(order_ref="1001", status="teleported"))
    assert out.action == "ignored"
    assert relay.order()["status"] == "pending_confirmation"


def test_courier_event_for_cancelled_order_is_rejected(relay):
    relay.router.handle(_created())
    _set_status(relay, "cancelled")
    out = relay.router.handle(CourierStatus(order_ref="1001", status="delivered"))
    assert out.action == "ignored"
    assert relay.order()["status"] == "cancelled"


def test_courier_event_for_unknown_order_is_dropped(relay):
    out = relay.router.handle(CourierStatus(order_ref="9999", status="shipped"))
    assert out.action == "dropped"


def test_courier_event_id_dedup(relay):
    relay.router.handle(_created())
    relay.router.handle(CourierStatus(order_ref="1001", status="shipped", event_id="e1"))
    _set_status(relay, "pending_confirmation")
    out = relay.router.handle(CourierStatus(order_ref="1001", status="shipped", event_id="e1"))
    assert out.action == "duplicate"


def test_failed_delivery_then_redelivery(relay):
    relay.router.handle(_created())
    _set_status(relay, "shipped")

    relay.router.handle(CourierStatus(order_ref="1001", status="attempted"))
    assert relay.order()["status"] == "delivery_attempted"
    assert relay.provider.names()[-1] == "delivery_attempted"

    relay.router.handle(CourierStatus(order_ref="1001", status="pending"))
    relay.router.handle(CourierStatus(order_ref="1001", status="failed"))
    record = relay.order()
    assert record["status"] == "delivery_attempted"
    assert record["failedAttempts"] == 2
    assert relay.provider.names()[-1] == "failed_delivery_followup"

    relay.router.handle(_button("REDELIVER_TOMORROW:1001"))
    record = relay.order()
    assert record["status"] == "redelivery_scheduled"
    req = relay.provider.templates[-1]
    assert req.template_name == "redelivery_scheduled"
    assert req.body_parameters[:2] == ["1001", "Tomorrow"]


def test_return_reason_button(relay):
    relay.router.handle(_created())
    _set_status(relay, "delivery_attempted")
    relay.router.handle(_button("RET_WRONG_ADDRESS:1001"))

    record = relay.order()
    assert record["status"] == "return_initiated"
    assert record["returnReason"] == "Wrong address"
    assert relay.provider.names()[-1] == "return_initiated_cust"


def test_merchant_cancel(relay):
    relay.router.handle(_created())
    out = relay.router.handle(OrderCancelled(order_ref="1001", reason="customer"))
    assert out.status == "cancelled"
    assert relay.order()["cancelReason"] == "customer"

    again = relay.router.handle(OrderCancelled(order_ref="1001"))
    assert again.action == "duplicate"


def test_fulfillment_update_records_and_transitions(relay):
    relay.router.handle(_created())
    relay.router.handle(
        FulfillmentUpdate(
            order_ref="1001",
            fulfillment_id="555",
            status="in_transit",
            tracking_url="https://track.example.com/1",
        )
    )
    record = relay.order()
    assert record["status"] == "shipped"
    assert record["fulfillments"]["555"]["status"] == "in_transit"
    assert record["trackingUrl"] == "https://track.example.com/1"


def test_fulfillment_pending_status_is_ignored(relay):
    relay.router.handle(_created())
    _set_status(relay, "out_for_delivery")
    out = relay.router.handle(FulfillmentUpdate(order_ref="1001", fulfillment_id="1", status="pending"))
    assert out.action == "ignored"
    assert relay.order()["status"] == "out_for_delivery"


def test_feedback_button_recorded_once(relay):
    relay.router.handle(_created())
    _set_status(relay, "delivered")
    out = relay.router.handle(_button("FEEDBACK_POSITIVE:1001"))
    assert out.action == "recorded"
    assert relay.order()["feedback"] == "positive"
    assert relay.router.handle(_button("FEEDBACK_NEGATIVE:1001")).action == "duplicate"
    assert relay.order()["feedback"] == "positive"


def test_reminder_tick_guard(relay):
    relay.router.handle(_created())

    early = relay.router.handle(ReminderTick(order_ref="1001", now=T0 + 3600))
    assert early.action == "ignored"

    due = relay.router.handle(ReminderTick(order_ref="1001", now=T0 + 7 * 3600))
    assert due.action == "reminded"
    assert relay.order()["reminderSent"] is True

    again = relay.router.handle(ReminderTick(order_ref="1001", now=T0 + 8 * 3600))
    assert again.action == "ignored"
    assert relay.provider.names() == ["order_confirmation", "order_confirmation"]


def test_checkout_abandoned_then_reminded(relay):
    out = relay.router.handle(
        CheckoutAbandoned(checkout_ref="c1", phones=["03001234567"], product="Widget")
    )
    assert out.action == "created"
    assert relay.provider.templates == []

    tick = relay.router.handle(CheckoutReminderTick(checkout_ref="c1", now=T0 + 3601))
    assert tick.action == "reminded"
    req = relay.provider.templates[-1]
    assert req.template_name == "abandoned_checkout"
    assert req.body_parameters == ["Customer", "Widget"]
    assert req.buttons[0].value == "https://shop.example.com/cart"
    assert relay.checkouts.get("c1")["reminded"] is True


def test_concurrent_events_for_one_order_do_not_lose_updates(relay):
    relay.router.handle(_created())
    _set_status(relay, "shipped")

    events = [CourierStatus(order_ref="1001", status="delivered"), _button("DELIVERED_OK:1001")]
    threads = [threading.Thread(target=relay.router.handle, args=(e,)) for e in events]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert relay.order()["status"] == "delivered"
    assert relay.provider.names().count("order_delivered") == 1
    assert relay.provider.names().count("feedback_request") == 1


# ── ownership of replies ───────────────────────────────────────────────

STRANGER = "923339999999"


def test_reply_naming_another_customers_order_is_dropped(relay):
    relay.router.handle(_created())
    out = relay.router.handle(_button("CANCEL_ORDER:1001", phone=STRANGER))

    assert out.action == "dropped"
    assert relay.order()["status"] == "pending_confirmation"
    assert relay.provider.texts == []
    assert [r.recipient for r in relay.provider.templates] == ["923001234567"]
    assert relay.commerce.notes == []


def test_reply_naming_another_customers_order_acts_on_own_order(relay):
    relay.router.handle(_created(ref="1001"))
    relay.router.handle(_created(ref="1002", phones=("03339999999",)))
    out = relay.router.handle(_button("CONFIRM_ORDER:1001", phone=STRANGER))

    assert out.order_ref == "1002"
    assert relay.order("1002")["status"] == "confirmed"
    assert relay.order("1001")["status"] == "pending_confirmation"


def test_reply_to_another_customers_message_is_dropped(relay):
    relay.router.handle(_created())
    out = relay.router.handle(_button("CONFIRM_ORDER", phone=STRANGER, context="wamid.1"))

    assert out.action == "dropped"
    assert relay.order()["status"] == "pending_confirmation"


# ── writers in separate containers ─────────────────────────────────────


def _before_first_write(harness, action):
    """Run ``action`` after ``harness``'s router has read the order but before it writes."""
    original = harness.orders.transition
    fired = []

    def transition(*args, **kwargs):
        if not fired:
            fired.append(True)
            action()
        return original(*args, **kwargs)

    harness.orders.transition = transition


def test_status_written_by_another_container_is_not_overwritten(relay):
    relay.router.handle(_created())
    other = relay.sibling()
    _before_first_write(relay, lambda: other.router.handle(CourierStatus(order_ref="1001", status="shipped")))

    out = relay.router.handle(_button("CONFIRM_ORDER:1001"))

    assert relay.order()["status"] == "shipped"
    assert out.action == "ignored"
    assert "order_confirmed_reply" not in relay.provider.names()
    assert relay.commerce.notes == []
    assert other.provider.names() == ["your_order_is_shipped_2025"]


def test_customer_confirm_loses_to_merchant_cancel_in_another_container(relay):
    relay.router.handle(_created())
    other = relay.sibling()
    _before_first_write(relay, lambda: other.router.handle(OrderCancelled(order_ref="1001", reason="fraud")))

    out = relay.router.handle(_button("CONFIRM_ORDER:1001"))

    assert out.action == "duplicate"
    assert relay.order()["status"] == "cancelled"
    assert "Current status: cancelled" in relay.provider.texts[-1][1]


def test_failed_attempts_counted_across_containers(relay):
    relay.router.handle(_created())
    _set_status(relay, "delivery_attempted")
    other = relay.sibling()
    _before_first_write(relay, lambda: other.router.handle(CourierStatus(order_ref="1001", status="failed")))

    relay.router.handle(CourierStatus(order_ref="1001", status="failed"))

    assert relay.order()["failedAttempts"] == 2


def test_order_that_keeps_changing_raises_store_unavailable(relay, monkeypatch):
    relay.router.handle(_created())
    monkeypatch.setattr(relay.orders, "transition", lambda *args, **kwargs: False)

    with pytest.raises(StoreUnavailable):
        relay.router.handle(_button("CONFIRM_ORDER:1001"))
    assert relay.order()["status"] == "pending_confirmation"
