import importlib
import json

from conftest import RelayHarness, load_event

from orderrelay.errors import StoreUnavailable
from orderrelay.service import Service


def _service(relay):
    return Service(
        settings=relay.settings,
        router=relay.router,
        correlation=relay.correlation,
        dispatcher=relay.dispatcher,
    )


def test_worker_routes_records_and_skips_bad_json(monkeypatch):
    relay = RelayHarness()
    worker = importlib.reload(importlib.import_module("orderrelay.worker"))
    monkeypatch.setattr(worker, "get_service", lambda: _service(relay))

    resp = worker.lambda_handler(load_event("sqs_worker_event.json"), None)
    assert resp == {"batchItemFailures": []}

    reply = {
        "kind": "inbound_message",
        "sender_phone": "923001234567",
        "type": "button",
        "payload": "CONFIRM_ORDER:1001",
        "message_id": "wamid.IN1",
    }
    resp = worker.lambda_handler({"Records": [{"messageId": "m-3", "body": json.dumps(reply)}]}, None)
    assert resp == {"batchItemFailures": []}
    assert relay.order("1001")["status"] == "confirmed"
    assert relay.provider.names() == ["order_confirmation", "order_confirmed_reply"]


def test_store_failure_reports_rest_of_group(monkeypatch):
    relay = RelayHarness()
    worker = importlib.reload(importlib.import_module("orderrelay.worker"))
    monkeypatch.setattr(worker, "get_service", lambda: _service(relay))

    def unavailable(event):
        if event.order_key() == "1001":
            raise StoreUnavailable("throttled")
        return original(event)

    original = relay.router.handle
    monkeypatch.setattr(relay.router, "handle", unavailable)

    records = [
        {"messageId": "a", "body": json.dumps({"kind": "courier_status", "order_ref": "1001", "status": "shipped"})},
        {"messageId": "b", "body": json.dumps({"kind": "courier_status", "order_ref": "1001", "status": "delivered"})},
        {"messageId": "c", "body": json.dumps({"kind": "courier_status", "order_ref": "2002", "status": "shipped"})},
        {"messageId": "d", "body": json.dumps({"kind": "mystery"})},
    ]
    resp = worker.lambda_handler({"Records": records}, None)

    assert resp == {"batchItemFailures": [{"itemIdentifier": "a"}, {"itemIdentifier": "b"}]}
