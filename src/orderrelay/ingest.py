import base64
import hashlib
import hmac
import json
from typing import Dict, List, Optional, Tuple
from urllib.parse import parse_qs

import boto3
from twilio.request_validator import RequestValidator

from orderrelay import payloads
from orderrelay.errors import SignatureError
from orderrelay.events import Event
from orderrelay.service import Service, get_service
from orderrelay.status import log_statuses
from orderrelay.utils.logger import get_logger

logger = get_logger("ingest")

_sqs = None


def _sqs_client(region: str):
    global _sqs
    if _sqs is None:
        _sqs = boto3.client("sqs", region_name=region)
    return _sqs


def _response(status: int, body: Optional[dict] = None, text: Optional[str] = None) -> dict:
    if text is not None:
        return {"statusCode": status, "headers": {"Content-Type": "text/plain"}, "body": text}
    return {
        "statusCode": status,
        "headers": {"Content-Type": "application/json"},
        "body": json.dumps(body or {}),
    }


def _raw_body(event: dict) -> bytes:
    """
    Raw request body as bytes; signatures are computed over these exact bytes.
    API Gateway base64-encodes bodies it considers binary.
    """
    body = event.get("body") or ""
    if event.get("isBase64Encoded"):
        return base64.b64decode(body)
    return body.encode("utf-8") if isinstance(body, str) else json.dumps(body).encode("utf-8")


def _headers(event: dict) -> Dict[str, str]:
    return {k.lower(): v for k, v in (event.get("headers") or {}).items()}


def _route(event: dict) -> Tuple[str, str]:
    http = (event.get("requestContext") or {}).get("http") or {}
    method = http.get("method") or event.get("httpMethod") or "POST"
    path = event.get("rawPath") or http.get("path") or event.get("path") or "/"
    return method.upper(), path.rstrip("/") or "/"


def verify_shopify_hmac(raw_body: bytes, header: Optional[str], secret: Optional[str]) -> None:
    """X-Shopify-Hmac-Sha256 is base64(HMAC-SHA256(secret, raw body))."""
    if not secret:
        raise SignatureError("webhook secret not configured")
    if not header:
        raise SignatureError("missing X-Shopify-Hmac-Sha256")
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()
    expected = base64.b64encode(digest).decode("ascii")
    if not hmac.compare_digest(expected, header):
        raise SignatureError("signature mismatch")


def verify_meta_signature(raw_body: bytes, header: Optional[str], secret: Optional[str]) -> None:
    """X-Hub-Signature-256 is "sha256=" + hex(HMAC-SHA256(app secret, raw body))."""
    if not secret:
        raise SignatureError("app secret not configured")
    if not header or not header.startswith("sha256="):
        raise SignatureError("missing X-Hub-Signature-256")
    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, header[len("sha256="):]):
        raise SignatureError("signature mismatch")


def submit(service: Service, events: List[Event]) -> int:
    """
    Enqueue events for the worker, or run them through the router inline
    when no queue is configured. FIFO queues group by order key so one
    order's events are processed in arrival order.
    """
    queue_url = service.settings.events_queue_url
    for evt in events:
        if not queue_url:
            service.router.handle(evt)
            continue

        body = json.dumps(evt.to_dict())
        params = {"QueueUrl": queue_url, "MessageBody": body}
        if queue_url.endswith(".fifo"):
            params["MessageGroupId"] = evt.order_key() or evt.kind
            params["MessageDeduplicationId"] = hashlib.sha256(body.encode("utf-8")).hexdigest()
        resp = _sqs_client(service.settings.aws_region).send_message(**params)
        logger.info(
            "ingest.enqueued",
            extra={"kind": evt.kind, "order_key": evt.order_key(), "message_id": resp.get("MessageId")},
        )
    return len(events)


def _json(raw: bytes) -> dict:
    try:
        data = json.loads(raw.decode("utf-8") or "{}")
    except (UnicodeDecodeError, json.JSONDecodeError):
        logger.warning("ingest.invalid_json", extra={"body_preview": raw[:200].decode("utf-8", "replace")})
        raise ValueError("invalid_json")
    if not isinstance(data, dict):
        raise ValueError("invalid_json")
    return data


def _shopify(service: Service, event: dict) -> dict:
    raw = _raw_body(event)
    headers = _headers(event)
    verify_shopify_hmac(raw, headers.get("x-shopify-hmac-sha256"), service.shopify_webhook_secret)
    topic = headers.get("x-shopify-topic", "")
    evt = payloads.shopify_event(topic, _json(raw))
    if evt is None:
        logger.info("ingest.topic_ignored", extra={"topic": topic})
        return _response(200, {"ok": True, "queued": 0})
    return _response(200, {"ok": True, "queued": submit(service, [evt])})


def _courier(service: Service, event: dict) -> dict:
    evt = payloads.courier_event(_json(_raw_body(event)))
    if evt is None:
        logger.warning("ingest.courier_missing_fields")
        return _response(200, {"ok": True, "queued": 0})
    return _response(200, {"ok": True, "queued": submit(service, [evt])})


def _meta_verify(service: Service, event: dict) -> dict:
    query = event.get("queryStringParameters") or {}
    token = query.get("hub.verify_token") or ""
    expected = service.settings.meta_verify_token
    if not expected:
        raise SignatureError("verify token not configured")
    if query.get("hub.mode") == "subscribe" and hmac.compare_digest(token, expected):
        logger.info("ingest.meta_verified")
        return _response(200, text=query.get("hub.challenge", ""))
    raise SignatureError("verify token mismatch")


def _whatsapp(service: Service, event: dict) -> dict:
    raw = _raw_body(event)
    verify_meta_signature(raw, _headers(event).get("x-hub-signature-256"), service.meta_app_secret)
    body = _json(raw)
    log_statuses(service.correlation, payloads.whatsapp_statuses(body))
    events = payloads.whatsapp_messages(body)
    return _response(200, {"ok": True, "queued": submit(service, events)})


def _twilio(service: Service, event: dict) -> dict:
    raw = _raw_body(event).decode("utf-8")
    form = {k: v[0] for k, v in parse_qs(raw).items() if v}
    headers = _headers(event)
    if service.twilio_auth_token:
        url = f"https://{headers.get('host', '')}{_route(event)[1]}"
        signature = headers.get("x-twilio-signature", "")
        if not RequestValidator(service.twilio_auth_token).validate(url, form, signature):
            raise SignatureError("twilio signature mismatch")
    evt = payloads.twilio_message(form)
    return _response(200, {"ok": True, "queued": submit(service, [evt] if evt else [])})


ROUTES = {
    ("POST", "/webhook/shopify"): _shopify,
    ("POST", "/webhook/courier"): _courier,
    ("GET", "/webhook/whatsapp"): _meta_verify,
    ("POST", "/webhook/whatsapp"): _whatsapp,
    ("POST", "/webhook/twilio"): _twilio,
}


def lambda_handler(event, context):
    method, path = _route(event)
    logger.info(
        "ingest.lambda_start",
        extra={"request_id": getattr(context, "aws_request_id", None), "method": method, "path": path},
    )

    handler = ROUTES.get((method, path))
    if handler is None:
        return _response(404, {"error": "not_found"})

    try:
        service = get_service()
    except RuntimeError as e:
        # Misconfiguration is a 500, not a 4xx
        logger.error("ingest.env_error", extra={"error": str(e)})
        return _response(500, {"error": "server_misconfigured"})

    try:
        return handler(service, event)
    except SignatureError as e:
        logger.warning("ingest.signature_rejected", extra={"path": path, "error": str(e)})
        return _response(403 if method == "GET" else 401, {"error": "unauthorized"})
    except (ValueError, KeyError) as e:
        return _response(400, {"error": "invalid_payload", "detail": str(e)})
    except Exception as e:
        # Non-2xx makes the sender redeliver the webhook.
        logger.error("ingest.processing_error", extra={"path": path, "error": str(e)}, exc_info=True)
        return _response(500, {"error": "processing_failure"})
