import json
from typing import Any, Dict, Iterable
from urllib.parse import parse_qs

from orderrelay.correlation import CorrelationIndex
from orderrelay.service import get_service
from orderrelay.utils.logger import get_logger
from orderrelay.utils.twilio_client import parse_status_callback

logger = get_logger("status")

FAILED_STATUSES = {"failed", "undelivered"}


def log_statuses(correlation: CorrelationIndex, statuses: Iterable[Dict[str, Any]]) -> int:
    """
    Log provider delivery receipts against the order that sent the message.
    Receipts never change order state.
    """
    count = 0
    for s in statuses:
        message_id = s.get("message_id")
        order_ref = correlation.resolve_by_message_id(message_id) if message_id else None
        log = logger.warning if s.get("status") in FAILED_STATUSES else logger.info
        log(
            "status.receipt",
            extra={
                "message_id": message_id,
                "message_status": s.get("status"),
                "order_ref": order_ref,
                "error": s.get("error"),
            },
        )
        count += 1
    return count


def lambda_handler(event, context):
    # Body from API Gateway HTTP API (v2), form-encoded by Twilio
    raw_body = event.get("body") or ""
    data = {k: v[0] for k, v in parse_qs(raw_body).items() if v}

    receipt = parse_status_callback(data)
    if receipt is None:
        logger.warning("status.missing_sid", extra={"fields": sorted(data)})
    else:
        try:
            log_statuses(get_service().correlation, [receipt])
        except Exception as e:
            logger.error("status.lookup_failed", extra={"message_id": receipt["message_id"], "error": str(e)})

    # Twilio is never blocked on internal errors; just acknowledge receipt.
    return {
        "statusCode": 200,
        "headers": {"Content-Type": "application/json"},
        "body": json.dumps({"ok": True}),
    }
