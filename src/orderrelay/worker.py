import json
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List

from orderrelay.errors import StoreUnavailable
from orderrelay.events import event_from_dict
from orderrelay.router import EventRouter
from orderrelay.service import get_service
from orderrelay.utils.logger import get_logger

logger = get_logger("worker")

MAX_PARALLEL_ORDERS = 8


def _process_group(router: EventRouter, records: list) -> List[str]:
    """
    Run one order's records in arrival order. After a store failure the
    rest of the group is failed too, so redelivery keeps their order.
    """
    failures: List[str] = []
    for rec, evt in records:
        message_id = rec.get("messageId")
        if failures:
            failures.append(message_id)
            continue
        try:
            outcome = router.handle(evt)
        except StoreUnavailable as e:
            logger.error(
                "worker.record_failed",
                extra={"message_id": message_id, "order_key": evt.order_key(), "error": str(e)},
            )
            failures.append(message_id)
            continue
        logger.info(
            "worker.record_done",
            extra={"message_id": message_id, "kind": evt.kind, "action": outcome.action},
        )
    return failures


def process_records(router: EventRouter, records: List[Dict[str, Any]]) -> List[str]:
    """Returns the SQS message ids to redeliver."""
    groups: "OrderedDict[str, list]" = OrderedDict()
    for rec in records:
        raw_body = rec.get("body") or ""
        try:
            evt = event_from_dict(json.loads(raw_body))
        except (json.JSONDecodeError, ValueError, TypeError, KeyError) as e:
            # Unparseable forever; redelivery cannot help.
            logger.warning(
                "worker.payload_invalid",
                extra={"message_id": rec.get("messageId"), "preview": raw_body[:200], "error": str(e)},
            )
            continue
        groups.setdefault(evt.order_key(), []).append((rec, evt))

    if not groups:
        return []

    failures: List[str] = []
    with ThreadPoolExecutor(max_workers=min(MAX_PARALLEL_ORDERS, len(groups))) as pool:
        for group_failures in pool.map(lambda g: _process_group(router, g), groups.values()):
            failures.extend(group_failures)
    return failures


def lambda_handler(event, context):
    records = event.get("Records", [])
    logger.info("worker.lambda_start", extra={"records": len(records)})

    failures = process_records(get_service().router, records)
    if failures:
        logger.warning("worker.partial_failure", extra={"failed": len(failures)})
    return {"batchItemFailures": [{"itemIdentifier": mid} for mid in failures]}
