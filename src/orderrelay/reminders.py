"""
Reminder Scheduler.

Invoked by an EventBridge schedule. Each sweep feeds one synthetic tick per
candidate record into the router, which re-checks the guard under the
record's lock; the persisted ``reminderSent`` / ``reminded`` flag is what
keeps repeated or overlapping sweeps at one successful reminder per record.
"""
import time
from datetime import datetime
from typing import Callable, Optional

from orderrelay.errors import StoreUnavailable
from orderrelay.events import CheckoutReminderTick, ReminderTick
from orderrelay.router import EventRouter
from orderrelay.service import get_service
from orderrelay.utils.logger import get_logger

logger = get_logger("reminders")

# Stop starting new records when less than this is left of the invocation.
SAFETY_MARGIN_MS = 5000


class ReminderScheduler:
    def __init__(self, router: EventRouter):
        self.router = router
        self.orders = router.orders
        self.checkouts = router.checkouts
        self.settings = router.settings

    def sweep(self, now: float, remaining_ms: Optional[Callable[[], int]] = None) -> int:
        """
        Send due reminders for unconfirmed orders and abandoned checkouts.
        Returns the number of reminders the provider accepted.

        A record that fails (provider down, store error) is logged and
        skipped; the next sweep picks it up again because its flag is
        still unset.
        """
        sent = 0
        candidates = []
        for record in self.orders.awaiting_confirmation():
            if now - record.get("createdAt", now) > self.settings.order_reminder_seconds:
                candidates.append(ReminderTick(order_ref=record["orderRef"], now=now))
        for record in self.checkouts.not_reminded():
            if now - record.get("createdAt", now) > self.settings.checkout_reminder_seconds:
                candidates.append(CheckoutReminderTick(checkout_ref=record["checkoutRef"], now=now))

        logger.info("reminders.sweep_start", extra={"candidates": len(candidates)})

        for i, tick in enumerate(candidates):
            if remaining_ms is not None and remaining_ms() < SAFETY_MARGIN_MS:
                logger.warning(
                    "reminders.out_of_time",
                    extra={"sent": sent, "left_unprocessed": len(candidates) - i},
                )
                break
            try:
                outcome = self.router.handle(tick)
            except StoreUnavailable as e:
                logger.error(
                    "reminders.record_failed",
                    extra={"order_key": tick.order_key(), "error": str(e)},
                )
                continue
            if outcome.action == "reminded":
                sent += 1

        logger.info("reminders.sweep_done", extra={"sent": sent})
        return sent


def _event_time(event) -> float:
    # EventBridge scheduled events carry an ISO-8601 "time"
    raw = (event or {}).get("time")
    if raw:
        try:
            return datetime.fromisoformat(raw.replace("Z", "+00:00")).timestamp()
        except ValueError:
            logger.warning("reminders.bad_event_time", extra={"time": raw})
    return time.time()


def lambda_handler(event, context):
    service = get_service()
    remaining = getattr(context, "get_remaining_time_in_millis", None)
    sent = ReminderScheduler(service.router).sweep(_event_time(event), remaining_ms=remaining)
    return {"reminders_sent": sent}
