"""Storefront admin API: order notes used as the audit trail."""
import logging
from typing import Optional

import httpx
from tenacity import (
    RetryError,
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from orderrelay.errors import AnnotationFailed
from orderrelay.utils.logger import get_logger

logger = get_logger("commerce")


class ShopifyClient:
    def __init__(
        self,
        shop: str,
        access_token: str,
        api_version: str = "2023-10",
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
    ):
        self.base_url = f"https://{shop}/admin/api/{api_version}"
        self.client = client or httpx.Client(
            timeout=httpx.Timeout(timeout),
            headers={"X-Shopify-Access-Token": access_token},
        )

    @retry(
        retry=retry_if_exception_type(httpx.RequestError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=4),
        before_sleep=before_sleep_log(logger, logging.INFO),
    )
    def _put_note(self, order_ref: str, note: str) -> httpx.Response:
        return self.client.put(
            f"{self.base_url}/orders/{order_ref}.json",
            json={"order": {"id": order_ref, "note": note}},
        )

    def annotate_order(self, order_ref: str, note: str) -> None:
        """
        Overwrite the order note. Network errors are retried (the write is
        idempotent); an HTTP error status is not.

        Raises AnnotationFailed when the note could not be written.
        """
        try:
            response = self._put_note(order_ref, note)
        except RetryError as e:
            raise AnnotationFailed(f"order {order_ref}: {e.last_attempt.exception()}")
        if response.status_code >= 400:
            raise AnnotationFailed(f"order {order_ref}: {response.status_code} {response.text[:200]}")
        logger.info("commerce.note_updated", extra={"order_ref": order_ref})
