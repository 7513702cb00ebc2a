"""
Notification Dispatcher.

Turns (contact, template, positional parameters, buttons) into one provider
call and reports the outcome as a value. It never retries: a repeated send
of a template without a dedup key is a duplicate message on the customer's
phone, so retry policy belongs to the caller.
"""
from dataclasses import dataclass
from typing import Any, Optional, Protocol, Sequence, Union

from orderrelay.templates import Button, Template, TemplateRequest, build_request
from orderrelay.utils.logger import get_logger

logger = get_logger("dispatcher")


@dataclass(frozen=True)
class Delivered:
    message_id: Optional[str]
    ok = True


@dataclass(frozen=True)
class DeliveryFailed:
    provider_status: Optional[int]
    provider_body: str
    ok = False


DeliveryResult = Union[Delivered, DeliveryFailed]


class MessagingProvider(Protocol):
    def send_template(self, request: TemplateRequest) -> DeliveryResult:
        ...

    def send_text(self, recipient: str, body: str) -> DeliveryResult:
        ...


class Dispatcher:
    def __init__(self, provider: MessagingProvider, correlation=None, language_code: str = "en"):
        self.provider = provider
        self.correlation = correlation
        self.language_code = language_code

    def dispatch(
        self,
        contact: str,
        template: Template,
        params: Sequence[Any],
        buttons: Optional[Sequence[Button]] = None,
        order_ref: Optional[str] = None,
    ) -> DeliveryResult:
        """
        Send one approved template. Raises TemplateError for a bad template
        or parameter count; every provider-side problem comes back as
        DeliveryFailed.
        """
        request = build_request(contact, template, params, buttons, self.language_code)
        result = self._send(lambda: self.provider.send_template(request), contact, template.name)

        if isinstance(result, Delivered):
            logger.info(
                "dispatcher.sent",
                extra={
                    "template": template.name,
                    "to": contact,
                    "order_ref": order_ref,
                    "message_id": result.message_id,
                },
            )
            if order_ref and result.message_id and self.correlation is not None:
                self.correlation.record_outbound_message(result.message_id, order_ref)
        return result

    def reply(self, contact: str, body: str, order_ref: Optional[str] = None) -> DeliveryResult:
        """Free-form session reply; only valid inside the customer's 24h window."""
        result = self._send(lambda: self.provider.send_text(contact, body), contact, "text")
        if isinstance(result, Delivered):
            logger.info(
                "dispatcher.reply_sent",
                extra={"to": contact, "order_ref": order_ref, "message_id": result.message_id},
            )
        return result

    def _send(self, call, contact: str, label: str) -> DeliveryResult:
        try:
            result = call()
        except Exception as e:
            # Provider trouble is a lost notification, never an exception.
            logger.error(
                "dispatcher.provider_error",
                extra={"template": label, "to": contact, "error": str(e)},
                exc_info=True,
            )
            return DeliveryFailed(None, str(e))

        if isinstance(result, DeliveryFailed):
            logger.error(
                "dispatcher.delivery_failed",
                extra={
                    "template": label,
                    "to": contact,
                    "provider_status": result.provider_status,
                    "provider_body": result.provider_body[:500],
                },
            )
        return result
