# utils/twilio_client.py

import json
from typing import Any, Dict, Optional

from twilio.base.exceptions import TwilioException, TwilioRestException
from twilio.http.http_client import TwilioHttpClient
from twilio.rest import Client as TwilioClient

from orderrelay.dispatcher import Delivered, DeliveryFailed, DeliveryResult
from orderrelay.templates import TemplateRequest
from orderrelay.utils.logger import get_logger
from orderrelay.utils.secrets import require_fields

logger = get_logger("twilio_client")


def build_client(secrets: Dict[str, Any], timeout: float = 10.0):
    """
    Build and return a Twilio client plus a small config dict.

    Secrets are expected to be a dict like:
    {
      "account_sid": "...",
      "auth_token": "...",
      "messaging_service_sid": "MGxxx"   # or legacy "msid"
    }

    Returns:
        (client, conf) where conf has at least {"messaging_service_sid": "..."}
    """
    secrets = dict(secrets)
    # Support both "messaging_service_sid" and legacy "msid"
    if not secrets.get("messaging_service_sid"):
        secrets["messaging_service_sid"] = secrets.get("msid")
    require_fields(
        secrets, "account_sid", "auth_token", "messaging_service_sid", label="Twilio secret"
    )

    client = TwilioClient(
        secrets["account_sid"],
        secrets["auth_token"],
        http_client=TwilioHttpClient(timeout=timeout),
    )
    logger.info("twilio_client.initialized")

    conf = {"messaging_service_sid": secrets["messaging_service_sid"]}
    return client, conf


class TwilioWhatsAppProvider:
    """
    WhatsApp through Twilio. Templates are Content API resources, looked up
    by template name in ``content_sids``; variables are positional.
    """

    def __init__(self, client, messaging_service_sid: str, content_sids: Dict[str, str]):
        self.client = client
        self.messaging_service_sid = messaging_service_sid
        self.content_sids = content_sids

    @staticmethod
    def _address(phone: str) -> str:
        return f"whatsapp:+{phone}"

    def send_template(self, request: TemplateRequest) -> DeliveryResult:
        content_sid = self.content_sids.get(request.template_name)
        if not content_sid:
            return DeliveryFailed(None, f"no content SID configured for {request.template_name}")
        return self._create(
            to=self._address(request.recipient),
            content_sid=content_sid,
            content_variables=json.dumps(request.to_content_variables()),
        )

    def send_text(self, recipient: str, body: str) -> DeliveryResult:
        return self._create(to=self._address(recipient), body=body)

    def _create(self, **kwargs) -> DeliveryResult:
        try:
            resp = self.client.messages.create(
                messaging_service_sid=self.messaging_service_sid,
                **kwargs,
            )
        except TwilioRestException as e:
            return DeliveryFailed(e.status, f"{e.code}: {e.msg}")
        except TwilioException as e:
            return DeliveryFailed(None, str(e))
        except OSError as e:
            # requests' connection and timeout errors are OSErrors
            return DeliveryFailed(None, f"transport error: {e}")
        return Delivered(getattr(resp, "sid", None))


def parse_status_callback(data: Dict[str, str]) -> Optional[Dict[str, Any]]:
    """Twilio status callback form fields -> {message_id, status, error}."""
    message_sid = data.get("MessageSid")
    if not message_sid:
        return None
    return {
        "message_id": message_sid,
        "status": data.get("MessageStatus") or data.get("SmsStatus"),
        "error": data.get("ErrorCode"),
    }
