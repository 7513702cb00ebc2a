"""Meta WhatsApp Cloud API (Graph ``/messages``) over httpx."""
from typing import Any, Dict

import httpx

from orderrelay.dispatcher import Delivered, DeliveryFailed, DeliveryResult
from orderrelay.templates import TemplateRequest
from orderrelay.utils.secrets import require_fields

GRAPH_URL = "https://graph.facebook.com/v19.0"


class CloudApiProvider:
    def __init__(self, phone_number_id: str, access_token: str, timeout: float = 10.0, client=None):
        self.url = f"{GRAPH_URL}/{phone_number_id}/messages"
        self.client = client or httpx.Client(
            timeout=httpx.Timeout(timeout),
            headers={"Authorization": f"Bearer {access_token}"},
        )

    @classmethod
    def from_secret(cls, secret: Dict[str, Any], timeout: float = 10.0) -> "CloudApiProvider":
        require_fields(secret, "access_token", "phone_number_id", label="WhatsApp secret")
        return cls(secret["phone_number_id"], secret["access_token"], timeout=timeout)

    def send_template(self, request: TemplateRequest) -> DeliveryResult:
        return self._post(request.to_cloud_api())

    def send_text(self, recipient: str, body: str) -> DeliveryResult:
        return self._post(
            {
                "messaging_product": "whatsapp",
                "recipient_type": "individual",
                "to": recipient,
                "type": "text",
                "text": {"body": body},
            }
        )

    def _post(self, payload: Dict[str, Any]) -> DeliveryResult:
        try:
            response = self.client.post(self.url, json=payload)
        except httpx.TimeoutException as e:
            return DeliveryFailed(None, f"timeout: {e}")
        except httpx.RequestError as e:
            return DeliveryFailed(None, f"request error: {e}")

        if response.status_code >= 400:
            return DeliveryFailed(response.status_code, response.text)

        try:
            data = response.json()
        except ValueError:
            data = {}
        message_id = (data.get("messages") or [{}])[0].get("id")
        return Delivered(message_id)
