"""
Template catalog and the provider-agnostic template request.

Names, body parameter counts and button layout must match the templates
approved on the provider side exactly. Body parameters are positional.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from orderrelay.errors import TemplateError

QUICK_REPLY = "quick_reply"
URL = "url"


@dataclass(frozen=True)
class Template:
    name: str
    body_params: int
    buttons: Tuple[str, ...] = ()


ORDER_CONFIRMATION = Template("order_confirmation", 7, (QUICK_REPLY, QUICK_REPLY))
ORDER_CONFIRMED_REPLY = Template("order_confirmed_reply", 2)
ORDER_CANCELLED_REPLY = Template("order_cancelled_reply_auto", 1)
ORDER_DISPATCH_REMINDER = Template("order_dispatch_reminder", 3)
DELIVERY_ATTEMPTED = Template("delivery_attempted", 2, (QUICK_REPLY, QUICK_REPLY))
FAILED_DELIVERY_FOLLOWUP = Template("failed_delivery_followup", 2, (QUICK_REPLY, QUICK_REPLY))
REDELIVERY_SCHEDULED = Template("redelivery_scheduled", 6)
RETURN_INITIATED = Template("return_initiated_cust", 1)
ORDER_DELIVERED = Template("order_delivered", 2)
ABANDONED_CHECKOUT = Template("abandoned_checkout", 2, (URL,))
FEEDBACK_REQUEST = Template("feedback_request", 1, (URL,))
SHIPMENT_NOTICE = Template("your_order_is_shipped_2025", 1, (URL,))

CATALOG: Dict[str, Template] = {
    t.name: t
    for t in (
        ORDER_CONFIRMATION,
        ORDER_CONFIRMED_REPLY,
        ORDER_CANCELLED_REPLY,
        ORDER_DISPATCH_REMINDER,
        DELIVERY_ATTEMPTED,
        FAILED_DELIVERY_FOLLOWUP,
        REDELIVERY_SCHEDULED,
        RETURN_INITIATED,
        ORDER_DELIVERED,
        ABANDONED_CHECKOUT,
        FEEDBACK_REQUEST,
        SHIPMENT_NOTICE,
    )
}


@dataclass(frozen=True)
class Button:
    """
    One button substitution. ``quick_reply`` carries an opaque payload that
    comes back on the tap; ``url`` carries the text appended to the link.
    """

    subtype: str
    value: str


@dataclass(frozen=True)
class TemplateRequest:
    recipient: str
    template_name: str
    language_code: str
    body_parameters: List[str]
    buttons: List[Button] = field(default_factory=list)
    header_parameters: List[str] = field(default_factory=list)

    def to_cloud_api(self) -> Dict[str, Any]:
        """Graph API ``messages`` body for a template send."""
        components: List[Dict[str, Any]] = []
        if self.header_parameters:
            components.append(
                {
                    "type": "header",
                    "parameters": [{"type": "text", "text": p} for p in self.header_parameters],
                }
            )
        if self.body_parameters:
            components.append(
                {
                    "type": "body",
                    "parameters": [{"type": "text", "text": p} for p in self.body_parameters],
                }
            )
        for index, button in enumerate(self.buttons):
            if button.subtype == QUICK_REPLY:
                param = {"type": "payload", "payload": button.value}
            else:
                param = {"type": "text", "text": button.value}
            components.append(
                {
                    "type": "button",
                    "sub_type": button.subtype,
                    "index": str(index),
                    "parameters": [param],
                }
            )
        return {
            "messaging_product": "whatsapp",
            "to": self.recipient,
            "type": "template",
            "template": {
                "name": self.template_name,
                "language": {"code": self.language_code},
                "components": components,
            },
        }

    def to_content_variables(self) -> Dict[str, str]:
        """
        Twilio Content API variables: body parameters first as "1".."n",
        button values continue the numbering in button order.
        """
        values = list(self.header_parameters) + list(self.body_parameters)
        values += [b.value for b in self.buttons]
        return {str(i): v for i, v in enumerate(values, start=1)}


def build_request(
    recipient: str,
    template: Template,
    params: Sequence[Any],
    buttons: Optional[Sequence[Button]] = None,
    language_code: str = "en",
) -> TemplateRequest:
    """Validate ``params``/``buttons`` against the catalog and build the request."""
    if CATALOG.get(template.name) != template:
        raise TemplateError(f"Unknown template: {template.name}")
    if len(params) != template.body_params:
        raise TemplateError(
            f"{template.name} takes {template.body_params} body parameters, got {len(params)}"
        )
    buttons = list(buttons or [])
    if buttons and tuple(b.subtype for b in buttons) != template.buttons:
        raise TemplateError(
            f"{template.name} buttons must be {list(template.buttons)}, "
            f"got {[b.subtype for b in buttons]}"
        )
    if not buttons and URL in template.buttons:
        raise TemplateError(f"{template.name} requires its url button parameter")
    return TemplateRequest(
        recipient=recipient,
        template_name=template.name,
        language_code=language_code,
        body_parameters=["" if p is None else str(p) for p in params],
        buttons=buttons,
    )
