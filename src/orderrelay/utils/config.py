import json
import os
from dataclasses import dataclass, field
from typing import Dict, Optional

from orderrelay.utils.logger import get_logger

logger = get_logger("config")

_TRUTHY = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    """Runtime configuration, loaded once per container from the environment."""

    messaging_secret_name: str
    shopify_shop: str
    shopify_secret_name: str

    aws_region: str = "us-east-1"
    default_country_code: str = "92"
    store_name: str = "Our Store"
    template_language: str = "en"
    messaging_provider: str = "twilio"
    shopify_api_version: str = "2023-10"

    orders_table: Optional[str] = None
    checkouts_table: Optional[str] = None
    correlation_table: Optional[str] = None
    events_queue_url: Optional[str] = None

    order_reminder_seconds: int = 6 * 3600
    checkout_reminder_seconds: int = 3600
    correlation_ttl_seconds: int = 30 * 86400
    http_timeout_seconds: float = 10.0

    feedback_enabled: bool = True
    feedback_url: str = ""
    default_checkout_url: str = ""
    tracking_url_template: str = ""
    courier_name: str = "our courier"
    redelivery_window: str = "10am-6pm"
    meta_verify_token: str = ""
    twilio_content_sids: Dict[str, str] = field(default_factory=dict)

    @property
    def shop_url(self) -> str:
        return f"https://{self.shopify_shop}"


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        msg = f"Invalid {name}='{raw}'. Must be an integer number of seconds."
        logger.error(msg)
        raise RuntimeError(msg)


def load_settings() -> Settings:
    """
    Build Settings from environment variables.

    MESSAGING_SECRET_NAME, SHOPIFY_SHOP and SHOPIFY_SECRET_NAME are required,
    and META_VERIFY_TOKEN is too when the provider is cloud_api; everything
    else has a default. Table names left unset select the
    in-process memory tables, which is only suitable for local runs.

    Raises RuntimeError with a clear message if something is missing/invalid.
    """
    missing = [
        name
        for name in ("MESSAGING_SECRET_NAME", "SHOPIFY_SHOP", "SHOPIFY_SECRET_NAME")
        if not os.getenv(name)
    ]
    if missing:
        msg = f"Missing required environment variables: {', '.join(missing)}"
        logger.error(msg)
        raise RuntimeError(msg)

    provider = os.getenv("MESSAGING_PROVIDER", "twilio").lower()
    if provider not in ("twilio", "cloud_api"):
        msg = f"Invalid MESSAGING_PROVIDER='{provider}'. Use 'twilio' or 'cloud_api'."
        logger.error(msg)
        raise RuntimeError(msg)

    verify_token = os.getenv("META_VERIFY_TOKEN", "")
    if provider == "cloud_api" and not verify_token:
        msg = "META_VERIFY_TOKEN is required when MESSAGING_PROVIDER=cloud_api"
        logger.error(msg)
        raise RuntimeError(msg)

    raw_sids = os.getenv("TWILIO_CONTENT_SIDS") or "{}"
    try:
        content_sids = json.loads(raw_sids)
    except json.JSONDecodeError:
        msg = "TWILIO_CONTENT_SIDS must be a JSON object of template name -> content SID"
        logger.error(msg)
        raise RuntimeError(msg)

    shop = os.environ["SHOPIFY_SHOP"]
    shop_url = f"https://{shop}"

    return Settings(
        messaging_secret_name=os.environ["MESSAGING_SECRET_NAME"],
        shopify_shop=shop,
        shopify_secret_name=os.environ["SHOPIFY_SECRET_NAME"],
        aws_region=os.getenv("AWS_REGION", "us-east-1"),
        default_country_code=os.getenv("DEFAULT_COUNTRY_CODE", "92"),
        store_name=os.getenv("STORE_NAME", "Our Store"),
        template_language=os.getenv("TEMPLATE_LANGUAGE", "en"),
        messaging_provider=provider,
        shopify_api_version=os.getenv("SHOPIFY_API_VERSION", "2023-10"),
        orders_table=os.getenv("ORDERS_TABLE") or None,
        checkouts_table=os.getenv("CHECKOUTS_TABLE") or None,
        correlation_table=os.getenv("CORRELATION_TABLE") or None,
        events_queue_url=os.getenv("EVENTS_QUEUE_URL") or None,
        order_reminder_seconds=_int_env("ORDER_REMINDER_SECONDS", 6 * 3600),
        checkout_reminder_seconds=_int_env("CHECKOUT_REMINDER_SECONDS", 3600),
        correlation_ttl_seconds=_int_env("CORRELATION_TTL_SECONDS", 30 * 86400),
        http_timeout_seconds=float(_int_env("HTTP_TIMEOUT_SECONDS", 10)),
        feedback_enabled=os.getenv("FEEDBACK_ENABLED", "true").lower() in _TRUTHY,
        feedback_url=os.getenv("FEEDBACK_URL") or f"{shop_url}/pages/feedback",
        default_checkout_url=os.getenv("DEFAULT_CHECKOUT_URL") or f"{shop_url}/cart",
        tracking_url_template=(
            os.getenv("TRACKING_URL_TEMPLATE")
            or f"{shop_url}/apps/track?tn={{tracking_number}}"
        ),
        courier_name=os.getenv("COURIER_NAME", "our courier"),
        redelivery_window=os.getenv("REDELIVERY_WINDOW", "10am-6pm"),
        meta_verify_token=verify_token,
        twilio_content_sids=content_sids,
    )
