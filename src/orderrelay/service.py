"""
Wiring: settings + secrets -> tables, provider, dispatcher, router.

Built once per Lambda container on first use and reused across
invocations, like the boto3 and Twilio clients it holds.
"""
from dataclasses import dataclass
from typing import Optional

import boto3

from orderrelay.commerce import ShopifyClient
from orderrelay.correlation import CorrelationIndex
from orderrelay.dispatcher import Dispatcher
from orderrelay.router import EventRouter
from orderrelay.store import CheckoutStore, OrderStore
from orderrelay.utils.cloud_api import CloudApiProvider
from orderrelay.utils.config import Settings, load_settings
from orderrelay.utils.logger import get_logger
from orderrelay.utils.secrets import get_secret
from orderrelay.utils.tables import DynamoTable, MemoryTable, Table
from orderrelay.utils.twilio_client import TwilioWhatsAppProvider, build_client

logger = get_logger("service")


@dataclass
class Service:
    settings: Settings
    router: EventRouter
    correlation: CorrelationIndex
    dispatcher: Dispatcher
    shopify_webhook_secret: Optional[str] = None
    twilio_auth_token: Optional[str] = None
    meta_app_secret: Optional[str] = None


def _table(name: Optional[str], client) -> Table:
    if name:
        return DynamoTable(name, client=client)
    logger.warning("service.memory_table", extra={"reason": "table name not configured"})
    return MemoryTable()


def build_provider(settings: Settings, secret: dict):
    if settings.messaging_provider == "cloud_api":
        return CloudApiProvider.from_secret(secret, timeout=settings.http_timeout_seconds)
    client, conf = build_client(secret, timeout=settings.http_timeout_seconds)
    return TwilioWhatsAppProvider(client, conf["messaging_service_sid"], settings.twilio_content_sids)


def build_service(settings: Optional[Settings] = None) -> Service:
    settings = settings or load_settings()

    dynamodb = None
    if settings.orders_table or settings.checkouts_table or settings.correlation_table:
        dynamodb = boto3.client("dynamodb", region_name=settings.aws_region)

    correlation = CorrelationIndex(
        _table(settings.correlation_table, dynamodb), ttl_secs=settings.correlation_ttl_seconds
    )
    messaging_secret = get_secret(settings.messaging_secret_name, settings.aws_region)
    provider = build_provider(settings, messaging_secret)
    dispatcher = Dispatcher(provider, correlation, settings.template_language)

    shopify_secret = get_secret(settings.shopify_secret_name, settings.aws_region)
    commerce = None
    if shopify_secret.get("access_token"):
        commerce = ShopifyClient(
            settings.shopify_shop,
            shopify_secret["access_token"],
            api_version=settings.shopify_api_version,
            timeout=settings.http_timeout_seconds,
        )
    else:
        logger.warning("service.no_shopify_token", extra={"effect": "order notes disabled"})

    router = EventRouter(
        OrderStore(_table(settings.orders_table, dynamodb)),
        CheckoutStore(_table(settings.checkouts_table, dynamodb)),
        correlation,
        dispatcher,
        settings,
        commerce=commerce,
    )
    logger.info(
        "service.ready",
        extra={"provider": settings.messaging_provider, "queue": bool(settings.events_queue_url)},
    )
    return Service(
        settings=settings,
        router=router,
        correlation=correlation,
        dispatcher=dispatcher,
        shopify_webhook_secret=shopify_secret.get("webhook_secret"),
        twilio_auth_token=(
            messaging_secret.get("auth_token") if settings.messaging_provider == "twilio" else None
        ),
        meta_app_secret=(
            messaging_secret.get("app_secret") if settings.messaging_provider == "cloud_api" else None
        ),
    )


_service: Optional[Service] = None


def get_service() -> Service:
    global _service
    if _service is None:
        _service = build_service()
    return _service


def set_service(service: Optional[Service]) -> None:
    """Replace the cached service (tests, local runs)."""
    global _service
    _service = service
