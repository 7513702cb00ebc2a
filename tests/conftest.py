import json
import os

import pytest

from orderrelay.correlation import CorrelationIndex
from orderrelay.dispatcher import Delivered, DeliveryFailed, Dispatcher
from orderrelay.router import EventRouter
from orderrelay.store import CheckoutStore, OrderStore
from orderrelay.utils.config import Settings
from orderrelay.utils.tables import MemoryTable

T0 = 1_700_000_000


class FakeClock:
    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class StubProvider:
    """Records every send; set ``fail`` to make sends come back as DeliveryFailed."""

    def __init__(self):
        self.templates = []
        self.texts = []
        self.fail = False
        self._n = 0

    def _result(self):
        if self.fail:
            return DeliveryFailed(503, "provider down")
        self._n += 1
        return Delivered(f"wamid.{self._n}")

    def send_template(self, request):
        self.templates.append(request)
        return self._result()

    def send_text(self, recipient, body):
        self.texts.append((recipient, body))
        return self._result()

    def names(self):
        return [r.template_name for r in self.templates]


class StubCommerce:
    def __init__(self):
        self.notes = []

    def annotate_order(self, order_ref, note):
        self.notes.append((order_ref, note))


def make_settings(**overrides):
    values = dict(
        messaging_secret_name="orderrelay/messaging",
        shopify_shop="shop.example.com",
        shopify_secret_name="orderrelay/shopify",
        store_name="StoreName",
        feedback_url="https://shop.example.com/pages/feedback",
        default_checkout_url="https://shop.example.com/cart",
        tracking_url_template="https://shop.example.com/apps/track?tn={tracking_number}",
    )
    values.update(overrides)
    return Settings(**values)


EVENTS_DIR = os.path.join(os.path.dirname(__file__), "events")


def load_event(name):
    with open(os.path.join(EVENTS_DIR, name), "r", encoding="utf-8") as f:
        return json.load(f)


class RelayHarness:
    """
    Router wired to memory tables, a stub provider and a fake clock.

    ``sibling()`` builds a second router over the same tables, standing in
    for another Lambda container: shared storage, nothing else shared.
    """

    def __init__(self, shared=None, **settings):
        self.clock = shared.clock if shared else FakeClock()
        self.settings = make_settings(**settings)
        self.provider = StubProvider()
        self.commerce = StubCommerce()
        self.orders = OrderStore(shared.orders.table if shared else MemoryTable())
        self.checkouts = CheckoutStore(shared.checkouts.table if shared else MemoryTable())
        self.correlation = CorrelationIndex(
            shared.correlation.table if shared else MemoryTable(), clock=self.clock
        )
        self.dispatcher = Dispatcher(self.provider, self.correlation)
        self.router = EventRouter(
            self.orders,
            self.checkouts,
            self.correlation,
            self.dispatcher,
            self.settings,
            commerce=self.commerce,
            clock=self.clock,
        )

    def order(self, ref="1001"):
        return self.orders.get(ref)

    def sibling(self):
        return RelayHarness(shared=self)


@pytest.fixture
def relay():
    return RelayHarness()
