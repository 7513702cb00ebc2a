"""
Exception types shared across the relay.

Delivery failures are not exceptions: the dispatcher returns a
``DeliveryFailed`` result and callers decide what to commit.
"""


class RelayError(Exception):
    """Base class for relay errors."""


class InputError(RelayError):
    """The event cannot be acted on (no usable phone, unknown order)."""


class StoreUnavailable(RelayError):
    """The persistence layer failed; nothing was committed, safe to redeliver."""


class AnnotationFailed(RelayError):
    """The storefront rejected or never answered an order-note update."""


class SignatureError(RelayError):
    """A webhook failed signature or verify-token validation."""


class TemplateError(ValueError):
    """Unknown template or a parameter list that does not match the catalog."""
