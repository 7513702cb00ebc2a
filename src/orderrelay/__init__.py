"""
Order Relay
===========

Order-lifecycle WhatsApp notifications for a Shopify storefront, running on
AWS Lambda with SQS, DynamoDB and Secrets Manager. Storefront, courier and
messaging webhooks are normalized into events; a per-order state machine
decides which template message to send and records every transition.

Modules under this package:
- ingest.py      → HTTP webhooks (/webhook/shopify, /webhook/courier,
                   /webhook/whatsapp, /webhook/twilio)
- worker.py      → SQS consumer feeding the event router
- reminders.py   → scheduled sweep for unconfirmed orders and abandoned checkouts
- status.py      → messaging delivery-status callbacks
- health.py      → health and version check
- router.py      → order state machine
- utils/         → logging, config, secrets, provider clients, tables, locks

Environment variables expected:
  • AWS_REGION              - AWS region for all resources
  • MESSAGING_PROVIDER      - "twilio" or "cloud_api"
  • MESSAGING_SECRET_NAME   - Secrets Manager secret with provider credentials
  • SHOPIFY_SHOP            - <shop>.myshopify.com
  • SHOPIFY_SECRET_NAME     - secret with access_token and webhook_secret
  • ORDERS_TABLE            - DynamoDB table for order records
  • CHECKOUTS_TABLE         - DynamoDB table for abandoned checkouts
  • CORRELATION_TABLE       - DynamoDB table for reply correlation
  • EVENTS_QUEUE_URL        - SQS queue between ingest and worker (optional)
  • LOG_LEVEL               - Log verbosity (default: INFO)

See utils/config.py for the full list and defaults.
"""

__version__ = "1.0.0"
__author__ = "Order Relay Engineering"
__license__ = "MIT"

__all__ = ["__version__", "__author__"]
