"""
Order Relay Utilities
=====================

Shared helper modules:

- logger.py          → structured JSON logging
- config.py          → environment settings
- secrets.py         → AWS Secrets Manager integration
- twilio_client.py   → Twilio WhatsApp provider
- cloud_api.py       → WhatsApp Cloud API provider
- tables.py          → DynamoDB and in-memory key/value tables
- locks.py           → per-key locks

Clients built here are reused across warm Lambda invocations.
"""
