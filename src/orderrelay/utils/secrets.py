import json
from typing import Any, Dict

import boto3

from orderrelay.utils.logger import get_logger

logger = get_logger("secrets")


def get_secret(secret_name: str, region_name: str = "us-east-1") -> Dict[str, Any]:
    """
    Fetch a JSON credentials object from AWS Secrets Manager.

    Messaging secrets look like one of:

        {"account_sid": "...", "auth_token": "...", "messaging_service_sid": "MG..."}
        {"access_token": "...", "phone_number_id": "..."}

    and the storefront secret like:

        {"access_token": "shpat_...", "webhook_secret": "..."}
    """
    logger.info(
        "secrets.fetch",
        extra={"secret_name": secret_name, "region": region_name},
    )

    client = boto3.client("secretsmanager", region_name=region_name)

    resp = client.get_secret_value(SecretId=secret_name)
    secret_str = resp.get("SecretString")

    if not secret_str:
        msg = f"Secret '{secret_name}' has no SecretString payload"
        logger.error(msg)
        raise RuntimeError(msg)

    try:
        data = json.loads(secret_str)
    except json.JSONDecodeError as e:
        logger.error(
            "secrets.invalid_json",
            extra={"secret_name": secret_name, "error": str(e)},
        )
        raise

    if not isinstance(data, dict):
        msg = f"Secret '{secret_name}' must be a JSON object"
        logger.error(msg)
        raise RuntimeError(msg)

    return data


def require_fields(secret: Dict[str, Any], *fields: str, label: str = "secret") -> None:
    missing = [name for name in fields if not secret.get(name)]
    if missing:
        logger.error("secrets.missing_fields", extra={"label": label, "missing": missing})
        raise RuntimeError(f"Missing {label} fields: {', '.join(missing)}")
