import json

from orderrelay import __version__
from orderrelay.utils.logger import get_logger

logger = get_logger("health")


def lambda_handler(event, context):
    http = (event or {}).get("requestContext", {}).get("http", {})
    logger.info("health.check", extra={"path": http.get("path", "/health"), "method": http.get("method", "GET")})
    return {
        "statusCode": 200,
        "headers": {"Content-Type": "application/json"},
        "body": json.dumps({"status": "ok", "version": __version__}),
    }
