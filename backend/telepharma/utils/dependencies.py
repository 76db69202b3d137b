# /telepharma/utils/dependencies.py

import hmac
import hashlib
import structlog
from fastapi import Request, HTTPException

from telepharma.config.settings import settings
from telepharma.utils.metrics import webhook_signature_counter
from telepharma.utils.request_utils import get_remote_address

log = structlog.get_logger(__name__)


def is_valid_signature(payload: bytes, signature: str, secret: str) -> bool:
    """Checks a Meta ``X-Hub-Signature-256`` header (``sha256=<hex hmac>``) against the raw body."""
    if not secret or not signature or not signature.startswith("sha256="):
        return False
    expected_signature = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected_signature, signature[7:])


async def verify_webhook_signature(request: Request) -> bytes:
    body = await request.body()
    signature = request.headers.get("x-hub-signature-256", "")
    if not is_valid_signature(body, signature, settings.whatsapp_app_secret):
        webhook_signature_counter.labels(status="invalid").inc()
        log.error("Invalid webhook signature.", client_ip=get_remote_address(request), signature=signature[:50])
        raise HTTPException(status_code=403, detail="Invalid signature")
    webhook_signature_counter.labels(status="valid").inc()
    return body
