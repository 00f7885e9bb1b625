import hashlib
import hmac

from fastapi import HTTPException, status

from enrollment_bridge.core.config import settings


def compute_medusa_signature(payload_bytes: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), payload_bytes, hashlib.sha256).hexdigest()


def verify_medusa_signature(*, payload_bytes: bytes, signature_header: str | None) -> None:
    if not settings.medusa_webhook_secret:
        return
    if not signature_header:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing webhook signature")

    expected = compute_medusa_signature(payload_bytes, settings.medusa_webhook_secret)
    if not hmac.compare_digest(expected, signature_header.strip().lower()):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook signature")
