import hmac
import hashlib
import json
import time
from fastapi import HTTPException, Header
from typing import Optional

from wager_client.config import settings


def compute_signature(body: dict, timestamp: str, secret: Optional[str] = None) -> str:
    message = f"{timestamp}:{json.dumps(body, sort_keys=True)}".encode()
    key = (secret or settings.hmac_secret).encode()
    return hmac.new(key, message, hashlib.sha256).hexdigest()


def signed_headers(body: dict, secret: Optional[str] = None) -> dict:
    timestamp = str(int(time.time()))
    return {
        "X-Signature": compute_signature(body, timestamp, secret),
        "X-Timestamp": timestamp,
    }


def signature_is_valid(body: dict, signature: str, timestamp: str, max_skew_seconds: int = 30) -> bool:
    try:
        skew = abs(int(time.time()) - int(timestamp))
    except ValueError:
        return False
    if skew > max_skew_seconds:
        return False
    return hmac.compare_digest(compute_signature(body, timestamp), signature)


def require_bearer_token(authorization: str | None = Header(None, alias="Authorization")):
    """
    FastAPI dependency to enforce Authorization: Bearer <token> on admin routes when configured.
    """
    if not settings.bearer_token:
        return
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Unauthorized")
    token = authorization.split(" ", 1)[1].strip()
    if not hmac.compare_digest(token, settings.bearer_token):
        raise HTTPException(status_code=401, detail="Unauthorized")
