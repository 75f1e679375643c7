import base64
import binascii
import hashlib
import hmac
import logging
import time
from dataclasses import dataclass
from typing import Mapping, Optional

from fastapi import Security, HTTPException, Request, Query
from fastapi.security import APIKeyHeader
from sqlalchemy import select

from taskrelay.api.deps import DbSession
from taskrelay.db.models import WebhookEndpoint
from taskrelay.domain.errors import WebhookSignatureError
from taskrelay.api.v1.metrics import WEBHOOK_REQUESTS_TOTAL
from taskrelay.settings import settings

logger = logging.getLogger(__name__)

# Set by the upstream authentication layer once the session is verified
OWNER_HEADER = APIKeyHeader(name="X-Owner-ID", auto_error=False)

async def get_current_owner(owner_id: str = Security(OWNER_HEADER)) -> str:
    if not owner_id or not owner_id.strip():
        raise HTTPException(status_code=401, detail="Unauthorized")
    return owner_id.strip()

# --- Webhook signatures (Standard Webhooks scheme) ---

def decode_webhook_secret(secret: str) -> bytes:
    """whsec_-prefixed secrets carry base64 key bytes; anything else is used as-is."""
    if not secret.startswith("whsec_"):
        return secret.encode("utf-8")
    encoded = secret[len("whsec_"):].replace("-", "+").replace("_", "/")
    encoded += "=" * (-len(encoded) % 4)
    try:
        return base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError):
        return secret.encode("utf-8")

def parse_signature_header(value: str) -> list[str]:
    signatures = []
    for chunk in value.strip().split():
        version, sep, signature = chunk.partition(",")
        if sep and signature:
            signatures.append(signature)
    return signatures

def compute_webhook_signature(secret: str, webhook_id: str, timestamp: str, body: bytes) -> str:
    signed = f"{webhook_id}.{timestamp}.".encode("utf-8") + body
    digest = hmac.new(decode_webhook_secret(secret), signed, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")

def verify_webhook_signature(
    body: bytes,
    headers: Mapping[str, str],
    secret: Optional[str],
    tolerance_seconds: int = 300,
    now: Optional[float] = None,
) -> None:
    """Raises WebhookSignatureError unless one of the v1 signatures matches."""
    if not secret:
        raise WebhookSignatureError("No webhook secret configured")

    webhook_id = headers.get("webhook-id")
    timestamp = headers.get("webhook-timestamp")
    signature_header = headers.get("webhook-signature")
    if not webhook_id or not timestamp or not signature_header:
        raise WebhookSignatureError("Missing webhook signature headers")

    try:
        sent_at = int(timestamp)
    except ValueError:
        raise WebhookSignatureError("Invalid webhook timestamp") from None
    now = time.time() if now is None else now
    if abs(now - sent_at) > tolerance_seconds:
        raise WebhookSignatureError("Webhook timestamp outside tolerance")

    expected = compute_webhook_signature(secret, webhook_id, timestamp, body).encode("ascii")
    for candidate in parse_signature_header(signature_header):
        if hmac.compare_digest(expected, candidate.encode("ascii", errors="replace")):
            return
    raise WebhookSignatureError("Invalid webhook signature")

@dataclass
class VerifiedWebhook:
    owner_id: str
    provider: str
    body: bytes

class WebhookVerifier:
    """Resolves the endpoint from ?token= and checks the delivery's signature."""

    def __init__(self, provider: str):
        self.provider = provider

    async def __call__(self, request: Request, session: DbSession, token: Optional[str] = Query(None)) -> VerifiedWebhook:
        if not token:
            WEBHOOK_REQUESTS_TOTAL.labels(provider=self.provider, outcome="rejected").inc()
            raise HTTPException(status_code=400, detail="Missing webhook token.")

        stmt = select(WebhookEndpoint).where(
            WebhookEndpoint.token == token,
            WebhookEndpoint.provider == self.provider,
        )
        endpoint = await session.scalar(stmt)
        if not endpoint:
            WEBHOOK_REQUESTS_TOTAL.labels(provider=self.provider, outcome="rejected").inc()
            raise HTTPException(status_code=404, detail="Unknown webhook token.")

        body = await request.body()
        try:
            verify_webhook_signature(
                body,
                request.headers,
                endpoint.secret or settings.WEBHOOK_SIGNING_SECRET,
                tolerance_seconds=settings.WEBHOOK_TOLERANCE_SECONDS,
            )
        except WebhookSignatureError as e:
            WEBHOOK_REQUESTS_TOTAL.labels(provider=self.provider, outcome="rejected").inc()
            logger.warning("Rejected %s webhook for owner=%s: %s", self.provider, endpoint.owner_id, e)
            raise HTTPException(status_code=401, detail="Invalid webhook signature.")

        return VerifiedWebhook(owner_id=endpoint.owner_id, provider=self.provider, body=body)
