import base64
import hashlib
import hmac

import pytest
from fastapi import HTTPException

from taskrelay.auth.security import (
    compute_webhook_signature,
    decode_webhook_secret,
    get_current_owner,
    parse_signature_header,
    verify_webhook_signature,
)
from taskrelay.domain.errors import WebhookSignatureError

SECRET = "whsec_" + base64.b64encode(b"0123456789abcdef").decode()
BODY = b'{"event":"new-meeting-content-ready"}'
NOW = 1_760_000_000

def headers_for(signature, webhook_id="msg_1", timestamp=NOW):
    return {
        "webhook-id": webhook_id,
        "webhook-timestamp": str(timestamp),
        "webhook-signature": signature,
    }

def test_whsec_secret_is_base64_decoded():
    assert decode_webhook_secret(SECRET) == b"0123456789abcdef"

def test_url_safe_and_unpadded_secret_is_decoded():
    raw = b"\xfb\xff\xfe-key"
    encoded = base64.urlsafe_b64encode(raw).decode().rstrip("=")
    assert decode_webhook_secret("whsec_" + encoded) == raw

def test_plain_secret_is_used_verbatim():
    assert decode_webhook_secret("shared-secret") == b"shared-secret"

def test_signature_matches_standard_webhooks_scheme():
    expected = base64.b64encode(
        hmac.new(b"0123456789abcdef", b"msg_1.%d." % NOW + BODY, hashlib.sha256).digest()
    ).decode()
    assert compute_webhook_signature(SECRET, "msg_1", str(NOW), BODY) == expected

def test_signature_header_may_carry_several_versions():
    assert parse_signature_header("v1,abc v1a,def  bogus v1,ghi") == ["abc", "def", "ghi"]

def test_any_matching_signature_is_accepted():
    good = compute_webhook_signature(SECRET, "msg_1", str(NOW), BODY)
    verify_webhook_signature(BODY, headers_for(f"v1,bad= v1,{good}"), SECRET, now=NOW)

@pytest.mark.parametrize(
    "headers",
    [
        headers_for("v1,AAAA"),
        {"webhook-timestamp": str(NOW), "webhook-signature": "v1,AAAA"},
        {"webhook-id": "msg_1", "webhook-signature": "v1,AAAA"},
        {"webhook-id": "msg_1", "webhook-timestamp": str(NOW)},
        headers_for("v1,AAAA", timestamp="yesterday"),
    ],
)
def test_invalid_deliveries_are_rejected(headers):
    with pytest.raises(WebhookSignatureError):
        verify_webhook_signature(BODY, headers, SECRET, now=NOW)

def test_timestamp_outside_tolerance_is_rejected():
    old = NOW - 301
    good = compute_webhook_signature(SECRET, "msg_1", str(old), BODY)
    with pytest.raises(WebhookSignatureError):
        verify_webhook_signature(BODY, headers_for(f"v1,{good}", timestamp=old), SECRET, tolerance_seconds=300, now=NOW)

def test_missing_secret_is_rejected():
    good = compute_webhook_signature(SECRET, "msg_1", str(NOW), BODY)
    with pytest.raises(WebhookSignatureError):
        verify_webhook_signature(BODY, headers_for(f"v1,{good}"), None, now=NOW)

async def test_owner_header_is_required():
    with pytest.raises(HTTPException) as exc:
        await get_current_owner(None)
    assert exc.value.status_code == 401
    assert await get_current_owner(" owner-1 ") == "owner-1"
