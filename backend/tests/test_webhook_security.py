"""Tests for Svix-style webhook signature verification."""

import base64
import hashlib
import hmac

import pytest

from artspace.webhook_security import (
    WebhookSignatureError,
    compute_svix_signature,
    extract_svix_signing_key,
    verify_svix_webhook,
    verify_timestamp,
)

SECRET = "whsec_dGVzdC13ZWJob29rLXNpZ25pbmcta2V5"
NOW = 1_760_000_000
PAYLOAD = b'{"type":"email.delivered","data":{"email_id":"em_1"}}'


def _sign(message_id: str, timestamp: int, payload: bytes, key: bytes = b"test-webhook-signing-key") -> str:
    signed = f"{message_id}.{timestamp}.".encode() + payload
    return base64.b64encode(hmac.new(key, signed, hashlib.sha256).digest()).decode()


def _headers(signature: str, timestamp: int = NOW, message_id: str = "msg_1") -> dict:
    return {
        "svix-id": message_id,
        "svix-timestamp": str(timestamp),
        "svix-signature": signature,
    }


class TestSigningKey:
    def test_prefixed_secret_is_base64_decoded(self):
        assert extract_svix_signing_key(SECRET) == b"test-webhook-signing-key"

    def test_plain_secret_is_used_as_is(self):
        assert extract_svix_signing_key("not base64!") == b"not base64!"

    def test_signature_matches_reference_hmac(self):
        assert compute_svix_signature(SECRET, "msg_1", str(NOW), PAYLOAD) == _sign("msg_1", NOW, PAYLOAD)


class TestVerifyTimestamp:
    def test_recent_timestamp_is_accepted(self):
        assert verify_timestamp(str(NOW - 60), now=NOW)

    @pytest.mark.parametrize("timestamp", [None, "", "yesterday", str(NOW - 301), str(NOW + 301)])
    def test_bad_or_stale_timestamps_are_rejected(self, timestamp):
        assert not verify_timestamp(timestamp, now=NOW)


class TestVerifySvixWebhook:
    def test_valid_signature_passes(self):
        headers = _headers(f"v1,{_sign('msg_1', NOW, PAYLOAD)}")
        verify_svix_webhook(headers, PAYLOAD, SECRET, now=NOW)

    def test_any_listed_signature_may_match(self):
        headers = _headers(f"v1,bm90LWl0 v1,{_sign('msg_1', NOW, PAYLOAD)}")
        verify_svix_webhook(headers, PAYLOAD, SECRET, now=NOW)

    def test_standard_webhook_header_names_are_accepted(self):
        headers = {
            "webhook-id": "msg_1",
            "webhook-timestamp": str(NOW),
            "webhook-signature": f"v1,{_sign('msg_1', NOW, PAYLOAD)}",
        }
        verify_svix_webhook(headers, PAYLOAD, SECRET, now=NOW)

    def test_tampered_payload_fails(self):
        headers = _headers(f"v1,{_sign('msg_1', NOW, PAYLOAD)}")
        with pytest.raises(WebhookSignatureError, match="Invalid webhook signature"):
            verify_svix_webhook(headers, PAYLOAD + b" ", SECRET, now=NOW)

    def test_wrong_secret_fails(self):
        headers = _headers(f"v1,{_sign('msg_1', NOW, PAYLOAD, key=b'another-key')}")
        with pytest.raises(WebhookSignatureError):
            verify_svix_webhook(headers, PAYLOAD, SECRET, now=NOW)

    def test_unknown_version_is_ignored(self):
        headers = _headers(f"v2,{_sign('msg_1', NOW, PAYLOAD)}")
        with pytest.raises(WebhookSignatureError):
            verify_svix_webhook(headers, PAYLOAD, SECRET, now=NOW)

    def test_missing_headers_fail(self):
        with pytest.raises(WebhookSignatureError, match="Missing"):
            verify_svix_webhook({"svix-id": "msg_1"}, PAYLOAD, SECRET, now=NOW)

    def test_replayed_delivery_fails(self):
        old = NOW - 3600
        headers = _headers(f"v1,{_sign('msg_1', old, PAYLOAD)}", timestamp=old)
        with pytest.raises(WebhookSignatureError, match="timestamp"):
            verify_svix_webhook(headers, PAYLOAD, SECRET, now=NOW)
