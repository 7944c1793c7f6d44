import json

from app.utils.webhook_signature import compute_signature, verify_webhook_signature

SECRET = "smartflo-shared-secret"
PAYLOAD = {"call_id": "1700000000.42", "call_status": "answered", "caller_number": "9999999999"}


def _compact(payload):
    return json.dumps(payload, separators=(",", ":")).encode()


def test_no_secret_skips_verification():
    assert verify_webhook_signature(b"{}", None, None) is True
    assert verify_webhook_signature(b"{}", "garbage", "") is True


def test_missing_signature_fails_when_secret_set():
    assert verify_webhook_signature(_compact(PAYLOAD), None, SECRET) is False
    assert verify_webhook_signature(_compact(PAYLOAD), "", SECRET) is False


def test_signature_with_and_without_prefix():
    body = _compact(PAYLOAD)
    digest = compute_signature(body, SECRET)
    assert verify_webhook_signature(body, digest, SECRET) is True
    assert verify_webhook_signature(body, f"sha256={digest}", SECRET) is True
    assert verify_webhook_signature(body, digest.upper(), SECRET) is True


def test_signature_over_a_different_serialization():
    raw = json.dumps(PAYLOAD).encode()  # default separators, as received
    pretty = json.dumps(PAYLOAD, indent=2).encode()
    assert verify_webhook_signature(raw, compute_signature(pretty, SECRET), SECRET) is True

    sorted_compact = json.dumps(PAYLOAD, separators=(",", ":"), sort_keys=True).encode()
    assert verify_webhook_signature(raw, compute_signature(sorted_compact, SECRET), SECRET) is True


def test_truncated_signature_prefix_verifies():
    body = _compact(PAYLOAD)
    digest = compute_signature(body, SECRET)
    assert verify_webhook_signature(body, digest[:16], SECRET) is True
    assert verify_webhook_signature(body, f"sha256={digest[:32]}", SECRET) is True


def test_too_short_signature_is_rejected():
    body = _compact(PAYLOAD)
    digest = compute_signature(body, SECRET)
    assert verify_webhook_signature(body, digest[:4], SECRET) is False


def test_wrong_secret_fails():
    body = _compact(PAYLOAD)
    assert verify_webhook_signature(body, compute_signature(body, "other-secret"), SECRET) is False


def test_tampered_body_fails():
    body = _compact(PAYLOAD)
    digest = compute_signature(body, SECRET)
    tampered = _compact({**PAYLOAD, "call_status": "completed"})
    assert verify_webhook_signature(tampered, digest, SECRET) is False


def test_non_hex_signature_is_rejected_without_error():
    body = _compact(PAYLOAD)
    assert verify_webhook_signature(body, "\xe9" * 64, SECRET) is False
    assert verify_webhook_signature(body, "sha256=" + "z" * 64, SECRET) is False
