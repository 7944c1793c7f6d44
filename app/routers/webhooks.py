# app/routers/webhooks.py
# Smartflo (Tata Tele) webhook receivers.
# The provider retries on anything but 200, so every outcome except a rejected
# signature in strict mode or a blocked address is acknowledged with 200.

import hmac
import json
import logging
from typing import Any, Dict, Optional
from urllib.parse import parse_qsl

from fastapi import APIRouter, Depends, HTTPException, Request, status

from ..config.settings import get_settings
from ..models.call_log import CallDirection, WebhookAck
from ..services.call_log_service import CallLogService
from ..utils.dependencies import get_call_log_service
from ..utils.webhook_signature import verify_webhook_signature

logger = logging.getLogger(__name__)

router = APIRouter()

SIGNATURE_HEADERS = ("x-smartflo-signature", "x-tata-signature", "x-webhook-signature")
SECRET_HEADERS = ("x-smartflo-secret", "x-tata-secret", "x-webhook-secret")

def _first_header(request: Request, names) -> Optional[str]:
    for name in names:
        value = request.headers.get(name)
        if value:
            return value
    return None

def _client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None

def _parse_body(raw: bytes) -> Optional[Dict[str, Any]]:
    """JSON object bodies, with form-encoded bodies as a fallback"""
    if not raw:
        return None
    text = raw.decode("utf-8", errors="replace")
    try:
        payload = json.loads(text)
        return payload if isinstance(payload, dict) else None
    except ValueError:
        pairs = parse_qsl(text, keep_blank_values=True)
        return dict(pairs) if pairs else None

def signature_is_valid(request: Request, raw: bytes, payload: Dict[str, Any]) -> bool:
    """Accepts an HMAC in a -signature header, or the shared secret (or an HMAC) in a -secret header"""
    secret = get_settings().tata_webhook_secret
    if not secret:
        return True

    signature = _first_header(request, SIGNATURE_HEADERS)
    if signature and verify_webhook_signature(raw, signature, secret, payload):
        return True

    secret_header = _first_header(request, SECRET_HEADERS)
    if secret_header:
        if hmac.compare_digest(secret_header.strip().encode(), secret.encode()):
            return True
        if verify_webhook_signature(raw, secret_header, secret, payload):
            return True
    return False

def _check_source_ip(request: Request) -> None:
    allowed = get_settings().get_webhook_allowed_ips()
    if not allowed:
        return
    client_ip = _client_ip(request)
    if client_ip not in allowed:
        logger.warning(f"🚫 Webhook from non allow-listed address {client_ip} rejected")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Source address not allowed")

async def _handle_webhook(
    request: Request,
    call_log_service: CallLogService,
    direction_hint: Optional[CallDirection] = None,
) -> WebhookAck:
    _check_source_ip(request)

    try:
        raw = await request.body()
        payload = _parse_body(raw)
        if payload is None:
            logger.error(f"Unparseable Smartflo webhook body: {raw[:500]!r}")
            return WebhookAck(success=False, message="Webhook received but body is not a JSON object", error="Invalid JSON")

        logger.info(f"📥 Smartflo webhook received: {json.dumps(payload, default=str)}")

        if not signature_is_valid(request, raw, payload):
            if get_settings().tata_webhook_strict_signature:
                logger.warning("🔐 Invalid webhook signature, rejected (strict mode)")
                raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook signature")
            logger.warning("🔐 Invalid webhook signature, processing anyway (permissive mode)")

        return await call_log_service.process_webhook(payload, direction_hint)

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"❌ Webhook handling failed: {e}", exc_info=True)
        return WebhookAck(success=False, message="Webhook received but processing failed", error=str(e))

@router.post("/call-events", response_model=WebhookAck, response_model_exclude_none=True)
async def receive_call_event(
    request: Request,
    call_log_service: CallLogService = Depends(get_call_log_service),
):
    """Call lifecycle events for every call, direction resolved from the payload"""
    return await _handle_webhook(request, call_log_service)

@router.post("/inbound", response_model=WebhookAck, response_model_exclude_none=True)
async def receive_inbound_call(
    request: Request,
    call_log_service: CallLogService = Depends(get_call_log_service),
):
    """Events from the inbound (virtual number) webhook configuration"""
    return await _handle_webhook(request, call_log_service, CallDirection.INBOUND)

@router.post("/debug")
async def debug_webhook(request: Request):
    """Echo a webhook back without processing it, for onboarding new webhook configurations"""
    _check_source_ip(request)
    raw = await request.body()
    payload = _parse_body(raw)
    logger.info(f"🐞 Debug webhook: headers={dict(request.headers)} body={raw[:2000]!r}")
    return {
        "success": True,
        "message": "Debug webhook received",
        "payload": payload,
        "signature_valid": signature_is_valid(request, raw, payload or {}),
        "headers": {k: v for k, v in request.headers.items() if k.lower() != "authorization"},
    }
