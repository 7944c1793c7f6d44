# app/services/call_direction_service.py
# Decides inbound vs outbound and extracts call identity from Smartflo payloads.
#
# Direction is decided by an ordered list of named rules. Each rule returns a
# definite direction or None ("unknown"); the first definite verdict wins.

import hashlib
import json
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..models.call_log import CallDirection, ResolvedCall

logger = logging.getLogger(__name__)

UNKNOWN_PHONE = "Unknown"

# Field spellings seen across Smartflo webhook formats
CALL_ID_FIELDS = ["call_id", "id", "uuid", "call_uuid"]
CUSTOM_IDENTIFIER_FIELDS = ["custom_identifier", "customIdentifier", "custom_param"]
DIRECTION_FIELDS = ["direction", "call_direction", "call_type"]
EVENT_TYPE_FIELDS = ["event_type", "event", "type"]
INBOUND_FLAG_FIELDS = ["is_inbound", "inbound", "isInbound"]
VIRTUAL_NUMBER_FIELDS = ["virtual_number", "did_number", "did"]
CALLED_NUMBER_FIELDS = ["called_number", "call_to_number"]
AGENT_NUMBER_FIELDS = ["agent_number", "answered_agent_number"]
CALLER_FIELDS = ["caller_number", "caller_id_number", "call_from_number", "caller_id", "from_number"]
DESTINATION_FIELDS = ["destination_number", "customer_number", "call_to_number", "to_number"]

INBOUND_WORDS = ("inbound", "incoming")
OUTBOUND_WORDS = ("outbound", "outgoing", "click_to_call", "clicktocall")

def first_value(payload: Dict[str, Any], fields: List[str]) -> Optional[str]:
    """First non-empty value among several field spellings, as a stripped string"""
    for field in fields:
        value = payload.get(field)
        if value is None or isinstance(value, (dict, list, bool)):
            continue
        text = str(value).strip()
        if text:
            return text
    return None

def _word_verdict(text: Optional[str]) -> Optional[CallDirection]:
    if not text:
        return None
    lowered = text.lower()
    if any(word in lowered for word in INBOUND_WORDS):
        return CallDirection.INBOUND
    if any(word in lowered for word in OUTBOUND_WORDS):
        return CallDirection.OUTBOUND
    return None

# ============================================================================
# DIRECTION RULES
# ============================================================================

def explicit_direction_rule(payload: Dict[str, Any]) -> Optional[CallDirection]:
    """direction / call_direction / call_type fields"""
    for field in DIRECTION_FIELDS:
        verdict = _word_verdict(first_value(payload, [field]))
        if verdict:
            return verdict
    return None

def event_type_rule(payload: Dict[str, Any]) -> Optional[CallDirection]:
    """Substring match on the event type, e.g. ``call.inbound.answered``"""
    return _word_verdict(first_value(payload, EVENT_TYPE_FIELDS))

def inbound_flag_rule(payload: Dict[str, Any]) -> Optional[CallDirection]:
    """Boolean inbound flag; a false flag says nothing"""
    for field in INBOUND_FLAG_FIELDS:
        value = payload.get(field)
        if value is True or str(value).strip().lower() in ("true", "1", "yes"):
            return CallDirection.INBOUND
    return None

def caller_without_token_rule(payload: Dict[str, Any]) -> Optional[CallDirection]:
    """
    A caller plus a called number and no correlation token means inbound:
    calls we originate always carry the token we generated.
    """
    if first_value(payload, CUSTOM_IDENTIFIER_FIELDS):
        return CallDirection.OUTBOUND
    caller = first_value(payload, CALLER_FIELDS)
    called = first_value(payload, VIRTUAL_NUMBER_FIELDS + CALLED_NUMBER_FIELDS)
    if caller and called:
        return CallDirection.INBOUND
    return None

DirectionRule = Callable[[Dict[str, Any]], Optional[CallDirection]]

# Ordered: explicit signals first, inference last
DIRECTION_RULES: List[Tuple[str, DirectionRule, bool]] = [
    ("explicit_direction", explicit_direction_rule, True),
    ("event_type", event_type_rule, True),
    ("inbound_flag", inbound_flag_rule, True),
    ("caller_without_token", caller_without_token_rule, False),
]

def resolve_direction(
    payload: Dict[str, Any],
    rules: List[Tuple[str, DirectionRule, bool]] = None,
) -> Tuple[CallDirection, str, bool]:
    """Returns (direction, rule name, explicit?) - outbound when every rule abstains"""
    for name, rule, explicit in rules or DIRECTION_RULES:
        verdict = rule(payload)
        if verdict is not None:
            return verdict, name, explicit
    return CallDirection.OUTBOUND, "default", False

# ============================================================================
# IDENTITY
# ============================================================================

def payload_fingerprint(payload: Dict[str, Any]) -> str:
    canonical = json.dumps(payload, sort_keys=True, default=str, separators=(",", ":"))
    return hashlib.sha1(canonical.encode("utf-8")).hexdigest()

def synthesize_call_id(payload: Dict[str, Any]) -> str:
    """Placeholder id derived from the payload, so a redelivered event maps to the same record"""
    return f"SYN_{payload_fingerprint(payload)[:16]}"

def resolve_call(payload: Dict[str, Any], direction_hint: Optional[CallDirection] = None) -> ResolvedCall:
    """
    Resolve direction, call id, virtual number and counter-party phone.
    ``direction_hint`` is used by endpoints that only ever receive one direction.
    """
    if direction_hint is not None:
        direction, rule_name, explicit = direction_hint, "endpoint_hint", True
    else:
        direction, rule_name, explicit = resolve_direction(payload)

    call_id = first_value(payload, CALL_ID_FIELDS)
    synthesized = call_id is None
    if synthesized:
        call_id = synthesize_call_id(payload)
        logger.warning(f"Webhook without call id, using placeholder {call_id}")

    virtual_number = first_value(payload, VIRTUAL_NUMBER_FIELDS + CALLED_NUMBER_FIELDS + AGENT_NUMBER_FIELDS)

    if direction == CallDirection.INBOUND:
        counterparty = first_value(payload, CALLER_FIELDS)
    else:
        counterparty = first_value(payload, DESTINATION_FIELDS)

    if not counterparty:
        counterparty = UNKNOWN_PHONE
        logger.warning(f"No counter-party phone in {direction.value} webhook {call_id}, using sentinel")

    return ResolvedCall(
        direction=direction,
        call_id=call_id,
        call_id_synthesized=synthesized,
        virtual_number=virtual_number,
        counterparty_phone=counterparty,
        direction_rule=rule_name,
        direction_explicit=explicit,
    )
