# app/utils/correlation_token.py
# custom_identifier tokens attached to click-to-call requests and echoed back by Smartflo webhooks

import time
from typing import Dict, Optional

TOKEN_PREFIX = "CRM"

def build_correlation_token(lead_id: str, user_id: Optional[str] = None, timestamp_ms: Optional[int] = None) -> str:
    """CRM_<leadId>_<userId>_<epochMillis>, or CRM_<leadId>_<epochMillis> without a user"""
    timestamp_ms = timestamp_ms if timestamp_ms is not None else int(time.time() * 1000)
    parts = [TOKEN_PREFIX, str(lead_id)]
    if user_id:
        parts.append(str(user_id))
    parts.append(str(timestamp_ms))
    return "_".join(parts)

def parse_correlation_token(token: Optional[str]) -> Optional[Dict[str, Optional[str]]]:
    """
    Split a correlation token into lead id, user id and timestamp.
    Returns None for anything that is not one of our tokens.
    """
    if not token or not isinstance(token, str):
        return None
    parts = token.strip().split("_")
    if len(parts) not in (3, 4) or parts[0] != TOKEN_PREFIX or not parts[-1].isdigit():
        return None
    if not parts[1]:
        return None
    return {
        "lead_id": parts[1],
        "user_id": parts[2] if len(parts) == 4 and parts[2] else None,
        "timestamp": parts[-1],
    }
