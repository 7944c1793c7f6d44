# app/utils/call_status.py
# Maps Smartflo event/status vocabulary onto the canonical CallStatus enum

import logging
from typing import Optional

from ..models.call_log import CallStatus

logger = logging.getLogger(__name__)

STATUS_SYNONYMS = {
    CallStatus.INITIATED: ["initiated", "initiate", "init", "new", "queued", "originate", "dialing", "start", "started"],
    CallStatus.RINGING: ["ringing", "ring", "alerting", "in_progress", "progress", "early"],
    CallStatus.ANSWERED: ["answered", "answer", "pickup", "picked", "connected", "connect", "bridged", "talking", "in_call"],
    CallStatus.COMPLETED: ["completed", "complete", "hangup", "hang_up", "end", "ended", "finished", "disconnected", "success"],
    CallStatus.FAILED: ["failed", "fail", "reject", "rejected", "declined", "unreachable", "error", "congestion", "invalid"],
    CallStatus.NO_ANSWER: ["no_answer", "noanswer", "not_answered", "unanswered", "timeout", "missed", "no_response"],
    CallStatus.BUSY: ["busy", "user_busy"],
    CallStatus.CANCELLED: ["cancelled", "canceled", "cancel", "abandoned", "aborted"],
}

_STATUS_LOOKUP = {
    synonym: status
    for status, synonyms in STATUS_SYNONYMS.items()
    for synonym in synonyms
}

def _canonical_key(raw_status: str) -> str:
    key = raw_status.strip().lower()
    # "call.completed", "call_completed", "Call Completed", "no-answer"
    for prefix in ("call.", "call_", "call "):
        if key.startswith(prefix):
            key = key[len(prefix):]
            break
    return key.replace("-", "_").replace(" ", "_")

def normalize_call_status(raw_status: Optional[str]) -> CallStatus:
    """
    Total mapping from provider status/event strings to CallStatus.
    Unrecognized values fall back to INITIATED and are logged.
    """
    if raw_status is None:
        return CallStatus.INITIATED

    key = _canonical_key(str(raw_status))
    status = _STATUS_LOOKUP.get(key)
    if status is None:
        logger.warning(f"Unknown Smartflo call status '{raw_status}', treating as initiated")
        return CallStatus.INITIATED
    return status
