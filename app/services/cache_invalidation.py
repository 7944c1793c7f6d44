# app/services/cache_invalidation.py
# Targeted cache invalidation after a call log or lead changed

import logging
from typing import Any, Dict, Optional

from .cache_service import CacheStore, call_details_key

logger = logging.getLogger(__name__)

def invalidate_after_call_update(
    cache: Optional[CacheStore],
    call_log: Dict[str, Any],
    lead: Optional[Dict[str, Any]] = None,
) -> int:
    """
    Drop the cached views a reconciled call can appear in: the call detail,
    call lists/stats of the agent and of the lead owner, and the owner's lead lists.
    Invalidation failures are logged and swallowed - a stale read expires by TTL.
    """
    if cache is None:
        return 0

    try:
        removed = cache.delete(call_details_key(call_log.get("_id")))

        owners = {str(call_log["user_id"])} if call_log.get("user_id") else set()
        if lead and lead.get("created_by"):
            owners.add(str(lead["created_by"]))

        if not owners:
            # No owner known - fall back to the whole call domain
            removed += cache.smart_invalidate("calls")
        for owner_id in owners:
            removed += cache.smart_invalidate("calls", owner_id)
            removed += cache.smart_invalidate("entries", owner_id)

        logger.debug(f"Invalidated {removed} cache keys for call log {call_log.get('_id')}")
        return removed
    except Exception as e:
        logger.error(f"Cache invalidation failed for call log {call_log.get('_id')}: {e}", exc_info=True)
        return 0
