# app/routers/call_logs.py
# Call history read API backed by the shared cache, plus cache maintenance and CDR sync

from fastapi import APIRouter, Depends, HTTPException, Query, status
from typing import Optional
from datetime import datetime
import hashlib
import json
import logging

from ..models.call_log import (
    CacheRefreshRequest, CallLogListResponse, CallLogResponse, CallStatsResponse, CdrSyncRequest,
)
from ..models.user import is_admin
from ..services.cache_service import CacheStore, cache_scope, call_details_key
from ..services.call_log_service import CallLogService
from ..services.tata_api_client import TataAPIError
from ..services.tata_call_service import TataCallService
from ..utils.dependencies import (
    get_admin_user, get_cache, get_call_log_service, get_current_user, get_tata_call_service,
)

logger = logging.getLogger(__name__)

router = APIRouter()

# Seconds; live views expire fast, a single call's detail rarely changes
HISTORY_TTL = 30
ACTIVE_TTL = 10
STATS_TTL = 60
DETAILS_TTL = 600

def _params_digest(**params) -> str:
    canonical = json.dumps(params, sort_keys=True, default=str)
    return hashlib.md5(canonical.encode()).hexdigest()[:12]

@router.get("", response_model=CallLogListResponse)
async def get_call_history(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    lead_id: Optional[str] = Query(None, description="Filter by lead ID"),
    user_id: Optional[str] = Query(None, description="Filter by user (Admin only)"),
    call_status: Optional[str] = Query(None, description="Filter by call status"),
    call_direction: Optional[str] = Query(None, description="inbound or outbound"),
    virtual_number: Optional[str] = Query(None, description="Filter by virtual number"),
    has_recording: Optional[bool] = Query(None),
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    current_user: dict = Depends(get_current_user),
    cache: CacheStore = Depends(get_cache),
    call_log_service: CallLogService = Depends(get_call_log_service),
):
    """
    Call history, newest first. Users see only their own calls, admins see all.
    """
    try:
        filters = {
            "lead_id": lead_id,
            "user_id": user_id if is_admin(current_user) else None,
            "call_status": call_status,
            "call_direction": call_direction,
            "virtual_number": virtual_number,
            "has_recording": has_recording,
            "date_from": date_from,
            "date_to": date_to,
        }
        cache_key = f"call_history_{cache_scope(current_user)}_{_params_digest(page=page, limit=limit, **filters)}"
        cached = cache.get(cache_key)
        if cached is not None:
            return cached

        result = await call_log_service.get_call_history(current_user, page=page, limit=limit, **filters)
        response = CallLogListResponse(
            data=[CallLogResponse.from_document(doc) for doc in result["calls"]],
            total=result["total"],
            page=result["page"],
            limit=result["limit"],
            pages=result["pages"],
        )
        cache.set(cache_key, response, HISTORY_TTL)
        return response

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error fetching call history: {str(e)}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Internal error fetching call history: {str(e)}"
        )

@router.get("/active")
async def get_active_calls(
    current_user: dict = Depends(get_current_user),
    cache: CacheStore = Depends(get_cache),
    call_log_service: CallLogService = Depends(get_call_log_service),
):
    """Calls still initiated, ringing or answered"""
    try:
        cache_key = f"active_calls_{cache_scope(current_user)}"
        cached = cache.get(cache_key)
        if cached is not None:
            return cached

        calls = await call_log_service.get_active_calls(current_user)
        response = {
            "success": True,
            "data": [CallLogResponse.from_document(doc) for doc in calls],
            "total": len(calls),
        }
        cache.set(cache_key, response, ACTIVE_TTL)
        return response

    except Exception as e:
        logger.error(f"Error fetching active calls: {str(e)}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Internal error fetching active calls: {str(e)}"
        )

@router.get("/stats", response_model=CallStatsResponse)
async def get_call_stats(
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    current_user: dict = Depends(get_current_user),
    cache: CacheStore = Depends(get_cache),
    call_log_service: CallLogService = Depends(get_call_log_service),
):
    try:
        cache_key = f"call_stats_{cache_scope(current_user)}_{_params_digest(date_from=date_from, date_to=date_to)}"
        cached = cache.get(cache_key)
        if cached is not None:
            return cached

        stats = await call_log_service.get_call_stats(current_user, date_from=date_from, date_to=date_to)
        response = CallStatsResponse(**stats)
        cache.set(cache_key, response, STATS_TTL)
        return response

    except Exception as e:
        logger.error(f"Error computing call stats: {str(e)}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Internal error computing call stats: {str(e)}"
        )

@router.get("/cache-stats")
async def get_cache_stats(
    current_user: dict = Depends(get_admin_user),
    cache: CacheStore = Depends(get_cache),
):
    return {"success": True, "cache": cache.get_stats()}

@router.post("/refresh-cache")
async def refresh_cache(
    refresh_request: CacheRefreshRequest,
    current_user: dict = Depends(get_current_user),
    cache: CacheStore = Depends(get_cache),
):
    """Drop cached views of one domain; non-admins can only drop their own"""
    if is_admin(current_user):
        owner_id = refresh_request.user_id
    else:
        if refresh_request.data_type == "all":
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Not enough permissions. Admin access required."
            )
        owner_id = current_user["_id"]

    removed = cache.smart_invalidate(refresh_request.data_type, owner_id)
    logger.info(f"Cache refresh by {current_user.get('email')}: {refresh_request.data_type} ({owner_id or 'all'}) -> {removed} keys")
    return {"success": True, "removed": removed, "data_type": refresh_request.data_type}

@router.post("/sync-cdr")
async def sync_cdr(
    sync_request: CdrSyncRequest,
    current_user: dict = Depends(get_admin_user),
    tata_call_service: TataCallService = Depends(get_tata_call_service),
):
    """Re-run the provider's call records for a date range through reconciliation"""
    try:
        summary = await tata_call_service.sync_cdr(sync_request.from_date, sync_request.to_date)
        return {"success": True, **summary}
    except TataAPIError as e:
        logger.error(f"CDR sync failed: {e.message}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=f"Tata API error: {e.message}")

@router.get("/{call_id}", response_model=CallLogResponse)
async def get_call_details(
    call_id: str,
    current_user: dict = Depends(get_current_user),
    cache: CacheStore = Depends(get_cache),
    call_log_service: CallLogService = Depends(get_call_log_service),
):
    try:
        cache_key = call_details_key(call_id)
        call_log = cache.get(cache_key)
        if call_log is None:
            doc = await call_log_service.get_call_by_id(call_id)
            if doc is None:
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Call log not found")
            call_log = CallLogResponse.from_document(doc)
            cache.set(cache_key, call_log, DETAILS_TTL)

        # Cached entries are shared across viewers, so ownership is checked on every read
        if not is_admin(current_user) and call_log.user_id != str(current_user["_id"]):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Call log not found")
        return call_log

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error getting call log {call_id}: {str(e)}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Internal error fetching call log: {str(e)}"
        )
