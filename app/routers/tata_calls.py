# app/routers/tata_calls.py
# Dialer endpoints: click-to-call and scheduled callbacks through Smartflo, manual call logging

from fastapi import APIRouter, HTTPException, status, Depends
import logging

from ..models.call_log import ClickToCallRequest, ClickToCallResponse, ManualCallLogRequest, ScheduleCallbackRequest
from ..services.tata_call_service import TataCallService
from ..utils.dependencies import get_current_user, get_tata_call_service

logger = logging.getLogger(__name__)

router = APIRouter()

# Failure reasons that are the caller's problem rather than ours
NOT_FOUND_ERRORS = {"Lead not found"}

def _raise_for_failure(result: dict, default_message: str):
    error = result.get("error")
    detail = result.get("message") or default_message
    if error in NOT_FOUND_ERRORS:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=detail)
    if error == "Tata API call failed":
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=detail)
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)

@router.post("/click-to-call", response_model=ClickToCallResponse)
async def click_to_call(
    call_request: ClickToCallRequest,
    current_user: dict = Depends(get_current_user),
    tata_call_service: TataCallService = Depends(get_tata_call_service),
):
    """
    Ring the current user's Smartflo agent number and bridge to the lead.

    The correlation token sent as custom_identifier ties the provider's
    webhooks back to the call log created here.
    """
    try:
        success, result = await tata_call_service.initiate_click_to_call(
            lead_id=call_request.lead_id,
            current_user=current_user,
            notes=call_request.notes,
        )
        if not success:
            logger.warning(f"Click-to-call failed for {call_request.lead_id}: {result.get('message')}")
            _raise_for_failure(result, "Call initiation failed")

        return ClickToCallResponse(**result)

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error in click-to-call: {str(e)}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Internal error initiating call: {str(e)}"
        )

@router.post("/schedule-callback")
async def schedule_callback(
    callback_request: ScheduleCallbackRequest,
    current_user: dict = Depends(get_current_user),
    tata_call_service: TataCallService = Depends(get_tata_call_service),
):
    """Have Smartflo call the lead back through the current user's agent number"""
    try:
        success, result = await tata_call_service.schedule_callback(callback_request, current_user)
        if not success:
            logger.warning(f"Callback scheduling failed for {callback_request.lead_id}: {result.get('message')}")
            _raise_for_failure(result, "Callback scheduling failed")
        return result

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error scheduling callback: {str(e)}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Internal error scheduling callback: {str(e)}"
        )

@router.post("/manual-log")
async def log_manual_call(
    log_request: ManualCallLogRequest,
    current_user: dict = Depends(get_current_user),
    tata_call_service: TataCallService = Depends(get_tata_call_service),
):
    """Record a call made outside the dialer against a lead"""
    try:
        success, result = await tata_call_service.create_manual_call_log(log_request, current_user)
        if not success:
            _raise_for_failure(result, "Could not log call")
        return result

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error logging manual call: {str(e)}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Internal error logging call: {str(e)}"
        )
