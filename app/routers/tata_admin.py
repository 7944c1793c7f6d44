# app/routers/tata_admin.py
# Smartflo administration router - connection checks, agent mapping, lead sync and campaigns

from fastapi import APIRouter, HTTPException, status, Depends
import logging

from ..models.tata_admin import AgentMappingRequest, CampaignCreateRequest, CampaignStatusRequest, LeadSyncRequest
from ..services.tata_admin_service import TataAdminService
from ..utils.dependencies import get_admin_user, get_tata_admin_service

logger = logging.getLogger(__name__)
router = APIRouter()

NOT_FOUND_ERRORS = {"User not found", "Campaign not found"}

def _raise_for_failure(result: dict, default_message: str):
    error = result.get("error")
    detail = result.get("message") or default_message
    if error in NOT_FOUND_ERRORS:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=detail)
    if error == "Tata API call failed":
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=detail)
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)

def _internal_error(action: str, e: Exception) -> HTTPException:
    logger.error(f"Error {action}: {str(e)}", exc_info=True)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"Internal error {action}: {str(e)}"
    )

# ============================================================================
# CONNECTION
# ============================================================================

@router.get("/config")
async def get_tata_config(
    current_user: dict = Depends(get_admin_user),  # Admin only
    admin_service: TataAdminService = Depends(get_tata_admin_service),
):
    """Smartflo integration settings, secrets left out"""
    return {"success": True, "data": admin_service.get_config()}

@router.post("/test-connection")
async def test_connection(
    current_user: dict = Depends(get_admin_user),  # Admin only
    admin_service: TataAdminService = Depends(get_tata_admin_service),
):
    """
    Log in to Smartflo with the configured credentials.
    Always answers 200; ``success`` tells whether the login worked.
    """
    try:
        logger.info(f"Admin {current_user['email']} testing Smartflo connection")
        return await admin_service.test_connection()
    except Exception as e:
        raise _internal_error("testing connection", e)

@router.get("/dispositions")
async def get_dispositions(
    current_user: dict = Depends(get_admin_user),  # Admin only
    admin_service: TataAdminService = Depends(get_tata_admin_service),
):
    try:
        success, result = await admin_service.get_dispositions()
        if not success:
            _raise_for_failure(result, "Could not fetch dispositions")
        return result
    except HTTPException:
        raise
    except Exception as e:
        raise _internal_error("fetching dispositions", e)

@router.get("/agents")
async def get_agents(
    current_user: dict = Depends(get_admin_user),  # Admin only
    admin_service: TataAdminService = Depends(get_tata_admin_service),
):
    """Agents as configured on the Smartflo side"""
    try:
        success, result = await admin_service.get_agents()
        if not success:
            _raise_for_failure(result, "Could not fetch agents")
        return result
    except HTTPException:
        raise
    except Exception as e:
        raise _internal_error("fetching agents", e)

# ============================================================================
# USER MAPPING
# ============================================================================

@router.get("/users")
async def get_users_with_mapping(
    current_user: dict = Depends(get_admin_user),  # Admin only
    admin_service: TataAdminService = Depends(get_tata_admin_service),
):
    """CRM users with their Smartflo agent number, caller id and enabled flag"""
    try:
        users = await admin_service.list_agent_mappings()
        return {"success": True, "data": users, "total": len(users)}
    except Exception as e:
        raise _internal_error("fetching user mappings", e)

@router.put("/users/{user_id}/map")
async def map_user_to_agent(
    user_id: str,
    mapping: AgentMappingRequest,
    current_user: dict = Depends(get_admin_user),  # Admin only
    admin_service: TataAdminService = Depends(get_tata_admin_service),
):
    """
    Map a CRM user to a Smartflo agent.

    - **Unique agent number**: a number mapped to another user is rejected
    - **Partial update**: fields left out keep their current value
    """
    try:
        success, result = await admin_service.map_user_to_agent(user_id, mapping, current_user)
        if not success:
            _raise_for_failure(result, "Could not map user")
        return result
    except HTTPException:
        raise
    except Exception as e:
        raise _internal_error("mapping user", e)

# ============================================================================
# LEAD SYNC AND CAMPAIGNS
# ============================================================================

@router.post("/lead-sync")
async def sync_leads(
    sync_request: LeadSyncRequest,
    current_user: dict = Depends(get_admin_user),  # Admin only
    admin_service: TataAdminService = Depends(get_tata_admin_service),
):
    """Push a segment of CRM leads into a new Smartflo lead list"""
    try:
        logger.info(f"Admin {current_user['email']} syncing leads to Smartflo")
        success, result = await admin_service.sync_leads(sync_request, current_user)
        if not success:
            _raise_for_failure(result, "Lead sync failed")
        return result
    except HTTPException:
        raise
    except Exception as e:
        raise _internal_error("syncing leads", e)

@router.post("/campaigns")
async def create_campaign(
    campaign_request: CampaignCreateRequest,
    current_user: dict = Depends(get_admin_user),  # Admin only
    admin_service: TataAdminService = Depends(get_tata_admin_service),
):
    try:
        success, result = await admin_service.create_campaign(campaign_request, current_user)
        if not success:
            _raise_for_failure(result, "Campaign creation failed")
        return result
    except HTTPException:
        raise
    except Exception as e:
        raise _internal_error("creating campaign", e)

@router.get("/campaigns")
async def list_campaigns(
    current_user: dict = Depends(get_admin_user),  # Admin only
    admin_service: TataAdminService = Depends(get_tata_admin_service),
):
    try:
        campaigns = await admin_service.list_campaigns()
        return {"success": True, "data": campaigns, "total": len(campaigns)}
    except Exception as e:
        raise _internal_error("listing campaigns", e)

@router.get("/campaigns/{campaign_id}")
async def get_campaign(
    campaign_id: str,
    current_user: dict = Depends(get_admin_user),  # Admin only
    admin_service: TataAdminService = Depends(get_tata_admin_service),
):
    try:
        success, result = await admin_service.get_campaign(campaign_id)
        if not success:
            _raise_for_failure(result, "Could not fetch campaign")
        return result
    except HTTPException:
        raise
    except Exception as e:
        raise _internal_error("fetching campaign", e)

@router.put("/campaigns/{campaign_id}/status")
async def update_campaign_status(
    campaign_id: str,
    status_request: CampaignStatusRequest,
    current_user: dict = Depends(get_admin_user),  # Admin only
    admin_service: TataAdminService = Depends(get_tata_admin_service),
):
    """Start, pause or stop a Smartflo campaign"""
    try:
        success, result = await admin_service.update_campaign_status(campaign_id, status_request, current_user)
        if not success:
            _raise_for_failure(result, "Could not update campaign")
        return result
    except HTTPException:
        raise
    except Exception as e:
        raise _internal_error("updating campaign", e)
