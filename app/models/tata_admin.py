# app/models/tata_admin.py
# Request models for Smartflo administration: agent mapping, lead list sync and dialer campaigns

from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime
from enum import Enum

class CampaignType(str, Enum):
    """Smartflo dialer modes"""
    PROGRESSIVE = "progressive"
    PREDICTIVE = "predictive"
    PREVIEW = "preview"
    MANUAL = "manual"

class CampaignStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    STOPPED = "stopped"
    COMPLETED = "completed"

# ============================================================================
# USER MAPPING
# ============================================================================

class AgentMappingRequest(BaseModel):
    """Fields left out keep their current value"""
    smartflo_agent_number: Optional[str] = Field(None, max_length=20, description="Number Smartflo rings for this agent")
    smartflo_caller_id: Optional[str] = Field(None, max_length=20, description="Caller id shown to leads")
    smartflo_user_id: Optional[str] = Field(None, description="Agent id on the Smartflo side")
    smartflo_extension: Optional[str] = Field(None, max_length=10)
    smartflo_enabled: Optional[bool] = Field(None, description="Whether the user may dial through Smartflo")

# ============================================================================
# LEAD SYNC
# ============================================================================

class LeadDateRange(BaseModel):
    from_date: Optional[datetime] = Field(None, description="Leads created on or after")
    to_date: Optional[datetime] = Field(None, description="Leads created on or before")

class LeadSegment(BaseModel):
    """Empty lists match every value"""
    status: List[str] = Field(default_factory=list)
    category: List[str] = Field(default_factory=list)
    state: List[str] = Field(default_factory=list)
    city: List[str] = Field(default_factory=list)
    date_range: Optional[LeadDateRange] = None

class LeadSyncRequest(BaseModel):
    lead_list_name: Optional[str] = Field(None, max_length=200, description="Defaults to CRM_Sync_<epochMillis>")
    segment_criteria: LeadSegment = Field(default_factory=LeadSegment)

# ============================================================================
# CAMPAIGNS
# ============================================================================

class CampaignCreateRequest(BaseModel):
    campaign_name: str = Field(..., min_length=1, max_length=200)
    lead_list_id: str = Field(..., min_length=1, description="Smartflo lead list the campaign dials")
    campaign_type: CampaignType = CampaignType.PROGRESSIVE
    agent_numbers: List[str] = Field(default_factory=list)
    caller_id: Optional[str] = Field(None, description="Defaults to TATA_DEFAULT_CALLER_ID")
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

class CampaignStatusRequest(BaseModel):
    status: CampaignStatus
