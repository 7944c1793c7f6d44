# app/services/tata_admin_service.py
# Smartflo administration: agent number mapping, lead list sync and dialer campaigns
#
# Lead lists and campaigns live on the Smartflo side; smartflo_configs keeps the
# CRM's record of what was synced, with which segment, and which campaign dials it.

import logging
import time
from datetime import datetime
from typing import Any, Awaitable, Dict, List, Optional, Tuple

from bson import ObjectId

from ..config.database import get_database
from ..config.settings import get_settings
from ..models.tata_admin import (
    AgentMappingRequest, CampaignCreateRequest, CampaignStatus, CampaignStatusRequest, LeadSyncRequest,
)
from .call_direction_service import UNKNOWN_PHONE
from .call_matching_service import phone_variants
from .tata_api_client import TataApiClient, TataAPIError
from .tata_call_service import format_phone_for_tata, strip_country_code

logger = logging.getLogger(__name__)

# Upper bound on one sync; Smartflo lead lists are added to one lead per request
LEAD_SYNC_LIMIT = 5000

USER_MAPPING_FIELDS = {
    "_id": 1,
    "email": 1,
    "first_name": 1,
    "last_name": 1,
    "role": 1,
    "is_active": 1,
    "smartflo_agent_number": 1,
    "smartflo_caller_id": 1,
    "smartflo_user_id": 1,
    "smartflo_extension": 1,
    "smartflo_enabled": 1,
}

LEAD_SYNC_FIELDS = {"lead_id": 1, "name": 1, "contact_number": 1, "email": 1, "company": 1}

def _provider_id(response: Dict[str, Any], *fields: str) -> Optional[str]:
    """Smartflo returns new ids at the top level or under data, depending on the endpoint"""
    data = response.get("data") if isinstance(response.get("data"), dict) else {}
    for field in fields:
        value = response.get(field) or data.get(field)
        if value:
            return str(value)
    return None

def _serialize(doc: Dict[str, Any]) -> Dict[str, Any]:
    return {**doc, "_id": str(doc["_id"])}

def _provider_failure(action: str, error: TataAPIError) -> Tuple[bool, Dict[str, Any]]:
    logger.error(f"❌ Tata {action} failed: {error.message}")
    return False, {"error": "Tata API call failed", "message": error.message, "status_code": error.status_code}

class TataAdminService:
    """Admin-only Smartflo operations, built once at startup with the shared client and cache"""

    def __init__(self, client: TataApiClient, cache=None):
        self.settings = get_settings()
        self.client = client
        self.cache = cache
        self.db = None

    def _get_db(self):
        if self.db is None:
            self.db = get_database()
        return self.db

    # ==========================================================================
    # CONNECTION AND PROVIDER LOOKUPS
    # ==========================================================================

    def get_config(self) -> Dict[str, Any]:
        return {**self.settings.get_tata_config(), "configured": self.settings.is_tata_configured()}

    async def test_connection(self) -> Dict[str, Any]:
        if not self.settings.is_tata_configured():
            return {"success": False, "message": "Tata credentials are not configured"}
        return await self.client.test_connection()

    async def _fetch(self, action: str, request: Awaitable[Dict[str, Any]]) -> Tuple[bool, Dict[str, Any]]:
        try:
            return True, {"success": True, "data": await request}
        except TataAPIError as e:
            return _provider_failure(action, e)

    async def get_dispositions(self) -> Tuple[bool, Dict[str, Any]]:
        return await self._fetch("disposition list", self.client.get_dispositions())

    async def get_agents(self) -> Tuple[bool, Dict[str, Any]]:
        return await self._fetch("agent list", self.client.get_agents())

    # ==========================================================================
    # USER MAPPING
    # ==========================================================================

    async def list_agent_mappings(self) -> List[Dict[str, Any]]:
        """Every CRM user with its Smartflo identity, mapped or not"""
        db = self._get_db()
        users = await db.users.find({}, USER_MAPPING_FIELDS).sort("email", 1).to_list(length=None)
        mappings = []
        for user in users:
            mapping = _serialize(user)
            mapping["smartflo_enabled"] = user.get("smartflo_enabled", bool(user.get("smartflo_agent_number")))
            mappings.append(mapping)
        return mappings

    async def map_user_to_agent(
        self, user_id: str, request: AgentMappingRequest, admin_user: Dict[str, Any]
    ) -> Tuple[bool, Dict[str, Any]]:
        """
        Set a user's Smartflo agent number, caller id and related fields.
        An agent number may belong to one user only, since inbound and
        outbound events are attributed by it.
        """
        if not ObjectId.is_valid(user_id):
            return False, {"error": "User not found", "message": f"User {user_id} not found"}

        db = self._get_db()
        user = await db.users.find_one({"_id": ObjectId(user_id)})
        if not user:
            return False, {"error": "User not found", "message": f"User {user_id} not found"}

        updates = {k: v.strip() if isinstance(v, str) else v for k, v in request.model_dump(exclude_none=True).items()}
        if not updates:
            return False, {"error": "No changes", "message": "No Smartflo fields to update"}

        agent_number = updates.get("smartflo_agent_number")
        if agent_number:
            holder = await db.users.find_one({
                "_id": {"$ne": user["_id"]},
                "smartflo_agent_number": {"$in": phone_variants(agent_number)},
            })
            if holder:
                return False, {
                    "error": "Agent number in use",
                    "message": f"Agent number {agent_number} is already mapped to {holder.get('email')}",
                }
            updates.setdefault("smartflo_enabled", True)

        updates["smartflo_mapped_by"] = admin_user.get("email")
        updates["updated_at"] = datetime.utcnow()
        await db.users.update_one({"_id": user["_id"]}, {"$set": updates})
        if self.cache is not None:
            self.cache.smart_invalidate("users", user_id)

        logger.info(f"👤 Admin {admin_user.get('email')} mapped user {user.get('email')} to Smartflo ({agent_number})")
        mapped = await db.users.find_one({"_id": user["_id"]}, USER_MAPPING_FIELDS)
        return True, {"success": True, "message": "User mapped to Smartflo successfully", "data": _serialize(mapped)}

    # ==========================================================================
    # LEAD SYNC
    # ==========================================================================

    @staticmethod
    def build_segment_filter(request: LeadSyncRequest) -> Dict[str, Any]:
        segment = request.segment_criteria
        query: Dict[str, Any] = {"contact_number": {"$nin": [None, "", UNKNOWN_PHONE]}}
        for field in ("status", "category", "state", "city"):
            values = getattr(segment, field)
            if values:
                query[field] = {"$in": values}
        if segment.date_range:
            created_at = {}
            if segment.date_range.from_date:
                created_at["$gte"] = segment.date_range.from_date
            if segment.date_range.to_date:
                created_at["$lte"] = segment.date_range.to_date
            if created_at:
                query["created_at"] = created_at
        return query

    async def sync_leads(
        self, request: LeadSyncRequest, admin_user: Dict[str, Any]
    ) -> Tuple[bool, Dict[str, Any]]:
        """Create a Smartflo lead list from a CRM lead segment and record the sync"""
        db = self._get_db()
        leads = await db.leads.find(self.build_segment_filter(request), LEAD_SYNC_FIELDS).to_list(length=LEAD_SYNC_LIMIT)
        if not leads:
            return False, {"error": "No leads found", "message": "No leads found matching criteria"}

        list_name = request.lead_list_name or f"CRM_Sync_{int(time.time() * 1000)}"
        try:
            response = await self.client.create_lead_list(
                list_name, f"Synced from CRM on {datetime.utcnow().isoformat()}"
            )
        except TataAPIError as e:
            return _provider_failure("lead list creation", e)

        lead_list_id = _provider_id(response, "id", "lead_list_id")
        if not lead_list_id:
            logger.error(f"❌ Smartflo created lead list {list_name} without returning an id: {response}")
            return False, {"error": "Tata API call failed", "message": "Smartflo did not return a lead list id"}

        synced_ids = []
        fail_count = 0
        for lead in leads:
            try:
                await self.client.add_lead_to_list(lead_list_id, {
                    "first_name": lead.get("name"),
                    "phone_number": format_phone_for_tata(str(lead["contact_number"])),
                    "email": lead.get("email"),
                    "company": lead.get("company"),
                    "custom_field": lead.get("lead_id"),
                })
                synced_ids.append(lead["_id"])
            except TataAPIError as e:
                fail_count += 1
                logger.warning(f"Lead {lead.get('lead_id')} not added to Smartflo list {lead_list_id}: {e.message}")

        now = datetime.utcnow()
        if synced_ids:
            await db.leads.update_many(
                {"_id": {"$in": synced_ids}},
                {"$set": {"smartflo_lead_list_id": lead_list_id, "updated_at": now}},
            )

        config = {
            "lead_list_id": lead_list_id,
            "lead_list_name": list_name,
            "segment_criteria": request.segment_criteria.model_dump(),
            "total_leads_synced": len(synced_ids),
            "last_sync_date": now,
            "is_active": True,
            "created_by": str(admin_user["_id"]),
            "created_at": now,
            "updated_at": now,
        }
        result = await db.smartflo_configs.insert_one(config)
        if self.cache is not None:
            self.cache.smart_invalidate("entries")

        logger.info(f"📋 Synced {len(synced_ids)}/{len(leads)} leads to Smartflo list {lead_list_id}")
        return True, {
            "success": True,
            "message": "Leads synced to Smartflo successfully",
            "data": {
                "lead_list_id": lead_list_id,
                "total_leads": len(leads),
                "success_count": len(synced_ids),
                "fail_count": fail_count,
                "config_id": str(result.inserted_id),
            },
        }

    # ==========================================================================
    # CAMPAIGNS
    # ==========================================================================

    async def create_campaign(
        self, request: CampaignCreateRequest, admin_user: Dict[str, Any]
    ) -> Tuple[bool, Dict[str, Any]]:
        caller_id = request.caller_id or self.settings.tata_default_caller_id
        campaign = {
            "name": request.campaign_name,
            "lead_list_id": request.lead_list_id,
            "campaign_type": request.campaign_type.value,
            "agent_numbers": [strip_country_code(number) for number in request.agent_numbers],
        }
        if caller_id:
            campaign["caller_id"] = strip_country_code(caller_id)
        if request.start_time:
            campaign["start_time"] = request.start_time.strftime("%Y-%m-%d %H:%M:%S")
        if request.end_time:
            campaign["end_time"] = request.end_time.strftime("%Y-%m-%d %H:%M:%S")

        try:
            response = await self.client.create_campaign(campaign)
        except TataAPIError as e:
            return _provider_failure("campaign creation", e)

        campaign_id = _provider_id(response, "id", "campaign_id")
        if not campaign_id:
            logger.error(f"❌ Smartflo created campaign {request.campaign_name} without returning an id: {response}")
            return False, {"error": "Tata API call failed", "message": "Smartflo did not return a campaign id"}

        now = datetime.utcnow()
        db = self._get_db()
        await db.smartflo_configs.update_one(
            {"lead_list_id": request.lead_list_id},
            {
                "$set": {
                    "campaign_id": campaign_id,
                    "campaign_name": request.campaign_name,
                    "campaign_type": request.campaign_type.value,
                    "campaign_status": CampaignStatus.ACTIVE.value,
                    "updated_at": now,
                },
                "$setOnInsert": {
                    "lead_list_name": request.lead_list_id,
                    "total_leads_synced": 0,
                    "is_active": True,
                    "created_by": str(admin_user["_id"]),
                    "created_at": now,
                },
            },
            upsert=True,
        )

        logger.info(f"📣 Admin {admin_user.get('email')} created Smartflo campaign {campaign_id} on list {request.lead_list_id}")
        return True, {
            "success": True,
            "message": "Campaign created successfully",
            "data": {
                "campaign_id": campaign_id,
                "campaign_name": request.campaign_name,
                "lead_list_id": request.lead_list_id,
                "campaign_type": request.campaign_type.value,
            },
        }

    async def list_campaigns(self) -> List[Dict[str, Any]]:
        db = self._get_db()
        configs = await db.smartflo_configs.find(
            {"campaign_id": {"$nin": [None, ""]}}
        ).sort("created_at", -1).to_list(length=None)
        return [_serialize(config) for config in configs]

    async def get_campaign(self, campaign_id: str) -> Tuple[bool, Dict[str, Any]]:
        """Live campaign state from Smartflo next to the CRM's own record of it"""
        try:
            campaign = await self.client.get_campaign(campaign_id)
        except TataAPIError as e:
            if e.status_code == 404:
                return False, {"error": "Campaign not found", "message": f"Campaign {campaign_id} not found"}
            return _provider_failure("campaign lookup", e)

        config = await self._get_db().smartflo_configs.find_one({"campaign_id": campaign_id})
        return True, {
            "success": True,
            "data": {"campaign": campaign, "config": _serialize(config) if config else None},
        }

    async def update_campaign_status(
        self, campaign_id: str, request: CampaignStatusRequest, admin_user: Dict[str, Any]
    ) -> Tuple[bool, Dict[str, Any]]:
        try:
            response = await self.client.update_campaign_status(campaign_id, request.status.value)
        except TataAPIError as e:
            if e.status_code == 404:
                return False, {"error": "Campaign not found", "message": f"Campaign {campaign_id} not found"}
            return _provider_failure("campaign status update", e)

        await self._get_db().smartflo_configs.update_one(
            {"campaign_id": campaign_id},
            {"$set": {
                "campaign_status": request.status.value,
                "is_active": request.status in (CampaignStatus.ACTIVE, CampaignStatus.PAUSED),
                "updated_at": datetime.utcnow(),
            }},
        )
        logger.info(f"Admin {admin_user.get('email')} set Smartflo campaign {campaign_id} to {request.status.value}")
        return True, {
            "success": True,
            "message": response.get("message") or f"Campaign {request.status.value}",
            "data": {"campaign_id": campaign_id, "status": request.status.value},
        }
