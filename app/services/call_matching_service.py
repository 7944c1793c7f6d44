# app/services/call_matching_service.py
# Resolves the CRM lead and the owning agent for a telephony event

import logging
import re
import time
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from pymongo import ReturnDocument

from ..config.database import get_database
from ..models.call_log import CallDirection
from ..models.lead import LeadSource, LeadStatus, placeholder_lead_name
from ..models.user import ADMIN_ROLES
from ..utils.correlation_token import parse_correlation_token
from .call_direction_service import AGENT_NUMBER_FIELDS, UNKNOWN_PHONE, first_value

logger = logging.getLogger(__name__)

class LeadNotMatchedError(Exception):
    """No lead could be matched or created for an event"""

def phone_variants(phone: Optional[str]) -> List[str]:
    """
    Exact-match spellings of one number: as received, digits only,
    10-digit national and +91 international forms.
    """
    if not phone:
        return []
    variants = [phone.strip()]
    digits = re.sub(r"[^\d]", "", phone)
    if digits:
        ten_digit = digits[-10:] if len(digits) > 10 and digits.startswith(("91", "0")) else digits
        for candidate in (digits, ten_digit, f"+{digits}", f"91{ten_digit}", f"+91{ten_digit}", f"0{ten_digit}"):
            if candidate not in variants:
                variants.append(candidate)
    return variants

def _to_object_id(value: Any) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    if value and ObjectId.is_valid(str(value)):
        return ObjectId(str(value))
    return None

class CallMatchingService:
    """Lead lookup/placeholder creation and agent resolution"""

    def _get_db(self):
        return get_database()

    # ------------------------------------------------------------------
    # Leads
    # ------------------------------------------------------------------

    async def find_lead_by_phone(
        self, phone: Optional[str], direction: Optional[CallDirection] = None
    ) -> Optional[Dict[str, Any]]:
        if not phone:
            return None
        db = self._get_db()
        if phone == UNKNOWN_PHONE:
            # The shared sentinel lead only ever collects inbound calls without a caller number
            if direction != CallDirection.INBOUND:
                return None
            return await db.leads.find_one({"contact_number": UNKNOWN_PHONE})
        return await db.leads.find_one(
            {"contact_number": {"$in": phone_variants(phone)}},
            sort=[("created_at", 1)],
        )

    async def find_lead_by_id(self, lead_id: Optional[str]) -> Optional[Dict[str, Any]]:
        if not lead_id:
            return None
        return await self._get_db().leads.find_one({"lead_id": lead_id})

    async def _generate_lead_id(self) -> str:
        """Sequential LD-XXXX ids from the lead_counters collection"""
        db = self._get_db()
        try:
            result = await db.lead_counters.find_one_and_update(
                {"_id": "lead_id"},
                {"$inc": {"sequence": 1}},
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
            return f"LD-{result['sequence']:04d}"
        except Exception as e:
            logger.error(f"Lead id counter failed, using timestamp id: {e}")
            return f"LD-{int(time.time())}"

    async def match_or_create_lead(
        self,
        phone: str,
        direction: CallDirection,
        fallback_agent: Optional[Dict[str, Any]] = None,
    ) -> Tuple[Dict[str, Any], bool]:
        """
        Find the lead owning ``phone``. Inbound calls from unknown numbers get a
        placeholder lead owned by ``fallback_agent``, or by nobody when no agent
        resolved but users exist. Returns (lead, created).
        """
        lead = await self.find_lead_by_phone(phone, direction)
        if lead:
            return lead, False

        if direction != CallDirection.INBOUND:
            raise LeadNotMatchedError(f"No lead found for destination number {phone}")

        db = self._get_db()
        if fallback_agent is None and not await db.users.find_one({}, {"_id": 1}):
            raise LeadNotMatchedError(f"No lead for {phone} and no users exist to own a placeholder lead")
        owner_id = str(fallback_agent["_id"]) if fallback_agent else None

        now = datetime.utcnow()
        lead_id = await self._generate_lead_id()
        placeholder = {
            "lead_id": lead_id,
            "name": placeholder_lead_name(phone),
            "contact_number": phone,
            "status": LeadStatus.NEW.value,
            "source": LeadSource.INCOMING_CALL.value,
            "created_by": owner_id,
            "assigned_to": owner_id,
            "total_calls_made": 0,
            "total_inbound_calls": 0,
            "created_at": now,
            "updated_at": now,
        }

        # Upsert keyed on the number so two webhooks for the same new caller
        # usually converge on one placeholder
        result = await db.leads.update_one(
            {"contact_number": phone},
            {"$setOnInsert": placeholder},
            upsert=True,
        )
        lead = await db.leads.find_one({"contact_number": phone}, sort=[("created_at", 1)])
        created = result.upserted_id is not None
        if created:
            logger.info(f"📇 Created placeholder lead {lead_id} for inbound caller {phone}")
        return lead, created

    async def assign_lead_owner_if_unset(
        self, lead: Dict[str, Any], agent: Optional[Dict[str, Any]]
    ) -> Dict[str, Any]:
        """Set created_by to the resolved agent only when the lead has no owner yet"""
        if agent is None or lead.get("created_by"):
            return lead
        db = self._get_db()
        agent_id = str(agent["_id"])
        result = await db.leads.update_one(
            {"lead_id": lead["lead_id"], "created_by": None},
            {"$set": {"created_by": agent_id, "updated_at": datetime.utcnow()}},
        )
        if result.modified_count:
            logger.info(f"Lead {lead['lead_id']} now owned by agent {agent_id}")
            lead = {**lead, "created_by": agent_id}
        return lead

    # ------------------------------------------------------------------
    # Agents
    # ------------------------------------------------------------------

    async def find_user_by_id(self, user_id: Any) -> Optional[Dict[str, Any]]:
        object_id = _to_object_id(user_id)
        if object_id is None:
            return None
        return await self._get_db().users.find_one({"_id": object_id})

    async def find_user_by_agent_number(self, agent_number: Optional[str]) -> Optional[Dict[str, Any]]:
        variants = phone_variants(agent_number)
        if not variants:
            return None
        return await self._get_db().users.find_one({"smartflo_agent_number": {"$in": variants}})

    async def find_admin_user(self) -> Optional[Dict[str, Any]]:
        return await self._get_db().users.find_one(
            {"role": {"$in": ADMIN_ROLES}, "is_active": {"$ne": False}},
            sort=[("created_at", 1)],
        )

    @staticmethod
    def extract_agent_number(payload: Dict[str, Any]) -> Optional[str]:
        number = first_value(payload, AGENT_NUMBER_FIELDS)
        if number:
            return number
        answered_agent = payload.get("answered_agent")
        if isinstance(answered_agent, dict):
            return first_value(answered_agent, ["number", "agent_number", "phone"])
        return None

    async def match_agent_from_signals(
        self, payload: Dict[str, Any], custom_identifier: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        """Agents named by the event itself: agent number, then correlation token"""
        agent_number = self.extract_agent_number(payload)
        if agent_number:
            agent = await self.find_user_by_agent_number(agent_number)
            if agent:
                return agent
            logger.info(f"No CRM user mapped to Smartflo agent number {agent_number}")

        token = parse_correlation_token(custom_identifier)
        if token and token.get("user_id"):
            agent = await self.find_user_by_id(token["user_id"])
            if agent:
                return agent
        return None

    async def match_agent(
        self,
        payload: Dict[str, Any],
        lead: Optional[Dict[str, Any]],
        custom_identifier: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Resolution order: agent number, correlation token, lead creator, any admin.
        Returns None only when no user exists at all.
        """
        agent = await self.match_agent_from_signals(payload, custom_identifier)
        if agent:
            return agent

        if lead and lead.get("created_by"):
            agent = await self.find_user_by_id(lead["created_by"])
            if agent:
                return agent

        agent = await self.find_admin_user()
        if agent is None:
            logger.error("No agent could be resolved and no admin user exists")
        return agent
