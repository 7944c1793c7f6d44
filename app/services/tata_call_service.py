# app/services/tata_call_service.py
# Tata Tele call origination, scheduled callbacks, manual call logging and CDR back-fill

import logging
import re
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from bson import ObjectId
from dateutil import tz
from pymongo.errors import DuplicateKeyError

from ..config.database import get_database
from ..config.settings import get_settings
from ..models.call_log import CallDirection, CallStatus, ManualCallLogRequest, ScheduleCallbackRequest
from ..utils.correlation_token import build_correlation_token
from .cache_invalidation import invalidate_after_call_update
from .call_log_service import CallLogService
from .tata_api_client import TataApiClient, TataAPIError

logger = logging.getLogger(__name__)

CDR_PAGE_SIZE = 100
CDR_MAX_PAGES = 50

def format_phone_for_tata(phone: str) -> str:
    """
    Format phone number for Tata API (Indian format)
    9087924334 -> +919087924334, 919087924334 -> +919087924334
    """
    if not phone:
        return phone

    cleaned = re.sub(r"[^\d]", "", phone)
    if len(cleaned) == 10 and cleaned.startswith(("6", "7", "8", "9")):
        return f"+91{cleaned}"
    if len(cleaned) == 12 and cleaned.startswith("91"):
        return f"+{cleaned}"
    if len(cleaned) == 11 and cleaned.startswith("0"):
        return f"+91{cleaned[1:]}"
    if phone.startswith("+"):
        return phone
    logger.warning(f"Using phone as-is (unknown format): {phone}")
    return phone

def strip_country_code(number: str) -> str:
    """Agent numbers and caller ids go to Tata without +91"""
    cleaned = re.sub(r"[^\d]", "", number or "")
    if len(cleaned) == 12 and cleaned.startswith("91"):
        return cleaned[2:]
    return cleaned

class TataCallService:
    """Calls that originate in the CRM, plus the CDR sync that repairs missed webhooks"""

    def __init__(self, client: TataApiClient, call_log_service: CallLogService, cache=None):
        self.settings = get_settings()
        self.client = client
        self.call_log_service = call_log_service
        self.cache = cache
        self.db = None

    def _get_db(self):
        if self.db is None:
            self.db = get_database()
        return self.db

    async def _get_lead(self, lead_id: str) -> Optional[Dict[str, Any]]:
        db = self._get_db()
        lead = await db.leads.find_one({"lead_id": lead_id})
        if not lead and ObjectId.is_valid(lead_id):
            lead = await db.leads.find_one({"_id": ObjectId(lead_id)})
        return lead

    # ==========================================================================
    # CLICK TO CALL
    # ==========================================================================

    async def initiate_click_to_call(
        self,
        lead_id: str,
        current_user: Dict[str, Any],
        notes: Optional[str] = None,
    ) -> Tuple[bool, Dict[str, Any]]:
        """
        Ring the agent, then bridge to the lead. Creates the outbound call log
        the provider's webhooks will later be reconciled into.
        """
        user_id = str(current_user["_id"])
        logger.info(f"🎯 User {current_user.get('email', user_id)} initiating click-to-call for lead {lead_id}")

        lead = await self._get_lead(lead_id)
        if not lead:
            return False, {"error": "Lead not found", "message": f"Lead {lead_id} not found"}

        phone = lead.get("contact_number") or lead.get("phone_number")
        if not phone:
            return False, {"error": "No phone number", "message": f"Lead {lead_id} has no phone number"}

        agent_number = current_user.get("smartflo_agent_number")
        if not agent_number:
            return False, {
                "error": "No agent number",
                "message": "Your account is not mapped to a Smartflo agent number",
            }

        caller_id = current_user.get("smartflo_caller_id") or self.settings.tata_default_caller_id
        if not caller_id:
            return False, {"error": "No caller id", "message": "No Smartflo caller id configured"}

        destination = format_phone_for_tata(str(phone))
        token = build_correlation_token(lead["lead_id"], user_id)

        try:
            response = await self.client.click_to_call(
                agent_number=strip_country_code(agent_number),
                destination_number=destination,
                caller_id=strip_country_code(caller_id),
                custom_identifier=token,
            )
        except TataAPIError as e:
            logger.error(f"❌ Tata click-to-call failed for lead {lead_id}: {e.message}")
            return False, {"error": "Tata API call failed", "message": e.message, "status_code": e.status_code}

        provider_call_id = response.get("call_id") or (response.get("data") or {}).get("call_id")
        call_log, created = await self._record_outbound_call(
            lead, user_id, agent_number, destination, caller_id, token, provider_call_id, notes
        )

        if created:
            lead = await self.call_log_service.update_lead_after_call(lead, call_log, created=True)
        invalidate_after_call_update(self.cache, call_log, lead)

        logger.info(f"✅ Click-to-call started for lead {lead_id} (call {provider_call_id}, token {token})")
        return True, {
            "success": True,
            "message": response.get("message") or "Call initiated successfully",
            "call_log_id": str(call_log["_id"]),
            "provider_call_id": provider_call_id,
            "custom_identifier": token,
        }

    async def _record_outbound_call(
        self,
        lead: Dict[str, Any],
        user_id: str,
        agent_number: str,
        destination: str,
        caller_id: str,
        token: str,
        provider_call_id: Optional[str],
        notes: Optional[str],
    ) -> Tuple[Dict[str, Any], bool]:
        """Insert the initiated call log unless a webhook for this call got there first"""
        db = self._get_db()

        existing = await db.call_logs.find_one({"custom_identifier": token})
        if existing:
            return existing, False

        now = datetime.utcnow()
        doc = {
            "lead_id": lead["lead_id"],
            "user_id": user_id,
            "custom_identifier": token,
            "call_id_synthesized": False,
            "agent_number": agent_number,
            "destination_number": destination,
            "caller_id": caller_id,
            "call_direction": CallDirection.OUTBOUND.value,
            "direction_rule": "click_to_call",
            "call_status": CallStatus.INITIATED.value,
            "duration": 0,
            "recording_url": None,
            "remarks": notes,
            "webhook_data": {},
            "event_history": [],
            "source": "click_to_call",
            "created_at": now,
            "updated_at": now,
        }
        # The field stays absent until the provider gives us an id
        if provider_call_id:
            doc["provider_call_id"] = provider_call_id

        try:
            result = await db.call_logs.insert_one(doc)
        except DuplicateKeyError:
            logger.info(f"🔁 Call {provider_call_id} already recorded by a webhook")
            return await db.call_logs.find_one({"provider_call_id": provider_call_id}), False

        doc["_id"] = result.inserted_id
        return doc, True

    # ==========================================================================
    # SCHEDULED CALLBACK
    # ==========================================================================

    async def schedule_callback(
        self, request: ScheduleCallbackRequest, current_user: Dict[str, Any]
    ) -> Tuple[bool, Dict[str, Any]]:
        """
        Ask Smartflo to ring the current user and the lead at a later time.
        The callback carries a correlation token so its webhooks land on this lead.
        """
        user_id = str(current_user["_id"])
        lead = await self._get_lead(request.lead_id)
        if not lead:
            return False, {"error": "Lead not found", "message": f"Lead {request.lead_id} not found"}

        phone = lead.get("contact_number") or lead.get("phone_number")
        if not phone:
            return False, {"error": "No phone number", "message": f"Lead {request.lead_id} has no phone number"}

        agent_number = current_user.get("smartflo_agent_number")
        if not agent_number:
            return False, {
                "error": "No agent number",
                "message": "Your account is not mapped to a Smartflo agent number",
            }

        scheduled_at = request.scheduled_at
        if scheduled_at.tzinfo is not None:
            scheduled_at = scheduled_at.astimezone(tz.UTC).replace(tzinfo=None)
        if scheduled_at <= datetime.utcnow():
            return False, {"error": "Invalid schedule time", "message": "Callback time must be in the future"}

        token = build_correlation_token(lead["lead_id"], user_id)
        try:
            response = await self.client.schedule_callback(
                agent_number=strip_country_code(agent_number),
                destination_number=format_phone_for_tata(str(phone)),
                scheduled_at=scheduled_at,
                custom_identifier=token,
            )
        except TataAPIError as e:
            logger.error(f"❌ Tata callback scheduling failed for lead {request.lead_id}: {e.message}")
            return False, {"error": "Tata API call failed", "message": e.message, "status_code": e.status_code}

        db = self._get_db()
        await db.leads.update_one(
            {"_id": lead["_id"]},
            {"$set": {
                "callback_scheduled": scheduled_at,
                "callback_reason": request.reason or "Scheduled callback",
                "updated_at": datetime.utcnow(),
            }},
        )
        if self.cache is not None:
            self.cache.smart_invalidate("entries", lead.get("created_by"))

        logger.info(f"⏰ Callback for lead {lead['lead_id']} scheduled at {scheduled_at} (token {token})")
        return True, {
            "success": True,
            "message": response.get("message") or "Callback scheduled successfully",
            "lead_id": lead["lead_id"],
            "scheduled_at": scheduled_at,
            "custom_identifier": token,
        }

    # ==========================================================================
    # MANUAL CALL LOG
    # ==========================================================================

    async def create_manual_call_log(
        self, request: ManualCallLogRequest, current_user: Dict[str, Any]
    ) -> Tuple[bool, Dict[str, Any]]:
        """Record a call made outside the dialer"""
        lead = await self._get_lead(request.lead_id)
        if not lead:
            return False, {"error": "Lead not found", "message": f"Lead {request.lead_id} not found"}

        db = self._get_db()
        now = datetime.utcnow()
        doc = {
            "lead_id": lead["lead_id"],
            "user_id": str(current_user["_id"]),
            "agent_number": current_user.get("smartflo_agent_number"),
            "destination_number": lead.get("contact_number"),
            "call_direction": CallDirection.OUTBOUND.value,
            "direction_rule": "manual",
            "call_status": request.call_status.value,
            "duration": request.duration,
            "disposition": request.disposition,
            "remarks": request.remarks,
            "recording_url": None,
            "webhook_data": {},
            "event_history": [],
            "source": "manual",
            "created_at": now,
            "updated_at": now,
        }
        result = await db.call_logs.insert_one(doc)
        doc["_id"] = result.inserted_id

        lead = await self.call_log_service.update_lead_after_call(lead, doc, created=True)
        invalidate_after_call_update(self.cache, doc, lead)

        logger.info(f"📝 Manual call log {result.inserted_id} for lead {lead['lead_id']} by user {current_user['_id']}")
        return True, {"success": True, "message": "Call logged", "call_log_id": str(result.inserted_id)}

    # ==========================================================================
    # CDR SYNC
    # ==========================================================================

    async def sync_cdr(self, from_date: str, to_date: str) -> Dict[str, Any]:
        """
        Pull provider CDRs for a date range and reconcile each one. The reconciler
        is idempotent, so records already delivered by webhook are only merged.
        """
        summary = {"fetched": 0, "reconciled": 0, "unmatched": 0, "failed": 0}

        for page in range(1, CDR_MAX_PAGES + 1):
            records = await self.client.fetch_cdr(from_date, to_date, page=page, limit=CDR_PAGE_SIZE)
            summary["fetched"] += len(records)

            for record in records:
                ack = await self.call_log_service.process_webhook(record)
                if not ack.success:
                    summary["failed"] += 1
                elif ack.callLogId:
                    summary["reconciled"] += 1
                else:
                    summary["unmatched"] += 1

            if len(records) < CDR_PAGE_SIZE:
                break
        else:
            logger.warning(f"CDR sync stopped after {CDR_MAX_PAGES} pages for {from_date}..{to_date}")

        logger.info(f"✅ CDR sync {from_date}..{to_date}: {summary}")
        return summary
