# app/services/call_log_service.py
# Call record reconciliation for Smartflo webhooks and CDRs, plus the call log read queries.
#
# Every webhook, CDR row and click-to-call result for one telephone call is folded
# into a single call_logs document. Events can arrive late, twice or out of order,
# so each field merge is independently idempotent.

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from dateutil import parser as date_parser
from dateutil import tz
from pymongo.errors import DuplicateKeyError

from ..config.database import get_database
from ..config.settings import get_settings
from ..models.call_log import (
    ACTIVE_STATUSES, CallDirection, CallEvent, CallStatus, WebhookAck, is_terminal_status,
)
from ..models.lead import LeadStatus, engagement_rank
from ..models.user import is_admin
from ..utils.call_status import normalize_call_status
from ..utils.correlation_token import parse_correlation_token
from .cache_invalidation import invalidate_after_call_update
from .call_direction_service import (
    CUSTOM_IDENTIFIER_FIELDS, DESTINATION_FIELDS, EVENT_TYPE_FIELDS, UNKNOWN_PHONE, first_value, payload_fingerprint,
    resolve_call,
)
from .call_matching_service import CallMatchingService, LeadNotMatchedError

logger = logging.getLogger(__name__)

EVENT_HISTORY_LIMIT = 50

# Overwritten by the latest event that carries a value
LAST_WRITE_WINS_FIELDS = ["end_time", "duration", "recording_url", "disposition"]

# Never cleared by a sparser later event
LAST_NON_EMPTY_FIELDS = [
    "agent_number", "destination_number", "caller_id", "virtual_number", "start_time",
    "queue_id", "queue_wait_time", "transfer_data", "ivr_data", "custom_identifier",
]

CALLBACK_STATUSES = {CallStatus.NO_ANSWER.value, CallStatus.FAILED.value}

def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == {} or value == []

def parse_event_time(value: Any) -> Optional[datetime]:
    """Provider timestamps (ISO strings, 'YYYY-MM-DD HH:MM:SS', epoch seconds/millis) as naive UTC"""
    if _is_empty(value):
        return None
    try:
        if isinstance(value, datetime):
            parsed = value
        elif isinstance(value, (int, float)) or str(value).strip().isdigit():
            seconds = float(value)
            if seconds > 1e12:
                seconds = seconds / 1000
            return datetime.utcfromtimestamp(seconds)
        else:
            parsed = date_parser.parse(str(value))
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(tz.UTC).replace(tzinfo=None)
        return parsed
    except (ValueError, OverflowError, TypeError) as e:
        logger.debug(f"Unparseable call timestamp {value!r}: {e}")
        return None

def parse_seconds(value: Any) -> Optional[int]:
    if _is_empty(value):
        return None
    try:
        return max(0, int(float(value)))
    except (TypeError, ValueError):
        logger.debug(f"Unparseable duration {value!r}")
        return None

class CallLogService:
    """
    Reconciles provider events into call_logs and keeps leads in step.
    Built once at startup with the shared cache and recording scheduler.
    """

    def __init__(self, cache=None, matcher: CallMatchingService = None, recording_scheduler=None):
        self.settings = get_settings()
        self.db = None
        self.cache = cache
        self.matcher = matcher or CallMatchingService()
        self.recording_scheduler = recording_scheduler

        self.default_page_size = 20
        self.max_page_size = 100

    def _get_db(self):
        if self.db is None:
            self.db = get_database()
        return self.db

    # =============================================================================
    # EVENT PARSING
    # =============================================================================

    def build_event(self, payload: Dict[str, Any], direction_hint: Optional[CallDirection] = None) -> CallEvent:
        """Normalize one raw provider payload (webhook body or CDR row)"""
        resolved = resolve_call(payload, direction_hint)

        raw_status = first_value(payload, ["call_status", "status"])
        if raw_status is None:
            event_type = first_value(payload, EVENT_TYPE_FIELDS)
            # call.inbound.answered -> answered
            raw_status = event_type.rsplit(".", 1)[-1] if event_type else None

        caller_id = first_value(payload, ["caller_id", "caller_id_number", "caller_number", "call_from_number", "from_number"])
        destination = first_value(payload, DESTINATION_FIELDS)
        counterparty = resolved.counterparty_phone if resolved.counterparty_phone != UNKNOWN_PHONE else None
        if resolved.direction == CallDirection.INBOUND:
            caller_id = caller_id or counterparty
        else:
            destination = destination or counterparty

        return CallEvent(
            resolved=resolved,
            custom_identifier=first_value(payload, CUSTOM_IDENTIFIER_FIELDS),
            status=normalize_call_status(raw_status),
            raw_status=raw_status,
            agent_number=self.matcher.extract_agent_number(payload),
            destination_number=destination,
            caller_id=caller_id,
            start_time=parse_event_time(first_value(payload, ["start_time", "start_stamp", "call_start_time"])),
            end_time=parse_event_time(first_value(payload, ["end_time", "end_stamp", "call_end_time"])),
            duration=parse_seconds(first_value(payload, ["duration", "billsec", "call_duration"])),
            recording_url=first_value(payload, ["recording_url", "recording"]),
            disposition=first_value(payload, ["disposition", "hangup_cause"]),
            queue_id=first_value(payload, ["queue_id", "queue"]),
            queue_wait_time=parse_seconds(first_value(payload, ["queue_wait_time", "wait_time"])),
            transfer_data=payload.get("transfer_data") or payload.get("transfer"),
            ivr_data=payload.get("ivr_data") or payload.get("ivr"),
            payload=payload,
        )

    # =============================================================================
    # WEBHOOK ENTRY POINT
    # =============================================================================

    async def process_webhook(
        self, payload: Dict[str, Any], direction_hint: Optional[CallDirection] = None
    ) -> WebhookAck:
        """Reconcile one webhook and build the acknowledgement; never raises"""
        try:
            event = self.build_event(payload, direction_hint)
            logger.info(
                f"📞 Smartflo event {event.resolved.call_id}: {event.raw_status} -> {event.status.value} "
                f"({event.resolved.direction.value} via {event.resolved.direction_rule})"
            )
            call_log = await self.reconcile(event)
            return WebhookAck(
                success=True,
                message="Webhook processed successfully",
                callLogId=str(call_log["_id"]),
            )
        except LeadNotMatchedError as e:
            logger.warning(f"⚠️ Webhook not reconciled: {e}")
            return WebhookAck(success=True, message="Webhook received but no matching lead")
        except Exception as e:
            logger.error(f"❌ Webhook processing failed: {e}", exc_info=True)
            return WebhookAck(success=False, message="Webhook received but processing failed", error=str(e))

    # =============================================================================
    # RECONCILIATION
    # =============================================================================

    async def reconcile(self, event: CallEvent) -> Dict[str, Any]:
        """Find-or-create the call log for ``event``, merge it and update the lead"""
        existing = await self._find_existing(event)
        created = False

        if existing is None:
            lead, agent = await self._resolve_lead_and_agent(event)
            call_log = await self._create_call_log(event, lead, agent)
            if call_log is None:
                # Lost the insert race; the winner's record is there now
                existing = await self._find_existing(event)
                if existing is None:
                    raise RuntimeError(f"Call log for {event.resolved.call_id} vanished after duplicate key")
            else:
                created = True

        if existing is not None:
            call_log = await self._merge_into(existing, event)
            lead = await self.matcher.find_lead_by_id(call_log.get("lead_id"))

        lead = await self.update_lead_after_call(lead, call_log, created)
        await self._maybe_schedule_recording_fetch(call_log)
        invalidate_after_call_update(self.cache, call_log, lead)
        return call_log

    async def _find_existing(self, event: CallEvent) -> Optional[Dict[str, Any]]:
        db = self._get_db()
        resolved = event.resolved

        record = await db.call_logs.find_one({"provider_call_id": resolved.call_id})
        if record:
            return record

        if event.custom_identifier:
            query: Dict[str, Any] = {"custom_identifier": event.custom_identifier}
            if not resolved.call_id_synthesized:
                # A real call id may only claim a record that has no real id yet
                query["$or"] = [
                    {"provider_call_id": {"$exists": False}},
                    {"provider_call_id": None},
                    {"call_id_synthesized": True},
                ]
            return await db.call_logs.find_one(query, sort=[("created_at", -1)])
        return None

    async def _resolve_lead_and_agent(self, event: CallEvent) -> Tuple[Dict[str, Any], Optional[Dict[str, Any]]]:
        resolved = event.resolved
        token = parse_correlation_token(event.custom_identifier)

        lead = None
        if token:
            lead = await self.matcher.find_lead_by_id(token["lead_id"])
        if lead is None:
            lead = await self.matcher.find_lead_by_phone(resolved.counterparty_phone, resolved.direction)

        if lead is not None:
            agent = await self.matcher.match_agent(event.payload, lead, event.custom_identifier)
        else:
            agent = await self.matcher.match_agent_from_signals(event.payload, event.custom_identifier)
            if agent is None:
                agent = await self.matcher.find_admin_user()
            lead, _ = await self.matcher.match_or_create_lead(resolved.counterparty_phone, resolved.direction, agent)

        lead = await self.matcher.assign_lead_owner_if_unset(lead, agent)
        if agent is None:
            logger.error(f"No agent resolved for call {resolved.call_id} on lead {lead['lead_id']}, recording without owner")
        return lead, agent

    async def _create_call_log(
        self, event: CallEvent, lead: Dict[str, Any], agent: Optional[Dict[str, Any]]
    ) -> Optional[Dict[str, Any]]:
        """Insert a new call log; None when another request inserted the same call first"""
        db = self._get_db()
        resolved = event.resolved
        now = datetime.utcnow()

        doc = {
            "lead_id": lead["lead_id"],
            "user_id": str(agent["_id"]) if agent else None,
            "provider_call_id": resolved.call_id,
            "call_id_synthesized": resolved.call_id_synthesized,
            "custom_identifier": event.custom_identifier,
            "agent_number": event.agent_number,
            "destination_number": event.destination_number,
            "caller_id": event.caller_id,
            "virtual_number": resolved.virtual_number,
            "call_direction": resolved.direction.value,
            "direction_rule": resolved.direction_rule,
            "call_status": event.status.value,
            "raw_status": event.raw_status,
            "start_time": event.start_time,
            "end_time": event.end_time,
            "duration": event.duration or 0,
            "recording_url": event.recording_url,
            "disposition": event.disposition,
            "queue_id": event.queue_id,
            "queue_wait_time": event.queue_wait_time,
            "transfer_data": event.transfer_data,
            "ivr_data": event.ivr_data,
            "webhook_data": dict(event.payload),
            "event_history": [self._history_entry(event, now)],
            "source": "webhook",
            "created_at": now,
            "updated_at": now,
        }

        try:
            result = await db.call_logs.insert_one(doc)
        except DuplicateKeyError:
            logger.info(f"🔁 Call {resolved.call_id} was created concurrently, merging instead")
            return None

        doc["_id"] = result.inserted_id
        logger.info(
            f"✅ Created call log {result.inserted_id} ({resolved.direction.value}, {event.status.value}) "
            f"for lead {lead['lead_id']}"
        )
        return doc

    def _history_entry(self, event: CallEvent, received_at: datetime) -> Dict[str, Any]:
        return {
            "fingerprint": payload_fingerprint(event.payload),
            "status": event.status.value,
            "raw_status": event.raw_status,
            "received_at": received_at,
        }

    def compute_merge(self, existing: Dict[str, Any], event: CallEvent) -> Dict[str, Any]:
        """
        $set document merging ``event`` into ``existing``.

        Status and the outcome fields follow the latest event, except that a
        non-terminal event arriving after a terminal status is stale and may only
        fill gaps. Descriptive fields are never cleared by a sparser event.
        """
        resolved = event.resolved
        updates: Dict[str, Any] = {}

        stale = is_terminal_status(existing.get("call_status")) and not is_terminal_status(event.status.value)
        if event.raw_status is not None and not stale:
            updates["call_status"] = event.status.value
            updates["raw_status"] = event.raw_status

        for field in LAST_WRITE_WINS_FIELDS:
            value = getattr(event, field)
            if _is_empty(value):
                continue
            if stale and not _is_empty(existing.get(field)):
                continue
            updates[field] = value

        event_values = {
            **{field: getattr(event, field) for field in LAST_NON_EMPTY_FIELDS if field != "virtual_number"},
            "virtual_number": resolved.virtual_number,
        }
        for field, value in event_values.items():
            if not _is_empty(value):
                updates[field] = value

        if not resolved.call_id_synthesized and (
            existing.get("call_id_synthesized") or not existing.get("provider_call_id")
        ):
            updates["provider_call_id"] = resolved.call_id
            updates["call_id_synthesized"] = False

        # Inbound is the likelier misclassification, so only ever correct towards it
        if (
            resolved.direction == CallDirection.INBOUND
            and existing.get("call_direction") != CallDirection.INBOUND.value
            and (resolved.direction_explicit or not existing.get("custom_identifier"))
        ):
            logger.info(f"↩️ Correcting direction of call log {existing['_id']} to inbound ({resolved.direction_rule})")
            updates["call_direction"] = CallDirection.INBOUND.value
            updates["direction_rule"] = resolved.direction_rule

        updates["webhook_data"] = {**(existing.get("webhook_data") or {}), **event.payload}
        return updates

    async def _merge_into(self, existing: Dict[str, Any], event: CallEvent) -> Dict[str, Any]:
        db = self._get_db()
        now = datetime.utcnow()
        updates = self.compute_merge(existing, event)
        updates["updated_at"] = now

        history = list(existing.get("event_history") or [])
        entry = self._history_entry(event, now)
        if entry["fingerprint"] not in {h.get("fingerprint") for h in history}:
            updates["event_history"] = (history + [entry])[-EVENT_HISTORY_LIMIT:]
        update_doc: Dict[str, Any] = {"$set": updates}

        try:
            await db.call_logs.update_one({"_id": existing["_id"]}, update_doc)
        except DuplicateKeyError:
            # The real call id already belongs to another record; keep ours as is
            logger.warning(
                f"Call id {event.resolved.call_id} already used by another call log, "
                f"merging into {existing['_id']} without it"
            )
            updates.pop("provider_call_id", None)
            updates.pop("call_id_synthesized", None)
            await db.call_logs.update_one({"_id": existing["_id"]}, update_doc)

        merged = await db.call_logs.find_one({"_id": existing["_id"]})
        logger.info(f"🔄 Merged event into call log {existing['_id']} (status {merged.get('call_status')})")
        return merged

    # =============================================================================
    # LEAD SIDE EFFECTS
    # =============================================================================

    async def update_lead_after_call(
        self,
        lead: Optional[Dict[str, Any]],
        call_log: Dict[str, Any],
        created: bool,
    ) -> Optional[Dict[str, Any]]:
        """Call counters, last call fields, engagement status and callback scheduling"""
        if lead is None:
            logger.warning(f"Call log {call_log['_id']} points at missing lead {call_log.get('lead_id')}")
            return None

        db = self._get_db()
        now = datetime.utcnow()
        status = call_log.get("call_status")
        duration = call_log.get("duration") or 0

        update_set: Dict[str, Any] = {
            "last_call_date": now,
            "last_call_status": status,
            "updated_at": now,
        }
        update_doc: Dict[str, Any] = {"$set": update_set}

        # Counted once per call record, so replays do not inflate them
        if created:
            counter = (
                "total_inbound_calls"
                if call_log.get("call_direction") == CallDirection.INBOUND.value
                else "total_calls_made"
            )
            update_doc["$inc"] = {counter: 1}

        new_status = self._engagement_status(lead.get("status"), status, duration)
        if new_status:
            update_set["status"] = new_status
            logger.info(f"📈 Lead {lead['lead_id']} status {lead.get('status')} -> {new_status}")

        if status in CALLBACK_STATUSES and not lead.get("callback_scheduled"):
            update_set["callback_scheduled"] = now + timedelta(hours=self.settings.callback_delay_hours)
            update_set["callback_reason"] = f"Call {status.replace('_', ' ')}"
            logger.info(f"⏰ Callback scheduled for lead {lead['lead_id']}")

        await db.leads.update_one({"_id": lead["_id"]}, update_doc)
        return await db.leads.find_one({"_id": lead["_id"]})

    def _engagement_status(self, current: Optional[str], call_status: str, duration: int) -> Optional[str]:
        """Status a completed call advances the lead to, or None to leave it alone"""
        if call_status != CallStatus.COMPLETED.value or duration <= 0:
            return None
        threshold = self.settings.short_call_threshold_seconds
        target = LeadStatus.INTERESTED.value if duration > threshold else LeadStatus.MAYBE.value
        if engagement_rank(target) > engagement_rank(current):
            return target
        return None

    async def _maybe_schedule_recording_fetch(self, call_log: Dict[str, Any]) -> None:
        if self.recording_scheduler is None:
            return
        if call_log.get("call_status") != CallStatus.COMPLETED.value or call_log.get("recording_url"):
            return
        if call_log.get("call_id_synthesized") or not call_log.get("provider_call_id"):
            return
        try:
            await self.recording_scheduler.enqueue(str(call_log["_id"]), call_log["provider_call_id"])
        except Exception as e:
            logger.error(f"Could not queue recording fetch for call log {call_log['_id']}: {e}")

    # =============================================================================
    # READ QUERIES
    # =============================================================================

    def _scope_query(self, current_user: Dict[str, Any]) -> Dict[str, Any]:
        """Non-admin users only ever see their own calls"""
        if is_admin(current_user):
            return {}
        return {"user_id": str(current_user["_id"])}

    async def get_call_history(
        self,
        current_user: Dict[str, Any],
        page: int = 1,
        limit: int = 20,
        lead_id: Optional[str] = None,
        user_id: Optional[str] = None,
        call_status: Optional[str] = None,
        call_direction: Optional[str] = None,
        virtual_number: Optional[str] = None,
        has_recording: Optional[bool] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        db = self._get_db()
        query = self._scope_query(current_user)
        if lead_id:
            query["lead_id"] = lead_id
        if user_id and is_admin(current_user):
            query["user_id"] = user_id
        if virtual_number:
            query["virtual_number"] = virtual_number
        if has_recording is True:
            query["recording_url"] = {"$nin": [None, ""]}
        elif has_recording is False:
            query["recording_url"] = {"$in": [None, ""]}
        if call_status:
            query["call_status"] = call_status
        if call_direction:
            query["call_direction"] = call_direction
        if date_from or date_to:
            date_query = {}
            if date_from:
                date_query["$gte"] = date_from
            if date_to:
                date_query["$lte"] = date_to
            query["created_at"] = date_query

        page = max(1, page)
        limit = max(1, min(limit, self.max_page_size))
        skip = (page - 1) * limit

        total = await db.call_logs.count_documents(query)
        cursor = db.call_logs.find(query).sort("created_at", -1).skip(skip).limit(limit)
        calls = await cursor.to_list(length=limit)

        return {
            "calls": calls,
            "total": total,
            "page": page,
            "limit": limit,
            "pages": (total + limit - 1) // limit,
        }

    async def get_active_calls(self, current_user: Dict[str, Any]) -> List[Dict[str, Any]]:
        db = self._get_db()
        query = self._scope_query(current_user)
        query["call_status"] = {"$in": [s.value for s in ACTIVE_STATUSES]}
        cursor = db.call_logs.find(query).sort("created_at", -1)
        return await cursor.to_list(length=None)

    async def get_call_by_id(
        self, call_log_id: str, current_user: Optional[Dict[str, Any]] = None
    ) -> Optional[Dict[str, Any]]:
        """None when the id is malformed, unknown or (given a user) belongs to another agent"""
        if not ObjectId.is_valid(call_log_id):
            return None
        db = self._get_db()
        query = self._scope_query(current_user) if current_user is not None else {}
        query["_id"] = ObjectId(call_log_id)
        return await db.call_logs.find_one(query)

    async def get_call_stats(
        self,
        current_user: Dict[str, Any],
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        db = self._get_db()
        match = self._scope_query(current_user)
        if date_from or date_to:
            match["created_at"] = {}
            if date_from:
                match["created_at"]["$gte"] = date_from
            if date_to:
                match["created_at"]["$lte"] = date_to

        pipeline = [
            {"$match": match},
            {"$group": {
                "_id": {"status": "$call_status", "direction": "$call_direction"},
                "count": {"$sum": 1},
                "duration": {"$sum": "$duration"},
            }},
        ]
        rows = await db.call_logs.aggregate(pipeline).to_list(length=None)

        by_status: Dict[str, int] = {}
        stats = {"total_calls": 0, "inbound_calls": 0, "outbound_calls": 0, "total_duration": 0}
        for row in rows:
            status = row["_id"].get("status")
            direction = row["_id"].get("direction")
            by_status[status] = by_status.get(status, 0) + row["count"]
            stats["total_calls"] += row["count"]
            stats["total_duration"] += row.get("duration") or 0
            if direction == CallDirection.INBOUND.value:
                stats["inbound_calls"] += row["count"]
            else:
                stats["outbound_calls"] += row["count"]

        completed = by_status.get(CallStatus.COMPLETED.value, 0)
        missed = sum(by_status.get(s, 0) for s in (CallStatus.NO_ANSWER.value, CallStatus.BUSY.value))
        total = stats["total_calls"]
        stats.update({
            "completed_calls": completed,
            "missed_calls": missed,
            "average_duration": round(stats["total_duration"] / completed, 2) if completed else 0.0,
            "success_rate": round(completed / total * 100, 2) if total else 0.0,
            "by_status": by_status,
        })
        return stats
