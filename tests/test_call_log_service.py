from datetime import datetime

import pytest
from bson import ObjectId

from app.models.call_log import CallDirection
from app.services.call_log_service import CallLogService, parse_event_time, parse_seconds
from app.utils.correlation_token import build_correlation_token


def inbound_payload(**overrides):
    payload = {
        "call_id": "IN-1",
        "caller_id_number": "9999999999",
        "call_to_number": "8888888888",
        "call_status": "answered",
    }
    payload.update(overrides)
    return payload


def outbound_payload(token, **overrides):
    payload = {
        "call_id": "OUT-1",
        "custom_identifier": token,
        "destination_number": "9876543210",
        "agent_number": "9123456789",
        "call_status": "ringing",
    }
    payload.update(overrides)
    return payload


async def _call_log(db, ack):
    assert ack.success is True, ack
    return await db.call_logs.find_one({"_id": ObjectId(ack.callLogId)})


class TestEventParsing:
    def test_parse_event_time_formats(self):
        assert parse_event_time("2024-05-01 10:15:00") == datetime(2024, 5, 1, 10, 15)
        assert parse_event_time("2024-05-01T10:15:00+05:30") == datetime(2024, 5, 1, 4, 45)
        assert parse_event_time(1714558500) == datetime(2024, 5, 1, 10, 15)
        assert parse_event_time("1714558500000") == datetime(2024, 5, 1, 10, 15)
        assert parse_event_time("") is None
        assert parse_event_time("not a date") is None

    def test_parse_seconds(self):
        assert parse_seconds("95") == 95
        assert parse_seconds(12.7) == 12
        assert parse_seconds("-4") == 0
        assert parse_seconds("abc") is None
        assert parse_seconds(None) is None

    def test_status_falls_back_to_event_type(self, call_log_service):
        event = call_log_service.build_event({"call_id": "X", "event_type": "call.inbound.answered"})
        assert event.raw_status == "answered"
        assert event.status.value == "answered"
        assert event.resolved.direction == CallDirection.INBOUND

    def test_unknown_status_is_initiated(self, call_log_service):
        event = call_log_service.build_event({"call_id": "X", "call_status": "teleported"})
        assert event.status.value == "initiated"
        assert event.raw_status == "teleported"


class TestInboundScenarios:
    async def test_unknown_caller_creates_placeholder_owned_by_admin(self, db, call_log_service, admin_user):
        ack = await call_log_service.process_webhook(inbound_payload())
        assert ack.message == "Webhook processed successfully"

        call_log = await _call_log(db, ack)
        assert call_log["call_direction"] == "inbound"
        assert call_log["virtual_number"] == "8888888888"
        assert call_log["caller_id"] == "9999999999"
        assert call_log["user_id"] == str(admin_user["_id"])
        assert call_log["call_status"] == "answered"

        lead = await db.leads.find_one({"lead_id": call_log["lead_id"]})
        assert lead["name"] == "Unknown Caller (9999999999)"
        assert lead["created_by"] == str(admin_user["_id"])
        assert lead["total_inbound_calls"] == 1
        assert lead["total_calls_made"] == 0

    async def test_known_caller_attributed_to_answering_agent(self, db, call_log_service, lead, other_agent):
        ack = await call_log_service.process_webhook(
            inbound_payload(caller_id_number="+919876543210", agent_number="9000000001")
        )
        call_log = await _call_log(db, ack)
        assert call_log["lead_id"] == "LD-1001"
        assert call_log["user_id"] == str(other_agent["_id"])

    async def test_no_users_at_all_is_acknowledged_without_record(self, db, call_log_service):
        ack = await call_log_service.process_webhook(inbound_payload())
        assert ack.success is True
        assert ack.message == "Webhook received but no matching lead"
        assert ack.callLogId is None
        assert await db.call_logs.count_documents({}) == 0

    async def test_unknown_caller_without_admin_is_recorded_without_owner(self, db, call_log_service, agent_user):
        ack = await call_log_service.process_webhook(inbound_payload())
        assert ack.message == "Webhook processed successfully"

        call_log = await _call_log(db, ack)
        assert call_log["user_id"] is None
        lead = await db.leads.find_one({"lead_id": call_log["lead_id"]})
        assert lead["created_by"] is None
        assert lead["total_inbound_calls"] == 1

    async def test_inbound_endpoint_hint(self, db, call_log_service, lead, admin_user):
        # No inbound signal in the payload itself
        ack = await call_log_service.process_webhook(
            {"call_id": "HINT-1", "caller_number": "9876543210", "call_status": "ringing"},
            CallDirection.INBOUND,
        )
        call_log = await _call_log(db, ack)
        assert call_log["call_direction"] == "inbound"
        assert call_log["direction_rule"] == "endpoint_hint"
        assert call_log["lead_id"] == "LD-1001"


class TestOutboundScenarios:
    async def test_completed_outbound_call_with_token(self, db, call_log_service, lead, agent_user, monkeypatch):
        monkeypatch.setattr(call_log_service.settings, "short_call_threshold_seconds", 30)
        token = build_correlation_token("LD-1001", timestamp_ms=1714558500000)

        ack = await call_log_service.process_webhook(
            outbound_payload(token, call_status="completed", duration="95", destination_number="9000000099")
        )
        call_log = await _call_log(db, ack)
        assert call_log["lead_id"] == "LD-1001"
        assert call_log["user_id"] == str(agent_user["_id"])
        assert call_log["call_direction"] == "outbound"
        assert call_log["call_status"] == "completed"
        assert call_log["duration"] == 95

        updated = await db.leads.find_one({"lead_id": "LD-1001"})
        assert updated["status"] == "Interested"
        assert updated["total_calls_made"] == 1
        assert updated["last_call_status"] == "completed"
        assert "callback_scheduled" not in updated

        job = await db.recording_fetch_jobs.find_one({"call_log_id": ack.callLogId})
        assert job["provider_call_id"] == "OUT-1"
        assert job["status"] == "pending"

    async def test_short_call_marks_lead_maybe(self, db, call_log_service, lead, monkeypatch):
        monkeypatch.setattr(call_log_service.settings, "short_call_threshold_seconds", 30)
        token = build_correlation_token("LD-1001")
        await call_log_service.process_webhook(outbound_payload(token, call_status="completed", duration=12))
        updated = await db.leads.find_one({"lead_id": "LD-1001"})
        assert updated["status"] == "Maybe"

    async def test_engagement_never_moves_down(self, db, call_log_service, lead):
        await db.leads.update_one({"lead_id": "LD-1001"}, {"$set": {"status": "Interested"}})
        token = build_correlation_token("LD-1001")
        await call_log_service.process_webhook(outbound_payload(token, call_status="completed", duration=5))
        updated = await db.leads.find_one({"lead_id": "LD-1001"})
        assert updated["status"] == "Interested"

    async def test_no_answer_schedules_callback(self, db, call_log_service, lead):
        token = build_correlation_token("LD-1001")
        await call_log_service.process_webhook(outbound_payload(token, call_status="no-answer"))

        updated = await db.leads.find_one({"lead_id": "LD-1001"})
        assert updated["last_call_status"] == "no_answer"
        assert updated["callback_scheduled"] > datetime.utcnow()
        assert updated["callback_reason"] == "Call no answer"

    async def test_existing_callback_is_kept(self, db, call_log_service, lead):
        scheduled = datetime(2030, 1, 1)
        await db.leads.update_one({"lead_id": "LD-1001"}, {"$set": {"callback_scheduled": scheduled}})
        token = build_correlation_token("LD-1001")
        await call_log_service.process_webhook(outbound_payload(token, call_status="busy"))
        await call_log_service.process_webhook(outbound_payload(token, call_id="OUT-2", call_status="failed"))
        updated = await db.leads.find_one({"lead_id": "LD-1001"})
        assert updated["callback_scheduled"] == scheduled

    async def test_outbound_without_destination_skips_sentinel_lead(self, db, call_log_service, admin_user):
        await db.leads.insert_one({"lead_id": "LD-0500", "contact_number": "Unknown", "total_calls_made": 0})

        ack = await call_log_service.process_webhook({"call_id": "OUT-8", "direction": "outbound", "call_status": "ringing"})

        assert ack.success is True
        assert ack.message == "Webhook received but no matching lead"
        assert await db.call_logs.count_documents({}) == 0
        sentinel = await db.leads.find_one({"lead_id": "LD-0500"})
        assert sentinel["total_calls_made"] == 0

    async def test_outbound_without_lead_is_not_matched(self, db, call_log_service, admin_user):
        ack = await call_log_service.process_webhook(
            {"call_id": "OUT-9", "direction": "outbound", "destination_number": "9000000099", "call_status": "ringing"}
        )
        assert ack.success is True
        assert ack.message == "Webhook received but no matching lead"
        assert await db.call_logs.count_documents({}) == 0
        assert await db.leads.count_documents({}) == 0


class TestIdempotenceAndOrdering:
    async def test_replays_produce_one_record_and_one_count(self, db, call_log_service, lead):
        token = build_correlation_token("LD-1001")
        payload = outbound_payload(token, call_status="completed", duration=40)

        acks = [await call_log_service.process_webhook(dict(payload)) for _ in range(3)]

        assert len({ack.callLogId for ack in acks}) == 1
        assert await db.call_logs.count_documents({}) == 1
        call_log = await _call_log(db, acks[0])
        assert len(call_log["event_history"]) == 1
        updated = await db.leads.find_one({"lead_id": "LD-1001"})
        assert updated["total_calls_made"] == 1

    async def test_replays_without_any_call_id_produce_one_record(self, db, call_log_service, admin_user):
        payload = {
            "caller_id_number": "9999999999",
            "call_to_number": "8888888888",
            "call_status": "completed",
            "duration": 40,
        }

        acks = [await call_log_service.process_webhook(dict(payload)) for _ in range(3)]

        assert len({ack.callLogId for ack in acks}) == 1
        assert await db.call_logs.count_documents({}) == 1
        call_log = await _call_log(db, acks[0])
        assert call_log["call_id_synthesized"] is True
        lead = await db.leads.find_one({"lead_id": call_log["lead_id"]})
        assert lead["total_inbound_calls"] == 1

    @pytest.mark.parametrize("order", [("ringing", "completed"), ("completed", "ringing")])
    async def test_event_order_does_not_change_outcome(self, db, call_log_service, lead, order):
        token = build_correlation_token("LD-1001")
        events = {
            "ringing": outbound_payload(token, call_status="ringing", start_time="2024-05-01 10:00:00"),
            "completed": outbound_payload(
                token,
                call_status="completed",
                duration=80,
                end_time="2024-05-01 10:01:20",
                recording_url="https://recordings.example.com/out-1.mp3",
            ),
        }
        for name in order:
            await call_log_service.process_webhook(events[name])

        assert await db.call_logs.count_documents({}) == 1
        call_log = await db.call_logs.find_one({"provider_call_id": "OUT-1"})
        assert call_log["call_status"] == "completed"
        assert call_log["duration"] == 80
        assert call_log["start_time"] == datetime(2024, 5, 1, 10, 0)
        assert call_log["end_time"] == datetime(2024, 5, 1, 10, 1, 20)
        assert call_log["recording_url"] == "https://recordings.example.com/out-1.mp3"
        assert len(call_log["event_history"]) == 2

    async def test_sparse_event_does_not_clear_fields(self, db, call_log_service, lead):
        token = build_correlation_token("LD-1001")
        await call_log_service.process_webhook(outbound_payload(token, virtual_number="8068000000"))
        await call_log_service.process_webhook({"call_id": "OUT-1", "call_status": "answered"})

        call_log = await db.call_logs.find_one({"provider_call_id": "OUT-1"})
        assert call_log["call_status"] == "answered"
        assert call_log["virtual_number"] == "8068000000"
        assert call_log["custom_identifier"] == token
        assert call_log["webhook_data"]["agent_number"] == "9123456789"

    async def test_direction_corrected_to_inbound(self, db, call_log_service, lead, admin_user):
        await call_log_service.process_webhook(
            {"call_id": "DIR-1", "destination_number": "9876543210", "call_status": "ringing"}
        )
        call_log = await db.call_logs.find_one({"provider_call_id": "DIR-1"})
        assert call_log["call_direction"] == "outbound"

        await call_log_service.process_webhook(
            {"call_id": "DIR-1", "direction": "inbound", "caller_id_number": "9876543210", "call_status": "answered"}
        )
        call_log = await db.call_logs.find_one({"provider_call_id": "DIR-1"})
        assert call_log["call_direction"] == "inbound"
        assert call_log["direction_rule"] == "explicit_direction"

    async def test_tokened_outbound_not_flipped_by_inference(self, db, call_log_service, lead):
        token = build_correlation_token("LD-1001")
        await call_log_service.process_webhook(outbound_payload(token))
        # Caller plus called number would infer inbound, but the record carries our token
        await call_log_service.process_webhook(
            {"call_id": "OUT-1", "caller_number": "9876543210", "did": "8068000000", "call_status": "answered"}
        )
        call_log = await db.call_logs.find_one({"provider_call_id": "OUT-1"})
        assert call_log["call_direction"] == "outbound"

    async def test_synthesized_id_upgraded_to_real_id(self, db, call_log_service, lead):
        token = build_correlation_token("LD-1001")
        first = outbound_payload(token)
        del first["call_id"]
        ack = await call_log_service.process_webhook(first)
        call_log = await _call_log(db, ack)
        assert call_log["call_id_synthesized"] is True
        assert call_log["provider_call_id"].startswith("SYN_")

        second = await call_log_service.process_webhook(outbound_payload(token, call_id="REAL-7", call_status="answered"))
        assert second.callLogId == ack.callLogId
        call_log = await _call_log(db, second)
        assert call_log["provider_call_id"] == "REAL-7"
        assert call_log["call_id_synthesized"] is False
        assert await db.call_logs.count_documents({}) == 1

    async def test_lost_insert_race_merges_into_winner(self, db, call_log_service, lead, monkeypatch):
        token = build_correlation_token("LD-1001")
        first = await call_log_service.process_webhook(outbound_payload(token))

        original = call_log_service._find_existing
        calls = []

        async def miss_once(event):
            calls.append(event)
            if len(calls) == 1:
                return None
            return await original(event)

        monkeypatch.setattr(call_log_service, "_find_existing", miss_once)
        second = await call_log_service.process_webhook(outbound_payload(token, call_status="answered"))

        assert second.success is True
        assert second.callLogId == first.callLogId
        assert len(calls) == 2
        assert await db.call_logs.count_documents({}) == 1
        call_log = await _call_log(db, second)
        assert call_log["call_status"] == "answered"
        updated = await db.leads.find_one({"lead_id": "LD-1001"})
        assert updated["total_calls_made"] == 1


class TestReadQueries:
    async def _seed(self, call_log_service, agent_user, other_agent):
        token = build_correlation_token("LD-1001")
        await call_log_service.process_webhook(outbound_payload(token, call_id="A-1", call_status="completed", duration=60))
        await call_log_service.process_webhook(
            outbound_payload(token, call_id="A-2", agent_number="9000000001", call_status="ringing")
        )

    async def test_history_is_scoped_to_agent(self, call_log_service, lead, agent_user, other_agent, admin_user):
        await self._seed(call_log_service, agent_user, other_agent)

        own = await call_log_service.get_call_history(agent_user)
        assert own["total"] == 1
        assert own["calls"][0]["provider_call_id"] == "A-1"

        everything = await call_log_service.get_call_history(admin_user)
        assert everything["total"] == 2
        assert everything["pages"] == 1

        filtered = await call_log_service.get_call_history(admin_user, user_id=str(other_agent["_id"]))
        assert [c["provider_call_id"] for c in filtered["calls"]] == ["A-2"]

    async def test_active_calls_and_stats(self, call_log_service, lead, agent_user, other_agent, admin_user):
        await self._seed(call_log_service, agent_user, other_agent)

        active = await call_log_service.get_active_calls(admin_user)
        assert [c["provider_call_id"] for c in active] == ["A-2"]
        assert await call_log_service.get_active_calls(agent_user) == []

        stats = await call_log_service.get_call_stats(admin_user)
        assert stats["total_calls"] == 2
        assert stats["completed_calls"] == 1
        assert stats["outbound_calls"] == 2
        assert stats["success_rate"] == 50.0
        assert stats["average_duration"] == 60.0

    async def test_get_call_by_id_scoping(self, call_log_service, lead, agent_user, other_agent):
        await self._seed(call_log_service, agent_user, other_agent)
        own = (await call_log_service.get_call_history(agent_user))["calls"][0]
        call_log_id = str(own["_id"])

        assert (await call_log_service.get_call_by_id(call_log_id, agent_user))["provider_call_id"] == "A-1"
        assert await call_log_service.get_call_by_id(call_log_id, other_agent) is None
        assert await call_log_service.get_call_by_id(call_log_id) is not None
        assert await call_log_service.get_call_by_id("not-an-id") is None


def test_service_builds_default_matcher():
    service = CallLogService()
    assert service.matcher is not None
    assert service.recording_scheduler is None
