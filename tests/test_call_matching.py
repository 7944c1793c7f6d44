import pytest

from app.models.call_log import CallDirection
from app.services.call_direction_service import UNKNOWN_PHONE
from app.services.call_matching_service import CallMatchingService, LeadNotMatchedError, phone_variants
from app.utils.correlation_token import build_correlation_token


@pytest.fixture
def matcher(db):
    return CallMatchingService()


class TestPhoneVariants:
    def test_ten_digit_number(self):
        variants = phone_variants("9876543210")
        assert variants[0] == "9876543210"
        assert {"919876543210", "+919876543210", "09876543210"} <= set(variants)

    def test_international_number(self):
        variants = phone_variants("+91 98765 43210")
        assert "9876543210" in variants
        assert "919876543210" in variants

    def test_empty(self):
        assert phone_variants(None) == []
        assert phone_variants("") == []


class TestLeadMatching:
    async def test_finds_lead_by_any_spelling(self, matcher, lead):
        found = await matcher.find_lead_by_phone("+919876543210")
        assert found["lead_id"] == "LD-1001"

    async def test_outbound_without_lead_is_not_matched(self, matcher, db, admin_user):
        with pytest.raises(LeadNotMatchedError):
            await matcher.match_or_create_lead("9000000000", CallDirection.OUTBOUND, admin_user)
        assert await db.leads.count_documents({}) == 0

    async def test_inbound_without_owner_is_not_matched(self, matcher, db):
        with pytest.raises(LeadNotMatchedError):
            await matcher.match_or_create_lead("9999999999", CallDirection.INBOUND, None)

    async def test_inbound_without_agent_gets_ownerless_placeholder(self, matcher, db, agent_user):
        lead, created = await matcher.match_or_create_lead("9999999999", CallDirection.INBOUND, None)
        assert created is True
        assert lead["created_by"] is None
        assert lead["assigned_to"] is None

    async def test_sentinel_lead_only_matches_inbound(self, matcher, db):
        await db.leads.insert_one({"lead_id": "LD-0500", "contact_number": UNKNOWN_PHONE})
        assert (await matcher.find_lead_by_phone(UNKNOWN_PHONE, CallDirection.INBOUND))["lead_id"] == "LD-0500"
        assert await matcher.find_lead_by_phone(UNKNOWN_PHONE, CallDirection.OUTBOUND) is None
        assert await matcher.find_lead_by_phone(UNKNOWN_PHONE) is None

    async def test_inbound_unknown_caller_gets_placeholder(self, matcher, db, admin_user):
        lead, created = await matcher.match_or_create_lead("9999999999", CallDirection.INBOUND, admin_user)

        assert created is True
        assert lead["name"] == "Unknown Caller (9999999999)"
        assert lead["lead_id"].startswith("LD-")
        assert lead["source"] == "INCOMING_CALL"
        assert lead["created_by"] == str(admin_user["_id"])

        again, created_again = await matcher.match_or_create_lead("9999999999", CallDirection.INBOUND, admin_user)
        assert created_again is False
        assert again["lead_id"] == lead["lead_id"]
        assert await db.leads.count_documents({}) == 1

    async def test_lead_ids_are_sequential(self, matcher, admin_user):
        first, _ = await matcher.match_or_create_lead("9111111111", CallDirection.INBOUND, admin_user)
        second, _ = await matcher.match_or_create_lead("9222222222", CallDirection.INBOUND, admin_user)
        assert first["lead_id"] == "LD-0001"
        assert second["lead_id"] == "LD-0002"

    async def test_assign_owner_only_when_unset(self, matcher, db, agent_user, other_agent):
        await db.leads.insert_one({"lead_id": "LD-2000", "contact_number": "9333333333", "created_by": None})
        lead = await db.leads.find_one({"lead_id": "LD-2000"})

        lead = await matcher.assign_lead_owner_if_unset(lead, agent_user)
        assert lead["created_by"] == str(agent_user["_id"])

        lead = await matcher.assign_lead_owner_if_unset(lead, other_agent)
        stored = await db.leads.find_one({"lead_id": "LD-2000"})
        assert stored["created_by"] == str(agent_user["_id"])


class TestAgentMatching:
    async def test_agent_number_wins(self, matcher, lead, agent_user, other_agent):
        token = build_correlation_token("LD-1001", str(agent_user["_id"]))
        agent = await matcher.match_agent({"agent_number": "+919000000001"}, lead, token)
        assert agent["_id"] == other_agent["_id"]

    async def test_answered_agent_object(self, matcher, lead, other_agent):
        payload = {"answered_agent": {"name": "Other", "number": "9000000001"}}
        assert CallMatchingService.extract_agent_number(payload) == "9000000001"
        agent = await matcher.match_agent(payload, lead)
        assert agent["_id"] == other_agent["_id"]

    async def test_token_user_when_no_agent_number(self, matcher, other_agent, admin_user):
        token = build_correlation_token("LD-1001", str(other_agent["_id"]))
        agent = await matcher.match_agent({}, None, token)
        assert agent["_id"] == other_agent["_id"]

    async def test_unmapped_agent_number_falls_back_to_lead_creator(self, matcher, lead, agent_user, admin_user):
        agent = await matcher.match_agent({"agent_number": "9555555555"}, lead)
        assert agent["_id"] == agent_user["_id"]

    async def test_admin_fallback(self, matcher, admin_user):
        agent = await matcher.match_agent({}, {"lead_id": "LD-9", "created_by": None})
        assert agent["_id"] == admin_user["_id"]

    async def test_no_users_at_all(self, matcher):
        assert await matcher.match_agent({}, None) is None
