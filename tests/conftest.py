"""
Shared fixtures. MongoDB is replaced by mongomock-motor and the Smartflo API
by httpx.MockTransport or AsyncMock; nothing leaves the process.
"""
from datetime import datetime
from unittest.mock import AsyncMock

import pytest
from mongomock_motor import AsyncMongoMockClient

from app.config.database import create_indexes, set_database
from app.config.settings import settings
from app.services.cache_service import CacheStore
from app.services.call_log_service import CallLogService
from app.utils.recording_scheduler import RecordingFetchScheduler
from app.utils.security import security


@pytest.fixture
async def db():
    database = AsyncMongoMockClient()["telecrm_test"]
    set_database(database)
    await create_indexes(database)
    yield database
    set_database(None)


@pytest.fixture
def cache():
    return CacheStore(default_ttl=300, check_period=320, max_keys=1000)


@pytest.fixture
def recording_client():
    client = AsyncMock()
    client.get_recording.return_value = None
    return client


@pytest.fixture
def recording_scheduler(db, cache, recording_client):
    # Never started: jobs are persisted but no timers fire during tests
    return RecordingFetchScheduler(recording_client, cache=cache, delay_seconds=30, max_attempts=3)


@pytest.fixture
def call_log_service(db, cache, recording_scheduler):
    return CallLogService(cache=cache, recording_scheduler=recording_scheduler)


@pytest.fixture
def webhook_settings(monkeypatch):
    """Default webhook policy: no secret, permissive, no IP allow-list"""
    monkeypatch.setattr(settings, "tata_webhook_secret", None)
    monkeypatch.setattr(settings, "tata_webhook_strict_signature", False)
    monkeypatch.setattr(settings, "tata_webhook_allowed_ips", "")
    return settings


async def _insert_user(db, **fields):
    doc = {
        "email": f"{fields.get('role', 'user')}@example.com",
        "first_name": "Test",
        "last_name": fields.get("role", "user").title(),
        "is_active": True,
        "created_at": datetime.utcnow(),
        **fields,
    }
    result = await db.users.insert_one(doc)
    doc["_id"] = result.inserted_id
    return doc


@pytest.fixture
async def admin_user(db):
    return await _insert_user(db, role="admin", email="admin@example.com")


@pytest.fixture
async def agent_user(db):
    return await _insert_user(
        db,
        role="user",
        email="agent@example.com",
        smartflo_agent_number="9123456789",
        smartflo_caller_id="918068000000",
    )


@pytest.fixture
async def other_agent(db):
    return await _insert_user(db, role="user", email="other@example.com", smartflo_agent_number="9000000001")


@pytest.fixture
async def lead(db, agent_user):
    doc = {
        "lead_id": "LD-1001",
        "name": "Asha Rao",
        "contact_number": "9876543210",
        "status": "new",
        "created_by": str(agent_user["_id"]),
        "assigned_to": str(agent_user["_id"]),
        "total_calls_made": 0,
        "total_inbound_calls": 0,
        "created_at": datetime.utcnow(),
    }
    result = await db.leads.insert_one(doc)
    doc["_id"] = result.inserted_id
    return doc


@pytest.fixture
def auth_headers():
    def _headers(user):
        token = security.create_access_token({"sub": str(user["_id"]), "email": user["email"]})
        return {"Authorization": f"Bearer {token}"}
    return _headers


@pytest.fixture
async def client(db, webhook_settings):
    """ASGI client against the real app; the lifespan is skipped so services are built here"""
    import httpx
    from app.main import app, init_services

    init_services(app)
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as http_client:
        yield http_client
