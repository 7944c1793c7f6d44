# app/config/database.py - MongoDB connection and indexes for call reconciliation

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
import logging
from .settings import settings

logger = logging.getLogger(__name__)

# Global database client
_client: AsyncIOMotorClient = None
_database: AsyncIOMotorDatabase = None

async def connect_to_mongo():
    """Create database connection"""
    global _client, _database

    try:
        logger.info("🔌 Connecting to MongoDB...")

        _client = AsyncIOMotorClient(
            settings.mongodb_url,
            maxPoolSize=settings.mongodb_max_pool_size,
            minPoolSize=settings.mongodb_min_pool_size,
            maxIdleTimeMS=settings.mongodb_max_idle_time_ms,
            serverSelectionTimeoutMS=settings.mongodb_server_selection_timeout_ms
        )

        _database = _client[settings.database_name]

        # Test connection
        await _database.command("ping")
        logger.info("✅ Connected to MongoDB successfully")

    except Exception as e:
        logger.error(f"❌ Failed to connect to MongoDB: {e}")
        raise

def get_database() -> AsyncIOMotorDatabase:
    """Get database instance"""
    if _database is None:
        raise RuntimeError("Database not initialized. Call connect_to_mongo() first.")
    return _database

def set_database(database: AsyncIOMotorDatabase) -> None:
    """Install an already constructed database handle (scripts and tests)"""
    global _database
    _database = database

async def close_mongo_connection():
    """Close database connection"""
    global _client, _database
    if _client:
        _client.close()
        logger.info("🔌 MongoDB connection closed")
    _client = None
    _database = None

async def create_indexes(db: AsyncIOMotorDatabase = None):
    """Create the indexes the reconciler relies on"""
    db = db if db is not None else get_database()
    logger.info("📊 Creating database indexes...")

    # ============================================================================
    # CALL LOGS - provider_call_id must be unique; the field is omitted until
    # known so the sparse index skips records that only have a custom identifier
    # ============================================================================
    await db.call_logs.create_index("provider_call_id", unique=True, sparse=True)
    await db.call_logs.create_index("custom_identifier")
    await db.call_logs.create_index([("lead_id", 1), ("created_at", -1)])
    await db.call_logs.create_index([("user_id", 1), ("created_at", -1)])
    await db.call_logs.create_index([("call_status", 1), ("created_at", -1)])
    await db.call_logs.create_index("call_direction")
    await db.call_logs.create_index("virtual_number")
    logger.info("✅ Call log indexes created")

    # ============================================================================
    # LEADS / USERS
    # ============================================================================
    await db.leads.create_index("lead_id", unique=True)
    await db.leads.create_index("contact_number")
    await db.leads.create_index([("created_by", 1), ("created_at", -1)])
    await db.users.create_index("smartflo_agent_number")
    await db.users.create_index([("role", 1), ("is_active", 1)])
    logger.info("✅ Lead and user indexes created")

    # ============================================================================
    # RECORDING FETCH JOBS - one job per call log
    # ============================================================================
    await db.recording_fetch_jobs.create_index("call_log_id", unique=True)
    await db.recording_fetch_jobs.create_index([("status", 1), ("run_at", 1)])
    logger.info("✅ Recording job indexes created")

    # ============================================================================
    # SMARTFLO LEAD LISTS AND CAMPAIGNS
    # ============================================================================
    await db.smartflo_configs.create_index("lead_list_id")
    await db.smartflo_configs.create_index("campaign_id", sparse=True)
    logger.info("✅ Smartflo config indexes created")
