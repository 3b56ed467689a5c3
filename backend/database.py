import logging
from typing import Optional
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING

from core.config import settings

logger = logging.getLogger(__name__)

# ===== CLIENT INSTANCES =====
async_client: Optional[AsyncIOMotorClient] = None
async_database: Optional[AsyncIOMotorDatabase] = None

# ===== INITIALIZATION FLAGS =====
_async_initialized = False
_indexes_created = False


# ============================================
# CLIENT INITIALIZATION
# ============================================

def create_client(app_name: str = "ab_engine_async") -> AsyncIOMotorClient:
    """Build a motor client from settings (does not connect until first use)"""
    return AsyncIOMotorClient(
        settings.MONGODB_URI,
        maxPoolSize=settings.DB_MAX_POOL_SIZE,
        minPoolSize=settings.DB_MIN_POOL_SIZE,
        maxIdleTimeMS=settings.DB_MAX_IDLE_TIME_MS,
        connectTimeoutMS=settings.DB_CONNECT_TIMEOUT_MS,
        serverSelectionTimeoutMS=settings.DB_SERVER_SELECTION_TIMEOUT_MS,
        retryWrites=True,
        retryReads=True,
        appName=app_name
    )


def initialize_async_client() -> AsyncIOMotorClient:
    """Initialize the API's async MongoDB client (call once at startup)"""
    global async_client, async_database, _async_initialized

    if async_client is not None and _async_initialized:
        return async_client

    try:
        async_client = create_client()
        async_database = async_client[settings.MONGODB_DATABASE]
        _async_initialized = True
        logger.info("✅ Async MongoDB client initialized")

    except Exception as e:
        logger.error(f"❌ Failed to initialize async MongoDB client: {e}")
        raise

    return async_client


def get_async_database() -> AsyncIOMotorDatabase:
    """Get async database instance"""
    if async_database is None:
        initialize_async_client()
    return async_database


# ============================================
# INDEXES
# ============================================

async def ensure_indexes(db: Optional[AsyncIOMotorDatabase] = None):
    """Create the indexes the experiment engine relies on"""
    global _indexes_created

    if _indexes_created and db is None:
        return

    db = db if db is not None else get_async_database()

    try:
        logger.info("🔧 Creating A/B testing indexes...")

        await db.ab_tests.create_index([("owner_id", ASCENDING)])
        await db.ab_tests.create_index([("status", ASCENDING)])
        await db.ab_tests.create_index([("created_at", DESCENDING)])

        await db.ab_test_variants.create_index([("experiment_id", ASCENDING)])

        # recipient -> assignments fan-out index used by event ingestion
        await db.ab_test_segments.create_index(
            [("experiment_id", ASCENDING), ("recipient_email", ASCENDING)], unique=True
        )
        await db.ab_test_segments.create_index([("recipient_email", ASCENDING)])
        await db.ab_test_segments.create_index([("variant_id", ASCENDING)])

        await db.ab_test_results.create_index([("variant_id", ASCENDING)], unique=True)
        await db.ab_test_results.create_index([("experiment_id", ASCENDING)])

        await db.ab_test_insights.create_index(
            [("experiment_id", ASCENDING), ("created_at", DESCENDING)]
        )

        _indexes_created = True
        logger.info("✅ A/B testing indexes created successfully")

    except Exception as e:
        logger.error(f"❌ Failed to create indexes: {e}")
        # Don't raise - indexes are optimization, not critical


# ============================================
# HEALTH CHECK
# ============================================

async def ping_database() -> bool:
    """Test async database connectivity"""
    try:
        if async_client is None:
            initialize_async_client()
        await async_client.admin.command('ping')
        return True
    except Exception as e:
        logger.error(f"❌ Async database connection failed: {e}")
        return False


# ============================================
# GRACEFUL SHUTDOWN
# ============================================

def close_async_client():
    """Close async client connections"""
    global async_client, async_database, _async_initialized
    if async_client:
        async_client.close()
        async_client = None
        async_database = None
        _async_initialized = False
        logger.info("✅ Async MongoDB client closed")


__all__ = [
    'create_client',
    'initialize_async_client',
    'get_async_database',
    'ensure_indexes',
    'ping_database',
    'close_async_client',
]
