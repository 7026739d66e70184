import logging
from typing import Optional

from beanie import init_beanie
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from leadflow.config import config
from leadflow.models.automation import AutomationDocument
from leadflow.models.execution import ExecutionDocument
from leadflow.models.scheduled_action import ScheduledActionDocument

logger = logging.getLogger(__name__)

_database: Optional[AsyncIOMotorDatabase] = None


async def init_db():
    global _database
    try:
        logger.info("Initializing database connection...")
        client = AsyncIOMotorClient(config.MONGO_URI, tz_aware=True)

        # Test the connection
        await client.admin.command("ping")
        logger.info("MongoDB connection test successful.")

        _database = client[config.DB_NAME]
        await init_beanie(
            database=_database,
            document_models=[AutomationDocument, ExecutionDocument, ScheduledActionDocument],
        )
        logger.info("MongoDB connection established and Beanie initialized.")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}", exc_info=True)
        raise


def get_database() -> AsyncIOMotorDatabase:
    if _database is None:
        raise RuntimeError("Database not initialized; call init_db() first")
    return _database
