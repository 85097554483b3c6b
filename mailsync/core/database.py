"""Database connection manager."""

import logging
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient

from mailsync.core.config import settings

logger = logging.getLogger(__name__)


class DatabaseManager:
    """Async MongoDB connection manager for the API process."""

    def __init__(self, uri: Optional[str] = None, database: Optional[str] = None):
        self.uri = uri or settings.mongodb_uri
        self.database_name = database or settings.mongodb_database
        self.client: Optional[AsyncIOMotorClient] = None
        self.db = None

    async def connect(self):
        """Establish database connection."""
        try:
            if self.client is None:
                self.client = AsyncIOMotorClient(self.uri)
                # Test connection
                await self.client.admin.command('ping')
            self.db = self.client[self.database_name]
            logger.info(f"Connected to MongoDB: {self.database_name}")
        except Exception as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            raise

    async def disconnect(self):
        """Close database connection."""
        if self.client:
            self.client.close()
            self.client = None
            self.db = None
            logger.info("MongoDB connection closed")

    async def ping(self) -> bool:
        if self.client is None:
            return False
        try:
            await self.client.admin.command('ping')
            return True
        except Exception as e:
            logger.warning(f"MongoDB ping failed: {e}")
            return False
