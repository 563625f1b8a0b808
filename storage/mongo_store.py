"""
MongoDB target store for async operations.
Handles connection, indexing and state persistence for monitored targets.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorCollection, AsyncIOMotorDatabase
from pydantic import ValidationError
from pymongo.errors import ConnectionFailure

from monitor.models import MonitoredTarget
from storage.base import STATE_FIELDS, TargetStore

logger = structlog.get_logger(__name__)


class MongoTargetStore(TargetStore):
    """
    Async MongoDB store for monitored targets.
    Documents are keyed by target id in `_id`.
    """

    def __init__(self, connection_url: str, database_name: str, collection_name: str = "targets"):
        """
        Initialize MongoDB store.

        Args:
            connection_url: MongoDB connection URL
            database_name: Name of the database
            collection_name: Name of the collection
        """
        self.connection_url = connection_url
        self.database_name = database_name
        self.collection_name = collection_name
        self.client: Optional[AsyncIOMotorClient] = None
        self.database: Optional[AsyncIOMotorDatabase] = None
        self.collection: Optional[AsyncIOMotorCollection] = None

    async def connect(self) -> None:
        """Establish connection to MongoDB."""
        try:
            self.client = AsyncIOMotorClient(self.connection_url)
            self.database = self.client[self.database_name]
            self.collection = self.database[self.collection_name]

            # Test connection
            await self.client.admin.command('ping')
            logger.info("Successfully connected to MongoDB",
                        database=self.database_name,
                        collection=self.collection_name)

            await self._create_indexes()

        except ConnectionFailure as e:
            logger.error("Failed to connect to MongoDB", error=str(e))
            raise

    async def disconnect(self) -> None:
        """Close MongoDB connection."""
        if self.client:
            self.client.close()
            logger.info("Disconnected from MongoDB")

    async def _create_indexes(self) -> None:
        """Create indexes for the owner lookup and URL deduplication."""
        try:
            await self.collection.create_index("url", unique=True)
            await self.collection.create_index("owner_id")
            await self.collection.create_index([("is_active", 1), ("is_paused", 1)])
            logger.info("Successfully created MongoDB indexes")

        except Exception as e:
            logger.error("Failed to create indexes", error=str(e))
            raise

    @staticmethod
    def _to_document(target: MonitoredTarget) -> Dict[str, Any]:
        document = target.model_dump()
        document["_id"] = document.pop("id")
        return document

    @staticmethod
    def _from_document(document: Dict[str, Any]) -> MonitoredTarget:
        document = dict(document)
        document["id"] = str(document.pop("_id"))
        for field in ("last_checked_at", "last_new_listing_at"):
            value = document.get(field)
            # Mongo returns naive UTC datetimes
            if isinstance(value, datetime) and value.tzinfo is None:
                document[field] = value.replace(tzinfo=timezone.utc)
        return MonitoredTarget(**document)

    async def load_targets(self) -> List[MonitoredTarget]:
        """
        Load every stored target.

        Returns:
            List of targets; documents that fail validation are skipped
        """
        targets = []
        try:
            async for document in self.collection.find({}):
                try:
                    targets.append(self._from_document(document))
                except ValidationError as e:
                    logger.error("Skipping invalid target document", target_id=str(document.get("_id")), error=str(e))

            logger.debug("Loaded targets", count=len(targets))
            return targets

        except Exception as e:
            logger.error("Failed to load targets", error=str(e))
            raise

    async def save_target_state(self, target: MonitoredTarget) -> None:
        """Write the durable state fields of a target."""
        update_data = {field: getattr(target, field) for field in STATE_FIELDS}
        update_data["updated_at"] = datetime.now(timezone.utc)
        try:
            await self.collection.update_one({"_id": target.id}, {"$set": update_data})
        except Exception as e:
            logger.error("Failed to save target state", target_id=target.id, error=str(e))
            raise

    async def upsert_target(self, target: MonitoredTarget) -> None:
        """Insert a target or replace its configuration, keeping stored state."""
        document = self._to_document(target)
        state = {field: document.pop(field) for field in STATE_FIELDS}
        document.pop("_id")
        try:
            await self.collection.update_one(
                {"_id": target.id},
                {"$set": document, "$setOnInsert": state},
                upsert=True
            )
            logger.debug("Upserted target", target_id=target.id, url=target.url)
        except Exception as e:
            logger.error("Failed to upsert target", target_id=target.id, error=str(e))
            raise

    async def get_target(self, target_id: str) -> Optional[MonitoredTarget]:
        try:
            document = await self.collection.find_one({"_id": target_id})
            return self._from_document(document) if document else None
        except Exception as e:
            logger.error("Failed to retrieve target", target_id=target_id, error=str(e))
            raise

    async def targets_for_owner(self, owner_id: str) -> List[MonitoredTarget]:
        try:
            cursor = self.collection.find({"owner_id": owner_id}).sort("_id", 1)
            return [self._from_document(document) async for document in cursor]
        except Exception as e:
            logger.error("Failed to retrieve owner targets", owner_id=owner_id, error=str(e))
            raise
