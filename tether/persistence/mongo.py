"""
MongoDB-backed integration store.

Collections:
- integrations: IntegrationConfig documents, unique on (user_id, provider)
- sync_cursors: SyncCursor documents, unique on (user_id, provider, resource_type)
- sync_items: item ledger, one document per (user_id, provider, resource_type, item_id)
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from pydantic import SecretStr

from tether.integrations.models import IntegrationConfig, SyncCursor

logger = logging.getLogger(__name__)


def _config_to_doc(config: IntegrationConfig) -> dict[str, Any]:
    doc = config.model_dump()
    for key, value in doc.items():
        if isinstance(value, SecretStr):
            doc[key] = value.get_secret_value()
    return doc


def _strip_id(doc: dict[str, Any]) -> dict[str, Any]:
    doc.pop("_id", None)
    return doc


class MongoIntegrationStore:
    """
    Integration store on MongoDB via motor.

    Connects lazily on first use.
    """

    def __init__(self, mongodb_url: str, database_name: str = "tether"):
        """
        Initialize the store.

        Args:
            mongodb_url: MongoDB connection URL
            database_name: Database name
        """
        self._mongodb_url = mongodb_url
        self._database_name = database_name
        self._client = None
        self._db = None

    async def connect(self) -> None:
        """Connect to MongoDB and ensure indexes."""
        try:
            from motor.motor_asyncio import AsyncIOMotorClient
        except ImportError:
            raise ImportError(
                "motor package is required for MongoDB. Install with: pip install motor"
            )

        self._client = AsyncIOMotorClient(self._mongodb_url, tz_aware=True)
        self._db = self._client[self._database_name]

        await self._db.integrations.create_index([("user_id", 1), ("provider", 1)], unique=True)
        await self._db.sync_cursors.create_index(
            [("user_id", 1), ("provider", 1), ("resource_type", 1)], unique=True
        )
        await self._db.sync_items.create_index(
            [("user_id", 1), ("provider", 1), ("resource_type", 1), ("item_id", 1)], unique=True
        )
        logger.info(f"Connected to MongoDB database: {self._database_name}")

    async def close(self) -> None:
        """Close MongoDB connection."""
        if self._client:
            self._client.close()
            self._client = None
            self._db = None

    async def _ensure_connected(self) -> None:
        """Ensure MongoDB connection is established."""
        if self._db is None:
            await self.connect()

    # ==================== Configs ====================

    async def get_config(self, user_id: str, provider: str) -> IntegrationConfig | None:
        await self._ensure_connected()
        doc = await self._db.integrations.find_one({"user_id": user_id, "provider": provider})
        return IntegrationConfig(**_strip_id(doc)) if doc else None

    async def save_config(self, config: IntegrationConfig) -> None:
        await self._ensure_connected()
        config.updated_at = datetime.now(UTC)
        await self._db.integrations.update_one(
            {"user_id": config.user_id, "provider": config.provider},
            {"$set": _config_to_doc(config)},
            upsert=True,
        )

    async def delete_config(self, user_id: str, provider: str) -> bool:
        await self._ensure_connected()
        key = {"user_id": user_id, "provider": provider}
        result = await self._db.integrations.delete_one(key)
        await self._db.sync_cursors.delete_many(key)
        await self._db.sync_items.delete_many(key)
        return result.deleted_count > 0

    async def list_configs(
        self, provider: str | None = None, connected: bool | None = None
    ) -> list[IntegrationConfig]:
        await self._ensure_connected()
        query: dict[str, Any] = {}
        if provider is not None:
            query["provider"] = provider
        if connected is not None:
            query["connected"] = connected
        cursor = self._db.integrations.find(query)
        return [IntegrationConfig(**_strip_id(doc)) async for doc in cursor]

    async def mark_disconnected(self, user_id: str, provider: str, error: str) -> None:
        await self._ensure_connected()
        await self._db.integrations.update_one(
            {"user_id": user_id, "provider": provider},
            {"$set": {"connected": False, "last_error": error, "updated_at": datetime.now(UTC)}},
        )
        logger.warning(f"[{provider}] Integration for user {user_id} disconnected: {error}")

    # ==================== Cursors ====================

    async def get_cursor(
        self, user_id: str, provider: str, resource_type: str
    ) -> SyncCursor | None:
        await self._ensure_connected()
        doc = await self._db.sync_cursors.find_one(
            {"user_id": user_id, "provider": provider, "resource_type": resource_type}
        )
        return SyncCursor(**_strip_id(doc)) if doc else None

    async def save_cursor(self, cursor: SyncCursor) -> SyncCursor:
        from pymongo import ReturnDocument

        await self._ensure_connected()
        # $max keeps the cursor monotonic under concurrent writers
        doc = await self._db.sync_cursors.find_one_and_update(
            {
                "user_id": cursor.user_id,
                "provider": cursor.provider,
                "resource_type": cursor.resource_type,
            },
            {"$max": {"last_sync_time": cursor.last_sync_time}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return SyncCursor(**_strip_id(doc))

    async def list_cursors(self, user_id: str, provider: str) -> list[SyncCursor]:
        await self._ensure_connected()
        cursor = self._db.sync_cursors.find({"user_id": user_id, "provider": provider})
        return [SyncCursor(**_strip_id(doc)) async for doc in cursor]

    # ==================== Item Ledger ====================

    async def get_item_versions(
        self, user_id: str, provider: str, resource_type: str, item_ids: list[str]
    ) -> dict[str, str]:
        if not item_ids:
            return {}
        await self._ensure_connected()
        cursor = self._db.sync_items.find(
            {
                "user_id": user_id,
                "provider": provider,
                "resource_type": resource_type,
                "item_id": {"$in": item_ids},
            }
        )
        return {doc["item_id"]: doc["version"] async for doc in cursor}

    async def record_item_versions(
        self, user_id: str, provider: str, resource_type: str, versions: dict[str, str]
    ) -> None:
        if not versions:
            return
        from pymongo import UpdateOne

        await self._ensure_connected()
        operations = [
            UpdateOne(
                {
                    "user_id": user_id,
                    "provider": provider,
                    "resource_type": resource_type,
                    "item_id": item_id,
                },
                {"$set": {"version": version}},
                upsert=True,
            )
            for item_id, version in versions.items()
        ]
        await self._db.sync_items.bulk_write(operations, ordered=False)


__all__ = ["MongoIntegrationStore"]
