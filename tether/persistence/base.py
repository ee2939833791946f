"""
Persistence interface for integration state.

Three kinds of records, all keyed by (user_id, provider):
- IntegrationConfig: connection record with encrypted tokens
- SyncCursor: per-resource-type high-water mark, only ever moves forward
- Item ledger: per-resource-type map of item id -> version already synced
"""

from __future__ import annotations

import logging
import threading
from datetime import UTC, datetime
from typing import Protocol

from tether.integrations.models import IntegrationConfig, SyncCursor

logger = logging.getLogger(__name__)


class IntegrationStore(Protocol):
    """Protocol for integration state storage."""

    # ==================== Configs ====================

    async def get_config(self, user_id: str, provider: str) -> IntegrationConfig | None: ...

    async def save_config(self, config: IntegrationConfig) -> None: ...

    async def delete_config(self, user_id: str, provider: str) -> bool:
        """Delete the config together with its cursors and item ledger."""
        ...

    async def list_configs(
        self, provider: str | None = None, connected: bool | None = None
    ) -> list[IntegrationConfig]: ...

    async def mark_disconnected(self, user_id: str, provider: str, error: str) -> None: ...

    # ==================== Cursors ====================

    async def get_cursor(
        self, user_id: str, provider: str, resource_type: str
    ) -> SyncCursor | None: ...

    async def save_cursor(self, cursor: SyncCursor) -> SyncCursor:
        """Advance a cursor. An older time never overwrites a newer one; returns the stored cursor."""
        ...

    async def list_cursors(self, user_id: str, provider: str) -> list[SyncCursor]: ...

    # ==================== Item Ledger ====================

    async def get_item_versions(
        self, user_id: str, provider: str, resource_type: str, item_ids: list[str]
    ) -> dict[str, str]: ...

    async def record_item_versions(
        self, user_id: str, provider: str, resource_type: str, versions: dict[str, str]
    ) -> None: ...


class InMemoryIntegrationStore:
    """
    In-memory integration store.

    Suitable for tests and single-process deployments.
    Records are copied on the way in and out so callers never share state.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._configs: dict[tuple[str, str], IntegrationConfig] = {}
        self._cursors: dict[tuple[str, str, str], SyncCursor] = {}
        self._items: dict[tuple[str, str, str], dict[str, str]] = {}

    # ==================== Configs ====================

    async def get_config(self, user_id: str, provider: str) -> IntegrationConfig | None:
        with self._lock:
            config = self._configs.get((user_id, provider))
            return config.model_copy(deep=True) if config else None

    async def save_config(self, config: IntegrationConfig) -> None:
        stored = config.model_copy(deep=True)
        stored.updated_at = datetime.now(UTC)
        with self._lock:
            self._configs[(config.user_id, config.provider)] = stored

    async def delete_config(self, user_id: str, provider: str) -> bool:
        with self._lock:
            existed = self._configs.pop((user_id, provider), None) is not None
            for key in [k for k in self._cursors if k[:2] == (user_id, provider)]:
                del self._cursors[key]
            for key in [k for k in self._items if k[:2] == (user_id, provider)]:
                del self._items[key]
        return existed

    async def list_configs(
        self, provider: str | None = None, connected: bool | None = None
    ) -> list[IntegrationConfig]:
        with self._lock:
            return [
                c.model_copy(deep=True)
                for c in self._configs.values()
                if (provider is None or c.provider == provider)
                and (connected is None or c.connected == connected)
            ]

    async def mark_disconnected(self, user_id: str, provider: str, error: str) -> None:
        with self._lock:
            config = self._configs.get((user_id, provider))
            if config is None:
                return
            config.connected = False
            config.last_error = error
            config.updated_at = datetime.now(UTC)
        logger.warning(f"[{provider}] Integration for user {user_id} disconnected: {error}")

    # ==================== Cursors ====================

    async def get_cursor(
        self, user_id: str, provider: str, resource_type: str
    ) -> SyncCursor | None:
        with self._lock:
            cursor = self._cursors.get((user_id, provider, resource_type))
            return cursor.model_copy() if cursor else None

    async def save_cursor(self, cursor: SyncCursor) -> SyncCursor:
        key = (cursor.user_id, cursor.provider, cursor.resource_type)
        with self._lock:
            current = self._cursors.get(key)
            if current is None or cursor.last_sync_time > current.last_sync_time:
                self._cursors[key] = cursor.model_copy()
            return self._cursors[key].model_copy()

    async def list_cursors(self, user_id: str, provider: str) -> list[SyncCursor]:
        with self._lock:
            return [c.model_copy() for k, c in self._cursors.items() if k[:2] == (user_id, provider)]

    # ==================== Item Ledger ====================

    async def get_item_versions(
        self, user_id: str, provider: str, resource_type: str, item_ids: list[str]
    ) -> dict[str, str]:
        with self._lock:
            ledger = self._items.get((user_id, provider, resource_type), {})
            return {item_id: ledger[item_id] for item_id in item_ids if item_id in ledger}

    async def record_item_versions(
        self, user_id: str, provider: str, resource_type: str, versions: dict[str, str]
    ) -> None:
        if not versions:
            return
        with self._lock:
            self._items.setdefault((user_id, provider, resource_type), {}).update(versions)


__all__ = ["InMemoryIntegrationStore", "IntegrationStore"]
