"""
Sync Orchestrator.

Incremental synchronization, fanned out over resource types:

    1. Read the cursor for each resource type (or use the caller's override)
    2. Run the resource syncers concurrently, bounded by the provider's
       sync_concurrency
    3. Per type: fetch changed items, skip items the ledger shows as
       already synced, process the rest, record processed versions
    4. Advance a type's cursor only when that type finished with no errors
    5. Aggregate counts and errors into one SyncResult

One resource type failing never aborts the others. With an overall
deadline, types still running are cancelled and reported as timed out;
work they already completed is kept.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from tether.config.schemas import DEFAULT_POLICY, ProviderPolicy
from tether.integrations.models import SyncCursor, SyncItem, SyncResult

if TYPE_CHECKING:
    from tether.persistence.base import IntegrationStore

logger = logging.getLogger(__name__)

# Consecutive sync errors tolerated before backing off
ERROR_BACKOFF_AFTER = 3
MAX_ERROR_BACKOFF = timedelta(hours=1)


def _utc_now() -> datetime:
    return datetime.now(UTC)


def resource_label(resource_type: str) -> str:
    """'pull_requests' -> 'Pull requests'"""
    return resource_type.replace("_", " ").replace("-", " ").capitalize()


# =============================================================================
# Resource Syncer
# =============================================================================


class ResourceSyncer(ABC):
    """
    Sync logic for one resource type of one provider.

    Subclasses set resource_type and implement fetch() and process().
    process() must be safe to call again for an item it has seen before.
    """

    resource_type: str = ""

    @abstractmethod
    async def fetch(self, since: datetime | None) -> list[SyncItem]:
        """Fetch items changed since the given time (all items when None)."""
        ...

    @abstractmethod
    async def process(self, item: SyncItem) -> None:
        """Apply one item locally."""
        ...


@dataclass
class ResourceSyncReport:
    """Outcome of syncing one resource type."""

    resource_type: str
    started_at: datetime
    since: datetime | None = None
    processed: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)
    completed: bool = False
    cursor: datetime | None = None
    duration_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "skipped": self.skipped,
            "errors": list(self.errors),
            "completed": self.completed,
            "since": self.since,
            "cursor": self.cursor,
            "duration_ms": self.duration_ms,
        }


# =============================================================================
# Orchestrator
# =============================================================================


class SyncOrchestrator:
    """
    Runs resource syncers for one (user, provider) and aggregates the result.

    Example:
        result = await orchestrator.run(
            user_id="u1",
            provider="github",
            syncers=[IssuesSyncer(client), PullRequestsSyncer(client)],
        )
        if not result.success:
            logger.warning(result.errors)
    """

    def __init__(
        self,
        store: IntegrationStore,
        policy_for: Callable[[str], ProviderPolicy] | None = None,
        *,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self._store = store
        self._policy_for = policy_for or (lambda provider: DEFAULT_POLICY)
        self._clock = clock

    async def run(
        self,
        *,
        user_id: str,
        provider: str,
        syncers: list[ResourceSyncer],
        last_sync_time: datetime | None = None,
        deadline: float | None = None,
    ) -> SyncResult:
        """
        Sync every resource type and aggregate the outcome.

        Args:
            user_id: Owning user
            provider: Provider name
            syncers: One syncer per resource type
            last_sync_time: Overrides the stored cursors when given
            deadline: Overall time budget in seconds

        Returns:
            SyncResult; success only if no resource type reported an error
        """
        policy = self._policy_for(provider)
        synced_at = self._clock()
        start = time.perf_counter()
        semaphore = asyncio.Semaphore(policy.sync_concurrency)

        reports = [ResourceSyncReport(s.resource_type, started_at=synced_at) for s in syncers]

        async def bounded(syncer: ResourceSyncer, report: ResourceSyncReport) -> None:
            async with semaphore:
                await self._sync_resource(user_id, provider, syncer, report, last_sync_time)

        tasks = [
            asyncio.create_task(bounded(syncer, report), name=f"sync:{provider}:{syncer.resource_type}")
            for syncer, report in zip(syncers, reports)
        ]

        if tasks:
            try:
                _, pending = await asyncio.wait(tasks, timeout=deadline)
            finally:
                # Past the deadline, or the caller cancelled run()
                unfinished = [task for task in tasks if not task.done()]
                for task in unfinished:
                    task.cancel()
                if unfinished:
                    await asyncio.gather(*unfinished, return_exceptions=True)

            for task, report in zip(tasks, reports):
                if task in pending:
                    report.errors.append(
                        f"{resource_label(report.resource_type)} sync failed: "
                        f"timed out after {deadline}s"
                    )
                elif not task.cancelled() and task.exception() is not None:
                    report.errors.append(
                        f"{resource_label(report.resource_type)} sync failed: {task.exception()}"
                    )

        errors = [error for report in reports for error in report.errors]
        duration_ms = (time.perf_counter() - start) * 1000

        result = SyncResult(
            success=not errors,
            items_processed=sum(r.processed for r in reports),
            items_skipped=sum(r.skipped for r in reports),
            errors=errors,
            metadata={
                "provider": provider,
                "user_id": user_id,
                "synced_at": synced_at,
                "duration_ms": duration_ms,
                "next_sync_at": self.next_sync_at(provider, synced_at),
                "resources": {r.resource_type: r.to_dict() for r in reports},
            },
        )

        log = logger.info if result.success else logger.warning
        log(
            f"[{provider}] Sync for user {user_id}: processed={result.items_processed} "
            f"skipped={result.items_skipped} errors={len(errors)} in {duration_ms:.0f}ms"
        )
        return result

    async def _sync_resource(
        self,
        user_id: str,
        provider: str,
        syncer: ResourceSyncer,
        report: ResourceSyncReport,
        override: datetime | None,
    ) -> None:
        resource_type = syncer.resource_type
        label = resource_label(resource_type)
        start = time.perf_counter()
        report.started_at = self._clock()

        try:
            if override is not None:
                report.since = override
            else:
                cursor = await self._store.get_cursor(user_id, provider, resource_type)
                report.since = cursor.last_sync_time if cursor else None

            try:
                items = await syncer.fetch(report.since)
            except Exception as e:
                logger.warning(f"[{provider}] {label} fetch failed: {e}")
                report.errors.append(f"{label} sync failed: {e}")
                return

            known = await self._store.get_item_versions(
                user_id, provider, resource_type, [item.id for item in items]
            )

            for item in items:
                if self._already_synced(known.get(item.id), item):
                    report.skipped += 1
                    continue
                try:
                    await syncer.process(item)
                except Exception as e:
                    logger.warning(f"[{provider}] {label} item {item.id} failed: {e}")
                    report.errors.append(f"{label} sync failed: item {item.id}: {e}")
                    continue
                await self._store.record_item_versions(
                    user_id, provider, resource_type, {item.id: item.version}
                )
                report.processed += 1

            if not report.errors:
                stored = await self._store.save_cursor(
                    SyncCursor(
                        provider=provider,
                        user_id=user_id,
                        resource_type=resource_type,
                        last_sync_time=report.started_at,
                    )
                )
                report.cursor = stored.last_sync_time
            report.completed = True
        finally:
            report.duration_ms = (time.perf_counter() - start) * 1000

    @staticmethod
    def _already_synced(known_version: str | None, item: SyncItem) -> bool:
        if known_version is None:
            return False
        try:
            return datetime.fromisoformat(known_version) >= item.updated_at
        except (TypeError, ValueError):
            return known_version == item.version

    async def get_last_sync_time(
        self, user_id: str, provider: str, resource_types: list[str]
    ) -> datetime | None:
        """
        Oldest cursor across the given resource types.

        None if any type has never completed a sync.
        """
        if not resource_types:
            return None
        cursors = await self._store.list_cursors(user_id, provider)
        by_type = {c.resource_type: c.last_sync_time for c in cursors}
        if any(rt not in by_type for rt in resource_types):
            return None
        return min(by_type[rt] for rt in resource_types)

    # ==================== Scheduling ====================

    def next_sync_at(self, provider: str, synced_at: datetime) -> datetime:
        return synced_at + timedelta(seconds=self._policy_for(provider).min_sync_interval)

    def is_sync_due(
        self,
        provider: str,
        last_sync_at: datetime | None,
        *,
        error_count: int = 0,
        last_error_at: datetime | None = None,
        now: datetime | None = None,
        paused: bool = False,
    ) -> bool:
        """
        Whether a scheduled sync should run now.

        Never due while paused. Enforces the provider's minimum interval, and
        after more than three consecutive errors waits 2^errors minutes (at
        most one hour) since the last error.
        """
        if paused:
            return False

        now = now or self._clock()

        if last_sync_at is not None:
            min_interval = timedelta(seconds=self._policy_for(provider).min_sync_interval)
            if now - last_sync_at < min_interval:
                return False

        if error_count > ERROR_BACKOFF_AFTER and last_error_at is not None:
            backoff = min(timedelta(minutes=2**error_count), MAX_ERROR_BACKOFF)
            if now - last_error_at < backoff:
                return False

        return True


__all__ = [
    "ResourceSyncReport",
    "ResourceSyncer",
    "SyncOrchestrator",
    "resource_label",
]
