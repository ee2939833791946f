"""
Incremental data synchronization.
"""

from .orchestrator import ResourceSyncer, ResourceSyncReport, SyncOrchestrator, resource_label

__all__ = ["ResourceSyncReport", "ResourceSyncer", "SyncOrchestrator", "resource_label"]
