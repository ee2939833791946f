"""
Persistence for integration configs, sync cursors and the item ledger.
"""

from .base import InMemoryIntegrationStore, IntegrationStore
from .mongo import MongoIntegrationStore

__all__ = ["InMemoryIntegrationStore", "IntegrationStore", "MongoIntegrationStore"]
