"""
Tests for IntegrationRuntime wiring.
"""

import pytest
from pydantic import SecretStr

from tether import FrameworkSettings, IntegrationRuntime
from tether.integrations.errors import TokenVaultError
from tether.persistence import InMemoryIntegrationStore, MongoIntegrationStore
from tether.vault import FernetTokenVault


class TestIntegrationRuntime:
    """Tests for IntegrationRuntime.create()."""

    def test_defaults_to_in_memory_store(self):
        runtime = IntegrationRuntime.create(FrameworkSettings(encryption_key=SecretStr("k")))

        assert isinstance(runtime.store, InMemoryIntegrationStore)
        assert isinstance(runtime.vault, FernetTokenVault)
        assert runtime.metrics.sink is None

    def test_mongo_store_when_configured(self):
        settings = FrameworkSettings(
            encryption_key=SecretStr("k"),
            mongodb_url="mongodb://localhost:27017",
        )

        runtime = IntegrationRuntime.create(settings)

        assert isinstance(runtime.store, MongoIntegrationStore)

    def test_missing_encryption_key(self):
        with pytest.raises(TokenVaultError):
            IntegrationRuntime.create(FrameworkSettings())

    def test_engines_share_collaborators(self, runtime, store, vault):
        assert runtime.store is store
        assert runtime.vault is vault
        assert runtime.policy_for("fake").burst == 100
        assert runtime.policy_for("github").failure_threshold == 5
