"""
Tether configuration: provider policies and framework settings.
"""

from .schemas import DEFAULT_POLICY, DEFAULT_PROVIDER_POLICIES, FrameworkSettings, ProviderPolicy
from .settings import get_settings, load_settings

__all__ = [
    "DEFAULT_POLICY",
    "DEFAULT_PROVIDER_POLICIES",
    "FrameworkSettings",
    "ProviderPolicy",
    "get_settings",
    "load_settings",
]
