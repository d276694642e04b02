"""
Feature flag and experimentation engine.

Flags resolve from local storage, configuration and a remote endpoint, can be
overridden temporarily, notify listeners on change, and drive deterministic
A/B variant assignment.
"""

from flagengine.features.listeners import ListenerBus
from flagengine.features.models import FlagRecord, FlagSource, OriginalValue
from flagengine.features.overrides import OverrideManager
from flagengine.features.protocols import (
    AnalyticsGate,
    ApiConfig,
    ConfigProvider,
    FeatureConfig,
    KeyValueStorage,
)
from flagengine.features.resolver import FlagResolver
from flagengine.features.service import FeatureFlagService, create_feature_service
from flagengine.features.storage import JsonFileStorage, MemoryStorage
from flagengine.features.store import FlagStore
from flagengine.features.sync import FlagSynchronizer, SaveResult
from flagengine.features.variants import VariantAssigner, stable_hash

__all__ = [
    # Records
    "FlagRecord",
    "FlagSource",
    "OriginalValue",
    # Components
    "FlagStore",
    "FlagResolver",
    "ListenerBus",
    "OverrideManager",
    "VariantAssigner",
    "FlagSynchronizer",
    "SaveResult",
    "stable_hash",
    # Collaborators
    "ConfigProvider",
    "KeyValueStorage",
    "AnalyticsGate",
    "FeatureConfig",
    "ApiConfig",
    "MemoryStorage",
    "JsonFileStorage",
    # Engine
    "FeatureFlagService",
    "create_feature_service",
]
