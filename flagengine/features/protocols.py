"""
Protocol definitions for the collaborators the flag engine borrows.

The engine never owns storage, configuration or analytics; it is handed
objects satisfying these protocols so tests and multiple engine instances
can run side by side.
"""

from dataclasses import dataclass, field
from typing import Dict, Optional, Protocol


@dataclass(frozen=True)
class FeatureConfig:
    """Nested feature document exposed by the config provider."""

    features: Dict[str, bool] = field(default_factory=dict)
    experimental: Dict[str, bool] = field(default_factory=dict)


@dataclass(frozen=True)
class ApiConfig:
    """Base URL and API version used for the remote flag endpoint."""

    base_url: str
    version: str


class ConfigProvider(Protocol):
    """
    Protocol for the application configuration service.

    Settings implements this protocol; tests can substitute any object
    with the same three methods.
    """

    def get_environment(self) -> str:
        """Return "development", "staging" or "production"."""
        ...

    def get_features_and_experimental(self) -> FeatureConfig:
        """Return the nested features / experimental toggles."""
        ...

    def get_api_base_url_and_version(self) -> ApiConfig:
        """Return the API base URL and version header value."""
        ...


class KeyValueStorage(Protocol):
    """
    Protocol for asynchronous local key/value storage.

    Every method may raise; the engine treats failures as non-fatal.
    """

    async def get(self, key: str) -> Optional[str]:
        ...

    async def set(self, key: str, value: str) -> None:
        ...

    async def remove(self, key: str) -> None:
        ...


class AnalyticsGate(Protocol):
    """Decides whether usage tracking is allowed to emit."""

    def is_feature_enabled(self, name: str) -> bool:
        ...
