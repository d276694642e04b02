"""
Flag record definitions.

A FlagRecord is the unit of state held by the FlagStore. Records are plain
dataclasses; the store hands out copies so callers cannot mutate its state.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional


class FlagSource(str, Enum):
    """Provenance of a flag's current value."""

    LOCAL = "local"
    CONFIG = "config"
    REMOTE = "remote"
    MANUAL = "manual"
    OVERRIDE = "override"


Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Default clock: timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class OriginalValue:
    """Pre-override state needed to revert an override."""

    enabled: bool
    source: FlagSource


@dataclass
class FlagRecord:
    """
    A single feature flag.

    Attributes:
        name: Unique, case-sensitive flag name
        enabled: Resolved truth value
        source: Where the current value came from
        last_updated: Time of the last write
        original_value: Snapshot taken by the first override in a chain
        override_expires_at: When a timed override reverts, if any
        metadata: Extra fields carried by remote flag documents
    """

    name: str
    enabled: bool = False
    source: FlagSource = FlagSource.MANUAL
    last_updated: datetime = field(default_factory=utc_now)
    original_value: Optional[OriginalValue] = None
    override_expires_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_override(self) -> bool:
        return self.source == FlagSource.OVERRIDE

    def copy(self) -> "FlagRecord":
        """Return a detached copy of this record."""
        return replace(self, metadata=dict(self.metadata))

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the persisted/exported shape."""
        return {
            "enabled": self.enabled,
            "source": self.source.value,
            "lastUpdated": self.last_updated.isoformat(),
        }


# Fields callers may pass to FlagStore.set
WRITABLE_FIELDS = frozenset(
    {
        "enabled",
        "source",
        "last_updated",
        "original_value",
        "override_expires_at",
        "metadata",
    }
)
