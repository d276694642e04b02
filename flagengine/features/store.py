"""
Authoritative in-memory flag store.

FlagStore.set is the single mutation point for flag state: local, config and
remote loads, manual sets and overrides all write through it, and it is the
only place that triggers listener notification.
"""

import logging
from dataclasses import replace
from typing import Callable, Dict, List, Optional

from flagengine.features.listeners import ListenerBus
from flagengine.features.models import (
    WRITABLE_FIELDS,
    Clock,
    FlagRecord,
    FlagSource,
    utc_now,
)

logger = logging.getLogger(__name__)


class FlagStore:
    """
    Mapping of flag name to FlagRecord.

    A record carries an original_value exactly when its source is override.
    Any write that moves a flag off the override source drops the snapshot
    and expiry, and runs the override-dropped hooks so pending reverts for
    that flag are cancelled.

    Attributes:
        listeners: Bus notified when a flag's resolved value changes
    """

    def __init__(self, listeners: Optional[ListenerBus] = None, clock: Clock = utc_now):
        self.listeners = listeners if listeners is not None else ListenerBus()
        self._clock = clock
        self._flags: Dict[str, FlagRecord] = {}
        self._clear_hooks: List[Callable[[], None]] = []
        self._override_dropped_hooks: List[Callable[[str], None]] = []

    def set(self, name: str, **changes) -> None:
        """
        Merge changes into the record for name, creating it if needed.

        New records start as enabled=False, source=manual. last_updated is
        stamped on every write unless passed explicitly.

        Args:
            name: Flag name
            **changes: Any of enabled, source, last_updated, original_value,
                override_expires_at, metadata

        Raises:
            TypeError: If an unknown field is passed
            ValueError: If the write would leave an override without an original_value
        """
        unknown = set(changes) - WRITABLE_FIELDS
        if unknown:
            raise TypeError(f"Unknown flag field(s): {', '.join(sorted(unknown))}")

        if "source" in changes:
            changes["source"] = FlagSource(changes["source"])
        if "enabled" in changes:
            changes["enabled"] = bool(changes["enabled"])
        changes.setdefault("last_updated", self._clock())

        previous = self._flags.get(name)
        old_value = previous.enabled if previous else False

        if previous is None:
            record = FlagRecord(name=name, **changes)
        else:
            record = replace(previous, **changes)

        if record.is_override and record.original_value is None:
            raise ValueError(f"Override on {name} requires an original_value")
        if not record.is_override:
            record = replace(record, original_value=None, override_expires_at=None)

        self._flags[name] = record

        logger.debug(f"Flag {name} set to {record.enabled} ({record.source.value})")

        if previous is not None and previous.is_override and not record.is_override:
            for hook in self._override_dropped_hooks:
                hook(name)

        if record.enabled != old_value:
            self.listeners.notify(name, record.enabled, previous.enabled if previous else None)

    def get(self, name: str) -> Optional[FlagRecord]:
        """Return a copy of the record for name, or None if absent."""
        record = self._flags.get(name)
        return record.copy() if record else None

    def is_enabled(self, name: str) -> bool:
        """Resolved value of a flag; absent flags are disabled."""
        record = self._flags.get(name)
        return record.enabled if record else False

    def all(self) -> Dict[str, FlagRecord]:
        """Snapshot of every flag."""
        return {name: record.copy() for name, record in self._flags.items()}

    def by_source(self, source: FlagSource) -> Dict[str, FlagRecord]:
        """Snapshot of the flags whose current source matches."""
        source = FlagSource(source)
        return {
            name: record.copy()
            for name, record in self._flags.items()
            if record.source == source
        }

    def sources(self) -> List[str]:
        """Distinct source values currently present."""
        return sorted({record.source.value for record in self._flags.values()})

    def on_clear(self, hook: Callable[[], None]) -> None:
        """Register a callback run whenever the store is cleared."""
        self._clear_hooks.append(hook)

    def on_override_dropped(self, hook: Callable[[str], None]) -> None:
        """Register a callback run with the flag name when a write replaces an override."""
        self._override_dropped_hooks.append(hook)

    def clear(self) -> None:
        """Remove every flag and run the clear hooks (pending reverts are cancelled there)."""
        for hook in self._clear_hooks:
            hook()
        self._flags.clear()
        logger.info("Flag store cleared")

    def __len__(self) -> int:
        return len(self._flags)

    def __contains__(self, name: object) -> bool:
        return name in self._flags
