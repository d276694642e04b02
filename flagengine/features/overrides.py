"""
Temporary flag overrides with optional timed expiry.

An override snapshots the flag's pre-override value, writes the forced value
through the store, and optionally schedules a one-shot revert. Re-overriding
keeps the first snapshot and replaces the pending revert, so a chain of
overrides reverts exactly once, to the state before the chain began.
"""

import logging
from typing import Dict, List, Optional
from uuid import uuid4

from flagengine.errors import SchedulerUnavailableError
from flagengine.features.models import FlagSource, OriginalValue
from flagengine.features.scheduling import LoopScheduler, ScheduledHandle
from flagengine.features.store import FlagStore

logger = logging.getLogger(__name__)


class OverrideManager:
    """
    Owns override bookkeeping and revert handles.

    At most one revert handle exists per flag name. The manager registers
    itself with the store so FlagStore.clear() cancels every pending revert,
    and a write that replaces an override (a config or remote reload, a
    manual set with another source) cancels that flag's revert.
    """

    def __init__(self, store: FlagStore, scheduler: Optional[LoopScheduler] = None):
        self.store = store
        self.scheduler = scheduler or LoopScheduler()
        self._handles: Dict[str, ScheduledHandle] = {}
        store.on_clear(self.cancel_all)
        store.on_override_dropped(self._cancel)

    def override(self, name: str, enabled: bool, duration_ms: Optional[int] = None) -> None:
        """
        Force a flag to a value, optionally for a limited time.

        Args:
            name: Flag name (created if absent)
            enabled: Forced value
            duration_ms: Revert automatically after this many milliseconds

        Raises:
            ValueError: If duration_ms is not positive
            SchedulerUnavailableError: If the revert cannot be scheduled
        """
        if duration_ms is not None and duration_ms <= 0:
            raise ValueError(f"duration_ms must be positive, got {duration_ms}")

        current = self.store.get(name)
        if current is not None and current.is_override:
            original = current.original_value
        elif current is not None:
            original = OriginalValue(enabled=current.enabled, source=current.source)
        else:
            original = OriginalValue(enabled=False, source=FlagSource.MANUAL)

        # Schedule first so a scheduler failure leaves the flag untouched
        handle = None
        expires_at = None
        if duration_ms is not None:
            handle = self._schedule_revert(name, duration_ms)
            expires_at = handle.run_at

        self._cancel(name)
        if handle is not None:
            self._handles[name] = handle

        self.store.set(
            name,
            enabled=enabled,
            source=FlagSource.OVERRIDE,
            original_value=original,
            override_expires_at=expires_at,
        )

        if duration_ms is not None:
            logger.info(f"Flag {name} overridden to {enabled} for {duration_ms}ms")
        else:
            logger.info(f"Flag {name} overridden to {enabled}")

    def revert_override(self, name: str) -> bool:
        """
        Restore the pre-override value of a flag.

        Returns:
            True if an override was reverted, False if the flag was not overridden
        """
        self._cancel(name)

        record = self.store.get(name)
        if record is None or not record.is_override:
            return False

        original = record.original_value or OriginalValue(enabled=False, source=FlagSource.MANUAL)
        self.store.set(
            name,
            enabled=original.enabled,
            source=original.source,
            original_value=None,
            override_expires_at=None,
        )
        logger.info(f"Flag {name} override reverted")
        return True

    def is_overridden(self, name: str) -> bool:
        record = self.store.get(name)
        return record is not None and record.is_override

    def pending_reverts(self) -> List[str]:
        """Names of flags with a scheduled revert."""
        return sorted(self._handles)

    def cancel_all(self) -> None:
        """Cancel every scheduled revert. Overridden values are left as they are."""
        handles = list(self._handles.values())
        self._handles.clear()
        for handle in handles:
            handle.cancel()
        if handles:
            logger.debug(f"Cancelled {len(handles)} pending override revert(s)")

    def _schedule_revert(self, name: str, duration_ms: int) -> ScheduledHandle:
        job_id = f"revert-{name}-{uuid4().hex}"
        try:
            return self.scheduler.call_later(
                duration_ms / 1000.0, self._expire, args=(name, job_id), job_id=job_id
            )
        except RuntimeError as e:
            raise SchedulerUnavailableError(name) from e

    def _cancel(self, name: str) -> None:
        handle = self._handles.pop(name, None)
        if handle is not None:
            handle.cancel()

    async def _expire(self, name: str, job_id: str) -> None:
        """Scheduled revert; ignored unless job_id is still the current handle for name."""
        handle = self._handles.get(name)
        if handle is None or handle.job_id != job_id or handle.cancelled:
            return
        logger.debug(f"Override on {name} expired")
        self.revert_override(name)
