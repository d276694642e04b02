"""
Feature flag service: the engine instance handed to application code.

The service wires the store, resolver, listener bus, override manager,
variant assigner and synchronizer around injected collaborators. Nothing
here is module-global, so tests and per-tenant engines run in isolation.
"""

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, List, Optional, Sequence, TypeVar

import httpx

from flagengine.features.listeners import Listener, ListenerBus, Unsubscribe
from flagengine.features.models import Clock, FlagRecord, FlagSource, utc_now
from flagengine.features.overrides import OverrideManager
from flagengine.features.protocols import AnalyticsGate, ConfigProvider, KeyValueStorage
from flagengine.features.resolver import FlagResolver
from flagengine.features.scheduling import LoopScheduler, ScheduledHandle
from flagengine.features.store import FlagStore
from flagengine.features.sync import (
    LOCAL_STORAGE_KEY,
    REMOTE_FLAGS_PATH,
    REMOTE_TIMEOUT_SECONDS,
    FlagSynchronizer,
    SaveResult,
)
from flagengine.features.variants import DEFAULT_VARIANTS, VariantAssigner

if TYPE_CHECKING:
    from flagengine.config import Settings

logger = logging.getLogger(__name__)

V = TypeVar("V")

ANALYTICS_FEATURE = "analytics"
REMOTE_REFRESH_JOB_ID = "remote_flag_refresh"
DEFAULT_REFRESH_INTERVAL_SECONDS = 300

UsageSink = Callable[[Dict[str, Any]], None]


class FeatureFlagService:
    """
    Feature flag and experimentation engine.

    Attributes:
        store: Authoritative flag store
        resolver: Convention-name lookups
        listeners: Change listener bus
        overrides: Override manager owning revert handles
        variants: A/B variant assigner
        sync: Local/config/remote synchronizer
    """

    def __init__(
        self,
        config: ConfigProvider,
        storage: KeyValueStorage,
        http_client: Optional[httpx.AsyncClient] = None,
        analytics: Optional[AnalyticsGate] = None,
        clock: Clock = utc_now,
        usage_sink: Optional[UsageSink] = None,
        storage_key: str = LOCAL_STORAGE_KEY,
        flags_path: str = REMOTE_FLAGS_PATH,
        remote_timeout_seconds: float = REMOTE_TIMEOUT_SECONDS,
        refresh_interval_seconds: float = DEFAULT_REFRESH_INTERVAL_SECONDS,
    ):
        """
        Initialize the engine. No I/O happens until initialize() is awaited.

        Args:
            config: Environment, config-derived flags and API location
            storage: Async key/value storage for persisted flags
            http_client: Client used for the remote flag endpoint. A
                short-lived client is created per fetch if omitted.
            analytics: Gate consulted by track_usage
            clock: Source of timestamps
            usage_sink: Receives usage events emitted by track_usage
            storage_key: Key the persisted flag document lives under
            flags_path: Path of the remote flag endpoint below the API base URL
            remote_timeout_seconds: Timeout for the remote fetch
            refresh_interval_seconds: Period of the production remote refresh
        """
        self.config = config
        self.analytics = analytics
        self.usage_sink = usage_sink
        self.refresh_interval_seconds = refresh_interval_seconds

        self.listeners = ListenerBus()
        self.store = FlagStore(self.listeners, clock=clock)
        self.resolver = FlagResolver(self.store)
        self.scheduler = LoopScheduler()
        self.overrides = OverrideManager(self.store, self.scheduler)
        self.variants = VariantAssigner(self.resolver)
        self.sync = FlagSynchronizer(
            self.store,
            config,
            storage,
            http_client=http_client,
            clock=clock,
            storage_key=storage_key,
            flags_path=flags_path,
            timeout_seconds=remote_timeout_seconds,
        )

        self._initialized = False
        self._init_lock = asyncio.Lock()
        self._refresh_handle: Optional[ScheduledHandle] = None

    # Lifecycle

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """
        Load local, then config, then (in production) remote flags.

        Calling this again without an intervening cleanup() does nothing.
        Storage and network failures are logged; initialization still completes.
        """
        if self._initialized:
            return

        async with self._init_lock:
            if self._initialized:
                return

            await self.sync.load_local_flags()
            self.sync.load_config_flags()

            if self.sync.is_production():
                await self.sync.load_remote_flags()
                self.start_periodic_update()

            self._initialized = True
            logger.info(f"Feature flag service initialized with {len(self.store)} flags")

    def cleanup(self) -> None:
        """
        Tear the engine down: stop the periodic refresh, cancel every
        override revert, drop listeners and flags, and reset the
        initialized flag.
        """
        self.stop_periodic_update()
        self.overrides.cancel_all()
        self.listeners.clear()
        self.store.clear()
        self.scheduler.shutdown()
        self._initialized = False
        logger.info("Feature flag service cleaned up")

    # Lookups

    def is_enabled(self, name: str) -> bool:
        """
        Check if a flag is enabled. Unknown flags are disabled.

        Example:
            if flag_service.is_enabled("feature_socialLogin"):
                show_social_login()
        """
        return self.resolver.is_enabled(name)

    def is_feature_enabled(self, key: str) -> bool:
        return self.resolver.is_feature_enabled(key)

    def is_experimental_enabled(self, key: str) -> bool:
        return self.resolver.is_experimental_enabled(key)

    def get_flag(self, name: str) -> Optional[FlagRecord]:
        return self.store.get(name)

    def get_all_flags(self) -> Dict[str, FlagRecord]:
        return self.store.all()

    def get_flags_by_source(self, source: FlagSource) -> Dict[str, FlagRecord]:
        return self.store.by_source(source)

    def get_enabled_features(self) -> List[str]:
        """Names of all enabled flags."""
        return sorted(name for name, record in self.store.all().items() if record.enabled)

    def get_disabled_features(self) -> List[str]:
        """Names of all known but disabled flags."""
        return sorted(name for name, record in self.store.all().items() if not record.enabled)

    def get_variant(
        self,
        test_name: str,
        variants: Sequence[V] = DEFAULT_VARIANTS,
        subject_id: Optional[str] = None,
    ) -> V:
        return self.variants.get_variant(test_name, variants, subject_id)

    # Writes

    def set_flag(self, name: str, **changes) -> None:
        """Merge changes into a flag; new flags default to source=manual."""
        self.store.set(name, **changes)

    def override(self, name: str, enabled: bool, duration_ms: Optional[int] = None) -> None:
        self.overrides.override(name, enabled, duration_ms)

    def revert_override(self, name: str) -> bool:
        return self.overrides.revert_override(name)

    def add_listener(self, listener: Listener) -> Unsubscribe:
        return self.listeners.add_listener(listener)

    # Persistence and sync

    async def save_local_flags(self, names: Optional[Iterable[str]] = None) -> SaveResult:
        return await self.sync.save_local_flags(names)

    async def clear_flags(self) -> None:
        """Empty the store (cancelling pending reverts) and delete the persisted copy."""
        self.store.clear()
        await self.sync.clear_persisted()
        logger.info("All flags cleared")

    async def refresh(self) -> int:
        """Reload remote flags in production, config flags elsewhere."""
        if self.sync.is_production():
            return await self.sync.load_remote_flags()
        return self.sync.load_config_flags()

    def start_periodic_update(self) -> None:
        """Schedule the remote refresh; a no-op if it is already scheduled."""
        if self._refresh_handle is not None and not self._refresh_handle.cancelled:
            return
        self._refresh_handle = self.scheduler.call_every(
            self.refresh_interval_seconds, self._periodic_refresh, REMOTE_REFRESH_JOB_ID
        )
        logger.info(f"Remote flag refresh scheduled every {self.refresh_interval_seconds}s")

    def stop_periodic_update(self) -> None:
        if self._refresh_handle is None:
            return
        self._refresh_handle.cancel()
        self._refresh_handle = None
        logger.info("Remote flag refresh stopped")

    async def _periodic_refresh(self) -> None:
        await self.sync.load_remote_flags()

    # Debugging and analytics

    def track_usage(self, name: str, context: Optional[Dict[str, Any]] = None) -> bool:
        """
        Emit a usage event for a flag when analytics is enabled.

        Returns:
            True if an event was emitted. Never raises.
        """
        record = self.store.get(name)
        if record is None:
            return False

        try:
            if self.analytics is None or not self.analytics.is_feature_enabled(ANALYTICS_FEATURE):
                return False

            event = {
                "flag": name,
                "enabled": record.enabled,
                "source": record.source.value,
                "context": dict(context or {}),
            }
            logger.info(f"Flag usage tracked: {name}", extra={"flag_usage": event})
            if self.usage_sink is not None:
                self.usage_sink(event)
        except Exception as e:
            logger.warning(f"Failed to track usage of flag {name}: {e}")
            return False
        return True

    def get_debug_info(self) -> Dict[str, Any]:
        last_update = self.sync.last_update
        return {
            "initialized": self._initialized,
            "flag_count": len(self.store),
            "sources": self.store.sources(),
            "listeners": len(self.listeners),
            "last_update": last_update.isoformat() if last_update else None,
            "periodic_update": self._refresh_handle is not None,
            "active_overrides": len(self.store.by_source(FlagSource.OVERRIDE)),
        }

    def export_flags(self) -> Dict[str, Dict[str, Any]]:
        """Plain, JSON-serializable snapshot of every flag."""
        return {name: record.to_dict() for name, record in self.store.all().items()}


def create_feature_service(
    settings: "Settings",
    storage: KeyValueStorage,
    http_client: Optional[httpx.AsyncClient] = None,
    **kwargs,
) -> FeatureFlagService:
    """
    Build a FeatureFlagService configured from application settings.

    Settings acts as both the config provider and the analytics gate.
    """
    return FeatureFlagService(
        config=settings,
        storage=storage,
        http_client=http_client,
        analytics=settings,
        storage_key=settings.local_storage_key,
        flags_path=settings.flags_endpoint_path,
        remote_timeout_seconds=settings.remote_timeout_seconds,
        refresh_interval_seconds=settings.remote_refresh_interval_seconds,
        **kwargs,
    )
