"""
Tests for the FeatureFlagService engine.
"""
import asyncio
import json
import time
from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest

from flagengine.features import FeatureFlagService, FlagSource, MemoryStorage
from flagengine.features.service import REMOTE_REFRESH_JOB_ID


class TestInitialize:
    """Tests for the load order and idempotence of initialize()."""

    @pytest.mark.asyncio
    async def test_initialize_loads_config_flags(self, service):
        await service.initialize()

        assert service.initialized is True
        assert service.is_feature_enabled("biometricAuth") is True
        assert service.is_feature_enabled("socialLogin") is False
        assert service.is_experimental_enabled("arFeatures") is True
        assert service.is_experimental_enabled("venueRecommendations") is False

    @pytest.mark.asyncio
    async def test_initialize_is_idempotent(self, service, storage):
        """A second call performs no further loads."""
        await service.initialize()

        with patch.object(service.sync, "load_config_flags", wraps=service.sync.load_config_flags) as spy:
            await service.initialize()
            await service.initialize()

        spy.assert_not_called()
        assert storage.reads == 1

    @pytest.mark.asyncio
    async def test_concurrent_initialize_runs_once(self, service, storage):
        await asyncio.gather(service.initialize(), service.initialize(), service.initialize())

        assert storage.reads == 1
        assert service.initialized is True

    @pytest.mark.asyncio
    async def test_config_wins_over_local(self, make_service, storage, persisted):
        """Local flags load first, so config values overwrite them."""
        await storage.set("feature_flags", persisted({"feature_socialLogin": True, "feature_localOnly": True}))
        service = make_service()

        await service.initialize()

        social = service.get_flag("feature_socialLogin")
        assert social.enabled is False
        assert social.source == FlagSource.CONFIG
        local_only = service.get_flag("feature_localOnly")
        assert local_only.enabled is True
        assert local_only.source == FlagSource.LOCAL

    @pytest.mark.asyncio
    async def test_storage_failure_does_not_block_initialize(self, make_service, broken_storage):
        service = make_service(storage_backend=broken_storage)

        await service.initialize()

        assert service.initialized is True
        assert service.is_feature_enabled("biometricAuth") is True

    @pytest.mark.asyncio
    async def test_development_does_not_contact_remote(self, make_service, remote):
        async with remote.client() as client:
            service = make_service(http_client=client)
            await service.initialize()

        assert remote.requests == []
        assert service.get_debug_info()["periodic_update"] is False


class TestProductionSync:
    """Remote sync and periodic refresh in production."""

    @pytest.mark.asyncio
    async def test_remote_flags_override_config(self, make_service, remote, storage):
        remote.payload = {
            "feature_socialLogin": {"enabled": True},
            "ab_test_checkout": {"enabled": True},
        }
        async with remote.client() as client:
            service = make_service(http_client=client, environment="production")
            await service.initialize()

            social = service.get_flag("feature_socialLogin")
            assert social.enabled is True
            assert social.source == FlagSource.REMOTE
            assert service.get_variant("checkout", ("A", "B"), "user-42") == "B"

            info = service.get_debug_info()
            assert info["periodic_update"] is True
            assert info["last_update"] is not None
            assert "feature_flags" in storage

            scheduler = service.scheduler._scheduler
            assert scheduler.get_job(REMOTE_REFRESH_JOB_ID) is not None

    @pytest.mark.asyncio
    async def test_remote_failure_keeps_config_and_local(self, make_service, remote, storage, persisted):
        remote.status_code = 503
        await storage.set("feature_flags", persisted({"feature_localOnly": True}))
        async with remote.client() as client:
            service = make_service(http_client=client, environment="production")
            await service.initialize()

        assert service.initialized is True
        assert service.is_feature_enabled("localOnly") is True
        assert service.is_feature_enabled("biometricAuth") is True
        assert service.get_debug_info()["last_update"] is None

    @pytest.mark.asyncio
    async def test_periodic_refresh_fetches_again(self, make_service, remote, wait_until):
        remote.payload = {"feature_socialLogin": {"enabled": True}}
        async with remote.client() as client:
            service = make_service(
                http_client=client,
                environment="production",
                remote_refresh_interval_seconds=1,
            )
            await service.initialize()
            assert len(remote.requests) == 1

            remote.payload = {"feature_socialLogin": {"enabled": False}}
            assert await wait_until(lambda: len(remote.requests) >= 2, timeout=4.0)
            assert await wait_until(lambda: not service.is_feature_enabled("socialLogin"))

    @pytest.mark.asyncio
    async def test_stop_periodic_update(self, make_service, remote):
        async with remote.client() as client:
            service = make_service(http_client=client, environment="production")
            await service.initialize()

            service.stop_periodic_update()
            service.stop_periodic_update()

            assert service.get_debug_info()["periodic_update"] is False
            assert service.scheduler._scheduler.get_job(REMOTE_REFRESH_JOB_ID) is None

    @pytest.mark.asyncio
    async def test_refresh_in_production_uses_remote(self, make_service, remote):
        remote.payload = {"feature_a": {"enabled": True}}
        async with remote.client() as client:
            service = make_service(http_client=client, environment="production")
            await service.initialize()
            remote.payload = {"feature_a": {"enabled": True}, "feature_b": {"enabled": True}}

            assert await service.refresh() == 2

        assert service.is_enabled("feature_b") is True

    @pytest.mark.asyncio
    async def test_remote_reload_over_active_override(self, make_service, remote):
        remote.payload = {"feature_a": {"enabled": True}}
        async with remote.client() as client:
            service = make_service(http_client=client, environment="production")
            await service.initialize()
            service.override("feature_a", False, duration_ms=60_000)
            assert service.overrides.pending_reverts() == ["feature_a"]

            await service.refresh()

        record = service.get_flag("feature_a")
        assert record.enabled is True
        assert record.source == FlagSource.REMOTE
        assert record.original_value is None
        assert record.override_expires_at is None
        assert service.overrides.pending_reverts() == []


class TestLookups:
    """Fail-closed lookups and listing helpers."""

    @pytest.mark.parametrize("name", ["feature_never", "experimental_x", "ab_test_y", "random"])
    def test_unknown_flags_are_disabled(self, service, name):
        assert service.is_enabled(name) is False
        assert service.get_flag(name) is None

    @pytest.mark.asyncio
    async def test_enabled_and_disabled_features(self, service):
        await service.initialize()

        assert service.get_enabled_features() == ["experimental_arFeatures", "feature_biometricAuth"]
        assert service.get_disabled_features() == [
            "experimental_venueRecommendations",
            "feature_socialLogin",
        ]

    @pytest.mark.asyncio
    async def test_flags_by_source(self, service):
        await service.initialize()
        service.set_flag("feature_manual", enabled=True)

        assert set(service.get_flags_by_source(FlagSource.MANUAL)) == {"feature_manual"}
        assert len(service.get_flags_by_source("config")) == 4

    def test_get_variant_without_running_test(self, service):
        assert service.get_variant("checkout", ("A", "B"), "user-42") == "A"


class TestWrites:
    """set_flag, overrides and listeners through the service."""

    def test_set_flag_defaults_to_manual(self, service):
        service.set_flag("feature_new", enabled=True)

        record = service.get_flag("feature_new")
        assert record.enabled is True
        assert record.source == FlagSource.MANUAL

    def test_set_flag_rejects_unknown_fields(self, service):
        with pytest.raises(TypeError):
            service.set_flag("feature_new", value=True)

    @pytest.mark.asyncio
    async def test_repeated_set_notifies_once(self, service):
        await service.initialize()
        listener = MagicMock()
        service.add_listener(listener)

        service.set_flag("feature_socialLogin", enabled=True)
        service.set_flag("feature_socialLogin", enabled=True)

        listener.assert_called_once_with("feature_socialLogin", True, False)

    @pytest.mark.asyncio
    async def test_override_round_trip(self, service):
        await service.initialize()

        service.override("feature_socialLogin", True)
        assert service.is_feature_enabled("socialLogin") is True
        assert service.get_debug_info()["active_overrides"] == 1

        assert service.revert_override("feature_socialLogin") is True
        record = service.get_flag("feature_socialLogin")
        assert record.enabled is False
        assert record.source == FlagSource.CONFIG
        assert service.get_debug_info()["active_overrides"] == 0

    @pytest.mark.asyncio
    async def test_timed_override_reverts(self, service, wait_until):
        await service.initialize()

        service.override("feature_biometricAuth", False, duration_ms=100)
        assert service.is_feature_enabled("biometricAuth") is False

        assert await wait_until(lambda: service.is_feature_enabled("biometricAuth"))
        assert service.get_flag("feature_biometricAuth").source == FlagSource.CONFIG

    def test_timed_override_outside_event_loop(self, service):
        """Synchronous callers get a timed override that reverts on a background thread."""
        service.set_flag("feature_x", enabled=False, source="config")

        service.override("feature_x", True, duration_ms=50)
        assert service.is_enabled("feature_x") is True

        deadline = time.monotonic() + 2.0
        while service.overrides.is_overridden("feature_x") and time.monotonic() < deadline:
            time.sleep(0.01)

        record = service.get_flag("feature_x")
        assert record.enabled is False
        assert record.source == FlagSource.CONFIG

    def test_listener_added_through_service_is_notified(self, service):
        listener = MagicMock()
        service.add_listener(listener)

        service.set_flag("feature_x", enabled=True)

        listener.assert_called_once_with("feature_x", True, None)
        assert service.store.listeners is service.listeners
        assert service.get_debug_info()["listeners"] == 1

    def test_set_flag_with_override_source_rejected(self, service):
        """Overrides go through override(), which records the value to revert to."""
        with pytest.raises(ValueError):
            service.set_flag("feature_y", enabled=True, source="override")

        assert service.get_flag("feature_y") is None
        assert service.get_flags_by_source("override") == {}


class TestPersistence:
    """save_local_flags and clear_flags."""

    @pytest.mark.asyncio
    async def test_save_local_flags(self, service, storage):
        await service.initialize()
        service.set_flag("feature_new", enabled=True)

        result = await service.save_local_flags()

        assert result.ok is True
        saved = json.loads(await storage.get("feature_flags"))
        assert saved["feature_new"]["enabled"] is True
        assert saved["feature_new"]["source"] == "manual"

    @pytest.mark.asyncio
    async def test_clear_flags(self, service, storage):
        await service.initialize()
        await service.save_local_flags()

        await service.clear_flags()

        assert service.get_all_flags() == {}
        assert "feature_flags" not in storage
        assert service.is_feature_enabled("biometricAuth") is False

    @pytest.mark.asyncio
    async def test_clear_flags_cancels_pending_reverts(self, service):
        await service.initialize()
        service.override("feature_biometricAuth", False, duration_ms=100)

        await service.clear_flags()
        await asyncio.sleep(0.3)

        assert service.overrides.pending_reverts() == []
        assert service.get_flag("feature_biometricAuth") is None

    @pytest.mark.asyncio
    async def test_refresh_in_development_reloads_config(self, service):
        await service.initialize()
        service.set_flag("feature_socialLogin", enabled=True)

        assert await service.refresh() == 4

        record = service.get_flag("feature_socialLogin")
        assert record.enabled is False
        assert record.source == FlagSource.CONFIG

    @pytest.mark.asyncio
    async def test_refresh_over_active_override(self, service):
        """A config reload replaces overrides and drops their pending reverts."""
        await service.initialize()
        service.override("feature_socialLogin", True)
        service.override("feature_biometricAuth", False, duration_ms=100)

        await service.refresh()
        await asyncio.sleep(0.3)

        for name, enabled in (("feature_socialLogin", False), ("feature_biometricAuth", True)):
            record = service.get_flag(name)
            assert record.enabled is enabled
            assert record.source == FlagSource.CONFIG
            assert record.original_value is None
            assert record.override_expires_at is None
        assert service.overrides.pending_reverts() == []
        assert service.get_debug_info()["active_overrides"] == 0


class TestCleanup:
    """Tests for cleanup()."""

    @pytest.mark.asyncio
    async def test_cleanup_resets_engine(self, service):
        await service.initialize()
        listener = MagicMock()
        service.add_listener(listener)
        service.override("feature_socialLogin", True, duration_ms=100)

        service.cleanup()
        await asyncio.sleep(0.3)

        assert service.initialized is False
        assert service.get_all_flags() == {}
        assert service.overrides.pending_reverts() == []
        assert service.get_debug_info()["listeners"] == 0
        assert service.scheduler.running is False
        listener.assert_called_once_with("feature_socialLogin", True, False)

    @pytest.mark.asyncio
    async def test_initialize_after_cleanup_reloads(self, service, storage):
        await service.initialize()
        service.cleanup()

        await service.initialize()

        assert service.initialized is True
        assert service.is_feature_enabled("biometricAuth") is True
        assert storage.reads == 2

    def test_cleanup_without_initialize(self, service):
        service.cleanup()
        assert service.initialized is False


class TestTrackUsage:
    """track_usage is gated on the analytics feature and never raises."""

    def test_emits_event_when_analytics_enabled(self, make_service):
        sink = MagicMock()
        service = make_service(features={"analytics": True, "biometricAuth": True})
        service.usage_sink = sink
        service.set_flag("feature_biometricAuth", enabled=True, source="config")

        assert service.track_usage("feature_biometricAuth", {"screen": "login"}) is True

        sink.assert_called_once_with(
            {
                "flag": "feature_biometricAuth",
                "enabled": True,
                "source": "config",
                "context": {"screen": "login"},
            }
        )

    def test_skipped_when_analytics_disabled(self, service):
        sink = MagicMock()
        service.usage_sink = sink
        service.set_flag("feature_biometricAuth", enabled=True)

        assert service.track_usage("feature_biometricAuth") is False
        sink.assert_not_called()

    def test_skipped_for_unknown_flag(self, make_service):
        service = make_service(features={"analytics": True})
        assert service.track_usage("feature_never") is False

    def test_sink_failure_is_swallowed(self, make_service):
        service = make_service(features={"analytics": True})
        service.usage_sink = MagicMock(side_effect=ConnectionError("collector down"))
        service.set_flag("feature_x", enabled=True)

        assert service.track_usage("feature_x") is False

    def test_without_analytics_gate(self):
        service = FeatureFlagService(config=MagicMock(), storage=MemoryStorage())
        service.set_flag("feature_x", enabled=True)

        assert service.track_usage("feature_x") is False
        service.cleanup()


class TestDebugAndExport:
    """Introspection helpers."""

    @pytest.mark.asyncio
    async def test_debug_info(self, service):
        await service.initialize()
        service.add_listener(lambda *args: None)
        service.override("feature_x", True)

        info = service.get_debug_info()

        assert info == {
            "initialized": True,
            "flag_count": 5,
            "sources": ["config", "override"],
            "listeners": 1,
            "last_update": None,
            "periodic_update": False,
            "active_overrides": 1,
        }

    def test_debug_info_before_initialize(self, service):
        info = service.get_debug_info()
        assert info["initialized"] is False
        assert info["flag_count"] == 0
        assert info["sources"] == []

    @pytest.mark.asyncio
    async def test_export_flags(self, service):
        await service.initialize()

        exported = service.export_flags()

        assert set(exported) == {
            "feature_biometricAuth",
            "feature_socialLogin",
            "experimental_venueRecommendations",
            "experimental_arFeatures",
        }
        entry = exported["feature_biometricAuth"]
        assert entry["enabled"] is True
        assert entry["source"] == "config"
        assert datetime.fromisoformat(entry["lastUpdated"]).tzinfo is not None
        # Plain data only
        json.dumps(exported)
