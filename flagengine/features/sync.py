"""
Persistence and synchronization of feature flags.

FlagSynchronizer is the only component that touches storage or the network.
Every failure here is logged and swallowed: flags keep resolving to their
last known (or fail-closed) values when a backend is unavailable.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field, StrictBool, TypeAdapter, ValidationError

from flagengine.errors import (
    MalformedRemotePayloadError,
    RemoteError,
    RemoteFetchError,
    StorageReadError,
    StorageWriteError,
)
from flagengine.features.models import Clock, FlagSource, utc_now
from flagengine.features.protocols import ConfigProvider, KeyValueStorage
from flagengine.features.resolver import experimental_flag_name, feature_flag_name
from flagengine.features.store import FlagStore

logger = logging.getLogger(__name__)

LOCAL_STORAGE_KEY = "feature_flags"
REMOTE_FLAGS_PATH = "/api/config/flags"
REMOTE_TIMEOUT_SECONDS = 10.0
PRODUCTION = "production"


class PersistedFlag(BaseModel):
    """One entry of the locally persisted flag document."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    enabled: bool
    source: Optional[str] = None
    last_updated: Optional[datetime] = Field(default=None, alias="lastUpdated")


class RemoteFlag(BaseModel):
    """One entry of the remote flag document; unknown keys are kept as metadata."""

    model_config = ConfigDict(extra="allow")

    enabled: StrictBool


_persisted_document = TypeAdapter(Dict[str, PersistedFlag])
_remote_document = TypeAdapter(Dict[str, RemoteFlag])

# Keys of a remote entry that the engine sets itself
_RESERVED_REMOTE_KEYS = {"source", "lastUpdated", "last_updated"}


@dataclass
class SaveResult:
    """Outcome of writing flags to local storage."""

    ok: bool
    saved: int = 0
    error: Optional[StorageWriteError] = None


class FlagSynchronizer:
    """
    Loads flags from local storage, configuration and the remote endpoint,
    and writes the store back to local storage.

    Attributes:
        last_update: Time of the last successful remote sync
    """

    def __init__(
        self,
        store: FlagStore,
        config: ConfigProvider,
        storage: KeyValueStorage,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Clock = utc_now,
        storage_key: str = LOCAL_STORAGE_KEY,
        flags_path: str = REMOTE_FLAGS_PATH,
        timeout_seconds: float = REMOTE_TIMEOUT_SECONDS,
    ):
        self.store = store
        self.config = config
        self.storage = storage
        self.http_client = http_client
        self.storage_key = storage_key
        self.flags_path = flags_path
        self.timeout_seconds = timeout_seconds
        self.last_update: Optional[datetime] = None
        self._clock = clock

    def is_production(self) -> bool:
        return self.config.get_environment() == PRODUCTION

    # Local storage

    async def load_local_flags(self) -> int:
        """
        Load persisted flags into the store with source=local.

        Returns:
            Number of flags loaded (0 when nothing is stored or reading fails)
        """
        try:
            entries = await self._read_local_document()
        except StorageReadError as e:
            logger.warning(f"{e.message}; continuing without local flags")
            return 0

        for name, entry in entries.items():
            self.store.set(
                name,
                enabled=entry.enabled,
                source=FlagSource.LOCAL,
                last_updated=_as_utc(entry.last_updated) if entry.last_updated else self._clock(),
            )

        if entries:
            logger.info(f"Loaded {len(entries)} flags from local storage")
        return len(entries)

    async def _read_local_document(self) -> Dict[str, PersistedFlag]:
        try:
            raw = await self.storage.get(self.storage_key)
        except Exception as e:
            raise StorageReadError(self.storage_key, str(e) or type(e).__name__) from e

        if raw is None:
            return {}

        try:
            return _persisted_document.validate_json(raw)
        except ValidationError as e:
            raise StorageReadError(self.storage_key, f"invalid flag document ({e.error_count()} errors)") from e

    async def save_local_flags(self, names: Optional[Iterable[str]] = None) -> SaveResult:
        """
        Persist the store (or only the given flags) to local storage.

        Never raises; a failed write is reported in the returned SaveResult.
        """
        flags = self.store.all()
        if names is not None:
            wanted = set(names)
            flags = {name: record for name, record in flags.items() if name in wanted}

        document = {name: record.to_dict() for name, record in flags.items()}
        try:
            await self.storage.set(self.storage_key, json.dumps(document))
        except Exception as e:
            error = StorageWriteError(self.storage_key, str(e) or type(e).__name__)
            logger.warning(error.message)
            return SaveResult(ok=False, error=error)

        logger.debug(f"Saved {len(document)} flags to local storage")
        return SaveResult(ok=True, saved=len(document))

    async def clear_persisted(self) -> bool:
        """Delete the persisted flag document. Returns False if removal failed."""
        try:
            await self.storage.remove(self.storage_key)
        except Exception as e:
            error = StorageWriteError(self.storage_key, str(e) or type(e).__name__)
            logger.warning(error.message)
            return False
        return True

    # Configuration

    def load_config_flags(self) -> int:
        """
        Flatten the config document into feature_<key> / experimental_<key> flags.

        Returns:
            Number of flags written
        """
        config = self.config.get_features_and_experimental()
        count = 0
        for key, enabled in config.features.items():
            self.store.set(feature_flag_name(key), enabled=enabled, source=FlagSource.CONFIG)
            count += 1
        for key, enabled in config.experimental.items():
            self.store.set(experimental_flag_name(key), enabled=enabled, source=FlagSource.CONFIG)
            count += 1

        logger.debug(f"Loaded {count} flags from configuration")
        return count

    # Remote endpoint

    def remote_url(self) -> str:
        api = self.config.get_api_base_url_and_version()
        return f"{api.base_url.rstrip('/')}{self.flags_path}"

    async def load_remote_flags(self) -> int:
        """
        Fetch the remote flag document and merge it with source=remote.

        Remote values overwrite same-named config and local flags. On success
        last_update is recorded and the store is persisted locally. Any
        fetch or payload failure is logged and leaves the store untouched.

        Returns:
            Number of flags merged (0 on failure)
        """
        try:
            entries = await self._fetch_remote_document()
        except RemoteError as e:
            logger.warning(f"{e.message}; keeping current flags")
            return 0

        for name, entry in entries.items():
            metadata = {
                key: value
                for key, value in (entry.model_extra or {}).items()
                if key not in _RESERVED_REMOTE_KEYS
            }
            self.store.set(
                name,
                enabled=entry.enabled,
                source=FlagSource.REMOTE,
                metadata=metadata,
            )

        self.last_update = self._clock()
        logger.info(f"Loaded {len(entries)} remote flags")
        await self.save_local_flags()
        return len(entries)

    async def _fetch_remote_document(self) -> Dict[str, RemoteFlag]:
        api = self.config.get_api_base_url_and_version()
        url = self.remote_url()
        headers = {
            "Content-Type": "application/json",
            "X-API-Version": api.version,
        }

        try:
            if self.http_client is not None:
                response = await self.http_client.get(url, headers=headers, timeout=self.timeout_seconds)
            else:
                async with httpx.AsyncClient(timeout=httpx.Timeout(self.timeout_seconds)) as client:
                    response = await client.get(url, headers=headers)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            raise RemoteFetchError(url, f"HTTP {status}", status=status) from e
        except httpx.RequestError as e:
            raise RemoteFetchError(url, str(e) or type(e).__name__) from e

        try:
            payload: Any = response.json()
        except ValueError as e:
            raise MalformedRemotePayloadError(url, "response body is not valid JSON") from e

        try:
            return _remote_document.validate_python(payload)
        except ValidationError as e:
            raise MalformedRemotePayloadError(url, f"unexpected flag document shape ({e.error_count()} errors)") from e


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
