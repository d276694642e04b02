"""
Feature flag API routes.

Devtools endpoints for inspecting flags, forcing overrides and checking
A/B assignments against the running engine.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from flagengine.errors import FlagEngineError, FlagNotFoundError
from flagengine.features import FeatureFlagService, FlagRecord

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/features", tags=["features"])


def get_feature_service(request: Request) -> FeatureFlagService:
    """
    FastAPI dependency returning the engine attached to the application.

    Tests can swap the engine via app.dependency_overrides.
    """
    return request.app.state.feature_service


def _raise_http(error: FlagEngineError) -> None:
    raise HTTPException(
        status_code=error.status_code,
        detail={
            "error_code": error.error_code.value,
            "message": error.message,
            "details": error.details,
        },
    )


# ==============================================================================
# Schemas
# ==============================================================================


class FeatureFlagsResponse(BaseModel):
    """All feature flags response."""

    flags: Dict[str, bool]
    enabled_count: int
    disabled_count: int
    total_count: int

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "flags": {
                        "feature_biometricAuth": True,
                        "feature_socialLogin": False,
                        "ab_test_checkout": True,
                    },
                    "enabled_count": 2,
                    "disabled_count": 1,
                    "total_count": 3,
                }
            ]
        }
    }


class OriginalValueResponse(BaseModel):
    enabled: bool
    source: str


class FlagResponse(BaseModel):
    """Single feature flag response."""

    name: str
    enabled: bool
    source: str
    last_updated: datetime
    original_value: Optional[OriginalValueResponse] = None
    override_expires_at: Optional[datetime] = None
    metadata: Dict[str, Any] = {}

    @classmethod
    def from_record(cls, record: FlagRecord) -> "FlagResponse":
        original = None
        if record.original_value is not None:
            original = OriginalValueResponse(
                enabled=record.original_value.enabled,
                source=record.original_value.source.value,
            )
        return cls(
            name=record.name,
            enabled=record.enabled,
            source=record.source.value,
            last_updated=record.last_updated,
            original_value=original,
            override_expires_at=record.override_expires_at,
            metadata=record.metadata,
        )


class DebugInfoResponse(BaseModel):
    initialized: bool
    flag_count: int
    sources: List[str]
    listeners: int
    last_update: Optional[str] = None
    periodic_update: bool
    active_overrides: int


class VariantResponse(BaseModel):
    test_name: str
    subject_id: Optional[str] = None
    variant: str
    running: bool


class RefreshResponse(BaseModel):
    loaded: int


class FlagUpdateRequest(BaseModel):
    enabled: bool


class OverrideRequest(BaseModel):
    enabled: bool
    duration_ms: Optional[int] = Field(default=None, gt=0)


class RevertResponse(BaseModel):
    name: str
    reverted: bool


# ==============================================================================
# Endpoints
# ==============================================================================


@router.get("", response_model=FeatureFlagsResponse)
async def get_feature_flags(
    feature_service: FeatureFlagService = Depends(get_feature_service),
):
    """
    Get current state of all feature flags.

    Use this to conditionally show/hide UI features based on the engine state.
    """
    flags = {name: record.enabled for name, record in feature_service.get_all_flags().items()}
    enabled = feature_service.get_enabled_features()
    disabled = feature_service.get_disabled_features()

    return FeatureFlagsResponse(
        flags=flags,
        enabled_count=len(enabled),
        disabled_count=len(disabled),
        total_count=len(flags),
    )


@router.get("/debug", response_model=DebugInfoResponse)
async def get_debug_info(
    feature_service: FeatureFlagService = Depends(get_feature_service),
):
    """Engine introspection: initialization state, sources and listener count."""
    return DebugInfoResponse(**feature_service.get_debug_info())


@router.get("/export")
async def export_flags(
    feature_service: FeatureFlagService = Depends(get_feature_service),
) -> Dict[str, Dict[str, Any]]:
    """Serializable snapshot of every flag, in the persisted format."""
    return feature_service.export_flags()


@router.get("/variants/{test_name}", response_model=VariantResponse)
async def get_variant(
    test_name: str,
    subject_id: Optional[str] = None,
    variants: List[str] = Query(default=["A", "B"]),
    feature_service: FeatureFlagService = Depends(get_feature_service),
):
    """Return the variant assigned to a subject in an A/B test."""
    try:
        variant = feature_service.get_variant(test_name, variants, subject_id)
    except FlagEngineError as e:
        _raise_http(e)

    return VariantResponse(
        test_name=test_name,
        subject_id=subject_id,
        variant=variant,
        running=feature_service.resolver.is_ab_test_running(test_name),
    )


@router.post("/refresh", response_model=RefreshResponse)
async def refresh_flags(
    feature_service: FeatureFlagService = Depends(get_feature_service),
):
    """Re-sync flags: remote endpoint in production, configuration otherwise."""
    loaded = await feature_service.refresh()
    return RefreshResponse(loaded=loaded)


@router.get("/flags/{name}", response_model=FlagResponse)
async def get_feature_flag(
    name: str,
    feature_service: FeatureFlagService = Depends(get_feature_service),
):
    """Get a single flag with its provenance and override state."""
    record = feature_service.get_flag(name)
    if record is None:
        _raise_http(FlagNotFoundError(name))
    return FlagResponse.from_record(record)


@router.put("/flags/{name}", response_model=FlagResponse)
async def set_feature_flag(
    name: str,
    body: FlagUpdateRequest,
    feature_service: FeatureFlagService = Depends(get_feature_service),
):
    """Set a flag manually. New flags are recorded with source 'manual'."""
    feature_service.set_flag(name, enabled=body.enabled)
    logger.info(f"Flag {name} set to {body.enabled} via API")
    return FlagResponse.from_record(feature_service.get_flag(name))


@router.post("/flags/{name}/override", response_model=FlagResponse)
async def override_feature_flag(
    name: str,
    body: OverrideRequest,
    feature_service: FeatureFlagService = Depends(get_feature_service),
):
    """Force a flag to a value, optionally reverting after duration_ms."""
    try:
        feature_service.override(name, body.enabled, body.duration_ms)
    except FlagEngineError as e:
        _raise_http(e)
    return FlagResponse.from_record(feature_service.get_flag(name))


@router.delete("/flags/{name}/override", response_model=RevertResponse)
async def revert_feature_flag(
    name: str,
    feature_service: FeatureFlagService = Depends(get_feature_service),
):
    """Revert an override. Reverting a flag that is not overridden is a no-op."""
    if feature_service.get_flag(name) is None:
        _raise_http(FlagNotFoundError(name))
    reverted = feature_service.revert_override(name)
    return RevertResponse(name=name, reverted=reverted)
