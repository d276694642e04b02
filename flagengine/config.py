"""
Application configuration using Pydantic settings.

All configurable values are loaded from environment variables with sensible defaults.
Settings also acts as the config provider and analytics gate handed to the
flag engine, so the engine never reads environment variables itself.
"""
from pathlib import Path
from typing import Dict, Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from flagengine.features.protocols import ApiConfig, FeatureConfig

# Get the directory containing this config file (flagengine/)
_PACKAGE_DIR = Path(__file__).parent.resolve()

Environment = Literal["development", "staging", "production"]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # App metadata
    app_name: str = "Flag Engine API"
    app_version: str = "0.1.0"
    debug: bool = False

    # Logging configuration
    log_level: str = "INFO"  # DEBUG, INFO, WARNING, ERROR, CRITICAL

    # Active environment; remote flags are only fetched in production
    environment: Environment = "development"

    # Config-derived flags, e.g. FEATURES='{"biometricAuth": true}'
    features: Dict[str, bool] = {}
    experimental: Dict[str, bool] = {}

    # Remote flag endpoint
    api_base_url: str = "http://localhost:8000"
    api_version: str = "v1"
    flags_endpoint_path: str = "/api/config/flags"
    remote_timeout_seconds: float = 10.0
    remote_refresh_interval_seconds: int = 300  # 5 minutes

    # Local persistence
    local_storage_key: str = "feature_flags"
    local_storage_path: Path = Path("flagengine_storage.json")

    model_config = SettingsConfigDict(
        env_file=_PACKAGE_DIR / ".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @field_validator("environment", mode="before")
    @classmethod
    def normalize_environment(cls, value):
        """Accept environment names in any case."""
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("remote_timeout_seconds", "remote_refresh_interval_seconds")
    @classmethod
    def validate_positive(cls, value):
        """Timeouts and intervals must be positive."""
        if value <= 0:
            raise ValueError("must be greater than zero")
        return value

    # ConfigProvider

    def get_environment(self) -> str:
        return self.environment

    def get_features_and_experimental(self) -> FeatureConfig:
        return FeatureConfig(
            features=dict(self.features),
            experimental=dict(self.experimental),
        )

    def get_api_base_url_and_version(self) -> ApiConfig:
        return ApiConfig(base_url=self.api_base_url, version=self.api_version)

    # AnalyticsGate

    def is_feature_enabled(self, name: str) -> bool:
        """Check a config-level feature toggle (used to gate analytics)."""
        return bool(self.features.get(name, False))


def get_settings(**overrides) -> Settings:
    """
    Factory function to create Settings instance.

    Useful for testing where you need to override specific values
    without modifying environment variables.

    Args:
        **overrides: Key-value pairs to override default settings

    Returns:
        Settings instance with overrides applied

    Example:
        test_settings = get_settings(environment="production", features={"analytics": True})
    """
    return Settings(**overrides)


# Global settings instance (lazy initialization for testability)
settings = get_settings()
