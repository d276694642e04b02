"""
Naming-convention helpers over the flag store.

Config ingestion flattens {"features": {...}, "experimental": {...}} into
prefixed flag names; the resolver is the inverse mapping used by call sites.
"""

from flagengine.features.store import FlagStore

FEATURE_PREFIX = "feature_"
EXPERIMENTAL_PREFIX = "experimental_"
AB_TEST_PREFIX = "ab_test_"


def feature_flag_name(key: str) -> str:
    return f"{FEATURE_PREFIX}{key}"


def experimental_flag_name(key: str) -> str:
    return f"{EXPERIMENTAL_PREFIX}{key}"


def ab_test_flag_name(test_name: str) -> str:
    return f"{AB_TEST_PREFIX}{test_name}"


class FlagResolver:
    """Boolean lookups by convention name."""

    def __init__(self, store: FlagStore):
        self.store = store

    def is_enabled(self, name: str) -> bool:
        return self.store.is_enabled(name)

    def is_feature_enabled(self, key: str) -> bool:
        """
        Check a standard feature.

        Example:
            if resolver.is_feature_enabled("biometricAuth"):
                ...
        """
        return self.store.is_enabled(feature_flag_name(key))

    def is_experimental_enabled(self, key: str) -> bool:
        """Check an experimental feature."""
        return self.store.is_enabled(experimental_flag_name(key))

    def is_ab_test_running(self, test_name: str) -> bool:
        return self.store.is_enabled(ab_test_flag_name(test_name))
