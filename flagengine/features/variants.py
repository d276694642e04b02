"""
Deterministic variant assignment for A/B tests.

No per-subject assignment is stored: the hash of test name and subject id
is the assignment, so it is identical across calls and process restarts.
"""

import hashlib
import logging
from typing import Optional, Sequence, TypeVar

from flagengine.errors import InvalidVariantsError
from flagengine.features.resolver import FlagResolver

logger = logging.getLogger(__name__)

V = TypeVar("V")

DEFAULT_VARIANTS = ("A", "B")
ANONYMOUS_SUBJECT = "anonymous"


def stable_hash(value: str) -> int:
    """
    Stable unsigned 32-bit hash of a string.

    Uses the first 8 hex digits of SHA-256 over the UTF-8 bytes, so the
    result does not depend on PYTHONHASHSEED, platform or process.
    """
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()
    return int(digest[:8], 16)


def bucket_for(test_name: str, subject_id: str, buckets: int) -> int:
    """Bucket index in [0, buckets) for a subject in a test."""
    return stable_hash(f"{test_name}:{subject_id}") % buckets


class VariantAssigner:
    """Assigns subjects to variants of running A/B tests."""

    def __init__(self, resolver: FlagResolver):
        self.resolver = resolver

    def get_variant(
        self,
        test_name: str,
        variants: Sequence[V] = DEFAULT_VARIANTS,
        subject_id: Optional[str] = None,
    ) -> V:
        """
        Pick the variant for a subject.

        Args:
            test_name: Test name; the test runs while ab_test_<test_name> is enabled
            variants: Candidate variants, variants[0] being the control
            subject_id: Stable subject identifier (user id, device id...)

        Returns:
            variants[0] when the test is disabled or absent, otherwise the
            hashed variant for the subject

        Raises:
            InvalidVariantsError: If variants is empty
        """
        if not variants:
            raise InvalidVariantsError(test_name)

        if not self.resolver.is_ab_test_running(test_name):
            return variants[0]

        subject = subject_id if subject_id is not None else ANONYMOUS_SUBJECT
        index = bucket_for(test_name, subject, len(variants))
        logger.debug(f"A/B test {test_name}: subject {subject} -> bucket {index}")
        return variants[index]
