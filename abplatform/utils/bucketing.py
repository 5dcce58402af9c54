"""Helper functions for deterministic user bucketing.

Everything here is a pure function of its arguments, so it gives the same
answer in every process on every machine. Python's built-in hash() is
salted per process and must never be used for this.
"""
import hashlib

from abplatform.errors import ValidationError


def stable_hash(value: str, algorithm: str = "md5") -> int:
    """
    Deterministic 32-bit integer hash of a string.

    MD5/SHA-256 are only used for an even, stable spread here, not for
    security. Only the first 8 hex chars are kept so the value fits a
    BIGINT column.
    """
    digest = hashlib.new(algorithm, value.encode("utf-8"), usedforsecurity=False).hexdigest()
    return int(digest[:8], 16)


def _combine(identity: str, context: str) -> str:
    if not identity:
        raise ValidationError("identity must be a non-empty string")
    return f"{identity}:{context}"


def percentile(identity: str, context: str) -> int:
    """
    Map (identity, context) to a bucket in [1, 100].

    For experiments the context is the experiment name, for flags the flag
    name, so one user lands in unrelated buckets for unrelated gates.
    """
    return abs(stable_hash(_combine(identity, context))) % 100 + 1


def cohort_hash(identity: str, context: str) -> int:
    """
    Second hash over the same string, used to pick control vs treatment.

    Uses a different digest than percentile() so the arm a user lands in
    does not depend on their inclusion bucket.
    """
    return abs(stable_hash(_combine(identity, context), algorithm="sha256"))


def is_included(user_percentile: int, traffic_percentage: int) -> bool:
    """
    Traffic gate: a user takes part when their percentile is within the
    configured traffic share.

    100 lets everyone in. Raising the percentage only ever adds users.
    """
    return user_percentile <= traffic_percentage
