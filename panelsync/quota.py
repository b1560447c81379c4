"""Quota arithmetic shared by the user and inbound import paths.

Both panels store "bytes remaining" and "0 means unlimited", so a record
exported with nothing left would come back unlimited unless the remaining
value is what gets written as the new quota.
"""

from __future__ import annotations

from typing import Union

from panelsync.models.inbound import ClientRecord
from panelsync.models.user import UserRecord

# epoch values above this are milliseconds
MILLISECOND_EPOCH_THRESHOLD = 100_000_000_000


def to_canonical(remaining: int, quota: int) -> int:
    """Quota to write on import: what was left, with 0 left meaning unlimited."""
    if remaining > 0:
        return remaining
    if remaining == 0:
        return 0
    return quota


def derive_remaining(quota: int, used: int) -> int:
    if quota > 0:
        return max(quota - used, 0)
    return -1


def normalize_epoch(value: int) -> int:
    if value > MILLISECOND_EPOCH_THRESHOLD:
        return value // 1000
    return value


def refill(record: Union[UserRecord, ClientRecord]) -> Union[UserRecord, ClientRecord]:
    """Translate the quota, reset usage and re-derive remaining, in place."""
    record.quota_bytes = to_canonical(record.remaining_bytes, record.quota_bytes)
    record.used_bytes = 0
    record.remaining_bytes = derive_remaining(record.quota_bytes, record.used_bytes)
    return record
