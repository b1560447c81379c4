"""Reading and writing the portable snapshot files."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Union

from pydantic import ValidationError

from panelsync.exceptions import InvalidSnapshot
from panelsync.models.inbound import InboundBatch, InboundRecord
from panelsync.models.user import ImportBatch, PanelType, UserRecord


def _now_iso(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return now.replace(microsecond=0).isoformat()


def _dump(document: dict) -> bytes:
    return json.dumps(document, indent=2, ensure_ascii=False).encode("utf-8")


def export_listing(
    records: list[UserRecord],
    panel_type: PanelType = PanelType.pasarguard,
    now: Optional[datetime] = None,
) -> bytes:
    document = {
        "export_date": _now_iso(now),
        "panel_type": PanelType(panel_type).value,
        "total_users": len(records),
        "users": [record.to_snapshot() for record in records],
    }
    return _dump(document)


def load_batch(raw: Union[bytes, str]) -> ImportBatch:
    try:
        return ImportBatch.model_validate_json(raw)
    except ValidationError as exc:
        raise InvalidSnapshot(f"not a valid user export file: {exc}") from exc


def export_inbounds(listing: list[InboundRecord], now: Optional[datetime] = None) -> bytes:
    document = {
        "export_date": _now_iso(now),
        "total_inbounds": len(listing),
        "total_users": sum(len(inbound.clients) for inbound in listing),
        "inbounds": [inbound.to_snapshot() for inbound in listing],
    }
    return _dump(document)


def load_inbound_batch(raw: Union[bytes, str]) -> InboundBatch:
    try:
        return InboundBatch.model_validate_json(raw)
    except ValidationError as exc:
        raise InvalidSnapshot(f"not a valid inbound export file: {exc}") from exc


def inbounds_to_users(listing: list[InboundRecord]) -> list[UserRecord]:
    """Clients of every inbound as user records, numbered from 1 in listing order."""
    users = []
    for inbound in listing:
        for client in inbound.clients:
            users.append(
                UserRecord(
                    id=len(users) + 1,
                    username=client.email,
                    email=client.email,
                    identifier=client.identifier,
                    enabled=client.enabled,
                    quota_bytes=client.quota_bytes,
                    expire=client.expire,
                    limit_ip=client.limit_ip,
                    used_bytes=client.used_bytes,
                    remaining_bytes=client.remaining_bytes,
                    protocol=inbound.protocol,
                    port=inbound.port,
                    remark=inbound.remark,
                    note=inbound.remark,
                )
            )
    return users


@dataclass
class ListingStats:
    total: int = 0
    active: int = 0
    used_bytes: int = 0
    limit_bytes: int = 0
    remaining_bytes: int = 0
    top_consumers: list[UserRecord] = field(default_factory=list)


def listing_stats(records: list[UserRecord], top: int = 5) -> ListingStats:
    stats = ListingStats(total=len(records))
    for record in records:
        if record.enabled:
            stats.active += 1
        stats.used_bytes += max(record.used_bytes, 0)
        if record.quota_bytes > 0:
            stats.limit_bytes += record.quota_bytes
        if record.remaining_bytes > 0:
            stats.remaining_bytes += record.remaining_bytes
    stats.top_consumers = sorted(records, key=lambda r: r.used_bytes, reverse=True)[:top]
    return stats
