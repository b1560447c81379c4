"""Turns the many response envelopes panels use into canonical records."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional

from pydantic import ValidationError

from panelsync.exceptions import Conflict, EnvelopeRejected, UnrecognizedShape
from panelsync.models.inbound import PanelInbound
from panelsync.models.user import Group, ProxyProtocol, UserRecord, coerce_int
from panelsync.quota import derive_remaining

logger = logging.getLogger(__name__)

CANONICAL_MARKERS = frozenset(("uuid", "totalGB", "enable", "expiryTime", "usedTraffic", "remainingTraffic"))
PRODUCT_MARKERS = frozenset(("status", "data_limit", "used_traffic", "expire", "lifetime_used_traffic"))

# protocol keys checked, in order, for the primary credential of a product-shape user
PRIMARY_CREDENTIAL = (
    (ProxyProtocol.VMess, "id"),
    (ProxyProtocol.VLESS, "id"),
    (ProxyProtocol.Trojan, "password"),
    (ProxyProtocol.Shadowsocks, "password"),
)


def normalize_users(body: Any) -> list[UserRecord]:
    """Decode a user listing.

    Accepted, in order: a bare array of canonical records, a
    `{"success": true, "obj": [...]}` envelope, a `{"users": [...]}` wrapper of
    canonical records and the product user shape (`status`, `data_limit`,
    `used_traffic`, ...). Remaining traffic is re-derived for every record.
    """
    items = _user_items(body)
    if items is None:
        raise UnrecognizedShape(body)

    records = []
    for item in items:
        if not isinstance(item, dict):
            raise UnrecognizedShape(body)
        try:
            if _is_product_item(item):
                record = _from_product(item)
            else:
                record = UserRecord.model_validate(item)
        except (ValidationError, TypeError, ValueError) as exc:
            raise UnrecognizedShape(body, f"user entry could not be decoded: {exc}") from exc
        record.remaining_bytes = derive_remaining(record.quota_bytes, record.used_bytes)
        records.append(record)
    return records


def _user_items(body: Any) -> Optional[list]:
    if isinstance(body, list):
        return body
    if not isinstance(body, dict):
        return None
    if body.get("success") is True and isinstance(body.get("obj"), list):
        return body["obj"]
    if isinstance(body.get("users"), list):
        return body["users"]
    return None


def _is_product_item(item: dict) -> bool:
    keys = item.keys()
    if keys & CANONICAL_MARKERS:
        return False
    return bool(keys & PRODUCT_MARKERS) or "proxy_settings" in keys


def parse_expire(value: Any) -> int:
    """Product panels send expiry as an RFC 3339 string, older builds as epoch seconds."""
    if value is None or value == "":
        return 0
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return coerce_int(value)
    if isinstance(value, str):
        text = value.strip()
        if text.lstrip("-").isdigit():
            return int(text)
        try:
            return int(datetime.fromisoformat(text.replace("Z", "+00:00")).timestamp())
        except ValueError:
            logger.debug("Unparseable expiry %r treated as never", value)
            return 0
    return 0


def primary_credential(proxy_settings: dict) -> tuple[ProxyProtocol, str]:
    for protocol, field in PRIMARY_CREDENTIAL:
        settings = proxy_settings.get(protocol.value)
        if isinstance(settings, dict):
            value = settings.get(field)
            return protocol, value if isinstance(value, str) else ""
    return ProxyProtocol.Other, ""


def _from_product(item: dict) -> UserRecord:
    proxy_settings = item.get("proxy_settings") if isinstance(item.get("proxy_settings"), dict) else {}
    protocol, identifier = primary_credential(proxy_settings)

    note = item.get("note") or ""
    used = coerce_int(item.get("used_traffic"))
    lifetime = coerce_int(item.get("lifetime_used_traffic"))
    if used == 0 and lifetime > 0:
        used = lifetime

    return UserRecord(
        id=item.get("id"),
        username=item.get("username"),
        email=note if "@" in note else "",
        identifier=identifier,
        enabled=item.get("status") == "active",
        quota_bytes=item.get("data_limit"),
        expire=parse_expire(item.get("expire")),
        limit_ip=item.get("limit_ip") or 0,
        used_bytes=used,
        protocol=protocol,
        remark=note,
        subscription_url=item.get("subscription_url"),
        note=note,
        proxy_settings=proxy_settings,
        group_ids=item.get("group_ids"),
    )


def normalize_groups(body: Any) -> list[Group]:
    if isinstance(body, list):
        items = body
    elif isinstance(body, dict) and body.get("success") is True and isinstance(body.get("obj"), list):
        items = body["obj"]
    elif isinstance(body, dict) and isinstance(body.get("groups"), list):
        items = body["groups"]
    else:
        raise UnrecognizedShape(body)

    groups = []
    for item in items:
        if not isinstance(item, dict):
            continue
        groups.append(Group(id=coerce_int(item.get("id")), name=item.get("name") or item.get("title") or ""))
    return groups


def unwrap_envelope(body: Any, method: str = "", path: str = "") -> Any:
    """Return `obj` of a `{success, msg, obj}` envelope or raise when it reports failure."""
    if not isinstance(body, dict) or "success" not in body:
        raise UnrecognizedShape(body)
    if not body.get("success"):
        message = str(body.get("msg") or "request rejected by panel")
        if "already exists" in message.lower():
            raise Conflict(message)
        raise EnvelopeRejected(message, method, path)
    return body.get("obj")


def normalize_inbounds(body: Any) -> list[PanelInbound]:
    obj = unwrap_envelope(body)
    if obj is None:
        return []
    if not isinstance(obj, list):
        raise UnrecognizedShape(body)
    try:
        return [PanelInbound.model_validate(item) for item in obj]
    except ValidationError as exc:
        raise UnrecognizedShape(body, f"inbound entry could not be decoded: {exc}") from exc


def check_write(body: Any, method: str = "", path: str = "") -> Any:
    """A write succeeded unless the panel answered with a failing success envelope."""
    if isinstance(body, dict) and body.get("success") is False:
        unwrap_envelope(body, method, path)
    return body
