import math
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ProxyProtocol(str, Enum):
    VMess = "vmess"
    VLESS = "vless"
    Trojan = "trojan"
    Shadowsocks = "shadowsocks"
    Other = "other"

    @classmethod
    def parse(cls, value: Any) -> "ProxyProtocol":
        if isinstance(value, ProxyProtocol):
            return value
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            return cls.Other


class PanelType(str, Enum):
    pasarguard = "PasarGuard"
    threexui = "3X-UI"


def coerce_int(value: Any, default: int = 0) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            return default
        return int(value)
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return default
        try:
            return int(float(value))
        except ValueError:
            return default
    return default


class Group(BaseModel):
    id: int = 0
    name: str = ""

    @field_validator("name", mode="before")
    @classmethod
    def _none_to_empty(cls, v):
        return v or ""


class UserRecord(BaseModel):
    """Canonical account record shared by every panel and by the snapshot file."""

    model_config = ConfigDict(populate_by_name=True)

    id: int = 0
    username: str = ""
    email: str = ""
    identifier: str = Field("", alias="uuid")
    enabled: bool = Field(False, alias="enable")
    quota_bytes: int = Field(0, alias="totalGB")
    expire: int = Field(0, alias="expiryTime")
    limit_ip: int = Field(0, alias="limitIp")
    used_bytes: int = Field(0, alias="usedTraffic")
    remaining_bytes: int = Field(-1, alias="remainingTraffic")
    protocol: ProxyProtocol = ProxyProtocol.Other
    port: int = 0
    remark: str = ""
    subscription_url: str = ""
    note: str = ""
    proxy_settings: dict[str, Any] = Field(default_factory=dict)
    group_ids: list[int] = Field(default_factory=list)

    @field_validator("username", "email", "identifier", "remark", "subscription_url", "note", mode="before")
    @classmethod
    def _none_to_empty_string(cls, v):
        return "" if v is None else str(v)

    @field_validator("id", "quota_bytes", "expire", "limit_ip", "used_bytes", "port", mode="before")
    @classmethod
    def _to_int(cls, v):
        return coerce_int(v)

    @field_validator("remaining_bytes", mode="before")
    @classmethod
    def _remaining_to_int(cls, v):
        return coerce_int(v, default=-1)

    @field_validator("enabled", mode="before")
    @classmethod
    def _none_to_false(cls, v):
        return bool(v) if v is not None else False

    @field_validator("protocol", mode="before")
    @classmethod
    def _parse_protocol(cls, v):
        return ProxyProtocol.parse(v)

    @field_validator("proxy_settings", mode="before")
    @classmethod
    def _none_to_empty_dict(cls, v):
        return v if isinstance(v, dict) else {}

    @field_validator("group_ids", mode="before")
    @classmethod
    def _unique_group_ids(cls, v):
        if not v:
            return []
        seen: list[int] = []
        for item in v:
            gid = coerce_int(item)
            if gid not in seen:
                seen.append(gid)
        return seen

    def to_snapshot(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")

    def __repr__(self) -> str:
        return f"<UserRecord {self.username} {self.identifier}>"


class ImportBatch(BaseModel):
    """Records read from one snapshot file, in file order."""

    model_config = ConfigDict(populate_by_name=True)

    export_date: Optional[str] = None
    panel_type: str = ""
    declared_total: int = Field(0, alias="total_users")
    records: list[UserRecord] = Field(default_factory=list, alias="users")

    @field_validator("records", mode="before")
    @classmethod
    def _none_to_empty_list(cls, v):
        return v or []

    @field_validator("declared_total", mode="before")
    @classmethod
    def _declared_to_int(cls, v):
        return coerce_int(v)

    @property
    def exported_at(self) -> Optional[datetime]:
        if not self.export_date:
            return None
        try:
            return datetime.fromisoformat(self.export_date)
        except ValueError:
            return None

    @property
    def count_matches(self) -> bool:
        return self.declared_total == len(self.records)
