import json
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from panelsync.models.user import coerce_int


def _json_text(value: Any) -> str:
    """3X-UI returns settings blobs as JSON strings on some builds and as objects on others."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False)


class ClientRecord(BaseModel):
    """One credential nested inside a 3X-UI inbound."""

    model_config = ConfigDict(populate_by_name=True)

    email: str = Field("", alias="client_email")
    identifier: str = Field("", alias="client_id")
    enabled: bool = Field(False, alias="client_enable")
    quota_bytes: int = Field(0, alias="client_total_gb")
    expire: int = Field(0, alias="client_expiry_time")
    sub_id: str = Field("", alias="client_sub_id")
    used_bytes: int = Field(0, alias="traffic_used")
    remaining_bytes: int = Field(-1, alias="traffic_remaining")
    limit_ip: int = Field(0, alias="client_limit_ip")
    flow: str = Field("", alias="client_flow")
    tg_id: Any = Field("", alias="client_tg_id")
    reset: int = Field(0, alias="client_reset")

    @field_validator("email", "identifier", "sub_id", "flow", mode="before")
    @classmethod
    def _none_to_empty(cls, v):
        return "" if v is None else str(v)

    @field_validator("quota_bytes", "expire", "used_bytes", "limit_ip", "reset", mode="before")
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

    @classmethod
    def from_panel(cls, client: dict) -> "ClientRecord":
        """Build from an entry of the panel's `settings.clients` list."""
        return cls(
            email=client.get("email"),
            identifier=client.get("id") or client.get("password") or "",
            enabled=client.get("enable", False),
            quota_bytes=client.get("totalGB"),
            expire=client.get("expiryTime"),
            sub_id=client.get("subId"),
            limit_ip=client.get("limitIp"),
            flow=client.get("flow"),
            tg_id=client.get("tgId") if client.get("tgId") is not None else "",
            reset=client.get("reset"),
        )


class InboundRecord(BaseModel):
    """A 3X-UI listener with its nested clients, as stored in the snapshot file."""

    model_config = ConfigDict(populate_by_name=True)

    id: int = 0
    remark: str = ""
    protocol: str = ""
    port: int = 0
    enabled: bool = Field(False, alias="enable")
    tag: str = ""
    listen: str = ""
    expire: int = Field(0, alias="inbound_expiry_time")
    total_quota_bytes: int = Field(0, alias="inbound_total_gb_bytes")
    transport_settings: str = Field("", alias="transmission")
    sniffing_settings: str = Field("", alias="external_proxy")
    original_settings: str = ""
    clients: list[ClientRecord] = Field(default_factory=list)

    @field_validator("remark", "tag", "listen", mode="before")
    @classmethod
    def _none_to_empty(cls, v):
        return "" if v is None else str(v)

    @field_validator("protocol", mode="before")
    @classmethod
    def _lower_protocol(cls, v):
        return str(v or "").strip().lower()

    @field_validator("transport_settings", "sniffing_settings", "original_settings", mode="before")
    @classmethod
    def _blob_text(cls, v):
        return _json_text(v)

    @field_validator("id", "port", "expire", "total_quota_bytes", mode="before")
    @classmethod
    def _to_int(cls, v):
        return coerce_int(v)

    @field_validator("clients", mode="before")
    @classmethod
    def _none_to_list(cls, v):
        return v or []

    def to_snapshot(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class PanelInbound(BaseModel):
    """An inbound exactly as the 3X-UI list endpoint reports it."""

    model_config = ConfigDict(populate_by_name=True)

    id: int = 0
    remark: str = ""
    protocol: str = ""
    port: int = 0
    settings: str = ""
    stream_settings: str = Field("", alias="streamSettings")
    sniffing: str = ""
    enabled: bool = Field(False, alias="enable")
    tag: str = ""
    expire: int = Field(0, alias="expiryTime")
    total: int = 0
    listen: str = ""

    @field_validator("settings", "stream_settings", "sniffing", mode="before")
    @classmethod
    def _blob_text(cls, v):
        return _json_text(v)

    @field_validator("remark", "tag", "listen", mode="before")
    @classmethod
    def _none_to_empty(cls, v):
        return "" if v is None else str(v)

    @field_validator("protocol", mode="before")
    @classmethod
    def _lower_protocol(cls, v):
        return str(v or "").strip().lower()

    @field_validator("id", "port", "expire", "total", mode="before")
    @classmethod
    def _to_int(cls, v):
        return coerce_int(v)

    def settings_dict(self) -> Optional[dict]:
        text = self.settings.strip()
        if not text or text == "{}":
            return None
        try:
            parsed = json.loads(text)
        except ValueError:
            return None
        return parsed if isinstance(parsed, dict) else None

    def to_record(self) -> InboundRecord:
        return InboundRecord(
            id=self.id,
            remark=self.remark,
            protocol=self.protocol,
            port=self.port,
            enabled=self.enabled,
            tag=self.tag,
            listen=self.listen,
            expire=self.expire,
            total_quota_bytes=self.total,
            transport_settings=self.stream_settings,
            sniffing_settings=self.sniffing,
            original_settings=self.settings,
        )


class InboundBatch(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    export_date: Optional[str] = None
    total_inbounds: int = 0
    total_users: int = 0
    inbounds: list[InboundRecord] = Field(default_factory=list)

    @field_validator("inbounds", mode="before")
    @classmethod
    def _none_to_list(cls, v):
        return v or []

    @field_validator("total_inbounds", "total_users", mode="before")
    @classmethod
    def _to_int(cls, v):
        return coerce_int(v)
