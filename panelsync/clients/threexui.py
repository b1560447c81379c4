from __future__ import annotations

import json
import logging
import secrets
from typing import Optional

import config
from panelsync.endpoints import Candidate, EndpointResolver, Operation, try_candidates
from panelsync.exceptions import AuthExpired, EnvelopeRejected, LoginFailed, PanelError, UnrecognizedShape
from panelsync.models.inbound import ClientRecord, InboundRecord, PanelInbound
from panelsync.models.user import UserRecord, coerce_int
from panelsync.normalizer import normalize_inbounds, unwrap_envelope
from panelsync.quota import derive_remaining
from panelsync.services.snapshot import inbounds_to_users
from panelsync.transport import PanelSession
from panelsync.utils.wireguard import generate_keypair

logger = logging.getLogger(__name__)

# listener protocols without a client list; their settings are carried over untouched
PASSTHROUGH_PROTOCOLS = ("socks", "http", "dokodemo-door", "tunnel")
PASSWORD_PROTOCOLS = ("trojan", "shadowsocks")


def _load_settings(text: str) -> dict:
    if not text or not text.strip():
        return {}
    try:
        parsed = json.loads(text)
    except ValueError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _blob_or_empty(text: str) -> str:
    return text if text and text.strip() else "{}"


def client_settings(protocol: str, client: ClientRecord) -> dict:
    key = "password" if protocol in PASSWORD_PROTOCOLS else "id"
    return {
        key: client.identifier,
        "email": client.email,
        "enable": client.enabled,
        "totalGB": client.quota_bytes,
        "expiryTime": client.expire,
        "limitIp": client.limit_ip,
        "flow": client.flow,
        "subId": client.sub_id,
        "tgId": client.tg_id,
        "reset": client.reset,
    }


def build_settings(record: InboundRecord, creating: bool) -> str:
    """Settings JSON to send for `record`.

    WireGuard listeners get a fresh key pair when created and keep their
    original settings when updated; client based protocols get their client
    list rewritten in full.
    """
    protocol = record.protocol
    if protocol == "wireguard":
        if not creating:
            return record.original_settings if record.original_settings.strip() else '{"peers":[]}'
        original = _load_settings(record.original_settings)
        if not original and record.original_settings.strip():
            logger.warning("Could not parse WireGuard settings for %r; peers will not be migrated", record.remark)
        private_key, public_key = generate_keypair()
        return json.dumps(
            {
                "privateKey": private_key,
                "publicKey": public_key,
                "peers": original.get("peers"),
                "mtu": original.get("mtu"),
                "listenPort": original.get("listenPort"),
            }
        )

    if protocol in PASSTHROUGH_PROTOCOLS:
        return _blob_or_empty(record.original_settings)

    settings = _load_settings(record.original_settings)
    settings["clients"] = [client_settings(protocol, client) for client in record.clients]
    if protocol == "vless":
        settings["decryption"] = "none"
    elif protocol == "shadowsocks":
        settings["method"] = settings.get("method") or config.DEFAULT_SHADOWSOCKS_METHOD
        settings["password"] = settings.get("password") or secrets.token_urlsafe(16)
    return json.dumps(settings)


def build_inbound_payload(record: InboundRecord, creating: bool) -> dict:
    return {
        "remark": record.remark,
        "port": record.port,
        "protocol": record.protocol,
        "settings": build_settings(record, creating),
        "streamSettings": _blob_or_empty(record.transport_settings),
        "sniffing": _blob_or_empty(record.sniffing_settings),
        "enable": record.enabled,
        "listen": record.listen,
        "total": record.total_quota_bytes,
        "expiryTime": record.expire,
    }


class ThreeXUIClient:
    """Cookie-session client for 3X-UI inbound panels."""

    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        session: Optional[PanelSession] = None,
        resolver: Optional[EndpointResolver] = None,
    ):
        self.username = username
        self.password = password
        self.transport = session or PanelSession(base_url)
        self.resolver = resolver or EndpointResolver(self.transport, probe=False)

    def login(self) -> None:
        payload = {"username": self.username, "password": self.password}
        try:
            body = self.transport.request_json("POST", "/login", json=payload)
            unwrap_envelope(body, "POST", "/login")
        except (AuthExpired, EnvelopeRejected) as exc:
            raise LoginFailed(f"login failed: {exc}") from exc
        except UnrecognizedShape as exc:
            raise LoginFailed("error parsing login response") from exc
        logger.info("Authenticated against %s", self.transport.base_url)

    def _require_session(self) -> None:
        if not self.transport.authenticated:
            raise AuthExpired("not authenticated. Please login first")

    def fetch_inbounds(self) -> list[PanelInbound]:
        self._require_session()

        def call(candidate: Candidate) -> list[PanelInbound]:
            return normalize_inbounds(self.transport.request_json(candidate.method, candidate.path))

        return try_candidates(
            Operation.list_inbounds, self.resolver.resolve(Operation.list_inbounds), call, logger
        )

    def fetch_client_traffic(self, email: str) -> tuple[int, int]:
        """`(up, down)` byte counters of one client; a panel without stats reports zero."""
        self._require_session()

        def call(candidate: Candidate) -> tuple[int, int]:
            body = self.transport.request_json(candidate.method, candidate.path)
            obj = unwrap_envelope(body, candidate.method, candidate.path)
            if obj is None:
                return 0, 0
            if not isinstance(obj, dict):
                raise UnrecognizedShape(body)
            return coerce_int(obj.get("up")), coerce_int(obj.get("down"))

        return try_candidates(
            Operation.client_traffic,
            self.resolver.resolve(Operation.client_traffic, email=email),
            call,
            logger,
        )

    def fetch_listing(self) -> list[InboundRecord]:
        """Every inbound with its clients and their traffic counters."""
        records = []
        for inbound in self.fetch_inbounds():
            record = inbound.to_record()
            settings = inbound.settings_dict()
            if settings is None:
                logger.debug("Inbound %s (%s:%d) has no client list", inbound.remark, inbound.protocol, inbound.port)
                records.append(record)
                continue

            for raw in settings.get("clients") or []:
                if not isinstance(raw, dict):
                    continue
                client = ClientRecord.from_panel(raw)
                self._attach_traffic(client)
                record.clients.append(client)
            logger.debug("Inbound %s: %d client(s)", inbound.remark, len(record.clients))
            records.append(record)
        return records

    def _attach_traffic(self, client: ClientRecord) -> None:
        client.used_bytes = 0
        if client.email:
            try:
                up, down = self.fetch_client_traffic(client.email)
                client.used_bytes = up + down
            except AuthExpired:
                raise
            except PanelError as exc:
                logger.warning("Traffic for %s unavailable: %s", client.email, exc)
        client.remaining_bytes = derive_remaining(client.quota_bytes, client.used_bytes)

    def fetch_users(self, listing: Optional[list[InboundRecord]] = None) -> list[UserRecord]:
        """Clients of every inbound flattened into user records."""
        if listing is None:
            listing = self.fetch_listing()
        return inbounds_to_users(listing)

    def add_inbound(self, record: InboundRecord) -> int:
        """Create `record` on the panel and return the id it was given."""
        self._require_session()
        payload = build_inbound_payload(record, creating=True)

        def call(candidate: Candidate) -> int:
            body = self.transport.request_json(candidate.method, candidate.path, json=payload)
            obj = unwrap_envelope(body, candidate.method, candidate.path)
            if isinstance(obj, dict) and obj.get("id"):
                return coerce_int(obj["id"])
            return record.id

        return try_candidates(Operation.add_inbound, self.resolver.resolve(Operation.add_inbound), call, logger)

    def update_inbound(self, inbound_id: int, record: InboundRecord) -> None:
        self._require_session()
        payload = build_inbound_payload(record, creating=False)

        def call(candidate: Candidate) -> None:
            body = self.transport.request_json(candidate.method, candidate.path, json=payload)
            if isinstance(body, dict) and "success" in body:
                unwrap_envelope(body, candidate.method, candidate.path)

        try_candidates(
            Operation.update_inbound,
            self.resolver.resolve(Operation.update_inbound, inbound_id=inbound_id),
            call,
            logger,
        )
