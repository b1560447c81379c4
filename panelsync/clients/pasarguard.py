from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

import config
from panelsync.endpoints import Candidate, EndpointResolver, Operation, try_candidates
from panelsync.exceptions import AuthExpired, LoginFailed, PanelError, UnrecognizedShape
from panelsync.models.user import Group, ProxyProtocol, UserRecord, coerce_int
from panelsync.normalizer import check_write, normalize_groups, normalize_users
from panelsync.transport import PanelSession

logger = logging.getLogger(__name__)


def build_proxy_settings(record: UserRecord) -> dict:
    if record.protocol == ProxyProtocol.VMess:
        return {"vmess": {"id": record.identifier}}
    if record.protocol == ProxyProtocol.VLESS:
        return {"vless": {"id": record.identifier, "flow": ""}}
    if record.protocol == ProxyProtocol.Trojan:
        return {"trojan": {"password": record.identifier}}
    if record.protocol == ProxyProtocol.Shadowsocks:
        return {"shadowsocks": {"password": record.identifier, "method": config.DEFAULT_SHADOWSOCKS_METHOD}}
    return {}


def format_expire(epoch: int) -> str:
    return datetime.fromtimestamp(epoch, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def build_user_payload(record: UserRecord, include_empty_groups: bool = True) -> dict:
    payload = {
        "username": record.username,
        "proxy_settings": build_proxy_settings(record),
        "status": "active" if record.enabled else "disabled",
        "data_limit": max(record.quota_bytes, 0),
    }
    if record.expire > 0:
        payload["expire"] = format_expire(record.expire)
    if record.used_bytes >= 0:
        payload["used_traffic"] = record.used_bytes
        payload["lifetime_used_traffic"] = record.used_bytes
    if record.note:
        payload["note"] = record.note
    if record.limit_ip > 0:
        payload["limit_ip"] = record.limit_ip
    if record.group_ids or include_empty_groups:
        payload["group_ids"] = list(record.group_ids)
    return payload


class PasarGuardClient:
    """Bearer-token client for PasarGuard / Marzban style user panels."""

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
        self.resolver = resolver or EndpointResolver(self.transport)

    def login(self) -> None:
        data = {"grant_type": "password", "username": self.username, "password": self.password}
        try:
            body = self.transport.request_json("POST", "/api/admin/token", data=data)
        except AuthExpired as exc:
            raise LoginFailed("invalid admin username or password") from exc
        except UnrecognizedShape as exc:
            raise LoginFailed("error parsing token response") from exc

        token = body.get("access_token") if isinstance(body, dict) else None
        if not token:
            raise LoginFailed("no access token received in response")
        self.transport.set_token(token)
        logger.info("Authenticated against %s", self.transport.base_url)

    def _require_token(self) -> None:
        if not self.transport.token:
            raise AuthExpired("not authenticated. Please login first")

    def fetch_listing(self) -> list[UserRecord]:
        self._require_token()

        def call(candidate: Candidate) -> list[UserRecord]:
            kwargs = {"json": {}} if candidate.method == "POST" else {}
            body = self.transport.request_json(candidate.method, candidate.path, **kwargs)
            return normalize_users(body)

        users = try_candidates(Operation.list_users, self.resolver.resolve(Operation.list_users), call, logger)
        logger.debug("Fetched %d user(s)", len(users))
        return users

    def fetch_groups(self) -> list[Group]:
        self._require_token()

        def call(candidate: Candidate) -> list[Group]:
            return normalize_groups(self.transport.request_json(candidate.method, candidate.path))

        return try_candidates(Operation.list_groups, self.resolver.resolve(Operation.list_groups), call, logger)

    def _write(self, operation: Operation, payload: dict, **params) -> None:
        def call(candidate: Candidate) -> None:
            body = self.transport.request_json(candidate.method, candidate.path, json=payload)
            check_write(body, candidate.method, candidate.path)
            logger.debug("%s accepted by %s %s", operation.value, candidate.method, candidate.path)

        try_candidates(operation, self.resolver.resolve(operation, **params), call, logger)

    def create_user(self, record: UserRecord) -> None:
        self._require_token()
        payload = build_user_payload(record)
        logger.debug("create-user payload for %s: %s", record.username, payload)
        self._write(Operation.create_user, payload)
        self._sync_traffic(record)

    def update_user(self, identifier: str, record: UserRecord) -> None:
        """Update the account currently named `identifier` with the contents of `record`."""
        self._require_token()
        payload = build_user_payload(record, include_empty_groups=False)
        logger.debug("update-user payload for %s (as %s): %s", record.username, identifier, payload)
        self._write(Operation.update_user, payload, identifier=identifier)
        self._sync_traffic(record)

    def set_traffic(self, username: str, used: int) -> None:
        self._require_token()
        payload = {"used_traffic": used, "lifetime_used_traffic": used}
        self._write(Operation.set_traffic, payload, username=username)

    def _sync_traffic(self, record: UserRecord) -> None:
        if record.used_bytes <= 0:
            return
        try:
            self.set_traffic(record.username, record.used_bytes)
        except AuthExpired:
            raise
        except PanelError as exc:
            logger.warning("Failed to set traffic for %s: %s", record.username, exc)

    def fetch_user_id(self, username: str) -> int:
        self._require_token()

        def call(candidate: Candidate) -> int:
            body = self.transport.request_json(candidate.method, candidate.path)
            if not isinstance(body, dict) or "id" not in body:
                raise UnrecognizedShape(body)
            return coerce_int(body.get("id"))

        return try_candidates(
            Operation.get_user, self.resolver.resolve(Operation.get_user, username=username), call, logger
        )

    def clear_user_groups(self, username: str, user_id: Optional[int] = None) -> None:
        """Detach `username` from every group on the panel."""
        self._require_token()
        groups = self.fetch_groups()
        if not groups:
            logger.debug("No groups exist on panel, nothing to clear")
            return

        if not user_id:
            user_id = self.fetch_user_id(username)
        payload = {"group_ids": [group.id for group in groups], "users": [user_id]}
        logger.debug("Removing %s from groups %s", username, payload["group_ids"])
        self._write(Operation.bulk_remove_groups, payload)
