from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

from panelsync.models.inbound import PanelInbound
from panelsync.models.user import UserRecord

logger = logging.getLogger(__name__)

PROTOCOL_KEYS = ("vmess", "vless", "trojan", "shadowsocks", "hysteria", "ss", "hy2")
CREDENTIAL_FIELDS = ("id", "uuid", "password")


def normalize_identifier(value) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip().lower()


def normalize_username(value) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip().lower()


def extract_identifiers(proxy_settings: Optional[dict]) -> list[str]:
    """Every credential found in a protocol-settings mapping, normalized and de-duplicated."""
    found: list[str] = []
    if not isinstance(proxy_settings, dict):
        return found
    for protocol in PROTOCOL_KEYS:
        settings = proxy_settings.get(protocol)
        if not isinstance(settings, dict):
            continue
        for field in CREDENTIAL_FIELDS:
            value = normalize_identifier(settings.get(field))
            if value and value not in found:
                found.append(value)
    return found


def identifiers_of(record: UserRecord) -> list[str]:
    identifiers = []
    primary = normalize_identifier(record.identifier)
    if primary:
        identifiers.append(primary)
    for value in extract_identifiers(record.proxy_settings):
        if value not in identifiers:
            identifiers.append(value)
    return identifiers


class MutationKind(str, Enum):
    created = "created"
    updated = "updated"
    reserved = "reserved"


@dataclass
class IndexMutation:
    kind: MutationKind
    record: UserRecord
    # remote username the record was found under before an update
    previous_username: str = ""


class IdentityIndex:
    """Lookup tables over the panel's current accounts, kept in step with our own writes."""

    def __init__(self, stale: bool = False):
        self.by_primary: dict[str, UserRecord] = {}
        self.by_username: dict[str, UserRecord] = {}
        self.by_any: dict[str, UserRecord] = {}
        self.stale = stale

    @classmethod
    def build(cls, listing: Iterable[UserRecord]) -> "IdentityIndex":
        index = cls()
        for record in listing:
            index._add(record)
        logger.debug(
            "Identity index built: %d account(s), %d identifier(s)", len(index.by_username), len(index.by_any)
        )
        return index

    def _add(self, record: UserRecord) -> None:
        primary = normalize_identifier(record.identifier)
        if primary:
            self.by_primary[primary] = record
        for identifier in identifiers_of(record):
            self.by_any[identifier] = record
        username = normalize_username(record.username)
        if username:
            self.by_username[username] = record

    def _remove(self, record: UserRecord) -> None:
        for table in (self.by_primary, self.by_any, self.by_username):
            for key in [key for key, value in table.items() if value is record]:
                del table[key]

    def lookup(self, identifier: str) -> Optional[UserRecord]:
        return self.by_any.get(normalize_identifier(identifier))

    def lookup_by_username(self, username: str) -> Optional[UserRecord]:
        return self.by_username.get(normalize_username(username))

    def __len__(self) -> int:
        return len(self.by_username)

    def apply(self, mutation: IndexMutation) -> None:
        if mutation.kind == MutationKind.reserved:
            username = normalize_username(mutation.record.username)
            if username and username not in self.by_username:
                self.by_username[username] = mutation.record
            return

        carried: list[str] = []
        if mutation.kind == MutationKind.updated:
            previous = self.lookup_by_username(mutation.previous_username)
            if previous is not None:
                carried = identifiers_of(previous)
                self._remove(previous)

        self._add(mutation.record)
        # the remote account keeps credentials the write did not touch
        for identifier in carried:
            self.by_any.setdefault(identifier, mutation.record)


class ListenerIndex:
    """Port and tag tables over the listeners already on an inbound panel."""

    def __init__(self):
        self.by_port: dict[int, int] = {}
        self.by_tag: dict[str, int] = {}

    @classmethod
    def build(cls, inbounds: Iterable[PanelInbound]) -> "ListenerIndex":
        index = cls()
        for inbound in inbounds:
            index.register(inbound.id, inbound.port, inbound.tag)
        return index

    def register(self, inbound_id: int, port: int, tag: str) -> None:
        if port:
            self.by_port[port] = inbound_id
        if tag:
            self.by_tag[tag] = inbound_id

    def replace(self, inbound_id: int, port: int, tag: str) -> None:
        """Point the tables at the listener's new port and tag, dropping its old keys."""
        for table in (self.by_port, self.by_tag):
            for key in [key for key, value in table.items() if value == inbound_id]:
                del table[key]
        self.register(inbound_id, port, tag)

    def match(self, port: int, tag: str) -> Optional[int]:
        """Id of the listener sharing the tag or, failing that, the port."""
        if tag and tag in self.by_tag:
            return self.by_tag[tag]
        if port and port in self.by_port:
            return self.by_port[port]
        return None
