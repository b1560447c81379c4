"""Candidate routes for every logical panel operation.

Panels built from the same code base expose the same operation under
different paths depending on version and reverse-proxy setup, so each
operation maps to an ordered list of `(path, method)` candidates that are
tried until one answers.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Callable, Iterable, NamedTuple, Optional, TypeVar
from urllib.parse import quote

import config
from panelsync.exceptions import (
    AuthExpired,
    Conflict,
    EndpointsExhausted,
    PanelError,
    PanelUnreachable,
    PermanentEndpointFailure,
    TransientEndpoint,
    UnrecognizedShape,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Operation(str, Enum):
    list_users = "list-users"
    create_user = "create-user"
    update_user = "update-user"
    set_traffic = "set-traffic"
    list_groups = "list-groups"
    get_user = "get-user"
    bulk_remove_groups = "bulk-remove-groups"
    list_inbounds = "list-inbounds"
    client_traffic = "client-traffic"
    add_inbound = "add-inbound"
    update_inbound = "update-inbound"


class Candidate(NamedTuple):
    path: str
    method: str
    # routes read out of a schema document are guesses; any 4xx moves on
    discovered: bool = False


def _both(paths: Iterable[str], methods: tuple[str, ...]) -> list[Candidate]:
    return [Candidate(path, method) for path in paths for method in methods]


STATIC_CANDIDATES: dict[Operation, list[Candidate]] = {
    Operation.list_users: _both(
        (
            "/api/users",
            "/api/admin/users",
            "/api/admin/user",
            "/api/v1/admin/users",
            "/api/v1/admin/user",
            "/api/v1/users",
            "/api/user/list",
            "/api/admin/user/list",
            "/api/v1/user/list",
            "/api/v1/admin/user/list",
        ),
        ("GET", "POST"),
    ),
    Operation.create_user: _both(
        ("/api/user", "/api/users", "/api/v1/user", "/api/v1/users", "/api/admin/users"),
        ("POST",),
    ),
    Operation.update_user: _both(
        ("/api/user/{identifier}", "/api/users/{identifier}", "/api/v1/user/{identifier}"),
        ("PUT", "PATCH"),
    ),
    Operation.set_traffic: _both(
        (
            "/api/user/{username}/traffic",
            "/api/user/{username}/set_traffic",
            "/api/users/{username}/traffic",
            "/api/admin/user/{username}/traffic",
        ),
        ("PUT", "POST"),
    ),
    Operation.list_groups: _both(
        (
            "/api/groups",
            "/api/admin/groups",
            "/api/v1/groups",
            "/api/group",
            "/api/admin/group",
            "/api/v1/group",
        ),
        ("GET",),
    ),
    Operation.get_user: _both(("/api/user/{username}", "/api/users/{username}"), ("GET",)),
    Operation.bulk_remove_groups: _both(("/api/groups/bulk/remove",), ("POST",)),
    Operation.list_inbounds: _both(("/panel/api/inbounds/list", "/xui/API/inbounds/list"), ("GET",)),
    Operation.client_traffic: _both(
        ("/panel/api/inbounds/getClientTraffics/{email}", "/xui/API/inbounds/getClientTraffics/{email}"),
        ("GET",),
    ),
    Operation.add_inbound: _both(("/panel/api/inbounds/add", "/xui/API/inbounds/add"), ("POST",)),
    Operation.update_inbound: _both(
        ("/panel/api/inbounds/update/{inbound_id}", "/xui/API/inbounds/update/{inbound_id}"),
        ("POST",),
    ),
}

SCHEMA_DOCUMENTS = (
    "/openapi.json",
    "/api/openapi.json",
    "/docs",
    "/api/docs",
    "/swagger.json",
    "/api/swagger.json",
)

# operations whose routes may be discovered, keyed to the word their path must contain
PROBE_SUBJECTS = {
    Operation.list_users: "user",
    Operation.list_groups: "group",
}


class EndpointResolver:
    def __init__(self, transport=None, probe: Optional[bool] = None):
        self.transport = transport
        self.probe = config.SCHEMA_PROBE_ENABLED if probe is None else probe
        self._discovered: Optional[list[Candidate]] = None

    def resolve(self, operation: Operation, **params) -> list[Candidate]:
        """Return the ordered candidates for `operation`; no `(path, method)` appears twice."""
        operation = Operation(operation)
        quoted = {key: quote(str(value), safe="") for key, value in params.items()}

        ordered: list[Candidate] = []
        subject = PROBE_SUBJECTS.get(operation)
        if subject and self.probe and self.transport is not None:
            ordered.extend(c for c in self.discover() if subject in c.path.lower())
        ordered.extend(
            Candidate(c.path.format(**quoted), c.method) for c in STATIC_CANDIDATES[operation]
        )

        seen = set()
        unique = []
        for candidate in ordered:
            key = (candidate.path, candidate.method)
            if key in seen:
                continue
            seen.add(key)
            unique.append(candidate)
        return unique

    def discover(self) -> list[Candidate]:
        """Read routes out of the first schema document the panel serves. Runs once."""
        if self._discovered is not None:
            return self._discovered

        self._discovered = []
        for document in SCHEMA_DOCUMENTS:
            try:
                schema = self.transport.request_json("GET", document)
            except PanelError as exc:
                logger.debug("Schema probe %s skipped: %s", document, exc)
                continue
            paths = schema.get("paths") if isinstance(schema, dict) else None
            if not isinstance(paths, dict):
                continue

            found = []
            for path in sorted(paths):
                methods = paths[path]
                if "{" in path or not isinstance(methods, dict):
                    continue
                for method in ("GET", "POST"):
                    if method.lower() in methods or method in methods:
                        found.append(Candidate(path, method, discovered=True))
            if found:
                logger.debug("Schema probe %s found %d route(s)", document, len(found))
                self._discovered = found
                break
        return self._discovered


def try_candidates(
    operation: Operation,
    candidates: list[Candidate],
    call: Callable[[Candidate], T],
    log: Optional[logging.Logger] = None,
) -> T:
    """Run `call` against each candidate in order and return the first success.

    Auth failures, conflicts and permanent 4xx errors stop the loop at once.
    Transient failures and unrecognized bodies move on to the next candidate.
    """
    log = log or logger
    last_error: Optional[PanelError] = None
    unreachable_only = True

    for candidate in candidates:
        try:
            return call(candidate)
        except (AuthExpired, Conflict):
            raise
        except PermanentEndpointFailure as exc:
            if not candidate.discovered:
                raise
            log.debug("%s %s failed: %s", candidate.method, candidate.path, exc)
            last_error = exc
            unreachable_only = False
        except UnrecognizedShape as exc:
            log.warning("%s %s: unrecognized response shape", candidate.method, candidate.path)
            log.debug("Raw body from %s %s: %r", candidate.method, candidate.path, exc.body)
            last_error = exc
            unreachable_only = False
        except TransientEndpoint as exc:
            log.debug("%s %s failed: %s", candidate.method, candidate.path, exc)
            last_error = exc
            if not isinstance(exc, PanelUnreachable):
                unreachable_only = False

    if last_error is not None and unreachable_only:
        raise last_error
    raise EndpointsExhausted(Operation(operation).value, len(candidates), last_error)
