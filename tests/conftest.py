import json
import types
from typing import Optional
from urllib.parse import urlsplit

import pytest

from panelsync.clients.pasarguard import PasarGuardClient
from panelsync.clients.threexui import ThreeXUIClient
from panelsync.endpoints import EndpointResolver
from panelsync.exceptions import Conflict
from panelsync.models.user import UserRecord
from panelsync.transport import PanelSession

BASE_URL = "https://panel.example:2096"


class FakeResponse:
    def __init__(self, status_code: int = 200, body=None, text: Optional[str] = None):
        self.status_code = status_code
        if text is None:
            text = "" if body is None else json.dumps(body)
        self.text = text
        self.content = text.encode("utf-8")

    def json(self):
        return json.loads(self.text)


class FakeSession:
    """Stand-in for `requests.Session` answering from a table keyed by (method, path).

    A route holding several responses hands them out in order and then keeps
    repeating the last one. Unknown routes answer 404.
    """

    def __init__(self):
        self.routes: dict[tuple[str, str], list] = {}
        self.calls: list[types.SimpleNamespace] = []
        self.cookies: dict = {}

    def route(self, method: str, path: str, *responses):
        self.routes[(method, path)] = list(responses)
        return self

    def request(self, method, url, headers=None, timeout=None, verify=None, **kwargs):
        path = urlsplit(url).path
        self.calls.append(
            types.SimpleNamespace(
                method=method,
                path=path,
                json=kwargs.get("json"),
                data=kwargs.get("data"),
                headers=dict(headers or {}),
                timeout=timeout,
            )
        )
        queue = self.routes.get((method, path))
        if not queue:
            return FakeResponse(404, text='{"detail": "Not Found"}')
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        if callable(item):
            return item(kwargs)
        return item

    def called(self, method: str, path: str) -> list:
        return [call for call in self.calls if call.method == method and call.path == path]


@pytest.fixture
def fake_session():
    return FakeSession()


@pytest.fixture
def panel_session(fake_session):
    return PanelSession(BASE_URL, timeout=5, verify=True, session=fake_session)


@pytest.fixture
def pasarguard(panel_session):
    client = PasarGuardClient(
        BASE_URL, "admin", "secret", session=panel_session, resolver=EndpointResolver(panel_session, probe=False)
    )
    panel_session.set_token("test-token")
    return client


@pytest.fixture
def threexui(fake_session, panel_session):
    fake_session.cookies["3x-ui"] = "session"
    return ThreeXUIClient(BASE_URL, "admin", "secret", session=panel_session)


def product_user(user_id: int, username: str, uuid: str, protocol: str = "vless", **extra) -> dict:
    key = "password" if protocol in ("trojan", "shadowsocks") else "id"
    user = {
        "id": user_id,
        "username": username,
        "status": "active",
        "expire": None,
        "data_limit": 0,
        "used_traffic": 0,
        "lifetime_used_traffic": 0,
        "note": "",
        "group_ids": [],
        "subscription_url": f"/sub/{username}",
        "proxy_settings": {protocol: {key: uuid}},
        "admin": {"username": "admin"},
    }
    user.update(extra)
    return user


class FakeUserPanel:
    """In-memory user panel with the same surface as `PasarGuardClient`."""

    def __init__(self, users: Optional[list[UserRecord]] = None):
        self.users: dict[str, UserRecord] = {}
        self.calls: list[tuple] = []
        self.fail_listing: Optional[Exception] = None
        self.errors: dict[tuple[str, str], Exception] = {}
        self.next_id = 1
        for user in users or []:
            self._store(user)

    def _store(self, user: UserRecord) -> UserRecord:
        user = user.model_copy(deep=True)
        if not user.id:
            user.id = self.next_id
        self.next_id = max(self.next_id, user.id) + 1
        self.users[user.username.lower()] = user
        return user

    def _raise_if_scripted(self, operation: str, username: str):
        error = self.errors.get((operation, username))
        if error is not None:
            raise error

    def fetch_listing(self) -> list[UserRecord]:
        self.calls.append(("fetch_listing",))
        if self.fail_listing is not None:
            raise self.fail_listing
        return [user.model_copy(deep=True) for user in self.users.values()]

    def create_user(self, record: UserRecord):
        self.calls.append(("create_user", record.username))
        self._raise_if_scripted("create_user", record.username)
        if record.username.lower() in self.users:
            raise Conflict()
        stored = self._store(record.model_copy(update={"id": 0}))
        record.id = stored.id

    def update_user(self, identifier: str, record: UserRecord):
        self.calls.append(("update_user", identifier, record.username))
        self._raise_if_scripted("update_user", identifier)
        existing = self.users.pop(identifier.lower())
        self._store(record.model_copy(update={"id": existing.id}))

    def clear_user_groups(self, username: str, user_id: Optional[int] = None):
        self.calls.append(("clear_user_groups", username, user_id))
        self._raise_if_scripted("clear_user_groups", username)
        self.users[username.lower()].group_ids = []

    def writes(self) -> list[tuple]:
        return [call for call in self.calls if call[0] in ("create_user", "update_user")]


@pytest.fixture
def fake_panel():
    return FakeUserPanel()
