import logging

import pytest

import config
from panelsync.clients.pasarguard import PasarGuardClient, build_user_payload, format_expire
from panelsync.endpoints import STATIC_CANDIDATES, EndpointResolver, Operation
from panelsync.exceptions import (
    AuthExpired,
    Conflict,
    EndpointsExhausted,
    LoginFailed,
    PermanentEndpointFailure,
)
from panelsync.models.user import ProxyProtocol, UserRecord
from tests.conftest import BASE_URL, FakeResponse, product_user

NOT_FOUND = FakeResponse(404, text='{"detail": "Not Found"}')


def make_record(**kwargs):
    defaults = dict(
        username="alice",
        identifier="11111111-2222-3333-4444-555555555555",
        enabled=True,
        quota_bytes=5 * 1024 ** 3,
        protocol=ProxyProtocol.VLESS,
    )
    defaults.update(kwargs)
    return UserRecord(**defaults)


def test_login_posts_form_and_stores_token(fake_session, panel_session):
    fake_session.route("POST", "/api/admin/token", FakeResponse(200, {"access_token": "jwt", "token_type": "bearer"}))
    client = PasarGuardClient(BASE_URL, "admin", "secret", session=panel_session)

    client.login()

    call = fake_session.calls[-1]
    assert call.data == {"grant_type": "password", "username": "admin", "password": "secret"}
    assert panel_session.token == "jwt"


def test_login_rejected(fake_session, panel_session):
    fake_session.route("POST", "/api/admin/token", FakeResponse(401, {"detail": "Incorrect username or password"}))
    client = PasarGuardClient(BASE_URL, "admin", "wrong", session=panel_session)
    with pytest.raises(LoginFailed):
        client.login()
    assert panel_session.token is None


def test_login_without_token_in_body(fake_session, panel_session):
    fake_session.route("POST", "/api/admin/token", FakeResponse(200, {"token_type": "bearer"}))
    client = PasarGuardClient(BASE_URL, "admin", "secret", session=panel_session)
    with pytest.raises(LoginFailed):
        client.login()


def test_calls_before_login_fail(panel_session):
    client = PasarGuardClient(BASE_URL, "admin", "secret", session=panel_session)
    with pytest.raises(AuthExpired):
        client.fetch_listing()


def test_fetch_listing_falls_through_missing_routes(fake_session, pasarguard):
    fake_session.route("GET", "/api/users", NOT_FOUND)
    fake_session.route(
        "GET",
        "/api/admin/users",
        FakeResponse(200, {"users": [product_user(1, "alice", "AAA"), product_user(2, "bob", "pw", "trojan")]}),
    )

    users = pasarguard.fetch_listing()

    assert [user.username for user in users] == ["alice", "bob"]
    assert users[1].protocol == ProxyProtocol.Trojan
    tried = [(call.method, call.path) for call in fake_session.calls]
    assert tried == [("GET", "/api/users"), ("POST", "/api/users"), ("GET", "/api/admin/users")]
    assert fake_session.calls[1].json == {}
    assert all(call.headers["Authorization"] == "Bearer test-token" for call in fake_session.calls)


def test_fetch_listing_exhausted(fake_session, pasarguard):
    with pytest.raises(EndpointsExhausted) as info:
        pasarguard.fetch_listing()

    expected = [(candidate.path, candidate.method) for candidate in STATIC_CANDIDATES[Operation.list_users]]
    tried = [(call.path, call.method) for call in fake_session.calls]
    assert len(expected) == 20
    assert tried == expected
    assert info.value.attempts == 20


def test_fetch_listing_expired_token_stops(fake_session, pasarguard):
    fake_session.route("GET", "/api/users", FakeResponse(401, {"detail": "Could not validate credentials"}))
    with pytest.raises(AuthExpired):
        pasarguard.fetch_listing()
    assert len(fake_session.calls) == 1


def test_fetch_groups_shapes(fake_session, pasarguard):
    fake_session.route(
        "GET", "/api/groups", FakeResponse(200, {"groups": [{"id": 1, "name": "default"}, {"id": 2, "title": "vip"}]})
    )
    groups = pasarguard.fetch_groups()
    assert [(group.id, group.name) for group in groups] == [(1, "default"), (2, "vip")]


def test_build_user_payload():
    record = make_record(
        protocol=ProxyProtocol.Shadowsocks,
        identifier="ss-pass",
        expire=1767225600,
        note="imported",
        limit_ip=3,
        group_ids=[4],
        used_bytes=0,
    )
    payload = build_user_payload(record)
    assert payload == {
        "username": "alice",
        "proxy_settings": {
            "shadowsocks": {"password": "ss-pass", "method": config.DEFAULT_SHADOWSOCKS_METHOD}
        },
        "status": "active",
        "data_limit": 5 * 1024 ** 3,
        "expire": "2026-01-01T00:00:00Z",
        "used_traffic": 0,
        "lifetime_used_traffic": 0,
        "note": "imported",
        "limit_ip": 3,
        "group_ids": [4],
    }


def test_update_payload_omits_empty_groups():
    payload = build_user_payload(make_record(enabled=False, quota_bytes=-1), include_empty_groups=False)
    assert "group_ids" not in payload
    assert "expire" not in payload
    assert payload["status"] == "disabled"
    assert payload["data_limit"] == 0
    assert payload["proxy_settings"] == {"vless": {"id": "11111111-2222-3333-4444-555555555555", "flow": ""}}


def test_format_expire_is_utc():
    assert format_expire(0) == "1970-01-01T00:00:00Z"


def test_create_user(fake_session, pasarguard):
    fake_session.route("POST", "/api/user", FakeResponse(201, {"username": "alice"}))
    pasarguard.create_user(make_record())

    calls = fake_session.called("POST", "/api/user")
    assert len(calls) == 1
    assert calls[0].json["username"] == "alice"
    assert calls[0].json["group_ids"] == []
    assert not fake_session.called("PUT", "/api/user/alice/traffic")


def test_create_user_conflict(fake_session, pasarguard):
    fake_session.route("POST", "/api/user", FakeResponse(409, {"detail": "User already exists"}))
    with pytest.raises(Conflict):
        pasarguard.create_user(make_record())
    assert len(fake_session.calls) == 1


def test_create_user_validation_error_stops(fake_session, pasarguard):
    fake_session.route("POST", "/api/user", FakeResponse(422, {"detail": [{"msg": "invalid username"}]}))
    with pytest.raises(PermanentEndpointFailure):
        pasarguard.create_user(make_record())
    assert not fake_session.called("POST", "/api/users")


def test_create_user_failed_envelope(fake_session, pasarguard):
    fake_session.route("POST", "/api/user", FakeResponse(200, {"success": False, "msg": "Email already exists"}))
    with pytest.raises(Conflict):
        pasarguard.create_user(make_record())


def test_create_user_syncs_traffic(fake_session, pasarguard):
    fake_session.route("POST", "/api/user", FakeResponse(200, {"username": "alice"}))
    fake_session.route("PUT", "/api/user/alice/traffic", FakeResponse(200, {}))
    pasarguard.create_user(make_record(used_bytes=2048))

    calls = fake_session.called("PUT", "/api/user/alice/traffic")
    assert calls[0].json == {"used_traffic": 2048, "lifetime_used_traffic": 2048}


def test_traffic_sync_failure_is_only_logged(fake_session, pasarguard, caplog):
    fake_session.route("POST", "/api/user", FakeResponse(200, {"username": "alice"}))
    with caplog.at_level(logging.WARNING):
        pasarguard.create_user(make_record(used_bytes=2048))
    assert "Failed to set traffic for alice" in caplog.text


def test_update_user_falls_back_to_patch(fake_session, pasarguard):
    fake_session.route("PUT", "/api/user/old%20name", FakeResponse(405, {"detail": "Method Not Allowed"}))
    fake_session.route("PATCH", "/api/user/old%20name", FakeResponse(200, {"username": "alice"}))

    pasarguard.update_user("old name", make_record())

    assert fake_session.called("PATCH", "/api/user/old%20name")[0].json["username"] == "alice"


def test_clear_user_groups(fake_session, pasarguard):
    fake_session.route("GET", "/api/groups", FakeResponse(200, [{"id": 1, "name": "a"}, {"id": 2, "name": "b"}]))
    fake_session.route("POST", "/api/groups/bulk/remove", FakeResponse(200, {}))

    pasarguard.clear_user_groups("alice", user_id=7)

    assert fake_session.called("POST", "/api/groups/bulk/remove")[0].json == {"group_ids": [1, 2], "users": [7]}


def test_clear_user_groups_looks_up_the_id(fake_session, pasarguard):
    fake_session.route("GET", "/api/groups", FakeResponse(200, [{"id": 3, "name": "a"}]))
    fake_session.route("GET", "/api/user/alice", FakeResponse(200, product_user(9, "alice", "AAA")))
    fake_session.route("POST", "/api/groups/bulk/remove", FakeResponse(200, {}))

    pasarguard.clear_user_groups("alice")

    assert fake_session.called("POST", "/api/groups/bulk/remove")[0].json == {"group_ids": [3], "users": [9]}


def test_clear_user_groups_without_groups(fake_session, pasarguard):
    fake_session.route("GET", "/api/groups", FakeResponse(200, []))
    pasarguard.clear_user_groups("alice", user_id=7)
    assert not fake_session.called("POST", "/api/groups/bulk/remove")


def test_probe_routes_are_used_first(fake_session, panel_session):
    fake_session.route("GET", "/openapi.json", FakeResponse(200, {"paths": {"/api/v3/users": {"get": {}}}}))
    fake_session.route("GET", "/api/v3/users", FakeResponse(200, [product_user(1, "alice", "AAA")]))
    client = PasarGuardClient(BASE_URL, "admin", "secret", session=panel_session,
                              resolver=EndpointResolver(panel_session, probe=True))
    panel_session.set_token("t")

    assert [user.username for user in client.fetch_listing()] == ["alice"]
    assert not fake_session.called("GET", "/api/users")
