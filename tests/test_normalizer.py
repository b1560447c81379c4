import pytest

from panelsync.exceptions import Conflict, EnvelopeRejected, UnrecognizedShape
from panelsync.models.user import ProxyProtocol
from panelsync.normalizer import (
    check_write,
    normalize_groups,
    normalize_inbounds,
    normalize_users,
    parse_expire,
    unwrap_envelope,
)

from tests.conftest import product_user

CANONICAL = {
    "id": 1,
    "username": "alice",
    "uuid": "AAAA-1",
    "enable": True,
    "totalGB": 10_000,
    "usedTraffic": 2_500,
    "remainingTraffic": 123,
}


def test_direct_array_of_canonical_records():
    users = normalize_users([CANONICAL])
    assert [u.username for u in users] == ["alice"]
    # remaining is always re-derived
    assert users[0].remaining_bytes == 7_500


def test_success_envelope():
    users = normalize_users({"success": True, "msg": "", "obj": [CANONICAL]})
    assert users[0].identifier == "AAAA-1"


def test_keyed_wrapper_of_canonical_records():
    users = normalize_users({"users": [CANONICAL], "total": 1})
    assert users[0].quota_bytes == 10_000


def test_empty_listing_is_valid():
    assert normalize_users({"users": [], "total": 0}) == []
    assert normalize_users([]) == []


def test_product_shape():
    body = {
        "users": [
            product_user(
                7,
                "bob",
                "bbbb-2",
                protocol="trojan",
                status="disabled",
                data_limit=5_000,
                used_traffic=1_000,
                expire="2025-01-01T00:00:00Z",
                note="bob@example.com",
                group_ids=[2, 2, 5],
            )
        ],
        "total": 1,
    }
    user = normalize_users(body)[0]
    assert user.id == 7
    assert user.enabled is False
    assert user.identifier == "bbbb-2"
    assert user.protocol == ProxyProtocol.Trojan
    assert user.email == "bob@example.com"
    assert user.note == user.remark == "bob@example.com"
    assert user.expire == 1735689600
    assert user.used_bytes == 1_000
    assert user.remaining_bytes == 4_000
    assert user.group_ids == [2, 5]


def test_product_shape_falls_back_to_lifetime_usage():
    body = {"users": [product_user(1, "carol", "c-1", data_limit=0, used_traffic=0, lifetime_used_traffic=900)]}
    user = normalize_users(body)[0]
    assert user.used_bytes == 900
    assert user.remaining_bytes == -1


def test_product_shape_reads_float_counters():
    body = {"users": [product_user(1, "dave", "d-1", data_limit=1000.0, used_traffic=250.0)]}
    user = normalize_users(body)[0]
    assert user.used_bytes == 250
    assert user.remaining_bytes == 750


def test_product_primary_credential_order():
    body = {
        "users": [
            product_user(
                1,
                "erin",
                "ignored",
                proxy_settings={"shadowsocks": {"password": "ss-pass"}, "vless": {"id": "vless-id"}},
            )
        ]
    }
    user = normalize_users(body)[0]
    assert user.identifier == "vless-id"
    assert user.protocol == ProxyProtocol.VLESS


def test_note_without_at_sign_is_not_an_email():
    user = normalize_users({"users": [product_user(1, "fay", "f-1", note="vip")]})[0]
    assert user.email == ""
    assert user.note == "vip"


@pytest.mark.parametrize("body", [{"detail": "nope"}, "text", 42, None, {"success": False, "obj": []}, [1, 2]])
def test_unrecognized_shapes(body):
    with pytest.raises(UnrecognizedShape):
        normalize_users(body)


def test_parse_expire():
    assert parse_expire(None) == 0
    assert parse_expire("") == 0
    assert parse_expire(1735689600) == 1735689600
    assert parse_expire("1735689600") == 1735689600
    assert parse_expire("2025-01-01T00:00:00+00:00") == 1735689600
    assert parse_expire("someday") == 0


def test_normalize_groups_shapes():
    assert [g.name for g in normalize_groups([{"id": 1, "name": "A"}])] == ["A"]
    assert [g.id for g in normalize_groups({"success": True, "obj": [{"id": 2, "title": "B"}]})] == [2]
    groups = normalize_groups({"groups": [{"id": 3, "title": "C"}], "total": 1})
    assert groups[0].name == "C"
    with pytest.raises(UnrecognizedShape):
        normalize_groups({"detail": "x"})


def test_unwrap_envelope():
    assert unwrap_envelope({"success": True, "obj": {"id": 9}}) == {"id": 9}
    with pytest.raises(EnvelopeRejected):
        unwrap_envelope({"success": False, "msg": "port in use"})
    with pytest.raises(Conflict):
        unwrap_envelope({"success": False, "msg": "User already exists"})
    with pytest.raises(UnrecognizedShape):
        unwrap_envelope({"obj": []})


def test_check_write_accepts_any_other_body():
    assert check_write({"username": "alice"}) == {"username": "alice"}
    assert check_write(None) is None
    with pytest.raises(EnvelopeRejected):
        check_write({"success": False, "msg": "bad"})


def test_normalize_inbounds():
    body = {
        "success": True,
        "obj": [{"id": 1, "port": 443, "protocol": "vless", "tag": "inbound-443", "settings": "{}"}],
    }
    inbounds = normalize_inbounds(body)
    assert inbounds[0].tag == "inbound-443"
    assert normalize_inbounds({"success": True, "obj": None}) == []
