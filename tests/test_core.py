import pytest

from panelnode.config import UserInfo
from panelnode.core import CoreError, DetectResult, DetectRule, OnlineUser, ProxyCore
from panelnode.users import User, build_vmess_user, user_email

TAG = "V2ray_1145"


def _inbound(tag=TAG, protocol="vmess"):
    return {"tag": tag, "protocol": protocol, "port": 1145}


def _users():
    return [
        UserInfo(uid=1, email="alice@example.com", uuid="00000000-0000-0000-0000-000000000001"),
        UserInfo(uid=2, email="bob@example.com", uuid="00000000-0000-0000-0000-000000000002"),
    ]


@pytest.fixture
def core():
    c = ProxyCore()
    c.add_inbound(_inbound())
    return c


def test_add_and_remove_inbound(core):
    assert set(core.inbounds) == {TAG}
    core.remove_inbound(TAG)
    assert core.inbounds == {}


def test_duplicate_inbound_rejected(core):
    with pytest.raises(CoreError):
        core.add_inbound(_inbound())


def test_remove_missing_handlers():
    core = ProxyCore()
    with pytest.raises(CoreError):
        core.remove_inbound("nope")
    with pytest.raises(CoreError):
        core.remove_outbound("nope")


def test_outbounds_from_config_and_duplicates():
    core = ProxyCore({"outbounds": [{"tag": "direct", "protocol": "freedom"}]})
    assert core.outbounds["direct"]["protocol"] == "freedom"
    with pytest.raises(CoreError):
        core.add_outbound({"tag": "direct", "protocol": "freedom"})
    core.remove_outbound("direct")
    assert core.outbounds == {}


def test_add_and_remove_users(core):
    users = build_vmess_user(TAG, _users(), 0)
    core.add_users(users, TAG)
    assert set(core.inbound_users(TAG)) == {u.email for u in users}
    core.remove_users([users[0].email], TAG)
    assert set(core.inbound_users(TAG)) == {users[1].email}


def test_duplicate_user_rejected(core):
    users = build_vmess_user(TAG, _users(), 0)
    core.add_users(users, TAG)
    with pytest.raises(CoreError):
        core.add_users(users[:1], TAG)


def test_remove_unknown_user(core):
    with pytest.raises(CoreError):
        core.remove_users(["V2ray_1145|ghost@example.com|9"], TAG)


def test_users_need_known_tag_and_user_protocol(core):
    user = User(email="x|a@example.com|1", protocol="vmess")
    with pytest.raises(CoreError):
        core.add_users([user], "missing")
    core.add_inbound(_inbound("dokodemo-door_1146", "dokodemo-door"))
    with pytest.raises(CoreError):
        core.add_users([user], "dokodemo-door_1146")


def test_removing_inbound_drops_users(core):
    core.add_users(build_vmess_user(TAG, _users(), 0), TAG)
    core.remove_inbound(TAG)
    core.add_inbound(_inbound())
    assert core.inbound_users(TAG) == {}


def test_traffic_is_read_and_reset(core):
    email = user_email(TAG, _users()[0])
    core.record_traffic(email, 100, 200)
    core.record_traffic(email, 1, 2)
    assert core.get_traffic(email) == (101, 202)
    assert core.get_traffic(email) == (0, 0)


def test_traffic_of_unknown_user_is_zero(core):
    assert core.get_traffic("nobody") == (0, 0)


def test_limiter_lifecycle(core):
    core.add_inbound_limiter(TAG, 0, _users())
    with pytest.raises(CoreError):
        core.add_inbound_limiter(TAG, 0, _users())
    core.delete_inbound_limiter(TAG)
    with pytest.raises(CoreError):
        core.delete_inbound_limiter(TAG)
    with pytest.raises(CoreError):
        core.update_inbound_limiter(TAG, _users())
    with pytest.raises(CoreError):
        core.get_online_device(TAG)


def test_online_devices_reported_once(core):
    alice, bob = _users()
    core.add_inbound_limiter(TAG, 0, [alice])
    assert core.dispatch(user_email(TAG, alice), "example.com", "192.0.2.1")
    assert core.dispatch(user_email(TAG, bob), "example.com", "192.0.2.2")
    assert core.get_online_device(TAG) == [OnlineUser(alice.uid, "192.0.2.1")]
    assert core.get_online_device(TAG) == []
    core.update_inbound_limiter(TAG, [bob])
    core.dispatch(user_email(TAG, bob), "example.com", "192.0.2.2")
    assert core.get_online_device(TAG) == [OnlineUser(bob.uid, "192.0.2.2")]


def test_rules_block_and_record(core):
    alice = _users()[0]
    core.update_rule(TAG, [DetectRule(7, r"blocked\.example\.com")])
    assert not core.dispatch(user_email(TAG, alice), "www.blocked.example.com", "192.0.2.1")
    assert core.dispatch(user_email(TAG, alice), "example.com", "192.0.2.1")
    assert core.get_detect_result(TAG) == [DetectResult(alice.uid, 7)]
    assert core.get_detect_result(TAG) == []


def test_invalid_rule_pattern(core):
    with pytest.raises(CoreError):
        core.update_rule(TAG, [DetectRule(1, "(")])


def test_malformed_identifier(core):
    with pytest.raises(CoreError):
        core.dispatch("no-uid-here", "example.com", "192.0.2.1")


def test_context_manager_runs_and_stops():
    with ProxyCore() as core:
        assert core.running is True
    assert core.running is False