import threading

import pytest

from panelnode.config import CertConfig, Config, NodeInfo, NodeStatus, UserInfo, UserTraffic
from panelnode.controller import Controller, Periodic, compare_user_list
from panelnode.core import DetectResult, DetectRule, OnlineUser, ProxyCore
from panelnode.users import user_email

ALICE = UserInfo(uid=1, email="alice@example.com", passwd="password", method="aes-128-gcm",
                 uuid="00000000-0000-0000-0000-000000000001")
BOB = UserInfo(uid=2, email="bob@example.com", passwd="password", method="rc4-md5",
               uuid="00000000-0000-0000-0000-000000000002")
CAROL = UserInfo(uid=3, email="carol@example.com", passwd="password", method="aes-256-gcm",
                 uuid="00000000-0000-0000-0000-000000000003")


class FakeApi:
    def __init__(self, node_info, users, rules=()):
        self.node_info = node_info
        self.users = list(users)
        self.rules = list(rules)
        self.status_reports = []
        self.traffic_reports = []
        self.online_reports = []
        self.illegal_reports = []

    def describe(self):
        return {"api_host": "http://127.0.0.1:667", "node_id": self.node_info.node_id}

    def get_node_info(self):
        return self.node_info

    def get_user_list(self):
        return list(self.users)

    def get_node_rule(self):
        return list(self.rules)

    def report_node_status(self, status):
        self.status_reports.append(status)

    def report_user_traffic(self, traffic):
        self.traffic_reports.append(traffic)

    def report_node_online_users(self, users):
        self.online_reports.append(users)

    def report_illegal(self, results):
        self.illegal_reports.append(results)


STATUS = NodeStatus(cpu=1.0, mem=2.0, disk=3.0, uptime=4)


def v2ray_node(port=1145, **kwargs):
    return NodeInfo(node_type="V2ray", node_id=41, port=port, transport_protocol="ws",
                    host="test.ss.tk", path="v2ray", tls_type="tls", **kwargs)


def make_controller(node_info, users, rules=(), **config_kwargs):
    config = Config(update_periodic=5,
                    cert_config=CertConfig(cert_mode="http", cert_domain="test.ss.tk",
                                           provider="alidns", email="admin@example.com"),
                    **config_kwargs)
    api = FakeApi(node_info, users, rules)
    core = ProxyCore()
    core.start()
    return Controller(core, api, config, status_source=lambda: STATUS), api, core


@pytest.fixture
def running():
    controller, api, core = make_controller(v2ray_node(), [ALICE, BOB])
    controller.start()
    yield controller, api, core
    controller.close()


def test_controller_start(running):
    controller, api, core = running
    assert controller.tag == "V2ray_1145"
    assert set(core.inbounds) == {"V2ray_1145"}
    assert set(core.outbounds) == {"V2ray_1145"}
    assert set(core.inbound_users("V2ray_1145")) == {
        "V2ray_1145|alice@example.com|1",
        "V2ray_1145|bob@example.com|2",
    }
    assert controller.client_info["node_id"] == 41
    assert api.status_reports == [STATUS]


def test_user_change_applied(running):
    controller, api, core = running
    api.users = [ALICE, CAROL]
    controller.node_info_monitor()
    assert set(core.inbound_users("V2ray_1145")) == {
        user_email("V2ray_1145", ALICE),
        user_email("V2ray_1145", CAROL),
    }
    assert controller.user_list == [ALICE, CAROL]


def test_node_change_rebuilds_handlers(running):
    controller, api, core = running
    api.node_info = v2ray_node(port=2000)
    controller.node_info_monitor()
    assert controller.tag == "V2ray_2000"
    assert set(core.inbounds) == {"V2ray_2000"}
    assert set(core.outbounds) == {"V2ray_2000"}
    assert set(core.inbound_users("V2ray_2000")) == {
        user_email("V2ray_2000", ALICE),
        user_email("V2ray_2000", BOB),
    }
    assert core.get_online_device("V2ray_2000") == []


def test_traffic_reported_and_reset(running):
    controller, api, core = running
    core.record_traffic(user_email("V2ray_1145", ALICE), 10, 20)
    controller.user_info_monitor()
    assert api.traffic_reports == [[UserTraffic(uid=1, email="alice@example.com", upload=10, download=20)]]
    controller.user_info_monitor()
    assert len(api.traffic_reports) == 1


def test_traffic_upload_disabled():
    controller, api, core = make_controller(v2ray_node(), [ALICE], disable_upload_traffic=True)
    controller.start()
    try:
        email = user_email("V2ray_1145", ALICE)
        core.record_traffic(email, 5, 5)
        controller.user_info_monitor()
        assert api.traffic_reports == []
        assert core.get_traffic(email) == (0, 0)
    finally:
        controller.close()


def test_online_and_illegal_reports():
    rules = [DetectRule(3, r"bad\.example\.com")]
    controller, api, core = make_controller(v2ray_node(), [ALICE], rules)
    controller.start()
    try:
        email = user_email("V2ray_1145", ALICE)
        assert core.dispatch(email, "example.com", "192.0.2.9")
        assert not core.dispatch(email, "bad.example.com", "192.0.2.9")
        controller.user_info_monitor()
        assert api.online_reports == [[OnlineUser(1, "192.0.2.9")]]
        assert api.illegal_reports == [[DetectResult(1, 3)]]
    finally:
        controller.close()


def test_shadowsocks_plugin_node():
    node = NodeInfo(node_type="Shadowsocks-Plugin", node_id=1, port=1145,
                    transport_protocol="ws", host="test.test.tk", path="v2ray")
    controller, api, core = make_controller(node, [ALICE, BOB, CAROL])
    controller.start()
    try:
        assert set(core.inbounds) == {"Shadowsocks-Plugin_1145", "dokodemo-door_1146"}
        assert core.inbounds["Shadowsocks-Plugin_1145"]["listen"] == "127.0.0.1"
        assert set(core.inbound_users("Shadowsocks-Plugin_1145")) == {
            user_email("Shadowsocks-Plugin_1145", ALICE),
            user_email("Shadowsocks-Plugin_1145", CAROL),
        }
        api.node_info = NodeInfo(node_type="Shadowsocks-Plugin", node_id=1, port=3000,
                                 transport_protocol="ws")
        controller.node_info_monitor()
        assert set(core.inbounds) == {"Shadowsocks-Plugin_3000", "dokodemo-door_3001"}
    finally:
        controller.close()


def test_unsupported_node_type_fails_start():
    node = NodeInfo(node_type="Unknown", port=1, transport_protocol="tcp")
    controller, api, core = make_controller(node, [ALICE])
    with pytest.raises(ValueError):
        controller.start()
    assert core.inbounds == {}


def test_compare_user_list():
    deleted, added = compare_user_list([ALICE, BOB], [BOB, CAROL])
    assert deleted == [ALICE]
    assert added == [CAROL]


def test_compare_user_list_detects_field_change():
    changed = UserInfo(uid=1, email="alice@example.com", passwd="secret",
                       method="aes-128-gcm", uuid=ALICE.uuid)
    deleted, added = compare_user_list([ALICE], [changed])
    assert (deleted, added) == ([ALICE], [changed])


def test_compare_user_list_same():
    assert compare_user_list([ALICE, BOB], [BOB, ALICE]) == ([], [])


def test_periodic_runs_immediately_and_repeats():
    calls = []
    repeated = threading.Event()

    def task():
        calls.append(1)
        if len(calls) >= 3:
            repeated.set()

    periodic = Periodic(0.01, task)
    periodic.start()
    try:
        assert calls
        assert repeated.wait(2)
    finally:
        periodic.close()
    assert periodic.running is False


def test_periodic_start_failure_propagates():
    def task():
        raise RuntimeError("boom")

    periodic = Periodic(1, task)
    with pytest.raises(RuntimeError):
        periodic.start()
    assert periodic.running is False


def test_periodic_rejects_non_positive_interval():
    with pytest.raises(ValueError):
        Periodic(0, lambda: None)