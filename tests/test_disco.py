import threading
import time

import pytest

from replidb.disco import Client, Service, Store, jitter


class MockClient(Client):
    def __init__(self, get_leader=None, initialize_leader=None, set_leader=None):
        self._get_leader = get_leader
        self._initialize_leader = initialize_leader
        self._set_leader = set_leader

    def get_leader(self):
        if self._get_leader is not None:
            return self._get_leader()
        return None

    def initialize_leader(self, node_id, api_addr, addr):
        if self._initialize_leader is not None:
            return self._initialize_leader(node_id, api_addr, addr)
        return False

    def set_leader(self, node_id, api_addr, addr):
        if self._set_leader is not None:
            self._set_leader(node_id, api_addr, addr)

    def __str__(self):
        return "mock"


class MockStore(Store):
    def __init__(self, is_leader=None, register_leader_change=None):
        self._is_leader = is_leader
        self._register_leader_change = register_leader_change

    def is_leader(self):
        if self._is_leader is not None:
            return self._is_leader()
        return False

    def register_leader_change(self, changes):
        if self._register_leader_change is not None:
            self._register_leader_change(changes)


def _wait_for_contact(service, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        stats = service.stats()
        if stats["last_contact"] is not None:
            return stats
        time.sleep(0.005)
    return service.stats()


def test_new_service_defaults():
    s = Service(MockClient(), MockStore())
    assert s.register_interval == 3.0
    assert s.report_interval == 30.0


def test_register_get_leader_ok():
    init_calls = []
    client = MockClient(
        get_leader=lambda: ("2", "localhost:4003", "localhost:4004"),
        initialize_leader=lambda *a: init_calls.append(a) or False,
    )
    s = Service(client, MockStore())
    s.register_interval = 0.01

    ok, addr = s.register("1", "localhost:4001", "localhost:4002")
    assert ok is False
    assert addr == "localhost:4003"
    assert init_calls == []


def test_register_initialize_leader():
    init_calls = []

    def initialize(node_id, api_addr, addr):
        init_calls.append((node_id, api_addr, addr))
        return True

    client = MockClient(get_leader=lambda: None, initialize_leader=initialize)
    s = Service(client, MockStore())
    s.register_interval = 0.01

    ok, addr = s.register("1", "localhost:4001", "localhost:4002")
    assert ok is True
    assert addr == "localhost:4001"
    assert init_calls == [("1", "localhost:4001", "localhost:4002")]
    assert s.stats()["last_contact"] is not None


def test_register_retries_after_errors():
    attempts = []

    def get_leader():
        attempts.append("get")
        if len(attempts) == 1:
            raise RuntimeError("backend down")
        return None

    def initialize(node_id, api_addr, addr):
        attempts.append("init")
        return attempts.count("init") >= 2

    s = Service(MockClient(get_leader=get_leader, initialize_leader=initialize), MockStore())
    s.register_interval = 0.001

    ok, addr = s.register("1", "localhost:4001", "localhost:4002")
    assert ok is True
    assert addr == "localhost:4001"
    assert attempts == ["get", "init", "get", "init"]


def test_start_reporting_timer():
    called = threading.Event()
    calls = []

    def set_leader(node_id, api_addr, addr):
        calls.append((node_id, api_addr, addr))
        called.set()

    s = Service(MockClient(set_leader=set_leader), MockStore(is_leader=lambda: True))
    s.report_interval = 0.01
    assert s.stats()["last_contact"] is None

    done = s.start_reporting("1", "localhost:4001", "localhost:4002")
    try:
        assert called.wait(timeout=5)
        stats = _wait_for_contact(s)
    finally:
        done.set()
    assert calls[0] == ("1", "localhost:4001", "localhost:4002")
    assert stats["mode"] == "mock"
    assert stats["report_interval"] == 0.01
    assert stats["last_contact"] is not None


def test_start_reporting_change():
    called = threading.Event()
    calls = []
    registered = []

    def set_leader(node_id, api_addr, addr):
        calls.append((node_id, api_addr, addr))
        called.set()

    store = MockStore(is_leader=lambda: True, register_leader_change=registered.append)
    s = Service(MockClient(set_leader=set_leader), store)
    s.report_interval = 600
    assert s.stats()["last_contact"] is None

    done = s.start_reporting("1", "localhost:4001", "localhost:4002")
    try:
        assert len(registered) == 1
        registered[0].put(None)
        assert called.wait(timeout=5)
        stats = _wait_for_contact(s)
    finally:
        done.set()
    assert calls == [("1", "localhost:4001", "localhost:4002")]
    assert stats["mode"] == "mock"
    assert stats["report_interval"] == 600
    assert stats["last_contact"] is not None


def test_start_reporting_not_leader_does_not_report():
    calls = []
    registered = []
    store = MockStore(is_leader=lambda: False, register_leader_change=registered.append)
    s = Service(MockClient(set_leader=lambda *a: calls.append(a)), store)
    s.report_interval = 600

    done = s.start_reporting("1", "localhost:4001", "localhost:4002")
    try:
        registered[0].put(None)
        time.sleep(0.3)
    finally:
        done.set()
    assert calls == []
    assert s.stats()["last_contact"] is None


def test_stats():
    s = Service(MockClient(), MockStore())
    s.register_interval = 0.5
    s.report_interval = 2.0
    assert s.stats() == {
        "mode": "mock",
        "register_interval": 0.5,
        "report_interval": 2.0,
        "last_contact": None,
    }


@pytest.mark.parametrize("duration", [0.01, 1.0, 3.0, 30.0])
def test_jitter_bounds(duration):
    for _ in range(50):
        value = jitter(duration)
        assert duration <= value < 2 * duration


def test_jitter_zero():
    assert jitter(0.0) == 0.0