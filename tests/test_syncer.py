import itertools
import threading
import time
from concurrent.futures import CancelledError

import pytest

from ngmonitoring.domain import Domain, PDConfig
from ngmonitoring.syncer import (
    TOPOLOGY_PREFIX,
    ServerInfo,
    TopologySyncer,
    new_session_with_retry,
    put_kv_with_retry,
    server_info_from_address,
)

GIT_HASH = "b225682e6660cb617b8f4ccc77da252f845f411c"
ADDRESS = "10.0.1.8:12020"


class FakeSession:
    def __init__(self, lease):
        self.lease = lease
        self.done = threading.Event()


class FakeEtcd:
    def __init__(self, put_failures=0, session_failures=0):
        self.kv = {}
        self.leases = {}
        self.put_failures = put_failures
        self.session_failures = session_failures
        self.put_attempts = 0
        self.session_attempts = 0
        self.sessions = []
        self._lease_ids = itertools.count(1)
        self._lock = threading.Lock()

    def put(self, key, value, lease=None):
        with self._lock:
            self.put_attempts += 1
            if self.put_failures > 0:
                self.put_failures -= 1
                raise ConnectionError("put failed")
            self.kv[key] = value
            self.leases[key] = lease

    def new_session(self, ttl):
        with self._lock:
            self.session_attempts += 1
            if self.session_failures > 0:
                self.session_failures -= 1
                raise ConnectionError("session failed")
            session = FakeSession(next(self._lease_ids))
            self.sessions.append(session)
            return session

    def get(self, key):
        with self._lock:
            return self.kv.get(key)

    def keys_with_prefix(self, prefix):
        with self._lock:
            return sorted(k for k in self.kv if k.startswith(prefix))

    def delete_prefix(self, prefix):
        with self._lock:
            keys = [k for k in self.kv if k.startswith(prefix)]
            for key in keys:
                del self.kv[key]
            return len(keys)


def wait_until(predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def make_domain(etcd):
    return Domain.for_test(PDConfig(endpoints=("127.0.0.1:2379",)), object(), etcd)


def check_stored(etcd):
    ttl = etcd.get(f"{TOPOLOGY_PREFIX}/{ADDRESS}/ttl")
    assert int(ttl) > 0
    info = etcd.get(f"{TOPOLOGY_PREFIX}/{ADDRESS}/info")
    assert info == (
        '{"git_hash":"b225682e6660cb617b8f4ccc77da252f845f411c","ip":"10.0.1.8",'
        '"listening_port":12020,"start_timestamp":1639643120}'
    )


def test_server_info_from_address():
    info = server_info_from_address(ADDRESS, GIT_HASH)
    assert info.ip == "10.0.1.8"
    assert info.port == 12020
    assert info.git_hash == GIT_HASH
    assert info.start_timestamp > 0


@pytest.mark.parametrize(
    "address, ip, port",
    [("abcd", "", 0), ("abcd:x", "abcd", 0), ("[::1]:80", "::1", 80), ("a:b:c", "", 0)],
)
def test_server_info_invalid_addresses(address, ip, port):
    info = server_info_from_address(address)
    assert (info.ip, info.port) == (ip, port)


def test_server_info_json():
    info = ServerInfo(git_hash="abc", ip="1.2.3.4", port=5, start_timestamp=6)
    assert info.to_json() == '{"git_hash":"abc","ip":"1.2.3.4","listening_port":5,"start_timestamp":6}'


def test_store_server_and_topology_info():
    etcd = FakeEtcd()
    syncer = TopologySyncer(make_domain(etcd), ADDRESS, GIT_HASH)
    assert syncer.server_info.ip == "10.0.1.8"
    assert syncer.server_info.port == 12020
    syncer.server_info.start_timestamp = 1639643120
    syncer.new_session_and_store_server_info()
    syncer.store_topology_info()
    check_stored(etcd)
    assert etcd.leases[f"{TOPOLOGY_PREFIX}/{ADDRESS}/info"] is None
    assert etcd.leases[f"{TOPOLOGY_PREFIX}/{ADDRESS}/ttl"] == syncer.session.lease


def test_store_topology_info_without_session():
    syncer = TopologySyncer(make_domain(FakeEtcd()), ADDRESS, GIT_HASH)
    with pytest.raises(RuntimeError):
        syncer.store_topology_info()


def test_syncer_restores_info_after_session_expires():
    etcd = FakeEtcd()
    syncer = TopologySyncer(make_domain(etcd), ADDRESS, GIT_HASH, refresh_interval=0.01)
    syncer.server_info.start_timestamp = 1639643120
    syncer.start()
    try:
        assert wait_until(lambda: len(etcd.keys_with_prefix(TOPOLOGY_PREFIX)) == 2)
        assert etcd.delete_prefix(TOPOLOGY_PREFIX) == 2
        etcd.sessions[0].done.set()
        assert wait_until(
            lambda: len(etcd.sessions) == 2
            and len(etcd.keys_with_prefix(TOPOLOGY_PREFIX)) == 2
        )
        check_stored(etcd)
    finally:
        syncer.stop()


def test_syncer_refreshes_ttl_key():
    etcd = FakeEtcd()
    syncer = TopologySyncer(make_domain(etcd), ADDRESS, GIT_HASH, refresh_interval=0.01)
    syncer.start()
    try:
        key = f"{TOPOLOGY_PREFIX}/{ADDRESS}/ttl"
        assert wait_until(lambda: etcd.get(key) is not None)
        first = int(etcd.get(key))
        assert wait_until(lambda: int(etcd.get(key)) > first)
        assert etcd.leases[key] == syncer.session.lease
        assert etcd.get(f"{TOPOLOGY_PREFIX}/{ADDRESS}/info") == syncer.server_info.to_json()
    finally:
        syncer.stop()


def test_put_kv_retries_until_success():
    etcd = FakeEtcd(put_failures=2)
    put_kv_with_retry(etcd, "k", "v", retry_count=3)
    assert etcd.get("k") == "v"
    assert etcd.put_attempts == 3


def test_put_kv_raises_after_all_retries():
    etcd = FakeEtcd(put_failures=5)
    with pytest.raises(ConnectionError):
        put_kv_with_retry(etcd, "k", "v", retry_count=3)
    assert etcd.put_attempts == 3


def test_put_kv_cancelled():
    cancelled = threading.Event()
    cancelled.set()
    etcd = FakeEtcd()
    with pytest.raises(CancelledError):
        put_kv_with_retry(etcd, "k", "v", cancelled=cancelled)
    assert etcd.put_attempts == 0


def test_new_session_retries():
    etcd = FakeEtcd(session_failures=1)
    session = new_session_with_retry(etcd, retry_count=3, ttl=45)
    assert session.lease == 1
    assert etcd.session_attempts == 2


def test_new_session_raises_after_all_retries():
    etcd = FakeEtcd(session_failures=5)
    with pytest.raises(ConnectionError):
        new_session_with_retry(etcd, retry_count=2, ttl=45)
    assert etcd.session_attempts == 2


def test_new_session_cancelled():
    cancelled = threading.Event()
    cancelled.set()
    with pytest.raises(CancelledError):
        new_session_with_retry(FakeEtcd(), cancelled=cancelled)