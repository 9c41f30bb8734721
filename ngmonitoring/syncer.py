"""Registration of this monitoring server in etcd so the cluster can find it."""

from __future__ import annotations

import json
import logging
import re
import threading
import time
from concurrent.futures import CancelledError
from dataclasses import dataclass
from typing import Any, Optional

log = logging.getLogger(__name__)

TOPOLOGY_PREFIX = "/topology/ng-monitoring"
DEFAULT_RETRY_COUNT = 3
DEF_RETRY_INTERVAL = 0.03
NEW_SESSION_RETRY_INTERVAL = 0.2
LOG_INTERVAL_COUNT = int(3.0 / NEW_SESSION_RETRY_INTERVAL)
TOPOLOGY_SESSION_TTL = 45
TOPOLOGY_TIME_TO_REFRESH = 30.0

_MAX_POLL_INTERVAL = 0.05
_JOIN_TIMEOUT = 5.0
_DIGITS_RE = re.compile(r"[0-9]+\Z")
_UINT64_MAX = 2**64 - 1


@dataclass
class ServerInfo:
    """Static facts about this server; never updated while it runs."""

    git_hash: str
    ip: str
    port: int
    start_timestamp: int

    def to_json(self) -> str:
        return json.dumps(
            {
                "git_hash": self.git_hash,
                "ip": self.ip,
                "listening_port": self.port,
                "start_timestamp": self.start_timestamp,
            },
            separators=(",", ":"),
        )


def _split_host_port(address: str) -> tuple:
    if address.startswith("["):
        end = address.find("]")
        if end < 0:
            raise ValueError(f"address {address}: missing ']' in address")
        host = address[1:end]
        rest = address[end + 1:]
        if not rest.startswith(":"):
            raise ValueError(f"address {address}: missing port in address")
        port = rest[1:]
        if ":" in port or "]" in port:
            raise ValueError(f"address {address}: too many colons in address")
        return host, port
    index = address.rfind(":")
    if index < 0:
        raise ValueError(f"address {address}: missing port in address")
    host, port = address[:index], address[index + 1:]
    if ":" in host:
        raise ValueError(f"address {address}: too many colons in address")
    if "[" in host or "]" in host:
        raise ValueError(f"address {address}: unexpected bracket in address")
    return host, port


def _parse_port(text: str) -> int:
    if not _DIGITS_RE.match(text):
        return 0
    return min(int(text), _UINT64_MAX)


def server_info_from_address(address: str, git_hash: str = "") -> ServerInfo:
    """Build the server info; ip and port stay empty if the address is malformed."""
    info = ServerInfo(git_hash=git_hash, ip="", port=0, start_timestamp=int(time.time()))
    try:
        host, port = _split_host_port(address)
    except ValueError:
        return info
    info.ip = host
    info.port = _parse_port(port)
    return info


def _check_cancelled(cancelled: Optional[threading.Event]) -> None:
    if cancelled is not None and cancelled.is_set():
        raise CancelledError()


def _pause(seconds: float, cancelled: Optional[threading.Event]) -> None:
    if cancelled is not None:
        cancelled.wait(seconds)
    else:
        time.sleep(seconds)


def put_kv_with_retry(
    etcd: Any,
    key: str,
    value: str,
    retry_count: int = DEFAULT_RETRY_COUNT,
    lease: Any = None,
    cancelled: Optional[threading.Event] = None,
) -> None:
    """Put a key, retrying on failure; raise the last error if every attempt fails."""
    last_error: Optional[Exception] = None
    for attempt in range(retry_count):
        _check_cancelled(cancelled)
        try:
            etcd.put(key, value, lease=lease)
            return
        except Exception as exc:
            last_error = exc
            log.warning(
                "[syncer] etcd-cli put kv failed: key=%s value=%s retry=%d: %s",
                key,
                value,
                attempt,
                exc,
            )
        _pause(DEF_RETRY_INTERVAL, cancelled)
    if last_error is not None:
        raise last_error


def new_session_with_retry(
    etcd: Any,
    retry_count: int = DEFAULT_RETRY_COUNT,
    ttl: int = TOPOLOGY_SESSION_TTL,
    cancelled: Optional[threading.Event] = None,
) -> Any:
    """Open an etcd session with the given lease ttl, retrying on failure.

    The session must carry a ``lease`` and a ``done`` event that is set when
    the session expires.
    """
    last_error: Optional[Exception] = None
    failed = 0
    for _ in range(retry_count):
        _check_cancelled(cancelled)
        try:
            return etcd.new_session(ttl)
        except Exception as exc:
            last_error = exc
            if failed % LOG_INTERVAL_COUNT == 0:
                log.warning("failed to new session to etcd: %s", exc)
        _pause(NEW_SESSION_RETRY_INTERVAL, cancelled)
        failed += 1
    if last_error is not None:
        raise last_error
    return None


class TopologySyncer:
    """Keeps this server's info and a lease-bound heartbeat key in etcd."""

    def __init__(
        self,
        domain: Any,
        advertise_address: str,
        git_hash: str = "",
        refresh_interval: float = TOPOLOGY_TIME_TO_REFRESH,
    ) -> None:
        self.domain = domain
        self.advertise_address = advertise_address
        self.refresh_interval = refresh_interval
        self.server_info = server_info_from_address(advertise_address, git_hash)
        self.session: Any = None
        self._stopped = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def __enter__(self) -> "TopologySyncer":
        self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.stop()

    def start(self) -> None:
        self._thread = threading.Thread(target=self._keeper_loop, daemon=True)
        self._thread.start()

    def _session_done(self) -> bool:
        session = self.session
        return session is not None and session.done.is_set()

    def _keeper_loop(self) -> None:
        try:
            self.new_session_and_store_server_info()
        except CancelledError:
            return
        except Exception as exc:
            log.error("store topology into etcd failed: %s", exc)
        poll = min(self.refresh_interval, _MAX_POLL_INTERVAL)
        next_refresh = time.monotonic() + self.refresh_interval
        while not self._stopped.wait(poll):
            try:
                if self._session_done():
                    log.info("server topology syncer need to restart")
                    try:
                        self.new_session_and_store_server_info()
                        log.info("server topology syncer restarted")
                    except Exception as exc:
                        log.error("server topology syncer restart failed: %s", exc)
                if time.monotonic() >= next_refresh:
                    next_refresh = time.monotonic() + self.refresh_interval
                    try:
                        self.store_topology_info()
                    except Exception as exc:
                        log.error("refresh topology in loop failed: %s", exc)
            except CancelledError:
                return

    def new_session_and_store_server_info(self) -> None:
        etcd = self.domain.etcd_client()
        self.session = new_session_with_retry(
            etcd, DEFAULT_RETRY_COUNT, TOPOLOGY_SESSION_TTL, self._stopped
        )
        self.store_server_info(etcd)
        self.store_topology_info()

    def store_server_info(self, etcd: Any) -> None:
        """Write the server info; it is not bound to any lease."""
        key = f"{TOPOLOGY_PREFIX}/{self.advertise_address}/info"
        put_kv_with_retry(
            etcd, key, self.server_info.to_json(), DEFAULT_RETRY_COUNT, None, self._stopped
        )

    def store_topology_info(self) -> None:
        """Write the heartbeat key bound to the session lease."""
        if self.session is None:
            raise RuntimeError("no topology session")
        key = f"{TOPOLOGY_PREFIX}/{self.advertise_address}/ttl"
        etcd = self.domain.etcd_client()
        put_kv_with_retry(
            etcd,
            key,
            str(time.time_ns()),
            DEFAULT_RETRY_COUNT,
            self.session.lease,
            self._stopped,
        )

    def stop(self) -> None:
        self._stopped.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(_JOIN_TIMEOUT)