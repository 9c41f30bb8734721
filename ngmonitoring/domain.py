"""Creation and maintenance of the PD and etcd clients used to reach the cluster."""

from __future__ import annotations

import logging
import queue
import threading
import time
import urllib.error
import urllib.request
from concurrent.futures import CancelledError
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

log = logging.getLogger(__name__)

MIN_RETRY_INTERVAL = 0.01
MAX_RETRY_INTERVAL = 1.0
_WARN_INTERVAL = 5.0
_POLL_INTERVAL = 0.01
_UPDATE_POLL_INTERVAL = 0.1
_JOIN_TIMEOUT = 5.0

PDFactory = Callable[[str], Any]
EtcdFactory = Callable[[tuple], Any]


class _PDHTTPClient:
    """Minimal PD HTTP API client used for health checks."""

    health_path = "/pd/api/v1/health"

    def __init__(self, base_url: str, timeout: float = 5.0) -> None:
        self.base_url = base_url
        self.timeout = timeout

    def get_health(self) -> bytes:
        """Return the health response body; raise ConnectionError if PD is unhealthy."""
        try:
            with urllib.request.urlopen(self.base_url + self.health_path, timeout=self.timeout) as resp:
                return resp.read()
        except urllib.error.HTTPError as exc:
            raise ConnectionError(f"Response status {exc.code}") from None
        except urllib.error.URLError as exc:
            raise ConnectionError(str(exc.reason)) from None


@dataclass(frozen=True)
class PDConfig:
    """PD endpoints and the scheme used to reach them; scheme is not part of equality."""

    endpoints: tuple = ()
    scheme: str = field(default="http", compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "endpoints", tuple(self.endpoints or ()))


class ClientMaintainer:
    """Holds one pair of PD and etcd clients once they have been created."""

    def __init__(self) -> None:
        self._initialized = threading.Event()
        self._pd_config: Optional[PDConfig] = None
        self._pd_client: Any = None
        self._etcd_client: Any = None

    def init(self, pd_config: PDConfig, pd_client: Any, etcd_client: Any) -> None:
        if self._initialized.is_set():
            raise RuntimeError("client maintainer is already initialized")
        self._pd_config = pd_config
        self._pd_client = pd_client
        self._etcd_client = etcd_client
        self._initialized.set()

    def _wait(self, timeout: Optional[float]) -> None:
        if not self._initialized.wait(timeout):
            raise TimeoutError("clients are not initialized yet")

    def pd_client(self, timeout: Optional[float] = None) -> Any:
        """Wait until initialized and return the PD client."""
        self._wait(timeout)
        return self._pd_client

    def etcd_client(self, timeout: Optional[float] = None) -> Any:
        """Wait until initialized and return the etcd client."""
        self._wait(timeout)
        return self._etcd_client

    def is_initialized(self) -> bool:
        return self._initialized.is_set()

    def need_recreate_client(self, pd_config: PDConfig) -> bool:
        return self._pd_config != pd_config

    def close(self) -> None:
        if not self._initialized.is_set():
            return
        close = getattr(self._etcd_client, "close", None)
        if close is not None:
            try:
                close()
            except Exception:
                log.exception("failed to close etcd client")


def create_pd_client(config: Optional[PDConfig], pd_factory: PDFactory = _PDHTTPClient) -> Any:
    """Return a client for the first healthy PD endpoint."""
    if config is None or not config.endpoints:
        raise ValueError("need specify pd endpoints")
    last_error: Optional[Exception] = None
    for endpoint in config.endpoints:
        client = pd_factory(f"{config.scheme}://{endpoint}")
        try:
            client.get_health()
        except Exception as exc:
            last_error = exc
            continue
        log.info("create pd client success: pd-address=%s", endpoint)
        return client
    assert last_error is not None
    raise last_error


def create_client(
    config: PDConfig,
    pd_factory: PDFactory = _PDHTTPClient,
    etcd_factory: Optional[EtcdFactory] = None,
) -> tuple:
    """Create the PD and etcd clients; the etcd client is None without a factory."""
    if not config.endpoints:
        raise ValueError("unexpected empty pd endpoints, please specify at least one pd endpoint")
    etcd_client = etcd_factory(config.endpoints) if etcd_factory is not None else None
    try:
        pd_client = create_pd_client(config, pd_factory)
    except Exception:
        close = getattr(etcd_client, "close", None)
        if close is not None:
            close()
        raise
    return pd_client, etcd_client


def create_client_with_retry(
    config_provider: Callable[[], PDConfig],
    pd_factory: PDFactory = _PDHTTPClient,
    etcd_factory: Optional[EtcdFactory] = None,
    cancelled: Optional[threading.Event] = None,
    deadline: Optional[float] = None,
) -> tuple:
    """Retry with exponential backoff until clients are created.

    Raises CancelledError once ``cancelled`` is set and TimeoutError once the
    monotonic ``deadline`` has passed.
    """
    last_warn = time.monotonic()
    backoff = MIN_RETRY_INTERVAL
    while True:
        if cancelled is not None and cancelled.is_set():
            raise CancelledError()
        if deadline is not None and time.monotonic() >= deadline:
            raise TimeoutError("deadline exceeded")
        try:
            return create_client(config_provider(), pd_factory, etcd_factory)
        except Exception as exc:
            if time.monotonic() - last_warn > _WARN_INTERVAL:
                last_warn = time.monotonic()
                log.warning("create pd/etcd client failed: %s", exc)
        wait = backoff
        if deadline is not None:
            wait = max(0.0, min(wait, deadline - time.monotonic()))
        if cancelled is not None:
            cancelled.wait(wait)
        else:
            time.sleep(wait)
        backoff = min(backoff * 2, MAX_RETRY_INTERVAL)


class Domain:
    """Keeps PD and etcd clients up to date with the configured PD endpoints."""

    def __init__(
        self,
        config: PDConfig,
        pd_factory: PDFactory = _PDHTTPClient,
        etcd_factory: Optional[EtcdFactory] = None,
    ) -> None:
        self._setup(config, pd_factory, etcd_factory)
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    def _setup(self, config: PDConfig, pd_factory: PDFactory, etcd_factory: Optional[EtcdFactory]) -> None:
        self._config = config
        self._pd_factory = pd_factory
        self._etcd_factory = etcd_factory
        self._lock = threading.Lock()
        self._closed = threading.Event()
        self._cm = ClientMaintainer()
        self._updates: "queue.Queue[PDConfig]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None

    @classmethod
    def for_test(cls, config: PDConfig, pd_client: Any, etcd_client: Any) -> "Domain":
        """A domain holding the given clients, without a background maintainer."""
        domain = cls.__new__(cls)
        domain._setup(config, _PDHTTPClient, None)
        domain._cm.init(config, pd_client, etcd_client)
        return domain

    def __enter__(self) -> "Domain":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _maintainer(self) -> ClientMaintainer:
        with self._lock:
            return self._cm

    def _current_config(self) -> PDConfig:
        with self._lock:
            return self._config

    def _wait_client(self, pick: Callable[[ClientMaintainer], Any]) -> Any:
        while True:
            if self._closed.is_set():
                raise CancelledError()
            try:
                return pick(self._maintainer())
            except TimeoutError:
                continue

    def pd_client(self) -> Any:
        """Block until a PD client exists; raise CancelledError once closed."""
        return self._wait_client(lambda cm: cm.pd_client(_POLL_INTERVAL))

    def etcd_client(self) -> Any:
        """Block until an etcd client exists; raise CancelledError once closed."""
        return self._wait_client(lambda cm: cm.etcd_client(_POLL_INTERVAL))

    def update_config(self, config: PDConfig) -> None:
        """Apply a new configuration; clients are recreated if the PD settings changed."""
        with self._lock:
            self._config = config
        self._updates.put(config)

    def _run(self) -> None:
        try:
            self._ensure_clients(self._current_config())
        except (CancelledError, TimeoutError):
            return
        while not self._closed.is_set():
            try:
                config = self._updates.get(timeout=_UPDATE_POLL_INTERVAL)
            except queue.Empty:
                continue
            try:
                self._ensure_clients(config)
            except CancelledError:
                return

    def _ensure_clients(self, config: PDConfig) -> None:
        cm = self._maintainer()
        if cm.is_initialized():
            if not cm.need_recreate_client(config):
                return
            cm.close()
            cm = ClientMaintainer()
            with self._lock:
                self._cm = cm
        pd_client, etcd_client = create_client_with_retry(
            self._current_config, self._pd_factory, self._etcd_factory, cancelled=self._closed
        )
        cm.init(config, pd_client, etcd_client)

    def close(self) -> None:
        self._maintainer().close()
        self._closed.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(_JOIN_TIMEOUT)