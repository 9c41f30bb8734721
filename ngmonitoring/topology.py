"""Discovery of the cluster components to scrape."""

from __future__ import annotations

import abc
import json
import logging
import queue
import re
import threading
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from .components import (
    COMPONENT_PD,
    COMPONENT_TICDC,
    COMPONENT_TIDB,
    COMPONENT_TIFLASH,
    COMPONENT_TIKV,
    Component,
)

log = logging.getLogger(__name__)

DISCOVER_INTERVAL = 30.0
TICDC_TOPOLOGY_KEY_PREFIX = "/tidb/cdc/default/__cdc_meta__/capture/"

_PORT_RE = re.compile(r"[+-]?[0-9]+\Z")

GetLatestTopology = Callable[[], list]


@dataclass(frozen=True)
class Instance:
    """A running process of some component as reported by the cluster."""

    ip: str
    port: int
    status_port: int = 0
    up: bool = True


class TopologySource(abc.ABC):
    """Where the discoverer learns which instances exist."""

    @abc.abstractmethod
    def tidb_instances(self) -> list:
        """TiDB instances."""

    @abc.abstractmethod
    def pd_instances(self) -> list:
        """PD instances."""

    @abc.abstractmethod
    def store_instances(self) -> tuple:
        """A pair of lists: TiKV instances and TiFlash instances."""

    def ticdc_kvs(self) -> Iterable[tuple]:
        """(key, value) pairs stored under the TiCDC capture prefix."""
        return []


def _to_text(value) -> str:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", "replace")
    return str(value)


def parse_ticdc_components(kvs: Iterable[tuple]) -> list:
    """Components of the TiCDC captures registered under the capture prefix."""
    components = []
    for key, value in kvs:
        if not _to_text(key).startswith(TICDC_TOPOLOGY_KEY_PREFIX):
            continue
        try:
            item = json.loads(value)
        except (ValueError, TypeError) as exc:
            log.warning("invalid ticdc node item in etcd: %s", exc)
            continue
        if item is None:
            item = {}
        address = item.get("address", "") if isinstance(item, dict) else None
        if not isinstance(address, str):
            log.warning("invalid ticdc node item in etcd: %r", item)
            continue
        parts = address.split(":")
        if len(parts) != 2:
            log.warning("invalid ticdc node address in etcd: %s", address)
            continue
        ip, port_text = parts
        if not _PORT_RE.match(port_text):
            log.warning("invalid ticdc node address in etcd: %s", address)
            continue
        port = int(port_text)
        components.append(Component(name=COMPONENT_TICDC, ip=ip, port=port, status_port=port))
    return components


def _components_of(name: str, instances: Iterable[Instance], use_port_as_status: bool = False) -> list:
    return [
        Component(
            name=name,
            ip=inst.ip,
            port=inst.port,
            status_port=inst.port if use_port_as_status else inst.status_port,
        )
        for inst in instances
        if inst.up
    ]


class TopologyDiscoverer:
    """Periodically fetches the cluster topology and notifies subscribers.

    Each subscriber queue holds at most one pending item: a callable that
    returns the latest known components.
    """

    def __init__(self, source: Optional[TopologySource] = None, interval: float = DISCOVER_INTERVAL) -> None:
        self.source = source
        self.interval = interval
        self._lock = threading.Lock()
        self._subscribers: list = []
        self._components: Optional[list] = None
        self._closed = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def __enter__(self) -> "TopologyDiscoverer":
        self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def subscribe(self) -> "queue.Queue[GetLatestTopology]":
        channel: "queue.Queue[GetLatestTopology]" = queue.Queue(maxsize=1)
        with self._lock:
            self._subscribers.append(channel)
            channel.put_nowait(self.components)
        return channel

    def start(self) -> None:
        self._thread = threading.Thread(target=self._loop, daemon=True)
        self._thread.start()

    def close(self) -> None:
        self._closed.set()

    def _loop(self) -> None:
        try:
            self.fetch_topology()
            log.info("first load topology: %s", self.components())
        except Exception as exc:
            log.info("first load topology failed: %s", exc)
        while not self._closed.wait(self.interval):
            try:
                self.fetch_topology()
                log.debug("load topology success: %s", self.components())
            except Exception as exc:
                log.error("load topology failed: %s", exc)
            self._notify()

    def _notify(self) -> None:
        with self._lock:
            for channel in self._subscribers:
                try:
                    channel.put_nowait(self.components)
                except queue.Full:
                    pass

    def fetch_topology(self) -> None:
        components = self.fetch_all_scrape_targets()
        with self._lock:
            self._components = components

    def fetch_all_scrape_targets(self) -> list:
        """TiDB, PD, TiKV, TiFlash and TiCDC components that are up, in that order."""
        if self.source is None:
            raise RuntimeError("no topology source configured")
        components = _components_of(COMPONENT_TIDB, self.source.tidb_instances())
        components += _components_of(COMPONENT_PD, self.source.pd_instances(), use_port_as_status=True)
        tikv, tiflash = self.source.store_instances()
        components += _components_of(COMPONENT_TIKV, tikv)
        components += _components_of(COMPONENT_TIFLASH, tiflash)
        components += parse_ticdc_components(self.source.ticdc_kvs())
        return components

    def components(self) -> list:
        """The latest fetched components; empty before the first fetch."""
        with self._lock:
            return list(self._components or [])

    def set_components(self, components: Iterable[Component]) -> None:
        with self._lock:
            self._components = list(components)