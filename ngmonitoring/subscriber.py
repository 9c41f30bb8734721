"""Keeps one scraper per cluster component while a subscription is enabled."""

from __future__ import annotations

import abc
import json
import logging
import queue
import re
import threading
import time
import urllib.error
import urllib.request
from typing import Any, Callable, Optional
from urllib.parse import quote

from .components import COMPONENT_TIDB, Component
from .model import SCHEMA_VERSION_PATH, DBInfo, SchemaState, TableDetail, TableInfo

log = logging.getLogger(__name__)

SCHEMA_CHECK_INTERVAL = 2.0
_POLL_INTERVAL = 0.01
_HTTP_TIMEOUT = 10.0
_INT_RE = re.compile(r"[+-]?[0-9]+\Z")

HTTPGetter = Callable[[str], bytes]


def _http_get(url: str) -> bytes:
    try:
        with urllib.request.urlopen(url, timeout=_HTTP_TIMEOUT) as response:
            if response.status != 200:
                raise ConnectionError(f"{response.status} {response.reason}")
            return response.read()
    except urllib.error.HTTPError as exc:
        raise ConnectionError(f"{exc.code} {exc.reason}") from None


class Scraper(abc.ABC):
    """Collects data from one component until closed."""

    @abc.abstractmethod
    def run(self) -> None:
        """Collect until closed; runs on its own thread."""

    @abc.abstractmethod
    def is_down(self) -> bool:
        """Whether the scraper has stopped and must be replaced."""

    @abc.abstractmethod
    def close(self) -> None:
        """Stop collecting."""


class SubscribeController(abc.ABC):
    """Decides whether a subscription is on and creates its scrapers."""

    http_scheme = "http"

    @abc.abstractmethod
    def name(self) -> str:
        """Name used in log messages."""

    @abc.abstractmethod
    def is_enabled(self) -> bool:
        """Whether scrapers should be running."""

    @abc.abstractmethod
    def update_pd_variable(self, variable: Any) -> None:
        """Take note of new PD variables."""

    @abc.abstractmethod
    def update_config(self, config: Any) -> None:
        """Take note of a new configuration."""

    @abc.abstractmethod
    def update_topology(self, components: list) -> None:
        """Take note of a new topology."""

    def new_http_client(self) -> HTTPGetter:
        """A callable that fetches a URL and returns the body, raising on failure."""
        return _http_get

    @abc.abstractmethod
    def new_scraper(
        self, stop_event: threading.Event, component: Component, schema_cache: dict
    ) -> Optional[Scraper]:
        """Create the scraper of a component, or None if it needs none."""


def _run_scraper(scraper: Scraper) -> None:
    try:
        scraper.run()
    except Exception:
        log.exception("scraper failed")


class SubscriberManager:
    """Reacts to configuration, variable and topology updates.

    Each queue carries callables returning the latest value. ``task_done`` is
    called once an item has been fully handled.
    """

    schema_check_interval = SCHEMA_CHECK_INTERVAL

    def __init__(
        self,
        stop_event: threading.Event,
        domain: Any,
        var_queue: Optional[queue.Queue],
        topo_queue: Optional[queue.Queue],
        cfg_queue: Optional[queue.Queue],
        controller: SubscribeController,
    ) -> None:
        self.stop_event = stop_event
        self.domain = domain
        self.var_queue = var_queue
        self.topo_queue = topo_queue
        self.cfg_queue = cfg_queue
        self.controller = controller
        self.components: list = []
        self.scrapers: dict = {}
        self.schema_cache: dict = {}
        self.schema_version = 0
        self.http_client: Optional[HTTPGetter] = None
        self.prev_enabled = controller.is_enabled()
        self._threads: list = []

    def run(self) -> None:
        sources = [
            (self.cfg_queue, self._on_config),
            (self.var_queue, self._on_pd_variable),
            (self.topo_queue, self._on_topology),
        ]
        sources = [(q, handler) for q, handler in sources if q is not None]
        next_check = time.monotonic() + self.schema_check_interval
        try:
            while not self.stop_event.is_set():
                if self._handle_pending(sources):
                    continue
                if time.monotonic() >= next_check:
                    next_check = time.monotonic() + self.schema_check_interval
                    try:
                        self.update_schema_cache()
                    except Exception:
                        log.exception("update schema cache failed")
                    continue
                self.stop_event.wait(_POLL_INTERVAL)
        finally:
            self.clear_scrapers()

    def _handle_pending(self, sources: list) -> bool:
        for source, handler in sources:
            try:
                getter = source.get_nowait()
            except queue.Empty:
                continue
            try:
                handler(getter())
                self._apply_switch()
            except Exception:
                log.exception("%s failed to handle update", self.controller.name())
            finally:
                source.task_done()
            return True
        return False

    def _on_config(self, config: Any) -> None:
        self.controller.update_config(config)
        self.http_client = self.controller.new_http_client()

    def _on_pd_variable(self, variable: Any) -> None:
        self.controller.update_pd_variable(variable)

    def _on_topology(self, components: list) -> None:
        self.components = list(components)
        self.controller.update_topology(components)

    def _apply_switch(self) -> None:
        enabled = self.controller.is_enabled()
        if enabled != self.prev_enabled:
            log.info("%s is turned %s", self.controller.name(), "on" if enabled else "off")
        self.prev_enabled = enabled
        if enabled:
            self.update_scrapers()
        else:
            self.clear_scrapers()

    def update_schema_cache(self) -> None:
        """Refresh the table cache when the cluster schema version moves."""
        if not self.controller.is_enabled():
            self.schema_cache.clear()
            self.schema_version = 0
            return
        if self.domain is None:
            return
        try:
            etcd = self.domain.etcd_client()
        except Exception as exc:
            log.error("failed to get etcd client: %s", exc)
            return
        try:
            value = etcd.get(SCHEMA_VERSION_PATH)
        except Exception as exc:
            log.warning("failed to get tidb schema version: %s", exc)
            return
        if value is None:
            return
        if isinstance(value, (bytes, bytearray)):
            value = bytes(value).decode("utf-8", "replace")
        text = str(value)
        if not _INT_RE.match(text):
            log.warning("failed to get tidb schema version: invalid value %r", text)
            return
        version = int(text)
        if version == self.schema_version:
            return
        log.info("schema version changed: old=%d new=%d", self.schema_version, version)
        self.try_update_schema_cache(version)

    def request_db(self, path: str) -> Any:
        """Fetch a JSON document from the first TiDB status port that answers."""
        get = self.http_client or _http_get
        scheme = self.controller.http_scheme
        for component in self.components:
            if component.name != COMPONENT_TIDB:
                continue
            url = f"{scheme}://{component.ip}:{component.status_port}{path}"
            try:
                body = get(url)
            except Exception as exc:
                log.error("request failed: %s", exc)
                continue
            try:
                return json.loads(body)
            except ValueError as exc:
                log.error("decode response failed: %s", exc)
                continue
        raise ConnectionError("all request failed")

    def try_update_schema_cache(self, schema_version: int) -> None:
        try:
            db_infos = [DBInfo.from_dict(d) for d in self.request_db("/schema") or []]
        except Exception:
            return
        success = True
        for db in db_infos:
            if db.state == SchemaState.NONE:
                continue
            path = f"/schema/{quote(db.name.o, safe='$&+:=@')}?id_name_only=true"
            try:
                tables = [TableInfo.from_dict(t) for t in self.request_db(path) or []]
            except Exception:
                success = False
                continue
            log.info("update table info: db=%s tables=%s", db.name.o, tables)
            for table in tables:
                indices = {index.id: index.name.o for index in table.indices}
                self.schema_cache[table.id] = TableDetail(
                    name=table.name.o, db=db.name.o, id=table.id, indices=indices
                )
                partition = table.partition_info()
                if partition is None:
                    continue
                for definition in partition.definitions:
                    self.schema_cache[definition.id] = TableDetail(
                        name=f"{table.name.o}/{definition.name.o}",
                        db=db.name.o,
                        id=definition.id,
                        indices=indices,
                    )
        if success:
            self.schema_version = schema_version

    def topology_change(self) -> tuple:
        """Components that need a scraper and scraped components that are gone."""
        current = set()
        incoming = []
        for component in self.components:
            if component not in self.scrapers and component not in current:
                incoming.append(component)
            current.add(component)
        outgoing = [c for c in self.scrapers if c not in current]
        return incoming, outgoing

    def update_scrapers(self) -> None:
        for component, scraper in list(self.scrapers.items()):
            if scraper is not None and scraper.is_down():
                scraper.close()
                del self.scrapers[component]

        incoming, outgoing = self.topology_change()
        for component in outgoing:
            scraper = self.scrapers.pop(component, None)
            if scraper is not None:
                scraper.close()

        for component in incoming:
            scraper = self.controller.new_scraper(self.stop_event, component, self.schema_cache)
            self.scrapers[component] = scraper
            if scraper is not None:
                thread = threading.Thread(target=_run_scraper, args=(scraper,), daemon=True)
                thread.start()
                self._threads.append(thread)

    def clear_scrapers(self) -> None:
        scrapers = list(self.scrapers.values())
        self.scrapers.clear()
        for scraper in scrapers:
            if scraper is not None:
                scraper.close()


class Subscriber:
    """Runs a subscriber manager on a background thread until closed."""

    def __init__(
        self,
        domain: Any,
        topo_queue: Optional[queue.Queue],
        var_queue: Optional[queue.Queue],
        cfg_queue: Optional[queue.Queue],
        controller: SubscribeController,
    ) -> None:
        self.controller = controller
        self._stop = threading.Event()
        self.manager = SubscriberManager(
            self._stop, domain, var_queue, topo_queue, cfg_queue, controller
        )
        self._thread = threading.Thread(target=self.manager.run, daemon=True)
        self._thread.start()

    def __enter__(self) -> "Subscriber":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        log.info("stopping %s scrapers", self.controller.name())
        self._stop.set()
        self._thread.join()
        for thread in self.manager._threads:
            thread.join()
        log.info("stop %s scrapers successfully", self.controller.name())