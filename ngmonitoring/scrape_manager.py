"""Keeps one scrape suite per profile kind running for every known component."""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from .components import (
    COMPONENT_PD,
    COMPONENT_TICDC,
    COMPONENT_TIDB,
    COMPONENT_TIFLASH,
    COMPONENT_TIKV,
    Component,
)
from .meta import ProfileStatus, StatusCounter
from .scrape import HeapFetcher, HTTPClient, PprofProfilingConfig, Scraper, ScrapeSuite, Target
from .store import ProfileStorage
from .ticker import Ticker

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ContinueProfilingConfig:
    """Settings of continuous profiling."""

    enable: bool = False
    profile_seconds: int = 10
    interval_seconds: int = 60
    timeout_seconds: int = 120
    data_retention_seconds: int = 3 * 24 * 60 * 60


def go_app_profiling_config(config: ContinueProfilingConfig) -> dict[str, PprofProfilingConfig]:
    return {
        "heap": PprofProfilingConfig(path="/debug/pprof/heap"),
        # debug=2 stops the world while collecting stacks.
        "goroutine": PprofProfilingConfig(path="/debug/pprof/goroutine", params={"debug": "1"}),
        "mutex": PprofProfilingConfig(path="/debug/pprof/mutex"),
        "profile": PprofProfilingConfig(
            path="/debug/pprof/profile", seconds=config.profile_seconds
        ),
    }


def tikv_profiling_config(config: ContinueProfilingConfig) -> dict[str, PprofProfilingConfig]:
    return {
        "profile": PprofProfilingConfig(
            path="/debug/pprof/profile",
            seconds=config.profile_seconds,
            header={"Content-Type": "application/protobuf"},
        ),
        "heap": PprofProfilingConfig(path="/debug/pprof/heap"),
    }


def tiflash_profiling_config(config: ContinueProfilingConfig) -> dict[str, PprofProfilingConfig]:
    return {
        "profile": PprofProfilingConfig(
            path="/debug/pprof/profile",
            seconds=config.profile_seconds,
            header={"Content-Type": "application/protobuf"},
        ),
    }


def _profiling_config(
    component: Component, config: ContinueProfilingConfig
) -> Optional[dict[str, PprofProfilingConfig]]:
    if component.name in (COMPONENT_TIDB, COMPONENT_PD, COMPONENT_TICDC):
        return go_app_profiling_config(config)
    if component.name == COMPONENT_TIKV:
        return tikv_profiling_config(config)
    if component.name == COMPONENT_TIFLASH:
        return tiflash_profiling_config(config)
    return None


class ScrapeManager:
    """Starts and stops scrape suites as the configuration and topology change."""

    update_target_meta_interval: float = 60.0

    def __init__(
        self,
        storage: ProfileStorage,
        config: ContinueProfilingConfig,
        scheme: str = "http",
        client: Optional[HTTPClient] = None,
        heap_fetcher: Optional[HeapFetcher] = None,
    ) -> None:
        self.storage = storage
        self.config = config
        self.scheme = scheme
        self._client = client
        self._heap_fetcher = heap_fetcher
        self._latest: set[Component] = set()
        self._suites: dict[Component, list[ScrapeSuite]] = {}
        self._mu = threading.Lock()
        self._reload_lock = threading.Lock()
        self._stopped = threading.Event()
        self._threads: list[threading.Thread] = []
        self._ticker = Ticker(config.interval_seconds)

    def __enter__(self) -> "ScrapeManager":
        self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def start(self) -> None:
        thread = threading.Thread(target=self._update_target_meta_loop, daemon=True)
        thread.start()
        self._threads.append(thread)
        log.info("continuous profiling manager started")

    def update_config(self, config: ContinueProfilingConfig) -> None:
        with self._reload_lock:
            if self._stopped.is_set():
                return
            old = self.config
            self.config = config
            self._reload(old, config)

    def update_topology(self, components) -> None:
        with self._reload_lock:
            if self._stopped.is_set():
                return
            self._latest = set(components)
            self._reload(self.config, self.config)

    def _reload(self, old: ContinueProfilingConfig, new: ContinueProfilingConfig) -> None:
        if old.interval_seconds != new.interval_seconds:
            self._ticker.reset(new.interval_seconds)
        need_reload = old.enable != new.enable or old.profile_seconds != new.profile_seconds
        for component in self._components_to_stop(need_reload):
            self._stop_scrape(component)
        if not new.enable:
            return
        for component in self._components_to_start(need_reload):
            try:
                self._start_scrape(component, new)
            except Exception:
                log.exception(
                    "start scrape failed: %s %s:%s",
                    component.name,
                    component.ip,
                    component.status_port,
                )

    def _components_to_stop(self, need_reload: bool) -> list[Component]:
        with self._mu:
            return [c for c in self._suites if need_reload or c not in self._latest]

    def _components_to_start(self, need_reload: bool) -> list[Component]:
        with self._mu:
            return [c for c in self._latest if need_reload or c not in self._suites]

    def _start_scrape(self, component: Component, config: ContinueProfilingConfig) -> None:
        if not config.enable or component.name == COMPONENT_TIFLASH:
            return
        profiles = _profiling_config(component, config)
        if profiles is None:
            return
        address = f"{component.ip}:{component.port}"
        scrape_address = f"{component.ip}:{component.status_port}"
        for kind, profile_config in profiles.items():
            target = Target(
                component.name, address, scrape_address, kind, self.scheme, profile_config
            )
            scraper = Scraper(target, self._client, self._heap_fetcher)
            suite = ScrapeSuite(scraper, self.storage, config.timeout_seconds)
            channel = self._ticker.subscribe()
            thread = threading.Thread(target=suite.run, args=(channel,), daemon=True)
            thread.start()
            self._threads.append(thread)
            with self._mu:
                self._suites.setdefault(component, []).append(suite)
        log.info("start component scrape: %s %s", component.name, address)

    def _stop_scrape(self, component: Component) -> None:
        log.info(
            "stop component scrape: %s %s:%s", component.name, component.ip, component.status_port
        )
        with self._mu:
            suites = self._suites.pop(component, [])
        for suite in suites:
            suite.stop()

    def current_scrape_components(self) -> list[Component]:
        """Components being scraped, sorted by name, ip and port."""
        with self._mu:
            return sorted(self._suites)

    def all_scrape_suites(self) -> list[ScrapeSuite]:
        with self._mu:
            return [suite for suites in self._suites.values() for suite in suites]

    def update_target_meta(self) -> int:
        """Push the last scrape time of every suite to storage; return how many changed."""
        count = 0
        for suite in self.all_scrape_suites():
            if suite.last_scrape is None:
                continue
            ts = math.floor(suite.last_scrape.timestamp())
            if ts <= 0:
                continue
            target = suite.scraper.target.profile_target
            try:
                if self.storage.update_profile_target_info(target, ts):
                    count += 1
            except Exception as exc:
                log.error("update profile target info failed: %s: %s", target, exc)
        log.debug("update profile target info finished: %d updated", count)
        return count

    def _update_target_meta_loop(self) -> None:
        while not self._stopped.wait(self.update_target_meta_interval):
            self.update_target_meta()

    def last_scrape_time(self) -> Optional[datetime]:
        return self._ticker.last_time()

    def running_status(self) -> ProfileStatus:
        counter = StatusCounter()
        for suite in self.all_scrape_suites():
            counter.add_status(suite.last_scrape_status)
        return counter.final_status()

    def close(self) -> None:
        self._stopped.set()
        with self._mu:
            suites = [suite for group in self._suites.values() for suite in group]
        for suite in suites:
            suite.stop()
        self._ticker.stop()
        self.storage.close()
        for thread in self._threads:
            thread.join()