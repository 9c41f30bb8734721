"""Scraping of one profile kind from one component endpoint."""

from __future__ import annotations

import logging
import threading
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Mapping, Optional
from urllib.parse import urlencode, urlunsplit

from .components import COMPONENT_TIKV
from .meta import PROFILE_KIND_HEAP, ProfileStatus, ProfileTarget
from .store import ProfileStorage
from .ticker import TickerChannel

log = logging.getLogger(__name__)

HTTPClient = Callable[[str, Mapping[str, str], Optional[float]], bytes]
HeapFetcher = Callable[[str], bytes]

_TICK_POLL_SECONDS = 0.1


def _http_get(url: str, headers: Mapping[str, str], timeout: Optional[float]) -> bytes:
    request = urllib.request.Request(url, headers=dict(headers), method="GET")
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            if response.status != 200:
                raise ConnectionError(
                    f"server returned HTTP status {response.status} {response.reason}"
                )
            return response.read()
    except urllib.error.HTTPError as exc:
        raise ConnectionError(f"server returned HTTP status {exc.code} {exc.reason}") from None


@dataclass
class PprofProfilingConfig:
    """Path, query parameters, duration and headers of one pprof endpoint."""

    path: str
    seconds: int = 0
    params: dict[str, str] = field(default_factory=dict)
    header: dict[str, str] = field(default_factory=dict)


class Target:
    """A single HTTP or HTTPS endpoint serving one profile kind."""

    def __init__(
        self,
        component: str,
        address: str,
        scrape_address: str,
        kind: str,
        scheme: str,
        config: PprofProfilingConfig,
    ) -> None:
        self.profile_target = ProfileTarget(kind=kind, component=component, address=address)
        self.header = dict(config.header)
        self.scheme = scheme
        self.host = scrape_address
        self.path = config.path
        pairs = list(config.params.items())
        if config.seconds > 0:
            pairs.append(("seconds", str(config.seconds)))
        self.query = urlencode(sorted(pairs, key=lambda kv: kv[0]))

    @property
    def kind(self) -> str:
        return self.profile_target.kind

    @property
    def component(self) -> str:
        return self.profile_target.component

    @property
    def address(self) -> str:
        return self.profile_target.address

    def url(self) -> str:
        return urlunsplit((self.scheme, self.host, self.path, self.query, ""))


class Scraper:
    """Fetches the profile of one target."""

    def __init__(
        self,
        target: Target,
        client: Optional[HTTPClient] = None,
        heap_fetcher: Optional[HeapFetcher] = None,
    ) -> None:
        self.target = target
        self.client = client or _http_get
        self.heap_fetcher = heap_fetcher

    def scrape(self, timeout: Optional[float] = None) -> bytes:
        """Return the raw profile; raise on any failure."""
        if self.target.component == COMPONENT_TIKV and self.target.kind == PROFILE_KIND_HEAP:
            if self.heap_fetcher is None:
                raise RuntimeError("no heap profile fetcher configured")
            return bytes(self.heap_fetcher(self.target.url()))
        return bytes(self.client(self.target.url(), self.target.header, timeout))


class ScrapeSuite:
    """Scrapes a target on every tick and stores what it gets."""

    def __init__(
        self, scraper: Scraper, storage: ProfileStorage, timeout_seconds: float = 120
    ) -> None:
        self.scraper = scraper
        self.storage = storage
        self.timeout_seconds = timeout_seconds
        self.last_scrape: Optional[datetime] = None
        self.last_scrape_status = ProfileStatus.FINISHED
        self.last_scrape_size = 0
        self._stopped = threading.Event()

    def run(self, channel: TickerChannel) -> None:
        """Loop until stopped, scraping once per tick received on the channel."""
        target = self.scraper.target.profile_target
        log.debug("scraper start to run: %s", target)
        try:
            while not self._stopped.is_set():
                try:
                    start = channel.get(timeout=_TICK_POLL_SECONDS)
                except TimeoutError:
                    continue
                if self._stopped.is_set():
                    break
                self.last_scrape = start
                self.last_scrape_status = ProfileStatus.RUNNING
                self._scrape_once(target, start)
        finally:
            channel.stop()
            log.debug("scraper stop running: %s", target)

    def _scrape_once(self, target: ProfileTarget, start: datetime) -> None:
        data = b""
        scrape_error: Optional[Exception] = None
        try:
            data = self.scraper.scrape(self.timeout_seconds)
        except Exception as exc:
            scrape_error = exc
            log.error("scrape failed: %s: %s", target, exc)
        self.last_scrape_size = len(data)

        store_failed = False
        try:
            self.storage.add_profile(target, start, data, scrape_error)
        except Exception as exc:
            store_failed = True
            log.error("save scrape data failed: %s at %s: %s", target, start, exc)

        if scrape_error is not None or store_failed:
            self.last_scrape_status = ProfileStatus.FAILED
        else:
            self.last_scrape_status = ProfileStatus.FINISHED

    def stop(self) -> None:
        self._stopped.set()