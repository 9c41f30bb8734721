"""Persistent storage of scraped profiles, with a retention-based garbage collector."""

from __future__ import annotations

import logging
import math
import sqlite3
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Callable, Iterable, Optional, Union

import zstandard

from .meta import (
    PROFILE_KIND_GOROUTINE,
    BasicQueryParam,
    ProfileList,
    ProfileTarget,
    TargetInfo,
)

log = logging.getLogger(__name__)

GC_INTERVAL_SECONDS = 10 * 60
DEFAULT_RETENTION_SECONDS = 3 * 24 * 60 * 60
MAX_QUERY_RANGE_SECONDS = 2 * 60 * 60
QUERY_CONCURRENCY = 16

ProfileHandler = Callable[[ProfileTarget, int, bytes], object]


class StoreClosedError(RuntimeError):
    """The storage has been closed."""

    def __init__(self) -> None:
        super().__init__("storage is closed")


class QueryRangeTooLargeError(ValueError):
    """A query asked for a time range wider than two hours."""

    def __init__(self) -> None:
        super().__init__("query time range too large, should no more than 2 hours")


class DocDB:
    """SQLite-backed tables holding profile targets, profile metadata and data."""

    def __init__(self, path: str = ":memory:") -> None:
        self._conn = sqlite3.connect(str(path), check_same_thread=False)
        self._lock = threading.Lock()
        with self._lock, self._conn:
            self._conn.execute(
                "CREATE TABLE IF NOT EXISTS conprof_targets ("
                "id INTEGER PRIMARY KEY, kind TEXT NOT NULL, component TEXT NOT NULL, "
                "address TEXT NOT NULL, last_scrape_ts INTEGER NOT NULL, "
                "UNIQUE (kind, component, address))"
            )

    def __enter__(self) -> "DocDB":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @staticmethod
    def _data_table(target_id: int) -> str:
        return f"conprof_{int(target_id)}_data"

    @staticmethod
    def _meta_table(target_id: int) -> str:
        return f"conprof_{int(target_id)}_meta"

    def _execute(self, sql: str, args: tuple = ()) -> None:
        with self._lock, self._conn:
            self._conn.execute(sql, args)

    def _fetch(self, sql: str, args: tuple = ()) -> list:
        with self._lock:
            return self._conn.execute(sql, args).fetchall()

    def query_all_profile_targets(self) -> list[tuple[ProfileTarget, TargetInfo]]:
        rows = self._fetch(
            "SELECT kind, component, address, id, last_scrape_ts FROM conprof_targets ORDER BY id"
        )
        return [
            (ProfileTarget(kind, component, address), TargetInfo(target_id, ts))
            for kind, component, address, target_id, ts in rows
        ]

    def query_target_info(self, target: ProfileTarget) -> Optional[TargetInfo]:
        rows = self._fetch(
            "SELECT id, last_scrape_ts FROM conprof_targets "
            "WHERE kind = ? AND component = ? AND address = ?",
            (target.kind, target.component, target.address),
        )
        if not rows:
            return None
        target_id, ts = rows[0]
        return TargetInfo(target_id, ts)

    def update_target_info(self, info: TargetInfo) -> None:
        self._execute(
            "UPDATE conprof_targets SET last_scrape_ts = ? WHERE id = ?",
            (info.last_scrape_ts, info.id),
        )

    def create_profile_tables(self, target_id: int) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                f"CREATE TABLE IF NOT EXISTS {self._data_table(target_id)} "
                "(ts INTEGER PRIMARY KEY, data BLOB)"
            )
            self._conn.execute(
                f"CREATE TABLE IF NOT EXISTS {self._meta_table(target_id)} "
                "(ts INTEGER PRIMARY KEY, error TEXT)"
            )

    def create_target_info(self, target: ProfileTarget, info: TargetInfo) -> None:
        self._execute(
            "INSERT INTO conprof_targets (id, kind, component, address, last_scrape_ts) "
            "VALUES (?, ?, ?, ?, ?)",
            (info.id, target.kind, target.component, target.address, info.last_scrape_ts),
        )

    def delete_profile_tables(self, target_id: int) -> None:
        with self._lock, self._conn:
            self._conn.execute(f"DROP TABLE IF EXISTS {self._data_table(target_id)}")
            self._conn.execute(f"DROP TABLE IF EXISTS {self._meta_table(target_id)}")
            self._conn.execute("DELETE FROM conprof_targets WHERE id = ?", (target_id,))

    def write_profile_data(self, target_id: int, ts: int, data: bytes) -> None:
        self._execute(
            f"INSERT OR REPLACE INTO {self._data_table(target_id)} (ts, data) VALUES (?, ?)",
            (ts, bytes(data)),
        )

    def write_profile_meta(self, target_id: int, ts: int, error: str) -> None:
        self._execute(
            f"INSERT OR REPLACE INTO {self._meta_table(target_id)} (ts, error) VALUES (?, ?)",
            (ts, error),
        )

    def query_profile_meta(self, target_id: int, begin: int, end: int) -> list[tuple[int, str]]:
        """(timestamp, error) pairs in the range, newest first."""
        rows = self._fetch(
            f"SELECT ts, error FROM {self._meta_table(target_id)} "
            "WHERE ts >= ? AND ts <= ? ORDER BY ts DESC",
            (begin, end),
        )
        return [(ts, error or "") for ts, error in rows]

    def query_profile_data(self, target_id: int, begin: int, end: int) -> list[tuple[int, bytes]]:
        """(timestamp, data) pairs in the range, newest first."""
        rows = self._fetch(
            f"SELECT ts, data FROM {self._data_table(target_id)} "
            "WHERE ts >= ? AND ts <= ? ORDER BY ts DESC",
            (begin, end),
        )
        return [(ts, bytes(data or b"")) for ts, data in rows]

    def delete_profile_data_before_ts(self, target_id: int, ts: int) -> None:
        self._execute(f"DELETE FROM {self._data_table(target_id)} WHERE ts <= ?", (ts,))

    def delete_profile_meta_before_ts(self, target_id: int, ts: int) -> None:
        self._execute(f"DELETE FROM {self._meta_table(target_id)} WHERE ts <= ?", (ts,))


class QueryLimiter:
    """Counts results and tells when a limit is reached."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        self.count = 0
        self._lock = threading.Lock()

    def add(self, n: int) -> None:
        with self._lock:
            self.count += n

    def is_full(self) -> bool:
        with self._lock:
            return self.count >= self.limit


def _unix(when: Union[datetime, float, int]) -> int:
    if isinstance(when, datetime):
        return math.floor(when.timestamp())
    return math.floor(when)


def _check_param(param: BasicQueryParam) -> None:
    if param.end - param.begin > MAX_QUERY_RANGE_SECONDS:
        raise QueryRangeTooLargeError()
    if param.limit == 0:
        param.limit = sys.maxsize


class ProfileStorage:
    """Stores profiles per target and answers range queries over them."""

    def __init__(
        self,
        db: DocDB,
        retention_seconds: int = DEFAULT_RETENTION_SECONDS,
        gc_interval: Optional[float] = GC_INTERVAL_SECONDS,
    ) -> None:
        self.db = db
        self.retention_seconds = retention_seconds
        self._lock = threading.RLock()
        self._meta_cache: dict[ProfileTarget, TargetInfo] = {}
        self._id_allocator = 0
        self._closed = threading.Event()
        for target, info in self._load_all_targets():
            self._meta_cache[target] = info
        self._gc_thread: Optional[threading.Thread] = None
        if gc_interval is not None:
            self._gc_thread = threading.Thread(
                target=self._gc_loop, args=(gc_interval,), daemon=True
            )
            self._gc_thread.start()

    def __enter__(self) -> "ProfileStorage":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _check_open(self) -> None:
        if self._closed.is_set():
            raise StoreClosedError()

    def update_profile_target_info(self, target: ProfileTarget, ts: int) -> bool:
        """Record a newer last-scrape time; return whether anything changed."""
        self._check_open()
        with self._lock:
            info = self._meta_cache.get(target)
        if info is None or ts <= info.last_scrape_ts:
            return False
        info.last_scrape_ts = ts
        self.db.update_target_info(info)
        return True

    def add_profile(
        self,
        target: ProfileTarget,
        when: Union[datetime, float, int],
        data: Optional[bytes],
        error: Optional[Union[BaseException, str]] = None,
    ) -> None:
        """Store one scrape result: the data, or the error that replaced it."""
        self._check_open()
        ts = _unix(when)
        info = self._prepare_profile_table(target, ts)
        error_text = ""
        if error is None:
            payload = bytes(data or b"")
            if target.kind == PROFILE_KIND_GOROUTINE:
                payload = zstandard.ZstdCompressor().compress(payload)
            self.db.write_profile_data(info.id, ts, payload)
        else:
            error_text = str(error)
        self.db.write_profile_meta(info.id, ts, error_text)

    def _targets_for(self, param: BasicQueryParam) -> list[tuple[ProfileTarget, TargetInfo]]:
        targets = param.targets or self._all_targets_from_cache()
        result = []
        for target in targets:
            info = self.target_info(target)
            if info is not None:
                result.append((target, info))
        return result

    def query_group_profiles(self, param: Optional[BasicQueryParam]) -> list[ProfileList]:
        """Profile lists of the queried targets that have entries in the range."""
        self._check_open()
        if param is None:
            return []
        _check_param(param)
        pairs = self._targets_for(param)
        if not pairs:
            return []
        with ThreadPoolExecutor(max_workers=QUERY_CONCURRENCY) as pool:
            lists = list(
                pool.map(lambda pair: self.query_target_profiles(pair[0], pair[1], param), pairs)
            )
        return [plist for plist in lists if plist.ts_list]

    def query_target_profiles(
        self, target: ProfileTarget, info: TargetInfo, param: BasicQueryParam
    ) -> ProfileList:
        limiter = QueryLimiter(param.limit)
        result = ProfileList(target=target)
        for ts, error in self.db.query_profile_meta(info.id, param.begin, param.end):
            result.ts_list.append(ts)
            result.error_list.append(error)
            limiter.add(1)
            if limiter.is_full():
                break
        return result

    def query_profile_data(
        self, param: Optional[BasicQueryParam], handler: Optional[ProfileHandler]
    ) -> None:
        """Call handler(target, ts, data) for each stored profile in the range."""
        self._check_open()
        if param is None or handler is None:
            return
        _check_param(param)
        pairs = self._targets_for(param)
        if not pairs:
            return
        handler_lock = threading.Lock()

        def safe_handler(target: ProfileTarget, ts: int, data: bytes) -> None:
            with handler_lock:
                handler(target, ts, data)

        with ThreadPoolExecutor(max_workers=QUERY_CONCURRENCY) as pool:
            futures = [
                pool.submit(self.query_target_profile_data, target, info, param, safe_handler)
                for target, info in pairs
            ]
            errors = [f.exception() for f in futures]
        for error in errors:
            if error is not None:
                raise error

    def query_target_profile_data(
        self,
        target: ProfileTarget,
        info: TargetInfo,
        param: BasicQueryParam,
        handler: ProfileHandler,
    ) -> None:
        limiter = QueryLimiter(param.limit)
        for ts, data in self.db.query_profile_data(info.id, param.begin, param.end):
            if target.kind == PROFILE_KIND_GOROUTINE:
                data = zstandard.ZstdDecompressor().decompressobj().decompress(data)
            handler(target, ts, data)
            limiter.add(1)
            if limiter.is_full():
                break

    def target_info(self, target: ProfileTarget) -> Optional[TargetInfo]:
        """The cached storage info of a target, or None if it is unknown."""
        with self._lock:
            return self._meta_cache.get(target)

    def _all_targets_from_cache(self) -> list[ProfileTarget]:
        with self._lock:
            return list(self._meta_cache)

    def close(self) -> None:
        self._closed.set()

    def _prepare_profile_table(self, target: ProfileTarget, ts: int) -> TargetInfo:
        with self._lock:
            info = self._meta_cache.get(target)
            if info is not None:
                return info
            info = self.db.query_target_info(target)
            if info is not None:
                self._rebase_id(info.id)
                self._meta_cache[target] = info
                log.info("load target info into cache: %s id=%d", target, info.id)
                return info
            info = TargetInfo(id=self._alloc_id(), last_scrape_ts=ts)
            self.db.create_profile_tables(info.id)
            self.db.create_target_info(target, info)
            log.info("create profile target table: %s id=%d", target, info.id)
            self._meta_cache[target] = info
            return info

    def _drop_profile_table_if_staled(
        self, target: ProfileTarget, info: TargetInfo, safe_point_ts: int
    ) -> None:
        with self._lock:
            last_scrape_ts = info.last_scrape_ts
            cached = self._meta_cache.get(target)
            if cached is not None:
                if cached.id != info.id:
                    log.error(
                        "same target %s has different ids %d and %d", target, cached.id, info.id
                    )
                else:
                    last_scrape_ts = cached.last_scrape_ts
            if last_scrape_ts >= safe_point_ts:
                return
            self.db.delete_profile_tables(info.id)
            self._meta_cache.pop(target, None)
            log.info("drop profile target table: %s id=%d", target, info.id)

    def _rebase_id(self, target_id: int) -> None:
        with self._lock:
            if target_id > self._id_allocator:
                self._id_allocator = target_id

    def _alloc_id(self) -> int:
        with self._lock:
            self._id_allocator += 1
            return self._id_allocator

    def _load_all_targets(self) -> list[tuple[ProfileTarget, TargetInfo]]:
        pairs = self.db.query_all_profile_targets()
        for _, info in pairs:
            self._rebase_id(info.id)
        log.info("loaded %d profile targets from meta table", len(pairs))
        return pairs

    def _safe_point_ts(self) -> int:
        return math.floor(time.time() - self.retention_seconds)

    def _gc_loop(self, interval: float) -> None:
        self.run_gc()
        while not self._closed.wait(interval):
            self.run_gc()

    def run_gc(self) -> None:
        """Delete profiles older than the retention and drop stale targets."""
        if self._closed.is_set():
            return
        start = time.monotonic()
        try:
            pairs: Iterable[tuple[ProfileTarget, TargetInfo]] = self._load_all_targets()
        except Exception:
            log.exception("gc failed to load targets from meta table")
            return
        pairs = list(pairs)
        safe_point_ts = self._safe_point_ts()
        for target, info in pairs:
            for step in (
                lambda: self.db.delete_profile_data_before_ts(info.id, safe_point_ts),
                lambda: self.db.delete_profile_meta_before_ts(info.id, safe_point_ts),
                lambda: self._drop_profile_table_if_staled(target, info, safe_point_ts),
            ):
                try:
                    step()
                except Exception:
                    log.exception("gc step failed for target %s", target)
        log.info(
            "gc finished: targets=%d safepoint=%d cost=%.3fs",
            len(pairs),
            safe_point_ts,
            time.monotonic() - start,
        )