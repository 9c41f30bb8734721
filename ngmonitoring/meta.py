"""Profile targets, query parameters and status bookkeeping for continuous profiling."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum

PROFILE_KIND_PROFILE = "profile"
PROFILE_KIND_GOROUTINE = "goroutine"
PROFILE_KIND_HEAP = "heap"
PROFILE_KIND_MUTEX = "mutex"

PROFILE_DATA_FORMAT_SVG = "svg"
PROFILE_DATA_FORMAT_TEXT = "text"
PROFILE_DATA_FORMAT_PROTOBUF = "protobuf"
PROFILE_DATA_FORMAT_JEPROF = "jeprof"

_STATUS_NAMES = {
    0: "finished",
    1: "failed",
    2: "running",
    3: "finished_with_error",
}


class ProfileStatus(IntEnum):
    """Outcome of one profile scrape, or of a group of them."""

    FINISHED = 0
    FAILED = 1
    RUNNING = 2
    FINISHED_WITH_ERROR = 3

    def __str__(self) -> str:
        return _STATUS_NAMES.get(int(self), "unknown_state")


@dataclass(frozen=True)
class ProfileTarget:
    """One kind of profile collected from one component instance."""

    kind: str
    component: str
    address: str

    def to_dict(self) -> dict:
        return {"kind": self.kind, "component": self.component, "address": self.address}


@dataclass
class TargetInfo:
    """Storage identifier of a target and the time it was last scraped."""

    id: int
    last_scrape_ts: int


@dataclass
class BasicQueryParam:
    """Time range, limit, targets and output format of a profile query."""

    begin: int = 0
    end: int = 0
    limit: int = 0
    targets: list[ProfileTarget] = field(default_factory=list)
    data_format: str = ""

    def to_dict(self) -> dict:
        return {
            "begin_time": self.begin,
            "end_time": self.end,
            "limit": self.limit,
            "targets": [target.to_dict() for target in self.targets],
            "data_format": self.data_format,
        }


@dataclass
class ProfileList:
    """Timestamps and errors of the profiles stored for one target."""

    target: ProfileTarget
    error_list: list[str] = field(default_factory=list)
    ts_list: list[int] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"target": self.target.to_dict(), "timestamp_list": list(self.ts_list)}


@dataclass
class StatusCounter:
    """Counts statuses and folds them into one overall status."""

    finished_count: int = 0
    running_count: int = 0
    failed_count: int = 0
    total_count: int = 0

    def add_status(self, status: int) -> None:
        self.total_count += 1
        if status == ProfileStatus.FINISHED:
            self.finished_count += 1
        elif status == ProfileStatus.FAILED:
            self.failed_count += 1
        elif status == ProfileStatus.RUNNING:
            self.running_count += 1

    def final_status(self) -> ProfileStatus:
        if self.finished_count == self.total_count:
            return ProfileStatus.FINISHED
        if self.failed_count == self.total_count:
            return ProfileStatus.FAILED
        if self.running_count > 0:
            return ProfileStatus.RUNNING
        return ProfileStatus.FINISHED_WITH_ERROR