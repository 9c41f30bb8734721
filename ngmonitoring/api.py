"""HTTP query API over stored continuous-profiling data."""

from __future__ import annotations

import io
import json
import math
import re
import time
import zipfile
from dataclasses import dataclass, field
from datetime import datetime
from http import HTTPStatus
from typing import Callable, Iterable, Mapping, Optional
from urllib.parse import parse_qs

from .components import (
    COMPONENT_PD,
    COMPONENT_TICDC,
    COMPONENT_TIDB,
    COMPONENT_TIFLASH,
    COMPONENT_TIKV,
    Component,
)
from .meta import (
    PROFILE_DATA_FORMAT_JEPROF,
    PROFILE_DATA_FORMAT_PROTOBUF,
    PROFILE_DATA_FORMAT_SVG,
    PROFILE_DATA_FORMAT_TEXT,
    PROFILE_KIND_GOROUTINE,
    PROFILE_KIND_HEAP,
    BasicQueryParam,
    ProfileStatus,
    ProfileTarget,
    StatusCounter,
)
from .scrape_manager import ContinueProfilingConfig, ScrapeManager
from .store import DocDB, ProfileStorage

BEGIN_TIME_PARAM = "begin_time"
END_TIME_PARAM = "end_time"
TS_PARAM = "ts"
LIMIT_PARAM = "limit"
DATA_FORMAT_PARAM = "data_format"
PROFILE_TYPE_PARAM = "profile_type"
COMPONENT_PARAM = "component"
ADDRESS_PARAM = "address"
DEFAULT_DATA_FORMAT = PROFILE_DATA_FORMAT_SVG

DEFAULT_PROFILE_SIZE = 128 * 1024

DOWNLOAD_README = """
To review the go profile data whose file name suffix is '.proto' interactively:
$ go tool pprof --http=127.0.0.1:6060 profile_xxx.proto

To review the jemalloc profile data whose file name suffix is '.prof' interactively:
$ jeprof --web profile_xxx.prof
"""

Converter = Callable[[bytes, ProfileTarget], bytes]
TopologyProvider = Callable[[], Iterable[Component]]
Response = tuple  # (status code, headers, body)

_INT_RE = re.compile(r"[+-]?[0-9]+\Z")
_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1


class QueryParamError(ValueError):
    """A query parameter is missing or malformed."""


@dataclass
class ComponentNum:
    """Number of distinct instances per component."""

    tidb: int = 0
    pd: int = 0
    tikv: int = 0
    tiflash: int = 0
    ticdc: int = 0

    def to_dict(self) -> dict:
        return {
            "tidb": self.tidb,
            "pd": self.pd,
            "tikv": self.tikv,
            "tiflash": self.tiflash,
            "ticdc": self.ticdc,
        }


@dataclass
class GroupProfiles:
    """Summary of all profiles scraped at one timestamp."""

    ts: int
    profile_secs: int
    state: str
    comp_num: ComponentNum

    def to_dict(self) -> dict:
        return {
            "ts": self.ts,
            "profile_duration_secs": self.profile_secs,
            "state": self.state,
            "component_num": self.comp_num.to_dict(),
        }


@dataclass(frozen=True)
class Target:
    """A component instance address."""

    component: str
    address: str

    def to_dict(self) -> dict:
        return {"component": self.component, "address": self.address}


@dataclass
class ProfileDetail:
    """Outcome of one profile of a group."""

    state: str
    error: str
    type: str
    target: Target

    def to_dict(self) -> dict:
        return {
            "state": self.state,
            "error": self.error,
            "profile_type": self.type,
            "target": self.target.to_dict(),
        }


@dataclass
class GroupProfileDetail:
    """Every profile scraped at one timestamp."""

    ts: int
    profile_secs: int
    state: str
    target_profiles: list[ProfileDetail] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "ts": self.ts,
            "profile_duration_secs": self.profile_secs,
            "state": self.state,
            "target_profiles": [p.to_dict() for p in self.target_profiles],
        }


@dataclass
class EstimateSize:
    """Estimated daily profile volume of the cluster."""

    instance_count: int
    profile_size: int

    def to_dict(self) -> dict:
        return {"instance_count": self.instance_count, "profile_size": self.profile_size}


def _parse_int(name: str, value: str) -> int:
    if not _INT_RE.match(value):
        reason = "invalid syntax"
    else:
        number = int(value)
        if _INT64_MIN <= number <= _INT64_MAX:
            return number
        reason = "value out of range"
    raise QueryParamError(
        f"invalid param {name} value, error: strconv.ParseInt: parsing "
        f"{json.dumps(value)}: {reason}"
    )


def _apply_param(params: Mapping[str, str], param: BasicQueryParam, name: str, required: bool) -> None:
    value = params.get(name, "")
    if not value:
        if required:
            raise QueryParamError(f"need param {name}")
        return
    if name == TS_PARAM:
        param.begin = param.end = _parse_int(name, value)
    elif name == BEGIN_TIME_PARAM:
        param.begin = _parse_int(name, value)
    elif name == END_TIME_PARAM:
        param.end = _parse_int(name, value)
    elif name == LIMIT_PARAM:
        param.limit = _parse_int(name, value)
    elif name == DATA_FORMAT_PARAM:
        formats = (
            PROFILE_DATA_FORMAT_SVG,
            PROFILE_DATA_FORMAT_PROTOBUF,
            PROFILE_DATA_FORMAT_JEPROF,
            PROFILE_DATA_FORMAT_TEXT,
        )
        if value not in formats:
            raise QueryParamError(
                f"invalid param {DATA_FORMAT_PARAM} value {value}, expected: {', '.join(formats)}"
            )
        param.data_format = value
    else:
        raise QueryParamError(f"unknow param {name}")


def build_query_param(
    params: Mapping[str, str], required: Iterable[str], optional: Iterable[str] = ()
) -> BasicQueryParam:
    """Parse the named query parameters; raise QueryParamError on bad input."""
    param = BasicQueryParam()
    for name in required:
        _apply_param(params, param, name, True)
    for name in optional:
        _apply_param(params, param, name, False)
    if not param.data_format:
        param.data_format = DEFAULT_DATA_FORMAT
    return param


def target_from_params(params: Mapping[str, str], param: BasicQueryParam, required: bool) -> None:
    """Append the profile target named by the parameters, if all of them are given."""
    values = []
    for name in (PROFILE_TYPE_PARAM, COMPONENT_PARAM, ADDRESS_PARAM):
        value = params.get(name, "")
        if not value:
            if required:
                raise QueryParamError(f"need param {name}")
            return
        values.append(value)
    kind, component, address = values
    param.targets.append(ProfileTarget(kind=kind, component=component, address=address))


def profile_estimate_size(component: Component) -> int:
    """Estimated bytes of one scrape round of a component."""
    if component.name == COMPONENT_PD:
        return (20 + 25 + 100 + 30) * 1024
    if component.name in (COMPONENT_TIDB, COMPONENT_TICDC):
        return (100 + 100 + 400 + 30) * 1024
    if component.name == COMPONENT_TIKV:
        return (200 + 200) * 1024
    if component.name == COMPONENT_TIFLASH:
        return 0
    return DEFAULT_PROFILE_SIZE


def state_from_error(error: str) -> ProfileStatus:
    return ProfileStatus.FINISHED if error == "" else ProfileStatus.FAILED


class ContinuousProfiling:
    """Profile storage together with the scrape manager that feeds it."""

    def __init__(self, db: DocDB, config: ContinueProfilingConfig, scheme: str = "http") -> None:
        self.storage = ProfileStorage(db, retention_seconds=config.data_retention_seconds)
        self.manager = ScrapeManager(self.storage, config, scheme)
        self.manager.start()

    def __enter__(self) -> "ContinuousProfiling":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        self.manager.close()


def _json_response(status: int, payload) -> Response:
    text = json.dumps(payload, separators=(",", ":"), ensure_ascii=False, sort_keys=False)
    text = text.replace("<", "\\u003c").replace(">", "\\u003e").replace("&", "\\u0026")
    return status, [("Content-Type", "application/json; charset=utf-8")], text.encode("utf-8")


def _error_response(exc: BaseException) -> Response:
    return _json_response(
        HTTPStatus.SERVICE_UNAVAILABLE, {"message": str(exc), "status": "error"}
    )


class _Group:
    def __init__(self) -> None:
        self.counter = StatusCounter()
        self.targets: set[Target] = set()

    def component_num(self) -> ComponentNum:
        counts: dict[str, int] = {}
        for target in self.targets:
            counts[target.component] = counts.get(target.component, 0) + 1
        return ComponentNum(
            tidb=counts.get(COMPONENT_TIDB, 0),
            pd=counts.get(COMPONENT_PD, 0),
            tikv=counts.get(COMPONENT_TIKV, 0),
            tiflash=counts.get(COMPONENT_TIFLASH, 0),
            ticdc=counts.get(COMPONENT_TICDC, 0),
        )


class ContinuousProfilingAPI:
    """Answers the continuous-profiling queries; usable directly or as a WSGI app."""

    prefix = "/continuous_profiling"

    def __init__(
        self,
        conprof: ContinuousProfiling,
        topology: Optional[TopologyProvider] = None,
        svg_converter: Optional[Converter] = None,
        text_converter: Optional[Converter] = None,
    ) -> None:
        self.conprof = conprof
        self.topology = topology
        self.svg_converter = svg_converter
        self.text_converter = text_converter

    @property
    def _config(self) -> ContinueProfilingConfig:
        return self.conprof.manager.config

    def group_profiles(self, params: Mapping[str, str]) -> list[GroupProfiles]:
        param = build_query_param(params, [BEGIN_TIME_PARAM, END_TIME_PARAM], [LIMIT_PARAM])
        lists = self.conprof.storage.query_group_profiles(param)
        groups: dict[int, _Group] = {}
        for plist in lists:
            target = Target(plist.target.component, plist.target.address)
            for ts, error in zip(plist.ts_list, plist.error_list):
                group = groups.setdefault(ts, _Group())
                group.counter.add_status(state_from_error(error))
                group.targets.add(target)
        last = self.conprof.manager.last_scrape_time()
        last_ts = math.floor(last.timestamp()) if last is not None else None
        result = []
        for ts, group in groups.items():
            if ts == last_ts:
                status = self.conprof.manager.running_status()
            else:
                status = group.counter.final_status()
            result.append(
                GroupProfiles(
                    ts=ts,
                    profile_secs=self._config.profile_seconds,
                    state=str(status),
                    comp_num=group.component_num(),
                )
            )
        result.sort(key=lambda g: g.ts, reverse=True)
        return result

    def group_profile_detail(self, params: Mapping[str, str]) -> GroupProfileDetail:
        param = build_query_param(params, [TS_PARAM], [LIMIT_PARAM])
        lists = self.conprof.storage.query_group_profiles(param)
        counter = StatusCounter()
        details = []
        for plist in lists:
            if not plist.error_list:
                continue
            error = plist.error_list[0]
            status = state_from_error(error)
            counter.add_status(status)
            details.append(
                ProfileDetail(
                    state=str(status),
                    error=error,
                    type=plist.target.kind,
                    target=Target(plist.target.component, plist.target.address),
                )
            )
        details.sort(key=lambda d: d.target.address)
        return GroupProfileDetail(
            ts=param.begin,
            profile_secs=self._config.profile_seconds,
            state=str(counter.final_status()),
            target_profiles=details,
        )

    def single_profile_view(self, params: Mapping[str, str]) -> bytes:
        """The raw profile, or its SVG or text rendering as the data format asks."""
        param = build_query_param(params, [TS_PARAM], [LIMIT_PARAM, DATA_FORMAT_PARAM])
        target_from_params(params, param, True)
        found: list[bytes] = []

        def keep(_target: ProfileTarget, _ts: int, data: bytes) -> None:
            found.append(data)

        self.conprof.storage.query_profile_data(param, keep)
        data = found[-1] if found else b""
        target = param.targets[0]
        if target.component == COMPONENT_TIKV and target.kind == PROFILE_KIND_HEAP:
            if param.data_format == PROFILE_DATA_FORMAT_SVG:
                if self.svg_converter is None:
                    raise RuntimeError("no svg converter configured")
                return self.svg_converter(data, target)
            if param.data_format == PROFILE_DATA_FORMAT_TEXT:
                if self.text_converter is None:
                    raise RuntimeError("no text converter configured")
                return self.text_converter(data, target)
        elif param.data_format == PROFILE_DATA_FORMAT_SVG and self.svg_converter is not None:
            try:
                return self.svg_converter(data, target)
            except Exception:
                pass
        return data

    def download(self, params: Mapping[str, str]) -> tuple[str, bytes]:
        """Return the Content-Disposition value and a zip archive of the queried profiles."""
        if params.get(BEGIN_TIME_PARAM):
            param = build_query_param(params, [BEGIN_TIME_PARAM, END_TIME_PARAM], [LIMIT_PARAM])
        else:
            param = build_query_param(params, [TS_PARAM], [LIMIT_PARAM])
        target_from_params(params, param, False)

        disposition = (
            'attachment; filename="profile"'
            + datetime.fromtimestamp(param.begin).strftime("%Y-%m-%d_%H-%M-%S")
            + ".zip"
        )
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w") as archive:

            def write(name: str, data: bytes) -> None:
                info = zipfile.ZipInfo(name, date_time=time.localtime()[:6])
                info.compress_type = zipfile.ZIP_DEFLATED
                archive.writestr(info, data)

            def add(target: ProfileTarget, ts: int, data: bytes) -> None:
                name = f"{target.kind}_{target.component}_{target.address}_{ts}".replace(":", "_")
                if target.kind == PROFILE_KIND_GOROUTINE:
                    name += ".txt"
                elif target.kind == PROFILE_KIND_HEAP and target.component == COMPONENT_TIKV:
                    name += ".prof"
                else:
                    name += ".proto"
                write(name, data)

            self.conprof.storage.query_profile_data(param, add)
            write("README.md", DOWNLOAD_README.encode("utf-8"))
        return disposition, buffer.getvalue()

    def components(self) -> list[Component]:
        return self.conprof.manager.current_scrape_components()

    def estimate_size(self) -> EstimateSize:
        components = list(self.topology()) if self.topology is not None else []
        total = sum(profile_estimate_size(c) for c in components)
        per_day = (24 * 60 * 60) // self._config.interval_seconds
        return EstimateSize(instance_count=len(components), profile_size=per_day * total)

    def handle(self, path: str, params: Mapping[str, str]) -> Response:
        """Serve one request; return (status code, headers, body)."""
        if path.startswith(self.prefix):
            path = path[len(self.prefix):]
        if path == "/components":
            return _json_response(HTTPStatus.OK, [c.to_dict() for c in self.components()])
        if path == "/estimate_size":
            return _json_response(HTTPStatus.OK, self.estimate_size().to_dict())
        try:
            if path == "/group_profiles":
                result = self.group_profiles(params)
                return _json_response(HTTPStatus.OK, [g.to_dict() for g in result])
            if path == "/group_profile/detail":
                return _json_response(HTTPStatus.OK, self.group_profile_detail(params).to_dict())
            if path == "/single_profile/view":
                data = self.single_profile_view(params)
                return HTTPStatus.OK, [("Content-Type", "application/octet-stream")], data
            if path == "/download":
                disposition, archive = self.download(params)
                headers = [
                    ("Content-Disposition", disposition),
                    ("Content-Type", "application/zip"),
                ]
                return HTTPStatus.OK, headers, archive
        except Exception as exc:
            return _error_response(exc)
        return HTTPStatus.NOT_FOUND, [("Content-Type", "text/plain")], b"404 page not found"

    def __call__(self, environ, start_response):
        query = parse_qs(environ.get("QUERY_STRING", ""), keep_blank_values=True)
        params = {key: values[0] for key, values in query.items()}
        try:
            status, headers, body = self.handle(environ.get("PATH_INFO", "/"), params)
        except Exception:
            status, headers, body = (
                HTTPStatus.INTERNAL_SERVER_ERROR,
                [("Content-Type", "text/plain")],
                b"internal server error",
            )
        code = HTTPStatus(status)
        headers = list(headers) + [("Content-Length", str(len(body)))]
        start_response(f"{code.value} {code.phrase}", headers)
        return [body]