import io
import json
import time
import zipfile

import pytest

from ngmonitoring.api import (
    ContinuousProfiling,
    ContinuousProfilingAPI,
    QueryParamError,
    build_query_param,
    profile_estimate_size,
    state_from_error,
    target_from_params,
)
from ngmonitoring.components import Component
from ngmonitoring.meta import BasicQueryParam, ProfileStatus, ProfileTarget
from ngmonitoring.scrape_manager import ContinueProfilingConfig
from ngmonitoring.store import DocDB


@pytest.fixture
def conprof():
    db = DocDB()
    config = ContinueProfilingConfig(enable=True, profile_seconds=1, interval_seconds=1)
    cp = ContinuousProfiling(db, config, "http")
    yield cp
    cp.close()
    db.close()


def _request(api, url):
    path, _, query = url.partition("?")
    captured = {}

    def start_response(status, headers):
        captured["status"] = status
        captured["headers"] = dict(headers)

    body = b"".join(api({"PATH_INFO": path, "QUERY_STRING": query}, start_response))
    return captured["status"], captured["headers"], body


ERROR_CASES = [
    ("/group_profiles", '{"message":"need param begin_time","status":"error"}'),
    ("/group_profiles?begin_time=0", '{"message":"need param end_time","status":"error"}'),
    (
        "/group_profiles?begin_time=0&end_time=zx",
        '{"message":"invalid param end_time value, error: strconv.ParseInt: parsing \\"zx\\": invalid syntax","status":"error"}',
    ),
    (
        "/group_profiles?begin_time=1639962239&end_time=1639969440",
        '{"message":"query time range too large, should no more than 2 hours","status":"error"}',
    ),
    ("/group_profile/detail", '{"message":"need param ts","status":"error"}'),
    (
        "/group_profile/detail?ts=x",
        '{"message":"invalid param ts value, error: strconv.ParseInt: parsing \\"x\\": invalid syntax","status":"error"}',
    ),
    (
        "/group_profile/detail?ts=0&limit=x",
        '{"message":"invalid param limit value, error: strconv.ParseInt: parsing \\"x\\": invalid syntax","status":"error"}',
    ),
    ("/single_profile/view", '{"message":"need param ts","status":"error"}'),
    (
        "/single_profile/view?ts=x",
        '{"message":"invalid param ts value, error: strconv.ParseInt: parsing \\"x\\": invalid syntax","status":"error"}',
    ),
    ("/single_profile/view?ts=0", '{"message":"need param profile_type","status":"error"}'),
    (
        "/single_profile/view?ts=0&data_format=svg",
        '{"message":"need param profile_type","status":"error"}',
    ),
    (
        "/single_profile/view?ts=0&data_format=unknown",
        '{"message":"invalid param data_format value unknown, expected: svg, protobuf, jeprof, text","status":"error"}',
    ),
    (
        "/single_profile/view?ts=0&profile_type=heap",
        '{"message":"need param component","status":"error"}',
    ),
    (
        "/single_profile/view?ts=0&profile_type=heap&component=tidb",
        '{"message":"need param address","status":"error"}',
    ),
    ("/download", '{"message":"need param ts","status":"error"}'),
    (
        "/download?ts=x",
        '{"message":"invalid param ts value, error: strconv.ParseInt: parsing \\"x\\": invalid syntax","status":"error"}',
    ),
    (
        "/download?begin_time=x",
        '{"message":"invalid param begin_time value, error: strconv.ParseInt: parsing \\"x\\": invalid syntax","status":"error"}',
    ),
    (
        "/download?begin_time=1&end_time=x",
        '{"message":"invalid param end_time value, error: strconv.ParseInt: parsing \\"x\\": invalid syntax","status":"error"}',
    ),
]


@pytest.mark.parametrize("url,expected", ERROR_CASES)
def test_error_requests(conprof, url, expected):
    api = ContinuousProfilingAPI(conprof)
    status, _, body = _request(api, "/continuous_profiling" + url)
    assert status.startswith("503")
    assert body.decode() == expected


def test_query_status(conprof):
    api = ContinuousProfilingAPI(conprof)
    storage = conprof.storage
    pt0 = ProfileTarget(kind="goroutine", component="tidb", address="10.0.1.2")
    pt1 = ProfileTarget(kind="profile", component="tidb", address="10.0.1.2")
    pt2 = ProfileTarget(kind="heap", component="pd", address="10.0.1.2")
    t0 = int(time.time()) - 100
    t1 = t0 + 1
    t2 = t0 + 2
    datas = [
        (t0, pt0, ProfileStatus.FINISHED, None),
        (t0, pt1, ProfileStatus.FINISHED, None),
        (t0, pt2, ProfileStatus.FINISHED, None),
        (t1, pt0, ProfileStatus.FINISHED, None),
        (t1, pt1, ProfileStatus.FAILED, RuntimeError("timeout")),
        (t1, pt2, ProfileStatus.FINISHED, None),
        (t2, pt0, ProfileStatus.FAILED, RuntimeError("timeout")),
        (t2, pt1, ProfileStatus.FAILED, RuntimeError("timeout")),
        (t2, pt2, ProfileStatus.FAILED, RuntimeError("timeout")),
    ]
    profile = bytes(range(1, 11))
    for ts, pt, _, err in datas:
        storage.add_profile(pt, ts, profile, err)

    status, _, body = _request(
        api, f"/continuous_profiling/group_profiles?begin_time={t0}&end_time={t2}"
    )
    assert status.startswith("200")
    groups = json.loads(body)
    assert len(groups) == 3
    assert [g["ts"] for g in groups] == [t2, t1, t0]
    assert [g["state"] for g in groups] == ["failed", "finished_with_error", "finished"]
    for g in groups:
        assert g["component_num"] == {"tidb": 1, "pd": 1, "tikv": 0, "tiflash": 0, "ticdc": 0}
        assert g["profile_duration_secs"] == 1

    expected_states = ["finished", "finished_with_error", "failed"]
    for ts, expected in zip([t0, t1, t2], expected_states):
        status, _, body = _request(api, f"/continuous_profiling/group_profile/detail?ts={ts}")
        assert status.startswith("200")
        detail = json.loads(body)
        assert detail["ts"] == ts
        assert detail["state"] == expected
        assert len(detail["target_profiles"]) == 3
        for tp in detail["target_profiles"]:
            match = [
                d
                for d in datas
                if d[1].component == tp["target"]["component"]
                and d[1].kind == tp["profile_type"]
                and d[0] == ts
            ]
            assert len(match) == 1
            assert tp["state"] == str(match[0][2])


def test_single_profile_view_raw_and_converted(conprof):
    calls = []

    def svg(data, target):
        calls.append(target)
        raise ValueError("not a pprof profile")

    api = ContinuousProfilingAPI(conprof, svg_converter=svg)
    ts = int(time.time()) - 50
    pt = ProfileTarget(kind="profile", component="tidb", address="127.0.0.1:4000")
    conprof.storage.add_profile(pt, ts, b"profile")
    params = {"ts": str(ts), "profile_type": "profile", "component": "tidb", "address": "127.0.0.1:4000"}
    assert api.single_profile_view(params) == b"profile"
    assert calls == [pt]

    assert api.single_profile_view({**params, "data_format": "protobuf"}) == b"profile"
    assert len(calls) == 1


def test_single_profile_view_tikv_heap(conprof):
    api = ContinuousProfilingAPI(
        conprof,
        svg_converter=lambda data, target: b"<svg>" + data,
        text_converter=lambda data, target: b"text:" + data,
    )
    ts = int(time.time()) - 50
    pt = ProfileTarget(kind="heap", component="tikv", address="127.0.0.1:20160")
    conprof.storage.add_profile(pt, ts, b"--- heap")
    params = {"ts": str(ts), "profile_type": "heap", "component": "tikv", "address": "127.0.0.1:20160"}
    assert api.single_profile_view(params) == b"<svg>--- heap"
    assert api.single_profile_view({**params, "data_format": "text"}) == b"text:--- heap"
    assert api.single_profile_view({**params, "data_format": "jeprof"}) == b"--- heap"


def test_single_profile_view_tikv_heap_without_converter(conprof):
    api = ContinuousProfilingAPI(conprof)
    ts = int(time.time()) - 50
    params = {"ts": str(ts), "profile_type": "heap", "component": "tikv", "address": "a:1"}
    status, _, body = api.handle("/single_profile/view", params)
    assert status == 503
    assert json.loads(body)["status"] == "error"


def test_download(conprof):
    api = ContinuousProfilingAPI(conprof)
    ts = int(time.time()) - 50
    targets = [
        ProfileTarget(kind="profile", component="tidb", address="127.0.0.1:4000"),
        ProfileTarget(kind="goroutine", component="tidb", address="127.0.0.1:4000"),
        ProfileTarget(kind="heap", component="tikv", address="127.0.0.1:20160"),
    ]
    for pt in targets:
        conprof.storage.add_profile(pt, ts, pt.kind.encode())

    status, headers, body = _request(api, f"/continuous_profiling/download?ts={ts}")
    assert status.startswith("200")
    assert headers["Content-Disposition"].startswith('attachment; filename="profile"')
    assert headers["Content-Disposition"].endswith(".zip")
    with zipfile.ZipFile(io.BytesIO(body)) as archive:
        names = sorted(archive.namelist())
        assert names == sorted(
            [
                "README.md",
                f"profile_tidb_127.0.0.1_4000_{ts}.proto",
                f"goroutine_tidb_127.0.0.1_4000_{ts}.txt",
                f"heap_tikv_127.0.0.1_20160_{ts}.prof",
            ]
        )
        assert archive.read(f"goroutine_tidb_127.0.0.1_4000_{ts}.txt") == b"goroutine"
        assert b"jeprof --web" in archive.read("README.md")

    status, _, body = _request(
        api,
        f"/continuous_profiling/download?begin_time={ts}&end_time={ts}&limit=1000"
        "&profile_type=profile&component=tidb&address=127.0.0.1:4000",
    )
    with zipfile.ZipFile(io.BytesIO(body)) as archive:
        assert len(archive.namelist()) == 2


def test_components(conprof):
    api = ContinuousProfilingAPI(conprof)
    components = [
        Component(name="tikv", ip="127.0.0.1", port=1, status_port=1),
        Component(name="pd", ip="127.0.0.1", port=1, status_port=1),
        Component(name="tidb", ip="127.0.0.1", port=1, status_port=1),
    ]
    conprof.manager.update_topology(components)
    status, _, body = _request(api, "/continuous_profiling/components")
    assert status.startswith("200")
    names = [c["name"] for c in json.loads(body)]
    assert names == ["pd", "tidb", "tikv"]


def test_estimate_size(conprof):
    components = [
        Component(name="pd", ip="127.0.0.1", port=1, status_port=1),
        Component(name="tidb", ip="127.0.0.1", port=1, status_port=1),
        Component(name="tikv", ip="127.0.0.1", port=1, status_port=1),
    ]
    api = ContinuousProfilingAPI(conprof, topology=lambda: components)
    status, _, body = _request(api, "/continuous_profiling/estimate_size")
    assert status.startswith("200")
    assert json.loads(body) == {"instance_count": 3, "profile_size": 106610688000}


def test_unknown_path(conprof):
    api = ContinuousProfilingAPI(conprof)
    status, _, body = _request(api, "/continuous_profiling/nothing")
    assert status.startswith("404")
    assert body == b"404 page not found"


def test_build_query_param():
    param = build_query_param(
        {"begin_time": "10", "end_time": "20", "limit": "5"},
        ["begin_time", "end_time"],
        ["limit", "data_format"],
    )
    assert param == BasicQueryParam(begin=10, end=20, limit=5, data_format="svg")
    param = build_query_param({"ts": "7", "data_format": "text"}, ["ts"], ["data_format"])
    assert (param.begin, param.end, param.data_format) == (7, 7, "text")


def test_build_query_param_errors():
    with pytest.raises(QueryParamError, match="need param ts"):
        build_query_param({}, ["ts"])
    with pytest.raises(QueryParamError, match="value out of range"):
        build_query_param({"ts": "99999999999999999999"}, ["ts"])
    with pytest.raises(QueryParamError, match="unknow param other"):
        build_query_param({"other": "1"}, ["other"])


def test_target_from_params():
    param = BasicQueryParam()
    target_from_params({"profile_type": "heap", "component": "pd", "address": "a:1"}, param, True)
    assert param.targets == [ProfileTarget(kind="heap", component="pd", address="a:1")]

    param = BasicQueryParam()
    target_from_params({"profile_type": "heap"}, param, False)
    assert param.targets == []
    with pytest.raises(QueryParamError, match="need param component"):
        target_from_params({"profile_type": "heap"}, param, True)


@pytest.mark.parametrize(
    "name,size",
    [("pd", 179200), ("tidb", 645120), ("ticdc", 645120), ("tikv", 409600), ("tiflash", 0), ("other", 131072)],
)
def test_profile_estimate_size(name, size):
    assert profile_estimate_size(Component(name=name)) == size


def test_state_from_error():
    assert state_from_error("") == ProfileStatus.FINISHED
    assert state_from_error("timeout") == ProfileStatus.FAILED