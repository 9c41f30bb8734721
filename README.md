# ngmonitoring

This package provides building blocks for the monitoring side of a distributed database cluster. It covers the following areas:

- **Continuous profiling.**
  - It scrapes pprof-style profiles from every cluster component on a shared, interval-aligned tick.
  - It stores them in SQLite. Goroutine profiles are zstd-compressed.
  - It answers queries by time range and target.
  - It garbage-collects data older than the retention window.
- **Topology.**
  - It turns instance lists from a `TopologySource` into `Component`s for TiDB, PD, TiKV, TiFlash and TiCDC, and publishes them to subscribers.
  - It registers this server in etcd under `/topology/ng-monitoring/<address>/info`.
  - It keeps a heartbeat key at `/topology/ng-monitoring/<address>/ttl`, bound to a session lease.
- **Subscribers.**
  - A generic manager keeps one scraper running per discovered component.
  - It starts and stops scrapers as the topology and the controller's on/off switch change.
  - It caches table metadata fetched from the TiDB status API whenever the schema version in etcd moves.

## Installation

```
pip install ngmonitoring
```

To run the tests:

```
pip install "ngmonitoring[test]"
pytest
```

## Modules

| Module | Contents |
| --- | --- |
| `ngmonitoring.meta` | `ProfileTarget`, `TargetInfo`, `BasicQueryParam`, `ProfileList`, `ProfileStatus`, `StatusCounter` |
| `ngmonitoring.model` | Schema metadata: `SchemaState`, `CIStr`, `DBInfo`, `IndexInfo`, `PartitionInfo`, `TableInfo`, `TableDetail` |
| `ngmonitoring.ticker` | `Ticker`, an interval-aligned tick broadcaster; `TickerChannel`, which holds one pending tick per subscriber |
| `ngmonitoring.components` | `Component`, a cluster instance ordered by name, ip and port |
| `ngmonitoring.store` | `DocDB`, SQLite tables for targets and profiles; `ProfileStorage`, queries and GC; `QueryLimiter` |
| `ngmonitoring.scrape` | `PprofProfilingConfig`, `Target`, `Scraper`, `ScrapeSuite` |
| `ngmonitoring.scrape_manager` | `ContinueProfilingConfig`, `ScrapeManager`, and the per-component profile sets |
| `ngmonitoring.api` | `ContinuousProfiling`, which pairs storage with a scrape manager; `ContinuousProfilingAPI`, the query API and WSGI app |
| `ngmonitoring.domain` | `PDConfig`, `ClientMaintainer`, `Domain`, and client creation with retry |
| `ngmonitoring.topology` | `Instance`, `TopologySource`, `TopologyDiscoverer`, `parse_ticdc_components` |
| `ngmonitoring.syncer` | `ServerInfo`, `TopologySyncer`, and etcd put/session helpers with retry |
| `ngmonitoring.subscriber` | `Scraper`, `SubscribeController`, `SubscriberManager`, `Subscriber` |

## Example: status aggregation

```python
from ngmonitoring.meta import ProfileStatus, StatusCounter

counter = StatusCounter()
counter.add_status(ProfileStatus.FINISHED)
counter.add_status(ProfileStatus.FAILED)
print(counter.final_status())  # finished_with_error
```

## Example: profiling and serving the query API

```python
from wsgiref.simple_server import make_server

from ngmonitoring.api import ContinuousProfiling, ContinuousProfilingAPI
from ngmonitoring.components import Component
from ngmonitoring.scrape_manager import ContinueProfilingConfig
from ngmonitoring.store import DocDB

db = DocDB("profiles.sqlite3")
config = ContinueProfilingConfig(enable=True, profile_seconds=10, interval_seconds=60)
conprof = ContinuousProfiling(db, config, "http")

components = [Component("tidb", "127.0.0.1", 4000, 10080)]
conprof.manager.update_topology(components)

app = ContinuousProfilingAPI(conprof, topology=lambda: components)
make_server("127.0.0.1", 12020, app).serve_forever()
```

The app serves the following routes, with or without the `/continuous_profiling` prefix:

| Route | Parameters |
| --- | --- |
| `/group_profiles` | `begin_time`, `end_time`, `limit` |
| `/group_profile/detail` | `ts`, `limit` |
| `/single_profile/view` | `ts`, `profile_type`, `component`, `address`, `data_format` |
| `/download` | a zip of profiles plus a `README.md`, selected by `ts` or `begin_time`/`end_time` |
| `/components` | none |
| `/estimate_size` | none |

Notes on the routes:

- A query range may span at most two hours.
- A bad or missing parameter answers HTTP 503 with a body such as `{"message":"need param ts","status":"error"}`.
- `ContinuousProfilingAPI.handle(path, params)` gives the same answers as a `(status, headers, body)` tuple, without a server.
- When a `TopologyDiscoverer` is in use, pass its bound `components` method as `topology`. Feed its subscription queue into `ScrapeManager.update_topology`.

## What you supply

Several parts talk to the cluster only through objects you provide:

- **Topology.** `TopologyDiscoverer` reads instances from a `TopologySource`. You implement `tidb_instances`, `pd_instances`, `store_instances` and, optionally, `ticdc_kvs`.
- **PD client.** `Domain` and `create_pd_client` use a small built-in PD HTTP client that only performs the health check. Pass `pd_factory` to use another client.
- **etcd client.** `Domain` has no etcd client of its own; pass `etcd_factory` to get one.
  - `TopologySyncer` expects the client to offer `put(key, value, lease=...)` and `new_session(ttl)`.
  - The session returned by `new_session` must have a `lease` and a `done` event.
  - `SubscriberManager` expects the client to offer `get(key)`.
- **Profile rendering.** SVG and text rendering of profiles come from the `svg_converter` and `text_converter` callables given to `ContinuousProfilingAPI`. Without them, non-TiKV profiles are returned raw. TiKV heap views in `svg` or `text` format raise an error.
- **TiKV heap profiles.** Scraping them needs a `heap_fetcher` callable given to `ScrapeManager` or `Scraper`. Without it, those scrapes are recorded as failed.
- **Subscriber controllers.** `Subscriber` works through a `SubscribeController` you write. It reads configuration, PD variables and topology from `queue.Queue`s that carry callables returning the latest value.

## What the package does not do

- The package has no command-line program.
- It has no configuration file loader.
- It has no ready-to-run server process. Wiring the pieces together and hosting the WSGI app is left to the caller.