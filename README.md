# topsql

Turns Top SQL data from database (TiDB) and storage (TiKV) nodes into time
series. Reads those series back to answer questions about the heaviest
statements. Shapes the answers as JSON-ready HTTP replies.

## Install

    pip install .

For the tests:

    pip install ".[test]"
    pytest

## Modules

### `topsql.models`

Plain dataclasses for the data the package handles.

- **Reported data:** `TopSQLRecord` and `TopSQLRecordItem`,
  `ResourceUsageRecord`, `ResourceGroupTag` and `GroupTagRecordItem`,
  `SQLMeta`, `PlanMeta`, and `TableDetail`.
- **Written series:** `Metric`, `RecordTags` and `InstanceTags`, plus the
  `MetricName` enum.
- **Query results:** `RecordItem` and `RecordPlanItem`, `SummaryItem` and
  `SummaryPlanItem`, `SummaryByItem`, and `InstanceInfo`.

Result types have a `to_dict()` method that gives their JSON form. In that
form, an empty optional series is left out.

### `topsql.store`

`DefaultStore(insert_handler, doc_db, meta_retention_secs)` turns records into
`Metric`s.

- It writes them as newline-delimited JSON in a `POST` `TSDBRequest` to
  `/api/v1/import`. It sends the request through `insert_handler`. A
  non-2xx `TSDBResponse` is logged, not raised.
- `instances`, `topsql_record` and `resource_metering_record` each write one
  batch.
- `sql_meta` and `plan_meta` pass metadata to the `DocDB`.
- `collect_garbage(now)` asks the `DocDB` to delete metadata older than
  `now - meta_retention_secs`. It returns that safe point.
- When the retention is positive, a background thread runs
  `collect_garbage` every hour until `close()` is called.

The conversion functions can also be used on their own:

- `instances_to_metrics`
- `topsql_record_to_metrics`
- `resource_metering_to_metrics`
- `encode_metrics`

`DocDB` is a `Protocol` that describes the document store the package expects.

### `topsql.query`

`DefaultQuery(select_handler, doc_db, plan_decoder=None)` sends `GET`
requests to `/api/v1/query_range` and `/api/v1/query` through
`select_handler`. It parses the JSON replies.

- `records(name, ...)`: per-SQL, per-plan series. The top *k* SQL digests
  by value sum are kept. The rest are folded into one `is_other` entry.
- `summary(...)`: CPU time per SQL and plan, with these rates over the
  range:
  - executions per second
  - milliseconds per execution
  - scanned records per second
  - scanned indexes per second
- `summary_by(..., agg_by)`: CPU time aggregated by `AggLevel.TABLE` or
  `AggLevel.DB`.
- `instances(start, end)`: instances seen in the range.

SQL and plan text come from the `DocDB`. An encoded plan is decoded with
`plan_decoder` if one is given. A handler error or a non-2xx reply raises
`QueryError`.

The grouping steps are public:

- `group_by_sql_digest`
- `keep_top_k`
- `merge_others`
- `top_k`

### `topsql.service`

`Service(query)` maps these paths to query calls:

- `/v1/instances`
- `/v1/summary`
- `/v1/cpu_time`, `/v1/read_row`, `/v1/read_index`, `/v1/write_row`,
  `/v1/write_index`, `/v1/sql_exec_count`, `/v1/sql_duration_sum` and
  `/v1/sql_duration_count`

`routes()` lists the paths. `handle(path, params)` returns
`(status, body)`:

| Status | When |
| --- | --- |
| 200 | The call succeeded. |
| 400 | A parameter is bad. |
| 503 | The query failed. |
| 404 | The path is unknown. |

Parameters:

- `instance` and `instance_type` are required.
- `start` and `end` are in seconds. By default they cover the last two weeks.
- `top` defaults to `-1`, which means no limit.
- `window` is a duration such as `1m` or `1h30m`. It defaults to `1m`.
- On `/v1/summary`, `group_by` is `table` or `db`. Either value is refused
  for `tidb` instances.

The parsing helpers are public:

- `parse_duration`
- `parse_start_end`
- `parse_all_params`

They raise `ParamError`.

### `topsql.controller`

`SubscriberController(store)` keeps the Top SQL switch
(`update_pd_variable`, `is_enabled`) and the latest list of `Component`s
(`update_topology`). While enabled, each topology update records every TiDB
instance (at its status port) and every TiKV instance (at its port) as alive,
through `store.instances`. `store_topology(now)` does the same on demand.

## Example

```python
from topsql.query import DefaultQuery
from topsql.service import Service

query = DefaultQuery(select_handler, doc_db, plan_decoder)
service = Service(query)
status, body = service.handle(
    "/v1/summary",
    {"instance": "127.0.0.1:10080", "instance_type": "tidb", "top": "5"},
)
```

You supply `select_handler`, `doc_db` and `plan_decoder`:

- `select_handler` takes a `TSDBRequest` and returns a `TSDBResponse`.
- `doc_db` follows the `DocDB` protocol.
- `plan_decoder` is optional. It turns an encoded plan string into
  readable text.

## What this package does not do

- It has no storage of its own. The time-series database, the document
  database and the plan decoder must be supplied by the caller.
- It does not listen on a network port. `Service.handle` must be wired into
  an HTTP server by the caller.
- It does not connect to cluster nodes to receive their reports. Records must
  be handed to `DefaultStore` by the caller.
- It has no command-line program.