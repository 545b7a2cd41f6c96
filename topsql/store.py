"""Writes Top SQL data into the time-series database and the document database."""

from __future__ import annotations

import json
import logging
import threading
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Protocol

from topsql.models import (
    InstanceItem,
    InstanceTags,
    Metric,
    MetricName,
    PlanMeta,
    RecordTags,
    ResourceUsageRecord,
    SQLMeta,
    TableDetail,
    TagLabel,
    TopSQLRecord,
)

logger = logging.getLogger(__name__)

_IMPORT_PATH = "/api/v1/import"
_GC_INTERVAL_SECS = 3600.0
_COMPONENT_TIKV = "tikv"


@dataclass
class TSDBRequest:
    """A request handed to the time-series database handler."""

    method: str
    path: str
    params: dict[str, str] = field(default_factory=dict)
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""


@dataclass
class TSDBResponse:
    """A response returned by the time-series database handler."""

    status: int = 200
    body: bytes = b""


TSDBHandler = Callable[[TSDBRequest], TSDBResponse]


class DocDB(Protocol):
    """Storage of SQL and plan texts."""

    def write_sql_meta(self, meta: SQLMeta) -> None: ...

    def write_plan_meta(self, meta: PlanMeta) -> None: ...

    def delete_sql_meta_before_ts(self, ts: int) -> None: ...

    def delete_plan_meta_before_ts(self, ts: int) -> None: ...

    def query_sql_meta(self, sql_digest: str) -> str: ...

    def query_plan_meta(self, plan_digest: str) -> tuple[str, str]: ...


def instances_to_metrics(items: Iterable[InstanceItem]) -> list[Metric]:
    """One liveness point per instance item."""
    return [
        Metric(
            metric=InstanceTags(MetricName.INSTANCE, item.instance, item.instance_type),
            timestamps_ms=[item.timestamp_sec * 1000],
            values=[1],
        )
        for item in items
    ]


def topsql_record_to_metrics(instance: str, instance_type: str, record: TopSQLRecord) -> list[Metric]:
    """Split a TiDB Top SQL record into its time series."""
    sql_digest = record.sql_digest.hex()
    plan_digest = record.plan_digest.hex()

    def new_metric(name: MetricName, inst: str = instance, inst_type: str = instance_type) -> Metric:
        return Metric(RecordTags(name, inst, inst_type, sql_digest, plan_digest))

    cpu = new_metric(MetricName.CPU_TIME)
    exec_count = new_metric(MetricName.SQL_EXEC_COUNT)
    duration_sum = new_metric(MetricName.SQL_DURATION_SUM)
    duration_count = new_metric(MetricName.SQL_DURATION_COUNT)
    kv_exec_count: dict[str, Metric] = {}

    for item in record.items:
        ts_ms = item.timestamp_sec * 1000
        for metric, value in (
            (cpu, item.cpu_time_ms),
            (exec_count, item.stmt_exec_count),
            (duration_sum, item.stmt_duration_sum_ns),
            (duration_count, item.stmt_duration_count),
        ):
            metric.timestamps_ms.append(ts_ms)
            metric.values.append(value)

        for target, count in item.stmt_kv_exec_count.items():
            metric = kv_exec_count.get(target)
            if metric is None:
                metric = new_metric(MetricName.SQL_EXEC_COUNT, target, _COMPONENT_TIKV)
                kv_exec_count[target] = metric
            metric.timestamps_ms.append(ts_ms)
            metric.values.append(count)

    return [cpu, exec_count, duration_sum, duration_count, *kv_exec_count.values()]


def _append_row_index(ts_ms: int, value: int, row: Metric, index: Metric, label: TagLabel | None) -> None:
    rows = value if label == TagLabel.ROW else 0
    indexes = value if label == TagLabel.INDEX else 0
    row.timestamps_ms.append(ts_ms)
    row.values.append(rows)
    index.timestamps_ms.append(ts_ms)
    index.values.append(indexes)


def resource_metering_to_metrics(
    instance: str,
    instance_type: str,
    record: ResourceUsageRecord,
    schema_info: Mapping[int, TableDetail] | None,
) -> list[Metric]:
    """Split a TiKV resource usage record into its time series."""
    tag = record.tag
    sql_digest = tag.sql_digest.hex()
    plan_digest = tag.plan_digest.hex()
    schema_name = "unknown"
    table_name = str(tag.table_id)
    if schema_info is not None:
        detail = schema_info.get(tag.table_id)
        if isinstance(detail, TableDetail):
            schema_name = detail.db
            table_name = f"{table_name}-{detail.name}"

    def new_metric(name: MetricName) -> Metric:
        return Metric(
            RecordTags(name, instance, instance_type, sql_digest, plan_digest, schema_name, table_name)
        )

    cpu = new_metric(MetricName.CPU_TIME)
    read_row = new_metric(MetricName.READ_ROW)
    read_index = new_metric(MetricName.READ_INDEX)
    write_row = new_metric(MetricName.WRITE_ROW)
    write_index = new_metric(MetricName.WRITE_INDEX)

    for item in record.items:
        ts_ms = item.timestamp_sec * 1000
        cpu.timestamps_ms.append(ts_ms)
        cpu.values.append(item.cpu_time_ms)
        _append_row_index(ts_ms, item.read_keys, read_row, read_index, tag.label)
        _append_row_index(ts_ms, item.write_keys, write_row, write_index, tag.label)

    return [cpu, read_row, read_index, write_row, write_index]


def encode_metrics(metrics: Iterable[Metric]) -> bytes:
    """Encode metrics as newline-delimited JSON for the import endpoint."""
    return b"".join(
        (json.dumps(m.to_dict(), separators=(",", ":"), ensure_ascii=False) + "\n").encode("utf-8")
        for m in metrics
    )


class DefaultStore:
    """Stores Top SQL records as time series and metas as documents."""

    def __init__(self, insert_handler: TSDBHandler, doc_db: DocDB, meta_retention_secs: int) -> None:
        self._insert_handler = insert_handler
        self._doc_db = doc_db
        self._meta_retention_secs = meta_retention_secs
        self._closed = threading.Event()
        self._gc_thread: threading.Thread | None = None
        if meta_retention_secs > 0:
            self._gc_thread = threading.Thread(target=self._gc_loop, name="topsql-meta-gc", daemon=True)
            self._gc_thread.start()

    def instances(self, items: Iterable[InstanceItem]) -> None:
        self._write_timeseries(instances_to_metrics(items))

    def topsql_record(self, instance: str, instance_type: str, record: TopSQLRecord) -> None:
        self._write_timeseries(topsql_record_to_metrics(instance, instance_type, record))

    def resource_metering_record(
        self,
        instance: str,
        instance_type: str,
        record: ResourceUsageRecord,
        schema_info: Mapping[int, TableDetail] | None,
    ) -> None:
        self._write_timeseries(resource_metering_to_metrics(instance, instance_type, record, schema_info))

    def sql_meta(self, meta: SQLMeta) -> None:
        self._doc_db.write_sql_meta(meta)

    def plan_meta(self, meta: PlanMeta) -> None:
        self._doc_db.write_plan_meta(meta)

    def collect_garbage(self, now: int | None = None) -> int:
        """Delete metas older than the retention period; return the safe point."""
        if now is None:
            now = int(time.time())
        safe_point = now - self._meta_retention_secs
        try:
            self._doc_db.delete_sql_meta_before_ts(safe_point)
        except Exception:
            logger.warning("failed to delete sql meta before ts %d", safe_point, exc_info=True)
        try:
            self._doc_db.delete_plan_meta_before_ts(safe_point)
        except Exception:
            logger.warning("failed to delete plan meta before ts %d", safe_point, exc_info=True)
        return safe_point

    def close(self) -> None:
        self._closed.set()
        if self._gc_thread is not None:
            self._gc_thread.join()
            self._gc_thread = None

    def _gc_loop(self) -> None:
        while not self._closed.wait(_GC_INTERVAL_SECS):
            self.collect_garbage()

    def _write_timeseries(self, metrics: list[Metric]) -> None:
        if not metrics:
            return
        request = TSDBRequest(method="POST", path=_IMPORT_PATH, body=encode_metrics(metrics))
        response = self._insert_handler(request)
        if not 200 <= response.status < 300:
            logger.warning(
                "failed to write timeseries db: %s", response.body.decode("utf-8", errors="replace")
            )