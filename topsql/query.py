"""Reads Top SQL data back from the time-series database and the document database."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable, Iterator, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

from topsql.models import (
    InstanceInfo,
    MetricName,
    RecordItem,
    RecordKey,
    RecordPlanItem,
    SummaryByItem,
    SummaryItem,
    SummaryPlanItem,
)
from topsql.store import DocDB, TSDBHandler, TSDBRequest

logger = logging.getLogger(__name__)

_QUERY_RANGE_PATH = "/api/v1/query_range"
_QUERY_PATH = "/api/v1/query"
_UINT64_LIMIT = 1 << 64

PlanDecoder = Callable[[str], str]

_SERIES_FIELDS = {
    MetricName.CPU_TIME.value: "cpu_time_ms",
    MetricName.READ_ROW.value: "read_rows",
    MetricName.READ_INDEX.value: "read_indexes",
    MetricName.WRITE_ROW.value: "write_rows",
    MetricName.WRITE_INDEX.value: "write_indexes",
    MetricName.SQL_EXEC_COUNT.value: "sql_exec_count",
    MetricName.SQL_DURATION_SUM.value: "sql_duration_sum",
    MetricName.SQL_DURATION_COUNT.value: "sql_duration_count",
}

_SUM_METRICS = (
    MetricName.SQL_DURATION_SUM,
    MetricName.SQL_DURATION_COUNT,
    MetricName.SQL_EXEC_COUNT,
    MetricName.READ_ROW,
    MetricName.READ_INDEX,
)


class QueryError(Exception):
    """Raised when the time-series database cannot answer a query."""


class AggLevel(str, Enum):
    """Level at which CPU time is aggregated in a summary."""

    QUERY = "query"
    TABLE = "table"
    DB = "db"

    def __str__(self) -> str:
        return self.value


@dataclass
class PlanSeries:
    """Timestamps and values of one plan."""

    plan_digest: str = ""
    timestamp_secs: list[int] = field(default_factory=list)
    values: list[int] = field(default_factory=list)


@dataclass
class SQLGroup:
    """All plan series of one SQL digest and the sum of their values."""

    sql_digest: str = ""
    plan_series: list[PlanSeries] = field(default_factory=list)
    value_sum: int = 0


def _parse_uint(raw: Any) -> int | None:
    if not isinstance(raw, str) or not raw.isascii() or not raw.isdigit():
        return None
    value = int(raw)
    return value if value < _UINT64_LIMIT else None


def _parse_points(values: Iterable[Sequence[Any]] | None) -> Iterator[tuple[int, int]]:
    for value in values or ():
        if len(value) != 2:
            continue
        ts, raw = value
        if isinstance(ts, bool) or not isinstance(ts, (int, float)):
            continue
        parsed = _parse_uint(raw)
        if parsed is None:
            continue
        yield int(ts), parsed


def group_by_sql_digest(results: Iterable[dict[str, Any]]) -> tuple[list[SQLGroup], SQLGroup]:
    """Group series by SQL digest; the group with an empty digest is returned apart."""
    groups: dict[str, SQLGroup] = {}
    for result in results:
        metric = result.get("metric") or {}
        sql_digest = metric.get("sql_digest", "")
        plan_digest = metric.get("plan_digest", "")
        group = groups.setdefault(sql_digest, SQLGroup(sql_digest=sql_digest))

        series = next((s for s in group.plan_series if s.plan_digest == plan_digest), None)
        if series is None:
            series = PlanSeries(plan_digest=plan_digest)
            group.plan_series.append(series)

        for ts, value in _parse_points(result.get("values")):
            group.value_sum += value
            series.timestamp_secs.append(ts)
            series.values.append(value)

    others = groups.pop("", SQLGroup())
    return list(groups.values()), others


def keep_top_k(groups: Sequence[SQLGroup], top: int) -> tuple[list[SQLGroup], list[SQLGroup]]:
    """Split groups into the top ones by value sum and the rest."""
    if top <= 0 or len(groups) <= top:
        return list(groups), []
    ranked = sorted(groups, key=lambda g: (g.value_sum, g.sql_digest), reverse=True)
    return ranked[:top], ranked[top:]


def merge_others(original_others: SQLGroup, query_others: Sequence[SQLGroup]) -> SQLGroup:
    """Fold evicted groups into a single series summed by timestamp."""
    if not query_others:
        return original_others

    totals: dict[int, int] = {}
    sources = [original_others, *query_others]
    for group in sources:
        for series in group.plan_series:
            for ts, value in zip(series.timestamp_secs, series.values):
                totals[ts] = totals.get(ts, 0) + value

    ordered = sorted(totals)
    merged = PlanSeries(
        plan_digest="",
        timestamp_secs=ordered,
        values=[totals[ts] for ts in ordered],
    )
    return SQLGroup(sql_digest="", plan_series=[merged])


def top_k(results: Iterable[dict[str, Any]], top: int) -> list[SQLGroup]:
    """Keep the top SQL groups and append an 'others' group if there is any."""
    groups, original_others = group_by_sql_digest(results)
    kept, query_others = keep_top_k(groups, top)
    others = merge_others(original_others, query_others)
    if others.plan_series:
        kept.append(others)
    return kept


def _set_rates(
    target: Union[SummaryItem, SummaryPlanItem],
    duration_ns: float,
    duration_count: float,
    exec_count: float,
    read_rows: float,
    read_indexes: float,
    range_secs: float,
) -> None:
    target.duration_per_exec_ms = 0.0 if duration_count == 0.0 else duration_ns / 1_000_000.0 / duration_count
    target.exec_count_per_sec = exec_count / range_secs
    target.scan_records_per_sec = read_rows / range_secs
    target.scan_indexes_per_sec = read_indexes / range_secs


def _align_start(start_secs: int, end_secs: int, window_secs: int) -> int:
    if window_secs <= 0:
        raise QueryError("window must be positive")
    return end_secs - (end_secs - start_secs) // window_secs * window_secs


class DefaultQuery:
    """Answers Top SQL queries from the time-series and document databases."""

    def __init__(
        self,
        select_handler: TSDBHandler | None,
        doc_db: DocDB,
        plan_decoder: PlanDecoder | None = None,
    ) -> None:
        self._select_handler = select_handler
        self._doc_db = doc_db
        self._plan_decoder = plan_decoder

    def records(
        self,
        name: Union[MetricName, str],
        start_secs: int,
        end_secs: int,
        window_secs: int,
        top: int,
        instance: str,
        instance_type: str,
    ) -> list[RecordItem]:
        if start_secs > end_secs:
            return []
        start_secs = _align_start(start_secs, end_secs, window_secs)
        return self._top_records(str(name), start_secs, end_secs, window_secs, top, instance, instance_type)

    def summary_by(
        self,
        start_secs: int,
        end_secs: int,
        window_secs: int,
        top: int,
        instance: str,
        instance_type: str,
        agg_by: Union[AggLevel, str],
    ) -> list[SummaryByItem]:
        if start_secs > end_secs:
            return []
        aligned = _align_start(start_secs, end_secs, window_secs)
        by = str(agg_by)
        query = (
            f'topk_avg({top}, sum(sum_over_time({MetricName.CPU_TIME}{{instance="{instance}", '
            f'instance_type="{instance_type}"}}[{window_secs}])) by ({by}), "{by}=other")'
        )
        results = self._fetch_range(query, aligned, end_secs, window_secs)

        items = []
        for result in results:
            text = (result.get("metric") or {}).get(by, "")
            item = SummaryByItem(text=text, is_other=text == "other")
            for ts, value in _parse_points(result.get("values")):
                item.cpu_time_ms_sum += value
                item.timestamp_sec.append(ts)
                item.cpu_time_ms.append(value)
            items.append(item)
        return items

    def summary(
        self,
        start_secs: int,
        end_secs: int,
        window_secs: int,
        top: int,
        instance: str,
        instance_type: str,
    ) -> list[SummaryItem]:
        if start_secs > end_secs:
            return []
        aligned = _align_start(start_secs, end_secs, window_secs)
        records = self._top_records(
            MetricName.CPU_TIME.value, aligned, end_secs, window_secs, top, instance, instance_type
        )
        if not records:
            return []

        items = [
            SummaryItem(
                sql_digest=record.sql_digest,
                sql_text=record.sql_text,
                is_other=record.is_other,
                cpu_time_ms=sum(sum(p.cpu_time_ms) for p in record.plans),
                plans=[
                    SummaryPlanItem(
                        plan_digest=p.plan_digest,
                        plan_text=p.plan_text,
                        timestamp_sec=p.timestamp_sec,
                        cpu_time_ms=p.cpu_time_ms,
                    )
                    for p in record.plans
                ],
            )
            for record in records
        ]

        range_secs = float(end_secs - start_secs + 1)
        sums = [
            self._fetch_sum(name, start_secs, end_secs, instance, instance_type) for name in _SUM_METRICS
        ]

        others_item: SummaryItem | None = None
        for item in items:
            if item.is_other:
                if not item.plans:
                    item.plans.append(SummaryPlanItem())
                others_item = item
                continue

            overall = [0.0] * len(sums)
            for plan in item.plans:
                key = RecordKey(item.sql_digest, plan.plan_digest)
                values = [m.pop(key, 0.0) for m in sums]
                _set_rates(plan, *values, range_secs)
                overall = [a + b for a, b in zip(overall, values)]
            _set_rates(item, *overall, range_secs)

        if others_item is not None:
            remaining = [sum(m.values(), 0.0) for m in sums]
            _set_rates(others_item, *remaining, range_secs)
            _set_rates(others_item.plans[0], *remaining, range_secs)

        return items

    def instances(self, start_secs: int, end_secs: int) -> list[InstanceInfo]:
        if start_secs > end_secs:
            return []
        # Lookbehind window covering every point in [start, end].
        params = {
            "query": f"last_over_time(instance[{end_secs - start_secs + 1}s])",
            "time": str(end_secs),
        }
        data = self._fetch(_QUERY_PATH, params)
        return [
            InstanceInfo(
                instance=(r.get("metric") or {}).get("instance", ""),
                instance_type=(r.get("metric") or {}).get("instance_type", ""),
            )
            for r in data
        ]

    def close(self) -> None:
        """Release resources; nothing is held."""

    def _top_records(
        self,
        name: str,
        start_secs: int,
        end_secs: int,
        window_secs: int,
        top: int,
        instance: str,
        instance_type: str,
    ) -> list[RecordItem]:
        query = (
            f'sum_over_time({name}{{instance="{instance}", instance_type="{instance_type}"}}'
            f"[{window_secs}])"
        )
        results = self._fetch_range(query, start_secs, end_secs, window_secs)
        if not results:
            return []
        return [self._fill_text(name, group) for group in top_k(results, top)]

    def _fill_text(self, name: str, group: SQLGroup) -> RecordItem:
        sql_text = self._doc_db.query_sql_meta(group.sql_digest) if group.sql_digest else ""
        item = RecordItem(sql_digest=group.sql_digest, sql_text=sql_text, is_other=not group.sql_digest)
        series_field = _SERIES_FIELDS.get(name)

        for series in group.plan_series:
            plan_text, encoded_plan = ("", "")
            if series.plan_digest:
                plan_text, encoded_plan = self._doc_db.query_plan_meta(series.plan_digest)

            plan_item = RecordPlanItem(plan_digest=series.plan_digest, timestamp_sec=series.timestamp_secs)
            if plan_text:
                plan_item.plan_text = plan_text
            elif encoded_plan and self._plan_decoder is not None:
                try:
                    plan_item.plan_text = self._plan_decoder(encoded_plan)
                except Exception:
                    logger.warning("failed to decode plan %r", encoded_plan, exc_info=True)

            if series_field is not None:
                setattr(plan_item, series_field, series.values)
            item.plans.append(plan_item)
        return item

    def _fetch_range(self, query: str, start_secs: int, end_secs: int, step_secs: int) -> list[dict[str, Any]]:
        params = {
            "query": query,
            "start": str(start_secs),
            "end": str(end_secs),
            "step": str(step_secs),
        }
        return self._fetch(_QUERY_RANGE_PATH, params)

    def _fetch_sum(
        self, name: MetricName, start_secs: int, end_secs: int, instance: str, instance_type: str
    ) -> dict[RecordKey, float]:
        # Lookbehind window summing every point in [start, end].
        params = {
            "query": (
                f'sum_over_time({name}{{instance="{instance}", instance_type="{instance_type}"}}'
                f"[{end_secs - start_secs + 1}s])"
            ),
            "time": str(end_secs),
        }
        sums: dict[RecordKey, float] = {}
        for result in self._fetch(_QUERY_PATH, params):
            value = result.get("value") or []
            if len(value) < 2 or not isinstance(value[1], str):
                continue
            try:
                total = float(value[1])
            except ValueError:
                continue
            metric = result.get("metric") or {}
            sums[RecordKey(metric.get("sql_digest", ""), metric.get("plan_digest", ""))] = total
        return sums

    def _fetch(self, path: str, params: dict[str, str]) -> list[dict[str, Any]]:
        if self._select_handler is None:
            raise QueryError("empty query handler")
        request = TSDBRequest(
            method="GET",
            path=path,
            params={**params, "nocache": "1"},
            headers={"Accept": "application/json"},
        )
        response = self._select_handler(request)
        if not 200 <= response.status < 300:
            message = response.body.decode("utf-8", errors="replace")
            logger.warning("failed to fetch timeseries db: %s", message)
            raise QueryError(message)
        try:
            payload = json.loads(response.body)
        except ValueError as exc:
            raise QueryError(f"invalid response: {exc}") from exc
        data = payload.get("data") if isinstance(payload, dict) else None
        return (data or {}).get("result") or []