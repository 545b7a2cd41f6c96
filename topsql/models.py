"""Data types shared by the Top SQL store, query and service layers."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Union


class MetricName(str, Enum):
    """Names of the time series written to the time-series database."""

    INSTANCE = "instance"
    CPU_TIME = "cpu_time"
    READ_ROW = "read_row"
    READ_INDEX = "read_index"
    WRITE_ROW = "write_row"
    WRITE_INDEX = "write_index"
    SQL_EXEC_COUNT = "sql_exec_count"
    SQL_DURATION_SUM = "sql_duration_sum"
    SQL_DURATION_COUNT = "sql_duration_count"

    def __str__(self) -> str:
        return self.value


class TagLabel(IntEnum):
    """Kind of key a TiKV request handled, as carried by a resource group tag."""

    UNKNOWN = 0
    ROW = 1
    INDEX = 2


@dataclass
class RecordTags:
    """Labels of a per-SQL time series."""

    name: Union[MetricName, str]
    instance: str
    instance_type: str
    sql_digest: str
    plan_digest: str
    db: str = ""
    table: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "__name__": str(self.name),
            "instance": self.instance,
            "instance_type": self.instance_type,
            "sql_digest": self.sql_digest,
            "plan_digest": self.plan_digest,
            "db": self.db,
            "table": self.table,
        }


@dataclass
class InstanceTags:
    """Labels of an instance liveness time series."""

    name: Union[MetricName, str]
    instance: str
    instance_type: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "__name__": str(self.name),
            "instance": self.instance,
            "instance_type": self.instance_type,
        }


@dataclass
class Metric:
    """One time series in the import format of the time-series database."""

    metric: Union[RecordTags, InstanceTags]
    timestamps_ms: list[int] = field(default_factory=list)
    values: list[int] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "metric": self.metric.to_dict(),
            "timestamps": list(self.timestamps_ms) or None,
            "values": list(self.values) or None,
        }


@dataclass
class InstanceItem:
    """An instance seen alive at a given second."""

    instance: str
    instance_type: str
    timestamp_sec: int


@dataclass
class TopSQLRecordItem:
    """One second of Top SQL data reported by a TiDB instance."""

    timestamp_sec: int
    cpu_time_ms: int = 0
    stmt_exec_count: int = 0
    stmt_duration_sum_ns: int = 0
    stmt_duration_count: int = 0
    stmt_kv_exec_count: dict[str, int] = field(default_factory=dict)


@dataclass
class TopSQLRecord:
    """Top SQL data of one (SQL, plan) pair reported by a TiDB instance."""

    sql_digest: bytes = b""
    plan_digest: bytes = b""
    items: list[TopSQLRecordItem] = field(default_factory=list)


@dataclass
class ResourceGroupTag:
    """Identifies the SQL, plan and table a TiKV resource usage belongs to."""

    sql_digest: bytes = b""
    plan_digest: bytes = b""
    label: TagLabel | None = None
    table_id: int = 0


@dataclass
class GroupTagRecordItem:
    """One second of resource usage reported by a TiKV instance."""

    timestamp_sec: int
    cpu_time_ms: int = 0
    read_keys: int = 0
    write_keys: int = 0


@dataclass
class ResourceUsageRecord:
    """Resource usage of one resource group tag reported by a TiKV instance."""

    tag: ResourceGroupTag = field(default_factory=ResourceGroupTag)
    items: list[GroupTagRecordItem] = field(default_factory=list)


@dataclass
class SQLMeta:
    """Normalized text of a SQL digest."""

    sql_digest: bytes
    normalized_sql: str
    is_internal_sql: bool = False


@dataclass
class PlanMeta:
    """Normalized or encoded text of a plan digest."""

    plan_digest: bytes
    normalized_plan: str = ""
    encoded_normalized_plan: str = ""


@dataclass
class TableDetail:
    """Name and schema of a table, keyed elsewhere by table id."""

    name: str
    db: str
    id: int = 0


@dataclass(frozen=True)
class RecordKey:
    """Key of a (SQL digest, plan digest) pair."""

    sql_digest: str
    plan_digest: str


@dataclass
class RecordPlanItem:
    """Series of one plan of a SQL in a records query result."""

    plan_digest: str = ""
    plan_text: str = ""
    timestamp_sec: list[int] = field(default_factory=list)
    cpu_time_ms: list[int] = field(default_factory=list)
    read_rows: list[int] = field(default_factory=list)
    read_indexes: list[int] = field(default_factory=list)
    write_rows: list[int] = field(default_factory=list)
    write_indexes: list[int] = field(default_factory=list)
    sql_exec_count: list[int] = field(default_factory=list)
    sql_duration_sum: list[int] = field(default_factory=list)
    sql_duration_count: list[int] = field(default_factory=list)

    _OPTIONAL = (
        "cpu_time_ms",
        "read_rows",
        "read_indexes",
        "write_rows",
        "write_indexes",
        "sql_exec_count",
        "sql_duration_sum",
        "sql_duration_count",
    )

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "plan_digest": self.plan_digest,
            "plan_text": self.plan_text,
            "timestamp_sec": list(self.timestamp_sec),
        }
        for name in self._OPTIONAL:
            values = getattr(self, name)
            if values:
                result[name] = list(values)
        return result


@dataclass
class RecordItem:
    """One SQL in a records query result."""

    sql_digest: str = ""
    sql_text: str = ""
    is_other: bool = False
    plans: list[RecordPlanItem] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "sql_digest": self.sql_digest,
            "sql_text": self.sql_text,
            "is_other": self.is_other,
            "plans": [plan.to_dict() for plan in self.plans],
        }


@dataclass
class SummaryByItem:
    """One table or database in a summary aggregated by that level."""

    text: str = ""
    timestamp_sec: list[int] = field(default_factory=list)
    cpu_time_ms: list[int] = field(default_factory=list)
    cpu_time_ms_sum: int = 0
    is_other: bool = False

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "text": self.text,
            "timestamp_sec": list(self.timestamp_sec),
        }
        if self.cpu_time_ms:
            result["cpu_time_ms"] = list(self.cpu_time_ms)
        result["cpu_time_ms_sum"] = self.cpu_time_ms_sum
        result["is_other"] = self.is_other
        return result


@dataclass
class SummaryPlanItem:
    """One plan of a SQL in a summary result."""

    plan_digest: str = ""
    plan_text: str = ""
    timestamp_sec: list[int] = field(default_factory=list)
    cpu_time_ms: list[int] = field(default_factory=list)
    exec_count_per_sec: float = 0.0
    duration_per_exec_ms: float = 0.0
    scan_records_per_sec: float = 0.0
    scan_indexes_per_sec: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "plan_digest": self.plan_digest,
            "plan_text": self.plan_text,
            "timestamp_sec": list(self.timestamp_sec),
        }
        if self.cpu_time_ms:
            result["cpu_time_ms"] = list(self.cpu_time_ms)
        result["exec_count_per_sec"] = self.exec_count_per_sec
        result["duration_per_exec_ms"] = self.duration_per_exec_ms
        result["scan_records_per_sec"] = self.scan_records_per_sec
        result["scan_indexes_per_sec"] = self.scan_indexes_per_sec
        return result


@dataclass
class SummaryItem:
    """One SQL in a summary result."""

    sql_digest: str = ""
    sql_text: str = ""
    is_other: bool = False
    cpu_time_ms: int = 0
    exec_count_per_sec: float = 0.0
    duration_per_exec_ms: float = 0.0
    scan_records_per_sec: float = 0.0
    scan_indexes_per_sec: float = 0.0
    plans: list[SummaryPlanItem] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "sql_digest": self.sql_digest,
            "sql_text": self.sql_text,
            "is_other": self.is_other,
            "cpu_time_ms": self.cpu_time_ms,
            "exec_count_per_sec": self.exec_count_per_sec,
            "duration_per_exec_ms": self.duration_per_exec_ms,
            "scan_records_per_sec": self.scan_records_per_sec,
            "scan_indexes_per_sec": self.scan_indexes_per_sec,
            "plans": [plan.to_dict() for plan in self.plans],
        }


@dataclass
class InstanceInfo:
    """An instance returned by an instances query."""

    instance: str
    instance_type: str

    def to_dict(self) -> dict[str, Any]:
        return {"instance": self.instance, "instance_type": self.instance_type}