"""HTTP-facing handlers for Top SQL queries."""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Mapping
from fractions import Fraction
from typing import Any

from topsql.models import MetricName
from topsql.query import AggLevel

logger = logging.getLogger(__name__)

_WEEK_SECS = 7 * 24 * 60 * 60
_DEFAULT_TOP = "-1"
_DEFAULT_WINDOW = "1m"
_INT64_MIN = -(1 << 63)
_INT64_MAX = (1 << 63) - 1

_METRIC_NAMES = (
    MetricName.CPU_TIME,
    MetricName.READ_ROW,
    MetricName.READ_INDEX,
    MetricName.WRITE_ROW,
    MetricName.WRITE_INDEX,
    MetricName.SQL_EXEC_COUNT,
    MetricName.SQL_DURATION_SUM,
    MetricName.SQL_DURATION_COUNT,
)

_UNIT_NANOS = {
    "ns": 1,
    "us": 1_000,
    "\u00b5s": 1_000,
    "\u03bcs": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60 * 1_000_000_000,
    "h": 3600 * 1_000_000_000,
}
_DURATION_PART = re.compile(r"(\d*)(?:\.(\d*))?(ns|us|\u00b5s|\u03bcs|ms|s|m|h)")
_INT_PATTERN = re.compile(r"[+-]?\d+")

Response = tuple[int, dict[str, Any]]


class ParamError(ValueError):
    """Raised when a request parameter is missing or malformed."""


def parse_duration(raw: str) -> float:
    """Parse a duration such as "1m", "1h30m" or "250ms" into seconds."""
    text = raw
    sign = 1
    if text[:1] in ("+", "-"):
        if text[0] == "-":
            sign = -1
        text = text[1:]
    if text == "0":
        return 0.0
    if not text:
        raise ParamError(f"invalid duration {raw!r}")

    total = Fraction(0)
    pos = 0
    while pos < len(text):
        match = _DURATION_PART.match(text, pos)
        if match is None:
            raise ParamError(f"invalid duration {raw!r}")
        whole, frac, unit = match.group(1), match.group(2), match.group(3)
        if not whole and not frac:
            raise ParamError(f"invalid duration {raw!r}")
        value = Fraction(int(whole or "0"))
        if frac:
            value += Fraction(int(frac), 10 ** len(frac))
        total += value * _UNIT_NANOS[unit]
        pos = match.end()

    nanos = int(total) * sign
    if not _INT64_MIN <= nanos <= _INT64_MAX:
        raise ParamError(f"invalid duration {raw!r}")
    return nanos / 1e9


def _parse_float(raw: str, name: str) -> float:
    if not raw or any(ch.isspace() or ch == "_" for ch in raw):
        raise ParamError(f"invalid {name} {raw!r}")
    try:
        return float(raw)
    except ValueError as exc:
        raise ParamError(f"invalid {name} {raw!r}") from exc


def _to_int(value: float, name: str) -> int:
    try:
        return int(value)
    except (OverflowError, ValueError) as exc:
        raise ParamError(f"invalid {name} {value!r}") from exc


def parse_start_end(params: Mapping[str, str], now: int | None = None) -> tuple[int, int]:
    """Read the start and end seconds, defaulting to the last two weeks."""
    if now is None:
        now = int(time.time())
    default_start = str(now - 2 * _WEEK_SECS)
    default_end = str(now)

    start = _parse_float(params.get("start") or default_start, "start")
    end = _parse_float(params.get("end") or default_end, "end")
    return _to_int(start, "start"), _to_int(end, "end")


def parse_all_params(
    params: Mapping[str, str], now: int | None = None
) -> tuple[int, int, int, int, str, str, str]:
    """Read (start, end, window_secs, top, instance, instance_type, group_by)."""
    instance = params.get("instance", "")
    if not instance:
        raise ParamError("no instance")
    instance_type = params.get("instance_type", "")
    if not instance_type:
        raise ParamError("no instance_type")

    start, end = parse_start_end(params, now)

    raw_top = params.get("top") or _DEFAULT_TOP
    if not _INT_PATTERN.fullmatch(raw_top):
        raise ParamError(f"invalid top {raw_top!r}")
    top = int(raw_top)
    if not _INT64_MIN <= top <= _INT64_MAX:
        raise ParamError(f"invalid top {raw_top!r}")

    raw_window = params.get("window") or _DEFAULT_WINDOW
    window_secs = int(parse_duration(raw_window))

    group_by = params.get("group_by", "")
    return start, end, window_secs, top, instance, instance_type, group_by


def _error(status: int, message: str) -> Response:
    return status, {"status": "error", "message": message}


class Service:
    """Routes Top SQL requests to a query backend and shapes the replies."""

    def __init__(self, query: Any) -> None:
        self._query = query
        self._handlers = {"/v1/instances": self._instances}
        for name in _METRIC_NAMES:
            self._handlers[f"/v1/{name.value}"] = self._metric_handler(name)
        self._handlers["/v1/summary"] = self._summary

    def routes(self) -> list[str]:
        """Paths this service answers, in registration order."""
        return list(self._handlers)

    def handle(self, path: str, params: Mapping[str, str]) -> Response:
        """Answer one GET request; return the status code and the JSON body."""
        handler = self._handlers.get(path)
        if handler is None:
            return _error(404, "not found")
        return handler(params)

    def _instances(self, params: Mapping[str, str]) -> Response:
        try:
            start, end = parse_start_end(params)
        except ParamError as exc:
            return _error(400, str(exc))
        try:
            items = self._query.instances(start, end)
        except Exception as exc:
            return _error(503, str(exc))
        return 200, {"status": "ok", "data": [item.to_dict() for item in items]}

    def _metric_handler(self, name: MetricName):
        def handler(params: Mapping[str, str]) -> Response:
            return self._query_metric(params, name)

        return handler

    def _query_metric(self, params: Mapping[str, str], name: MetricName) -> Response:
        try:
            start, end, window, top, instance, instance_type, _ = parse_all_params(params)
        except ParamError as exc:
            return _error(400, str(exc))
        try:
            items = self._query.records(name, start, end, window, top, instance, instance_type)
        except Exception as exc:
            return _error(503, str(exc))
        return 200, {"status": "ok", "data": [item.to_dict() for item in items]}

    def _summary(self, params: Mapping[str, str]) -> Response:
        try:
            start, end, window, top, instance, instance_type, group_by = parse_all_params(params)
        except ParamError as exc:
            return _error(400, str(exc))

        if group_by in (AggLevel.TABLE.value, AggLevel.DB.value):
            level = AggLevel(group_by)
            if instance_type == "tidb":
                return _error(400, f"{level.value} summary is not supported for tidb")
            try:
                items = self._query.summary_by(start, end, window, top, instance, instance_type, level)
            except Exception as exc:
                return _error(503, str(exc))
            return 200, {"status": "ok", "data_by": [item.to_dict() for item in items]}

        try:
            items = self._query.summary(start, end, window, top, instance, instance_type)
        except Exception as exc:
            return _error(503, str(exc))
        return 200, {"status": "ok", "data": [item.to_dict() for item in items]}