import pytest

from topsql.models import (
    InstanceInfo,
    MetricName,
    RecordItem,
    RecordPlanItem,
    SummaryByItem,
    SummaryItem,
)
from topsql.query import AggLevel, QueryError
from topsql.service import (
    ParamError,
    Service,
    parse_all_params,
    parse_duration,
    parse_start_end,
)


class FakeQuery:
    def __init__(self, error=None):
        self.calls = []
        self.error = error
        self.record = RecordItem(
            sql_digest="abc",
            sql_text="select 1",
            plans=[RecordPlanItem(plan_digest="def", timestamp_sec=[1], cpu_time_ms=[2])],
        )
        self.summary_item = SummaryItem(sql_digest="abc", cpu_time_ms=2)
        self.by_item = SummaryByItem(text="t", timestamp_sec=[1], cpu_time_ms=[2], cpu_time_ms_sum=2)
        self.instance = InstanceInfo(instance="127.0.0.1:10080", instance_type="tidb")

    def _call(self, name, args, result):
        self.calls.append((name, args))
        if self.error is not None:
            raise self.error
        return result

    def records(self, *args):
        return self._call("records", args, [self.record])

    def summary(self, *args):
        return self._call("summary", args, [self.summary_item])

    def summary_by(self, *args):
        return self._call("summary_by", args, [self.by_item])

    def instances(self, *args):
        return self._call("instances", args, [self.instance])


BASE = {"instance": "127.0.0.1:10080", "instance_type": "tikv", "start": "100", "end": "200"}


def test_routes_cover_instances_metrics_and_summary():
    routes = Service(FakeQuery()).routes()
    assert routes[0] == "/v1/instances"
    assert routes[-1] == "/v1/summary"
    for name in MetricName:
        if name is not MetricName.INSTANCE:
            assert f"/v1/{name.value}" in routes
    assert "/v1/instance" not in routes


def test_parse_duration_relations():
    assert parse_duration("1h") == 60 * parse_duration("1m")
    assert parse_duration("1m30s") == parse_duration("90s")
    assert parse_duration("1500ms") == parse_duration("1.5s")
    assert parse_duration("-1m") == -parse_duration("1m")
    assert parse_duration("0") == 0


@pytest.mark.parametrize("raw", ["", "abc", "1", "1x", ".s", "-", "1m 2s"])
def test_parse_duration_rejects_invalid(raw):
    with pytest.raises(ParamError):
        parse_duration(raw)


def test_parse_start_end_defaults():
    start, end = parse_start_end({}, now=5_000_000)
    assert end == 5_000_000
    assert end - start == 1209600


def test_parse_start_end_empty_values_use_defaults():
    assert parse_start_end({"start": "", "end": ""}, now=77) == parse_start_end({}, now=77)


def test_parse_start_end_truncates_floats():
    assert parse_start_end({"start": "100.9", "end": "200.2"}, now=0) == (100, 200)


@pytest.mark.parametrize("params", [{"start": "abc"}, {"end": "1 2"}, {"start": "inf"}])
def test_parse_start_end_rejects_invalid(params):
    with pytest.raises(ParamError):
        parse_start_end(params, now=1000)


def test_parse_all_params_requires_instance():
    with pytest.raises(ParamError, match="^no instance$"):
        parse_all_params({"instance_type": "tidb"})
    with pytest.raises(ParamError, match="^no instance_type$"):
        parse_all_params({"instance": "127.0.0.1:10080"})


def test_parse_all_params_defaults():
    start, end, window, top, instance, instance_type, group_by = parse_all_params(BASE, now=0)
    assert (start, end) == (100, 200)
    assert window == int(parse_duration("1m"))
    assert top == -1
    assert (instance, instance_type) == (BASE["instance"], BASE["instance_type"])
    assert group_by == ""


def test_parse_all_params_explicit_values():
    params = {**BASE, "top": "5", "window": "10s", "group_by": "table"}
    _, _, window, top, _, _, group_by = parse_all_params(params, now=0)
    assert window == int(parse_duration("10s"))
    assert top == 5
    assert group_by == "table"


@pytest.mark.parametrize("extra", [{"top": "abc"}, {"top": "1.5"}, {"window": "ten"}])
def test_parse_all_params_rejects_invalid(extra):
    with pytest.raises(ParamError):
        parse_all_params({**BASE, **extra}, now=0)


def test_handle_metric_calls_records():
    query = FakeQuery()
    status, body = Service(query).handle("/v1/read_row", {**BASE, "top": "3", "window": "10s"})
    assert status == 200
    assert body == {"status": "ok", "data": [query.record.to_dict()]}
    assert query.calls == [
        ("records", (MetricName.READ_ROW, 100, 200, 10, 3, BASE["instance"], BASE["instance_type"]))
    ]


def test_handle_missing_instance_is_bad_request():
    query = FakeQuery()
    status, body = Service(query).handle("/v1/cpu_time", {"instance_type": "tidb"})
    assert status == 400
    assert body == {"status": "error", "message": "no instance"}
    assert query.calls == []


def test_handle_query_failure_is_unavailable():
    query = FakeQuery(error=QueryError("empty query handler"))
    status, body = Service(query).handle("/v1/cpu_time", BASE)
    assert status == 503
    assert body == {"status": "error", "message": "empty query handler"}


def test_summary_by_table_rejected_for_tidb():
    query = FakeQuery()
    params = {**BASE, "instance_type": "tidb", "group_by": "table"}
    status, body = Service(query).handle("/v1/summary", params)
    assert status == 400
    assert body["message"] == "table summary is not supported for tidb"
    assert query.calls == []


def test_summary_by_db_rejected_for_tidb():
    params = {**BASE, "instance_type": "tidb", "group_by": "db"}
    status, body = Service(FakeQuery()).handle("/v1/summary", params)
    assert status == 400
    assert body["message"] == "db summary is not supported for tidb"


@pytest.mark.parametrize("level", [AggLevel.TABLE, AggLevel.DB])
def test_summary_by_level(level):
    query = FakeQuery()
    status, body = Service(query).handle("/v1/summary", {**BASE, "group_by": level.value})
    assert status == 200
    assert body == {"status": "ok", "data_by": [query.by_item.to_dict()]}
    assert query.calls[0][0] == "summary_by"
    assert query.calls[0][1][-1] is level


def test_summary_default():
    query = FakeQuery()
    status, body = Service(query).handle("/v1/summary", {**BASE, "group_by": "query"})
    assert status == 200
    assert body == {"status": "ok", "data": [query.summary_item.to_dict()]}
    assert query.calls[0][0] == "summary"


def test_summary_failure():
    query = FakeQuery(error=RuntimeError("boom"))
    status, body = Service(query).handle("/v1/summary", BASE)
    assert status == 503
    assert body["message"] == "boom"


def test_instances():
    query = FakeQuery()
    status, body = Service(query).handle("/v1/instances", {"start": "10", "end": "20"})
    assert status == 200
    assert body == {"status": "ok", "data": [query.instance.to_dict()]}
    assert query.calls == [("instances", (10, 20))]


def test_instances_bad_start():
    status, body = Service(FakeQuery()).handle("/v1/instances", {"start": "x"})
    assert status == 400
    assert body["status"] == "error"


def test_unknown_path():
    status, body = Service(FakeQuery()).handle("/v1/nothing", BASE)
    assert status == 404
    assert body["status"] == "error"