import threading
from datetime import date, timedelta

import pytest

from cloudcost.metrics import Registry, exposition
from cloudcost.s3 import (
    BillingData,
    Pricing,
    S3Collector,
    S3Metrics,
    export_metrics,
    get_billing_data,
    get_component_from_key,
    get_region_from_key,
    parse_billing_data,
    unit_cost_for_component,
)

WITHOUT_NEXT_SCRAPE = [
    "cloudcost_aws_s3_storage_by_location_usd_per_gibyte_hour",
    "cloudcost_aws_s3_operation_by_location_usd_per_krequest",
    "cloudcost_exporter_aws_s3_cost_api_requests_total",
    "cloudcost_exporter_aws_s3_cost_api_requests_errors_total",
]
COUNTERS_ONLY = [
    "cloudcost_exporter_aws_s3_cost_api_requests_total",
    "cloudcost_exporter_aws_s3_cost_api_requests_errors_total",
]
OPERATIONS_AND_COUNTERS = [
    "cloudcost_aws_s3_operation_by_location_usd_per_krequest",
    *COUNTERS_ONLY,
]

OPS_HEADER = (
    "# HELP cloudcost_aws_s3_operation_by_location_usd_per_krequest Operation cost of S3 "
    "objects by region, class, and tier. Cost represented in USD/(1k req)\n"
    "# TYPE cloudcost_aws_s3_operation_by_location_usd_per_krequest gauge\n"
)
STORAGE_HEADER = (
    "# HELP cloudcost_aws_s3_storage_by_location_usd_per_gibyte_hour Storage cost of S3 "
    "objects by region, class, and tier. Cost represented in USD/(GiB*h)\n"
    "# TYPE cloudcost_aws_s3_storage_by_location_usd_per_gibyte_hour gauge\n"
)


def _counters(requests: int) -> str:
    return (
        "# HELP cloudcost_exporter_aws_s3_cost_api_requests_errors_total Total number of "
        "errors when making requests to the AWS Cost Explorer API\n"
        "# TYPE cloudcost_exporter_aws_s3_cost_api_requests_errors_total counter\n"
        "cloudcost_exporter_aws_s3_cost_api_requests_errors_total 0\n"
        "# HELP cloudcost_exporter_aws_s3_cost_api_requests_total Total number of requests "
        "made to the AWS Cost Explorer API\n"
        "# TYPE cloudcost_exporter_aws_s3_cost_api_requests_total counter\n"
        f"cloudcost_exporter_aws_s3_cost_api_requests_total {requests}\n"
    )


def _ops(region: str, tier: str, value: str) -> str:
    return (
        "cloudcost_aws_s3_operation_by_location_usd_per_krequest"
        f'{{class="StandardStorage",region="{region}",tier="{tier}"}} {value}\n'
    )


def _storage(region: str, value: str) -> str:
    return (
        "cloudcost_aws_s3_storage_by_location_usd_per_gibyte_hour"
        f'{{class="StandardStorage",region="{region}"}} {value}\n'
    )


def _group(key, metrics=None):
    group = {"Keys": [key] if key is not None else None}
    if metrics is not None:
        group["Metrics"] = metrics
    return group


def _output(*groups, token=None):
    out = {"ResultsByTime": [{"Groups": [g]} for g in groups]}
    if token is not None:
        out["NextPageToken"] = token
    return out


def _full(amount="1", unit="unit"):
    return {
        "UsageQuantity": {"Amount": amount, "Unit": unit},
        "UnblendedCost": {"Amount": amount, "Unit": unit},
    }


class FakeCostExplorer:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []
        self._lock = threading.Lock()

    def get_cost_and_usage(self, **kwargs):
        with self._lock:
            self.calls.append(kwargs)
            index = min(len(self.calls), len(self.responses)) - 1
            response = self.responses[index]
        if isinstance(response, Exception):
            raise response
        return response


class CountingRegistry:
    def __init__(self):
        self.registered = []

    def register(self, *args):
        self.registered.extend(args)


@pytest.mark.parametrize(
    "key, region, component",
    [
        ("USE2-Requests-Tier1", "us-east-2", "Requests-Tier1"),
        ("USW1-Requests-Tier2", "us-west-1", "Requests-Tier2"),
        ("APN3-TimedStorage", "ap-northeast-3", "TimedStorage"),
        ("EU-TimedStorage", "eu-west-1", "TimedStorage"),
        ("USE1-USW2-AWS-In-Bytes", "us-east-1", ""),
        ("Requests-Tier1", "", ""),
        ("Requests-Tier2", "", ""),
        ("TimedStorage", "", ""),
        ("XXX1-TimedStorage", "", "TimedStorage"),
        ("AWS GovCloud (US-East)-Requests-Tier1", "", "East)"),
    ],
)
def test_region_and_component_from_key(key, region, component):
    assert get_region_from_key(key) == region
    assert get_component_from_key(key) == component


@pytest.mark.parametrize(
    "keys, want",
    [
        ([""], 0),
        (["USE2-Requests-Tier1"], 1),
        (["USE2-Requests-Tier1", "USW1-Requests-Tier1"], 2),
        (
            [
                "USE2-Requests-Tier1",
                "USE2-Requests-Tier1",
                "USW1-Requests-Tier1",
                "USW1-Requests-Tier1",
            ],
            2,
        ),
    ],
)
def test_billing_data_add_region(keys, want):
    data = BillingData()
    for key in keys:
        data.add_metric_group(
            get_region_from_key(key), get_component_from_key(key), {"Metrics": {}}
        )
    assert len(data.regions) == want


def test_add_metric_group_accumulates_usage_and_cost():
    data = BillingData()
    group = {"Metrics": _full("2", "Requests")}
    data.add_metric_group("us-east-2", "Requests-Tier1", group)
    data.add_metric_group("us-east-2", "Requests-Tier1", group)
    pricing = data.regions["us-east-2"]["Requests-Tier1"]
    assert pricing.usage == 4.0
    assert pricing.cost == 4.0
    assert pricing.units == "Requests"
    assert pricing.unit_cost == 1000.0


@pytest.mark.parametrize(
    "usage, cost, want",
    [
        (1.0, 1.0, 1000),
        (1000.0, 1.0, 1),
        (1.0, 1000.0, 1e6),
        (1000.0, 1000.0, 1000),
    ],
)
def test_unit_cost_requests_tier1(usage, cost, want):
    assert unit_cost_for_component("Requests-Tier1", Pricing(usage=usage, cost=cost)) == want


def test_unit_cost_zero_usage_is_zero():
    assert unit_cost_for_component("TimedStorage", Pricing(usage=0, cost=5)) == 0


def test_unit_cost_timed_storage():
    assert unit_cost_for_component("TimedStorage", Pricing(usage=1, cost=1)) == pytest.approx(
        0.0013689253935660506
    )


def test_parse_billing_data_skips_groups_without_keys():
    data = parse_billing_data([_output(_group(None), _group("APN1-TimedStorage"))])
    assert list(data.regions) == ["ap-northeast-1"]
    assert list(data.regions["ap-northeast-1"]) == ["TimedStorage"]


def test_get_billing_data_builds_request_and_follows_pages():
    client = FakeCostExplorer(
        _output(_group("APN1-Requests-Tier1"), token="token"),
        _output(_group("APN2-Requests-Tier2")),
    )
    metrics = S3Metrics()
    data = get_billing_data(client, date(2024, 1, 1), date(2024, 1, 31), metrics)
    assert len(client.calls) == 2
    first = client.calls[0]
    assert first["TimePeriod"] == {"Start": "2024-01-01", "End": "2024-01-31"}
    assert first["Granularity"] == "DAILY"
    assert first["Metrics"] == ["UsageQuantity", "UnblendedCost"]
    assert first["GroupBy"] == [{"Type": "DIMENSION", "Key": "USAGE_TYPE"}]
    assert first["Filter"]["Dimensions"]["Values"] == ["Amazon Simple Storage Service"]
    assert "NextPageToken" not in first
    assert client.calls[1]["NextPageToken"] == "token"
    assert set(data.regions) == {"ap-northeast-1", "ap-northeast-2"}
    assert metrics.request_count.value == 2


def test_get_billing_data_error_counts_and_raises():
    client = FakeCostExplorer(RuntimeError("test cost and usage error"))
    metrics = S3Metrics()
    with pytest.raises(RuntimeError, match="test cost and usage error"):
        get_billing_data(client, date(2024, 1, 1), date(2024, 1, 31), metrics)
    assert metrics.request_errors_count.value == 1
    assert metrics.request_count.value == 1


def test_export_metrics_sets_gauges():
    data = BillingData(
        regions={
            "eu-west-1": {
                "Requests-Tier1": Pricing(unit_cost=3.0),
                "TimedStorage": Pricing(unit_cost=0.5),
                "Other": Pricing(unit_cost=9.0),
            }
        }
    )
    metrics = S3Metrics()
    export_metrics(data, metrics)
    assert metrics.operations_gauge.labels("eu-west-1", "StandardStorage", "1").value == 3.0
    assert metrics.storage_gauge.labels("eu-west-1", "StandardStorage").value == 0.5
    assert len(list(metrics.operations_gauge.collect())) == 1


def test_new_collector():
    collector = S3Collector(timedelta(hours=1), FakeCostExplorer(_output()))
    assert collector.interval == timedelta(hours=1)
    assert collector.billing_data is None


def test_collector_name():
    assert S3Collector(timedelta(hours=1), FakeCostExplorer()).name() == "S3"


def test_collector_register():
    registry = CountingRegistry()
    S3Collector(timedelta(hours=1), FakeCostExplorer()).register(registry)
    assert len(registry.registered) == 5


def test_collect_error_is_bubbled_up():
    client = FakeCostExplorer(RuntimeError("test cost and usage error"))
    collector = S3Collector(timedelta(hours=1), client)
    assert collector.collect_metrics() == 0.0
    with pytest.raises(RuntimeError, match="error collecting metrics"):
        collector.collect()


@pytest.mark.parametrize(
    "responses, names, expected",
    [
        pytest.param([_output()], COUNTERS_ONLY, _counters(1), id="no output"),
        pytest.param(
            [_output(_group(None))], COUNTERS_ONLY, _counters(1), id="result without keys"
        ),
        pytest.param(
            [_output(_group("non-existent-region"))],
            COUNTERS_ONLY,
            _counters(1),
            id="non-existent region",
        ),
        pytest.param(
            [{"ResultsByTime": [{"Groups": [{"Keys": ["Requests-Tier1", "Requests-Tier2"]}]}]}],
            COUNTERS_ONLY,
            _counters(1),
            id="special-case region",
        ),
        pytest.param(
            [_output(_group("AWS GovCloud (US-East)-Requests-Tier1"))],
            COUNTERS_ONLY,
            _counters(1),
            id="region with a hyphen",
        ),
        pytest.param(
            [
                _output(
                    _group("APN1-Requests-Tier1"),
                    _group("APN2-Requests-Tier2"),
                    _group("APN3-TimedStorage"),
                )
            ],
            WITHOUT_NEXT_SCRAPE,
            OPS_HEADER
            + _ops("ap-northeast-1", "1", "0")
            + _ops("ap-northeast-2", "2", "0")
            + STORAGE_HEADER
            + _storage("ap-northeast-3", "0")
            + _counters(1),
            id="three results",
        ),
        pytest.param(
            [
                _output(_group("APN1-Requests-Tier1"), token="token"),
                _output(_group("APN2-Requests-Tier2")),
            ],
            OPERATIONS_AND_COUNTERS,
            OPS_HEADER
            + _ops("ap-northeast-1", "1", "0")
            + _ops("ap-northeast-2", "2", "0")
            + _counters(2),
            id="two pages",
        ),
        pytest.param(
            [_output(_group("APN1-Requests-Tier1", {"UsageQuantity": {}, "UnblendedCost": {}}))],
            OPERATIONS_AND_COUNTERS,
            OPS_HEADER + _ops("ap-northeast-1", "1", "0") + _counters(1),
            id="nil amount",
        ),
        pytest.param(
            [
                _output(
                    _group(
                        "APN1-Requests-Tier1",
                        {"UsageQuantity": {"Amount": ""}, "UnblendedCost": {"Amount": ""}},
                    )
                )
            ],
            OPERATIONS_AND_COUNTERS,
            OPS_HEADER + _ops("ap-northeast-1", "1", "0") + _counters(1),
            id="invalid amount",
        ),
        pytest.param(
            [
                _output(
                    _group(
                        "APN1-Requests-Tier1",
                        {"UsageQuantity": {"Amount": "1"}, "UnblendedCost": {"Amount": "1"}},
                    )
                )
            ],
            OPERATIONS_AND_COUNTERS,
            OPS_HEADER + _ops("ap-northeast-1", "1", "1000") + _counters(1),
            id="nil unit",
        ),
        pytest.param(
            [
                _output(
                    _group("APN1-Requests-Tier1", _full()),
                    _group("APN1-Requests-Tier2", _full()),
                    _group("APN1-TimedStorage", _full()),
                    _group("APN1-unknown", _full()),
                )
            ],
            WITHOUT_NEXT_SCRAPE,
            OPS_HEADER
            + _ops("ap-northeast-1", "1", "1000")
            + _ops("ap-northeast-1", "2", "1000")
            + STORAGE_HEADER
            + _storage("ap-northeast-1", "0.0013689253935660506")
            + _counters(1),
            id="valid amount and unit",
        ),
    ],
)
def test_collector_collect_exposition(responses, names, expected):
    client = FakeCostExplorer(*responses)
    collector = S3Collector(timedelta(hours=1), client)
    assert collector.collect_metrics() == 1.0
    registry = Registry()
    collector.register(registry)
    assert exposition(registry, *names) == expected
    assert len(client.calls) == len(responses)


def test_collect_success_returns_no_samples():
    collector = S3Collector(timedelta(hours=1), FakeCostExplorer(_output()))
    assert collector.collect() == []
    assert collector.describe() == []


def test_multiple_calls_reuse_cached_data():
    client = FakeCostExplorer(_output())
    collector = S3Collector(timedelta(hours=1), client)
    assert collector.collect_metrics() == 1.0
    assert collector.collect_metrics() == 1.0
    assert len(client.calls) == 1
    assert collector.metrics.next_scrape_gauge.value == int(collector.next_scrape)


def test_multiple_calls_in_parallel():
    client = FakeCostExplorer(
        _output(
            _group("APN1-Requests-Tier1", _full()),
            _group("APN1-Requests-Tier2", _full()),
            _group("APN1-TimedStorage", _full()),
            _group("APN1-unknown", _full()),
        )
    )
    collector = S3Collector(timedelta(0), client)
    results = []
    results_lock = threading.Lock()

    def worker():
        for _ in range(50):
            up = collector.collect_metrics()
            with results_lock:
                results.append(up)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert results == [1.0] * 400
    assert 1 <= len(client.calls) <= 400
    gauge = collector.metrics.operations_gauge.labels("ap-northeast-1", "StandardStorage", "1")
    assert gauge.value == 1000.0