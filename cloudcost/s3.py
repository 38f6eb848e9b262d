"""Collector of S3 storage and operation unit costs from Cost Explorer billing data."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Iterable, Mapping

from cloudcost.metrics import (
    EXPORTER_NAME,
    METRIC_PREFIX,
    Counter,
    Desc,
    Gauge,
    GaugeVec,
    Sample,
    build_fq_name,
)
from cloudcost.services import CostExplorerClient

# Must match the label other exporters use so the data can be joined in queries.
STANDARD_LABEL = "StandardStorage"
SUBSYSTEM = "aws_s3"

# Average hours in a month: 365.25 * 24 / 12.
HOURS_IN_MONTH = 730.5

_REQUEST_COMPONENTS = ("Requests-Tier1", "Requests-Tier2")

# Maps AWS billing region codes to AWS regions.
BILLING_TO_REGION: dict[str, str] = {
    "APE1": "ap-east-1",  # Hong Kong
    "APN1": "ap-northeast-1",  # Tokyo
    "APN2": "ap-northeast-2",  # Seoul
    "APN3": "ap-northeast-3",  # Osaka
    "APS1": "ap-southeast-1",  # Singapore
    "APS2": "ap-southeast-2",  # Sydney
    "APS3": "ap-south-1",  # Mumbai
    "APS4": "ap-southeast-3",  # Jakarta
    "APS5": "ap-south-2",  # Hyderabad
    "APS6": "ap-southeast-4",  # Melbourne
    "CAN1": "ca-central-1",  # Canada
    "CNN1": "cn-north-1",  # Beijing
    "CNW1": "cn-northwest-1",  # Ningxia
    "CPT1": "af-south-1",  # Cape Town
    "EUC1": "eu-central-1",  # Frankfurt
    "EUC2": "eu-central-2",  # Zurich
    "EU": "eu-west-1",  # Ireland
    "EUW2": "eu-west-2",  # London
    "EUW3": "eu-west-3",  # Paris
    "EUN1": "eu-north-1",  # Stockholm
    "EUS1": "eu-south-1",  # Milan
    "EUS2": "eu-south-2",  # Spain
    "MEC1": "me-central-1",  # UAE
    "MES1": "me-south-1",  # Bahrain
    "SAE1": "sa-east-1",  # Sao Paulo
    "US": "us-east-1",  # N. Virginia, may appear without a suffix
    "USE1": "us-east-1",  # N. Virginia
    "USE2": "us-east-2",  # Ohio
    "USW1": "us-west-1",  # N. California
    "USW2": "us-west-2",  # Oregon
    "AWS GovCloud (US-East)": "us-gov-east-1",
    "AWS GovCloud (US)": "us-gov-west-1",
}

_log = logging.getLogger(__name__)


def _storage_gauge() -> GaugeVec:
    return GaugeVec(
        build_fq_name(METRIC_PREFIX, SUBSYSTEM, "storage_by_location_usd_per_gibyte_hour"),
        "Storage cost of S3 objects by region, class, and tier. Cost represented in USD/(GiB*h)",
        ("region", "class"),
    )


def _operations_gauge() -> GaugeVec:
    return GaugeVec(
        build_fq_name(METRIC_PREFIX, SUBSYSTEM, "operation_by_location_usd_per_krequest"),
        "Operation cost of S3 objects by region, class, and tier. Cost represented in USD/(1k req)",
        ("region", "class", "tier"),
    )


def _request_count() -> Counter:
    return Counter(
        build_fq_name(EXPORTER_NAME, SUBSYSTEM, "cost_api_requests_total"),
        "Total number of requests made to the AWS Cost Explorer API",
    )


def _request_errors_count() -> Counter:
    return Counter(
        build_fq_name(EXPORTER_NAME, SUBSYSTEM, "cost_api_requests_errors_total"),
        "Total number of errors when making requests to the AWS Cost Explorer API",
    )


def _next_scrape_gauge() -> Gauge:
    return Gauge(
        build_fq_name(EXPORTER_NAME, SUBSYSTEM, "next_scrape"),
        "The next time the exporter will scrape AWS billing data. "
        "Can be used to trigger alerts if now - nextScrape > interval",
    )


@dataclass
class S3Metrics:
    """Metrics exported by the S3 collector."""

    storage_gauge: GaugeVec = field(default_factory=_storage_gauge)
    operations_gauge: GaugeVec = field(default_factory=_operations_gauge)
    request_count: Counter = field(default_factory=_request_count)
    request_errors_count: Counter = field(default_factory=_request_errors_count)
    next_scrape_gauge: Gauge = field(default_factory=_next_scrape_gauge)


@dataclass
class Pricing:
    """Accumulated usage and cost of one billing component."""

    usage: float = 0.0
    cost: float = 0.0
    units: str = ""
    unit_cost: float = 0.0


def _parse_amount(text: str) -> float:
    return float(text)


@dataclass
class BillingData:
    """Pricing per region and billing component."""

    regions: dict[str, dict[str, Pricing]] = field(default_factory=dict)

    def add_metric_group(self, region: str, component: str, group: Mapping[str, Any]) -> None:
        """Accumulate a Cost Explorer group into a region's component.

        Nothing is added when the region or the component is empty.
        """
        if not region or not component:
            return
        pricing = self.regions.setdefault(region, {}).setdefault(component, Pricing())
        for name, metric in (group.get("Metrics") or {}).items():
            amount = (metric or {}).get("Amount")
            if amount is None:
                _log.warning("Error parsing amount: amount is nil")
                continue
            if name == "UsageQuantity":
                try:
                    usage = _parse_amount(amount)
                except ValueError as err:
                    _log.warning("Error parsing usage amount: %s", err)
                    continue
                pricing.usage += usage
                unit = metric.get("Unit")
                if unit is None:
                    _log.warning("Error parsing amount: unit is nil")
                    continue
                pricing.units = unit
            elif name == "UnblendedCost":
                try:
                    cost = _parse_amount(amount)
                except ValueError as err:
                    _log.warning("Error parsing cost amount: %s", err)
                    continue
                pricing.cost += cost
        pricing.unit_cost = unit_cost_for_component(component, pricing)


def get_region_from_key(key: str) -> str:
    """Return the region of a usage-type key, or "" when it has none."""
    if key in _REQUEST_COMPONENTS:
        return ""
    parts = key.split("-")
    if len(parts) < 2:
        _log.info("Could not find region in key: %s", key)
        return ""
    region = BILLING_TO_REGION.get(parts[0])
    if region is None:
        _log.info("Could not find mapped region: %s:%s", key, parts[0])
        return ""
    return region


def get_component_from_key(key: str) -> str:
    """Return the billing component of a usage-type key, with the tier for requests."""
    if key in _REQUEST_COMPONENTS:
        return ""
    parts = key.split("-")
    if len(parts) < 2:
        return ""
    component = parts[1]
    # Inter-region components are a minor part of the bill and are skipped.
    if component in BILLING_TO_REGION:
        component = ""
    if component == "Requests" and len(parts) > 2:
        component += "-" + parts[2]
    return component


def parse_billing_data(outputs: Iterable[Mapping[str, Any]]) -> BillingData:
    """Build billing data from Cost Explorer responses."""
    billing_data = BillingData()
    for output in outputs:
        for result in output.get("ResultsByTime") or []:
            for group in result.get("Groups") or []:
                keys = group.get("Keys")
                if not keys:
                    _log.info("skipping group without keys")
                    continue
                key = keys[0]
                region = get_region_from_key(key)
                component = get_component_from_key(key)
                if not region or not component:
                    continue
                billing_data.add_metric_group(region, component, group)
    return billing_data


def get_billing_data(
    client: CostExplorerClient, start_date: date, end_date: date, metrics: S3Metrics
) -> BillingData:
    """Fetch daily S3 cost and usage grouped by usage type, following pages."""
    start = start_date.strftime("%Y-%m-%d")
    end = end_date.strftime("%Y-%m-%d")
    _log.info("Getting billing data for %s to %s", start, end)
    request: dict[str, Any] = {
        "TimePeriod": {"Start": start, "End": end},
        "Granularity": "DAILY",
        "Metrics": ["UsageQuantity", "UnblendedCost"],
        # Only one USAGE_TYPE grouping may be passed per query.
        "GroupBy": [{"Type": "DIMENSION", "Key": "USAGE_TYPE"}],
        "Filter": {
            "Dimensions": {"Key": "SERVICE", "Values": ["Amazon Simple Storage Service"]}
        },
    }
    outputs: list[Mapping[str, Any]] = []
    while True:
        metrics.request_count.inc()
        try:
            output = client.get_cost_and_usage(**request)
        except Exception as err:
            _log.error("Error getting cost and usage: %s", err)
            metrics.request_errors_count.inc()
            raise
        outputs.append(output)
        token = output.get("NextPageToken")
        if not token:
            break
        request["NextPageToken"] = token
    return parse_billing_data(outputs)


def export_metrics(billing_data: BillingData, metrics: S3Metrics) -> None:
    """Set the storage and operation gauges from the billing data."""
    _log.info("Exporting metrics for %d regions", len(billing_data.regions))
    for region, model in billing_data.regions.items():
        for component, pricing in model.items():
            if component == "Requests-Tier1":
                metrics.operations_gauge.labels(region, STANDARD_LABEL, "1").set(pricing.unit_cost)
            elif component == "Requests-Tier2":
                metrics.operations_gauge.labels(region, STANDARD_LABEL, "2").set(pricing.unit_cost)
            elif component == "TimedStorage":
                metrics.storage_gauge.labels(region, STANDARD_LABEL).set(pricing.unit_cost)


def unit_cost_for_component(component: str, pricing: Pricing) -> float:
    """Unit cost of a component: per 1k requests, per GiB-hour, or per unit of usage."""
    if pricing.usage == 0:
        _log.info("Usage is 0 for component: %s", component)
        return 0.0
    if component in _REQUEST_COMPONENTS:
        return pricing.cost / (pricing.usage / 1000)
    if component == "TimedStorage":
        return (pricing.cost / HOURS_IN_MONTH) / pricing.usage
    return pricing.cost / pricing.usage


class S3Collector:
    """Refreshes S3 billing data at most once per interval and exports unit costs."""

    def __init__(self, scrape_interval: timedelta, client: CostExplorerClient) -> None:
        self.client = client
        self.interval = scrape_interval
        # Start one interval in the past so the first scrape runs immediately.
        self.next_scrape = time.time() - scrape_interval.total_seconds()
        self.metrics = S3Metrics()
        self.billing_data: BillingData | None = None
        self._lock = threading.Lock()

    def name(self) -> str:
        return "S3"

    def register(self, registry: Any) -> None:
        registry.register(self.metrics.storage_gauge)
        registry.register(self.metrics.operations_gauge)
        registry.register(self.metrics.request_count)
        registry.register(self.metrics.next_scrape_gauge)
        registry.register(self.metrics.request_errors_count)

    def describe(self) -> list[Desc]:
        return []

    def collect(self) -> list[Sample]:
        """Update the registered gauges; raise RuntimeError when billing data is unavailable."""
        if self.collect_metrics() == 0:
            raise RuntimeError("error collecting metrics")
        return []

    def collect_metrics(self) -> float:
        """Refresh billing data when due and export it; 1.0 on success, 0.0 on failure."""
        with self._lock:
            if self.billing_data is None or time.time() > self.next_scrape:
                end_date = date.today() - timedelta(days=1)
                # Pull 30 days of billing data.
                start_date = end_date - timedelta(days=30)
                try:
                    billing_data = get_billing_data(
                        self.client, start_date, end_date, self.metrics
                    )
                except Exception as err:
                    _log.error("Error getting billing data: %s", err)
                    return 0.0
                self.billing_data = billing_data
                self.next_scrape = time.time() + self.interval.total_seconds()
                self.metrics.next_scrape_gauge.set(int(self.next_scrape))
            export_metrics(self.billing_data, self.metrics)
            return 1.0