"""AWS provider: runs the S3 and EC2 collectors and reports scrape health."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Iterable, Protocol, Sequence, runtime_checkable

from cloudcost.ec2.collector import Ec2Collector, Ec2Config
from cloudcost.metrics import EXPORTER_NAME, CounterVec, Desc, Sample, build_fq_name
from cloudcost.s3 import S3Collector

SUBSYSTEM = "aws"

# Builds an API client: client_factory(service, region, profile).
# Services asked for are "ce" (Cost Explorer), "pricing" and "ec2".
ClientFactory = Callable[[str, str, str], Any]

PROVIDER_LAST_SCRAPE_ERROR_DESC = Desc(
    build_fq_name(EXPORTER_NAME, "", "last_scrape_error"),
    "Was the last scrape an error. 1 indicates an error.",
    ("provider",),
)
COLLECTOR_SUCCESS_DESC = Desc(
    build_fq_name(EXPORTER_NAME, SUBSYSTEM, "collector_success"),
    "Was the last scrape of the AWS metrics successful.",
    ("collector",),
)
COLLECTOR_LAST_SCRAPE_ERROR_DESC = Desc(
    build_fq_name(EXPORTER_NAME, "collector", "last_scrape_error"),
    "Was the last scrape an error. 1 indicates an error.",
    ("provider", "collector"),
)
COLLECTOR_DURATION_DESC = Desc(
    build_fq_name(EXPORTER_NAME, "collector", "last_scrape_duration_seconds"),
    "Duration of the last scrape in seconds.",
    ("provider", "collector"),
)
COLLECTOR_LAST_SCRAPE_TIME_DESC = Desc(
    build_fq_name(EXPORTER_NAME, "collector", "last_scrape_time"),
    "Time of the last scrape.",
    ("provider", "collector"),
)
PROVIDER_LAST_SCRAPE_TIME_DESC = Desc(
    build_fq_name(EXPORTER_NAME, "", "last_scrape_time"),
    "Time of the last scrape.",
    ("provider",),
)
PROVIDER_LAST_SCRAPE_DURATION_DESC = Desc(
    build_fq_name(EXPORTER_NAME, "", "last_scrape_duration_seconds"),
    "Duration of the last scrape in seconds.",
    ("provider",),
)

_PROVIDER_DESCS = (
    COLLECTOR_LAST_SCRAPE_ERROR_DESC,
    COLLECTOR_DURATION_DESC,
    PROVIDER_LAST_SCRAPE_ERROR_DESC,
    PROVIDER_LAST_SCRAPE_DURATION_DESC,
    COLLECTOR_LAST_SCRAPE_TIME_DESC,
    PROVIDER_LAST_SCRAPE_TIME_DESC,
    COLLECTOR_SUCCESS_DESC,
)


@runtime_checkable
class Collector(Protocol):
    """A source of cost metrics run by a provider on every scrape."""

    def name(self) -> str:
        ...

    def register(self, registry: Any) -> None:
        ...

    def describe(self) -> Iterable[Desc]:
        ...

    def collect(self) -> Iterable[Sample]:
        ...


@dataclass
class AWSConfig:
    services: list[str] = field(default_factory=list)
    region: str = ""
    profile: str = ""
    scrape_interval: timedelta = timedelta(0)
    logger: logging.Logger | None = None


class AWSProvider:
    """Runs its collectors concurrently and adds per-collector scrape metrics."""

    def __init__(
        self,
        config: AWSConfig | None,
        collectors: Sequence[Collector],
        logger: logging.Logger | None,
    ) -> None:
        self.config = config
        self.collectors: list[Collector] = list(collectors)
        self.logger = logger or logging.getLogger("cloudcost").getChild(SUBSYSTEM)
        self.collector_scrapes_total = CounterVec(
            build_fq_name(EXPORTER_NAME, "collector", "scrapes_total"),
            "Total number of scrapes for a collector.",
            ("provider", "collector"),
        )
        self.provider_scrapes_total = CounterVec(
            build_fq_name(EXPORTER_NAME, "", "scrapes_total"),
            "Total number of scrapes.",
            ("provider",),
        )

    def register_collectors(self, registry: Any) -> None:
        """Register the scrape counter and every collector's own metrics."""
        self.logger.info("registering collectors (count=%d)", len(self.collectors))
        registry.register(self.collector_scrapes_total)
        for collector in self.collectors:
            collector.register(registry)

    def describe(self) -> list[Desc]:
        descs = list(_PROVIDER_DESCS)
        for collector in self.collectors:
            try:
                descs.extend(collector.describe())
            except Exception as err:
                self.logger.error(
                    "failed to describe collector %s: %s", collector.name(), err
                )
        return descs

    def _run_collector(self, collector: Collector) -> list[Sample]:
        began = time.monotonic()
        errors = 0.0
        samples: list[Sample] = []
        try:
            samples = list(collector.collect() or ())
        except Exception as err:
            errors = 1.0
            self.logger.error("could not collect metrics from %s: %s", collector.name(), err)
        name = collector.name()
        samples.extend(
            [
                Sample(COLLECTOR_LAST_SCRAPE_ERROR_DESC, errors, (SUBSYSTEM, name)),
                Sample(COLLECTOR_DURATION_DESC, time.monotonic() - began, (SUBSYSTEM, name)),
                Sample(COLLECTOR_LAST_SCRAPE_TIME_DESC, int(time.time()), (SUBSYSTEM, name)),
                Sample(COLLECTOR_SUCCESS_DESC, errors, (name,)),
            ]
        )
        self.collector_scrapes_total.labels(SUBSYSTEM, name).inc()
        return samples

    def collect(self) -> list[Sample]:
        """Collect from every collector at once and return all samples."""
        start = time.monotonic()
        samples: list[Sample] = []
        if self.collectors:
            with ThreadPoolExecutor(max_workers=len(self.collectors)) as pool:
                for produced in pool.map(self._run_collector, self.collectors):
                    samples.extend(produced)
        samples.extend(
            [
                Sample(PROVIDER_LAST_SCRAPE_ERROR_DESC, 0.0, (SUBSYSTEM,)),
                Sample(
                    PROVIDER_LAST_SCRAPE_DURATION_DESC, time.monotonic() - start, (SUBSYSTEM,)
                ),
                Sample(PROVIDER_LAST_SCRAPE_TIME_DESC, int(time.time()), (SUBSYSTEM,)),
            ]
        )
        self.provider_scrapes_total.labels(SUBSYSTEM).inc()
        return samples


_lock = threading.Lock()


def new_aws_provider(config: AWSConfig, client_factory: ClientFactory | None) -> AWSProvider:
    """Build the provider with a collector for each known service in the config."""
    if client_factory is None:
        raise ValueError("an AWS client factory is required")
    base = config.logger or logging.getLogger("cloudcost")
    logger = base.getChild(SUBSYSTEM)
    collectors: list[Collector] = []
    for service in config.services:
        kind = service.upper()
        if kind == "S3":
            client = client_factory("ce", config.region, config.profile)
            collectors.append(S3Collector(config.scrape_interval, client))
        elif kind == "EC2":
            pricing = client_factory("pricing", config.region, config.profile)
            compute = client_factory("ec2", config.region, config.profile)
            try:
                response = compute.describe_regions(AllRegions=False)
            except Exception as err:
                raise RuntimeError(f"error getting regions: {err}") from err
            regions = list(response.get("Regions") or [])
            region_clients: dict[str, Any] = {}
            for region in regions:
                region_name = region["RegionName"]
                try:
                    region_clients[region_name] = client_factory(
                        "ec2", region_name, config.profile
                    )
                except Exception as err:
                    raise RuntimeError(f"error creating ec2 client: {err}") from err
            collectors.append(
                Ec2Collector(
                    Ec2Config(
                        scrape_interval=config.scrape_interval,
                        regions=regions,
                        region_clients=region_clients,
                        logger=logger,
                    ),
                    pricing,
                )
            )
        else:
            logger.warning("unknown server, skipping (service=%s)", service)
    return AWSProvider(config, collectors, logger)