"""Collector of EC2 instance and EBS volume hourly costs."""

from __future__ import annotations

import logging
import time
from concurrent.futures import FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Mapping, Sequence

from cloudcost.ec2.compute import cluster_name_from_instance, list_compute_instances
from cloudcost.ec2.disk import list_ebs_volumes, name_from_volume
from cloudcost.ec2.pricing_map import (
    ComputePricingMap,
    ListOnDemandPricesError,
    ListSpotPricesError,
    ListStoragePricesError,
    PricingError,
    StoragePricingMap,
    list_on_demand_prices,
    list_spot_prices,
    list_storage_prices,
)
from cloudcost.metrics import METRIC_PREFIX, Desc, Sample, build_fq_name
from cloudcost.services import EC2Client, PricingClient

SUBSYSTEM = "aws_ec2"
ERR_GROUP_LIMIT = 5

INSTANCE_CPU_COST_SUFFIX = "instance_cpu_usd_per_core_hour"
INSTANCE_MEMORY_COST_SUFFIX = "instance_memory_usd_per_gib_hour"
INSTANCE_TOTAL_COST_SUFFIX = "instance_total_usd_per_hour"
PERSISTENT_VOLUME_COST_SUFFIX = "persistent_volume_usd_per_hour"

_INSTANCE_LABELS = (
    "instance",
    "instance_id",
    "region",
    "family",
    "machine_type",
    "cluster_name",
    "price_tier",
    "architecture",
)
_VOLUME_LABELS = (
    "persistentvolume",
    "region",
    "availability_zone",
    "disk",
    "type",
    "size_gib",
    "state",
)

INSTANCE_CPU_HOURLY_COST_DESC = Desc(
    build_fq_name(METRIC_PREFIX, SUBSYSTEM, INSTANCE_CPU_COST_SUFFIX),
    "The cpu cost a ec2 instance in USD/(core*h)",
    _INSTANCE_LABELS,
)
INSTANCE_MEMORY_HOURLY_COST_DESC = Desc(
    build_fq_name(METRIC_PREFIX, SUBSYSTEM, INSTANCE_MEMORY_COST_SUFFIX),
    "The memory cost of a ec2 instance in USD/(GiB*h)",
    _INSTANCE_LABELS,
)
INSTANCE_TOTAL_HOURLY_COST_DESC = Desc(
    build_fq_name(METRIC_PREFIX, SUBSYSTEM, INSTANCE_TOTAL_COST_SUFFIX),
    "The total cost of the ec2 instance in USD/h",
    _INSTANCE_LABELS,
)
PERSISTENT_VOLUME_HOURLY_COST_DESC = Desc(
    build_fq_name(METRIC_PREFIX, SUBSYSTEM, PERSISTENT_VOLUME_COST_SUFFIX),
    "The cost of an AWS EBS Volume in USD/h.",
    _VOLUME_LABELS,
)


class ClientNotFoundError(PricingError):
    def __init__(self, message: str = "no client found") -> None:
        super().__init__(message)


class GeneratePricingMapError(PricingError):
    def __init__(self, message: str = "error generating pricing map") -> None:
        super().__init__(message)


@dataclass
class Ec2Config:
    scrape_interval: timedelta = timedelta(0)
    regions: list[Mapping[str, Any]] = field(default_factory=list)
    region_clients: dict[str, EC2Client] = field(default_factory=dict)
    logger: logging.Logger | None = None


def _run_limited(tasks: Sequence[Callable[[], Any]], limit: int) -> list[Any]:
    """Run tasks with bounded concurrency; raise the first error that occurs."""
    if not tasks:
        return []
    with ThreadPoolExecutor(max_workers=min(limit, len(tasks))) as pool:
        futures: list[Future[Any]] = [pool.submit(task) for task in tasks]
        done, pending = wait(futures, return_when=FIRST_EXCEPTION)
        for future in done:
            error = future.exception()
            if error is not None:
                for other in pending:
                    other.cancel()
                raise error
        return [future.result() for future in futures]


class Ec2Collector:
    """Emits hourly cost metrics for EC2 instances and EBS volumes."""

    def __init__(self, config: Ec2Config, pricing_service: PricingClient | None) -> None:
        base = config.logger or logging.getLogger("cloudcost")
        self.logger = base.getChild("ec2")
        self.scrape_interval = config.scrape_interval
        self.regions = list(config.regions)
        self.region_clients = dict(config.region_clients or {})
        self.pricing_service = pricing_service
        self.compute_pricing_map = ComputePricingMap(self.logger)
        self.storage_pricing_map = StoragePricingMap(self.logger)
        self.next_compute_scrape = 0.0
        self.next_storage_scrape = 0.0

    def name(self) -> str:
        return SUBSYSTEM

    def register(self, registry: Any) -> None:
        """Nothing to register: metrics are produced on every collect."""

    def describe(self) -> list[Desc]:
        return [
            INSTANCE_CPU_HOURLY_COST_DESC,
            INSTANCE_MEMORY_HOURLY_COST_DESC,
            INSTANCE_TOTAL_HOURLY_COST_DESC,
            PERSISTENT_VOLUME_HOURLY_COST_DESC,
        ]

    def _region_names(self) -> list[str]:
        return [region["RegionName"] for region in self.regions]

    def collect(self) -> list[Sample]:
        """Refresh pricing when due and return cost samples for all regions."""
        start = time.monotonic()
        self.logger.info("calling collect")
        interval = self.scrape_interval.total_seconds()

        if time.time() > self.next_compute_scrape:
            self.populate_compute_pricing_map()
            self.next_compute_scrape = time.time() + interval

        if time.time() > self.next_storage_scrape:
            self.populate_storage_pricing_map()
            self.next_storage_scrape = time.time() + interval

        clients: list[tuple[str, EC2Client]] = []
        for region in self._region_names():
            client = self.region_clients.get(region)
            if client is None:
                raise ClientNotFoundError()
            clients.append((region, client))

        reservations: list[Mapping[str, Any]] = []
        volumes: list[Mapping[str, Any]] = []
        if clients:
            with ThreadPoolExecutor(max_workers=2 * len(clients)) as pool:
                instance_jobs = [
                    pool.submit(self.fetch_instances, client, region) for region, client in clients
                ]
                volume_jobs = [
                    pool.submit(self.fetch_volumes, client, region) for region, client in clients
                ]
                for job in instance_jobs:
                    reservations.extend(job.result())
                for job in volume_jobs:
                    volumes.extend(job.result())

        samples = self.emit_instance_metrics(reservations)
        samples.extend(self.emit_volume_metrics(volumes))
        self.logger.info("Finished collect in %.3fs", time.monotonic() - start)
        return samples

    def populate_compute_pricing_map(self) -> None:
        """Rebuild the compute pricing map from spot and on-demand prices of every region."""
        self.logger.info("Refreshing compute pricing map")

        def fetch(region: str) -> tuple[list[str], list[Mapping[str, Any]]]:
            self.logger.debug("fetching compute pricing info for %s", region)
            client = self.region_clients.get(region)
            if client is None:
                raise ClientNotFoundError()
            try:
                spot = list_spot_prices(client)
            except Exception as err:
                raise ListSpotPricesError(f"error listing spot prices: {err}") from err
            try:
                prices = list_on_demand_prices(region, self.pricing_service)
            except Exception as err:
                raise ListOnDemandPricesError(f"error listing ondemand prices: {err}") from err
            return prices, spot

        results = _run_limited(
            [lambda r=region: fetch(r) for region in self._region_names()], ERR_GROUP_LIMIT
        )
        prices = [price for region_prices, _ in results for price in region_prices]
        spot_prices = [spot for _, region_spot in results for spot in region_spot]

        self.compute_pricing_map = ComputePricingMap(self.logger)
        try:
            self.compute_pricing_map.generate(prices, spot_prices)
        except ValueError as err:
            raise GeneratePricingMapError(f"error generating pricing map: {err}") from err

    def populate_storage_pricing_map(self) -> None:
        """Rebuild the storage pricing map from the storage prices of every region."""
        self.logger.info("Refreshing storage pricing map")

        def fetch(region: str) -> list[str]:
            self.logger.debug("fetching storage pricing info for %s", region)
            try:
                return list_storage_prices(region, self.pricing_service)
            except Exception as err:
                raise ListStoragePricesError(f"error listing storage prices: {err}") from err

        results = _run_limited(
            [lambda r=region: fetch(r) for region in self._region_names()], ERR_GROUP_LIMIT
        )
        storage_prices = [price for region_prices in results for price in region_prices]

        self.storage_pricing_map = StoragePricingMap(self.logger)
        try:
            self.storage_pricing_map.generate(storage_prices)
        except ValueError as err:
            raise GeneratePricingMapError(f"error generating pricing map: {err}") from err

    def fetch_instances(self, client: EC2Client, region: str) -> list[Mapping[str, Any]]:
        """List a region's reservations; errors are logged and give an empty list."""
        start = time.monotonic()
        self.logger.info("Fetching instances in %s", region)
        try:
            reservations = list_compute_instances(client)
        except Exception as err:
            self.logger.error("Could not list compute instances in %s: %s", region, err)
            return []
        self.logger.info(
            "Successfully listed %d reservations in %s in %.3fs",
            len(reservations),
            region,
            time.monotonic() - start,
        )
        return reservations

    def fetch_volumes(self, client: EC2Client, region: str) -> list[Mapping[str, Any]]:
        """List a region's EBS volumes; errors are logged and give an empty list."""
        start = time.monotonic()
        self.logger.info("Fetching volumes in %s", region)
        try:
            volumes = list_ebs_volumes(client)
        except Exception as err:
            self.logger.error("Could not list EBS volumes in %s: %s", region, err)
            return []
        self.logger.info(
            "Successfully listed %d volumes in %s in %.3fs",
            len(volumes),
            region,
            time.monotonic() - start,
        )
        return volumes

    def emit_instance_metrics(self, reservations: Sequence[Mapping[str, Any]]) -> list[Sample]:
        """Return cpu, memory and total cost samples for every priced instance."""
        samples: list[Sample] = []
        for reservation in reservations:
            for instance in reservation.get("Instances") or []:
                instance_id = instance.get("InstanceId", "")
                dns_name = instance.get("PrivateDnsName")
                if not dns_name:
                    self.logger.debug("no private dns name found for instance %s", instance_id)
                    continue
                placement = instance.get("Placement")
                if not placement or placement.get("AvailabilityZone") is None:
                    self.logger.debug("no availability zone found for instance %s", instance_id)
                    continue

                region = placement["AvailabilityZone"]
                price_tier = "spot"
                if instance.get("InstanceLifecycle") != "spot":
                    price_tier = "ondemand"
                    # On-demand prices are keyed by region, not availability zone.
                    region = region[:-1]

                instance_type = instance.get("InstanceType", "")
                try:
                    price = self.compute_pricing_map.get_price_for_instance_type(
                        region, instance_type
                    )
                except PricingError as err:
                    self.logger.error(
                        "error getting price for instance type %s: %s", instance_type, err
                    )
                    continue

                details = self.compute_pricing_map.instance_details.get(instance_type)
                labels = (
                    dns_name,
                    instance_id,
                    region,
                    details.instance_family if details else "",
                    instance_type,
                    cluster_name_from_instance(instance),
                    price_tier,
                    instance.get("Architecture", ""),
                )
                samples.append(Sample(INSTANCE_CPU_HOURLY_COST_DESC, price.cpu, labels))
                samples.append(Sample(INSTANCE_MEMORY_HOURLY_COST_DESC, price.ram, labels))
                samples.append(Sample(INSTANCE_TOTAL_HOURLY_COST_DESC, price.total, labels))
        return samples

    def emit_volume_metrics(self, volumes: Sequence[Mapping[str, Any]]) -> list[Sample]:
        """Return an hourly cost sample for every priced volume."""
        samples: list[Sample] = []
        for volume in volumes:
            zone = volume.get("AvailabilityZone")
            if zone is None:
                self.logger.error("Volume's Availability Zone unknown: skipping")
                continue
            # Not exact in every case, but avoids another API call per zone.
            region = zone[:-1]

            size = volume.get("Size")
            if size is None:
                self.logger.error("Volume's size unknown: skipping")
                continue

            volume_type = volume.get("VolumeType", "")
            try:
                price = self.storage_pricing_map.get_price_for_volume_type(
                    region, volume_type, size
                )
            except PricingError as err:
                self.logger.error(
                    "error getting price for volume type %s in region %s: %s",
                    volume_type,
                    region,
                    err,
                )
                continue

            labels = (
                name_from_volume(volume),
                region,
                zone,
                volume.get("VolumeId", ""),
                volume_type,
                str(int(size)),
                volume.get("State", ""),
            )
            samples.append(Sample(PERSISTENT_VOLUME_HOURLY_COST_DESC, price, labels))
        return samples