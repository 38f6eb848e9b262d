"""On-demand, spot and EBS storage pricing tables built from the AWS pricing APIs."""

from __future__ import annotations

import dataclasses
import json
import logging
import math
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Mapping

from cloudcost.services import EC2Client, PricingClient

DEFAULT_INSTANCE_FAMILY = "General purpose"

# Ratio of CPU to total spend per instance family, derived from observed spend.
# An imperfect approximation, but better than nothing.
CPU_TO_COST_RATIO: dict[str, float] = {
    "Compute optimized": 0.88,
    "Memory optimized": 0.48,
    "General purpose": 0.65,
    "Storage optimized": 0.48,
}

_log = logging.getLogger(__name__)


class PricingError(Exception):
    """Base class for pricing lookup and parsing errors."""


class InstanceTypeAlreadyExistsError(PricingError):
    def __init__(self, message: str = "instance type already exists in the map") -> None:
        super().__init__(message)


class ParseAttributesError(PricingError):
    def __init__(self, message: str = "error parsing attribute") -> None:
        super().__init__(message)


class RegionNotFoundError(PricingError):
    def __init__(self, message: str = "no region found") -> None:
        super().__init__(message)


class InstanceTypeNotFoundError(PricingError):
    def __init__(self, message: str = "no instance type found") -> None:
        super().__init__(message)


class VolumeTypeNotFoundError(PricingError):
    def __init__(self, message: str = "volume type not found") -> None:
        super().__init__(message)


class ListSpotPricesError(PricingError):
    def __init__(self, message: str = "error listing spot prices") -> None:
        super().__init__(message)


class ListOnDemandPricesError(PricingError):
    def __init__(self, message: str = "error listing ondemand prices") -> None:
        super().__init__(message)


class ListStoragePricesError(PricingError):
    def __init__(self, message: str = "error listing storage prices") -> None:
        super().__init__(message)


def _field(mapping: Mapping[str, Any], key: str) -> Any:
    """Look up a JSON key, matching case-insensitively when there is no exact match."""
    if key in mapping:
        return mapping[key]
    folded = key.casefold()
    for name, value in mapping.items():
        if name.casefold() == folded:
            return value
    return None


def _object(value: Any, what: str) -> Mapping[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ValueError(f"expected a JSON object for {what}, got {type(value).__name__}")
    return value


def _string(value: Any, what: str) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"expected a JSON string for {what}, got {type(value).__name__}")
    return value


_ATTRIBUTE_KEYS = {
    "region": "regionCode",
    "instance_type": "instanceType",
    "vcpu": "vcpu",
    "memory": "memory",
    "instance_family": "instanceFamily",
    "physical_processor": "physicalProcessor",
    "tenancy": "tenancy",
    "market_option": "marketOption",
    "operating_system": "operatingSystem",
    "clock_speed": "clockSpeed",
    "usage_type": "usageType",
}


@dataclass
class InstanceAttributes:
    """EC2 instance attributes as described by the pricing API."""

    region: str = ""
    instance_type: str = ""
    vcpu: str = ""
    memory: str = ""
    instance_family: str = ""
    physical_processor: str = ""
    tenancy: str = ""
    market_option: str = ""
    operating_system: str = ""
    clock_speed: str = ""
    usage_type: str = ""

    @classmethod
    def from_json(cls, data: Mapping[str, Any] | None) -> InstanceAttributes:
        """Build from the "attributes" object of a pricing API product."""
        attributes = _object(data, "attributes")
        return cls(
            **{
                name: _string(_field(attributes, key), key)
                for name, key in _ATTRIBUTE_KEYS.items()
            }
        )


@dataclass
class Prices:
    """Hourly USD prices of an instance's CPU, RAM and the whole instance."""

    cpu: float = 0.0
    ram: float = 0.0
    total: float = 0.0


def _parse_product(raw: str) -> tuple[Mapping[str, Any], list[str]]:
    """Return a product's attributes and the USD prices of its on-demand terms."""
    data = _object(json.loads(raw), "product document")
    product = _object(_field(data, "product"), "product")
    attributes = _object(_field(product, "attributes"), "attributes")
    terms = _object(_field(data, "terms"), "terms")
    on_demand = _object(_field(terms, "OnDemand"), "OnDemand")
    prices: list[str] = []
    for term in on_demand.values():
        dimensions = _object(_field(_object(term, "term"), "priceDimensions"), "priceDimensions")
        for dimension in dimensions.values():
            per_unit = _object(
                _field(_object(dimension, "price dimension"), "pricePerUnit"), "pricePerUnit"
            )
            prices.append(_string(per_unit.get("USD"), "USD"))
    return attributes, prices


def _divide(numerator: float, denominator: float) -> float:
    if denominator != 0:
        return numerator / denominator
    if numerator == 0 or math.isnan(numerator):
        return math.nan
    return math.copysign(math.inf, numerator) * math.copysign(1.0, denominator)


def weighted_price_for_instance(price: float, attributes: InstanceAttributes) -> Prices:
    """Split an instance price into per-core and per-GiB hourly prices."""
    try:
        cpus = float(attributes.vcpu)
    except ValueError as err:
        raise ParseAttributesError(f"error parsing attribute vcpu: {err}") from err
    memory = attributes.memory.removesuffix(" GiB")
    try:
        ram = float(memory)
    except ValueError as err:
        raise ParseAttributesError(f"error parsing attribute memory: {err}") from err
    ratio = CPU_TO_COST_RATIO.get(attributes.instance_family)
    if ratio is None:
        _log.info(
            "no ratio found for instance type %s, defaulting to %s",
            attributes.instance_type,
            DEFAULT_INSTANCE_FAMILY,
        )
        ratio = CPU_TO_COST_RATIO[DEFAULT_INSTANCE_FAMILY]
    return Prices(
        cpu=_divide(price * ratio, cpus),
        ram=_divide(price * (1 - ratio), ram),
    )


class ComputePricingMap:
    """Instance prices keyed by region (or availability zone for spot) and instance type."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.regions: dict[str, dict[str, Prices]] = {}
        self.instance_details: dict[str, InstanceAttributes] = {}
        self.logger = (logger or _log).getChild("computePricing")
        self._lock = threading.RLock()

    def generate(
        self,
        ondemand_prices: Iterable[str] | None,
        spot_prices: Iterable[Mapping[str, Any]] | None,
    ) -> None:
        """Fill the map from on-demand product documents, then from spot prices.

        Raises ValueError when a product document is not valid JSON.
        """
        for raw in ondemand_prices or ():
            raw_attributes, prices = _parse_product(raw)
            attributes = InstanceAttributes.from_json(raw_attributes)
            if not attributes.instance_type:
                continue
            for text in prices:
                try:
                    price = float(text)
                except ValueError as err:
                    self.logger.error("error parsing price: %s, skipping", err)
                    continue
                try:
                    self.add(price, attributes)
                except PricingError as err:
                    self.logger.error("error adding to pricing map: %s", err)
                    continue
                self.add_instance_details(attributes)

        for spot in spot_prices or ():
            zone = spot.get("AvailabilityZone") or ""
            instance_type = spot.get("InstanceType") or ""
            details = self.instance_details.get(instance_type)
            if details is None:
                self.logger.error("no instance details found for instance type %s", instance_type)
                continue
            spot_attributes = dataclasses.replace(details, region=zone)
            try:
                price = float(spot.get("SpotPrice") or "")
            except ValueError as err:
                self.logger.error("error parsing spot price: %s, skipping", err)
                continue
            try:
                self.add(price, spot_attributes)
            except PricingError as err:
                self.logger.error("error adding to pricing map: %s", err)

    def add(self, price: float, attributes: InstanceAttributes) -> None:
        """Add a price weighted by the instance type's CPU and RAM."""
        with self._lock:
            family = self.regions.setdefault(attributes.region, {})
            if attributes.instance_type in family:
                raise InstanceTypeAlreadyExistsError()
            weighted = weighted_price_for_instance(price, attributes)
            family[attributes.instance_type] = Prices(
                cpu=weighted.cpu, ram=weighted.ram, total=price
            )

    def add_instance_details(self, attributes: InstanceAttributes) -> None:
        """Remember the first attributes seen for an instance type."""
        with self._lock:
            self.instance_details.setdefault(attributes.instance_type, attributes)

    def get_price_for_instance_type(self, region: str, instance_type: str) -> Prices:
        with self._lock:
            family = self.regions.get(region)
            if family is None:
                raise RegionNotFoundError()
            price = family.get(instance_type)
            if price is None:
                raise InstanceTypeNotFoundError()
            return price


class StoragePricingMap:
    """EBS prices per GiB-month keyed by region and volume type."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.regions: dict[str, dict[str, float]] = {}
        self.logger = (logger or _log).getChild("storagePricing")
        self._lock = threading.RLock()

    def generate(self, storage_prices: Iterable[str] | None) -> None:
        """Fill the map from storage product documents.

        Raises ValueError when a product document is not valid JSON.
        """
        with self._lock:
            for raw in storage_prices or ():
                attributes, prices = _parse_product(raw)
                region = _string(_field(attributes, "regionCode"), "regionCode")
                storage_class = _string(_field(attributes, "volumeApiName"), "volumeApiName")
                storage = self.regions.setdefault(region, {})
                for text in prices:
                    try:
                        storage[storage_class] = float(text)
                    except ValueError as err:
                        self.logger.error("error parsing price: %s, skipping", err)

    def get_price_for_volume_type(self, region: str, volume_type: str, size: int) -> float:
        """Hourly price of a volume of the given size in GiB."""
        with self._lock:
            storage = self.regions.get(region)
            if storage is None:
                raise RegionNotFoundError()
            if volume_type not in storage:
                raise VolumeTypeNotFoundError()
            # Prices are per GB-month with 30-day months.
            return storage[volume_type] * float(size) / 30 / 24


def _term_filter(field: str, value: str) -> dict[str, str]:
    return {"Field": field, "Type": "TERM_MATCH", "Value": value}


def list_on_demand_prices(region: str, client: PricingClient) -> list[str]:
    """Return on-demand Linux shared-tenancy instance product documents for a region."""
    request = {
        "ServiceCode": "AmazonEC2",
        "Filters": [
            _term_filter("regionCode", region),
            _term_filter("preInstalledSw", "NA"),
            _term_filter("tenancy", "shared"),
            _term_filter("productFamily", "Compute Instance"),
            _term_filter("operation", "RunInstances"),
            _term_filter("capacitystatus", "UnusedCapacityReservation"),
            _term_filter("operatingSystem", "Linux"),
        ],
    }
    return _prices_from_product_list(request, client)


def list_spot_prices(client: EC2Client) -> list[Mapping[str, Any]]:
    """Return Linux spot prices from the last hour, following pagination tokens."""
    end_time = datetime.now(timezone.utc)
    request: dict[str, Any] = {
        "ProductDescriptions": ["Linux/UNIX (Amazon VPC)"],
        "StartTime": end_time - timedelta(hours=1),
        "EndTime": end_time,
    }
    spot_prices: list[Mapping[str, Any]] = []
    while True:
        response = client.describe_spot_price_history(**request)
        spot_prices.extend(response.get("SpotPriceHistory") or [])
        token = response.get("NextToken")
        if not token:
            break
        request["NextToken"] = token
    return spot_prices


def list_storage_prices(region: str, client: PricingClient) -> list[str]:
    """Return EBS storage product documents for a region."""
    request = {
        "ServiceCode": "AmazonEC2",
        "Filters": [
            _term_filter("regionCode", region),
            _term_filter("productFamily", "Storage"),
        ],
    }
    return _prices_from_product_list(request, client)


def _prices_from_product_list(request: dict[str, Any], client: PricingClient) -> list[str]:
    outputs: list[str] = []
    while True:
        response = client.get_products(**request)
        if response is None:
            break
        outputs.extend(response.get("PriceList") or [])
        token = response.get("NextToken")
        if not token:
            break
        request["NextToken"] = token
    return outputs