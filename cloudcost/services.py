"""Client interfaces for the cloud APIs the collectors talk to.

Requests take keyword arguments in the API's own field names and responses are
mappings in the API's own response shape.
"""

from __future__ import annotations

from typing import Any, Mapping, Protocol, runtime_checkable


@runtime_checkable
class CostExplorerClient(Protocol):
    """The part of the Cost Explorer API used for billing data."""

    def get_cost_and_usage(self, **kwargs: Any) -> Mapping[str, Any]:
        ...


@runtime_checkable
class EC2Client(Protocol):
    """The part of the EC2 API used for instances, volumes, regions and spot prices."""

    def describe_instances(self, **kwargs: Any) -> Mapping[str, Any]:
        ...

    def describe_regions(self, **kwargs: Any) -> Mapping[str, Any]:
        ...

    def describe_spot_price_history(self, **kwargs: Any) -> Mapping[str, Any]:
        ...

    def describe_volumes(self, **kwargs: Any) -> Mapping[str, Any]:
        ...


@runtime_checkable
class PricingClient(Protocol):
    """The part of the Pricing API used for on-demand and storage prices."""

    def get_products(self, **kwargs: Any) -> Mapping[str, Any]:
        ...