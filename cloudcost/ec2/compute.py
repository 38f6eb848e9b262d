"""Listing EC2 instances and reading their cluster tags."""

from __future__ import annotations

from typing import Any, Mapping

from cloudcost.services import EC2Client

MAX_RESULTS = 1000
CLUSTER_TAGS = ("cluster", "eks:cluster-name", "aws:eks:cluster-name")


def list_compute_instances(client: EC2Client) -> list[Mapping[str, Any]]:
    """Return all reservations, following pagination tokens."""
    request: dict[str, Any] = {"MaxResults": MAX_RESULTS}
    reservations: list[Mapping[str, Any]] = []
    while True:
        response = client.describe_instances(**request)
        reservations.extend(response.get("Reservations") or [])
        token = response.get("NextToken")
        if not token:
            break
        request["NextToken"] = token
    return reservations


def cluster_name_from_instance(instance: Mapping[str, Any]) -> str:
    """Return the value of the first tag naming the instance's cluster, or ""."""
    for tag in instance.get("Tags") or []:
        if tag.get("Key") in CLUSTER_TAGS:
            return tag.get("Value", "")
    return ""