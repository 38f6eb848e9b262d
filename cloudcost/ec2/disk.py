"""Listing EBS volumes and reading their persistent-volume names."""

from __future__ import annotations

from typing import Any, Mapping

from cloudcost.services import EC2Client

EKS_PV_TAG_NAME = "kubernetes.io/created-for/pv/name"

# Excludes volumes created from snapshots.
_VOLUME_FILTERS = [{"Name": "snapshot-id", "Values": [""]}]


def list_ebs_volumes(client: EC2Client) -> list[Mapping[str, Any]]:
    """Return all volumes not created from snapshots, following pagination tokens."""
    request: dict[str, Any] = {"Filters": [dict(f) for f in _VOLUME_FILTERS]}
    volumes: list[Mapping[str, Any]] = []
    while True:
        response = client.describe_volumes(**request)
        volumes.extend(response.get("Volumes") or [])
        token = response.get("NextToken")
        if not token:
            break
        request["NextToken"] = token
    return volumes


def name_from_volume(volume: Mapping[str, Any]) -> str:
    """Return the persistent volume name EKS tagged the volume with, or ""."""
    for tag in volume.get("Tags") or []:
        if tag.get("Key") == EKS_PV_TAG_NAME:
            return tag.get("Value", "")
    return ""