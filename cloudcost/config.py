"""Exporter configuration."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta


class StringSliceFlag(list[str]):
    """A repeatable option: each value given is appended; renders comma separated."""

    def set(self, value: str) -> None:
        self.append(value)

    def __str__(self) -> str:
        return ",".join(self)


@dataclass
class AWSSettings:
    profile: str = ""
    region: str = ""
    services: StringSliceFlag = field(default_factory=StringSliceFlag)


@dataclass
class GCPSettings:
    default_gcs_discount: int = 19
    projects: StringSliceFlag = field(default_factory=StringSliceFlag)
    region: str = ""
    services: StringSliceFlag = field(default_factory=StringSliceFlag)


@dataclass
class AzureSettings:
    services: StringSliceFlag = field(default_factory=StringSliceFlag)
    subscription_id: str = ""


@dataclass
class CollectorSettings:
    scrape_interval: timedelta = timedelta(hours=1)
    timeout: timedelta = timedelta(minutes=1)


@dataclass
class ServerSettings:
    address: str = ":8080"
    path: str = "/metrics"
    timeout: timedelta = timedelta(seconds=30)


@dataclass
class LoggerOptions:
    level: str = "info"  # debug, info, warn, error
    output: str = "stdout"  # stdout, stderr, file
    type: str = "text"  # json, text


@dataclass
class Config:
    provider: str = "aws"
    project_id: str = "ops-tools-1203"
    aws: AWSSettings = field(default_factory=AWSSettings)
    gcp: GCPSettings = field(default_factory=GCPSettings)
    azure: AzureSettings = field(default_factory=AzureSettings)
    collector: CollectorSettings = field(default_factory=CollectorSettings)
    server: ServerSettings = field(default_factory=ServerSettings)
    logger_opts: LoggerOptions = field(default_factory=LoggerOptions)
    logger: logging.Logger | None = None