"""Command line entry point: parses options, builds the provider and serves metrics."""

from __future__ import annotations

import argparse
import json
import logging
import re
import signal
import sys
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable
from wsgiref.simple_server import WSGIRequestHandler, make_server

from cloudcost.aws_provider import AWSConfig, AWSProvider, ClientFactory, new_aws_provider
from cloudcost.config import Config, StringSliceFlag
from cloudcost.metrics import Registry, exposition
from cloudcost.web import home_page_handler

_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"

_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def _duration(text: str) -> timedelta:
    """Parse a duration such as "1h", "30s" or "1m30s"."""
    body = text
    sign = 1.0
    if body[:1] in "+-" and body:
        sign = -1.0 if body[0] == "-" else 1.0
        body = body[1:]
    if body == "0":
        return timedelta(0)
    if not body:
        raise ValueError(f"invalid duration {text!r}")
    total = 0.0
    pos = 0
    while pos < len(body):
        match = _DURATION_PART.match(body, pos)
        if match is None:
            raise ValueError(f"invalid duration {text!r}")
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    return timedelta(seconds=sign * total)


_duration.__name__ = "duration"


def _flag(parser: argparse.ArgumentParser, name: str, **kwargs: Any) -> None:
    dest = name.replace(".", "_").replace("-", "_")
    parser.add_argument(f"-{name}", f"--{name}", dest=dest, **kwargs)


def build_parser() -> argparse.ArgumentParser:
    """Return the parser for the exporter's command line options."""
    parser = argparse.ArgumentParser(prog="cloudcost-exporter", allow_abbrev=False)
    _flag(parser, "provider", default="aws", help="aws, gcp, or azure")
    _flag(parser, "aws.profile", default="", help="AWS Profile to authenticate with.")
    _flag(parser, "gcp.bucket-projects", action="append", default=None, help="GCP project(s).")
    _flag(parser, "aws.services", action="append", default=None, help="AWS service(s).")
    _flag(parser, "azure.services", action="append", default=None, help="Azure service(s).")
    _flag(parser, "gcp.services", action="append", default=None, help="GCP service(s).")
    _flag(parser, "aws.region", default="", help="AWS region")
    _flag(parser, "project-id", default="ops-tools-1203", help="Project ID to target.")
    _flag(
        parser,
        "azure.subscription-id",
        default="",
        help="Azure subscription ID to pull data from.",
    )
    _flag(parser, "gcp.default-discount", type=int, default=19, help="GCP default discount")
    _flag(parser, "scrape-interval", type=_duration, default=timedelta(hours=1),
          help="Scrape interval")
    _flag(parser, "collector-interval", type=_duration, default=timedelta(minutes=1),
          help="Context timeout for collectors")
    _flag(parser, "server-timeout", type=_duration, default=timedelta(seconds=30),
          help="Server timeout")
    _flag(parser, "server.address", default=":8080",
          help="Default address for the server to listen on.")
    _flag(parser, "server.path", default="/metrics",
          help="Default path for the server to listen on.")
    _flag(parser, "log.level", default="info", help="Log level: debug, info, warn, error")
    _flag(parser, "log.output", default="stdout", help="Log output stream: stdout, stderr, file")
    _flag(parser, "log.type", default="text", help="Log type: json, text")
    return parser


def config_from_args(args: argparse.Namespace) -> Config:
    """Build a Config from parsed command line options."""
    config = Config(provider=args.provider, project_id=args.project_id)
    config.aws.profile = args.aws_profile
    config.aws.region = args.aws_region
    config.aws.services = StringSliceFlag(args.aws_services or [])
    config.gcp.projects = StringSliceFlag(args.gcp_bucket_projects or [])
    config.gcp.services = StringSliceFlag(args.gcp_services or [])
    config.gcp.default_gcs_discount = args.gcp_default_discount
    config.azure.services = StringSliceFlag(args.azure_services or [])
    config.azure.subscription_id = args.azure_subscription_id
    config.collector.scrape_interval = args.scrape_interval
    config.collector.timeout = args.collector_interval
    config.server.timeout = args.server_timeout
    config.server.address = args.server_address
    config.server.path = args.server_path
    config.logger_opts.level = args.log_level
    config.logger_opts.output = args.log_output
    config.logger_opts.type = args.log_type
    return config


def _level_name(record: logging.LogRecord) -> str:
    return "WARN" if record.levelno == logging.WARNING else record.levelname


def _timestamp(record: logging.LogRecord) -> str:
    return datetime.fromtimestamp(record.created, timezone.utc).isoformat()


class _TextFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        line = (
            f"time={_timestamp(record)} level={_level_name(record)} "
            f"msg={json.dumps(record.getMessage(), ensure_ascii=False)}"
        )
        if record.exc_info:
            line += " error=" + json.dumps(self.formatException(record.exc_info))
        return line


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "time": _timestamp(record),
            "level": _level_name(record),
            "msg": record.getMessage(),
            "logger": record.name,
        }
        if record.exc_info:
            entry["error"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False)


def _handler_for_output(output: str) -> logging.Handler:
    if output == "stdout":
        return logging.StreamHandler(sys.stdout)
    if output == "stderr":
        return logging.StreamHandler(sys.stderr)
    return logging.FileHandler(output, encoding="utf-8")


def setup_logger(level: str, output: str, log_type: str) -> logging.Logger:
    """Configure the package logger: level, destination (stdout, stderr or a file path) and format."""
    logger = logging.getLogger("cloudcost")
    for old in list(logger.handlers):
        logger.removeHandler(old)
        if isinstance(old, logging.FileHandler):
            old.close()
    handler = _handler_for_output(output)
    handler.setFormatter(_JsonFormatter() if log_type == "json" else _TextFormatter())
    logger.addHandler(handler)
    logger.setLevel(_LEVELS.get(level.lower(), logging.INFO))
    logger.propagate = False
    return logger


def select_provider(config: Config, client_factory: ClientFactory | None) -> AWSProvider:
    """Build the provider named in the config."""
    if config.provider == "aws":
        return new_aws_provider(
            AWSConfig(
                services=str(config.aws.services).split(","),
                region=config.aws.region,
                profile=config.aws.profile,
                scrape_interval=config.collector.scrape_interval,
                logger=config.logger,
            ),
            client_factory,
        )
    raise ValueError("unknown provider")


def create_registry(provider: AWSProvider) -> Registry:
    """Return a registry holding the provider and its collectors' metrics."""
    registry = Registry()
    registry.register(provider)
    provider.register_collectors(registry)
    return registry


def make_app(
    config: Config, registry: Registry
) -> Callable[[dict[str, Any], Callable[..., Any]], Iterable[bytes]]:
    """Return a WSGI app serving metrics at the configured path and the landing page."""
    home = home_page_handler(config.server.path)
    metrics_path = config.server.path

    def app(environ: dict[str, Any], start_response: Callable[..., Any]) -> Iterable[bytes]:
        if environ.get("PATH_INFO", "/") == metrics_path:
            body = exposition(registry).encode("utf-8")
            start_response(
                "200 OK",
                [("Content-Type", _CONTENT_TYPE), ("Content-Length", str(len(body)))],
            )
            return [body]
        return home(environ, start_response)

    return app


def _split_address(address: str) -> tuple[str, int]:
    host, _, port = address.rpartition(":")
    if not port.isdigit():
        raise ValueError(f"invalid server address {address!r}")
    return host.strip("[]"), int(port)


def run_server(config: Config, provider: AWSProvider, logger: logging.Logger) -> None:
    """Serve until SIGINT or SIGTERM, then shut down within the server timeout."""
    app = make_app(config, create_registry(provider))
    host, port = _split_address(config.server.address)

    class _Handler(WSGIRequestHandler):
        def log_message(self, format: str, *args: Any) -> None:  # noqa: A002
            logger.debug(format, *args)

    try:
        server = make_server(host, port, app, handler_class=_Handler)
    except OSError as err:
        raise RuntimeError(f"error running server: {err}") from err

    with server:
        stop = threading.Event()
        failure: list[BaseException] = []

        def serve() -> None:
            try:
                server.serve_forever()
            except BaseException as err:  # reported to the caller below
                failure.append(err)
            finally:
                stop.set()

        def on_signal(signum: int, frame: Any) -> None:
            stop.set()

        previous: dict[int, Any] = {}
        if threading.current_thread() is threading.main_thread():
            for sig in (signal.SIGINT, signal.SIGTERM):
                previous[sig] = signal.signal(sig, on_signal)

        thread = threading.Thread(target=serve, daemon=True)
        thread.start()
        logger.info("Starting server (address=%s, path=%s)", config.server.address,
                    config.server.path)
        try:
            while not stop.wait(0.5):
                pass
        finally:
            for sig, handler in previous.items():
                signal.signal(sig, handler)

        if failure:
            raise RuntimeError(f"error running server: {failure[0]}") from failure[0]

        logger.info("Shutting down server")
        closer = threading.Thread(target=server.shutdown, daemon=True)
        closer.start()
        closer.join(config.server.timeout.total_seconds())
        if closer.is_alive():
            raise RuntimeError("error shutting down server: timed out")


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    config = config_from_args(args)
    logger = setup_logger(config.logger_opts.level, config.logger_opts.output,
                          config.logger_opts.type)
    logger.info("Starting cloudcost-exporter")
    config.logger = logger

    try:
        provider = select_provider(config, None)
    except Exception as err:
        logger.error("Error selecting provider: %s (provider=%s)", err, config.provider)
        return 1

    try:
        run_server(config, provider, logger)
    except Exception as err:
        logger.error("Error running server: %s", err)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())