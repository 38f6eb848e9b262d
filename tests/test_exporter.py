import json
import logging
from datetime import timedelta

import pytest

from cloudcost.aws_provider import AWSConfig, AWSProvider
from cloudcost.config import Config, StringSliceFlag
from cloudcost.exporter import (
    build_parser,
    config_from_args,
    create_registry,
    main,
    make_app,
    select_provider,
    setup_logger,
)


def parse(argv):
    return config_from_args(build_parser().parse_args(argv))


class QuietCollector:
    def name(self):
        return "test"

    def register(self, registry):
        pass

    def describe(self):
        return []

    def collect(self):
        return []


def call(app, path):
    captured = {}

    def start_response(status, headers):
        captured["status"] = status
        captured["headers"] = dict(headers)

    body = b"".join(app({"PATH_INFO": path, "REQUEST_METHOD": "GET"}, start_response))
    return captured["status"], captured["headers"], body.decode("utf-8")


def test_defaults():
    config = parse([])
    assert config.provider == "aws"
    assert config.project_id == "ops-tools-1203"
    assert config.server.address == ":8080"
    assert config.server.path == "/metrics"
    assert config.collector.scrape_interval == timedelta(hours=1)
    assert config.collector.timeout == timedelta(minutes=1)
    assert config.server.timeout == timedelta(seconds=30)
    assert config.gcp.default_gcs_discount == 19
    assert str(config.aws.services) == ""


def test_repeated_services_and_equals_syntax():
    config = parse(["-aws.services", "S3", "--aws.services=EC2", "-provider=gcp"])
    assert str(config.aws.services) == "S3,EC2"
    assert config.provider == "gcp"


def test_durations_parse():
    config = parse(["-scrape-interval", "90s", "--server-timeout", "1h30m"])
    assert config.collector.scrape_interval == timedelta(seconds=90)
    assert config.server.timeout == timedelta(hours=1, minutes=30)


def test_invalid_duration_rejected():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["-scrape-interval", "soon"])


def test_select_unknown_provider():
    with pytest.raises(ValueError, match="unknown provider"):
        select_provider(Config(provider="nowhere"), lambda *a: None)


def test_select_aws_provider_builds_collectors():
    calls = []

    def factory(service, region, profile):
        calls.append(service)
        return object()

    config = Config()
    config.aws.services = StringSliceFlag(["S3"])
    provider = select_provider(config, factory)
    assert [c.name() for c in provider.collectors] == ["S3"]
    assert calls == ["ce"]


def test_select_aws_provider_without_services():
    provider = select_provider(Config(), lambda *a: object())
    assert provider.collectors == []


def test_registry_exposes_provider_metrics():
    provider = AWSProvider(AWSConfig(), [QuietCollector()], None)
    text = create_registry(provider)
    from cloudcost.metrics import exposition

    rendered = exposition(text)
    assert 'cloudcost_exporter_last_scrape_error{provider="aws"} 0' in rendered
    assert (
        'cloudcost_exporter_collector_last_scrape_error{collector="test",provider="aws"} 0'
        in rendered
    )


def test_app_routes():
    provider = AWSProvider(AWSConfig(), [QuietCollector()], None)
    app = make_app(Config(), create_registry(provider))

    status, _, body = call(app, "/")
    assert status.startswith("200")
    assert 'href="/metrics"' in body

    status, headers, body = call(app, "/metrics")
    assert status.startswith("200")
    assert headers["Content-Type"].startswith("text/plain")
    assert "# TYPE cloudcost_exporter_last_scrape_error gauge" in body

    status, _, body = call(app, "/asdf")
    assert status.startswith("404")
    assert "not found" in body


def test_setup_logger_levels():
    assert setup_logger("debug", "stderr", "text").level == logging.DEBUG
    assert setup_logger("warn", "stderr", "text").level == logging.WARNING
    assert setup_logger("error", "stderr", "text").level == logging.ERROR


def test_setup_logger_json_output(capsys):
    logger = setup_logger("info", "stdout", "json")
    logger.info("hello world")
    line = capsys.readouterr().out.strip().splitlines()[-1]
    entry = json.loads(line)
    assert entry["msg"] == "hello world"
    assert entry["level"] == "INFO"


def test_setup_logger_text_output(capsys):
    logger = setup_logger("info", "stdout", "text")
    logger.warning("careful")
    out = capsys.readouterr().out
    assert 'msg="careful"' in out
    assert "level=WARN" in out


def test_main_fails_for_unknown_provider():
    assert main(["-provider", "nowhere", "-log.output", "stderr"]) == 1
    setup_logger("info", "stderr", "text")