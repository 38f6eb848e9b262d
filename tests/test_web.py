from wsgiref.util import setup_testing_defaults

import pytest

from cloudcost.web import home_page, home_page_handler


def _request(app, method, path):
    environ = {"REQUEST_METHOD": method, "PATH_INFO": path}
    setup_testing_defaults(environ)
    captured = {}

    def start_response(status, headers):
        captured["status"] = status
        captured["headers"] = headers

    body = b"".join(app(environ, start_response)).decode("utf-8")
    return int(captured["status"].split()[0]), body


@pytest.mark.parametrize(
    "method, path, code, texts",
    [
        (
            "GET",
            "/",
            200,
            [
                "<html>",
                "<head><title>Cloudcost Exporter</title></head>",
                'href="/metrics"',
                "</html>",
            ],
        ),
        ("GET", "/asdf", 404, ["not found"]),
    ],
)
def test_landing_page(method, path, code, texts):
    app = home_page_handler("/metrics")
    status, body = _request(app, method, path)
    assert status == code
    for text in texts:
        assert text in body


def test_home_page_uses_given_path():
    page = home_page("/custom")
    assert 'href="/custom"' in page
    assert "/metrics" not in page