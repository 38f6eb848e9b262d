"""Landing page served at the root of the exporter."""

from __future__ import annotations

import json
from typing import Any, Callable, Iterable

_HOMEPAGE_TEMPLATE = """<!doctype html>
<html>
  <head><title>Cloudcost Exporter</title></head>
  <body>
    <h1>Cloudcost Exporter</h1>
    <p><a href=%s>Metrics</a></p>
  </body>
</html>"""

_NOT_FOUND_BODY = b"404 page not found\n"


def home_page(metrics_path: str) -> str:
    """Return the landing page HTML linking to the metrics path."""
    return _HOMEPAGE_TEMPLATE % json.dumps(metrics_path, ensure_ascii=False)


def home_page_handler(
    metrics_path: str,
) -> Callable[[dict[str, Any], Callable[..., Any]], Iterable[bytes]]:
    """Return a WSGI app serving the landing page at "/" and 404 elsewhere."""
    page = home_page(metrics_path).encode("utf-8")

    def app(environ: dict[str, Any], start_response: Callable[..., Any]) -> Iterable[bytes]:
        if environ.get("PATH_INFO", "/") == "/":
            start_response(
                "200 OK",
                [
                    ("Content-Type", "text/html; charset=utf-8"),
                    ("Content-Length", str(len(page))),
                ],
            )
            return [page]
        start_response(
            "404 Not Found",
            [
                ("Content-Type", "text/plain; charset=utf-8"),
                ("X-Content-Type-Options", "nosniff"),
                ("Content-Length", str(len(_NOT_FOUND_BODY))),
            ],
        )
        return [_NOT_FOUND_BODY]

    return app