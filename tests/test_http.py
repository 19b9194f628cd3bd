"""Tests for the scrape endpoint."""

import socket
import urllib.error
import urllib.request
from wsgiref.util import setup_testing_defaults

import pytest

from mini_metric_exporter import (
    MetricsServer,
    ScrapeOrchestrator,
    load_rules,
    make_scrape_app,
)


def call(app, path="/metrics", method="GET"):
    environ = {"PATH_INFO": path, "REQUEST_METHOD": method}
    setup_testing_defaults(environ)
    response = {}

    def start_response(status, headers, exc_info=None):
        response["status"] = status
        response["headers"] = dict(headers)

    body = b"".join(app(environ, start_response))
    return response["status"], response["headers"], body.decode()


@pytest.fixture
def build_app(registry, logger):
    def build(rules, metrics_path="/metrics"):
        rule_set = load_rules(rules, registry, logger)
        orchestrator = ScrapeOrchestrator(rule_set, logger)
        return make_scrape_app(orchestrator, registry, logger, metrics_path=metrics_path)
    return build


def test_scrape_renders_rule_values(build_app):
    app = build_app({
        "disk_free": {"description": "Free disk ratio", "command": "echo '0.73'"},
        "temp": {"command": "echo 'sensor=\"cpu\" 42.5'"},
    })
    status, headers, body = call(app)

    assert status.startswith("200")
    assert headers["Content-Type"].startswith("text/plain")
    assert "# HELP disk_free Free disk ratio" in body
    assert "# TYPE disk_free gauge" in body
    assert "\ndisk_free 0.73\n" in body
    assert 'temp{sensor="cpu"} 42.5' in body


def test_every_request_runs_a_scrape(build_app, tmp_path):
    script = tmp_path / "source.sh"
    script.write_text("echo 0.73\n")
    app = build_app({"disk_free": {"command": f"sh {script}"}})

    assert "disk_free 0.73" in call(app)[2]
    script.write_text("exit 1\n")
    assert "disk_free NaN" in call(app)[2]


def test_unknown_path_is_404(build_app):
    status, _, _ = call(build_app({}), path="/other")
    assert status.startswith("404")


def test_post_is_405(build_app):
    status, headers, _ = call(build_app({}), method="POST")
    assert status.startswith("405")
    assert "GET" in headers["Allow"]


def test_custom_metrics_path(build_app):
    app = build_app({"x": {"command": "echo 1"}}, metrics_path="/probe/")
    status, _, body = call(app, path="/probe")
    assert status.startswith("200")
    assert "x 1.0" in body


def test_metrics_server_serves_over_http(build_app, logger):
    app = build_app({"disk_free": {"command": "echo 0.5"}})
    server = MetricsServer(app, "127.0.0.1", 0, logger)
    server.start()
    try:
        host, port = server.server_address
        with urllib.request.urlopen(f"http://{host}:{port}/metrics", timeout=10) as response:
            body = response.read().decode()
        assert "disk_free 0.5" in body

        with pytest.raises(urllib.error.HTTPError) as excinfo:
            urllib.request.urlopen(f"http://{host}:{port}/nope", timeout=10)
        assert excinfo.value.code == 404
    finally:
        server.stop()


def test_metrics_server_bind_failure_raises(build_app, logger):
    app = build_app({})
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as busy:
        busy.bind(("127.0.0.1", 0))
        busy.listen()
        port = busy.getsockname()[1]
        with pytest.raises(OSError):
            MetricsServer(app, "127.0.0.1", port, logger).start()
