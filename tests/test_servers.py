import json
import os
import threading
import urllib.error
import urllib.request

import pytest
from prometheus_client.parser import text_string_to_metric_families

from conftest import write_daqs_file, daqs_row
from tigo_daqs_exporter import (
    HealthCheck,
    MetricsServer,
    ModuleColumn,
    Quantity,
)


def fetch(port, path="/", method="GET"):
    request = urllib.request.Request(f"http://127.0.0.1:{port}{path}", method=method)
    with urllib.request.urlopen(request, timeout=5) as response:
        return response.status, response.headers, response.read()


@pytest.fixture
def metrics_server(state, logger):
    server = MetricsServer("127.0.0.1", 0, state, logger)
    assert server.start()
    yield server
    server.stop()


@pytest.fixture
def health_check(config, collector, logger):
    server = HealthCheck(config, collector, logger, host="127.0.0.1", port=0)
    assert server.start()
    yield server
    server.stop()


def test_metrics_endpoint_serves_current_state(metrics_server, state):
    state.update_module(Quantity.VOLTS, 0, 12.1)
    state.set_timestamp(1_700_000_000)

    status, headers, body = fetch(metrics_server.server_port, "/metrics")

    assert status == 200
    assert headers["Content-Type"].startswith("text/plain")
    text = body.decode()
    assert 'module_volts{name="A1"} 12.1' in text
    assert 'timestamp{local="cca"} 1.7e+09' in text


@pytest.mark.parametrize("path, method", [
    ("/", "GET"),
    ("/metrics", "GET"),
    ("/anything/else", "GET"),
    ("/favicon.ico", "GET"),
    ("/", "OPTIONS"),
    ("/metrics?name[]=module_power", "GET"),
])
def test_metrics_endpoint_ignores_path(metrics_server, state, path, method):
    state.update_module(Quantity.VOLTS, 0, 12.1)
    state.update_module(Quantity.RSSI, 1, -58)

    status, headers, body = fetch(metrics_server.server_port, path, method)

    assert status == 200
    assert headers["Content-Type"].startswith("text/plain")
    assert b'module_volts{name="A1"} 12.1' in body
    assert b'module_rssi{name="A2"} -58.0' in body


def test_metrics_endpoint_reflects_updates_between_scrapes(metrics_server, state):
    state.update_module(Quantity.POWER, 0, 100.0)
    _, _, first = fetch(metrics_server.server_port)
    state.update_module(Quantity.POWER, 0, None)
    _, _, second = fetch(metrics_server.server_port)

    assert b'module_power{name="A1"}' in first
    assert b'module_power{name="A1"}' not in second


def test_metrics_server_stop_releases_port(state, logger):
    server = MetricsServer("127.0.0.1", 0, state, logger)
    assert server.start()
    port = server.server_port
    server.stop()

    assert server.server_port is None
    with pytest.raises(urllib.error.URLError):
        fetch(port)


def test_start_fails_on_port_in_use(metrics_server, state, logger):
    other = MetricsServer("127.0.0.1", metrics_server.server_port, state, logger)
    assert other.start() is False


def test_health_reports_collection(health_check, collector, data_dir):
    path = write_daqs_file(
        data_dir / "daqs.csv",
        [daqs_row("1700000000", [{ModuleColumn.VOLTS_IN: "30.1"}])],
        module_count=1,
    )
    collector.poll()

    status, headers, body = fetch(health_check.server_port, "/health")
    document = json.loads(body)

    assert status == 200
    assert headers["Content-Type"] == "application/json"
    assert document["service"]["status"] == "healthy"
    assert document["stats"]["collection"]["successful"] == 1
    assert document["data"] == {
        "current_file": str(path),
        "module_count": 1,
        "dataset_timestamp": 1700000000.0,
    }


def test_health_unhealthy_after_repeated_skips(health_check, collector, config, data_dir):
    (data_dir / "daqs.csv").write_text("")
    for _ in range(config.failure_threshold):
        collector.poll()

    with pytest.raises(urllib.error.HTTPError) as excinfo:
        fetch(health_check.server_port, "/health")

    assert excinfo.value.code == 503
    document = json.loads(excinfo.value.read())
    assert document["service"]["status"] == "unhealthy"
    assert "header" in document["stats"]["collection"]["last_error"]


def test_health_unknown_path_is_404(health_check):
    with pytest.raises(urllib.error.HTTPError) as excinfo:
        fetch(health_check.server_port, "/nope")
    assert excinfo.value.code == 404


def test_scrapes_during_collector_updates_stay_consistent(metrics_server, collector, data_dir):
    first = [daqs_row("1700000000", [
        {ModuleColumn.VOLTS_IN: "12.1", ModuleColumn.POWER_IN: "95", ModuleColumn.RSSI: "-60"},
        {ModuleColumn.VOLTS_IN: "11.9", ModuleColumn.POWER_IN: "100", ModuleColumn.TEMP: "41"},
    ])]
    second = [daqs_row("1700000010", [
        {ModuleColumn.VOLTS_IN: "13.5", ModuleColumn.POWER_IN: "110", ModuleColumn.RSSI: "-62"},
        {},
    ])]
    allowed = {
        ("module_volts", "A1", 12.1), ("module_power", "A1", 95.0), ("module_rssi", "A1", -60.0),
        ("module_volts", "A2", 11.9), ("module_power", "A2", 100.0), ("module_temp", "A2", 41.0),
        ("module_volts", "A1", 13.5), ("module_power", "A1", 110.0), ("module_rssi", "A1", -62.0),
        ("timestamp", "cca", 1700000000.0), ("timestamp", "cca", 1700000010.0),
    }
    target = data_dir / "daqs.csv"
    staging = data_dir / "daqs.tmp"
    write_daqs_file(target, first, module_count=2)
    collector.poll()

    done = threading.Event()
    errors = []

    def rotate():
        try:
            for n in range(200):
                write_daqs_file(staging, second if n % 2 == 0 else first, module_count=2)
                os.replace(staging, target)
                collector.poll()
        except Exception as e:
            errors.append(e)
        finally:
            done.set()

    writer = threading.Thread(target=rotate)
    writer.start()
    scrapes = 0
    try:
        while not done.is_set() or scrapes < 20:
            status, _, body = fetch(metrics_server.server_port)
            assert status == 200
            for family in text_string_to_metric_families(body.decode()):
                for sample in family.samples:
                    label = sample.labels.get("name", sample.labels.get("local"))
                    assert (sample.name, label, sample.value) in allowed
            scrapes += 1
    finally:
        writer.join(timeout=30)

    assert not errors
    assert collector.stats.skipped == 0
