import re
import threading
import urllib.error
import urllib.request

import pytest
from prometheus_client import CollectorRegistry

from speedtest_prom_exporter.exporter import SpeedtestMetricsPublisher
from speedtest_prom_exporter.main import load_config, parse_duration, parse_listen_address
from speedtest_prom_exporter.server import MetricsServer
from speedtest_prom_exporter.service import ClientInfo, MeasurementResult


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("30m", 1800.0),
        ("1h30m", 5400.0),
        ("90s", 90.0),
        ("500ms", 0.5),
        ("2.5m", 150.0),
        ("45", 45.0),
        ("0s", 0.0),
    ],
)
def test_parse_duration_accepts_go_style_durations(raw: str, expected: float) -> None:
    assert parse_duration(raw) == pytest.approx(expected)


@pytest.mark.parametrize("raw", ["", "soon", "10x", "-5s", "m", "5m ago", "inf"])
def test_parse_duration_rejects_garbage(raw: str) -> None:
    with pytest.raises(ValueError):
        parse_duration(raw)


def test_parse_listen_address_variants() -> None:
    assert parse_listen_address(":9101") == ("", 9101)
    assert parse_listen_address("127.0.0.1:8080") == ("127.0.0.1", 8080)
    assert parse_listen_address("[::1]:9101") == ("::1", 9101)
    with pytest.raises(ValueError):
        parse_listen_address("9101")
    with pytest.raises(ValueError):
        parse_listen_address("localhost:http")


def test_load_config_defaults(monkeypatch) -> None:
    for name in (
        "SPEEDTEST_INTERVAL",
        "SPEEDTEST_LISTEN",
        "SPEEDTEST_SERVER_ID",
        "SPEEDTEST_DEBUG",
        "SPEEDTEST_LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)
    config = load_config([])
    assert config.metrics_path == "/metrics"
    assert (config.listen_address, config.listen_port) == ("", 9101)
    assert config.interval_seconds == 1800.0
    assert config.retry_interval_seconds == 60.0
    assert config.speedtest.speedtest_bin == "speedtest-cli"
    assert config.speedtest.insecure is False
    assert config.speedtest.server_id == 0
    assert config.speedtest.timeout_seconds is None
    assert config.speedtest.discovery_enabled is False
    assert config.log_level == "INFO"


def test_load_config_flags_and_environment(monkeypatch) -> None:
    monkeypatch.setenv("SPEEDTEST_MAX_DISTANCE_KM", "50")
    monkeypatch.setenv("SPEEDTEST_INTERVAL", "1h")
    config = load_config(
        [
            "-l",
            "127.0.0.1:9200",
            "-I",
            "--server-name-filter",
            "Fiber.*",
            "--timeout",
            "2m",
            "--debug",
        ]
    )
    assert (config.listen_address, config.listen_port) == ("127.0.0.1", 9200)
    assert config.interval_seconds == 3600.0
    assert config.speedtest.insecure is True
    assert config.speedtest.max_distance_km == 50
    assert config.speedtest.server_name_filter == "Fiber.*"
    assert config.speedtest.timeout_seconds == 120.0
    assert config.speedtest.discovery_enabled is True
    assert config.speedtest.debug is True
    assert config.log_level == "DEBUG"


@pytest.mark.parametrize(
    "argv",
    [
        ["--server-name-filter", "("],
        ["--max-distance-km", "-1"],
        ["--interval", "often"],
        ["--listen", "nowhere"],
    ],
)
def test_load_config_rejects_invalid_values(argv: list) -> None:
    with pytest.raises(SystemExit):
        load_config(argv)


def _fetch(url: str) -> tuple[int, str]:
    try:
        with urllib.request.urlopen(url, timeout=5) as response:
            return response.status, response.read().decode("utf-8")
    except urllib.error.HTTPError as error:
        return error.code, ""


def test_metrics_server_serves_configured_path_only() -> None:
    publisher = SpeedtestMetricsPublisher(registry=CollectorRegistry())
    publisher.publish(
        MeasurementResult(
            download=100000000.0,
            upload=50000000.0,
            ping=15.2,
            client=ClientInfo(ip="1.2.3.4", isp="ExampleISP", country="US"),
        )
    )
    server = MetricsServer(publisher, host="127.0.0.1", port=0, metrics_path="/speed/metrics")
    server.start()
    try:
        base = f"http://127.0.0.1:{server.server_port}"
        status, body = _fetch(f"{base}/speed/metrics")
        assert status == 200
        assert "speedtest_ping_msec 15.2" in body
        assert 'client_ip="1.2.3.4"' in body
        status, _ = _fetch(f"{base}/metrics")
        assert status == 404
    finally:
        server.stop()


def _published(ip: str = "1.2.3.4") -> SpeedtestMetricsPublisher:
    publisher = SpeedtestMetricsPublisher(registry=CollectorRegistry())
    publisher.publish(
        MeasurementResult(
            download=100000000.0,
            upload=50000000.0,
            ping=15.2,
            client=ClientInfo(ip=ip, isp="ExampleISP", country="US"),
        )
    )
    return publisher


def _scrape(server: MetricsServer) -> str:
    statuses: list[str] = []

    def start_response(status: str, headers: list, exc_info=None) -> None:
        statuses.append(status)

    environ = {"REQUEST_METHOD": "GET", "PATH_INFO": server.metrics_path, "QUERY_STRING": ""}
    body = b"".join(server.app(environ, start_response)).decode("utf-8")
    assert statuses == ["200 OK"]
    return body


def test_metrics_server_empty_host_accepts_ipv4_clients() -> None:
    server = MetricsServer(_published(), host="", port=0)
    server.start()
    try:
        assert server.bound_host in {"::", "0.0.0.0"}
        status, body = _fetch(f"http://127.0.0.1:{server.server_port}/metrics")
        assert status == 200
        assert 'client_ip="1.2.3.4"' in body
    finally:
        server.stop()


def test_scrape_waits_for_publisher_lock() -> None:
    publisher = _published()
    server = MetricsServer(publisher, port=0)
    bodies: list[str] = []
    scraper = threading.Thread(target=lambda: bodies.append(_scrape(server)), daemon=True)

    with publisher.lock:
        scraper.start()
        scraper.join(timeout=0.3)
        assert scraper.is_alive()
        assert bodies == []

    scraper.join(timeout=5)
    assert not scraper.is_alive()
    assert len(bodies) == 1
    assert 'client_ip="1.2.3.4"' in bodies[0]


def test_scrapes_never_mix_labels_from_concurrent_publishes() -> None:
    publisher = _published("10.0.0.1")
    server = MetricsServer(publisher, port=0)
    done = threading.Event()

    def publish_loop() -> None:
        for index in range(300):
            publisher.publish(
                MeasurementResult(
                    download=float(index),
                    upload=float(index),
                    ping=1.0,
                    client=ClientInfo(ip=f"10.0.0.{index % 2 + 1}"),
                )
            )
        done.set()

    publisher_thread = threading.Thread(target=publish_loop, daemon=True)
    publisher_thread.start()
    scrapes = 0
    while not done.is_set() or scrapes < 10:
        body = _scrape(server)
        client_ips = set(re.findall(r'client_ip="([^"]*)"', body))
        assert len(client_ips) == 1
        assert len(re.findall(r"^speedtest_speed_bits_per_second\{", body, re.MULTILINE)) == 2
        scrapes += 1
    publisher_thread.join(timeout=5)
