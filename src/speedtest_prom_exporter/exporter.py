from __future__ import annotations

import threading

from prometheus_client import CollectorRegistry, Gauge

from speedtest_prom_exporter.service import MeasurementResult


SPEED_LABELS = (
    "direction",
    "client_ip",
    "client_isp",
    "client_country",
    "server_sponsor",
    "server_host",
    "server_country",
)


class SpeedtestMetricsPublisher:
    """Holds the latest measurement as gauges.

    Every write replaces the whole label set of the speed gauge while holding
    ``lock``; the metrics endpoint renders under the same lock.
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        if registry is None:
            registry = CollectorRegistry()
        self.registry = registry
        self.lock = threading.Lock()

        self.speed_bits_per_second = Gauge(
            "speedtest_speed_bits_per_second",
            "SpeedTest.net upload and download speed",
            SPEED_LABELS,
            registry=self.registry,
        )
        self.ping_msec = Gauge(
            "speedtest_ping_msec",
            "SpeedTest.net ping latency in milliseconds",
            registry=self.registry,
        )

    def publish(self, result: MeasurementResult) -> None:
        labels = {
            "client_ip": result.client.ip,
            "client_isp": result.client.isp,
            "client_country": result.client.country,
            "server_sponsor": result.server.sponsor,
            "server_host": result.server.host,
            "server_country": result.server.country,
        }
        self._replace(labels, upload=result.upload, download=result.download, ping=result.ping)

    def publish_zero(self) -> None:
        labels = {name: "" for name in SPEED_LABELS if name != "direction"}
        self._replace(labels, upload=0.0, download=0.0, ping=0.0)

    def _replace(self, labels: dict[str, str], *, upload: float, download: float, ping: float) -> None:
        with self.lock:
            self.speed_bits_per_second.clear()
            self.speed_bits_per_second.labels(direction="upload", **labels).set(upload)
            self.speed_bits_per_second.labels(direction="download", **labels).set(download)
            self.ping_msec.set(ping)
