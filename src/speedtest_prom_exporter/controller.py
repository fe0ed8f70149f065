from __future__ import annotations

import enum
import logging
import re
import threading
import time
from dataclasses import dataclass
from typing import Callable, Sequence

from speedtest_prom_exporter.exporter import SpeedtestMetricsPublisher
from speedtest_prom_exporter.service import (
    MeasurementResult,
    ProviderThrottlingError,
    ServerDescriptor,
    SpeedtestConfig,
    SpeedtestError,
    list_servers,
    run_measurement,
    select_servers,
)


LOGGER = logging.getLogger("speedtest_prom_exporter.controller")
THROTTLE_BACKOFF_SECONDS = 60.0


class CycleOutcome(enum.Enum):
    SUCCESS = "success"
    FAILED = "failed"
    THROTTLED = "throttled"
    DISCOVERY_FAILED = "discovery_failed"


@dataclass(frozen=True)
class CycleResult:
    outcome: CycleOutcome
    sleep_seconds: float
    server_ids: tuple[int, ...] = ()
    result: MeasurementResult | None = None
    error: str | None = None
    duration_seconds: float | None = None


MeasureRunner = Callable[[SpeedtestConfig, Sequence[int]], MeasurementResult]
ListRunner = Callable[[SpeedtestConfig], list[ServerDescriptor]]


class MeasurementController:
    def __init__(
        self,
        config: SpeedtestConfig,
        publisher: SpeedtestMetricsPublisher,
        *,
        interval_seconds: float,
        retry_interval_seconds: float,
        throttle_backoff_seconds: float = THROTTLE_BACKOFF_SECONDS,
        measure: MeasureRunner = run_measurement,
        discover: ListRunner = list_servers,
        wait: Callable[[float], bool] | None = None,
    ) -> None:
        self.config = config
        self.publisher = publisher
        self.interval_seconds = interval_seconds
        self.retry_interval_seconds = retry_interval_seconds
        self.throttle_backoff_seconds = throttle_backoff_seconds
        self._measure = measure
        self._discover = discover
        self._stop_event = threading.Event()
        self._wait = wait if wait is not None else self._stop_event.wait
        self._name_filter = re.compile(config.server_name_filter) if config.server_name_filter else None

    def stop(self) -> None:
        self._stop_event.set()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def _pinned_server_ids(self) -> tuple[int, ...]:
        if self.config.server_id > 0:
            return (self.config.server_id,)
        return ()

    def _discover_server_ids(self) -> tuple[int, ...]:
        servers = self._discover(self.config)
        LOGGER.debug("discovered %d speedtest servers", len(servers))
        selected = select_servers(
            servers,
            name_pattern=self._name_filter,
            max_distance_km=self.config.max_distance_km,
        )
        return tuple(selected or ())

    def run_cycle(self) -> CycleResult:
        monotonic_start = time.monotonic()

        if self.config.discovery_enabled:
            try:
                server_ids = self._discover_server_ids()
            except SpeedtestError as error:
                LOGGER.warning(
                    "speedtest server discovery failed, retrying in %.1fs: %s",
                    self.retry_interval_seconds,
                    error,
                )
                self.publisher.publish_zero()
                return CycleResult(
                    outcome=CycleOutcome.DISCOVERY_FAILED,
                    sleep_seconds=self.retry_interval_seconds,
                    error=str(error),
                    duration_seconds=time.monotonic() - monotonic_start,
                )
            LOGGER.info("selected speedtest servers: %s", ", ".join(str(server_id) for server_id in server_ids))
        else:
            server_ids = self._pinned_server_ids()

        LOGGER.info("running speed test...")
        try:
            result = self._measure(self.config, server_ids)
        except ProviderThrottlingError as error:
            LOGGER.warning("retryable speedtest error, sleeping for %.1fs: %s", self.throttle_backoff_seconds, error)
            return CycleResult(
                outcome=CycleOutcome.THROTTLED,
                sleep_seconds=self.throttle_backoff_seconds,
                server_ids=server_ids,
                error=str(error),
                duration_seconds=time.monotonic() - monotonic_start,
            )
        except SpeedtestError as error:
            LOGGER.error("failed to run speed test: %s", error)
            return CycleResult(
                outcome=CycleOutcome.FAILED,
                sleep_seconds=self.interval_seconds,
                server_ids=server_ids,
                error=str(error),
                duration_seconds=time.monotonic() - monotonic_start,
            )

        self.publisher.publish(result)
        LOGGER.info(
            "speed test complete: download=%.0f bit/s upload=%.0f bit/s ping=%.3f ms server=%s",
            result.download,
            result.upload,
            result.ping,
            result.server.host or result.server.sponsor or "<unknown>",
        )
        return CycleResult(
            outcome=CycleOutcome.SUCCESS,
            sleep_seconds=self.interval_seconds,
            server_ids=server_ids,
            result=result,
            duration_seconds=time.monotonic() - monotonic_start,
        )

    def run_forever(self) -> None:
        while not self.stopped:
            cycle = self.run_cycle()
            LOGGER.info("sleeping %.1fs...", cycle.sleep_seconds)
            if self._wait(cycle.sleep_seconds) or self.stopped:
                break
        LOGGER.info("measurement loop stopped")
