from __future__ import annotations

import argparse
import logging
import os
import re
from dataclasses import dataclass
from typing import Sequence

from speedtest_prom_exporter.controller import MeasurementController
from speedtest_prom_exporter.exporter import SpeedtestMetricsPublisher
from speedtest_prom_exporter.server import MetricsServer
from speedtest_prom_exporter.service import SpeedtestConfig


LOGGER = logging.getLogger("speedtest_prom_exporter")
_PLAIN_SECONDS = re.compile(r"\d+(?:\.\d*)?|\.\d+")
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


@dataclass(frozen=True)
class AppConfig:
    speedtest: SpeedtestConfig
    metrics_path: str
    listen_address: str
    listen_port: int
    interval_seconds: float
    retry_interval_seconds: float
    run_once: bool
    log_level: str


def parse_duration(value: str) -> float:
    """Parse a Go-style duration ("30m", "1h30m", "500ms") or plain seconds."""
    raw = value.strip()
    if not raw:
        raise ValueError("empty duration")
    if _PLAIN_SECONDS.fullmatch(raw):
        return float(raw)

    position = 0
    seconds = 0.0
    for matched in _DURATION_PART.finditer(raw):
        if matched.start() != position:
            break
        seconds += float(matched.group(1)) * _DURATION_UNITS[matched.group(2)]
        position = matched.end()
    if position == 0 or position != len(raw):
        raise ValueError(f"invalid duration {value!r}")
    return seconds


def parse_listen_address(value: str) -> tuple[str, int]:
    raw = value.strip()
    host, separator, port_text = raw.rpartition(":")
    if not separator:
        raise ValueError(f"listen address must be host:port, got {value!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    try:
        port = int(port_text)
    except ValueError as error:
        raise ValueError(f"invalid port in listen address {value!r}") from error
    if not 0 <= port <= 65535:
        raise ValueError(f"port out of range in listen address {value!r}")
    return host, port


def _duration_arg(value: str) -> float:
    try:
        return parse_duration(value)
    except ValueError as error:
        raise argparse.ArgumentTypeError(str(error)) from error


def _non_negative_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError as error:
        raise argparse.ArgumentTypeError(f"invalid integer {value!r}") from error
    if number < 0:
        raise argparse.ArgumentTypeError(f"must not be negative: {value!r}")
    return number


def _regex_arg(value: str) -> str:
    if value:
        try:
            re.compile(value)
        except re.error as error:
            raise argparse.ArgumentTypeError(f"invalid server name filter {value!r}: {error}") from error
    return value


def _str_env(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None:
        return default
    return value


def _bool_env(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Prometheus exporter for speedtest-cli measurements")
    parser.add_argument(
        "-p",
        "--metrics-path",
        default=_str_env("SPEEDTEST_METRICS_PATH", "/metrics"),
        help="HTTP path where to expose metrics",
    )
    parser.add_argument(
        "-l",
        "--listen",
        default=_str_env("SPEEDTEST_LISTEN", ":9101"),
        help="address to listen on, as host:port; an empty host listens on all interfaces (IPv6 and IPv4)",
    )
    parser.add_argument(
        "-s",
        "--speedtest-bin",
        default=_str_env("SPEEDTEST_CLI_BIN", "speedtest-cli"),
        help="path to speedtest-cli",
    )
    # string defaults go through type= so env values are validated like flags
    parser.add_argument(
        "-i",
        "--interval",
        type=_duration_arg,
        default=_str_env("SPEEDTEST_INTERVAL", "30m"),
        help="interval between speedtest executions, e.g. 30m or 1h",
    )
    parser.add_argument(
        "--retry-interval",
        type=_duration_arg,
        default=_str_env("SPEEDTEST_RETRY_INTERVAL", "60s"),
        help="retry interval when no speedtest server could be selected",
    )
    parser.add_argument(
        "--timeout",
        type=_duration_arg,
        default=_str_env("SPEEDTEST_TIMEOUT", "0s"),
        help="kill speedtest-cli after this long (0 disables the deadline)",
    )
    parser.add_argument(
        "-I",
        "--insecure",
        action=argparse.BooleanOptionalAction,
        default=_bool_env("SPEEDTEST_INSECURE", False),
        help="use HTTP instead of HTTPS to talk to speedtest.net",
    )
    parser.add_argument(
        "--server-id",
        type=_non_negative_int,
        default=_str_env("SPEEDTEST_SERVER_ID", "0"),
        help="always test against this server ID (0 lets speedtest-cli choose)",
    )
    parser.add_argument(
        "--max-distance-km",
        type=_non_negative_int,
        default=_str_env("SPEEDTEST_MAX_DISTANCE_KM", "0"),
        help="only use servers at most this many km away (0 disables)",
    )
    parser.add_argument(
        "--server-name-filter",
        type=_regex_arg,
        default=_str_env("SPEEDTEST_SERVER_NAME_FILTER", ""),
        help="regular expression matched against server names",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="run a single speed test and exit",
    )
    parser.add_argument(
        "--log-level",
        default=_str_env("SPEEDTEST_LOG_LEVEL", "INFO"),
        help="python logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    parser.add_argument(
        "--debug",
        action=argparse.BooleanOptionalAction,
        default=_bool_env("SPEEDTEST_DEBUG", False),
        help="enable debug logging, including raw speedtest-cli output and timings",
    )
    return parser


def load_config(argv: Sequence[str] | None = None) -> AppConfig:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    try:
        listen_address, listen_port = parse_listen_address(args.listen)
    except ValueError as error:
        parser.error(str(error))

    debug = bool(args.debug)
    speedtest_config = SpeedtestConfig(
        speedtest_bin=args.speedtest_bin,
        insecure=bool(args.insecure),
        server_id=args.server_id,
        max_distance_km=args.max_distance_km,
        server_name_filter=args.server_name_filter,
        timeout_seconds=args.timeout or None,
        debug=debug,
    )
    return AppConfig(
        speedtest=speedtest_config,
        metrics_path=args.metrics_path,
        listen_address=listen_address,
        listen_port=listen_port,
        interval_seconds=args.interval,
        retry_interval_seconds=args.retry_interval,
        run_once=bool(args.once),
        log_level="DEBUG" if debug else args.log_level.upper(),
    )


def build_controller(config: AppConfig, publisher: SpeedtestMetricsPublisher) -> MeasurementController:
    if config.speedtest.server_id and config.speedtest.discovery_enabled:
        LOGGER.warning(
            "server ID %d is ignored because server filters are configured",
            config.speedtest.server_id,
        )
    return MeasurementController(
        config.speedtest,
        publisher,
        interval_seconds=config.interval_seconds,
        retry_interval_seconds=config.retry_interval_seconds,
    )


def main(argv: Sequence[str] | None = None) -> None:
    config = load_config(argv)
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    publisher = SpeedtestMetricsPublisher()
    server = MetricsServer(
        publisher,
        host=config.listen_address,
        port=config.listen_port,
        metrics_path=config.metrics_path,
    )
    server.start()
    LOGGER.info(
        "metrics server listening on http://%s:%d%s",
        server.bound_host,
        server.server_port,
        server.metrics_path,
    )

    controller = build_controller(config, publisher)
    try:
        if config.run_once:
            controller.run_cycle()
            return
        controller.run_forever()
    except KeyboardInterrupt:
        LOGGER.info("shutdown requested, exiting")
    finally:
        controller.stop()
        server.stop()


if __name__ == "__main__":
    main()
