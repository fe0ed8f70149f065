from __future__ import annotations

import ipaddress
import json
import logging
import math
import re
import subprocess
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Sequence


LOGGER = logging.getLogger("speedtest_prom_exporter.speedtest")
_SERVER_LINE = re.compile(r"^\s*(\d+)\)\s+(.+?)\s+\[(\d+(?:\.\d+)?)\s*km\]\s*$")
_SERVER_DISPLAY_NAME = re.compile(r"^(?P<sponsor>.+?)\s+\((?P<city>.+),\s*(?P<country>[^,()]+)\)$")
_HTTP_ERROR_LINE = re.compile(r"^ERROR: HTTP Error (\d+): (\S.*)$")
_TOOL_ERROR_LINE = re.compile(r"^ERROR:\s*(.*)$")
THROTTLED_HTTP_STATUS = 403


class SpeedtestError(Exception):
    """Base class for runtime failures of a single speedtest invocation."""


class SubprocessExecutionError(SpeedtestError):
    pass


class SpeedtestTimeoutError(SubprocessExecutionError):
    pass


class ProviderThrottlingError(SpeedtestError):
    pass


class DecodeError(SpeedtestError):
    pass


class NoServersFoundError(SpeedtestError):
    pass


class NoServerMatchError(SpeedtestError):
    pass


@dataclass(frozen=True)
class SpeedtestConfig:
    speedtest_bin: str = "speedtest-cli"
    insecure: bool = False
    server_id: int = 0
    max_distance_km: int = 0
    server_name_filter: str = ""
    timeout_seconds: float | None = None
    debug: bool = False

    def _transport_args(self) -> list[str]:
        if self.insecure:
            return []
        return ["--secure"]

    def measure_command(self, server_ids: Iterable[int] = ()) -> list[str]:
        command = [self.speedtest_bin, "--json", *self._transport_args()]
        for server_id in server_ids:
            command += ["--server", str(server_id)]
        return command

    def list_command(self) -> list[str]:
        return [self.speedtest_bin, "--list", *self._transport_args()]

    @property
    def discovery_enabled(self) -> bool:
        return bool(self.server_name_filter) or self.max_distance_km > 0


@dataclass(frozen=True)
class ClientInfo:
    ip: str = ""
    isp: str = ""
    country: str = ""
    lat: str = ""
    lon: str = ""
    isp_rating: str = ""
    rating: str = ""
    isp_dl_avg: str = ""
    isp_ul_avg: str = ""
    logged_in: str = ""


@dataclass(frozen=True)
class ServerInfo:
    id: str = ""
    name: str = ""
    sponsor: str = ""
    host: str = ""
    country: str = ""
    cc: str = ""
    url: str = ""
    lat: str = ""
    lon: str = ""
    distance_km: float = 0.0
    latency_ms: float = 0.0


@dataclass(frozen=True)
class MeasurementResult:
    download: float
    upload: float
    ping: float
    timestamp: datetime | None = None
    bytes_sent: int = 0
    bytes_received: int = 0
    client: ClientInfo = field(default_factory=ClientInfo)
    server: ServerInfo = field(default_factory=ServerInfo)

    def to_payload(self) -> dict[str, Any]:
        """Encode back into the shape speedtest-cli prints with --json."""
        return {
            "download": self.download,
            "upload": self.upload,
            "ping": self.ping,
            "timestamp": self.timestamp.isoformat() if self.timestamp is not None else None,
            "bytes_sent": self.bytes_sent,
            "bytes_received": self.bytes_received,
            "client": {
                "ip": self.client.ip,
                "isp": self.client.isp,
                "country": self.client.country,
                "lat": self.client.lat,
                "lon": self.client.lon,
                "isprating": self.client.isp_rating,
                "rating": self.client.rating,
                "ispdlavg": self.client.isp_dl_avg,
                "ispulavg": self.client.isp_ul_avg,
                "loggedin": self.client.logged_in,
            },
            "server": {
                "id": self.server.id,
                "name": self.server.name,
                "sponsor": self.server.sponsor,
                "host": self.server.host,
                "country": self.server.country,
                "cc": self.server.cc,
                "url": self.server.url,
                "lat": self.server.lat,
                "lon": self.server.lon,
                "d": self.server.distance_km,
                "latency": self.server.latency_ms,
            },
        }


@dataclass(frozen=True)
class ServerDescriptor:
    id: int
    name: str
    distance_km: int
    sponsor: str = ""
    host: str = ""
    country: str = ""


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _required_number(payload: dict[str, Any], key: str) -> float:
    if key not in payload:
        raise DecodeError(f"speedtest payload is missing required field {key!r}")
    value = payload[key]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise DecodeError(f"speedtest payload field {key!r} is not numeric: {value!r}")
    try:
        number = float(value)
    except OverflowError as error:
        raise DecodeError(f"speedtest payload field {key!r} is out of range") from error
    if not math.isfinite(number) or number < 0:
        raise DecodeError(f"speedtest payload field {key!r} must be a non-negative number: {value!r}")
    return number


def _optional_count(payload: dict[str, Any], key: str) -> int:
    value = payload.get(key)
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise DecodeError(f"speedtest payload field {key!r} is not an integer: {value!r}")
    if value < 0 or (isinstance(value, float) and not value.is_integer()):
        raise DecodeError(f"speedtest payload field {key!r} must be a non-negative integer: {value!r}")
    return int(value)


def _optional_float(value: Any) -> float:
    if isinstance(value, bool):
        return 0.0
    try:
        if isinstance(value, (int, float)):
            return float(value)
        if isinstance(value, str):
            return float(value.strip())
    except (OverflowError, ValueError):
        return 0.0
    return 0.0


def _optional_object(payload: dict[str, Any], key: str) -> dict[str, Any]:
    value = payload.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise DecodeError(f"speedtest payload field {key!r} is not an object")
    return value


def _parse_timestamp(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise DecodeError(f"speedtest payload timestamp is not a string: {value!r}")
    raw = value.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(raw)
    except ValueError as error:
        raise DecodeError(f"speedtest payload timestamp is not ISO-8601: {value!r}") from error


def _normalize_ip(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        return ""
    try:
        return str(ipaddress.ip_address(value.strip()))
    except ValueError:
        return ""


def parse_measurement(payload: str | bytes) -> MeasurementResult:
    try:
        decoded = json.loads(payload)
    except ValueError as error:
        raise DecodeError(f"failed to decode speedtest JSON result: {error}") from error
    if not isinstance(decoded, dict):
        raise DecodeError("speedtest JSON result is not an object")

    client = _optional_object(decoded, "client")
    server = _optional_object(decoded, "server")
    return MeasurementResult(
        download=_required_number(decoded, "download"),
        upload=_required_number(decoded, "upload"),
        ping=_required_number(decoded, "ping"),
        timestamp=_parse_timestamp(decoded.get("timestamp")),
        bytes_sent=_optional_count(decoded, "bytes_sent"),
        bytes_received=_optional_count(decoded, "bytes_received"),
        client=ClientInfo(
            ip=_normalize_ip(client.get("ip")),
            isp=_as_text(client.get("isp")),
            country=_as_text(client.get("country")),
            lat=_as_text(client.get("lat")),
            lon=_as_text(client.get("lon")),
            isp_rating=_as_text(client.get("isprating")),
            rating=_as_text(client.get("rating")),
            isp_dl_avg=_as_text(client.get("ispdlavg")),
            isp_ul_avg=_as_text(client.get("ispulavg")),
            logged_in=_as_text(client.get("loggedin")),
        ),
        server=ServerInfo(
            id=_as_text(server.get("id")),
            name=_as_text(server.get("name")),
            sponsor=_as_text(server.get("sponsor")),
            host=_as_text(server.get("host")),
            country=_as_text(server.get("country")),
            cc=_as_text(server.get("cc")),
            url=_as_text(server.get("url")),
            lat=_as_text(server.get("lat")),
            lon=_as_text(server.get("lon")),
            distance_km=_optional_float(server.get("d")),
            latency_ms=_optional_float(server.get("latency")),
        ),
    )


def parse_server_list(output: str) -> list[ServerDescriptor]:
    servers: list[ServerDescriptor] = []
    for raw_line in output.splitlines():
        matched = _SERVER_LINE.match(raw_line)
        if not matched:
            continue
        server_id, name, distance = matched.groups()
        sponsor = ""
        country = ""
        display = _SERVER_DISPLAY_NAME.match(name)
        if display:
            sponsor = display.group("sponsor").strip()
            country = display.group("country").strip()
        servers.append(
            ServerDescriptor(
                id=int(server_id),
                name=name,
                # truncated, not rounded: a 20.9 km server passes a 20 km bound
                distance_km=int(float(distance)),
                sponsor=sponsor,
                country=country,
            )
        )
    if not servers:
        raise NoServersFoundError("speedtest server list contained no servers")
    return servers


def parse_http_errors(stderr: str) -> list[tuple[int, str]]:
    errors: list[tuple[int, str]] = []
    for raw_line in stderr.splitlines():
        matched = _HTTP_ERROR_LINE.match(raw_line.rstrip())
        if not matched:
            continue
        errors.append((int(matched.group(1)), matched.group(2)))
    return errors


def is_provider_throttled(stderr: str) -> bool:
    return any(code == THROTTLED_HTTP_STATUS for code, _ in parse_http_errors(stderr))


def _compile_name_filter(name_pattern: str | re.Pattern[str] | None) -> re.Pattern[str] | None:
    if not name_pattern:
        return None
    if isinstance(name_pattern, str):
        return re.compile(name_pattern)
    return name_pattern


def select_servers(
    servers: Sequence[ServerDescriptor],
    name_pattern: str | re.Pattern[str] | None = None,
    max_distance_km: int | None = None,
) -> list[int] | None:
    """Filter discovered servers down to the candidate IDs handed to speedtest-cli.

    Returns ``None`` when no filter is configured, meaning the caller should
    fall back to a pinned server or let speedtest-cli choose. The name filter
    is applied before the distance filter and input order is preserved; an
    empty selection raises ``NoServerMatchError``.
    """
    compiled = _compile_name_filter(name_pattern)
    distance_bound = max_distance_km if max_distance_km and max_distance_km > 0 else None
    if compiled is None and distance_bound is None:
        return None

    candidates = list(servers)
    if compiled is not None:
        candidates = [server for server in candidates if compiled.search(server.name)]
    if distance_bound is not None:
        candidates = [server for server in candidates if server.distance_km <= distance_bound]
    if not candidates:
        raise NoServerMatchError(
            f"no speedtest server matched name filter {compiled.pattern if compiled else None!r} "
            f"and max distance {distance_bound!r} km among {len(servers)} servers"
        )
    return [server.id for server in candidates]


def invoke_speedtest(
    command: list[str],
    timeout_seconds: float | None = None,
) -> subprocess.CompletedProcess[str]:
    try:
        process = subprocess.Popen(
            command,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
        )
    except OSError as error:
        raise SubprocessExecutionError(f"failed to execute {command[0]}: {error}") from error

    try:
        stdout, stderr = process.communicate(timeout=timeout_seconds)
    except subprocess.TimeoutExpired as error:
        process.kill()
        stdout, stderr = process.communicate()
        raise SpeedtestTimeoutError(
            _build_process_error(
                f"speedtest timed out after {error.timeout:.1f}s",
                command_name=_command_name(command),
                process=subprocess.CompletedProcess(command, process.returncode, stdout, stderr),
            )
        ) from error
    except KeyboardInterrupt:
        process.terminate()
        try:
            process.communicate(timeout=2.0)
        except subprocess.TimeoutExpired:
            process.kill()
            process.communicate()
        raise

    return subprocess.CompletedProcess(
        args=command,
        returncode=process.returncode,
        stdout=stdout,
        stderr=stderr,
    )


def _command_name(command: list[str]) -> str:
    return "list" if "--list" in command else "measure"


def _compact_output_snippet(output: str, max_chars: int = 220) -> str:
    normalized = " | ".join(line.strip() for line in output.splitlines() if line.strip())
    if len(normalized) <= max_chars:
        return normalized
    if max_chars <= 3:
        return normalized[:max_chars]
    return normalized[: max_chars - 3] + "..."


def _build_process_error(prefix: str, *, command_name: str, process: subprocess.CompletedProcess[str]) -> str:
    parts: list[str] = [f"{prefix} ({command_name} rc={process.returncode}"]
    stderr = _compact_output_snippet(process.stderr or "")
    stdout = _compact_output_snippet(process.stdout or "")
    if stderr:
        parts.append(f"stderr={stderr}")
    if stdout:
        parts.append(f"stdout={stdout}")
    if not stderr and not stdout:
        parts.append("no output")
    return "; ".join(parts) + ")"


def _is_interrupt_return_code(return_code: int) -> bool:
    return return_code in (-2, 130)


def _log_tool_errors(*, command_name: str, stderr: str) -> None:
    for raw_line in stderr.splitlines():
        matched = _TOOL_ERROR_LINE.match(raw_line.strip())
        if matched:
            LOGGER.warning("speedtest %s stderr: %s", command_name, matched.group(1))


def _log_debug_trace(
    *,
    command_name: str,
    elapsed_seconds: float,
    process: subprocess.CompletedProcess[str],
) -> None:
    LOGGER.debug("speedtest timing %s: %.3fs rc=%s", command_name, elapsed_seconds, process.returncode)
    LOGGER.debug("speedtest raw %s stdout:\n%s", command_name, process.stdout if process.stdout else "<empty>")
    LOGGER.debug("speedtest raw %s stderr:\n%s", command_name, process.stderr if process.stderr else "<empty>")


def _run_checked(config: SpeedtestConfig, command: list[str]) -> subprocess.CompletedProcess[str]:
    command_name = _command_name(command)
    started = time.monotonic()
    process = invoke_speedtest(command, config.timeout_seconds)
    if config.debug:
        _log_debug_trace(
            command_name=command_name,
            elapsed_seconds=time.monotonic() - started,
            process=process,
        )
    _log_tool_errors(command_name=command_name, stderr=process.stderr)

    if is_provider_throttled(process.stderr):
        raise ProviderThrottlingError(
            _build_process_error(
                "speedtest provider returned HTTP 403, try again later",
                command_name=command_name,
                process=process,
            )
        )
    if _is_interrupt_return_code(process.returncode):
        raise KeyboardInterrupt
    if process.returncode != 0:
        raise SubprocessExecutionError(
            _build_process_error(
                "speedtest command failed",
                command_name=command_name,
                process=process,
            )
        )
    return process


def run_measurement(config: SpeedtestConfig, server_ids: Sequence[int] = ()) -> MeasurementResult:
    process = _run_checked(config, config.measure_command(server_ids))
    return parse_measurement(process.stdout)


def list_servers(config: SpeedtestConfig) -> list[ServerDescriptor]:
    process = _run_checked(config, config.list_command())
    return parse_server_list(process.stdout)
