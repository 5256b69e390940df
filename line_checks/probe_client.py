from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any

import httpx
import structlog

from line_checks.errors import ProbeError, ProbeHttpError, ProbeShapeMismatch, ProbeTimeout
from line_checks.models import ProbeOutcome


logger = structlog.get_logger(__name__)

PING_STATUS = 200
PING_MESSAGE = "Ping received!"
PING_DATA = "pong"

SHAPE_NESTED = "nested"
SHAPE_TOP_LEVEL = "top_level"
SHAPE_BARE = "bare"
SHAPE_UNRECOGNIZED = "unrecognized"


@dataclass(frozen=True)
class ProbeConfig:
    timeout_seconds: float = 10.0
    ping_path: str = "/api/v1/ping"
    availability_path: str = "/api/v1/handle/availability/imessage"
    token_param: str = "guid"
    address_param: str = "address"


DEFAULT_PROBE_CONFIG = ProbeConfig()


def _join(endpoint: str, path: str) -> str:
    base = (endpoint or "").strip().rstrip("/")
    p = (path or "").strip()
    if not p.startswith("/"):
        p = "/" + p
    return base + p


def _error_kind(exc: Exception) -> str:
    if isinstance(exc, ProbeTimeout):
        return "timeout"
    if isinstance(exc, ProbeHttpError):
        return "http_status"
    if isinstance(exc, ProbeShapeMismatch):
        return "shape_mismatch"
    return "transport"


async def _get_json(
    client: httpx.AsyncClient,
    url: str,
    *,
    params: dict[str, str],
    timeout_seconds: float,
) -> Any:
    try:
        resp = await client.get(url, params=params, timeout=timeout_seconds)
    except httpx.TimeoutException as e:
        raise ProbeTimeout(f"Timed out after {timeout_seconds:g}s") from e
    except httpx.RequestError as e:
        raise ProbeError(f"{type(e).__name__}: {e}") from e

    if not 200 <= resp.status_code < 300:
        raise ProbeHttpError(resp.status_code, f"HTTP {resp.status_code}: {resp.reason_phrase}")
    try:
        return resp.json()
    except ValueError as e:
        raise ProbeShapeMismatch("Response body is not JSON") from e


def decode_availability(body: Any) -> tuple[bool, str]:
    """
    Decode the availability flag from an upstream payload.

    Upstream versions disagree on where the flag lives, so the shapes are tried in a
    fixed order: ``{"data": {"available": bool}}``, ``{"available": bool}``, then a
    bare JSON boolean. Anything else decodes as not available.
    """
    if isinstance(body, dict):
        nested = body.get("data")
        if isinstance(nested, dict) and isinstance(nested.get("available"), bool):
            return nested["available"], SHAPE_NESTED
        if isinstance(body.get("available"), bool):
            return body["available"], SHAPE_TOP_LEVEL
    if isinstance(body, bool):
        return body, SHAPE_BARE
    return False, SHAPE_UNRECOGNIZED


def is_ping_envelope(body: Any) -> bool:
    if not isinstance(body, dict):
        return False
    return (
        body.get("status") == PING_STATUS
        and body.get("message") == PING_MESSAGE
        and body.get("data") == PING_DATA
    )


async def ping_health(
    client: httpx.AsyncClient,
    endpoint: str,
    token: str,
    *,
    config: ProbeConfig = DEFAULT_PROBE_CONFIG,
) -> ProbeOutcome:
    url = _join(endpoint, config.ping_path)
    t0 = time.perf_counter()
    try:
        body = await _get_json(
            client,
            url,
            params={config.token_param: token},
            timeout_seconds=config.timeout_seconds,
        )
        if not is_ping_envelope(body):
            raise ProbeShapeMismatch("Unexpected ping response")
    except ProbeError as e:
        elapsed_ms = int((time.perf_counter() - t0) * 1000)
        logger.warning("Ping probe failed", endpoint=endpoint, error=str(e), error_kind=_error_kind(e))
        return ProbeOutcome(success=False, error=str(e), error_kind=_error_kind(e), elapsed_ms=elapsed_ms)

    elapsed_ms = int((time.perf_counter() - t0) * 1000)
    logger.debug("Ping probe ok", endpoint=endpoint, elapsed_ms=elapsed_ms)
    return ProbeOutcome(success=True, elapsed_ms=elapsed_ms)


async def check_address_availability(
    client: httpx.AsyncClient,
    endpoint: str,
    token: str,
    address: str,
    *,
    config: ProbeConfig = DEFAULT_PROBE_CONFIG,
) -> ProbeOutcome:
    """
    Ask the line whether ``address`` can be reached on its channel.

    ``success=False`` means the probe itself failed (timeout, non-2xx, transport).
    ``success=True, available=False`` is a genuine negative answer.
    """
    url = _join(endpoint, config.availability_path)
    t0 = time.perf_counter()
    try:
        body = await _get_json(
            client,
            url,
            params={config.address_param: address, config.token_param: token},
            timeout_seconds=config.timeout_seconds,
        )
    except ProbeError as e:
        elapsed_ms = int((time.perf_counter() - t0) * 1000)
        logger.warning(
            "Availability probe failed",
            endpoint=endpoint,
            address=address,
            error=str(e),
            error_kind=_error_kind(e),
        )
        return ProbeOutcome(success=False, error=str(e), error_kind=_error_kind(e), elapsed_ms=elapsed_ms)

    available, shape = decode_availability(body)
    elapsed_ms = int((time.perf_counter() - t0) * 1000)
    if shape == SHAPE_UNRECOGNIZED:
        logger.info("Unrecognized availability payload", endpoint=endpoint, address=address)
    return ProbeOutcome(success=True, available=available, shape=shape, elapsed_ms=elapsed_ms)
