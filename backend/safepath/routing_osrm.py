from __future__ import annotations

import asyncio
import hashlib
import os
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, Final
from urllib.parse import urlparse

import httpx

from .settings import settings


class OSRMError(RuntimeError):
    pass


class OSRMRetryableError(OSRMError):
    """An OSRM error that is likely transient and safe to retry."""

    pass


class OSRMNoRouteError(OSRMError):
    """OSRM answered but could not connect the requested points."""

    pass


AlternativesParam = bool | int


_RETRYABLE_STATUS: Final[set[int]] = {408, 425, 429, 500, 502, 503, 504}
_NO_ROUTE_CODES: Final[set[str]] = {"NoRoute", "NoSegment"}
_LOCALHOST_HOSTS: Final[set[str]] = {"localhost", "127.0.0.1"}


def _running_in_docker() -> bool:
    # Best-effort detection; used only for better hints.
    return Path("/.dockerenv").exists() or os.environ.get("RUNNING_IN_DOCKER") == "1"


def _format_osrm_error(resp: httpx.Response) -> str:
    """Best-effort decode of OSRM JSON error payloads."""
    try:
        data = resp.json()
    except ValueError:
        data = None
    if isinstance(data, dict):
        code = data.get("code")
        message = data.get("message")
        if code and message:
            return f"OSRM {resp.status_code} {code}: {message}"
        if code:
            return f"OSRM {resp.status_code} {code}"
        if message:
            return f"OSRM {resp.status_code}: {message}"

    body = (resp.text or "").strip().replace("\n", " ")
    if len(body) > 240:
        body = body[:240] + "..."
    if body:
        return f"OSRM {resp.status_code}: {body}"
    return f"OSRM HTTP {resp.status_code}"


def _error_code(resp: httpx.Response) -> str | None:
    try:
        data = resp.json()
    except ValueError:
        return None
    return data.get("code") if isinstance(data, dict) else None


def _connection_hint(base_url: str) -> str:
    host = urlparse(base_url).hostname or ""
    if _running_in_docker() and host in _LOCALHOST_HOSTS:
        return (
            " Hint: you're running inside a container; `localhost` points to that container. "
            "In docker-compose, set OSRM_BASE_URL=http://osrm:5000."
        )
    if (not _running_in_docker()) and host == "osrm":
        return (
            " Hint: `osrm` is the docker-compose service name. "
            "If you're running the backend directly on your host, set OSRM_BASE_URL=http://localhost:5000."
        )
    return ""


class OSRMClient:
    def __init__(
        self,
        *,
        base_url: str,
        client: httpx.AsyncClient | None = None,
        semaphore: asyncio.Semaphore | None = None,
        timeout_s: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._semaphore = semaphore if semaphore is not None else asyncio.Semaphore(settings.upstream_concurrency)
        self._sleep = sleep

        # trust_env=False keeps proxy env vars from hijacking localhost / service-name requests.
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_s or settings.osrm_timeout_s, connect=5.0),
            trust_env=False,
            headers={"accept": "application/json"},
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def fetch_routes(
        self,
        *,
        origin_lat: float,
        origin_lon: float,
        dest_lat: float,
        dest_lon: float,
        profile: str = "foot",
        alternatives: AlternativesParam = True,
        via: list[tuple[float, float]] | None = None,
        max_retries: int | None = None,
    ) -> list[dict[str, Any]]:
        """Fetch routes from OSRM.

        via:
          Optional list of via points as (lat, lon). If provided, OSRM will route:
            origin -> via[0] -> ... -> via[n-1] -> destination
        """
        coords_parts: list[str] = [f"{origin_lon},{origin_lat}"]
        if via:
            coords_parts.extend([f"{lon},{lat}" for (lat, lon) in via])
        coords_parts.append(f"{dest_lon},{dest_lat}")
        coords = ";".join(coords_parts)

        url = f"{self.base_url}/route/v1/{profile}/{coords}"

        if isinstance(alternatives, bool):
            alt_value = "true" if alternatives else "false"
        else:
            alt_value = str(int(alternatives)) if int(alternatives) > 1 else "false"

        params: dict[str, str] = {
            "overview": "full",
            "geometries": "geojson",
            "alternatives": alt_value,
        }
        max_retries_i = max(1, int(max_retries or settings.osrm_max_retries))
        last_err: Exception | None = None

        for attempt in range(max_retries_i):
            try:
                async with self._semaphore:
                    resp = await self._client.get(url, params=params)

                # Fast-fail on most 4xx: these are usually request errors.
                if 400 <= resp.status_code < 500 and resp.status_code not in _RETRYABLE_STATUS:
                    if _error_code(resp) in _NO_ROUTE_CODES:
                        raise OSRMNoRouteError(_format_osrm_error(resp))
                    raise OSRMError(_format_osrm_error(resp))

                if resp.status_code in _RETRYABLE_STATUS:
                    raise OSRMRetryableError(_format_osrm_error(resp))

                resp.raise_for_status()
                data = resp.json()
                if not isinstance(data, dict):
                    raise OSRMError("OSRM returned an unexpected payload")

                code = data.get("code")
                if code in _NO_ROUTE_CODES:
                    raise OSRMNoRouteError(f"OSRM error code={code} message={data.get('message')}")
                if code != "Ok":
                    raise OSRMError(f"OSRM error code={code} message={data.get('message')}")

                routes = data.get("routes", [])
                if not isinstance(routes, list) or not routes:
                    raise OSRMNoRouteError("OSRM returned no routes")

                return routes

            except OSRMRetryableError as e:
                last_err = e
            except (httpx.TimeoutException, httpx.TransportError) as e:
                last_err = e
            except httpx.HTTPStatusError as e:
                raise OSRMError(str(e)) from e
            except ValueError as e:
                raise OSRMError("OSRM returned invalid JSON") from e

            if attempt < max_retries_i - 1:
                await self._sleep(min(0.25 * (2**attempt), 2.0))

        # httpx exceptions can stringify to "" (e.g. some timeouts), so include the type.
        if last_err is None:
            detail = "unknown error"
        else:
            msg = str(last_err).strip()
            detail = f"{type(last_err).__name__}: {msg}" if msg else f"{type(last_err).__name__}: {last_err!r}"

        raise OSRMError(
            "OSRM request failed after "
            f"{max_retries_i} retries (base={self.base_url}): {detail}{_connection_hint(self.base_url)}"
        )


def route_coordinates(route: dict[str, Any]) -> list[tuple[float, float]]:
    """Validated [lon, lat] pairs from a GeoJSON OSRM route."""
    geom = route.get("geometry")
    if not isinstance(geom, dict):
        raise OSRMError("OSRM route missing geometry")

    coords = geom.get("coordinates")
    if not isinstance(coords, list) or len(coords) < 2:
        raise OSRMError("OSRM geometry missing coordinates")

    out: list[tuple[float, float]] = []
    for pt in coords:
        if (
            isinstance(pt, (list, tuple))
            and len(pt) == 2
            and isinstance(pt[0], (int, float))
            and isinstance(pt[1], (int, float))
        ):
            out.append((float(pt[0]), float(pt[1])))
    if len(out) < 2:
        raise OSRMError("OSRM geometry invalid")
    return out


def route_signature(route: dict[str, Any]) -> str:
    coords = route_coordinates(route)
    n = len(coords)
    step = max(1, n // 30)
    sample = coords[::step][:40]

    # round for stability; avoid huge hash variability
    parts = [f"{lon:.4f},{lat:.4f}" for lon, lat in sample]
    s = "|".join(parts)
    return hashlib.sha1(s.encode("utf-8")).hexdigest()
