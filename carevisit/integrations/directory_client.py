"""Directory service client.

Read-only lookups against the office directory service for the scheduling
engine: client and staff display names, and authorization windows.

Responses use the directory's envelope ``{"success", "message", "data"}``.
A 404 means the record does not exist; any other failure raises
DirectoryUnavailable so a preview is never built on missing data.
"""

from __future__ import annotations

import threading
import time as time_module
from datetime import date
from typing import Any

import httpx
from loguru import logger

from carevisit.config.settings import settings
from carevisit.scheduling.conflicts import AuthorizationWindow
from carevisit.scheduling.errors import DirectoryUnavailable

_CACHE_TTL_SECONDS = 60.0
_CACHE_MAX_ENTRIES = 1024
_MISSING = object()


def _parse_date(value: Any) -> date | None:
    if not value:
        return None
    return date.fromisoformat(str(value)[:10])


def _parse_units(value: Any) -> int | None:
    if value is None:
        return None
    return int(float(value))


class DirectoryClient:
    """httpx client implementing the Directory and AuthorizationLookup protocols.

    Lookups are cached for ``cache_ttl`` seconds. Expired entries are evicted on
    insert and the cache never holds more than ``cache_size`` paths.
    """

    def __init__(
        self,
        base_url: str | None = None,
        *,
        timeout: float | None = None,
        transport: httpx.BaseTransport | None = None,
        headers: dict[str, str] | None = None,
        cache_ttl: float = _CACHE_TTL_SECONDS,
        cache_size: int = _CACHE_MAX_ENTRIES,
    ) -> None:
        self._client = httpx.Client(
            base_url=(base_url or settings.directory_service_url).rstrip("/"),
            timeout=timeout or settings.directory_service_timeout_seconds,
            transport=transport,
            headers=headers,
        )
        self._cache: dict[str, tuple[float, Any]] = {}
        self._cache_lock = threading.Lock()
        self._cache_ttl = cache_ttl
        self._cache_size = cache_size

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> DirectoryClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _get_data(self, path: str) -> dict[str, Any] | None:
        now = time_module.monotonic()
        with self._cache_lock:
            cached = self._cache.get(path, _MISSING)
        if cached is not _MISSING and cached[0] > now:
            return cached[1]

        try:
            response = self._client.get(path)
            if response.status_code == httpx.codes.NOT_FOUND:
                data = None
            else:
                response.raise_for_status()
                data = response.json().get("data")
        except (httpx.HTTPStatusError, httpx.RequestError, ValueError) as e:
            logger.error(f"[DIRECTORY] Lookup failed for {path}: {e!r}")
            raise DirectoryUnavailable(path, str(e)) from e

        self._remember(path, data, now)
        return data

    def _remember(self, path: str, data: Any, now: float) -> None:
        with self._cache_lock:
            for stale in [key for key, (expires, _) in self._cache.items() if expires <= now]:
                del self._cache[stale]
            self._cache.pop(path, None)
            while self._cache and len(self._cache) >= self._cache_size:
                del self._cache[next(iter(self._cache))]
            self._cache[path] = (now + self._cache_ttl, data)

    def client_name(self, client_id: str) -> str | None:
        data = self._get_data(f"/patients/{client_id}/header")
        if data is None:
            return None
        return data.get("clientName")

    def staff_name(self, staff_id: str) -> str | None:
        data = self._get_data(f"/staff/{staff_id}/header")
        if data is None:
            return None
        if data.get("lastName") and data.get("firstName"):
            return f"{data['lastName']}, {data['firstName']}"
        return data.get("staffName")

    def get_authorization(self, authorization_id: str) -> AuthorizationWindow | None:
        data = self._get_data(f"/authorizations/{authorization_id}")
        if data is None:
            return None

        remaining = _parse_units(data.get("totalRemaining"))
        if remaining is None and data.get("maxUnits") is not None:
            remaining = _parse_units(data["maxUnits"]) - (_parse_units(data.get("totalUsed")) or 0)

        return AuthorizationWindow(
            authorization_id=str(data.get("id", authorization_id)),
            client_id=str(data.get("patientId", "")),
            start_date=_parse_date(data.get("startDate")),
            end_date=_parse_date(data.get("endDate")),
            remaining_units=remaining,
        )
