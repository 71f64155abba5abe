"""Durable store client: Supabase PostgREST over aiohttp.

Two tables are used. ``settings`` holds the canonical settings record; the
latest row by ``ts`` wins and writes update that row in place (or insert
one if the table is empty). ``readings`` is append-only telemetry.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Mapping
from datetime import datetime
from typing import Any, Protocol

import aiohttp
from pydantic import ValidationError

from ventsync._redact import redact_for_log
from ventsync.config import StoreConfig
from ventsync.exceptions import StoreError, StoreUnavailableError
from ventsync.models.settings import CanonicalSettings

_logger = logging.getLogger(__name__)


class SettingsStore(Protocol):
    """Store surface used by the synchronizer and the viewer bootstrap.

    Having a protocol here keeps tests on in-memory doubles while the
    production implementation (:class:`PostgrestStore`) stays concrete.
    """

    async def fetch_latest_settings(self) -> CanonicalSettings | None: ...

    async def upsert_settings(self, changes: Mapping[str, Any]) -> CanonicalSettings | None: ...


class ReadingsStore(Protocol):
    async def insert_reading(
        self,
        ts: datetime,
        *,
        temperature: float | None,
        humidity: float | None,
    ) -> None: ...

    async def purge_readings_before(self, cutoff: datetime) -> None: ...


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class PostgrestStore:
    """PostgREST client for the settings and readings tables.

    Parameters
    ----------
    config
        Store URL, key, schema and table names.
    http_session
        Optional externally managed session. When omitted, one is created
        on ``__aenter__`` and closed on ``__aexit__``.
    """

    def __init__(self, config: StoreConfig, http_session: aiohttp.ClientSession | None = None) -> None:
        self._config = config
        self._http = http_session
        self._external_session = http_session is not None

    async def __aenter__(self) -> PostgrestStore:
        if self._http is None:
            timeout = aiohttp.ClientTimeout(total=self._config.request_timeout)
            self._http = aiohttp.ClientSession(timeout=timeout)
        return self

    async def __aexit__(self, *exc: Any) -> None:
        if not self._external_session and self._http is not None:
            await self._http.close()
            self._http = None

    @property
    def change_detection(self) -> bool:
        return self._config.change_detection

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    async def fetch_latest_settings(self) -> CanonicalSettings | None:
        """Return the latest settings row, or ``None`` if the table is empty."""
        rows = await self._request(
            "GET",
            self._config.settings_table,
            params={"select": "*", "order": "ts.desc", "limit": "1"},
        )
        if not rows:
            return None
        return self._parse_settings(rows[0])

    async def upsert_settings(self, changes: Mapping[str, Any]) -> CanonicalSettings | None:
        """Apply flat *changes* to the latest settings row, or insert one.

        Not atomic: concurrent writers race last-writer-wins.
        Returns the row as stored, so callers pick up ``max_angle``.
        """
        table = self._config.settings_table
        body = {key: _jsonable(value) for key, value in changes.items()}
        latest = await self._request(
            "GET",
            table,
            params={"select": "id", "order": "ts.desc", "limit": "1"},
        )
        if latest and latest[0].get("id") is not None:
            rows = await self._request(
                "PATCH",
                table,
                params={"id": f"eq.{latest[0]['id']}"},
                body=body,
                prefer="return=representation",
            )
        else:
            rows = await self._request("POST", table, body=body, prefer="return=representation")
        if not rows:
            return None
        return self._parse_settings(rows[0])

    # ------------------------------------------------------------------
    # Readings
    # ------------------------------------------------------------------

    async def insert_reading(
        self,
        ts: datetime,
        *,
        temperature: float | None,
        humidity: float | None,
    ) -> None:
        row = {"ts": ts.isoformat(), "temperature": temperature, "humidity": humidity}
        await self._request("POST", self._config.readings_table, body=row, prefer="return=minimal")

    async def purge_readings_before(self, cutoff: datetime) -> None:
        await self._request(
            "DELETE",
            self._config.readings_table,
            params={"ts": f"lt.{cutoff.isoformat()}"},
            prefer="return=minimal",
        )

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _headers(self, method: str, prefer: str | None) -> dict[str, str]:
        key = self._config.api_key
        headers = {
            "apikey": key,
            "authorization": f"Bearer {key}",
            "accept": "application/json",
            "x-application-name": self._config.application_name,
        }
        if method == "GET":
            headers["accept-profile"] = self._config.schema
        else:
            headers["content-profile"] = self._config.schema
            headers["content-type"] = "application/json"
        if prefer:
            headers["prefer"] = prefer
        return headers

    async def _request(
        self,
        method: str,
        table: str,
        *,
        params: Mapping[str, str] | None = None,
        body: Mapping[str, Any] | None = None,
        prefer: str | None = None,
    ) -> list[dict[str, Any]]:
        if self._http is None:
            raise StoreError("Store session is not open", endpoint=table)

        url = f"{self._config.url.rstrip('/')}/rest/v1/{table}"
        headers = self._headers(method, prefer)
        data = json.dumps(body) if body is not None else None

        _logger.debug(
            "%s %s params=%s headers=%s body=%s",
            method,
            url,
            dict(params or {}),
            redact_for_log(headers),
            redact_for_log(body),
        )

        try:
            async with self._http.request(method, url, params=params, data=data, headers=headers) as resp:
                text = await resp.text()
                status = resp.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise StoreUnavailableError(
                f"{method} {table} failed: {exc!r}",
                endpoint=table,
            ) from exc

        if status >= 400:
            code = ""
            detail = text[:200]
            try:
                err = json.loads(text)
            except json.JSONDecodeError:
                err = None
            if isinstance(err, dict):
                code = str(err.get("code") or "")
                detail = str(err.get("message") or detail)
            raise StoreError(
                f"HTTP {status} from {method} {table}: {detail}",
                status_code=status,
                code=code,
                endpoint=table,
            )

        if not text.strip():
            return []
        try:
            result = json.loads(text)
        except json.JSONDecodeError as exc:
            raise StoreError(
                f"Invalid JSON from {method} {table}: {text[:200]}",
                status_code=status,
                endpoint=table,
            ) from exc
        if isinstance(result, dict):
            return [result]
        if not isinstance(result, list):
            raise StoreError(f"Unexpected response shape from {method} {table}", status_code=status, endpoint=table)
        return [row for row in result if isinstance(row, dict)]

    def _parse_settings(self, row: dict[str, Any]) -> CanonicalSettings:
        try:
            return CanonicalSettings.model_validate(row)
        except ValidationError as exc:
            # The store answered, so this is a schema problem, not an outage.
            raise StoreError(
                f"Invalid settings row: {exc.error_count()} error(s)",
                status_code=200,
                endpoint=self._config.settings_table,
            ) from exc
