from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import replace
from typing import Any
from urllib.parse import quote

import httpx
import structlog

from sensor_live.exceptions import PayloadError
from sensor_live.models import AverageResult, Reading, ReadingFilter, ReadingPage, parse_reading

logger = structlog.get_logger(__name__)


def _parse_rows(rows: Any, *, source: str) -> list[Reading]:
    if not isinstance(rows, list):
        raise PayloadError(f"{source}: expected a list of readings")
    out: list[Reading] = []
    for row in rows:
        try:
            out.append(parse_reading(row))
        except PayloadError as exc:
            logger.warning("reading_row_skipped", source=source, error=str(exc))
    return out


class SensorApiClient:
    """Async client for the sensor readings REST API (``/api/v1/sensors``)."""

    def __init__(
        self,
        *,
        base_url: str,
        timeout_s: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout_s = timeout_s
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> SensorApiClient:
        self.open()
        return self

    def open(self) -> None:
        if self._client is not None:
            return
        kwargs: dict[str, Any] = {"timeout": self._timeout_s, "headers": {"Accept": "application/json"}}
        if self._transport is not None:
            kwargs["transport"] = self._transport
        self._client = httpx.AsyncClient(**kwargs)

    async def __aexit__(self, *_exc: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _get(self, path: str, params: dict[str, str] | None = None) -> Any:
        if self._client is None:
            raise RuntimeError("SensorApiClient is not opened (use 'async with')")
        resp = await self._client.get(f"{self._base_url}/api/v1{path}", params=params)
        resp.raise_for_status()
        return resp.json()

    async def get_last_readings(self, instance_id: str, count: int = 100) -> list[Reading]:
        """Most-recent-first readings of one instance, at most ``count``."""
        data = await self._get(f"/sensors/last/{quote(instance_id, safe='')}", {"count": str(count)})
        return _parse_rows(data, source="last_readings")

    async def get_average(self, instance_id: str, count: int = 100) -> AverageResult:
        data = await self._get(f"/sensors/average/{quote(instance_id, safe='')}", {"count": str(count)})
        if not isinstance(data, dict):
            raise PayloadError("average: expected an object")
        try:
            return AverageResult(
                instance_id=str(data.get("sensorInstanceId") or instance_id),
                average=float(data["average"]),
                count=int(data.get("count", 0)),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise PayloadError(f"average: malformed response: {exc}") from exc

    async def get_sensor_instances(self, sensor_type: str | None = None) -> list[str]:
        params = {"sensorType": sensor_type} if sensor_type else None
        data = await self._get("/sensors/sensor-instances", params)
        if not isinstance(data, list):
            raise PayloadError("sensor-instances: expected a list")
        return [str(x) for x in data]

    async def get_sensor_types(self) -> list[str]:
        data = await self._get("/sensors/sensor-types")
        if not isinstance(data, list):
            raise PayloadError("sensor-types: expected a list")
        return [str(x) for x in data]

    async def get_readings(self, flt: ReadingFilter) -> ReadingPage:
        data = await self._get("/sensors", flt.as_query_params())
        if not isinstance(data, dict):
            raise PayloadError("readings: expected a paged object")
        return ReadingPage(
            data=_parse_rows(data.get("data", []), source="readings"),
            page_number=int(data.get("pageNumber", flt.page_number)),
            page_size=int(data.get("pageSize", flt.page_size)),
            total_records=int(data.get("totalRecords", 0)),
        )

    async def iter_window_readings(self, flt: ReadingFilter) -> AsyncIterator[Reading]:
        """Walk every page of a filtered window, starting at ``flt.page_number``."""
        page_flt = flt
        while True:
            page = await self.get_readings(page_flt)
            for r in page.data:
                yield r
            if not page.data or not page.has_more:
                return
            page_flt = replace(page_flt, page_number=page.page_number + 1)

    async def fetch_window(self, flt: ReadingFilter) -> list[Reading]:
        return [r async for r in self.iter_window_readings(flt)]
