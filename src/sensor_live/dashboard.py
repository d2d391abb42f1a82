"""Composition root for the live dashboard: REST client + channel + reconciler."""
from __future__ import annotations

import asyncio
from collections.abc import Mapping
from datetime import timedelta
from pathlib import Path

import structlog

from sensor_live.api_client import SensorApiClient
from sensor_live.config import AppConfig, load_config
from sensor_live.connection import ConnectionManager, Unsubscribe
from sensor_live.logging_config import configure_logging
from sensor_live.models import ChartRow, ConnectionState, LiveStat, ReadingFilter
from sensor_live.series import align_series
from sensor_live.stats import BaselineReport, StatsReconciler
from sensor_live.transport import Transport, WebSocketTransport

logger = structlog.get_logger(__name__)


class LiveDashboard:
    def __init__(
        self,
        cfg: AppConfig,
        *,
        api: SensorApiClient | None = None,
        transport: Transport | None = None,
    ) -> None:
        self._cfg = cfg
        self._api = api or SensorApiClient(base_url=str(cfg.api.base_url), timeout_s=cfg.api.timeout_s)
        self._connection = ConnectionManager(
            transport
            or WebSocketTransport(
                cfg.channel.url,
                heartbeat_s=cfg.channel.heartbeat_s,
                handshake_timeout_s=cfg.api.timeout_s,
            ),
            event_name=cfg.channel.event_name,
            retry_delays_ms=cfg.channel.retry_delays_ms,
        )
        self._stats = StatsReconciler(self._api, average_window=cfg.stats.average_window)
        self._unsubscribe: Unsubscribe | None = None
        self._refresh_task: asyncio.Task[None] | None = None
        self._api_open = False

    @classmethod
    def from_config(cls, path: str | Path | None = None) -> LiveDashboard:
        """Load YAML/env config, set up logging and build a dashboard with real collaborators."""
        cfg = load_config(path)
        configure_logging(cfg.logging.level, cfg.logging.json_logs)
        return cls(cfg)

    @property
    def connection(self) -> ConnectionManager:
        return self._connection

    @property
    def stats(self) -> StatsReconciler:
        return self._stats

    @property
    def is_live(self) -> bool:
        return self._connection.current_state().is_connected

    def connection_state(self) -> ConnectionState:
        return self._connection.current_state()

    def snapshot(self) -> Mapping[str, LiveStat]:
        return self._stats.snapshot()

    async def start(self) -> BaselineReport:
        """Seed the table, then go live. A channel failure is raised to the caller."""
        self._api.open()
        self._api_open = True

        instances = await self._api.get_sensor_instances(self._cfg.stats.sensor_type)
        report = await self._stats.load_baseline(instances)
        self._unsubscribe = self._stats.attach(self._connection)
        await self._connection.start()

        if self._cfg.stats.refresh_interval_s > 0:
            self._refresh_task = asyncio.create_task(self._refresh_loop(), name="sensor-live-average-refresh")
        return report

    async def stop(self) -> None:
        if self._refresh_task is not None:
            self._refresh_task.cancel()
            try:
                await self._refresh_task
            except asyncio.CancelledError:
                pass
            self._refresh_task = None
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        await self._connection.stop()
        self._stats.close()
        if self._api_open:
            try:
                await self._api.aclose()
            except Exception as exc:
                logger.warning("api_client_close_failed", error=str(exc))
            self._api_open = False

    async def chart_rows(
        self,
        flt: ReadingFilter | None = None,
        granularity: float | timedelta | None = None,
    ) -> list[ChartRow]:
        flt = flt or ReadingFilter(page_size=self._cfg.charts.page_size)
        readings = await self._api.fetch_window(flt)
        return align_series(
            readings,
            self._cfg.charts.granularity_s if granularity is None else granularity,
            bucket_format=self._cfg.charts.bucket_format,
        )

    async def _refresh_loop(self) -> None:
        interval = self._cfg.stats.refresh_interval_s
        while True:
            await asyncio.sleep(interval)
            failures = await self._stats.refresh_averages()
            if failures:
                logger.info("average_refresh_partial", failures=failures)
