"""Live per-instance statistics reconciled from REST baselines and streamed readings.

Field ownership keeps the merge lock-free on a single event loop:

- ``latest_value``/``unit``/``type``/``last_updated`` belong to the streaming
  path (``apply_reading``). A baseline response seeds them only for an
  instance that has no entry yet; it never replaces an existing entry's
  latest fields, whatever their timestamps.
- ``average_value`` belongs to baseline/average fetch completions.
"""
from __future__ import annotations

import asyncio
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, replace
from types import MappingProxyType
from typing import TYPE_CHECKING, Protocol

import structlog

from sensor_live.exceptions import AverageRefreshError, BaselineFetchError
from sensor_live.models import AverageResult, LiveStat, Reading

if TYPE_CHECKING:
    from sensor_live.connection import ConnectionManager, Unsubscribe

logger = structlog.get_logger(__name__)

DEFAULT_AVERAGE_WINDOW = 100


class StatsSource(Protocol):
    async def get_last_readings(self, instance_id: str, count: int = ...) -> list[Reading]: ...

    async def get_average(self, instance_id: str, count: int = ...) -> AverageResult: ...


@dataclass(frozen=True, slots=True)
class BaselineReport:
    loaded: int = 0
    failed: int = 0
    empty: int = 0


class StatsReconciler:
    def __init__(self, source: StatsSource, *, average_window: int = DEFAULT_AVERAGE_WINDOW) -> None:
        if average_window < 1:
            raise ValueError("average_window must be >= 1")
        self._source = source
        self._window = average_window
        self._stats: dict[str, LiveStat] = {}
        self._pending_averages: dict[str, asyncio.Task[None]] = {}
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self._stats)

    def snapshot(self) -> MappingProxyType[str, LiveStat]:
        """Read-only copy of the table; later merges never show through it."""
        return MappingProxyType(dict(self._stats))

    def attach(self, manager: ConnectionManager) -> Unsubscribe:
        return manager.subscribe(self.apply_reading)

    def apply_reading(self, reading: Reading) -> LiveStat | None:
        if self._closed:
            return None
        instance_id = reading.sensor_instance_id

        current = self._stats.get(instance_id)
        if current is not None:
            stat = replace(
                current,
                latest_value=reading.value,
                unit=reading.unit,
                type=reading.sensor_type,
                last_updated=reading.timestamp,
            )
            self._stats[instance_id] = stat
            return stat

        # Single-sample estimate until the backend average arrives.
        stat = LiveStat(
            instance_id=instance_id,
            latest_value=reading.value,
            average_value=reading.value,
            unit=reading.unit,
            type=reading.sensor_type,
            last_updated=reading.timestamp,
        )
        self._stats[instance_id] = stat
        logger.info("live_stat_created", instance_id=instance_id)
        self._schedule_average(instance_id)
        return stat

    async def load_baseline(self, instance_ids: Iterable[str]) -> BaselineReport:
        """Fetch latest reading and rolling average for each instance concurrently.

        Failing instances are left out of the table and only counted.
        """
        ids = list(dict.fromkeys(instance_ids))
        if not ids:
            return BaselineReport()
        results = await asyncio.gather(*(self._load_one(i) for i in ids), return_exceptions=True)

        loaded = failed = empty = 0
        for instance_id, result in zip(ids, results):
            if isinstance(result, BaselineFetchError):
                failed += 1
                logger.warning("baseline_fetch_failed", instance_id=instance_id, error=str(result))
            elif isinstance(result, BaseException):
                failed += 1
                logger.error("baseline_fetch_crashed", instance_id=instance_id, error=repr(result))
            elif result:
                loaded += 1
            else:
                empty += 1
        report = BaselineReport(loaded=loaded, failed=failed, empty=empty)
        logger.info("baseline_loaded", loaded=loaded, failed=failed, empty=empty)
        return report

    async def refresh_averages(self, instance_ids: Sequence[str] | None = None) -> int:
        """Re-fetch rolling averages of known instances; returns the number of failures."""
        ids = list(self._stats) if instance_ids is None else [i for i in instance_ids if i in self._stats]
        # A provisional fetch already in flight will write the same field.
        ids = [i for i in ids if i not in self._pending_averages]
        if not ids or self._closed:
            return 0
        results = await asyncio.gather(*(self._refresh_one(i) for i in ids), return_exceptions=True)
        failures = 0
        for instance_id, result in zip(ids, results):
            if isinstance(result, BaseException):
                failures += 1
                logger.warning("average_refresh_failed", instance_id=instance_id, error=str(result))
        return failures

    def close(self) -> None:
        """Dispose the table; in-flight fetches may finish but will not write."""
        self._closed = True

    async def drain(self) -> None:
        pending = list(self._pending_averages.values())
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _load_one(self, instance_id: str) -> bool:
        try:
            last, avg = await asyncio.gather(
                self._source.get_last_readings(instance_id, 1),
                self._source.get_average(instance_id, self._window),
            )
        except Exception as exc:
            raise BaselineFetchError(instance_id, str(exc) or type(exc).__name__) from exc

        if self._closed:
            return False
        current = self._stats.get(instance_id)
        if current is not None:
            self._stats[instance_id] = replace(current, average_value=avg.average)
            return True
        if not last:
            return False

        latest = last[0]
        self._stats[instance_id] = LiveStat(
            instance_id=instance_id,
            latest_value=latest.value,
            average_value=avg.average,
            unit=latest.unit,
            type=latest.sensor_type,
            last_updated=latest.timestamp,
        )
        return True

    async def _refresh_one(self, instance_id: str) -> None:
        try:
            result = await self._source.get_average(instance_id, self._window)
        except Exception as exc:
            raise AverageRefreshError(instance_id, str(exc) or type(exc).__name__) from exc
        self._store_average(instance_id, result.average)

    def _store_average(self, instance_id: str, average: float) -> None:
        if self._closed:
            return
        current = self._stats.get(instance_id)
        if current is None:
            return
        self._stats[instance_id] = replace(current, average_value=average)

    def _schedule_average(self, instance_id: str) -> None:
        if instance_id in self._pending_averages:
            return
        task = asyncio.get_running_loop().create_task(self._provisional_average(instance_id))
        self._pending_averages[instance_id] = task
        task.add_done_callback(lambda _t: self._pending_averages.pop(instance_id, None))

    async def _provisional_average(self, instance_id: str) -> None:
        try:
            await self._refresh_one(instance_id)
        except AverageRefreshError as exc:
            # Entry keeps its single-sample average.
            logger.warning("average_refresh_failed", instance_id=instance_id, error=str(exc))

    def __repr__(self) -> str:
        return f"StatsReconciler(instances={len(self._stats)}, closed={self._closed})"