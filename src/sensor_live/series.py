"""Align readings of many sensor instances onto one bucketed time axis."""
from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sensor_live.models import ChartRow, Reading

DEFAULT_BUCKET_FORMAT = "%H:%M:%S"


@dataclass(frozen=True, slots=True)
class SeriesSummary:
    instance_id: str
    average: float
    count: int


def _granularity_seconds(granularity: float | timedelta) -> float:
    seconds = granularity.total_seconds() if isinstance(granularity, timedelta) else float(granularity)
    if not math.isfinite(seconds) or seconds <= 0:
        raise ValueError(f"granularity must be positive, got {granularity!r}")
    return seconds


def bucket_key(ts: datetime, granularity: float | timedelta = 1, *, fmt: str = DEFAULT_BUCKET_FORMAT) -> str:
    """Floor ``ts`` to the granularity and format it in its own timezone (UTC when naive)."""
    step = _granularity_seconds(granularity)
    tz = ts.tzinfo or timezone.utc
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    epoch = ts.timestamp()
    floored = math.floor(epoch / step) * step
    return datetime.fromtimestamp(floored, tz=tz).strftime(fmt)


def align_series(
    readings: Iterable[Reading],
    granularity: float | timedelta = 1,
    *,
    bucket_format: str = DEFAULT_BUCKET_FORMAT,
) -> list[ChartRow]:
    """Build sparse chart rows, one per bucket, one column per sensor instance.

    Readings are stably sorted by timestamp, so ties keep input order and a
    later reading of the same instance in the same bucket overwrites the
    earlier one. Series without a reading in a bucket stay absent.
    """
    step = _granularity_seconds(granularity)
    ordered = sorted(readings, key=lambda r: r.timestamp)

    rows: dict[str, ChartRow] = {}
    for r in ordered:
        key = bucket_key(r.timestamp, step, fmt=bucket_format)
        row = rows.get(key)
        if row is None:
            row = rows[key] = ChartRow(bucket_key=key)
        row.values[r.sensor_instance_id] = r.value
    return list(rows.values())


def series_ids(rows: Iterable[ChartRow]) -> list[str]:
    """Series ids in first-seen order (legend order)."""
    seen: dict[str, None] = {}
    for row in rows:
        for series_id in row.values:
            seen.setdefault(series_id, None)
    return list(seen)


def summarize_series(readings: Iterable[Reading]) -> list[SeriesSummary]:
    totals: dict[str, tuple[float, int]] = {}
    for r in readings:
        total, count = totals.get(r.sensor_instance_id, (0.0, 0))
        totals[r.sensor_instance_id] = (total + r.value, count + 1)
    return [
        SeriesSummary(instance_id=instance_id, average=total / count, count=count)
        for instance_id, (total, count) in totals.items()
    ]
