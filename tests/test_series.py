from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone

from sensor_live.models import Reading
from sensor_live.series import SeriesSummary, align_series, bucket_key, series_ids, summarize_series
from tests.fakes import reading, ts


def _at(instance_id: str, value: float, when: datetime) -> Reading:
    return Reading(sensor_type="energy_consumption", sensor_instance_id=instance_id, value=value, unit="kWh", timestamp=when)


class TestAlignSeries(unittest.TestCase):
    def test_two_series_with_gap(self) -> None:
        rows = align_series([reading("a", 1, 1), reading("b", 2, 1), reading("a", 3, 2)], 1)

        self.assertEqual(
            [r.as_dict() for r in rows],
            [{"bucket": "00:00:01", "a": 1, "b": 2}, {"bucket": "00:00:02", "a": 3}],
        )
        self.assertNotIn("b", rows[1])
        self.assertIsNone(rows[1].get("b"))

    def test_unsorted_input_is_sorted_by_timestamp(self) -> None:
        rows = align_series([reading("a", 3, 5), reading("b", 1, 2), reading("a", 2, 3)])
        self.assertEqual([r.bucket_key for r in rows], ["00:00:02", "00:00:03", "00:00:05"])

    def test_last_within_bucket_wins(self) -> None:
        rows = align_series(
            [
                _at("a", 1.0, ts(1, 200_000)),
                _at("a", 2.0, ts(1, 800_000)),
            ]
        )
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0].values, {"a": 2.0})

    def test_equal_timestamps_keep_input_order(self) -> None:
        rows = align_series([reading("a", 5.0, 1), reading("a", 7.0, 1)])
        self.assertEqual(rows[0].values, {"a": 7.0})
        rows = align_series([reading("a", 7.0, 1), reading("a", 5.0, 1)])
        self.assertEqual(rows[0].values, {"a": 5.0})

    def test_no_implicit_zero_fill(self) -> None:
        readings = [
            reading("a", 0.5, 1),
            reading("b", 1.5, 3),
            reading("c", 2.5, 3),
            reading("a", 3.5, 4),
        ]
        rows = align_series(readings)
        present = {(bucket_key(r.timestamp), r.sensor_instance_id) for r in readings}
        for row in rows:
            for series_id in row.values:
                self.assertIn((row.bucket_key, series_id), present)
        self.assertEqual(sum(len(r.values) for r in rows), len(present))

    def test_realigning_output_is_idempotent(self) -> None:
        rows = align_series(
            [reading("a", 1, 1), reading("b", 2, 1), reading("a", 3, 2), reading("b", 4, 4)]
        )
        day = datetime(2026, 1, 1, tzinfo=timezone.utc)
        replay = [
            _at(series_id, value, datetime.combine(day.date(), datetime.strptime(row.bucket_key, "%H:%M:%S").time(), tzinfo=timezone.utc))
            for row in rows
            for series_id, value in row.values.items()
        ]
        again = align_series(replay)
        self.assertEqual([r.as_dict() for r in again], [r.as_dict() for r in rows])

    def test_coarser_granularity(self) -> None:
        rows = align_series([reading("a", 1, 1), reading("a", 2, 4), reading("a", 3, 6)], timedelta(seconds=5))
        self.assertEqual([(r.bucket_key, r.values["a"]) for r in rows], [("00:00:00", 2), ("00:00:05", 3)])

    def test_invalid_granularity(self) -> None:
        for bad in (0, -1, timedelta(0), float("nan")):
            with self.assertRaises(ValueError):
                align_series([reading("a", 1, 1)], bad)

    def test_bucket_uses_timestamp_timezone(self) -> None:
        cet = timezone(timedelta(hours=1))
        when = datetime(2026, 1, 1, 10, 15, 30, 900_000, tzinfo=cet)
        self.assertEqual(bucket_key(when), "10:15:30")
        self.assertEqual(bucket_key(when.replace(tzinfo=None)), "10:15:30")

    def test_empty_input(self) -> None:
        self.assertEqual(align_series([]), [])


class TestSeriesHelpers(unittest.TestCase):
    def test_series_ids_first_seen_order(self) -> None:
        rows = align_series([reading("b", 1, 1), reading("a", 1, 1), reading("c", 1, 2), reading("a", 1, 3)])
        self.assertEqual(series_ids(rows), ["b", "a", "c"])

    def test_summarize_series(self) -> None:
        summary = summarize_series([reading("a", 1, 1), reading("b", 4, 1), reading("a", 3, 2)])
        self.assertEqual(
            summary,
            [SeriesSummary(instance_id="a", average=2.0, count=2), SeriesSummary(instance_id="b", average=4.0, count=1)],
        )
