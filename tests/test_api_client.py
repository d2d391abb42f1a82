from __future__ import annotations

import unittest
from typing import Any

import httpx

from sensor_live.api_client import SensorApiClient
from sensor_live.exceptions import PayloadError
from sensor_live.models import ReadingFilter
from tests.fakes import payload


class _Backend:
    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.pages: dict[int, dict[str, Any]] = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.raw_path.startswith(b"/api/v1/sensors/last/room%201%2Ftemp?"):
            return httpx.Response(200, json=[payload("room 1/temp", 19.0, 4)])
        path = request.url.path
        if path == "/api/v1/sensors/last/temp-1":
            return httpx.Response(
                200,
                json=[payload("temp-1", 22.5, 2), {"broken": True}, {**payload("temp-1", 1.0), "timestamp": 1e20}],
            )
        if path == "/api/v1/sensors/average/temp-1":
            return httpx.Response(200, json={"sensorInstanceId": "temp-1", "average": 21.0, "count": 100})
        if path == "/api/v1/sensors/average/bad":
            return httpx.Response(200, json={"count": 1})
        if path == "/api/v1/sensors/sensor-instances":
            return httpx.Response(200, json=["temp-1", "occ-1"])
        if path == "/api/v1/sensors/sensor-types":
            return httpx.Response(200, json=["temperature", "occupancy"])
        if path == "/api/v1/sensors":
            page = int(request.url.params["pageNumber"])
            return httpx.Response(200, json=self.pages[page])
        return httpx.Response(500, json={"error": "boom"})


class TestSensorApiClient(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.backend = _Backend()
        self.client = SensorApiClient(
            base_url="http://sensors.local/",
            transport=httpx.MockTransport(self.backend),
        )
        await self.client.__aenter__()

    async def asyncTearDown(self) -> None:
        await self.client.__aexit__(None, None, None)

    async def test_last_readings_skip_malformed_rows(self) -> None:
        readings = await self.client.get_last_readings("temp-1", 1)
        self.assertEqual([r.value for r in readings], [22.5])
        self.assertEqual(self.backend.requests[0].url.params["count"], "1")

    async def test_instance_id_is_a_single_path_segment(self) -> None:
        readings = await self.client.get_last_readings("room 1/temp", 1)

        self.assertEqual([r.sensor_instance_id for r in readings], ["room 1/temp"])
        self.assertTrue(self.backend.requests[0].url.raw_path.startswith(b"/api/v1/sensors/last/room%201%2Ftemp?"))
        with self.assertRaises(httpx.HTTPStatusError):
            await self.client.get_average("../sensor-types")
        self.assertTrue(self.backend.requests[1].url.raw_path.startswith(b"/api/v1/sensors/average/..%2Fsensor-types?"))

    async def test_average(self) -> None:
        avg = await self.client.get_average("temp-1", 100)
        self.assertEqual((avg.instance_id, avg.average, avg.count), ("temp-1", 21.0, 100))
        with self.assertRaises(PayloadError):
            await self.client.get_average("bad")

    async def test_instances_and_types(self) -> None:
        self.assertEqual(await self.client.get_sensor_instances("temperature"), ["temp-1", "occ-1"])
        self.assertEqual(self.backend.requests[-1].url.params["sensorType"], "temperature")
        self.assertEqual(await self.client.get_sensor_types(), ["temperature", "occupancy"])

    async def test_fetch_window_walks_pages(self) -> None:
        self.backend.pages = {
            1: {"data": [payload("a", 1, 1), payload("b", 2, 1)], "pageNumber": 1, "pageSize": 2, "totalRecords": 3},
            2: {"data": [payload("a", 3, 2)], "pageNumber": 2, "pageSize": 2, "totalRecords": 3},
        }
        readings = await self.client.fetch_window(ReadingFilter(page_size=2))

        self.assertEqual([r.value for r in readings], [1, 2, 3])
        self.assertEqual([req.url.params["pageNumber"] for req in self.backend.requests], ["1", "2"])

    async def test_http_errors_propagate(self) -> None:
        with self.assertRaises(httpx.HTTPStatusError):
            await self.client.get_last_readings("missing")

    async def test_requires_open_client(self) -> None:
        closed = SensorApiClient(base_url="http://sensors.local")
        with self.assertRaises(RuntimeError):
            await closed.get_sensor_types()
