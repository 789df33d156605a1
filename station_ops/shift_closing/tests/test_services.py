"""Unit tests for the HTTP shift client."""

from __future__ import annotations

import json
import unittest
from datetime import datetime, timezone
from unittest import mock

import requests

from station_ops.shift_closing.config import ShiftClosingConfig
from station_ops.shift_closing.services import HttpShiftClient


def _response(status_code: int, body=None) -> requests.Response:
    resp = requests.Response()
    resp.status_code = status_code
    resp.url = "http://localhost:3001/api"
    resp._content = json.dumps(body).encode("utf-8") if body is not None else b""
    return resp


class TestHttpShiftClient(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.http = mock.Mock(spec=requests.Session)
        self.client = HttpShiftClient("http://localhost:3001/api/", token="tok", timeout=7, session=self.http)

    async def test_get_open_shift_unwraps_envelope(self) -> None:
        self.http.request.return_value = _response(
            200,
            {
                "success": True,
                "data": {
                    "id": "S1",
                    "startTime": "2026-10-19T06:00:00Z",
                    "pumpReadings": [{"pumpId": "P1", "electricMeter": 1000, "manualMeter": 990, "cashMeter": 50000}],
                    "tankReadings": [{"tankId": "T1", "capacity": 10000, "volume": 5000, "dipValue": 150}],
                    "islandAttendantAssignments": [{"islandId": "I1", "attendantIds": ["A1"]}],
                    "walletBalance": 2500,
                },
            },
        )

        shift = await self.client.get_open_shift("ST1")

        self.assertEqual(shift.shift_id, "S1")
        self.assertEqual(shift.station_id, "ST1")
        self.assertEqual(shift.started_at, datetime(2026, 10, 19, 6, 0, tzinfo=timezone.utc))
        self.assertTrue(shift.pump_readings[0].complete)
        self.assertEqual(shift.tank_readings[0].dip, 150.0)
        self.assertEqual(shift.previous_wallet_balance, 2500.0)
        self.http.request.assert_called_once_with(
            "GET",
            "http://localhost:3001/api/shift/open",
            headers={"Accept": "application/json", "Authorization": "Bearer tok"},
            timeout=7,
            params={"stationId": "ST1"},
        )

    async def test_topology_lookups(self) -> None:
        self.http.request.side_effect = [
            _response(200, {"I1": ["P1", "P2"], "I2": ["P3"]}),
            _response(200, [{"pumpId": "P1", "productId": "PMS", "unitPrice": 150, "tankId": "T1"}]),
        ]

        mapping = await self.client.get_island_pump_mapping("ST1")
        details = await self.client.get_pump_details("ST1")

        self.assertEqual(mapping, {"I1": ["P1", "P2"], "I2": ["P3"]})
        self.assertEqual(details["P1"].unit_price, 150.0)
        self.assertEqual(details["P1"].tank_id, "T1")
        urls = [c.args[1] for c in self.http.request.call_args_list]
        self.assertEqual(
            urls,
            [
                "http://localhost:3001/api/asset-topography/station/ST1/island-pumps",
                "http://localhost:3001/api/asset-topography/station/ST1/pumps",
            ],
        )

    async def test_close_shift_posts_payload(self) -> None:
        self.http.request.return_value = _response(200, {"shiftId": "S1", "closedAt": "2026-10-19T14:00:00Z"})

        result = await self.client.close_shift("S1", {"shiftId": "S1"})

        self.assertEqual(result["closedAt"], "2026-10-19T14:00:00Z")
        call = self.http.request.call_args
        self.assertEqual(call.args, ("POST", "http://localhost:3001/api/shift/S1/close"))
        self.assertEqual(call.kwargs["json"], {"shiftId": "S1"})

    async def test_error_uses_server_message(self) -> None:
        self.http.request.return_value = _response(409, {"message": "Shift is already closed"})

        with self.assertLogs("station_ops.shift_closing.services", level="ERROR"):
            with self.assertRaises(requests.HTTPError) as ctx:
                await self.client.close_shift("S1", {})
        self.assertEqual(str(ctx.exception), "Shift is already closed")
        self.assertEqual(ctx.exception.response.status_code, 409)

    async def test_error_without_body_reports_status(self) -> None:
        self.http.request.return_value = _response(500)

        with self.assertLogs("station_ops.shift_closing.services", level="ERROR"):
            with self.assertRaises(requests.HTTPError) as ctx:
                await self.client.get_open_shift("ST1")
        self.assertEqual(str(ctx.exception), "API request failed: 500")

    async def test_empty_success_body(self) -> None:
        self.http.request.return_value = _response(204)

        self.assertEqual(await self.client.close_shift("S1", {}), {})

    def test_from_config(self) -> None:
        client = HttpShiftClient.from_config(ShiftClosingConfig(api_base_url="https://ops.example.com/api", api_timeout_seconds=9))

        self.assertEqual(client.base_url, "https://ops.example.com/api")
        self.assertEqual(client.timeout, 9)
        self.assertIsNone(client.token)


if __name__ == "__main__":
    unittest.main()
