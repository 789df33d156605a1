"""External collaborators of a closing session: shift data, topology, submission."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Protocol

import requests

from station_ops.shift_closing.config import ShiftClosingConfig
from station_ops.shift_closing.models import OpenShift, PumpDetails

logger = logging.getLogger(__name__)


class ShiftDataSource(Protocol):
    async def get_open_shift(self, station_id: str) -> OpenShift: ...


class TopologySource(Protocol):
    async def get_island_pump_mapping(self, station_id: str) -> Dict[str, List[str]]: ...

    async def get_pump_details(self, station_id: str) -> Dict[str, PumpDetails]: ...


class ShiftSubmissionApi(Protocol):
    async def close_shift(self, shift_id: str, payload: Dict[str, Any]) -> Dict[str, Any]: ...


def _error_message(resp: requests.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return f"API request failed: {resp.status_code}"


_ENVELOPE_KEYS = {"data", "message", "success", "status"}


def _unwrap(body: Any) -> Any:
    """Strip the {success, message, data} envelope when the server sends one."""
    if isinstance(body, dict) and "data" in body and set(body) <= _ENVELOPE_KEYS:
        return body["data"]
    return body


class HttpShiftClient:
    """
    Shift data, topology and shift-closing API over HTTP.

    Blocking `requests` calls run on a worker thread so the session's event loop
    is not held while the server responds.
    """

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: int = 30,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self.session = session or requests.Session()

    @classmethod
    def from_config(cls, config: ShiftClosingConfig, token: Optional[str] = None) -> "HttpShiftClient":
        return cls(config.api_base_url, token=token, timeout=config.api_timeout_seconds)

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        url = f"{self.base_url}{path}"
        resp = self.session.request(method, url, headers=self._headers(), timeout=self.timeout, **kwargs)
        if not resp.ok:
            message = _error_message(resp)
            logger.error("%s %s failed: %s", method, url, message)
            raise requests.HTTPError(message, response=resp)
        if not resp.content:
            return {}
        return _unwrap(resp.json())

    async def get_open_shift(self, station_id: str) -> OpenShift:
        data = await asyncio.to_thread(self._request, "GET", "/shift/open", params={"stationId": station_id})
        shift = OpenShift.from_dict(data)
        if not shift.station_id:
            shift.station_id = station_id
        return shift

    async def get_island_pump_mapping(self, station_id: str) -> Dict[str, List[str]]:
        data = await asyncio.to_thread(
            self._request, "GET", f"/asset-topography/station/{station_id}/island-pumps"
        )
        return {str(island_id): [str(p) for p in pump_ids] for island_id, pump_ids in (data or {}).items()}

    async def get_pump_details(self, station_id: str) -> Dict[str, PumpDetails]:
        data = await asyncio.to_thread(
            self._request, "GET", f"/asset-topography/station/{station_id}/pumps"
        )
        details = [PumpDetails.from_dict(row) for row in data or []]
        return {d.pump_id: d for d in details}

    async def close_shift(self, shift_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await asyncio.to_thread(self._request, "POST", f"/shift/{shift_id}/close", json=payload)
