"""Remote attendance API client.

Only the two calls the tracking core needs:
- bulk location upload: POST {LOCATION_BATCH_PATH} {employeeId, samples[]} -> {accepted: [id]}
- emergency checkout:   POST {CHECKOUT_PATH} {employeeId, lastLocationData, reason, method, ...}

Every failure (transport, timeout, HTTP >= 400, malformed body) is raised as
DeliveryError so the sync engine can count it and move on.
"""
import asyncio
import json
import logging
import platform
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

import httpx
from fieldtrack.core.config import settings
from fieldtrack.core.exceptions import ConfigurationError, DeliveryError
from fieldtrack.schemas.tracking import EmergencyCheckoutRecord, LocationSample

logger = logging.getLogger(__name__)


def _iso(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat()


def _device_info() -> Dict[str, str]:
    return {"platform": platform.system(), "release": platform.release(), "app": settings.APP_NAME}


class AttendanceClient:
    """Client for the attendance service's location endpoints."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
        location_batch_path: Optional[str] = None,
        checkout_path: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        base_url = base_url if base_url is not None else settings.ATTENDANCE_API_URL
        self.base_url = (base_url or "").rstrip("/")
        self.token = token if token is not None else settings.ATTENDANCE_API_TOKEN
        self.timeout = timeout if timeout is not None else settings.SYNC_REQUEST_TIMEOUT_SECONDS
        self.location_batch_path = location_batch_path or settings.LOCATION_BATCH_PATH
        self.checkout_path = checkout_path or settings.CHECKOUT_PATH
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.base_url)

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def _post(self, path: str, payload: dict) -> dict:
        if not self.is_configured:
            raise ConfigurationError("ATTENDANCE_API_URL is not configured")

        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                # Hard ceiling on the whole exchange, not just each socket read
                response = await asyncio.wait_for(
                    client.post(url, json=payload, headers=self._headers()),
                    timeout=self.timeout,
                )
        except asyncio.TimeoutError as e:
            raise DeliveryError(f"POST {path} timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            raise DeliveryError(f"POST {path} failed: {type(e).__name__}: {e}") from e

        if response.status_code >= 400:
            raise DeliveryError(f"POST {path} returned {response.status_code}: {response.text[:200]}")

        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError as e:
            raise DeliveryError(f"POST {path} returned non-JSON body: {response.text[:200]}") from e
        return data if isinstance(data, dict) else {"data": data}

    async def upload_location_batch(self, employee_id: str, samples: Iterable[LocationSample]) -> List[int]:
        """Upload samples in the given order. Returns the ids the server accepted."""
        samples = list(samples)
        payload = {
            "employeeId": employee_id,
            "samples": [
                {
                    "id": s.id,
                    "latitude": s.latitude,
                    "longitude": s.longitude,
                    "accuracy": s.accuracy,
                    "batteryLevel": s.battery_level,
                    "timestamp": _iso(s.timestamp),
                    "stale": s.stale,
                }
                for s in samples
            ],
            "deviceInfo": _device_info(),
        }
        data = await self._post(self.location_batch_path, payload)

        accepted = data.get("accepted")
        if accepted is None:
            if data.get("success") is True:
                return [s.id for s in samples]
            raise DeliveryError(f"Location batch response has no 'accepted' list: {str(data)[:200]}")
        try:
            return [int(i) for i in accepted]
        except (TypeError, ValueError) as e:
            raise DeliveryError(f"Malformed 'accepted' list: {accepted!r}") from e

    async def submit_emergency_checkout(self, checkout: EmergencyCheckoutRecord) -> Dict[str, Any]:
        check_out_data: Any = None
        if checkout.check_out_data:
            try:
                check_out_data = json.loads(checkout.check_out_data)
            except ValueError:
                check_out_data = checkout.check_out_data

        payload = {
            "employeeId": checkout.employee_id,
            "lastLocationData": {
                "latitude": checkout.latitude,
                "longitude": checkout.longitude,
                "accuracy": checkout.accuracy,
                "batteryLevel": checkout.battery_level,
                "timestamp": _iso(checkout.check_out_time),
            },
            "checkOutTime": _iso(checkout.check_out_time),
            "reason": checkout.reason,
            "method": checkout.reason,
            "checkOutData": check_out_data,
            "deviceInfo": _device_info(),
        }
        data = await self._post(self.checkout_path, payload)
        if data.get("success") is False:
            raise DeliveryError(f"Checkout rejected: {data.get('message') or data.get('error') or data}")
        return data
