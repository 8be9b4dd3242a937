import asyncio
import json

import httpx
import pytest

from fieldtrack.core.exceptions import ConfigurationError, DeliveryError
from fieldtrack.schemas.tracking import EmergencyCheckoutRecord, LocationSample
from fieldtrack.services.attendance_client import AttendanceClient

from conftest import BASE_MS


def sample(record_id, timestamp=BASE_MS, stale=False):
    return LocationSample(
        id=record_id, employee_id="E1", latitude=28.6, longitude=77.2,
        accuracy=5.0, battery_level=80, timestamp=timestamp, stale=stale,
    )


def make_client(handler, **kwargs):
    return AttendanceClient(
        base_url="https://attendance.test/api/",
        token="secret",
        timeout=kwargs.pop("timeout", 1.0),
        location_batch_path="/attendance/location-batch",
        checkout_path="/attendance/checkout",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


async def test_upload_sends_samples_in_order_and_returns_accepted():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("Authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"accepted": [1, "2"]})

    accepted = await make_client(handler).upload_location_batch(
        "E1", [sample(1), sample(2, BASE_MS + 1000, stale=True)],
    )

    assert accepted == [1, 2]
    assert seen["url"] == "https://attendance.test/api/attendance/location-batch"
    assert seen["auth"] == "Bearer secret"
    body = seen["body"]
    assert body["employeeId"] == "E1"
    assert [s["id"] for s in body["samples"]] == [1, 2]
    assert body["samples"][0]["batteryLevel"] == 80
    assert [s["stale"] for s in body["samples"]] == [False, True]
    assert body["samples"][0]["timestamp"].startswith("2023-11-14T22:13:20")
    assert "platform" in body["deviceInfo"]


async def test_upload_success_flag_without_list_accepts_all():
    def handler(request):
        return httpx.Response(200, json={"success": True})

    assert await make_client(handler).upload_location_batch("E1", [sample(7), sample(8)]) == [7, 8]


@pytest.mark.parametrize("response", [
    httpx.Response(500, text="boom"),
    httpx.Response(401, json={"detail": "bad token"}),
    httpx.Response(200, text="<html>"),
    httpx.Response(200, json={"success": False}),
    httpx.Response(200, json={"accepted": ["x"]}),
])
async def test_upload_failures_raise_delivery_error(response):
    with pytest.raises(DeliveryError):
        await make_client(lambda request: response).upload_location_batch("E1", [sample(1)])


async def test_transport_error_raises_delivery_error():
    def handler(request):
        raise httpx.ConnectError("unreachable", request=request)

    with pytest.raises(DeliveryError):
        await make_client(handler).upload_location_batch("E1", [sample(1)])


async def test_hung_request_is_bounded_by_timeout():
    async def handler(request):
        await asyncio.sleep(10)
        return httpx.Response(200, json={"accepted": [1]})

    with pytest.raises(DeliveryError):
        await make_client(handler, timeout=0.05).upload_location_batch("E1", [sample(1)])


async def test_unconfigured_client_refuses_to_send():
    client = AttendanceClient(base_url="", token="")

    assert client.is_configured is False
    with pytest.raises(ConfigurationError):
        await client.upload_location_batch("E1", [sample(1)])


async def test_emergency_checkout_payload():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"success": True})

    checkout = EmergencyCheckoutRecord(
        id=3, employee_id="E1", latitude=28.6, longitude=77.2, accuracy=5.0, battery_level=4,
        check_out_time=BASE_MS, reason="BATTERY_DRAIN", check_out_data='{"batteryLevel": 4}',
    )
    await make_client(handler).submit_emergency_checkout(checkout)

    body = seen["body"]
    assert seen["path"] == "/api/attendance/checkout"
    assert body["employeeId"] == "E1"
    assert body["reason"] == body["method"] == "BATTERY_DRAIN"
    assert body["checkOutData"] == {"batteryLevel": 4}
    assert body["lastLocationData"]["batteryLevel"] == 4
    assert body["checkOutTime"] == body["lastLocationData"]["timestamp"]


async def test_rejected_emergency_checkout_raises():
    def handler(request):
        return httpx.Response(200, json={"success": False, "message": "already checked out"})

    checkout = EmergencyCheckoutRecord(
        id=1, employee_id="E1", latitude=0, longitude=0, check_out_time=BASE_MS, reason="APP_CLOSED",
    )
    with pytest.raises(DeliveryError, match="already checked out"):
        await make_client(handler).submit_emergency_checkout(checkout)
