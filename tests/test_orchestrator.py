import asyncio
import logging
import time

import pytest

from camlink.core.errors import (
    DeviceTimeoutError, InvalidArgumentsError, MethodNotFoundError, NotConnectedError, RemoteError,
    UnsupportedServiceError,
)
from camlink.core.operations import GenericOperation, Operation, ProfileArgs, PullMessagesArgs, ServiceCategory
from camlink.core.orchestrator import CallRequest, PendingCall

from conftest import FakeClient, make_connection


def test_pending_call_completes_once():
    pending = PendingCall("media.GetProfiles", None, deadline=0.0)
    assert pending.complete() is True
    assert pending.complete() is False
    assert pending.completed


@pytest.mark.asyncio
async def test_call_returns_serialized_data():
    client = FakeClient()
    client.on("media", "GetProfiles", lambda: [{"token": "Profile_1"}])
    connection = make_connection(client)
    await connection.initialize()

    result = await connection.orchestrator.call(CallRequest(Operation.GET_PROFILES))

    assert result.data == [{"token": "Profile_1"}]
    assert client.count("media.GetProfiles") == 1


@pytest.mark.asyncio
async def test_retries_bounded_and_single_failure():
    client = FakeClient()

    def fail(params):
        raise RuntimeError("device busy")

    client.on("media", "GetSnapshotUri", fail)
    connection = make_connection(client, call_retries=2)
    await connection.initialize()

    with pytest.raises(RemoteError) as excinfo:
        await connection.orchestrator.call(CallRequest(Operation.GET_SNAPSHOT_URI, ProfileArgs("Profile_1")))

    assert client.count("media.GetSnapshotUri") == 3
    assert isinstance(excinfo.value.__cause__, RuntimeError)
    assert "method=media.GetSnapshotUri" in str(excinfo.value)
    assert "device=10.0.0.5:80" in str(excinfo.value)


@pytest.mark.asyncio
async def test_retry_succeeds_on_second_attempt():
    client = FakeClient()
    attempts = []

    def flaky(params):
        attempts.append(params)
        if len(attempts) == 1:
            raise RuntimeError("transient")
        return {"Uri": "http://10.0.0.5/snap.jpg"}

    client.on("media", "GetSnapshotUri", flaky)
    connection = make_connection(client)
    await connection.initialize()

    result = await connection.orchestrator.call(CallRequest(Operation.GET_SNAPSHOT_URI, ProfileArgs("Profile_1")))

    assert result.data == {"Uri": "http://10.0.0.5/snap.jpg"}
    assert attempts == [{"ProfileToken": "Profile_1"}] * 2


@pytest.mark.asyncio
async def test_never_completing_call_times_out_once():
    client = FakeClient()

    async def hang():
        await asyncio.Event().wait()

    client.on("media", "GetProfiles", hang)
    connection = make_connection(client)
    await connection.initialize()

    with pytest.raises(DeviceTimeoutError) as excinfo:
        await connection.orchestrator.call(CallRequest(Operation.GET_PROFILES, timeout=0.05, retries=0))

    assert isinstance(excinfo.value, TimeoutError)
    assert client.count("media.GetProfiles") == 1


@pytest.mark.asyncio
async def test_late_completion_is_discarded(caplog):
    client = FakeClient()

    def slow():
        time.sleep(0.2)
        return {"late": True}

    client.on("device", "GetDeviceInformation", slow)
    connection = make_connection(client)
    await connection.initialize()

    caplog.set_level(logging.DEBUG, logger="camlink.core.orchestrator")
    with pytest.raises(DeviceTimeoutError):
        await connection.orchestrator.call(
            CallRequest(Operation.GET_DEVICE_INFORMATION, timeout=0.05, retries=0)
        )

    await asyncio.sleep(0.3)
    assert "Discarding late completion of device.GetDeviceInformation" in caplog.text


@pytest.mark.asyncio
async def test_call_rejected_without_connection():
    client = FakeClient()
    connection = make_connection(client)

    with pytest.raises(NotConnectedError):
        await connection.orchestrator.call(CallRequest(Operation.GET_PROFILES))
    assert client.calls == []


@pytest.mark.asyncio
async def test_missing_method_raises_before_io():
    client = FakeClient()
    connection = make_connection(client)
    await connection.initialize()

    with pytest.raises(MethodNotFoundError):
        await connection.orchestrator.call(CallRequest(GenericOperation(ServiceCategory.MEDIA, "GetOSDs")))


@pytest.mark.asyncio
async def test_generic_operation_passes_mapping_params():
    client = FakeClient()
    seen = []
    client.on("imaging", "GetStatus", lambda params: seen.append(params) or {"FocusStatus20": {}})
    connection = make_connection(client)
    await connection.initialize()

    await connection.orchestrator.call(CallRequest(
        GenericOperation(ServiceCategory.IMAGING, "GetStatus"),
        {"VideoSourceToken": "VideoSource_1"},
    ))

    assert seen == [{"VideoSourceToken": "VideoSource_1"}]


@pytest.mark.asyncio
async def test_unsupported_service_from_client_gets_context():
    client = FakeClient()

    def resolve(service, method, address=None):
        raise UnsupportedServiceError(f"Service '{service}' not available")

    connection = make_connection(client)
    await connection.initialize()
    client.resolve = resolve

    with pytest.raises(UnsupportedServiceError) as excinfo:
        await connection.orchestrator.call(CallRequest(Operation.GET_RECORDINGS))
    assert excinfo.value.method == "recording.GetRecordings"


@pytest.mark.asyncio
async def test_calls_are_serialized_per_connection():
    client = FakeClient()
    active = []
    peak = []

    async def tracked():
        active.append(1)
        peak.append(len(active))
        await asyncio.sleep(0.02)
        active.pop()
        return {}

    client.on("device", "GetHostname", tracked)
    connection = make_connection(client)
    await connection.initialize()

    await asyncio.gather(*(
        connection.orchestrator.call(CallRequest(Operation.GET_HOSTNAME)) for _ in range(3)
    ))

    assert max(peak) == 1
    assert client.count("device.GetHostname") == 3


@pytest.mark.asyncio
async def test_invalid_arguments_raise_typed_error_with_context():
    client = FakeClient()
    client.on("media", "GetSnapshotUri", lambda params: {})
    connection = make_connection(client)
    await connection.initialize()

    with pytest.raises(InvalidArgumentsError) as excinfo:
        await connection.orchestrator.call(CallRequest(Operation.GET_SNAPSHOT_URI))

    assert excinfo.value.method == "media.GetSnapshotUri"
    assert excinfo.value.address == "10.0.0.5:80"
    assert client.calls == []


@pytest.mark.asyncio
async def test_queued_call_deadline_includes_wait():
    client = FakeClient()

    async def hang():
        await asyncio.Event().wait()

    client.on("device", "GetHostname", hang)
    client.on("device", "GetDeviceInformation", lambda: {})
    connection = make_connection(client)
    await connection.initialize()
    loop = asyncio.get_running_loop()

    blocking = asyncio.ensure_future(
        connection.orchestrator.call(CallRequest(Operation.GET_HOSTNAME, timeout=1.0, retries=0))
    )
    await asyncio.sleep(0.01)

    started = loop.time()
    with pytest.raises(DeviceTimeoutError):
        await connection.orchestrator.call(CallRequest(Operation.GET_DEVICE_INFORMATION, timeout=0.1, retries=0))

    assert loop.time() - started < 0.5
    assert client.count("device.GetDeviceInformation") == 0

    with pytest.raises(DeviceTimeoutError):
        await blocking


@pytest.mark.asyncio
async def test_abandoned_thread_call_keeps_lane_until_it_returns():
    client = FakeClient()
    finished = []
    started = []

    def slow():
        time.sleep(0.3)
        finished.append(time.monotonic())
        return {}

    def fast():
        started.append(time.monotonic())
        return {"Name": "cam"}

    client.on("device", "GetDeviceInformation", slow)
    client.on("device", "GetHostname", fast)
    connection = make_connection(client)
    await connection.initialize()

    with pytest.raises(DeviceTimeoutError):
        await connection.orchestrator.call(CallRequest(Operation.GET_DEVICE_INFORMATION, timeout=0.05, retries=0))

    result = await connection.orchestrator.call(CallRequest(Operation.GET_HOSTNAME, timeout=1.0))

    assert result.data == {"Name": "cam"}
    assert started[0] >= finished[0]


@pytest.mark.asyncio
async def test_pull_point_polls_do_not_hold_up_device_calls():
    client = FakeClient()
    gate = asyncio.Event()

    async def long_poll(params):
        await gate.wait()
        return {"NotificationMessage": []}

    client.on("pullpoint", "PullMessages", long_poll)
    client.on("device", "GetHostname", lambda: {"Name": "cam"})
    connection = make_connection(client)
    await connection.initialize()

    poll = asyncio.ensure_future(connection.orchestrator.call(
        CallRequest(Operation.PULL_MESSAGES, PullMessagesArgs("http://10.0.0.5/onvif/Subscription?Idx=1"))
    ))
    await asyncio.sleep(0.01)

    result = await connection.orchestrator.call(CallRequest(Operation.GET_HOSTNAME, timeout=0.5, retries=0))

    assert result.data == {"Name": "cam"}
    assert not poll.done()
    gate.set()
    await poll
