import asyncio
import time

import pytest

from camlink.core.errors import ConfigurationError, NotConnectedError, RemoteError
from camlink.core.features import Feature
from camlink.core.operations import Operation, ServiceCategory
from camlink.models.device import ConnectionState

from conftest import FakeClient, eventually, make_connection


@pytest.mark.asyncio
async def test_initialize_connects_and_publishes():
    client = FakeClient()
    connection = make_connection(client)
    states = []
    connection.add_status_listener(states.append)

    state = await connection.initialize()

    assert state is ConnectionState.CONNECTED
    assert states == [ConnectionState.INITIALIZING, ConnectionState.CONNECTED]
    assert connection.client is client
    assert connection.supports("media")
    assert connection.supports("ptz")
    assert not connection.supports("imaging")
    assert [p.token for p in connection.get_profiles()] == ["Profile_1", "Profile_2"]


@pytest.mark.asyncio
async def test_initialize_is_idempotent():
    client = FakeClient()
    connection = make_connection(client)

    await asyncio.gather(connection.initialize(), connection.initialize())
    await connection.initialize()

    assert client.connect_count == 1
    assert connection.state is ConnectionState.CONNECTED
    assert connection.client is client


@pytest.mark.asyncio
async def test_missing_credentials_is_configuration_error():
    client = FakeClient()
    connection = make_connection(client, username=None, password=None)

    with pytest.raises(ConfigurationError) as excinfo:
        await connection.initialize()

    assert "CAMLINK_USERNAME_10_0_0_5" in str(excinfo.value)
    assert connection.state is ConnectionState.UNCONFIGURED
    assert client.connect_count == 0


@pytest.mark.asyncio
async def test_missing_address_is_configuration_error():
    client = FakeClient()
    connection = make_connection(client, address="")

    with pytest.raises(ConfigurationError):
        await connection.initialize()
    assert connection.state is ConnectionState.UNCONFIGURED


@pytest.mark.asyncio
async def test_credentials_fall_back_to_environment():
    client = FakeClient()
    seen = []

    def factory(config, username, password):
        seen.append((username, password))
        return client

    connection = make_connection(
        client,
        username=None,
        password=None,
        environ={"CAMLINK_USERNAME_10_0_0_5": "cam", "CAMLINK_PASSWORD_10_0_0_5": "pass"},
    )
    connection._client_factory = factory

    await connection.initialize()

    assert seen == [("cam", "pass")]
    assert connection.is_connected


@pytest.mark.asyncio
async def test_connect_failure_disconnects_and_releases_client():
    client = FakeClient()
    client.connect_error = OSError("host unreachable")
    connection = make_connection(client)

    state = await connection.initialize()

    assert state is ConnectionState.DISCONNECTED
    assert connection.client is None
    assert client.closed
    assert isinstance(connection.last_error, RemoteError)
    assert connection.get_profiles() == []


@pytest.mark.asyncio
async def test_resolve_profile_token_first_match():
    client = FakeClient(profiles=[
        {"token": "A", "Name": "main"},
        {"token": "B", "Name": "main"},
        {"token": "C", "Name": "sub"},
    ])
    connection = make_connection(client)

    assert connection.resolve_profile_token("main") is None

    await connection.initialize()
    assert connection.resolve_profile_token("main") == "A"
    assert connection.resolve_profile_token("sub") == "C"
    assert connection.resolve_profile_token("missing") is None


@pytest.mark.asyncio
async def test_watchdog_failure_disconnects_once_and_blocks_calls():
    client = FakeClient()
    healthy = {"value": True}

    def probe():
        if not healthy["value"]:
            raise OSError("no route to host")
        return {}

    client.on("device", "GetSystemDateAndTime", probe)
    client.on("media", "GetProfiles", lambda: [])
    connection = make_connection(client, check_interval=0.02)
    states = []
    connection.add_status_listener(states.append)

    await connection.initialize()
    assert connection.supports("media")

    healthy["value"] = False
    assert await eventually(lambda: connection.state is ConnectionState.DISCONNECTED)
    await eventually(lambda: client.count("device.GetSystemDateAndTime") >= 4)

    assert states.count(ConnectionState.DISCONNECTED) == 1
    assert not connection.supports("media")
    assert connection.get_profiles() == []

    with pytest.raises(NotConnectedError):
        await Feature(connection, ServiceCategory.MEDIA).request(Operation.GET_PROFILES)
    with pytest.raises(NotConnectedError):
        await connection.call(Operation.GET_PROFILES)
    assert client.count("media.GetProfiles") == 0

    await connection.close()


@pytest.mark.asyncio
async def test_probe_recovery_reloads_before_connected():
    client = FakeClient()
    healthy = {"value": False}

    def probe():
        if not healthy["value"]:
            raise OSError("timeout")
        return {}

    client.on("device", "GetSystemDateAndTime", probe)
    connection = make_connection(client)
    await connection.initialize()

    assert await connection.check_connection() is False
    assert connection.state is ConnectionState.DISCONNECTED

    seen = []
    connection.add_status_listener(lambda state: seen.append((state, connection.supports("media"))))

    healthy["value"] = True
    assert await connection.check_connection() is True

    assert client.refresh_count == 1
    assert seen == [(ConnectionState.CONNECTED, True)]
    assert connection.resolve_profile_token("mainStream") == "Profile_1"


@pytest.mark.asyncio
async def test_reconnect_replaces_client():
    first, second = FakeClient(), FakeClient()
    clients = [first, second]
    connection = make_connection(first)
    connection._client_factory = lambda config, username, password: clients.pop(0)

    await connection.initialize()
    state = await connection.reconnect()

    assert state is ConnectionState.CONNECTED
    assert first.closed
    assert connection.client is second


@pytest.mark.asyncio
async def test_close_clears_derived_state():
    client = FakeClient()
    connection = make_connection(client, check_interval=0.05)
    await connection.initialize()
    connection.snapshots.set("Profile_1", "http://10.0.0.5/snap.jpg")

    await connection.close()

    assert connection.state is ConnectionState.UNCONFIGURED
    assert connection.client is None
    assert client.closed
    assert len(connection.profiles) == 0
    assert len(connection.snapshots) == 0
    assert not connection.capabilities.populated


@pytest.mark.asyncio
async def test_failing_status_listener_does_not_break_transitions():
    client = FakeClient()
    connection = make_connection(client)

    def broken(state):
        raise ValueError("listener bug")

    seen = []
    connection.add_status_listener(broken)
    connection.add_status_listener(seen.append)

    await connection.initialize()

    assert seen[-1] is ConnectionState.CONNECTED


@pytest.mark.asyncio
async def test_initialize_during_slow_connect_does_not_connect_twice():
    client = FakeClient()

    def slow_connect():
        time.sleep(0.1)
        FakeClient.connect(client)

    client.connect = slow_connect
    connection = make_connection(client)

    first = asyncio.ensure_future(connection.initialize())
    assert await eventually(lambda: connection.state is ConnectionState.INITIALIZING)

    assert await connection.initialize() is ConnectionState.INITIALIZING
    assert await first is ConnectionState.CONNECTED
    assert client.connect_count == 1


@pytest.mark.asyncio
async def test_concurrent_checks_share_one_request():
    client = FakeClient()
    connection = make_connection(client)
    await connection.initialize()
    gate = asyncio.Event()

    async def slow_probe():
        await gate.wait()
        return {"UTCDateTime": {}}

    client.on("device", "GetSystemDateAndTime", slow_probe)

    first = asyncio.ensure_future(connection.check_connection())
    assert await eventually(lambda: client.count("device.GetSystemDateAndTime") == 1)

    assert await connection.check_connection() is True
    gate.set()
    assert await first is True
    assert client.count("device.GetSystemDateAndTime") == 1


@pytest.mark.asyncio
async def test_watchdog_checks_never_overlap():
    client = FakeClient()
    active = []
    peak = []

    async def slow_probe():
        active.append(1)
        peak.append(len(active))
        await asyncio.sleep(0.05)
        active.pop()
        return {"UTCDateTime": {}}

    client.on("device", "GetSystemDateAndTime", slow_probe)
    connection = make_connection(client, check_interval=0.01)
    await connection.initialize()

    assert await eventually(lambda: client.count("device.GetSystemDateAndTime") >= 3)
    await connection.close()

    assert max(peak) == 1
