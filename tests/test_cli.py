import json

from typer.testing import CliRunner

from camlink import main
from camlink.core import connection as connection_module
from camlink.models.device import DiscoveredDevice
from camlink.utils.config import Config

from conftest import FakeClient

runner = CliRunner()

DEVICES = [
    DiscoveredDevice(
        urn="urn:uuid:1",
        types=["dn:NetworkVideoTransmitter"],
        scopes=["onvif://www.onvif.org/name/Front"],
        xaddrs=["http://10.0.0.5/onvif/device_service"],
        metadata_version="1",
    ),
]


def _fake_probe(devices):
    async def probe(timeout, on_device=None, **kwargs):
        if on_device is not None:
            for device in devices:
                on_device(device)
        return devices
    return probe


def test_discover_lists_devices(monkeypatch, tmp_path):
    monkeypatch.setattr(main, "probe", _fake_probe(DEVICES))

    result = runner.invoke(main.app, ["discover", "--config-dir", str(tmp_path)])

    assert result.exit_code == 0
    assert "10.0.0.5:80 Front (onvif) http://10.0.0.5/onvif/device_service" in result.output


def test_discover_separate_prints_json_lines(monkeypatch, tmp_path):
    monkeypatch.setattr(main, "probe", _fake_probe(DEVICES))

    result = runner.invoke(main.app, ["discover", "--separate", "--config-dir", str(tmp_path)])

    assert result.exit_code == 0
    assert json.loads(result.output.strip().splitlines()[0])["urn"] == "urn:uuid:1"


def test_discover_nothing_found(monkeypatch, tmp_path):
    monkeypatch.setattr(main, "probe", _fake_probe([]))

    result = runner.invoke(main.app, ["discover", "--config-dir", str(tmp_path)])

    assert result.exit_code == 0
    assert "No ONVIF devices found" in result.output


def test_profiles_without_devices_fails(tmp_path):
    result = runner.invoke(main.app, ["profiles", "--config-dir", str(tmp_path)])

    assert result.exit_code == 1
    assert "No devices configured" in result.output


def test_profiles_lists_connected_device(monkeypatch, tmp_path):
    Config(str(tmp_path)).set("devices", [
        {"address": "10.0.0.5", "name": "Front", "username": "cam", "password": "pass", "check_interval": 0},
    ])
    monkeypatch.setattr(connection_module, "default_client_factory", lambda c, u, p: FakeClient())

    result = runner.invoke(main.app, ["profiles", "--config-dir", str(tmp_path), "--device", "Front"])

    assert result.exit_code == 0
    assert "Profile_1: mainStream" in result.output
    assert "Profile_2: subStream" in result.output


def test_watch_rejects_unknown_mode(tmp_path):
    result = runner.invoke(main.app, ["watch", "--device", "x", "--events", "webhook",
                                      "--config-dir", str(tmp_path)])
    assert result.exit_code == 2
