from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from devctl.devices.identity import (
    Device,
    DeviceKind,
    Endpoint,
    XenbusState,
    backend_path,
    error_path,
    frontend_path,
)
from devctl.devices.network import NetworkInterfaces, check_mac, rate_limit_keys
from devctl.errors import DeviceRemoteError, HotplugFieldMissingError, InvalidMacError
from devctl.network.netdev import Bridge, NetworkHelpers

MAC = "00:16:3e:76:ce:44"


@pytest.fixture
def netdev() -> MagicMock:
    helpers = MagicMock(spec=NetworkHelpers)
    helpers.set_mtu = AsyncMock()
    helpers.online = AsyncMock()
    return helpers


@pytest.fixture
def nics(store, hotplug, test_settings, netdev) -> NetworkInterfaces:
    return NetworkInterfaces(store, hotplug, test_settings, netdev)


def _vif(domid: int = 7, devid: int = 0, wireless: bool = False) -> Device:
    front_kind = DeviceKind.WIRELESS_NETWORK_INTERFACE if wireless else DeviceKind.NETWORK_INTERFACE
    return Device(
        backend=Endpoint(0, DeviceKind.NETWORK_INTERFACE, devid),
        frontend=Endpoint(domid, front_kind, devid),
    )


@pytest.mark.parametrize("mac", [MAC, "AA:BB:CC:DD:EE:FF"])
def test_check_mac_accepts(mac):
    assert check_mac(mac) == mac


@pytest.mark.parametrize("mac", ["", "00:16:3e:76:ce", "00:16:3e:76:ce:4", "00-16-3e-76-ce-44", "00:16:3e:76:ce:4g", "00:16:3e:00:00:01\n"])
def test_check_mac_rejects(mac):
    with pytest.raises(InvalidMacError):
        check_mac(mac)


def test_rate_limit_keys():
    # 100 KiB/s over the default 50ms interval
    assert rate_limit_keys((100, 0)) == [("rate", "5120,50000")]
    assert rate_limit_keys((100, 10000)) == [("rate", "1024,10000")]
    assert rate_limit_keys(None) == []


def test_rate_limit_keys_drops_out_of_range():
    assert rate_limit_keys((0, 50000)) == []
    assert rate_limit_keys((2**40, 1_000_000)) == []


@pytest.mark.asyncio
async def test_add_publishes_and_plugs(store, nics, netdev, scripts, test_settings):
    device = _vif()
    await scripts.plugged(device, vif="vif7.0")

    result = await nics.add(7, devid=0, netty=Bridge("xenbr0"), mac=MAC, mtu=1400, rate=(100, 0))

    assert result == device
    back = backend_path(store, device)
    front = frontend_path(store, device)
    assert await store.read(f"{back}/mac") == MAC
    assert await store.read(f"{back}/script") == test_settings.vif_script
    assert await store.read(f"{back}/rate") == "5120,50000"
    assert await store.read(f"{back}/handle") == "0"
    assert await store.read(f"{front}/backend-id") == "0"
    assert not await store.exists(f"{front}/protocol")
    netdev.set_mtu.assert_awaited_once_with("vif7.0", 1400)
    netdev.online.assert_awaited_once_with("vif7.0", Bridge("xenbr0"))
    assert await store.read(f"{back}/hotplug-status") == "connected"


@pytest.mark.asyncio
async def test_add_wireless(store, nics, scripts):
    device = _vif(wireless=True)
    await scripts.plugged(device, vif="vif7.0")

    result = await nics.add(7, devid=0, netty=Bridge("xenbr0"), mac=MAC, wireless=True)

    front = frontend_path(store, result)
    assert front == "/local/domain/7/device/vwif/0"
    assert backend_path(store, result) == "/local/domain/0/backend/vif/7/0"
    assert await store.read(f"{front}/ssid") == "XenWireless"
    assert await store.read(f"{front}/rssi") == "-65"


@pytest.mark.asyncio
async def test_add_rejects_bad_mac_before_touching_store(store, nics):
    before = store.snapshot()
    with pytest.raises(InvalidMacError):
        await nics.add(7, devid=0, netty=Bridge("xenbr0"), mac="bogus")
    assert store.snapshot() == before


@pytest.mark.asyncio
async def test_plug_requires_vif_field(nics, netdev):
    with pytest.raises(HotplugFieldMissingError) as exc:
        await nics.plug(_vif(), Bridge("xenbr0"))
    assert exc.value.field == "vif"
    netdev.online.assert_not_awaited()


@pytest.mark.asyncio
async def test_plug_without_mtu(store, nics, netdev, scripts):
    device = _vif()
    await scripts.plugged(device, vif="vif7.0")

    await nics.plug(device, Bridge("xenbr0"))
    netdev.set_mtu.assert_not_awaited()


@pytest.mark.asyncio
async def test_request_closure(store, nics):
    device = _vif()
    back = backend_path(store, device)
    await store.write(f"{back}/state", XenbusState.CONNECTED.to_store())

    await nics.request_closure(device)
    assert await store.read(f"{back}/online") == "0"
    assert await store.read(f"{back}/state") == "5"


@pytest.mark.asyncio
async def test_request_closure_leaves_other_states(store, nics):
    device = _vif()
    back = backend_path(store, device)
    await store.write(f"{back}/state", XenbusState.INIT_WAIT.to_store())

    await nics.request_closure(device)
    assert await store.read(f"{back}/state") == "2"


@pytest.mark.asyncio
async def test_clean_shutdown_waits_for_unplug(store, nics, scripts):
    device = _vif()
    await scripts.plugged(device, vif="vif7.0")
    await nics.add(7, devid=0, netty=Bridge("xenbr0"), mac=MAC)

    async def hotplug_script():
        await asyncio.sleep(0.01)
        await scripts.unplugged(device)

    task = asyncio.create_task(hotplug_script())
    await nics.clean_shutdown(device)
    await task

    assert not await store.exists(frontend_path(store, device))
    assert not await store.exists(backend_path(store, device))


@pytest.mark.asyncio
async def test_clean_shutdown_reports_guest_error(store, nics, scripts):
    device = _vif()
    await scripts.plugged(device, vif="vif7.0")
    await nics.add(7, devid=0, netty=Bridge("xenbr0"), mac=MAC)

    async def guest():
        await asyncio.sleep(0.01)
        await store.write(error_path(store, device), "in use")

    task = asyncio.create_task(guest())
    with pytest.raises(DeviceRemoteError) as exc:
        await nics.clean_shutdown(device)
    await task

    assert exc.value.error == "in use"
    assert await store.exists(frontend_path(store, device))


@pytest.mark.asyncio
async def test_hard_shutdown(store, nics, scripts):
    device = _vif()
    await scripts.plugged(device, vif="vif7.0")
    await nics.add(7, devid=0, netty=Bridge("xenbr0"), mac=MAC)

    async def hotplug_script():
        await asyncio.sleep(0.01)
        assert await store.read(f"{backend_path(store, device)}/online") == "0"
        await scripts.unplugged(device)

    task = asyncio.create_task(hotplug_script())
    await nics.hard_shutdown(device)
    await task

    assert not await store.exists(frontend_path(store, device))


@pytest.mark.asyncio
async def test_release_delegates_to_hotplug(nics):
    nics.hotplug.release = AsyncMock()
    device = _vif()
    await nics.release(device)
    nics.hotplug.release.assert_awaited_once_with(device)
