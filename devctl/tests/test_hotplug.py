from __future__ import annotations

import asyncio

import pytest

from devctl.devices.hotplug import StoreHotplug
from devctl.errors import DevctlError, DeviceTimeoutError, FrontendDeviceError, LoopMountError


def test_paths(hotplug, vbd_device):
    assert hotplug.hotplug_path(vbd_device) == "/xapi/5/hotplug/vbd/51712"
    assert hotplug.status_node(vbd_device) == "/xapi/5/hotplug/vbd/51712/hotplug"
    assert hotplug.connected_node(vbd_device) == "/local/domain/0/backend/vbd/5/51712/hotplug-status"
    assert hotplug.frontend_hotplug_path(vbd_device) == "/xapi/5/frontend/vbd/51712"


@pytest.mark.asyncio
async def test_wait_for_plug_times_out(store, test_settings, vbd_device):
    test_settings.hotplug_timeout = 0.05
    hotplug = StoreHotplug(store, test_settings)

    with pytest.raises(DeviceTimeoutError) as exc:
        await hotplug.wait_for_plug(vbd_device)
    assert exc.value.operation == "hotplug"


@pytest.mark.asyncio
async def test_wait_for_frontend_plug_success(store, hotplug, vbd_device):
    await store.write("/xapi/5/frontend/vbd/51712/hotplug", "online")
    await hotplug.wait_for_frontend_plug(vbd_device)


@pytest.mark.asyncio
async def test_wait_for_frontend_plug_failure(store, hotplug, vbd_device):
    async def script():
        await asyncio.sleep(0.01)
        await store.write("/xapi/5/frontend/vbd/51712/error", "no /dev node")

    task = asyncio.create_task(script())
    with pytest.raises(FrontendDeviceError) as exc:
        await hotplug.wait_for_frontend_plug(vbd_device)
    await task
    assert exc.value.error == "no /dev node"


@pytest.mark.asyncio
async def test_loop_device_lifecycle(store, hotplug, vbd_device, run_cmd_calls):
    loopdev = await hotplug.mount_loopdev(vbd_device, "/srv/disk.img", read_only=True)

    assert loopdev == "/dev/loop3"
    assert run_cmd_calls[-1] == ["losetup", "--find", "--show", "--read-only", "/srv/disk.img"]
    assert await store.read("/xapi/5/hotplug/vbd/51712/loop-device") == "/dev/loop3"

    await hotplug.release(vbd_device)
    assert run_cmd_calls[-1] == ["losetup", "--detach", "/dev/loop3"]
    assert not await store.exists("/xapi/5/hotplug/vbd/51712")


@pytest.mark.asyncio
async def test_mount_loopdev_failure(store, test_settings, vbd_device):
    async def failing(cmd):
        return 1, "", "losetup: cannot find an unused loop device\n"

    hotplug = StoreHotplug(store, test_settings, run_cmd=failing)
    with pytest.raises(LoopMountError) as exc:
        await hotplug.mount_loopdev(vbd_device, "/srv/disk.img", read_only=False)
    assert exc.value.path == "/srv/disk.img"
    assert exc.value.cmd == ["losetup", "--find", "--show", "/srv/disk.img"]
    assert isinstance(exc.value, DevctlError)


@pytest.mark.asyncio
async def test_release_without_loop_device(store, hotplug, vbd_device, run_cmd_calls):
    await hotplug.release(vbd_device)
    assert run_cmd_calls == []
