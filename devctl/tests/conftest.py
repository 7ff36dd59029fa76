from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from devctl.config import Settings
from devctl.devices.hotplug import StoreHotplug
from devctl.devices.identity import Device, DeviceKind, Endpoint
from devctl.hypervisor import Hypervisor
from devctl.store.memory import MemoryStore


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Settings with short timeouts and every host path under tmp_path."""
    return Settings(
        hotplug_timeout=1.0,
        dm_ready_timeout=1.0,
        dm_shutdown_timeout=0.2,
        dm_poll_interval=0.01,
        dm_log_dir=str(tmp_path / "log"),
        dm_restore_dir=str(tmp_path / "restore"),
        dm_chroot_root=str(tmp_path / "chroot"),
        acpi_battery_path=str(tmp_path / "battery"),
        proc_root=str(tmp_path / "proc"),
        vncterm_timeout=1.0,
        pci_sysfs_root=str(tmp_path / "sys"),
    )


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def run_cmd_calls():
    return []


@pytest.fixture
def fake_run_cmd(run_cmd_calls):
    async def _run(cmd):
        run_cmd_calls.append(cmd)
        if cmd[:3] == ["losetup", "--find", "--show"]:
            return 0, "/dev/loop3\n", ""
        return 0, "", ""

    return _run


@pytest.fixture
def hotplug(store, test_settings, fake_run_cmd) -> StoreHotplug:
    return StoreHotplug(store, test_settings, run_cmd=fake_run_cmd)


@pytest.fixture
def hypervisor() -> MagicMock:
    return MagicMock(spec=Hypervisor)


@pytest.fixture
def vbd_device() -> Device:
    return Device(
        backend=Endpoint(0, DeviceKind.BLOCK, 51712),
        frontend=Endpoint(5, DeviceKind.BLOCK, 51712),
    )


class FakeHotplugScripts:
    """Writes what the backend hotplug scripts would write."""

    def __init__(self, store: MemoryStore, hotplug: StoreHotplug):
        self.store = store
        self.hotplug = hotplug

    async def plugged(self, device: Device, vif: str | None = None) -> None:
        if vif is not None:
            await self.store.write(f"{self.hotplug.hotplug_path(device)}/vif", vif)
        await self.store.write(self.hotplug.status_node(device), "online")

    async def unplugged(self, device: Device) -> None:
        await self.store.remove(self.hotplug.status_node(device))


@pytest.fixture
def scripts(store, hotplug) -> FakeHotplugScripts:
    return FakeHotplugScripts(store, hotplug)
