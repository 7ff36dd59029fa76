"""Synchronisation with the hotplug scripts.

The hotplug scripts run in the backend domain when a backend appears or
goes away. They report progress through the store: ``<hotplug>/hotplug``
reads ``online`` once the backend resource is locked and disappears again on
unplug. For devices whose frontend lives in the control domain a second
script reports on the frontend side, and may write an error instead.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable

from devctl.cmd import run_cmd
from devctl.config import Settings, settings as default_settings
from devctl.devices.identity import Device, backend_path
from devctl.errors import DeviceTimeoutError, FrontendDeviceError, LoopMountError
from devctl.store.base import NoEntry, Store, WatchTimeout, join
from devctl.store import watch as w

logger = logging.getLogger(__name__)

HOTPLUG_ONLINE = "online"


class Hotplug(ABC):
    """Interface to the hotplug subsystem."""

    @abstractmethod
    def hotplug_path(self, device: Device) -> str:
        """Private bookkeeping subtree of a device, owned by the backend."""
        ...

    @abstractmethod
    def status_node(self, device: Device) -> str:
        ...

    @abstractmethod
    def connected_node(self, device: Device) -> str:
        ...

    @abstractmethod
    async def wait_for_plug(self, device: Device) -> None:
        ...

    @abstractmethod
    async def wait_for_unplug(self, device: Device) -> None:
        ...

    @abstractmethod
    async def wait_for_frontend_plug(self, device: Device) -> None:
        """Raise FrontendDeviceError if the frontend script reports failure."""
        ...

    @abstractmethod
    async def wait_for_frontend_unplug(self, device: Device) -> None:
        ...

    @abstractmethod
    async def mount_loopdev(self, device: Device, path: str, read_only: bool) -> str:
        """Attach path to a loop device and return the loop device path."""
        ...

    @abstractmethod
    async def release(self, device: Device) -> None:
        """Free resources the hotplug layer allocated for device."""
        ...


class StoreHotplug(Hotplug):
    """Hotplug synchronisation over the store."""

    def __init__(
        self,
        store: Store,
        settings: Settings | None = None,
        run_cmd: Callable[[list[str]], Awaitable[tuple[int, str, str]]] = run_cmd,
    ):
        self.store = store
        self.settings = settings or default_settings
        self._run_cmd = run_cmd

    def hotplug_path(self, device: Device) -> str:
        be = device.backend
        return join(
            self.settings.hotplug_root,
            str(device.frontend.domid),
            "hotplug",
            be.kind.value,
            str(be.devid),
        )

    def status_node(self, device: Device) -> str:
        return join(self.hotplug_path(device), "hotplug")

    def connected_node(self, device: Device) -> str:
        return join(backend_path(self.store, device), "hotplug-status")

    def frontend_hotplug_path(self, device: Device) -> str:
        fe = device.frontend
        return join(self.settings.hotplug_root, str(fe.domid), "frontend", fe.kind.value, str(fe.devid))

    async def _wait(self, device: Device, watch: w.Watch, operation: str):
        timeout = self.settings.hotplug_timeout
        try:
            return await w.wait_for(self.store, watch, timeout)
        except WatchTimeout:
            logger.warning(f"Timed out waiting for {operation} of {device}")
            raise DeviceTimeoutError(device, operation, timeout) from None

    async def wait_for_plug(self, device: Device) -> None:
        logger.debug(f"Hotplug.wait_for_plug {device}")
        await self._wait(device, w.value_to_become(self.status_node(device), HOTPLUG_ONLINE), "hotplug")
        logger.debug(f"Backend hotplug scripts completed for {device}")

    async def wait_for_unplug(self, device: Device) -> None:
        logger.debug(f"Hotplug.wait_for_unplug {device}")
        await self._wait(device, w.key_to_disappear(self.status_node(device)), "hotplug removal")

    async def wait_for_frontend_plug(self, device: Device) -> None:
        base = self.frontend_hotplug_path(device)
        watch = w.any_of([
            ("ok", w.value_to_become(join(base, "hotplug"), HOTPLUG_ONLINE)),
            ("failed", w.value_to_appear(join(base, "error"))),
        ])
        tag, value = await self._wait(device, watch, "frontend hotplug")
        if tag == "failed":
            logger.warning(f"Frontend hotplug of {device} failed: {value}")
            raise FrontendDeviceError(device, value)

    async def wait_for_frontend_unplug(self, device: Device) -> None:
        base = self.frontend_hotplug_path(device)
        await self._wait(device, w.key_to_disappear(join(base, "hotplug")), "frontend hotplug removal")

    async def mount_loopdev(self, device: Device, path: str, read_only: bool) -> str:
        cmd = ["losetup", "--find", "--show"]
        if read_only:
            cmd.append("--read-only")
        cmd.append(path)
        code, stdout, stderr = await self._run_cmd(cmd)
        if code != 0:
            raise LoopMountError(path, cmd, stderr)
        loopdev = stdout.strip()
        # Recorded so release() can free it even if the backend tree is wiped
        await self.store.write(join(self.hotplug_path(device), "loop-device"), loopdev)
        logger.info(f"Attached {path} to {loopdev} for {device}")
        return loopdev

    async def release(self, device: Device) -> None:
        logger.debug(f"Hotplug.release {device}")
        await self.wait_for_unplug(device)
        hotplug_path = self.hotplug_path(device)
        loopdev = await self.store.read_or_none(join(hotplug_path, "loop-device"))
        if loopdev:
            code, _, stderr = await self._run_cmd(["losetup", "--detach", loopdev])
            if code != 0:
                logger.warning(f"Failed to detach {loopdev}: {stderr.strip()}")
        try:
            await self.store.remove(hotplug_path)
        except NoEntry:
            pass
