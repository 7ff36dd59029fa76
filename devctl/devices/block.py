"""Virtual block devices.

A block device is published with its backend keys, then the call blocks
until the backend hotplug scripts have locked the underlying resource. For
disks attached to the control domain itself a second script confirms the
device is usable from userspace; if that one fails the device is shut down
and released again before the error is re-raised.
"""

from __future__ import annotations

import logging
from enum import Enum

from devctl.devices import rendezvous
from devctl.devices.base import DeviceProtocol
from devctl.devices.generic import add_device, safe_remove
from devctl.devices.identity import (
    Device,
    DeviceKind,
    Endpoint,
    Protocol,
    XenbusState,
    backend_path,
    backend_path_of,
)
from devctl.devices.naming import device_number, string_of_major_minor
from devctl.errors import FrontendDeviceError
from devctl.store.base import Transaction, join

logger = logging.getLogger(__name__)


class Mode(str, Enum):
    READ_ONLY = "r"
    READ_WRITE = "w"


class PhysType(str, Enum):
    """How the backing storage is reached."""
    FILE = "file"
    PHYS = "phy"
    QCOW = "qcow"
    VHD = "vhd"
    AIO = "aio"


class DevType(str, Enum):
    CDROM = "cdrom"
    DISK = "disk"


TAP_TYPES = (PhysType.QCOW, PhysType.VHD, PhysType.AIO)


def backend_type(phystype: PhysType) -> str:
    """Value of the backend ``type`` key."""
    if phystype in TAP_TYPES:
        return "tap"
    return phystype.value


def backend_kind(phystype: PhysType) -> DeviceKind:
    return DeviceKind.TAP if uses_blktap(phystype) else DeviceKind.BLOCK


def uses_blktap(phystype: PhysType) -> bool:
    return phystype in TAP_TYPES


class BlockDevices(DeviceProtocol):
    """Attach, detach and media handling for block devices."""

    kinds = (DeviceKind.BLOCK, DeviceKind.TAP)

    async def add(
        self,
        domid: int,
        *,
        virtpath: str,
        physpath: str,
        phystype: PhysType,
        mode: Mode = Mode.READ_WRITE,
        dev_type: DevType = DevType.DISK,
        hvm: bool = False,
        unpluggable: bool = False,
        protocol: Protocol = Protocol.NATIVE,
        extra_backend_keys: list[tuple[str, str]] | None = None,
        backend_domid: int | None = None,
    ) -> Device:
        """Attach a disk to domid and return the device once it is plugged.

        Args:
            domid: Guest domain
            virtpath: Guest-visible name (e.g. "xvda"), source of the index
            physpath: File or block device backing the disk
            phystype: Kind of backing storage
            mode: Read-only or read-write
            dev_type: Disk or CD-ROM
            hvm: Guest is hardware-virtualized (no loop device needed)
            unpluggable: Guest may eject the device
            protocol: Ring protocol of the frontend
            extra_backend_keys: Additional backend keys
            backend_domid: Backend domain, the control domain by default
        """
        if backend_domid is None:
            backend_domid = self.control_domid
        devid = device_number(virtpath)
        logger.debug(f"Block add (virtpath={virtpath} | physpath={physpath} | phystype={phystype.value})")

        back: dict[str, str] = dict(extra_backend_keys or [])
        frontend = Endpoint(domid, DeviceKind.BLOCK, devid)
        backend = Endpoint(backend_domid, backend_kind(phystype), devid)
        device = Device(backend=backend, frontend=frontend)

        if uses_blktap(phystype):
            back["params"] = f"{phystype.value}:{physpath}"
        else:
            back["params"] = physpath

        if phystype == PhysType.FILE:
            # qemu opens the image itself; only PV guests need the loop device
            if not hvm:
                loopdev = await self.hotplug.mount_loopdev(device, physpath, mode == Mode.READ_ONLY)
                back["physical-device"] = string_of_major_minor(loopdev)
                back["loop-device"] = loopdev
        elif phystype == PhysType.PHYS:
            back["physical-device"] = string_of_major_minor(physpath)

        front = {
            "backend-id": str(backend_domid),
            "state": XenbusState.INITIALISING.to_store(),
            "virtual-device": str(devid),
            "device-type": dev_type.value,
        }
        if protocol != Protocol.NATIVE:
            front["protocol"] = protocol.value

        # qemu in the control domain needs a /dev/ prefix to find the device
        dev = f"/dev/{virtpath}" if domid == self.control_domid and virtpath.startswith("x") else virtpath
        back.update({
            "frontend-id": str(domid),
            # Keeps the backend scripts from running when the frontend disconnects
            "online": "1",
            "removable": "1" if unpluggable else "0",
            "state": XenbusState.INITIALISING.to_store(),
            "dev": dev,
            "type": backend_type(phystype),
            "mode": mode.value,
        })

        await add_device(self.store, self.hotplug, device, list(back.items()), list(front.items()))
        await self.hotplug.wait_for_plug(device)

        if domid == self.control_domid:
            try:
                await self.hotplug.wait_for_frontend_plug(device)
            except FrontendDeviceError:
                logger.debug("Frontend device error: shutting down the backend before re-raising")
                await self.clean_shutdown(device)
                await self.release(device)
                raise
        return device

    async def release(self, device: Device) -> None:
        logger.debug(f"Block release {device}")
        # Deleting the backend makes blkback/blktap fire the udev remove event
        await safe_remove(self.store, backend_path(self.store, device))
        await self.hotplug.release(device)
        if device.frontend.domid == self.control_domid:
            await self.hotplug.wait_for_frontend_unplug(device)

    async def clean_shutdown(self, device: Device) -> None:
        await rendezvous.clean_shutdown(self.store, device, self.settings.hotplug_timeout)

    async def hard_shutdown(self, device: Device) -> None:
        await rendezvous.hard_shutdown(self.store, device, self.settings.hotplug_timeout)

    async def pause(self, device: Device) -> None:
        await rendezvous.pause(self.store, device)

    async def unpause(self, device: Device) -> None:
        await rendezvous.unpause(self.store, device)

    async def add_backend_keys(self, device: Device, subdir: str, keys: list[tuple[str, str]]) -> None:
        """Write keys under a subdirectory of an existing backend."""
        stub = backend_path(self.store, device)
        target = join(stub, subdir)
        logger.debug(f"Writing {keys} to {target}")

        async def _write(t: Transaction) -> None:
            await t.read(stub)
            await t.writev(target, keys)

        await self.store.transaction(_write)

    async def remove_backend_keys(self, device: Device, subdir: str, keys: list[str]) -> None:
        target = join(backend_path(self.store, device), subdir)

        async def _remove(t: Transaction) -> None:
            for key in keys:
                await t.remove(join(target, key))

        await self.store.transaction(_remove)

    # ------------------------------------------------------------------
    # Emulated CD-ROM media, driven through the backend keys qemu watches
    # ------------------------------------------------------------------

    def _media_backend(self, domid: int, virtpath: str) -> str:
        backend = Endpoint(self.control_domid, DeviceKind.BLOCK, device_number(virtpath))
        return backend_path_of(self.store, backend, domid)

    async def media_change(self, domid: int, virtpath: str, type_: str, params: str) -> None:
        backend = self._media_backend(domid, virtpath)

        async def _write(t: Transaction) -> None:
            await t.writev(backend, [("type", type_), ("params", params)])

        await self.store.transaction(_write)
        logger.debug(f"Media changed for {virtpath} of domain {domid}")

    async def media_eject(self, domid: int, virtpath: str) -> None:
        await self.media_change(domid, virtpath, "", "")

    async def media_insert(self, domid: int, virtpath: str, physpath: str, phystype: PhysType) -> None:
        await self.media_change(domid, virtpath, backend_type(phystype), physpath)

    async def media_refresh(self, domid: int, virtpath: str, physpath: str) -> None:
        """Make qemu reopen the medium even if the path is unchanged.

        qemu ignores a write of the value it already has, so an unchanged
        path is written with an extra leading '/' (same file, new string).
        """
        path = join(self._media_backend(domid, virtpath), "params")
        old = await self.store.read_or_none(path) or ""
        await self.store.write(path, f"/{physpath}" if old == physpath else physpath)

    async def media_is_ejected(self, domid: int, virtpath: str) -> bool:
        params = await self.store.read_or_none(join(self._media_backend(domid, virtpath), "params"))
        return params is None or params == ""

    async def media_tray_is_locked(self, domid: int, virtpath: str) -> bool:
        locked = await self.store.read_or_none(join(self._media_backend(domid, virtpath), "locked"))
        return locked == "true"
