"""Devices with nothing to negotiate: framebuffer, keyboard, channel.

These only need their trees published. Their backends have no hotplug
scripts and nothing to hand back on shutdown, so both shutdown variants are
no-ops. Each domain has at most one of each, always at index 0, served by
the control domain.

Virtual CPU hotplug lives here too. It is not a split device at all, just
an availability flag per CPU under the guest's own tree.
"""

from __future__ import annotations

import logging

from devctl.devices.base import DeviceProtocol
from devctl.devices.generic import add_device
from devctl.devices.identity import (
    Device,
    DeviceKind,
    Endpoint,
    Protocol,
    XenbusState,
)
from devctl.store.base import NoEntry, join

logger = logging.getLogger(__name__)

VCPU_ONLINE = "online"
VCPU_OFFLINE = "offline"


class TrivialDevices(DeviceProtocol):
    """Framebuffer, keyboard and inter-VM channel devices."""

    kinds = (DeviceKind.FRAMEBUFFER, DeviceKind.KEYBOARD, DeviceKind.INTER_VM_CHANNEL)

    def _device(self, domid: int, kind: DeviceKind) -> Device:
        return Device(
            backend=Endpoint(self.control_domid, kind, 0),
            frontend=Endpoint(domid, kind, 0),
        )

    async def _add_console_device(self, domid: int, kind: DeviceKind, protocol: Protocol) -> Device:
        device = self._device(domid, kind)
        back = [
            ("frontend-id", str(domid)),
            ("online", "1"),
            ("state", XenbusState.INITIALISING.to_store()),
        ]
        front = [
            ("backend-id", str(self.control_domid)),
            ("protocol", protocol.value),
            ("state", XenbusState.INITIALISING.to_store()),
        ]
        await add_device(self.store, self.hotplug, device, back, front)
        return device

    async def add_framebuffer(self, domid: int, protocol: Protocol = Protocol.NATIVE) -> Device:
        logger.debug(f"Vfb add domid={domid}")
        return await self._add_console_device(domid, DeviceKind.FRAMEBUFFER, protocol)

    async def add_keyboard(self, domid: int, protocol: Protocol = Protocol.NATIVE) -> Device:
        logger.debug(f"Vkbd add domid={domid}")
        return await self._add_console_device(domid, DeviceKind.KEYBOARD, protocol)

    async def add_channel(self, domid: int) -> Device:
        """Publish the inter-VM channel device of domid."""
        logger.debug(f"V4V add domid={domid}")
        device = self._device(domid, DeviceKind.INTER_VM_CHANNEL)
        back = [
            ("frontend-id", str(domid)),
            # Stays Unknown; the channel backend never takes part in the handshake
            ("state", XenbusState.UNKNOWN.to_store()),
        ]
        front = [
            ("backend-id", str(self.control_domid)),
            ("state", XenbusState.INITIALISING.to_store()),
        ]
        await add_device(self.store, self.hotplug, device, back, front)
        return device

    async def clean_shutdown(self, device: Device) -> None:
        logger.debug(f"{device.backend.kind.value} clean_shutdown {device}: nothing to do")

    async def hard_shutdown(self, device: Device) -> None:
        logger.debug(f"{device.backend.kind.value} hard_shutdown {device}: nothing to do")

    # ------------------------------------------------------------------
    # Virtual CPU hotplug
    # ------------------------------------------------------------------

    def _vcpu_dir(self, domid: int, vcpu: int) -> str:
        return join(self.store.domain_path(domid), "cpu", str(vcpu))

    def _vcpu_path(self, domid: int, vcpu: int) -> str:
        return join(self._vcpu_dir(domid, vcpu), "availability")

    async def vcpu_add(self, domid: int, vcpu: int) -> None:
        await self.vcpu_set(domid, vcpu, True)

    async def vcpu_remove(self, domid: int, vcpu: int) -> None:
        """Remove the whole cpu/N subtree of the domain."""
        path = self._vcpu_dir(domid, vcpu)
        try:
            await self.store.remove(path)
        except NoEntry:
            logger.debug(f"vcpu {vcpu} of domain {domid} has no store entry")

    async def vcpu_set(self, domid: int, vcpu: int, online: bool) -> None:
        await self.store.write(self._vcpu_path(domid, vcpu), VCPU_ONLINE if online else VCPU_OFFLINE)

    async def vcpu_status(self, domid: int, vcpu: int) -> bool:
        """True only if the CPU is explicitly marked online."""
        value = await self.store.read_or_none(self._vcpu_path(domid, vcpu))
        return value == VCPU_ONLINE
