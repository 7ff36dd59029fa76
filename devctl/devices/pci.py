"""PCI passthrough.

Before a guest may touch a host PCI function, every function in the batch
must be bound to the isolation driver (pciback). Only then are its BARs and
IRQ opened up to the guest through the hypervisor, and the device list is
published as a PCI backend so the guest's pcifront can find it.

Grants are not rolled back when a batch fails half way; callers undo them
with ``release``.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterable

from devctl.cmd import run_cmd
from devctl.config import Settings
from devctl.devices.base import DeviceProtocol
from devctl.devices.generic import add_device
from devctl.devices.hotplug import Hotplug
from devctl.devices.identity import (
    Device,
    DeviceKind,
    Endpoint,
    XenbusState,
    backend_path,
)
from devctl.errors import PciAddError, PciDriverError
from devctl.hypervisor import Hypervisor
from devctl.store.base import Store, Transaction, join

logger = logging.getLogger(__name__)

PAGE_SIZE = 4096
PCI_BAR_IO = 0x01
MAX_RESOURCES = 7

_ADDRESS_RE = re.compile(
    r"^([0-9a-fA-F]{1,4}):([0-9a-fA-F]{1,2}):([0-9a-fA-F]{1,2})\.([0-9a-fA-F]{1,2})(?:@([0-9a-fA-F]{1,2}))?$"
)


@dataclass(frozen=True)
class PciAddress:
    """Host location of a PCI function, and optionally its slot in the guest."""

    domain: int
    bus: int
    slot: int
    func: int
    guest_slot: int | None = None

    def __str__(self) -> str:
        text = f"{self.domain:04x}:{self.bus:02x}:{self.slot:02x}.{self.func:02x}"
        if self.guest_slot is not None:
            text += f"@{self.guest_slot:02x}"
        return text

    @classmethod
    def parse(cls, text: str) -> "PciAddress":
        """Parse ``dddd:bb:ss.f[f]`` with an optional ``@gg`` guest slot."""
        match = _ADDRESS_RE.match(text.strip())
        if not match:
            raise ValueError(f"Invalid PCI address: {text!r}")
        domain, bus, slot, func, guest = match.groups()
        return cls(
            int(domain, 16),
            int(bus, 16),
            int(slot, 16),
            int(func, 16),
            int(guest, 16) if guest is not None else None,
        )

    @property
    def sysfs_name(self) -> str:
        return f"{self.domain:04x}:{self.bus:02x}:{self.slot:02x}.{self.func:01x}"

    @property
    def sbdf(self) -> int:
        """Packed segment/bus/devfn, as the hypervisor's assign check wants it."""
        return (self.domain << 16) | ((self.bus & 0xFF) << 8) | ((self.slot & 0x1F) << 3) | (self.func & 0x7)


@dataclass
class PciDevice:
    """A PCI function as the host currently sees it."""

    address: PciAddress
    irq: int = -1
    resources: list[tuple[int, int, int]] = field(default_factory=list)
    driver: str = ""

    def __str__(self) -> str:
        return f"{self.address} (driver={self.driver or 'none'})"


class PciPassthrough(DeviceProtocol):
    """Grant host PCI functions to guests and take them back."""

    kinds = (DeviceKind.PCI,)

    def __init__(
        self,
        store: Store,
        hotplug: Hotplug,
        hypervisor: Hypervisor,
        settings: Settings | None = None,
        run_cmd: Callable[[list[str]], Awaitable[tuple[int, str, str]]] = run_cmd,
    ):
        super().__init__(store, hotplug, settings)
        self.hypervisor = hypervisor
        self._run_cmd = run_cmd

    # ------------------------------------------------------------------
    # Host inspection
    # ------------------------------------------------------------------

    def _device_dir(self, address: PciAddress) -> str:
        return os.path.join(self.settings.pci_sysfs_root, "devices", address.sysfs_name)

    def _driver_dir(self) -> str:
        return os.path.join(self.settings.pci_sysfs_root, "drivers", self.settings.pciback_driver)

    @staticmethod
    def _read_resources(path: str) -> list[tuple[int, int, int]]:
        resources = []
        with open(path) as f:
            for i, line in enumerate(f):
                if i >= MAX_RESOURCES:
                    break
                start, end, flags = (int(v, 16) for v in line.split()[:3])
                if start != 0:
                    resources.append((start, end, flags))
        return resources

    @staticmethod
    def _read_irq(path: str) -> int:
        try:
            with open(path) as f:
                return int(f.read().strip())
        except (OSError, ValueError):
            return -1

    def _current_driver(self, address: PciAddress) -> str | None:
        try:
            return os.path.basename(os.readlink(os.path.join(self._device_dir(address), "driver")))
        except OSError:
            return None

    def get_from_system(self, address: PciAddress) -> PciDevice:
        """Read resources, IRQ and bound driver of a function from sysfs."""
        base = self._device_dir(address)
        return PciDevice(
            address=address,
            irq=self._read_irq(os.path.join(base, "irq")),
            resources=self._read_resources(os.path.join(base, "resource")),
            driver=self._current_driver(address) or "",
        )

    def _resolve(self, addresses: Iterable[PciAddress]) -> list[PciDevice]:
        devices = [self.get_from_system(a) for a in addresses]
        unbound = [d for d in devices if d.driver != self.settings.pciback_driver]
        if unbound:
            raise PciDriverError(unbound, self.settings.pciback_driver)
        return devices

    # ------------------------------------------------------------------
    # Resource permissions
    # ------------------------------------------------------------------

    def passthrough_mmio(self, domid: int, start: int, end: int, enable: bool) -> None:
        """Open or close a machine memory range, rounded out to whole pages."""
        if end < start:
            raise ValueError("mmio end region invalid")
        first_pfn = start // PAGE_SIZE
        nr_pfns = end // PAGE_SIZE - first_pfn + 1
        logger.debug(f"mmio {'add' if enable else 'remove'} {start:x}-{end:x}")
        self.hypervisor.iomem_permission(domid, first_pfn, nr_pfns, enable)

    def passthrough_io(self, domid: int, start: int, end: int, enable: bool) -> None:
        if end < start:
            raise ValueError("io end port invalid")
        logger.debug(f"io {'add' if enable else 'remove'} {start:x}-{end:x}")
        self.hypervisor.ioport_permission(domid, start, end - start + 1, enable)

    def grant_access(self, devices: Iterable[PciDevice], domid: int, enable: bool) -> None:
        """Open (or close) every BAR and IRQ of devices to domid."""
        action = "add" if enable else "remove"
        for device in devices:
            for start, end, flags in device.resources:
                if flags & PCI_BAR_IO:
                    logger.debug(f"pci {action} io bar {start:x}-{end:x}")
                    self.hypervisor.ioport_permission(domid, start, end - start + 1, enable)
                else:
                    logger.debug(f"pci {action} mem bar {start:x}-{end:x}")
                    first_pfn = start // PAGE_SIZE
                    self.hypervisor.iomem_permission(domid, first_pfn, end // PAGE_SIZE - first_pfn + 1, enable)
            if device.irq > 0:
                self.hypervisor.irq_permission(domid, device.irq, enable)

    # ------------------------------------------------------------------
    # Attach and detach
    # ------------------------------------------------------------------

    async def add(
        self,
        domid: int,
        addresses: list[PciAddress],
        *,
        devid: int = 0,
        hvm: bool = False,
        msitranslate: int = 0,
        power_mgmt: int = 0,
        flr_script: str | None = None,
    ) -> Device:
        """Grant addresses to domid and publish them as its PCI device.

        Any failure is raised as PciAddError carrying the attempted
        addresses; grants issued before the failure stay in place.
        """
        try:
            return await self._add(domid, addresses, devid, hvm, msitranslate, power_mgmt, flr_script)
        except Exception as e:
            logger.error(f"Failed to add PCI devices to domain {domid}: {e}")
            raise PciAddError(addresses, e) from e

    async def _add(
        self,
        domid: int,
        addresses: list[PciAddress],
        devid: int,
        hvm: bool,
        msitranslate: int,
        power_mgmt: int,
        flr_script: str | None,
    ) -> Device:
        devices = self._resolve(addresses)

        for dev in devices:
            if hvm:
                self.hypervisor.test_assign_device(domid, dev.address.sbdf)
            self.grant_access([dev], domid, True)

        device = Device(
            backend=Endpoint(self.control_domid, DeviceKind.PCI, devid),
            frontend=Endpoint(domid, DeviceKind.PCI, devid),
        )
        back: list[tuple[str, str]] = []
        if flr_script:
            back.append(("script", flr_script))
        back.extend((f"dev-{i}", str(dev.address)) for i, dev in enumerate(devices))
        back.extend([
            ("frontend-id", str(domid)),
            ("online", "1"),
            ("num_devs", str(len(devices))),
            ("state", XenbusState.INITIALISING.to_store()),
            ("msitranslate", str(msitranslate)),
            ("pci_power_mgmt", str(power_mgmt)),
        ])
        front = [
            ("backend-id", str(self.control_domid)),
            ("state", XenbusState.INITIALISING.to_store()),
        ]
        await add_device(self.store, self.hotplug, device, back, front)
        logger.info(f"Granted {len(devices)} PCI device(s) to domain {domid}")
        return device

    async def release(self, domid: int, addresses: list[PciAddress]) -> None:
        """Revoke what ``add`` granted, after the same driver check."""
        devices = self._resolve(addresses)
        self.grant_access(devices, domid, False)
        logger.info(f"Revoked {len(devices)} PCI device(s) from domain {domid}")

    async def enumerate_devices(self, device: Device) -> list[PciAddress]:
        """Read the published device list back from the backend."""
        back = backend_path(self.store, device)
        try:
            count = int(await self.store.read_or_none(join(back, "num_devs")) or 0)
        except ValueError:
            count = 0
        addresses = []
        for i in range(count):
            value = await self.store.read_or_none(join(back, f"dev-{i}"))
            if value is None:
                continue
            try:
                addresses.append(PciAddress.parse(value))
            except ValueError:
                logger.warning(f"Ignoring unparsable PCI address {value!r} in {back}")
        return addresses

    async def clean_shutdown(self, device: Device) -> None:
        logger.debug(f"PCI clean_shutdown {device}")
        addresses = await self.enumerate_devices(device)
        domid = device.frontend.domid
        try:
            await self.release(domid, addresses)
        except Exception as e:
            logger.warning(f"Failed to release PCI devices of domain {domid}: {e}")

    async def hard_shutdown(self, device: Device) -> None:
        logger.debug(f"PCI hard_shutdown {device}")
        await self.clean_shutdown(device)

    # ------------------------------------------------------------------
    # Function-level reset and driver binding
    # ------------------------------------------------------------------

    @staticmethod
    def _write_sysfs(path: str, value: str) -> None:
        with open(path, "w") as f:
            f.write(value)

    async def _flr_hook(self, phase: str, name: str) -> None:
        cmd = [self.settings.pci_flr_script, phase, name]
        try:
            code, _, stderr = await self._run_cmd(cmd)
        except OSError as e:
            logger.debug(f"FLR hook {phase} for {name} could not run: {e}")
            return
        if code != 0:
            logger.debug(f"FLR hook {phase} for {name} exited {code}: {stderr.strip()}")

    async def reset_device(self, address: PciAddress) -> None:
        """Function-level reset: pre hook, reset trigger, post hook.

        Each step may fail without stopping the others.
        """
        name = address.sysfs_name
        logger.debug(f"FLR of {name}")
        await self._flr_hook("flr-pre", name)
        try:
            self._write_sysfs(os.path.join(self._driver_dir(), "do_flr"), name)
        except OSError as e:
            logger.debug(f"FLR trigger for {name} failed: {e}")
        await self._flr_hook("flr-post", name)

    async def reset(self, device: Device) -> None:
        """Reset every function published under device."""
        logger.debug(f"PCI reset {device}")
        for address in await self.enumerate_devices(device):
            await self.reset_device(address)

    async def bind(self, addresses: Iterable[PciAddress]) -> None:
        """Move each function to the isolation driver and reset it."""
        driver_dir = self._driver_dir()
        for address in addresses:
            name = address.sysfs_name
            current = self._current_driver(address)
            if current == self.settings.pciback_driver:
                logger.debug(f"pci: device {name} already bound to {current}")
                await self.reset_device(address)
                continue
            if current is not None:
                logger.debug(f"pci: unbinding device {name} from driver {current}")
                self._write_sysfs(os.path.join(self._device_dir(address), "driver", "unbind"), name)
            self._write_sysfs(os.path.join(driver_dir, "new_slot"), name)
            self._write_sysfs(os.path.join(driver_dir, "bind"), name)
            await self.reset_device(address)

    # ------------------------------------------------------------------
    # Hotplug into a running device model
    # ------------------------------------------------------------------

    async def signal_device_model(self, domid: int, command: str, parameter: str) -> None:
        logger.debug(f"PCI signal_device_model domid={domid} cmd={command} param={parameter}")
        base = join(self.store.domain_path(self.control_domid), "device-model", str(domid))

        async def _write(t: Transaction) -> None:
            await t.writev(base, [("command", command), ("parameter", parameter)])

        # No acknowledgement is defined for these commands
        await self.store.transaction(_write)

    async def plug(self, address: PciAddress, domid: int) -> None:
        await self.signal_device_model(domid, "pci-ins", str(address))

    async def unplug(self, address: PciAddress, domid: int) -> None:
        await self.signal_device_model(domid, "pci-rem", str(address))
