"""Kind-based dispatch of device shutdowns.

Callers that only hold a ``Device`` (for instance when tearing down every
device of a dying domain) go through ``DeviceController``, which maps the
backend kind to the protocol that owns it. The table is closed: every
``DeviceKind`` must have exactly one owner.
"""

from __future__ import annotations

import logging
from typing import Iterable

from devctl.config import Settings
from devctl.devices.base import DeviceProtocol
from devctl.devices.block import BlockDevices
from devctl.devices.hotplug import Hotplug, StoreHotplug
from devctl.devices.identity import Device, DeviceKind
from devctl.devices.network import NetworkInterfaces
from devctl.devices.pci import PciPassthrough
from devctl.devices.trivial import TrivialDevices
from devctl.hypervisor import Hypervisor
from devctl.metrics import device_operation_duration, device_operation_errors, track
from devctl.network.netdev import NetworkHelpers
from devctl.store.base import Store

logger = logging.getLogger(__name__)


class DeviceController:
    """Routes per-device operations to the protocol serving its kind."""

    def __init__(self, protocols: Iterable[DeviceProtocol]):
        self._table: dict[DeviceKind, DeviceProtocol] = {}
        for protocol in protocols:
            for kind in protocol.kinds:
                if kind in self._table:
                    raise ValueError(f"Device kind {kind.value} served twice")
                self._table[kind] = protocol
        missing = [k.value for k in DeviceKind if k not in self._table]
        if missing:
            raise ValueError(f"No protocol for device kinds: {', '.join(missing)}")

    @classmethod
    def create(
        cls,
        store: Store,
        hypervisor: Hypervisor,
        settings: Settings | None = None,
        hotplug: Hotplug | None = None,
        netdev: NetworkHelpers | None = None,
    ) -> "DeviceController":
        """Build a controller with the standard protocol set."""
        hotplug = hotplug or StoreHotplug(store, settings)
        return cls([
            BlockDevices(store, hotplug, settings),
            NetworkInterfaces(store, hotplug, settings, netdev),
            PciPassthrough(store, hotplug, hypervisor, settings),
            TrivialDevices(store, hotplug, settings),
        ])

    def protocol_for(self, device: Device) -> DeviceProtocol:
        return self._table[device.backend.kind]

    @property
    def block(self) -> BlockDevices:
        return self._table[DeviceKind.BLOCK]  # type: ignore[return-value]

    @property
    def network(self) -> NetworkInterfaces:
        return self._table[DeviceKind.NETWORK_INTERFACE]  # type: ignore[return-value]

    @property
    def pci(self) -> PciPassthrough:
        return self._table[DeviceKind.PCI]  # type: ignore[return-value]

    @property
    def trivial(self) -> TrivialDevices:
        return self._table[DeviceKind.FRAMEBUFFER]  # type: ignore[return-value]

    async def clean_shutdown(self, device: Device) -> None:
        protocol = self.protocol_for(device)
        kind = device.backend.kind.value
        logger.debug(f"Dispatching clean_shutdown of {device} to {type(protocol).__name__}")
        async with track(device_operation_duration, device_operation_errors, kind=kind, operation="clean_shutdown"):
            await protocol.clean_shutdown(device)

    async def hard_shutdown(self, device: Device) -> None:
        protocol = self.protocol_for(device)
        kind = device.backend.kind.value
        logger.debug(f"Dispatching hard_shutdown of {device} to {type(protocol).__name__}")
        async with track(device_operation_duration, device_operation_errors, kind=kind, operation="hard_shutdown"):
            await protocol.hard_shutdown(device)
