"""Device identity, store protocols and per-kind device handling."""

from devctl.devices.base import DeviceProtocol
from devctl.devices.block import BlockDevices
from devctl.devices.dispatch import DeviceController
from devctl.devices.hotplug import Hotplug, StoreHotplug
from devctl.devices.identity import Device, DeviceKind, Endpoint, Protocol, XenbusState
from devctl.devices.network import NetworkInterfaces
from devctl.devices.pci import PciAddress, PciDevice, PciPassthrough
from devctl.devices.trivial import TrivialDevices

__all__ = [
    # Identity
    "Device",
    "DeviceKind",
    "Endpoint",
    "Protocol",
    "XenbusState",
    # Hotplug
    "Hotplug",
    "StoreHotplug",
    # Protocols
    "DeviceProtocol",
    "BlockDevices",
    "NetworkInterfaces",
    "PciAddress",
    "PciDevice",
    "PciPassthrough",
    "TrivialDevices",
    # Dispatch
    "DeviceController",
]
