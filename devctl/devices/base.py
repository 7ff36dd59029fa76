"""Base interface for per-kind device protocols."""

from __future__ import annotations

from abc import ABC, abstractmethod

from devctl.config import Settings, settings as default_settings
from devctl.devices.hotplug import Hotplug
from devctl.devices.identity import Device, DeviceKind
from devctl.store.base import Store


class DeviceProtocol(ABC):
    """Wiring for one family of device kinds.

    Subclasses publish devices with kind-specific keys and know how to take
    them down again. ``kinds`` lists the backend kinds a protocol serves.
    """

    kinds: tuple[DeviceKind, ...] = ()

    def __init__(self, store: Store, hotplug: Hotplug, settings: Settings | None = None):
        self.store = store
        self.hotplug = hotplug
        self.settings = settings or default_settings

    @property
    def control_domid(self) -> int:
        return self.settings.control_domid

    @abstractmethod
    async def clean_shutdown(self, device: Device) -> None:
        """Shut the device down, allowing the guest to refuse."""
        ...

    @abstractmethod
    async def hard_shutdown(self, device: Device) -> None:
        """Shut the device down regardless of the guest."""
        ...
