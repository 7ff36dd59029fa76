"""Device identity and the store paths derived from it."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, IntEnum

from devctl.store.base import Store, join


class DeviceKind(str, Enum):
    """Closed set of device kinds, valued by their store name."""
    BLOCK = "vbd"
    TAP = "tap"
    NETWORK_INTERFACE = "vif"
    WIRELESS_NETWORK_INTERFACE = "vwif"
    PCI = "pci"
    FRAMEBUFFER = "vfb"
    KEYBOARD = "vkbd"
    INTER_VM_CHANNEL = "v4v"


class XenbusState(IntEnum):
    """Connection state of one endpoint."""
    UNKNOWN = 0
    INITIALISING = 1
    INIT_WAIT = 2
    INITIALISED = 3
    CONNECTED = 4
    CLOSING = 5
    CLOSED = 6

    @classmethod
    def parse(cls, value: str) -> "XenbusState":
        try:
            return cls(int(value))
        except ValueError:
            return cls.UNKNOWN

    def to_store(self) -> str:
        return str(int(self))


class Protocol(str, Enum):
    """Ring protocol the frontend speaks."""
    NATIVE = "native"
    X86_32 = "x86_32-abi"
    X86_64 = "x86_64-abi"


@dataclass(frozen=True)
class Endpoint:
    """One side of a device: domain, kind and per-(domain, kind) index."""

    domid: int
    kind: DeviceKind
    devid: int

    def __str__(self) -> str:
        return f"{self.kind.value}/{self.domid}/{self.devid}"


@dataclass(frozen=True)
class Device:
    """A backend/frontend endpoint pair."""

    backend: Endpoint
    frontend: Endpoint

    def __str__(self) -> str:
        return f"frontend {self.frontend} backend {self.backend}"


def frontend_path(store: Store, device: Device) -> str:
    fe = device.frontend
    return join(store.domain_path(fe.domid), "device", fe.kind.value, str(fe.devid))


def backend_path_of(store: Store, backend: Endpoint, frontend_domid: int) -> str:
    return join(
        store.domain_path(backend.domid),
        "backend",
        backend.kind.value,
        str(frontend_domid),
        str(backend.devid),
    )


def backend_path(store: Store, device: Device) -> str:
    return backend_path_of(store, device.backend, device.frontend.domid)


def error_path(store: Store, device: Device) -> str:
    fe = device.frontend
    return join(store.domain_path(fe.domid), "error", "device", fe.kind.value, str(fe.devid), "error")


def shutdown_request_path(store: Store, device: Device) -> str:
    return join(backend_path(store, device), "shutdown-request")


def shutdown_done_path(store: Store, device: Device) -> str:
    return join(backend_path(store, device), "shutdown-done")


def pause_request_path(store: Store, device: Device) -> str:
    return join(backend_path(store, device), "pause")


def pause_done_path(store: Store, device: Device) -> str:
    return join(backend_path(store, device), "pause-done")
