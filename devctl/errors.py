"""Exception hierarchy for the device control plane."""

from __future__ import annotations

from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from devctl.devices.identity import Device


class DevctlError(Exception):
    """Base exception for control-plane failures."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


# ---------------------------------------------------------------------------
# Device protocol errors
# ---------------------------------------------------------------------------


class DeviceError(DevctlError):
    """A failure tied to one device."""

    def __init__(self, message: str, device: "Device | None" = None):
        super().__init__(message)
        self.device = device


class DeviceAlreadyConnectedError(DeviceError):
    """The frontend of a device exists and is not Closed."""

    def __init__(self, device: "Device"):
        super().__init__(f"Device frontend already connected: {device}", device)


class DeviceUnrecognizedError(DevctlError):
    """A device name could not be mapped to a device number."""

    def __init__(self, name: str):
        super().__init__(f"Unrecognized device: {name}")
        self.name = name


class HandshakeStateError(DeviceError):
    """A pause/unpause path was not in the expected existence state."""

    def __init__(self, device: "Device", path: str, expected_present: bool):
        state = "does not exist" if expected_present else "already exists"
        super().__init__(f"store path {path} {state}", device)
        self.path = path
        self.expected_present = expected_present


class DeviceTimeoutError(DeviceError):
    """A bounded wait on a device expired."""

    def __init__(self, device: "Device", operation: str, timeout: float | None):
        super().__init__(
            f"Timed out after {timeout}s waiting for {operation} on {device}", device
        )
        self.operation = operation
        self.timeout = timeout


class DeviceRemoteError(DeviceError):
    """The far side wrote to the error node of a device."""

    def __init__(self, device: "Device", error: str):
        super().__init__(f"Device {device} reported an error: {error}", device)
        self.error = error


class FrontendDeviceError(DeviceError):
    """The frontend hotplug script reported an error."""

    def __init__(self, device: "Device", error: str):
        super().__init__(f"Frontend of {device} failed to plug: {error}", device)
        self.error = error


class HotplugFieldMissingError(DeviceError):
    """A field expected to be written by the hotplug scripts is absent."""

    def __init__(self, device: "Device", field: str):
        super().__init__(f"Hotplug scripts did not write '{field}' for {device}", device)
        self.field = field


class InvalidMacError(DevctlError):
    """A MAC address is not six colon-separated hex octets."""

    def __init__(self, mac: str):
        super().__init__(f"Invalid MAC address: {mac!r}")
        self.mac = mac


# ---------------------------------------------------------------------------
# PCI passthrough errors
# ---------------------------------------------------------------------------


class PciDriverError(DevctlError):
    """One or more PCI devices are not bound to the isolation driver."""

    def __init__(self, devices: Iterable, driver: str):
        self.devices = list(devices)
        self.driver = driver
        names = ", ".join(str(d) for d in self.devices)
        super().__init__(f"PCI devices not bound to {driver}: {names}")


class PciAddError(DevctlError):
    """Granting PCI devices to a domain failed."""

    def __init__(self, addresses: Iterable, cause: Exception):
        self.addresses = list(addresses)
        self.cause = cause
        names = ", ".join(str(a) for a in self.addresses)
        super().__init__(f"Cannot add PCI devices [{names}]: {cause}")


# ---------------------------------------------------------------------------
# Device-model supervision errors
# ---------------------------------------------------------------------------


class DeviceModelError(DevctlError):
    """Base class for device-model process failures."""

    def __init__(self, message: str, domid: int, pid: int | None = None):
        super().__init__(message)
        self.domid = domid
        self.pid = pid


class DeviceModelTimeoutError(DeviceModelError):
    """The device model never signalled readiness."""


class DeviceModelPidMissingError(DeviceModelError):
    """No device-model pid was recorded in the store."""


class DeviceModelVanishedError(DeviceModelError):
    """The device model died after starting."""


class DeviceModelFailedToDieError(DeviceModelError):
    """The device model outlived the shutdown budget."""


class VncTermStartError(DevctlError):
    """The paravirtual console VNC server never reported its port."""

    def __init__(self, domid: int):
        super().__init__(f"vncterm for domain {domid} failed to start")
        self.domid = domid


# ---------------------------------------------------------------------------
# Host command errors
# ---------------------------------------------------------------------------


class HostCommandError(DevctlError):
    """A host command exited non-zero."""

    def __init__(self, message: str, cmd: list[str], stderr: str):
        super().__init__(message)
        self.cmd = cmd
        self.stderr = stderr


class NetdevError(HostCommandError):
    """A host networking command failed."""

    def __init__(self, cmd: list[str], stderr: str):
        super().__init__(f"{' '.join(cmd)} failed: {stderr.strip()}", cmd, stderr)


class LoopMountError(HostCommandError):
    """losetup could not attach a file."""

    def __init__(self, path: str, cmd: list[str], stderr: str):
        super().__init__(f"losetup failed for {path}: {stderr.strip()}", cmd, stderr)
        self.path = path
