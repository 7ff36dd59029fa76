"""Interface to the hypervisor control calls the control plane needs.

Only the resource-permission calls used for PCI passthrough are required.
Implementations wrap whatever binding the host provides; each call raises
on failure.
"""

from abc import ABC, abstractmethod


class Hypervisor(ABC):
    """Hypervisor resource-permission interface."""

    @abstractmethod
    def iomem_permission(self, domid: int, first_frame: int, frame_count: int, allow: bool) -> None:
        """Grant or revoke access to a range of machine memory frames."""
        ...

    @abstractmethod
    def ioport_permission(self, domid: int, first_port: int, port_count: int, allow: bool) -> None:
        """Grant or revoke access to a range of I/O ports."""
        ...

    @abstractmethod
    def irq_permission(self, domid: int, irq: int, allow: bool) -> None:
        ...

    @abstractmethod
    def test_assign_device(self, domid: int, machine_sbdf: int) -> None:
        """Raise if the device cannot be assigned to a hardware-virtualized domain."""
        ...
