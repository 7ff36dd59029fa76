"""Virtual network interfaces, wired and wireless.

After the device trees are published and the backend hotplug scripts have
run, the backend interface is plugged into the host network. A guest can
disconnect and reconnect its interface many times over the lifetime of one
device, so ``plug`` is re-run on every reconnect.
"""

from __future__ import annotations

import logging
import re

from devctl.config import Settings
from devctl.devices.base import DeviceProtocol
from devctl.devices.generic import add_device, remove_device_state, safe_remove
from devctl.devices.hotplug import Hotplug
from devctl.devices.identity import (
    Device,
    DeviceKind,
    Endpoint,
    Protocol,
    XenbusState,
    backend_path,
    error_path,
    frontend_path,
)
from devctl.devices.rendezvous import Failed, wait_for_done_or_error
from devctl.errors import (
    DeviceRemoteError,
    DeviceTimeoutError,
    HotplugFieldMissingError,
    InvalidMacError,
)
from devctl.network.netdev import NetworkHelpers, NetworkType
from devctl.store.base import Store, Transaction, WatchTimeout, join
from devctl.store import watch as w

logger = logging.getLogger(__name__)

_MAC_RE = re.compile(r"[0-9a-fA-F]{2}(:[0-9a-fA-F]{2}){5}")

DEFAULT_RATE_INTERVAL_US = 50_000
MAX_BYTES_PER_INTERVAL = 0xFFFFFFFF

# Informational keys a wireless frontend expects to find
WIRELESS_FRONTEND_KEYS = [
    ("rssi", "-65"),
    ("link-quality", "95"),
    ("ssid", "XenWireless"),
]


def check_mac(mac: str) -> str:
    """Return mac if it is six colon-separated pairs of hex digits."""
    if not _MAC_RE.fullmatch(mac):
        raise InvalidMacError(mac)
    return mac


def rate_limit_keys(rate: tuple[int, int] | None) -> list[tuple[str, str]]:
    """Backend keys for a ``(kilobytes_per_s, interval_us)`` rate limit.

    The backend takes a byte credit per interval. A non-positive interval
    means the 50ms default. Values that would not fit the backend's 32-bit
    counter (or are zero) are logged and dropped.
    """
    if rate is None:
        return []
    kbytes_per_s, interval_us = rate
    if interval_us <= 0:
        interval_us = DEFAULT_RATE_INTERVAL_US
    bytes_per_interval = kbytes_per_s * 1024 * interval_us // 1_000_000
    if 0 < bytes_per_interval < MAX_BYTES_PER_INTERVAL:
        return [("rate", f"{bytes_per_interval},{interval_us}")]
    logger.debug(f"VIF qos: invalid value for byte/interval: {bytes_per_interval}")
    return []


class NetworkInterfaces(DeviceProtocol):
    """Attach, plug and detach guest network interfaces."""

    kinds = (DeviceKind.NETWORK_INTERFACE, DeviceKind.WIRELESS_NETWORK_INTERFACE)

    def __init__(
        self,
        store: Store,
        hotplug: Hotplug,
        settings: Settings | None = None,
        netdev: NetworkHelpers | None = None,
    ):
        super().__init__(store, hotplug, settings)
        self.netdev = netdev or NetworkHelpers()

    async def add(
        self,
        domid: int,
        *,
        devid: int,
        netty: NetworkType,
        mac: str,
        mtu: int = 0,
        rate: tuple[int, int] | None = None,
        protocol: Protocol = Protocol.NATIVE,
        backend_domid: int | None = None,
        wireless: bool = False,
    ) -> Device:
        """Attach an interface and plug its backend into the host network."""
        if backend_domid is None:
            backend_domid = self.control_domid
        logger.debug(
            f"Network add domid={domid} devid={devid} mac={mac} "
            f"rate={'none' if rate is None else rate} wireless={wireless}"
        )
        front_kind = DeviceKind.WIRELESS_NETWORK_INTERFACE if wireless else DeviceKind.NETWORK_INTERFACE
        device = Device(
            backend=Endpoint(backend_domid, DeviceKind.NETWORK_INTERFACE, devid),
            frontend=Endpoint(domid, front_kind, devid),
        )
        mac = check_mac(mac)

        back = [
            ("frontend-id", str(domid)),
            ("online", "1"),
            ("state", XenbusState.INITIALISING.to_store()),
            ("script", self.settings.vif_script),
            ("mac", mac),
            ("handle", str(devid)),
            *rate_limit_keys(rate),
        ]
        front = [
            ("backend-id", str(backend_domid)),
            ("state", XenbusState.INITIALISING.to_store()),
            ("handle", str(devid)),
            ("mac", mac),
        ]
        if wireless:
            front.extend(WIRELESS_FRONTEND_KEYS)
        if protocol != Protocol.NATIVE:
            front.append(("protocol", protocol.value))

        await add_device(self.store, self.hotplug, device, back, front)
        await self.hotplug.wait_for_plug(device)
        return await self.plug(device, netty, mtu)

    async def backend_dev(self, device: Device) -> str:
        """Name of the host interface the hotplug scripts created."""
        value = await self.store.read_or_none(join(self.hotplug.hotplug_path(device), "vif"))
        if value is None:
            raise HotplugFieldMissingError(device, "vif")
        return value

    async def plug(self, device: Device, netty: NetworkType, mtu: int = 0) -> Device:
        """Bring the backend interface online and mark it connected."""
        dev = await self.backend_dev(device)
        if mtu > 0:
            await self.netdev.set_mtu(dev, mtu)
        await self.netdev.online(dev, netty)
        # The backend driver holds off connecting until this appears
        await self.store.write(self.hotplug.connected_node(device), "connected")
        return device

    async def request_closure(self, device: Device) -> None:
        """Ask the backend to close: online=0, and Closing if Connected."""
        back = backend_path(self.store, device)
        state_path = join(back, "state")

        async def _close(t: Transaction) -> None:
            await t.write(join(back, "online"), "0")
            value = await t.read_or_none(state_path)
            state = XenbusState.parse(value) if value is not None else XenbusState.CLOSED
            if state == XenbusState.CONNECTED:
                logger.debug(f"Setting backend of {device} to Closing")
                await t.write(state_path, XenbusState.CLOSING.to_store())

        await self.store.transaction(_close)

    def _unplug_watch(self, device: Device) -> w.Watch[str]:
        return w.key_to_disappear(self.hotplug.status_node(device)).map(lambda _: "")

    async def clean_shutdown(self, device: Device) -> None:
        logger.debug(f"Network clean_shutdown {device}")
        await self.request_closure(device)
        outcome = await wait_for_done_or_error(
            self.store, device, self._unplug_watch(device), self.settings.hotplug_timeout
        )
        if isinstance(outcome, Failed):
            await safe_remove(self.store, error_path(self.store, device))
            logger.debug(f"Network clean_shutdown {device}: read an error: {outcome.message}")
            raise DeviceRemoteError(device, outcome.message)
        await remove_device_state(self.store, device)

    async def hard_shutdown(self, device: Device) -> None:
        logger.debug(f"Network hard_shutdown {device}")
        await self.store.write(join(backend_path(self.store, device), "online"), "0")
        logger.debug(f"Removing frontend of {device}")
        await safe_remove(self.store, frontend_path(self.store, device))

        timeout = self.settings.hotplug_timeout
        try:
            await w.wait_for(self.store, self._unplug_watch(device), timeout)
        except WatchTimeout:
            raise DeviceTimeoutError(device, "hotplug removal", timeout) from None
        await remove_device_state(self.store, device)

    async def release(self, device: Device) -> None:
        logger.debug(f"Network release {device}")
        await self.hotplug.release(device)
