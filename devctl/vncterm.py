"""VNC server for the text console of paravirtualized guests."""

from __future__ import annotations

import asyncio
import logging

from devctl.config import Settings, settings as default_settings
from devctl.errors import VncTermStartError
from devctl.metrics import device_model_duration, track
from devctl.process import HostProcessControl, ProcessControl
from devctl.store.base import Store, WatchTimeout, join
from devctl.store import watch as w

logger = logging.getLogger(__name__)


class VncTerm:
    """Launch vncterm against a guest's first serial console."""

    def __init__(
        self,
        store: Store,
        process: ProcessControl | None = None,
        settings: Settings | None = None,
    ):
        self.store = store
        self.settings = settings or default_settings
        self.process = process or HostProcessControl(self.settings)

    def console_path(self, domid: int) -> str:
        return join(self.store.domain_path(domid), "serial", "0")

    def port_path(self, domid: int) -> str:
        return join(self.console_path(domid), "vnc-port")

    async def start(self, domid: int, timeout: float | None = None) -> int:
        """Start vncterm for domid and return the VNC port it listens on."""
        if timeout is None:
            timeout = self.settings.vncterm_timeout
        # The wrapper consumes the domid; the rest goes to vncterm
        argv = [self.settings.vncterm_wrapper, str(domid), "-x", self.console_path(domid)]
        logger.debug(f"Executing [ {' '.join(argv)} ]")

        async with track(device_model_duration, operation="vncterm_start"):
            await asyncio.to_thread(self.process.spawn_detached, argv)
            try:
                port = await w.wait_for(self.store, w.value_to_appear(self.port_path(domid)), timeout)
            except WatchTimeout:
                logger.warning("vncterm: Timed out waiting for vncterm to start")
                raise VncTermStartError(domid) from None
        logger.debug(f"vncterm: wrote vnc port {port} into the store")
        return int(port)
