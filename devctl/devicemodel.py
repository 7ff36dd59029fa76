"""Supervisor for the per-guest device model (qemu-dm).

The device model is started through a wrapper that records qemu's pid in
the store and redirects its output to a per-domain log file. Readiness and
suspend/resume are driven through store keys; shutdown is by signal. The
supervisor is not qemu's parent, so it cannot wait for it and instead polls
``/proc`` until the process is gone.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal as signals

from devctl.cleanup import CleanupAction, run_cleanup
from devctl.config import Settings, settings as default_settings
from devctl.errors import (
    DeviceModelFailedToDieError,
    DeviceModelPidMissingError,
    DeviceModelTimeoutError,
    DeviceModelVanishedError,
)
from devctl.metrics import device_model_duration, track
from devctl.process import HostProcessControl, ProcessControl
from devctl.schemas import DeviceModelInfo, DeviceModelState, SdlDisplay, VncDisplay
from devctl.store.base import Store, Transaction, WatchTimeout, join
from devctl.store import watch as w

logger = logging.getLogger(__name__)

NO_VNC_PORT = -1
DEFAULT_NIC_MODEL = "rtl8139"
LOGFILE_SPOOL_LIMIT = 1024 * 1024


class DeviceModel:
    """Start, signal and stop device models, one per guest domain."""

    def __init__(
        self,
        store: Store,
        process: ProcessControl | None = None,
        settings: Settings | None = None,
    ):
        self.store = store
        self.settings = settings or default_settings
        self.process = process or HostProcessControl(self.settings)
        self._states: dict[int, DeviceModelState] = {}

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def logfile(self, domid: int) -> str:
        return os.path.join(self.settings.dm_log_dir, f"qemu.{domid}")

    def restore_file(self, domid: int) -> str:
        return os.path.join(self.settings.dm_restore_dir, f"xen.qemu-dm.{domid}")

    def device_model_path(self, domid: int) -> str:
        """Command subtree; the device model runs in the control domain."""
        return join(self.store.domain_path(self.settings.control_domid), "device-model", str(domid))

    def pid_path(self, domid: int) -> str:
        return join(self.store.domain_path(domid), "qemu-pid")

    def ready_path(self, domid: int) -> str:
        return join(self.store.domain_path(domid), "device-misc", "dm-ready")

    def vnc_port_path(self, domid: int) -> str:
        return join(self.store.domain_path(domid), "console", "vnc-port")

    def state(self, domid: int) -> DeviceModelState:
        return self._states.get(domid, DeviceModelState.NOT_STARTED)

    def _set_state(self, domid: int, state: DeviceModelState) -> None:
        logger.debug(f"qemu-dm domid={domid}: {self.state(domid).value} -> {state.value}")
        self._states[domid] = state

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    def build_args(self, info: DeviceModelInfo, domid: int, restore: bool = False) -> tuple[list[str], bool]:
        """Return the wrapper arguments and whether a VNC port will be written.

        The first two arguments (domid, log file) are consumed by the
        wrapper; everything after goes to qemu unchanged.
        """
        args = [
            str(domid),
            self.logfile(domid),
            "-d", str(domid),
            "-m", str(info.memory // 1024),
            "-boot", info.boot,
            "-serial", info.serial,
            "-vcpus", str(info.vcpus),
            "-videoram", str(info.videoram),
            "-M", "xenfv" if info.hvm else "xenpv",
        ]

        wait_for_port = False
        display = info.display
        if isinstance(display, VncDisplay):
            wait_for_port = True
            if display.auto_allocate:
                args += ["-vncunused", "-k", display.keymap]
            else:
                args += ["-vnc", f"{display.bind_address}:{display.port}", "-k", display.keymap]
        elif isinstance(display, SdlDisplay):
            logger.debug(f"qemu-dm domid={domid}: SDL display {display.x11_display!r} needs no arguments")

        if info.sound:
            args += ["-soundhw", info.sound]

        if info.usb:
            args.append("-usb")
            for device in info.usb:
                args += ["-usbdevice", device]

        # Every NIC needs its own vlan or qemu wires them together
        for vlan, nic in enumerate(info.nics):
            args += [
                "-net", f"nic,vlan={vlan},macaddr={nic.mac},model={nic.model or DEFAULT_NIC_MODEL}",
                "-net", f"tap,vlan={vlan},bridge={nic.bridge},ifname=tap{domid}.{vlan}",
            ]

        if info.acpi:
            args.append("-acpi")
        if restore:
            args += ["-loadvm", self.restore_file(domid)]
        for emulation in info.pci_emulations:
            args += ["-pciemulation", emulation]
        for flag, value in info.extras:
            args.append(f"-{flag}")
            if value is not None:
                args.append(value)
        return args, wait_for_port

    async def _write_platform_flags(self, info: DeviceModelInfo, domid: int) -> None:
        base = self.device_model_path(domid)
        # Extended power management only makes sense if the host has batteries
        if info.power_mgmt != 0 and os.path.isdir(self.settings.acpi_battery_path):
            await self.store.write(join(base, "xen_extended_power_mgmt"), str(info.power_mgmt))
        if info.oem_features != 0:
            await self.store.write(join(base, "oem_features"), str(info.oem_features))
        if info.inject_sci != 0:
            await self.store.write(join(base, "inject-sci"), str(info.inject_sci))

    async def read_pid(self, domid: int) -> int | None:
        value = await self.store.read_or_none(self.pid_path(domid))
        if value is None:
            return None
        try:
            pid = int(value)
        except ValueError:
            logger.warning(f"Unparsable qemu-dm pid {value!r} for domain {domid}")
            return None
        return pid or None

    async def _start(self, info: DeviceModelInfo, domid: int, restore: bool, timeout: float | None) -> int:
        if timeout is None:
            timeout = self.settings.dm_ready_timeout
        self._set_state(domid, DeviceModelState.STARTING)
        await self._write_platform_flags(info, domid)

        args, wait_for_port = self.build_args(info, domid, restore)
        argv = [self.settings.dm_path, *args]
        log = self.logfile(domid)
        logger.debug(f"qemu-dm: executing commandline: {' '.join(argv)}")
        await asyncio.to_thread(self.process.spawn_detached, argv, log)
        logger.debug(f"qemu-dm: should be running in the background (output redirected to {log})")

        ready = self.ready_path(domid)
        try:
            await w.wait_for(self.store, w.value_to_appear(ready), timeout)
        except WatchTimeout:
            logger.error(f"qemu-dm: timeout waiting for {ready}")
            raise DeviceModelTimeoutError(f"Timeout waiting for {ready}", domid) from None

        pid = await self.read_pid(domid)
        if pid is None:
            raise DeviceModelPidMissingError("Failed to read qemu-dm pid from the store", domid)
        logger.debug(f"qemu-dm: pid = {pid}")

        # It may have died right after saying it was ready
        if not self.process.is_alive(pid):
            raise DeviceModelVanishedError(f"The qemu-dm process (pid {pid}) has vanished", domid, pid)
        self._set_state(domid, DeviceModelState.READY)

        if not wait_for_port:
            self._set_state(domid, DeviceModelState.RUNNING)
            return NO_VNC_PORT

        self._set_state(domid, DeviceModelState.AWAITING_VNC)
        port = await w.wait_for(self.store, w.value_to_appear(self.vnc_port_path(domid)))
        logger.debug(f"qemu-dm: wrote vnc port {port} into the store")
        self._set_state(domid, DeviceModelState.RUNNING)
        return int(port)

    async def start(self, info: DeviceModelInfo, domid: int, timeout: float | None = None) -> int:
        """Start the device model; return its VNC port, or -1 without VNC."""
        async with track(device_model_duration, operation="start"):
            return await self._start(info, domid, False, timeout)

    async def restore(self, info: DeviceModelInfo, domid: int, timeout: float | None = None) -> int:
        """Start the device model from the saved state of domid."""
        async with track(device_model_duration, operation="restore"):
            return await self._start(info, domid, True, timeout)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def signal(
        self,
        domid: int,
        command: str,
        parameter: str | None = None,
        wait_for: str | None = None,
    ) -> None:
        """Send a command to the device model, optionally waiting for a state."""
        base = self.device_model_path(domid)

        async def _write(t: Transaction) -> None:
            await t.write(join(base, "command"), command)
            if parameter is not None:
                await t.write(join(base, "parameter"), parameter)

        await self.store.transaction(_write)
        if wait_for is not None:
            await w.wait_for(self.store, w.value_to_become(join(base, "state"), wait_for))

    async def suspend(self, domid: int) -> None:
        async with track(device_model_duration, operation="suspend"):
            await self.signal(domid, "save", wait_for="paused")

    async def resume(self, domid: int) -> None:
        async with track(device_model_duration, operation="resume"):
            await self.signal(domid, "continue", wait_for="running")

    # ------------------------------------------------------------------
    # Stop
    # ------------------------------------------------------------------

    def write_logfile_to_log(self, domid: int) -> None:
        """Copy the device model's output into the debug log."""
        path = self.logfile(domid)
        try:
            with open(path, errors="replace") as f:
                contents = f.read(LOGFILE_SPOOL_LIMIT)
        except OSError as e:
            logger.debug(f"Caught exception reading qemu log file from {path}: {e}")
            raise
        logger.debug(f"qemu-dm: logfile contents: {contents}")

    def unlink_logfile(self, domid: int) -> None:
        os.unlink(self.logfile(domid))

    async def _wait_for_exit(self, domid: int, pid: int, reference: bytes | None) -> None:
        """Poll /proc until pid is gone or has been reused."""
        interval = self.settings.dm_poll_interval
        left = self.settings.dm_shutdown_timeout
        while left > 0 and self.process.proc_entry_exists(pid):
            if self.process.read_cmdline(pid) != reference:
                logger.debug(f"qemu-dm: pid {pid} now runs something else; treating it as gone")
                return
            await asyncio.sleep(interval)
            left -= interval
        if left <= 0:
            logger.error(
                f"qemu-dm: failed to go away {self.settings.dm_shutdown_timeout}s after receiving "
                f"signal (domid {domid} pid {pid})"
            )
            raise DeviceModelFailedToDieError(
                f"qemu-dm (pid {pid}) did not exit", domid, pid
            )

    async def stop(self, domid: int, sig: int = signals.SIGTERM) -> None:
        """Stop the device model of domid and clean up after it.

        Without a recorded pid the domain never had a device model and this
        does nothing.
        """
        pid = await self.read_pid(domid)
        if pid is None:
            logger.debug(f"No qemu-dm pid in the store for domain {domid}; assuming PV")
            return

        async with track(device_model_duration, operation="stop"):
            self._set_state(domid, DeviceModelState.STOPPING)
            if self.process.proc_entry_exists(pid):
                reference = self.process.read_cmdline(pid)
                logger.debug(f"qemu-dm: sending {signals.Signals(sig).name} (domid {domid} pid {pid})")
                try:
                    self.process.send_signal(pid, sig)
                except ProcessLookupError:
                    logger.debug(f"qemu-dm: pid {pid} exited before it could be signalled")
                else:
                    await self._wait_for_exit(domid, pid, reference)

                await run_cleanup([
                    CleanupAction(f"remove {self.pid_path(domid)}", lambda: self.store.remove(self.pid_path(domid))),
                    # Not recursive: core files left in here must survive for diagnostics
                    CleanupAction(
                        f"remove chroot of pid {pid}",
                        lambda: os.rmdir(os.path.join(self.settings.dm_chroot_root, str(pid))),
                    ),
                ])

            report = await run_cleanup([
                CleanupAction(
                    f"remove {self.device_model_path(domid)}",
                    lambda: self.store.remove(self.device_model_path(domid)),
                ),
                # Inspect the log even (especially) if qemu was already dead
                CleanupAction(f"spool log of domain {domid}", lambda: self.write_logfile_to_log(domid)),
                CleanupAction(f"unlink log of domain {domid}", lambda: self.unlink_logfile(domid)),
            ])
            if not report.ok:
                logger.debug(f"qemu-dm: cleanup after domid {domid} pid {pid}: {'; '.join(report.errors)}")
            self._set_state(domid, DeviceModelState.STOPPED)
