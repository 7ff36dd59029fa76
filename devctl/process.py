"""Host process control for supervised helper processes.

The device model and vncterm are started detached so they outlive the
control plane; afterwards they are only known by pid. ``ProcessControl``
is what the supervisors need from the OS, and ``HostProcessControl`` is the
real thing.
"""

from __future__ import annotations

import logging
import os
import subprocess
from abc import ABC, abstractmethod

from devctl.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)


class ProcessControl(ABC):
    """OS process operations used by the supervisors."""

    @abstractmethod
    def spawn_detached(self, argv: list[str], log_path: str | None = None) -> int:
        """Start argv in its own session and return its pid.

        stdout and stderr go to log_path (appended), or are discarded.
        """
        ...

    @abstractmethod
    def send_signal(self, pid: int, sig: int) -> None:
        ...

    @abstractmethod
    def is_alive(self, pid: int) -> bool:
        """Zero-cost liveness probe (signal 0)."""
        ...

    @abstractmethod
    def proc_entry_exists(self, pid: int) -> bool:
        ...

    @abstractmethod
    def read_cmdline(self, pid: int) -> bytes | None:
        """Raw command line of pid, or None if it cannot be read."""
        ...


class HostProcessControl(ProcessControl):
    """ProcessControl backed by the host OS and its /proc filesystem."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or default_settings

    def spawn_detached(self, argv: list[str], log_path: str | None = None) -> int:
        logger.debug(f"Spawning: {' '.join(argv)}")
        if log_path is None:
            proc = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        else:
            # The child keeps its own copy of the descriptor
            with open(log_path, "ab") as log:
                proc = subprocess.Popen(
                    argv,
                    stdin=subprocess.DEVNULL,
                    stdout=log,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
        logger.info(f"Started {os.path.basename(argv[0])} as pid {proc.pid}")
        return proc.pid

    def send_signal(self, pid: int, sig: int) -> None:
        os.kill(pid, sig)

    def is_alive(self, pid: int) -> bool:
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            # Exists but belongs to someone else
            return True
        return True

    def _proc_path(self, pid: int, *parts: str) -> str:
        return os.path.join(self.settings.proc_root, str(pid), *parts)

    def proc_entry_exists(self, pid: int) -> bool:
        return os.path.exists(self._proc_path(pid))

    def read_cmdline(self, pid: int) -> bytes | None:
        try:
            with open(self._proc_path(pid, "cmdline"), "rb") as f:
                return f.read()
        except OSError:
            return None


