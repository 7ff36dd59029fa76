"""Bring backend network devices online.

A backend interface is attached either to a Linux bridge or to an Open
vSwitch bridge; interfaces served by a driver domain are left alone.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Union

from devctl.cmd import run_cmd
from devctl.errors import NetdevError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Bridge:
    """Attach to a Linux bridge."""
    name: str


@dataclass(frozen=True)
class Vswitch:
    """Attach to an Open vSwitch bridge."""
    name: str


@dataclass(frozen=True)
class DriverDomain:
    """Networking is handled by another domain."""


NetworkType = Union[Bridge, Vswitch, DriverDomain]


class NetworkHelpers:
    """ip/ovs-vsctl wrappers used when plugging guest interfaces."""

    def __init__(self, run_cmd: Callable[[list[str]], Awaitable[tuple[int, str, str]]] = run_cmd):
        self._run_cmd = run_cmd

    async def _check(self, cmd: list[str]) -> str:
        logger.debug(f"Running: {' '.join(cmd)}")
        code, stdout, stderr = await self._run_cmd(cmd)
        if code != 0:
            raise NetdevError(cmd, stderr)
        return stdout

    async def set_mtu(self, dev: str, mtu: int) -> None:
        await self._check(["ip", "link", "set", dev, "mtu", str(mtu)])

    async def online(self, dev: str, netty: NetworkType) -> None:
        """Attach dev to its network and bring it up."""
        if isinstance(netty, Bridge):
            await self._check(["ip", "link", "set", dev, "master", netty.name])
        elif isinstance(netty, Vswitch):
            await self._check(["ovs-vsctl", "--may-exist", "add-port", netty.name, dev])
        else:
            logger.debug(f"{dev} is managed by a driver domain; nothing to attach")
            return
        await self._check(["ip", "link", "set", dev, "up"])
        logger.info(f"Interface {dev} online on {netty.name}")
