"""Running host helper commands (losetup, ip, ovs-vsctl, FLR hooks)."""

from __future__ import annotations

import asyncio
import logging

logger = logging.getLogger(__name__)


async def run_cmd(cmd: list[str], timeout: float | None = None) -> tuple[int, str, str]:
    """Run cmd without a shell and collect its output.

    A command still running after timeout seconds is killed and
    ``asyncio.TimeoutError`` propagates.

    Returns:
        Tuple of (return_code, stdout, stderr)
    """
    logger.debug(f"exec: {' '.join(cmd)}")
    proc = await asyncio.create_subprocess_exec(
        *cmd,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        logger.warning(f"{cmd[0]} did not finish within {timeout}s; killed")
        raise
    if proc.returncode:
        logger.debug(f"{cmd[0]} exited {proc.returncode}: {stderr.decode(errors='replace').strip()}")
    return (
        proc.returncode or 0,
        stdout.decode(errors="replace"),
        stderr.decode(errors="replace"),
    )
