"""Request/response handshakes with the backend over watched paths.

Shutdown: the control plane writes a request marker under the backend and
then waits for either the backend's ``shutdown-done`` node or the device's
error node, whichever shows up first. Pause: an empty ``pause`` node is
answered by ``pause-done``; unpause removes ``pause`` and waits for
``pause-done`` to go away.

The pause handshakes have no timeout. A far side that never answers blocks
the caller forever, so callers that need a bound must impose one
themselves (e.g. with ``asyncio.wait_for``).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Union

from devctl.devices.generic import remove_device_state, safe_remove
from devctl.devices.identity import (
    Device,
    backend_path,
    error_path,
    frontend_path,
    pause_done_path,
    pause_request_path,
    shutdown_done_path,
    shutdown_request_path,
)
from devctl.errors import DeviceRemoteError, DeviceTimeoutError, HandshakeStateError
from devctl.store.base import Store, WatchTimeout, join
from devctl.store import watch as w

logger = logging.getLogger(__name__)

SHUTDOWN_NORMAL = "normal"
SHUTDOWN_FORCE = "force"


@dataclass(frozen=True)
class Done:
    """The far side completed the request."""
    value: str | None = None


@dataclass(frozen=True)
class Failed:
    """The far side wrote an error instead."""
    message: str


ShutdownOutcome = Union[Done, Failed]


async def wait_for_done_or_error(
    store: Store,
    device: Device,
    done: w.Watch,
    timeout: float | None,
    operation: str = "shutdown",
) -> ShutdownOutcome:
    """Race done against the device's error node.

    Both arms are watched at once; on every notification the done arm is
    checked first, so if both have fired by the time the store is looked at,
    done wins.
    """
    race = w.any_of([
        ("done", done),
        ("failed", w.value_to_appear(error_path(store, device))),
    ])
    try:
        tag, value = await w.wait_for(store, race, timeout)
    except WatchTimeout:
        logger.warning(f"Timed out waiting for {operation} of {device}")
        raise DeviceTimeoutError(device, operation, timeout) from None
    if tag == "failed":
        return Failed(value)
    return Done(value)


async def request_shutdown(store: Store, device: Device, force: bool) -> None:
    """Ask the backend for a clean (``normal``) or hard (``force``) shutdown."""
    request = SHUTDOWN_FORCE if force else SHUTDOWN_NORMAL
    logger.debug(f"request_shutdown {device} {request}")

    request_path = shutdown_request_path(store, device)
    online_path = join(backend_path(store, device), "online")

    # online=0 on a forced shutdown makes the hotplug scripts report errors
    if not force:
        logger.debug(f"store-write {online_path} = 0")
        await store.write(online_path, "0")
    logger.debug(f"store-write {request_path} = {request}")
    await store.write(request_path, request)


async def clean_shutdown(store: Store, device: Device, timeout: float | None) -> None:
    """Shut a device down, letting the guest refuse.

    On success all device subtrees are removed. If the guest writes to the
    error node, only that node is removed (the request may be retried) and
    DeviceRemoteError carries the error text.
    """
    logger.debug(f"clean_shutdown {device}")
    await request_shutdown(store, device, force=False)

    outcome = await wait_for_done_or_error(
        store, device, w.value_to_appear(shutdown_done_path(store, device)), timeout
    )
    if isinstance(outcome, Failed):
        await safe_remove(store, error_path(store, device))
        logger.debug(f"clean_shutdown {device}: read an error: {outcome.message}")
        raise DeviceRemoteError(device, outcome.message)

    logger.debug(f"clean_shutdown {device}: shutdown-done appeared")
    # Stale trees would stop the device from being plugged in again
    await remove_device_state(store, device)


async def hard_shutdown(store: Store, device: Device, timeout: float | None) -> None:
    """Force a device down without giving the guest a say."""
    logger.debug(f"hard_shutdown {device}")
    await request_shutdown(store, device, force=True)
    await safe_remove(store, frontend_path(store, device))

    try:
        await w.wait_for(store, w.value_to_appear(shutdown_done_path(store, device)), timeout)
    except WatchTimeout:
        raise DeviceTimeoutError(device, "hard shutdown", timeout) from None
    await remove_device_state(store, device)
    logger.debug(f"hard_shutdown {device} complete")


async def pause(store: Store, device: Device) -> None:
    """Ask the backend to quiesce I/O and wait until it has."""
    logger.debug(f"pause {device}")
    request_path = pause_request_path(store, device)
    response_path = pause_done_path(store, device)

    for path in (request_path, response_path):
        if await store.exists(path):
            raise HandshakeStateError(device, path, expected_present=False)

    logger.debug(f'store-write {request_path} = ""')
    await store.write(request_path, "")

    await w.wait_for(store, w.value_to_appear(response_path))
    logger.debug(f"pause {device} complete")


async def unpause(store: Store, device: Device) -> None:
    """Release a paused backend and wait for it to acknowledge."""
    logger.debug(f"unpause {device}")
    request_path = pause_request_path(store, device)
    response_path = pause_done_path(store, device)

    for path in (request_path, response_path):
        if not await store.exists(path):
            raise HandshakeStateError(device, path, expected_present=True)

    logger.debug(f"store-rm {request_path}")
    await store.remove(request_path)

    await w.wait_for(store, w.key_to_disappear(response_path))
    logger.debug(f"unpause {device} complete")
