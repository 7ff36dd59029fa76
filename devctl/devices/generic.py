"""Creation and removal of the store subtrees of a device.

Every device owns three subtrees: the frontend (readable by the backend
domain), the backend (readable by the frontend domain) and a hotplug
bookkeeping subtree owned by the backend domain alone. They are created
together in one transaction and removed together, best-effort, once the
hotplug scripts have let go of the device.
"""

from __future__ import annotations

import logging
from typing import Iterable

from devctl.cleanup import CleanupAction, CleanupReport, run_cleanup
from devctl.devices.hotplug import Hotplug
from devctl.devices.identity import (
    Device,
    XenbusState,
    backend_path,
    error_path,
    frontend_path,
)
from devctl.errors import DeviceAlreadyConnectedError
from devctl.store.base import NoEntry, Perm, Permissions, Store, Transaction, dirname, join

logger = logging.getLogger(__name__)


def _format_keys(keys: Iterable[tuple[str, str]]) -> str:
    return ";".join(f"({k},{v})" for k, v in keys)


async def _remove_if_present(t: Transaction, path: str) -> None:
    try:
        await t.remove(path)
    except NoEntry:
        pass


async def add_device(
    store: Store,
    hotplug: Hotplug,
    device: Device,
    backend_keys: list[tuple[str, str]],
    frontend_keys: list[tuple[str, str]],
) -> None:
    """Publish the frontend, backend and hotplug subtrees of device.

    Raises DeviceAlreadyConnectedError if a frontend already exists in any
    state other than Closed. Stale frontend and backend trees are replaced;
    the hotplug subtree is kept because it records resources (such as loop
    devices) that would otherwise leak.
    """
    front = frontend_path(store, device)
    back = backend_path(store, device)
    hotplug_path = hotplug.hotplug_path(device)
    fe_domid = device.frontend.domid
    be_domid = device.backend.domid
    logger.debug(
        f"Adding device B{be_domid}[{back}] F{fe_domid}[{front}] H[{hotplug_path}]"
    )

    async def _add(t: Transaction) -> None:
        if await t.exists(front):
            state = await t.read_or_none(join(front, "state"))
            if state is not None and XenbusState.parse(state) != XenbusState.CLOSED:
                raise DeviceAlreadyConnectedError(device)

        await _remove_if_present(t, front)
        await _remove_if_present(t, back)

        await t.mkdir(front)
        await t.set_permissions(front, Permissions(fe_domid, Perm.NONE, ((be_domid, Perm.READ),)))

        await t.mkdir(back)
        await t.set_permissions(back, Permissions(be_domid, Perm.NONE, ((fe_domid, Perm.READ),)))

        await t.mkdir(hotplug_path)
        await t.set_permissions(hotplug_path, Permissions(be_domid, Perm.NONE))

        await t.writev(front, [("backend", back), *frontend_keys])
        await t.writev(back, [("frontend", front), *backend_keys])

    logger.debug(f"Frontend keys {_format_keys(frontend_keys)}; backend keys {_format_keys(backend_keys)}")
    await store.transaction(_add)


async def safe_remove(store: Store, path: str) -> bool:
    """Remove path, logging instead of raising on failure."""
    logger.debug(f"store-rm {path}")
    try:
        await store.remove(path)
    except Exception as e:
        logger.debug(f"Failed to remove {path} ({e}); continuing")
        return False
    return True


async def remove_device_state(store: Store, device: Device) -> CleanupReport:
    """Delete the frontend, backend and error trees of a device.

    Only call this after synchronising with the hotplug scripts. Each
    removal is independent; as much is removed as possible.
    """
    logger.debug(f"remove_device_state {device}")

    async def _rm(path: str) -> None:
        await store.remove(path)

    return await run_cleanup([
        CleanupAction(f"remove frontend of {device}", lambda: _rm(frontend_path(store, device))),
        CleanupAction(f"remove backend of {device}", lambda: _rm(backend_path(store, device))),
        CleanupAction(f"remove error node of {device}", lambda: _rm(dirname(error_path(store, device)))),
    ])


async def can_surprise_remove(store: Store, device: Device) -> bool:
    """Whether the backend advertises surprise removal (bit 2 of ``info``)."""
    value = await store.read_or_none(join(backend_path(store, device), "info"))
    if value is None:
        return False
    try:
        return int(value, 0) & 2 != 0
    except ValueError:
        return False
