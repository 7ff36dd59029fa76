from __future__ import annotations

import asyncio

import pytest

from devctl.devices import rendezvous
from devctl.devices.generic import add_device
from devctl.devices.identity import (
    backend_path,
    error_path,
    frontend_path,
    pause_done_path,
    pause_request_path,
    shutdown_done_path,
    shutdown_request_path,
)
from devctl.errors import DeviceRemoteError, DeviceTimeoutError, HandshakeStateError
from devctl.store import watch as w


async def _backend_answers(store, path, value="", delay=0.01):
    await asyncio.sleep(delay)
    await store.write(path, value)


@pytest.mark.asyncio
async def test_request_shutdown_normal_sets_offline(store, vbd_device):
    await rendezvous.request_shutdown(store, vbd_device, force=False)

    assert await store.read(f"{backend_path(store, vbd_device)}/online") == "0"
    assert await store.read(shutdown_request_path(store, vbd_device)) == "normal"


@pytest.mark.asyncio
async def test_request_shutdown_force_leaves_online(store, vbd_device):
    await store.write(f"{backend_path(store, vbd_device)}/online", "1")
    await rendezvous.request_shutdown(store, vbd_device, force=True)

    assert await store.read(f"{backend_path(store, vbd_device)}/online") == "1"
    assert await store.read(shutdown_request_path(store, vbd_device)) == "force"


@pytest.mark.asyncio
async def test_clean_shutdown_done_removes_state(store, hotplug, vbd_device):
    await add_device(store, hotplug, vbd_device, [], [])
    task = asyncio.create_task(_backend_answers(store, shutdown_done_path(store, vbd_device)))

    await rendezvous.clean_shutdown(store, vbd_device, timeout=1)
    await task

    assert not await store.exists(frontend_path(store, vbd_device))
    assert not await store.exists(backend_path(store, vbd_device))


@pytest.mark.asyncio
async def test_clean_shutdown_error_removes_only_error_node(store, hotplug, vbd_device):
    await add_device(store, hotplug, vbd_device, [], [])
    err = error_path(store, vbd_device)
    task = asyncio.create_task(_backend_answers(store, err, "device busy"))

    with pytest.raises(DeviceRemoteError) as exc:
        await rendezvous.clean_shutdown(store, vbd_device, timeout=1)
    await task

    assert exc.value.error == "device busy"
    assert not await store.exists(err)
    assert await store.exists(frontend_path(store, vbd_device))
    assert await store.exists(backend_path(store, vbd_device))


@pytest.mark.asyncio
async def test_clean_shutdown_timeout_leaves_state(store, hotplug, vbd_device):
    await add_device(store, hotplug, vbd_device, [], [])

    with pytest.raises(DeviceTimeoutError) as exc:
        await rendezvous.clean_shutdown(store, vbd_device, timeout=0.05)

    assert exc.value.device == vbd_device
    assert await store.exists(frontend_path(store, vbd_device))


@pytest.mark.asyncio
async def test_done_wins_when_both_present(store, vbd_device):
    await store.write(shutdown_done_path(store, vbd_device), "")
    await store.write(error_path(store, vbd_device), "late error")

    outcome = await rendezvous.wait_for_done_or_error(
        store, vbd_device, w.value_to_appear(shutdown_done_path(store, vbd_device)), timeout=1
    )
    assert outcome == rendezvous.Done("")


@pytest.mark.asyncio
async def test_hard_shutdown_deletes_frontend_first(store, hotplug, vbd_device):
    await add_device(store, hotplug, vbd_device, [], [])
    front = frontend_path(store, vbd_device)
    seen_frontend = []

    async def backend():
        await w.wait_for(store, w.value_to_appear(shutdown_request_path(store, vbd_device)))
        await asyncio.sleep(0.01)
        seen_frontend.append(await store.exists(front))
        await store.write(shutdown_done_path(store, vbd_device), "")

    task = asyncio.create_task(backend())
    await rendezvous.hard_shutdown(store, vbd_device, timeout=1)
    await task

    assert seen_frontend == [False]
    assert not await store.exists(backend_path(store, vbd_device))


@pytest.mark.asyncio
async def test_hard_shutdown_timeout(store, hotplug, vbd_device):
    await add_device(store, hotplug, vbd_device, [], [])
    with pytest.raises(DeviceTimeoutError):
        await rendezvous.hard_shutdown(store, vbd_device, timeout=0.05)


@pytest.mark.asyncio
async def test_pause_and_unpause_handshake(store, vbd_device):
    request = pause_request_path(store, vbd_device)
    done = pause_done_path(store, vbd_device)

    async def backend_pauses():
        await w.wait_for(store, w.value_to_appear(request))
        await store.write(done, "")

    task = asyncio.create_task(backend_pauses())
    await asyncio.wait_for(rendezvous.pause(store, vbd_device), 1)
    await task
    assert await store.exists(request)

    async def backend_resumes():
        await w.wait_for(store, w.key_to_disappear(request))
        await store.remove(done)

    task = asyncio.create_task(backend_resumes())
    await asyncio.wait_for(rendezvous.unpause(store, vbd_device), 1)
    await task
    assert not await store.exists(request)


@pytest.mark.asyncio
async def test_pause_refuses_existing_request(store, vbd_device):
    await store.write(pause_request_path(store, vbd_device), "")

    with pytest.raises(HandshakeStateError) as exc:
        await rendezvous.pause(store, vbd_device)
    assert exc.value.expected_present is False


@pytest.mark.asyncio
async def test_unpause_requires_paused_device(store, vbd_device):
    with pytest.raises(HandshakeStateError) as exc:
        await rendezvous.unpause(store, vbd_device)
    assert exc.value.path == pause_request_path(store, vbd_device)
    assert exc.value.expected_present is True
