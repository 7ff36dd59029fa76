from __future__ import annotations

import asyncio

import pytest

from devctl.store.base import (
    NoEntry,
    Perm,
    Permissions,
    TransactionConflict,
    WatchTimeout,
    dirname,
    join,
)
from devctl.store.memory import MemoryStore
from devctl.store import watch as w


def test_join_and_dirname():
    assert join("/local/domain/0", "backend", "vbd") == "/local/domain/0/backend/vbd"
    assert join("/a/", "/b/", "c") == "/a/b/c"
    assert dirname("/a/b/c") == "/a/b"
    assert dirname("/a") == "/"


def test_permissions_allows_read():
    perms = Permissions(5, Perm.NONE, ((0, Perm.READ),))
    assert perms.allows_read(5)
    assert perms.allows_read(0)
    assert not perms.allows_read(7)


@pytest.mark.asyncio
async def test_write_creates_parents_and_remove_is_recursive(store):
    await store.write("/a/b/c", "1")
    assert await store.read("/a/b") == ""
    assert await store.list("/a") == ["b"]

    await store.remove("/a")
    assert not await store.exists("/a/b/c")
    with pytest.raises(NoEntry):
        await store.remove("/a")


@pytest.mark.asyncio
async def test_transaction_commits_atomically(store):
    async def body(t):
        await t.writev("/dev", [("x", "1"), ("y", "2")])
        assert not await store.exists("/dev/x")

    await store.transaction(body)
    assert store.snapshot("/dev") == {"/dev": "", "/dev/x": "1", "/dev/y": "2"}
    assert store.commits == 1


@pytest.mark.asyncio
async def test_transaction_exception_discards_writes(store):
    async def body(t):
        await t.write("/dev/x", "1")
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        await store.transaction(body)
    assert not await store.exists("/dev/x")


@pytest.mark.asyncio
async def test_transaction_retries_on_conflict(store):
    attempts = []

    async def body(t):
        attempts.append(1)
        value = await t.read_or_none("/counter")
        if len(attempts) == 1:
            # Someone else commits while this transaction is open
            await store.write("/counter", "10")
        await t.write("/counter", str(int(value or 0) + 1))

    await store.transaction(body)
    assert len(attempts) == 2
    assert store.conflicts == 1
    assert await store.read("/counter") == "11"


@pytest.mark.asyncio
async def test_transaction_gives_up_after_max_retries():
    store = MemoryStore(max_retries=3)

    async def body(t):
        await store.write("/noise", "x")

    with pytest.raises(TransactionConflict) as exc:
        await store.transaction(body)
    assert exc.value.attempts == 3


@pytest.mark.asyncio
async def test_set_permissions_requires_node(store):
    with pytest.raises(NoEntry):
        await store.set_permissions("/missing", Permissions(0))

    await store.mkdir("/present")
    await store.set_permissions("/present", Permissions(3, Perm.READ))
    assert store.get_permissions("/present") == Permissions(3, Perm.READ)


@pytest.mark.asyncio
async def test_value_to_appear_fires_on_later_write(store):
    async def writer():
        await asyncio.sleep(0.01)
        await store.write("/x/ready", "yes")

    task = asyncio.create_task(writer())
    assert await w.wait_for(store, w.value_to_appear("/x/ready"), timeout=1) == "yes"
    await task


@pytest.mark.asyncio
async def test_value_to_become_ignores_other_values(store):
    await store.write("/state", "starting")

    async def writer():
        await asyncio.sleep(0.01)
        await store.write("/state", "paused")
        await asyncio.sleep(0.01)
        await store.write("/state", "running")

    task = asyncio.create_task(writer())
    assert await w.wait_for(store, w.value_to_become("/state", "running"), timeout=1) == "running"
    await task


@pytest.mark.asyncio
async def test_key_to_disappear_fires_on_parent_removal(store):
    await store.write("/dev/hotplug", "online")

    async def remover():
        await asyncio.sleep(0.01)
        await store.remove("/dev")

    task = asyncio.create_task(remover())
    await w.wait_for(store, w.key_to_disappear("/dev/hotplug"), timeout=1)
    await task


@pytest.mark.asyncio
async def test_watch_timeout(store):
    with pytest.raises(WatchTimeout) as exc:
        await w.wait_for(store, w.value_to_appear("/never"), timeout=0.05)
    assert exc.value.paths == ["/never"]


@pytest.mark.asyncio
async def test_any_of_prefers_first_arm_when_both_fired(store):
    await store.write("/done", "")
    await store.write("/error", "disk on fire")

    race = w.any_of([("done", w.value_to_appear("/done")), ("failed", w.value_to_appear("/error"))])
    assert await w.wait_for(store, race, timeout=1) == ("done", "")


@pytest.mark.asyncio
async def test_any_of_reports_second_arm(store):
    race = w.any_of([("done", w.value_to_appear("/done")), ("failed", w.value_to_appear("/error"))])

    async def writer():
        await asyncio.sleep(0.01)
        await store.write("/error", "refused")

    task = asyncio.create_task(writer())
    assert await w.wait_for(store, race, timeout=1) == ("failed", "refused")
    await task


@pytest.mark.asyncio
async def test_mapped_watch(store):
    await store.write("/port", "5901")
    assert await w.wait_for(store, w.value_to_appear("/port").map(int)) == 5901
