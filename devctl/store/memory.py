"""In-process implementation of the configuration store.

Keeps the whole tree in a dict keyed by absolute path. Transactions work on
a private copy and commit only if nothing else committed since they began;
otherwise the transaction body is re-run, the same optimistic scheme the
real store daemon uses.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Sequence, TypeVar

from devctl.store.base import (
    NoEntry,
    Permissions,
    Store,
    Transaction,
    TransactionConflict,
    WatchTimeout,
    dirname,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _normalise(path: str) -> str:
    if not path.startswith("/"):
        raise ValueError(f"Store paths must be absolute: {path!r}")
    return path.rstrip("/") or "/"


def _is_below(path: str, ancestor: str) -> bool:
    if ancestor == "/":
        return True
    return path == ancestor or path.startswith(ancestor + "/")


def _overlaps(changed: str, watched: str) -> bool:
    return _is_below(changed, watched) or _is_below(watched, changed)


class _Tree:
    """Nodes and permissions of one version of the store."""

    def __init__(self, nodes: dict[str, str] | None = None, perms: dict[str, Permissions] | None = None):
        self.nodes: dict[str, str] = nodes if nodes is not None else {"/": ""}
        self.perms: dict[str, Permissions] = perms if perms is not None else {}

    def copy(self) -> "_Tree":
        return _Tree(dict(self.nodes), dict(self.perms))

    def read(self, path: str) -> str:
        path = _normalise(path)
        try:
            return self.nodes[path]
        except KeyError:
            raise NoEntry(path) from None

    def _ensure_parents(self, path: str) -> None:
        parent = dirname(path)
        while parent not in self.nodes:
            self.nodes[parent] = ""
            parent = dirname(parent)

    def write(self, path: str, value: str) -> None:
        path = _normalise(path)
        self._ensure_parents(path)
        self.nodes[path] = value

    def mkdir(self, path: str) -> None:
        path = _normalise(path)
        if path not in self.nodes:
            self._ensure_parents(path)
            self.nodes[path] = ""

    def remove(self, path: str) -> None:
        path = _normalise(path)
        if path not in self.nodes:
            raise NoEntry(path)
        for key in [k for k in self.nodes if _is_below(k, path)]:
            del self.nodes[key]
            self.perms.pop(key, None)
        if path == "/":
            self.nodes["/"] = ""

    def set_permissions(self, path: str, perms: Permissions) -> None:
        path = _normalise(path)
        if path not in self.nodes:
            raise NoEntry(path)
        self.perms[path] = perms

    def list(self, path: str) -> list[str]:
        path = _normalise(path)
        if path not in self.nodes:
            raise NoEntry(path)
        prefix = "/" if path == "/" else path + "/"
        return sorted(
            k[len(prefix):] for k in self.nodes
            if k != path and k.startswith(prefix) and "/" not in k[len(prefix):]
        )


class _MemoryTransaction(Transaction):
    def __init__(self, generation: int, tree: _Tree):
        self.generation = generation
        self.tree = tree
        self.changed: list[str] = []

    async def read(self, path: str) -> str:
        return self.tree.read(path)

    async def write(self, path: str, value: str) -> None:
        self.tree.write(path, value)
        self.changed.append(path)

    async def remove(self, path: str) -> None:
        self.tree.remove(path)
        self.changed.append(path)

    async def mkdir(self, path: str) -> None:
        self.tree.mkdir(path)
        self.changed.append(path)

    async def set_permissions(self, path: str, perms: Permissions) -> None:
        self.tree.set_permissions(path, perms)
        self.changed.append(path)

    async def list(self, path: str) -> list[str]:
        return self.tree.list(path)


@dataclass
class _Watcher:
    paths: tuple[str, ...]
    event: asyncio.Event = field(default_factory=asyncio.Event)


class MemoryStore(Store):
    """A complete store held in process memory."""

    def __init__(self, max_retries: int = 100):
        self._tree = _Tree()
        self._generation = 0
        self._watchers: list[_Watcher] = []
        self.max_retries = max_retries
        self.commits = 0
        self.conflicts = 0

    # ------------------------------------------------------------------
    # Change notification
    # ------------------------------------------------------------------

    def _changed(self, paths: Sequence[str]) -> None:
        self._generation += 1
        for watcher in self._watchers:
            if any(_overlaps(_normalise(p), w) for p in paths for w in watcher.paths):
                watcher.event.set()

    # ------------------------------------------------------------------
    # Direct operations
    # ------------------------------------------------------------------

    async def read(self, path: str) -> str:
        return self._tree.read(path)

    async def write(self, path: str, value: str) -> None:
        self._tree.write(path, value)
        self._changed([path])

    async def remove(self, path: str) -> None:
        self._tree.remove(path)
        self._changed([path])

    async def mkdir(self, path: str) -> None:
        self._tree.mkdir(path)
        self._changed([path])

    async def set_permissions(self, path: str, perms: Permissions) -> None:
        self._tree.set_permissions(path, perms)
        self._changed([path])

    async def list(self, path: str) -> list[str]:
        return self._tree.list(path)

    def get_permissions(self, path: str) -> Permissions | None:
        return self._tree.perms.get(_normalise(path))

    def snapshot(self, prefix: str = "/") -> dict[str, str]:
        """Copy of every node at or below prefix."""
        prefix = _normalise(prefix)
        return {k: v for k, v in self._tree.nodes.items() if _is_below(k, prefix)}

    # ------------------------------------------------------------------
    # Transactions and watches
    # ------------------------------------------------------------------

    async def transaction(self, fn: Callable[[Transaction], Awaitable[T]]) -> T:
        for attempt in range(1, self.max_retries + 1):
            t = _MemoryTransaction(self._generation, self._tree.copy())
            result = await fn(t)
            if t.generation == self._generation:
                self._tree = t.tree
                self.commits += 1
                if t.changed:
                    self._changed(t.changed)
                return result
            self.conflicts += 1
            logger.debug(f"Store transaction conflicted (attempt {attempt}); retrying")
        raise TransactionConflict(self.max_retries)

    async def watch(
        self,
        paths: Sequence[str],
        predicate: Callable[[], Awaitable[bool]],
        timeout: float | None = None,
    ) -> None:
        watcher = _Watcher(tuple(_normalise(p) for p in paths))
        self._watchers.append(watcher)

        async def _loop() -> None:
            while True:
                watcher.event.clear()
                if await predicate():
                    return
                await watcher.event.wait()

        try:
            await asyncio.wait_for(_loop(), timeout)
        except asyncio.TimeoutError:
            raise WatchTimeout(paths, timeout) from None
        finally:
            self._watchers.remove(watcher)
