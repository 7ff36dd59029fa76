"""Interface to the hierarchical configuration store.

The store is a transactional tree of string values with per-node
permissions and watches. The control plane never implements it; it
consumes this interface, and an in-process implementation lives in
``devctl.store.memory``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Iterable, Sequence, TypeVar

T = TypeVar("T")


class StoreError(Exception):
    """Base exception for store failures."""


class NoEntry(StoreError):
    """The requested path does not exist."""

    def __init__(self, path: str):
        super().__init__(f"No such store path: {path}")
        self.path = path


class TransactionConflict(StoreError):
    """A transaction kept conflicting with concurrent writers."""

    def __init__(self, attempts: int):
        super().__init__(f"Transaction conflicted {attempts} times")
        self.attempts = attempts


class WatchTimeout(StoreError):
    """A watch predicate did not become true in time."""

    def __init__(self, paths: Sequence[str], timeout: float | None):
        super().__init__(f"Timed out after {timeout}s watching {', '.join(paths)}")
        self.paths = list(paths)
        self.timeout = timeout


class Perm(str, Enum):
    """Access rights granted on a node."""
    NONE = "n"
    READ = "r"
    WRITE = "w"
    RDWR = "b"


@dataclass(frozen=True)
class Permissions:
    """Node owner, the rights of everyone else, and per-domain overrides."""

    owner: int
    other: Perm = Perm.NONE
    acl: tuple[tuple[int, Perm], ...] = ()

    def allows_read(self, domid: int) -> bool:
        if domid == self.owner:
            return True
        for acl_domid, perm in self.acl:
            if acl_domid == domid:
                return perm in (Perm.READ, Perm.RDWR)
        return self.other in (Perm.READ, Perm.RDWR)


def join(*parts: str) -> str:
    """Join store path components."""
    return "/".join(p.strip("/") if i else p.rstrip("/") for i, p in enumerate(parts) if p)


def dirname(path: str) -> str:
    """Parent of a store path."""
    head, _, _ = path.rstrip("/").rpartition("/")
    return head or "/"


class StoreOps(ABC):
    """Operations available both on the store and inside a transaction."""

    @abstractmethod
    async def read(self, path: str) -> str:
        """Return the value at path; raise NoEntry if it does not exist."""
        ...

    @abstractmethod
    async def write(self, path: str, value: str) -> None:
        """Write value at path, creating missing parents."""
        ...

    @abstractmethod
    async def remove(self, path: str) -> None:
        """Remove path and everything below it; raise NoEntry if absent."""
        ...

    @abstractmethod
    async def mkdir(self, path: str) -> None:
        """Create an empty node at path (no-op if it exists)."""
        ...

    @abstractmethod
    async def set_permissions(self, path: str, perms: Permissions) -> None:
        """Replace the permissions of an existing node."""
        ...

    @abstractmethod
    async def list(self, path: str) -> list[str]:
        """Names of the children of path."""
        ...

    async def writev(self, base: str, items: Iterable[tuple[str, str]]) -> None:
        """Write several keys relative to base."""
        for key, value in items:
            await self.write(join(base, key), value)

    async def exists(self, path: str) -> bool:
        try:
            await self.read(path)
        except NoEntry:
            return False
        return True

    async def read_or_none(self, path: str) -> str | None:
        try:
            return await self.read(path)
        except NoEntry:
            return None


class Transaction(StoreOps):
    """A view of the store whose writes commit atomically."""


class Store(StoreOps):
    """The store itself."""

    @abstractmethod
    async def transaction(self, fn: Callable[[Transaction], Awaitable[T]]) -> T:
        """Run fn inside a transaction and commit it.

        If the commit conflicts with a concurrent writer the whole of fn is
        run again against fresh state.
        """
        ...

    @abstractmethod
    async def watch(
        self,
        paths: Sequence[str],
        predicate: Callable[[], Awaitable[bool]],
        timeout: float | None = None,
    ) -> None:
        """Block until predicate is true.

        The predicate is evaluated once immediately and again after every
        change at or below any of paths. Raises WatchTimeout when timeout
        (seconds) expires first; ``None`` waits forever.
        """
        ...

    def domain_path(self, domid: int) -> str:
        return f"/local/domain/{domid}"
