"""Composable conditions over store paths.

A ``Watch`` names the paths it depends on and knows how to evaluate itself
against the store. ``wait_for`` blocks on the store until the watch fires
and returns the value it produced. ``AnyOf`` races several watches over the
union of their paths; on each notification the arms are checked in order
and the first one that has fired wins.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Generic, Hashable, Sequence, TypeVar

from devctl.store.base import NoEntry, Store, StoreOps

T = TypeVar("T")
U = TypeVar("U")


@dataclass
class WatchResult(Generic[T]):
    """Outcome of evaluating a watch once."""

    fired: bool
    value: T | None = None


class Watch(ABC, Generic[T]):
    """Base class for store conditions."""

    @property
    @abstractmethod
    def paths(self) -> list[str]:
        """Paths whose changes may change the outcome."""
        ...

    @abstractmethod
    async def evaluate(self, store: StoreOps) -> WatchResult[T]:
        """Check the condition against the current store contents."""
        ...

    def map(self, fn: Callable[[T], U]) -> "Watch[U]":
        return Mapped(self, fn)


class ValueToAppear(Watch[str]):
    """Fires with the value of path once it exists."""

    def __init__(self, path: str):
        self.path = path

    @property
    def paths(self) -> list[str]:
        return [self.path]

    async def evaluate(self, store: StoreOps) -> WatchResult[str]:
        try:
            return WatchResult(True, await store.read(self.path))
        except NoEntry:
            return WatchResult(False)


class ValueToBecome(Watch[str]):
    """Fires once path holds exactly the expected value."""

    def __init__(self, path: str, expected: str):
        self.path = path
        self.expected = expected

    @property
    def paths(self) -> list[str]:
        return [self.path]

    async def evaluate(self, store: StoreOps) -> WatchResult[str]:
        value = await store.read_or_none(self.path)
        if value == self.expected:
            return WatchResult(True, value)
        return WatchResult(False)


class KeyToDisappear(Watch[None]):
    """Fires once path no longer exists."""

    def __init__(self, path: str):
        self.path = path

    @property
    def paths(self) -> list[str]:
        return [self.path]

    async def evaluate(self, store: StoreOps) -> WatchResult[None]:
        if await store.exists(self.path):
            return WatchResult(False)
        return WatchResult(True, None)


class Mapped(Watch[U]):
    def __init__(self, inner: Watch[T], fn: Callable[[T], U]):
        self.inner = inner
        self.fn = fn

    @property
    def paths(self) -> list[str]:
        return self.inner.paths

    async def evaluate(self, store: StoreOps) -> WatchResult[U]:
        result = await self.inner.evaluate(store)
        if not result.fired:
            return WatchResult(False)
        return WatchResult(True, self.fn(result.value))


class AnyOf(Watch[tuple[Hashable, Any]]):
    """Fires with ``(tag, value)`` of the first arm that has fired."""

    def __init__(self, arms: Sequence[tuple[Hashable, Watch]]):
        self.arms = list(arms)

    @property
    def paths(self) -> list[str]:
        seen: list[str] = []
        for _, watch in self.arms:
            for path in watch.paths:
                if path not in seen:
                    seen.append(path)
        return seen

    async def evaluate(self, store: StoreOps) -> WatchResult[tuple[Hashable, Any]]:
        for tag, watch in self.arms:
            result = await watch.evaluate(store)
            if result.fired:
                return WatchResult(True, (tag, result.value))
        return WatchResult(False)


def value_to_appear(path: str) -> Watch[str]:
    return ValueToAppear(path)


def value_to_become(path: str, expected: str) -> Watch[str]:
    return ValueToBecome(path, expected)


def key_to_disappear(path: str) -> Watch[None]:
    return KeyToDisappear(path)


def any_of(arms: Sequence[tuple[Hashable, Watch]]) -> Watch[tuple[Hashable, Any]]:
    return AnyOf(arms)


async def wait_for(store: Store, watch: Watch[T], timeout: float | None = None) -> T:
    """Block until watch fires and return its value.

    Raises ``WatchTimeout`` if timeout (seconds) expires first. With no
    timeout the wait is unbounded.
    """
    fired: list[T] = []

    async def _predicate() -> bool:
        result = await watch.evaluate(store)
        if result.fired:
            fired.append(result.value)
        return result.fired

    await store.watch(watch.paths, _predicate, timeout)
    return fired[-1]
