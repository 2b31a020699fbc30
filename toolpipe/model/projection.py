"""
Observable, persisted views over the collections of a Config.

Each collection is exposed as an ObservableList: an index-addressable,
copy-on-write sequence of immutable tool entries that reports every change
with the exact index range it touched. ConfigProjection ties the lists
together. Every mutation derives a new Config and saves it through the
repository before the list snapshot changes, so observers never see state
that was not persisted. A failed save leaves the list untouched and the
error propagates to the caller.
"""
from __future__ import annotations

import logging
import threading
from contextlib import ExitStack
from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import Callable, Dict, Generic, Iterable, Iterator, List, Optional, Tuple, TypeVar

from .tools import Config, ToolKind

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class ChangeKind(str, Enum):
    CHANGED = "changed"
    ADDED = "added"
    REMOVED = "removed"


@dataclass(frozen=True)
class ListChangeEvent:
    kind: ChangeKind
    # Inclusive index range
    start: int
    end: int


ListListener = Callable[[ListChangeEvent], None]


class ObservableList(Generic[T]):
    """
    Copy-on-write list with index-scoped change events.

    ``before_commit`` receives the would-be snapshot before it is installed;
    if it raises, the mutation is abandoned. Listeners run after the commit,
    in commit order.
    """

    def __init__(
        self,
        items: Iterable[T] = (),
        before_commit: Optional[Callable[[Tuple[T, ...]], None]] = None,
    ):
        self._items: Tuple[T, ...] = tuple(items)
        self._before_commit = before_commit
        self._listeners: List[ListListener] = []
        self._lock = threading.RLock()

    @property
    def snapshot(self) -> Tuple[T, ...]:
        return self._items

    @property
    def lock(self) -> threading.RLock:
        """Held by every mutation, across its ``before_commit`` call and listeners."""
        return self._lock

    def __len__(self) -> int:
        return len(self._items)

    def __getitem__(self, index: int) -> T:
        return self._items[index]

    def __iter__(self) -> Iterator[T]:
        return iter(self._items)

    def add_listener(self, listener: ListListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: ListListener) -> None:
        self._listeners.remove(listener)

    def _check_index(self, index: int, upper: int) -> None:
        if not 0 <= index < upper:
            raise IndexError(f"index {index} out of range for list of size {len(self._items)}")

    def set_at(self, index: int, item: T) -> None:
        with self._lock:
            self._check_index(index, len(self._items))
            items = self._items[:index] + (item,) + self._items[index + 1:]
            self._commit(items, [(items, ListChangeEvent(ChangeKind.CHANGED, index, index))])

    def insert(self, index: int, item: T) -> None:
        with self._lock:
            self._check_index(index, len(self._items) + 1)
            items = self._items[:index] + (item,) + self._items[index:]
            self._commit(items, [(items, ListChangeEvent(ChangeKind.ADDED, index, index))])

    def append(self, item: T) -> None:
        with self._lock:
            self.insert(len(self._items), item)

    def remove_at(self, index: int) -> T:
        with self._lock:
            self._check_index(index, len(self._items))
            removed = self._items[index]
            items = self._items[:index] + self._items[index + 1:]
            self._commit(items, [(items, ListChangeEvent(ChangeKind.REMOVED, index, index))])
            return removed

    def replace_all(self, items: Iterable[T]) -> None:
        with self._lock:
            new_items = tuple(items)
            self._commit(new_items, self._replacement_steps(new_items))

    def reload(self, items: Iterable[T]) -> None:
        """Install already-persisted contents without calling ``before_commit``."""
        with self._lock:
            new_items = tuple(items)
            self._install(new_items, self._replacement_steps(new_items))

    def _replacement_steps(self, new_items: Tuple[T, ...]) -> List[Tuple[Tuple[T, ...], ListChangeEvent]]:
        steps = []
        if self._items:
            steps.append(((), ListChangeEvent(ChangeKind.REMOVED, 0, len(self._items) - 1)))
        if new_items:
            steps.append((new_items, ListChangeEvent(ChangeKind.ADDED, 0, len(new_items) - 1)))
        return steps

    def _commit(self, items: Tuple[T, ...], steps) -> None:
        if self._before_commit is not None:
            self._before_commit(items)
        self._install(items, steps)

    def _install(self, items: Tuple[T, ...], steps) -> None:
        # Each listener call sees the snapshot that matches its event
        for snapshot, event in steps:
            self._items = snapshot
            for listener in list(self._listeners):
                listener(event)
        self._items = items


class ConfigProjection:
    """
    One ObservableList per Config collection, persisted on every mutation.

    Args:
        config: Initial snapshot (usually ``repository.load()``)
        repository: Anything with ``save(config)``
    """

    def __init__(self, config: Config, repository):
        self.repository = repository
        self._config = config
        self._lock = threading.Lock()
        self.lists: Dict[ToolKind, ObservableList] = {
            kind: ObservableList(config.collection(kind), before_commit=partial(self._persist, kind))
            for kind in ToolKind
        }

    @property
    def config(self) -> Config:
        return self._config

    def snapshot(self) -> Config:
        return self._config

    def __getitem__(self, kind: ToolKind) -> ObservableList:
        return self.lists[kind]

    def _persist(self, kind: ToolKind, items: tuple) -> None:
        with self._lock:
            config = self._config.replace_collection(kind, items)
            self.repository.save(config)
            self._config = config
        logger.debug(f"[Projection] Persisted {kind.value} ({len(items)} entries)")

    def toggle_enabled(self, kind: ToolKind, index: int, value: Optional[bool] = None):
        """Flip (or set) ``enabled`` on one entry; returns the new entry."""
        items = self.lists[kind]
        with items.lock:
            updated = items[index].with_enabled(value)
            items.set_at(index, updated)
        return updated

    def replace_config(self, config: Config) -> None:
        """Persist ``config`` as a whole, then refresh every list from it."""
        # List locks first, in ToolKind order: mutations take a list lock before this one
        with ExitStack() as stack:
            for kind in ToolKind:
                stack.enter_context(self.lists[kind].lock)
            with self._lock:
                self.repository.save(config)
                self._config = config
            for kind in ToolKind:
                self.lists[kind].reload(config.collection(kind))

    def set_developer(self, value: bool) -> None:
        with self._lock:
            config = self._config.model_copy(update={"developer": value})
            self.repository.save(config)
            self._config = config


class RegisteredToolManager(Generic[T, R]):
    """
    Keeps exactly one host registration per enabled entry of a list.

    Args:
        items: The list to follow
        register: Installs an entry with the host and returns its handle
        unregister: Removes a handle from the host
        is_enabled: Whether an entry should be registered
    """

    def __init__(
        self,
        items: ObservableList[T],
        register: Callable[[T], R],
        unregister: Callable[[R], None],
        is_enabled: Callable[[T], bool] = lambda item: item.enabled,
    ):
        self.items = items
        self.register = register
        self.unregister = unregister
        self.is_enabled = is_enabled
        self._registrations: List[Optional[R]] = [self._register(item) for item in items]
        items.add_listener(self._on_change)

    @property
    def registrations(self) -> Tuple[R, ...]:
        return tuple(r for r in self._registrations if r is not None)

    def _register(self, item: T) -> Optional[R]:
        return self.register(item) if self.is_enabled(item) else None

    def _unregister(self, registration: Optional[R]) -> None:
        if registration is not None:
            self.unregister(registration)

    def _on_change(self, event: ListChangeEvent) -> None:
        if event.kind is ChangeKind.CHANGED:
            for index in range(event.start, event.end + 1):
                self._unregister(self._registrations[index])
                self._registrations[index] = self._register(self.items[index])
        elif event.kind is ChangeKind.ADDED:
            for index in range(event.start, event.end + 1):
                self._registrations.insert(index, self._register(self.items[index]))
        else:
            for index in reversed(range(event.start, event.end + 1)):
                self._unregister(self._registrations.pop(index))

    def close(self) -> None:
        self.items.remove_listener(self._on_change)
        for registration in self._registrations:
            self._unregister(registration)
        self._registrations = []
