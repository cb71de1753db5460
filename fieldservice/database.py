import threading
from collections.abc import Iterator, MutableMapping
from contextlib import contextmanager
from typing import Generic, TypeVar

K = TypeVar("K")
V = TypeVar("V")


class InMemoryKeyValueDatabase(Generic[K, V]):
    """
    Simple in-memory key/value database with one lock per key.

    Writers that read-then-write a value hold ``lock(key)`` for the whole
    read-modify-write so concurrent callers for the same key are serialized.
    Different keys never contend.
    """

    def __init__(self) -> None:
        self._store: MutableMapping[K, V] = {}
        self._locks: dict[K, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        # shared by every key not yet stored
        self._miss_lock = threading.Lock()

    def put(self, key: K, value: V) -> None:
        self._store[key] = value

    def get(self, key: K) -> V | None:
        return self._store.get(key)

    def delete(self, key: K) -> None:
        self._store.pop(key, None)
        with self._locks_guard:
            self._locks.pop(key, None)

    def all(self) -> list[V]:
        return list(self._store.values())

    def clear(self) -> None:
        self._store.clear()
        with self._locks_guard:
            self._locks.clear()

    def __iter__(self) -> Iterator[V]:
        return iter(self._store.values())

    def __len__(self) -> int:
        return len(self._store)

    def __contains__(self, key: object) -> bool:
        return key in self._store

    @contextmanager
    def lock(self, key: K) -> Iterator[None]:
        """
        Hold the lock for ``key`` for the duration of the block.

        Keys get their own lock only once stored, so lookups of unknown
        keys never grow the lock table. A key is first stored under the
        shared miss lock.
        """
        while True:
            with self._locks_guard:
                if key in self._store:
                    key_lock = self._locks.setdefault(key, threading.Lock())
                else:
                    key_lock = self._miss_lock
            with key_lock:
                if key_lock is self._miss_lock and key in self._store:
                    # stored while we waited; retry on its own lock
                    continue
                yield
                return
