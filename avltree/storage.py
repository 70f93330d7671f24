"""Key layouts, an in-memory ordered key-value store with write batches, and an LRU cache."""

from __future__ import annotations

import bisect
import threading
from collections import OrderedDict
from typing import Hashable, Iterator

_INT64_BYTES = 8
_UINT64_MASK = (1 << 64) - 1


class KeyFormat:
    """A key layout: a one-byte prefix followed by fixed- or variable-width segments.

    A width of 0 marks a variable-width segment that takes the rest of the key.
    Fixed-width segments given fewer bytes than their width are padded on the
    left with zeros, so that integers keep their big-endian ordering.
    """

    def __init__(self, prefix: bytes, *layout: int) -> None:
        if len(prefix) != 1:
            raise ValueError("key prefix must be a single byte")
        if any(width < 0 for width in layout):
            raise ValueError("segment widths cannot be negative")
        self.prefix = bytes(prefix)
        self.layout = tuple(layout)

    def __repr__(self) -> str:
        return f"KeyFormat({self.prefix!r}, {', '.join(map(str, self.layout))})"

    def key_bytes(self, *segments: bytes) -> bytes:
        """Build a key from raw byte segments."""
        if len(segments) > len(self.layout):
            raise ValueError(
                f"expected at most {len(self.layout)} segments, got {len(segments)}"
            )
        out = bytearray(self.prefix)
        for width, segment in zip(self.layout, segments):
            segment = bytes(segment)
            if width == 0:
                out += segment
                continue
            if len(segment) > width:
                raise ValueError(
                    f"segment of {len(segment)} bytes is longer than its width {width}"
                )
            out += bytes(width - len(segment)) + segment
        return bytes(out)

    def key(self, *args: int | bytes) -> bytes:
        """Build a key from integers (as 8 big-endian bytes) and byte strings."""
        return self.key_bytes(*(_segment(arg) for arg in args))

    def scan(self, key: bytes) -> tuple[bytes, ...]:
        """Split a key into its segments; segments missing from the key are left out."""
        if key[:1] != self.prefix:
            raise ValueError(f"key does not start with prefix {self.prefix!r}")
        segments: list[bytes] = []
        offset = 1
        for width in self.layout:
            if width == 0:
                segments.append(bytes(key[offset:]))
                break
            if offset + width > len(key):
                break
            segments.append(bytes(key[offset : offset + width]))
            offset += width
        return tuple(segments)


def _segment(arg: int | bytes) -> bytes:
    if isinstance(arg, bool):
        raise TypeError("key segments must be integers or bytes")
    if isinstance(arg, int):
        return (arg & _UINT64_MASK).to_bytes(_INT64_BYTES, "big")
    if isinstance(arg, (bytes, bytearray, memoryview)):
        return bytes(arg)
    raise TypeError(f"unsupported key segment type {type(arg).__name__}")


def _check_key(key: bytes) -> bytes:
    if key is None or len(key) == 0:
        raise ValueError("key cannot be empty")
    return bytes(key)


def _check_value(value: bytes) -> bytes:
    if value is None:
        raise ValueError("value cannot be nil")
    return bytes(value)


def _check_bound(bound: bytes | None) -> bytes | None:
    if bound is None:
        return None
    return _check_key(bound)


def _prefix_end(prefix: bytes) -> bytes | None:
    """Return the smallest key greater than every key starting with prefix."""
    stripped = bytes(prefix).rstrip(b"\xff")
    if not stripped:
        return None
    return stripped[:-1] + bytes([stripped[-1] + 1])


class MemoryDB:
    """An ordered in-memory key-value store.

    Iterators work over a snapshot of the requested range, so the store may be
    changed while they are consumed.
    """

    def __init__(self) -> None:
        self._data: dict[bytes, bytes] = {}
        self._keys: list[bytes] = []
        self._lock = threading.RLock()

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, key: object) -> bool:
        return key in self._data

    def get(self, key: bytes) -> bytes | None:
        """Return the value stored at key, or None."""
        return self._data.get(_check_key(key))

    def has(self, key: bytes) -> bool:
        """Return whether a value is stored at key."""
        return _check_key(key) in self._data

    def set(self, key: bytes, value: bytes) -> None:
        """Store a value at key."""
        key = _check_key(key)
        value = _check_value(value)
        with self._lock:
            if key not in self._data:
                bisect.insort(self._keys, key)
            self._data[key] = value

    def delete(self, key: bytes) -> None:
        """Remove key; removing a missing key does nothing."""
        key = _check_key(key)
        with self._lock:
            if self._data.pop(key, None) is not None:
                index = bisect.bisect_left(self._keys, key)
                del self._keys[index]

    def _range(self, start: bytes | None, end: bytes | None) -> list[tuple[bytes, bytes]]:
        start = _check_bound(start)
        end = _check_bound(end)
        with self._lock:
            lo = 0 if start is None else bisect.bisect_left(self._keys, start)
            hi = len(self._keys) if end is None else bisect.bisect_left(self._keys, end)
            return [(key, self._data[key]) for key in self._keys[lo:hi]]

    def iterator(self, start: bytes | None, end: bytes | None) -> Iterator[tuple[bytes, bytes]]:
        """Yield (key, value) pairs with start <= key < end in ascending order.

        A bound of None leaves that side open.
        """
        return iter(self._range(start, end))

    def reverse_iterator(
        self, start: bytes | None, end: bytes | None
    ) -> Iterator[tuple[bytes, bytes]]:
        """Yield (key, value) pairs with start <= key < end in descending order."""
        return reversed(self._range(start, end))

    def iterate_prefix(self, prefix: bytes) -> Iterator[tuple[bytes, bytes]]:
        """Yield (key, value) pairs whose key starts with prefix, ascending."""
        prefix = bytes(prefix)
        return self.iterator(prefix or None, _prefix_end(prefix))

    def new_batch(self) -> Batch:
        """Return a new batch of writes to this store."""
        return Batch(self)


class Batch:
    """Writes gathered to be applied to a MemoryDB all at once.

    A batch can be written once; after it is written or closed it cannot be used.
    """

    def __init__(self, db: MemoryDB) -> None:
        self._db = db
        self._ops: list[tuple[bytes, bytes | None]] | None = []

    def __enter__(self) -> Batch:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def __len__(self) -> int:
        return len(self._ops or ())

    def _open_ops(self) -> list[tuple[bytes, bytes | None]]:
        if self._ops is None:
            raise RuntimeError("batch has been written or closed")
        return self._ops

    def set(self, key: bytes, value: bytes) -> None:
        """Queue a value to be stored at key."""
        key = _check_key(key)
        value = _check_value(value)
        self._open_ops().append((key, value))

    def delete(self, key: bytes) -> None:
        """Queue the removal of key."""
        key = _check_key(key)
        self._open_ops().append((key, None))

    def write(self) -> None:
        """Apply the queued writes in order and close the batch."""
        ops = self._open_ops()
        with self._db._lock:
            for key, value in ops:
                if value is None:
                    self._db.delete(key)
                else:
                    self._db.set(key, value)
        self._ops = None

    def close(self) -> None:
        """Discard the batch; closing twice is harmless."""
        self._ops = None


class LRUCache:
    """A cache holding at most max_size items, dropping the least recently used."""

    def __init__(self, max_size: int) -> None:
        self.max_size = max_size
        self._items: OrderedDict[Hashable, object] = OrderedDict()

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, key: object) -> bool:
        return key in self._items

    def get(self, key: Hashable) -> object | None:
        """Return the item cached under key, marking it as recently used."""
        if key not in self._items:
            return None
        self._items.move_to_end(key)
        return self._items[key]

    def add(self, key: Hashable, item: object) -> object | None:
        """Cache item under key.

        Returns the item it replaced, or the item evicted to make room, or None.
        """
        if key in self._items:
            old = self._items[key]
            self._items[key] = item
            self._items.move_to_end(key)
            return old
        self._items[key] = item
        if len(self._items) > self.max_size:
            _, evicted = self._items.popitem(last=False)
            return evicted
        return None

    def remove(self, key: Hashable) -> object | None:
        """Drop key from the cache, returning the item it held or None."""
        return self._items.pop(key, None)