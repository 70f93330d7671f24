"""Persistent storage of tree nodes, roots, orphans and the fast key index."""

from __future__ import annotations

import dataclasses
import threading
from dataclasses import dataclass
from typing import Any, Callable, Iterator

from avltree.node import Node, NodeError, decode_bytes, decode_varint, encode_bytes, encode_varint, make_node
from avltree.options import Options, default_options
from avltree.storage import KeyFormat, LRUCache

INT64_SIZE = 8
HASH_SIZE = 32
GENESIS_VERSION = 1
STORAGE_VERSION_KEY = b"storage_version"
FAST_STORAGE_VERSION_DELIMITER = "-"
DEFAULT_STORAGE_VERSION = "1.0.0"
FAST_STORAGE_VERSION = "1.1.0"
FAST_NODE_CACHE_SIZE = 100000
_MAX_INT64 = (1 << 63) - 1

NODE_KEY_FORMAT = KeyFormat(b"n", HASH_SIZE)  # n<hash>
# o<last-version><first-version><hash>
ORPHAN_KEY_FORMAT = KeyFormat(b"o", INT64_SIZE, INT64_SIZE, HASH_SIZE)
FAST_KEY_FORMAT = KeyFormat(b"f", 0)  # f<key>
METADATA_KEY_FORMAT = KeyFormat(b"m", 0)  # m<name>
ROOT_KEY_FORMAT = KeyFormat(b"r", INT64_SIZE)  # r<version>

INVALID_FAST_STORAGE_VERSION = (
    "Fast storage version must be in the format <storage version>"
    f"{FAST_STORAGE_VERSION_DELIMITER}<latest fast cache version>"
)


class NodeDBError(Exception):
    """Raised when node storage is missing data, inconsistent or misused."""


def _to_int(segment: bytes) -> int:
    return int.from_bytes(segment, "big", signed=True)


@dataclass
class FastNode:
    """A key's value at the latest version, with the version it was last written at."""

    key: bytes
    value: bytes
    version_last_updated_at: int

    def encode(self) -> bytes:
        """Serialise the node for storage; the key is kept in the storage key."""
        return encode_varint(self.version_last_updated_at) + encode_bytes(self.value)

    @classmethod
    def decode(cls, key: bytes, buf: bytes) -> FastNode:
        """Decode a fast node stored under key."""
        try:
            version, n = decode_varint(buf)
            value, _ = decode_bytes(buf[n:])
        except ValueError as exc:
            raise NodeDBError(f"decoding fast node: {exc}") from exc
        return cls(key=bytes(key), value=value, version_last_updated_at=version)


class NodeDB:
    """Node storage over an ordered key-value store, with writes gathered in a batch."""

    def __init__(self, db: Any, cache_size: int, opts: Options | None = None) -> None:
        opts = default_options() if opts is None else dataclasses.replace(opts)
        try:
            stored = db.get(METADATA_KEY_FORMAT.key(STORAGE_VERSION_KEY))
        except Exception:
            stored = None
        self._lock = threading.RLock()
        self.db = db
        self.batch = db.new_batch()
        self.opts = opts
        self.version_readers: dict[int, int] = {}
        self.storage_version = (
            DEFAULT_STORAGE_VERSION if stored is None else bytes(stored).decode()
        )
        self.latest_version = 0
        self.node_cache = LRUCache(cache_size)
        self.fast_node_cache = LRUCache(FAST_NODE_CACHE_SIZE)

    # -- keys ----------------------------------------------------------

    @staticmethod
    def _node_key(hash_: bytes) -> bytes:
        return NODE_KEY_FORMAT.key_bytes(hash_)

    @staticmethod
    def _fast_node_key(key: bytes) -> bytes:
        return FAST_KEY_FORMAT.key_bytes(key)

    @staticmethod
    def _orphan_key(from_version: int, to_version: int, hash_: bytes) -> bytes:
        return ORPHAN_KEY_FORMAT.key(to_version, from_version, hash_)

    @staticmethod
    def _root_key(version: int) -> bytes:
        return ROOT_KEY_FORMAT.key(version)

    # -- nodes ---------------------------------------------------------

    def get_node(self, hash_: bytes) -> Node:
        """Return a node from the cache or storage; children are not loaded."""
        with self._lock:
            if not hash_:
                raise NodeDBError("node does not have a hash")
            hash_ = bytes(hash_)
            stat = self.opts.stat
            cached = self.node_cache.get(hash_)
            if cached is not None:
                if stat is not None:
                    stat.inc_cache_hit()
                return cached
            if stat is not None:
                stat.inc_cache_miss()
            buf = self.db.get(self._node_key(hash_))
            if buf is None:
                raise NodeDBError(
                    f"Value missing for hash {hash_.hex()} corresponding to nodeKey "
                    f"{self._node_key(hash_).hex()}"
                )
            try:
                node = make_node(buf)
            except NodeError as exc:
                raise NodeDBError(
                    f"Error reading Node. bytes: {bytes(buf).hex()}, error: {exc}"
                ) from exc
            node.hash = hash_
            node.persisted = True
            self.node_cache.add(hash_, node)
            return node

    def get_fast_node(self, key: bytes) -> FastNode | None:
        """Return the fast node for key, or None if there is none."""
        if not self.has_upgraded_to_fast_storage():
            raise NodeDBError("storage version is not fast")
        with self._lock:
            if not key:
                raise NodeDBError("nodeDB.GetFastNode() requires key, len(key) equals 0")
            key = bytes(key)
            stat = self.opts.stat
            cached = self.fast_node_cache.get(key)
            if cached is not None:
                if stat is not None:
                    stat.inc_fast_cache_hit()
                return cached
            if stat is not None:
                stat.inc_fast_cache_miss()
            buf = self.db.get(self._fast_node_key(key))
            if buf is None:
                return None
            fast_node = FastNode.decode(key, buf)
            self.fast_node_cache.add(key, fast_node)
            return fast_node

    def save_node(self, node: Node) -> None:
        """Queue a hashed, unsaved node for storage."""
        with self._lock:
            if node.hash is None:
                raise NodeDBError("node does not have a hash")
            if node.persisted:
                raise NodeDBError("shouldn't be calling save on an already persisted node")
            self.batch.set(self._node_key(node.hash), node.encode())
            node.persisted = True
            self.node_cache.add(node.hash, node)

    def save_fast_node(self, node: FastNode) -> None:
        """Queue a fast node for storage and cache it."""
        with self._lock:
            self._save_fast_node(node, cache=True)

    def save_fast_node_no_cache(self, node: FastNode) -> None:
        """Queue a fast node for storage without caching it."""
        with self._lock:
            self._save_fast_node(node, cache=False)

    def _save_fast_node(self, node: FastNode, cache: bool) -> None:
        if node.key is None:
            raise NodeDBError("cannot have FastNode with a nil value for key")
        self.batch.set(self._fast_node_key(node.key), node.encode())
        if cache:
            self.fast_node_cache.add(bytes(node.key), node)

    def has(self, hash_: bytes) -> bool:
        """Return whether a node with this hash is stored."""
        return self.db.has(self._node_key(hash_))

    def save_branch(self, node: Node) -> bytes:
        """Hash and queue a node and all its unsaved descendants.

        Children held in memory are dropped once saved; the node's hash is returned.
        """
        if node.persisted:
            return node.hash
        if node.left_node is not None:
            node.left_hash = self.save_branch(node.left_node)
        if node.right_node is not None:
            node.right_hash = self.save_branch(node.right_node)
        node.compute_hash()
        self.save_node(node)
        # Flushing often keeps memory low while the first version is built.
        if node.version <= GENESIS_VERSION:
            self._reset_batch()
        node.left_node = None
        node.right_node = None
        return node.hash

    def _write_batch(self) -> None:
        write_sync = getattr(self.batch, "write_sync", None)
        if self.opts.sync and write_sync is not None:
            write_sync()
        else:
            self.batch.write()

    def _reset_batch(self) -> None:
        self._write_batch()
        self.batch.close()
        self.batch = self.db.new_batch()

    # -- storage version -----------------------------------------------

    def set_fast_storage_version_to_batch(self) -> None:
        """Queue the fast storage version, tagged with the latest version."""
        if self.storage_version >= FAST_STORAGE_VERSION:
            versions = self.storage_version.split(FAST_STORAGE_VERSION_DELIMITER)
            if len(versions) > 2:
                raise NodeDBError(INVALID_FAST_STORAGE_VERSION)
            new_version = versions[0]
        else:
            new_version = FAST_STORAGE_VERSION
        latest = self.get_latest_version()
        new_version += FAST_STORAGE_VERSION_DELIMITER + str(latest)
        self.batch.set(METADATA_KEY_FORMAT.key(STORAGE_VERSION_KEY), new_version.encode())
        self.storage_version = new_version

    def has_upgraded_to_fast_storage(self) -> bool:
        """Return whether fast storage has been enabled."""
        return self.storage_version >= FAST_STORAGE_VERSION

    def should_force_fast_storage_upgrade(self) -> bool:
        """Return whether the fast index was written for a version other than the latest."""
        versions = self.storage_version.split(FAST_STORAGE_VERSION_DELIMITER)
        if len(versions) == 2:
            return versions[1] != str(self.get_latest_version())
        return False

    # -- versions ------------------------------------------------------

    def delete_version(self, version: int, check_latest_version: bool) -> None:
        """Queue the deletion of a version's root and of nodes orphaned only by it."""
        with self._lock:
            readers = self.version_readers.get(version, 0)
            if readers > 0:
                raise NodeDBError(
                    f"unable to delete version {version}, it has {readers} active readers"
                )
            self._delete_orphans(version)
            self._delete_root(version, check_latest_version)

    def delete_versions_from(self, version: int) -> None:
        """Queue the deletion of every version from version upwards."""
        latest = self.get_latest_version()
        if latest < version:
            return
        root = self.get_root(latest)
        if root is None:
            raise NodeDBError(f"root for version {latest} not found")
        for v, readers in self.version_readers.items():
            if v >= version and readers != 0:
                raise NodeDBError(f"unable to delete version {v} with {readers} active readers")

        self._delete_nodes_from(version, root)

        for key, hash_ in self.db.iterate_prefix(ORPHAN_KEY_FORMAT.key()):
            to_bytes, from_bytes, _ = ORPHAN_KEY_FORMAT.scan(key)
            to_version, from_version = _to_int(to_bytes), _to_int(from_bytes)
            if from_version >= version:
                self.batch.delete(key)
                self.batch.delete(self._node_key(hash_))
                self.node_cache.remove(bytes(hash_))
            elif to_version >= version - 1:
                self.batch.delete(key)

        for key, _ in self.db.iterator(self._root_key(version), self._root_key(_MAX_INT64)):
            self.batch.delete(key)

        for key_with_prefix, value in self.db.iterate_prefix(FAST_KEY_FORMAT.key()):
            key = key_with_prefix[1:]
            fast_node = FastNode.decode(key, value)
            if version <= fast_node.version_last_updated_at:
                self.batch.delete(key_with_prefix)
                self.fast_node_cache.remove(key)

    def delete_versions_range(self, from_version: int, to_version: int) -> None:
        """Queue the deletion of versions from from_version up to but excluding to_version."""
        if from_version >= to_version:
            raise NodeDBError("toVersion must be greater than fromVersion")
        if to_version == 0:
            raise NodeDBError("toVersion must be greater than 0")
        with self._lock:
            latest = self.get_latest_version()
            if latest < to_version:
                raise NodeDBError(f"cannot delete latest saved version ({latest})")
            predecessor = self.get_previous_version(from_version)
            for v, readers in self.version_readers.items():
                if predecessor < v < to_version and readers != 0:
                    raise NodeDBError(
                        f"unable to delete version {v} with {readers} active readers"
                    )
            for version in range(from_version, to_version):
                for key, hash_ in self.db.iterate_prefix(ORPHAN_KEY_FORMAT.key(version)):
                    _, from_bytes, _ = ORPHAN_KEY_FORMAT.scan(key)
                    orphan_from = _to_int(from_bytes)
                    self.batch.delete(key)
                    if orphan_from > predecessor:
                        self.batch.delete(self._node_key(hash_))
                        self.node_cache.remove(bytes(hash_))
                    else:
                        self._save_orphan(hash_, orphan_from, predecessor)
            for key, _ in self.db.iterator(self._root_key(from_version), self._root_key(to_version)):
                self.batch.delete(key)

    def delete_fast_node(self, key: bytes) -> None:
        """Queue the deletion of the fast node for key."""
        with self._lock:
            self.batch.delete(self._fast_node_key(key))
            self.fast_node_cache.remove(bytes(key))

    def _delete_nodes_from(self, version: int, hash_: bytes) -> None:
        if not hash_:
            return
        node = self.get_node(hash_)
        if node.left_hash is not None:
            self._delete_nodes_from(version, node.left_hash)
        if node.right_hash is not None:
            self._delete_nodes_from(version, node.right_hash)
        if node.version >= version:
            self.batch.delete(self._node_key(hash_))
            self.node_cache.remove(bytes(hash_))

    # -- orphans -------------------------------------------------------

    def save_orphans(self, version: int, orphans: dict[bytes, int]) -> None:
        """Queue orphan records for nodes dropped while building version.

        orphans maps node hashes to the versions the nodes were created at.
        """
        with self._lock:
            to_version = self.get_previous_version(version)
            for hash_, from_version in orphans.items():
                self._save_orphan(hash_, from_version, to_version)

    def _save_orphan(self, hash_: bytes, from_version: int, to_version: int) -> None:
        if from_version > to_version:
            raise NodeDBError(
                f"orphan expires before it comes alive.  {from_version} > {to_version}"
            )
        self.batch.set(self._orphan_key(from_version, to_version, hash_), bytes(hash_))

    def _delete_orphans(self, version: int) -> None:
        predecessor = self.get_previous_version(version)
        for key, hash_ in self.db.iterate_prefix(ORPHAN_KEY_FORMAT.key(version)):
            to_bytes, from_bytes, _ = ORPHAN_KEY_FORMAT.scan(key)
            to_version, from_version = _to_int(to_bytes), _to_int(from_bytes)
            self.batch.delete(key)
            if predecessor < from_version or from_version == to_version:
                self.batch.delete(self._node_key(hash_))
                self.node_cache.remove(bytes(hash_))
            else:
                self._save_orphan(hash_, from_version, predecessor)

    # -- roots ---------------------------------------------------------

    def commit(self) -> None:
        """Write the queued changes to storage and start a new batch."""
        with self._lock:
            try:
                self._write_batch()
            except Exception as exc:
                raise NodeDBError(f"failed to write batch: {exc}") from exc
            self.batch.close()
            self.batch = self.db.new_batch()

    def has_root(self, version: int) -> bool:
        """Return whether a root is stored for version."""
        return self.db.has(self._root_key(version))

    def get_root(self, version: int) -> bytes | None:
        """Return the root hash of version (empty for an empty tree), or None."""
        return self.db.get(self._root_key(version))

    def get_roots(self) -> dict[int, bytes]:
        """Return every stored version mapped to its root hash."""
        return {
            _to_int(ROOT_KEY_FORMAT.scan(key)[0]): value
            for key, value in self.db.iterate_prefix(ROOT_KEY_FORMAT.key())
        }

    def save_root(self, root: Node, version: int) -> None:
        """Queue the root entry of a version."""
        if not root.hash:
            raise NodeDBError("root hash must not be empty")
        self._save_root(root.hash, version)

    def save_empty_root(self, version: int) -> None:
        """Queue the root entry of a version whose tree is empty."""
        self._save_root(b"", version)

    def _save_root(self, hash_: bytes, version: int) -> None:
        with self._lock:
            latest = self.get_latest_version()
            if latest > 0 and version != latest + 1:
                raise NodeDBError(
                    f"must save consecutive versions; expected {latest + 1}, got {version}"
                )
            self.batch.set(self._root_key(version), bytes(hash_))
            if self.latest_version < version:
                self.latest_version = version

    def _delete_root(self, version: int, check_latest_version: bool) -> None:
        if check_latest_version and version == self.get_latest_version():
            raise NodeDBError("tried to delete latest version")
        self.batch.delete(self._root_key(version))

    def get_latest_version(self) -> int:
        """Return the latest saved version, or 0 if there is none."""
        if self.latest_version == 0:
            self.latest_version = self.get_previous_version(_MAX_INT64)
        return self.latest_version

    def reset_latest_version(self, version: int) -> None:
        """Set the recorded latest version."""
        self.latest_version = version

    def get_previous_version(self, version: int) -> int:
        """Return the highest stored version below version, or 0."""
        for key, _ in self.db.reverse_iterator(self._root_key(1), self._root_key(version)):
            return _to_int(ROOT_KEY_FORMAT.scan(key)[0])
        return 0

    def incr_version_readers(self, version: int) -> None:
        """Register a reader of version."""
        with self._lock:
            self.version_readers[version] = self.version_readers.get(version, 0) + 1

    def decr_version_readers(self, version: int) -> None:
        """Unregister a reader of version."""
        with self._lock:
            if self.version_readers.get(version, 0) > 0:
                self.version_readers[version] -= 1

    # -- fast index ----------------------------------------------------

    def fast_items(
        self, start: bytes | None = None, end: bytes | None = None, ascending: bool = True
    ) -> Iterator[FastNode]:
        """Yield stored fast nodes with start <= key < end, in key order."""
        start_key = FAST_KEY_FORMAT.key() if start is None else FAST_KEY_FORMAT.key_bytes(start)
        if end is None:
            prefix = FAST_KEY_FORMAT.key()
            end_key = bytes([prefix[0] + 1]) + prefix[1:]
        else:
            end_key = FAST_KEY_FORMAT.key_bytes(end)
        scan = self.db.iterator if ascending else self.db.reverse_iterator
        for key, value in scan(start_key, end_key):
            yield FastNode.decode(key[1:], value)

    # -- inspection ----------------------------------------------------

    def _traverse_nodes(self) -> list[Node]:
        nodes = []
        for key, value in self.db.iterate_prefix(NODE_KEY_FORMAT.key()):
            node = make_node(value)
            node.hash = NODE_KEY_FORMAT.scan(key)[0]
            nodes.append(node)
        nodes.sort(key=lambda n: n.key)
        return nodes

    def nodes(self) -> list[Node]:
        """Return every stored node, sorted by key."""
        return self._traverse_nodes()

    def leaf_nodes(self) -> list[Node]:
        """Return every stored leaf, sorted by key."""
        return [node for node in self._traverse_nodes() if node.is_leaf()]

    def orphans(self) -> list[bytes]:
        """Return the hashes of every recorded orphan, in storage order."""
        return [value for _, value in self.db.iterate_prefix(ORPHAN_KEY_FORMAT.key())]

    def size(self) -> int:
        """Return the number of entries in the store."""
        return sum(1 for _ in self.db.iterator(None, None))

    def render(self) -> str:
        """Return a text dump of the roots, orphans and nodes in storage."""
        lines: list[str] = []

        def raw(data: bytes | None) -> str:
            return (data or b"").decode("latin-1")

        for key, value in self.db.iterate_prefix(ROOT_KEY_FORMAT.key()):
            lines.append(f"{raw(key)}: {value.hex()}\n")
        lines.append("\n")
        for key, value in self.db.iterate_prefix(ORPHAN_KEY_FORMAT.key()):
            lines.append(f"{raw(key)}: {value.hex()}\n")
        lines.append("\n")
        prefix = raw(NODE_KEY_FORMAT.prefix)
        for node in self._traverse_nodes():
            hash_hex = f"{node.hash.hex():>40}"
            if not node.hash:
                lines.append("\n")
            elif node.value is None and node.height > 0:
                lines.append(
                    f"{prefix}{hash_hex}: {raw(node.key)}   {'':<16} "
                    f"h={node.height} version={node.version}\n"
                )
            else:
                lines.append(
                    f"{prefix}{hash_hex}: {raw(node.key)} = {raw(node.value):<16} "
                    f"h={node.height} version={node.version}\n"
                )
        return "-\n" + "".join(lines) + "-"


TraverseFn = Callable[[bytes, bytes], None]