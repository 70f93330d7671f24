"""A read-only view of the tree at one version."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterator

from avltree.node import EMPTY_HASH, Node


@dataclass
class ImmutableTree:
    """The tree as it stands at one version, backed by node storage.

    Reads are served from the fast key index when it is enabled and the tree
    is at the latest saved version, and otherwise by walking the nodes.
    """

    ndb: Any
    root: Node | None = None
    version: int = 0

    def size(self) -> int:
        """Return the number of keys in the tree."""
        return 0 if self.root is None else self.root.size

    def height(self) -> int:
        """Return the height of the tree; an empty tree or a lone leaf has height 0."""
        return 0 if self.root is None else self.root.height

    def hash(self) -> bytes:
        """Return the root hash, hashing any unhashed nodes on the way.

        An empty tree hashes to the SHA-256 of empty input.
        """
        if self.root is None:
            return EMPTY_HASH
        root_hash, _ = self.root.hash_with_count()
        return root_hash

    def has(self, key: bytes) -> bool:
        """Return whether the tree holds key."""
        if self.root is None:
            return False
        return self.root.has(self, key)

    def get(self, key: bytes) -> bytes | None:
        """Return the value stored at key, or None if it is absent."""
        if self.root is None:
            return None
        if self.is_fast_cache_enabled():
            try:
                fast_node = self.ndb.get_fast_node(key)
            except Exception:
                fast_node = None
                _, value = self.root.get(self, key)
                return value
            if fast_node is None:
                return None
            if fast_node.version_last_updated_at <= self.version:
                return fast_node.value
        _, value = self.root.get(self, key)
        return value

    def get_with_index(self, key: bytes) -> tuple[int, bytes | None]:
        """Return the key's index among the sorted keys and its value.

        For an absent key the value is None and the index is the one the key
        would take.
        """
        if self.root is None:
            return 0, None
        return self.root.get(self, key)

    def get_by_index(self, index: int) -> tuple[bytes | None, bytes | None]:
        """Return the key and value at an index in key order, or (None, None)."""
        if self.root is None:
            return None, None
        return self.root.get_by_index(self, index)

    def is_fast_cache_enabled(self) -> bool:
        """Return whether reads may use the fast key index."""
        return (
            self.version == self.ndb.get_latest_version()
            and self.ndb.has_upgraded_to_fast_storage()
        )

    def items(self, ascending: bool = True) -> Iterator[tuple[bytes, bytes]]:
        """Yield (key, value) pairs of every key, in key order."""
        if self.root is None:
            return
        for node in self.root.traverse(self, ascending):
            if node.is_leaf():
                yield node.key, node.value

    def node_size(self) -> int:
        """Return the number of nodes, inner and leaf, in the tree."""
        if self.root is None:
            return 0
        return sum(1 for _ in self.root.traverse(self))

    def clone(self) -> ImmutableTree:
        """Return a tree sharing this one's root, storage and version."""
        return ImmutableTree(ndb=self.ndb, root=self.root, version=self.version)