"""A versioned, writable tree whose saved versions persist in node storage."""

from __future__ import annotations

import threading
from typing import Any, Iterator

from avltree.node import EMPTY_HASH, Node
from avltree.nodedb import DEFAULT_STORAGE_VERSION, FastNode, NodeDB, NodeDBError
from avltree.options import Options
from avltree.tree import ImmutableTree


class VersionDoesNotExistError(LookupError):
    """Raised when a requested version does not exist."""

    def __init__(self, message: str = "version does not exist") -> None:
        super().__init__(message)


class MutableTree:
    """A persistent tree that keeps track of saved versions.

    ``working`` is the tree being changed and ``last_saved`` the most recently
    saved one. Changes are kept in memory until ``save_version`` writes them.
    Use ``get_immutable`` for a read-only view of a saved version.
    """

    def __init__(self, db: Any, cache_size: int = 0, opts: Options | None = None) -> None:
        self.ndb = NodeDB(db, cache_size, opts)
        self.working = ImmutableTree(ndb=self.ndb)
        self.last_saved = self.working.clone()
        self.versions: dict[int, bool] = {}
        self._orphans: dict[bytes, int] = {}
        self._all_roots_loaded = False
        self._additions: dict[bytes, FastNode] = {}
        self._removals: set[bytes] = set()
        self._lock = threading.RLock()

    # -- state ---------------------------------------------------------

    def is_empty(self) -> bool:
        """Return whether the working tree holds no keys."""
        return self.working.size() == 0

    def version_exists(self, version: int) -> bool:
        """Return whether version has been saved and not deleted."""
        with self._lock:
            if self._all_roots_loaded:
                return self.versions.get(version, False)
            if version in self.versions:
                return self.versions[version]
            exists = self.ndb.has_root(version)
            self.versions[version] = exists
            return exists

    def available_versions(self) -> list[int]:
        """Return the known saved versions in ascending order."""
        with self._lock:
            return sorted(version for version, ok in self.versions.items() if ok)

    def hash(self) -> bytes:
        """Return the root hash of the latest saved version."""
        return self.last_saved.hash()

    def working_hash(self) -> bytes:
        """Return the root hash of the working tree."""
        return self.working.hash()

    def render(self) -> str:
        """Return a text dump of the underlying storage."""
        return self.ndb.render()

    def unsaved_fast_node_additions(self) -> dict[bytes, FastNode]:
        """Return the fast nodes added since the last save, by key."""
        return dict(self._additions)

    def unsaved_fast_node_removals(self) -> set[bytes]:
        """Return the keys removed since the last save."""
        return set(self._removals)

    def set_initial_version(self, version: int) -> None:
        """Set the number given to the first saved version of an empty tree."""
        self.ndb.opts.initial_version = version

    # -- reads ---------------------------------------------------------

    def get(self, key: bytes) -> bytes | None:
        """Return the value at key in the working tree, or None."""
        if self.working.root is None:
            return None
        key = bytes(key)
        addition = self._additions.get(key)
        if addition is not None:
            return addition.value
        if key in self._removals:
            return None
        return self.working.get(key)

    def get_with_index(self, key: bytes) -> tuple[int, bytes | None]:
        """Return the key's index in the working tree and its value, walking the nodes."""
        return self.working.get_with_index(bytes(key))

    def items(self, ascending: bool = True) -> Iterator[tuple[bytes, bytes]]:
        """Yield (key, value) pairs of the working tree in key order."""
        if self.working.root is None:
            return
        if not self.working.is_fast_cache_enabled():
            yield from self.working.items(ascending)
            return
        merged = {node.key: node.value for node in self.ndb.fast_items()}
        for key in self._removals:
            merged.pop(key, None)
        merged.update((key, node.value) for key, node in self._additions.items())
        yield from sorted(merged.items(), reverse=not ascending)

    def get_immutable(self, version: int) -> ImmutableTree:
        """Return a read-only tree at a saved version."""
        root_hash = self.ndb.get_root(version)
        if root_hash is None:
            raise VersionDoesNotExistError()
        with self._lock:
            self.versions[version] = True
            if not root_hash:
                return ImmutableTree(ndb=self.ndb, version=version)
            return ImmutableTree(ndb=self.ndb, root=self.ndb.get_node(root_hash), version=version)

    def get_versioned(self, key: bytes, version: int) -> bytes | None:
        """Return the value at key in a saved version, or None."""
        key = bytes(key)
        if not self.version_exists(version):
            return None
        if self.working.is_fast_cache_enabled():
            try:
                fast_node = self.ndb.get_fast_node(key)
            except NodeDBError:
                fast_node = None
            if fast_node is None and version == self.ndb.latest_version:
                return None
            if fast_node is not None and fast_node.version_last_updated_at <= version:
                return fast_node.value
        try:
            tree = self.get_immutable(version)
        except (VersionDoesNotExistError, NodeDBError):
            return None
        return tree.get(key)

    # -- writes --------------------------------------------------------

    def set(self, key: bytes, value: bytes) -> bool:
        """Set key to value in the working tree.

        Returns True when an existing key was updated, False for a new key.
        """
        if value is None:
            raise ValueError(f"attempt to store nil value at key {key!r}")
        key, value = bytes(key), bytes(value)
        if self.working.root is None:
            version = self.working.version + 1
            self._add_unsaved_addition(key, FastNode(key, value, version))
            self.working.root = Node(key=key, value=value, version=version)
            return False
        orphans: list[Node] = []
        self.working.root, updated = self._recursive_set(self.working.root, key, value, orphans)
        self._add_orphans(orphans)
        return updated

    def _recursive_set(
        self, node: Node, key: bytes, value: bytes, orphans: list[Node]
    ) -> tuple[Node, bool]:
        version = self.working.version + 1
        tree = self.working
        if node.is_leaf():
            self._add_unsaved_addition(key, FastNode(key, value, version))
            if key < node.key:
                return Node(
                    key=node.key,
                    height=1,
                    size=2,
                    left_node=Node(key=key, value=value, version=version),
                    right_node=node,
                    version=version,
                ), False
            if key > node.key:
                return Node(
                    key=key,
                    height=1,
                    size=2,
                    left_node=node,
                    right_node=Node(key=key, value=value, version=version),
                    version=version,
                ), False
            orphans.append(node)
            return Node(key=key, value=value, version=version), True

        orphans.append(node)
        node = node.clone(version)
        if key < node.key:
            node.left_node, updated = self._recursive_set(
                node.get_left_node(tree), key, value, orphans
            )
            node.left_hash = None
        else:
            node.right_node, updated = self._recursive_set(
                node.get_right_node(tree), key, value, orphans
            )
            node.right_hash = None
        if updated:
            return node, True
        node.calc_height_and_size(tree)
        return self._balance(node, orphans), False

    def remove(self, key: bytes) -> tuple[bytes | None, bool]:
        """Remove key from the working tree.

        Returns the removed value and whether the key was present.
        """
        key = bytes(key)
        if self.working.root is None:
            return None, False
        orphans: list[Node] = []
        new_hash, new_root, _, value = self._recursive_remove(self.working.root, key, orphans)
        if not orphans:
            return None, False
        self._add_unsaved_removal(key)
        if new_root is None and new_hash is not None:
            self.working.root = self.ndb.get_node(new_hash)
        else:
            self.working.root = new_root
        self._add_orphans(orphans)
        return value, True

    def _recursive_remove(
        self, node: Node, key: bytes, orphans: list[Node]
    ) -> tuple[bytes | None, Node | None, bytes | None, bytes | None]:
        """Remove key below node.

        Returns the new subtree's hash, the new subtree, the new leftmost key
        when it changed, and the removed value.
        """
        version = self.working.version + 1
        tree = self.working
        if node.is_leaf():
            if key == node.key:
                orphans.append(node)
                return None, None, None, node.value
            return node.hash, node, None, None

        if key < node.key:
            new_left_hash, new_left, new_key, value = self._recursive_remove(
                node.get_left_node(tree), key, orphans
            )
            if not orphans:
                return node.hash, node, None, value
            orphans.append(node)
            if new_left_hash is None and new_left is None:
                return node.right_hash, node.right_node, node.key, value
            new_node = node.clone(version)
            new_node.left_hash, new_node.left_node = new_left_hash, new_left
            new_node.calc_height_and_size(tree)
            new_node = self._balance(new_node, orphans)
            return new_node.hash, new_node, new_key, value

        new_right_hash, new_right, new_key, value = self._recursive_remove(
            node.get_right_node(tree), key, orphans
        )
        if not orphans:
            return node.hash, node, None, value
        orphans.append(node)
        if new_right_hash is None and new_right is None:
            return node.left_hash, node.left_node, None, value
        new_node = node.clone(version)
        new_node.right_hash, new_node.right_node = new_right_hash, new_right
        if new_key is not None:
            new_node.key = new_key
        new_node.calc_height_and_size(tree)
        new_node = self._balance(new_node, orphans)
        return new_node.hash, new_node, None, value

    def rollback(self) -> None:
        """Discard unsaved changes, returning to the latest saved version."""
        if self.working.version > 0:
            self.working = self.last_saved.clone()
        else:
            self.working = ImmutableTree(ndb=self.ndb, version=0)
        self._orphans = {}
        self._additions = {}
        self._removals = set()

    # -- loading -------------------------------------------------------

    def load(self) -> int:
        """Load the latest saved version and return its number."""
        return self.load_version(0)

    def lazy_load_version(self, target_version: int) -> int:
        """Load only the given version (the latest when non-positive) for reading."""
        latest = self.ndb.get_latest_version()
        if latest < target_version:
            raise ValueError(
                f"wanted to load target {target_version} but only found up to {latest}"
            )
        if latest <= 0:
            if target_version <= 0:
                with self._lock:
                    self.enable_fast_storage_if_needed()
                return 0
            raise ValueError(f"no versions found while trying to load {target_version}")
        if target_version <= 0:
            target_version = latest

        root_hash = self.ndb.get_root(target_version)
        if root_hash is None:
            raise VersionDoesNotExistError()

        with self._lock:
            self.versions[target_version] = True
            tree = ImmutableTree(ndb=self.ndb, version=target_version)
            if root_hash:
                tree.root = self.ndb.get_node(root_hash)
            self._orphans = {}
            self.working = tree
            self.last_saved = tree.clone()
            self.enable_fast_storage_if_needed()
        return target_version

    def load_version(self, target_version: int) -> int:
        """Load every saved version and make target_version (0 for the latest) current."""
        roots = self.ndb.get_roots()
        if not roots:
            if target_version <= 0:
                with self._lock:
                    self.enable_fast_storage_if_needed()
                return 0
            raise ValueError(f"no versions found while trying to load {target_version}")

        with self._lock:
            first = 0
            latest = 0
            latest_root = b""
            for version, root in roots.items():
                self.versions[version] = True
                if version > latest and (target_version == 0 or version <= target_version):
                    latest = version
                    latest_root = root
                if first == 0 or version < first:
                    first = version

            if not (target_version == 0 or latest == target_version):
                raise ValueError(
                    f"wanted to load target {target_version} but only found up to {latest}"
                )
            initial = self.ndb.opts.initial_version
            if 0 < first < initial:
                raise ValueError(
                    f"initial version set to {initial}, but found earlier version {first}"
                )

            tree = ImmutableTree(ndb=self.ndb, version=latest)
            if latest_root:
                tree.root = self.ndb.get_node(latest_root)
            self._orphans = {}
            self.working = tree
            self.last_saved = tree.clone()
            self._all_roots_loaded = True
            self.enable_fast_storage_if_needed()
        return latest

    def load_version_for_overwriting(self, target_version: int) -> int:
        """Load target_version and delete every version above it."""
        latest = self.load_version(target_version)
        self.ndb.delete_versions_from(target_version + 1)
        with self._lock:
            self._enable_fast_storage_and_commit()
        self.ndb.reset_latest_version(latest)
        with self._lock:
            for version in [v for v in self.versions if v > target_version]:
                del self.versions[version]
        return latest

    # -- fast storage --------------------------------------------------

    def is_upgradeable(self) -> bool:
        """Return whether the fast key index needs building or rebuilding."""
        should_force = self.ndb.should_force_fast_storage_upgrade()
        return not self.ndb.has_upgraded_to_fast_storage() or should_force

    def enable_fast_storage_if_needed(self) -> bool:
        """Build the fast key index from the working tree if it is missing or stale.

        Returns whether the index was built.
        """
        should_force = self.ndb.should_force_fast_storage_upgrade()
        enabled = self.ndb.has_upgraded_to_fast_storage()
        if not self.is_upgradeable():
            return False
        if enabled and should_force:
            # Fast nodes on disk may be stale; drop them before rebuilding.
            for fast_node in list(self.ndb.fast_items()):
                self.ndb.delete_fast_node(fast_node.key)
        try:
            self._enable_fast_storage_and_commit()
        except Exception:
            self.ndb.storage_version = DEFAULT_STORAGE_VERSION
            raise
        return True

    def _enable_fast_storage_and_commit(self) -> None:
        version = self.working.version
        for key, value in self.working.items():
            self.ndb.save_fast_node_no_cache(FastNode(key, value, version))
        self.ndb.set_fast_storage_version_to_batch()
        self.ndb.commit()

    def _add_unsaved_addition(self, key: bytes, node: FastNode) -> None:
        self._removals.discard(key)
        self._additions[key] = node

    def _add_unsaved_removal(self, key: bytes) -> None:
        self._additions.pop(key, None)
        self._removals.add(key)

    def _save_fast_node_version(self) -> None:
        for key in sorted(self._additions):
            self.ndb.save_fast_node(self._additions[key])
        for key in sorted(self._removals):
            self.ndb.delete_fast_node(key)
        self.ndb.set_fast_storage_version_to_batch()

    # -- saving --------------------------------------------------------

    def save_version(self) -> tuple[bytes, int]:
        """Save the working tree as a new version; return its hash and number."""
        version = self.working.version + 1
        if version == 1 and self.ndb.opts.initial_version > 0:
            version = self.ndb.opts.initial_version

        if self.version_exists(version):
            existing = self.ndb.get_root(version)
            if not existing:
                existing = EMPTY_HASH
            new_hash = self.working_hash()
            if existing == new_hash:
                self.working.version = version
                self.working = self.working.clone()
                self.last_saved = self.working.clone()
                self._orphans = {}
                return existing, version
            raise ValueError(
                f"version {version} was already saved to different hash "
                f"{new_hash.hex().upper()} (existing hash {existing.hex().upper()})"
            )

        root = self.working.root
        if root is None:
            # The removed root itself may still leave orphans behind.
            self.ndb.save_orphans(version, self._orphans)
            self.ndb.save_empty_root(version)
        else:
            self.ndb.save_branch(root)
            self.ndb.save_orphans(version, self._orphans)
            self.ndb.save_root(root, version)

        self._save_fast_node_version()
        self.ndb.commit()

        with self._lock:
            self.working.version = version
            self.versions[version] = True
            self.working = self.working.clone()
            self.last_saved = self.working.clone()
            self._orphans = {}
            self._additions = {}
            self._removals = set()
            return self.hash(), version

    # -- deletion ------------------------------------------------------

    def delete_version(self, version: int) -> None:
        """Delete a saved version other than the current one."""
        if version <= 0:
            raise ValueError("version must be greater than 0")
        if version == self.working.version:
            raise ValueError(f"cannot delete latest saved version ({version})")
        if not self.version_exists(version):
            raise VersionDoesNotExistError()
        self.ndb.delete_version(version, True)
        self.ndb.commit()
        with self._lock:
            self.versions.pop(version, None)

    def delete_versions(self, *versions: int) -> None:
        """Delete the given versions, grouping consecutive ones into ranges."""
        if not versions:
            return
        intervals: dict[int, int] = {}
        start = 0
        for version in sorted(versions):
            if version - start != intervals.get(start, 0):
                start = version
            intervals[start] = intervals.get(start, 0) + 1
        for start, count in intervals.items():
            self.delete_versions_range(start, start + count)

    def delete_versions_range(self, from_version: int, to_version: int) -> None:
        """Delete versions from from_version up to but excluding to_version."""
        self.ndb.delete_versions_range(from_version, to_version)
        self.ndb.commit()
        with self._lock:
            for version in range(from_version, to_version):
                self.versions.pop(version, None)

    # -- balancing -----------------------------------------------------

    def _rotate_right(self, node: Node) -> tuple[Node, Node]:
        version = self.working.version + 1
        tree = self.working
        node = node.clone(version)
        orphaned = node.get_left_node(tree)
        new_node = orphaned.clone(version)
        saved_hash, saved_node = new_node.right_hash, new_node.right_node
        new_node.right_hash, new_node.right_node = node.hash, node
        node.left_hash, node.left_node = saved_hash, saved_node
        node.calc_height_and_size(tree)
        new_node.calc_height_and_size(tree)
        return new_node, orphaned

    def _rotate_left(self, node: Node) -> tuple[Node, Node]:
        version = self.working.version + 1
        tree = self.working
        node = node.clone(version)
        orphaned = node.get_right_node(tree)
        new_node = orphaned.clone(version)
        saved_hash, saved_node = new_node.left_hash, new_node.left_node
        new_node.left_hash, new_node.left_node = node.hash, node
        node.right_hash, node.right_node = saved_hash, saved_node
        node.calc_height_and_size(tree)
        new_node.calc_height_and_size(tree)
        return new_node, orphaned

    def _balance(self, node: Node, orphans: list[Node]) -> Node:
        if node.persisted:
            raise ValueError("unexpected balance() call on persisted node")
        tree = self.working
        balance = node.calc_balance(tree)
        if balance > 1:
            if node.get_left_node(tree).calc_balance(tree) >= 0:
                new_node, orphaned = self._rotate_right(node)
                orphans.append(orphaned)
                return new_node
            left = node.get_left_node(tree)
            node.left_hash = None
            node.left_node, left_orphaned = self._rotate_left(left)
            new_node, right_orphaned = self._rotate_right(node)
            orphans.extend([left, left_orphaned, right_orphaned])
            return new_node
        if balance < -1:
            if node.get_right_node(tree).calc_balance(tree) <= 0:
                new_node, orphaned = self._rotate_left(node)
                orphans.append(orphaned)
                return new_node
            right = node.get_right_node(tree)
            node.right_hash = None
            node.right_node, right_orphaned = self._rotate_right(right)
            new_node, left_orphaned = self._rotate_left(node)
            orphans.extend([right, left_orphaned, right_orphaned])
            return new_node
        return node

    def _add_orphans(self, orphans: list[Node]) -> None:
        for node in orphans:
            if not node.persisted:
                continue
            if not node.hash:
                raise ValueError("expected to find node hash, but was empty")
            self._orphans[node.hash] = node.version