# avltree

A versioned, persistent key-value store built on a self-balancing Merkle AVL
tree. Every saved version has a SHA-256 root hash, and older versions stay
readable until they are deleted. A "fast storage" index keeps the latest
value of each key, so reads of the current state need not walk the tree.

## Installation

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Usage

```python
from avltree.storage import MemoryDB
from avltree.mutable_tree import MutableTree

db = MemoryDB()
tree = MutableTree(db, 0)          # storage, node cache size

tree.set(b"k1", b"v1")             # False: a new key
tree.set(b"k2", b"v2")
root_hash, version = tree.save_version()    # version == 1

tree.set(b"k1", b"changed")        # True: an existing key was updated
tree.save_version()                # version == 2

tree.get(b"k1")                    # b"changed"
tree.get_versioned(b"k1", 1)       # b"v1"
tree.available_versions()          # [1, 2]

for key, value in tree.items(True):
    print(key, value)

value, removed = tree.remove(b"k2")   # (b"v2", True)
```

Open an existing store by creating a new tree on the same database and
loading it:

```python
reopened = MutableTree(db, 0)
reopened.load()                    # returns the latest version, 2
old = reopened.get_immutable(1)    # read-only view of version 1
old.get(b"k1")                     # b"v1"
```

`ImmutableTree` (in `avltree.tree`) offers `get`, `has`, `get_with_index`,
`get_by_index`, `items`, `size`, `height`, `hash` and `node_size`.

### Versions

- `save_version()` writes the working tree and returns `(hash, version)`.
  Saving an unchanged tree onto a version that already exists with the same
  hash is allowed; a different hash raises `ValueError`.
- `rollback()` drops unsaved changes.
- `load_version(v)` loads every stored version and makes `v` current (`0` for
  the latest); `lazy_load_version(v)` loads only `v`.
  `load_version_for_overwriting(v)` also deletes every version above `v`.
- `delete_version(v)`, `delete_versions(*versions)` and
  `delete_versions_range(start, stop)` remove old versions (the range excludes
  `stop`). The current version cannot be deleted.
- `set_initial_version(n)` or `Options(initial_version=n)` makes the first
  save use version `n`.
- `hash()` is the root hash of the last saved version, `working_hash()` that
  of the working tree; an empty tree hashes to the SHA-256 of empty input.

`get_immutable`, `lazy_load_version` and `delete_version` raise
`VersionDoesNotExistError` for a version that is not stored;
`get_versioned` returns `None` instead.

### Fast storage

`is_upgradeable()` tells whether the fast index is missing or was written
for a version other than the latest; `enable_fast_storage_if_needed()`
rebuilds it from the working tree. Loading a tree does this on its own.
`unsaved_fast_node_additions()` and `unsaved_fast_node_removals()` show the
changes waiting for the next save.

### Options and statistics

```python
from avltree.options import Options, Statistics

stats = Statistics()
tree = MutableTree(MemoryDB(), 1000, Options(sync=False, initial_version=0, stat=stats))
```

`Statistics` counts node and fast-node cache hits and misses in
`cache_hit`, `cache_miss`, `fast_cache_hit` and `fast_cache_miss`;
`reset()` zeroes them.

### Storage

`avltree.storage` holds `MemoryDB`, an ordered in-memory store with write
batches (`Batch`), `KeyFormat` for the key layouts, and `LRUCache`.
`avltree.nodedb.NodeDB` lays the tree's nodes, roots, orphan records and fast
index out over any object with the same methods as `MemoryDB`.
`MutableTree.render()` returns a text dump of what is stored.

### Proof nodes

`avltree.proof` provides `ProofInnerNode`, `ProofLeafNode` and
`path_to_leaf(tree, node, key)`, which returns the inner nodes passed on the
way from `node` towards `key`, the leaf reached and whether it holds the key.
Hashing a leaf and then each inner node on the path, bottom up, gives the
root hash.

## What it does not do

- Only an in-memory store is included; data held in a `MemoryDB` is gone
  when the process ends. Durable storage needs a store object of your own.
- There are no range proofs or proof verification; only the path nodes and
  their hashing are provided.
- There is no export or import of trees, and no ranged iterator: `items`
  walks every key.
- There is no command-line tool or server.