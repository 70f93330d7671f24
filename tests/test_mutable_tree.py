import random

import pytest

from avltree.mutable_tree import MutableTree, VersionDoesNotExistError
from avltree.node import EMPTY_HASH
from avltree.nodedb import (
    DEFAULT_STORAGE_VERSION,
    FAST_KEY_FORMAT,
    METADATA_KEY_FORMAT,
    ROOT_KEY_FORMAT,
    STORAGE_VERSION_KEY,
    FastNode,
)
from avltree.options import Options
from avltree.storage import Batch, MemoryDB

K1, V1 = b"k1", b"v1"
K2, V2 = b"k2", b"v2"


def new_tree(db=None, cache_size=0, opts=None):
    return MutableTree(MemoryDB() if db is None else db, cache_size, opts)


def randomize(tree, mirror, rng, count=200):
    for _ in range(count):
        if mirror and rng.random() < 0.3:
            key = rng.choice(sorted(mirror))
            value, removed = tree.remove(key)
            assert removed
            assert value == mirror.pop(key)
        else:
            key = rng.randbytes(3)
            value = rng.randbytes(5)
            tree.set(key, value)
            mirror[key] = value


def prepare_tree():
    db = MemoryDB()
    tree = MutableTree(db, 1000)
    for i in range(100):
        tree.set(bytes([i]), b"a")
    _, ver = tree.save_version()
    assert ver == 1
    for i in range(100):
        tree.set(bytes([i]), b"b")
    _, ver = tree.save_version()
    assert ver == 2
    return MutableTree(db, 1000)


def test_delete():
    tree = new_tree()
    tree.set(b"k1", b"Fred")
    root_hash, version = tree.save_version()
    tree.save_version()
    tree.delete_version(version)
    assert tree.get_versioned(b"k1", version) is None

    tree.ndb.db.set(ROOT_KEY_FORMAT.key(version), root_hash)
    tree.versions[version] = True
    assert tree.get_versioned(b"k1", version) == b"Fred"
    assert tree.get_immutable(version).get(b"k1") == b"Fred"


def test_get_remove():
    tree = new_tree()
    assert tree.get(K1) is None
    assert tree.set(K1, V1) is False
    assert tree.set(K2, V2) is False
    assert tree.get(K1) == V1

    _, version = tree.save_version()
    assert version == 1
    assert tree.get(K1) == V1

    value, removed = tree.remove(K1)
    assert removed is True
    assert value == V1
    assert tree.get(K1) is None


def test_remove_missing_key():
    tree = new_tree()
    tree.set(K1, V1)
    assert tree.remove(b"zz") == (None, False)
    assert new_tree().remove(K1) == (None, False)


def test_traverse_node_size():
    tree = new_tree()
    for i in range(6):
        tree.set(f"k{i}".encode(), f"v{i}".encode())
    assert tree.working.node_size() == 11


def test_set_nil_value_raises():
    tree = new_tree()
    with pytest.raises(ValueError):
        tree.set(b"a", None)


def test_delete_versions():
    tree = new_tree()
    rng = random.Random(7)
    entries = {}
    for _ in range(10):
        pairs = []
        for _ in range(100):
            key, value = rng.randbytes(10), rng.randbytes(10)
            pairs.append((key, value))
            tree.set(key, value)
        _, version = tree.save_version()
        entries[version] = pairs

    tree.delete_versions(2, 4, 6, 8)

    for version in (2, 4, 6, 8):
        assert not tree.versions.get(version, False)
        with pytest.raises(VersionDoesNotExistError):
            tree.lazy_load_version(version)

    for version in (1, 3, 5, 7, 9, 10):
        assert tree.versions[version] is True
        assert tree.lazy_load_version(version) == version
        pairs = entries[version]
        assert len(pairs) == 100
        got = [tree.get(key) for key, _ in pairs]
        assert got == [value for _, value in pairs]


def test_load_version_empty():
    tree = new_tree()
    assert tree.load_version(0) == 0
    assert tree.load_version(-1) == 0
    with pytest.raises(ValueError):
        tree.load_version(3)


def test_lazy_load_version_empty():
    tree = new_tree()
    assert tree.lazy_load_version(0) == 0
    assert tree.lazy_load_version(-1) == 0
    with pytest.raises(ValueError):
        tree.lazy_load_version(3)


def test_delete_versions_range():
    db = MemoryDB()
    tree = MutableTree(db, 0)
    max_length, from_length = 100, 10
    versions = list(range(1, max_length + 1))
    for count in versions:
        tree.set(b"aaa", b"bbb")
        tree.set(f"key{count}".encode(), f"value{count}".encode())
        tree.save_version()

    tree = MutableTree(db, 0)
    assert tree.load_version(max_length) == max_length
    tree.delete_versions_range(from_length, max_length // 2)

    for version in versions[: from_length - 1]:
        assert tree.versions[version] is True
        assert tree.lazy_load_version(version) == version
        assert tree.get(b"aaa") == b"bbb"
        for count in versions[:version]:
            assert tree.get(f"key{count}".encode()) == f"value{count}".encode()

    for version in versions[from_length : max_length // 2 - 1]:
        assert not tree.versions.get(version, False)
        with pytest.raises(VersionDoesNotExistError):
            tree.lazy_load_version(version)

    for version in versions[max_length // 2 - 1 :]:
        assert tree.versions[version] is True
        assert tree.lazy_load_version(version) == version
        assert tree.get(b"aaa") == b"bbb"
        for count in versions[:from_length]:
            assert tree.get(f"key{count}".encode()) == f"value{count}".encode()
        for count in versions[max_length // 2 - 1 : version]:
            assert tree.get(f"key{count}".encode()) == f"value{count}".encode()


def test_initial_version():
    db = MemoryDB()
    tree = MutableTree(db, 0, Options(initial_version=9))
    tree.set(b"a", b"\x01")
    assert tree.save_version()[1] == 9
    tree.set(b"b", b"\x02")
    assert tree.save_version()[1] == 10

    tree = MutableTree(db, 0, Options(initial_version=9))
    assert tree.load() == 10

    tree = MutableTree(db, 0, Options(initial_version=10))
    with pytest.raises(ValueError):
        tree.load()

    tree = MutableTree(db, 0, Options(initial_version=3))
    assert tree.load() == 10
    tree.set(b"c", b"\x03")
    assert tree.save_version()[1] == 11


def test_set_initial_version():
    tree = new_tree()
    tree.set_initial_version(9)
    tree.set(b"a", b"\x01")
    assert tree.save_version()[1] == 9


def test_version_exists():
    tree = prepare_tree()
    assert tree.version_exists(1) is True
    assert tree.version_exists(2) is True
    assert tree.version_exists(3) is False


@pytest.mark.parametrize("loaded", [1, 2])
def test_get_versioned(loaded):
    tree = prepare_tree()
    assert tree.lazy_load_version(loaded) == loaded
    assert tree.get_versioned(b"\x01", 1) == b"a"
    assert tree.get_versioned(b"\x01", 2) == b"b"
    assert tree.get_versioned(b"\x01", 3) is None


def test_delete_version():
    tree = prepare_tree()
    assert tree.lazy_load_version(2) == 2
    tree.delete_version(1)
    assert tree.version_exists(1) is False
    assert tree.version_exists(2) is True
    assert tree.version_exists(3) is False
    with pytest.raises(ValueError):
        tree.delete_version(2)


def test_delete_version_errors():
    tree = prepare_tree()
    tree.load()
    with pytest.raises(ValueError):
        tree.delete_version(0)
    with pytest.raises(VersionDoesNotExistError):
        tree.delete_version(7)


def test_lazy_load_version_with_empty_tree():
    db = MemoryDB()
    tree = MutableTree(db, 1000)
    _, v1 = tree.save_version()

    new_tree1 = MutableTree(db, 1000)
    assert new_tree1.lazy_load_version(1) == v1
    new_tree2 = MutableTree(db, 1000)
    assert new_tree1.load_version(1) == v1
    assert new_tree1.working.root is new_tree2.working.root
    assert new_tree1.hash() == EMPTY_HASH


def test_set_simple():
    tree = new_tree()
    assert tree.set(b"a", b"test") is False
    assert tree.get(b"a") == b"test"
    assert tree.get_with_index(b"a")[1] == b"test"
    additions = tree.unsaved_fast_node_additions()
    assert len(additions) == 1
    assert additions[b"a"] == FastNode(b"a", b"test", 1)


def test_set_two_keys():
    tree = new_tree()
    assert tree.set(b"a", b"test") is False
    assert tree.set(b"b", b"test2") is False
    assert tree.get(b"a") == b"test"
    assert tree.get_with_index(b"a")[1] == b"test"
    assert tree.get(b"b") == b"test2"
    assert tree.get_with_index(b"b")[1] == b"test2"
    additions = tree.unsaved_fast_node_additions()
    assert len(additions) == 2
    assert additions[b"a"] == FastNode(b"a", b"test", 1)
    assert additions[b"b"] == FastNode(b"b", b"test2", 1)


def test_set_overwrite():
    tree = new_tree()
    assert tree.set(b"a", b"test") is False
    assert tree.set(b"a", b"test2") is True
    assert tree.get(b"a") == b"test2"
    assert tree.get_with_index(b"a")[1] == b"test2"
    additions = tree.unsaved_fast_node_additions()
    assert len(additions) == 1
    assert additions[b"a"] == FastNode(b"a", b"test2", 1)


def test_set_remove_set():
    tree = new_tree()
    assert tree.set(b"a", b"test") is False
    assert tree.get(b"a") == b"test"
    assert tree.unsaved_fast_node_additions()[b"a"] == FastNode(b"a", b"test", 1)

    value, removed = tree.remove(b"a")
    assert removed is True
    assert value == b"test"
    assert tree.unsaved_fast_node_additions() == {}
    assert tree.unsaved_fast_node_removals() == {b"a"}
    assert tree.get(b"a") is None
    assert tree.get_with_index(b"a")[1] is None

    assert tree.set(b"a", b"test") is False
    assert tree.get(b"a") == b"test"
    assert tree.get_with_index(b"a")[1] == b"test"
    assert tree.unsaved_fast_node_additions() == {b"a": FastNode(b"a", b"test", 1)}
    assert tree.unsaved_fast_node_removals() == set()


def test_fast_node_integration():
    db = MemoryDB()
    tree = MutableTree(db, 1000)
    assert tree.set(b"a", b"test") is False
    assert len(tree.unsaved_fast_node_additions()) == 1
    assert tree.set(b"b", b"test") is False
    assert len(tree.unsaved_fast_node_additions()) == 2
    assert tree.set(b"c", b"test") is False
    assert len(tree.unsaved_fast_node_additions()) == 3
    assert tree.set(b"c", b"test2") is True
    assert len(tree.unsaved_fast_node_additions()) == 3

    value, removed = tree.remove(b"b")
    assert removed is True
    assert value == b"test"
    assert len(tree.unsaved_fast_node_additions()) == 2
    assert len(tree.unsaved_fast_node_removals()) == 1

    tree.save_version()
    assert tree.unsaved_fast_node_additions() == {}
    assert tree.unsaved_fast_node_removals() == set()

    t2 = MutableTree(db, 0)
    t2.load()
    assert t2.get(b"a") == b"test"
    assert tree.get_with_index(b"a")[1] == b"test"
    assert t2.get(b"b") is None
    assert t2.get_with_index(b"b")[1] is None
    assert t2.get(b"c") == b"test2"
    assert tree.get_with_index(b"c")[1] == b"test2"


def test_items_unsaved():
    tree, mirror = new_tree(), {}
    randomize(tree, mirror, random.Random(1))
    assert list(tree.items()) == sorted(mirror.items())
    assert list(tree.items(False)) == sorted(mirror.items(), reverse=True)


def test_items_saved():
    tree, mirror = new_tree(), {}
    randomize(tree, mirror, random.Random(2))
    tree.save_version()
    assert tree.working.is_fast_cache_enabled() is True
    assert list(tree.items()) == sorted(mirror.items())


def test_items_unsaved_next_version():
    rng = random.Random(3)
    tree, mirror = new_tree(), {}
    randomize(tree, mirror, rng)
    tree.save_version()
    assert list(tree.items()) == sorted(mirror.items())
    randomize(tree, mirror, rng)
    assert list(tree.items()) == sorted(mirror.items())
    assert list(tree.items(False)) == sorted(mirror.items(), reverse=True)


def test_items_empty_tree():
    assert list(new_tree().items()) == []


def test_upgrade_storage_to_fast_latest_version():
    tree = new_tree(cache_size=1000)
    assert tree.working.is_fast_cache_enabled() is False
    randomize(tree, {}, random.Random(4))
    assert tree.is_upgradeable() is True
    assert tree.enable_fast_storage_if_needed() is True
    assert tree.is_upgradeable() is False
    assert tree.working.is_fast_cache_enabled() is True


def test_upgrade_storage_to_fast_already_upgraded():
    tree = new_tree(cache_size=1000)
    randomize(tree, {}, random.Random(5))
    assert tree.enable_fast_storage_if_needed() is True
    assert tree.is_upgradeable() is False
    assert tree.enable_fast_storage_if_needed() is False
    assert tree.working.is_fast_cache_enabled() is True


class _FailingBatch(Batch):
    def set(self, key, value):
        raise RuntimeError("some db error")


class _FailingDB(MemoryDB):
    def new_batch(self):
        return _FailingBatch(self)


def test_upgrade_storage_failure_keeps_default_version():
    tree = MutableTree(_FailingDB(), 0)
    assert tree.working.is_fast_cache_enabled() is False
    with pytest.raises(RuntimeError, match="some db error"):
        tree.enable_fast_storage_if_needed()
    assert tree.ndb.storage_version == DEFAULT_STORAGE_VERSION
    assert tree.working.is_fast_cache_enabled() is False


def test_force_upgrade_first_time_then_not():
    db = MemoryDB()
    tree = MutableTree(db, 0)
    tree.set(b"a", b"1")
    tree.save_version()
    tree.set(b"b", b"2")
    tree.save_version()
    db.set(METADATA_KEY_FORMAT.key(STORAGE_VERSION_KEY), b"1.1.0-1")
    db.set(FAST_KEY_FORMAT.key(b"some_key"), FastNode(b"some_key", b"test_value", 1).encode())

    sut = MutableTree(db, 0)
    sut.working.version = 2
    assert sut.ndb.get_latest_version() == 2
    assert sut.working.is_fast_cache_enabled() is True
    assert sut.ndb.should_force_fast_storage_upgrade() is True

    assert sut.enable_fast_storage_if_needed() is True
    assert db.get(FAST_KEY_FORMAT.key(b"some_key")) is None
    assert sut.ndb.storage_version == "1.1.0-2"
    assert sut.enable_fast_storage_if_needed() is False


def test_no_force_upgrade_when_versions_match():
    tree = prepare_tree()
    tree.working.version = 2
    assert tree.ndb.should_force_fast_storage_upgrade() is False
    assert tree.working.is_fast_cache_enabled() is True
    assert tree.enable_fast_storage_if_needed() is False


def setup_tree_and_mirror_for_upgrade():
    db = MemoryDB()
    tree = MutableTree(db, 0)
    mirror = []
    for i in range(100):
        key, value = f"key_{i}", f"val_{i}"
        mirror.append((key.encode(), value.encode()))
        assert tree.set(key.encode(), value.encode()) is False
    for key, _ in mirror:
        db.delete(FAST_KEY_FORMAT.key(key))
    mirror.sort()
    return tree, mirror


def test_upgraded_tree_iterates():
    tree, mirror = setup_tree_and_mirror_for_upgrade()
    assert tree.working.is_fast_cache_enabled() is False
    assert tree.is_upgradeable() is True
    tree.save_version()
    assert tree.working.is_fast_cache_enabled() is True
    assert tree.is_upgradeable() is False

    sut = MutableTree(tree.ndb.db, 1000)
    assert sut.working.is_fast_cache_enabled() is False
    assert sut.is_upgradeable() is False
    assert sut.load() == 1
    assert list(sut.items()) == mirror
    immutable = sut.get_immutable(sut.working.version)
    assert list(immutable.items()) == mirror


def test_upgraded_tree_get_after_lazy_load():
    tree, mirror = setup_tree_and_mirror_for_upgrade()
    tree.save_version()
    sut = MutableTree(tree.ndb.db, 1000)
    assert sut.is_upgradeable() is False
    assert sut.lazy_load_version(1) == 1
    immutable = sut.get_immutable(sut.working.version)
    for key, value in mirror:
        assert sut.get(key) == value
        assert immutable.get(key) == value


def test_get_immutable_missing_version():
    tree = new_tree()
    with pytest.raises(VersionDoesNotExistError):
        tree.get_immutable(4)


def test_rollback_discards_changes():
    tree = new_tree()
    tree.set(K1, V1)
    tree.save_version()
    tree.set(K2, V2)
    tree.remove(K1)
    tree.rollback()
    assert tree.get(K1) == V1
    assert tree.get(K2) is None
    assert tree.unsaved_fast_node_additions() == {}
    assert tree.unsaved_fast_node_removals() == set()

    fresh = new_tree()
    fresh.set(K1, V1)
    fresh.rollback()
    assert fresh.is_empty() is True


def test_hashes_and_available_versions():
    tree = new_tree()
    assert tree.is_empty() is True
    assert tree.hash() == EMPTY_HASH
    tree.set(K1, V1)
    assert tree.is_empty() is False
    working = tree.working_hash()
    assert tree.hash() == EMPTY_HASH
    saved_hash, _ = tree.save_version()
    assert saved_hash == working == tree.hash()
    tree.set(K2, V2)
    tree.save_version()
    assert tree.available_versions() == [1, 2]


def test_save_existing_version_same_and_different_hash():
    db = MemoryDB()
    tree = MutableTree(db, 0)
    tree.set(b"a", b"1")
    tree.save_version()
    tree.set(b"b", b"2")
    v2_hash, _ = tree.save_version()

    same = MutableTree(db, 0)
    same.lazy_load_version(1)
    same.set(b"b", b"2")
    assert same.save_version() == (v2_hash, 2)

    other = MutableTree(db, 0)
    other.lazy_load_version(1)
    other.set(b"b", b"3")
    with pytest.raises(ValueError):
        other.save_version()


def test_load_version_for_overwriting():
    db = MemoryDB()
    tree = MutableTree(db, 0)
    for key in (b"a", b"b", b"c"):
        tree.set(key, key.upper())
        tree.save_version()

    sut = MutableTree(db, 0)
    assert sut.load_version_for_overwriting(1) == 1
    assert sut.available_versions() == [1]
    assert sut.version_exists(2) is False
    assert sut.get(b"a") == b"A"
    assert sut.get(b"b") is None

    sut.set(b"d", b"D")
    assert sut.save_version()[1] == 2
    assert sut.get(b"d") == b"D"
    assert sut.get_versioned(b"c", 2) is None


def test_render_lists_saved_nodes():
    tree = new_tree()
    tree.set(K1, V1)
    tree.save_version()
    text = tree.render()
    assert text.startswith("-\n")
    assert "h=0 version=1" in text