"""Tree nodes, their wire encoding and hashing."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from typing import Any, Iterator

_UINT64_MASK = (1 << 64) - 1
_INT64_MIN = -(1 << 63)
_INT64_MAX = (1 << 63) - 1
_INT8_MIN = -128
_INT8_MAX = 127

EMPTY_HASH = hashlib.sha256(b"").digest()
"""Hash of an empty tree: the SHA-256 of empty input."""


class NodeError(ValueError):
    """Raised for malformed, incomplete or misused nodes."""


def encode_varint(value: int) -> bytes:
    """Encode a signed 64-bit integer as a zigzag varint."""
    if not _INT64_MIN <= value <= _INT64_MAX:
        raise ValueError(f"value {value} does not fit in int64")
    ux = (value << 1) & _UINT64_MASK
    if value < 0:
        ux = ~ux & _UINT64_MASK
    return _encode_uvarint(ux)


def _encode_uvarint(value: int) -> bytes:
    out = bytearray()
    while value >= 0x80:
        out.append((value & 0x7F) | 0x80)
        value >>= 7
    out.append(value)
    return bytes(out)


def _decode_uvarint(buf: bytes) -> tuple[int, int]:
    result = 0
    shift = 0
    for i, byte in enumerate(buf):
        if i == 10:
            raise ValueError("varint overflow")
        if byte < 0x80:
            if i == 9 and byte > 1:
                raise ValueError("varint overflow")
            return result | (byte << shift), i + 1
        result |= (byte & 0x7F) << shift
        shift += 7
    raise ValueError("buffer too small")


def decode_varint(buf: bytes) -> tuple[int, int]:
    """Decode a zigzag varint, returning the value and the bytes consumed."""
    ux, n = _decode_uvarint(buf)
    value = ux >> 1
    if ux & 1:
        value = ~value
    return value, n


def encode_bytes(data: bytes | None) -> bytes:
    """Encode a byte string prefixed with its length as an unsigned varint."""
    data = data or b""
    return _encode_uvarint(len(data)) + bytes(data)


def decode_bytes(buf: bytes) -> tuple[bytes, int]:
    """Decode a length-prefixed byte string, returning it and the bytes consumed."""
    size, n = _decode_uvarint(buf)
    end = n + size
    if len(buf) < end:
        raise ValueError(f"insufficient bytes decoding []byte of length {size}")
    return bytes(buf[n:end]), end


def _hex(data: bytes | None) -> str:
    return (data or b"").hex().upper()


@dataclass
class Node:
    """A node of the tree: a leaf holding a key and value, or an inner node."""

    key: bytes | None = b""
    value: bytes | None = None
    version: int = 0
    height: int = 0
    size: int = 1
    hash: bytes | None = None
    left_hash: bytes | None = None
    right_hash: bytes | None = None
    left_node: Node | None = field(default=None, repr=False)
    right_node: Node | None = field(default=None, repr=False)
    persisted: bool = False

    def __str__(self) -> str:
        hashstr = _hex(self.hash) if self.hash else "<no hash>"
        return (
            f"Node{{{_hex(self.key)}:{_hex(self.value)}@{self.version} "
            f"{_hex(self.left_hash)};{_hex(self.right_hash)}}}#{hashstr}"
        )

    def is_leaf(self) -> bool:
        """Return whether the node is a leaf."""
        return self.height == 0

    def clone(self, version: int) -> Node:
        """Return a shallow copy of an inner node at a new version, without hash."""
        if self.is_leaf():
            raise NodeError("attempt to copy a leaf node")
        return Node(
            key=self.key,
            height=self.height,
            version=version,
            size=self.size,
            left_hash=self.left_hash,
            left_node=self.left_node,
            right_hash=self.right_hash,
            right_node=self.right_node,
        )

    # -- serialisation -------------------------------------------------

    def encode(self) -> bytes:
        """Serialise the node for storage."""
        parts = [
            encode_varint(self.height),
            encode_varint(self.size),
            encode_varint(self.version),
            encode_bytes(self.key),
        ]
        if self.is_leaf():
            parts.append(encode_bytes(self.value))
        else:
            if self.left_hash is None:
                raise NodeError("node.leftHash was nil in writeBytes")
            parts.append(encode_bytes(self.left_hash))
            if self.right_hash is None:
                raise NodeError("node.rightHash was nil in writeBytes")
            parts.append(encode_bytes(self.right_hash))
        return b"".join(parts)

    def encoded_size(self) -> int:
        """Return the expected size of the serialised node."""
        n = (
            1
            + len(encode_varint(self.size))
            + len(encode_varint(self.version))
            + len(encode_bytes(self.key))
        )
        if self.is_leaf():
            n += len(encode_bytes(self.value))
        else:
            n += len(encode_bytes(self.left_hash)) + len(encode_bytes(self.right_hash))
        return n

    # -- hashing -------------------------------------------------------

    def hash_bytes(self) -> bytes:
        """Return the bytes hashed for this node; child hashes must be set."""
        parts = [
            encode_varint(self.height),
            encode_varint(self.size),
            encode_varint(self.version),
        ]
        if self.is_leaf():
            parts.append(encode_bytes(self.key))
            parts.append(encode_bytes(hashlib.sha256(self.value or b"").digest()))
        else:
            if self.left_hash is None or self.right_hash is None:
                raise NodeError("found an empty child hash")
            parts.append(encode_bytes(self.left_hash))
            parts.append(encode_bytes(self.right_hash))
        return b"".join(parts)

    def compute_hash(self) -> bytes:
        """Hash the node alone, relying on child hashes already being set."""
        if self.hash is None:
            self.hash = hashlib.sha256(self.hash_bytes()).digest()
        return self.hash

    def hash_with_count(self) -> tuple[bytes, int]:
        """Hash the node and its in-memory descendants.

        Returns the hash and the number of nodes newly hashed.
        """
        if self.hash is not None:
            return self.hash, 0
        count = 0
        if self.left_node is not None:
            self.left_hash, left_count = self.left_node.hash_with_count()
            count += left_count
        if self.right_node is not None:
            self.right_hash, right_count = self.right_node.hash_with_count()
            count += right_count
        self.hash = hashlib.sha256(self.hash_bytes()).digest()
        return self.hash, count + 1

    def validate(self) -> None:
        """Raise NodeError if the node contents are inconsistent."""
        if self.key is None:
            raise NodeError("key cannot be nil")
        if self.version <= 0:
            raise NodeError("version must be greater than 0")
        if self.height < 0:
            raise NodeError("height cannot be less than 0")
        if self.size < 1:
            raise NodeError("size must be at least 1")
        if self.height == 0:
            if self.value is None:
                raise NodeError("value cannot be nil for leaf node")
            if (
                self.left_hash is not None
                or self.left_node is not None
                or self.right_hash is not None
                or self.right_node is not None
            ):
                raise NodeError("leaf node cannot have children")
            if self.size != 1:
                raise NodeError("leaf nodes must have size 1")
        else:
            if self.value is not None:
                raise NodeError("value must be nil for non-leaf node")
            if self.left_hash is None and self.right_hash is None:
                raise NodeError("inner node must have children")

    # -- navigation ----------------------------------------------------

    def get_left_node(self, tree: Any) -> Node:
        """Return the left child, loading it from the tree's storage if needed."""
        if self.left_node is not None:
            return self.left_node
        return tree.ndb.get_node(self.left_hash)

    def get_right_node(self, tree: Any) -> Node:
        """Return the right child, loading it from the tree's storage if needed."""
        if self.right_node is not None:
            return self.right_node
        return tree.ndb.get_node(self.right_hash)

    def calc_height_and_size(self, tree: Any) -> None:
        """Recompute height and size from the children."""
        left = self.get_left_node(tree)
        right = self.get_right_node(tree)
        self.height = max(left.height, right.height) + 1
        self.size = left.size + right.size

    def calc_balance(self, tree: Any) -> int:
        """Return the height of the left child minus that of the right."""
        return self.get_left_node(tree).height - self.get_right_node(tree).height

    def has(self, tree: Any, key: bytes) -> bool:
        """Return whether the subtree holds the key."""
        node = self
        while True:
            if node.key == key:
                return True
            if node.is_leaf():
                return False
            if key < node.key:
                node = node.get_left_node(tree)
            else:
                node = node.get_right_node(tree)

    def get(self, tree: Any, key: bytes) -> tuple[int, bytes | None]:
        """Look a key up in the subtree.

        Returns the key's index among the sorted leaves (or the index it would
        take) and its value, or None if it is absent.
        """
        node = self
        index = 0
        while not node.is_leaf():
            if key < node.key:
                node = node.get_left_node(tree)
            else:
                right = node.get_right_node(tree)
                index += node.size - right.size
                node = right
        if node.key < key:
            return index + 1, None
        if node.key > key:
            return index, None
        return index, node.value

    def get_by_index(self, tree: Any, index: int) -> tuple[bytes | None, bytes | None]:
        """Return the key and value of the leaf at an index, or (None, None)."""
        node = self
        while not node.is_leaf():
            left = node.get_left_node(tree)
            if index < left.size:
                node = left
            else:
                index -= left.size
                node = node.get_right_node(tree)
        if index == 0:
            return node.key, node.value
        return None, None

    def traverse(self, tree: Any, ascending: bool = True, post: bool = False) -> Iterator[Node]:
        """Yield every node of the subtree, in pre-order or post-order."""

        def children(node: Node) -> tuple[Node, Node]:
            left = node.get_left_node(tree)
            right = node.get_right_node(tree)
            return (left, right) if ascending else (right, left)

        if post:
            stack: list[tuple[Node, bool]] = [(self, False)]
            while stack:
                node, expanded = stack.pop()
                if expanded or node.is_leaf():
                    yield node
                    continue
                first, second = children(node)
                stack.append((node, True))
                stack.append((second, False))
                stack.append((first, False))
        else:
            pending = [self]
            while pending:
                node = pending.pop()
                yield node
                if not node.is_leaf():
                    first, second = children(node)
                    pending.append(second)
                    pending.append(first)


def make_node(buf: bytes) -> Node:
    """Decode a node from its stored bytes; its hash is left unset."""

    def read(decoder, what):
        try:
            return decoder(buf[offset:])
        except ValueError as exc:
            raise NodeError(f"decoding node.{what}: {exc}") from exc

    offset = 0
    height, n = read(decode_varint, "height")
    offset += n
    if not _INT8_MIN <= height <= _INT8_MAX:
        raise NodeError("invalid height, must be int8")
    size, n = read(decode_varint, "size")
    offset += n
    version, n = read(decode_varint, "version")
    offset += n
    key, n = read(decode_bytes, "key")
    offset += n

    node = Node(key=key, height=height, size=size, version=version)
    if node.is_leaf():
        node.value, _ = read(decode_bytes, "value")
    else:
        node.left_hash, n = read(decode_bytes, "leftHash")
        offset += n
        node.right_hash, _ = read(decode_bytes, "rightHash")
    return node