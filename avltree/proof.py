"""Merkle proof nodes and the path from a tree node down to a leaf."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Any

from avltree.node import Node, encode_bytes, encode_varint

_INT8_MIN = -128
_INT8_MAX = 127


class ProofError(ValueError):
    """Raised when a proof is malformed, invalid or cannot be computed."""


def _hex(data: bytes | None) -> str:
    return (data or b"").hex().upper()


@dataclass(frozen=True)
class ProofInnerNode:
    """An inner node on a proof path.

    Only the hash of the sibling that is not on the path is kept; the other
    side is left empty and filled in by the child hash when hashing.
    """

    height: int
    size: int
    version: int
    left: bytes | None = None
    right: bytes | None = None

    def __post_init__(self) -> None:
        if not _INT8_MIN <= self.height <= _INT8_MAX:
            raise ProofError(f"height must fit inside an int8, got {self.height}")

    def __str__(self) -> str:
        return self.describe("")

    def describe(self, indent: str) -> str:
        """Return a multi-line description with each field line indented."""
        return (
            "ProofInnerNode{\n"
            f"{indent}  Height:  {self.height}\n"
            f"{indent}  Size:    {self.size}\n"
            f"{indent}  Version: {self.version}\n"
            f"{indent}  Left:    {_hex(self.left)}\n"
            f"{indent}  Right:   {_hex(self.right)}\n"
            f"{indent}}}"
        )

    def hash(self, child_hash: bytes) -> bytes:
        """Return the hash of this node given the hash of the child on the path."""
        try:
            parts = [
                encode_varint(self.height),
                encode_varint(self.size),
                encode_varint(self.version),
            ]
        except ValueError as exc:
            raise ProofError(f"Failed to hash ProofInnerNode: {exc}") from exc
        if not self.left:
            parts += [encode_bytes(child_hash), encode_bytes(self.right)]
        else:
            parts += [encode_bytes(self.left), encode_bytes(child_hash)]
        return hashlib.sha256(b"".join(parts)).digest()


@dataclass(frozen=True)
class ProofLeafNode:
    """A leaf on a proof path, holding the hash of its value rather than the value."""

    key: bytes
    value_hash: bytes
    version: int

    def __str__(self) -> str:
        return self.describe("")

    def describe(self, indent: str) -> str:
        """Return a multi-line description with each field line indented."""
        return (
            "ProofLeafNode{\n"
            f"{indent}  Key:       {_hex(self.key)}\n"
            f"{indent}  ValueHash: {_hex(self.value_hash)}\n"
            f"{indent}  Version:   {self.version}\n"
            f"{indent}}}"
        )

    def hash(self) -> bytes:
        """Return the hash of the leaf, identical to that of the tree leaf it stands for."""
        try:
            data = b"".join(
                [
                    encode_varint(0),
                    encode_varint(1),
                    encode_varint(self.version),
                    encode_bytes(self.key),
                    encode_bytes(self.value_hash),
                ]
            )
        except ValueError as exc:
            raise ProofError(f"failed to hash ProofLeafNode: {exc}") from exc
        return hashlib.sha256(data).digest()


def path_to_leaf(tree: Any, node: Node, key: bytes) -> tuple[list[ProofInnerNode], Node, bool]:
    """Walk from node towards key, recording the inner nodes passed.

    Returns the path from the top, the leaf reached and whether that leaf
    holds key. When key is absent the leaf is the nearest one to its left,
    or the least leaf when key is below every key.
    """
    path: list[ProofInnerNode] = []
    current = node
    while current.height != 0:
        if key < current.key:
            right = current.get_right_node(tree)
            path.append(
                ProofInnerNode(
                    height=current.height,
                    size=current.size,
                    version=current.version,
                    left=None,
                    right=right.hash,
                )
            )
            current = current.get_left_node(tree)
        else:
            left = current.get_left_node(tree)
            path.append(
                ProofInnerNode(
                    height=current.height,
                    size=current.size,
                    version=current.version,
                    left=left.hash,
                    right=None,
                )
            )
            current = current.get_right_node(tree)
    return path, current, current.key == key