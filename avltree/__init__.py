"""Versioned, persistent Merkle AVL tree with a fast-storage key index."""

__version__ = "0.1.0"

__all__ = ["options", "node", "storage", "proof", "nodedb", "tree", "mutable_tree"]