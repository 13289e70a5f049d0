"""
pwtree - Tree Module

A directory-esque tree of labelled nodes. A path such as ``email/gmail``
names a node by the edge labels followed from the root. Every node may
carry one value; values are stored encrypted, each with its own IV, and
are only decrypted on get(). This keeps secrets out of memory in
plaintext where avoidable (it is no defence against a process that
reads this program's memory).

This file handles:
- Node: one path segment, owning its children
- SecretTree: path operations bound to the store key
- encode_tree / decode_tree: the versioned binary record of a tree
"""

import logging
import struct
from typing import Dict, Iterator, List, Optional, Tuple

from . import crypto
from .errors import (
    EmptyValue,
    InvalidPath,
    MalformedRecord,
    PathNotFound,
)

logger = logging.getLogger("pwtree.tree")

SEPARATOR = '/'
MAX_LABEL_BYTES = 0xFFFF
MAX_DEPTH = 512


def split_path(path: str) -> List[str]:
    """
    Split a slash separated path into its edge labels.

    Raises:
        InvalidPath: If the path or any of its segments is empty, or the
            path is deeper than a record can hold
    """
    if not path:
        raise InvalidPath("Key must be supplied.")
    segments = path.split(SEPARATOR)
    if len(segments) > MAX_DEPTH:
        raise InvalidPath(f"Key has more than {MAX_DEPTH} segments.")
    for segment in segments:
        if not segment:
            raise InvalidPath(f"Key '{path}' has an empty segment.")
        if len(segment.encode('utf-8')) > MAX_LABEL_BYTES:
            raise InvalidPath(f"Key segment too long in '{path}'.")
    return segments


# =============================================================================
# NODE
# =============================================================================

class Node:
    """One node of the tree: an optional encrypted value and its children."""

    def __init__(self, value: Optional[bytes] = None):
        self.value = value
        self.children: Dict[str, "Node"] = {}

    def child(self, label: str, create: bool = False) -> Optional["Node"]:
        """Get the subtree at an edge, creating an empty one if asked to."""
        if create and label not in self.children:
            self.children[label] = Node()
        return self.children.get(label)

    def descendant(self, segments: List[str], create: bool = False) -> Optional["Node"]:
        """Follow edge labels one by one. Missing edges give None unless create."""
        node = self
        for label in segments:
            node = node.child(label, create)
            if node is None:
                return None
        return node

    def is_empty(self) -> bool:
        """A node with neither value nor children; prune() removes these."""
        return self.value is None and not self.children


# =============================================================================
# SECRET TREE
# =============================================================================

class SecretTree:
    """
    A tree of Nodes whose values are encrypted with the store key.

    Usage:
        tree = SecretTree(key)
        tree.set("email/gmail", "hunter2")
        tree.get("email/gmail")       # -> "hunter2"
        print(tree.render())          # skeleton only, never values
    """

    def __init__(self, key: bytes, root: Optional[Node] = None):
        self.key = key
        self.root = root if root is not None else Node()

    def descendant(self, path: str, create: bool = False) -> Optional[Node]:
        return self.root.descendant(split_path(path), create)

    def get(self, path: str) -> str:
        """
        Decrypt and return the value at a path.

        Raises:
            PathNotFound: No node at this path
            EmptyValue: The node has no value
            CryptoError: The stored value does not decrypt under the key
        """
        node = self.descendant(path)
        if node is None:
            raise PathNotFound(path)
        if node.value is None:
            raise EmptyValue(path)
        plaintext = crypto.decrypt(self.key, node.value)
        try:
            return plaintext.decode('utf-8')
        except UnicodeDecodeError as exc:
            raise crypto.CryptoError("value is not valid UTF-8") from exc

    def set(self, path: str, secret: str) -> None:
        """Encrypt a secret and store it, creating missing nodes on the way."""
        node = self.descendant(path, create=True)
        node.value = crypto.encrypt(self.key, secret.encode('utf-8'))

    def delete(self, path: str) -> Node:
        """
        Detach the edge to the node at path from its parent.

        Does not recurse: the removed subtree is simply dropped.

        Returns:
            The detached node

        Raises:
            PathNotFound: If the path leads nowhere
        """
        segments = split_path(path)
        parent = self.root.descendant(segments[:-1])
        if parent is None or segments[-1] not in parent.children:
            raise PathNotFound(path)
        return parent.children.pop(segments[-1])

    def prune(self) -> int:
        """
        Remove nodes holding neither a value nor children.

        Scans the whole tree repeatedly until a pass removes nothing, so
        a chain of ancestors emptied one after another goes as well.
        Quadratic in the worst case, which is fine at this size.

        Returns:
            Number of nodes removed
        """
        removed = 0
        while True:
            count = self._prune_pass()
            if not count:
                break
            removed += count
        if removed:
            logger.debug("Pruned %d empty node(s)", removed)
        return removed

    def _prune_pass(self) -> int:
        count = 0
        parents = [self.root] + [node for _, node in self.walk()]
        for parent in parents:
            for label, child in list(parent.children.items()):
                if child.is_empty():
                    del parent.children[label]
                    count += 1
        return count

    def walk(self) -> Iterator[Tuple[str, Node]]:
        """Depth-first (path, node) pairs for every node except the root."""
        stack = [(list(self.root.children.items())[::-1], [])]
        while stack:
            items, prefix = stack[-1]
            if not items:
                stack.pop()
                continue
            label, node = items.pop()
            path = prefix + [label]
            yield SEPARATOR.join(path), node
            stack.append((list(node.children.items())[::-1], path))

    def iterate(self) -> Iterator[Tuple[str, Optional[bytes]]]:
        """
        Iterate over (path, value) pairs, depth first.

        Values are yielded as stored (still encrypted), None where unset.
        """
        for path, node in self.walk():
            yield path, node.value

    def __iter__(self):
        return self.iterate()

    def render(self) -> str:
        """
        Skeleton of the tree, one line per node, indented by depth.

        Nodes holding a value end in ``*``; the others end in ``/``.
        Values are never printed.
        """
        lines = []
        for path, node in self.walk():
            segments = path.split(SEPARATOR)
            marker = ' *' if node.value is not None else '/'
            lines.append('  ' * (len(segments) - 1) + segments[-1] + marker)
        return ''.join(line + '\n' for line in lines)

    def __str__(self):
        return self.render()


# =============================================================================
# RECORD FORMAT (schema version 1)
# =============================================================================
#
# node record := child_count:u32 { child }*
# child       := label_len:u16 label:utf-8 has_value:u8 [value_len:u32 value] node record
#
# All integers are unsigned big-endian.

def encode_tree(root: Node) -> bytes:
    """Serialize a tree into a version 1 record."""
    out: List[bytes] = []
    _encode_node(root, out)
    return b''.join(out)


def _encode_node(node: Node, out: List[bytes]) -> None:
    out.append(struct.pack('!I', len(node.children)))
    for label, child in node.children.items():
        raw = label.encode('utf-8')
        out.append(struct.pack('!H', len(raw)))
        out.append(raw)
        if child.value is None:
            out.append(struct.pack('!B', 0))
        else:
            out.append(struct.pack('!BI', 1, len(child.value)))
            out.append(child.value)
        _encode_node(child, out)


class _Reader:
    """Bounds-checked cursor over a record."""

    def __init__(self, data: bytes):
        self.data = data
        self.pos = 0

    def take(self, n: int) -> bytes:
        end = self.pos + n
        if end > len(self.data):
            raise MalformedRecord(
                f"record truncated: wanted {n} bytes at offset {self.pos}"
            )
        chunk = self.data[self.pos:end]
        self.pos = end
        return chunk

    def unpack(self, fmt: str) -> int:
        return struct.unpack(fmt, self.take(struct.calcsize(fmt)))[0]


def decode_tree(data: bytes) -> Node:
    """
    Rebuild a tree from a version 1 record.

    Raises:
        MalformedRecord: On truncation, trailing bytes, bad flags or labels
    """
    reader = _Reader(data)
    root = _decode_node(reader, 0)
    if reader.pos != len(data):
        raise MalformedRecord(f"{len(data) - reader.pos} trailing bytes after record")
    return root


def _decode_node(reader: _Reader, depth: int) -> Node:
    if depth > MAX_DEPTH:
        raise MalformedRecord("record nested too deep")
    node = Node()
    for _ in range(reader.unpack('!I')):
        try:
            label = reader.take(reader.unpack('!H')).decode('utf-8')
        except UnicodeDecodeError as exc:
            raise MalformedRecord("label is not valid UTF-8") from exc
        if not label or SEPARATOR in label:
            raise MalformedRecord(f"invalid label {label!r}")
        if label in node.children:
            raise MalformedRecord(f"duplicate label {label!r}")

        flag = reader.unpack('!B')
        if flag not in (0, 1):
            raise MalformedRecord(f"invalid value flag {flag}")
        value = reader.take(reader.unpack('!I')) if flag else None

        child = _decode_node(reader, depth + 1)
        child.value = value
        node.children[label] = child
    return node
