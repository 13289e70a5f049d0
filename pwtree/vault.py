"""
pwtree - Vault Module

This file handles:
- Reading and decrypting the store file on open()
- First-time initialization when the file does not exist yet
- Encrypting and writing the whole tree on flush()
- Path level get/set/delete/prune on the tree
- Password rotation (re-encrypting every value under a new key)

File structure:
    salt (32 bytes) || schema version (1 byte) || IV (16 bytes) || ciphertext

The ciphertext holds the tree record (see tree.py). Values inside the
record are themselves encrypted with the same key.

Lifecycle:
    unopened --open()--> ready --close()--> closed

A failed open() (DecryptionFailed) leaves the vault unopened so that the
caller can try again with another password. Nothing is written until
flush() is called.
"""

import logging
import os
from pathlib import Path
from typing import Callable, Dict, Iterator, Optional, Tuple

from . import crypto
from .errors import (
    DecryptionFailed,
    MalformedRecord,
    PathNotFound,
    RotationFailed,
    UnsupportedVersion,
    VaultError,
    VaultLockedError,
)
from .tree import SecretTree, decode_tree, encode_tree

logger = logging.getLogger("pwtree.vault")

SCHEMA_VERSION = 1
HEADER_LEN = crypto.SALT_LEN + 1
FILE_MODE = 0o600

UNOPENED = "unopened"
READY = "ready"
CLOSED = "closed"

# Upgrades of a decrypted payload, keyed on the version they upgrade from.
# Each one returns the payload in the format of the next version.
MIGRATIONS: Dict[int, Callable[[bytes], bytes]] = {}


def check_version(version: int) -> None:
    """
    Check that a file of this schema version can be read.

    Raises:
        UnsupportedVersion: Newer than this release, or no migration path
    """
    if version > SCHEMA_VERSION:
        raise UnsupportedVersion(
            f"File schema version {version} is newer than supported ({SCHEMA_VERSION})"
        )
    for old in range(version, SCHEMA_VERSION):
        if old not in MIGRATIONS:
            raise UnsupportedVersion(f"No migration from schema version {old}")


def migrate(version: int, payload: bytes) -> bytes:
    """Bring a decrypted payload from ``version`` up to SCHEMA_VERSION."""
    while version < SCHEMA_VERSION:
        logger.info("Migrating store payload from schema version %d", version)
        payload = MIGRATIONS[version](payload)
        version += 1
    return payload


class Vault:
    """
    An encrypted tree of secrets persisted in one file.

    Usage:
        vault = Vault("~/.pwtree/default.enc")
        vault.open("master password")     # creates a new tree if no file yet

        vault.set("email/gmail", "hunter2")
        vault.get("email/gmail")          # -> "hunter2"
        vault.delete("email/gmail")       # clears the value, prunes empty nodes
        vault.flush()                     # nothing is durable before this

        vault.close()
    """

    def __init__(self, path: str):
        """
        Prepare a vault for a file (doesn't open it yet).

        Args:
            path: Location of the store file; ``~`` is expanded
        """
        self.path = Path(path).expanduser()
        self.state = UNOPENED
        self.is_new = False
        self.salt: Optional[bytes] = None
        self.key: Optional[bytes] = None
        self.tree: Optional[SecretTree] = None

    # =========================================================================
    # OPEN / FLUSH / CLOSE
    # =========================================================================

    def open(self, password: str) -> None:
        """
        Open the store with a password.

        If the file exists, its salt is read, the key derived and the tree
        decrypted. Otherwise a fresh salt is generated and the tree starts
        empty; the file is only written on the first flush().

        Raises:
            DecryptionFailed: Wrong password or corrupt file (vault stays unopened)
            UnsupportedVersion: File written by a newer schema
            OSError: The file could not be read
        """
        if self.state == CLOSED:
            raise VaultLockedError("Vault is closed.")
        if self.state == READY:
            raise VaultError("Vault is already open.")

        if self.path.exists():
            self._init_with_file(password)
        else:
            self._first_time_init(password)
        self.state = READY

    def _init_with_file(self, password: str) -> None:
        data = self.path.read_bytes()
        if len(data) < HEADER_LEN:
            raise DecryptionFailed(f"File {self.path} is too short to be a store.")

        salt = data[:crypto.SALT_LEN]
        version = data[crypto.SALT_LEN]
        check_version(version)

        key = crypto.derive_key(password, salt)
        try:
            payload = crypto.decrypt(key, data[HEADER_LEN:])
        except crypto.CryptoError as exc:
            raise DecryptionFailed("Decryption failed. Corrupt file or wrong password.") from exc

        payload = migrate(version, payload)
        try:
            root = decode_tree(payload)
        except MalformedRecord as exc:
            # Padding can come out valid by chance under a wrong key.
            raise DecryptionFailed("Decryption failed. Corrupt file or wrong password.") from exc

        self.salt = salt
        self.key = key
        self.tree = SecretTree(key, root)
        self.is_new = False
        logger.info("Opened store %s", self.path)

    def _first_time_init(self, password: str) -> None:
        self.salt = crypto.random_salt()
        self.key = crypto.derive_key(password, self.salt)
        self.tree = SecretTree(self.key)
        self.is_new = True
        logger.info("New store at %s (written on first flush)", self.path)

    def flush(self) -> None:
        """
        Encrypt the whole tree and write it to the file.

        The file is overwritten in place and left readable by its owner
        only. Missing parent directories are created first.
        """
        self._require_open()
        payload = encode_tree(self.tree.root)
        data = self.salt + bytes([SCHEMA_VERSION]) + crypto.encrypt(self.key, payload)

        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, FILE_MODE)
        with os.fdopen(fd, 'wb') as f:
            f.write(data)
        os.chmod(self.path, FILE_MODE)

        self.is_new = False
        logger.debug("Flushed store %s (%d bytes)", self.path, len(data))

    def close(self) -> None:
        """Drop the key and the tree. The vault cannot be used afterwards."""
        if self.tree is not None:
            for _, node in list(self.tree.walk()):
                node.value = None
            self.tree.key = None
        self.tree = None
        self.key = None
        self.salt = None
        self.state = CLOSED
        logger.debug("Closed store %s", self.path)

    # =========================================================================
    # PATH OPERATIONS
    # =========================================================================

    def get(self, path: str) -> str:
        """
        Decrypt the secret stored at a path.

        Raises:
            PathNotFound: No node at this path
            EmptyValue: The node exists but holds no secret
        """
        self._require_open()
        return self.tree.get(path)

    def set(self, path: str, secret: str) -> None:
        """Store a secret at a path, creating intermediate nodes as needed."""
        self._require_open()
        self.tree.set(path, secret)

    def delete(self, path: str) -> int:
        """
        Delete a key.

        If the node holds a value, only the value is cleared and its
        children are kept. If it holds none, the node and its whole
        subtree are removed. Either way, empty nodes are pruned after.

        Returns:
            Number of nodes removed by pruning

        Raises:
            PathNotFound: No node at this path
        """
        self._require_open()
        node = self.tree.descendant(path)
        if node is None:
            raise PathNotFound(path)

        if node.value is None:
            self.tree.delete(path)
        else:
            node.value = None
        return self.tree.prune()

    def prune(self) -> int:
        """Remove valueless, childless nodes. Returns how many were removed."""
        self._require_open()
        return self.tree.prune()

    def iterate(self) -> Iterator[Tuple[str, Optional[bytes]]]:
        """(path, encrypted value or None) for every node, depth first."""
        self._require_open()
        return self.tree.iterate()

    def render(self) -> str:
        """Skeleton of the tree without any values."""
        self._require_open()
        return self.tree.render()

    # =========================================================================
    # PASSWORD ROTATION
    # =========================================================================

    def rotate(self, new_password: str) -> int:
        """
        Change the password: new salt, new key, every value re-encrypted.

        All values are re-encrypted first; only when every one succeeded
        are the new blobs, key and salt adopted together. On failure the
        tree and key are left exactly as they were. Call flush() after.

        Returns:
            Number of values re-encrypted

        Raises:
            RotationFailed: A value did not decrypt under the current key
        """
        self._require_open()
        new_salt = crypto.random_salt()
        new_key = crypto.derive_key(new_password, new_salt)

        updates = []
        for path, node in self.tree.walk():
            if node.value is None:
                continue
            try:
                plaintext = crypto.decrypt(self.key, node.value)
            except crypto.CryptoError as exc:
                raise RotationFailed(f"Could not decrypt value of '{path}'; password unchanged.") from exc
            updates.append((node, crypto.encrypt(new_key, plaintext)))

        for node, blob in updates:
            node.value = blob
        self.salt, self.key = new_salt, new_key
        self.tree.key = new_key

        logger.info("Rotated store key for %s (%d value(s))", self.path, len(updates))
        return len(updates)

    # =========================================================================
    # INTERNAL HELPERS
    # =========================================================================

    def _require_open(self) -> None:
        """Check that the vault is open."""
        if self.state != READY:
            raise VaultLockedError(f"Vault is {self.state}. Call open() first.")
