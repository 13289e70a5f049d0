"""
pwtree - Self-Tests

Run with: pytest   (or: python test_simple.py)

Covers:
- Key derivation and AES-CBC envelope encryption
- Tree path operations, smart delete and pruning
- The binary tree record and its validation
- Store open/flush/close, wrong passwords and password rotation
"""

import os
import stat
import struct
import tempfile

import pytest
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from pwtree import crypto
from pwtree.errors import (
    DecryptionFailed,
    EmptyValue,
    InvalidPath,
    MalformedRecord,
    PathNotFound,
    RotationFailed,
    UnsupportedVersion,
    VaultLockedError,
)
from pwtree.tree import MAX_DEPTH, Node, SecretTree, decode_tree, encode_tree
from pwtree.vault import MIGRATIONS, SCHEMA_VERSION, Vault


# =============================================================================
# CRYPTO
# =============================================================================

def test_kdf():
    """Test key derivation from password."""
    print("Testing KDF (Key Derivation)...")

    salt = crypto.random_salt()
    assert len(salt) == crypto.SALT_LEN == 32

    key1 = crypto.derive_key("test_password", salt)
    key2 = crypto.derive_key("test_password", salt)
    assert key1 == key2, "KDF should be deterministic"
    assert len(key1) == 32, "Key should be 32 bytes"

    assert crypto.derive_key("different_password", salt) != key1
    assert crypto.derive_key("test_password", crypto.random_salt()) != key1
    print("  [OK] KDF works correctly")


def test_encryption():
    """Test AES-CBC encryption/decryption."""
    key = os.urandom(32)
    plaintext = b"This is a secret message!"

    blob = crypto.encrypt(key, plaintext)
    assert crypto.decrypt(key, blob) == plaintext
    assert len(blob) % crypto.BLOCK_SIZE == 0

    # Fresh IV every call
    other = crypto.encrypt(key, plaintext)
    assert blob[:crypto.IV_LEN] != other[:crypto.IV_LEN]
    assert blob != other

    assert crypto.decrypt(key, crypto.encrypt(key, b"")) == b""


def test_decrypt_rejects_malformed_blobs():
    key = os.urandom(32)
    with pytest.raises(crypto.CryptoError):
        crypto.decrypt(key, b"\x00" * crypto.IV_LEN)
    with pytest.raises(crypto.CryptoError):
        crypto.decrypt(key, os.urandom(crypto.IV_LEN + crypto.BLOCK_SIZE + 3))


def test_decrypt_rejects_bad_padding():
    key = os.urandom(32)
    iv = os.urandom(crypto.IV_LEN)
    # A last plaintext byte of 0 is never valid PKCS7 padding.
    block = b"A" * 15 + b"\x00"
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    blob = iv + encryptor.update(block) + encryptor.finalize()

    with pytest.raises(crypto.CryptoError):
        crypto.decrypt(key, blob)


def test_password_generation():
    pwd = crypto.generate_password()
    assert len(pwd) == 20

    digits = crypto.generate_password(length=32, charsets="d")
    assert len(digits) == 32
    assert digits.isdigit()

    mixed = crypto.generate_password(length=64, charsets="LU")
    assert all(c.isascii() and c.isalpha() for c in mixed)

    assert crypto.generate_password(length=0) == ""

    with pytest.raises(ValueError):
        crypto.generate_password(length=10, charsets="xyz")
    with pytest.raises(ValueError):
        crypto.generate_password(length=-1)


# =============================================================================
# TREE
# =============================================================================

def make_tree():
    return SecretTree(os.urandom(32))


def test_tree_set_and_get():
    tree = make_tree()
    tree.set("email/gmail", "hunter2")

    assert tree.get("email/gmail") == "hunter2"
    # Ancestors are created without values
    assert tree.descendant("email").value is None
    with pytest.raises(EmptyValue):
        tree.get("email")
    with pytest.raises(PathNotFound):
        tree.get("email/yahoo")

    # Stored value is ciphertext, not the secret
    assert b"hunter2" not in tree.descendant("email/gmail").value


def test_descendant_create():
    tree = make_tree()
    assert tree.descendant("a/b/c") is None
    assert tree.root.children == {}

    node = tree.descendant("a/b/c", create=True)
    assert node is tree.root.children["a"].children["b"].children["c"]
    assert tree.descendant("a/b/c") is node


def test_invalid_paths():
    tree = make_tree()
    for path in ["", "/a", "a/", "a//b"]:
        with pytest.raises(InvalidPath):
            tree.set(path, "x")

    too_deep = "/".join(["x"] * (MAX_DEPTH + 1))
    with pytest.raises(InvalidPath):
        tree.set(too_deep, "x")
    assert tree.root.children == {}


def test_tree_delete_detaches_subtree():
    tree = make_tree()
    tree.set("a/b/c", "x")
    tree.set("a/d", "y")

    removed = tree.delete("a/b")
    assert "c" in removed.children
    assert tree.descendant("a/b") is None
    assert tree.get("a/d") == "y"

    with pytest.raises(PathNotFound):
        tree.delete("a/b")
    with pytest.raises(PathNotFound):
        tree.delete("nope/x")


def test_prune_is_idempotent():
    tree = make_tree()
    tree.set("a/b/c", "x")
    tree.descendant("a/b/c").value = None
    tree.descendant("e/f/g", create=True)

    assert tree.prune() == 6
    assert tree.root.children == {}
    assert tree.prune() == 0


def test_iterate_yields_raw_values_depth_first():
    tree = make_tree()
    tree.set("a/b", "1")
    tree.set("a", "2")
    tree.set("c", "3")

    items = list(tree.iterate())
    assert [path for path, _ in items] == ["a", "a/b", "c"]
    assert items[0][1] == tree.descendant("a").value
    # Restartable
    assert list(tree.iterate()) == items


def test_render_shows_skeleton_only():
    tree = make_tree()
    tree.set("email/gmail", "s3cret-value")
    tree.set("email", "other-secret")
    tree.set("bank/acme/pin", "1234")

    text = tree.render()
    assert text == (
        "email *\n"
        "  gmail *\n"
        "bank/\n"
        "  acme/\n"
        "    pin *\n"
    )
    for secret in ["s3cret-value", "other-secret", "1234"]:
        assert secret not in text
    for _, value in tree.iterate():
        if value is not None:
            assert value.decode("latin-1") not in text


# =============================================================================
# TREE RECORD
# =============================================================================

def test_record_preserves_tree():
    tree = make_tree()
    tree.set("email/gmail", "hunter2")
    tree.set("email", "x")
    tree.set("sites/ünïcode", "y")
    tree.descendant("empty/branch", create=True)

    restored = SecretTree(tree.key, decode_tree(encode_tree(tree.root)))
    assert list(restored.iterate()) == list(tree.iterate())
    assert restored.get("email/gmail") == "hunter2"
    assert restored.get("sites/ünïcode") == "y"


def test_record_of_empty_tree():
    assert encode_tree(Node()) == b"\x00\x00\x00\x00"
    assert decode_tree(b"\x00\x00\x00\x00").children == {}


def test_record_rejects_malformed_data():
    good = encode_tree(SecretTree(os.urandom(32)).root)
    tree = make_tree()
    tree.set("a", "x")
    record = encode_tree(tree.root)

    with pytest.raises(MalformedRecord):
        decode_tree(b"")
    with pytest.raises(MalformedRecord):
        decode_tree(record[:-1])
    with pytest.raises(MalformedRecord):
        decode_tree(good + b"\x00")
    # has_value flag must be 0 or 1
    with pytest.raises(MalformedRecord):
        decode_tree(struct.pack("!IH", 1, 1) + b"a" + b"\x07" + struct.pack("!I", 0))
    # empty label
    with pytest.raises(MalformedRecord):
        decode_tree(struct.pack("!IH", 1, 0) + b"\x00" + struct.pack("!I", 0))
    # label with a separator
    with pytest.raises(MalformedRecord):
        decode_tree(struct.pack("!IH", 1, 3) + b"a/b" + b"\x00" + struct.pack("!I", 0))
    # duplicate labels
    child = struct.pack("!H", 1) + b"a" + b"\x00" + struct.pack("!I", 0)
    with pytest.raises(MalformedRecord):
        decode_tree(struct.pack("!I", 2) + child + child)


# =============================================================================
# VAULT
# =============================================================================

def test_vault_round_trip():
    """Set, flush, reopen with the same password, get."""
    print("Testing Vault Operations...")
    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, "nested", "dir", "store.enc")

        vault = Vault(path)
        vault.open("test_master_password")
        assert vault.is_new
        assert not os.path.exists(path), "Nothing is written before flush"

        vault.set("email/gmail", "my_secret_password")
        vault.set("email/work", "other")
        vault.flush()
        vault.close()
        print("  [OK] Vault created and flushed")

        with open(path, "rb") as f:
            data = f.read()
        assert data[crypto.SALT_LEN] == SCHEMA_VERSION
        assert b"my_secret_password" not in data
        assert b"gmail" not in data
        if os.name != "nt":
            assert stat.S_IMODE(os.stat(path).st_mode) == 0o600

        vault = Vault(path)
        vault.open("test_master_password")
        assert not vault.is_new
        assert vault.salt == data[:crypto.SALT_LEN]
        assert vault.get("email/gmail") == "my_secret_password"
        assert vault.get("email/work") == "other"
        vault.close()
        print("  [OK] Reopened and decrypted")


def test_wrong_password():
    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, "store.enc")
        vault = Vault(path)
        vault.open("correct horse")
        vault.set("a", "x")
        vault.flush()
        vault.close()

        vault = Vault(path)
        with pytest.raises(DecryptionFailed):
            vault.open("wrong_password")
        assert vault.state == "unopened"
        with pytest.raises(VaultLockedError):
            vault.get("a")

        # Caller may retry on the same instance
        vault.open("correct horse")
        assert vault.get("a") == "x"
        vault.close()
    print("  [OK] Wrong password detection works")


def test_truncated_file_fails_decryption():
    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, "store.enc")
        with open(path, "wb") as f:
            f.write(os.urandom(10))
        with pytest.raises(DecryptionFailed):
            Vault(path).open("pw")


def test_unsupported_version():
    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, "store.enc")
        vault = Vault(path)
        vault.open("pw")
        vault.flush()
        vault.close()

        with open(path, "rb") as f:
            data = bytearray(f.read())
        data[crypto.SALT_LEN] = SCHEMA_VERSION + 1
        with open(path, "wb") as f:
            f.write(bytes(data))

        with pytest.raises(UnsupportedVersion):
            Vault(path).open("pw")


def test_deepest_path_survives_reopen():
    """A path at the nesting limit can be flushed and read back."""
    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, "store.enc")
        deepest = "/".join(["x"] * MAX_DEPTH)

        vault = Vault(path)
        vault.open("pw")
        vault.set(deepest, "secret")
        with pytest.raises(InvalidPath):
            vault.set(deepest + "/x", "secret")
        vault.flush()
        vault.close()

        vault = Vault(path)
        vault.open("pw")
        assert vault.get(deepest) == "secret"
        vault.close()
    print("  [OK] Deepest allowed path round trips")


def test_old_version_is_migrated():
    """A registered migration upgrades an older payload on open."""
    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, "store.enc")
        vault = Vault(path)
        vault.open("pw")
        vault.set("a", "x")
        vault.flush()
        vault.close()

        with open(path, "rb") as f:
            data = f.read()
        salt = data[:crypto.SALT_LEN]
        key = crypto.derive_key("pw", salt)
        payload = crypto.decrypt(key, data[crypto.SALT_LEN + 1:])
        with open(path, "wb") as f:
            f.write(salt + bytes([0]) + crypto.encrypt(key, b"OLD" + payload))

        with pytest.raises(UnsupportedVersion):
            Vault(path).open("pw")

        seen = []

        def strip_marker(old):
            seen.append(old[:3])
            return old[3:]

        MIGRATIONS[0] = strip_marker
        try:
            vault = Vault(path)
            vault.open("pw")
        finally:
            del MIGRATIONS[0]
        assert seen == [b"OLD"]
        assert vault.get("a") == "x"
        vault.close()


def test_closed_vault_is_unusable():
    with tempfile.TemporaryDirectory() as tmp:
        vault = Vault(os.path.join(tmp, "store.enc"))
        with pytest.raises(VaultLockedError):
            vault.set("a", "x")

        vault.open("pw")
        vault.set("a", "x")
        vault.close()
        assert vault.key is None and vault.tree is None

        for call in (lambda: vault.get("a"), vault.flush, vault.render,
                     lambda: vault.open("pw")):
            with pytest.raises(VaultLockedError):
                call()


def test_smart_delete_cascades():
    with tempfile.TemporaryDirectory() as tmp:
        vault = Vault(os.path.join(tmp, "store.enc"))
        vault.open("pw")
        vault.set("a/b/c", "x")

        assert vault.delete("a/b/c") == 3
        assert vault.tree.descendant("a") is None
        assert list(vault.iterate()) == []


def test_smart_delete_preserves_valued_ancestor():
    with tempfile.TemporaryDirectory() as tmp:
        vault = Vault(os.path.join(tmp, "store.enc"))
        vault.open("pw")
        vault.set("a/b/c", "x")
        vault.set("a/b", "y")

        vault.delete("a/b/c")
        assert vault.tree.descendant("a/b/c") is None
        assert vault.get("a/b") == "y"


def test_smart_delete_clears_value_but_keeps_children():
    with tempfile.TemporaryDirectory() as tmp:
        vault = Vault(os.path.join(tmp, "store.enc"))
        vault.open("pw")
        vault.set("a/b", "y")
        vault.set("a/b/c", "x")

        vault.delete("a/b")
        with pytest.raises(EmptyValue):
            vault.get("a/b")
        assert vault.get("a/b/c") == "x"

        # Deleting the now valueless node removes its whole subtree
        vault.delete("a/b")
        assert vault.tree.descendant("a") is None

        with pytest.raises(PathNotFound):
            vault.delete("a/b")


def test_rotation():
    """Rotate, flush, reopen with the new password; the old one stops working."""
    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, "store.enc")
        vault = Vault(path)
        vault.open("password-one")
        vault.set("email/gmail", "first")
        vault.set("bank", "second")
        vault.tree.descendant("empty/node", create=True)
        vault.flush()
        old_salt = vault.salt

        assert vault.rotate("password-two") == 2
        assert vault.salt != old_salt
        assert vault.get("email/gmail") == "first"
        vault.flush()
        vault.close()

        vault = Vault(path)
        vault.open("password-two")
        assert vault.get("email/gmail") == "first"
        assert vault.get("bank") == "second"
        assert vault.tree.descendant("empty/node").value is None
        vault.close()

        with pytest.raises(DecryptionFailed):
            Vault(path).open("password-one")
    print("  [OK] Password rotation works")


def test_failed_rotation_keeps_old_key():
    with tempfile.TemporaryDirectory() as tmp:
        vault = Vault(os.path.join(tmp, "store.enc"))
        vault.open("pw")
        vault.set("a", "x")
        vault.set("b", "y")
        good_blob = vault.tree.descendant("a").value
        vault.tree.descendant("b").value = b"corrupted"
        old_key, old_salt = vault.key, vault.salt

        with pytest.raises(RotationFailed):
            vault.rotate("new")

        assert vault.key == old_key
        assert vault.salt == old_salt
        assert vault.tree.key == old_key
        assert vault.tree.descendant("a").value == good_blob
        assert vault.get("a") == "x"


def run_all_tests():
    """Run all tests without pytest's runner."""
    print("=" * 70)
    print("pwtree - Test Suite")
    print("=" * 70)

    tests = [obj for name, obj in sorted(globals().items())
             if name.startswith("test_") and callable(obj)]
    failed = []

    for test in tests:
        try:
            test()
        except Exception as e:
            print(f"  [FAIL] {test.__name__}: {e}")
            failed.append((test.__name__, e))

    print("=" * 70)
    if not failed:
        print("[OK] ALL TESTS PASSED!")
    else:
        print(f"[FAIL] {len(failed)} TESTS FAILED:")
        for name, error in failed:
            print(f"  - {name}: {error}")
    print("=" * 70)

    return len(failed) == 0


if __name__ == "__main__":
    import sys
    success = run_all_tests()
    sys.exit(0 if success else 1)
