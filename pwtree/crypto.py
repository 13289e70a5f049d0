"""
pwtree - Cryptography Module

All cryptographic operations for the secret tree live in this one file:
- Password-based key derivation (PBKDF2-HMAC-SHA1)
- Envelope encryption of opaque byte blobs (AES-256-CBC + PKCS7)
- Generation of random passwords

Security Architecture:
    1. Password + 32-byte salt -> PBKDF2 -> Key (32 bytes)
    2. Whole tree record -> AES-256-CBC under Key -> file payload
    3. Each value in the tree -> AES-256-CBC under the same Key, own IV

Known limitation:
    CBC without a MAC gives no integrity guarantee. A wrong key is only
    detected when the padding comes out invalid; in rare cases a wrong key
    or a tampered blob decrypts to garbage instead of raising CryptoError.
"""

import os
import string
import secrets

from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC


# =============================================================================
# Configuration
# =============================================================================

KEY_LEN = 32             # 256-bit key
SALT_LEN = KEY_LEN       # salt is as long as the key
BLOCK_SIZE = 16          # AES block, in bytes
IV_LEN = BLOCK_SIZE      # one block of IV for CBC
KDF_ITERATIONS = 10000


class CryptoError(Exception):
    """Raised when a blob cannot be decrypted (bad length or bad padding)."""


# =============================================================================
# Key Derivation
# =============================================================================

def derive_key(password: str, salt: bytes) -> bytes:
    """
    Derive the store key from a password using PBKDF2-HMAC-SHA1.

    Deterministic: the same password and salt always yield the same key.

    Args:
        password: The store password
        salt: 32 random bytes kept at the head of the store file

    Returns:
        32-byte key
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA1(),
        length=KEY_LEN,
        salt=salt,
        iterations=KDF_ITERATIONS,
    )
    return kdf.derive(password.encode('utf-8'))


def random_salt() -> bytes:
    """Fresh salt from the OS CSPRNG, as long as the key."""
    return os.urandom(SALT_LEN)


# =============================================================================
# Encryption (AES-256-CBC)
# =============================================================================

def encrypt(key: bytes, plaintext: bytes) -> bytes:
    """
    Encrypt plaintext with AES-256-CBC and PKCS7 padding.

    A new random IV is drawn on every call (never reused) and prepended
    to the ciphertext.

    Returns:
        IV || ciphertext
    """
    iv = os.urandom(IV_LEN)

    padder = padding.PKCS7(BLOCK_SIZE * 8).padder()
    padded = padder.update(plaintext) + padder.finalize()

    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    return iv + encryptor.update(padded) + encryptor.finalize()


def decrypt(key: bytes, blob: bytes) -> bytes:
    """
    Decrypt an IV || ciphertext blob produced by encrypt().

    Only the structure and the padding are checked. A wrong key usually
    breaks the padding, but not always (see module docstring).

    Raises:
        CryptoError: If the blob is malformed or the padding is invalid
    """
    if len(blob) < IV_LEN + BLOCK_SIZE:
        raise CryptoError(f"blob too short: {len(blob)} bytes")
    iv, ciphertext = blob[:IV_LEN], blob[IV_LEN:]
    if len(ciphertext) % BLOCK_SIZE:
        raise CryptoError("ciphertext is not a whole number of blocks")

    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()

    unpadder = padding.PKCS7(BLOCK_SIZE * 8).unpadder()
    try:
        return unpadder.update(padded) + unpadder.finalize()
    except ValueError as exc:
        raise CryptoError("invalid padding") from exc


# =============================================================================
# Password Generation
# =============================================================================

# Symbols found on practically every keyboard.
SYMBOLS = '!"$%^&*()-_=+[]{}\'@#~;:/?.>,<\\|'

CHARSETS = {
    'l': string.ascii_lowercase,
    'u': string.ascii_uppercase,
    'd': string.digits,
    's': SYMBOLS,
}


def generate_password(length: int = 20, charsets: str = "luds") -> str:
    """
    Generate a random password from a selection of character sets.

    Character sets are picked by letter, in any combination:
    - l: lowercase a-z
    - u: uppercase A-Z
    - d: digits 0-9
    - s: keyboard symbols

    Any other character in ``charsets`` is ignored.

    Raises:
        ValueError: If length is negative or no character set was selected
    """
    if length < 0:
        raise ValueError("Password length cannot be negative")

    selection = charsets.lower()
    chars = ''.join(chars for name, chars in CHARSETS.items() if name in selection)
    if not chars:
        raise ValueError("No valid character sets selected!")

    return ''.join(secrets.choice(chars) for _ in range(length))
