"""
pwtree - A small and simple password manager

Secrets are kept in a tree addressed by slash separated keys
(e.g. ``email/gmail``), stored in a single password-encrypted file.

Key Features:
- One file: salt, schema version and the AES-256-CBC encrypted tree
- PBKDF2 key derivation from the file password
- Every value encrypted again inside the tree, with its own IV
- Password rotation re-encrypts every value atomically in memory
- Interactive prompt with clipboard support and input timeout

Components:
- crypto.py: Key derivation, encryption, password generation
- tree.py: The tree of secrets and its binary record format
- vault.py: The store file (open, flush, close, rotate)
- errors.py: Exceptions raised by the store
- cli.py: Interactive command prompt (uses built-in argparse)

Usage:
    pwtree                           # open ~/.pwtree/default.enc
    pwtree -f other.enc              # open another file
    python -m pwtree.cli --help
"""

__version__ = "0.3.0"
__author__ = "pwtree Team"
