"""Exceptions raised by the secret store and its tree."""


class VaultError(Exception):
    """Base class for every store error."""


class DecryptionFailed(VaultError):
    """Wrong password or corrupted file. The caller may prompt again."""


class UnsupportedVersion(VaultError):
    """The file header carries a schema version this release cannot read."""


class MalformedRecord(VaultError):
    """A decrypted tree record failed structural validation."""


class PathNotFound(VaultError, KeyError):
    """No node exists at the requested path."""

    def __str__(self):
        return f"Key '{self.args[0]}' does not exist."


class EmptyValue(VaultError):
    """The node exists but holds no secret."""

    def __str__(self):
        return f"No value entered for key '{self.args[0]}'."


class InvalidPath(VaultError, ValueError):
    """The path is empty or has an empty segment."""


class RotationFailed(VaultError):
    """A value could not be decrypted while changing the password."""


class VaultLockedError(VaultError):
    """Raised when the store is used before open() or after close()."""
