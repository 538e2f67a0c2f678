"""
Error types raised by the vault, store and session layers.

Every VaultError is recoverable: the session turns it into a dismissible
notification and keeps running. ConfigError is the only fatal one and is
raised before any vault operation is attempted.
"""


class VaultError(Exception):
    """Base class. `message` is safe to show to the user."""

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__doc__ or self.__class__.__name__)
        self.message = str(self)


class IdentityMissing(VaultError):
    """No identity selected."""


class DecryptAuthError(VaultError):
    """Wrong passphrase or vault data is corrupted."""


class ParseError(VaultError):
    """Vault data could not be read."""


class SecretDecodeError(VaultError):
    """Secret key is not valid base32."""


class PlatformStoreError(VaultError):
    """Credential store is unavailable. Try again."""


class BackgroundTaskError(VaultError):
    """A background task failed."""


class EntryValidationError(VaultError):
    """Entry is not valid."""


class ClipboardError(VaultError):
    """Clipboard is unavailable."""


class ConfigError(Exception):
    """No writable configuration location. Fatal at startup."""
