"""
Vault persistence backends.

Two interchangeable stores load and save the ordered entry list of an
identity:

- CredentialStore keeps the vault JSON in the platform credential store
  (keyring), addressed by (APP_ID, identity).
- PassphraseStore keeps an encrypted blob under the `secrets` key of the
  local application config. The blob is opened with a passphrase.

Blocking work (keyring calls, Argon2id, file writes) runs on a worker
pool and rejoins the event loop. Writes are sequenced: every save carries
a generation number and a write older than one already stored is skipped.
"""
import asyncio
import enum
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from functools import partial
from typing import Awaitable, Callable, Optional

import keyring
from keyring.errors import KeyringError

from ..config.config_vault import APP_ID, KEY_SECRETS, UTF8, WORKER_THREADS
from ..config.logging_config import timestamp
from .app_config import AppConfig
from .crypto_utils import VaultKey, seal, unseal
from .errors import (
    BackgroundTaskError, DecryptAuthError, PlatformStoreError, VaultError,
)
from .vault_utils import Vault

logger = logging.getLogger(__name__)


@dataclass
class Loaded:
    """Vault read and parsed, no passphrase needed."""
    vault: Vault


@dataclass
class NotFound:
    """Nothing stored for this identity yet."""


@dataclass
class Sealed:
    """Encrypted blob read, waiting for a passphrase."""
    blob: bytes

    def __repr__(self):
        return f"Sealed(blob=<{len(self.blob)} bytes>)"


@dataclass
class Unsealed:
    """Result of a successful unlock."""
    vault: Vault
    key: Optional[VaultKey] = None


LoadResult = Loaded | NotFound | Sealed


class SaveOutcome(enum.Enum):
    SAVED = "saved"
    STALE = "stale"     # a newer save was already written


class WriteSequencer:
    """
    Orders writes issued by concurrent save tasks.

    Writes run under one lock. A write whose generation is older than the
    newest one written is dropped instead of overwriting newer data.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._written = 0

    @property
    def written(self) -> int:
        return self._written

    def run(self, generation: int, write: Callable[[], None]) -> SaveOutcome:
        with self._lock:
            if generation < self._written:
                return SaveOutcome.STALE
            write()
            self._written = generation
            return SaveOutcome.SAVED


class VaultStore:
    """Common contract of both backends."""

    name = "store"
    needs_passphrase = False

    def __init__(self, executor: Optional[ThreadPoolExecutor] = None):
        self._executor = executor or ThreadPoolExecutor(
            max_workers=WORKER_THREADS, thread_name_prefix="vault-io"
        )
        self.sequencer = WriteSequencer()

    async def _run(self, fn, *args):
        """Run blocking `fn` on the worker pool and await its result."""
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(self._executor, partial(fn, *args))
        except VaultError:
            raise
        except Exception as e:
            logger.error(f"[{timestamp()}] {self.name}: background task failed: {e!r}")
            raise BackgroundTaskError(f"Background task failed: {e}") from e

    async def offload(self, fn, *args):
        """Run other blocking work (config writes) on this store's workers."""
        return await self._run(fn, *args)

    async def load(self, identity: str) -> LoadResult:
        raise NotImplementedError

    async def unlock(self, identity: str, blob: Optional[bytes], passphrase: str) -> Unsealed:
        raise NotImplementedError

    def save(self, identity: str, vault: Vault, generation: int) -> Awaitable[SaveOutcome]:
        """
        Capture the vault now and return an awaitable that writes it.

        Serialization (and encryption) happens before this returns, so
        later changes to `vault` or the key never affect the write.
        """
        raise NotImplementedError

    def activate(self, key: Optional[VaultKey]) -> None:
        """Adopt the key of a successful unlock."""

    def forget(self) -> None:
        """Drop any key material held for the current identity."""

    def close(self) -> None:
        self.forget()
        self._executor.shutdown(wait=False)


class CredentialStore(VaultStore):
    """
    Vault JSON stored as the secret of a platform credential entry.

    Args:
        app_id: Service name of the credential entry.
        backend: keyring backend to use. Defaults to the platform keyring.
    """

    name = "credential store"

    def __init__(self, app_id: str = APP_ID, backend=None,
                 executor: Optional[ThreadPoolExecutor] = None):
        super().__init__(executor)
        self.app_id = app_id
        self._backend = backend

    def _keyring(self):
        return self._backend if self._backend is not None else keyring.get_keyring()

    def _read(self, identity: str) -> LoadResult:
        try:
            raw = self._keyring().get_password(self.app_id, identity)
        except KeyringError as e:
            logger.error(f"[{timestamp()}] Failed to read credential for '{identity}': {e!r}")
            raise PlatformStoreError(f"Could not read from the credential store: {e}") from e
        if raw is None:
            return NotFound()
        return Loaded(Vault.from_bytes(raw))

    def _write(self, identity: str, payload: str) -> None:
        try:
            self._keyring().set_password(self.app_id, identity, payload)
        except KeyringError as e:
            logger.error(f"[{timestamp()}] Failed to write credential for '{identity}': {e!r}")
            raise PlatformStoreError(f"Could not write to the credential store: {e}") from e

    async def load(self, identity: str) -> LoadResult:
        return await self._run(self._read, identity)

    def save(self, identity: str, vault: Vault, generation: int) -> Awaitable[SaveOutcome]:
        payload = vault.to_bytes().decode(UTF8)
        return self._run(self.sequencer.run, generation, partial(self._write, identity, payload))


class PassphraseStore(VaultStore):
    """
    Vault encrypted under a passphrase and kept in the application config.

    The derived key of the unlocked vault is held until `forget()` so each
    save only runs the fast AEAD step.
    """

    name = "passphrase store"
    needs_passphrase = True

    def __init__(self, config: AppConfig, executor: Optional[ThreadPoolExecutor] = None):
        super().__init__(executor)
        self.config = config
        self._key: Optional[VaultKey] = None

    @property
    def has_key(self) -> bool:
        return self._key is not None and not self._key.wiped

    async def load(self, identity: str) -> LoadResult:
        blob = await self._run(self.config.get_bytes, KEY_SECRETS)
        if not blob:
            return NotFound()
        return Sealed(blob)

    def _open(self, blob: Optional[bytes], passphrase: str) -> Unsealed:
        if blob is None:
            return Unsealed(Vault(), VaultKey.create(passphrase))
        vault_key, plaintext = unseal(passphrase, blob)
        try:
            return Unsealed(Vault.from_bytes(plaintext), vault_key)
        except VaultError:
            vault_key.wipe()
            raise

    async def unlock(self, identity: str, blob: Optional[bytes], passphrase: str) -> Unsealed:
        """
        Derive the key and open `blob`, or create a new key when `blob` is None.

        Raises:
            DecryptAuthError: Wrong passphrase or corrupted blob.
            ParseError: Decrypted data is not a vault.
        """
        return await self._run(self._open, blob, passphrase)

    def activate(self, key: Optional[VaultKey]) -> None:
        self.forget()
        self._key = key

    def forget(self) -> None:
        if self._key is not None:
            self._key.wipe()
        self._key = None

    def save(self, identity: str, vault: Vault, generation: int) -> Awaitable[SaveOutcome]:
        if not self.has_key:
            raise DecryptAuthError("Passphrase has not been set, unable to encrypt vault")
        blob = seal(self._key, vault.to_bytes())
        return self._run(self.sequencer.run, generation,
                         partial(self.config.set_bytes, KEY_SECRETS, blob))
