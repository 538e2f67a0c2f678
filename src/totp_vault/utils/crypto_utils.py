import base64
import secrets
import struct
from dataclasses import dataclass
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305
from argon2.low_level import hash_secret_raw, Type
from argon2.exceptions import HashingError

from ..config.config_vault import *
from .errors import DecryptAuthError

# magic, version, time cost, memory cost (KiB), parallelism, salt length
_HEADER = struct.Struct(">4sBIIBB")


def derive_key(pw: bytes, salt: bytes, time_cost: int = None,
               memory_cost: int = None, parallelism: int = None) -> bytes:
    """
    Derive a symmetric encryption key from a passphrase and salt using Argon2id.

    Applies the Argon2id hashing function to produce a fixed-length
    key suitable for use with encryption. Parameters left as None use
    the configured defaults.

    Args:
        pw: Passphrase as raw bytes.
        salt: Cryptographic salt as raw bytes.

    Returns:
        A 32-byte key.

    Security:
        - Argon2id provides resistance to brute force attacks.
        - The salt is not secret but must be unique per vault.
    """
    return hash_secret_raw(
        secret=pw,
        salt=salt,
        time_cost=ARGON_TIME if time_cost is None else time_cost,
        memory_cost=ARGON_MEMORY if memory_cost is None else memory_cost,
        parallelism=ARGON_PARALLELISM if parallelism is None else parallelism,
        hash_len=ARGON_HASH_LEN,
        type=Type.ID
    )


@dataclass
class VaultKey:
    """
    A passphrase-derived key together with the parameters that produced it.

    Kept while a passphrase vault is unlocked so saves do not repeat the
    expensive derivation. `wipe()` zeroes the key buffer.
    """
    key: bytearray
    salt: bytes
    time_cost: int
    memory_cost: int
    parallelism: int

    @classmethod
    def create(cls, passphrase: str) -> "VaultKey":
        """Derive a key for a brand-new vault with a fresh salt."""
        salt = secrets.token_bytes(SALT_LEN)
        return cls.derive(passphrase, salt, ARGON_TIME, ARGON_MEMORY, ARGON_PARALLELISM)

    @classmethod
    def derive(cls, passphrase: str, salt: bytes, time_cost: int,
               memory_cost: int, parallelism: int) -> "VaultKey":
        key = derive_key(passphrase.encode(UTF8), salt, time_cost, memory_cost, parallelism)
        return cls(bytearray(key), salt, time_cost, memory_cost, parallelism)

    @property
    def wiped(self) -> bool:
        return not any(self.key)

    def header(self) -> bytes:
        return _HEADER.pack(
            BLOB_MAGIC, BLOB_VERSION,
            self.time_cost, self.memory_cost, self.parallelism,
            len(self.salt)
        ) + self.salt

    def wipe(self) -> None:
        """
        Overwrite the key buffer with zeros.

        Side Effects:
            The key can no longer encrypt or decrypt anything.
        """
        for i in range(len(self.key)):
            self.key[i] = 0

    def __repr__(self):
        return f"VaultKey(key=<hidden>, time_cost={self.time_cost}, memory_cost={self.memory_cost})"


def seal(vault_key: VaultKey, plaintext: bytes) -> bytes:
    """
    Encrypt plaintext into a self-contained blob.

    Layout: header (magic, version, Argon2id parameters, salt) + nonce +
    ChaCha20-Poly1305 ciphertext and tag. The header is bound to the
    ciphertext as associated data.

    Raises:
        ValueError: If the key has been wiped.

    Security:
        - A fresh random nonce is generated for every call.
    """
    if vault_key.wiped:
        raise ValueError("Key has been wiped")

    header = vault_key.header()
    nonce = secrets.token_bytes(NONCE_LEN)
    aead = ChaCha20Poly1305(bytes(vault_key.key))
    ciphertext = aead.encrypt(nonce=nonce, data=plaintext, associated_data=header)
    return header + nonce + ciphertext


def unseal(passphrase: str, blob: bytes) -> tuple[VaultKey, bytes]:
    """
    Derive the key for `blob` from `passphrase` and decrypt it.

    Returns:
        The derived VaultKey (reusable for later saves) and the plaintext.

    Raises:
        DecryptAuthError: If the passphrase is wrong or the blob is
            truncated, tampered with or not a vault blob.

    Security:
        - Authentication is verified before plaintext is released.
        - On failure the derived key is wiped before raising.
    """
    blob = bytes(blob)
    try:
        magic, version, time_cost, memory_cost, parallelism, salt_len = \
            _HEADER.unpack_from(blob)
    except struct.error:
        raise DecryptAuthError("Vault data is truncated or corrupted") from None

    if magic != BLOB_MAGIC or version != BLOB_VERSION:
        raise DecryptAuthError("Vault data is not in a supported format")

    body = _HEADER.size + salt_len
    if len(blob) < body + NONCE_LEN:
        raise DecryptAuthError("Vault data is truncated or corrupted")

    # Refuse parameters that would stall or exhaust memory before the tag check.
    if not (1 <= time_cost <= 64 and 1 <= parallelism <= 64
            and memory_cost <= 4 * 1024 * 1024):
        raise DecryptAuthError("Vault data has invalid key parameters")

    header = blob[:body]
    salt = blob[_HEADER.size:body]
    nonce = blob[body:body + NONCE_LEN]
    ciphertext = blob[body + NONCE_LEN:]

    try:
        vault_key = VaultKey.derive(passphrase, salt, time_cost, memory_cost, parallelism)
    except HashingError:
        raise DecryptAuthError("Vault data has invalid key parameters") from None

    try:
        plaintext = ChaCha20Poly1305(bytes(vault_key.key)).decrypt(
            nonce=nonce,
            data=ciphertext,
            associated_data=header
        )
    except InvalidTag:
        vault_key.wipe()
        raise DecryptAuthError("Could not decrypt vault - wrong passphrase or corrupted data") from None
    return vault_key, plaintext


def encrypt_blob(passphrase: str, plaintext: bytes) -> bytes:
    """One-shot encryption under a new salt."""
    vault_key = VaultKey.create(passphrase)
    try:
        return seal(vault_key, plaintext)
    finally:
        vault_key.wipe()


def decrypt_blob(passphrase: str, blob: bytes) -> bytes:
    """
    One-shot decryption.

    Raises:
        DecryptAuthError: Wrong passphrase or corrupted blob.
    """
    vault_key, plaintext = unseal(passphrase, blob)
    vault_key.wipe()
    return plaintext


def str_to_bytes(b64_str: str) -> bytes:
    """
    Decode a URL-safe base64 string into bytes.

    Args:
        b64_str: Base64 string (may omit padding).

    Raises:
        binascii.Error if input is invalid.
    """
    padding = "=" * (-len(b64_str) % 4)
    return base64.urlsafe_b64decode(b64_str + padding)


def bytes_to_str(byt_str: bytes) -> str:
    """Encode bytes into a URL-safe base64 string without padding."""
    return base64.urlsafe_b64encode(byt_str).decode("ascii").rstrip("=")
