from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional
import base64, binascii, hashlib, secrets
import pendulum

from ..config.config_vault import (
    DEFAULT_ALGORITHM, DEFAULT_DIGITS, DEFAULT_STEP, DEFAULT_SKEW,
    MIN_DIGITS, MAX_DIGITS, EID_LEN,
)
from .errors import SecretDecodeError, EntryValidationError


class Algorithm(str, Enum):
    """Hash functions a TOTP entry may use."""
    SHA1 = "SHA1"
    SHA256 = "SHA256"
    SHA512 = "SHA512"

    @property
    def hashfunc(self):
        return {
            Algorithm.SHA1: hashlib.sha1,
            Algorithm.SHA256: hashlib.sha256,
            Algorithm.SHA512: hashlib.sha512,
        }[self]

    @classmethod
    def parse(cls, value: "str | Algorithm") -> "Algorithm":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).upper().replace("-", ""))
        except ValueError:
            raise EntryValidationError(f"Unknown algorithm: {value}") from None


@dataclass(frozen=True)
class ImageIcon:
    path: str

    def to_dict(self) -> dict:
        return {"Image": {"path": self.path}}


@dataclass(frozen=True)
class InitialsIcon:
    text: str

    def to_dict(self) -> dict:
        return {"Initials": {"text": self.text}}


Icon = ImageIcon | InitialsIcon


def icon_from_dict(data: dict) -> Icon:
    """Inverse of `to_dict` on either icon type."""
    if "Image" in data:
        return ImageIcon(path=str(data["Image"]["path"]))
    if "Initials" in data:
        return InitialsIcon(text=str(data["Initials"]["text"]))
    raise ValueError(f"Unknown icon: {data!r}")


def derive_initials(name: str) -> str:
    """
    Build a 1-2 character fallback icon text from a name.

    Uses the first letters of the first two words. A single word gives its
    first two characters, an empty name gives "-".
    """
    words = name.split()
    if len(words) >= 2:
        return words[0][0] + words[1][0]
    return name.strip()[:2] or "-"


def decode_secret(encoded: str) -> bytes:
    """
    Decode a user supplied base32 secret to raw bytes.

    Spaces, dashes and missing padding are tolerated and lowercase is
    accepted. A 10 byte result is right-padded with 6 zero bytes to reach
    16, other lengths are returned as-is.

    Raises:
        SecretDecodeError: If the text is empty or not valid base32.
    """
    if not isinstance(encoded, str):
        raise SecretDecodeError("Secret key must be text")

    cleaned = "".join(encoded.split()).replace("-", "").upper().rstrip("=")
    if not cleaned:
        raise SecretDecodeError("Secret key cannot be empty")

    cleaned += "=" * (-len(cleaned) % 8)
    try:
        secret = base64.b32decode(cleaned, casefold=False)
    except (binascii.Error, ValueError) as e:
        raise SecretDecodeError(f"Failed to parse secret key: {e}") from None

    if not secret:
        raise SecretDecodeError("Secret key cannot be empty")

    # Some exporters hand out 80-bit keys that other apps zero-extend.
    if len(secret) == 10:
        secret += bytes(6)
    return secret


def new_entry_id() -> str:
    """Random URL-safe entry identifier."""
    return base64.urlsafe_b64encode(secrets.token_bytes(EID_LEN)).decode("ascii").rstrip("=")


@dataclass(frozen=True)
class Entry:
    """
    A persisted TOTP credential.

    Holds only what is written to the vault. Runtime values (last code,
    countdown) live in a separate EntryRuntime keyed by `id`.
    """
    label: str
    secret: bytes
    id: str = field(default_factory=new_entry_id)
    issuer: Optional[str] = None
    icon: Optional[Icon] = None
    algorithm: Algorithm = Algorithm(DEFAULT_ALGORITHM)
    digits: int = DEFAULT_DIGITS
    step: int = DEFAULT_STEP
    skew: int = DEFAULT_SKEW
    created: str = field(default_factory=lambda: pendulum.now().to_iso8601_string())
    edited: str = field(default_factory=lambda: pendulum.now().to_iso8601_string())

    def __post_init__(self):
        """
        Validate and normalize fields.

        Frozen, so normalized values are written with object.__setattr__.
        """
        if not isinstance(self.label, str) or not self.label.strip():
            raise EntryValidationError("Label cannot be empty")
        object.__setattr__(self, "label", self.label.strip())

        if self.issuer is not None and not isinstance(self.issuer, str):
            raise EntryValidationError("Issuer must be text")
        issuer = (self.issuer or "").strip() or None
        object.__setattr__(self, "issuer", issuer)

        if not self.id:
            raise EntryValidationError("Entry id cannot be empty")
        if not isinstance(self.secret, (bytes, bytearray)) or not self.secret:
            raise EntryValidationError("Secret cannot be empty")
        object.__setattr__(self, "secret", bytes(self.secret))

        object.__setattr__(self, "algorithm", Algorithm.parse(self.algorithm))

        if isinstance(self.digits, bool) or not isinstance(self.digits, int) \
                or not MIN_DIGITS <= self.digits <= MAX_DIGITS:
            raise EntryValidationError(f"Digits must be between {MIN_DIGITS} and {MAX_DIGITS}")
        if isinstance(self.step, bool) or not isinstance(self.step, int) or self.step <= 0:
            raise EntryValidationError("Step must be a positive number of seconds")
        if isinstance(self.skew, bool) or not isinstance(self.skew, int) or self.skew < 0:
            raise EntryValidationError("Skew cannot be negative")

        if self.icon is None:
            object.__setattr__(self, "icon", self.derived_icon())
        elif isinstance(self.icon, ImageIcon):
            if not isinstance(self.icon.path, str) or not self.icon.path:
                raise EntryValidationError("Icon image path must be text")
        elif isinstance(self.icon, InitialsIcon):
            if not isinstance(self.icon.text, str) or not self.icon.text:
                raise EntryValidationError("Icon initials must be text")
        else:
            raise EntryValidationError("Icon must be an image or initials")

    def derived_icon(self) -> InitialsIcon:
        """Fallback icon built from the issuer, or the label without one."""
        return InitialsIcon(derive_initials(self.issuer or self.label))

    def __repr__(self):
        return (
            f"Entry(id={self.id}, "
            f"label={self.label}, "
            f"issuer={self.issuer}, "
            f"secret=<hidden>, "
            f"algorithm={self.algorithm.value}, "
            f"digits={self.digits}, "
            f"step={self.step})"
        )

    def updated(self, **changes) -> "Entry":
        """
        Return a copy with `changes` applied and `edited` refreshed.

        `id` and `created` cannot change. Validation runs on the copy, so
        the original is untouched when it fails. Initials that were only
        derived follow a new label or issuer.
        """
        for name in ("id", "created"):
            if name in changes:
                raise EntryValidationError(f"'{name}' cannot be changed")
        if "icon" not in changes and self.icon == self.derived_icon():
            changes["icon"] = None
        changes.setdefault("edited", pendulum.now().to_iso8601_string())
        return replace(self, **changes)

    def to_dict(self) -> dict:
        """
        Serialize entry to a dictionary.

        The secret is encoded using base64. Runtime state is never included.
        """
        data = {
            "id": self.id,
            "label": self.label,
            "icon": self.icon.to_dict(),
            "secret": base64.b64encode(self.secret).decode("ascii"),
            "algorithm": self.algorithm.value,
            "digits": self.digits,
            "step": self.step,
            "skew": self.skew,
            "created_date": self.created,
            "edited_date": self.edited,
        }
        if self.issuer is not None:
            data["issuer"] = self.issuer
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Entry":
        """
        Create an entry from stored data.

        Raises:
            TypeError, KeyError, ValueError: On malformed data.
        """
        if not isinstance(data, dict):
            raise TypeError("Entry data must be a dict")
        if not isinstance(data.get("secret"), str):
            raise TypeError("Entry secret must be base64 text")

        return cls(
            id=data["id"],
            label=data["label"],
            issuer=data.get("issuer"),
            icon=icon_from_dict(data["icon"]) if data.get("icon") else None,
            secret=base64.b64decode(data["secret"].encode("ascii"), validate=True),
            algorithm=Algorithm.parse(data.get("algorithm", DEFAULT_ALGORITHM)),
            digits=data.get("digits", DEFAULT_DIGITS),
            step=data.get("step", DEFAULT_STEP),
            skew=data.get("skew", DEFAULT_SKEW),
            created=data.get("created_date", ""),
            edited=data.get("edited_date", ""),
        )


@dataclass
class EntryRuntime:
    """Non-persisted display state of one entry."""
    code: Optional[str] = None
    computed_at: Optional[float] = None
    frame_at: Optional[float] = None
    fraction: float = 0.0
