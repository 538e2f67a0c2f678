import json
import logging
from typing import Iterable, Iterator, Optional

from ..config.config_vault import UTF8
from ..config.logging_config import timestamp
from .Entry import Entry
from .errors import ParseError, EntryValidationError, VaultError

logger = logging.getLogger(__name__)


class Vault:
    """
    The ordered collection of entries of one identity.

    Order is user-defined and kept across save/load. Identifiers are
    unique within a vault.
    """

    def __init__(self, entries: Iterable[Entry] = ()):
        self._entries: list[Entry] = []
        for entry in entries:
            self.add(entry)

    def __iter__(self) -> Iterator[Entry]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self):
        return f"Vault(entries={len(self._entries)})"

    @property
    def ids(self) -> list[str]:
        return [entry.id for entry in self._entries]

    def index_of(self, eid: str) -> int:
        for i, entry in enumerate(self._entries):
            if entry.id == eid:
                return i
        raise EntryValidationError(f"No entry with id {eid}")

    def get(self, eid: str) -> Optional[Entry]:
        for entry in self._entries:
            if entry.id == eid:
                return entry
        return None

    def add(self, entry: Entry) -> None:
        """Append an entry. Raises EntryValidationError on a duplicate id."""
        if self.get(entry.id) is not None:
            raise EntryValidationError(f"Duplicate entry id {entry.id}")
        self._entries.append(entry)

    def replace(self, entry: Entry) -> Entry:
        """Swap in an edited entry at the same position, return the old one."""
        i = self.index_of(entry.id)
        old = self._entries[i]
        self._entries[i] = entry
        return old

    def remove(self, eid: str) -> Entry:
        return self._entries.pop(self.index_of(eid))

    def move(self, eid: str, offset: int) -> bool:
        """
        Swap an entry with its neighbour.

        Args:
            eid: Entry to move.
            offset: -1 to move up, +1 to move down.

        Returns:
            True if the order changed, False if the entry is already at
            that end of the list.
        """
        if offset not in (-1, 1):
            raise EntryValidationError("Entries move one position at a time")
        i = self.index_of(eid)
        j = i + offset
        if j < 0 or j >= len(self._entries):
            return False
        self._entries[i], self._entries[j] = self._entries[j], self._entries[i]
        return True

    def clear(self) -> None:
        self._entries.clear()

    def to_bytes(self) -> bytes:
        """
        Serialize the vault to compact JSON bytes.

        An ordered array of entry records. Runtime state is never included.
        """
        return json.dumps(
            [entry.to_dict() for entry in self._entries],
            separators=(",", ":"),
            ensure_ascii=False,
        ).encode(UTF8)

    @classmethod
    def from_bytes(cls, raw: bytes | str | None) -> "Vault":
        """
        Deserialize a vault from JSON bytes.

        Empty input is an empty vault, so "no entries" reads back the same
        whether a backend stored an empty value or nothing at all.

        Raises:
            ParseError: If the data is not a valid entry array.
        """
        if isinstance(raw, str):
            raw = raw.encode(UTF8)
        if raw is None or not raw.strip():
            return cls()

        try:
            data = json.loads(raw.decode(UTF8))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.error(f"[{timestamp()}] Vault data is not valid JSON: {e}")
            raise ParseError("Vault data is not valid JSON or is corrupted") from None

        if not isinstance(data, list):
            raise ParseError("Vault data must be a list of entries")

        try:
            return cls(Entry.from_dict(item) for item in data)
        except (AttributeError, KeyError, TypeError, ValueError, VaultError) as e:
            logger.error(f"[{timestamp()}] Vault data has an invalid entry: {e!r}")
            raise ParseError("Vault data contains an invalid entry") from None
