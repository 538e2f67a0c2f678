import json
import logging
import os
import stat
import threading
from pathlib import Path
from typing import Any, Optional

from ..config.config_vault import CONFIG_DIR, CONFIG_FILE, KEY_LAST_USER, UTF8
from ..config.logging_config import timestamp
from .crypto_utils import bytes_to_str, str_to_bytes
from .errors import ConfigError, ParseError

logger = logging.getLogger(__name__)


class AppConfig:
    """
    Local application configuration: one JSON object on disk.

    Values are read and written by key. Writes replace the whole file
    atomically. Safe to use from worker threads.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()

    @classmethod
    def open(cls, directory: Path | str | None = None) -> "AppConfig":
        """
        Open the configuration in `directory` (default CONFIG_DIR).

        Creates the directory if needed and checks it is writable.

        Raises:
            ConfigError: If no writable location can be obtained.
        """
        directory = Path(directory) if directory is not None else CONFIG_DIR
        try:
            directory.mkdir(parents=True, exist_ok=True)
            marker = directory / ".write-test"
            marker.write_bytes(b"")
            marker.unlink()
        except OSError as e:
            raise ConfigError(f"Configuration folder {directory} is not writable: {e}") from e
        return cls(directory / CONFIG_FILE)

    def _read(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with self.path.open("r", encoding=UTF8) as f:
                data = json.load(f)
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.error(f"[{timestamp()}] Config file {self.path} is not valid JSON")
            raise ParseError("Configuration file is corrupted") from None
        if not isinstance(data, dict):
            raise ParseError("Configuration file is corrupted")
        return data

    def _write(self, data: dict[str, Any]) -> None:
        # Write to temporary file first.
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp, "w", encoding=UTF8) as f:
            json.dump(data, f, indent=2)
            f.flush()
            os.fsync(f.fileno()) # force to disk
        try:
            os.chmod(tmp, stat.S_IRUSR | stat.S_IWUSR)  # 600
        except OSError:
            logger.warning(f"[{timestamp()}] Could not restrict permissions on {tmp}")

        # Atomic replace the config file.
        os.replace(tmp, self.path)

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._read().get(key, default)

    def set(self, key: str, value: Any) -> None:
        """Store `value`, or remove the key when `value` is None."""
        with self._lock:
            data = self._read()
            if value is None:
                data.pop(key, None)
            else:
                data[key] = value
            self._write(data)

    def get_bytes(self, key: str) -> Optional[bytes]:
        value = self.get(key)
        if value is None:
            return None
        try:
            return str_to_bytes(value)
        except (ValueError, TypeError):
            raise ParseError(f"Configuration value '{key}' is corrupted") from None

    def set_bytes(self, key: str, value: Optional[bytes]) -> None:
        self.set(key, None if value is None else bytes_to_str(value))

    @property
    def last_user(self) -> Optional[str]:
        return self.get(KEY_LAST_USER)

    @last_user.setter
    def last_user(self, identity: Optional[str]) -> None:
        self.set(KEY_LAST_USER, identity)
