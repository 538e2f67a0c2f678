import logging
import threading
import time
import pyperclip

from ..config.config_vault import CLIPBOARD_TIMEOUT
from ..config.logging_config import timestamp
from .errors import ClipboardError

logger = logging.getLogger(__name__)


def copy_to_clipboard(text: str, timeout: int = CLIPBOARD_TIMEOUT) -> None:
    """
    Copy a code to the system clipboard with optional auto-clear.

    If a timeout is specified, a background daemon thread clears the
    clipboard after the delay, unless something else was copied since.

    Args:
        text: Text to copy to the clipboard.
        timeout: Number of seconds before the clipboard is cleared.
            A value of 0 or less disables auto-clear.

    Raises:
        ClipboardError: If no clipboard mechanism is available.
    """
    if not text:
        return

    try:
        pyperclip.copy(text)
    except pyperclip.PyperclipException as e:
        raise ClipboardError(f"Could not copy to clipboard: {e}") from e

    if timeout <= 0:
        return

    def auto_clear():
        time.sleep(timeout)
        try:
            if pyperclip.paste() == text:
                pyperclip.copy("")
        except pyperclip.PyperclipException as e:
            # nobody is waiting on this thread, so log instead of raising
            logger.warning(f"[{timestamp()}] Could not clear clipboard: {e}")

    threading.Thread(target=auto_clear, daemon=True).start()
