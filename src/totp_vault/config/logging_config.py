import logging
import os
import sys
import traceback
from pathlib import Path
import pendulum

from .config_vault import LOG_FILE


def setup_logging(log_dir: Path | None = None, level: int = logging.WARNING) -> None:
    """
    Send log records to error.log.

    The file lives in `log_dir` when given (normally the config folder),
    otherwise in the working directory. Does nothing if the root logger
    already has handlers.
    """
    if logging.getLogger().handlers:
        return  # already configured

    filename = Path(log_dir) / LOG_FILE if log_dir is not None else Path(LOG_FILE)

    logging.basicConfig(
        filename=filename,
        filemode="a",
        level=level,
        format="%(levelname)s %(name)s %(message)s",
    )

    sys.excepthook = log_uncaught_exceptions


def timestamp() -> str:
    """Current local time as an ISO-8601 string, used as log prefix."""
    return pendulum.now().to_iso8601_string()


def log_uncaught_exceptions(exctype, value, tb):
    now = timestamp()

    lines = []
    for frame in traceback.extract_tb(tb):
        filename = os.path.basename(frame.filename)
        lines.append(
            f'  File "{filename}", line {frame.lineno}, in {frame.name}'
        )

    trace_summary = "\n".join(reversed(lines)) if lines else "  <no traceback>"
    error_msg = f"{exctype.__name__}: {value}"

    logging.error(
        f"[{now}] Uncaught exception: {error_msg}\n"
        f"Traceback (most recent call last):\n"
        f"{trace_summary}\n"
        f"{error_msg}\n"
    )

    print("\nError! Something went wrong.", file=sys.stderr)
    print(f"Details saved to {LOG_FILE}\n", file=sys.stderr)
