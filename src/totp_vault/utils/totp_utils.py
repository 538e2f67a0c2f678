import base64
import pyotp

from .Entry import Algorithm, Entry


def generate(secret: bytes, algorithm: Algorithm | str, digits: int,
             step: int, unix_time: float) -> str:
    """
    Generate the TOTP code valid at `unix_time`.

    counter = floor(unix_time / step), then standard HOTP (RFC 4226)
    with the chosen hash and dynamic truncation to `digits` digits,
    left-padded with zeros.

    Args:
        secret: Raw key bytes. Must not be empty.
        algorithm: Hash function of the entry.
        digits: Output length.
        step: Window length in seconds.
        unix_time: Seconds since the epoch.

    Returns:
        The code as a string of exactly `digits` characters.

    Raises:
        ValueError: If the secret is empty, step is not positive or the
            time is before the epoch.
    """
    if not secret:
        raise ValueError("secret cannot be empty")
    if step <= 0:
        raise ValueError("step must be positive")

    counter = int(unix_time // step)
    hotp = pyotp.HOTP(
        base64.b32encode(bytes(secret)).decode("ascii"),
        digits=digits,
        digest=Algorithm.parse(algorithm).hashfunc,
    )
    return hotp.at(counter)


def remaining_seconds(unix_time: float, step: int) -> int:
    """Whole seconds left in the current window, always in [1, step]."""
    return step - (int(unix_time) % step)


def elapsed_fraction(unix_time: float, step: int) -> float:
    """Portion of the current window already elapsed, in [0, 1)."""
    return (unix_time % step) / step


def generate_for(entry: Entry, unix_time: float) -> str:
    """`generate` using the parameters stored on an entry."""
    return generate(entry.secret, entry.algorithm, entry.digits, entry.step, unix_time)


def pretty_code(code: str | None) -> str:
    """Split a code in two halves for display, '...' when not computed yet."""
    if not code:
        return "..."
    return f"{code[:len(code)//2]} {code[len(code)//2:]}"
