import re


def get_int(prompt: str, default=None, minimum: int = None, maximum: int = None):
    """
    Prompt the user until a valid integer is entered.

    Allows the user to press Enter to accept a default value if provided.
    Rejects any input containing non-digit characters (a leading minus is
    allowed) and values outside [minimum, maximum].

    Args:
        prompt: Text displayed to the user.
        default: Value returned if the user submits empty input. If None,
            the prompt repeats until a valid integer is entered.
        minimum: Smallest accepted value, or None.
        maximum: Largest accepted value, or None.

    Returns:
        An integer parsed from user input, the default value if accepted,
        or None if the user enters 'q' to quit.
    """
    while True:
        val = input(prompt).strip()

        # User hit enter for default value
        if not val and default is not None:
            return default
        # Allow quitting with "q"
        if val == 'q':
            return None
        if re.fullmatch(r"-?[0-9]+", val):
            number = int(val)
            if (minimum is None or number >= minimum) and (maximum is None or number <= maximum):
                return number

        bounds = f"{minimum if minimum is not None else ''}-{maximum if maximum is not None else ''}"
        print(f"   Invalid: numbers only ({bounds})  (q) to quit")


def get_text(prompt: str, default: str = "") -> str:
    """
    Prompt for a line of text, showing the current value in brackets.

    Returns:
        The stripped input, or `default` when the user just presses Enter.
    """
    shown = f" [{default}]" if default else ""
    val = input(f"{prompt}{shown}: ").strip()
    return val or default
