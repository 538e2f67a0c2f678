"""
TotpVault - an offline TOTP authenticator with an encrypted vault
"""
# ==============================================================
# Standard imports
# ==============================================================
import os
import sys
import time
import asyncio
import getpass
import logging

# ==============================================================
# Other imports
# ==============================================================

try:
    import pendulum
    from .config.config_vault import *
    from .config.logging_config import setup_logging, timestamp
    from .utils.app_config import AppConfig
    from .utils.errors import ConfigError
    from .utils.session import (
        Session, SelectIdentity, Unlock, CreateEntry, EditEntry, DeleteEntry,
        MoveEntry, CopyCode, Logout, DismissNotification,
    )
    from .utils.vault_store import CredentialStore, PassphraseStore
    from .utils.user_input import get_int, get_text

except ImportError as e:
    missing_package = e.name if hasattr(e, "name") else "unknown package"
    print("Missing required dependency!")
    print(f"  {missing_package} is not installed")
    logging.error(f"  {missing_package} is not installed. See pyproject.toml")
    print("\nInstall with:")
    print("  pip install .")
    time.sleep(3)
    sys.exit(1)

logger = logging.getLogger(__name__)

# ==============================================================
# Functions
# ==============================================================

def wipe_terminal(force=False):
    """
    Clears the terminal screen if CLEAR_SCREEN set to True.

    Args:
        force: Clear even when CLEAR_SCREEN is False.
    """
    if CLEAR_SCREEN or force:
        os.system('cls' if os.name == 'nt' else 'clear')


async def ask(fn, *args):
    """Run a blocking prompt in a thread so timers keep ticking."""
    return await asyncio.to_thread(fn, *args)


async def show_notifications(session: Session) -> None:
    """Print pending notifications once, then dismiss them."""
    for note in session.snapshot().notifications:
        print(f" ! {note.message}")
        await session.dispatch(DismissNotification(note.id))


def print_entries(session: Session) -> list[str]:
    """
    Print the unlocked vault in order.

    Returns:
        Entry ids in the order displayed.
    """
    entries = session.snapshot().entries
    if not entries:
        print("Empty vault. Add an entry to get started.")
        return []

    print(SEP_SM)
    print(f" {'#':>3}  {'Label':<{LABEL_LEN}} {'Issuer':<{ISSUER_LEN}} {'Code':>12}  Left")
    print(SEP_SM)
    for i, view in enumerate(entries):
        label = view.label if len(view.label) <= LABEL_LEN else view.label[:LABEL_LEN-3] + "..."
        issuer = view.issuer or ""
        issuer = issuer if len(issuer) <= ISSUER_LEN else issuer[:ISSUER_LEN-3] + "..."
        left = f"{view.remaining_seconds:>3}s" if view.remaining_seconds is not None else "  -"
        print(f" {i+1:>3}  {label:<{LABEL_LEN}} {issuer:<{ISSUER_LEN}} {view.pretty_code:>12}  {left}")
    print(SEP_SM)
    return [view.id for view in entries]


async def watch_codes(session: Session) -> None:
    """Redraw codes once a second until Enter is pressed."""
    async def redraw():
        while True:
            wipe_terminal()
            print("Live codes. Press Enter to return.\n")
            print_entries(session)
            await asyncio.sleep(1)

    painter = asyncio.create_task(redraw())
    try:
        await ask(input)
    finally:
        painter.cancel()


def display_entry(entry) -> None:
    """Print the stored settings of one entry. The secret is never shown."""
    print(SEP_LG)
    print(f"Label        : {entry.label}")
    print(f"Issuer       : {entry.issuer or ''}")
    print(f"Algorithm    : {entry.algorithm.value}")
    print(f"Digits       : {entry.digits}")
    print(f"Step         : {entry.step}s")
    print(f"Secret       : **protected**")

    # === Timestamps =======================================================
    dates = []
    for value in (entry.created, entry.edited):
        try:
            dates.append(pendulum.parse(value).in_timezone('local').format(DT_FORMAT))
        except (ValueError, AttributeError):
            dates.append("unknown")

    print(f"Created      : {dates[0]}")
    print(f"Last Edited  : {dates[1]}")
    print(SEP_LG)


async def choose_entry(session: Session) -> str | None:
    ids = print_entries(session)
    if not ids:
        return None
    selection = await ask(get_int, "\n Select entry: ", None, 1, len(ids))
    if selection is None:
        return None
    return ids[selection - 1]


async def ask_entry_fields(current=None) -> dict:
    """Prompt for the editable fields of an entry."""
    fields = {}
    fields["label"] = await ask(get_text, "Label (required)", current.label if current else "")
    fields["issuer"] = await ask(get_text, "Issuer", (current.issuer or "") if current else "") or None
    secret = await ask(getpass.getpass, "Secret key (base32, Enter to keep): " if current else "Secret key (base32): ")
    if secret.strip():
        fields["secret"] = secret
    fields["algorithm"] = await ask(get_text, "Algorithm (SHA1/SHA256/SHA512)",
                                    current.algorithm.value if current else DEFAULT_ALGORITHM)
    fields["digits"] = await ask(get_int, f"Digits [{current.digits if current else DEFAULT_DIGITS}]: ",
                                 current.digits if current else DEFAULT_DIGITS, MIN_DIGITS, MAX_DIGITS)
    fields["step"] = await ask(get_int, f"Step seconds [{current.step if current else DEFAULT_STEP}]: ",
                               current.step if current else DEFAULT_STEP, 1, None)
    return {name: value for name, value in fields.items() if name == "issuer" or value is not None}


async def login(session: Session) -> bool:
    """
    Select an identity and unlock its vault.

    Returns:
        True once unlocked, False if the user quits.
    """
    await session.start()
    await session.settle()

    while True:
        snap = session.snapshot()
        await show_notifications(session)

        if snap.state == "unlocked":
            return True

        if snap.state == "no-identity":
            identity = await ask(get_text, "\nIdentity ((q) to quit)")
            if identity in ("", "q"):
                return False
            await session.dispatch(SelectIdentity(identity))

        elif snap.needs_passphrase:
            prompt = "New vault passphrase: " if snap.new_vault else f"Passphrase for {snap.identity}: "
            passphrase = await ask(getpass.getpass, prompt)
            if snap.new_vault and passphrase:
                confirm = await ask(getpass.getpass, "Confirm passphrase: ")
                if passphrase != confirm:
                    print("Passphrases do not match.")
                    continue
            await session.dispatch(Unlock(passphrase))

        elif snap.load_failed:
            retry = await ask(get_text, "Retry loading? (y/n)", "y")
            if retry.lower() != "y":
                await session.dispatch(Logout())
                continue
            await session.dispatch(Unlock(""))

        await session.settle()


async def run(session: Session) -> int:
    print(f"--- TotpVault v{VERSION} ---\n")

    if not await login(session):
        return 0

    choice = ''
    while True:
        await session.settle()
        if choice != "9":
            wipe_terminal()
        await show_notifications(session)

        print(f"\n--- {session.snapshot().identity} ---")
        print_entries(session)
        print("\n 1) Add   2) Edit   3) Delete   4) Move up   5) Move down")
        print(" 6) Copy code   7) Watch codes   8) Logout   9) Refresh   0) Quit")
        choice = (await ask(input, " > ")).strip()

        # == ADD ENTRY =====================================
        if choice == "1":
            fields = await ask_entry_fields()
            if "secret" not in fields:
                print("Secret key cannot be empty!")
                continue
            await session.dispatch(CreateEntry(**fields))

        # == EDIT ENTRY =====================================
        elif choice == "2":
            eid = await choose_entry(session)
            if eid is None:
                continue
            current = session.state.vault.get(eid)
            display_entry(current)
            changes = await ask_entry_fields(current)
            await session.dispatch(EditEntry(eid, changes))

        # == DELETE ENTRY =====================================
        elif choice == "3":
            eid = await choose_entry(session)
            if eid is None:
                continue
            confirm = await ask(input, "\nDelete this entry permanently? (type 'del' to confirm): ")
            if confirm.strip().lower() == "del":
                await session.dispatch(DeleteEntry(eid))

        # == REORDER =====================================
        elif choice in ("4", "5"):
            eid = await choose_entry(session)
            if eid is not None:
                await session.dispatch(MoveEntry(eid, -1 if choice == "4" else 1))

        # == COPY CODE =====================================
        elif choice == "6":
            eid = await choose_entry(session)
            if eid is not None:
                before = len(session.notifications)
                await session.dispatch(CopyCode(eid))
                if len(session.notifications) == before:
                    print(f" Copied! (auto-clears in {CLIPBOARD_TIMEOUT}s)")
                    await ask(input, " Press Enter to continue...")

        elif choice == "7":
            await watch_codes(session)

        # == LOGOUT =====================================
        elif choice == "8":
            await session.dispatch(Logout())
            wipe_terminal()
            if not await login(session):
                return 0

        elif choice == "9":
            continue

        elif choice in ("0", "q"):
            print("Goodbye!")
            return 0

        else:
            print("Invalid Choice")


async def amain(config: AppConfig) -> int:
    print("\n Use the system credential store? (n = passphrase-encrypted vault)")
    choice = input(" (y/n): ").strip().lower()
    store = CredentialStore() if choice != "n" else PassphraseStore(config)

    session = Session(store, config)
    try:
        return await run(session)
    finally:
        await session.close()


# ==============================================================
# MAIN
# ==============================================================
def main() -> int:
    try:
        config = AppConfig.open()
    except ConfigError as e:
        setup_logging()
        logger.critical(f"[{timestamp()}] {e}")
        print(f"Cannot start: {e}", file=sys.stderr)
        return 1

    setup_logging(config.path.parent)
    logger.info(f"[{timestamp()}] Started TotpVault v{VERSION}")

    try:
        return asyncio.run(amain(config))
    except (KeyboardInterrupt, EOFError):
        print("\nGoodbye!")
        return 0


if __name__ == "__main__":
    sys.exit(main())
