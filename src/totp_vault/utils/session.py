"""
Vault session: the locked/unlocking/unlocked state machine.

The session runs on one asyncio event loop and owns the vault, the
runtime cache and the store handle. The presentation layer reads
`snapshot()` and sends intents through `dispatch()`. Store work runs in
the background and its completion is applied back on the loop.
Every accepted mutation is followed by its own save.
"""
import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import pendulum

from ..config.config_vault import (
    DEFAULT_ALGORITHM, DEFAULT_DIGITS, DEFAULT_STEP, DEFAULT_SKEW, KEY_LAST_USER,
)
from ..config.logging_config import timestamp
from .app_config import AppConfig
from .clipboard_utils import copy_to_clipboard
from .clock_scheduler import ClockScheduler
from .Entry import Algorithm, Entry, EntryRuntime, Icon, decode_secret
from .errors import (
    DecryptAuthError, EntryValidationError, IdentityMissing, VaultError,
)
from .totp_utils import generate_for, pretty_code, remaining_seconds
from .vault_store import (
    Loaded, NotFound, SaveOutcome, Sealed, VaultStore,
)
from .vault_utils import Vault

logger = logging.getLogger(__name__)


# ==============================================================
# States
# ==============================================================
@dataclass
class NoIdentity:
    """No identity selected, nothing loaded."""


@dataclass
class AwaitingUnlock:
    """
    Identity selected, vault not open yet.

    `loading` while the background load runs. `blob` holds the encrypted
    bytes once read (None for a passphrase vault that does not exist
    yet). `passphrase_input` survives a failed unlock. `load_failed` is set
    when the store could not be read; the next Unlock retries the load.
    """
    identity: str
    blob: Optional[bytes] = None
    loading: bool = True
    unlocking: bool = False
    load_failed: bool = False
    passphrase_input: str = ""

    def __repr__(self):
        return (f"AwaitingUnlock(identity={self.identity}, loading={self.loading}, "
                f"unlocking={self.unlocking}, blob={'<set>' if self.blob else None})")


@dataclass
class Unlocked:
    identity: str
    vault: Vault


State = NoIdentity | AwaitingUnlock | Unlocked


# ==============================================================
# Intents
# ==============================================================
@dataclass
class SelectIdentity:
    identity: str


@dataclass
class Unlock:
    passphrase: str

    def __repr__(self):
        return "Unlock(passphrase=<hidden>)"


@dataclass
class CreateEntry:
    label: str
    secret: str
    issuer: Optional[str] = None
    icon: Optional[Icon] = None
    algorithm: str = DEFAULT_ALGORITHM
    digits: int = DEFAULT_DIGITS
    step: int = DEFAULT_STEP
    skew: int = DEFAULT_SKEW

    def __repr__(self):
        return f"CreateEntry(label={self.label}, issuer={self.issuer}, secret=<hidden>)"


@dataclass
class EditEntry:
    """`changes` maps field names to new values; `secret` is base32 text."""
    entry_id: str
    changes: dict[str, Any] = field(default_factory=dict)

    def __repr__(self):
        return f"EditEntry(entry_id={self.entry_id}, fields={sorted(self.changes)})"


@dataclass
class DeleteEntry:
    entry_id: str


@dataclass
class MoveEntry:
    """offset -1 moves the entry up, +1 moves it down."""
    entry_id: str
    offset: int


@dataclass
class CopyCode:
    entry_id: str


@dataclass
class Logout:
    pass


@dataclass
class DismissNotification:
    notification_id: int


EDITABLE_FIELDS = {"label", "issuer", "icon", "secret", "algorithm", "digits", "step", "skew"}


# ==============================================================
# Read-only views
# ==============================================================
@dataclass(frozen=True)
class Notification:
    id: int
    kind: str
    message: str
    created: str


@dataclass(frozen=True)
class EntryView:
    """An entry joined with its runtime state. Never carries the secret."""
    id: str
    label: str
    issuer: Optional[str]
    icon: Icon
    algorithm: Algorithm
    digits: int
    step: int
    code: Optional[str]
    remaining_seconds: Optional[int]
    fraction: float

    @property
    def pretty_code(self) -> str:
        return pretty_code(self.code)


@dataclass(frozen=True)
class VaultSnapshot:
    state: str
    identity: Optional[str]
    entries: tuple[EntryView, ...] = ()
    notifications: tuple[Notification, ...] = ()
    loading: bool = False
    needs_passphrase: bool = False
    new_vault: bool = False
    load_failed: bool = False
    passphrase_input: str = ""


# ==============================================================
# Session
# ==============================================================
class Session:
    """
    Mediates between intents, the vault and the store.

    Args:
        store: Backend used to load and save the vault.
        config: Application config, for `last-user`.
        scheduler: Clock scheduler; its runtime cache becomes `runtime`.
        copier: Called with a code on CopyCode.
    """

    def __init__(self, store: VaultStore, config: AppConfig,
                 scheduler: Optional[ClockScheduler] = None,
                 copier: Callable[[str], None] = copy_to_clipboard):
        self.store = store
        self.config = config
        self.state: State = NoIdentity()
        self.scheduler = scheduler or ClockScheduler({})
        self.runtime: dict[str, EntryRuntime] = self.scheduler.runtime
        self.copier = copier
        self.notifications: list[Notification] = []
        self._notification_ids = itertools.count(1)
        self._save_generations = itertools.count(1)
        self._background: set[asyncio.Task] = set()
        self._pending_saves: set[asyncio.Task] = set()
        self._identity_write: Optional[asyncio.Task] = None
        self._handlers = {
            SelectIdentity: self._select_identity,
            Unlock: self._unlock,
            CreateEntry: self._create_entry,
            EditEntry: self._edit_entry,
            DeleteEntry: self._delete_entry,
            MoveEntry: self._move_entry,
            CopyCode: self._copy_code,
            Logout: self._logout,
            DismissNotification: self._dismiss,
        }

    # == Public =====================================================
    async def start(self) -> None:
        """Resume the identity recorded as `last-user`, if any."""
        try:
            last_user = self.config.last_user
        except VaultError as e:
            self.notify(e)
            return
        if last_user:
            await self.dispatch(SelectIdentity(last_user))

    async def dispatch(self, intent) -> None:
        """
        Validate and apply one intent.

        Errors never escape: each VaultError becomes a notification.
        """
        handler = self._handlers.get(type(intent))
        if handler is None:
            raise TypeError(f"Unknown intent: {intent!r}")
        try:
            handler(intent)
        except VaultError as e:
            logger.warning(f"[{timestamp()}] {intent!r} rejected: {e}")
            self.notify(e)

    async def settle(self) -> None:
        """Wait for the background load/unlock and every pending save."""
        while True:
            tasks = [t for t in (*self._background, *self._pending_saves) if not t.done()]
            if not tasks:
                return
            await asyncio.gather(*tasks, return_exceptions=True)

    def notify(self, error: VaultError) -> Notification:
        note = Notification(
            id=next(self._notification_ids),
            kind=type(error).__name__,
            message=str(error),
            created=pendulum.now().to_iso8601_string(),
        )
        self.notifications.append(note)
        return note

    def snapshot(self) -> VaultSnapshot:
        state = self.state
        notes = tuple(self.notifications)
        if isinstance(state, NoIdentity):
            return VaultSnapshot("no-identity", None, notifications=notes)
        if isinstance(state, AwaitingUnlock):
            ready = self.store.needs_passphrase and not state.loading and not state.load_failed
            return VaultSnapshot(
                "awaiting-unlock", state.identity,
                notifications=notes,
                loading=state.loading or state.unlocking,
                needs_passphrase=ready,
                new_vault=ready and state.blob is None,
                load_failed=state.load_failed,
                passphrase_input=state.passphrase_input,
            )
        if isinstance(state, Unlocked):
            return VaultSnapshot(
                "unlocked", state.identity,
                entries=tuple(self._view(entry) for entry in state.vault),
                notifications=notes,
            )
        raise TypeError(f"Unknown session state: {state!r}")

    async def close(self) -> None:
        await self.settle()
        self._discard()
        self.store.close()

    # == Helpers ====================================================
    def _view(self, entry: Entry) -> EntryView:
        rt = self.runtime.get(entry.id) or EntryRuntime()
        seen = rt.frame_at if rt.frame_at is not None else rt.computed_at
        return EntryView(
            id=entry.id, label=entry.label, issuer=entry.issuer, icon=entry.icon,
            algorithm=entry.algorithm, digits=entry.digits, step=entry.step,
            code=rt.code,
            remaining_seconds=remaining_seconds(seen, entry.step) if seen is not None else None,
            fraction=rt.fraction,
        )

    def _unlocked(self) -> Unlocked:
        """Current state if unlocked, otherwise raise the matching error."""
        state = self.state
        if isinstance(state, Unlocked):
            return state
        if isinstance(state, NoIdentity):
            raise IdentityMissing("No identity selected")
        if isinstance(state, AwaitingUnlock):
            raise EntryValidationError("Vault is locked")
        raise TypeError(f"Unknown session state: {state!r}")

    def _entry(self, state: Unlocked, eid: str) -> Entry:
        entry = state.vault.get(eid)
        if entry is None:
            raise EntryValidationError(f"No entry with id {eid}")
        return entry

    def _record_identity(self, identity: Optional[str]) -> None:
        self._identity_write = self._start_background(
            self._write_identity(self._identity_write, identity)
        )

    async def _write_identity(self, previous: Optional[asyncio.Task],
                              identity: Optional[str]) -> None:
        # writes land in the order the identity changed
        if previous is not None:
            await asyncio.gather(previous, return_exceptions=True)
        try:
            await self.store.offload(self.config.set, KEY_LAST_USER, identity)
        except VaultError as e:
            logger.error(f"[{timestamp()}] Couldn't save last user: {e!r}")
            self.notify(VaultError(f"Couldn't save last user: {e}"))

    def _refresh_schedule(self) -> None:
        state = self.state
        self.scheduler.sync(state.vault if isinstance(state, Unlocked) else ())

    def _discard(self) -> None:
        """Drop the decrypted vault, runtime codes and key material."""
        state = self.state
        if isinstance(state, Unlocked):
            state.vault.clear()
        elif isinstance(state, AwaitingUnlock):
            state.passphrase_input = ""
            state.blob = None
        self.state = NoIdentity()
        self.store.forget()
        self.scheduler.sync(())
        self.runtime.clear()

    def _start_background(self, coro) -> asyncio.Task:
        # superseded loads keep running until done, their results are ignored
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _after_mutation(self, state: Unlocked) -> None:
        self._refresh_schedule()
        self._save(state)

    def _save(self, state: Unlocked) -> None:
        generation = next(self._save_generations)
        pending = self.store.save(state.identity, state.vault, generation)
        task = asyncio.get_running_loop().create_task(self._finish_save(pending, generation))
        self._pending_saves.add(task)
        task.add_done_callback(self._pending_saves.discard)

    async def _finish_save(self, pending, generation: int) -> None:
        try:
            outcome = await pending
        except VaultError as e:
            # best effort: the in-memory change is kept
            logger.error(f"[{timestamp()}] Save #{generation} failed: {e}")
            self.notify(e)
            return
        if outcome is SaveOutcome.STALE:
            logger.info(f"[{timestamp()}] Save #{generation} skipped, newer data already stored")

    # == Transitions ================================================
    def _select_identity(self, intent: SelectIdentity) -> None:
        identity = (intent.identity or "").strip()
        if not identity:
            raise IdentityMissing("No identity selected")

        if not isinstance(self.state, NoIdentity):
            self._discard()

        state = AwaitingUnlock(identity)
        self.state = state
        self._record_identity(identity)
        logger.info(f"[{timestamp()}] Loading vault with {self.store.name}")
        self._start_background(self._load(state))

    async def _load(self, state: AwaitingUnlock) -> None:
        try:
            result = await self.store.load(state.identity)
        except VaultError as e:
            if self.state is state:
                state.loading = False
                state.load_failed = True
                self.notify(e)
            return

        if self.state is not state:
            return
        state.loading = False
        state.load_failed = False

        if isinstance(result, Loaded):
            self.state = Unlocked(state.identity, result.vault)
            self._refresh_schedule()
        elif isinstance(result, NotFound):
            if self.store.needs_passphrase:
                # wait for the passphrase of the new vault
                state.blob = None
            else:
                self.state = Unlocked(state.identity, Vault())
                self._refresh_schedule()
        elif isinstance(result, Sealed):
            state.blob = result.blob
        else:
            raise TypeError(f"Unknown load result: {result!r}")

    def _unlock(self, intent: Unlock) -> None:
        state = self.state
        if isinstance(state, NoIdentity):
            raise IdentityMissing("No identity selected")
        if isinstance(state, Unlocked):
            return
        if not isinstance(state, AwaitingUnlock):
            raise TypeError(f"Unknown session state: {state!r}")

        if state.loading or state.unlocking:
            logger.info(f"[{timestamp()}] Unlock ignored, a load is already in flight")
            return

        if state.load_failed or not self.store.needs_passphrase:
            # the last load failed, try again
            state.loading = True
            self._start_background(self._load(state))
            return

        state.passphrase_input = intent.passphrase
        if not intent.passphrase:
            raise DecryptAuthError("Passphrase cannot be empty")

        state.unlocking = True
        self._start_background(self._open(state, intent.passphrase))

    async def _open(self, state: AwaitingUnlock, passphrase: str) -> None:
        creating = state.blob is None
        try:
            result = await self.store.unlock(state.identity, state.blob, passphrase)
        except VaultError as e:
            if self.state is state:
                state.unlocking = False
                self.notify(e)
            return

        if self.state is not state:
            # logged out or switched identity meanwhile
            if result.key is not None:
                result.key.wipe()
            return

        self.store.activate(result.key)
        unlocked = Unlocked(state.identity, result.vault)
        self.state = unlocked
        state.passphrase_input = ""
        state.blob = None
        self._refresh_schedule()
        if creating:
            self._save(unlocked)

    def _logout(self, intent: Logout) -> None:
        if isinstance(self.state, NoIdentity):
            return
        self._discard()
        self._record_identity(None)

    def _dismiss(self, intent: DismissNotification) -> None:
        self.notifications = [n for n in self.notifications if n.id != intent.notification_id]

    # == Mutations ==================================================
    def _create_entry(self, intent: CreateEntry) -> None:
        state = self._unlocked()
        entry = Entry(
            label=intent.label,
            secret=decode_secret(intent.secret),
            issuer=intent.issuer,
            icon=intent.icon,
            algorithm=intent.algorithm,
            digits=intent.digits,
            step=intent.step,
            skew=intent.skew,
        )
        state.vault.add(entry)
        self._after_mutation(state)

    def _edit_entry(self, intent: EditEntry) -> None:
        state = self._unlocked()
        entry = self._entry(state, intent.entry_id)

        unknown = set(intent.changes) - EDITABLE_FIELDS
        if unknown:
            raise EntryValidationError(f"Cannot edit {', '.join(sorted(unknown))}")
        if not intent.changes:
            return

        changes = dict(intent.changes)
        if "secret" in changes:
            changes["secret"] = decode_secret(changes["secret"])

        state.vault.replace(entry.updated(**changes))
        self._after_mutation(state)

    def _delete_entry(self, intent: DeleteEntry) -> None:
        state = self._unlocked()
        state.vault.remove(intent.entry_id)
        self._after_mutation(state)

    def _move_entry(self, intent: MoveEntry) -> None:
        state = self._unlocked()
        if state.vault.move(intent.entry_id, intent.offset):
            self._after_mutation(state)

    def _copy_code(self, intent: CopyCode) -> None:
        state = self._unlocked()
        entry = self._entry(state, intent.entry_id)
        rt = self.runtime.get(entry.id)
        code = rt.code if rt is not None and rt.code else None
        if code is None:
            code = generate_for(entry, self.scheduler.now())
        self.copier(code)
