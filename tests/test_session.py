"""Tests for the vault session state machine."""

from __future__ import annotations

import threading

import pytest
import pytest_asyncio

from totp_vault.config.config_vault import APP_ID, KEY_SECRETS
from totp_vault.utils.clock_scheduler import ClockScheduler
from totp_vault.utils.Entry import decode_secret
from totp_vault.utils.session import (
    AwaitingUnlock,
    CopyCode,
    CreateEntry,
    DeleteEntry,
    DismissNotification,
    EditEntry,
    Logout,
    MoveEntry,
    NoIdentity,
    SelectIdentity,
    Session,
    Unlock,
    Unlocked,
)
from totp_vault.utils.totp_utils import generate
from totp_vault.utils.vault_store import CredentialStore, PassphraseStore

SECRET = "JBSWY3DPEHPK3PXP"
START = 1_000_000.0


@pytest.fixture
def copied():
    return []


@pytest_asyncio.fixture
async def make_session(clock, app_config, copied):
    sessions = []

    def factory(store):
        scheduler = ClockScheduler({}, clock=clock, sleep=clock.sleep, frame_interval=1.0)
        session = Session(store, app_config, scheduler=scheduler, copier=copied.append)
        sessions.append(session)
        return session

    yield factory
    for session in sessions:
        await session.close()


@pytest.fixture
def keyring_session(make_session, memory_keyring):
    return make_session(CredentialStore(backend=memory_keyring))


@pytest.fixture
def passphrase_session(make_session, app_config):
    return make_session(PassphraseStore(app_config))


async def unlocked(session, identity="alice"):
    await session.dispatch(SelectIdentity(identity))
    await session.settle()
    assert isinstance(session.state, Unlocked)
    return session


async def add(session, label="site", secret=SECRET, **kwargs):
    await session.dispatch(CreateEntry(label=label, secret=secret, **kwargs))
    await session.settle()
    return session.snapshot().entries[-1]


def kinds(session) -> list[str]:
    return [note.kind for note in session.snapshot().notifications]


class TestIdentity:
    @pytest.mark.asyncio
    async def test_starts_without_identity(self, keyring_session):
        await keyring_session.start()
        snap = keyring_session.snapshot()
        assert snap.state == "no-identity"
        assert snap.identity is None

    @pytest.mark.asyncio
    async def test_resumes_last_user(self, keyring_session, app_config):
        app_config.last_user = "alice"
        await keyring_session.start()
        assert keyring_session.snapshot().state == "awaiting-unlock"
        assert keyring_session.snapshot().loading
        await keyring_session.settle()
        snap = keyring_session.snapshot()
        assert snap.state == "unlocked"
        assert snap.identity == "alice"

    @pytest.mark.asyncio
    async def test_selection_is_recorded(self, keyring_session, app_config):
        await unlocked(keyring_session, "bob")
        assert app_config.last_user == "bob"


    @pytest.mark.asyncio
    async def test_selection_written_off_the_event_loop(self, keyring_session, app_config, monkeypatch):
        threads = []
        original = app_config.set

        def recording_set(key, value):
            threads.append(threading.current_thread().name)
            original(key, value)

        monkeypatch.setattr(app_config, "set", recording_set)
        await unlocked(keyring_session, "bob")
        assert app_config.last_user == "bob"
        assert threads and all(name.startswith("vault-io") for name in threads)

    @pytest.mark.asyncio
    async def test_select_then_logout_leaves_no_user(self, keyring_session, app_config):
        await keyring_session.dispatch(SelectIdentity("alice"))
        await keyring_session.dispatch(Logout())
        await keyring_session.settle()
        assert app_config.last_user is None
    @pytest.mark.asyncio
    async def test_blank_identity(self, keyring_session):
        await keyring_session.dispatch(SelectIdentity("  "))
        assert isinstance(keyring_session.state, NoIdentity)
        assert kinds(keyring_session) == ["IdentityMissing"]

    @pytest.mark.asyncio
    async def test_switch_during_load_keeps_latest(self, keyring_session, memory_keyring):
        memory_keyring.passwords[(APP_ID, "alice")] = "not json"
        await keyring_session.dispatch(SelectIdentity("alice"))
        await keyring_session.dispatch(SelectIdentity("bob"))
        await keyring_session.settle()
        assert keyring_session.snapshot().identity == "bob"
        assert keyring_session.snapshot().state == "unlocked"
        assert kinds(keyring_session) == []

    @pytest.mark.asyncio
    async def test_unknown_intent(self, keyring_session):
        with pytest.raises(TypeError):
            await keyring_session.dispatch(object())


class TestCredentialBackend:
    @pytest.mark.asyncio
    async def test_not_found_gives_empty_vault(self, keyring_session):
        await unlocked(keyring_session)
        assert keyring_session.snapshot().entries == ()

    @pytest.mark.asyncio
    async def test_create_entry_is_saved_with_code(self, keyring_session, memory_keyring):
        await unlocked(keyring_session)
        view = await add(keyring_session, issuer="Example")

        assert view.code == generate(decode_secret(SECRET), "SHA1", 6, 30, START)
        assert view.remaining_seconds == 20
        assert view.icon.text == "Ex"
        assert not hasattr(view, "secret")
        assert (APP_ID, "alice") in memory_keyring.passwords

    @pytest.mark.asyncio
    async def test_reload_preserves_order(self, make_session, keyring_session, memory_keyring):
        await unlocked(keyring_session)
        for label in ("one", "two", "three"):
            await add(keyring_session, label)
        ids = [v.id for v in keyring_session.snapshot().entries]
        await keyring_session.dispatch(MoveEntry(ids[2], -1))
        await keyring_session.settle()

        other = await unlocked(make_session(CredentialStore(backend=memory_keyring)))
        assert [v.label for v in other.snapshot().entries] == ["one", "three", "two"]

    @pytest.mark.asyncio
    async def test_delete_only_entry_then_reload(self, make_session, keyring_session, memory_keyring):
        await unlocked(keyring_session)
        view = await add(keyring_session)
        await keyring_session.dispatch(DeleteEntry(view.id))
        await keyring_session.settle()

        other = await unlocked(make_session(CredentialStore(backend=memory_keyring)))
        assert other.snapshot().entries == ()
        assert kinds(other) == []

    @pytest.mark.asyncio
    async def test_rapid_mutations_store_latest(self, make_session, keyring_session, memory_keyring):
        await unlocked(keyring_session)
        for label in ("a", "b", "c", "d"):
            await keyring_session.dispatch(CreateEntry(label=label, secret=SECRET))
        await keyring_session.settle()

        other = await unlocked(make_session(CredentialStore(backend=memory_keyring)))
        assert [v.label for v in other.snapshot().entries] == ["a", "b", "c", "d"]

    @pytest.mark.asyncio
    async def test_load_failure_then_retry(self, keyring_session, memory_keyring):
        memory_keyring.fail = True
        await keyring_session.dispatch(SelectIdentity("alice"))
        await keyring_session.settle()
        snap = keyring_session.snapshot()
        assert snap.state == "awaiting-unlock"
        assert snap.load_failed
        assert kinds(keyring_session) == ["PlatformStoreError"]

        memory_keyring.fail = False
        await keyring_session.dispatch(Unlock(""))
        await keyring_session.settle()
        assert keyring_session.snapshot().state == "unlocked"

    @pytest.mark.asyncio
    async def test_corrupted_vault_stays_locked(self, keyring_session, memory_keyring):
        memory_keyring.passwords[(APP_ID, "alice")] = "[{]"
        await keyring_session.dispatch(SelectIdentity("alice"))
        await keyring_session.settle()
        assert isinstance(keyring_session.state, AwaitingUnlock)
        assert kinds(keyring_session) == ["ParseError"]

    @pytest.mark.asyncio
    async def test_failed_save_keeps_mutation(self, keyring_session, memory_keyring):
        await unlocked(keyring_session)
        memory_keyring.fail = True
        await keyring_session.dispatch(CreateEntry(label="kept", secret=SECRET))
        await keyring_session.settle()
        assert [v.label for v in keyring_session.snapshot().entries] == ["kept"]
        assert kinds(keyring_session) == ["PlatformStoreError"]


class TestMutations:
    @pytest.mark.asyncio
    async def test_bad_secret_on_create(self, keyring_session, memory_keyring):
        await unlocked(keyring_session)
        await keyring_session.dispatch(CreateEntry(label="x", secret="not base32!"))
        await keyring_session.settle()
        assert keyring_session.snapshot().entries == ()
        assert kinds(keyring_session) == ["SecretDecodeError"]
        assert memory_keyring.writes == 0

    @pytest.mark.asyncio
    async def test_bad_secret_on_edit_changes_nothing(self, keyring_session, memory_keyring):
        await unlocked(keyring_session)
        view = await add(keyring_session, "orig")
        writes = memory_keyring.writes

        await keyring_session.dispatch(EditEntry(view.id, {"label": "new", "secret": "@@@"}))
        await keyring_session.settle()
        after = keyring_session.snapshot().entries[0]
        assert after.label == "orig"
        assert after.code == view.code
        assert kinds(keyring_session) == ["SecretDecodeError"]
        assert memory_keyring.writes == writes

    @pytest.mark.asyncio
    async def test_edit_recomputes_code(self, keyring_session):
        await unlocked(keyring_session)
        view = await add(keyring_session)
        await keyring_session.dispatch(EditEntry(view.id, {"digits": 8, "label": "renamed"}))
        await keyring_session.settle()
        after = keyring_session.snapshot().entries[0]
        assert after.label == "renamed"
        assert len(after.code) == 8
        assert after.id == view.id

    @pytest.mark.asyncio
    async def test_edit_unknown_field(self, keyring_session):
        await unlocked(keyring_session)
        view = await add(keyring_session)
        await keyring_session.dispatch(EditEntry(view.id, {"id": "other"}))
        assert kinds(keyring_session) == ["EntryValidationError"]

    @pytest.mark.asyncio
    async def test_invalid_field_value(self, keyring_session):
        await unlocked(keyring_session)
        await keyring_session.dispatch(CreateEntry(label="x", secret=SECRET, digits=3))
        assert keyring_session.snapshot().entries == ()
        assert kinds(keyring_session) == ["EntryValidationError"]


    @pytest.mark.asyncio
    async def test_bad_icon_on_edit_keeps_vault_usable(self, make_session, keyring_session, memory_keyring):
        await unlocked(keyring_session)
        view = await add(keyring_session, "orig")
        writes = memory_keyring.writes

        await keyring_session.dispatch(EditEntry(view.id, {"icon": "XY"}))
        await keyring_session.settle()
        assert kinds(keyring_session) == ["EntryValidationError"]
        assert keyring_session.snapshot().entries[0].icon == view.icon
        assert memory_keyring.writes == writes

        second = await add(keyring_session, "second")
        assert memory_keyring.writes == writes + 1

        reloaded = make_session(CredentialStore(backend=memory_keyring))
        await unlocked(reloaded)
        assert [v.id for v in reloaded.snapshot().entries] == [view.id, second.id]

    @pytest.mark.asyncio
    async def test_non_text_issuer_on_create(self, keyring_session, memory_keyring):
        await unlocked(keyring_session)
        await keyring_session.dispatch(CreateEntry(label="x", secret=SECRET, issuer=5))
        await keyring_session.settle()
        assert keyring_session.snapshot().entries == ()
        assert kinds(keyring_session) == ["EntryValidationError"]
        assert memory_keyring.writes == 0
    @pytest.mark.asyncio
    async def test_move_at_edges_is_noop(self, keyring_session, memory_keyring):
        await unlocked(keyring_session)
        first = await add(keyring_session, "first")
        last = await add(keyring_session, "last")
        writes = memory_keyring.writes

        await keyring_session.dispatch(MoveEntry(first.id, -1))
        await keyring_session.dispatch(MoveEntry(last.id, 1))
        await keyring_session.settle()
        assert [v.id for v in keyring_session.snapshot().entries] == [first.id, last.id]
        assert memory_keyring.writes == writes

    @pytest.mark.asyncio
    async def test_delete_drops_runtime(self, keyring_session):
        await unlocked(keyring_session)
        view = await add(keyring_session)
        await keyring_session.dispatch(DeleteEntry(view.id))
        await keyring_session.settle()
        assert keyring_session.runtime == {}
        assert keyring_session.scheduler.active_steps == []

    @pytest.mark.asyncio
    async def test_mutation_without_identity(self, keyring_session):
        await keyring_session.dispatch(CreateEntry(label="x", secret=SECRET))
        assert kinds(keyring_session) == ["IdentityMissing"]

    @pytest.mark.asyncio
    async def test_copy_code(self, keyring_session, copied):
        await unlocked(keyring_session)
        view = await add(keyring_session)
        await keyring_session.dispatch(CopyCode(view.id))
        assert copied == [view.code]

    @pytest.mark.asyncio
    async def test_dismiss_notification(self, keyring_session):
        await keyring_session.dispatch(SelectIdentity(""))
        await keyring_session.dispatch(SelectIdentity(""))
        first, second = keyring_session.snapshot().notifications
        assert second.id > first.id
        await keyring_session.dispatch(DismissNotification(first.id))
        assert keyring_session.snapshot().notifications == (second,)


class TestLogout:
    @pytest.mark.asyncio
    async def test_logout_discards_everything(self, keyring_session, app_config, copied):
        await unlocked(keyring_session)
        view = await add(keyring_session)
        vault = keyring_session.state.vault

        await keyring_session.dispatch(Logout())
        await keyring_session.settle()
        assert isinstance(keyring_session.state, NoIdentity)
        assert len(vault) == 0
        assert keyring_session.runtime == {}
        assert keyring_session.scheduler.active_steps == []
        assert app_config.last_user is None

        await keyring_session.dispatch(CopyCode(view.id))
        assert copied == []
        assert kinds(keyring_session) == ["IdentityMissing"]


class TestPassphraseBackend:
    @pytest.mark.asyncio
    async def test_new_vault_asks_for_passphrase(self, passphrase_session, app_config):
        await passphrase_session.dispatch(SelectIdentity("alice"))
        await passphrase_session.settle()
        snap = passphrase_session.snapshot()
        assert snap.state == "awaiting-unlock"
        assert snap.needs_passphrase
        assert snap.new_vault

        await passphrase_session.dispatch(Unlock(""))
        assert kinds(passphrase_session) == ["DecryptAuthError"]

        await passphrase_session.dispatch(Unlock("pw"))
        await passphrase_session.settle()
        assert passphrase_session.snapshot().state == "unlocked"
        assert app_config.get_bytes(KEY_SECRETS)

    @pytest.mark.asyncio
    async def test_empty_vault_round_trip(self, make_session, passphrase_session, app_config):
        await passphrase_session.dispatch(SelectIdentity("alice"))
        await passphrase_session.settle()
        await passphrase_session.dispatch(Unlock("pw"))
        await passphrase_session.settle()

        other = make_session(PassphraseStore(app_config))
        await other.dispatch(SelectIdentity("alice"))
        await other.settle()
        assert other.snapshot().needs_passphrase
        assert not other.snapshot().new_vault
        await other.dispatch(Unlock("pw"))
        await other.settle()
        assert other.snapshot().state == "unlocked"
        assert other.snapshot().entries == ()
        assert kinds(other) == []

    @pytest.mark.asyncio
    async def test_wrong_passphrase_keeps_prompt(self, make_session, passphrase_session, app_config):
        await passphrase_session.dispatch(SelectIdentity("alice"))
        await passphrase_session.settle()
        await passphrase_session.dispatch(Unlock("right"))
        await passphrase_session.settle()
        await add(passphrase_session, "entry")

        other = make_session(PassphraseStore(app_config))
        await other.dispatch(SelectIdentity("alice"))
        await other.settle()
        await other.dispatch(Unlock("wrong"))
        await other.settle()
        snap = other.snapshot()
        assert snap.state == "awaiting-unlock"
        assert snap.needs_passphrase
        assert snap.passphrase_input == "wrong"
        assert kinds(other) == ["DecryptAuthError"]

        await other.dispatch(Unlock("right"))
        await other.settle()
        assert [v.label for v in other.snapshot().entries] == ["entry"]

    @pytest.mark.asyncio
    async def test_logout_wipes_key(self, passphrase_session):
        await passphrase_session.dispatch(SelectIdentity("alice"))
        await passphrase_session.settle()
        await passphrase_session.dispatch(Unlock("pw"))
        await passphrase_session.settle()
        view = await add(passphrase_session)
        key = passphrase_session.store._key

        await passphrase_session.dispatch(Logout())
        assert key.wiped
        assert not passphrase_session.store.has_key

        await passphrase_session.dispatch(CopyCode(view.id))
        await passphrase_session.dispatch(CreateEntry(label="x", secret=SECRET))
        assert kinds(passphrase_session) == ["IdentityMissing", "IdentityMissing"]

    @pytest.mark.asyncio
    async def test_logout_during_unlock(self, passphrase_session):
        await passphrase_session.dispatch(SelectIdentity("alice"))
        await passphrase_session.settle()
        await passphrase_session.dispatch(Unlock("pw"))
        await passphrase_session.dispatch(Logout())
        await passphrase_session.settle()
        assert isinstance(passphrase_session.state, NoIdentity)
        assert not passphrase_session.store.has_key

    @pytest.mark.asyncio
    async def test_mutation_while_locked(self, passphrase_session):
        await passphrase_session.dispatch(SelectIdentity("alice"))
        await passphrase_session.settle()
        await passphrase_session.dispatch(CreateEntry(label="x", secret=SECRET))
        assert kinds(passphrase_session) == ["EntryValidationError"]

    @pytest.mark.asyncio
    async def test_unreadable_config_retries_instead_of_creating(self, passphrase_session, app_config):
        app_config.set(KEY_SECRETS, 12)
        await passphrase_session.dispatch(SelectIdentity("alice"))
        await passphrase_session.settle()
        snap = passphrase_session.snapshot()
        assert snap.load_failed
        assert not snap.needs_passphrase
        assert kinds(passphrase_session) == ["ParseError"]

        app_config.set(KEY_SECRETS, None)
        await passphrase_session.dispatch(Unlock("ignored"))
        await passphrase_session.settle()
        snap = passphrase_session.snapshot()
        assert not snap.load_failed
        assert snap.new_vault
