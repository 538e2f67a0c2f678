"""
Shared test fixtures.

- Cheap Argon2id parameters so key derivation takes milliseconds
- A manually advanced clock with an awaitable sleep
- An in-memory keyring backend
- A config file in a temporary folder
"""

from __future__ import annotations

import asyncio

import pytest
from keyring.backend import KeyringBackend
from keyring.errors import KeyringError, PasswordDeleteError

from totp_vault.utils import crypto_utils
from totp_vault.utils.app_config import AppConfig


@pytest.fixture(autouse=True)
def fast_argon(monkeypatch):
    monkeypatch.setattr(crypto_utils, "ARGON_TIME", 1)
    monkeypatch.setattr(crypto_utils, "ARGON_MEMORY", 1024)
    monkeypatch.setattr(crypto_utils, "ARGON_PARALLELISM", 1)


async def drain(rounds: int = 10) -> None:
    """Let every ready task run until it blocks again."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeClock:
    """
    Wall clock under test control.

    `sleep()` parks the caller until `advance()` moves time past its
    deadline. Waiters wake in deadline order with the clock set to their
    deadline, like a real timer firing exactly on time.
    """

    def __init__(self, now: float = 0.0):
        self.now = now
        self._waiters: list[tuple[float, asyncio.Future]] = []

    def __call__(self) -> float:
        return self.now

    @property
    def waiting(self) -> int:
        return sum(1 for _, fut in self._waiters if not fut.done())

    async def sleep(self, delay: float) -> None:
        fut = asyncio.get_running_loop().create_future()
        self._waiters.append((self.now + delay, fut))
        await fut

    async def advance(self, seconds: float) -> None:
        target = self.now + seconds
        while True:
            await drain()
            self._waiters = [(d, f) for d, f in self._waiters if not f.done()]
            due = [w for w in self._waiters if w[0] <= target]
            if not due:
                break
            deadline, fut = min(due, key=lambda w: w[0])
            self._waiters.remove((deadline, fut))
            self.now = max(self.now, deadline)
            fut.set_result(None)
        self.now = max(self.now, target)
        await drain()

    async def advance_to(self, when: float) -> None:
        await self.advance(when - self.now)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(1_000_000.0)


class MemoryKeyring(KeyringBackend):
    """Keyring backend backed by a dict. Set `fail` to simulate an outage."""

    priority = 1

    def __init__(self):
        super().__init__()
        self.passwords: dict[tuple[str, str], str] = {}
        self.fail = False
        self.writes = 0

    def get_password(self, service, username):
        if self.fail:
            raise KeyringError("keyring is locked")
        return self.passwords.get((service, username))

    def set_password(self, service, username, password):
        if self.fail:
            raise KeyringError("keyring is locked")
        self.writes += 1
        self.passwords[(service, username)] = password

    def delete_password(self, service, username):
        if (service, username) not in self.passwords:
            raise PasswordDeleteError("not found")
        del self.passwords[(service, username)]


@pytest.fixture
def memory_keyring() -> MemoryKeyring:
    return MemoryKeyring()


@pytest.fixture
def app_config(tmp_path) -> AppConfig:
    return AppConfig.open(tmp_path / "config")
