"""Tests for per-client session bookkeeping."""

import asyncio
from pathlib import Path

import pytest
from fakes import FakeProviderFactory

from mongodb_mcp.connection import ConnectionManager, ConnectionStateConnected
from mongodb_mcp.errors import NotConnectedError
from mongodb_mcp.keychain import Secret
from mongodb_mcp.session import Session
from mongodb_mcp.session_store import SessionStore


class Clock:
    def __init__(self, now: float = 100.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def make_store(settings, factory, clock):
    def _make(**overrides):
        configured = settings.model_copy(update=overrides)

        def _new_session():
            return Session(
                configured,
                connection_manager=ConnectionManager(configured, provider_factory=factory),
            )

        return SessionStore(configured, session_factory=_new_session, clock=clock)

    return _make


class TestGetSession:
    @pytest.mark.asyncio
    async def test_same_id_returns_same_session(self, make_store):
        store = make_store()

        first = await store.get_session("client-a")
        again = await store.get_session("client-a")
        other = await store.get_session("client-b")

        assert first is again
        assert other is not first
        assert other.keychain is not first.keychain
        assert other.exports_manager.exports_directory != first.exports_manager.exports_directory
        assert "client-a" in store
        assert len(store) == 2
        await store.close_all()

    @pytest.mark.asyncio
    async def test_configured_connection_string_is_used(self, make_store, factory):
        store = make_store(connection_string="mongodb://localhost:27017")

        session = await store.get_session("client-a")

        assert isinstance(session.connection_manager.current_connection_state, ConnectionStateConnected)
        assert factory.calls[0][0].startswith("mongodb://localhost:27017")
        await store.close_all()

    @pytest.mark.asyncio
    async def test_failed_configured_connection_still_returns_session(self, make_store, factory, caplog):
        factory.error = RuntimeError("connection refused")
        store = make_store(connection_string="mongodb://localhost:27017")

        session = await store.get_session("client-a")

        assert session.status()["state"] == "errored"
        assert "Failed to connect to the configured connection string" in caplog.text
        await store.close_all()


class TestSecrets:
    @pytest.mark.asyncio
    async def test_secrets_of_every_session_are_exposed(self, make_store):
        store = make_store()
        first = await store.get_session("client-a")
        second = await store.get_session("client-b")
        first.keychain.register("hunter2", "password")
        second.keychain.register("alice", "user")

        assert set(store.all_secrets) == {Secret("hunter2", "password"), Secret("alice", "user")}

        await store.close_session("client-a")
        assert store.all_secrets == [Secret("alice", "user")]
        await store.close_all()


class TestClose:
    @pytest.mark.asyncio
    async def test_close_session(self, make_store):
        store = make_store()
        session = await store.get_session("client-a")
        directory = session.exports_manager.exports_directory

        assert await store.close_session("client-a") is True
        assert await store.close_session("client-a") is False
        assert "client-a" not in store
        assert not Path(directory).exists()

    @pytest.mark.asyncio
    async def test_idle_sessions_are_closed(self, make_store, clock):
        store = make_store(idle_timeout_ms=1_000)
        idle = await store.get_session("client-a")
        await store.get_session("client-b")

        clock.now += 0.6
        await store.get_session("client-b")
        clock.now += 0.6

        assert await store.close_idle_sessions() == 1
        assert "client-a" not in store
        assert "client-b" in store
        assert await store.get_session("client-a") is not idle
        await store.close_all()

    @pytest.mark.asyncio
    async def test_close_all_rejects_new_sessions(self, make_store):
        store = make_store()
        await store.get_session("client-a")
        await store.get_session("client-b")

        await store.close_all()

        assert len(store) == 0
        with pytest.raises(NotConnectedError, match="shutting down"):
            await store.get_session("client-c")

    @pytest.mark.asyncio
    async def test_cleanup_loop_runs_on_interval(self, make_store):
        store = make_store(session_cleanup_interval_ms=10)
        calls = []

        async def _fake_sweep():
            calls.append(True)
            return 0

        store.close_idle_sessions = _fake_sweep
        store.start_cleanup_loop()
        await asyncio.sleep(0.05)
        await store.stop_cleanup_loop()

        assert len(calls) >= 1
        assert store._cleanup_task is None
