"""Timing and decision tests for the client-side session gate."""

import json

import pytest

from refinergate.client.gate import (
    AUTH_STATE_KEY,
    USER_KEY,
    AuthState,
    GateView,
    InMemoryCredentialCache,
    SessionGate,
)


class FakeSleep:
    """Records requested delays; optionally runs a callback mid-wait."""

    def __init__(self, during=None):
        self.delays = []
        self.during = during

    async def __call__(self, seconds):
        self.delays.append(seconds)
        if self.during:
            self.during()


class Navigator:
    def __init__(self):
        self.visits = []

    def __call__(self, path):
        self.visits.append(path)


def _persisted_cache():
    return InMemoryCredentialCache(
        {
            AUTH_STATE_KEY: json.dumps({"token": "jwt-value", "isAuthenticated": True}),
            USER_KEY: json.dumps({"id": "u-1", "email": "a@example.com"}),
        }
    )


@pytest.fixture
def navigator():
    return Navigator()


class TestAuthState:
    def test_restore_from_persisted_blob(self):
        state = AuthState(_persisted_cache())
        assert state.restore() is True
        assert state.is_initialized and state.is_authenticated
        assert state.token == "jwt-value"
        assert state.user["id"] == "u-1"

    def test_restore_without_blob_still_initializes(self):
        state = AuthState(InMemoryCredentialCache())
        assert state.restore() is False
        assert state.is_initialized
        assert not state.is_authenticated

    def test_corrupt_blob_is_ignored(self):
        cache = InMemoryCredentialCache({AUTH_STATE_KEY: "{not json", USER_KEY: "{}"})
        state = AuthState(cache)
        assert state.restore() is False
        assert state.is_initialized

    def test_sign_in_and_out_persist(self):
        cache = InMemoryCredentialCache()
        state = AuthState(cache)
        state.sign_in("jwt", {"id": "u-2"})
        assert cache.get(AUTH_STATE_KEY) and cache.get(USER_KEY)
        state.sign_out()
        assert cache.get(AUTH_STATE_KEY) is None
        assert cache.get(USER_KEY) is None
        assert not state.is_authenticated


class TestSessionGate:
    async def test_uninitialized_shows_loading_without_decision(self, navigator):
        sleep = FakeSleep()
        state = AuthState(_persisted_cache())
        state.is_authenticated = True  # even when authenticated
        gate = SessionGate(state, navigator, sleep=sleep)
        assert await gate.evaluate() is GateView.LOADING
        assert sleep.delays == []
        assert navigator.visits == []

    async def test_authenticated_renders_immediately(self, navigator):
        sleep = FakeSleep()
        state = AuthState(_persisted_cache())
        state.restore()
        gate = SessionGate(state, navigator, sleep=sleep)
        assert await gate.evaluate() is GateView.PROTECTED
        assert sleep.delays == []

    async def test_fail_fast_without_persisted_blob(self, navigator):
        sleep = FakeSleep()
        state = AuthState(InMemoryCredentialCache())
        state.restore()
        gate = SessionGate(state, navigator, sleep=sleep)
        assert gate.view is GateView.HIDDEN
        assert await gate.evaluate() is GateView.REDIRECTING
        assert sleep.delays == [0.2]
        assert navigator.visits == ["/?login=1"]

    async def test_longer_wait_when_blob_present(self, navigator):
        cache = _persisted_cache()
        state = AuthState(cache)
        state.is_initialized = True  # restoration still in flight
        sleep = FakeSleep()
        gate = SessionGate(state, navigator, sleep=sleep)
        assert await gate.evaluate() is GateView.REDIRECTING
        assert sleep.delays == [0.8]

    async def test_restore_during_wait_cancels_redirect(self, navigator):
        state = AuthState(_persisted_cache())
        state.is_initialized = True
        sleep = FakeSleep(during=state.restore)
        gate = SessionGate(state, navigator, sleep=sleep)
        assert await gate.evaluate() is GateView.PROTECTED
        assert navigator.visits == []

    async def test_redirects_at_most_once(self, navigator):
        state = AuthState(InMemoryCredentialCache())
        state.restore()
        sleep = FakeSleep()
        gate = SessionGate(state, navigator, sleep=sleep)
        await gate.evaluate()
        assert await gate.evaluate() is GateView.REDIRECTING
        assert navigator.visits == ["/?login=1"]
        assert sleep.delays == [0.2]

    async def test_custom_delays_and_login_path(self, navigator):
        state = AuthState(InMemoryCredentialCache())
        state.restore()
        sleep = FakeSleep()
        gate = SessionGate(
            state, navigator, sleep=sleep, fail_fast_delay=0.05, login_path="/login"
        )
        await gate.evaluate()
        assert sleep.delays == [0.05]
        assert navigator.visits == ["/login"]

    async def test_unreadable_cache_counts_as_no_blob(self, navigator):
        class BlockedCache(InMemoryCredentialCache):
            def get(self, key):
                raise PermissionError("storage disabled")

        state = AuthState(BlockedCache())
        state.is_initialized = True
        sleep = FakeSleep()
        gate = SessionGate(state, navigator, sleep=sleep)
        assert await gate.evaluate() is GateView.REDIRECTING
        assert sleep.delays == [0.2]
