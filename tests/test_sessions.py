# Tests for ExpiringSessionMap

import threading

import pytest

from guild_vault.vault.sessions import ExpiringSessionMap


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sessions(clock):
    return ExpiringSessionMap(ttl=120, clock=clock)


def test_put_and_get(sessions):
    sessions.put("u1", "acc_1", "state")
    assert sessions.get("u1", "acc_1") == "state"
    assert ("u1", "acc_1") in sessions
    assert len(sessions) == 1


def test_keys_are_per_actor_and_resource(sessions):
    sessions.put("u1", "acc_1", "a")
    assert sessions.get("u2", "acc_1") is None
    assert sessions.get("u1", "acc_2") is None


def test_expires_after_ttl(sessions, clock):
    sessions.put("u1", "acc_1", "state")
    clock.advance(119)
    assert sessions.get("u1", "acc_1") == "state"
    clock.advance(1)
    assert sessions.get("u1", "acc_1") is None
    assert len(sessions) == 0


def test_put_replaces_and_restarts_window(sessions, clock):
    sessions.put("u1", "acc_1", "old")
    clock.advance(100)
    sessions.put("u1", "acc_1", "new")
    clock.advance(100)
    assert sessions.get("u1", "acc_1") == "new"


def test_pop(sessions, clock):
    sessions.put("u1", "acc_1", "state")
    assert sessions.pop("u1", "acc_1") == "state"
    assert sessions.pop("u1", "acc_1") is None


def test_pop_expired(sessions, clock):
    sessions.put("u1", "acc_1", "state")
    clock.advance(500)
    assert sessions.pop("u1", "acc_1") is None


def test_remaining(sessions, clock):
    sessions.put("u1", "acc_1", "state")
    clock.advance(20)
    assert sessions.remaining("u1", "acc_1") == pytest.approx(100)
    clock.advance(200)
    assert sessions.remaining("u1", "acc_1") == 0.0
    assert sessions.remaining("u9", "acc_9") == 0.0


def test_purge_expired(sessions, clock):
    sessions.put("u1", "acc_1", "a")
    clock.advance(60)
    sessions.put("u2", "acc_1", "b")
    clock.advance(61)
    assert sessions.purge_expired() == 1
    assert sessions.get("u2", "acc_1") == "b"


def test_put_drops_expired_sessions(sessions, clock):
    for n in range(50):
        sessions.put(f"u{n}", "acc_1", n)
    clock.advance(1200)
    sessions.put("u99", "acc_2", "fresh")
    assert list(sessions._entries) == [("u99", "acc_2")]


def test_put_keeps_live_sessions(sessions, clock):
    sessions.put("u1", "acc_1", "a")
    clock.advance(60)
    sessions.put("u2", "acc_1", "b")
    assert sessions.get("u1", "acc_1") == "a"
    assert len(sessions._entries) == 2


def test_invalid_ttl():
    with pytest.raises(ValueError):
        ExpiringSessionMap(ttl=0)


def test_concurrent_puts():
    sessions = ExpiringSessionMap(ttl=60)

    def worker(n):
        for i in range(100):
            sessions.put(n, i, (n, i))

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(sessions) == 800
