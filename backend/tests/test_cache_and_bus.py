from __future__ import annotations

import pytest

from app.domain.models import CollectionView, LoadingProgress, LoadState
from app.engine import CacheWindow, NotificationBus

from fakes import FakeClock


def _view(state: LoadState = LoadState.IDLE) -> CollectionView:
    return CollectionView(owner_key=None, entities=(), state=state, progress=LoadingProgress())


def test_cache_window_expires_after_ttl():
    clock = FakeClock()
    window = CacheWindow("0xabc", 120, clock=clock)

    assert not window.is_valid()
    window.mark_loaded()
    assert window.is_valid("0xabc")
    assert not window.is_valid("0xdef")

    clock.advance(119)
    assert window.is_valid()
    clock.advance(1)
    assert window.is_expired()
    assert not window.is_valid()


def test_cache_window_ignores_partial_loads():
    window = CacheWindow("0xabc", 60, clock=FakeClock())
    window.store({})
    assert not window.loaded
    assert not window.is_valid()


def test_cache_window_invalidate():
    window = CacheWindow("0xabc", 60, clock=FakeClock())
    window.mark_loaded()
    window.invalidate()
    assert not window.is_valid()


def test_cache_window_rejects_non_positive_ttl():
    with pytest.raises(ValueError):
        CacheWindow("0xabc", 0)


def test_bus_delivers_until_unsubscribed():
    bus = NotificationBus()
    received = []
    unsubscribe = bus.subscribe(received.append)

    bus.publish(_view(LoadState.LOADING))
    unsubscribe()
    bus.publish(_view(LoadState.LOADED))

    assert [view.state for view in received] == [LoadState.LOADING]
    assert len(bus) == 0


def test_bus_isolates_failing_subscriber():
    bus = NotificationBus()
    received = []

    def broken(_view):
        raise RuntimeError("subscriber bug")

    bus.subscribe(broken)
    bus.subscribe(received.append)
    bus.publish(_view())

    assert len(received) == 1
