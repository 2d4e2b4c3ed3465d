import threading

import pytest

from tour_service.errors import Stale
from tour_service.locks import KeyedLocks, agent_locks, booking_locks

from helpers import AGENT_ID, PROPERTY_ID, agent, at, requester


def test_entries_are_released_after_use():
    locks = KeyedLocks("test")
    with locks.hold(1):
        with locks.hold(1):  # re-entrant
            with locks.hold(2):
                assert len(locks) == 2
    assert len(locks) == 0


def test_timeout_raises_stale_and_cleans_up():
    locks = KeyedLocks("test")
    taken = threading.Event()
    release = threading.Event()

    def holder():
        with locks.hold("busy"):
            taken.set()
            release.wait(5)

    thread = threading.Thread(target=holder)
    thread.start()
    taken.wait(5)
    try:
        with pytest.raises(Stale):
            with locks.hold("busy", timeout=0.01):
                pass
    finally:
        release.set()
        thread.join(5)

    assert len(locks) == 0


def test_registry_does_not_grow_with_bookings(service):
    for hour in range(9, 14):
        booking = service.request_tour(PROPERTY_ID, AGENT_ID, requester(), at(hour), 60)
        service.confirm_tour(booking.id, agent())
        service.cancel_tour(booking.id, requester(), "changed plans")

    assert len(booking_locks) == 0
    assert len(agent_locks) == 0
