"""Tests for ticket status transitions and the auto-close countdown."""

from __future__ import annotations

import threading
from datetime import timedelta

import pytest

from errors import NotFoundError, RemoteError, ValidationError
from kvstore import MemoryKeyValueStore, autoclose_key
from lifecycle import (
    AutoCloseTimer,
    InvalidTransitionError,
    Ticker,
    TicketLifecycle,
    can_transition,
    format_countdown,
    sweep_expired,
)


@pytest.fixture
def timers():
    return MemoryKeyValueStore()


@pytest.fixture
def changes():
    return []


@pytest.fixture
def make_view(ticket_store, timers, clock, changes):
    def make(ticket_id=1):
        return TicketLifecycle(ticket_id, ticket_store, timers,
                               on_change=lambda: changes.append(ticket_id), clock=clock)
    return make


class TestTransitions:
    @pytest.mark.parametrize("current,new", [
        ("open", "pending"), ("open", "confirmed"), ("pending", "in_progress"),
        ("in_progress", "confirmed"), ("confirmed", "closed"), ("confirmed", "in_progress"),
    ])
    def test_allowed(self, current, new):
        assert can_transition(current, new)

    @pytest.mark.parametrize("current,new", [
        ("closed", "open"), ("closed", "confirmed"), ("in_progress", "pending"), ("pending", "open"),
    ])
    def test_rejected(self, current, new):
        assert not can_transition(current, new)

    def test_unknown_statuses_are_inert(self):
        assert can_transition("archived", "open")
        assert can_transition("open", "transferred")
        assert not can_transition("closed", "archived")

    def test_invalid_transition_raises_without_calling_store(self, make_view, ticket_store):
        ticket_store.tickets[1]["status"] = "closed"
        view = make_view()
        view.open()

        with pytest.raises(InvalidTransitionError):
            view.set_status("open")
        assert ticket_store.count("update") == 0


class TestCountdown:
    @pytest.mark.parametrize("seconds,text", [(300, "5:00"), (239, "3:59"), (9, "0:09"), (0, "0:00"), (-4, "0:00")])
    def test_format(self, seconds, text):
        assert format_countdown(seconds) == text

    def test_timer_remaining_rounds_up(self, clock):
        timer = AutoCloseTimer(1, clock.now, timedelta(minutes=5))

        assert timer.remaining_seconds(clock.now + timedelta(seconds=0.4)) == 300
        assert timer.remaining_seconds(clock.now + timedelta(minutes=6)) == 0
        assert timer.expired(clock.now + timedelta(minutes=5))

    def test_confirming_arms_and_persists_start(self, make_view, timers, clock, changes):
        view = make_view()
        view.open()

        view.set_status("confirmed")

        assert view.armed
        assert view.countdown == "5:00"
        assert timers.get(autoclose_key(1)) == clock.now.isoformat()
        assert changes == [1]

    def test_remaining_follows_the_clock(self, make_view, clock):
        view = make_view()
        view.open()
        view.set_status("confirmed")

        clock.advance(seconds=61)

        assert view.tick() == 239
        assert view.countdown == "3:59"

    def test_fires_once_when_countdown_runs_out(self, make_view, ticket_store, timers, clock, changes):
        view = make_view()
        view.open()
        view.set_status("confirmed")

        clock.advance(minutes=5)
        assert view.tick() is None
        clock.advance(seconds=1)
        view.tick()

        assert view.status == "closed"
        assert not view.armed
        assert ticket_store.count("close") == 1
        assert timers.get(autoclose_key(1)) is None
        assert changes == [1, 1]

    def test_reopening_resumes_the_same_countdown(self, make_view, timers, clock):
        first = make_view(2)
        first.open()
        started = first.started_at
        first.teardown()
        assert timers.get(autoclose_key(2)) is not None

        clock.advance(minutes=2)
        second = make_view(2)
        second.open()

        assert second.started_at == started
        assert second.remaining_seconds == 180

    def test_already_confirmed_ticket_arms_on_open(self, make_view, timers, clock):
        view = make_view(2)
        view.open()

        assert view.armed
        assert timers.get(autoclose_key(2)) == clock.now.isoformat()

    def test_expired_while_away_closes_on_open(self, make_view, ticket_store, timers, clock):
        timers.set(autoclose_key(2), clock.now.isoformat())
        clock.advance(minutes=6)

        view = make_view(2)
        view.open()

        assert view.status == "closed"
        assert ticket_store.tickets[2]["status"] == "closed"
        assert view.countdown is None
        assert ticket_store.count("close") == 1
        assert timers.get(autoclose_key(2)) is None

    def test_stale_start_erased_when_ticket_no_longer_confirmed(self, make_view, timers, clock):
        timers.set(autoclose_key(1), clock.now.isoformat())

        view = make_view(1)
        view.open()

        assert not view.armed
        assert timers.get(autoclose_key(1)) is None

    def test_rearming_overwrites_instead_of_stacking(self, make_view, timers, clock):
        view = make_view()
        view.open()
        view.set_status("confirmed")
        view.set_status("pending")
        clock.advance(minutes=1)

        view.set_status("confirmed")

        assert view.started_at == clock.now
        assert timers.keys("autoclose:") == [autoclose_key(1)]


class TestCancellation:
    def test_status_change_before_expiry_cancels(self, make_view, ticket_store, timers, clock):
        view = make_view(2)
        view.open()

        clock.advance(minutes=4, seconds=59)
        view.set_status("in_progress")
        clock.advance(seconds=1)
        view.tick()

        assert view.status == "in_progress"
        assert not view.armed
        assert ticket_store.count("close") == 0
        assert timers.get(autoclose_key(2)) is None

    def test_cancellation_wins_over_in_flight_close(self, make_view, ticket_store, clock):
        view = make_view(2)
        view.open()
        ticket_store.on_close = lambda: view.set_status("in_progress")

        clock.advance(minutes=5)
        view.tick()
        clock.advance(seconds=1)
        view.tick()

        assert view.status == "in_progress"
        assert ticket_store.tickets[2]["status"] == "in_progress"
        assert ticket_store.count("close") == 1

    def test_cancel_from_another_thread_blocks_the_close(self, make_view, ticket_store, clock):
        view = make_view(2)
        view.open()
        clock.advance(minutes=5)

        worker = threading.Thread(target=view.set_status, args=("in_progress",))
        worker.start()
        worker.join()
        view.tick()

        assert ticket_store.count("close") == 0
        assert view.status == "in_progress"

    def test_teardown_keeps_timer(self, make_view, timers):
        view = make_view(2)
        view.open()
        view.start_ticking(interval=60)

        view.teardown()

        assert view.armed
        assert timers.get(autoclose_key(2)) is not None


class TestFailures:
    def test_failed_auto_close_retries_next_tick(self, make_view, ticket_store, clock):
        view = make_view(2)
        view.open()
        clock.advance(minutes=5)
        ticket_store.fail_with = RemoteError("store down")

        assert view.tick() == 0
        assert view.armed

        ticket_store.fail_with = None
        clock.advance(seconds=1)
        view.tick()

        assert view.status == "closed"
        assert ticket_store.count("close") == 2

    def test_failed_manual_change_keeps_status_and_flashes(self, make_view, ticket_store, clock):
        view = make_view(2)
        view.open()
        ticket_store.fail_with = RemoteError("store down")

        with pytest.raises(RemoteError):
            view.set_status("in_progress")

        assert view.status == "confirmed"
        assert view.armed
        assert view.message == "store down"
        clock.advance(seconds=3)
        assert view.message is None

    def test_failed_manual_close_is_not_retried(self, make_view, ticket_store):
        view = make_view()
        view.open()
        ticket_store.fail_with = RemoteError("store down")

        with pytest.raises(RemoteError):
            view.close()

        assert ticket_store.count("close") == 1
        assert view.status == "open"

    def test_open_missing_ticket(self, make_view):
        with pytest.raises(NotFoundError):
            make_view(99).open()

    def test_ticket_deleted_before_update(self, make_view, ticket_store):
        view = make_view()
        view.open()
        del ticket_store.tickets[1]

        with pytest.raises(NotFoundError):
            view.set_status("pending")
        assert view.message == "Ticket not found"
        assert view.status == "open"


class TestActions:
    def test_close_is_idempotent(self, make_view, ticket_store, changes):
        view = make_view()
        view.open()

        view.close()
        view.close()

        assert ticket_store.count("close") == 1
        assert changes == [1]

    def test_empty_note_blocked_before_any_call(self, make_view, ticket_store):
        view = make_view()
        view.open()
        calls = len(ticket_store.calls)

        with pytest.raises(ValidationError):
            view.add_note("   ")
        assert len(ticket_store.calls) == calls

    def test_add_note_notifies(self, make_view, ticket_store, changes):
        view = make_view()
        view.open()

        note = view.add_note(" Guest prefers a saloon car ")

        assert note["note"] == "Guest prefers a saloon car"
        assert changes == [1]

    def test_action_before_open(self, make_view):
        with pytest.raises(ValidationError):
            make_view().set_status("pending")


class TestSweep:
    def test_closes_only_expired_timers(self, ticket_store, timers, clock):
        ticket_store.tickets[3] = {"id": 3, "summary": "Wake-up call", "status": "confirmed"}
        timers.set(autoclose_key(2), (clock.now - timedelta(minutes=7)).isoformat())
        timers.set(autoclose_key(3), (clock.now - timedelta(minutes=1)).isoformat())
        # Sweep keys come back as strings
        ticket_store.tickets["2"] = ticket_store.tickets.pop(2)

        closed = sweep_expired(ticket_store, timers, clock=clock)

        assert closed == ["2"]
        assert ticket_store.tickets["2"]["status"] == "closed"
        assert ticket_store.tickets[3]["status"] == "confirmed"
        assert timers.get(autoclose_key(3)) is not None

    def test_forgets_timers_of_deleted_tickets(self, ticket_store, timers, clock):
        timers.set(autoclose_key(42), (clock.now - timedelta(minutes=9)).isoformat())

        assert sweep_expired(ticket_store, timers, clock=clock) == []
        assert timers.get(autoclose_key(42)) is None


class TestTicker:
    def test_calls_back_until_stopped(self):
        fired = threading.Event()
        ticker = Ticker(0.01, fired.set)

        ticker.start()
        assert fired.wait(2)
        ticker.stop(timeout=2)

        assert not ticker.running

    def test_callback_errors_do_not_stop_ticking(self):
        calls = []
        done = threading.Event()

        def callback():
            calls.append(1)
            if len(calls) >= 2:
                done.set()
            raise RuntimeError("boom")

        ticker = Ticker(0.01, callback)
        ticker.start()
        assert done.wait(2)
        ticker.stop(timeout=2)
