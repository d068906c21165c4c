"""Ticket status changes and the auto-close countdown.

A ``TicketLifecycle`` is one operator's open detail view of one ticket.
When the ticket is ``confirmed`` an ``AutoCloseTimer`` runs; after
``AUTOCLOSE_DURATION`` it closes the ticket unattended unless a status
change disarms it first.  The timer's start instant is kept in a
``KeyValueStore`` under ``autoclose:<ticket id>`` so that closing the view
and opening it again (from any client sharing the store) resumes the same
countdown instead of restarting it.

Rules the implementation keeps:

* remaining time is always recomputed from the clock, never decremented;
* a countdown that ran out while no view was open closes the ticket as soon
  as the ticket is opened again;
* each arming fires at most one close;
* an explicit status change beats an in-flight auto-close.  Every arming and
  disarming bumps a generation counter under ``_lock``; remote calls are
  serialized under ``_io_lock`` and an auto-close whose generation is stale
  is either not sent or has its result discarded.
"""

from __future__ import annotations

import logging
import math
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from errors import NotFoundError, RemoteError, ValidationError
from kvstore import AUTOCLOSE_PREFIX, KeyValueStore, autoclose_key
from timeline import parse_instant

logger = logging.getLogger(__name__)

OPEN = "open"
PENDING = "pending"
IN_PROGRESS = "in_progress"
CONFIRMED = "confirmed"
CLOSED = "closed"

# A confirmed ticket may still be sent back to an active state by hand.
TRANSITIONS = {
    OPEN: {PENDING, IN_PROGRESS, CONFIRMED, CLOSED},
    PENDING: {IN_PROGRESS, CONFIRMED, CLOSED},
    IN_PROGRESS: {CONFIRMED, CLOSED},
    CONFIRMED: {CLOSED, OPEN, PENDING, IN_PROGRESS},
    CLOSED: set(),
}

AUTOCLOSE_DURATION = timedelta(minutes=5)
MESSAGE_TTL = timedelta(seconds=3)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InvalidTransitionError(ValidationError):
    status_code = 409


def can_transition(current: Optional[str], new: str) -> bool:
    """Whether the detail view may move a ticket from *current* to *new*.

    Statuses outside the table carry no business meaning: anything but a
    closed ticket may move to or from them.
    """
    if current == CLOSED:
        return False
    if current in TRANSITIONS and new in TRANSITIONS:
        return new in TRANSITIONS[current]
    return True


def format_countdown(seconds: Optional[int]) -> Optional[str]:
    if seconds is None:
        return None
    minutes, secs = divmod(max(0, int(seconds)), 60)
    return f"{minutes}:{secs:02d}"


class AutoCloseTimer:
    def __init__(self, ticket_id, started_at: datetime, duration: timedelta = AUTOCLOSE_DURATION):
        self.ticket_id = ticket_id
        self.started_at = started_at
        self.duration = duration

    @property
    def deadline(self) -> datetime:
        return self.started_at + self.duration

    def remaining(self, now: datetime) -> timedelta:
        return max(timedelta(0), self.deadline - now)

    def remaining_seconds(self, now: datetime) -> int:
        return math.ceil(self.remaining(now).total_seconds())

    def expired(self, now: datetime) -> bool:
        return now >= self.deadline

    def __repr__(self):
        return f"AutoCloseTimer(ticket_id={self.ticket_id!r}, started_at={self.started_at.isoformat()})"


class Ticker:
    """Calls *callback* every *interval* seconds on a daemon thread until stopped.

    ``Event.wait`` runs on the monotonic clock, so wall-clock jumps do not
    bunch or skip ticks.
    """

    def __init__(self, interval: float, callback: Callable[[], Any], name: str = "ticker"):
        self.interval = interval
        self.callback = callback
        self.name = name
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()

    def _run(self):
        while not self._stop.wait(self.interval):
            try:
                self.callback()
            except Exception:
                logger.exception("%s callback failed", self.name)

    def stop(self, timeout: Optional[float] = None):
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self._thread = None


class TicketLifecycle:
    """Detail-view state for a single ticket.

    ``store`` provides ``get``, ``update``, ``close`` and ``add_note`` and
    raises ``NotFoundError`` / ``RemoteError``.  ``on_change`` is called with
    no arguments after every successful mutation so the timeline can refetch.
    """

    def __init__(
        self,
        ticket_id,
        store,
        timer_store: KeyValueStore,
        on_change: Optional[Callable[[], Any]] = None,
        clock: Callable[[], datetime] = utcnow,
        duration: timedelta = AUTOCLOSE_DURATION,
        message_ttl: timedelta = MESSAGE_TTL,
    ):
        self.ticket_id = ticket_id
        self.store = store
        self.timer_store = timer_store
        self.on_change = on_change
        self.clock = clock
        self.duration = duration
        self.message_ttl = message_ttl

        self.ticket: Optional[Dict[str, Any]] = None
        self.status: Optional[str] = None
        self._timer: Optional[AutoCloseTimer] = None
        self._generation = 0
        self._message: Optional[str] = None
        self._message_expires: Optional[datetime] = None
        self._ticker: Optional[Ticker] = None
        self._lock = threading.RLock()
        self._io_lock = threading.RLock()

    # -- view lifecycle -------------------------------------------------

    def open(self) -> Dict[str, Any]:
        """Load the ticket fresh and resume, arm or fire its countdown."""
        ticket = self.store.get(self.ticket_id)
        with self._lock:
            self._apply(ticket)
            if self.status == CONFIRMED:
                self._arm()
            else:
                # A start time left behind by a status change made elsewhere
                self._disarm()
            expired = self._timer is not None and self._timer.expired(self.clock())
        if expired:
            logger.info("Auto-close window for ticket %s elapsed while away", self.ticket_id)
            self.tick()
        return self.ticket

    def start_ticking(self, interval: float = 1.0):
        with self._lock:
            if self._ticker is None:
                self._ticker = Ticker(interval, self.tick, name=f"autoclose-{self.ticket_id}")
            self._ticker.start()

    def teardown(self):
        """Stop ticking; the persisted start time stays for the next view."""
        with self._lock:
            ticker, self._ticker = self._ticker, None
        if ticker is not None:
            ticker.stop()

    # -- countdown --------------------------------------------------------

    @property
    def armed(self) -> bool:
        return self._timer is not None

    @property
    def started_at(self) -> Optional[datetime]:
        timer = self._timer
        return timer.started_at if timer else None

    @property
    def remaining_seconds(self) -> Optional[int]:
        with self._lock:
            if self._timer is None:
                return None
            return self._timer.remaining_seconds(self.clock())

    @property
    def countdown(self) -> Optional[str]:
        return format_countdown(self.remaining_seconds)

    def tick(self) -> Optional[int]:
        """Recompute the countdown and fire the auto-close when it has run out.

        Returns the remaining seconds, or None once no timer is armed.
        A failed close leaves the timer armed so the next tick retries.
        """
        with self._lock:
            if self._timer is None or self.status != CONFIRMED:
                return None
            now = self.clock()
            if not self._timer.expired(now):
                return self._timer.remaining_seconds(now)
            generation = self._generation

        with self._io_lock:
            with self._lock:
                if generation != self._generation:
                    return self.remaining_seconds
            try:
                updated = self.store.close(self.ticket_id)
            except NotFoundError:
                logger.warning("Ticket %s vanished before auto-close", self.ticket_id)
                with self._lock:
                    self._disarm()
                    self._flash("Ticket not found")
                return None
            except RemoteError as e:
                logger.warning("Auto-close of ticket %s failed, retrying next tick: %s", self.ticket_id, e)
                return 0

            with self._lock:
                if generation != self._generation:
                    logger.info("Discarding auto-close of ticket %s: cancelled in flight", self.ticket_id)
                    return self.remaining_seconds
                self._apply(updated)
                self._disarm()
        logger.info("Ticket %s auto-closed", self.ticket_id)
        self._notify()
        return None

    # -- operator actions -------------------------------------------------

    def set_status(self, new_status: str) -> Dict[str, Any]:
        if not new_status:
            raise ValidationError("Status required")
        return self._transition(new_status, lambda: self.store.update(self.ticket_id, {"status": new_status}))

    def close(self) -> Dict[str, Any]:
        """Close the ticket; a no-op once it is already closed."""
        return self._transition(CLOSED, lambda: self.store.close(self.ticket_id))

    def add_note(self, text: str, staff_id=None):
        if not text or not text.strip():
            raise ValidationError("Note content required")
        try:
            with self._io_lock:
                note = self.store.add_note(self.ticket_id, text.strip(), staff_id=staff_id)
        except (NotFoundError, RemoteError) as e:
            with self._lock:
                self._flash(str(e) or "Failed to add note")
            raise
        self._notify()
        return note

    @property
    def message(self) -> Optional[str]:
        """The last error, until it auto-dismisses."""
        with self._lock:
            if self._message is not None and self.clock() >= self._message_expires:
                self._message = self._message_expires = None
            return self._message

    def dismiss_message(self):
        with self._lock:
            self._message = self._message_expires = None

    # -- internals --------------------------------------------------------

    def _transition(self, new_status: str, call: Callable[[], Dict[str, Any]]) -> Dict[str, Any]:
        with self._lock:
            if self.ticket is None:
                raise ValidationError("Ticket view is not open")
            current = self.status
            if new_status == current:
                return self.ticket
            if not can_transition(current, new_status):
                raise InvalidTransitionError(f"Cannot move ticket from {current} to {new_status}")
            was_armed = self._timer is not None
            if new_status != CONFIRMED:
                # Cancel first so no tick can start a close from here on
                self._cancel_local()

        try:
            with self._io_lock:
                updated = call()
        except (NotFoundError, RemoteError) as e:
            logger.warning("Status change of ticket %s to %s failed: %s", self.ticket_id, new_status, e)
            with self._lock:
                self._flash(str(e) or "Failed to update status")
                if was_armed and self.status == CONFIRMED:
                    self._arm()
            raise

        with self._lock:
            self._apply(updated)
            if self.status == CONFIRMED:
                self._arm()
            else:
                self._disarm()
        self._notify()
        return self.ticket

    def _apply(self, ticket: Dict[str, Any]):
        self.ticket = ticket
        self.status = ticket.get("status")

    def _arm(self):
        key = autoclose_key(self.ticket_id)
        started = parse_instant(self.timer_store.get(key))
        if started is None:
            started = self.clock()
            self.timer_store.set(key, started.isoformat())
        self._generation += 1
        self._timer = AutoCloseTimer(self.ticket_id, started, self.duration)

    def _cancel_local(self):
        self._generation += 1
        self._timer = None

    def _disarm(self):
        self._cancel_local()
        self.timer_store.remove(autoclose_key(self.ticket_id))

    def _flash(self, text: str):
        self._message = text
        self._message_expires = self.clock() + self.message_ttl

    def _notify(self):
        if self.on_change is not None:
            self.on_change()


def sweep_expired(store, timer_store: KeyValueStore, clock: Callable[[], datetime] = utcnow,
                  duration: timedelta = AUTOCLOSE_DURATION) -> list:
    """Close every confirmed ticket whose countdown ran out with no view open.

    Returns the ids of tickets closed by this sweep.  Tickets that fail to
    close keep their start time and are retried on the next sweep.
    """
    closed = []
    now = clock()
    for key in timer_store.keys(AUTOCLOSE_PREFIX):
        started = parse_instant(timer_store.get(key))
        if started is not None and now - started < duration:
            continue
        ticket_id = key[len(AUTOCLOSE_PREFIX):]
        view = TicketLifecycle(ticket_id, store, timer_store, clock=clock, duration=duration)
        try:
            view.open()
        except NotFoundError:
            timer_store.remove(key)
            continue
        except RemoteError as e:
            logger.warning("Auto-close sweep skipped ticket %s: %s", ticket_id, e)
            continue
        if view.status == CLOSED:
            closed.append(ticket_id)
    if closed:
        logger.info("Auto-close sweep closed %d ticket(s)", len(closed))
    return closed
