"""Shared fixtures: in-memory database, API client, fake clock and ticket store."""

from __future__ import annotations

import os

# Configuration is read at import time, so this must run before app modules load
os.environ["FITZ_DATABASE_URL"] = "sqlite://"
os.environ["FITZ_ENV"] = "test"
os.environ["FITZ_TIMEZONE"] = "UTC"
for _name in ("FITZ_CRON_SECRET", "FITZ_SMTP_HOST", "FITZ_TELEGRAM_BOT_TOKEN",
              "FITZ_FLIGHT_API_KEY", "FITZ_GOOGLE_MAPS_API_KEY"):
    os.environ.pop(_name, None)

import copy  # noqa: E402
from datetime import datetime, timedelta, timezone  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

import auth  # noqa: E402
import crud  # noqa: E402
import models  # noqa: E402
from database import Base, SessionLocal, engine  # noqa: E402
from errors import NotFoundError  # noqa: E402

T0 = datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def _schema():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def staff(db):
    return crud.create_staff(db, "Aoife Byrne", "aoife@thefitz.hotel", auth.hash_password("s3cret"))


@pytest.fixture
def client(staff):
    from app import app

    c = TestClient(app)
    c.headers["Authorization"] = f"Bearer {auth.issue_token(staff)}"
    return c


@pytest.fixture
def anon_client():
    from app import app

    return TestClient(app)


class FakeClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


class FakeTicketStore:
    """In-memory ticket store that records every call and can be told to fail."""

    def __init__(self, tickets=None):
        self.tickets = {t["id"]: dict(t) for t in (tickets or [])}
        self.calls: list = []
        self.fail_with: Exception | None = None
        self.on_close = None
        self.notes: list = []

    def _ticket(self, ticket_id):
        if ticket_id not in self.tickets:
            raise NotFoundError("Ticket not found")
        return self.tickets[ticket_id]

    def _maybe_fail(self):
        if self.fail_with is not None:
            raise self.fail_with

    def get(self, ticket_id):
        self.calls.append(("get", ticket_id))
        self._maybe_fail()
        return copy.deepcopy(self._ticket(ticket_id))

    def update(self, ticket_id, partial):
        self.calls.append(("update", ticket_id, dict(partial)))
        self._maybe_fail()
        self._ticket(ticket_id).update(partial)
        return copy.deepcopy(self._ticket(ticket_id))

    def close(self, ticket_id):
        self.calls.append(("close", ticket_id))
        self._maybe_fail()
        ticket = self._ticket(ticket_id)
        ticket["status"] = "closed"
        response = copy.deepcopy(ticket)
        if self.on_close is not None:
            # Runs while the close response is still on its way back
            hook, self.on_close = self.on_close, None
            hook()
        return response

    def add_note(self, ticket_id, text, staff_id=None):
        self.calls.append(("add_note", ticket_id, text))
        self._maybe_fail()
        self._ticket(ticket_id)
        note = {"id": len(self.notes) + 1, "ticket_id": ticket_id, "note": text}
        self.notes.append(note)
        return note

    def count(self, name):
        return sum(1 for c in self.calls if c[0] == name)


@pytest.fixture
def ticket_store():
    return FakeTicketStore([
        {"id": 1, "summary": "Taxi to airport", "status": "open", "priority": "normal"},
        {"id": 2, "summary": "Extra towels", "status": "confirmed", "priority": "low"},
    ])

