# crud.py
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from errors import NotFoundError, RemoteError
from models import (
    Staff, Guest, FlightCache, TransportCache, Ticket, TicketNote, InternalNote, Message, utcnow,
)
import timeline

ROAD_ROUTE_KEY = "dublin_airport_to_hotel"


# ----- Helpers: time -----
def to_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize for storage: every stored instant is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def iso(value: Optional[datetime]) -> Optional[str]:
    return to_utc(value).isoformat() if value else None


def day_bounds(day: date, tz: str) -> tuple:
    """Local midnight-to-midnight for *day*, as a half-open UTC window."""
    zone = ZoneInfo(tz)
    start = datetime.combine(day, time.min, tzinfo=zone)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=zone)
    return to_utc(start), to_utc(end)


def _as_id(value) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise NotFoundError(f"Invalid id {value!r}")


# ----- Helpers: serializers -----
def serialize_staff(s: Staff) -> dict:
    return {"id": s.id, "name": s.name, "email": s.email, "role": s.role}


def serialize_guest(g: Guest) -> dict:
    return {
        "id": g.id, "name": g.name, "room_number": g.room_number,
        "contact_phone": g.contact_phone, "contact_email": g.contact_email,
        "telegram_chat_id": g.telegram_chat_id, "arrival_method": g.arrival_method,
        "flight_number": g.flight_number, "check_in_date": iso(g.check_in_date),
        "notes": g.notes, "created_at": iso(g.created_at),
    }


def serialize_flight(f: FlightCache) -> dict:
    return {
        "id": f.id, "flight_number": f.flight_number, "arrival_time": iso(f.arrival_time),
        "delay_minutes": f.delay_minutes or 0, "status": f.status, "last_updated": iso(f.last_updated),
    }


def serialize_transport(t: TransportCache) -> dict:
    return {
        "id": t.id, "route_key": t.route_key, "transport_type": t.transport_type,
        "travel_time_mins": t.travel_time_mins, "traffic_status": t.traffic_status,
        "details": t.details, "last_updated": iso(t.last_updated),
    }


def serialize_note(n: TicketNote) -> dict:
    staff = {"id": n.staff.id, "name": n.staff.name} if n.staff else None
    return {"id": n.id, "ticket_id": n.ticket_id, "note": n.note, "created_at": iso(n.created_at), "staff": staff}


def serialize_ticket(t: Ticket, detail: bool = False) -> dict:
    data = {
        "id": t.id, "type": t.type, "guest_id": t.guest_id, "guest_name": t.guest_name,
        "room_number": t.room_number, "summary": t.summary, "scheduled_time": iso(t.scheduled_time),
        "status": t.status, "priority": t.priority, "assigned_to": t.assigned_to,
        "created_at": iso(t.created_at), "updated_at": iso(t.updated_at),
        "guest": {"id": t.guest.id, "name": t.guest.name, "room_number": t.guest.room_number} if t.guest else None,
    }
    if detail:
        if t.guest:
            data["guest"]["contact_email"] = t.guest.contact_email
        data["notes"] = [serialize_note(n) for n in t.notes]
    return data


def serialize_internal_note(n: InternalNote) -> dict:
    staff = {"id": n.staff.id, "name": n.staff.name} if n.staff else None
    return {"id": n.id, "content": n.content, "priority": n.priority, "created_at": iso(n.created_at), "staff": staff}


def serialize_message(m: Message) -> dict:
    return {
        "id": m.id, "guest_id": m.guest_id, "channel": m.channel, "subject": m.subject,
        "content": m.content, "status": m.status, "error": m.error, "sent_at": iso(m.sent_at),
    }


# ----- Staff -----
def get_staff(db: Session, staff_id: int) -> Optional[Staff]:
    return db.get(Staff, staff_id)


def get_staff_by_email(db: Session, email: str) -> Optional[Staff]:
    return db.execute(select(Staff).where(Staff.email == email.lower())).scalar_one_or_none()


def create_staff(db: Session, name: str, email: str, password_hash: str, role: str = "concierge") -> Staff:
    if get_staff_by_email(db, email):
        raise ValueError("Staff already exists.")
    s = Staff(name=name, email=email.lower(), password_hash=password_hash, role=role)
    db.add(s)
    db.commit()
    db.refresh(s)
    return s


# ----- Guests -----
GUEST_FIELDS = ("name", "room_number", "contact_phone", "contact_email", "telegram_chat_id",
                "arrival_method", "flight_number", "check_in_date", "notes")


def list_guests(db: Session, search: Optional[str] = None, room: Optional[str] = None) -> List[Guest]:
    stmt = select(Guest).order_by(Guest.created_at.desc(), Guest.id.desc())
    if search:
        stmt = stmt.where(Guest.name.ilike(f"%{search}%"))
    if room:
        stmt = stmt.where(Guest.room_number == room)
    return db.execute(stmt).scalars().all()


def get_guest(db: Session, guest_id) -> Guest:
    g = db.get(Guest, _as_id(guest_id))
    if not g:
        raise NotFoundError("Guest not found")
    return g


def create_guest(db: Session, **fields) -> Guest:
    values = {k: v for k, v in fields.items() if k in GUEST_FIELDS}
    values["check_in_date"] = to_utc(values.get("check_in_date"))
    g = Guest(**values)
    db.add(g)
    db.commit()
    db.refresh(g)
    return g


def update_guest(db: Session, guest_id, **fields) -> Guest:
    g = get_guest(db, guest_id)
    for k, v in fields.items():
        if k in GUEST_FIELDS:
            setattr(g, k, to_utc(v) if k == "check_in_date" else v)
    db.commit()
    db.refresh(g)
    return g


def delete_guest(db: Session, guest_id):
    g = get_guest(db, guest_id)
    db.delete(g)
    db.commit()


def latest_flight(db: Session, flight_number: str) -> Optional[FlightCache]:
    stmt = (select(FlightCache).where(FlightCache.flight_number == flight_number)
            .order_by(FlightCache.last_updated.desc()).limit(1))
    return db.execute(stmt).scalar_one_or_none()


def list_arrivals(db: Session, start: datetime, end: datetime) -> List[dict]:
    """Guests with a flight checking in within [start, end), each with its cached flight."""
    stmt = (select(Guest)
            .where(Guest.flight_number.is_not(None))
            .where(Guest.check_in_date >= to_utc(start), Guest.check_in_date < to_utc(end))
            .order_by(Guest.check_in_date, Guest.id))
    arrivals = []
    for g in db.execute(stmt).scalars().all():
        data = serialize_guest(g)
        flight = latest_flight(db, g.flight_number)
        data["flight"] = serialize_flight(flight) if flight else None
        arrivals.append(data)
    return arrivals


def tracked_flight_numbers(db: Session) -> List[str]:
    stmt = select(Guest.flight_number).where(Guest.flight_number.is_not(None)).distinct()
    return sorted(db.execute(stmt).scalars().all())


# ----- Transport cache -----
def list_flights(db: Session) -> List[FlightCache]:
    return db.execute(select(FlightCache).order_by(FlightCache.arrival_time)).scalars().all()


def upsert_flight(db: Session, flight_number: str, **fields) -> FlightCache:
    f = db.execute(select(FlightCache).where(FlightCache.flight_number == flight_number)).scalar_one_or_none()
    if not f:
        f = FlightCache(flight_number=flight_number)
        db.add(f)
    for k, v in fields.items():
        setattr(f, k, to_utc(v) if k == "arrival_time" else v)
    f.last_updated = utcnow()
    db.commit()
    db.refresh(f)
    return f


def get_route(db: Session, route_key: str = ROAD_ROUTE_KEY) -> Optional[TransportCache]:
    return db.execute(select(TransportCache).where(TransportCache.route_key == route_key)).scalar_one_or_none()


def list_transport(db: Session, transport_type: str) -> List[TransportCache]:
    stmt = (select(TransportCache).where(TransportCache.transport_type == transport_type)
            .order_by(TransportCache.last_updated.desc()))
    return db.execute(stmt).scalars().all()


def upsert_route(db: Session, route_key: str, transport_type: str, **fields) -> TransportCache:
    t = get_route(db, route_key)
    if not t:
        t = TransportCache(route_key=route_key, transport_type=transport_type)
        db.add(t)
    t.transport_type = transport_type
    for k, v in fields.items():
        setattr(t, k, v)
    t.last_updated = utcnow()
    db.commit()
    db.refresh(t)
    return t


# ----- Tickets -----
TICKET_FIELDS = ("type", "guest_id", "guest_name", "room_number", "summary", "scheduled_time",
                 "status", "priority", "assigned_to")


def _ticket_query():
    return select(Ticket).options(selectinload(Ticket.guest))


def list_tickets(db: Session, status: Optional[str] = None, type: Optional[str] = None,
                 day: Optional[date] = None, guest_id: Optional[int] = None, tz: str = "UTC",
                 start: Optional[datetime] = None, end: Optional[datetime] = None) -> List[Ticket]:
    stmt = _ticket_query().order_by(Ticket.scheduled_time, Ticket.id)
    if status and status != timeline.ALL_STATUSES:
        stmt = stmt.where(Ticket.status == status)
    if type:
        stmt = stmt.where(Ticket.type == type)
    if day:
        start, end = day_bounds(day, tz)
    if start is not None:
        stmt = stmt.where(Ticket.scheduled_time >= to_utc(start))
    if end is not None:
        stmt = stmt.where(Ticket.scheduled_time < to_utc(end))
    if guest_id:
        stmt = stmt.where(Ticket.guest_id == guest_id)
    return db.execute(stmt).scalars().all()


def get_ticket(db: Session, ticket_id) -> Ticket:
    stmt = _ticket_query().options(selectinload(Ticket.notes).selectinload(TicketNote.staff)) \
        .where(Ticket.id == _as_id(ticket_id))
    t = db.execute(stmt).scalar_one_or_none()
    if not t:
        raise NotFoundError("Ticket not found")
    return t


def create_ticket(db: Session, summary: str, **fields) -> Ticket:
    values = {k: v for k, v in fields.items() if k in TICKET_FIELDS and v is not None}
    values.setdefault("type", "guest_request")
    values.setdefault("priority", "normal")
    values["status"] = "open"
    values["scheduled_time"] = to_utc(values.get("scheduled_time")) or utcnow()
    t = Ticket(summary=summary, **values)
    db.add(t)
    db.commit()
    return get_ticket(db, t.id)


def update_ticket(db: Session, ticket_id, **fields) -> Ticket:
    t = get_ticket(db, ticket_id)
    for k, v in fields.items():
        if k in TICKET_FIELDS:
            setattr(t, k, to_utc(v) if k == "scheduled_time" else v)
    t.updated_at = utcnow()
    db.commit()
    return get_ticket(db, t.id)


def close_ticket(db: Session, ticket_id) -> Ticket:
    return update_ticket(db, ticket_id, status="closed")


def add_ticket_note(db: Session, ticket_id, note: str, staff_id: Optional[int] = None) -> TicketNote:
    t = get_ticket(db, ticket_id)
    n = TicketNote(ticket_id=t.id, staff_id=staff_id, note=note)
    db.add(n)
    db.commit()
    db.refresh(n)
    return n


# ----- Internal notes -----
def list_internal_notes(db: Session, day: date, tz: str) -> List[InternalNote]:
    start, end = day_bounds(day, tz)
    stmt = (select(InternalNote).options(selectinload(InternalNote.staff))
            .where(InternalNote.created_at >= start, InternalNote.created_at < end)
            .order_by(InternalNote.created_at.desc(), InternalNote.id.desc()))
    return db.execute(stmt).scalars().all()


def create_internal_note(db: Session, content: str, priority: Optional[str] = None,
                         staff_id: Optional[int] = None) -> InternalNote:
    n = InternalNote(content=content, priority=priority or "normal", staff_id=staff_id)
    db.add(n)
    db.commit()
    db.refresh(n)
    return n


def update_internal_note(db: Session, note_id, content: str, priority: Optional[str] = None) -> InternalNote:
    n = db.get(InternalNote, _as_id(note_id))
    if not n:
        raise NotFoundError("Note not found")
    n.content = content
    n.priority = priority or "normal"
    db.commit()
    db.refresh(n)
    return n


# ----- Messages -----
def log_message(db: Session, guest_id: int, channel: str, subject: Optional[str], content: str,
                status: str = "sent", error: Optional[str] = None) -> Message:
    m = Message(guest_id=guest_id, channel=channel, subject=subject, content=content, status=status, error=error)
    db.add(m)
    db.commit()
    db.refresh(m)
    return m


def list_messages(db: Session, guest_id) -> List[Message]:
    stmt = select(Message).where(Message.guest_id == _as_id(guest_id)).order_by(Message.sent_at.desc(), Message.id.desc())
    return db.execute(stmt).scalars().all()


# ----- Timeline -----
def fetch_timeline(db: Session, day: date, status: Optional[str] = None, tz: str = "UTC",
                   delay_threshold: int = timeline.DEFAULT_DELAY_THRESHOLD) -> timeline.TimelineResult:
    start, end = day_bounds(day, tz)
    tickets = [serialize_ticket(t) for t in list_tickets(db, status=status, start=start, end=end)]
    arrivals = list_arrivals(db, start, end)
    return timeline.aggregate(tickets, arrivals, tz=tz, delay_threshold=delay_threshold)


# ----- Stores used by the ticket lifecycle -----
class _SqlStore:
    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def _run(self, fn: Callable[[Session], Any]) -> Any:
        with self._session_factory() as db:
            try:
                return fn(db)
            except SQLAlchemyError as e:
                db.rollback()
                raise RemoteError("Database request failed") from e


class SqlTicketStore(_SqlStore):
    """Ticket store over SQLAlchemy sessions, returning serialized tickets."""

    def list(self, filters: Optional[Dict[str, Any]] = None) -> List[dict]:
        return self._run(lambda db: [serialize_ticket(t) for t in list_tickets(db, **(filters or {}))])

    def get(self, ticket_id) -> dict:
        return self._run(lambda db: serialize_ticket(get_ticket(db, ticket_id), detail=True))

    def update(self, ticket_id, partial: Dict[str, Any]) -> dict:
        return self._run(lambda db: serialize_ticket(update_ticket(db, ticket_id, **partial), detail=True))

    def close(self, ticket_id) -> dict:
        return self._run(lambda db: serialize_ticket(close_ticket(db, ticket_id), detail=True))

    def add_note(self, ticket_id, text: str, staff_id: Optional[int] = None) -> dict:
        return self._run(lambda db: serialize_note(add_ticket_note(db, ticket_id, text, staff_id)))


class SqlArrivalStore(_SqlStore):
    def list_arrivals(self, start: datetime, end: datetime) -> List[dict]:
        return self._run(lambda db: list_arrivals(db, start, end))
