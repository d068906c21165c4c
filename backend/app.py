# ------------------------------------------------------------
# app.py — FastAPI backend for the Fitz Companion dashboard
# ------------------------------------------------------------
import logging
from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

import auth
import config
import crud
import messaging
import transport
from database import SessionLocal, get_db, init_db
from errors import FitzError, RemoteError
from kvstore import SqlKeyValueStore
from lifecycle import Ticker, TicketLifecycle, sweep_expired
from logging_config import configure_logging

logger = logging.getLogger(__name__)


# ------------------------------------------------------------
# Payloads
# ------------------------------------------------------------
class LoginIn(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None


class TicketIn(BaseModel):
    summary: Optional[str] = None
    type: Optional[str] = None
    guest_id: Optional[int] = None
    guest_name: Optional[str] = None
    room_number: Optional[str] = None
    scheduled_time: Optional[datetime] = None
    priority: Optional[str] = None
    assigned_to: Optional[int] = None


class TicketUpdate(BaseModel):
    summary: Optional[str] = None
    type: Optional[str] = None
    guest_id: Optional[int] = None
    guest_name: Optional[str] = None
    room_number: Optional[str] = None
    scheduled_time: Optional[datetime] = None
    status: Optional[str] = None
    priority: Optional[str] = None
    assigned_to: Optional[int] = None


class NoteIn(BaseModel):
    note: Optional[str] = None
    staff_id: Optional[int] = None


class InternalNoteIn(BaseModel):
    content: Optional[str] = None
    priority: Optional[str] = None
    staff_id: Optional[int] = None


class GuestIn(BaseModel):
    name: Optional[str] = None
    room_number: Optional[str] = None
    contact_phone: Optional[str] = None
    contact_email: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    arrival_method: Optional[str] = None
    flight_number: Optional[str] = None
    check_in_date: Optional[datetime] = None
    notes: Optional[str] = None


class MessageIn(BaseModel):
    guest_id: int
    subject: Optional[str] = None
    content: Optional[str] = None
    template: Optional[str] = None
    channel: str = "email"


# ------------------------------------------------------------
# Dependencies
# ------------------------------------------------------------
def get_ticket_store() -> crud.SqlTicketStore:
    return crud.SqlTicketStore(SessionLocal)


def get_timer_store() -> SqlKeyValueStore:
    return SqlKeyValueStore(SessionLocal)


def open_view(ticket_id: int, store, timer_store) -> TicketLifecycle:
    view = TicketLifecycle(
        ticket_id, store, timer_store,
        on_change=lambda: logger.debug("Ticket %s changed", ticket_id),
        duration=autoclose_duration(),
    )
    view.open()
    return view


def autoclose_duration() -> timedelta:
    return timedelta(seconds=config.AUTOCLOSE_SECONDS)


def view_payload(view: TicketLifecycle) -> dict:
    auto_close = None
    if view.armed:
        auto_close = {
            "started_at": view.started_at.isoformat(),
            "remaining_seconds": view.remaining_seconds,
            "countdown": view.countdown,
        }
    return {"ticket": view.ticket, "auto_close": auto_close}


def today() -> date:
    return datetime.now(ZoneInfo(config.TIMEZONE)).date()


def run_sweep():
    closed = sweep_expired(get_ticket_store(), get_timer_store(),
                           duration=autoclose_duration())
    return {"message": "Auto-close sweep complete", "closed": closed}


# ------------------------------------------------------------
# FastAPI setup
# ------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(config.LOG_LEVEL, config.LOG_FORMAT)
    init_db()
    sweeper = None
    if config.SWEEP_INTERVAL > 0:
        sweeper = Ticker(config.SWEEP_INTERVAL, run_sweep, name="autoclose-sweeper")
        sweeper.start()
        logger.info("Auto-close sweeper running every %ss", config.SWEEP_INTERVAL)
    yield
    if sweeper is not None:
        sweeper.stop()


app = FastAPI(title="Fitz Companion API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)


def error_body(message) -> dict:
    return {"error": message}


@app.exception_handler(FitzError)
def handle_fitz_error(request: Request, exc: FitzError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content=error_body(str(exc)))


@app.exception_handler(SQLAlchemyError)
def handle_database_error(request: Request, exc: SQLAlchemyError):
    logger.error("%s %s database error: %s", request.method, request.url.path, exc)
    return handle_fitz_error(request, RemoteError("Database request failed"))


@app.exception_handler(StarletteHTTPException)
def handle_http_error(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content=error_body(exc.detail), headers=exc.headers)


@app.exception_handler(RequestValidationError)
def handle_invalid_request(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(p) for p in first.get("loc", ())[1:])
    message = f"{field}: {first.get('msg')}" if field else "Invalid request"
    return JSONResponse(status_code=400, content=error_body(message))


@app.exception_handler(Exception)
def handle_unexpected(request: Request, exc: Exception):
    logger.exception("%s %s crashed", request.method, request.url.path)
    return JSONResponse(status_code=500, content=error_body("Internal server error"))


public = APIRouter(prefix="/api")
api = APIRouter(prefix="/api", dependencies=[Depends(auth.current_staff)])
cron = APIRouter(prefix="/api/cron", dependencies=[Depends(auth.verify_cron)])


@app.get("/")
def root():
    return {"message": "Fitz Companion API is running"}


@public.get("/health")
def health():
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "database": "configured" if config.DATABASE_URL else "missing",
    }


# ---------------- AUTH ROUTES ----------------
@public.post("/auth/login")
def login(payload: LoginIn, db: Session = Depends(get_db)):
    if not payload.email or not payload.password:
        raise HTTPException(400, "Email and password required")
    staff = auth.authenticate(db, payload.email, payload.password)
    if not staff:
        logger.info("Failed login for %s", payload.email)
        raise HTTPException(401, "Invalid credentials")
    return {"token": auth.issue_token(staff), "user": crud.serialize_staff(staff)}


@public.get("/auth/me")
def me(staff=Depends(auth.current_staff)):
    return crud.serialize_staff(staff)


# ---------------- TICKET ROUTES ----------------
@api.get("/tickets")
def list_tickets(status: Optional[str] = None, type: Optional[str] = None, date: Optional[date] = None,
                 guest_id: Optional[int] = None, db: Session = Depends(get_db)):
    tickets = crud.list_tickets(db, status=status, type=type, day=date, guest_id=guest_id, tz=config.TIMEZONE)
    return [crud.serialize_ticket(t) for t in tickets]


@api.get("/tickets/{ticket_id}")
def get_ticket(ticket_id: int, db: Session = Depends(get_db)):
    return crud.serialize_ticket(crud.get_ticket(db, ticket_id), detail=True)


@api.get("/tickets/{ticket_id}/view")
def view_ticket(ticket_id: int, store=Depends(get_ticket_store), timer_store=Depends(get_timer_store)):
    """Open the detail view: resumes the auto-close countdown, or closes if it ran out."""
    return view_payload(open_view(ticket_id, store, timer_store))


@api.post("/tickets", status_code=201)
def create_ticket(payload: TicketIn, db: Session = Depends(get_db)):
    if not payload.summary or not payload.summary.strip():
        raise HTTPException(400, "Summary required")
    fields = payload.model_dump(exclude={"summary"})
    t = crud.create_ticket(db, summary=payload.summary.strip(), **fields)
    logger.info("Created ticket %s", t.id)
    return crud.serialize_ticket(t, detail=True)


@api.put("/tickets/{ticket_id}")
def update_ticket(ticket_id: int, payload: TicketUpdate, db: Session = Depends(get_db),
                  store=Depends(get_ticket_store), timer_store=Depends(get_timer_store)):
    updates = payload.model_dump(exclude_unset=True)
    status = updates.pop("status", None)
    view = open_view(ticket_id, store, timer_store)
    # Status goes first: a refused or failed transition must not leave the other fields written
    if status:
        view.set_status(status)
    if updates:
        crud.update_ticket(db, ticket_id, **updates)
        view.open()
    return view_payload(view)


@api.post("/tickets/{ticket_id}/notes", status_code=201)
def add_note(ticket_id: int, payload: NoteIn, store=Depends(get_ticket_store),
             timer_store=Depends(get_timer_store)):
    if not payload.note or not payload.note.strip():
        raise HTTPException(400, "Note content required")
    view = open_view(ticket_id, store, timer_store)
    return view.add_note(payload.note, staff_id=payload.staff_id)


@api.put("/tickets/{ticket_id}/close")
def close_ticket(ticket_id: int, store=Depends(get_ticket_store), timer_store=Depends(get_timer_store)):
    view = open_view(ticket_id, store, timer_store)
    return view.close()


# ---------------- TIMELINE ROUTES ----------------
@api.get("/timeline")
def get_timeline(date: Optional[date] = None, status: Optional[str] = None, db: Session = Depends(get_db)):
    day = date or today()
    result = crud.fetch_timeline(db, day, status=status, tz=config.TIMEZONE,
                                 delay_threshold=config.ARRIVAL_DELAY_THRESHOLD)
    return result.to_dict(day)


@api.get("/timeline/notes")
def list_internal_notes(date: Optional[date] = None, db: Session = Depends(get_db)):
    notes = crud.list_internal_notes(db, date or today(), config.TIMEZONE)
    return [crud.serialize_internal_note(n) for n in notes]


@api.post("/timeline/notes", status_code=201)
def create_internal_note(payload: InternalNoteIn, db: Session = Depends(get_db)):
    if not payload.content or not payload.content.strip():
        raise HTTPException(400, "Note content required")
    n = crud.create_internal_note(db, payload.content.strip(), payload.priority, payload.staff_id)
    return crud.serialize_internal_note(n)


@api.put("/timeline/notes/{note_id}")
def update_internal_note(note_id: int, payload: InternalNoteIn, db: Session = Depends(get_db)):
    if not payload.content or not payload.content.strip():
        raise HTTPException(400, "Note content required")
    n = crud.update_internal_note(db, note_id, payload.content.strip(), payload.priority)
    return crud.serialize_internal_note(n)


# ---------------- GUEST ROUTES ----------------
@api.get("/guests")
def list_guests(search: Optional[str] = None, room: Optional[str] = None, db: Session = Depends(get_db)):
    return [crud.serialize_guest(g) for g in crud.list_guests(db, search=search, room=room)]


@api.get("/guests/{guest_id}")
def get_guest(guest_id: int, db: Session = Depends(get_db)):
    g = crud.get_guest(db, guest_id)
    data = crud.serialize_guest(g)
    data["tickets"] = [crud.serialize_ticket(t) for t in g.tickets]
    data["messages"] = [crud.serialize_message(m) for m in g.messages]
    return data


@api.post("/guests", status_code=201)
def create_guest(payload: GuestIn, db: Session = Depends(get_db)):
    if not payload.name or not payload.room_number:
        raise HTTPException(400, "Name and room number required")
    g = crud.create_guest(db, **payload.model_dump())
    return crud.serialize_guest(g)


@api.put("/guests/{guest_id}")
def update_guest(guest_id: int, payload: GuestIn, db: Session = Depends(get_db)):
    g = crud.update_guest(db, guest_id, **payload.model_dump(exclude_unset=True))
    return crud.serialize_guest(g)


@api.delete("/guests/{guest_id}", status_code=204)
def delete_guest(guest_id: int, db: Session = Depends(get_db)):
    crud.delete_guest(db, guest_id)
    return Response(status_code=204)


# ---------------- MESSAGE ROUTES ----------------
@api.post("/messages/send", status_code=201)
def send_message(payload: MessageIn, db: Session = Depends(get_db)):
    guest = crud.serialize_guest(crud.get_guest(db, payload.guest_id))
    subject, content = messaging.render(payload.template, guest, payload.subject, payload.content)
    if not content:
        raise HTTPException(400, "Message content required")
    delivery = messaging.deliver(guest, payload.channel, subject, content)
    m = crud.log_message(db, guest["id"], payload.channel, subject, content, delivery.status, delivery.error)
    return {"success": delivery.status == "sent", "message": crud.serialize_message(m), "error": delivery.error}


@api.get("/messages/guest/{guest_id}")
def guest_messages(guest_id: int, db: Session = Depends(get_db)):
    return [crud.serialize_message(m) for m in crud.list_messages(db, guest_id)]


# ---------------- TRANSPORT ROUTES ----------------
@api.get("/transport/flights")
def flights(db: Session = Depends(get_db)):
    return [crud.serialize_flight(f) for f in crud.list_flights(db)]


@api.get("/transport/traffic")
def traffic(db: Session = Depends(get_db)):
    route = crud.get_route(db)
    if not route:
        return {"route_key": crud.ROAD_ROUTE_KEY, "travel_time_mins": None,
                "traffic_status": "unknown", "last_updated": None}
    return crud.serialize_transport(route)


@api.get("/transport/rail")
def rail(db: Session = Depends(get_db)):
    return [crud.serialize_transport(t) for t in crud.list_transport(db, "rail")]


@api.get("/transport/bus")
def bus(db: Session = Depends(get_db)):
    return [crud.serialize_transport(t) for t in crud.list_transport(db, "bus")]


@api.get("/transport/eta/{guest_id}")
def guest_eta(guest_id: int, db: Session = Depends(get_db)):
    guest = crud.get_guest(db, guest_id)
    flight = crud.latest_flight(db, guest.flight_number) if guest.flight_number else None
    route = crud.get_route(db)
    return transport.estimate_arrival(
        crud.serialize_guest(guest),
        crud.serialize_flight(flight) if flight else None,
        crud.serialize_transport(route) if route else None,
    )


# ---------------- CRON ROUTES ----------------
@cron.get("/flights")
def cron_flights(db: Session = Depends(get_db)):
    result = transport.refresh_flights(db)
    result["timestamp"] = datetime.now(timezone.utc).isoformat()
    return result


@cron.get("/traffic")
def cron_traffic(db: Session = Depends(get_db)):
    result = transport.refresh_traffic(db)
    result["timestamp"] = datetime.now(timezone.utc).isoformat()
    return result


@cron.get("/autoclose")
def cron_autoclose():
    result = run_sweep()
    result["timestamp"] = datetime.now(timezone.utc).isoformat()
    return result


app.include_router(public)
app.include_router(api)
app.include_router(cron)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("app:app", host=config.HOST, port=config.PORT, reload=config.DEBUG)
