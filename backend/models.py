# models.py
from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Text
from sqlalchemy.orm import relationship
from database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Staff(Base):
    __tablename__ = "staff"
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(200), nullable=False)
    email = Column(String(255), unique=True, nullable=False)
    password_hash = Column(String(255), nullable=False)
    role = Column(String(50), default="concierge")
    created_at = Column(DateTime(timezone=True), default=utcnow)


class Guest(Base):
    __tablename__ = "guests"
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(200), nullable=False)
    room_number = Column(String(20), nullable=False)
    contact_phone = Column(String(50), nullable=True)
    contact_email = Column(String(255), nullable=True)
    telegram_chat_id = Column(String(64), nullable=True)
    arrival_method = Column(String(50), nullable=True)
    flight_number = Column(String(20), nullable=True, index=True)
    check_in_date = Column(DateTime(timezone=True), nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    tickets = relationship("Ticket", back_populates="guest", order_by="Ticket.created_at.desc()")
    messages = relationship("Message", back_populates="guest", cascade="all,delete-orphan",
                            order_by="Message.sent_at.desc()")


class FlightCache(Base):
    __tablename__ = "flight_cache"
    id = Column(Integer, primary_key=True, index=True)
    flight_number = Column(String(20), unique=True, nullable=False)
    arrival_time = Column(DateTime(timezone=True), nullable=True)
    delay_minutes = Column(Integer, default=0)
    status = Column(String(50), nullable=True)
    last_updated = Column(DateTime(timezone=True), default=utcnow)


class TransportCache(Base):
    __tablename__ = "transport_cache"
    id = Column(Integer, primary_key=True, index=True)
    route_key = Column(String(100), unique=True, nullable=True)
    transport_type = Column(String(20), nullable=False)
    travel_time_mins = Column(Integer, nullable=True)
    traffic_status = Column(String(20), default="unknown")
    details = Column(Text, nullable=True)
    last_updated = Column(DateTime(timezone=True), default=utcnow)


class Ticket(Base):
    __tablename__ = "tickets"
    id = Column(Integer, primary_key=True, index=True)
    type = Column(String(50), default="guest_request")
    guest_id = Column(Integer, ForeignKey("guests.id", ondelete="SET NULL"), nullable=True)
    guest_name = Column(String(200), nullable=True)  # denormalized convenience
    room_number = Column(String(20), nullable=True)
    summary = Column(Text, nullable=False)
    scheduled_time = Column(DateTime(timezone=True), default=utcnow, index=True)
    status = Column(String(30), default="open", nullable=False)
    priority = Column(String(20), default="normal")
    assigned_to = Column(Integer, ForeignKey("staff.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow)

    guest = relationship("Guest", back_populates="tickets")
    notes = relationship("TicketNote", back_populates="ticket", cascade="all,delete-orphan",
                         order_by="TicketNote.created_at")


class TicketNote(Base):
    __tablename__ = "ticket_notes"
    id = Column(Integer, primary_key=True, index=True)
    ticket_id = Column(Integer, ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False)
    staff_id = Column(Integer, ForeignKey("staff.id", ondelete="SET NULL"), nullable=True)
    note = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    ticket = relationship("Ticket", back_populates="notes")
    staff = relationship("Staff")


class InternalNote(Base):
    __tablename__ = "internal_notes"
    id = Column(Integer, primary_key=True, index=True)
    content = Column(Text, nullable=False)
    priority = Column(String(20), default="normal")
    staff_id = Column(Integer, ForeignKey("staff.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    staff = relationship("Staff")


class Message(Base):
    __tablename__ = "messages"
    id = Column(Integer, primary_key=True, index=True)
    guest_id = Column(Integer, ForeignKey("guests.id", ondelete="CASCADE"), nullable=False)
    channel = Column(String(20), nullable=False)
    subject = Column(String(300), nullable=True)
    content = Column(Text, nullable=False)
    status = Column(String(20), default="sent")
    error = Column(Text, nullable=True)
    sent_at = Column(DateTime(timezone=True), default=utcnow)

    guest = relationship("Guest", back_populates="messages")


class AutoCloseTimerState(Base):
    """Shared key-value rows backing the auto-close countdowns."""
    __tablename__ = "autoclose_timers"
    key = Column(String(100), primary_key=True)
    value = Column(String(100), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
