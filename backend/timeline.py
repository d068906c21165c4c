"""Timeline aggregation for the front-desk dashboard.

Merges the day's service tickets and guest arrival alerts into a single
time-ordered list, flags the entries that need attention and buckets them
by local hour of day.

Records arrive as plain dicts (see ``crud.serialize_ticket`` and
``crud.list_arrivals``).  Instants may be ``datetime`` objects or ISO
8601 strings; naive values are taken as UTC, which is how they are stored.
A record whose time is missing or unparseable cannot be ordered, so it is
dropped rather than reported.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone, tzinfo
from typing import Any, Dict, Iterable, List, Optional, Union
from zoneinfo import ZoneInfo

logger = logging.getLogger(__name__)

ALERT_PRIORITIES = frozenset({"high", "urgent"})
DEFAULT_PRIORITY = "normal"
DEFAULT_DELAY_THRESHOLD = 15
# Always reported in counts, even when zero
COUNTED_STATUSES = ("open", "pending", "confirmed", "closed")
ALL_STATUSES = "all"

TICKET = "ticket"
ARRIVAL = "arrival"


def parse_instant(value: Any) -> Optional[datetime]:
    """Return an aware datetime for *value*, or None if it is not a usable time."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        instant = value
    elif isinstance(value, date):
        instant = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        try:
            instant = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    return instant


def resolve_tz(tz: Union[str, tzinfo, None]) -> tzinfo:
    if tz is None:
        return timezone.utc
    if isinstance(tz, str):
        return ZoneInfo(tz)
    return tz


def status_matches(status: Optional[str], wanted: Optional[str]) -> bool:
    if not wanted or wanted == ALL_STATUSES:
        return True
    return status == wanted


@dataclass(frozen=True)
class TimelineItem:
    kind: str
    source_id: Any
    time: datetime
    summary: str
    status: Optional[str]
    priority: str = DEFAULT_PRIORITY
    has_alert: bool = False
    guest_name: Optional[str] = None
    room_number: Optional[str] = None
    ticket_type: Optional[str] = None
    source: Any = field(default=None, compare=False)

    def __post_init__(self):
        if self.kind not in (TICKET, ARRIVAL):
            raise ValueError(f"unknown timeline item kind: {self.kind!r}")

    @property
    def id(self) -> str:
        # Namespaced so ticket 7 and guest 7 never collide
        return f"{self.kind}-{self.source_id}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "ticket_type": self.ticket_type,
            "time": self.time.isoformat(),
            "guest_name": self.guest_name,
            "room_number": self.room_number,
            "summary": self.summary,
            "status": self.status,
            "priority": self.priority,
            "has_alert": self.has_alert,
            "data": self.source,
        }


@dataclass
class TimelineResult:
    items: List[TimelineItem]
    grouped_by_hour: Dict[str, List[TimelineItem]]
    counts: Dict[str, int]

    def to_dict(self, day: Optional[date] = None) -> Dict[str, Any]:
        return {
            "date": day.isoformat() if day else None,
            "items": [i.to_dict() for i in self.items],
            "grouped": {hour: [i.to_dict() for i in items] for hour, items in self.grouped_by_hour.items()},
            "counts": dict(self.counts),
        }


def ticket_item(ticket: Dict[str, Any]) -> Optional[TimelineItem]:
    """Map a serialized ticket to a timeline entry; None if it has no usable time."""
    when = parse_instant(ticket.get("scheduled_time"))
    if when is None:
        return None
    guest = ticket.get("guest") or {}
    priority = ticket.get("priority") or DEFAULT_PRIORITY
    return TimelineItem(
        kind=TICKET,
        source_id=ticket["id"],
        time=when,
        summary=ticket.get("summary") or "",
        status=ticket.get("status"),
        priority=priority,
        has_alert=priority in ALERT_PRIORITIES,
        guest_name=guest.get("name") or ticket.get("guest_name"),
        room_number=guest.get("room_number") or ticket.get("room_number"),
        ticket_type=ticket.get("type"),
        source=ticket,
    )


def arrival_item(arrival: Dict[str, Any], delay_threshold: int = DEFAULT_DELAY_THRESHOLD) -> Optional[TimelineItem]:
    """Map a guest (with optional cached ``flight``) to an arrival alert."""
    flight = arrival.get("flight") or {}
    delay = flight.get("delay_minutes") or 0
    delayed = delay > delay_threshold
    when = parse_instant(flight.get("arrival_time")) or parse_instant(arrival.get("check_in_date"))
    if when is None:
        return None
    summary = f"Flight {arrival.get('flight_number')}"
    if delayed:
        summary += " - DELAYED"
    return TimelineItem(
        kind=ARRIVAL,
        source_id=arrival["id"],
        time=when,
        summary=summary,
        status="delayed" if delayed else "on_time",
        has_alert=delayed,
        guest_name=arrival.get("name"),
        room_number=arrival.get("room_number"),
        source={"guest": {k: v for k, v in arrival.items() if k != "flight"}, "flight": arrival.get("flight")},
    )


def _collect(records: Iterable[Dict[str, Any]], build, *args) -> List[TimelineItem]:
    items = []
    for record in records or ():
        try:
            item = build(record, *args)
        except (KeyError, TypeError, ValueError, AttributeError):
            logger.warning("Skipping malformed timeline record: %r", record)
            continue
        if item is None:
            logger.debug("Skipping timeline record without a time: %r", record.get("id"))
            continue
        items.append(item)
    return items


def hour_label(when: datetime, tz: tzinfo) -> str:
    return f"{when.astimezone(tz).hour:02d}:00"


def group_by_hour(items: Iterable[TimelineItem], tz: Union[str, tzinfo, None] = None) -> Dict[str, List[TimelineItem]]:
    zone = resolve_tz(tz)
    grouped: Dict[str, List[TimelineItem]] = {}
    for item in items:
        grouped.setdefault(hour_label(item.time, zone), []).append(item)
    return grouped


def count_statuses(items: Iterable[TimelineItem]) -> Dict[str, int]:
    counts = {"total": 0}
    counts.update({s: 0 for s in COUNTED_STATUSES})
    for item in items:
        counts["total"] += 1
        # Unknown statuses are counted under their own literal value; "total" is reserved
        key = item.status if item.status not in (None, "total") else "unknown"
        counts[key] = counts.get(key, 0) + 1
    return counts


def aggregate(
    tickets: Iterable[Dict[str, Any]],
    arrivals: Iterable[Dict[str, Any]],
    tz: Union[str, tzinfo, None] = None,
    status: Optional[str] = None,
    delay_threshold: int = DEFAULT_DELAY_THRESHOLD,
) -> TimelineResult:
    """Build the day's timeline from already-fetched tickets and arrivals.

    *status* restricts tickets only; arrivals are never filtered by it.
    Output is ordered by time with ties keeping tickets before arrivals and
    each family's input order (``sorted`` is stable).
    """
    ticket_items = [i for i in _collect(tickets, ticket_item) if status_matches(i.status, status)]
    arrival_items = _collect(arrivals, arrival_item, delay_threshold)

    items = sorted(ticket_items + arrival_items, key=lambda i: i.time)
    return TimelineResult(
        items=items,
        grouped_by_hour=group_by_hour(items, tz),
        counts=count_statuses(items),
    )
