# transport.py — flight/traffic cache refresh and guest ETA
import logging
from datetime import timedelta
from typing import Optional

import httpx
from sqlalchemy.orm import Session

import config
import crud
from timeline import parse_instant

logger = logging.getLogger(__name__)

FLIGHT_API_URL = "http://api.aviationstack.com/v1/flights"
DISTANCE_MATRIX_URL = "https://maps.googleapis.com/maps/api/distancematrix/json"
# Deplaning and customs before the drive starts
ARRIVAL_BUFFER_MINUTES = 30


def classify_traffic(travel_mins: Optional[int], normal_mins: Optional[int]) -> str:
    if not travel_mins or not normal_mins:
        return "unknown"
    if travel_mins > normal_mins * 1.5:
        return "heavy"
    if travel_mins > normal_mins * 1.2:
        return "moderate"
    return "light"


def _client(client: Optional[httpx.Client]) -> httpx.Client:
    return client or httpx.Client(timeout=config.HTTP_TIMEOUT)


def fetch_flight_status(flight_number: str, client: httpx.Client) -> dict:
    """Arrival time and delay for one flight from the flight API; {} when unknown."""
    resp = client.get(FLIGHT_API_URL, params={"access_key": config.FLIGHT_API_KEY, "flight_iata": flight_number})
    resp.raise_for_status()
    flights = resp.json().get("data") or []
    if not flights:
        return {}
    arrival = flights[0].get("arrival") or {}
    return {
        "arrival_time": parse_instant(arrival.get("estimated") or arrival.get("scheduled")),
        "delay_minutes": int(arrival.get("delay") or 0),
        "status": flights[0].get("flight_status"),
    }


def refresh_flights(db: Session, client: Optional[httpx.Client] = None) -> dict:
    numbers = crud.tracked_flight_numbers(db)
    if not numbers:
        return {"message": "No flights to track", "updated": 0}

    http = _client(client) if config.FLIGHT_API_KEY else None
    try:
        for number in numbers:
            fields = {}
            if http is not None:
                try:
                    fields = fetch_flight_status(number, http)
                except (httpx.HTTPError, ValueError) as e:
                    logger.warning("Flight API lookup for %s failed: %s", number, e)
            crud.upsert_flight(db, number, **fields)
    finally:
        if http is not None and client is None:
            http.close()

    logger.info("Refreshed flight cache for %d flight(s)", len(numbers))
    return {"message": "Flight data updated", "tracked": len(numbers)}


def refresh_traffic(db: Session, client: Optional[httpx.Client] = None) -> dict:
    travel_mins = None
    status = "unknown"

    if config.GOOGLE_MAPS_API_KEY:
        http = _client(client)
        try:
            resp = http.get(DISTANCE_MATRIX_URL, params={
                "origins": config.AIRPORT_COORDINATES,
                "destinations": config.HOTEL_COORDINATES,
                "departure_time": "now",
                "key": config.GOOGLE_MAPS_API_KEY,
            })
            resp.raise_for_status()
            element = ((resp.json().get("rows") or [{}])[0].get("elements") or [{}])[0]
            if element.get("duration_in_traffic"):
                travel_mins = round(element["duration_in_traffic"]["value"] / 60)
                normal_mins = round(element["duration"]["value"] / 60)
                status = classify_traffic(travel_mins, normal_mins)
        except (httpx.HTTPError, ValueError, KeyError) as e:
            logger.warning("Distance Matrix lookup failed: %s", e)
        finally:
            if client is None:
                http.close()

    crud.upsert_route(db, crud.ROAD_ROUTE_KEY, "road", travel_time_mins=travel_mins, traffic_status=status)
    return {"message": "Traffic data updated", "travel_time_mins": travel_mins, "traffic_status": status}


def estimate_arrival(guest: dict, flight: Optional[dict], route: Optional[dict]) -> dict:
    """Flight arrival plus the arrival buffer plus current drive time."""
    eta = None
    details = {}
    landed = parse_instant((flight or {}).get("arrival_time"))
    travel = (route or {}).get("travel_time_mins")
    if landed and travel:
        total = ARRIVAL_BUFFER_MINUTES + travel
        eta = landed + timedelta(minutes=total)
        details = {
            "flight_arrival": landed.isoformat(),
            "buffer_minutes": ARRIVAL_BUFFER_MINUTES,
            "travel_minutes": travel,
            "traffic_status": route.get("traffic_status"),
            "estimated_arrival": eta.isoformat(),
        }
    return {
        "guest_id": guest["id"],
        "guest_name": guest["name"],
        "flight_number": guest.get("flight_number"),
        "eta": eta.isoformat() if eta else None,
        "details": details,
    }
