# auth.py — staff login and bearer-token checks
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
import jwt
from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import Session

import config
import crud
from database import get_db
from models import Staff

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed hash in the database
        return False


def issue_token(staff: Staff, now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    payload = {
        "id": staff.id,
        "email": staff.email,
        "role": staff.role,
        "iat": now,
        "exp": now + timedelta(hours=config.TOKEN_TTL_HOURS),
    }
    return jwt.encode(payload, config.JWT_SECRET, algorithm=ALGORITHM)


def decode_token(token: str) -> dict:
    return jwt.decode(token, config.JWT_SECRET, algorithms=[ALGORITHM])


def authenticate(db: Session, email: str, password: str) -> Optional[Staff]:
    staff = crud.get_staff_by_email(db, email)
    if not staff or not verify_password(password, staff.password_hash):
        return None
    return staff


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization or not authorization.startswith("Bearer "):
        return None
    return authorization.split(" ", 1)[1].strip() or None


# FastAPI dependency
def current_staff(authorization: Optional[str] = Header(None), db: Session = Depends(get_db)) -> Staff:
    token = bearer_token(authorization)
    if not token:
        raise HTTPException(401, "No token provided")
    try:
        claims = decode_token(token)
    except jwt.PyJWTError:
        raise HTTPException(401, "Invalid token")
    staff_id = claims.get("id")
    staff = crud.get_staff(db, staff_id) if staff_id is not None else None
    if not staff:
        raise HTTPException(401, "User not found")
    return staff


def verify_cron(authorization: Optional[str] = Header(None)):
    """Cron endpoints accept ``Bearer <CRON_SECRET>`` when a secret is configured."""
    if config.CRON_SECRET and authorization != f"Bearer {config.CRON_SECRET}":
        logger.warning("Rejected cron request with bad credentials")
        raise HTTPException(401, "Unauthorized")
