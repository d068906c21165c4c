# kvstore.py — durable string scopes for auto-close start times
import threading
from typing import Callable, Dict, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from errors import RemoteError
from models import AutoCloseTimerState

AUTOCLOSE_PREFIX = "autoclose:"


def autoclose_key(ticket_id) -> str:
    return f"{AUTOCLOSE_PREFIX}{ticket_id}"


class KeyValueStore:
    """get/set/remove over string keys and values."""

    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set(self, key: str, value: str) -> None:
        raise NotImplementedError

    def remove(self, key: str) -> None:
        raise NotImplementedError

    def keys(self, prefix: str = "") -> list:
        raise NotImplementedError


class MemoryKeyValueStore(KeyValueStore):
    """Process-local scope, the equivalent of one browser's local storage."""

    def __init__(self):
        self._data: Dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key):
        with self._lock:
            return self._data.get(key)

    def set(self, key, value):
        with self._lock:
            self._data[key] = value

    def remove(self, key):
        with self._lock:
            self._data.pop(key, None)

    def keys(self, prefix=""):
        with self._lock:
            return [k for k in self._data if k.startswith(prefix)]


class SqlKeyValueStore(KeyValueStore):
    """Scope shared by every operator, stored in ``autoclose_timers``."""

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def get(self, key):
        try:
            with self._session_factory() as db:
                row = db.get(AutoCloseTimerState, key)
                return row.value if row else None
        except SQLAlchemyError as e:
            raise RemoteError(f"Could not read {key}") from e

    def set(self, key, value):
        try:
            with self._session_factory() as db:
                row = db.get(AutoCloseTimerState, key)
                if row:
                    row.value = value
                else:
                    db.add(AutoCloseTimerState(key=key, value=value))
                db.commit()
        except SQLAlchemyError as e:
            raise RemoteError(f"Could not write {key}") from e

    def remove(self, key):
        try:
            with self._session_factory() as db:
                row = db.get(AutoCloseTimerState, key)
                if row:
                    db.delete(row)
                    db.commit()
        except SQLAlchemyError as e:
            raise RemoteError(f"Could not remove {key}") from e

    def keys(self, prefix=""):
        try:
            with self._session_factory() as db:
                stmt = select(AutoCloseTimerState.key).where(AutoCloseTimerState.key.startswith(prefix))
                return list(db.execute(stmt).scalars().all())
        except SQLAlchemyError as e:
            raise RemoteError("Could not list timer keys") from e
