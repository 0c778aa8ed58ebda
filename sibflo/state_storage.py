# sibflo/state_storage.py
import copy
import logging
import time
from typing import Any, List

from sqlalchemy import delete, select
from sqlalchemy.orm import sessionmaker

from sibflo.entities import Base, KeyValueRecord

logger = logging.getLogger("sibflo_backend")

APP_STATE_KEY = "sibflo_app_state"
CANVAS_STATE_KEY = "sibflo_canvas_state"
SLIDERS_STATE_KEY = "sibflo_sliders_state"
UIVIEW_STATE_KEY = "sibflo_uiview_state"

VIEW_STATE_KEYS = {
    "app": APP_STATE_KEY,
    "canvas": CANVAS_STATE_KEY,
    "sliders": SLIDERS_STATE_KEY,
    "uiview": UIVIEW_STATE_KEY,
}


class KeyValueStore:
    """
    Key-value persistence over one SQLAlchemy table. Values are JSON documents;
    get() returns a deep copy so callers can't mutate what is stored.
    """

    def __init__(self, session_factory: sessionmaker, create_tables: bool = True):
        self.session_factory = session_factory
        if create_tables:
            Base.metadata.create_all(bind=session_factory.kw["bind"])

    def get(self, key: str, default: Any = None) -> Any:
        with self.session_factory() as session:
            row = session.get(KeyValueRecord, key)
            if row is None:
                return default
            return copy.deepcopy(row.value)

    def set(self, key: str, value: Any) -> None:
        with self.session_factory() as session:
            row = session.get(KeyValueRecord, key)
            if row is None:
                session.add(KeyValueRecord(key=key, value=value))
            else:
                row.value = value
            session.commit()

    def delete(self, key: str) -> bool:
        with self.session_factory() as session:
            result = session.execute(delete(KeyValueRecord).where(KeyValueRecord.key == key))
            session.commit()
            return bool(result.rowcount)

    def keys(self, prefix: str = "") -> List[str]:
        with self.session_factory() as session:
            stmt = select(KeyValueRecord.key).order_by(KeyValueRecord.key)
            if prefix:
                stmt = stmt.where(KeyValueRecord.key.startswith(prefix, autoescape=True))
            return list(session.scalars(stmt))

    def delete_prefix(self, prefix: str) -> int:
        if not prefix:
            raise ValueError("delete_prefix needs a non-empty prefix")
        with self.session_factory() as session:
            result = session.execute(
                delete(KeyValueRecord).where(KeyValueRecord.key.startswith(prefix, autoescape=True))
            )
            session.commit()
            return int(result.rowcount or 0)


class ViewStateStore:
    """
    Opaque UI snapshots (pan position, collapsed panels, slider values...).
    """

    def __init__(self, store: KeyValueStore):
        self.store = store

    @staticmethod
    def _key(name: str) -> str:
        key = VIEW_STATE_KEYS.get(name)
        if key is None:
            raise ValueError(f"Unknown view state: {name}")
        return key

    def save(self, name: str, state: dict) -> dict:
        if not isinstance(state, dict):
            raise ValueError("View state must be an object")
        snapshot = {**state, "timestamp": int(time.time() * 1000)}
        self.store.set(self._key(name), snapshot)
        return snapshot

    def load(self, name: str) -> dict | None:
        return self.store.get(self._key(name))

    def clear(self, name: str | None = None) -> None:
        names = [name] if name else list(VIEW_STATE_KEYS)
        for n in names:
            self.store.delete(self._key(n))
