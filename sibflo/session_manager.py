# sibflo/session_manager.py
import logging
import secrets
import time
from datetime import date
from typing import Any, Dict, List, Optional

from sibflo.state_storage import KeyValueStore
from sibflo.trial_logger import TrialLogger

logger = logging.getLogger("sibflo_backend")

USER_BEHAVIOR_PREFIX = "user_behavior_"


def new_session_id() -> str:
    return f"session_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


class SessionManager:
    """
    Everything recorded about a user: behaviour event logs (one per browser
    session) and ideation trials, exported and cleared together.
    """

    def __init__(self, store: KeyValueStore, trial_logger: TrialLogger):
        self.store = store
        self.trial_logger = trial_logger

    # --- behaviour logs ---

    def append_events(self, session_id: str, events: List[Dict[str, Any]]) -> int:
        if not session_id:
            raise ValueError("session_id is required")
        key = f"{USER_BEHAVIOR_PREFIX}{session_id}"
        stored = self.store.get(key) or []
        now = int(time.time() * 1000)
        for event in events or []:
            if not isinstance(event, dict):
                continue
            stored.append({**event, "timestamp": event.get("timestamp") or now})
        self.store.set(key, stored)
        return len(stored)

    def _behavior_sessions(self) -> List[Dict[str, Any]]:
        sessions = []
        for key in self.store.keys(USER_BEHAVIOR_PREFIX):
            events = self.store.get(key)
            if not isinstance(events, list) or not events:
                continue
            session_id = key[len(USER_BEHAVIOR_PREFIX):]
            sessions.append({
                "id": session_id,
                "type": "user-behavior",
                "timestamp": events[0].get("timestamp"),
                "end_timestamp": events[-1].get("timestamp"),
                "event_count": len(events),
                "events": events,
                "session_id": session_id,
            })
        return sessions

    def _trial_sessions(self) -> List[Dict[str, Any]]:
        sessions = []
        for trial in self.trial_logger.get_all_trials():
            data = trial.model_dump(mode="json")
            sessions.append({
                "id": trial.id,
                "type": "trial",
                "timestamp": trial.timestamp,
                "end_timestamp": trial.timestamp,
                "event_count": len(trial.designs),
                "input": data["input"],
                "design_space": data["design_space"],
                "designs": data["designs"],
                "session_id": trial.id,
            })
        return sessions

    def all_sessions(self) -> List[Dict[str, Any]]:
        sessions = self._behavior_sessions() + self._trial_sessions()
        return sorted(sessions, key=lambda s: s.get("timestamp") or 0, reverse=True)

    def session_by_id(self, session_id: str) -> Optional[Dict[str, Any]]:
        return next((s for s in self.all_sessions() if s["id"] == session_id), None)

    def export_all(self) -> Dict[str, Any]:
        return {
            "filename": f"sibflo-sessions-{date.today().isoformat()}.json",
            "sessions": self.all_sessions(),
        }

    def export_session(self, session_id: str) -> Dict[str, Any]:
        session = self.session_by_id(session_id)
        if session is None:
            raise KeyError(f"Session not found: {session_id}")
        return {
            "filename": f"sibflo-session-{session_id}-{date.today().isoformat()}.json",
            "session": session,
        }

    def clear_all_sessions(self) -> Dict[str, int]:
        removed = self.store.delete_prefix(USER_BEHAVIOR_PREFIX)
        trials = len(self.trial_logger.get_all_trial_ids())
        self.trial_logger.clear_all_trials()
        logger.info(f"SessionManager: cleared {removed} behaviour logs and {trials} trials")
        return {"behavior_sessions": removed, "trials": trials}

    def session_stats(self) -> Dict[str, int]:
        sessions = self.all_sessions()
        behavior = [s for s in sessions if s["type"] == "user-behavior"]
        trials = [s for s in sessions if s["type"] == "trial"]
        return {
            "total_sessions": len(sessions),
            "user_behavior_sessions": len(behavior),
            "trial_sessions": len(trials),
            "total_events": sum(s["event_count"] for s in behavior),
            "total_designs": sum(s["event_count"] for s in trials),
        }
