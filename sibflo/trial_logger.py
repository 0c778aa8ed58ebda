# sibflo/trial_logger.py
import json
import logging
import secrets
import threading
import time
from typing import Any, Dict, List, Optional

from sibflo.models import Design, Dimension, IdeationInput, Trial
from sibflo.state_storage import KeyValueStore

logger = logging.getLogger("sibflo_backend")

TRIALS_STORAGE_KEY = "sibflo_trials"


def _now_ms() -> int:
    return int(time.time() * 1000)


def _make_id(prefix: str) -> str:
    return f"{prefix}_{_now_ms()}_{secrets.token_hex(5)[:9]}"


class TrialLogger:
    """
    Append-only audit log of ideation sessions.

    All trials live as one JSON array under TRIALS_STORAGE_KEY; every mutation
    rewrites it. There is no eviction: export and clear are up to the user.
    """

    def __init__(self, store: KeyValueStore):
        self.store = store
        self._lock = threading.RLock()

    def _load(self) -> List[Dict[str, Any]]:
        stored = self.store.get(TRIALS_STORAGE_KEY)
        return stored if isinstance(stored, list) else []

    def _save(self, trials: List[Dict[str, Any]]) -> None:
        self.store.set(TRIALS_STORAGE_KEY, trials)

    def create_trial(self, ideation: IdeationInput | Dict[str, Any]) -> str:
        if not isinstance(ideation, IdeationInput):
            ideation = IdeationInput.model_validate(ideation or {})
        trial = Trial(id=_make_id("trial"), timestamp=_now_ms(), input=ideation)
        with self._lock:
            trials = self._load()
            trials.append(trial.model_dump(mode="json"))
            self._save(trials)
        logger.info(f"TrialLogger: created {trial.id}")
        return trial.id

    def update_trial_design_space(self, trial_id: str, design_space: List[Dimension] | List[Dict[str, Any]]) -> bool:
        dims = [d if isinstance(d, Dimension) else Dimension.model_validate(d) for d in (design_space or [])]
        with self._lock:
            trials = self._load()
            for trial in trials:
                if trial["id"] == trial_id:
                    trial["design_space"] = [d.model_dump(mode="json") for d in dims]
                    self._save(trials)
                    return True
        return False

    def add_design_to_trial(self, trial_id: str, design: Design | Dict[str, Any]) -> Optional[str]:
        if not isinstance(design, Design):
            design = Design.model_validate(design)
        design = design.model_copy(update={"id": _make_id("design"), "timestamp": _now_ms()})
        with self._lock:
            trials = self._load()
            for trial in trials:
                if trial["id"] == trial_id:
                    trial.setdefault("designs", []).append(design.model_dump(mode="json"))
                    self._save(trials)
                    logger.info(
                        f"TrialLogger: {trial_id} += {design.id} ({len(design.screens)} screens, "
                        f"{len(design.task_screen_mapping)} mapped tasks)"
                    )
                    return design.id
        return None

    def update_design_in_trial(self, trial_id: str, design_id: str, updates: Design | Dict[str, Any]) -> bool:
        """
        Shallow merge of `updates` into the stored design; the id never changes.
        """
        if isinstance(updates, Design):
            updates = updates.model_dump(mode="json")
        with self._lock:
            trials = self._load()
            for trial in trials:
                if trial["id"] != trial_id:
                    continue
                for i, stored in enumerate(trial.get("designs", [])):
                    if stored.get("id") == design_id:
                        merged = Design.model_validate({**stored, **updates, "id": design_id})
                        trial["designs"][i] = merged.model_dump(mode="json")
                        self._save(trials)
                        return True
        return False

    def get_all_trials(self) -> List[Trial]:
        return [Trial.model_validate(t) for t in self._load()]

    def get_trial(self, trial_id: str) -> Optional[Trial]:
        for trial in self._load():
            if trial["id"] == trial_id:
                return Trial.model_validate(trial)
        return None

    def get_latest_trial(self) -> Optional[Trial]:
        trials = self._load()
        return Trial.model_validate(trials[-1]) if trials else None

    def get_all_trial_ids(self) -> List[str]:
        return [t["id"] for t in self._load()]

    def delete_trial(self, trial_id: str) -> bool:
        with self._lock:
            trials = self._load()
            kept = [t for t in trials if t["id"] != trial_id]
            if len(kept) == len(trials):
                return False
            self._save(kept)
            return True

    def clear_all_trials(self) -> None:
        with self._lock:
            self._save([])

    def export_trials(self) -> str:
        return json.dumps(self._load(), indent=2)

    def import_trials(self, payload: str) -> bool:
        try:
            imported = json.loads(payload)
        except ValueError as e:
            logger.warning(f"TrialLogger: import rejected, invalid JSON: {e}")
            return False
        if not isinstance(imported, list):
            return False
        try:
            trials = [Trial.model_validate(t).model_dump(mode="json") for t in imported]
        except ValueError as e:
            logger.warning(f"TrialLogger: import rejected, invalid trial: {e}")
            return False
        with self._lock:
            self._save(trials)
        return True

    def get_trial_stats(self) -> Dict[str, Any]:
        trials = self._load()
        total = len(trials)
        designs = sum(len(t.get("designs", [])) for t in trials)
        return {
            "total_trials": total,
            "total_designs": designs,
            "total_design_spaces": sum(1 for t in trials if t.get("design_space")),
            "average_designs_per_trial": round(designs / total, 2) if total else 0,
        }
