# sibflo/generation_cache.py
import copy
import threading
from typing import Dict, List, Optional

from sibflo.models import ScreenDescription


class GenerationCache:
    """
    Session-scoped artifacts of one GenerationService:
      - task flows keyed by exact task text
      - the last generated UI codes, used by revisions
      - the user-edited screen list

    Must be cleared when a new design session starts, or task flows of the
    previous trial leak into the next one.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._task_flows: Dict[str, List[List[str]]] = {}
        self._ui_codes: List[str] = []
        self._screens: List[ScreenDescription] = []

    # --- task flows ---

    def get_task_flow(self, task: str) -> Optional[List[List[str]]]:
        with self._lock:
            flow = self._task_flows.get(task)
            return copy.deepcopy(flow) if flow is not None else None

    def set_task_flow(self, task: str, flow: List[List[str]]) -> None:
        with self._lock:
            self._task_flows[task] = copy.deepcopy(flow)

    def is_cached(self, task: str) -> bool:
        with self._lock:
            return task in self._task_flows

    def invalidate(self, task: str) -> bool:
        with self._lock:
            return self._task_flows.pop(task, None) is not None

    def snapshot(self) -> Dict[str, List[List[str]]]:
        with self._lock:
            return copy.deepcopy(self._task_flows)

    def restore(self, task_flows: Dict[str, List[List[str]]] | None) -> None:
        if not isinstance(task_flows, dict):
            return
        with self._lock:
            self._task_flows = copy.deepcopy(task_flows)

    def clear_task_flows(self) -> None:
        with self._lock:
            self._task_flows = {}

    # --- last UI codes ---

    def get_ui_codes(self) -> List[str]:
        with self._lock:
            return list(self._ui_codes)

    def update_ui_codes(self, codes: List[str]) -> None:
        with self._lock:
            self._ui_codes = list(codes)

    def clear_ui_codes(self) -> None:
        with self._lock:
            self._ui_codes = []

    # --- edited screens ---

    def get_screens(self) -> List[ScreenDescription]:
        with self._lock:
            return [s.model_copy(deep=True) for s in self._screens]

    def update_screens(self, screens: List[ScreenDescription]) -> None:
        with self._lock:
            self._screens = [s.model_copy(deep=True) for s in screens]

    def clear(self) -> None:
        with self._lock:
            self._task_flows = {}
            self._ui_codes = []
            self._screens = []
