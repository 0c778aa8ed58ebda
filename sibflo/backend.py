# sibflo/backend.py

import json
import logging
import traceback
from typing import Any, Dict

from sibflo.base_utils import BaseUtils
from sibflo.errors import SibfloError, ValidationError
from sibflo.generation_service import GenerationService
from sibflo.llm_client import ModelGateway
from sibflo.models import Critique, Design, Dimension, IdeationInput
from sibflo.session_manager import SessionManager, new_session_id
from sibflo.state_storage import KeyValueStore, ViewStateStore
from sibflo.trial_logger import TrialLogger

logger = logging.getLogger("sibflo_backend")


REQUEST_TYPES = (
    "configure",
    "clear_api_key",
    "generate_design_space",
    "generate_overall_designs",
    "generate_diverse_designs",
    "generate_screen_descriptions",
    "update_screen_descriptions",
    "generate_ui_codes",
    "revise_ui_codes",
    "generate_task_flow",
    "highlight_element",
    "add_design",
    "update_design",
    "list_trials",
    "delete_trial",
    "save_view_state",
    "load_view_state",
    "start_session",
)


def _preview(data: Any) -> str:
    try:
        return json.dumps(data, indent=2, default=str)[:2000]
    except (TypeError, ValueError):
        return str(data)[:2000]


def _dump(items) -> list:
    return [item.model_dump(mode="json") for item in items]


class Backend(BaseUtils):
    """
    Request routing for the UI: one `{type, payload}` request in, one
    `{status, message, data}` response out.

    Any exception raised by a handler comes back as
    {"status": "error", "message": str(e)}; `internal` is set when the failure
    is not one of ours, so the HTTP layer can answer 500.
    """

    def __init__(
        self,
        gateway: ModelGateway | None = None,
        session_factory=None,
        service: GenerationService | None = None,
    ):
        if session_factory is None:
            from sibflo.google_helpers import create_session_factory
            session_factory = create_session_factory()

        self.gateway = gateway or ModelGateway()
        self.service = service or GenerationService(self.gateway)
        self.store = KeyValueStore(session_factory)
        self.trials = TrialLogger(self.store)
        self.sessions = SessionManager(self.store, self.trials)
        self.view_states = ViewStateStore(self.store)
        self.session_id: str | None = None

    async def process_request(self, request_data: dict) -> dict:
        request_type = (request_data or {}).get("type")
        payload = (request_data or {}).get("payload") or {}
        logger.debug(f"process_request request {_preview(request_data)}")

        response_data: Dict[str, Any] = {"status": "success", "message": ""}
        try:
            if request_type not in REQUEST_TYPES:
                raise ValidationError(f"Unknown request type: {request_type}")
            handler = getattr(self, f"handle_{request_type}")
            response_data["data"] = await handler(payload)
        except Exception as e:
            self.color_print(f"process_request {request_type} failed: {e}", "red")
            if not isinstance(e, (SibfloError, ValueError)):
                traceback.print_exc()
                response_data["internal"] = True
            response_data["status"] = "error"
            response_data["message"] = str(e)
            response_data.pop("data", None)

        logger.debug(f"process_request response {_preview(response_data)}")
        return response_data

    # -----------------------
    # Handlers
    # -----------------------

    async def handle_configure(self, payload: dict) -> dict:
        self.gateway.configure(payload.get("api_key") or None)
        return {"api_key": self.gateway.api_key_status(), "models": self.gateway.available_models()}

    async def handle_clear_api_key(self, payload: dict) -> dict:
        self.gateway.clear()
        return {"api_key": self.gateway.api_key_status()}

    async def handle_start_session(self, payload: dict) -> dict:
        self.service.clear_session()
        self.session_id = payload.get("session_id") or new_session_id()
        logger.info(f"Started session {self.session_id}")
        return {"session_id": self.session_id}

    async def handle_generate_design_space(self, payload: dict) -> dict:
        ideation = IdeationInput.model_validate(payload.get("input", payload))
        design_space = await self.service.generate_design_space(ideation)
        trial_id = payload.get("trial_id")
        if not trial_id:
            # a new trial is a new design session
            self.service.clear_session()
            trial_id = self.trials.create_trial(ideation)
        self.trials.update_trial_design_space(trial_id, design_space)
        return {"trial_id": trial_id, "design_space": _dump(design_space)}

    async def handle_generate_overall_designs(self, payload: dict) -> dict:
        designs = await self.service.generate_overall_designs(
            payload.get("design_parameters"), payload.get("user_comments")
        )
        return {"designs": _dump(designs)}

    async def handle_generate_diverse_designs(self, payload: dict) -> dict:
        design_space = payload.get("design_space")
        if not isinstance(design_space, list):
            raise ValidationError("design_space must be a list of dimensions")
        designs = await self.service.generate_diverse_design_ideas(
            [Dimension.model_validate(d) for d in design_space],
            payload.get("count"),
            payload.get("first"),
        )
        return {"designs": _dump(designs)}

    async def handle_generate_screen_descriptions(self, payload: dict) -> dict:
        tasks = payload.get("tasks")
        if not tasks:
            raise ValidationError("tasks are required")
        result = await self.service.generate_screen_descriptions(payload.get("overall_design") or {}, tasks)
        return result.to_dict()

    async def handle_update_screen_descriptions(self, payload: dict) -> dict:
        screens = self.service.update_screen_descriptions(payload.get("screen_descriptions"))
        return {"screen_descriptions": _dump(screens)}

    async def handle_generate_ui_codes(self, payload: dict) -> dict:
        codes = await self.service.generate_ui_codes_streaming(
            payload.get("screen_descriptions") or [],
            payload.get("quality") or "fast",
            user_comments=payload.get("user_comments"),
        )
        return {"codes": codes}

    async def handle_revise_ui_codes(self, payload: dict) -> dict:
        critiques = [Critique.model_validate(c) for c in payload.get("critiques") or []]
        codes = await self.service.revise_ui_codes(
            payload.get("screen_descriptions") or [], critiques, payload.get("user_comments")
        )
        return {"codes": codes}

    async def handle_generate_task_flow(self, payload: dict) -> dict:
        task = payload.get("task")
        if not task:
            raise ValidationError("task is required")
        flow = await self.service.generate_task_flows(
            task,
            payload.get("task_screen_mapping") or [],
            payload.get("ui_codes") or [],
            payload.get("screen_descriptions"),
        )
        return {"task": task, "highlighted_elements": flow}

    async def handle_highlight_element(self, payload: dict) -> dict:
        return {"ui_code": self.service.highlight_ui_code(payload.get("ui_code") or "", payload.get("snippet") or "")}

    async def handle_add_design(self, payload: dict) -> dict:
        trial_id = payload.get("trial_id")
        design = Design.model_validate(payload.get("design") or {})
        design_id = self.trials.add_design_to_trial(trial_id, design)
        if design_id is None:
            raise ValidationError(f"Trial not found: {trial_id}")
        return {"design_id": design_id}

    async def handle_update_design(self, payload: dict) -> dict:
        updated = self.trials.update_design_in_trial(
            payload.get("trial_id"), payload.get("design_id"), payload.get("updates") or {}
        )
        if not updated:
            raise ValidationError(f"Design {payload.get('design_id')} not found in trial {payload.get('trial_id')}")
        return {"updated": True}

    async def handle_list_trials(self, payload: dict) -> dict:
        return {
            "trials": _dump(self.trials.get_all_trials()),
            "stats": self.trials.get_trial_stats(),
        }

    async def handle_delete_trial(self, payload: dict) -> dict:
        return {"deleted": self.trials.delete_trial(payload.get("trial_id"))}

    async def handle_save_view_state(self, payload: dict) -> dict:
        return {"state": self.view_states.save(payload.get("name"), payload.get("state"))}

    async def handle_load_view_state(self, payload: dict) -> dict:
        return {"state": self.view_states.load(payload.get("name"))}

    # -----------------------
    # Sessions (not routed through process_request)
    # -----------------------

    def record_events(self, session_id: str | None, events: list) -> int:
        session_id = session_id or self.session_id
        if not session_id:
            self.session_id = session_id = new_session_id()
        return self.sessions.append_events(session_id, events)

    def export_sessions(self) -> dict:
        return self.sessions.export_all()

    def clear_sessions(self) -> dict:
        self.service.clear_session()
        return self.sessions.clear_all_sessions()
