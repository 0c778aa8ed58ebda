# sibflo/models.py
"""
Data model of an ideation session.

The model replies in snake_case with its own key names (idea_name, option_name,
screen_id...), the UI sometimes sends camelCase. Every model accepts both through
AliasChoices and always dumps the attribute names below.
"""
import logging
import uuid
from typing import Any, List, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from sibflo.errors import ValidationError

logger = logging.getLogger("sibflo_backend")

DESIGN_SPACE_DIMENSIONS = 3
MIN_OPTIONS, MAX_OPTIONS = 3, 5
MIN_IDEAS = 10


def new_screen_id() -> str:
    return f"screen_{uuid.uuid4().hex[:12]}"


def _aliases(*names: str) -> AliasChoices:
    return AliasChoices(*names)


def _as_str_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, dict):
        return [f"{k}: {v}" for k, v in value.items()]
    if isinstance(value, (list, tuple)):
        out = []
        for item in value:
            if isinstance(item, str):
                out.append(item)
            elif isinstance(item, dict):
                out.append(", ".join(f"{k}: {v}" for k, v in item.items()))
            elif item is not None:
                out.append(str(item))
        return out
    return [str(value)]


class SibfloModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class IdeationInput(SibfloModel):
    context: str = ""
    user: str = ""
    goal: str = ""
    tasks: List[str] = Field(default_factory=list)
    examples: List[str] = Field(default_factory=list)
    comments: str = Field(default="", validation_alias=_aliases("comments", "user_comments", "userComments"))

    @field_validator("tasks", "examples", mode="before")
    @classmethod
    def _lists(cls, v):
        return _as_str_list(v)

    @field_validator("comments", mode="before")
    @classmethod
    def _comments(cls, v):
        return v or ""


class Idea(SibfloModel):
    id: int = Field(validation_alias=_aliases("id", "idea_id"))
    name: str = Field(validation_alias=_aliases("name", "idea_name"))
    description: str = ""
    inspiration_note: str = Field(default="", validation_alias=_aliases("inspiration_note", "inspiration", "inspirationNote"))


class Option(SibfloModel):
    name: str = Field(validation_alias=_aliases("name", "option_name"))
    description: str = Field(default="", validation_alias=_aliases("description", "option_description"))


class Dimension(SibfloModel):
    name: str = Field(validation_alias=_aliases("name", "dimension_name"))
    description: str = Field(default="", validation_alias=_aliases("description", "dimension_description"))
    options: List[Option] = Field(default_factory=list)


class ParameterSelection(SibfloModel):
    dimension_description: str = Field(validation_alias=_aliases("dimension_description", "dimensionDescription"))
    selected_option_name: str = Field(validation_alias=_aliases("selected_option_name", "selectedOptionName"))
    option_description: str = Field(default="", validation_alias=_aliases("option_description", "optionDescription"))


class OverallDesign(SibfloModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: Optional[int] = Field(default=None, validation_alias=_aliases("id", "design_id"))
    name: str = Field(validation_alias=_aliases("name", "design_name"))
    core_concept: Union[str, List[str]] = Field(default="", validation_alias=_aliases("core_concept", "coreConcept"))
    detailed_description: Optional[str] = Field(
        default=None, validation_alias=_aliases("detailed_description", "detailedDescription")
    )
    key_characteristics: Optional[List[str]] = None
    rationale: Optional[str] = None
    design_parameters: Optional[str] = Field(default=None, validation_alias=_aliases("design_parameters", "designParameters"))
    is_fallback: bool = False


class ScreenDescription(SibfloModel):
    id: str = Field(default_factory=new_screen_id)
    title: str = Field(default="Untitled Screen", validation_alias=_aliases("title", "name"))
    purpose: str = ""
    core_elements: List[str] = Field(default_factory=list, validation_alias=_aliases("core_elements", "coreElements", "elements"))
    key_interactions: List[str] = Field(
        default_factory=list, validation_alias=_aliases("key_interactions", "keyInteractions", "interactions")
    )
    data_notes: Optional[str] = Field(default=None, validation_alias=_aliases("data_notes", "dataNotes"))
    ui_code: Optional[str] = Field(default=None, validation_alias=_aliases("ui_code", "uiCode"))

    @field_validator("core_elements", "key_interactions", mode="before")
    @classmethod
    def _lists(cls, v):
        return _as_str_list(v)

    @field_validator("data_notes", mode="before")
    @classmethod
    def _notes(cls, v):
        if v is None or isinstance(v, str):
            return v
        return str(v)

    @field_validator("id", mode="before")
    @classmethod
    def _id(cls, v):
        return v or new_screen_id()

    def prompt_payload(self) -> dict:
        """What the model sees of a screen: no id, no generated code."""
        return self.model_dump(exclude={"id", "ui_code"}, exclude_none=True)


class ScreenStep(SibfloModel):
    screen_index: int = Field(validation_alias=_aliases("screen_index", "screen_id", "screenId", "screenIndex"))
    screen_ref: Optional[str] = None
    interaction: str = ""

    @field_validator("screen_index", mode="before")
    @classmethod
    def _index(cls, v):
        if isinstance(v, str) and v.strip().lstrip("-").isdigit():
            return int(v.strip())
        return v


class TaskMapping(SibfloModel):
    task: str
    screens: List[ScreenStep] = Field(default_factory=list)

    @field_validator("screens", mode="before")
    @classmethod
    def _screens(cls, v):
        # bare indices are accepted too: [0, 2, 3]
        if isinstance(v, list):
            return [{"screen_index": s} if isinstance(s, (int, str)) else s for s in v]
        return v


class Design(SibfloModel):
    id: str = Field(default_factory=lambda: f"design_{uuid.uuid4().hex[:12]}")
    name: Optional[str] = None
    core_concept: Union[str, List[str]] = Field(default="", validation_alias=_aliases("core_concept", "coreConcept"))
    design_parameters: Union[str, List[ParameterSelection], None] = Field(
        default=None, validation_alias=_aliases("design_parameters", "designParameters")
    )
    screens: List[ScreenDescription] = Field(default_factory=list)
    task_screen_mapping: List[TaskMapping] = Field(
        default_factory=list, validation_alias=_aliases("task_screen_mapping", "taskScreenMapping")
    )
    timestamp: Optional[int] = None


class Trial(SibfloModel):
    id: str
    timestamp: int
    input: IdeationInput = Field(default_factory=IdeationInput)
    design_space: List[Dimension] = Field(default_factory=list, validation_alias=_aliases("design_space", "designSpace"))
    designs: List[Design] = Field(default_factory=list)


class Critique(SibfloModel):
    screen_title: str = Field(validation_alias=_aliases("screen_title", "screenTitle"))
    ui_element: str = Field(default="", validation_alias=_aliases("ui_element", "uiElement"))
    feedback: str = Field(default="", validation_alias=_aliases("feedback", "critique"))


class ChangeItem(SibfloModel):
    type: str = "modify"
    description: str = ""
    target: str = ""
    value: Any = ""
    svg_element: Optional[str] = Field(default=None, validation_alias=_aliases("svg_element", "svgElement"))


class ChangeSet(SibfloModel):
    ui_element: str = Field(default="", validation_alias=_aliases("ui_element", "uiElement"))
    critique: str = ""
    changes: List[ChangeItem] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# coercion of parsed model output
# ---------------------------------------------------------------------------

def _as_items(parsed: Any, *keys: str) -> list:
    """
    Models sometimes wrap the expected array in an object ({"ideas": [...]}).
    """
    if isinstance(parsed, list):
        return parsed
    if isinstance(parsed, dict):
        for key in keys:
            if isinstance(parsed.get(key), list):
                return parsed[key]
        for value in parsed.values():
            if isinstance(value, list):
                return value
        return [parsed]
    raise ValidationError(f"Expected a JSON array, got {type(parsed).__name__}")


def parse_ideas(parsed: Any) -> List[Idea]:
    items = _as_items(parsed, "ideas", "divergentIdeas")
    ideas = []
    for i, raw in enumerate(items):
        if not isinstance(raw, dict):
            continue
        raw = dict(raw)
        raw.setdefault("idea_id", i + 1)
        ideas.append(Idea.model_validate(raw))
    if not ideas:
        raise ValidationError("No ideas found in model output")
    if len(ideas) < MIN_IDEAS:
        logger.warning(f"Only {len(ideas)} divergent ideas generated (expected at least {MIN_IDEAS})")
    return ideas


def parse_design_space(parsed: Any) -> List[Dimension]:
    items = _as_items(parsed, "designSpace", "design_space", "dimensions")
    dimensions = [Dimension.model_validate(d) for d in items if isinstance(d, dict)]
    if len(dimensions) != DESIGN_SPACE_DIMENSIONS:
        raise ValidationError(
            f"Design space must have exactly {DESIGN_SPACE_DIMENSIONS} dimensions, got {len(dimensions)}"
        )
    for dim in dimensions:
        if not dim.options:
            raise ValidationError(f"Dimension '{dim.name}' has no options")
        if not MIN_OPTIONS <= len(dim.options) <= MAX_OPTIONS:
            logger.warning(f"Dimension '{dim.name}' has {len(dim.options)} options (expected {MIN_OPTIONS}-{MAX_OPTIONS})")
    return dimensions


def parse_overall_designs(parsed: Any) -> List[OverallDesign]:
    items = _as_items(parsed, "designs")
    designs = [OverallDesign.model_validate(d) for d in items if isinstance(d, dict)]
    if not designs:
        raise ValidationError("No designs found in model output")
    return designs


def parse_change_sets(parsed: Any) -> List[ChangeSet]:
    items = _as_items(parsed, "changes")
    return [ChangeSet.model_validate(c) for c in items if isinstance(c, dict)]


def select_parameters(design_space: List[Dimension], choices: List[int]) -> List[ParameterSelection]:
    """
    One option per dimension; `choices[i]` indexes the options of dimension i.
    """
    if len(choices) != len(design_space):
        raise ValidationError(f"Expected {len(design_space)} choices, got {len(choices)}")
    out = []
    for dim, choice in zip(design_space, choices):
        if not 0 <= choice < len(dim.options):
            raise ValidationError(f"Option {choice} out of range for dimension '{dim.name}'")
        option = dim.options[choice]
        out.append(ParameterSelection(
            dimension_description=dim.description or dim.name,
            selected_option_name=option.name,
            option_description=option.description,
        ))
    return out


def format_parameters(selection: Union[str, List[ParameterSelection], None]) -> str:
    if selection is None or isinstance(selection, str):
        return selection or ""
    selection = [p if isinstance(p, ParameterSelection) else ParameterSelection.model_validate(p) for p in selection]
    return "\n".join(
        f"- {p.dimension_description}: {p.selected_option_name} ({p.option_description})"
        if p.option_description else f"- {p.dimension_description}: {p.selected_option_name}"
        for p in selection
    )


def clamp_screen_index(index: int, screen_count: int) -> int:
    if screen_count <= 0:
        raise ValidationError("Cannot resolve a screen index without screens")
    return min(max(int(index), 0), screen_count - 1)


def resolve_screen_index(step: ScreenStep, screens: List[ScreenDescription]) -> int:
    """
    Position of the screen a mapping step points at: the stable screen_ref
    wins, the ordinal is clamped into range otherwise.
    """
    if step.screen_ref:
        for i, screen in enumerate(screens):
            if screen.id == step.screen_ref:
                return i
    return clamp_screen_index(step.screen_index, len(screens))
