# sibflo/prompts.py
"""
Prompt templates for every generation stage.

Templates are plain strings with `{field}` placeholders; only the declared
fields are substituted, so JSON examples inside a template keep their braces.
`render(name, **fields)` is pure: no model access, no I/O.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, Tuple

from sibflo.base_utils import coerce_field_to_str, unsafe_string_format
from sibflo.errors import MissingFieldError

NO_USER_COMMENTS = "No specific user comments provided"
NO_DESIGN_PARAMETERS = "No specific design parameters provided"
NO_EXAMPLES = "No examples provided"

FIELD_PLACEHOLDERS: Dict[str, str] = {
    "user_comments": NO_USER_COMMENTS,
    "design_parameters": NO_DESIGN_PARAMETERS,
    "examples": NO_EXAMPLES,
}

JSON_ARRAY_ONLY = """IMPORTANT:
- Reply with a valid JSON array and nothing else: no text before or after it.
- Do not wrap the reply in backticks, code fences or language tags."""

JSON_OBJECT_ONLY = """IMPORTANT:
- Reply with a valid JSON object and nothing else: no text before or after it.
- Do not wrap the reply in backticks, code fences or language tags."""

SVG_ONLY = """IMPORTANT:
- Reply with the complete SVG markup only. No explanations, no code fences.
- Every attribute is fully quoted and every path has a complete d attribute."""


DIVERGENT_IDEAS_PROMPT = """
SYSTEM:
You are a UX strategist with a talent for unexpected product metaphors.

TASK:
Brainstorm at least 15 fundamentally different metaphors or paradigms that could shape an application
for the situation below. Every idea should solve the user's problem from a different angle.

Context: {context}
User: {user}
Goal: {goal}
Tasks:
{tasks}
Examples: {examples}
User Comments: {user_comments}

Guidelines:
- Stay relevant to the context, the user, the goal and the tasks.
- Examples (when present) are inspiration, not boundaries.
- Take the user comments into account when they are present.
- Think in high-level concepts; leave implementation details out.
- Never return fewer than 10 ideas, and keep every idea conceptually distinct.

Each idea is an object with:
- idea_id: unique integer
- idea_name: short name of the metaphor or paradigm
- description: how the metaphor would work for this application
- inspiration: which part of the context, user, goal or examples it answers

Example of one element (not part of the answer):
[
  {
    "idea_id": 1,
    "idea_name": "Mission Control",
    "description": "A single hub where every activity is monitored and steered from one panel.",
    "inspiration": "Answers the need to coordinate many moving parts at a glance."
  }
]

""" + JSON_ARRAY_ONLY


DESIGN_SPACE_FROM_IDEAS_PROMPT = """
SYSTEM:
You are a UX strategist. Turn a brainstorm into a conceptual design space described in plain language,
readable by product managers, engineers and researchers who are not designers.

STEP 1 - Read the ideas
- Look for recurring themes, tensions and patterns.
- Focus on differences that change the user experience.

STEP 2 - Dimensions
- Derive exactly 3 orthogonal dimensions. Each one is a real choice that changes how the product feels to use.
- Phrase each dimension description as a short question that helps a non-designer choose.
- Skip low-level concerns such as density, styling or control placement.

STEP 3 - Options
- Give each dimension between 3 and 5 options placed at clearly different points of the spectrum.
- Option names use plain words; each option gets a one-sentence description.

Divergent Ideas:
{divergent_ideas}

Context: {context}
User: {user}
Goal: {goal}
Tasks:
{tasks}
Examples: {examples}
User Comments: {user_comments}

Each dimension is an object with:
- dimension_name: short name
- dimension_description: the guiding question
- options: array of {"option_name": "...", "option_description": "..."}

""" + JSON_ARRAY_ONLY


OVERALL_DESIGN_PROMPT = """
Using the design parameters and user comments below, propose 5 distinct high-level design concepts
that help the user reach their goal through their tasks. Every concept must address each design parameter.

Design Parameters: {design_parameters}

User Comments: {user_comments}

Each design is an object with:
- design_id: unique integer
- design_name: one descriptive sentence; the design should be understandable from the name alone
- core_concept: bullet-point list explaining how the design answers each design parameter
- detailed_description: enough detail for a UX designer to turn the concept into screens

""" + JSON_ARRAY_ONLY


TASKWISE_SCREEN_DESCRIPTIONS_PROMPT = """
Read the overall design of an application below. For the given task, describe the screens a user goes
through to complete it. Write 2-3 sentences per screen.

Overall Design: {overall_design}
Task: {task}

For each screen mention:
- Purpose: what the user accomplishes there
- Elements: the concrete UI elements (buttons, forms, lists, navigation...)
- Functionality: the actions available and how the screen reacts
- Layout: how the elements are arranged
- Interactions: how the user arrives, leaves and moves between elements

Be concrete enough for a UX designer to draw the screen.
"""


MERGE_SCREEN_DESCRIPTIONS_PROMPT = """
You are a UX design assistant defining the core structure of an application. Below are several user
tasks, each with the screens a user walks through to complete it. Merge these flows into one unified
set of conceptual screens that supports every task with as little redundancy as possible.
Use as few screens as you can.

Stay at concept level: role in the workflow, essential components, main interactions.
This is early-stage material for low-fidelity wireframes, not a layout specification.

Task-Specific Screen Descriptions:
{screen_descriptions}

Each screen is an object with:
- title: short descriptive name
- purpose: what the user achieves there and why the screen exists
- core_elements: array with only the essential components
- key_interactions: array with the main actions and the navigation to and from the screen
- data_notes: (optional) short note on the data shown or collected

Example of one element (not part of the answer):
[
  {
    "title": "Dashboard",
    "purpose": "Overview of key metrics with quick access to the main features",
    "core_elements": ["metric cards", "navigation menu", "quick actions"],
    "key_interactions": ["open a section from the menu", "drill into a metric"],
    "data_notes": "Summary statistics and recent activity"
  }
]

""" + JSON_ARRAY_ONLY


TASK_SCREEN_MAPPING_PROMPT = """
Given the tasks and the screen descriptions below, decide which sequence of screens completes each task.
Reference screens by their 0-based position in the list.

Tasks:
{tasks}

Screen Descriptions:
{screen_descriptions}

Rules:
- Every task lists at least one screen, in visiting order.
- Indices must be lower than the number of screens ({screen_count}).
- A screen usually appears at most once per task.
- Every screen should be used by at least one task.

Answer with an object holding a tasksWithScreens array:
{
  "tasksWithScreens": [
    {
      "task": "the task text",
      "screens": [
        {"screen_index": 0, "interaction": "what the user does here to move on"},
        {"screen_index": 2, "interaction": "what the user does here to move on"}
      ]
    }
  ]
}

""" + JSON_OBJECT_ONLY


SVG_CODE_GENERATION_PROMPT = """
ROLE:
You are a UI wireframing assistant. Draw one complete, valid SVG that looks like a hand-drawn wireframe
of the screen below.

SCREEN DESCRIPTION:
{screen_description}

USER COMMENTS & PREFERENCES:
{user_comments}

CONTENT:
- Draw every element listed in core_elements.
- Make every interaction in key_interactions visible on the screen.
- Let the user comments guide layout and style.

FORMAT:
1. The root <svg> declares xmlns="http://www.w3.org/2000/svg" and a viewBox.
2. Style with stroke and fill attributes; no CSS classes.
3. Font: font-family="Comic Sans MS, sans-serif".
4. Grayscale colours only (#000 to #FFF) plus transparent fills.

""" + SVG_ONLY


TASK_FLOW_PROMPT = """
A user performs the task below by going through a sequence of screens. For each screen you get its SVG
code and a description of what the user does there. Find the one interactive element (occasionally a
few) the user acts on to move to the next screen.

Task: {task}

SVG codes of the screens, in order:
{ui_codes}

Screen interactions, in order:
{screen_interactions}

Rules:
- Use the interaction description to pick the element(s) on each screen.
- Copy the complete SVG code of each picked element, with all attributes and nested elements,
  so it can be found again in the screen's SVG.
- Prefer small, specific elements. Never pick the whole svg or a group holding most of the screen.
- Return one array per screen; an empty array when nothing fits.
- The outer array has exactly {screen_count} entries, one per screen, in the same order.

""" + JSON_ARRAY_ONLY


CRITIQUE_TO_CHANGES_PROMPT = """
Translate the critiques below into concrete, actionable edits of the SVG wireframe.

Original SVG Code:
{original_ui_code}

Critiques to Address:
{critiques}

User Comments & Preferences:
{user_comments}

Rules:
- Locate the element each critique names through its ui_element.
- Be precise: positions, sizes, texts and attributes with exact values where possible.
- Only touch elements mentioned in the critiques.
- Keep the hand-drawn grayscale wireframe look.
- Allowed change types: add (new element), modify (attributes or text), remove (delete an element).

Each entry of the array is an object:
{
  "ui_element": "element named by the critique",
  "critique": "the critique text",
  "changes": [
    {
      "type": "add|modify|remove",
      "description": "the edit",
      "target": "what is edited, e.g. 'x attribute' or 'text content'",
      "value": "new value or instruction",
      "svg_element": "for add: the complete element with its attributes"
    }
  ]
}

""" + JSON_ARRAY_ONLY


APPLY_CHANGES_PROMPT = """
Apply the listed changes to the SVG wireframe. Change exactly what is listed and keep everything else
byte-for-byte.

Original SVG Code:
{original_ui_code}

Changes to Apply:
{changes}

User Comments & Preferences:
{user_comments}

Rules:
- Use ui_element to locate the element each change refers to.
- Preserve every other element, attribute, the layout and the visual style.
- Keep the hand-drawn look, Comic Sans MS and grayscale colours.
- Keep the viewBox on the root svg element.
- This is a surgical edit, not a redraw.

""" + SVG_ONLY


@dataclass(frozen=True)
class PromptTemplate:
    name: str
    text: str
    required: Tuple[str, ...]
    optional: Tuple[str, ...] = field(default_factory=tuple)


TEMPLATES: Dict[str, PromptTemplate] = {
    t.name: t for t in (
        PromptTemplate(
            "divergent_ideas", DIVERGENT_IDEAS_PROMPT,
            required=("context", "user", "goal", "tasks"),
            optional=("examples", "user_comments"),
        ),
        PromptTemplate(
            "design_space_from_ideas", DESIGN_SPACE_FROM_IDEAS_PROMPT,
            required=("divergent_ideas", "context", "user", "goal", "tasks"),
            optional=("examples", "user_comments"),
        ),
        PromptTemplate(
            "overall_design", OVERALL_DESIGN_PROMPT,
            required=(),
            optional=("design_parameters", "user_comments"),
        ),
        PromptTemplate(
            "taskwise_screen_descriptions", TASKWISE_SCREEN_DESCRIPTIONS_PROMPT,
            required=("overall_design", "task"),
        ),
        PromptTemplate(
            "merge_screen_descriptions", MERGE_SCREEN_DESCRIPTIONS_PROMPT,
            required=("screen_descriptions",),
        ),
        PromptTemplate(
            "task_screen_mapping", TASK_SCREEN_MAPPING_PROMPT,
            required=("tasks", "screen_descriptions", "screen_count"),
        ),
        PromptTemplate(
            "svg_code_generation", SVG_CODE_GENERATION_PROMPT,
            required=("screen_description",),
            optional=("user_comments",),
        ),
        PromptTemplate(
            "task_flow", TASK_FLOW_PROMPT,
            required=("task", "ui_codes", "screen_interactions", "screen_count"),
        ),
        PromptTemplate(
            "critique_to_changes", CRITIQUE_TO_CHANGES_PROMPT,
            required=("original_ui_code", "critiques"),
            optional=("user_comments",),
        ),
        PromptTemplate(
            "apply_changes", APPLY_CHANGES_PROMPT,
            required=("original_ui_code", "changes"),
            optional=("user_comments",),
        ),
    )
}


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, dict)):
        return len(value) == 0
    return False


def format_field(value: Any) -> str:
    """
    Strings go in as they are; lists of strings become one bullet per line;
    everything else (pydantic models, dicts, nested lists) is pretty JSON.
    """
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, (list, tuple)) and all(isinstance(v, str) for v in value):
        return "\n".join(f"- {v}" for v in value)
    return coerce_field_to_str(value)


def render(template_name: str, **fields: Any) -> str:
    template = TEMPLATES.get(template_name)
    if template is None:
        raise KeyError(f"Unknown prompt template: {template_name}")

    missing = [
        name for name in template.required
        if name not in fields or (fields[name] is None and name not in FIELD_PLACEHOLDERS)
    ]
    if missing:
        raise MissingFieldError(template_name, missing)

    values: Dict[str, str] = {}
    for name in template.required + template.optional:
        value = fields.get(name)
        if _is_empty(value) and name in FIELD_PLACEHOLDERS:
            values[name] = FIELD_PLACEHOLDERS[name]
        elif value is None:
            values[name] = ""
        else:
            values[name] = format_field(value)

    return unsafe_string_format(template.text, print_unused_keys_report=False, **values).strip()
