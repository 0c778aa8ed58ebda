"""
Scripted stand-in for ModelGateway plus canned model replies.

Each prompt is routed to a stage by a phrase only that stage's template
contains; the reply for a stage is a string, an exception, or a callable
taking the prompt.
"""
import asyncio
import json
import re

STAGE_MARKERS = {
    "divergent_ideas": "Brainstorm at least 15",
    "design_space_from_ideas": "Turn a brainstorm into a conceptual design space",
    "overall_design": "propose 5 distinct high-level design concepts",
    "taskwise_screen_descriptions": "For the given task, describe the screens",
    "merge_screen_descriptions": "Merge these flows",
    "task_screen_mapping": "which sequence of screens completes each task",
    "svg_code_generation": "UI wireframing assistant",
    "task_flow": "Find the one interactive element",
    "critique_to_changes": "Translate the critiques",
    "apply_changes": "Apply the listed changes",
}

_TITLE_RE = re.compile(r'"title":\s*"([^"]*)"')


class FakeGateway:
    def __init__(self, replies=None, delays=None):
        self.replies = dict(replies or {})
        self.delays = dict(delays or {})
        self.calls = []

    @staticmethod
    def stage_of(prompt: str) -> str:
        for stage, marker in STAGE_MARKERS.items():
            if marker in prompt:
                return stage
        raise AssertionError(f"Unrecognised prompt: {prompt[:200]}")

    async def invoke(self, tier, prompt):
        stage = self.stage_of(prompt)
        self.calls.append((stage, tier, prompt))
        delay = self.delays.get(stage)
        if delay is not None:
            await asyncio.sleep(delay(prompt))
        reply = self.replies.get(stage, "")
        if callable(reply):
            reply = reply(prompt)
        if isinstance(reply, Exception):
            raise reply
        return reply

    async def invoke_streaming(self, tier, prompt, on_chunk=None):
        text = await self.invoke(tier, prompt)
        if on_chunk is not None:
            half = len(text) // 2
            on_chunk(text[:half], text[:half])
            on_chunk(text[half:], text)
        return text

    def stages(self):
        return [stage for stage, _, _ in self.calls]

    def tiers_for(self, stage):
        return [tier for s, tier, _ in self.calls if s == stage]


def screen_title(prompt: str) -> str:
    match = _TITLE_RE.search(prompt)
    return match.group(1) if match else ""


def svg_for(title: str) -> str:
    return (
        '<svg xmlns="http://www.w3.org/2000/svg" viewBox="0 0 400 300">'
        f'<rect x="10" y="10" width="100" height="40" fill="#fff" stroke="#000"/>'
        f'<text x="20" y="35">{title}</text></svg>'
    )


def svg_reply(prompt: str) -> str:
    return f"Here is the wireframe:\n```svg\n{svg_for(screen_title(prompt))}\n```"


IDEAS_REPLY = json.dumps([
    {"idea_id": i + 1, "idea_name": f"Idea {i + 1}", "description": f"Metaphor number {i + 1}"}
    for i in range(12)
])

DESIGN_SPACE = [
    {
        "dimension_name": "Planning Style",
        "dimension_description": "How much is planned ahead?",
        "options": [
            {"option_name": "Spontaneous", "option_description": "Decide on the day"},
            {"option_name": "Sketched", "option_description": "A loose outline"},
            {"option_name": "Scheduled", "option_description": "Every hour planned"},
        ],
    },
    {
        "dimension_name": "Child Involvement",
        "dimension_description": "How much does the child decide?",
        "options": [
            {"option_name": "Parent-led", "option_description": "The parent picks"},
            {"option_name": "Shared", "option_description": "Both vote"},
            {"option_name": "Child-led", "option_description": "The child picks"},
        ],
    },
    {
        "dimension_name": "Inspiration Source",
        "dimension_description": "Where do ideas come from?",
        "options": [
            {"option_name": "Curated", "option_description": "Editorial lists"},
            {"option_name": "Community", "option_description": "Other parents"},
            {"option_name": "Personal", "option_description": "Past weekends"},
            {"option_name": "Local", "option_description": "Nearby events"},
        ],
    },
]

DESIGN_SPACE_REPLY = "```json\n" + json.dumps(DESIGN_SPACE) + "\n```"

OVERALL_DESIGN_REPLY = json.dumps([
    {
        "design_id": 1,
        "design_name": "Weekend Quest Board",
        "core_concept": ["Activities are quests the child unlocks", "The parent approves the weekend plan"],
        "detailed_description": "A board of quest cards grouped by day.",
    },
    {
        "design_id": 2,
        "design_name": "Family Calendar Lite",
        "core_concept": "A shared calendar with suggested activities",
    },
])

TASKWISE_REPLY = (
    "Screen 1: Quest Board\nPurpose: browse activities as quests.\n"
    "Screen 2: Weekend Plan\nPurpose: review and confirm the chosen quests."
)

MERGED_SCREENS = [
    {
        "title": "Quest Board",
        "purpose": "Browse activities as quests",
        "core_elements": ["quest cards", "day filter"],
        "key_interactions": ["pick a quest", "go to plan"],
    },
    {
        "title": "Weekend Plan",
        "purpose": "Review the chosen quests",
        "core_elements": ["timeline", "confirm button"],
        "key_interactions": ["reorder quests", "confirm plan"],
        "data_notes": "Chosen activities with times",
    },
]

MERGE_REPLY = json.dumps(MERGED_SCREENS)

MAPPING_REPLY = json.dumps({
    "tasksWithScreens": [
        {
            "task": "Plan a weekend of activities",
            "screens": [
                {"screen_index": 0, "interaction": "Pick two quests"},
                {"screen_index": 1, "interaction": "Confirm the plan"},
            ],
        }
    ]
})

CHANGES_REPLY = json.dumps([
    {
        "ui_element": "title text",
        "critique": "Title is too small",
        "changes": [{"type": "modify", "description": "Larger title", "target": "font-size", "value": "24"}],
    }
])

REVISED_SVG = (
    '<svg xmlns="http://www.w3.org/2000/svg" viewBox="0 0 400 300">'
    '<text x="20" y="35" font-size="24">Revised</text></svg>'
)

TASK_FLOW_REPLY = json.dumps([
    ['<rect x="10" y="10" width="100" height="40" fill="#fff" stroke="#000"/>'],
    [],
])


def pipeline_replies(**overrides):
    replies = {
        "divergent_ideas": IDEAS_REPLY,
        "design_space_from_ideas": DESIGN_SPACE_REPLY,
        "overall_design": OVERALL_DESIGN_REPLY,
        "taskwise_screen_descriptions": TASKWISE_REPLY,
        "merge_screen_descriptions": MERGE_REPLY,
        "task_screen_mapping": MAPPING_REPLY,
        "svg_code_generation": svg_reply,
        "task_flow": TASK_FLOW_REPLY,
        "critique_to_changes": CHANGES_REPLY,
        "apply_changes": REVISED_SVG,
    }
    replies.update(overrides)
    return replies
