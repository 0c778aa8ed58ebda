# sibflo/chains.py
"""
Generation stages. Every stage renders its prompt, calls one model tier and
turns the reply into typed data under its own failure policy:

    divergent_ideas, design_space_from_ideas, overall_design
        foundational: any failure raises
    taskwise_screen_descriptions
        per-task isolation: a failed task yields an inline error text
    merge_screen_descriptions
        JSON, then heuristic block splitting, then one generic screen
    map_tasks_to_screens
        fallback mapping (every task -> screen 0) on empty or unparseable replies
    svg_code
        raises; callers fanning out over screens substitute a placeholder
    critique_to_changes, apply_changes, task_flow
        raise
"""
import asyncio
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

from sibflo.base_utils import BaseUtils, clean_triple_backticks
from sibflo.errors import PerItemGenerationError, RecoveryError, ValidationError
from sibflo.llm_client import OnChunk
from sibflo.model_props import GENERATION
from sibflo.models import (
    ChangeSet,
    Critique,
    Dimension,
    Idea,
    IdeationInput,
    OverallDesign,
    ScreenDescription,
    ScreenStep,
    TaskMapping,
    clamp_screen_index,
    parse_change_sets,
    parse_design_space,
    parse_ideas,
    parse_overall_designs,
)
from sibflo.prompts import render
from sibflo.svg_tools import extract_svg
from sibflo.text_recovery import TASK_FLOW, recover

logger = logging.getLogger("sibflo_backend")

T = TypeVar("T")

LITE, FLASH, PRO = "lite", "flash", "pro"

TASK_ERROR_PREFIX = "Error generating screen descriptions for this task: "

DEFAULT_PURPOSE = "Screen purpose not specified"
DEFAULT_ELEMENTS = "Core elements not specified"
DEFAULT_INTERACTIONS = "Key interactions not specified"

_BLOCK_START_RE = re.compile(r"(?m)^(?=\s*(?:#+\s|\**screen\b|\d+[.)]\s|[-*]\s+\**(?:screen|title)\b))", re.IGNORECASE)
_HEADER_CLEAN_RE = re.compile(r"^\s*(?:#+\s*|[-*]\s*)?\**\s*(?:screen\s*\d*\s*[:.\-)]?|\d+[.)])?\s*", re.IGNORECASE)
_LIST_SPLIT_RE = re.compile(r"[,，;；]")
_FIELD_RE = re.compile(r"^\s*[-*]?\s*\**\s*([A-Za-z_ ]+?)\s*\**\s*[:：]\s*\**\s*(.*)$")


def quality_tier(quality: str | None) -> str:
    return PRO if (quality or "").lower() == "high" else LITE


async def run_isolated(
    count: int,
    worker: Callable[[int], Awaitable[T]],
    *,
    on_error: Callable[[int, PerItemGenerationError], T],
    limit: int | None = None,
    on_done: Callable[[int, T], None] | None = None,
) -> List[T]:
    """
    Fan-out/fan-in over `count` items.

    Each item runs in its own wrapped coroutine so a failure becomes
    on_error(index, PerItemGenerationError) instead of cancelling siblings.
    At most `limit` items are pending at once. on_done fires in completion
    order; the returned list is in input order. Cancellation propagates.
    """
    semaphore = asyncio.Semaphore(max(1, int(limit or GENERATION["max_concurrency"])))

    async def one(index: int):
        async with semaphore:
            try:
                result = await worker(index)
            except Exception as e:
                err = PerItemGenerationError(index, e)
                logger.error(f"run_isolated: {err}")
                result = on_error(index, err)
        if on_done is not None:
            on_done(index, result)
        return index, result

    pairs = await asyncio.gather(*(one(i) for i in range(count)))
    return [result for _, result in sorted(pairs, key=lambda p: p[0])]


@dataclass
class TaskScreenText:
    task: str
    text: str
    failed: bool = False


class ChainRunner(BaseUtils):
    def __init__(self, gateway, *, taskwise_parallel: bool | None = None, max_concurrency: int | None = None):
        self.gateway = gateway
        self.taskwise_parallel = GENERATION["taskwise_parallel"] if taskwise_parallel is None else taskwise_parallel
        self.max_concurrency = max_concurrency or GENERATION["max_concurrency"]

    async def _call(self, stage: str, tier: str, prompt: str, on_chunk: OnChunk | None = None) -> str:
        start = time.time()
        logger.debug(f"[{stage}] -> {tier} ({len(prompt)} chars)")
        if on_chunk is not None:
            raw = await self.gateway.invoke_streaming(tier, prompt, on_chunk)
        else:
            raw = await self.gateway.invoke(tier, prompt)
        raw = raw or ""
        logger.debug(f"[{stage}] <- {len(raw)} chars in {time.time() - start:.2f}s\n{self._preview(raw)}")
        return raw

    # ------------------------------------------------------------------
    # ideation
    # ------------------------------------------------------------------

    async def divergent_ideas(self, ideation: IdeationInput) -> List[Idea]:
        prompt = render(
            "divergent_ideas",
            context=ideation.context,
            user=ideation.user,
            goal=ideation.goal,
            tasks=ideation.tasks,
            examples=ideation.examples,
            user_comments=ideation.comments,
        )
        raw = await self._call("divergent_ideas", LITE, prompt)
        return parse_ideas(recover(raw, "divergent ideas"))

    async def design_space_from_ideas(self, ideas: List[Idea], ideation: IdeationInput) -> List[Dimension]:
        prompt = render(
            "design_space_from_ideas",
            divergent_ideas=ideas,
            context=ideation.context,
            user=ideation.user,
            goal=ideation.goal,
            tasks=ideation.tasks,
            examples=ideation.examples,
            user_comments=ideation.comments,
        )
        raw = await self._call("design_space_from_ideas", LITE, prompt)
        return parse_design_space(recover(raw, "design space"))

    async def overall_design(self, design_parameters: Any = None, user_comments: str | None = None) -> List[OverallDesign]:
        prompt = render("overall_design", design_parameters=design_parameters, user_comments=user_comments)
        raw = await self._call("overall_design", LITE, prompt)
        return parse_overall_designs(recover(raw, "overall designs"))

    # ------------------------------------------------------------------
    # screens
    # ------------------------------------------------------------------

    async def _task_screen_text(self, overall_design: Any, task: str) -> TaskScreenText:
        prompt = render("taskwise_screen_descriptions", overall_design=overall_design, task=task)
        text = await self._call("taskwise_screen_descriptions", LITE, prompt)
        if not text.strip():
            raise ValidationError("Empty screen description")
        return TaskScreenText(task=task, text=text.strip())

    async def taskwise_screen_descriptions(self, overall_design: Any, tasks: List[str]) -> List[TaskScreenText]:
        if not isinstance(tasks, list):
            raise ValidationError("tasks must be a list")

        def failed(index: int, err: PerItemGenerationError) -> TaskScreenText:
            return TaskScreenText(task=tasks[index], text=f"{TASK_ERROR_PREFIX}{err.cause}", failed=True)

        if self.taskwise_parallel:
            return await run_isolated(
                len(tasks),
                lambda i: self._task_screen_text(overall_design, tasks[i]),
                on_error=failed,
                limit=self.max_concurrency,
            )

        results = []
        for index, task in enumerate(tasks):
            try:
                results.append(await self._task_screen_text(overall_design, task))
            except Exception as e:
                err = PerItemGenerationError(index, e)
                self.color_print(f"taskwise_screen_descriptions: {err}", "red")
                results.append(failed(index, err))
        return results

    async def merge_screen_descriptions(self, task_texts: List[TaskScreenText]) -> List[ScreenDescription]:
        if not task_texts:
            raise ValidationError("No task screen descriptions to merge")
        joined = "\n\n".join(
            f"Task {i + 1}: {item.task}\nScreen Description: {item.text}" for i, item in enumerate(task_texts)
        )
        raw = await self._call("merge_screen_descriptions", LITE, render("merge_screen_descriptions", screen_descriptions=joined))

        try:
            parsed = recover(raw, "merged screen descriptions")
            if isinstance(parsed, dict):
                parsed = next((v for v in parsed.values() if isinstance(v, list)), None)
            if not isinstance(parsed, list):
                raise ValidationError("Merged screen descriptions are not an array")
            screens = [ScreenDescription.model_validate(s) for s in parsed if isinstance(s, dict)]
            if not screens:
                raise ValidationError("Merged screen descriptions are empty")
            return screens
        except (RecoveryError, ValidationError, ValueError) as e:
            self.color_print(f"merge_screen_descriptions: {e}; deriving screens from plain text", "yellow")

        screens = screens_from_text(raw)
        if not screens:
            logger.warning("merge_screen_descriptions: no screens found, using one generic screen")
            screens = [fallback_screen()]
        return screens

    async def map_tasks_to_screens(self, tasks: List[str], screens: List[ScreenDescription]) -> List[TaskMapping]:
        if not tasks:
            raise ValidationError("tasks must be a non-empty list")
        if not screens:
            raise ValidationError("screens must be a non-empty list")

        prompt = render(
            "task_screen_mapping",
            tasks=tasks,
            screen_descriptions=[{"index": i, **s.prompt_payload()} for i, s in enumerate(screens)],
            screen_count=len(screens),
        )
        raw = await self._call("map_tasks_to_screens", LITE, prompt)

        entries = []
        if raw.strip():
            try:
                entries = _mapping_entries(recover(raw, "task screen mapping"))
            except RecoveryError as e:
                self.color_print(f"map_tasks_to_screens: {e}", "yellow")
        else:
            logger.warning("map_tasks_to_screens: empty model reply")

        mapping = []
        for entry in entries:
            try:
                mapping.append(TaskMapping.model_validate(entry))
            except ValueError as e:
                logger.warning(f"map_tasks_to_screens: skipping malformed entry {entry!r}: {e}")

        if not mapping:
            self.color_print("map_tasks_to_screens: using fallback mapping", "yellow")
            return fallback_mapping(tasks, screens)
        return resolve_mapping(align_mapping(mapping, tasks), screens)

    # ------------------------------------------------------------------
    # SVG
    # ------------------------------------------------------------------

    async def svg_code(
        self,
        screen: ScreenDescription,
        quality: str = "fast",
        user_comments: str | None = None,
        on_chunk: OnChunk | None = None,
    ) -> str:
        prompt = render(
            "svg_code_generation",
            screen_description=screen.prompt_payload(),
            user_comments=user_comments,
        )
        raw = await self._call("svg_code", quality_tier(quality), prompt, on_chunk=on_chunk)
        svg = extract_svg(clean_triple_backticks(raw))
        if svg is None:
            raise ValidationError(f"No <svg> element in the reply for screen '{screen.title}'")
        return svg

    async def critique_to_changes(
        self, original_svg: str, critiques: List[Critique], user_comments: str | None = None
    ) -> List[ChangeSet]:
        prompt = render(
            "critique_to_changes",
            original_ui_code=original_svg,
            critiques=[{"ui_element": c.ui_element, "feedback": c.feedback} for c in critiques],
            user_comments=user_comments,
        )
        raw = await self._call("critique_to_changes", LITE, prompt)
        changes = parse_change_sets(recover(raw, "critique changes"))
        if not changes:
            raise ValidationError("No changes derived from the critiques")
        return changes

    async def apply_changes(self, original_svg: str, changes: List[ChangeSet], user_comments: str | None = None) -> str:
        prompt = render(
            "apply_changes",
            original_ui_code=original_svg,
            changes=changes,
            user_comments=user_comments,
        )
        raw = await self._call("apply_changes", FLASH, prompt)
        svg = extract_svg(clean_triple_backticks(raw))
        if svg is None:
            raise ValidationError("Revised code does not contain an <svg> element")
        return svg

    async def task_flow(self, task: str, ui_codes: List[str], interactions: List[str]) -> List[List[str]]:
        prompt = render(
            "task_flow",
            task=task,
            ui_codes="\n\n".join(f"Screen {i + 1}:\n{code}" for i, code in enumerate(ui_codes)),
            screen_interactions="\n".join(f"Screen {i + 1}: {text}" for i, text in enumerate(interactions)),
            screen_count=len(ui_codes),
        )
        raw = await self._call("task_flow", FLASH, prompt)
        return normalize_task_flow(recover(raw, TASK_FLOW), len(ui_codes))


# ---------------------------------------------------------------------------
# fallbacks and normalization
# ---------------------------------------------------------------------------

def fallback_screen() -> ScreenDescription:
    return ScreenDescription(
        title="Main Screen",
        purpose="Primary application screen",
        core_elements=["Core functionality elements"],
        key_interactions=["Primary user interactions"],
    )


def screens_from_text(text: str) -> List[ScreenDescription]:
    """
    Heuristic recovery of screens from prose: one block per "Screen ..." /
    numbered / heading line, with title/purpose/elements/interactions fields.
    """
    blocks = [b for b in _BLOCK_START_RE.split(text or "") if b.strip()]
    screens = []
    for index, block in enumerate(blocks):
        lines = [line.strip() for line in block.strip().splitlines() if line.strip()]
        header = _HEADER_CLEAN_RE.sub("", lines[0]).strip(" *:") if lines else ""
        title, purpose, elements, interactions = "", "", [], []
        for line in lines:
            match = _FIELD_RE.match(line)
            if not match:
                continue
            key, value = match.group(1).strip().lower(), match.group(2).strip().strip("*").strip()
            if key in ("title", "name", "screen"):
                title = value
            elif key in ("purpose", "goal"):
                purpose = value
            elif key.endswith("elements") or key == "components":
                elements = [e.strip() for e in _LIST_SPLIT_RE.split(value) if e.strip()]
            elif key.endswith("interactions") or key == "actions":
                interactions = [i.strip() for i in _LIST_SPLIT_RE.split(value) if i.strip()]
        if not title and header and not _FIELD_RE.match(lines[0]):
            title = header
        screens.append(ScreenDescription(
            title=title or f"Screen {index + 1}",
            purpose=purpose or DEFAULT_PURPOSE,
            core_elements=elements or [DEFAULT_ELEMENTS],
            key_interactions=interactions or [DEFAULT_INTERACTIONS],
        ))
    return screens


def _mapping_entries(parsed: Any) -> list:
    if isinstance(parsed, dict):
        value = parsed.get("tasksWithScreens")
        if value is None:
            value = next(iter(parsed.values()), None)
        parsed = value
    if not isinstance(parsed, list):
        return []
    return [e for e in parsed if isinstance(e, dict)]


def fallback_mapping(tasks: List[str], screens: List[ScreenDescription]) -> List[TaskMapping]:
    first_ref = screens[0].id if screens else None
    return [
        TaskMapping(task=task, screens=[ScreenStep(screen_index=0, screen_ref=first_ref, interaction=f"Complete task: {task}")])
        for task in tasks
    ]


def align_mapping(mapping: List[TaskMapping], tasks: List[str]) -> List[TaskMapping]:
    """
    Exactly one entry per input task, in input order, carrying the input task text.
    Exact matches first, then leftover entries fill leftover tasks in order.
    """
    remaining = list(mapping)
    aligned: List[Optional[TaskMapping]] = [None] * len(tasks)
    for i, task in enumerate(tasks):
        for entry in remaining:
            if entry.task.strip() == task.strip():
                aligned[i] = entry
                remaining.remove(entry)
                break
    for i, task in enumerate(tasks):
        if aligned[i] is None and remaining:
            entry = remaining.pop(0)
            aligned[i] = entry.model_copy(update={"task": task})
    if remaining:
        logger.warning(f"align_mapping: dropping {len(remaining)} mapping entries for unknown tasks")
    return [
        entry if entry is not None else TaskMapping(task=task, screens=[])
        for entry, task in zip(aligned, tasks)
    ]


def resolve_mapping(mapping: List[TaskMapping], screens: List[ScreenDescription]) -> List[TaskMapping]:
    """
    Clamps every ordinal into range and pins it to the stable screen id.
    A task left without screens gets screen 0.
    """
    count = len(screens)
    resolved = []
    for entry in mapping:
        steps = []
        for step in entry.screens:
            index = clamp_screen_index(step.screen_index, count)
            if index != step.screen_index:
                logger.warning(f"resolve_mapping: screen index {step.screen_index} clamped to {index} for '{entry.task}'")
            steps.append(ScreenStep(screen_index=index, screen_ref=screens[index].id, interaction=step.interaction))
        if not steps:
            logger.warning(f"resolve_mapping: task '{entry.task}' names no screens, using screen 0")
            steps = [ScreenStep(screen_index=0, screen_ref=screens[0].id, interaction=f"Complete task: {entry.task}")]
        resolved.append(TaskMapping(task=entry.task, screens=steps))

    used = {step.screen_index for entry in resolved for step in entry.screens}
    unused = [i for i in range(count) if i not in used]
    if unused:
        logger.warning(f"resolve_mapping: screens {unused} are not used by any task")
    return resolved


def _snippets(item: Any) -> List[str]:
    if item is None:
        return []
    if isinstance(item, str):
        return [item] if item.strip() else []
    if isinstance(item, dict):
        out = []
        for key, value in item.items():
            if key.endswith("_code") or key in ("snippet", "snippets", "elements"):
                out.extend(_snippets(value))
        return out
    if isinstance(item, list):
        out = []
        for sub in item:
            out.extend(_snippets(sub))
        return out
    return []


def normalize_task_flow(parsed: Any, screen_count: int) -> List[List[str]]:
    """
    One list of element snippets per screen, whatever shape the reply had:
    nested arrays, a flat array of snippets, or objects with a *_code field.
    """
    if isinstance(parsed, dict):
        parsed = next((v for v in parsed.values() if isinstance(v, list)), None)
    if not isinstance(parsed, list):
        raise ValidationError("Task flow is not an array")

    if parsed and all(isinstance(p, str) for p in parsed) and len(parsed) != screen_count:
        # flat list of snippets recovered from a broken reply; keep them on the first screen
        flows = [[p for p in parsed if p.strip()]]
    else:
        flows = [_snippets(p) for p in parsed]

    if len(flows) < screen_count:
        flows.extend([] for _ in range(screen_count - len(flows)))
    elif len(flows) > screen_count:
        logger.warning(f"normalize_task_flow: {len(flows)} entries for {screen_count} screens, truncating")
        flows = flows[:screen_count]
    return flows
