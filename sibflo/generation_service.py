# sibflo/generation_service.py
import asyncio
import logging
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Tuple

from sibflo.base_utils import BaseUtils
from sibflo.chains import ChainRunner, quality_tier, run_isolated
from sibflo.diversity_sampler import DiversitySampler
from sibflo.errors import PerItemGenerationError, ValidationError
from sibflo.generation_cache import GenerationCache
from sibflo.model_props import GENERATION
from sibflo.models import (
    Critique,
    Design,
    Dimension,
    IdeationInput,
    OverallDesign,
    ScreenDescription,
    TaskMapping,
    clamp_screen_index,
    format_parameters,
    resolve_screen_index,
)
from sibflo.svg_tools import error_placeholder_svg, highlight_svg_element

logger = logging.getLogger("sibflo_backend")

ProgressCallback = Callable[[List[str], int, str], None]
ChunkCallback = Callable[[int, str, str], None]

DEFAULT_INTERACTION = "Continue to the next screen"


@dataclass
class ScreenGenerationResult:
    screens: List[ScreenDescription]
    task_screen_mapping: List[TaskMapping]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "screen_descriptions": [s.model_dump() for s in self.screens],
            "task_screen_mapping": [m.model_dump() for m in self.task_screen_mapping],
        }


def _coerce_list(items, model):
    return [item if isinstance(item, model) else model.model_validate(item) for item in (items or [])]


def fallback_design(slot: int, design_parameters: str | None) -> OverallDesign:
    if design_parameters is None:
        return OverallDesign(
            id=slot + 1,
            name=f"Design {slot + 1} (Fallback)",
            core_concept="A fallback design approach when generation was incomplete",
            key_characteristics=["Fallback design"],
            rationale="This design was added so that every requested slot holds a design.",
            is_fallback=True,
        )
    return OverallDesign(
        id=slot + 1,
        name=f"Design {slot + 1} (Fallback)",
        core_concept=f"A design approach based on: {design_parameters}",
        key_characteristics=["Fallback design due to generation error"],
        rationale="This design was created as a fallback when generation failed.",
        design_parameters=design_parameters,
        is_fallback=True,
    )


class GenerationService(BaseUtils):
    """
    End-to-end operations of the ideation flow on top of ChainRunner.

    Owns a GenerationCache (task flows, last UI codes, edited screens);
    clear_session() must run whenever a new design session starts.
    """

    def __init__(
        self,
        gateway,
        *,
        cache: GenerationCache | None = None,
        sampler: DiversitySampler | None = None,
        runner: ChainRunner | None = None,
        max_concurrency: int | None = None,
        diverse_design_count: int | None = None,
        diverse_design_attempts: int | None = None,
    ):
        self.gateway = gateway
        self.cache = cache or GenerationCache()
        self.sampler = sampler or DiversitySampler()
        self.max_concurrency = max_concurrency or GENERATION["max_concurrency"]
        self.runner = runner or ChainRunner(gateway, max_concurrency=self.max_concurrency)
        self.diverse_design_count = diverse_design_count or GENERATION["diverse_design_count"]
        self.diverse_design_attempts = max(1, diverse_design_attempts or GENERATION["diverse_design_attempts"])

    def clear_session(self) -> None:
        self.cache.clear()

    # ------------------------------------------------------------------
    # ideation
    # ------------------------------------------------------------------

    async def generate_design_space(self, ideation: IdeationInput | Dict[str, Any]) -> List[Dimension]:
        """
        Divergent ideas, then the 3-dimension design space. Both must succeed.
        """
        if not isinstance(ideation, IdeationInput):
            ideation = IdeationInput.model_validate(ideation)
        start = time.time()
        ideas = await self.runner.divergent_ideas(ideation)
        design_space = await self.runner.design_space_from_ideas(ideas, ideation)
        self.color_print(
            f"Design space from {len(ideas)} ideas in {time.time() - start:.2f}s: "
            f"{', '.join(d.name for d in design_space)}",
            "green",
        )
        return design_space

    async def generate_overall_designs(self, design_parameters: Any = None, user_comments: str | None = None) -> List[OverallDesign]:
        if isinstance(design_parameters, list):
            design_parameters = format_parameters(design_parameters)
        designs = await self.runner.overall_design(design_parameters, user_comments)
        logger.info(f"Generated {len(designs)} overall designs")
        return designs

    async def generate_diverse_design_ideas(
        self,
        design_space: List[Dimension] | List[Dict[str, Any]],
        count: int | None = None,
        first: int | str | None = None,
    ) -> List[OverallDesign]:
        """
        One overall design per diverse parameter combination, generated one after
        another. Every slot gets `diverse_design_attempts` tries, then a labelled
        fallback, so exactly `count` designs come back.
        """
        count = count or self.diverse_design_count
        design_space = _coerce_list(design_space, Dimension)
        combinations = self.sampler.sample(design_space, count, first=first)

        designs: List[OverallDesign] = []
        for slot in range(count):
            if slot >= len(combinations):
                logger.warning(f"generate_diverse_design_ideas: no combination left for slot {slot + 1}")
                designs.append(fallback_design(slot, None))
                continue

            params = combinations[slot]
            design: Optional[OverallDesign] = None
            for attempt in range(self.diverse_design_attempts):
                try:
                    generated = await self.generate_overall_designs(params)
                    design = generated[0].model_copy(update={"id": slot + 1, "design_parameters": params})
                    break
                except Exception as e:
                    self.color_print(
                        f"generate_diverse_design_ideas: slot {slot + 1} attempt {attempt + 1} failed: {e}", "red"
                    )
            if design is None:
                design = fallback_design(slot, params)
            designs.append(design)

        return designs

    # ------------------------------------------------------------------
    # screens
    # ------------------------------------------------------------------

    async def generate_screen_descriptions(self, overall_design: Any, tasks: List[str]) -> ScreenGenerationResult:
        """
        taskwise descriptions -> merge -> task mapping, strictly in that order.
        Single failed tasks are absorbed; if every task failed the call fails.
        """
        if isinstance(overall_design, OverallDesign):
            overall_design = overall_design.model_dump(exclude_none=True, exclude={"is_fallback"})
        task_texts = await self.runner.taskwise_screen_descriptions(overall_design, list(tasks or []))
        if not task_texts or all(t.failed for t in task_texts):
            reasons = "; ".join(t.text for t in task_texts) or "no tasks given"
            raise ValidationError(f"No screen descriptions could be generated: {reasons}")

        screens = await self.runner.merge_screen_descriptions(task_texts)
        mapping = await self.runner.map_tasks_to_screens(list(tasks), screens)
        self.cache.update_screens(screens)
        logger.info(f"Generated {len(screens)} screens for {len(tasks)} tasks")
        return ScreenGenerationResult(screens=screens, task_screen_mapping=mapping)

    def update_screen_descriptions(self, screens: List[ScreenDescription] | List[Dict[str, Any]]) -> List[ScreenDescription]:
        if not isinstance(screens, list):
            raise ValidationError("screen descriptions must be a list")
        screens = _coerce_list(screens, ScreenDescription)
        self.cache.update_screens(screens)
        return screens

    async def generate_ui_codes_streaming(
        self,
        screens: List[ScreenDescription] | List[Dict[str, Any]],
        quality: str = "fast",
        on_progress: ProgressCallback | None = None,
        user_comments: str | None = None,
        on_chunk: ChunkCallback | None = None,
    ) -> List[str]:
        """
        One SVG per screen, all screens in flight together (bounded by max_concurrency).

        on_progress(snapshot, index, code) fires as each screen finishes, in completion
        order; `snapshot` holds every code finished so far ("" for pending screens).
        A failed screen gets an error placeholder and still reports progress.
        The returned list is in screen order.
        """
        screens = _coerce_list(screens, ScreenDescription)
        snapshot = [""] * len(screens)
        start = time.time()

        async def generate(index: int) -> str:
            chunk_cb = None
            if on_chunk is not None:
                def chunk_cb(chunk: str, full_text: str, _index=index) -> None:
                    on_chunk(_index, chunk, full_text)
            return await self.runner.svg_code(screens[index], quality, user_comments, on_chunk=chunk_cb)

        def failed(index: int, err: PerItemGenerationError) -> str:
            return error_placeholder_svg(str(err.cause))

        def done(index: int, code: str) -> None:
            snapshot[index] = code
            if on_progress is not None:
                on_progress(list(snapshot), index, code)

        codes = await run_isolated(
            len(screens), generate, on_error=failed, limit=self.max_concurrency, on_done=done
        )
        self.cache.update_ui_codes(codes)
        logger.info(
            f"Generated {len(codes)} UI codes with tier {quality_tier(quality)} in {time.time() - start:.2f}s"
        )
        return codes

    async def stream_ui_codes(
        self,
        screens: List[ScreenDescription] | List[Dict[str, Any]],
        quality: str = "fast",
        user_comments: str | None = None,
    ) -> AsyncIterator[Tuple[int, str]]:
        """
        Async-iterator flavour of generate_ui_codes_streaming: yields (index, code)
        in completion order. Closing the iterator early cancels pending screens.
        """
        queue: asyncio.Queue = asyncio.Queue()
        finished = object()

        async def produce() -> List[str]:
            try:
                return await self.generate_ui_codes_streaming(
                    screens, quality, lambda _snapshot, index, code: queue.put_nowait((index, code)), user_comments
                )
            finally:
                queue.put_nowait(finished)

        producer = asyncio.create_task(produce())
        try:
            while True:
                item = await queue.get()
                if item is finished:
                    break
                yield item
            await producer
        finally:
            if not producer.done():
                producer.cancel()

    async def generate_design_ui_codes(
        self, design: Design, quality: str = "fast", on_progress: ProgressCallback | None = None,
        user_comments: str | None = None,
    ) -> List[str]:
        """
        Like generate_ui_codes_streaming, writing each finished code into its
        screen of `design` as it arrives.
        """
        def progress(snapshot: List[str], index: int, code: str) -> None:
            design.screens[index].ui_code = code
            if on_progress is not None:
                on_progress(snapshot, index, code)

        return await self.generate_ui_codes_streaming(design.screens, quality, progress, user_comments)

    async def revise_ui_codes(
        self,
        screens: List[ScreenDescription] | List[Dict[str, Any]],
        critiques: List[Critique] | List[Dict[str, Any]],
        user_comments: str | None = None,
        design: Design | None = None,
    ) -> List[str]:
        """
        critique -> changes -> revised SVG for every screen named by a critique
        (matched on title). Other screens, and screens whose revision fails,
        keep their code.
        """
        screens = _coerce_list(screens, ScreenDescription)
        critiques = _coerce_list(critiques, Critique)
        originals = [s.ui_code or "" for s in screens]
        if not screens or not critiques:
            return originals

        by_title: Dict[str, List[Critique]] = defaultdict(list)
        for critique in critiques:
            by_title[critique.screen_title].append(critique)
        unknown = set(by_title) - {s.title for s in screens}
        if unknown:
            logger.warning(f"revise_ui_codes: critiques for unknown screens {sorted(unknown)}")

        result = list(originals)
        for index, screen in enumerate(screens):
            screen_critiques = by_title.get(screen.title)
            if not screen_critiques:
                continue
            try:
                changes = await self.runner.critique_to_changes(originals[index], screen_critiques, user_comments)
                result[index] = await self.runner.apply_changes(originals[index], changes, user_comments)
            except Exception as e:
                self.color_print(f"revise_ui_codes: {PerItemGenerationError(index, e)}; keeping original code", "red")
                result[index] = originals[index]

        cached = self.cache.get_ui_codes()
        if cached and len(cached) == len(result):
            self.cache.update_ui_codes(result)
        if design is not None and len(design.screens) == len(result):
            for screen, code in zip(design.screens, result):
                screen.ui_code = code
        return result

    # ------------------------------------------------------------------
    # task flows
    # ------------------------------------------------------------------

    async def generate_task_flows(
        self,
        task: str,
        task_screen_mapping: List[TaskMapping] | List[Dict[str, Any]],
        ui_codes: List[str],
        screens: List[ScreenDescription] | List[Dict[str, Any]] | None = None,
    ) -> List[List[str]]:
        """
        Highlighted-element snippets for each screen of `task`, cached by exact task text.
        """
        cached = self.cache.get_task_flow(task)
        if cached is not None:
            return cached

        mapping = _coerce_list(task_screen_mapping, TaskMapping)
        entry = next((m for m in mapping if m.task == task), None)
        if entry is None:
            raise ValidationError(f'Task "{task}" not found in task screen mapping')
        if not entry.screens:
            raise ValidationError(f'Task "{task}" has no screens')
        if not ui_codes:
            raise ValidationError("No UI codes to build a task flow from")

        screens = _coerce_list(screens, ScreenDescription) if screens else []
        if screens and len(screens) == len(ui_codes):
            indices = [resolve_screen_index(step, screens) for step in entry.screens]
        else:
            indices = [clamp_screen_index(step.screen_index, len(ui_codes)) for step in entry.screens]

        codes = [ui_codes[i] for i in indices]
        interactions = [step.interaction or DEFAULT_INTERACTION for step in entry.screens]
        flow = await self.runner.task_flow(task, codes, interactions)
        self.cache.set_task_flow(task, flow)
        return flow

    def highlight_ui_code(self, ui_code: str, snippet: str) -> str:
        return highlight_svg_element(ui_code, snippet)
