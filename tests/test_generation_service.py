import asyncio

import pytest

from fakes import DESIGN_SPACE, FakeGateway, REVISED_SVG, pipeline_replies, screen_title, svg_for, svg_reply
from sibflo.diversity_sampler import DiversitySampler
from sibflo.errors import ValidationError
from sibflo.generation_cache import GenerationCache
from sibflo.generation_service import GenerationService
from sibflo.models import Critique, Design, Dimension, IdeationInput, ScreenDescription, TaskMapping, select_parameters
from sibflo.svg_tools import UI_CODE_ERROR_MARKER, UI_CODE_ERROR_TEXT, is_error_placeholder

WEEKEND = {
    "context": "parent planning weekend activities",
    "user": "busy parent",
    "goal": "engage child",
    "tasks": ["Plan a weekend of activities"],
    "examples": [],
    "comments": "",
}


def service_for(max_concurrency=8, sampler=None, **replies):
    gateway = FakeGateway(pipeline_replies(**replies))
    service = GenerationService(
        gateway,
        sampler=sampler or DiversitySampler(seed=0),
        max_concurrency=max_concurrency,
        diverse_design_count=4,
        diverse_design_attempts=2,
    )
    return service, gateway


def numbered_screens(n):
    return [ScreenDescription(title=f"Screen {i}", purpose="p") for i in range(n)]


class TestEndToEnd:
    def test_weekend_planning_scenario(self):
        service, gateway = service_for()

        design_space = asyncio.run(service.generate_design_space(WEEKEND))
        assert len(design_space) == 3
        assert all(3 <= len(d.options) <= 5 for d in design_space)

        params = select_parameters(design_space, [0, 0, 0])
        designs = asyncio.run(service.generate_overall_designs(params))
        assert designs
        assert designs[0].name and designs[0].core_concept

        result = asyncio.run(service.generate_screen_descriptions(designs[0], WEEKEND["tasks"]))
        assert len(result.screens) >= 1
        assert len(result.task_screen_mapping) == 1
        steps = result.task_screen_mapping[0].screens
        assert steps
        assert all(s.screen_index < len(result.screens) for s in steps)
        assert all(s.screen_ref == result.screens[s.screen_index].id for s in steps)

        assert gateway.stages() == [
            "divergent_ideas",
            "design_space_from_ideas",
            "overall_design",
            "taskwise_screen_descriptions",
            "merge_screen_descriptions",
            "task_screen_mapping",
        ]
        assert result.to_dict()["screen_descriptions"][0]["title"] == "Quest Board"

    def test_design_space_failure_propagates(self):
        service, _ = service_for(design_space_from_ideas="no idea")
        with pytest.raises(Exception):
            asyncio.run(service.generate_design_space(IdeationInput(**WEEKEND)))

    def test_overall_design_parse_failure_propagates(self):
        service, _ = service_for(overall_design="Sorry, here are some thoughts instead.")
        with pytest.raises(Exception):
            asyncio.run(service.generate_overall_designs("Planning Style: Spontaneous"))

    def test_every_task_failing_is_an_error(self):
        service, _ = service_for(taskwise_screen_descriptions=RuntimeError("down"))
        with pytest.raises(ValidationError):
            asyncio.run(service.generate_screen_descriptions({"name": "Board"}, ["a", "b"]))

    def test_one_failing_task_still_produces_screens(self):
        def reply(prompt):
            if "Task: b" in prompt:
                raise RuntimeError("down")
            return "Screen 1: Home"

        service, gateway = service_for(taskwise_screen_descriptions=reply)
        result = asyncio.run(service.generate_screen_descriptions({"name": "Board"}, ["a", "b"]))
        assert result.screens
        merge_prompt = gateway.calls[gateway.stages().index("merge_screen_descriptions")][2]
        assert "Error generating screen descriptions for this task" in merge_prompt
        assert service.cache.get_screens()[0].id == result.screens[0].id


class TestUiCodes:
    def test_progress_in_completion_order_results_in_input_order(self):
        n = 5
        delays = {"svg_code_generation": lambda prompt: 0.02 * (n - int(screen_title(prompt).split()[-1]))}
        service, _ = service_for(max_concurrency=n)
        service.gateway.delays = delays

        progress = []
        codes = asyncio.run(service.generate_ui_codes_streaming(
            numbered_screens(n), "fast", lambda snapshot, index, code: progress.append((index, list(snapshot)))
        ))
        assert codes == [svg_for(f"Screen {i}") for i in range(n)]
        assert [index for index, _ in progress] == [4, 3, 2, 1, 0]
        # snapshots only ever grow
        assert progress[0][1][4] and not progress[0][1][0]
        assert all(progress[-1][1])

    def test_one_failing_screen_gets_a_placeholder(self):
        def reply(prompt):
            if screen_title(prompt) == "Screen 2":
                raise RuntimeError("model timeout")
            return svg_reply(prompt)

        service, _ = service_for(svg_code_generation=reply)
        progress = []
        codes = asyncio.run(service.generate_ui_codes_streaming(
            numbered_screens(4), on_progress=lambda s, index, code: progress.append(index)
        ))
        assert len(codes) == 4
        assert codes[2].startswith(UI_CODE_ERROR_MARKER)
        assert UI_CODE_ERROR_TEXT in codes[2]
        assert is_error_placeholder(codes[2])
        assert not any(is_error_placeholder(codes[i]) for i in (0, 1, 3))
        assert sorted(progress) == [0, 1, 2, 3]
        assert service.cache.get_ui_codes() == codes

    def test_chunks_carry_the_screen_index(self):
        service, _ = service_for()
        chunks = []
        asyncio.run(service.generate_ui_codes_streaming(
            numbered_screens(2), on_chunk=lambda index, chunk, full: chunks.append(index)
        ))
        assert sorted(chunks) == [0, 0, 1, 1]

    def test_stream_ui_codes(self):
        service, _ = service_for()
        service.gateway.delays = {"svg_code_generation": lambda p: 0.02 * (3 - int(screen_title(p).split()[-1]))}

        async def collect():
            return [pair async for pair in service.stream_ui_codes(numbered_screens(3))]

        pairs = asyncio.run(collect())
        assert [index for index, _ in pairs] == [2, 1, 0]
        assert dict(pairs)[1] == svg_for("Screen 1")

    def test_stream_closed_early_cancels_the_rest(self):
        service, gateway = service_for(max_concurrency=1)
        gateway.delays = {"svg_code_generation": lambda p: 0.05}

        async def first_only():
            stream = service.stream_ui_codes(numbered_screens(4))
            first = await stream.__anext__()
            await stream.aclose()
            await asyncio.sleep(0.01)
            return first

        index, _ = asyncio.run(first_only())
        assert index == 0
        assert len(gateway.tiers_for("svg_code_generation")) < 4

    def test_design_level_generation_writes_into_screens(self):
        service, _ = service_for()
        design = Design(name="Board", screens=numbered_screens(2))
        asyncio.run(service.generate_design_ui_codes(design, "high"))
        assert [s.ui_code for s in design.screens] == [svg_for("Screen 0"), svg_for("Screen 1")]
        assert service.gateway.tiers_for("svg_code_generation") == ["pro", "pro"]


class TestRevision:
    def _screens(self):
        screens = numbered_screens(2)
        for s in screens:
            s.ui_code = svg_for(s.title)
        return screens

    def test_only_critiqued_screen_changes(self):
        service, gateway = service_for()
        screens = self._screens()
        originals = [s.ui_code for s in screens]
        revised = asyncio.run(service.revise_ui_codes(
            screens, [Critique(screen_title="Screen 1", ui_element="title text", feedback="Too small")]
        ))
        assert len(revised) == 2
        assert revised[0] == originals[0]
        assert revised[1] != originals[1]
        assert revised[1] == REVISED_SVG
        assert gateway.stages() == ["critique_to_changes", "apply_changes"]

    def test_failed_revision_keeps_original(self):
        service, _ = service_for(apply_changes=RuntimeError("down"))
        screens = self._screens()
        revised = asyncio.run(service.revise_ui_codes(
            screens, [{"screen_title": "Screen 0", "feedback": "x"}, {"screenTitle": "Screen 1", "critique": "y"}]
        ))
        assert revised == [s.ui_code for s in screens]

    def test_writes_back_to_cache_and_design(self):
        service, _ = service_for()
        screens = self._screens()
        service.cache.update_ui_codes([s.ui_code for s in screens])
        design = Design(name="Board", screens=[s.model_copy() for s in screens])
        revised = asyncio.run(service.revise_ui_codes(
            screens, [Critique(screen_title="Screen 0", feedback="x")], design=design
        ))
        assert service.cache.get_ui_codes() == revised
        assert design.screens[0].ui_code == REVISED_SVG

    def test_cache_of_other_length_is_left_alone(self):
        service, _ = service_for()
        service.cache.update_ui_codes(["<svg/>"] * 3)
        asyncio.run(service.revise_ui_codes(self._screens(), [Critique(screen_title="Screen 0", feedback="x")]))
        assert service.cache.get_ui_codes() == ["<svg/>"] * 3


class TestDiverseDesigns:
    def test_exactly_count_designs_with_parameters(self):
        service, gateway = service_for()
        designs = asyncio.run(service.generate_diverse_design_ideas(DESIGN_SPACE))
        assert [d.id for d in designs] == [1, 2, 3, 4]
        assert all(d.design_parameters and ": " in d.design_parameters for d in designs)
        assert len({d.design_parameters for d in designs}) == 4
        assert gateway.stages() == ["overall_design"] * 4

    def test_failing_slot_gets_fallback_after_two_attempts(self):
        calls = {"n": 0}

        def reply(prompt):
            calls["n"] += 1
            # slot 2 (calls 2 and 3) fails twice
            if calls["n"] in (2, 3):
                return "not json"
            return pipeline_replies()["overall_design"]

        service, _ = service_for(overall_design=reply)
        designs = asyncio.run(service.generate_diverse_design_ideas(DESIGN_SPACE))
        assert len(designs) == 4
        assert designs[1].is_fallback
        assert designs[1].name == "Design 2 (Fallback)"
        assert "Fallback design due to generation error" in designs[1].key_characteristics
        assert not any(d.is_fallback for i, d in enumerate(designs) if i != 1)
        assert calls["n"] == 5

    def test_retry_recovers(self):
        calls = {"n": 0}

        def reply(prompt):
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("flaky")
            return pipeline_replies()["overall_design"]

        service, _ = service_for(overall_design=reply)
        designs = asyncio.run(service.generate_diverse_design_ideas(DESIGN_SPACE))
        assert not any(d.is_fallback for d in designs)

    def test_small_space_fills_with_fallbacks(self):
        service, _ = service_for()
        space = [Dimension(name="Only", options=[{"name": "A"}, {"name": "B"}])]
        designs = asyncio.run(service.generate_diverse_design_ideas(space))
        assert [d.is_fallback for d in designs] == [False, False, True, True]
        assert designs[2].design_parameters is None


class TestTaskFlows:
    MAPPING = [{"task": "Plan", "screens": [{"screen_index": 1, "interaction": "tap"}, {"screen_index": 0}]}]

    def test_flow_is_cached_by_task(self):
        service, gateway = service_for()
        codes = [svg_for("Screen 0"), svg_for("Screen 1")]
        first = asyncio.run(service.generate_task_flows("Plan", self.MAPPING, codes))
        second = asyncio.run(service.generate_task_flows("Plan", self.MAPPING, codes))
        assert first == second
        assert gateway.stages() == ["task_flow"]
        assert service.cache.is_cached("Plan")

        prompt = gateway.calls[0][2]
        assert prompt.index(svg_for("Screen 1")) < prompt.index(svg_for("Screen 0"))

    def test_cleared_session_regenerates(self):
        service, gateway = service_for()
        codes = [svg_for("Screen 0"), svg_for("Screen 1")]
        asyncio.run(service.generate_task_flows("Plan", self.MAPPING, codes))
        service.clear_session()
        asyncio.run(service.generate_task_flows("Plan", self.MAPPING, codes))
        assert gateway.stages() == ["task_flow", "task_flow"]

    def test_screen_ref_wins_over_ordinal(self):
        service, gateway = service_for()
        screens = numbered_screens(2)
        mapping = [TaskMapping(task="Plan", screens=[{"screen_index": 0, "screen_ref": screens[1].id}])]
        codes = ["<svg>zero</svg>", "<svg>one</svg>"]
        asyncio.run(service.generate_task_flows("Plan", mapping, codes, screens))
        prompt = gateway.calls[0][2]
        assert "<svg>one</svg>" in prompt
        assert "<svg>zero</svg>" not in prompt

    def test_out_of_range_index_is_clamped(self):
        service, gateway = service_for()
        mapping = [{"task": "Plan", "screens": [{"screen_index": 9}]}]
        asyncio.run(service.generate_task_flows("Plan", mapping, ["<svg>zero</svg>", "<svg>one</svg>"]))
        assert "<svg>one</svg>" in gateway.calls[0][2]

    def test_unknown_task(self):
        service, _ = service_for()
        with pytest.raises(ValidationError):
            asyncio.run(service.generate_task_flows("Nope", self.MAPPING, ["<svg/>"]))

    def test_failure_is_not_cached(self):
        service, _ = service_for(task_flow="total garbage")
        with pytest.raises(Exception):
            asyncio.run(service.generate_task_flows("Plan", self.MAPPING, ["<svg/>", "<svg/>"]))
        assert not service.cache.is_cached("Plan")


class TestCache:
    def test_snapshot_restore(self):
        cache = GenerationCache()
        cache.set_task_flow("a", [["<rect/>"]])
        snap = cache.snapshot()
        cache.clear_task_flows()
        assert not cache.is_cached("a")
        cache.restore(snap)
        assert cache.get_task_flow("a") == [["<rect/>"]]
        assert cache.invalidate("a")
        assert not cache.invalidate("a")

    def test_copies_are_defensive(self):
        cache = GenerationCache()
        flow = [["<rect/>"]]
        cache.set_task_flow("a", flow)
        flow[0].append("<circle/>")
        cache.get_task_flow("a")[0].append("<line/>")
        assert cache.get_task_flow("a") == [["<rect/>"]]

    def test_update_screen_descriptions(self):
        service, _ = service_for()
        screens = service.update_screen_descriptions([{"title": "Edited", "purpose": "p"}])
        screens[0].title = "Changed after the fact"
        assert service.cache.get_screens()[0].title == "Edited"
        with pytest.raises(ValidationError):
            service.update_screen_descriptions("not a list")

    def test_highlight(self):
        service, _ = service_for()
        out = service.highlight_ui_code(svg_for("Home"), '<rect x="10" y="10"/>')
        assert 'class="svg-highlight"' in out
