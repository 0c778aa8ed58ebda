# sibflo/text_recovery.py
"""
Recovery of structured data from free-text model output.

The model is asked for raw JSON but regularly returns code fences, comments,
truncated arrays or (for SVG payloads) strings with unescaped double quotes.
`recover()` runs an ordered chain of strategies over the fence-stripped text;
each strategy returns `Recovered(value)` or `FAILED` and the first success wins.

Chain:
    1. direct parse
    2. only for TASK_FLOW: SVG-aware strategies (quote escaping, quoted <svg>
       fragments, *_code objects, largest [{...}] span, object fragments,
       truncation repair)
    3. lenient loaders (commentjson, json_repair), accepting non-empty containers only
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable

import commentjson
from json_repair import repair_json

from sibflo.base_utils import clean_triple_backticks
from sibflo.errors import RecoveryError

logger = logging.getLogger("sibflo_backend")

TASK_FLOW = "task flow"


@dataclass(frozen=True)
class Recovered:
    value: Any


class _Failed:
    def __repr__(self) -> str:
        return "FAILED"

    def __bool__(self) -> bool:
        return False


FAILED = _Failed()

RecoveryOutcome = Recovered | _Failed
Strategy = Callable[[str], RecoveryOutcome]

_STRUCTURAL_AFTER_CLOSE = set(',}]:')

_QUOTED_SVG_RE = re.compile(r'"(<svg\b[\s\S]*?)"\s*(?=[,\]])')
_CODE_OBJECT_RE = re.compile(
    r'\{\s*"[^"]+"\s*:\s*[^,{}]+?\s*,\s*"\w*_code"\s*:\s*(?:"[\s\S]*?"|\[[\s\S]*?\])\s*\}'
)
_OBJECT_ARRAY_RE = re.compile(r'\[\s*\{[\s\S]*?\}\s*\]')
_OBJECT_FRAGMENT_RE = re.compile(r'\{\s*"[^"]+"\s*:\s*"[^"]*"[\s\S]*?\}')

_MAX_TRUNCATION_PROBES = 64


def escape_inner_quotes(fragment: str) -> str:
    """
    Escape double quotes that sit inside JSON string values.

    A quote met while inside a string closes it only when the next
    non-blank character is structural (`,` `}` `]` `:`) or the text ends;
    any other quote is escaped. Good enough for SVG attribute values.
    """
    out: list[str] = []
    in_string = False
    i = 0
    n = len(fragment)
    while i < n:
        ch = fragment[i]
        if ch == '\\' and in_string and i + 1 < n:
            out.append(fragment[i:i + 2])
            i += 2
            continue
        if ch == '"':
            if not in_string:
                in_string = True
                out.append(ch)
            else:
                j = i + 1
                while j < n and fragment[j].isspace():
                    j += 1
                if j >= n or fragment[j] in _STRUCTURAL_AFTER_CLOSE:
                    in_string = False
                    out.append(ch)
                else:
                    out.append('\\"')
        elif in_string and ch == '\n':
            out.append('\\n')
        else:
            out.append(ch)
        i += 1
    return ''.join(out)


def _loads(text: str):
    return json.loads(text)


def _outermost_array(text: str) -> str | None:
    start = text.find('[')
    end = text.rfind(']')
    if start == -1 or end <= start:
        return None
    return text[start:end + 1]


# ---------------------------------------------------------------------------
# strategies
# ---------------------------------------------------------------------------

def parse_direct(text: str) -> RecoveryOutcome:
    try:
        return Recovered(_loads(text))
    except ValueError:
        return FAILED


def parse_escaped_string_array(text: str) -> RecoveryOutcome:
    span = _outermost_array(text)
    if span is None:
        return FAILED
    try:
        parsed = _loads(escape_inner_quotes(span))
    except ValueError:
        return FAILED
    if isinstance(parsed, list):
        return Recovered(parsed)
    return FAILED


def extract_quoted_svg_fragments(text: str) -> RecoveryOutcome:
    fragments = [m.replace('\\"', '"') for m in _QUOTED_SVG_RE.findall(text)]
    if fragments:
        return Recovered(fragments)
    return FAILED


def extract_code_objects(text: str) -> RecoveryOutcome:
    found = []
    for match in _CODE_OBJECT_RE.findall(text):
        try:
            parsed = _loads(escape_inner_quotes(match))
        except ValueError:
            continue
        if isinstance(parsed, dict) and any(k.endswith("_code") and v for k, v in parsed.items()):
            found.append(parsed)
    if found:
        return Recovered(found)
    return FAILED


def extract_largest_object_array(text: str) -> RecoveryOutcome:
    candidates = sorted(_OBJECT_ARRAY_RE.findall(text), key=len, reverse=True)
    for candidate in candidates:
        try:
            parsed = _loads(candidate)
        except ValueError:
            continue
        if isinstance(parsed, list) and parsed:
            return Recovered(parsed)
    return FAILED


def extract_object_fragments(text: str) -> RecoveryOutcome:
    found = []
    for match in _OBJECT_FRAGMENT_RE.findall(text):
        try:
            parsed = _loads(match)
        except ValueError:
            continue
        if isinstance(parsed, dict):
            found.append(parsed)
    if found:
        return Recovered(found)
    return FAILED


def repair_truncated_array(text: str) -> RecoveryOutcome:
    start = text.find('[')
    if start != -1:
        end = len(text)
        for _ in range(_MAX_TRUNCATION_PROBES):
            end = text.rfind('}', start, end)
            if end == -1:
                break
            try:
                parsed = _loads(text[start:end + 1] + ']')
            except ValueError:
                continue
            if isinstance(parsed, list):
                return Recovered(parsed)

    single = _OBJECT_FRAGMENT_RE.search(text)
    if single:
        try:
            return Recovered([_loads(single.group(0))])
        except ValueError:
            pass
    return FAILED


def parse_commented_json(text: str) -> RecoveryOutcome:
    try:
        parsed = commentjson.loads(text)
    except Exception:
        return FAILED
    if isinstance(parsed, (list, dict)) and parsed:
        return Recovered(parsed)
    return FAILED


def parse_repaired_json(text: str) -> RecoveryOutcome:
    try:
        parsed = repair_json(text, return_objects=True)
    except Exception:
        return FAILED
    if isinstance(parsed, (list, dict)) and parsed:
        return Recovered(parsed)
    return FAILED


TASK_FLOW_STRATEGIES: tuple[Strategy, ...] = (
    parse_escaped_string_array,
    extract_quoted_svg_fragments,
    extract_code_objects,
    extract_largest_object_array,
    extract_object_fragments,
    repair_truncated_array,
)

LENIENT_STRATEGIES: tuple[Strategy, ...] = (
    parse_commented_json,
    parse_repaired_json,
)


def strategies_for(context: str) -> tuple[Strategy, ...]:
    if context == TASK_FLOW:
        return (parse_direct,) + TASK_FLOW_STRATEGIES + LENIENT_STRATEGIES
    return (parse_direct,) + LENIENT_STRATEGIES


def run_chain(text: str, strategies: tuple[Strategy, ...]) -> RecoveryOutcome:
    for strategy in strategies:
        outcome = strategy(text)
        if isinstance(outcome, Recovered):
            if strategy is not parse_direct:
                logger.debug(f"text_recovery: recovered with {strategy.__name__}")
            return outcome
    return FAILED


def recover(raw: str, context: str = "JSON"):
    """
    Best-effort parse of `raw`. Raises RecoveryError when every strategy fails.
    """
    if not isinstance(raw, str):
        raise RecoveryError(context, raw=None)
    cleaned = clean_triple_backticks(raw).strip()
    outcome = run_chain(cleaned, strategies_for(context))
    if isinstance(outcome, Recovered):
        return outcome.value
    raise RecoveryError(context, raw=raw)
