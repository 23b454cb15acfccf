"""
Best-effort repair of near-JSON emitted by language models.

Models wrap JSON in prose or code fences, leave literal newlines and bare
quotes inside string values, and add trailing commas. The repair pipeline is an
ordered list of pure (name, transform) steps; the driver re-parses after every
step and stops at the first success, so text that is already valid JSON is
returned untouched. json-repair gets the last word; when it cannot produce an
object or array either, OutputFormatError carries the offset of the first
failure plus a window of surrounding text.
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Optional, TypeVar

import json_repair
import structlog
from pydantic import BaseModel, ValidationError

from model_orchestrator.errors import OutputFormatError
from model_orchestrator.observability import metrics as obs_metrics

logger = structlog.get_logger()

M = TypeVar("M", bound=BaseModel)

WINDOW_RADIUS = 200

# C0 controls except \t \n \r, DEL, C1 controls, BOM.
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f\ufeff]")
_JSON_FENCE = re.compile(r"```json\s*(.*?)(?:```|$)", re.S | re.I)
_ANY_FENCE = re.compile(r"```[\w+-]*[ \t]*\n?(.*?)(?:```|$)", re.S)
_THINK_BLOCK = re.compile(r"<think(?:ing)?>.*?</think(?:ing)?>", re.S | re.I)
_THINK_CLOSE = re.compile(r"</think(?:ing)?>", re.I)
_VALID_ESCAPES = set('"\\/bfnrtu')
_HEX = set("0123456789abcdefABCDEF")
_STRUCTURAL_AFTER_STRING = {",", ":", "}", "]"}


# ── Transforms (pure str -> str) ──


def strip_control_characters(text: str) -> str:
    """Drop control characters and BOM; tab, newline and carriage return survive."""
    return _CONTROL_CHARS.sub("", text).replace("\r\n", "\n").strip()


def unwrap_code_fence(text: str) -> str:
    """Return the body of a ```json fence, else of any fence, else the text unchanged."""
    if "```" not in text:
        return text
    m = _JSON_FENCE.search(text) or _ANY_FENCE.search(text)
    return m.group(1).strip() if m else text


def extract_json_span(text: str) -> str:
    """Trim prose before the first opening bracket and after its last matching closer."""
    starts = [i for i in (text.find("{"), text.find("[")) if i >= 0]
    if not starts:
        return text
    start = min(starts)
    closer = "}" if text[start] == "{" else "]"
    end = text.rfind(closer)
    if end <= start:
        return text
    return text[start:end + 1]


def _next_significant(text: str, i: int) -> Optional[str]:
    n = len(text)
    while i < n and text[i].isspace():
        i += 1
    return text[i] if i < n else None


def _closes_string(text: str, i: int) -> bool:
    """A quote at i ends a string only when followed by , : } ] or end of input."""
    nxt = _next_significant(text, i + 1)
    return nxt is None or nxt in _STRUCTURAL_AFTER_STRING


def escape_literal_whitespace(text: str) -> str:
    """Escape raw newline, carriage return and tab inside string literals only."""
    out: list[str] = []
    in_string = False
    escaped = False
    for i, ch in enumerate(text):
        if escaped:
            out.append(ch)
            escaped = False
            continue
        if ch == "\\":
            out.append(ch)
            escaped = in_string
            continue
        if ch == '"':
            # A bare quote inside a value must not flip the string state.
            if not in_string or _closes_string(text, i):
                in_string = not in_string
            out.append(ch)
            continue
        if in_string and ch == "\n":
            out.append("\\n")
        elif in_string and ch == "\r":
            out.append("\\r")
        elif in_string and ch == "\t":
            out.append("\\t")
        else:
            out.append(ch)
    return "".join(out)


def escape_internal_quotes(text: str) -> str:
    """
    Escape a bare quote inside a string value.

    Inside a string, a `"` closes it only when the next non-whitespace
    character is structural (, : } ]) or the input ends; any other `"` is
    treated as content and rewritten as `\\"`.
    """
    out: list[str] = []
    in_string = False
    escaped = False
    for i, ch in enumerate(text):
        if escaped:
            out.append(ch)
            escaped = False
            continue
        if ch == "\\" and in_string:
            out.append(ch)
            escaped = True
            continue
        if ch == '"':
            if not in_string:
                in_string = True
                out.append(ch)
                continue
            if _closes_string(text, i):
                in_string = False
                out.append(ch)
            else:
                out.append('\\"')
            continue
        out.append(ch)
    return "".join(out)


def escape_stray_backslashes(text: str) -> str:
    """Double backslashes inside strings that do not start a valid JSON escape."""
    out: list[str] = []
    in_string = False
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if ch == '"':
            in_string = not in_string
            out.append(ch)
            i += 1
            continue
        if ch == "\\" and in_string:
            nxt = text[i + 1] if i + 1 < n else ""
            valid = nxt in _VALID_ESCAPES
            if nxt == "u":
                valid = len(text) >= i + 6 and all(c in _HEX for c in text[i + 2:i + 6])
            if valid:
                out.append(ch + nxt)
                i += 2
            else:
                out.append("\\\\")
                i += 1
            continue
        out.append(ch)
        i += 1
    return "".join(out)


def remove_trailing_commas(text: str) -> str:
    """Drop a comma directly before } or ] (whitespace allowed), outside strings."""
    out: list[str] = []
    in_string = False
    escaped = False
    for i, ch in enumerate(text):
        if in_string:
            out.append(ch)
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "," and _next_significant(text, i + 1) in ("}", "]"):
            continue
        out.append(ch)
    return "".join(out)


def strip_reasoning_blocks(text: str) -> str:
    """Remove <think>...</think> chains of thought (DeepSeek R1, Qwen3)."""
    if not text:
        return text
    cleaned = _THINK_BLOCK.sub("", text)
    # Some servers drop the opening tag and stream only the closer.
    closers = list(_THINK_CLOSE.finditer(cleaned))
    if closers:
        cleaned = cleaned[closers[-1].end():]
    return cleaned.strip()


REPAIR_STEPS: list[tuple[str, Callable[[str], str]]] = [
    ("strip_control_characters", strip_control_characters),
    ("unwrap_code_fence", unwrap_code_fence),
    ("extract_json_span", extract_json_span),
    ("escape_literal_whitespace", escape_literal_whitespace),
    ("escape_internal_quotes", escape_internal_quotes),
    ("escape_stray_backslashes", escape_stray_backslashes),
    ("remove_trailing_commas", remove_trailing_commas),
]

# Name recorded in steps_applied when json-repair produced the value.
LIBRARY_STEP = "json_repair"

# Steps that only normalize framing; the "original" failure is measured after them.
_FRAMING_STEPS = {"strip_control_characters", "unwrap_code_fence", "extract_json_span"}


# ── Diagnostics ──


def analyze(text: str) -> dict[str, Any]:
    """Structural counts that help explain why text is not valid JSON."""
    stats = {
        "length": len(text),
        "unescaped_quotes": 0,
        "escaped_quotes": 0,
        "backslashes": 0,
        "open_curly": 0,
        "close_curly": 0,
        "open_square": 0,
        "close_square": 0,
        "control_chars": 0,
    }
    escaped = False
    for ch in text:
        code = ord(ch)
        if ch == '"':
            stats["escaped_quotes" if escaped else "unescaped_quotes"] += 1
        elif ch == "\\":
            stats["backslashes"] += 1
        elif ch == "{":
            stats["open_curly"] += 1
        elif ch == "}":
            stats["close_curly"] += 1
        elif ch == "[":
            stats["open_square"] += 1
        elif ch == "]":
            stats["close_square"] += 1
        if code < 32 or 127 <= code <= 159:
            stats["control_chars"] += 1
        escaped = ch == "\\" and not escaped
    stats["quotes_balanced"] = stats["unescaped_quotes"] % 2 == 0
    return stats


def _format_error(text: str, exc: json.JSONDecodeError, context: str = "") -> OutputFormatError:
    pos = exc.pos
    start = max(0, pos - WINDOW_RADIUS)
    end = min(len(text), pos + WINDOW_RADIUS)
    diagnostics = analyze(text)
    diagnostics["byte_offset"] = len(text[:pos].encode("utf-8"))
    diagnostics["position_in_window"] = pos - start
    return OutputFormatError(
        exc.msg,
        offset=pos,
        window=text[start:end],
        line=exc.lineno,
        column=exc.colno,
        diagnostics=diagnostics,
        context=context,
    )


# ── Driver ──


@dataclass
class RepairResult:
    value: Any
    text: str
    steps_applied: list[str] = field(default_factory=list)

    @property
    def repaired(self) -> bool:
        return any(step not in _FRAMING_STEPS for step in self.steps_applied)


def parse(candidate: str, context: str = "") -> Any:
    """Strict JSON parse; raises OutputFormatError with offset, window and diagnostics."""
    try:
        return json.loads(candidate)
    except json.JSONDecodeError as e:
        raise _format_error(candidate, e, context) from e


def _library_repair(candidate: str, context: str = "") -> Optional[Any]:
    """json-repair's best guess, accepted only when it is an object or array."""
    if "{" not in candidate and "[" not in candidate:
        return None
    try:
        repaired = json_repair.repair_json(candidate, return_objects=True)
    except Exception as e:
        logger.debug("json_repair_library_failed", context=context or None, error=str(e))
        return None
    if isinstance(repaired, (dict, list)) and repaired:
        return repaired
    return None


def repair(raw: str, context: str = "") -> RepairResult:
    """Run REPAIR_STEPS in order, re-parsing after each; first success wins.

    When every step fails, json-repair gets one final attempt on the
    transformed text before OutputFormatError is raised.
    """
    candidate = raw or ""
    try:
        return RepairResult(value=json.loads(candidate), text=candidate)
    except json.JSONDecodeError as e:
        first_error: tuple[str, json.JSONDecodeError] = (candidate, e)

    applied: list[str] = []
    for name, transform in REPAIR_STEPS:
        transformed = transform(candidate)
        if transformed == candidate:
            continue
        candidate = transformed
        applied.append(name)
        try:
            value = json.loads(candidate)
        except json.JSONDecodeError as e:
            if name in _FRAMING_STEPS:
                first_error = (candidate, e)
            continue
        result = RepairResult(value=value, text=candidate, steps_applied=applied)
        if result.repaired:
            logger.info("json_repair_applied", context=context or None, steps=applied)
        return result

    # Last resort: json-repair handles truncation and quirks the steps above miss.
    salvaged = _library_repair(candidate, context)
    if salvaged is not None:
        applied.append(LIBRARY_STEP)
        logger.info("json_repair_applied", context=context or None, steps=applied)
        return RepairResult(value=salvaged, text=json.dumps(salvaged, ensure_ascii=False), steps_applied=applied)

    text, err = first_error
    error = _format_error(text, err, context)
    logger.warning(
        "json_repair_failed",
        context=context or None,
        offset=error.offset,
        line=error.line,
        column=error.column,
        steps=applied,
        window=error.window,
        diagnostics=error.diagnostics,
    )
    raise error


def sanitize(raw: str) -> str:
    """Best candidate JSON text for raw model output (unchanged when already valid)."""
    try:
        return repair(raw).text
    except OutputFormatError:
        candidate = raw or ""
        for _, transform in REPAIR_STEPS:
            candidate = transform(candidate)
        return candidate


def repair_json(raw: str, context: str = "") -> Any:
    """Sanitize then parse. Raises OutputFormatError when every heuristic fails."""
    try:
        result = repair(raw, context)
    except OutputFormatError:
        obs_metrics.record_output_repair("failed")
        raise
    obs_metrics.record_output_repair("repaired" if result.steps_applied else "clean")
    return result.value


def parse_model(raw: str, model_cls: type[M], context: str = "") -> M:
    """Repair, parse and validate against a Pydantic model."""
    value = repair_json(raw, context)
    try:
        return model_cls.model_validate(value)
    except ValidationError as e:
        raise OutputFormatError(
            f"schema validation failed for {model_cls.__name__}: {e.error_count()} error(s)",
            diagnostics={"errors": e.errors(include_url=False)},
            context=context,
        ) from e
