"""Parse agent CLI output streams into a normalized result.

Agent CLIs print newline-delimited JSON events whose shape differs per tool.
Each line is mapped to one tagged event; unrecognized or non-JSON lines become
:class:`RawLine`. Token usage falls back to textual markers when no structured
usage event is present.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any

OUTPUT_PARSER_VERSION = "v1"
DEFAULT_RESPONSE = "Task completed"

_INPUT_TOKENS = re.compile(r"input[_ ]tokens?\s*[:=]\s*([\d,]+)", re.IGNORECASE)
_OUTPUT_TOKENS = re.compile(r"(?:output|completion)[_ ]tokens?\s*[:=]\s*([\d,]+)", re.IGNORECASE)
_JSON_PROMPT_TOKENS = re.compile(r'"(?:prompt|input)_tokens"\s*:\s*(\d+)', re.IGNORECASE)
_JSON_COMPLETION_TOKENS = re.compile(r'"(?:completion|output)_tokens"\s*:\s*(\d+)', re.IGNORECASE)

_ERROR_MARKERS: tuple[str, ...] = (
    "rate limit",
    "too many requests",
    "quota exceeded",
    "invalid api key",
    "unauthorized",
    "authentication failed",
    "not logged in",
    "overloaded",
)

_STEP_MARKERS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"git commit"), "Committing"),
    (re.compile(r"git add"), "Staging"),
    (re.compile(r"progress\.txt"), "Logging progress"),
    (re.compile(r"lint|eslint|biome|ruff"), "Linting"),
    (re.compile(r"vitest|jest|bun test|npm test|pytest"), "Running tests"),
    (re.compile(r"\.test\.|\.spec\.|__tests__|test_\w+\.py"), "Writing tests"),
    (re.compile(r'"tool"\s*:\s*"(?:Write|Edit)"|"name"\s*:\s*"(?:Write|Edit)"'), "Implementing"),
    (re.compile(r'"tool"\s*:\s*"(?:Read|Glob|Grep)"|"name"\s*:\s*"(?:Read|Glob|Grep)"'), "Reading code"),
)


@dataclass(frozen=True, slots=True)
class ResultEvent:
    """Final ``{"type": "result"}`` event of stream-json CLIs."""

    text: str
    input_tokens: int
    output_tokens: int
    cost: str | None
    is_error: bool


@dataclass(frozen=True, slots=True)
class StepFinishEvent:
    """OpenCode ``step_finish`` event carrying usage."""

    input_tokens: int
    output_tokens: int
    cost: str | None


@dataclass(frozen=True, slots=True)
class TextEvent:
    text: str


@dataclass(frozen=True, slots=True)
class ErrorEvent:
    message: str


@dataclass(frozen=True, slots=True)
class RawLine:
    line: str


OutputEvent = ResultEvent | StepFinishEvent | TextEvent | ErrorEvent | RawLine


@dataclass(slots=True)
class ParsedOutput:
    """Aggregated view of one agent run."""

    response: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    cost: str | None = None
    error: str | None = None
    events: list[OutputEvent] = field(default_factory=list)


def parse_line(line: str) -> OutputEvent:
    """Map one output line to a tagged event."""

    stripped = line.strip()
    if not stripped.startswith("{"):
        return RawLine(line=line)
    try:
        payload = json.loads(stripped)
    except json.JSONDecodeError:
        return RawLine(line=line)
    if not isinstance(payload, dict):
        return RawLine(line=line)

    event_type = payload.get("type")
    if event_type == "result":
        usage = _as_dict(payload.get("usage"))
        return ResultEvent(
            text=_as_str(payload.get("result")),
            input_tokens=_as_int(usage.get("input_tokens")),
            output_tokens=_as_int(usage.get("output_tokens")),
            cost=_cost(payload.get("total_cost_usd", payload.get("cost_usd"))),
            is_error=bool(payload.get("is_error")) or payload.get("subtype") == "error",
        )
    if event_type == "step_finish":
        part = _as_dict(payload.get("part"))
        tokens = _as_dict(part.get("tokens"))
        return StepFinishEvent(
            input_tokens=_as_int(tokens.get("input")),
            output_tokens=_as_int(tokens.get("output")),
            cost=_cost(part.get("cost")),
        )
    if event_type == "text":
        part = _as_dict(payload.get("part"))
        text = part.get("text", payload.get("text"))
        if isinstance(text, str) and text:
            return TextEvent(text=text)
    if event_type == "error":
        error = payload.get("error")
        if isinstance(error, dict):
            error = error.get("message") or error.get("data") or json.dumps(error)
        message = error or payload.get("message") or "Unknown engine error"
        return ErrorEvent(message=str(message))
    return RawLine(line=line)


def parse_output(output: str) -> ParsedOutput:
    """Aggregate all events of one run into response text, usage and error."""

    parsed = ParsedOutput()
    text_parts: list[str] = []
    result_text: str | None = None
    saw_usage = False

    for line in output.splitlines():
        if not line.strip():
            continue
        event = parse_line(line)
        parsed.events.append(event)
        if isinstance(event, ResultEvent):
            result_text = event.text
            parsed.input_tokens = event.input_tokens
            parsed.output_tokens = event.output_tokens
            parsed.cost = event.cost or parsed.cost
            saw_usage = True
            if event.is_error:
                parsed.error = event.text or "Engine reported an error result"
        elif isinstance(event, StepFinishEvent):
            parsed.input_tokens = event.input_tokens
            parsed.output_tokens = event.output_tokens
            parsed.cost = event.cost or parsed.cost
            saw_usage = True
        elif isinstance(event, TextEvent):
            text_parts.append(event.text)
        elif isinstance(event, ErrorEvent):
            parsed.error = event.message

    if result_text is not None and result_text:
        parsed.response = result_text
    else:
        parsed.response = "".join(text_parts) or _raw_text(parsed.events) or DEFAULT_RESPONSE

    if not saw_usage:
        parsed.input_tokens, parsed.output_tokens = extract_textual_usage(output)
    return parsed


def check_for_errors(output: str) -> str | None:
    """Return the first error reported by the engine, if any."""

    for line in output.splitlines():
        event = parse_line(line)
        if isinstance(event, ErrorEvent):
            return event.message
        if isinstance(event, RawLine):
            lowered = event.line.lower()
            if lowered.lstrip().startswith("error") and any(
                marker in lowered for marker in _ERROR_MARKERS
            ):
                return event.line.strip()
    return None


def format_command_error(exit_code: int, output: str, *, tail_lines: int = 12) -> str:
    lines = [line for line in output.strip().splitlines() if line.strip()]
    tail = "\n".join(lines[-tail_lines:])
    if not tail:
        return f"Command failed with exit code {exit_code}"
    return f"Command failed with exit code {exit_code}: {tail}"


def detect_step(line: str) -> str | None:
    """Best-effort human-readable step name for one output line."""

    for pattern, step in _STEP_MARKERS:
        if pattern.search(line):
            return step
    return None


def extract_textual_usage(output: str) -> tuple[int, int]:
    prompt = _extract_int(_JSON_PROMPT_TOKENS, output)
    completion = _extract_int(_JSON_COMPLETION_TOKENS, output)
    if prompt is None:
        prompt = _extract_int(_INPUT_TOKENS, output)
    if completion is None:
        completion = _extract_int(_OUTPUT_TOKENS, output)
    return prompt or 0, completion or 0


def _raw_text(events: list[OutputEvent]) -> str:
    return "\n".join(
        event.line.strip() for event in events if isinstance(event, RawLine) and event.line.strip()
    )


def _extract_int(pattern: re.Pattern[str], text: str) -> int | None:
    match = pattern.search(text)
    if match is None:
        return None
    raw = match.group(1).replace(",", "").strip()
    if not raw.isdigit():
        return None
    return int(raw)


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_str(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return max(0, value)
    if isinstance(value, float):
        return max(0, int(value))
    return 0


def _cost(value: Any) -> str | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return str(value)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None
