from __future__ import annotations

import json

import allure

from backlog_runner.orchestrator.backend.output_parser import (
    DEFAULT_RESPONSE,
    ErrorEvent,
    RawLine,
    ResultEvent,
    check_for_errors,
    detect_step,
    format_command_error,
    parse_line,
    parse_output,
)

pytestmark = [
    allure.epic("Engines"),
    allure.feature("Output Parsing"),
]


def test_stream_json_result_event_carries_response_usage_and_cost() -> None:
    output = "\n".join(
        [
            json.dumps({"type": "system", "subtype": "init"}),
            json.dumps(
                {
                    "type": "result",
                    "result": "Implemented the form",
                    "usage": {"input_tokens": 1200, "output_tokens": 340},
                    "total_cost_usd": 0.42,
                },
            ),
        ],
    )

    parsed = parse_output(output)

    assert parsed.response == "Implemented the form"
    assert (parsed.input_tokens, parsed.output_tokens) == (1200, 340)
    assert parsed.cost == "0.42"
    assert parsed.error is None
    assert isinstance(parsed.events[-1], ResultEvent)


def test_opencode_step_finish_and_text_events() -> None:
    output = "\n".join(
        [
            json.dumps({"type": "text", "part": {"text": "Hello "}}),
            json.dumps({"type": "text", "part": {"text": "world"}}),
            json.dumps(
                {"type": "step_finish", "part": {"tokens": {"input": 10, "output": 5}, "cost": 0.001}},
            ),
        ],
    )

    parsed = parse_output(output)

    assert parsed.response == "Hello world"
    assert (parsed.input_tokens, parsed.output_tokens) == (10, 5)
    assert parsed.cost == "0.001"


def test_error_events_are_surfaced() -> None:
    line = json.dumps({"type": "error", "error": {"message": "Rate limit reached"}})

    assert parse_line(line) == ErrorEvent(message="Rate limit reached")
    assert check_for_errors(f"starting\n{line}") == "Rate limit reached"
    assert parse_output(line).error == "Rate limit reached"


def test_plain_text_output_uses_textual_usage_fallback() -> None:
    parsed = parse_output("All done.\ninput_tokens: 1,500\noutput tokens = 200\n")

    assert parsed.input_tokens == 1500
    assert parsed.output_tokens == 200
    assert "All done." in parsed.response


def test_empty_output_uses_default_response() -> None:
    assert parse_output("").response == DEFAULT_RESPONSE


def test_raw_error_lines_need_a_known_marker() -> None:
    assert check_for_errors("Error: not logged in") == "Error: not logged in"
    assert check_for_errors("Error: assertion failed in test") is None
    assert isinstance(parse_line("{not json"), RawLine)


def test_detect_step_and_command_error_tail() -> None:
    assert detect_step("$ pytest -q") == "Running tests"
    assert detect_step('{"tool": "Edit", "path": "a.py"}') == "Implementing"
    assert detect_step("thinking") is None

    message = format_command_error(2, "\n".join(f"line {index}" for index in range(20)), tail_lines=2)
    assert message == "Command failed with exit code 2: line 18\nline 19"
    assert format_command_error(1, "") == "Command failed with exit code 1"
