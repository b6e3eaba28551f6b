"""Subprocess-based engine runner for agent CLIs."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import threading
from dataclasses import dataclass, field
from pathlib import Path
from tempfile import TemporaryDirectory

from backlog_runner.orchestrator.backend.base import ProgressCallback
from backlog_runner.orchestrator.backend.output_parser import (
    check_for_errors,
    detect_step,
    format_command_error,
    parse_output,
)
from backlog_runner.orchestrator.errors import EngineRunError
from backlog_runner.orchestrator.models import AIResult, EngineOptions

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124

DEFAULT_COMMAND_TEMPLATES: dict[str, str] = {
    "claude": (
        "claude -p --output-format stream-json --verbose "
        "--dangerously-skip-permissions --model {model} {engine_args} {prompt}"
    ),
    "opencode": "opencode run --format json --model {model} {engine_args} {prompt}",
    "gemini": "gemini --output-format stream-json --yolo --model {model} {engine_args} -p {prompt}",
    "codex": "codex exec --full-auto --json --model {model} {engine_args} {prompt}",
}
DEFAULT_MODELS: dict[str, str] = {
    "claude": "claude-opus-4-20250514",
    "opencode": "anthropic/claude-opus-4-20250514",
    "gemini": "gemini-2.5-pro",
    "codex": "gpt-5-codex",
}
DEFAULT_ENGINE_ENV: dict[str, dict[str, str]] = {
    "opencode": {"OPENCODE_PERMISSION": '{"*":"allow"}'},
}
SUPPORTED_ENGINES = tuple(DEFAULT_COMMAND_TEMPLATES)


@dataclass(slots=True)
class _ProcessOutcome:
    exit_code: int
    timed_out: bool
    lines: list[str] = field(default_factory=list)


class CliAgentEngine:
    """Run an agent CLI rendered from a command template.

    The template supports ``{model}``, ``{prompt}``, ``{prompt_file}`` and
    ``{engine_args}`` placeholders; engine args are appended to the command
    when the template has no ``{engine_args}`` slot.
    """

    def __init__(
        self,
        *,
        name: str,
        command_template: str,
        default_model: str | None = None,
        timeout_seconds: int = 3_600,
        env: dict[str, str] | None = None,
    ) -> None:
        if not command_template.strip():
            raise ValueError(f"Empty command template for engine={name!r}")
        if "{prompt}" not in command_template and "{prompt_file}" not in command_template:
            raise ValueError("Engine command template must include {prompt} or {prompt_file}.")
        self.name = name
        self.command_template = command_template.strip()
        self.default_model = default_model
        self.timeout_seconds = timeout_seconds
        self.env = dict(env or {})

    def execute(self, prompt: str, work_dir: Path, options: EngineOptions) -> AIResult:
        return self.execute_streaming(prompt, work_dir, lambda _step, _line: None, options)

    def execute_streaming(
        self,
        prompt: str,
        work_dir: Path,
        on_progress: ProgressCallback,
        options: EngineOptions,
    ) -> AIResult:
        model = options.model_override or self.default_model or ""
        with TemporaryDirectory(prefix="backlog-runner-") as scratch:
            prompt_file = Path(scratch) / "task_prompt.txt"
            prompt_file.write_text(prompt, "utf-8")
            run_args = build_run_args(
                command_template=self.command_template,
                model=model,
                prompt=prompt,
                prompt_file=prompt_file,
                engine_args=options.engine_args,
            )
            env = os.environ.copy()
            env.update(self.env)
            env["BACKLOG_RUNNER_ENGINE"] = self.name
            env["BACKLOG_RUNNER_MODEL"] = model

            logger.debug("Running %s in %s (model=%s)", run_args[0], work_dir, model or "-")
            try:
                outcome = _run_streaming(
                    run_args=run_args,
                    cwd=work_dir,
                    env=env,
                    timeout_seconds=self.timeout_seconds,
                    on_line=lambda line: on_progress(detect_step(line) or "Working", line),
                )
            except FileNotFoundError as error:
                raise EngineRunError(
                    f"Engine command not found: {run_args[0]}. Is the {self.name} CLI installed?",
                    transient=False,
                ) from error
            except OSError as error:
                raise EngineRunError(
                    f"Engine failed to start: {error}",
                    transient=True,
                ) from error

        return _to_ai_result(outcome, timeout_seconds=self.timeout_seconds)


def create_engine(
    name: str,
    *,
    command_template: str | None = None,
    default_model: str | None = None,
    timeout_seconds: int = 3_600,
) -> CliAgentEngine:
    """Build an engine from a known preset, or from a custom command template."""

    normalized = name.strip().lower()
    template = command_template or DEFAULT_COMMAND_TEMPLATES.get(normalized)
    if template is None:
        raise ValueError(
            f"Unsupported engine: {name!r}. Use one of {SUPPORTED_ENGINES} "
            "or pass a command template.",
        )
    return CliAgentEngine(
        name=normalized,
        command_template=template,
        default_model=default_model or DEFAULT_MODELS.get(normalized),
        timeout_seconds=timeout_seconds,
        env=DEFAULT_ENGINE_ENV.get(normalized),
    )


def build_run_args(
    *,
    command_template: str,
    model: str,
    prompt: str,
    prompt_file: Path,
    engine_args: tuple[str, ...] = (),
) -> list[str]:
    quoted_args = " ".join(shlex.quote(arg) for arg in engine_args)
    try:
        rendered = command_template.format(
            model=shlex.quote(model),
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file)),
            engine_args=quoted_args,
        )
    except (KeyError, IndexError) as error:
        raise EngineRunError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise EngineRunError("Engine command template rendered empty command.", transient=False)
    if engine_args and "{engine_args}" not in command_template:
        argv.extend(engine_args)
    return argv


def _run_streaming(
    *,
    run_args: list[str],
    cwd: Path,
    env: dict[str, str],
    timeout_seconds: int,
    on_line,
) -> _ProcessOutcome:
    process = subprocess.Popen(  # noqa: S603
        run_args,
        cwd=cwd,
        env=env,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        encoding="utf-8",
        errors="replace",
    )
    timed_out = threading.Event()

    def _on_timeout() -> None:
        timed_out.set()
        _terminate_process(process)

    watchdog = threading.Timer(timeout_seconds, _on_timeout)
    watchdog.daemon = True
    watchdog.start()
    lines: list[str] = []
    try:
        assert process.stdout is not None  # noqa: S101
        for raw_line in process.stdout:
            line = raw_line.rstrip("\n")
            lines.append(line)
            on_line(line)
        returncode = process.wait()
    finally:
        watchdog.cancel()

    if timed_out.is_set():
        return _ProcessOutcome(exit_code=TIMEOUT_EXIT_CODE, timed_out=True, lines=lines)
    return _ProcessOutcome(exit_code=returncode, timed_out=False, lines=lines)


def _to_ai_result(outcome: _ProcessOutcome, *, timeout_seconds: int) -> AIResult:
    output = "\n".join(outcome.lines)
    if outcome.timed_out:
        return AIResult(
            success=False,
            error=f"Engine timed out after {timeout_seconds}s",
        )

    error = check_for_errors(output)
    if error is not None:
        return AIResult(success=False, error=error)

    parsed = parse_output(output)
    if outcome.exit_code != 0:
        return AIResult(
            success=False,
            response=parsed.response,
            input_tokens=parsed.input_tokens,
            output_tokens=parsed.output_tokens,
            cost=parsed.cost,
            error=parsed.error or format_command_error(outcome.exit_code, output),
        )
    if parsed.error is not None:
        return AIResult(
            success=False,
            response=parsed.response,
            input_tokens=parsed.input_tokens,
            output_tokens=parsed.output_tokens,
            cost=parsed.cost,
            error=parsed.error,
        )
    return AIResult(
        success=True,
        response=parsed.response,
        input_tokens=parsed.input_tokens,
        output_tokens=parsed.output_tokens,
        cost=parsed.cost,
    )


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
