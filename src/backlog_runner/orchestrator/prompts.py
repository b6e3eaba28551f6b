"""Prompt templates sent to the engine."""

from __future__ import annotations

from backlog_runner.orchestrator.models import Task

RECENT_OUTPUT_LIMIT = 2_000

_RULES = """\
## Rules (you MUST follow these)
- Keep changes focused and minimal. Do not refactor unrelated code.
"""

_BOUNDARIES = """\
## Boundaries
Do NOT modify these files/directories:
- {prd_file}
- .backlog-runner/
"""

TASK_PROMPT = """\
{rules}
{boundaries}
## Task
{task}
{feedback}
## Instructions
{instructions}
"""

PARALLEL_TASK_PROMPT = """\
You are working on a specific task. Focus ONLY on this task:

TASK: {task}
{feedback}
{rules}
{boundaries}
Do NOT mark tasks complete - that will be handled separately.

## Instructions
{instructions}
"""

FOLLOW_UP_PROMPT = """\
## User Message

The user has sent the following message after the previous task completed.

### User Message:
{message}

### Previous Task:
{title}

Please address the user's message.
"""

CHAT_PROMPT = """\
## User Chat Message

You are an autonomous coding agent working through a backlog.

CURRENT STATUS: You are currently BUSY executing a batch of tasks in the background.

### Current Task Context:
{task_context}{output_context}

The user has sent a chat message while you are working on this.

### User Message:
{message}

### Instructions:
1. If the user is asking a QUESTION (e.g. "what are you doing?"), answer it concisely \
using the Task Context and Recent Output.
2. If the user is giving an INSTRUCTION to change the code or task, capture it for the main agent.
   - Output the instruction in a block: ```FEEDBACK
Instruction here
```
   - Tell the user: "Noted. I will apply this correction after the current step."
3. Do NOT say "I am waiting for your command".
4. Do NOT execute shell commands.
"""


def build_task_prompt(
    task: Task,
    *,
    prd_file: str | None = None,
    skip_tests: bool = False,
    auto_commit: bool = True,
    parallel: bool = False,
    feedback: list[str] | None = None,
) -> str:
    template = PARALLEL_TASK_PROMPT if parallel else TASK_PROMPT
    return template.format(
        task=task.description,
        rules=_RULES,
        boundaries=_BOUNDARIES.format(prd_file=prd_file or "the backlog file"),
        instructions=_instructions(skip_tests=skip_tests, auto_commit=auto_commit),
        feedback=_feedback_section(feedback),
    )


def build_follow_up_prompt(message: str, task: Task) -> str:
    return FOLLOW_UP_PROMPT.format(message=message, title=task.title)


def build_chat_prompt(message: str, *, task: Task | None, recent_output: str | None = None) -> str:
    """Prompt for a chat message that arrives while tasks are running."""

    task_context = "Idle (No active task)"
    if task is not None:
        task_context = f"Active Task: {task.title}\nDescription: {task.body or 'N/A'}"
    output_context = ""
    if recent_output:
        truncated = recent_output
        if len(truncated) > RECENT_OUTPUT_LIMIT:
            truncated = "..." + truncated[-RECENT_OUTPUT_LIMIT:]
        output_context = f"\n### Recent Output:\n```\n{truncated}\n```"
    return CHAT_PROMPT.format(
        task_context=task_context,
        output_context=output_context,
        message=message,
    )


def _instructions(*, skip_tests: bool, auto_commit: bool) -> str:
    steps = ["Implement the task described above"]
    if not skip_tests:
        steps.append("Write tests for the change")
        steps.append("Run tests and ensure they pass before proceeding")
    steps.append("Ensure the code works correctly")
    if auto_commit:
        steps.append(
            "Stage and commit your changes with a descriptive message "
            "using conventional commits (feat:, fix:, test:, etc.)",
        )
    return "\n".join(f"{index}. {step}" for index, step in enumerate(steps, start=1))


def _feedback_section(feedback: list[str] | None) -> str:
    if not feedback:
        return ""
    lines = "\n".join(f"- {item}" for item in feedback)
    return f"\n## User Feedback (apply while doing this task)\n{lines}\n"
