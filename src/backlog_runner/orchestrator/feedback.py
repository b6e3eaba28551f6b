"""User chat and follow-up messages delivered to a running executor."""

from __future__ import annotations

import logging
import queue
import re
import sys
import threading
from typing import TextIO

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 32

_FEEDBACK_BLOCK = re.compile(r"```FEEDBACK\n(?P<body>[\s\S]*?)\n```")


class FeedbackChannel:
    """Bounded message queue owned by one executor.

    Producers (a stdin reader, a UI) call :meth:`submit`; the executor drains
    it between tasks without blocking, or waits with a timeout when it
    explicitly asks the user for follow-up input.
    """

    def __init__(self, maxsize: int = DEFAULT_QUEUE_SIZE) -> None:
        self._queue: queue.Queue[str] = queue.Queue(maxsize=maxsize)

    def submit(self, message: str) -> bool:
        text = message.strip()
        if not text:
            return False
        try:
            self._queue.put_nowait(text)
        except queue.Full:
            logger.warning("Feedback queue full; dropped message: %s", text[:80])
            return False
        return True

    def drain(self) -> list[str]:
        messages: list[str] = []
        while True:
            try:
                messages.append(self._queue.get_nowait())
            except queue.Empty:
                return messages

    def wait_for_message(self, timeout: float) -> str | None:
        try:
            return self._queue.get(timeout=max(0.0, timeout))
        except queue.Empty:
            return None


def extract_feedback(response: str) -> str | None:
    """Return the body of a fenced ``FEEDBACK`` block in a chat reply."""

    match = _FEEDBACK_BLOCK.search(response)
    if match is None:
        return None
    feedback = match.group("body").strip()
    return feedback or None


def start_stdin_reader(channel: FeedbackChannel, stream: TextIO | None = None) -> threading.Thread:
    """Forward each line typed on ``stream`` into ``channel`` from a daemon thread."""

    source = stream or sys.stdin

    def _pump() -> None:
        for line in source:
            channel.submit(line)

    thread = threading.Thread(target=_pump, daemon=True, name="feedback-stdin")
    thread.start()
    return thread
