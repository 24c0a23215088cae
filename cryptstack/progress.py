"""Progress reporting for long running backend operations (fsck)."""

from __future__ import annotations

import sys
from dataclasses import dataclass
from typing import Optional, TextIO


class ProgStatus:
    STARTED = "started"
    PROGRESS = "progress"
    FINISHED = "finished"
    FAILED = "failed"


NOT_REPORTED = -1


@dataclass
class ProgressState:
    last_percent: int = NOT_REPORTED


class ProgressReporter:
    """Callback handed to the backend, prints each whole percent only once.

    The backend rounds the tool's progress to whole percent before calling
    us, so the same value usually arrives several times in a row (42, 42, 42,
    43, ...). Only the first of a run is printed. Messages always print.
    """

    def __init__(self, out: Optional[TextIO] = None):
        self.out = out
        self.state = ProgressState()

    def _write(self, text: str) -> None:
        out = self.out or sys.stdout
        out.write(text)
        out.flush()

    def __call__(self, task_id: int, status: str, completion: int, msg: Optional[str] = None) -> None:
        if msg is None and completion != self.state.last_percent:
            self._write(f"Progress: {completion}%\n")
            self.state.last_percent = completion

        if msg is not None:
            self._write(f"\n{msg}\n")
