"""Confirmation gate in front of destructive operations."""

from __future__ import annotations

import sys
from typing import Callable, Optional, Sequence, TextIO

from .executil import trace


def _quoted(disks: Sequence[str]) -> str:
    return " and ".join(f"'{d}'" for d in disks)


def create_prompt(disks: Sequence[str]) -> str:
    return f"Going to wipe all signatures from {_quoted(disks)}. Is this ok? [N/y]: "


def cleanup_prompt(disks: Sequence[str]) -> str:
    return f"Going to remove all devices on {_quoted(disks)}. Is this ok? [N/y]: "


def confirm(
        question: str,
        reader: Optional[Callable[[str], str]] = None,
        out: Optional[TextIO] = None,
) -> bool:
    """
    Ask ``question`` and return True only for an answer starting with y/Y.
    Anything else (including EOF) prints ``Aborted`` and returns False; the
    caller treats that as a successful no-op.
    """
    try:
        answer = (reader or input)(question)
    except EOFError:
        answer = ""
    accepted = answer[:1] in ("y", "Y")
    trace("safety.confirm", question=question.strip(), accepted=accepted)
    if not accepted:
        print("Aborted", file=out or sys.stdout)
    return accepted
