
"""Subprocess wrapper and JSONL trace log."""

from __future__ import annotations

import datetime as _dt
import json
import os
import subprocess
import threading
import time
from typing import Callable, Sequence

from .paths import logs_dir


LOG_DIRS: list[str] | None = None
LOG_PATH: str | None = None
LOG_NAME = "cryptstack.jsonl"


def _log_dirs() -> list[str]:
    if LOG_DIRS:
        return list(LOG_DIRS)
    return [
        logs_dir(),
        "/var/log/cryptstack",
        "/tmp/cryptstack-logs",
    ]


def _ensure_logger() -> str | None:
    global LOG_PATH
    if LOG_PATH:
        return LOG_PATH
    for d in _log_dirs():
        d_expanded = os.path.expanduser(d)
        try:
            os.makedirs(d_expanded, exist_ok=True)
            LOG_PATH = os.path.join(d_expanded, LOG_NAME)
            return LOG_PATH
        except OSError:
            continue
    LOG_PATH = None
    return None


def resolve_log_path() -> str | None:
    """Return the active log path, creating directories when possible."""

    return _ensure_logger()


class Result:
    def __init__(self, rc: int, out: str, err: str, duration: float):
        self.rc, self.out, self.err, self.duration = rc, out, err, duration


LEVELS = {"TRACE": 10, "INFO": 20, "WARN": 30, "ERROR": 40, "NONE": 100}
LOG_LEVEL = os.environ.get("CRYPTSTACK_LOG_LEVEL", "INFO").upper()


def append_jsonl(path: str, obj: dict):
    try:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(obj, ensure_ascii=False) + "\n")
    except OSError:
        pass


def log(level: str, event: str, **fields):
    lvl = LEVELS.get(level.upper(), 100)
    cur = LEVELS.get(LOG_LEVEL, 100)
    if lvl < cur:
        return
    ts = _dt.datetime.now(_dt.timezone.utc).isoformat()
    rec = {"ts": ts, "level": level.upper(), "event": event}
    rec.update(fields)
    path = _ensure_logger()
    if path:
        append_jsonl(path, rec)


def trace(event: str, **fields):
    log("TRACE", event, **fields)


def _env(env: dict | None) -> dict:
    env2 = dict(env or os.environ)
    # tool output gets parsed, keep it untranslated
    env2["LC_ALL"] = "C"
    return env2


def run(
    cmd: Sequence[str],
    check: bool = True,
    timeout: float | None = None,
    env: dict | None = None,
    input: str | None = None,
) -> Result:
    """Run ``cmd`` once and capture its output.

    Nothing is retried: a ``TimeoutExpired`` propagates to the caller.
    """

    trace("exec.start", cmd=list(cmd))
    started = time.time()
    proc = subprocess.run(
        list(cmd),
        capture_output=True,
        text=True,
        encoding="utf-8",
        errors="replace",
        timeout=timeout,
        env=_env(env),
        input=input,
    )
    dur = time.time() - started
    log("INFO", "exec.done", cmd=list(cmd), rc=proc.returncode, dur=dur,
        out=proc.stdout, err=proc.stderr)
    if check and proc.returncode != 0:
        raise subprocess.CalledProcessError(proc.returncode, list(cmd), proc.stdout, proc.stderr)
    return Result(proc.returncode, proc.stdout, proc.stderr, dur)


def stream(cmd: Sequence[str], on_line: Callable[[str], None], env: dict | None = None) -> Result:
    """Run ``cmd`` and feed every stdout line to ``on_line`` as it arrives."""

    trace("exec.start", cmd=list(cmd), streaming=True)
    started = time.time()
    err_chunks: list[str] = []
    with subprocess.Popen(
        list(cmd),
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        encoding="utf-8",
        errors="replace",
        env=_env(env),
    ) as proc:
        # stderr is read on its own thread, the child must never block on a full pipe
        drain = threading.Thread(target=lambda: err_chunks.append(proc.stderr.read()), daemon=True)
        drain.start()
        for line in proc.stdout:
            on_line(line.rstrip("\n"))
        rc = proc.wait()
        drain.join()
    err = "".join(err_chunks)
    dur = time.time() - started
    log("INFO", "exec.done", cmd=list(cmd), rc=rc, dur=dur, err=err)
    return Result(rc, "", err, dur)


def udev_settle():
    try:
        subprocess.run(["udevadm", "settle"], check=False)
    except OSError:
        pass
