"""CLI entrypoints: ``cryptstack`` (create / cleanup) and ``cryptstack-check``."""

from __future__ import annotations

import argparse
import dataclasses
import json
import os
import sys
import time
from typing import Any, Dict, Optional

from . import safety
from .backend import CommandBackend, ensure_init
from .errors import StorageError
from .executil import append_jsonl, resolve_log_path, trace
from .model import Flags, StackNames
from .pipeline import cleanup_storage, create_storage, planned_steps
from .progress import ProgressReporter

RESULT_CODES: Dict[str, int] = {
    "OK": 0,
    "ABORTED": 0,
    "PLAN_OK": 0,
    "CHECK_OK": 0,
    "FAIL_ARGS": 2,
    "FAIL_NOT_ROOT": 3,
    "FAIL_BACKEND_INIT": 4,
    "FAIL_CREATE": 5,
    "FAIL_CLEANUP": 6,
    "FAIL_CHECK": 7,
    "FAIL_PASSPHRASE": 2,
    "FAIL_UNHANDLED": 12,
}

REQUIRED_PLUGINS = ("crypto", "fs", "lvm", "swap")
CHECK_PLUGINS = ("fsck",)


def _emit_result(kind: str, extra: Optional[Dict[str, Any]] = None, message: Optional[str] = None) -> None:
    """Print ``message``, record the outcome in the JSONL log and exit."""

    if message:
        print(message)
    payload: Dict[str, Any] = {"result": kind, "ts": int(time.time())}
    if extra:
        payload.update(extra)
    log_path = resolve_log_path()
    if log_path:
        append_jsonl(log_path, payload)
    raise SystemExit(RESULT_CODES.get(kind, 1))


def _storage_failure(kind: str, what: str, exc: StorageError, extra: Dict[str, Any]) -> None:
    extra = dict(extra, error=exc.message, domain=exc.domain, code=exc.code)
    _emit_result(kind, extra, f"{what}: {exc.describe()}")


def _require_root() -> None:
    if os.geteuid() != 0:
        _emit_result("FAIL_NOT_ROOT", message="Requires to be run as root!")


def _init_backend(plugins) -> CommandBackend:
    try:
        ensure_init(plugins)
    except StorageError as exc:
        _storage_failure("FAIL_BACKEND_INIT", "Error initializing storage backend", exc, {"plugins": list(plugins)})
    return CommandBackend()


def _normalize_passphrase_path(path: Optional[str]) -> Optional[str]:
    """Return an absolute filesystem path for ``--passphrase-file`` inputs."""

    if not path:
        return None
    expanded = os.path.expanduser(path)
    return os.path.abspath(expanded)


def _read_passphrase(path: str) -> str:
    normalized = _normalize_passphrase_path(path)
    try:
        with open(normalized, "r", encoding="utf-8") as fh:
            first = fh.readline().rstrip("\r\n")
    except OSError as exc:
        _emit_result(
            "FAIL_PASSPHRASE",
            extra={"path": normalized},
            message=f"Cannot read passphrase file {normalized}: {exc.strerror or exc}",
        )
    if not first:
        _emit_result(
            "FAIL_PASSPHRASE",
            extra={"path": normalized},
            message=f"Passphrase file {normalized} is empty.",
        )
    return first


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cryptstack",
        description="Create (or remove) LVM + LUKS + XFS on top of two disks.",
    )
    parser.add_argument("disks", nargs="*", metavar="DEVICE")
    parser.add_argument("--cleanup", action="store_true",
                        help="Cleanup mode -- remove previously created devices.")
    parser.add_argument("--yes", dest="assume_yes", action="store_true",
                        help="Do not ask for confirmation.")
    parser.add_argument("--plan", action="store_true",
                        help="Print the steps that would run and exit.")
    parser.add_argument("--passphrase-file", default=None)
    return parser


def _main_impl(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    flags = Flags(cleanup=args.cleanup, assume_yes=args.assume_yes, plan=args.plan)
    disks = list(args.disks)
    trace("cli.args", disks=disks, cleanup=flags.cleanup, assume_yes=flags.assume_yes, plan=flags.plan)

    if not disks:
        _emit_result("FAIL_ARGS", message="Expected exactly 2 devices, got none.")
    if len(disks) != 2:
        _emit_result("FAIL_ARGS", extra={"disks": disks},
                     message=f"Expected exactly 2 devices, got {len(disks)}.")

    names = StackNames()
    if args.passphrase_file:
        names = dataclasses.replace(names, passphrase=_read_passphrase(args.passphrase_file))

    if flags.plan:
        steps = planned_steps(disks, names, cleanup=flags.cleanup)
        print(json.dumps({"cleanup": flags.cleanup, "disks": disks, "steps": steps}, indent=2))
        _emit_result("PLAN_OK", extra={"disks": disks, "steps": steps})

    _require_root()
    backend = _init_backend(REQUIRED_PLUGINS)

    if flags.cleanup:
        question = safety.cleanup_prompt(disks)
    else:
        question = safety.create_prompt(disks)
    if not flags.assume_yes and not safety.confirm(question):
        _emit_result("ABORTED", extra={"disks": disks, "cleanup": flags.cleanup})

    extra = {"disks": disks, "cleanup": flags.cleanup}
    if flags.cleanup:
        try:
            cleanup_storage(backend, disks, names)
        except StorageError as exc:
            _storage_failure("FAIL_CLEANUP", "Error when cleaning up created devices", exc, extra)
    else:
        try:
            create_storage(backend, disks, names)
        except StorageError as exc:
            _storage_failure("FAIL_CREATE", "Error when creating devices", exc, extra)

    _emit_result("OK", extra=extra)
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    try:
        return _main_impl(argv)
    except SystemExit:
        raise
    except Exception as exc:  # noqa: BLE001
        _emit_result("FAIL_UNHANDLED", extra={"error": str(exc)}, message=f"Unhandled error: {exc}")
    return 1


def _check_usage(prog: str) -> str:
    return (
        f"Usage: {prog} device\n"
        "  device   Path to ext4 device/image to fsck."
    )


def _check_impl(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="cryptstack-check", add_help=True)
    parser.add_argument("devices", nargs="*", metavar="device")
    args = parser.parse_args(argv)

    if not args.devices:
        print("Expected a device/image path.", file=sys.stderr)
        print(_check_usage(parser.prog), file=sys.stderr)
        _emit_result("FAIL_ARGS")
    if len(args.devices) > 1:
        print("Too many arguments.", file=sys.stderr)
        print(_check_usage(parser.prog), file=sys.stderr)
        _emit_result("FAIL_ARGS", extra={"devices": args.devices})
    device = args.devices[0]

    _require_root()
    backend = _init_backend(CHECK_PLUGINS)

    reporter = ProgressReporter()
    try:
        backend.filesystem_check(device, reporter)
    except StorageError as exc:
        print()
        _storage_failure("FAIL_CHECK", "Error when checking filesystem", exc, {"device": device})
    print()
    _emit_result("CHECK_OK", extra={"device": device})
    return 0


def check_main(argv: Optional[list[str]] = None) -> int:
    try:
        return _check_impl(argv)
    except SystemExit:
        raise
    except Exception as exc:  # noqa: BLE001
        print()
        _emit_result("FAIL_UNHANDLED", extra={"error": str(exc)}, message=f"Unhandled error: {exc}")
    return 1


if __name__ == "__main__":
    sys.exit(main())
