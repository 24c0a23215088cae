"""Storage backend: wipefs, LVM, cryptsetup, mkswap, mkfs.xfs and e2fsck."""

from __future__ import annotations

import abc
import itertools
import os
import re
import shutil
import subprocess
from typing import Callable, Iterable, Optional, Sequence

from .errors import ENTROPY_ERROR, BackendInitError, FilesystemCheckError, NoFilesystemError, StorageError
from .executil import run, stream, trace, udev_settle
from .model import VGInfo
from .progress import ProgStatus

ProgressCallback = Callable[[int, str, int, Optional[str]], None]
ExtraArgs = Sequence[tuple]

PLUGIN_TOOLS = {
    "crypto": ("cryptsetup",),
    "fs": ("wipefs", "blkid", "mkfs.xfs"),
    "fsck": ("e2fsck",),
    "lvm": ("pvcreate", "pvremove", "vgcreate", "vgremove", "vgs", "lvcreate", "lvremove"),
    "swap": ("mkswap",),
}

ENTROPY_AVAIL = "/proc/sys/kernel/random/entropy_avail"

# e2fsck runs five passes, progress lines are "<pass> <current> <max> <device>"
E2FSCK_PASSES = 5
_E2FSCK_PROGRESS_RE = re.compile(r"^\s*(\d+)\s+(\d+)\s+(\d+)\s+\S+\s*$")

_task_ids = itertools.count(1)


def ensure_init(plugins: Iterable[str]) -> None:
    """Fail unless every tool needed by ``plugins`` is available."""

    missing = []
    for plugin in plugins:
        if plugin not in PLUGIN_TOOLS:
            raise BackendInitError(f"Unknown plugin '{plugin}'")
        for tool in PLUGIN_TOOLS[plugin]:
            if shutil.which(tool) is None:
                missing.append(tool)
    trace("backend.init", plugins=list(plugins), missing=missing)
    if missing:
        raise BackendInitError("Missing required tools: " + ", ".join(missing))


def e2fsck_completion(line: str) -> Optional[int]:
    """Whole percent for one ``e2fsck -C`` progress line, None for other output."""

    match = _E2FSCK_PROGRESS_RE.match(line)
    if not match:
        return None
    stage, val, total = (int(g) for g in match.groups())
    if total == 0 or not 1 <= stage <= E2FSCK_PASSES:
        return None
    return (stage - 1) * 100 // E2FSCK_PASSES + (val * 100 // total) // E2FSCK_PASSES


def _failure(exc: subprocess.CalledProcessError, domain: str) -> StorageError:
    detail = (exc.stderr or exc.stdout or "").strip()
    cmd = " ".join(exc.cmd) if isinstance(exc.cmd, (list, tuple)) else str(exc.cmd)
    message = f"Process reported exit code {exc.returncode}: {cmd}"
    if detail:
        message += f": {detail}"
    return StorageError(message, domain=domain, code=exc.returncode)


class StorageBackend(abc.ABC):
    @abc.abstractmethod
    def wipe_signatures(self, disk: str, all_signatures: bool = True) -> None: ...

    @abc.abstractmethod
    def pv_create(self, disk: str, data_alignment: int = 0, metadata_size: int = 0) -> None: ...

    @abc.abstractmethod
    def pv_remove(self, disk: str) -> None: ...

    @abc.abstractmethod
    def vg_create(self, name: str, disks: Sequence[str], extent_size: int = 0) -> None: ...

    @abc.abstractmethod
    def vg_info(self, name: str) -> VGInfo: ...

    @abc.abstractmethod
    def vg_remove(self, name: str) -> None: ...

    @abc.abstractmethod
    def lv_create(self, vg: str, name: str, size: int, layout: str = "linear") -> None: ...

    @abc.abstractmethod
    def lv_remove(self, vg: str, name: str, force: bool = False) -> None: ...

    @abc.abstractmethod
    def swap_format(self, device: str, label: Optional[str] = None) -> None: ...

    @abc.abstractmethod
    def encrypted_format(
        self,
        device: str,
        passphrase: Optional[str],
        cipher: Optional[str] = None,
        key_bits: int = 0,
        key_file: Optional[str] = None,
        min_entropy: int = 0,
    ) -> None: ...

    @abc.abstractmethod
    def encrypted_open(
        self,
        device: str,
        name: str,
        passphrase: Optional[str],
        key_file: Optional[str] = None,
        read_only: bool = False,
    ) -> None: ...

    @abc.abstractmethod
    def encrypted_close(self, mapped: str) -> None: ...

    @abc.abstractmethod
    def filesystem_create(self, device: str, extra_args: ExtraArgs = ()) -> None: ...

    @abc.abstractmethod
    def filesystem_check(self, device: str, progress: Optional[ProgressCallback] = None) -> None: ...


class CommandBackend(StorageBackend):
    """Backend driving the system command line tools, one blocking call per step."""

    def _run(self, cmd: list[str], domain: str, input: str | None = None, check: bool = True):
        try:
            return run(cmd, check=check, input=input)
        except subprocess.CalledProcessError as exc:
            raise _failure(exc, domain) from exc
        except subprocess.SubprocessError as exc:
            raise StorageError(f"Failed to run {cmd[0]}: {exc}", domain=domain) from exc
        except OSError as exc:
            raise StorageError(f"Failed to run {cmd[0]}: {exc}", domain=domain, code=exc.errno or 0) from exc

    # signatures

    def wipe_signatures(self, disk, all_signatures=True):
        # blkid -p exits 2 when no signature is found, and also when it cannot open the device
        cmd = ["blkid", "-p", disk]
        found = self._run(cmd, "fs", check=False)
        if found.rc == 2:
            if not os.access(disk, os.R_OK):
                raise StorageError(f"Cannot read the device '{disk}'", domain="fs", code=found.rc)
            raise NoFilesystemError(f"No signature detected on the device '{disk}'.")
        if found.rc != 0:
            raise _failure(subprocess.CalledProcessError(found.rc, cmd, found.out, found.err), "fs")
        cmd = ["wipefs", "-a", disk] if all_signatures else ["wipefs", "-o", "0", disk]
        self._run(cmd, "fs")
        udev_settle()

    # lvm

    def pv_create(self, disk, data_alignment=0, metadata_size=0):
        cmd = ["pvcreate", "-y"]
        if data_alignment:
            cmd += ["--dataalignment", f"{data_alignment}b"]
        if metadata_size:
            cmd += ["--metadatasize", f"{metadata_size}b"]
        cmd.append(disk)
        self._run(cmd, "lvm")

    def pv_remove(self, disk):
        self._run(["pvremove", "-y", disk], "lvm")

    def vg_create(self, name, disks, extent_size=0):
        cmd = ["vgcreate"]
        if extent_size:
            cmd += ["-s", f"{extent_size}b"]
        cmd += [name, *disks]
        self._run(cmd, "lvm")

    def vg_info(self, name):
        fields = "vg_name,vg_uuid,vg_size,vg_free,vg_extent_size,vg_extent_count,vg_free_count,pv_count"
        res = self._run(
            ["vgs", "--noheadings", "--nosuffix", "--units", "b", "--separator", ";", "-o", fields, name],
            "lvm",
        )
        line = next((ln.strip() for ln in (res.out or "").splitlines() if ln.strip()), "")
        parts = line.split(";")
        if len(parts) != 8:
            raise StorageError(f"Failed to parse information about the VG '{name}'", domain="lvm")
        try:
            return VGInfo(
                name=parts[0],
                uuid=parts[1],
                size=int(parts[2]),
                free=int(parts[3]),
                extent_size=int(parts[4]),
                extent_count=int(parts[5]),
                free_count=int(parts[6]),
                pv_count=int(parts[7]),
            )
        except ValueError as exc:
            raise StorageError(f"Failed to parse information about the VG '{name}'", domain="lvm") from exc

    def vg_remove(self, name):
        self._run(["vgremove", "-y", name], "lvm")

    def lv_create(self, vg, name, size, layout="linear"):
        cmd = ["lvcreate", "-n", name, "-L", f"{size}b", "-y", "--type", layout, vg]
        self._run(cmd, "lvm")
        udev_settle()

    def lv_remove(self, vg, name, force=False):
        cmd = ["lvremove", "-y"]
        if force:
            cmd.append("-f")
        cmd.append(f"{vg}/{name}")
        self._run(cmd, "lvm")

    # swap

    def swap_format(self, device, label=None):
        cmd = ["mkswap"]
        if label:
            cmd += ["-L", label]
        cmd.append(device)
        self._run(cmd, "swap")

    # crypto

    def _key_args(self, passphrase, key_file) -> tuple[list[str], Optional[str]]:
        if key_file:
            return ["--key-file", key_file], None
        if passphrase is None:
            raise StorageError("No passphrase nor key file specified, cannot proceed.", domain="crypto")
        # the passphrase goes through stdin and never shows up in argv
        return ["--key-file", "-"], passphrase

    def encrypted_format(self, device, passphrase, cipher=None, key_bits=0, key_file=None, min_entropy=0):
        if min_entropy > 0:
            with open(ENTROPY_AVAIL, encoding="utf-8") as fh:
                avail = int(fh.read().strip() or 0)
            if avail < min_entropy:
                raise StorageError(
                    f"Not enough entropy available: {avail} < {min_entropy}",
                    domain="crypto",
                    code=ENTROPY_ERROR,
                )
        key_args, stdin = self._key_args(passphrase, key_file)
        cmd = ["cryptsetup", "-q", "--batch-mode", "luksFormat"]
        if cipher:
            cmd += ["--cipher", cipher]
        if key_bits:
            cmd += ["--key-size", str(key_bits)]
        cmd += [*key_args, device]
        self._run(cmd, "crypto", input=stdin)

    def encrypted_open(self, device, name, passphrase, key_file=None, read_only=False):
        key_args, stdin = self._key_args(passphrase, key_file)
        cmd = ["cryptsetup", "-q", "open", "--type", "luks", *key_args]
        if read_only:
            cmd.append("--readonly")
        cmd += [device, name]
        self._run(cmd, "crypto", input=stdin)
        udev_settle()

    def encrypted_close(self, mapped):
        self._run(["cryptsetup", "close", mapped], "crypto")

    # filesystems

    def filesystem_create(self, device, extra_args=()):
        cmd = ["mkfs.xfs"]
        for opt, val in extra_args:
            cmd.append(opt)
            if val:
                cmd.append(val)
        cmd.append(device)
        self._run(cmd, "fs")

    def filesystem_check(self, device, progress=None):
        task_id = next(_task_ids)
        cmd = ["e2fsck", "-f", "-n", "-C", "1", device]

        def _report(status, completion, msg=None):
            if progress is not None:
                progress(task_id, status, completion, msg)

        def _on_line(line):
            completion = e2fsck_completion(line)
            if completion is not None:
                _report(ProgStatus.PROGRESS, completion)

        _report(ProgStatus.STARTED, 0, "Started '%s'" % " ".join(cmd))
        try:
            res = stream(cmd, _on_line)
        except (OSError, subprocess.SubprocessError) as exc:
            _report(ProgStatus.FAILED, 0, str(exc))
            raise StorageError(
                f"Failed to run e2fsck: {exc}", domain="fs", code=getattr(exc, "errno", None) or 0
            ) from exc

        if res.rc == 0:
            _report(ProgStatus.FINISHED, 100, "Completed")
            return
        detail = (res.err or "").strip()
        if res.rc == 4:
            error: StorageError = FilesystemCheckError(
                f"Filesystem errors left uncorrected on '{device}'" + (f": {detail}" if detail else "")
            )
        else:
            error = StorageError(
                f"Process reported exit code {res.rc}: {' '.join(cmd)}" + (f": {detail}" if detail else ""),
                domain="fs",
                code=res.rc,
            )
        _report(ProgStatus.FAILED, 100, error.message)
        raise error
