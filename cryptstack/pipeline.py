"""Build and tear down the disks -> PV -> VG -> LV -> LUKS -> XFS stack.

Both pipelines are fixed, hand ordered sequences. The first failing step
aborts the run with the backend error prefixed by the step context. Nothing
is rolled back: whatever was created stays on the disks and the teardown
pipeline is the way back.
"""

from __future__ import annotations

import contextlib
from typing import Sequence

from .backend import StorageBackend
from .errors import NoFilesystemError, StorageError
from .executil import trace
from .model import StackNames, swap_size


@contextlib.contextmanager
def _step(name: str, prefix: str, /, **fields):
    trace("pipeline.step", step=name, **fields)
    try:
        yield
    except StorageError as exc:
        trace("pipeline.step_failed", step=name, error=exc.message, domain=exc.domain, code=exc.code)
        raise exc.prefixed(prefix) from exc


def create_storage(backend: StorageBackend, disks: Sequence[str], names: StackNames) -> None:
    # wipe given disks and create LVM PV "format" on them
    for disk in disks:
        with _step("wipe", f"Error when wiping {disk}: ", disk=disk):
            try:
                backend.wipe_signatures(disk, True)
            except NoFilesystemError:
                # already empty, nothing to wipe
                trace("pipeline.wipe_nofs", disk=disk)

        with _step("pvcreate", f"Error when creating lvmpv format on {disk}: ", disk=disk):
            backend.pv_create(disk, 0, 0)

    with _step("vgcreate", "Error when creating vg: ", vg=names.vg_name):
        backend.vg_create(names.vg_name, list(disks), names.extent_size)

    with _step("vginfo", "Error when getting info for the newly created vg: ", vg=names.vg_name):
        vg_info = backend.vg_info(names.vg_name)

    size = swap_size(vg_info.free, names.swap_cap)
    with _step("lvcreate_swap", "Error when creating swap lv: ", lv=names.swap_name, size=size):
        backend.lv_create(names.vg_name, names.swap_name, size, "linear")

    swap_path = names.swap_path
    with _step("mkswap", f"Error when creating swap on {swap_path}: ", path=swap_path):
        backend.swap_format(swap_path, names.swap_label)

    # free space changed with the swap LV, never reuse the old value
    with _step("vginfo", "Error when getting info for the newly created vg: ", vg=names.vg_name):
        vg_info = backend.vg_info(names.vg_name)

    with _step("lvcreate_data", "Error when creating data lv: ", lv=names.data_name, size=vg_info.free):
        backend.lv_create(names.vg_name, names.data_name, vg_info.free, "linear")

    data_path = names.data_path
    with _step("luks_format", f"Error when creating luks on {data_path}: ", path=data_path):
        backend.encrypted_format(data_path, names.passphrase, cipher=None, key_bits=0, key_file=None, min_entropy=0)

    with _step("luks_open", f"Error when opening luks on {data_path}: ", path=data_path, name=names.luks_name):
        backend.encrypted_open(data_path, names.luks_name, names.passphrase, key_file=None, read_only=False)

    # mkfs.xfs has no label parameter in the backend call, pass "-L" through
    luks_path = names.luks_path
    with _step("mkfs", f"Error when creating xfs on {luks_path}: ", path=luks_path):
        backend.filesystem_create(luks_path, [("-L", names.data_label)])


def cleanup_storage(backend: StorageBackend, disks: Sequence[str], names: StackNames) -> None:
    # the LUKS mapping holds the data LV open, close it first
    luks_path = names.luks_path
    with _step("luks_close", f"Error when closing luks device {luks_path}: ", path=luks_path):
        backend.encrypted_close(luks_path)

    with _step("lvremove_data", "Error when removing data lv: ", lv=names.data_name):
        backend.lv_remove(names.vg_name, names.data_name, False)

    with _step("lvremove_swap", "Error when removing swap lv: ", lv=names.swap_name):
        backend.lv_remove(names.vg_name, names.swap_name, False)

    with _step("vgremove", "Error when removing vg: ", vg=names.vg_name):
        backend.vg_remove(names.vg_name)

    for disk in disks:
        with _step("pvremove", f"Error when removing lvmpv format from {disk}: ", disk=disk):
            backend.pv_remove(disk)


def planned_steps(disks: Sequence[str], names: StackNames, cleanup: bool = False) -> list[str]:
    if cleanup:
        return [
            f"cryptsetup close {names.luks_path}",
            f"lvremove {names.vg_name}/{names.data_name}",
            f"lvremove {names.vg_name}/{names.swap_name}",
            f"vgremove {names.vg_name}",
            *[f"pvremove {disk}" for disk in disks],
        ]
    steps: list[str] = []
    for disk in disks:
        steps += [f"wipefs -a {disk}", f"pvcreate {disk}"]
    steps += [
        f"vgcreate -s {names.extent_size}b {names.vg_name} {' '.join(disks)}",
        f"lvcreate {names.vg_name}/{names.swap_name} (min({names.swap_cap}b, free/10), linear)",
        f"mkswap -L {names.swap_label} {names.swap_path}",
        f"lvcreate {names.vg_name}/{names.data_name} (all remaining free space, linear)",
        f"cryptsetup luksFormat {names.data_path}",
        f"cryptsetup open {names.data_path} {names.luks_name}",
        f"mkfs.xfs -L {names.data_label} {names.luks_path}",
    ]
    return steps
