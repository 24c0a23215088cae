from typing import Dict, List, Tuple

import pytest

from cryptstack import executil
from cryptstack.backend import StorageBackend
from cryptstack.errors import NoFilesystemError, StorageError
from cryptstack.model import GIB, VGInfo


class FakeBackend(StorageBackend):
    """In-memory model of disks, PVs, the VG, LVs and LUKS mappings.

    Every call is recorded in ``calls`` as ``(method, args)``. Operations on
    missing objects fail the way the real tools would.
    """

    def __init__(self, disk_sizes: Dict[str, int], signatures=()):
        self.disk_sizes = dict(disk_sizes)
        self.signatures = set(signatures)
        self.pvs: set = set()
        self.vgs: Dict[str, dict] = {}
        self.lvs: Dict[Tuple[str, str], int] = {}
        self.luks: set = set()
        self.mappings: Dict[str, str] = {}
        self.swaps: Dict[str, str] = {}
        self.filesystems: Dict[str, list] = {}
        self.calls: List[tuple] = []
        self._failures: Dict[str, tuple] = {}
        self._counts: Dict[str, int] = {}

    def fail_on(self, method: str, error: StorageError, nth: int = 1):
        self._failures[method] = (nth, error)

    def _record(self, method: str, *args):
        self.calls.append((method, args))
        self._counts[method] = self._counts.get(method, 0) + 1
        planned = self._failures.get(method)
        if planned and planned[0] == self._counts[method]:
            raise planned[1]

    def methods(self) -> List[str]:
        return [name for name, _ in self.calls]

    def snapshot(self):
        return (
            sorted(self.pvs),
            sorted(self.vgs),
            sorted(self.lvs),
            sorted(self.mappings),
        )

    def _free(self, vg: str) -> int:
        used = sum(size for (owner, _), size in self.lvs.items() if owner == vg)
        return self.vgs[vg]["size"] - used

    def wipe_signatures(self, disk, all_signatures=True):
        self._record("wipe_signatures", disk)
        if disk not in self.signatures:
            raise NoFilesystemError(f"No signature detected on the device '{disk}'.")
        self.signatures.discard(disk)

    def pv_create(self, disk, data_alignment=0, metadata_size=0):
        self._record("pv_create", disk, data_alignment, metadata_size)
        if disk not in self.disk_sizes:
            raise StorageError(f"No device found for {disk}", domain="lvm", code=5)
        self.pvs.add(disk)

    def pv_remove(self, disk):
        self._record("pv_remove", disk)
        if disk not in self.pvs or any(disk in vg["disks"] for vg in self.vgs.values()):
            raise StorageError(f"Cannot remove PV {disk}", domain="lvm", code=5)
        self.pvs.discard(disk)

    def vg_create(self, name, disks, extent_size=0):
        self._record("vg_create", name, list(disks), extent_size)
        if not all(d in self.pvs for d in disks):
            raise StorageError("Not all devices are PVs", domain="lvm", code=5)
        self.vgs[name] = {"disks": list(disks), "extent_size": extent_size,
                          "size": sum(self.disk_sizes[d] for d in disks)}

    def vg_info(self, name):
        self._record("vg_info", name)
        if name not in self.vgs:
            raise StorageError(f"Volume group \"{name}\" not found", domain="lvm", code=5)
        vg = self.vgs[name]
        return VGInfo(name=name, free=self._free(name), size=vg["size"],
                      extent_size=vg["extent_size"], pv_count=len(vg["disks"]))

    def vg_remove(self, name):
        self._record("vg_remove", name)
        if name not in self.vgs or any(owner == name for owner, _ in self.lvs):
            raise StorageError(f"Cannot remove VG {name}", domain="lvm", code=5)
        del self.vgs[name]

    def lv_create(self, vg, name, size, layout="linear"):
        self._record("lv_create", vg, name, size, layout)
        if vg not in self.vgs or size > self._free(vg):
            raise StorageError("Insufficient free space", domain="lvm", code=5)
        self.lvs[(vg, name)] = size

    def lv_remove(self, vg, name, force=False):
        self._record("lv_remove", vg, name, force)
        path = f"/dev/{vg}/{name}"
        if (vg, name) not in self.lvs or path in self.mappings.values():
            raise StorageError(f"Cannot remove LV {vg}/{name}", domain="lvm", code=5)
        del self.lvs[(vg, name)]
        self.luks.discard(path)
        self.swaps.pop(path, None)

    def swap_format(self, device, label=None):
        self._record("swap_format", device, label)
        self.swaps[device] = label

    def encrypted_format(self, device, passphrase, cipher=None, key_bits=0, key_file=None, min_entropy=0):
        self._record("encrypted_format", device, passphrase, cipher, key_bits, key_file, min_entropy)
        self.luks.add(device)

    def encrypted_open(self, device, name, passphrase, key_file=None, read_only=False):
        self._record("encrypted_open", device, name, passphrase, key_file, read_only)
        if device not in self.luks:
            raise StorageError(f"Device {device} is not a valid LUKS device.", domain="crypto", code=1)
        self.mappings[name] = device

    def encrypted_close(self, mapped):
        self._record("encrypted_close", mapped)
        name = mapped.rsplit("/", 1)[-1]
        if name not in self.mappings:
            raise StorageError(f"Device {name} is not active.", domain="crypto", code=4)
        del self.mappings[name]

    def filesystem_create(self, device, extra_args=()):
        self._record("filesystem_create", device, list(extra_args))
        self.filesystems[device] = list(extra_args)

    def filesystem_check(self, device, progress=None):
        self._record("filesystem_check", device)


DISKS = ["/dev/vdb", "/dev/vdc"]


@pytest.fixture
def disks():
    return list(DISKS)


@pytest.fixture
def make_backend():
    def _make(free: int = 2 * GIB, signatures=()):
        half = free // 2
        return FakeBackend({DISKS[0]: half, DISKS[1]: free - half}, signatures=signatures)

    return _make


@pytest.fixture(autouse=True)
def _isolated_log(tmp_path, monkeypatch):
    monkeypatch.setattr(executil, "LOG_DIRS", [str(tmp_path / "logs")])
    monkeypatch.setattr(executil, "LOG_PATH", None)
    monkeypatch.setattr(executil, "LOG_LEVEL", "TRACE")
