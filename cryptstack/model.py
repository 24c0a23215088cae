from dataclasses import dataclass
from typing import Optional

from .paths import luks_name, lv_path, mapper_path

MIB = 1024 * 1024
GIB = 1024 * MIB


@dataclass
class Flags:
    cleanup: bool = False
    assume_yes: bool = False
    plan: bool = False


@dataclass(frozen=True)
class StackNames:
    vg_name: str = "demo_1_libblockdev"
    swap_name: str = "swap"
    swap_label: str = "demoswap"
    data_name: str = "data"
    data_label: str = "demodata"
    luks_prefix: str = "test-luks"
    passphrase: str = "passphrase"
    extent_size: int = 8 * MIB
    swap_cap: int = 1 * GIB

    @property
    def swap_path(self) -> str:
        return lv_path(self.vg_name, self.swap_name)

    @property
    def data_path(self) -> str:
        return lv_path(self.vg_name, self.data_name)

    @property
    def luks_name(self) -> str:
        return luks_name(self.luks_prefix, self.data_name)

    @property
    def luks_path(self) -> str:
        return mapper_path(self.luks_name)


@dataclass
class VGInfo:
    name: str
    free: int
    size: int = 0
    uuid: Optional[str] = None
    extent_size: int = 0
    extent_count: int = 0
    free_count: int = 0
    pv_count: int = 0


def swap_size(free: int, cap: int = GIB) -> int:
    """10 % of the VG free space, never more than ``cap``."""

    return min(cap, free // 10)
