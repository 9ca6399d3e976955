"""Data models for kvm-machine-driver."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from pathlib import Path
from typing import NamedTuple, Optional, Tuple

from kvmdriver.constants import (
    BOOT_IMAGE_NAME,
    DEFAULT_NETWORK_NAME,
    DEFAULT_SSH_PORT,
    DEFAULT_SSH_USER,
    LIBVIRT_URI,
    PERSISTENT_DIR_SUFFIX,
    PRIVATE_NETWORK_NAME,
)


class DomainState(enum.Enum):
    NONE = "None"
    RUNNING = "Running"
    PAUSED = "Paused"
    STOPPED = "Stopped"
    ERROR = "Error"
    SAVED = "Saved"

    def __str__(self) -> str:
        return self.value


class PollPolicy(NamedTuple):
    interval: float
    max_attempts: int


class Interface(NamedTuple):
    network: str
    mac: str


class DHCPLease(NamedTuple):
    mac: str
    ip: str


@dataclass
class NetworkAddressing:
    address: str
    netmask: Optional[str]
    dhcp_start: str
    dhcp_end: str


@dataclass
class MachineConfig:
    machine_name: str
    store_path: Path
    memory_mb: int = 1024
    cpus: int = 1
    disk_size_mb: int = 20000
    boot_timeout: int = 90
    network: str = DEFAULT_NETWORK_NAME
    private_network: str = PRIVATE_NETWORK_NAME
    boot_image_url: str = ""
    boot_image_path: Optional[Path] = None
    disk_path: Optional[Path] = None
    cache_mode: str = "default"
    io_mode: str = "threads"
    connection_uri: str = LIBVIRT_URI
    host_path: Optional[Path] = None
    ssh_user: str = DEFAULT_SSH_USER
    ssh_port: int = DEFAULT_SSH_PORT

    def __post_init__(self):
        self.store_path = Path(self.store_path)
        store_boot, store_disk = self.store_image_paths()
        if self.boot_image_path is None:
            self.boot_image_path = store_boot
        if self.disk_path is None:
            self.disk_path = store_disk
        self.boot_image_path = Path(self.boot_image_path)
        self.disk_path = Path(self.disk_path)
        if self.host_path is not None:
            self.host_path = Path(self.host_path)

    def resolve_store_path(self, name: str) -> Path:
        return self.store_path / name

    def store_image_paths(self) -> Tuple[Path, Path]:
        """Boot image and disk locations inside the store, before any relocation."""
        return self.resolve_store_path(BOOT_IMAGE_NAME), self.resolve_store_path(f"{self.machine_name}.img")

    @property
    def persistent_dir(self) -> Optional[Path]:
        """Directory holding relocated images, only when a host path is set."""
        if self.host_path is None:
            return None
        return self.host_path / f"{self.machine_name}{PERSISTENT_DIR_SUFFIX}"
