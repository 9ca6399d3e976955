"""Boot media, SSH keys and disk images for kvm-machine-driver."""

from __future__ import annotations

import hashlib
import io
import os
import re
import shutil
import subprocess
import tarfile
from pathlib import Path
from typing import List, Tuple
from urllib.parse import urlparse

from kvmdriver.constants import DEFAULT_BOOT_IMAGE_URL, DISK_BYTES_PER_MB, DISK_MAGIC
from kvmdriver.exceptions import DriverError, StorageConflictError
from kvmdriver.models import MachineConfig
from kvmdriver.utils import download_file, ensure_directory, log, run


def prepare_boot_image(source: str, target: Path, cache_dir: Path) -> Path:
    """Place boot media at ``target`` from a local path or a (cached) URL."""
    source = (source or "").strip() or DEFAULT_BOOT_IMAGE_URL
    ensure_directory(target.parent)

    if source.startswith(("http://", "https://")):
        ensure_directory(cache_dir)
        digest = hashlib.sha256(source.encode("utf-8")).hexdigest()[:12]
        filename = Path(urlparse(source).path or "").name or "boot-image"
        safe_name = re.sub(r"[^A-Za-z0-9._-]", "_", filename)
        cached = cache_dir / f"{digest}-{safe_name}"
        if cached.exists() and cached.stat().st_size > 0:
            log("INFO", f"Using cached boot image: {cached}")
        else:
            download_file(source, cached, label="Downloading boot image")
        origin = cached
    else:
        origin = Path(source).expanduser()
        if not origin.is_file():
            raise DriverError(f"Boot image not found: {origin}")

    if origin.resolve() != target.resolve():
        log("INFO", f"Copying boot image to {target}")
        shutil.copyfile(origin, target)
    return target


def generate_ssh_key(key_path: Path) -> Path:
    """Create an RSA key pair at ``key_path`` / ``key_path.pub`` unless present."""
    pub_path = key_path.with_name(key_path.name + ".pub")
    if key_path.exists() and pub_path.exists():
        log("DEBUG", f"Reusing SSH key {key_path}")
        return key_path
    ensure_directory(key_path.parent)
    log("INFO", "Creating SSH key...")
    try:
        run(["ssh-keygen", "-t", "rsa", "-b", "2048", "-N", "", "-q", "-f", str(key_path)])
    except (OSError, subprocess.CalledProcessError) as exc:
        raise DriverError(f"Failed to generate SSH key at {key_path}: {exc}") from exc
    return key_path


def _add_file(tar: tarfile.TarFile, name: str, data: bytes, mode: int = 0o644) -> None:
    info = tarfile.TarInfo(name=name)
    info.size = len(data)
    info.mode = mode
    tar.addfile(info, io.BytesIO(data))


def make_disk_image(pubkey_path: Path) -> bytes:
    """Build the tar payload boot2docker formats into its data disk on first boot."""
    try:
        pubkey = pubkey_path.read_bytes()
    except OSError as exc:
        raise DriverError(f"Failed to read SSH public key {pubkey_path}: {exc}") from exc

    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w", format=tarfile.USTAR_FORMAT) as tar:
        # The marker goes first so the automount script knows to format the disk.
        _add_file(tar, DISK_MAGIC, DISK_MAGIC.encode("utf-8"))
        ssh_dir = tarfile.TarInfo(name=".ssh")
        ssh_dir.type = tarfile.DIRTYPE
        ssh_dir.mode = 0o700
        tar.addfile(ssh_dir)
        _add_file(tar, ".ssh/authorized_keys", pubkey)
        _add_file(tar, ".ssh/authorized_keys2", pubkey)
    return buf.getvalue()


def create_raw_disk_image(pubkey_path: Path, disk_path: Path, size_mb: int) -> None:
    """Write the boot2docker payload and extend the file sparsely to ``size_mb``."""
    payload = make_disk_image(pubkey_path)
    size_bytes = size_mb * DISK_BYTES_PER_MB
    if len(payload) > size_bytes:
        raise DriverError(f"Disk size {size_mb} MB is too small for the boot payload")
    log("INFO", f"Creating raw disk image {disk_path} ({size_mb} MB)")
    try:
        with open(disk_path, "xb") as fh:
            fh.write(payload)
        os.truncate(disk_path, size_bytes)
    except FileExistsError as exc:
        raise StorageConflictError(f"Disk image already exists: {disk_path}") from exc


def disk_is_reusable(disk_path: Path, size_mb: int) -> bool:
    return disk_path.is_file() and disk_path.stat().st_size == size_mb * DISK_BYTES_PER_MB


def _move_files(moves: List[Tuple[Path, Path]]) -> None:
    """Rename each ``(src, dst)`` pair; on failure put already-moved files back."""
    done: List[Tuple[Path, Path]] = []
    try:
        for src, dst in moves:
            src.rename(dst)
            done.append((src, dst))
    except OSError as exc:
        for src, dst in reversed(done):
            try:
                dst.rename(src)
            except OSError as undo_exc:
                log("ERROR", f"Could not move {dst} back to {src}: {undo_exc}")
        raise DriverError(f"Failed to move {src} to {dst}: {exc}") from exc


def relocate(cfg: MachineConfig) -> Tuple[Path, Path]:
    """Move the boot image and disk into the machine's persistent directory.

    Files are renamed, never copied. Returns the new ``(boot_image, disk)``
    paths; the caller rewrites its configuration with them.
    """
    target_dir = cfg.persistent_dir
    if target_dir is None:
        raise DriverError("No host path configured for persistent storage")
    ensure_directory(target_dir)
    new_boot = target_dir / cfg.boot_image_path.name
    new_disk = target_dir / cfg.disk_path.name
    for candidate in (new_boot, new_disk):
        if candidate.exists():
            raise StorageConflictError(f"Persistent storage already holds {candidate}")
    log("INFO", f"Relocating machine images to {target_dir}")
    _move_files([(cfg.boot_image_path, new_boot), (cfg.disk_path, new_disk)])
    return new_boot, new_disk


def restore(cfg: MachineConfig, boot_target: Path, disk_target: Path) -> None:
    """Move relocated images back to ``boot_target`` and ``disk_target``."""
    log("INFO", f"Moving machine images back to {disk_target.parent}")
    _move_files([(cfg.boot_image_path, boot_target), (cfg.disk_path, disk_target)])
