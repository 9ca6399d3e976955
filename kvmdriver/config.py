"""Configuration loading and environment variable parsing for kvm-machine-driver."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from kvmdriver.constants import (
    DEFAULT_NETWORK_NAME,
    DEFAULT_SSH_USER,
    DISK_CACHE_MODES,
    DISK_IO_MODES,
    LIBVIRT_URI,
    MACHINE_NAME_RE,
    PRIVATE_NETWORK_NAME,
)
from kvmdriver.exceptions import ConfigError
from kvmdriver.models import MachineConfig
from kvmdriver.utils import get_env, log, parse_int

DEFAULTS: Dict[str, Any] = {
    "memory_mb": 1024,
    "disk_size_mb": 20000,
    "boot_timeout": 90,
    "cpus": 1,
    "network": DEFAULT_NETWORK_NAME,
    "private_network": PRIVATE_NETWORK_NAME,
    "boot_image_url": "",
    "cache_mode": "default",
    "io_mode": "threads",
    "ssh_user": DEFAULT_SSH_USER,
    "host_path": None,
    "connection_uri": LIBVIRT_URI,
}

# Environment variable -> MachineConfig field.
ENV_VARS = {
    "KVM_MEMORY": "memory_mb",
    "KVM_DISK_SIZE": "disk_size_mb",
    "KVM_TIMEOUT": "boot_timeout",
    "KVM_CPU_COUNT": "cpus",
    "KVM_NETWORK": "network",
    "KVM_PRIVATE_NETWORK": "private_network",
    "KVM_BOOT2DOCKER_URL": "boot_image_url",
    "KVM_CACHE_MODE": "cache_mode",
    "KVM_IO_MODE": "io_mode",
    "KVM_SSH_USER": "ssh_user",
    "KVM_LIBVIRTD_HOST_PATH": "host_path",
    "KVM_LIBVIRTD_CONNECTION_STRING": "connection_uri",
}

_INT_FIELDS = {"memory_mb": 1, "disk_size_mb": 1, "boot_timeout": 0, "cpus": 1, "ssh_port": 1}
_PATH_FIELDS = ("store_path", "boot_image_path", "disk_path", "host_path")


def load_config_file(config_path: Path) -> Dict[str, Any]:
    if not config_path.exists():
        raise ConfigError(f"Machine config missing: {config_path}")
    try:
        data = yaml.safe_load(config_path.read_text())
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {config_path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{config_path} must contain a mapping at the top level")
    unknown = sorted(set(data) - set(DEFAULTS) - {"ssh_port"})
    if unknown:
        raise ConfigError(f"Unknown keys in {config_path}: {', '.join(unknown)}")
    return data


def parse_env() -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for name, field in ENV_VARS.items():
        raw = get_env(name)
        if raw is None:
            continue
        raw = raw.strip()
        if field in _INT_FIELDS:
            values[field] = parse_int(name, raw, min_val=_INT_FIELDS[field])
        elif field == "host_path":
            values[field] = raw or None
        else:
            values[field] = raw
    return values


def _validate(values: Dict[str, Any]) -> Dict[str, Any]:
    for field, min_val in _INT_FIELDS.items():
        if field in values:
            values[field] = parse_int(field, values[field], min_val=min_val)
    if values["cache_mode"] not in DISK_CACHE_MODES:
        allowed = ", ".join(sorted(DISK_CACHE_MODES))
        raise ConfigError(f"Invalid cache mode '{values['cache_mode']}'. Use one of: {allowed}")
    if values["io_mode"] not in DISK_IO_MODES:
        allowed = ", ".join(sorted(DISK_IO_MODES))
        raise ConfigError(f"Invalid IO mode '{values['io_mode']}'. Use one of: {allowed}")
    if not values["network"] or not values["private_network"]:
        raise ConfigError("Network names must not be empty")
    if values["network"] == values["private_network"]:
        raise ConfigError("The public and private networks must be different")
    return values


def build_machine_config(
    machine_name: str,
    store_path: Path,
    config_path: Optional[Path] = None,
) -> MachineConfig:
    """Merge defaults, an optional YAML file and ``KVM_*`` variables (in that order)."""
    if not MACHINE_NAME_RE.match(machine_name or ""):
        raise ConfigError(
            f"Invalid machine name '{machine_name}'. Use letters, digits, '.', '_' or '-'"
        )
    values = dict(DEFAULTS)
    if config_path is not None:
        values.update(load_config_file(config_path))
    values.update(parse_env())
    values = _validate(values)
    log("DEBUG", f"Machine {machine_name}: {values}")
    return MachineConfig(machine_name=machine_name, store_path=Path(store_path), **values)


def config_to_dict(cfg: MachineConfig) -> Dict[str, Any]:
    data = dict(vars(cfg))
    for field in _PATH_FIELDS:
        if data.get(field) is not None:
            data[field] = str(data[field])
    return data


def save_config(cfg: MachineConfig, path: Path) -> None:
    """Persist ``cfg`` (including relocated image paths) for later reconstruction."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(config_to_dict(cfg), sort_keys=True))


def load_saved_config(path: Path) -> MachineConfig:
    if not path.exists():
        raise ConfigError(f"Saved machine config missing: {path}")
    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(data, dict) or "machine_name" not in data or "store_path" not in data:
        raise ConfigError(f"{path} is not a saved machine config")
    try:
        return MachineConfig(**data)
    except TypeError as exc:
        raise ConfigError(f"{path} has unexpected fields: {exc}") from exc
