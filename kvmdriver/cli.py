"""CLI entry points for kvm-machine-driver."""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import List, Optional

from kvmdriver.config import build_machine_config, config_to_dict, load_saved_config
from kvmdriver.constants import SAVED_CONFIG_NAME
from kvmdriver.driver import KVMDriver
from kvmdriver.exceptions import DriverError
from kvmdriver.models import MachineConfig
from kvmdriver.utils import log

COMMANDS = ("create", "start", "stop", "restart", "kill", "rm", "status", "ip", "url", "show-config")


def resolve_config(machine_name: str, store_root: Path, config_path: Optional[Path] = None) -> MachineConfig:
    """Prefer the config saved by ``create``; otherwise build one from file and env."""
    store_path = store_root / machine_name
    saved = store_path / SAVED_CONFIG_NAME
    if saved.exists():
        log("DEBUG", f"Loading saved machine config {saved}")
        return load_saved_config(saved)
    return build_machine_config(machine_name, store_path, config_path)


def show_config(cfg: MachineConfig) -> None:
    for key, value in sorted(config_to_dict(cfg).items()):
        print(f"{key}: {value}")


def run_command(driver: KVMDriver, command: str) -> int:
    if command == "create":
        driver.pre_create_check()
        driver.create()
    elif command == "start":
        driver.start()
    elif command == "stop":
        driver.stop()
    elif command == "restart":
        driver.restart()
    elif command == "kill":
        driver.kill()
    elif command == "rm":
        driver.remove()
    elif command == "status":
        print(driver.get_state())
    elif command == "ip":
        ip = driver.get_ip()
        if not ip:
            log("WARN", f"No IP address known for {driver.name} yet")
            return 1
        print(ip)
    elif command == "url":
        print(driver.get_url())
    else:
        raise DriverError(f"Unknown command: {command}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Manage a single KVM machine through libvirt")
    parser.add_argument("--config", type=Path, help="YAML file with machine settings")
    parser.add_argument(
        "--store",
        type=Path,
        default=Path.home() / ".kvm-machines",
        help="Directory holding per-machine state (default: ~/.kvm-machines)",
    )
    parser.add_argument("name", help="Machine name")
    parser.add_argument("command", choices=COMMANDS)
    args = parser.parse_args(argv)

    try:
        cfg = resolve_config(args.name, args.store, args.config)
    except DriverError as exc:
        log("ERROR", str(exc))
        return 1

    if args.command == "show-config":
        show_config(cfg)
        return 0

    driver = KVMDriver(cfg)
    try:
        return run_command(driver, args.command)
    except DriverError as exc:
        log("ERROR", str(exc))
        return 1
    finally:
        driver.close()
