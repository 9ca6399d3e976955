"""Utility functions for kvm-machine-driver."""

from __future__ import annotations

import os
import subprocess
import tempfile
import time
from pathlib import Path
from typing import Callable, List, Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from kvmdriver.constants import _LOG_VERBOSE
from kvmdriver.exceptions import ConfigError, DriverError
from kvmdriver.models import PollPolicy


def log(level: str, message: str) -> None:
    """Lightweight structured logging compatible with existing colour expectation."""
    if level == "DEBUG" and not _LOG_VERBOSE:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", flush=True)


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def parse_int(name: str, raw, min_val: int = 1, max_val: Optional[int] = None) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be an integer (got '{raw}')")
    if value < min_val:
        raise ConfigError(f"{name} must be >= {min_val} (got {value})")
    if max_val is not None and value > max_val:
        raise ConfigError(f"{name} must be <= {max_val} (got {value})")
    return value


def poll_until(policy: PollPolicy, predicate: Callable[[], bool], label: str = "condition") -> bool:
    """Sleep-then-check ``predicate`` up to ``policy.max_attempts`` times.

    Returns True as soon as the predicate holds, False once the budget is
    spent.
    """
    for attempt in range(policy.max_attempts):
        time.sleep(policy.interval)
        if predicate():
            return True
        log("DEBUG", f"Waiting for {label}... {attempt}")
    return False


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def download_file(url: str, destination: Path, label: str = "Downloading") -> None:
    """Download ``url`` to ``destination`` through a temp file in the same directory."""
    log("INFO", f"{label}: {url}")
    req = Request(url, headers={"User-Agent": "kvm-machine-driver/1.0"})
    try:
        response = urlopen(req, timeout=60)
    except HTTPError as exc:
        raise DriverError(f"HTTP error downloading {url}: {exc.code} {exc.reason}")
    except URLError as exc:
        raise DriverError(f"Failed to download {url}: {exc.reason}")

    downloaded = 0
    start_time = time.time()
    with tempfile.NamedTemporaryFile(delete=False, dir=destination.parent) as tmp:
        tmp_path = Path(tmp.name)
        try:
            chunk_size = 1024 * 256  # 256 KiB
            while True:
                chunk = response.read(chunk_size)
                if not chunk:
                    break
                tmp.write(chunk)
                downloaded += len(chunk)
        except Exception:
            tmp_path.unlink(missing_ok=True)
            raise
    tmp_path.replace(destination)
    elapsed = time.time() - start_time
    log("SUCCESS", f"Downloaded {downloaded / (1024 * 1024):.1f} MiB in {elapsed:.1f}s")


def run(cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
    """Run command with logging."""
    log("DEBUG", f"Running: {' '.join(cmd)}")
    result = subprocess.run(cmd, check=check, text=True, **kwargs)
    return result
