"""Global constants and path configuration for kvm-machine-driver."""

from __future__ import annotations

import os
import re
from pathlib import Path

DRIVER_NAME = "kvm"
LIBVIRT_URI = os.environ.get("LIBVIRT_URI", "qemu:///system")
PRIVATE_NETWORK_NAME = "docker-machines"
DEFAULT_NETWORK_NAME = "default"
DEFAULT_SSH_USER = "docker"
DEFAULT_SSH_PORT = 22
DOCKER_PORT = 2376

# Address block of the private network created on first use.
PRIVATE_NETWORK_ADDRESS = "192.168.42.1"
PRIVATE_NETWORK_NETMASK = "255.255.255.0"
PRIVATE_DHCP_START = "192.168.42.2"
PRIVATE_DHCP_END = "192.168.42.254"

DNSMASQ_LEASE_DIR = Path("/var/lib/libvirt/dnsmasq")

BOOT_IMAGE_NAME = "boot2docker.iso"
DEFAULT_BOOT_IMAGE_URL = "https://github.com/boot2docker/boot2docker/releases/download/v19.03.12/boot2docker.iso"
BOOT_IMAGE_CACHE_DIRNAME = "cache"
SSH_KEY_NAME = "id_rsa"
SAVED_CONFIG_NAME = "config.yaml"
PERSISTENT_DIR_SUFFIX = "_persistent"

# Disk images are sized in decimal megabytes.
DISK_BYTES_PER_MB = 1_000_000

DISK_MAGIC = "boot2docker, please format-me"

# Polling budgets: fixed one-second interval, bounded attempt count.
POLL_INTERVAL = 1.0
START_POLL_ATTEMPTS = 350
STOP_POLL_ATTEMPTS = 90
SETTLE_SECONDS = 1.0

DISK_CACHE_MODES = {"default", "none", "writethrough", "writeback", "directsync", "unsafe"}
DISK_IO_MODES = {"threads", "native"}

MACHINE_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")

TRUTHY = {"1", "true", "yes", "on"}

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in TRUTHY
