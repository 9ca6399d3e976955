"""VM lifecycle management for kvm-machine-driver."""

from __future__ import annotations

import shutil
import time
from pathlib import Path
from typing import Optional

try:
    import libvirt  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit(f"libvirt python bindings not available: {exc}")

from kvmdriver.config import save_config
from kvmdriver.connection import HypervisorConnection
from kvmdriver.constants import (
    BOOT_IMAGE_CACHE_DIRNAME,
    DEFAULT_SSH_PORT,
    DEFAULT_SSH_USER,
    DNSMASQ_LEASE_DIR,
    DOCKER_PORT,
    DRIVER_NAME,
    POLL_INTERVAL,
    SAVED_CONFIG_NAME,
    SETTLE_SECONDS,
    SSH_KEY_NAME,
    START_POLL_ATTEMPTS,
    STOP_POLL_ATTEMPTS,
)
from kvmdriver.discovery import NetworkDiscovery
from kvmdriver.domain import render_domain_xml
from kvmdriver.exceptions import (
    DomainNotFoundError,
    DriverError,
    ShutdownTimeoutError,
    StorageConflictError,
    TopologyError,
    UndefineError,
)
from kvmdriver.models import DomainState, MachineConfig, PollPolicy
from kvmdriver.network import NetworkProvisioner
from kvmdriver.storage import (
    create_raw_disk_image,
    disk_is_reusable,
    generate_ssh_key,
    prepare_boot_image,
    relocate,
    restore,
)
from kvmdriver.utils import ensure_directory, log, poll_until

START_POLL = PollPolicy(interval=POLL_INTERVAL, max_attempts=START_POLL_ATTEMPTS)
STOP_POLL = PollPolicy(interval=POLL_INTERVAL, max_attempts=STOP_POLL_ATTEMPTS)

# BLOCKED and CRASHED are both reported as ERROR.
_STATE_MAP = {
    libvirt.VIR_DOMAIN_NOSTATE: DomainState.NONE,
    libvirt.VIR_DOMAIN_RUNNING: DomainState.RUNNING,
    libvirt.VIR_DOMAIN_BLOCKED: DomainState.ERROR,
    libvirt.VIR_DOMAIN_PAUSED: DomainState.PAUSED,
    libvirt.VIR_DOMAIN_SHUTDOWN: DomainState.STOPPED,
    libvirt.VIR_DOMAIN_SHUTOFF: DomainState.STOPPED,
    libvirt.VIR_DOMAIN_CRASHED: DomainState.ERROR,
    libvirt.VIR_DOMAIN_PMSUSPENDED: DomainState.SAVED,
}


def map_domain_state(code: int) -> DomainState:
    return _STATE_MAP.get(code, DomainState.NONE)


class KVMDriver:
    """Drive one libvirt domain through create/start/stop/kill/remove.

    Each instance owns its own libvirt session and is meant for a single
    caller; calls from several threads must be serialised by that caller.
    """

    driver_name = DRIVER_NAME

    def __init__(
        self,
        machine_config: MachineConfig,
        connection: Optional[HypervisorConnection] = None,
        lease_dir: Path = DNSMASQ_LEASE_DIR,
    ) -> None:
        self.cfg = machine_config
        self.connection = connection or HypervisorConnection(self.cfg.connection_uri)
        self.networks = NetworkProvisioner(self.connection)
        self.discovery = NetworkDiscovery(
            self.networks,
            self.cfg.private_network,
            self._ensure_domain,
            lease_dir=lease_dir,
        )
        self.domain: Optional[libvirt.virDomain] = None
        self._domain_loaded = False
        self.ip_address = ""
        self.last_state_error: Optional[DriverError] = None

    @property
    def name(self) -> str:
        return self.cfg.machine_name

    def close(self) -> None:
        self.domain = None
        self._domain_loaded = False
        self.connection.close()

    # -- SSH / URL accessors ---------------------------------------------

    @property
    def ssh_key_path(self) -> Path:
        return self.cfg.resolve_store_path(SSH_KEY_NAME)

    @property
    def public_ssh_key_path(self) -> Path:
        return self.cfg.resolve_store_path(SSH_KEY_NAME + ".pub")

    @property
    def ssh_port(self) -> int:
        return self.cfg.ssh_port or DEFAULT_SSH_PORT

    @property
    def ssh_username(self) -> str:
        return self.cfg.ssh_user or DEFAULT_SSH_USER

    def ssh_hostname(self) -> str:
        return self.get_ip()

    def get_url(self) -> str:
        try:
            ip = self.get_ip()
        except DriverError as exc:
            log("WARN", f"Failed to get IP: {exc}")
            raise
        if not ip:
            return ""
        return f"tcp://{ip}:{DOCKER_PORT}"

    # -- handle consistency ----------------------------------------------

    def _ensure_domain(self) -> libvirt.virDomain:
        """Return the cached domain, fetching it by name if not loaded.

        This is the only place the cached handle is repaired, so a driver
        rebuilt from saved config picks up the existing domain here.
        """
        if self._domain_loaded and self.domain is not None:
            return self.domain
        log("DEBUG", "Fetching VM...")
        conn = self.connection.connect()
        try:
            domain = conn.lookupByName(self.name)
        except libvirt.libvirtError as exc:
            log("WARN", f"Failed to fetch machine {self.name}")
            raise DomainNotFoundError(f"Domain {self.name} not found: {exc}") from exc
        self.domain = domain
        self._domain_loaded = True
        return domain

    def _domain_exists(self) -> bool:
        conn = self.connection.connect()
        try:
            conn.lookupByName(self.name)
            return True
        except libvirt.libvirtError:
            return False

    # -- lifecycle -------------------------------------------------------

    def pre_create_check(self) -> None:
        log("DEBUG", "About to check libvirt version")
        version = self.connection.lib_version()
        log("DEBUG", f"libvirt version {version}")
        self.networks.ensure_private_network(self.cfg.private_network)
        self.networks.ensure_public_network(self.cfg.network)

    def create(self) -> None:
        if self._domain_exists():
            raise DriverError(f"Domain {self.name} already exists; remove it first")

        self.networks.ensure_private_network(self.cfg.private_network)

        # Images are always built in the store; relocation happens afterwards.
        store_boot, store_disk = self.cfg.store_image_paths()
        self.cfg.boot_image_path, self.cfg.disk_path = store_boot, store_disk

        ensure_directory(self.cfg.store_path)
        prepare_boot_image(
            self.cfg.boot_image_url,
            self.cfg.boot_image_path,
            self.cfg.resolve_store_path(BOOT_IMAGE_CACHE_DIRNAME),
        )
        generate_ssh_key(self.ssh_key_path)

        disk = self.cfg.disk_path
        if disk.exists() or disk.is_symlink():
            if not disk_is_reusable(disk, self.cfg.disk_size_mb):
                raise StorageConflictError(
                    f"{disk} already exists and is not a {self.cfg.disk_size_mb} MB raw disk; "
                    "move it away or pick another machine name"
                )
            log("INFO", f"Reusing existing disk {disk}")
        else:
            create_raw_disk_image(self.public_ssh_key_path, disk, self.cfg.disk_size_mb)

        if self.cfg.host_path is not None:
            self.cfg.boot_image_path, self.cfg.disk_path = relocate(self.cfg)

        log("INFO", f"Boot image: {self.cfg.boot_image_path}")
        log("INFO", f"Disk image: {self.cfg.disk_path}")
        try:
            domain = self._define()
        except DriverError:
            self._unrelocate(store_boot, store_disk)
            raise
        self.domain = domain
        self._domain_loaded = True
        save_config(self.cfg, self.cfg.resolve_store_path(SAVED_CONFIG_NAME))
        log("SUCCESS", f"Defined domain {self.name}")
        self.start()

    def _define(self) -> libvirt.virDomain:
        log("DEBUG", "Defining VM...")
        xml = render_domain_xml(self.cfg)
        conn = self.connection.connect()
        try:
            domain = conn.defineXML(xml)
        except libvirt.libvirtError as exc:
            log("WARN", f"Failed to create the VM: {exc}")
            raise DriverError(f"Failed to define domain {self.name}: {exc}") from exc
        if domain is None:
            raise DriverError(f"Failed to define domain {self.name}")
        return domain

    def _unrelocate(self, store_boot: Path, store_disk: Path) -> None:
        """Put relocated images back in the store so a later create can retry."""
        if (self.cfg.boot_image_path, self.cfg.disk_path) == (store_boot, store_disk):
            return
        restore(self.cfg, store_boot, store_disk)
        self.cfg.boot_image_path, self.cfg.disk_path = store_boot, store_disk

    def start(self) -> None:
        log("DEBUG", f"Starting VM {self.name}")
        domain = self._ensure_domain()
        try:
            domain.create()
        except libvirt.libvirtError as exc:
            log("WARN", f"Failed to start: {exc}")
            raise DriverError(f"Failed to start domain {self.name}: {exc}") from exc
        log("INFO", f"Domain {self.name} powered on; waiting {self.cfg.boot_timeout}s before polling for an IP")

        # Power-on returns before the guest has booted.
        time.sleep(self.cfg.boot_timeout)

        if poll_until(START_POLL, self._ip_ready, label=f"{self.name} to come up"):
            time.sleep(SETTLE_SECONDS)
            log("SUCCESS", f"Domain {self.name} is up at {self.ip_address}")
            return
        log("WARN", "Unable to determine VM's IP address, did it fail to boot?")

    def _ip_ready(self) -> bool:
        try:
            return bool(self.get_ip())
        except TopologyError:
            raise
        except DriverError as exc:
            log("DEBUG", f"IP not available yet: {exc}")
            return False

    def _read_state(self) -> DomainState:
        domain = self._ensure_domain()
        try:
            code, _reason = domain.state()
        except libvirt.libvirtError as exc:
            raise DriverError(f"Failed to read state of {self.name}: {exc}") from exc
        return map_domain_state(code)

    def get_state(self) -> DomainState:
        """Current hypervisor state; ``DomainState.NONE`` if it cannot be read.

        The failure behind a ``NONE`` result is kept in ``last_state_error``.
        """
        log("DEBUG", "Getting current state...")
        try:
            state = self._read_state()
        except DriverError as exc:
            log("WARN", f"Could not read state of {self.name}: {exc}")
            self.last_state_error = exc
            return DomainState.NONE
        self.last_state_error = None
        return state

    def stop(self) -> None:
        log("DEBUG", f"Stopping VM {self.name}")
        domain = self._ensure_domain()
        if self._read_state() == DomainState.STOPPED:
            log("INFO", f"Domain {self.name} already stopped")
            return
        try:
            domain.shutdown()
        except libvirt.libvirtError as exc:
            log("WARN", "Failed to gracefully shutdown VM")
            raise DriverError(f"Failed to shut down {self.name}: {exc}") from exc

        if poll_until(STOP_POLL, lambda: self.get_state() == DomainState.STOPPED, label=f"{self.name} to stop"):
            log("SUCCESS", f"Domain {self.name} stopped")
            return
        raise ShutdownTimeoutError(
            f"VM {self.name} failed to gracefully shutdown within "
            f"{int(STOP_POLL.interval * STOP_POLL.max_attempts)}s, try the kill command"
        )

    def kill(self) -> None:
        log("DEBUG", f"Killing VM {self.name}")
        domain = self._ensure_domain()
        try:
            domain.destroy()
        except libvirt.libvirtError as exc:
            # libvirt refuses to destroy a domain that is already off.
            if self.get_state() == DomainState.STOPPED:
                log("DEBUG", f"Domain {self.name} already off")
                return
            raise DriverError(f"Failed to power off {self.name}: {exc}") from exc
        log("INFO", f"Domain {self.name} powered off")

    def restart(self) -> None:
        log("DEBUG", f"Restarting VM {self.name}")
        self.stop()
        self.start()

    def remove(self) -> None:
        log("DEBUG", f"Removing VM {self.name}")
        domain = self._ensure_domain()

        storage_dir = self.cfg.persistent_dir
        if storage_dir is not None and storage_dir.exists():
            log("INFO", f"Deleting persistent storage {storage_dir}")
            try:
                shutil.rmtree(storage_dir)
            except OSError as exc:
                raise DriverError(f"Failed to delete {storage_dir}: {exc}") from exc

        try:
            domain.destroy()
        except libvirt.libvirtError as exc:
            log("DEBUG", f"Destroy of {self.name} failed (probably already off): {exc}")

        # Undefine fails while disk snapshots exist; they are not cleaned up here.
        try:
            domain.undefine()
        except libvirt.libvirtError as exc:
            raise UndefineError(
                f"Failed to undefine domain {self.name}: {exc} "
                "(remove any snapshots of the domain first)"
            ) from exc
        self.domain = None
        self._domain_loaded = False
        self.ip_address = ""

        # The relocated images are gone; a later create starts from the store again.
        self.cfg.boot_image_path, self.cfg.disk_path = self.cfg.store_image_paths()
        saved = self.cfg.resolve_store_path(SAVED_CONFIG_NAME)
        if saved.exists():
            save_config(self.cfg, saved)
        log("SUCCESS", f"Removed domain {self.name}")

    # -- discovery -------------------------------------------------------

    def get_ip(self) -> str:
        log("DEBUG", f"GetIP called for {self.name}")
        ip = self.discovery.resolve_ip()
        if ip:
            self.ip_address = ip
        return ip
