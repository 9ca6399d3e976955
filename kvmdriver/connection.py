"""Lazily-opened libvirt session for kvm-machine-driver."""

from __future__ import annotations

from typing import Optional

try:
    import libvirt  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit(f"libvirt python bindings not available: {exc}")

from kvmdriver.exceptions import DriverError, HypervisorConnectionError
from kvmdriver.utils import log


class HypervisorConnection:
    """One libvirt session, opened on first use and reused afterwards.

    A dropped connection is never reopened behind the caller's back; the
    next libvirt call fails and the error surfaces to the operation.
    """

    def __init__(self, uri: str) -> None:
        self.uri = uri
        self._conn: Optional[libvirt.virConnect] = None

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def connect(self) -> libvirt.virConnect:
        if self._conn is not None:
            return self._conn
        try:
            conn = libvirt.open(self.uri)
        except libvirt.libvirtError as exc:
            log("ERROR", f"Failed to connect to libvirt at {self.uri}: {exc}")
            raise HypervisorConnectionError(
                f"Unable to connect to libvirt at {self.uri}.\n"
                "  Is libvirtd running, and did you add yourself to the libvirt group?\n"
                "    sudo usermod -aG libvirt $USER   (then log out and back in)"
            ) from exc
        if conn is None:
            raise HypervisorConnectionError(
                f"Failed to open libvirt connection to {self.uri}; "
                "did you add yourself to the libvirt group?"
            )
        self._conn = conn
        return conn

    def lib_version(self) -> int:
        conn = self.connect()
        try:
            return conn.getLibVersion()
        except libvirt.libvirtError as exc:
            log("WARN", "Unable to get libvirt version")
            raise DriverError(f"Unable to query libvirt version: {exc}") from exc

    def close(self) -> None:
        if self._conn is not None:
            try:
                self._conn.close()
            except libvirt.libvirtError as exc:
                log("DEBUG", f"Error closing libvirt connection: {exc}")
            self._conn = None
