"""Custom exceptions for kvm-machine-driver."""


class DriverError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class ConfigError(DriverError):
    """Invalid machine configuration (file, environment or saved state)."""


class HypervisorConnectionError(DriverError):
    """libvirt endpoint unreachable or the caller is not authorised."""


class MisconfiguredNetworkError(DriverError):
    """An existing private network lacks an IP block or DHCP range."""


class NetworkNotFoundError(DriverError):
    pass


class DomainNotFoundError(DriverError):
    pass


class StorageConflictError(DriverError):
    """A disk or relocation path is occupied by something we cannot reuse."""


class TopologyError(DriverError):
    """The live domain descriptor does not have the expected interfaces."""


class LeaseFileError(DriverError):
    """The dnsmasq lease file contains a malformed line."""


class ShutdownTimeoutError(DriverError):
    pass


class UndefineError(DriverError):
    pass
