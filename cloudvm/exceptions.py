"""Custom exceptions for cloudvm."""


class ManagerError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class UnsupportedVersionError(ManagerError):
    """The requested distribution/version is not in the image catalog."""


class NetworkError(ManagerError):
    """A remote image resource could not be reached."""


class IntegrityError(ManagerError):
    """A downloaded file does not match the published checksum manifest."""


class ConversionError(ManagerError):
    """Every disk conversion path failed."""


class PackagingError(ManagerError):
    """The provisioning disc image could not be authored."""


class PlatformAPIError(ManagerError):
    """A libvirt call failed."""


class DatasourceError(ManagerError):
    """The guest filesystem could not be patched to a different datasource."""
