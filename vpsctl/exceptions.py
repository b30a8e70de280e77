"""Custom exceptions for vpsctl."""


class ManagerError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class ValidationError(ManagerError):
    """A field value failed validation; the caller may ask again."""


class ParseError(ManagerError):
    """A persisted profile record could not be parsed."""


class NotFoundError(ManagerError):
    """A profile, disk image or seed volume does not exist."""


class ConflictError(ManagerError):
    """Duplicate name, port collision or VM already running."""


class ProvisioningError(ManagerError):
    """Image download, disk preparation or seed generation failed."""


class ProcessError(ManagerError):
    """The hypervisor or its companion process failed to start or stay alive."""
