class ServiceError(Exception):
    """Business rule failure. The message is meant to be shown to the user as-is."""


class ValidationError(ServiceError):
    """Malformed or incomplete input; the caller can fix it and retry."""


class NotFound(ServiceError):
    """Referenced order, milestone, template or row does not exist."""


class InvalidTransition(ServiceError):
    """Requested status change is not allowed by the state machine."""


class CannotClose(ServiceError):
    """Closure preconditions are not met."""

    def __init__(self, reason: str):
        super().__init__(f"Cannot close order: {reason}")
        self.reason = reason


class InvalidOperation(ServiceError):
    """Structural rule violation (deleting a non-draft order, deactivating the default template, ...)."""


class ExternalSyncError(Exception):
    """Raised by sync transmitters; recorded on the order, never propagated."""
