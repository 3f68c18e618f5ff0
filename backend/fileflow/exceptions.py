"""Error taxonomy shared by the storage, quota, upload and notification services."""


class FileFlowError(Exception):
    """Base class for all domain errors."""
    pass


class ValidationFault(FileFlowError):
    """Malformed input: empty filename, negative size, quota below minimum."""
    pass


class InvalidChunk(ValidationFault):
    """Chunk out of range, conflicting re-upload, or finalize with chunks missing."""
    pass


class NotFound(FileFlowError):
    """Referenced object, session or user does not exist."""

    def __init__(self, resource: str, identifier):
        self.resource = resource
        self.identifier = identifier
        super().__init__(f"{resource} not found: {identifier}")


class SessionExpired(NotFound):
    """Upload session is past its TTL. Late callers see it as gone."""

    def __init__(self, identifier):
        super().__init__("Upload session", identifier)
        self.args = (f"Upload session expired: {identifier}",)


class StorageFault(FileFlowError):
    """Backend I/O failure (disk, network, missing chunk at merge time)."""
    pass


class DeliveryFault(FileFlowError):
    """A live notification could not be pushed to any connection of the user."""
    pass


class QuotaExceededError(FileFlowError):
    """Upload rejected before any bytes were accepted: not enough quota left."""

    def __init__(self, user_id: str, requested: int, available: int | None = None):
        self.user_id = user_id
        self.requested = requested
        self.available = available
        msg = f"Insufficient storage quota for user {user_id}: requested {requested} bytes"
        if available is not None:
            msg += f", {available} available"
        super().__init__(msg)
