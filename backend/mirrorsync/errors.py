class MirrorSyncError(Exception):
    """Base class for errors raised by the replication engine."""


class ConfigurationError(MirrorSyncError):
    """Backend unknown or a connection field it needs is not configured."""


class SourceConnectionError(MirrorSyncError):
    """A backend database or bucket could not be reached."""


class SchemaError(MirrorSyncError):
    """A table or its columns could not be introspected or created."""


class RowError(MirrorSyncError):
    """A single row could not be reconciled."""


class TransferError(MirrorSyncError):
    """A single file could not be downloaded or uploaded."""


class JobStateError(MirrorSyncError):
    """A job status write would violate the job lifecycle."""


class BackendNotFoundError(ConfigurationError):
    """No backend is registered under the requested name."""
