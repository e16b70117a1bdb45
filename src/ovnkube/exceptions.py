"""Exception hierarchy shared by the library and the agent runtime."""

from __future__ import annotations


class OvnKubeError(Exception):
    """Base class for all errors raised by this project."""


class ConfigError(OvnKubeError):
    """Invalid configuration detected at startup.

    ``field`` names the offending option so the operator can fix it without
    reading a traceback.
    """

    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"{field}: {message}")
        self.field = field


class AllocationError(OvnKubeError):
    """Raised by the address space allocators."""


class ExhaustedError(AllocationError):
    """No free slot is left in the configured address range."""


class ConflictError(AllocationError):
    """A reservation overlaps something owned by someone else."""


class DBError(OvnKubeError):
    """Failure talking to the northbound database."""


class TransientDBError(DBError):
    """Connection loss, lock contention or timeout; safe to retry."""


class DBRetryExhausted(TransientDBError):
    """A transient failure persisted beyond the configured retry bound."""


class PermanentDBError(DBError):
    """Schema or constraint violation; retrying will not help."""


class UpdateConflict(OvnKubeError):
    """An orchestrator object changed between read and write (HTTP 409)."""


class WatchError(OvnKubeError):
    """The orchestrator watch stream was interrupted."""


class NotReadyError(OvnKubeError):
    """A prerequisite object has not been observed or programmed yet."""


class Cancelled(OvnKubeError):
    """The stop event fired while a blocking call was in progress.

    This is not a failure and must never be reported as one.
    """
