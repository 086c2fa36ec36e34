"""Pipeline error taxonomy.

Job-level failures are caught at the coordinator boundary and recorded on
the job-execution ledger; nothing here is expected to crash the process.
"""

from typing import Any, Optional


class PipelineError(Exception):
    """Base class for every error raised by the ingestion/retention core."""

    def __init__(self, message: str, context: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


class ConfigurationError(PipelineError):
    """A required credential or setting is missing. Fatal at startup."""


class CollaboratorFetchError(PipelineError):
    """An external helpdesk call failed after its bounded retries."""


class PersistenceError(PipelineError):
    """A database transaction failed.

    Earlier batches of a bulk operation may already be committed.
    """


class AlreadyRunningError(PipelineError):
    """A manual trigger arrived while the same job was already running."""


class DecryptionError(PipelineError):
    """Stored ciphertext could not be decrypted."""
