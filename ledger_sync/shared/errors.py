"""Error taxonomy shared by every component of the sync engine.

Each class maps to one failure family so the orchestrator can decide
what to retry and what to surface:

    TransportError  network / HTTP failure, retryable by the caller
    ProtocolError   response did not have the expected shape
    StorageError    transaction or constraint failure in the local store
    MigrationError  schema migration step failed (store must not be used)
    CryptoError     vault key or ciphertext could not be used
    TaskStateError  invalid sync task transition
"""


class LedgerSyncError(Exception):
    """Base class for all sync engine errors."""

    retryable: bool = False


class TransportError(LedgerSyncError):
    """Network or HTTP-level failure talking to the remote API."""

    retryable = True

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ProtocolError(LedgerSyncError):
    """Remote API answered with a malformed or unexpected payload."""


class StorageError(LedgerSyncError):
    """Local store transaction failed; the unit of work was rolled back."""


class MigrationError(StorageError):
    """A schema migration step failed; startup must abort."""


class CryptoError(LedgerSyncError):
    """Vault encryption, decryption or key handling failed."""


class TaskStateError(LedgerSyncError):
    """A sync task was moved through a transition its status does not allow."""
