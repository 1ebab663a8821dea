"""
Error taxonomy for the drop lifecycle.

NotFound is deliberately absent: a missing record is an outcome
(RemoveResult.NOT_FOUND / ClaimOutcome.NOT_FOUND), not an exception.
"""


class DropError(Exception):
    """Base class for all drop lifecycle errors."""
    pass


class ValidationError(DropError):
    """User input failed a local precondition. Nothing was mutated, nothing was sent."""
    pass


class ConfigurationError(DropError):
    """Required configuration (contract name, signing key, wasm file) is missing."""
    pass


class StorageError(DropError):
    """The durable local medium failed. Fatal for the operation in progress."""
    pass


class RemoteError(DropError):
    """A gateway call did not succeed."""

    def __init__(self, message: str, method: str = ""):
        super().__init__(message)
        self.method = method


class RemoteRejection(RemoteError):
    """The call reached the ledger and was refused (already claimed, account taken, ...)."""
    pass


class RemoteUnavailable(RemoteError):
    """Transport failure reaching the ledger."""
    pass
