"""
Economy Error Taxonomy

- InvalidAmountError: caller contract violations, raised before any mutation
- StorageError: durable storage unreachable, failing or timing out
- MigrationError: schema could not be brought to the current version
"""


class EconomyError(Exception):
    """Base class for all economy errors"""


class InvalidAmountError(EconomyError, ValueError):
    """Raised when a trade or decay amount violates the operation contract"""

    def __init__(self, amount, message: str = "amount must be a positive integer"):
        self.amount = amount
        super().__init__(f"{message} (got {amount!r})")


class StorageError(EconomyError):
    """Raised when a durable storage operation fails or times out"""

    def __init__(self, operation: str, cause: Exception):
        self.operation = operation
        self.cause = cause
        super().__init__(f"{operation} failed: {type(cause).__name__}: {cause}")


class MigrationError(EconomyError):
    """Raised when a schema migration step fails; fatal at startup"""


class MigrationOrderError(MigrationError):
    """Raised when a migration step would run out of order"""
