from typing import Optional


class MarketplaceError(Exception):
    category = "internal_error"
    status_code = 500

    def __init__(self, message: str, details: Optional[str] = None):
        self.message = message
        self.details = details if details is not None else message
        super().__init__(message)


class ValidationError(MarketplaceError):
    category = "validation_error"
    status_code = 400


class InsufficientFundsError(ValidationError):
    category = "insufficient_funds"


class AlreadyProcessedError(ValidationError):
    category = "already_processed"


class AuthorizationError(MarketplaceError):
    category = "forbidden"
    status_code = 403

    def __init__(self, message: str = "Not authorized"):
        super().__init__(message)


class NotFoundError(MarketplaceError):
    category = "not_found"
    status_code = 404

    def __init__(self, resource: str, identifier: str, message: Optional[str] = None):
        self.resource = resource
        self.identifier = identifier
        super().__init__(message or f"{resource} {identifier} not found")


class ConflictError(MarketplaceError):
    category = "conflict"
    status_code = 409


class ConfigurationError(MarketplaceError):
    category = "configuration_error"


class SeedRetrievalError(MarketplaceError):
    """Decryption failed. The message never includes cipher details."""

    category = "seed_retrieval_failed"

    def __init__(self):
        super().__init__("Failed to retrieve seed phrase.")


class ChainServiceError(MarketplaceError):
    category = "chain_error"


class ChainTimeoutError(ChainServiceError):
    category = "unconfirmed"

    def __init__(
        self,
        message: str,
        signature: Optional[str] = None,
        last_valid_block_height: Optional[int] = None,
    ):
        self.signature = signature
        self.last_valid_block_height = last_valid_block_height
        super().__init__(message)


class BookkeepingError(MarketplaceError):
    category = "bookkeeping_error"
