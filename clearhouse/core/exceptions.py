"""
Clearhouse Exception Hierarchy

All exceptions inherit from ClearhouseError for easy catching.
"""


class ClearhouseError(Exception):
    """Base exception for all Clearhouse errors"""

    def __init__(self, message: str, details: dict = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self):
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({details_str})"
        return self.message


class ValidationError(ClearhouseError):
    """Raised when input is rejected (bad bid, bad listing)"""
    pass


class NotFoundError(ClearhouseError):
    """Raised when a referenced entity does not exist"""
    pass


class InvalidStateError(ClearhouseError):
    """Raised when an entity is not in a state that allows the operation"""
    pass


class StoreError(ClearhouseError):
    """Raised when the persistent store is unreachable or misbehaves"""
    pass


class GatewayError(ClearhouseError):
    """Raised when the ledger gateway is unreachable or misconfigured"""
    pass


class SettlementDeferred(ClearhouseError):
    """Raised when a ledger outcome stays indeterminate after reconciliation"""
    pass
