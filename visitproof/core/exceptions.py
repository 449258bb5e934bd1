"""
VisitProof Exception Hierarchy

All exceptions inherit from VisitProofError for easy catching.

Pure validators (signer, geofence, consensus) never raise these;
they return negative results instead.
"""


class VisitProofError(Exception):
    """Base exception for all VisitProof errors"""

    def __init__(self, message: str, details: dict = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self):
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({details_str})"
        return self.message


class ConfigurationError(VisitProofError):
    """Raised at startup when required configuration is missing or invalid"""
    pass


class StoreError(VisitProofError):
    """Raised when a shared store operation fails"""
    pass


class StoreUnavailableError(StoreError):
    """Raised when the shared store cannot be reached"""
    pass


class QueueError(VisitProofError):
    """Raised when a job queue operation is invalid"""
    pass


class SettlementError(VisitProofError):
    """Raised when settlement fails"""
    pass


class ProviderError(SettlementError):
    """Raised by a settlement provider when a capture call fails"""
    pass
