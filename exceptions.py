# ============================================================================
#  exceptions.py — Sync Error Hierarchy
#  Version: 1.0.2
#  CHANGES: Split transport errors per adapter, added retryable flag
# ============================================================================
"""Exception hierarchy for the PowerBody / Shopify sync.

    SyncError (base)
    ├── ConfigurationError   (fix .env and rerun)
    ├── TransportError       (timeouts, 5xx, 429 - retried by the adapters)
    │   ├── ShopifyError
    │   └── PowerBodyError
    ├── SessionError         (forces a PowerBody re-login)
    └── ValidationFailed     (order payload rejected before submission)

Domain outcomes returned by PowerBody (ALREADY_EXISTS, FAIL, ...) are not
exceptions; see ``models.PowerBodyResult``.
"""
from typing import Any, Dict, List, Optional


class SyncError(Exception):
    """Base class for every error raised by the sync engine."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None,
                 cause: Optional[Exception] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.cause = cause
        if cause:
            self.__cause__ = cause

    def __str__(self) -> str:
        if not self.details:
            return self.message
        detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
        return f"{self.message} ({detail_str})"


class ConfigurationError(SyncError):
    """Required configuration is missing or malformed."""


class TransportError(SyncError):
    """Network or protocol failure talking to a remote system."""

    def __init__(self, message: str, status_code: Optional[int] = None,
                 body: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.status_code = status_code
        self.body = body

    @property
    def retryable(self) -> bool:
        # No status code means the request never got an answer
        if self.status_code is None:
            return True
        return self.status_code == 429 or self.status_code >= 500


class ShopifyError(TransportError):
    """Shopify REST/GraphQL call failed (after retries when retryable)."""


class PowerBodyError(TransportError):
    """PowerBody SOAP call failed after exhausting its retry budget."""


class SessionError(SyncError):
    """PowerBody session could not be established."""


class ValidationFailed(SyncError):
    """Mapped order is missing fields PowerBody requires."""

    def __init__(self, message: str, errors: List[str], **kwargs):
        super().__init__(message, **kwargs)
        self.errors = errors
# ============================================================================
# End of exceptions.py — Version: 1.0.2
# ============================================================================
