"""
Structured Error Taxonomy — Typed exceptions for the market cycle service.

Design principles:
  - Every error carries `retryable` + `error_code` for automated decisions
  - Hierarchy mirrors the service layers: Network → Chain → Deployment → Store → Feed
  - HTTP-safe: each class maps to a recommended status code
  - Structured logging friendly: all errors serialize cleanly to JSON
"""

from __future__ import annotations

__all__ = [
    # Base
    "MarketCycleError",
    "ConfigurationError",
    # Network layer
    "TransientNetworkError",
    "RateLimitError",
    # Chain layer
    "ContractRevertError",
    "TransactionUnconfirmedError",
    # Deployment layer
    "DeploymentError",
    "MarketEventMissingError",
    "LockContentionError",
    "DeploymentInProgressError",
    # Store layer
    "StoreUnavailableError",
    # Ranking feed layer
    "FeedUnavailableError",
    "InvalidSnapshotError",
    # Predicates
    "is_transient",
]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Base
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class MarketCycleError(Exception):
    """Root exception for the market cycle service.

    Attributes:
        retryable: If True, the caller should consider retrying the operation.
        error_code: Machine-readable code for dashboards and alerting.
        http_status: Suggested HTTP status code for API responses.
    """

    retryable: bool = False
    error_code: str = "MARKET_CYCLE_ERROR"
    http_status: int = 500

    def __init__(self, message: str, *, detail: str | None = None):
        self.detail = detail
        super().__init__(message)

    def to_dict(self) -> dict:
        """Serialize for structured logging and API responses."""
        return {
            "error_code": self.error_code,
            "message": str(self),
            "detail": self.detail,
            "retryable": self.retryable,
            "http_status": self.http_status,
        }


class ConfigurationError(MarketCycleError):
    """A required setting is missing or invalid."""

    error_code = "CONFIGURATION_ERROR"
    http_status = 500


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Network Layer — Errors from any outbound call (RPC, HTTP feed)
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TransientNetworkError(MarketCycleError):
    """Connection failure, timeout or 5xx from an upstream service."""

    retryable = True
    error_code = "TRANSIENT_NETWORK"
    http_status = 503

    def __init__(self, message: str, *, service: str | None = None, **kwargs):
        self.service = service
        super().__init__(message, **kwargs)

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["service"] = self.service
        return d


class RateLimitError(TransientNetworkError):
    """Upstream service answered 429 / quota exceeded."""

    error_code = "RATE_LIMITED"
    http_status = 429

    def __init__(self, message: str, *, retry_after: float | None = None, **kwargs):
        self.retry_after = retry_after
        super().__init__(message, **kwargs)

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["retry_after"] = self.retry_after
        return d


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Chain Layer — Errors from contract execution
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class ContractRevertError(MarketCycleError):
    """A contract call or transaction reverted. Never retried."""

    error_code = "CONTRACT_REVERT"
    http_status = 502

    def __init__(self, message: str, *, tx_hash: str | None = None, **kwargs):
        self.tx_hash = tx_hash
        super().__init__(message, **kwargs)

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["tx_hash"] = self.tx_hash
        return d


class TransactionUnconfirmedError(TransientNetworkError):
    """
    A transaction was broadcast but no receipt arrived in time.

    Not retryable: the original may still be mined, so resubmitting could
    duplicate it. Callers keep ``tx_hash`` and wait on it instead.
    """

    retryable = False
    error_code = "TRANSACTION_UNCONFIRMED"
    http_status = 504

    def __init__(self, message: str, *, tx_hash: str, **kwargs):
        self.tx_hash = tx_hash
        super().__init__(message, **kwargs)

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["tx_hash"] = self.tx_hash
        return d


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Deployment Layer — Errors from market deployment attempts
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class DeploymentError(MarketCycleError):
    """Base for all deployment failures."""

    error_code = "DEPLOYMENT_ERROR"
    http_status = 500

    def __init__(self, message: str, *, entity_id: int | None = None, **kwargs):
        self.entity_id = entity_id
        super().__init__(message, **kwargs)

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["entity_id"] = self.entity_id
        return d


class MarketEventMissingError(DeploymentError):
    """The deployment transaction confirmed but emitted no creation event."""

    error_code = "MARKET_EVENT_MISSING"
    http_status = 502

    def __init__(self, message: str, *, tx_hash: str | None = None, **kwargs):
        self.tx_hash = tx_hash
        super().__init__(message, **kwargs)

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["tx_hash"] = self.tx_hash
        return d


class LockContentionError(DeploymentError):
    """Another deployment for the same entity holds the lock. Skip this tick."""

    error_code = "DEPLOYMENT_IN_PROGRESS"
    http_status = 409


DeploymentInProgressError = LockContentionError


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Store Layer — Errors from the persistent cycle store
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class StoreUnavailableError(MarketCycleError):
    """The persistent store is unreachable. Halts scheduler tasks."""

    error_code = "STORE_UNAVAILABLE"
    http_status = 503

    def __init__(self, message: str, *, operation: str = "", **kwargs):
        self.operation = operation
        super().__init__(message, **kwargs)

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["operation"] = self.operation
        return d


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Ranking Feed Layer — Errors from the external ranking feed
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class FeedUnavailableError(MarketCycleError):
    """The ranking feed could not produce a usable snapshot. Skip this tick."""

    error_code = "FEED_UNAVAILABLE"
    http_status = 502


class InvalidSnapshotError(FeedUnavailableError):
    """The feed answered, but the payload was malformed or empty."""

    error_code = "INVALID_SNAPSHOT"
    http_status = 502


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Predicates
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def is_transient(exc: BaseException) -> bool:
    """Default retry predicate: only typed, retryable network errors."""
    return isinstance(exc, TransientNetworkError) and exc.retryable
