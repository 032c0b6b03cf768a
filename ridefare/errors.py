"""
Domain errors for the pricing engine and order lifecycle.

Every error carries a stable ``code`` and the HTTP status the API layer
maps it to; ``main.py`` registers a single handler for ``PricingError``.
"""
from typing import Any


class PricingError(Exception):
    """Base domain error."""

    status_code: int = 500

    def __init__(self, message: str, code: str = "PRICING_ERROR", details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(PricingError):
    """Context out of range, malformed promo code, invalid rule or transition."""

    status_code = 422

    def __init__(self, message: str, code: str = "VALIDATION_ERROR", details: dict[str, Any] | None = None) -> None:
        super().__init__(message, code, details)


class NotFoundError(PricingError):
    status_code = 404

    def __init__(self, resource: str, resource_id: str) -> None:
        super().__init__(
            message=f"{resource} {resource_id} not found",
            code="NOT_FOUND",
            details={"resource": resource, "id": resource_id},
        )


class VersionConflictError(PricingError):
    """Optimistic lock miss; the caller should re-read and retry."""

    status_code = 409

    def __init__(self, order_id: str, expected_version: int) -> None:
        self.order_id = order_id
        self.expected_version = expected_version
        super().__init__(
            message=f"Order {order_id} changed since version {expected_version}",
            code="VERSION_CONFLICT",
            details={"order_id": order_id, "expected_version": expected_version},
        )


class QuotaExceededError(PricingError):
    status_code = 409

    def __init__(self, rule_id: str, counter: str) -> None:
        self.rule_id = rule_id
        self.counter = counter
        super().__init__(
            message=f"Usage cap '{counter}' reached for rule {rule_id}",
            code="QUOTA_EXCEEDED",
            details={"rule_id": rule_id, "counter": counter},
        )


class BackendUnavailableError(PricingError):
    status_code = 503

    def __init__(self, message: str = "Backend is unavailable", retry_after: int = 1) -> None:
        self.retry_after = retry_after
        super().__init__(message, "BACKEND_UNAVAILABLE", {"retry_after": retry_after})


class CatalogUnavailableError(BackendUnavailableError):
    def __init__(self, retry_after: int = 5) -> None:
        super().__init__("Rule catalog could not be loaded", retry_after)
        self.code = "CATALOG_UNAVAILABLE"


class InternalError(PricingError):
    """Invariant violation; never committed."""

    status_code = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, "INTERNAL", details)
