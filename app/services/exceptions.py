"""Exceptions for the smart routing service layer.

This module contains the exception hierarchy for the service layer,
providing domain-specific exceptions that abstract underlying implementation details.
Every exception carries a stable ``error_code`` the API layer reports to clients.
"""


class ServiceError(Exception):
    """Base exception for all service-level errors."""
    error_code = "SERVICE_ERROR"


class RoutingValidationError(ServiceError):
    """Input failed validation (bad conditions, unsafe or malformed URL)."""
    error_code = "VALIDATION_ERROR"


class UnsafeDestinationError(RoutingValidationError):
    """Destination points at a private or internal network address."""
    error_code = "UNSAFE_URL"


class URLNotFoundError(ServiceError):
    """Link does not exist or the requester does not own it."""
    error_code = "URL_NOT_FOUND"


class URLExpiredError(ServiceError):
    """Link has expired and is no longer valid."""
    error_code = "URL_EXPIRED"


class RoutingRuleNotFoundError(ServiceError):
    """Routing rule does not exist under the given link."""
    error_code = "RULE_NOT_FOUND"


class RoutingTemplateNotFoundError(ServiceError):
    """No routing template with the requested key."""
    error_code = "TEMPLATE_NOT_FOUND"


class RoutingRuleLimitExceededError(ServiceError):
    """The link already holds the maximum number of routing rules."""
    error_code = "RULE_LIMIT_EXCEEDED"


class TransientStoreError(ServiceError):
    """The database failed; the operation may be retried."""
    error_code = "STORE_UNAVAILABLE"
