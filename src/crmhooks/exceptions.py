"""crmhooks exception hierarchy.

Provides structured exceptions for error handling throughout the codebase.
All exceptions inherit from CRMHooksError for easy catching.
"""

from __future__ import annotations


class CRMHooksError(Exception):
    """Base exception for all crmhooks errors.

    Attributes:
        message: Human-readable error description.
        code: Machine-readable error code for API responses.
    """

    code: str = "crmhooks_error"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict[str, object]:
        """Convert exception to API-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
            }
        }


class ValidationError(CRMHooksError):
    """Invalid input provided.

    Attributes:
        field: The field that failed validation.
        message: Description of the validation failure.
    """

    code: str = "validation_error"

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        super().__init__(f"{field}: {message}")

    def to_dict(self) -> dict[str, object]:
        """Convert exception to API-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "field": self.field,
                "message": self.message,
            }
        }


class NotFoundError(CRMHooksError):
    """Resource not found.

    Raised when a queued delivery or subscription doesn't exist.

    Attributes:
        resource_type: Type of resource (e.g., "queued_delivery", "subscription").
        resource_id: ID of the missing resource.
    """

    code: str = "not_found"

    def __init__(self, resource_type: str, resource_id: str) -> None:
        self.resource_type = resource_type
        self.resource_id = resource_id
        super().__init__(f"{resource_type} not found: {resource_id}")

    def to_dict(self) -> dict[str, object]:
        """Convert exception to API-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "resource_type": self.resource_type,
                "resource_id": self.resource_id,
                "message": self.message,
            }
        }


class StorageError(CRMHooksError):
    """Storage operation failed.

    Raised when the queue store is unavailable or rejects a write.
    """

    code: str = "storage_error"


class DeliveryError(CRMHooksError):
    """Webhook delivery failed in a way the caller must see.

    Transient HTTP failures are recorded on the queue, not raised. This is
    reserved for operator-facing paths such as test deliveries.
    """

    code: str = "delivery_error"


class InvalidTransitionError(CRMHooksError):
    """Requested queue state transition is not allowed.

    Attributes:
        resource_id: ID of the queued delivery.
        current: Status the delivery is currently in.
        action: The rejected administrative action (retry, cancel).
    """

    code: str = "invalid_transition"

    def __init__(self, resource_id: str, current: str, action: str) -> None:
        self.resource_id = resource_id
        self.current = current
        self.action = action
        super().__init__(f"Cannot {action} delivery {resource_id} in status '{current}'")

    def to_dict(self) -> dict[str, object]:
        """Convert exception to API-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "resource_id": self.resource_id,
                "current_status": self.current,
                "action": self.action,
                "message": self.message,
            }
        }


class ConfigurationError(CRMHooksError):
    """Configuration error.

    Raised when required configuration is missing or invalid.
    """

    code: str = "configuration_error"
