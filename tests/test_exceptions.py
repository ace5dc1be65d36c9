"""Tests for crmhooks exception hierarchy."""

import pytest

from crmhooks.exceptions import (
    ConfigurationError,
    CRMHooksError,
    DeliveryError,
    InvalidTransitionError,
    NotFoundError,
    StorageError,
    ValidationError,
)


class TestCRMHooksError:
    """Tests for the base CRMHooksError class."""

    def test_error_message(self):
        """Should store and return message."""
        error = CRMHooksError("Something went wrong")
        assert error.message == "Something went wrong"
        assert str(error) == "Something went wrong"

    def test_to_dict(self):
        """Should convert to API-friendly dict."""
        assert CRMHooksError("Something went wrong").to_dict() == {
            "error": {
                "code": "crmhooks_error",
                "message": "Something went wrong",
            }
        }

    def test_inheritance(self):
        """All custom exceptions should inherit from CRMHooksError."""
        exceptions = [
            ValidationError("field", "invalid"),
            NotFoundError("subscription", "whk_1"),
            StorageError("failed"),
            DeliveryError("failed"),
            InvalidTransitionError("que_1", "completed", "cancel"),
            ConfigurationError("missing"),
        ]
        for exc in exceptions:
            assert isinstance(exc, CRMHooksError)

    def test_can_be_caught_as_base(self):
        """Subclasses are caught by the base class."""
        with pytest.raises(CRMHooksError):
            raise StorageError("queue unavailable")


class TestSpecificErrors:
    """Tests for subclass details."""

    def test_validation_error(self):
        """ValidationError prefixes the field name."""
        error = ValidationError("events", "unknown event type 'x'")
        assert error.message == "events: unknown event type 'x'"
        assert error.to_dict()["error"]["field"] == "events"
        assert error.code == "validation_error"

    def test_not_found_error(self):
        """NotFoundError names the resource."""
        error = NotFoundError("queued_delivery", "que_1")
        assert error.message == "queued_delivery not found: que_1"
        assert error.to_dict()["error"]["resource_id"] == "que_1"
        assert error.code == "not_found"

    def test_invalid_transition_error(self):
        """InvalidTransitionError reports the current status and action."""
        error = InvalidTransitionError("que_1", "processing", "cancel")
        assert error.message == "Cannot cancel delivery que_1 in status 'processing'"
        details = error.to_dict()["error"]
        assert details["current_status"] == "processing"
        assert details["action"] == "cancel"
        assert error.code == "invalid_transition"

    def test_error_codes(self):
        """Each error type has its own code."""
        assert StorageError("x").code == "storage_error"
        assert DeliveryError("x").code == "delivery_error"
        assert ConfigurationError("x").code == "configuration_error"
