"""Shared exceptions module.

Exceptions fall into four groups, which decide how callers react:

- transport errors (webhook signature/configuration) are rejected at the gateway;
- transient errors (store conflicts, provider outages) propagate so the caller retries;
- semantic errors (malformed events) are logged and acknowledged;
- business-rule rejections are returned as 4xx responses to the direct caller.
"""

from typing import Optional

from pydantic import ValidationError


class BillflowException(Exception):
    """Base exception for billflow services."""

    pass


class NotFoundException(BillflowException):
    """Exception raised when an object is not found."""

    def __init__(self, message: Optional[str] = "Object not found"):
        """Create a new NotFoundException instance.

        Args:
        ----
            message (str, optional): The error message. Has default message.

        """
        self.message = message
        super().__init__(self.message)


class PermissionException(BillflowException):
    """Exception raised when a caller is not allowed to perform an action."""

    def __init__(
        self,
        message: Optional[str] = "Caller does not have the right to perform this action",
    ):
        """Create a new PermissionException instance.

        Args:
        ----
            message (str, optional): The error message. Has default message.

        """
        self.message = message
        super().__init__(self.message)


class InvalidStateError(BillflowException):
    """Exception raised when a subscription is not in a state that allows the operation.

    Raised by strictly checked operations (cancel, trial extension) that originate
    from this system and must not double-apply.
    """

    def __init__(self, message: Optional[str] = "Object is in an invalid state"):
        """Create a new InvalidStateError instance.

        Args:
        ----
            message (str, optional): The error message. Has default message.

        """
        self.message = message
        super().__init__(self.message)


class SubscriptionConflictError(BillflowException):
    """Exception raised when a tenant already holds an active or trialing subscription."""

    def __init__(self, message: Optional[str] = "Tenant already has an active subscription"):
        """Create a new SubscriptionConflictError instance.

        Args:
        ----
            message (str, optional): The error message. Has default message.

        """
        self.message = message
        super().__init__(self.message)


class InvalidPlanError(BillflowException):
    """Exception raised when a requested plan/price does not exist or is inactive."""

    def __init__(self, message: Optional[str] = "Invalid plan or price"):
        """Create a new InvalidPlanError instance.

        Args:
        ----
            message (str, optional): The error message. Has default message.

        """
        self.message = message
        super().__init__(self.message)


class ImmutableRecordError(BillflowException):
    """Exception raised on an attempt to modify an append-only or immutable record."""

    def __init__(self, record_type: str, message: str = "Record is immutable"):
        """Create a new ImmutableRecordError instance.

        Args:
        ----
            record_type (str): The name of the immutable record type.
            message (str, optional): The error message. Has default message.

        """
        self.record_type = record_type
        self.message = message
        super().__init__(f"{message}: {record_type}")


class ExternalServiceError(BillflowException):
    """Exception raised when an external service fails or times out."""

    def __init__(self, service_name: str, message: Optional[str] = "External service failed"):
        """Create a new ExternalServiceError instance.

        Args:
        ----
            service_name (str): The name of the external service.
            message (str, optional): The error message. Has default message.

        """
        self.service_name = service_name
        self.message = message
        super().__init__(f"{service_name}: {message}")


class ConcurrentUpdateError(BillflowException):
    """Exception raised when a subscription row was modified by another writer.

    Transient: the webhook gateway answers with a non-2xx status so the provider retries.
    """

    def __init__(self, message: Optional[str] = "Subscription was modified concurrently"):
        """Create a new ConcurrentUpdateError instance.

        Args:
        ----
            message (str, optional): The error message. Has default message.

        """
        self.message = message
        super().__init__(self.message)


class WebhookSignatureError(BillflowException):
    """Exception raised when a webhook signature is missing, invalid or expired."""

    def __init__(self, message: Optional[str] = "Invalid webhook signature"):
        """Create a new WebhookSignatureError instance."""
        self.message = message
        super().__init__(self.message)


class WebhookNotConfiguredError(BillflowException):
    """Exception raised when no webhook signing secret is configured."""

    def __init__(self, message: Optional[str] = "Webhook signing secret is not configured"):
        """Create a new WebhookNotConfiguredError instance."""
        self.message = message
        super().__init__(self.message)


class MalformedEventError(BillflowException):
    """Exception raised when a provider event cannot be interpreted.

    Semantic error: acknowledged so the provider does not retry forever.
    """

    def __init__(self, message: Optional[str] = "Malformed event", event_id: Optional[str] = None):
        """Create a new MalformedEventError instance.

        Args:
        ----
            message (str, optional): The error message. Has default message.
            event_id (str, optional): The provider event ID, when it could be read.

        """
        self.message = message
        self.event_id = event_id
        super().__init__(self.message)


def unpack_validation_error(exc: ValidationError) -> dict:
    """Unpack a Pydantic validation error into a dictionary.

    Args:
    ----
        exc (ValidationError): The Pydantic validation error.

    Returns:
    -------
        dict: The dictionary representation of the validation error.

    """
    error_messages = []
    for error in exc.errors():
        field = ".".join(str(loc) for loc in error["loc"])
        message = error["msg"]
        error_messages.append({field: message})

    return {"errors": error_messages}
