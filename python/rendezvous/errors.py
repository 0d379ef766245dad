"""Messaging error definitions.

All messaging errors are defined here with the category the UI layer uses
to decide how to surface them.
"""

from enum import Enum


class MessagingErrorCode(str, Enum):
    """Standardized error codes for the messaging core.

    Format: E_CATEGORY_NAME
    """

    # Authentication errors
    E_UNAUTHENTICATED = "E_UNAUTHENTICATED"

    # Permission errors
    E_CANNOT_INITIATE = "E_CANNOT_INITIATE"
    E_CANNOT_REPLY = "E_CANNOT_REPLY"
    E_NOT_SENDER = "E_NOT_SENDER"
    E_NOT_RECEIVER = "E_NOT_RECEIVER"

    # Not found errors
    E_NOT_FOUND = "E_NOT_FOUND"
    E_CONVERSATION_NOT_FOUND = "E_CONVERSATION_NOT_FOUND"
    E_MESSAGE_NOT_FOUND = "E_MESSAGE_NOT_FOUND"
    E_CALL_NOT_FOUND = "E_CALL_NOT_FOUND"

    # Validation errors
    E_INVALID_REQUEST = "E_INVALID_REQUEST"
    E_MESSAGE_NOT_RESENDABLE = "E_MESSAGE_NOT_RESENDABLE"
    E_MESSAGE_NOT_CONFIRMED = "E_MESSAGE_NOT_CONFIRMED"
    E_INVALID_CALL_TRANSITION = "E_INVALID_CALL_TRANSITION"

    # Entitlement errors
    E_FEATURE_UNAVAILABLE = "E_FEATURE_UNAVAILABLE"

    # Backend errors
    E_STORAGE_ERROR = "E_STORAGE_ERROR"
    E_ENCRYPTION_FAILED = "E_ENCRYPTION_FAILED"


class ErrorCategory(str, Enum):
    """How an error is surfaced to the UI layer."""

    UNAUTHENTICATED = "unauthenticated"
    PERMISSION = "permission"
    NOT_FOUND = "not_found"
    VALIDATION = "validation"
    ENTITLEMENT = "entitlement"
    BACKEND = "backend"


# Error code to category mapping
ERROR_CODE_TO_CATEGORY: dict[MessagingErrorCode, ErrorCategory] = {
    MessagingErrorCode.E_UNAUTHENTICATED: ErrorCategory.UNAUTHENTICATED,
    MessagingErrorCode.E_CANNOT_INITIATE: ErrorCategory.PERMISSION,
    MessagingErrorCode.E_CANNOT_REPLY: ErrorCategory.PERMISSION,
    MessagingErrorCode.E_NOT_SENDER: ErrorCategory.PERMISSION,
    MessagingErrorCode.E_NOT_RECEIVER: ErrorCategory.PERMISSION,
    MessagingErrorCode.E_NOT_FOUND: ErrorCategory.NOT_FOUND,
    MessagingErrorCode.E_CONVERSATION_NOT_FOUND: ErrorCategory.NOT_FOUND,
    MessagingErrorCode.E_MESSAGE_NOT_FOUND: ErrorCategory.NOT_FOUND,
    MessagingErrorCode.E_CALL_NOT_FOUND: ErrorCategory.NOT_FOUND,
    MessagingErrorCode.E_INVALID_REQUEST: ErrorCategory.VALIDATION,
    MessagingErrorCode.E_MESSAGE_NOT_RESENDABLE: ErrorCategory.VALIDATION,
    MessagingErrorCode.E_MESSAGE_NOT_CONFIRMED: ErrorCategory.VALIDATION,
    MessagingErrorCode.E_INVALID_CALL_TRANSITION: ErrorCategory.VALIDATION,
    MessagingErrorCode.E_FEATURE_UNAVAILABLE: ErrorCategory.ENTITLEMENT,
    MessagingErrorCode.E_STORAGE_ERROR: ErrorCategory.BACKEND,
    MessagingErrorCode.E_ENCRYPTION_FAILED: ErrorCategory.BACKEND,
}


class MessagingError(Exception):
    """Base exception for messaging errors.

    Attributes:
        code: The error code enum value
        message: Human-readable error message
        category: How the UI should surface it (derived from code)
    """

    def __init__(self, code: MessagingErrorCode, message: str):
        self.code = code
        self.message = message
        self.category = ERROR_CODE_TO_CATEGORY.get(code, ErrorCategory.BACKEND)
        super().__init__(message)


class UnauthenticatedError(MessagingError):
    """No signed-in user."""

    def __init__(self, message: str = "You must be signed in to use messaging"):
        super().__init__(MessagingErrorCode.E_UNAUTHENTICATED, message)


class PermissionDeniedError(MessagingError):
    """Access-control rule violated."""


class CannotInitiateError(PermissionDeniedError):
    """Initiator role may not open a conversation with the target role."""

    def __init__(self, message: str):
        super().__init__(MessagingErrorCode.E_CANNOT_INITIATE, message)


class CannotReplyError(PermissionDeniedError):
    """User may not post into an existing conversation."""

    def __init__(
        self, message: str = "You do not have permission to reply to this conversation"
    ):
        super().__init__(MessagingErrorCode.E_CANNOT_REPLY, message)


class NotSenderError(PermissionDeniedError):
    """Only the sender may modify or delete a message."""

    def __init__(self, message: str = "You can only delete your own messages"):
        super().__init__(MessagingErrorCode.E_NOT_SENDER, message)


class NotFoundError(MessagingError):
    """Resource not found error."""

    def __init__(
        self, code: MessagingErrorCode = MessagingErrorCode.E_NOT_FOUND, message: str = "Not found"
    ):
        super().__init__(code, message)


class InvalidRequestError(MessagingError):
    """Invalid request error."""

    def __init__(
        self,
        code: MessagingErrorCode = MessagingErrorCode.E_INVALID_REQUEST,
        message: str = "Invalid request",
    ):
        super().__init__(code, message)


class FeatureUnavailableError(MessagingError):
    """Entitlement check denied a feature."""

    def __init__(self, message: str = "Feature not available"):
        super().__init__(MessagingErrorCode.E_FEATURE_UNAVAILABLE, message)
