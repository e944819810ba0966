"""Error taxonomy for the payment pipeline.

Every failure that reaches a caller is an ``AppError`` carrying a category,
a severity, an HTTP status, a sanitized user message and a retryable hint.
Call sites that know what went wrong build one with ``create_error``; opaque
collaborator exceptions are converted by ``classify_exception``, which walks
an ordered rule list over a normalized ``ErrorDescription``.
"""

import datetime as dt
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from wedly_shared.utils.sanitize import sanitize_message


class ErrorCategory(str, Enum):
    """Failure categories, also used as the ``code`` of error responses."""

    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    VALIDATION = "validation"
    PAYMENT = "payment"
    DATABASE = "database"
    EMAIL = "email"
    NETWORK = "network"
    CONFIGURATION = "configuration"
    RATE_LIMIT = "rate_limit"
    WEBHOOK = "webhook"
    INTERNAL = "internal"


class ErrorSeverity(str, Enum):
    """Operational severity; drives the log level of a failure."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# === Normalized error description ===


@dataclass(frozen=True)
class ErrorDescription:
    """Normalized shape of a raw failure: message, code and type."""

    message: str
    code: str | None = None
    type: str | None = None

    def fields(self) -> tuple[str, str, str]:
        """Lower-cased (message, type, code) for substring matching."""
        return (
            (self.message or "").lower(),
            (self.type or "").lower(),
            (self.code or "").lower(),
        )


class CollaboratorError(Exception):
    """Base for errors raised by collaborator adapters.

    Adapters set ``code`` and ``error_type`` so classification and retry
    decisions never depend on the wrapped library's exception layout.
    """

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        error_type: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.error_type = error_type

    def describe(self) -> ErrorDescription:
        return ErrorDescription(
            message=self.message,
            code=self.code,
            type=self.error_type or type(self).__name__,
        )


E = TypeVar("E", bound=BaseException)

_DESCRIBERS: dict[type[BaseException], Callable[[Any], ErrorDescription]] = {}


def register_error_describer(
    exc_type: type[E], describer: Callable[[E], ErrorDescription]
) -> None:
    """Register how a third-party exception type is described.

    Args:
        exc_type: Exception class raised by a library (e.g. botocore ClientError)
        describer: Function producing the normalized description
    """
    _DESCRIBERS[exc_type] = describer


def describe_error(error: BaseException) -> ErrorDescription:
    """Produce the normalized description of any exception.

    Args:
        error: Raised exception

    Returns:
        Description from the adapter, a registered describer, or the
        exception's text and class name.
    """
    if isinstance(error, CollaboratorError):
        return error.describe()
    for cls in type(error).__mro__:
        describer = _DESCRIBERS.get(cls)
        if describer is not None:
            return describer(error)
    return ErrorDescription(message=str(error), type=type(error).__name__)


# === Classification ===


@dataclass(frozen=True)
class Classification:
    """Result of classifying a raw failure."""

    category: ErrorCategory
    severity: ErrorSeverity
    http_status: int
    user_message: str
    retryable: bool


@dataclass(frozen=True)
class ClassificationRule:
    """One ordered predicate of the classifier.

    A rule matches when any keyword occurs in the lower-cased message, or any
    type/code keyword occurs in the lower-cased type/code.
    """

    classification: Classification
    message_keywords: tuple[str, ...] = ()
    type_keywords: tuple[str, ...] = ()
    code_keywords: tuple[str, ...] = ()

    def matches(self, description: ErrorDescription) -> bool:
        message, error_type, code = description.fields()
        return (
            any(k in message for k in self.message_keywords)
            or any(k in error_type for k in self.type_keywords)
            or any(k in code for k in self.code_keywords)
        )


GENERIC_USER_MESSAGE = "An unexpected error occurred. Please try again."

DEFAULT_CLASSIFICATION = Classification(
    category=ErrorCategory.INTERNAL,
    severity=ErrorSeverity.HIGH,
    http_status=500,
    user_message=GENERIC_USER_MESSAGE,
    retryable=False,
)

# First match wins: authentication before generic validation before payment.
CLASSIFICATION_RULES: tuple[ClassificationRule, ...] = (
    ClassificationRule(
        Classification(
            ErrorCategory.AUTHENTICATION,
            ErrorSeverity.MEDIUM,
            401,
            "Authentication required. Please log in and try again.",
            False,
        ),
        message_keywords=("unauthorized", "authentication", "invalid token", "expired token"),
        type_keywords=("auth",),
        code_keywords=("auth",),
    ),
    ClassificationRule(
        Classification(
            ErrorCategory.AUTHORIZATION,
            ErrorSeverity.MEDIUM,
            403,
            "You do not have permission to perform this action.",
            False,
        ),
        message_keywords=("forbidden", "permission", "access denied"),
        code_keywords=("permission",),
    ),
    ClassificationRule(
        Classification(
            ErrorCategory.VALIDATION,
            ErrorSeverity.LOW,
            400,
            "Invalid request. Please check your input and try again.",
            False,
        ),
        message_keywords=("validation", "invalid", "required", "missing"),
        type_keywords=("validation",),
        code_keywords=("invalid",),
    ),
    ClassificationRule(
        Classification(
            ErrorCategory.PAYMENT,
            ErrorSeverity.HIGH,
            400,
            "Payment processing failed. Please try again or use a different payment method.",
            True,
        ),
        message_keywords=("payment", "stripe", "checkout", "card"),
        type_keywords=("stripe", "payment"),
    ),
    ClassificationRule(
        Classification(
            ErrorCategory.DATABASE,
            ErrorSeverity.HIGH,
            503,
            "Service temporarily unavailable. Please try again in a moment.",
            True,
        ),
        message_keywords=("database", "dynamodb", "connection"),
        code_keywords=("db", "connection", "throughput", "throttl"),
    ),
    ClassificationRule(
        Classification(
            ErrorCategory.NETWORK,
            ErrorSeverity.MEDIUM,
            503,
            "Network error. Please check your connection and try again.",
            True,
        ),
        message_keywords=("network", "timeout", "timed out", "econnreset", "etimedout"),
        code_keywords=("network", "timeout"),
    ),
    ClassificationRule(
        Classification(
            ErrorCategory.RATE_LIMIT,
            ErrorSeverity.MEDIUM,
            429,
            "Too many requests. Please wait a moment and try again.",
            True,
        ),
        message_keywords=("rate limit", "too many requests"),
        type_keywords=("ratelimit",),
        code_keywords=("rate",),
    ),
    ClassificationRule(
        Classification(
            ErrorCategory.EMAIL,
            ErrorSeverity.LOW,
            500,
            "Email service temporarily unavailable. Your request was processed successfully.",
            True,
        ),
        message_keywords=("email", "smtp"),
        type_keywords=("email",),
    ),
    ClassificationRule(
        Classification(
            ErrorCategory.WEBHOOK,
            ErrorSeverity.HIGH,
            400,
            "Webhook processing failed.",
            False,
        ),
        message_keywords=("webhook", "signature"),
        type_keywords=("webhook",),
    ),
    ClassificationRule(
        Classification(
            ErrorCategory.CONFIGURATION,
            ErrorSeverity.CRITICAL,
            500,
            "Service configuration error. Please try again later.",
            False,
        ),
        message_keywords=("configuration", "config", "environment", "missing key"),
    ),
)


def classify(error: BaseException | ErrorDescription) -> Classification:
    """Classify a raw failure by the first matching rule.

    Args:
        error: Exception or an already normalized description

    Returns:
        The matching classification, or INTERNAL/HIGH/500 when none matches
    """
    description = error if isinstance(error, ErrorDescription) else describe_error(error)
    for rule in CLASSIFICATION_RULES:
        if rule.matches(description):
            return rule.classification
    return DEFAULT_CLASSIFICATION


# === AppError ===


class ErrorResponse(BaseModel):
    """Uniform error envelope returned to every caller."""

    model_config = ConfigDict(populate_by_name=True)

    error: str = Field(..., description="Sanitized user-facing message")
    code: ErrorCategory = Field(..., description="Error category")
    request_id: str | None = Field(default=None, alias="requestId")
    timestamp: dt.datetime
    retryable: bool = False


class AppError(Exception):
    """A classified failure.

    ``message`` is internal and only ever logged (sanitized); ``user_message``
    is safe to return and is sanitized on construction.
    """

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory,
        severity: ErrorSeverity,
        http_status: int,
        user_message: str,
        context: Mapping[str, Any] | None = None,
        retryable: bool = False,
        request_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.category = category
        self.severity = severity
        self.http_status = http_status
        self.user_message = sanitize_message(user_message) or GENERIC_USER_MESSAGE
        self.context: dict[str, Any] = dict(context or {})
        self.retryable = retryable
        self.timestamp = dt.datetime.now(dt.UTC)
        self.request_id = request_id

    def __repr__(self) -> str:
        return (
            f"AppError(category={self.category.value!r}, severity={self.severity.value!r}, "
            f"http_status={self.http_status}, message={sanitize_message(self.message)!r})"
        )

    def to_response(self, request_id: str | None = None) -> ErrorResponse:
        """Build the error envelope for this failure.

        Args:
            request_id: Correlation ID of the request; overrides the stored one

        Returns:
            ErrorResponse ready for serialization with ``by_alias=True``
        """
        return ErrorResponse(
            error=self.user_message,
            code=self.category,
            request_id=request_id or self.request_id,
            timestamp=self.timestamp,
            retryable=self.retryable,
        )


def create_error(
    message: str,
    category: ErrorCategory,
    severity: ErrorSeverity,
    http_status: int,
    user_message: str,
    context: Mapping[str, Any] | None = None,
    retryable: bool = False,
) -> AppError:
    """Construct an AppError when the call site knows the exact classification."""
    return AppError(
        message,
        category=category,
        severity=severity,
        http_status=http_status,
        user_message=user_message,
        context=context,
        retryable=retryable,
    )


def classify_exception(
    error: BaseException,
    *,
    request_id: str | None = None,
    context: Mapping[str, Any] | None = None,
) -> AppError:
    """Convert any exception into an AppError.

    AppErrors pass through unchanged (gaining the request ID if they lack
    one); anything else is classified by rule.

    Args:
        error: Raised exception
        request_id: Correlation ID of the current request
        context: Diagnostic fields to attach

    Returns:
        The classified AppError
    """
    if isinstance(error, AppError):
        if request_id and not error.request_id:
            error.request_id = request_id
        return error

    description = describe_error(error)
    classification = classify(description)
    diagnostic: dict[str, Any] = dict(context or {})
    if description.code:
        diagnostic.setdefault("error_code", description.code)
    if description.type:
        diagnostic.setdefault("error_type", description.type)

    app_error = AppError(
        description.message or type(error).__name__,
        category=classification.category,
        severity=classification.severity,
        http_status=classification.http_status,
        user_message=classification.user_message,
        context=diagnostic,
        retryable=classification.retryable,
        request_id=request_id,
    )
    app_error.__cause__ = error
    return app_error


def validate_required(data: Mapping[str, Any], required_fields: Iterable[str]) -> None:
    """Raise a VALIDATION error naming every missing or empty field.

    Args:
        data: Submitted values
        required_fields: Field names that must be present and truthy

    Raises:
        AppError: VALIDATION/LOW/400 when any field is missing
    """
    missing = [name for name in required_fields if not data.get(name)]
    if missing:
        joined = ", ".join(missing)
        raise create_error(
            f"Missing required fields: {joined}",
            ErrorCategory.VALIDATION,
            ErrorSeverity.LOW,
            400,
            f"Please provide the following required information: {joined}",
            context={"missing_fields": missing, "provided_fields": sorted(data.keys())},
        )
