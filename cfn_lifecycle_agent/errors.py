"""Error taxonomy for CloudFormation and AWS calls, plus retry with exponential backoff.

Two families live here:

* ``CfnError`` subclasses tag CloudFormation failures with a stable ``code`` and
  ``severity``. They are what the lifecycle orchestrator reports in ``errors[]``.
* ``AWSError`` subclasses classify generic AWS SDK failures (credentials,
  permissions, validation, configuration) and decide what is worth retrying.
"""

import logging
import time
from collections.abc import Callable
from typing import Any, TypeVar

from botocore.exceptions import (
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    PartialCredentialsError,
    ReadTimeoutError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

SEVERITY_WARNING = "warning"
SEVERITY_ERROR = "error"
SEVERITY_CRITICAL = "critical"


class CfnError(Exception):
    """CloudFormation failure with a stable classification."""

    code = "UNKNOWN_ERROR"
    severity = SEVERITY_ERROR


class CfnValidationError(CfnError):
    code = "VALIDATION_ERROR"
    severity = SEVERITY_WARNING


class CredentialsExpiredError(CfnError):
    code = "CREDENTIALS_EXPIRED"
    severity = SEVERITY_CRITICAL


class ResourceAlreadyExistsError(CfnError):
    code = "RESOURCE_ALREADY_EXISTS"
    severity = SEVERITY_WARNING


class StackNotFoundError(CfnError):
    code = "STACK_NOT_FOUND"


class InsufficientCapabilitiesError(CfnError):
    code = "INSUFFICIENT_CAPABILITIES"


class ServiceLimitExceededError(CfnError):
    code = "SERVICE_LIMIT_EXCEEDED"


class ReadOnlyModeError(CfnError):
    code = "READ_ONLY_MODE"
    severity = SEVERITY_WARNING


# Message fragments used to classify errors that arrive as plain exceptions.
# Order matters: first match wins.
_MESSAGE_RULES: list[tuple[str, type[CfnError]]] = [
    ("CloudFormation validation error", CfnValidationError),
    ("AWS credentials expired", CredentialsExpiredError),
    ("Resource already exists", ResourceAlreadyExistsError),
    ("Stack not found", StackNotFoundError),
    ("Insufficient capabilities", InsufficientCapabilitiesError),
    ("AWS service limit exceeded", ServiceLimitExceededError),
    ("read-only mode", ReadOnlyModeError),
]


def client_error_code(error: BaseException) -> str:
    if isinstance(error, ClientError):
        return error.response.get("Error", {}).get("Code", "")
    return ""


def client_error_message(error: BaseException) -> str:
    if isinstance(error, ClientError):
        return error.response.get("Error", {}).get("Message", "") or str(error)
    return str(error)


def describe_cfn_error(error: BaseException, context: str | None = None) -> CfnError:
    """Translate a CloudFormation SDK error into a tagged ``CfnError``.

    ``context`` is prepended to the message, e.g. "Failed to create resource AWS::S3::Bucket".
    """
    if isinstance(error, CfnError):
        if not context:
            return error
        return type(error)(f"{context}: {error}")

    code = client_error_code(error)
    message = client_error_message(error)

    if code == "ValidationError" and "does not exist" in message:
        result: CfnError = StackNotFoundError(f"Stack not found: {message}")
    elif code == "ValidationError":
        result = CfnValidationError(f"CloudFormation validation error: {message}")
    elif code == "AlreadyExistsException":
        result = ResourceAlreadyExistsError(f"Resource already exists: {message}")
    elif code == "LimitExceededException":
        result = ServiceLimitExceededError(f"AWS service limit exceeded: {message}")
    elif code == "InsufficientCapabilitiesException":
        result = InsufficientCapabilitiesError(
            f"Insufficient capabilities: {message}. "
            "Try adding CAPABILITY_IAM or CAPABILITY_NAMED_IAM."
        )
    elif code in ("ExpiredToken", "ExpiredTokenException"):
        result = CredentialsExpiredError("AWS credentials expired. Please refresh your session.")
    else:
        result = CfnError(f"CloudFormation error: {message}")

    if context:
        return type(result)(f"{context}: {result}")
    return result


def classify_error(error: BaseException) -> type[CfnError]:
    if isinstance(error, CfnError):
        return type(error)
    message = str(error)
    for fragment, error_cls in _MESSAGE_RULES:
        if fragment in message:
            return error_cls
    return CfnError


def error_entry(error: BaseException) -> dict:
    """Structured ``{code, message, severity}`` record for result payloads."""
    error_cls = classify_error(error)
    return {
        "code": error_cls.code,
        "message": str(error),
        "severity": error_cls.severity,
    }


class AWSError(Exception):
    """AWS SDK failure classified by ``handle_aws_error``."""

    default_code = "UNKNOWN_ERROR"

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.code = code or self.default_code


class AWSCredentialsError(AWSError):
    default_code = "CREDENTIALS_ERROR"


class AWSConfigurationError(AWSError):
    default_code = "CONFIGURATION_ERROR"


class AWSValidationError(AWSError):
    default_code = "VALIDATION_ERROR"


class AWSPermissionError(AWSError):
    default_code = "PERMISSION_ERROR"


def handle_aws_error(error: BaseException, operation: str) -> AWSError:
    """Classify an AWS SDK exception raised while running ``operation``."""
    if isinstance(error, AWSError):
        return error

    code = client_error_code(error)
    message = client_error_message(error)

    if code == "CredentialsError" or isinstance(
        error, (NoCredentialsError, PartialCredentialsError)
    ):
        return AWSCredentialsError(f"AWS credentials error during {operation}: {message}")
    if code == "UnauthorizedOperation":
        return AWSPermissionError(f"Insufficient permissions for {operation}: {message}")
    if code in ("AccessDenied", "AccessDeniedException"):
        return AWSPermissionError(f"Access denied for {operation}: {message}", "ACCESS_DENIED")
    if code == "InvalidUserID.NotFound":
        return AWSCredentialsError(
            f"Invalid AWS credentials for {operation}: User not found", "INVALID_USER"
        )
    if code == "SignatureDoesNotMatch":
        return AWSCredentialsError(
            f"Invalid AWS credentials for {operation}: Signature mismatch", "SIGNATURE_MISMATCH"
        )
    if code in ("TokenRefreshRequired", "ExpiredToken", "ExpiredTokenException"):
        return AWSCredentialsError(
            f"AWS credentials expired for {operation}: Token refresh required", "TOKEN_EXPIRED"
        )
    if code == "ValidationError":
        return AWSValidationError(f"AWS validation error during {operation}: {message}")
    if isinstance(error, EndpointConnectionError):
        return AWSConfigurationError(f"Network error during {operation}: {message}", "NETWORK_ERROR")
    if isinstance(error, (ConnectTimeoutError, ReadTimeoutError)):
        return AWSConfigurationError(f"Timeout error during {operation}: {message}", "TIMEOUT_ERROR")
    if "region" in message.lower():
        return AWSConfigurationError(
            f"Region configuration error during {operation}: {message}", "REGION_ERROR"
        )

    return AWSError(f"AWS operation failed during {operation}: {message}")


_NON_RETRYABLE_AWS = (AWSCredentialsError, AWSPermissionError, AWSValidationError)

_NON_RETRYABLE_CFN = (
    CfnValidationError,
    StackNotFoundError,
    ResourceAlreadyExistsError,
    InsufficientCapabilitiesError,
    CredentialsExpiredError,
    ReadOnlyModeError,
)

_NON_RETRYABLE_CFN_CODES = {
    "ValidationError",
    "AccessDenied",
    "AccessDeniedException",
    "AlreadyExistsException",
    "InsufficientCapabilitiesException",
    "ExpiredToken",
    "ExpiredTokenException",
}


def is_retryable_cfn_error(error: BaseException) -> bool:
    if isinstance(error, (*_NON_RETRYABLE_CFN, *_NON_RETRYABLE_AWS)):
        return False
    return client_error_code(error) not in _NON_RETRYABLE_CFN_CODES


def retry_aws_operation(
    operation: Callable[[], T],
    operation_name: str,
    max_retries: int = 3,
    base_delay: float = 1.0,
    sleep: Callable[[float], Any] = time.sleep,
) -> T:
    """Run ``operation`` with exponential backoff, raising classified ``AWSError``s.

    Credential, permission and validation failures are raised on the first attempt.
    """
    attempt = 0
    while True:
        try:
            return operation()
        except Exception as e:
            error = handle_aws_error(e, operation_name)
            if isinstance(error, _NON_RETRYABLE_AWS) or attempt >= max_retries:
                raise error from e
            delay = base_delay * 2**attempt
            logger.warning(
                "AWS operation %s failed (attempt %d/%d), retrying in %.1fs: %s",
                operation_name,
                attempt + 1,
                max_retries + 1,
                delay,
                error,
            )
            sleep(delay)
            attempt += 1


def retry_cfn_operation(
    operation: Callable[[], T],
    operation_name: str,
    max_retries: int = 3,
    base_delay: float = 1.0,
    sleep: Callable[[float], Any] = time.sleep,
) -> T:
    """Retry a CloudFormation call on transient failures; the original error is re-raised."""
    attempt = 0
    while True:
        try:
            return operation()
        except Exception as e:
            if not is_retryable_cfn_error(e) or attempt >= max_retries:
                raise
            delay = base_delay * 2**attempt
            logger.warning(
                "CloudFormation operation %s failed (attempt %d/%d), retrying in %.1fs: %s",
                operation_name,
                attempt + 1,
                max_retries + 1,
                delay,
                e,
            )
            sleep(delay)
            attempt += 1
