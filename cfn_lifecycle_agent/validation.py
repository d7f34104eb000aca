"""Pre-flight validation of raw stack operation requests."""

from collections import Counter

from .models import (
    CREATE_CHANGE_SET,
    CREATE_STACK,
    DELETE_STACK,
    DESCRIBE_STACK,
    DESCRIBE_STACK_EVENTS,
    DESCRIBE_STACK_RESOURCES,
    EXECUTE_CHANGE_SET,
    GET_TEMPLATE,
    STACK_OPERATIONS,
    UPDATE_STACK,
    VALIDATE_TEMPLATE,
    StackRequest,
    ValidationResult,
)
from .templates import stack_name_errors

MAX_TEMPLATE_BODY_BYTES = 51200
MIN_TIMEOUT_MINUTES = 1
MAX_TIMEOUT_MINUTES = 43200

_NEEDS_TEMPLATE_AND_NAME = (CREATE_STACK, UPDATE_STACK)
_NEEDS_NAME = (
    DELETE_STACK,
    DESCRIBE_STACK,
    GET_TEMPLATE,
    DESCRIBE_STACK_EVENTS,
    DESCRIBE_STACK_RESOURCES,
    CREATE_CHANGE_SET,
    EXECUTE_CHANGE_SET,
)


def validate_request(request: StackRequest, operation: str | None = None) -> ValidationResult:
    """Check ``request`` for ``operation`` (defaults to ``request.operation``).

    Problems with the input are reported in the result, never raised.
    """
    operation = operation or request.operation
    errors: list[str] = []
    warnings: list[str] = []

    has_body = bool(request.template_body)
    has_url = bool(request.template_url)

    if operation not in STACK_OPERATIONS:
        errors.append(f"Unsupported operation: {operation}")
    elif operation in _NEEDS_TEMPLATE_AND_NAME:
        if not request.stack_name:
            errors.append(f"Stack name is required for {operation}")
        if not has_body and not has_url:
            errors.append(f"Either templateBody or templateUrl is required for {operation}")
        elif has_body and has_url:
            warnings.append("Both templateBody and templateUrl provided; templateBody will be used")
    elif operation in _NEEDS_NAME:
        if not request.stack_name:
            errors.append(f"Stack name is required for {operation}")
    elif operation == VALIDATE_TEMPLATE:
        if not has_body and not has_url:
            errors.append(f"Either templateBody or templateUrl is required for {operation}")

    if request.stack_name:
        errors.extend(stack_name_errors(str(request.stack_name)))

    if has_body:
        size = len(str(request.template_body).encode("utf-8"))
        if size > MAX_TEMPLATE_BODY_BYTES:
            warnings.append(
                f"Template body is {size} bytes, larger than {MAX_TEMPLATE_BODY_BYTES}; "
                "CloudFormation may reject it, consider uploading it and using templateUrl"
            )

    seen = Counter()
    for parameter in request.parameters:
        seen[parameter.key] += 1
        if seen[parameter.key] > 1:
            errors.append(f"Duplicate parameter key: {parameter.key}")

    timeout = request.timeout_in_minutes
    if timeout is not None:
        if (
            isinstance(timeout, bool)
            or not isinstance(timeout, int)
            or not MIN_TIMEOUT_MINUTES <= timeout <= MAX_TIMEOUT_MINUTES
        ):
            errors.append(
                f"timeoutInMinutes must be between {MIN_TIMEOUT_MINUTES} and "
                f"{MAX_TIMEOUT_MINUTES}, got {timeout}"
            )

    return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)
