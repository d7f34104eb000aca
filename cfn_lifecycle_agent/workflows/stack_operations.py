"""Validated execution of raw CloudFormation stack operations.

Every request goes through ``validate_request`` first. Invalid requests never reach AWS,
and ``dryRun`` requests stop after validation with ``status: validation-only``.
"""

import logging
import time
from collections.abc import Callable
from datetime import datetime
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError

from ..errors import (
    CfnValidationError,
    ReadOnlyModeError,
    describe_cfn_error,
    error_entry,
    retry_cfn_operation,
)
from ..models import (
    CREATE_CHANGE_SET,
    CREATE_STACK,
    DELETE_STACK,
    DESCRIBE_STACK,
    DESCRIBE_STACK_EVENTS,
    DESCRIBE_STACK_RESOURCES,
    EXECUTE_CHANGE_SET,
    GET_TEMPLATE,
    LIST_STACKS,
    UPDATE_STACK,
    VALIDATE_TEMPLATE,
    StackRequest,
)
from ..templates import dict_to_tags
from ..tools.cfn_tools import format_template
from ..validation import MAX_TEMPLATE_BODY_BYTES, validate_request

logger = logging.getLogger(__name__)

MUTATING_OPERATIONS = (CREATE_STACK, UPDATE_STACK, DELETE_STACK, CREATE_CHANGE_SET, EXECUTE_CHANGE_SET)
MAX_EVENTS = 50

RECOMMENDATIONS = {
    "VALIDATION_ERROR": "Check the template syntax, resource properties and parameter values",
    "CREDENTIALS_EXPIRED": "Refresh the AWS credentials and retry",
    "RESOURCE_ALREADY_EXISTS": "Use update-stack or choose a different stack name",
    "STACK_NOT_FOUND": "Verify the stack name and region",
    "INSUFFICIENT_CAPABILITIES": "Add CAPABILITY_IAM or CAPABILITY_NAMED_IAM to capabilities",
    "SERVICE_LIMIT_EXCEEDED": "Request a service quota increase or delete unused stacks",
    "READ_ONLY_MODE": "Unset CFN_MCP_SERVER_READONLY to allow stack changes",
}


def jsonable(value: Any) -> Any:
    """Copy of a boto3 response with datetimes rendered as ISO 8601 strings."""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: jsonable(v) for k, v in value.items() if k != "ResponseMetadata"}
    if isinstance(value, (list, tuple)):
        return [jsonable(v) for v in value]
    return value


def _template_source(request: StackRequest) -> dict[str, str]:
    # templateBody wins when both are given
    if request.template_body:
        return {"TemplateBody": request.template_body}
    return {"TemplateURL": request.template_url}


def _stack_params(request: StackRequest) -> dict[str, Any]:
    params: dict[str, Any] = {"StackName": request.stack_name, **_template_source(request)}
    if request.parameters:
        params["Parameters"] = [p.to_api() for p in request.parameters]
    if request.capabilities:
        params["Capabilities"] = request.capabilities
    if request.tags:
        params["Tags"] = dict_to_tags(request.tags)
    if request.notification_arns:
        params["NotificationARNs"] = request.notification_arns
    if request.rollback_configuration:
        params["RollbackConfiguration"] = request.rollback_configuration
    return params


def _create_stack(client, request: StackRequest) -> dict:
    params = _stack_params(request)
    if request.timeout_in_minutes is not None:
        params["TimeoutInMinutes"] = request.timeout_in_minutes
    if request.enable_termination_protection is not None:
        params["EnableTerminationProtection"] = request.enable_termination_protection
    response = client.create_stack(**params)
    return {"stackId": response["StackId"], "stackStatus": "CREATE_IN_PROGRESS"}


def _update_stack(client, request: StackRequest) -> dict:
    response = client.update_stack(**_stack_params(request))
    return {"stackId": response["StackId"], "stackStatus": "UPDATE_IN_PROGRESS"}


def _delete_stack(client, request: StackRequest) -> dict:
    client.delete_stack(StackName=request.stack_name)
    return {"stackStatus": "DELETE_IN_PROGRESS"}


def _describe_stack(client, request: StackRequest) -> dict:
    stacks = client.describe_stacks(StackName=request.stack_name).get("Stacks") or []
    stack = jsonable(stacks[0]) if stacks else {}
    return {
        "stackId": stack.get("StackId"),
        "stackStatus": stack.get("StackStatus"),
        "stackDetails": stack,
        "outputs": stack.get("Outputs", []),
    }


def _list_stacks(client, request: StackRequest) -> dict:
    response = client.list_stacks()
    return {"stackDetails": {"stacks": jsonable(response.get("StackSummaries", []))}}


def _validate_template(client, request: StackRequest) -> dict:
    response = jsonable(client.validate_template(**_template_source(request)))
    return {"templateValidation": response}


def _get_template(client, request: StackRequest) -> dict:
    body = client.get_template(StackName=request.stack_name)["TemplateBody"]
    return {"template": format_template(body, "JSON")}


def _create_change_set(client, request: StackRequest) -> dict:
    name = request.change_set_name or f"{request.stack_name}-{int(time.time())}"
    params = _stack_params(request)
    params.update(ChangeSetName=name, ChangeSetType=request.change_set_type)
    response = client.create_change_set(**params)
    return {
        "stackId": response.get("StackId"),
        "changeSet": {"changeSetId": response.get("Id"), "changeSetName": name},
    }


def _execute_change_set(client, request: StackRequest) -> dict:
    if not request.change_set_name:
        raise CfnValidationError(
            "CloudFormation validation error: changeSetName is required for execute-change-set"
        )
    client.execute_change_set(StackName=request.stack_name, ChangeSetName=request.change_set_name)
    return {"changeSet": {"changeSetName": request.change_set_name, "executed": True}}


def _describe_stack_events(client, request: StackRequest) -> dict:
    events = client.describe_stack_events(StackName=request.stack_name).get("StackEvents", [])
    return {"events": jsonable(events[:MAX_EVENTS])}


def _describe_stack_resources(client, request: StackRequest) -> dict:
    resources = client.describe_stack_resources(StackName=request.stack_name)
    return {"resources": jsonable(resources.get("StackResources", []))}


_HANDLERS: dict[str, Callable[[Any, StackRequest], dict]] = {
    CREATE_STACK: _create_stack,
    UPDATE_STACK: _update_stack,
    DELETE_STACK: _delete_stack,
    DESCRIBE_STACK: _describe_stack,
    LIST_STACKS: _list_stacks,
    VALIDATE_TEMPLATE: _validate_template,
    GET_TEMPLATE: _get_template,
    CREATE_CHANGE_SET: _create_change_set,
    EXECUTE_CHANGE_SET: _execute_change_set,
    DESCRIBE_STACK_EVENTS: _describe_stack_events,
    DESCRIBE_STACK_RESOURCES: _describe_stack_resources,
}


def _warning_recommendations(warnings: list[str]) -> list[str]:
    if any(str(MAX_TEMPLATE_BODY_BYTES) in w for w in warnings):
        return ["Upload large templates to S3 and pass templateUrl instead of templateBody"]
    return []


def run_stack_operation(
    request: StackRequest,
    client: Any,
    readonly: bool = False,
    max_retries: int = 3,
    base_delay: float = 1.0,
    sleep: Callable[[float], Any] = time.sleep,
) -> dict[str, Any]:
    started = time.monotonic()
    validation = validate_request(request)

    def finish(status: str, operation_result: dict, errors: list, recommendations: list) -> dict:
        return {
            "status": status,
            "operation": request.operation,
            "stackName": request.stack_name,
            "stackId": operation_result.pop("stackId", None),
            "stackStatus": operation_result.pop("stackStatus", None),
            "operationResult": {**operation_result, "validationResult": validation.to_dict()},
            "errors": errors,
            "recommendations": recommendations,
            "executionTime": int((time.monotonic() - started) * 1000),
        }

    if not validation.is_valid:
        errors = [
            {"code": "VALIDATION_ERROR", "message": message, "severity": "error"}
            for message in validation.errors
        ]
        return finish("failed", {}, errors, [RECOMMENDATIONS["VALIDATION_ERROR"]])

    recommendations = _warning_recommendations(validation.warnings)
    if request.dry_run:
        return finish("validation-only", {}, [], recommendations)

    handler = _HANDLERS[request.operation]
    try:
        if readonly and request.operation in MUTATING_OPERATIONS:
            raise ReadOnlyModeError(
                f"CloudFormation tools are in read-only mode. {request.operation} is disabled."
            )
        operation_result = retry_cfn_operation(
            lambda: handler(client, request),
            request.operation,
            max_retries=max_retries,
            base_delay=base_delay,
            sleep=sleep,
        )
    except (ClientError, BotoCoreError) as e:
        entry = error_entry(describe_cfn_error(e))
    except Exception as e:
        entry = error_entry(e)
    else:
        status = "in-progress" if request.operation in MUTATING_OPERATIONS else "success"
        logger.info("%s on %s: %s", request.operation, request.stack_name, status)
        return finish(status, operation_result, [], recommendations)

    logger.warning("%s on %s failed: %s", request.operation, request.stack_name, entry["message"])
    if entry["code"] in RECOMMENDATIONS:
        recommendations.append(RECOMMENDATIONS[entry["code"]])
    return finish("failed", {}, [entry], recommendations)
