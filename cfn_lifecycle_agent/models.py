"""Request and result models exchanged over the HTTP/CLI JSON boundary.

JSON uses camelCase keys. The dataclasses use snake_case attributes.
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .errors import CfnValidationError

# Lifecycle orchestrator operations
CREATE_RESOURCE = "create-resource-lifecycle"
UPDATE_RESOURCE = "update-resource-lifecycle"
DELETE_RESOURCE = "delete-resource-lifecycle"
TEMPLATE_GENERATION = "template-generation-flow"
LIST_RESOURCES = "list-and-manage-resources"

LIFECYCLE_OPERATIONS = (
    CREATE_RESOURCE,
    UPDATE_RESOURCE,
    DELETE_RESOURCE,
    TEMPLATE_GENERATION,
    LIST_RESOURCES,
)

# Raw stack operations checked by the request validator
CREATE_STACK = "create-stack"
UPDATE_STACK = "update-stack"
DELETE_STACK = "delete-stack"
DESCRIBE_STACK = "describe-stack"
LIST_STACKS = "list-stacks"
VALIDATE_TEMPLATE = "validate-template"
GET_TEMPLATE = "get-template"
CREATE_CHANGE_SET = "create-change-set"
EXECUTE_CHANGE_SET = "execute-change-set"
DESCRIBE_STACK_EVENTS = "describe-stack-events"
DESCRIBE_STACK_RESOURCES = "describe-stack-resources"

STACK_OPERATIONS = (
    CREATE_STACK,
    UPDATE_STACK,
    DELETE_STACK,
    DESCRIBE_STACK,
    LIST_STACKS,
    VALIDATE_TEMPLATE,
    GET_TEMPLATE,
    CREATE_CHANGE_SET,
    EXECUTE_CHANGE_SET,
    DESCRIBE_STACK_EVENTS,
    DESCRIBE_STACK_RESOURCES,
)

TEMPLATE_FORMATS = ("JSON", "YAML")


def _require_mapping(data: Any, what: str) -> dict:
    if not isinstance(data, dict):
        raise CfnValidationError(f"CloudFormation validation error: {what} must be a JSON object")
    return data


def _number(data: dict, key: str, default, cast):
    if key not in data:
        return default
    value = data[key]
    # bool is an int subclass, but true/false is never a count or a duration
    if isinstance(value, bool) or value is None:
        raise CfnValidationError(f"CloudFormation validation error: {key} must be a number")
    try:
        return cast(value)
    except (TypeError, ValueError) as e:
        raise CfnValidationError(f"CloudFormation validation error: {key} must be a number") from e


def int_field(data: dict, key: str, default: int) -> int:
    return _number(data, key, default, int)


def float_field(data: dict, key: str, default: float) -> float:
    return _number(data, key, default, float)


@dataclass
class Parameter:
    key: str
    value: str

    def to_api(self) -> dict[str, str]:
        return {"ParameterKey": self.key, "ParameterValue": self.value}


@dataclass
class StackRequest:
    """One raw CloudFormation stack operation."""

    operation: str
    stack_name: str | None = None
    template_body: str | None = None
    template_url: str | None = None
    parameters: list[Parameter] = field(default_factory=list)
    capabilities: list[str] = field(default_factory=list)
    tags: dict[str, str] = field(default_factory=dict)
    region: str | None = None
    change_set_name: str | None = None
    change_set_type: str = "UPDATE"
    notification_arns: list[str] = field(default_factory=list)
    timeout_in_minutes: int | None = None
    enable_termination_protection: bool | None = None
    rollback_configuration: dict | None = None
    dry_run: bool = False

    @classmethod
    def from_dict(cls, data: dict) -> "StackRequest":
        data = _require_mapping(data, "Stack request")
        return cls(
            operation=str(data.get("operation", "")),
            stack_name=data.get("stackName"),
            template_body=data.get("templateBody"),
            template_url=data.get("templateUrl"),
            parameters=[
                Parameter(key=str(p.get("key", "")), value=str(p.get("value", "")))
                for p in data.get("parameters") or []
            ],
            capabilities=list(data.get("capabilities") or []),
            tags=dict(data.get("tags") or {}),
            region=data.get("region"),
            change_set_name=data.get("changeSetName"),
            change_set_type=str(data.get("changeSetType", "UPDATE")).upper(),
            notification_arns=list(data.get("notificationArns") or []),
            timeout_in_minutes=data.get("timeoutInMinutes"),
            enable_termination_protection=data.get("enableTerminationProtection"),
            rollback_configuration=data.get("rollbackConfiguration"),
            dry_run=bool(data.get("dryRun", False)),
        )

    @classmethod
    def from_json(cls, json_str: str) -> "StackRequest":
        return cls.from_dict(json.loads(json_str))

    @classmethod
    def from_file(cls, path: str | Path) -> "StackRequest":
        return cls.from_json(Path(path).read_text())


@dataclass
class ValidationResult:
    is_valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"isValid": self.is_valid, "errors": self.errors, "warnings": self.warnings}


@dataclass
class LifecycleRequest:
    """Request accepted by the stack lifecycle orchestrator."""

    operation: str
    resource_type: str | None = None
    resource_properties: dict[str, Any] = field(default_factory=dict)
    stack_name: str | None = None
    stack_id: str | None = None
    updated_properties: dict[str, Any] = field(default_factory=dict)
    resource_type_filter: str | None = None
    max_results: int = 10
    template_format: str = "JSON"
    wait_for_completion: bool = True
    max_wait_time: float = 300
    retain_resources: list[str] = field(default_factory=list)
    schema_version: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "LifecycleRequest":
        data = _require_mapping(data, "Lifecycle request")
        request = cls(
            operation=str(data.get("operation", "")),
            resource_type=data.get("resourceType"),
            resource_properties=dict(data.get("resourceProperties") or {}),
            stack_name=data.get("stackName"),
            stack_id=data.get("stackId"),
            updated_properties=dict(data.get("updatedProperties") or {}),
            resource_type_filter=data.get("resourceTypeFilter"),
            max_results=int_field(data, "maxResults", 10),
            template_format=str(data.get("templateFormat", "JSON")).upper(),
            wait_for_completion=bool(data.get("waitForCompletion", True)),
            max_wait_time=float_field(data, "maxWaitTime", 300),
            retain_resources=list(data.get("retainResources") or []),
            schema_version=data.get("schemaVersion"),
        )
        if request.template_format not in TEMPLATE_FORMATS:
            raise CfnValidationError(
                "CloudFormation validation error: templateFormat must be JSON or YAML"
            )
        if request.max_results < 1:
            raise CfnValidationError("CloudFormation validation error: maxResults must be >= 1")
        return request

    @classmethod
    def from_json(cls, json_str: str) -> "LifecycleRequest":
        return cls.from_dict(json.loads(json_str))

    @classmethod
    def from_file(cls, path: str | Path) -> "LifecycleRequest":
        return cls.from_json(Path(path).read_text())
