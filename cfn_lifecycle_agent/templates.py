"""Single-resource ("stack-per-resource") CloudFormation template helpers."""

import copy
import json
import re
import uuid
from datetime import datetime, timezone
from typing import Any

from .errors import CfnValidationError

TEMPLATE_FORMAT_VERSION = "2010-09-09"
LOGICAL_ID = "Resource"
OUTPUT_ID = "ResourceId"

# Tag contract: every stack this system creates carries these tags
MANAGED_BY_TAG = "ManagedBy"
MANAGED_BY_VALUE = "Mastra-CloudFormation-Tools"
RESOURCE_TYPE_TAG = "ResourceType"
CREATED_AT_TAG = "CreatedAt"
LAST_UPDATED_TAG = "LastUpdated"

CAPABILITY_IAM = "CAPABILITY_IAM"
CAPABILITY_NAMED_IAM = "CAPABILITY_NAMED_IAM"

# Heuristic only. Resource types outside this list that still touch IAM are missed.
IAM_RESOURCE_MARKERS = (
    "IAM::Role",
    "IAM::Policy",
    "IAM::User",
    "IAM::Group",
    "IAM::InstanceProfile",
    "IAM::ManagedPolicy",
    "Lambda::Function",
    "Events::Rule",
    "S3::Bucket",
)
NAMED_IAM_PROPERTIES = ("RoleName", "PolicyName", "UserName", "GroupName")

MAX_STACK_NAME_LENGTH = 128
_STACK_NAME_PATTERN = re.compile(r"^[a-zA-Z][-a-zA-Z0-9]*$")


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def stack_name_errors(stack_name: str) -> list[str]:
    errors = []
    if not _STACK_NAME_PATTERN.match(stack_name):
        errors.append(
            f"Invalid stack name '{stack_name}': must start with a letter and contain "
            "only alphanumeric characters and hyphens"
        )
    if len(stack_name) > MAX_STACK_NAME_LENGTH:
        errors.append(
            f"Invalid stack name: {len(stack_name)} characters exceeds the "
            f"{MAX_STACK_NAME_LENGTH} character limit"
        )
    return errors


def generate_stack_name(resource_type: str | None = None) -> str:
    """``aws--s3--bucket-<uuid4>`` style name derived from the resource type."""
    prefix = re.sub(r"[^a-zA-Z0-9]", "-", resource_type or "").lower() or "resource"
    if not prefix[0].isalpha():
        prefix = f"resource-{prefix}"
    suffix = str(uuid.uuid4())
    return f"{prefix[: MAX_STACK_NAME_LENGTH - len(suffix) - 1]}-{suffix}"


def create_resource_template(
    resource_type: str, properties: dict[str, Any], timestamp: str | None = None
) -> dict[str, Any]:
    """Template embedding exactly one resource under the fixed logical ID ``Resource``."""
    timestamp = timestamp or utc_now_iso()
    return {
        "AWSTemplateFormatVersion": TEMPLATE_FORMAT_VERSION,
        "Description": (
            f"Template for {resource_type} created by Mastra CloudFormation Tools at {timestamp}"
        ),
        "Resources": {
            LOGICAL_ID: {
                "Type": resource_type,
                "Properties": properties,
            }
        },
        "Outputs": {
            OUTPUT_ID: {
                "Description": "Physical ID of the created resource",
                "Value": {"Ref": LOGICAL_ID},
                "Export": {"Name": {"Fn::Sub": "${AWS::StackName}-ResourceId"}},
            }
        },
    }


def render_template(template: dict[str, Any]) -> str:
    return json.dumps(template, indent=2)


def determine_capabilities(resource_type: str, properties: dict[str, Any] | None) -> list[str]:
    capabilities = []
    if any(marker in resource_type for marker in IAM_RESOURCE_MARKERS):
        capabilities.append(CAPABILITY_IAM)
    if properties and any(name in properties for name in NAMED_IAM_PROPERTIES):
        capabilities.append(CAPABILITY_NAMED_IAM)
    return capabilities


def merge_resource_properties(
    template: dict[str, Any], updated_properties: dict[str, Any], timestamp: str | None = None
) -> dict[str, Any]:
    """Shallow-merge ``updated_properties`` into ``Resources.Resource.Properties``.

    Caller-supplied keys win. The input template is not modified.
    """
    resource = template.get("Resources", {}).get(LOGICAL_ID)
    if not isinstance(resource, dict):
        raise CfnValidationError(
            "CloudFormation validation error: Template does not contain expected "
            f"'{LOGICAL_ID}' structure"
        )

    merged = copy.deepcopy(template)
    merged_resource = merged["Resources"][LOGICAL_ID]
    merged_resource["Properties"] = {
        **(merged_resource.get("Properties") or {}),
        **updated_properties,
    }
    timestamp = timestamp or utc_now_iso()
    merged["Description"] = f"{merged.get('Description', '')} - Updated at {timestamp}"
    return merged


def resource_type_of(template: dict[str, Any]) -> str:
    return template.get("Resources", {}).get(LOGICAL_ID, {}).get("Type", "")


def tags_to_dict(tags: list[dict[str, str]] | None) -> dict[str, str]:
    return {t["Key"]: t.get("Value", "") for t in tags or [] if t.get("Key")}


def dict_to_tags(tags: dict[str, str]) -> list[dict[str, str]]:
    return [{"Key": key, "Value": value} for key, value in tags.items()]
