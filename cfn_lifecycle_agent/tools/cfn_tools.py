"""CloudFormation adapter.

Each managed AWS resource lives alone in its own stack under the logical ID ``Resource``.
Clients are built per request from the request's credentials; there is no shared client.
"""

import json
import logging
from datetime import datetime
from typing import Any

import boto3
import yaml
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from ..config import Settings, load_settings
from ..context import AwsCredentials, RuntimeContext, credentials_from_context
from ..errors import (
    CfnError,
    CfnValidationError,
    ReadOnlyModeError,
    StackNotFoundError,
    describe_cfn_error,
)
from ..templates import (
    CREATED_AT_TAG,
    LAST_UPDATED_TAG,
    LOGICAL_ID,
    MANAGED_BY_TAG,
    MANAGED_BY_VALUE,
    RESOURCE_TYPE_TAG,
    create_resource_template,
    determine_capabilities,
    dict_to_tags,
    generate_stack_name,
    merge_resource_properties,
    render_template,
    resource_type_of,
    tags_to_dict,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = frozenset(
    {
        "CREATE_COMPLETE",
        "UPDATE_COMPLETE",
        "DELETE_COMPLETE",
        "CREATE_FAILED",
        "UPDATE_FAILED",
        "DELETE_FAILED",
        "UPDATE_ROLLBACK_COMPLETE",
        "UPDATE_ROLLBACK_FAILED",
        "ROLLBACK_COMPLETE",
        "ROLLBACK_FAILED",
    }
)
SUCCESSFUL_STATUSES = frozenset({"CREATE_COMPLETE", "UPDATE_COMPLETE", "DELETE_COMPLETE"})

DOCUMENTATION_URL = "https://docs.aws.amazon.com/AWSCloudFormation/latest/UserGuide/{}.html"

_AWS_ERRORS = (ClientError, BotoCoreError, CfnError)


def create_cloudformation_client(
    credentials: AwsCredentials, region: str, settings: Settings | None = None
) -> Any:
    """Build a CloudFormation client bound to one set of credentials."""
    settings = settings or load_settings()
    timeout = settings.timeout_ms / 1000
    config = Config(
        region_name=region,
        connect_timeout=timeout,
        read_timeout=timeout,
        retries={"total_max_attempts": settings.max_retries + 1, "mode": "standard"},
    )
    return boto3.client("cloudformation", config=config, **credentials.boto_kwargs())


def _iso(value: Any) -> str | None:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _plain(template: Any) -> Any:
    # botocore hands back JSON templates as OrderedDicts, which yaml.safe_dump refuses
    return json.loads(json.dumps(template))


def parse_template(body: Any) -> dict[str, Any]:
    """Template body from GetTemplate as a dict, whether JSON, YAML or pre-parsed."""
    if isinstance(body, dict):
        return _plain(body)
    try:
        return json.loads(body)
    except ValueError:
        pass
    try:
        parsed = yaml.safe_load(body)
    except yaml.YAMLError as e:
        raise CfnValidationError(f"CloudFormation validation error: unreadable template: {e}") from e
    if not isinstance(parsed, dict):
        raise CfnValidationError("CloudFormation validation error: template is not a mapping")
    return parsed


def render_template_body(body: Any, template_format: str) -> tuple[str, str]:
    """Render a GetTemplate body as pretty JSON or YAML, returning ``(text, format)``.

    Templates stored as YAML are returned unchanged with format ``YAML``, whatever was
    asked for. Short-form tags such as ``!Ref`` cannot be loaded with ``yaml.safe_load``.
    """
    if isinstance(body, dict):
        template: Any = _plain(body)
    else:
        try:
            template = json.loads(body)
        except ValueError:
            return body, "YAML"

    if template_format == "YAML":
        return yaml.safe_dump(template, sort_keys=False, default_flow_style=False), "YAML"
    return json.dumps(template, indent=2), "JSON"


def format_template(body: Any, template_format: str) -> str:
    return render_template_body(body, template_format)[0]


def extract_schema_properties(schema: dict[str, Any]) -> list[dict[str, Any]]:
    """Property summaries from a resource provider schema."""
    container = schema.get("properties", {})
    nested = container.get("Properties")
    if isinstance(nested, dict) and isinstance(nested.get("properties"), dict):
        properties = nested["properties"]
        required = nested.get("required", [])
    else:
        properties = container
        required = schema.get("required", [])

    return [
        {
            "name": name,
            "type": definition.get("type", "unknown") if isinstance(definition, dict) else "unknown",
            "required": name in required,
            "description": definition.get("description") if isinstance(definition, dict) else None,
        }
        for name, definition in properties.items()
    ]


class CloudFormationTools:
    """Stack-per-resource CRUD over one CloudFormation client."""

    def __init__(self, client: Any, readonly: bool = False, timeout_in_minutes: int = 1):
        self.client = client
        self.readonly = readonly
        self.timeout_in_minutes = timeout_in_minutes
        self._schema_cache: dict[tuple[str, str | None], dict[str, Any]] = {}

    @classmethod
    def from_context(
        cls, ctx: RuntimeContext, settings: Settings | None = None
    ) -> "CloudFormationTools":
        settings = settings or load_settings()
        credentials = credentials_from_context(ctx)
        client = create_cloudformation_client(credentials, ctx.region(settings.region), settings)
        return cls(client, readonly=settings.readonly, timeout_in_minutes=settings.timeout_in_minutes)

    def _ensure_writable(self, action: str):
        if self.readonly:
            raise ReadOnlyModeError(
                f"CloudFormation tools are in read-only mode. {action} is disabled."
            )

    def _describe_stack(self, stack_id: str) -> dict[str, Any]:
        stacks = self.client.describe_stacks(StackName=stack_id).get("Stacks") or []
        if not stacks:
            raise StackNotFoundError(f"Stack not found: {stack_id}")
        return stacks[0]

    def create_resource(
        self,
        resource_type: str,
        properties: dict[str, Any],
        stack_name: str | None = None,
        tags: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        self._ensure_writable("Resource creation")

        stack_name = stack_name or generate_stack_name(resource_type)
        now = utc_now_iso()
        template = create_resource_template(resource_type, properties, timestamp=now)
        capabilities = determine_capabilities(resource_type, properties)
        stack_tags = {
            **(tags or {}),
            MANAGED_BY_TAG: MANAGED_BY_VALUE,
            RESOURCE_TYPE_TAG: resource_type,
            CREATED_AT_TAG: now,
        }

        params: dict[str, Any] = {
            "StackName": stack_name,
            "TemplateBody": render_template(template),
            "Tags": dict_to_tags(stack_tags),
            "TimeoutInMinutes": self.timeout_in_minutes,
        }
        if capabilities:
            params["Capabilities"] = capabilities

        try:
            response = self.client.create_stack(**params)
        except _AWS_ERRORS as e:
            raise describe_cfn_error(e, f"Failed to create resource {resource_type}") from e

        logger.info("Creating %s in stack %s", resource_type, stack_name)
        return {
            "stackId": response["StackId"],
            "stackName": stack_name,
            "status": "CREATE_IN_PROGRESS",
            "resourceType": resource_type,
        }

    def get_resource(self, stack_id: str) -> dict[str, Any]:
        try:
            stack = self._describe_stack(stack_id)
            detail = self.client.describe_stack_resource(
                StackName=stack_id, LogicalResourceId=LOGICAL_ID
            )["StackResourceDetail"]
        except _AWS_ERRORS as e:
            raise describe_cfn_error(e, f"Failed to get resource {stack_id}") from e

        return {
            "stackId": stack.get("StackId"),
            "stackName": stack.get("StackName"),
            "stackStatus": stack.get("StackStatus"),
            "resourceDetails": {
                "logicalResourceId": detail.get("LogicalResourceId"),
                "physicalResourceId": detail.get("PhysicalResourceId"),
                "resourceType": detail.get("ResourceType"),
                "resourceStatus": detail.get("ResourceStatus"),
                "timestamp": _iso(detail.get("LastUpdatedTimestamp")),
                "metadata": {
                    "stackTags": tags_to_dict(stack.get("Tags")),
                    "description": stack.get("Description"),
                    "creationTime": _iso(stack.get("CreationTime")),
                    "lastUpdatedTime": _iso(stack.get("LastUpdatedTime")),
                },
            },
            "outputs": [
                {
                    "outputKey": output.get("OutputKey"),
                    "outputValue": output.get("OutputValue"),
                    "description": output.get("Description"),
                }
                for output in stack.get("Outputs") or []
            ],
        }

    def update_resource(self, stack_id: str, properties: dict[str, Any]) -> dict[str, Any]:
        self._ensure_writable("Resource updates")

        try:
            stack = self._describe_stack(stack_id)
            body = self.client.get_template(StackName=stack_id)["TemplateBody"]
            now = utc_now_iso()
            template = merge_resource_properties(parse_template(body), properties, timestamp=now)
            resource_type = resource_type_of(template)
            capabilities = determine_capabilities(
                resource_type, template["Resources"][LOGICAL_ID]["Properties"]
            )

            # Existing tags are kept so ResourceType/CreatedAt survive the update
            stack_tags = tags_to_dict(stack.get("Tags"))
            stack_tags[MANAGED_BY_TAG] = MANAGED_BY_VALUE
            stack_tags[LAST_UPDATED_TAG] = now

            params: dict[str, Any] = {
                "StackName": stack_id,
                "TemplateBody": render_template(template),
                "Tags": dict_to_tags(stack_tags),
            }
            if capabilities:
                params["Capabilities"] = capabilities
            response = self.client.update_stack(**params)
        except _AWS_ERRORS as e:
            raise describe_cfn_error(e, f"Failed to update resource {stack_id}") from e

        logger.info("Updating stack %s", stack.get("StackName"))
        return {
            "stackId": response.get("StackId", stack_id),
            "stackName": stack.get("StackName"),
            "status": "UPDATE_IN_PROGRESS",
            "changeSetId": None,
        }

    def delete_resource(
        self, stack_id: str, retain_resources: list[str] | None = None
    ) -> dict[str, Any]:
        self._ensure_writable("Resource deletion")

        try:
            stack = self._describe_stack(stack_id)
            params: dict[str, Any] = {"StackName": stack_id}
            if retain_resources:
                params["RetainResources"] = retain_resources
            self.client.delete_stack(**params)
        except _AWS_ERRORS as e:
            raise describe_cfn_error(e, f"Failed to delete resource {stack_id}") from e

        logger.info("Deleting stack %s", stack.get("StackName"))
        return {
            "stackId": stack_id,
            "stackName": stack.get("StackName"),
            "status": "DELETE_IN_PROGRESS",
            "deletionTime": utc_now_iso(),
        }

    def list_resources(
        self,
        resource_type_filter: str | None = None,
        stack_status_filter: list[str] | None = None,
        max_results: int = 100,
    ) -> dict[str, Any]:
        """Stacks tagged ``ManagedBy=Mastra-CloudFormation-Tools``, optionally by type."""
        params: dict[str, Any] = {}
        if stack_status_filter:
            params["StackStatusFilter"] = stack_status_filter
        try:
            response = self.client.list_stacks(**params)
        except _AWS_ERRORS as e:
            raise describe_cfn_error(e, "Failed to list resources") from e

        resources = []
        for summary in response.get("StackSummaries") or []:
            stack_name = summary.get("StackName", "")
            try:
                stacks = self.client.describe_stacks(StackName=stack_name).get("Stacks") or []
            except _AWS_ERRORS as e:
                logger.warning("Skipping stack %s: %s", stack_name, e)
                continue
            if not stacks:
                continue

            tags = tags_to_dict(stacks[0].get("Tags"))
            if tags.get(MANAGED_BY_TAG) != MANAGED_BY_VALUE:
                continue
            resource_type = tags.get(RESOURCE_TYPE_TAG, "Unknown")
            if resource_type_filter and resource_type_filter not in resource_type:
                continue

            resources.append(
                {
                    "stackId": summary.get("StackId", ""),
                    "stackName": stack_name,
                    "resourceType": resource_type,
                    "stackStatus": summary.get("StackStatus", ""),
                    "creationTime": _iso(summary.get("CreationTime")),
                    "lastUpdatedTime": _iso(summary.get("LastUpdatedTime")),
                    "tags": tags,
                }
            )

        return {
            "resources": resources[:max_results],
            "totalCount": len(resources),
            "hasMore": bool(response.get("NextToken")) or len(resources) > max_results,
        }

    def get_request_status(self, stack_id: str) -> dict[str, Any]:
        try:
            stack = self._describe_stack(stack_id)
        except _AWS_ERRORS as e:
            raise describe_cfn_error(e, f"Failed to get status for {stack_id}") from e

        status = stack.get("StackStatus", "")
        return {
            "stackId": stack.get("StackId", stack_id),
            "stackName": stack.get("StackName"),
            "stackStatus": status,
            "stackStatusReason": stack.get("StackStatusReason"),
            "lastUpdatedTime": _iso(stack.get("LastUpdatedTime") or stack.get("CreationTime")),
            "isComplete": status in TERMINAL_STATUSES,
            "isSuccessful": status in SUCCESSFUL_STATUSES,
        }

    def create_template(self, stack_id: str, template_format: str = "JSON") -> dict[str, Any]:
        try:
            stack = self._describe_stack(stack_id)
            body = self.client.get_template(StackName=stack_id, TemplateStage="Original")[
                "TemplateBody"
            ]
        except _AWS_ERRORS as e:
            raise describe_cfn_error(e, f"Failed to get template for {stack_id}") from e

        template, rendered_format = render_template_body(body, template_format)
        return {
            "stackId": stack.get("StackId", stack_id),
            "stackName": stack.get("StackName"),
            "template": template,
            "templateFormat": rendered_format,
            "templateSize": len(template.encode("utf-8")),
        }

    def get_resource_schema_information(
        self, resource_type: str, schema_version: str | None = None
    ) -> dict[str, Any]:
        cache_key = (resource_type, schema_version)
        if cache_key in self._schema_cache:
            return self._schema_cache[cache_key]

        params = {"Type": "RESOURCE", "TypeName": resource_type}
        if schema_version:
            params["VersionId"] = schema_version
        try:
            response = self.client.describe_type(**params)
            raw_schema = response.get("Schema")
            if not raw_schema:
                raise CfnError(f"Schema not found for resource type: {resource_type}")
            try:
                schema = json.loads(raw_schema)
            except ValueError as e:
                raise CfnValidationError(
                    f"CloudFormation validation error: Invalid schema format for {resource_type}"
                ) from e
        except _AWS_ERRORS as e:
            raise describe_cfn_error(
                e, f"Failed to get schema information for {resource_type}"
            ) from e

        info: dict[str, Any] = {
            "resourceType": resource_type,
            "schema": schema,
            "schemaVersion": response.get("DefaultVersionId"),
            "documentation": DOCUMENTATION_URL.format(resource_type.replace(":", "_")),
        }
        properties = extract_schema_properties(schema)
        if properties:
            info["properties"] = properties
        self._schema_cache[cache_key] = info
        return info
