"""CloudFormation agent: manages AWS resources through stack-per-resource CRUD tools."""

import json
import logging

from strands import Agent, tool
from strands.agent.conversation_manager import SlidingWindowConversationManager

from ..config import MEMORY_LAST_MESSAGES, MODEL_ID, Settings, load_settings
from ..context import RuntimeContext
from ..errors import AWSError, CfnError, error_entry
from ..tools.cfn_tools import CloudFormationTools

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are an AWS CloudFormation assistant. You manage AWS resources as
infrastructure as code: every resource lives in its own CloudFormation stack.

Capabilities:
- Create, read, update and delete resources
- List managed resources, optionally filtered by type
- Check the status of stack operations
- Export a stack's template as JSON or YAML
- Look up resource type schemas and required properties

Rules:
- Ask for the resource type, region and required properties when they are missing
- Look up the resource schema before creating a resource you are unsure about
- Warn before destructive operations and require explicit confirmation for deletions
- Mention security and cost implications of what you create
- When a tool returns an error, explain it and suggest the fix
- Keep answers short and concrete"""


def _to_json(value) -> str:
    return json.dumps(value, indent=2, default=str)


def create_cfn_agent(
    ctx: RuntimeContext,
    settings: Settings | None = None,
    session_manager=None,
    tools_factory=CloudFormationTools.from_context,
) -> Agent:
    """Create the CloudFormation agent bound to the credentials in ``ctx``.

    The CloudFormation client is built on first tool use, so missing credentials surface
    as a tool error the model can explain instead of failing agent creation.
    """
    settings = settings or load_settings()
    cached: list[CloudFormationTools] = []

    def cfn() -> CloudFormationTools:
        if not cached:
            cached.append(tools_factory(ctx, settings))
        return cached[0]

    def call(operation, *args, **kwargs) -> str:
        try:
            return _to_json(operation(cfn())(*args, **kwargs))
        except (CfnError, AWSError) as e:
            logger.info("Tool call failed: %s", e)
            return _to_json({"error": error_entry(e)})

    @tool
    def create_resource(
        resource_type: str, properties: dict, stack_name: str | None = None
    ) -> str:
        """Create an AWS resource (e.g. AWS::S3::Bucket) in a new CloudFormation stack."""
        return call(lambda t: t.create_resource, resource_type, properties, stack_name=stack_name)

    @tool
    def get_resource(stack_id: str) -> str:
        """Get a resource's stack status, physical id, properties and outputs."""
        return call(lambda t: t.get_resource, stack_id)

    @tool
    def update_resource(stack_id: str, properties: dict) -> str:
        """Merge new properties into the resource managed by a stack."""
        return call(lambda t: t.update_resource, stack_id, properties)

    @tool
    def delete_resource(stack_id: str, retain_resources: list[str] | None = None) -> str:
        """Delete a resource's stack. Only call after the user confirmed the deletion."""
        return call(lambda t: t.delete_resource, stack_id, retain_resources)

    @tool
    def list_resources(resource_type_filter: str | None = None, max_results: int = 100) -> str:
        """List resources managed by these tools, optionally filtered by resource type."""
        return call(
            lambda t: t.list_resources,
            resource_type_filter=resource_type_filter,
            max_results=max_results,
        )

    @tool
    def get_request_status(stack_id: str) -> str:
        """Check whether a stack operation finished and whether it succeeded."""
        return call(lambda t: t.get_request_status, stack_id)

    @tool
    def create_template(stack_id: str, template_format: str = "JSON") -> str:
        """Export a stack's template as JSON or YAML."""
        return call(lambda t: t.create_template, stack_id, template_format)

    @tool
    def get_resource_schema_information(resource_type: str) -> str:
        """Get the schema, required properties and documentation link for a resource type."""
        return call(lambda t: t.get_resource_schema_information, resource_type)

    return Agent(
        name="CloudFormationAgent",
        model=settings.model_id or MODEL_ID,
        system_prompt=SYSTEM_PROMPT,
        tools=[
            create_resource,
            get_resource,
            update_resource,
            delete_resource,
            list_resources,
            get_request_status,
            create_template,
            get_resource_schema_information,
        ],
        conversation_manager=SlidingWindowConversationManager(window_size=MEMORY_LAST_MESSAGES),
        session_manager=session_manager,
    )
