"""Agent process HTTP API: agent generation and workflow execution."""

import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .agents.registry import AGENTS, UnknownAgentError, build_agent
from .config import Settings, load_settings
from .context import RuntimeContext, context_from_headers, credentials_from_context
from .errors import AWSCredentialsError, AWSError, CfnError
from .models import LifecycleRequest, StackRequest
from .tools.cfn_tools import CloudFormationTools, create_cloudformation_client
from .validation import validate_request
from .workflows.cfn_operations import run_cfn_operation
from .workflows.documentation_access import DocumentationAccessWorkflow, DocumentationRequest
from .workflows.stack_operations import run_stack_operation

logger = logging.getLogger(__name__)


class Message(BaseModel):
    role: str = "user"
    content: str


class GenerateRequest(BaseModel):
    messages: list[Message] = Field(min_length=1)
    threadId: str | None = None
    resourceId: str | None = None


def messages_to_prompt(messages: list[Message]) -> str:
    """Single messages pass through; longer histories become a role-prefixed transcript."""
    if len(messages) == 1:
        return messages[0].content
    return "\n\n".join(f"{m.role}: {m.content}" for m in messages)


def _default_client_factory(ctx: RuntimeContext, settings: Settings, region: str | None):
    credentials = credentials_from_context(ctx)
    return create_cloudformation_client(credentials, region or ctx.region(settings.region), settings)


def _error(status_code: int, message: str, code: str | None = None) -> JSONResponse:
    body = {"status": "error", "error": message}
    if code:
        body["code"] = code
    return JSONResponse(status_code=status_code, content=body)


def create_app(
    settings: Settings | None = None,
    tools_factory=CloudFormationTools.from_context,
    client_factory=_default_client_factory,
    agent_builder=build_agent,
) -> FastAPI:
    settings = settings or load_settings()
    app = FastAPI(title="CloudFormation Lifecycle Agents")

    @app.exception_handler(RequestValidationError)
    async def validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={
                "status": "error",
                "error": "Validation error",
                "code": "VALIDATION_ERROR",
                "details": jsonable_encoder(exc.errors()),
            },
        )

    @app.exception_handler(CfnError)
    async def cfn_error_handler(request: Request, exc: CfnError):
        return _error(400, str(exc), exc.code)

    @app.exception_handler(AWSError)
    async def aws_error_handler(request: Request, exc: AWSError):
        status_code = 401 if isinstance(exc, AWSCredentialsError) else 400
        return _error(status_code, str(exc), exc.code)

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s", request.url.path)
        return _error(500, "Internal server error")

    @app.get("/health")
    def health():
        return {"status": "healthy", "agents": sorted(AGENTS), "region": settings.region}

    @app.post("/api/agents/{agent_name}/generate")
    def generate(agent_name: str, body: GenerateRequest, request: Request):
        ctx = context_from_headers(request.headers)
        try:
            agent = agent_builder(
                agent_name, ctx, settings, thread_id=body.threadId, resource_id=body.resourceId
            )
        except UnknownAgentError:
            return _error(404, f"Unknown agent: {agent_name}")

        logger.info("Generating with %s (%d messages)", agent_name, len(body.messages))
        text = str(agent(messages_to_prompt(body.messages)))
        return {"text": text}

    @app.post("/api/workflows/cfn-operations")
    def cfn_operations(body: dict, request: Request):
        lifecycle_request = LifecycleRequest.from_dict(body)
        tools = tools_factory(context_from_headers(request.headers), settings)
        return run_cfn_operation(lifecycle_request, tools)

    @app.post("/api/workflows/stack-operations")
    def stack_operations(body: dict, request: Request):
        stack_request = StackRequest.from_dict(body)
        client = None
        # invalid and dry-run requests never reach AWS, so they need no credentials
        if not stack_request.dry_run and validate_request(stack_request).is_valid:
            client = client_factory(
                context_from_headers(request.headers), settings, stack_request.region
            )
        return run_stack_operation(
            stack_request, client, readonly=settings.readonly, max_retries=settings.max_retries
        )

    @app.post("/api/workflows/documentation-access")
    def documentation_access(body: dict, request: Request):
        docs_request = DocumentationRequest.from_dict(body)
        ctx = context_from_headers(request.headers)
        workflow = DocumentationAccessWorkflow(
            core_agent=agent_builder("coreAgent", ctx, settings),
            documentation_agent=agent_builder("documentationAgent", ctx, settings),
        )
        return workflow.run(docs_request)

    return app
