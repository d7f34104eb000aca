"""CLI entry point for the CloudFormation lifecycle agents."""

import json
import logging
import os
import sys

import click
import uvicorn

from .config import DEFAULT_REGION, MODEL_ID, check_model_access, get_inference_profile_arn, load_settings
from .context import AwsConfig, AwsCredentials, create_runtime_context, credentials_from_context
from .errors import AWSError, CfnError
from .models import STACK_OPERATIONS, LifecycleRequest, StackRequest
from .tools.cfn_tools import CloudFormationTools, create_cloudformation_client
from .validation import validate_request
from .workflows.cfn_operations import run_cfn_operation
from .workflows.stack_operations import run_stack_operation

# Exit codes
EXIT_SUCCESS = 0
EXIT_FAILED = 1
EXIT_ERROR = 3

DEFAULT_HOST = "127.0.0.1"
DEFAULT_AGENT_PORT = 4111
DEFAULT_GATEWAY_PORT = 8080

SUCCESS_STATUSES = ("completed", "success", "in-progress", "validation-only")


def get_env_or_default(env_var: str, default: str) -> str:
    return os.environ.get(env_var, default)


def _load_json(source) -> dict:
    try:
        return json.load(source)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"not valid JSON: {e}", param_hint="REQUEST_JSON") from e


def _emit(result: dict) -> None:
    click.echo(json.dumps(result, indent=2, default=str))


@click.group()
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=lambda: get_env_or_default("CFN_AGENT_LOG_LEVEL", "INFO"),
    help="Log level (env: CFN_AGENT_LOG_LEVEL, default: INFO)",
)
def main(log_level):
    """
    CloudFormation lifecycle agents

    \b
    Commands:
      serve-agent     - Run the agent process HTTP API
      serve-gateway   - Run the authenticating HTTP gateway
      run             - Execute a lifecycle or stack operation request
      validate        - Validate a stack operation request without calling AWS
      check-model     - Verify Bedrock access to the configured model

    \b
    Environment Variables:
      CFN_AGENT_MODEL             - Bedrock model ID
      AWS_REGION                  - AWS region
      CFN_MCP_SERVER_READONLY     - Disable create/update/delete (true/1/yes)
      CFN_MCP_SERVER_TIMEOUT      - AWS call timeout in ms
      CFN_MCP_SERVER_MAX_RETRIES  - AWS call retries
      AGENT_URL                   - Agent process URL used by the gateway
      GATEWAY_JWT_SECRET          - HS256 secret for gateway bearer tokens
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@main.command("serve-agent")
@click.option("--host", default=DEFAULT_HOST, help=f"Bind address (default: {DEFAULT_HOST})")
@click.option(
    "--port", type=int, default=DEFAULT_AGENT_PORT, help=f"Port (default: {DEFAULT_AGENT_PORT})"
)
def serve_agent(host, port):
    """Run the agent process HTTP API."""
    from .server import create_app

    uvicorn.run(create_app(load_settings()), host=host, port=port)


@main.command("serve-gateway")
@click.option("--host", default=DEFAULT_HOST, help=f"Bind address (default: {DEFAULT_HOST})")
@click.option(
    "--port", type=int, default=DEFAULT_GATEWAY_PORT, help=f"Port (default: {DEFAULT_GATEWAY_PORT})"
)
def serve_gateway(host, port):
    """Run the HTTP gateway in front of the agent process."""
    from .gateway.app import create_app

    settings = load_settings()
    if not settings.jwt_secret:
        click.echo("Warning: GATEWAY_JWT_SECRET is not set, every request is anonymous", err=True)
    uvicorn.run(create_app(settings), host=host, port=port)


@main.command("run")
@click.argument("request_json", type=click.File("r"))
@click.option(
    "--access-key-id",
    default=lambda: get_env_or_default("AWS_ACCESS_KEY_ID", ""),
    help="AWS access key id (env: AWS_ACCESS_KEY_ID)",
)
@click.option(
    "--secret-access-key",
    default=lambda: get_env_or_default("AWS_SECRET_ACCESS_KEY", ""),
    help="AWS secret access key (env: AWS_SECRET_ACCESS_KEY)",
)
@click.option(
    "--session-token",
    default=lambda: get_env_or_default("AWS_SESSION_TOKEN", ""),
    help="AWS session token (env: AWS_SESSION_TOKEN)",
)
@click.option(
    "--region",
    default=lambda: get_env_or_default("AWS_REGION", DEFAULT_REGION),
    help=f"AWS region (env: AWS_REGION, default: {DEFAULT_REGION})",
)
@click.option(
    "--poll-interval", type=float, default=10.0, help="Seconds between stack status checks"
)
def run(request_json, access_key_id, secret_access_key, session_token, region, poll_interval):
    """
    Execute REQUEST_JSON ("-" for stdin) and print the result as JSON.

    Lifecycle operations (create-resource-lifecycle, ...) run the lifecycle workflow;
    stack operations (create-stack, describe-stack, ...) run the validated stack runner.

    \b
    Exit codes:
      0 - completed
      1 - operation failed
      3 - request or credential error
    """
    data = _load_json(request_json)
    settings = load_settings()
    ctx = create_runtime_context(
        credentials=AwsCredentials(
            access_key_id=access_key_id,
            secret_access_key=secret_access_key,
            session_token=session_token or None,
        ),
        aws_config=AwsConfig(region=region),
    )

    try:
        if data.get("operation") in STACK_OPERATIONS:
            request = StackRequest.from_dict(data)
            client = None
            if not request.dry_run and validate_request(request).is_valid:
                client = create_cloudformation_client(
                    credentials_from_context(ctx), request.region or region, settings
                )
            result = run_stack_operation(
                request, client, readonly=settings.readonly, max_retries=settings.max_retries
            )
        else:
            lifecycle_request = LifecycleRequest.from_dict(data)
            tools = CloudFormationTools.from_context(ctx, settings)
            result = run_cfn_operation(lifecycle_request, tools, poll_interval=poll_interval)
    except (CfnError, AWSError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(EXIT_ERROR)

    _emit(result)
    sys.exit(EXIT_SUCCESS if result["status"] in SUCCESS_STATUSES else EXIT_FAILED)


@main.command("validate")
@click.argument("request_json", type=click.File("r"))
def validate(request_json):
    """Validate the stack operation in REQUEST_JSON without calling AWS."""
    try:
        request = StackRequest.from_dict(_load_json(request_json))
    except CfnError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(EXIT_ERROR)

    result = validate_request(request)
    _emit(result.to_dict())
    sys.exit(EXIT_SUCCESS if result.is_valid else EXIT_FAILED)


@main.command("check-model")
@click.option(
    "--model",
    default=lambda: get_env_or_default("CFN_AGENT_MODEL", MODEL_ID),
    help=f"Bedrock model ID (env: CFN_AGENT_MODEL, default: {MODEL_ID})",
)
@click.option(
    "--region",
    default=lambda: get_env_or_default("AWS_REGION", DEFAULT_REGION),
    help=f"AWS region (env: AWS_REGION, default: {DEFAULT_REGION})",
)
def check_model(model, region):
    """Verify the Bedrock model is accessible and show its inference profile."""
    if not check_model_access(model, region):
        sys.exit(EXIT_FAILED)
    get_inference_profile_arn(model, region)
    sys.exit(EXIT_SUCCESS)


if __name__ == "__main__":
    main()
