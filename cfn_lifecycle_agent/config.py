import logging
import os
from dataclasses import dataclass
from datetime import datetime

import boto3
from bedrock_agentcore.memory import MemoryClient
from bedrock_agentcore.memory.integrations.strands.config import (
    AgentCoreMemoryConfig,
    RetrievalConfig,
)
from bedrock_agentcore.memory.integrations.strands.session_manager import (
    AgentCoreMemorySessionManager,
)

logger = logging.getLogger(__name__)

MODEL_ID = "amazon.nova-2-lite-v1:0"
# Strands SDK Agent resolves inference profiles itself; direct Converse calls may need the ARN
DEFAULT_REGION = "us-east-1"
DEFAULT_AGENT_URL = "http://localhost:4111"
DEFAULT_MEMORY_NAME = "CfnLifecycleMemory"

DEFAULT_TIMEOUT_MS = 30000
DEFAULT_MAX_RETRIES = 3
DEFAULT_DOCS_TIMEOUT_MS = 30000

# Messages each agent keeps in its sliding conversation window
MEMORY_LAST_MESSAGES = 20


def env_flag(name: str) -> bool:
    return os.environ.get(name, "").lower() in ("true", "1", "yes")


def env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r, using %d", name, raw, default)
        return default


@dataclass(frozen=True)
class Settings:
    """Process-wide settings resolved from the environment."""

    region: str = DEFAULT_REGION
    model_id: str = MODEL_ID
    readonly: bool = False
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    max_retries: int = DEFAULT_MAX_RETRIES
    agent_url: str = DEFAULT_AGENT_URL
    jwt_secret: str | None = None
    docs_timeout_ms: int = DEFAULT_DOCS_TIMEOUT_MS
    enable_memory: bool = False

    @property
    def timeout_in_minutes(self) -> int:
        """Stack creation timeout handed to CloudFormation."""
        return max(1, self.timeout_ms // 60000)


def load_settings() -> Settings:
    return Settings(
        region=os.environ.get("AWS_REGION", DEFAULT_REGION),
        model_id=os.environ.get("CFN_AGENT_MODEL", MODEL_ID),
        readonly=env_flag("CFN_MCP_SERVER_READONLY"),
        timeout_ms=env_int("CFN_MCP_SERVER_TIMEOUT", DEFAULT_TIMEOUT_MS),
        max_retries=env_int("CFN_MCP_SERVER_MAX_RETRIES", DEFAULT_MAX_RETRIES),
        agent_url=os.environ.get("AGENT_URL", DEFAULT_AGENT_URL).rstrip("/"),
        jwt_secret=os.environ.get("GATEWAY_JWT_SECRET") or None,
        docs_timeout_ms=env_int("AWS_DOCUMENTATION_TIMEOUT", DEFAULT_DOCS_TIMEOUT_MS),
        enable_memory=env_flag("CFN_AGENT_MEMORY"),
    )


def check_model_access(model_id: str = MODEL_ID, region: str = DEFAULT_REGION) -> bool:
    """Verify access to the model."""
    try:
        bedrock = boto3.client("bedrock", region_name=region)
        response = bedrock.list_foundation_models()
        available_models = [m["modelId"] for m in response["modelSummaries"]]
        has_access = model_id in available_models
        if has_access:
            print(f"✓ Model {model_id} is accessible")
        else:
            print(
                f"✗ Model {model_id} is not accessible. Available models: {len(available_models)}"
            )
        return has_access
    except Exception as e:
        print(f"Error checking model access: {e}")
        return False


def get_inference_profile_arn(model_id: str = MODEL_ID, region: str = DEFAULT_REGION) -> str | None:
    """
    Get inference profile ARN for a model.

    Format: arn:aws:bedrock:REGION:ACCOUNT_ID:inference-profile/global.MODEL_ID
    """
    try:
        sts = boto3.client("sts", region_name=region)
        account_id = sts.get_caller_identity()["Account"]
        profile_arn = f"arn:aws:bedrock:{region}:{account_id}:inference-profile/global.{model_id}"
        print(f"✓ Using inference profile: {profile_arn}")
        return profile_arn
    except Exception as e:
        print(f"Warning: Could not get inference profile ARN: {e}")
        print("Note: Strands SDK Agent handles inference profiles automatically.")
        return None


def setup_agentcore_memory(
    region: str = DEFAULT_REGION,
    memory_name: str = DEFAULT_MEMORY_NAME,
    actor_id: str | None = None,
    session_id: str | None = None,
):
    """Find or create the AgentCore memory used for agent conversation threads."""

    client = MemoryClient(region_name=region)
    memory_id = None

    try:
        for m in client.list_memories():
            name = m.get("name") or m.get("memoryName") or m.get("Name")
            if name == memory_name:
                memory_id = m.get("id") or m.get("memoryId") or m.get("memory_id")
                break

        if not memory_id:
            try:
                memory = client.create_memory(
                    name=memory_name, description="Conversation memory for CloudFormation agents"
                )
                memory_id = memory.get("id") or memory.get("memoryId") or memory.get("memory_id")
            except Exception as create_error:
                if "already exists" in str(create_error).lower():
                    logger.warning("Memory '%s' exists but couldn't be listed. Skipping.", memory_name)
                    return None, None
                raise

        if not memory_id:
            logger.warning("Could not get memory ID. Skipping memory.")
            return None, None

        if not actor_id:
            actor_id = f"actor_{datetime.now().strftime('%Y%m%d%H%M%S')}"
        if not session_id:
            session_id = f"session_{datetime.now().strftime('%Y%m%d%H%M%S')}"

        memory_config = AgentCoreMemoryConfig(
            memory_id=memory_id,
            session_id=session_id,
            actor_id=actor_id,
            retrieval_config=RetrievalConfig().model_dump(),
        )
        return memory_config, memory_id

    except Exception as e:
        logger.warning("Could not set up AgentCore Memory: %s. Agents will work without memory.", e)
        return None, None


def create_session_manager(memory_config, actor_id: str | None = None):
    """Create a session manager for agent memory."""
    if not memory_config:
        return None

    if not actor_id:
        actor_id = getattr(memory_config, "actor_id", None) or (
            f"actor_{datetime.now().strftime('%Y%m%d%H%M%S')}"
        )

    return AgentCoreMemorySessionManager(memory_config=memory_config, actor_id=actor_id)
