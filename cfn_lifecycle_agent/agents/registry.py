"""Agents addressable by name over HTTP, with optional AgentCore conversation memory."""

import logging
import re

from ..config import (
    DEFAULT_MEMORY_NAME,
    Settings,
    create_session_manager,
    setup_agentcore_memory,
)
from ..context import RuntimeContext
from .cfn_agent import create_cfn_agent
from .core_agent import create_core_agent
from .documentation_agent import create_documentation_agent

logger = logging.getLogger(__name__)

AGENTS = {
    "cfnAgent": lambda ctx, settings, sm: create_cfn_agent(ctx, settings, session_manager=sm),
    "coreAgent": lambda ctx, settings, sm: create_core_agent(settings, session_manager=sm),
    "documentationAgent": lambda ctx, settings, sm: create_documentation_agent(
        ctx, settings, session_manager=sm
    ),
}


class UnknownAgentError(KeyError):
    pass


def _safe_id(value: str) -> str:
    return re.sub(r"[^a-zA-Z0-9_-]", "_", value)[:64]


def memory_session_manager(
    settings: Settings, thread_id: str | None, resource_id: str | None
):
    """Session manager keyed by thread (session) and resource (actor), or None."""
    if not settings.enable_memory or not thread_id:
        return None
    memory_config, _ = setup_agentcore_memory(
        region=settings.region,
        memory_name=DEFAULT_MEMORY_NAME,
        actor_id=f"user_{_safe_id(resource_id or 'anonymous')}",
        session_id=f"thread_{_safe_id(thread_id)}",
    )
    if not memory_config:
        logger.warning("Conversation memory unavailable, thread %s starts fresh", thread_id)
        return None
    return create_session_manager(memory_config)


def build_agent(
    name: str,
    ctx: RuntimeContext,
    settings: Settings,
    thread_id: str | None = None,
    resource_id: str | None = None,
):
    factory = AGENTS.get(name)
    if factory is None:
        raise UnknownAgentError(name)
    return factory(ctx, settings, memory_session_manager(settings, thread_id, resource_id))
