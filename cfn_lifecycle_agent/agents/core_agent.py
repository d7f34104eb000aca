"""Core agent: breaks user queries down and plans how to answer them."""

from strands import Agent, tool
from strands.agent.conversation_manager import SlidingWindowConversationManager

from ..config import MEMORY_LAST_MESSAGES, Settings, load_settings
from ..tools import core_tools


def create_core_agent(settings: Settings | None = None, session_manager=None) -> Agent:
    """Create the planning agent."""
    settings = settings or load_settings()

    @tool
    def prompt_understanding() -> str:
        """Guide for analysing a user query and mapping it to AWS services and tools."""
        return core_tools.prompt_understanding()

    return Agent(
        name="CoreAgent",
        model=settings.model_id,
        system_prompt="""You analyse AWS questions before anyone answers them.

Call prompt_understanding first, then:
1. Identify the requirements, goals and constraints in the query
2. Map them to AWS services
3. Propose a search strategy for the documentation agent
4. Rate the complexity as simple, moderate or complex

Be concise. Use bullet points.""",
        tools=[prompt_understanding],
        conversation_manager=SlidingWindowConversationManager(window_size=MEMORY_LAST_MESSAGES),
        session_manager=session_manager,
    )
