"""AWS documentation agent: searches, reads and recommends docs.aws.amazon.com pages."""

import json
import logging

from strands import Agent, tool
from strands.agent.conversation_manager import SlidingWindowConversationManager

from ..config import MEMORY_LAST_MESSAGES, Settings, load_settings
from ..context import AWS_CREDENTIALS_KEY, RuntimeContext
from ..tools.documentation_tools import DocumentationError, DocumentationTools

logger = logging.getLogger(__name__)


def create_documentation_agent(
    ctx: RuntimeContext | None = None,
    settings: Settings | None = None,
    session_manager=None,
    docs: DocumentationTools | None = None,
) -> Agent:
    """Create the documentation agent.

    The documentation site is public, so credentials in ``ctx`` only change the prompt.
    """
    settings = settings or load_settings()
    docs = docs or DocumentationTools(timeout_ms=settings.docs_timeout_ms)
    has_credentials = ctx is not None and AWS_CREDENTIALS_KEY in ctx
    logger.debug("Documentation agent created, AWS credentials present: %s", has_credentials)

    @tool
    def read_documentation(url: str, max_length: int = 5000, start_index: int = 0) -> str:
        """Fetch a docs.aws.amazon.com page as markdown. Use start_index to page through long documents."""
        try:
            return docs.read_documentation(url, max_length=max_length, start_index=start_index)
        except (DocumentationError, ValueError) as e:
            return f"Error: {e}"

    @tool
    def search_documentation(search_phrase: str, limit: int = 10) -> str:
        """Search AWS documentation. Returns ranked pages with url, title and excerpt."""
        try:
            return json.dumps(docs.search_documentation(search_phrase, limit=limit), indent=2)
        except DocumentationError as e:
            return f"Error: {e}"

    @tool
    def recommend(url: str) -> str:
        """Get pages related to a documentation page (highly rated, new, similar, next steps)."""
        try:
            return json.dumps(docs.recommend(url), indent=2)
        except DocumentationError as e:
            return f"Error: {e}"

    credential_note = (
        "AWS credentials are configured for this user."
        if has_credentials
        else "No AWS credentials are configured; answer from documentation only."
    )

    return Agent(
        name="DocumentationAgent",
        model=settings.model_id,
        system_prompt=f"""You answer AWS questions from the official AWS documentation.
{credential_note}

Workflow:
1. search_documentation for the topic
2. read_documentation on the most relevant pages
3. recommend to find related pages when the first results are thin

Response rules:
- At most 3 key points, as bullets
- Service, use case, then implementation
- Include short code snippets in fenced blocks when they help
- Explain jargon in plain language
- Cite the page URL for each point""",
        tools=[read_documentation, search_documentation, recommend],
        conversation_manager=SlidingWindowConversationManager(window_size=MEMORY_LAST_MESSAGES),
        session_manager=session_manager,
    )
