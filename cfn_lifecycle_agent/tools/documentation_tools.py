"""Read, search and get recommendations from the public AWS documentation site."""

import logging
import re

import html2text
import httpx
from bs4 import BeautifulSoup

from ..config import DEFAULT_DOCS_TIMEOUT_MS

logger = logging.getLogger(__name__)

SEARCH_API_URL = "https://proxy.search.docs.aws.amazon.com/search"
RECOMMENDATIONS_API_URL = "https://contentrecs-api.docs.aws.amazon.com/v1/recommendations"
USER_AGENT = "AWS-Documentation-MCP-Server/1.0"

DEFAULT_MAX_LENGTH = 5000
MAX_SEARCH_LIMIT = 50

_DOCS_URL = re.compile(r"^https?://docs\.aws\.amazon\.com/")
_STRIPPED_TAGS = ("script", "style", "nav", "header", "footer")


class DocumentationError(Exception):
    """Raised when the documentation site cannot serve a request."""


def describe_http_error(error: Exception) -> str:
    if isinstance(error, httpx.TimeoutException):
        return f"Request timeout while accessing AWS documentation: {error}"
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        if status == 404:
            return f"Documentation page not found: {error}"
        if status == 403:
            return f"Access denied to documentation: {error}"
        if status >= 500:
            return f"AWS documentation service error: {error}"
    return f"Documentation error: {error}"


def html_to_markdown(html: str) -> str:
    soup = BeautifulSoup(html, "html.parser")
    for element in soup(list(_STRIPPED_TAGS)):
        element.decompose()
    for element in soup.select(".breadcrumb"):
        element.decompose()

    converter = html2text.HTML2Text()
    converter.ignore_links = False
    converter.ignore_images = True
    converter.body_width = 0
    markdown = converter.handle(str(soup))
    return re.sub(r"\n{3,}", "\n\n", markdown).strip()


def parse_search_results(data: dict, limit: int) -> list[dict]:
    results = []
    for rank, suggestion in enumerate((data.get("suggestions") or [])[:limit], start=1):
        excerpt = suggestion.get("textExcerptSuggestion")
        if not excerpt:
            continue
        results.append(
            {
                "rank_order": rank,
                "url": excerpt.get("link", ""),
                "title": excerpt.get("title", ""),
                "context": excerpt.get("summary") or excerpt.get("suggestionBody"),
            }
        )
    return results


def parse_recommendations(data: dict) -> list[dict]:
    results = []
    for category in (data.get("recommendations") or {}).values():
        if not isinstance(category, list):
            continue
        for item in category:
            if item.get("url") and item.get("title"):
                results.append(
                    {
                        "url": item["url"],
                        "title": item["title"],
                        "context": item.get("description") or item.get("summary"),
                    }
                )
    return results


class DocumentationTools:
    """Documentation site client. Each call opens and closes its own connection pool."""

    def __init__(self, timeout_ms: int = DEFAULT_DOCS_TIMEOUT_MS, transport: httpx.BaseTransport | None = None):
        self._timeout = timeout_ms / 1000
        self._transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(
            timeout=self._timeout,
            headers={"User-Agent": USER_AGENT},
            follow_redirects=True,
            transport=self._transport,
        )

    def read_documentation(
        self, url: str, max_length: int = DEFAULT_MAX_LENGTH, start_index: int = 0
    ) -> str:
        """Fetch a docs.aws.amazon.com page as markdown, sliced to ``[start_index, start_index + max_length)``."""
        if not _DOCS_URL.match(url):
            raise ValueError("URL must be from the docs.aws.amazon.com domain")
        if not url.endswith(".html"):
            raise ValueError("URL must end with .html")
        if max_length < 1 or start_index < 0:
            raise ValueError("max_length must be >= 1 and start_index >= 0")

        try:
            with self._client() as client:
                response = client.get(url)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise DocumentationError(
                f"Failed to read documentation from {url}: {describe_http_error(e)}"
            ) from e

        markdown = html_to_markdown(response.text)
        return markdown[start_index : start_index + max_length]

    def search_documentation(self, search_phrase: str, limit: int = 10) -> list[dict]:
        limit = max(1, min(limit, MAX_SEARCH_LIMIT))
        body = {
            "textQuery": {"input": search_phrase},
            "contextAttributes": [{"key": "domain", "value": "docs.aws.amazon.com"}],
            "acceptSuggestionBody": "RawText",
            "locales": ["en_us"],
        }
        try:
            with self._client() as client:
                response = client.post(SEARCH_API_URL, json=body)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise DocumentationError(
                f'Failed to search AWS documentation for "{search_phrase}": {describe_http_error(e)}'
            ) from e

        results = parse_search_results(response.json(), limit)
        logger.debug("Search for %r returned %d results", search_phrase, len(results))
        return results

    def recommend(self, url: str) -> list[dict]:
        try:
            with self._client() as client:
                response = client.get(RECOMMENDATIONS_API_URL, params={"path": url})
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise DocumentationError(
                f"Failed to get recommendations for {url}: {describe_http_error(e)}"
            ) from e
        return parse_recommendations(response.json())
