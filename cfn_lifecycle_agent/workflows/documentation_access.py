"""Two-agent documentation pipeline: the core agent plans, the documentation agent answers.

Agent replies are free text, so everything extracted from them (services, complexity,
code examples) is best-effort.
"""

import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from ..errors import CfnValidationError
from ..models import int_field

logger = logging.getLogger(__name__)

PRIORITIES = ("low", "medium", "high")
COMMON_SERVICES = ("ec2", "s3", "lambda", "rds", "vpc", "iam", "cloudformation", "cloudwatch")
SUMMARY_LENGTH = 200
APPROACH_LENGTH = 500
MAX_CODE_EXAMPLES = 3
TOTAL_STEPS = 3

BEST_PRACTICES = [
    "Follow AWS Well-Architected Framework principles",
    "Implement proper error handling and retry logic",
    "Use least privilege access patterns",
    "Monitor and log all operations",
]

_CODE_BLOCK = re.compile(r"```[\w-]*\n(.*?)```", re.DOTALL)


@dataclass
class RetryConfig:
    max_retries: int = 3
    retry_delay_ms: int = 1000
    timeout_ms: int = 30000

    @classmethod
    def from_dict(cls, data: dict | None) -> "RetryConfig":
        data = data or {}
        if not isinstance(data, dict):
            raise CfnValidationError("CloudFormation validation error: retryConfig must be an object")
        config = cls(
            max_retries=int_field(data, "maxRetries", 3),
            retry_delay_ms=int_field(data, "retryDelay", 1000),
            timeout_ms=int_field(data, "timeout", 30000),
        )
        if not 0 <= config.max_retries <= 10:
            raise CfnValidationError("CloudFormation validation error: maxRetries must be 0-10")
        if not 100 <= config.retry_delay_ms <= 30000:
            raise CfnValidationError(
                "CloudFormation validation error: retryDelay must be 100-30000 ms"
            )
        return config


@dataclass
class DocumentationRequest:
    query: str
    context: str | None = None
    aws_services: list[str] = field(default_factory=list)
    priority: str = "medium"
    include_examples: bool = True
    max_results: int = 10
    retry: RetryConfig = field(default_factory=RetryConfig)

    @classmethod
    def from_dict(cls, data: dict) -> "DocumentationRequest":
        if not isinstance(data, dict) or not data.get("query"):
            raise CfnValidationError("CloudFormation validation error: query is required")
        request = cls(
            query=str(data["query"]),
            context=data.get("context"),
            aws_services=list(data.get("awsServices") or []),
            priority=str(data.get("priority", "medium")),
            include_examples=bool(data.get("includeExamples", True)),
            max_results=int_field(data, "maxResults", 10),
            retry=RetryConfig.from_dict(data.get("retryConfig")),
        )
        if request.priority not in PRIORITIES:
            raise CfnValidationError(
                "CloudFormation validation error: priority must be low, medium or high"
            )
        if not 1 <= request.max_results <= 50:
            raise CfnValidationError("CloudFormation validation error: maxResults must be 1-50")
        return request


def retry_agent_operation(
    operation: Callable[[], str],
    config: RetryConfig,
    sleep: Callable[[float], Any] = time.sleep,
) -> tuple[str, int]:
    """Call ``operation`` up to ``max_retries`` times (at least once), waiting ``retry_delay * attempt``.

    Returns the result and the number of retries used.
    """
    attempts = max(1, config.max_retries)
    attempt = 1
    while True:
        try:
            return operation(), attempt - 1
        except Exception as e:
            logger.warning("Attempt %d/%d failed: %s", attempt, attempts, e)
            if attempt >= attempts:
                raise
            sleep(config.retry_delay_ms * attempt / 1000)
            attempt += 1


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _truncate(text: str, length: int) -> str:
    return text[:length] + ("..." if len(text) > length else "")


def _agent_error(stage: str, agent_name: str, error: Exception, retries: int) -> dict:
    return {
        "stage": stage,
        "error": f"{agent_name} error: {error}",
        "severity": "error",
        "agentName": agent_name,
        "retryCount": retries,
    }


def estimate_complexity(text: str) -> str:
    lowered = text.lower()
    if "complex" in lowered:
        return "high"
    if "simple" in lowered:
        return "low"
    return "medium"


def identify_services(text: str, requested: list[str]) -> list[str]:
    lowered = text.lower()
    wanted = [s.lower() for s in requested]
    found = [s for s in COMMON_SERVICES if s in lowered or any(s in w for w in wanted)]
    return found or ["general"]


class DocumentationAccessWorkflow:
    """``core_agent`` and ``documentation_agent`` are callables taking a prompt, like strands ``Agent``."""

    def __init__(self, core_agent: Callable, documentation_agent: Callable, sleep=time.sleep):
        self.core_agent = core_agent
        self.documentation_agent = documentation_agent
        self._sleep = sleep

    def run(self, request: DocumentationRequest) -> dict[str, Any]:
        started = time.monotonic()
        errors: list[dict] = []
        retries = 0

        planning, used = self._plan(request, errors)
        retries += used
        documentation, used = self._document(request, planning, errors)
        retries += used

        planning_ok = planning["analysisComplete"]
        docs_ok = documentation["documentsFound"] > 0
        if planning_ok and docs_ok:
            status = "success"
        elif planning_ok or docs_ok:
            status = "partial"
        else:
            status = "failed"

        recommendations = []
        if not docs_ok:
            recommendations.append("Consider refining your query or expanding search terms")
            recommendations.append("Try searching for related AWS services or concepts")
        if planning["estimatedComplexity"] == "high":
            recommendations.append("Consider breaking down complex queries into smaller parts")
            recommendations.append("Review AWS architecture patterns for guidance")
        recommendations.append("Validate information with official AWS documentation")
        recommendations.append("Test any code examples in a development environment")

        successful = 1 + int(planning_ok) + int(docs_ok)
        logger.info("Documentation access finished with status %s", status)
        return {
            "status": status,
            "planningResult": planning,
            "documentationResult": documentation,
            "errors": errors,
            "recommendations": recommendations,
            "executionTime": _elapsed_ms(started),
            "metrics": {
                "totalRetries": retries,
                "successfulSteps": successful,
                "failedSteps": TOTAL_STEPS - successful,
            },
        }

    def _plan(self, request: DocumentationRequest, errors: list) -> tuple[dict, int]:
        started = time.monotonic()
        prompt = f"""Analyze this documentation request and create a search strategy.

Query: {request.query}
Context: {request.context or "None provided"}
AWS Services: {", ".join(request.aws_services) or "Not specified"}
Priority: {request.priority}
Include Examples: {request.include_examples}
Max Results: {request.max_results}

Provide:
1. The complexity and scope of the query
2. The recommended approach for the documentation search
3. The relevant AWS services
4. Search keywords
5. An estimated complexity level (simple, moderate or complex)"""

        try:
            text, retries = retry_agent_operation(
                lambda: str(self.core_agent(prompt)), request.retry, self._sleep
            )
        except Exception as e:
            retries = max(1, request.retry.max_retries) - 1
            logger.error("Core agent planning failed: %s", e)
            errors.append(_agent_error("planning", "coreAgent", e, retries))
            return {
                "analysisComplete": False,
                "recommendedApproach": "Fallback: direct documentation search due to planning failure",
                "identifiedServices": request.aws_services or ["general"],
                "searchStrategy": f"Fallback strategy for: {request.query}",
                "estimatedComplexity": "medium",
                "agentUsed": "coreAgent",
                "executionTime": _elapsed_ms(started),
            }, retries

        services = identify_services(text, request.aws_services)
        return {
            "analysisComplete": "analysis complete" in text.lower() or len(text) > 100,
            "recommendedApproach": _truncate(text, APPROACH_LENGTH),
            "identifiedServices": services,
            "searchStrategy": (
                f"Priority: {request.priority}, Services: {', '.join(services)}, "
                f"Examples: {request.include_examples}"
            ),
            "estimatedComplexity": estimate_complexity(text),
            "agentUsed": "coreAgent",
            "executionTime": _elapsed_ms(started),
        }, retries

    def _document(self, request: DocumentationRequest, planning: dict, errors: list) -> tuple[dict, int]:
        started = time.monotonic()
        services = planning["identifiedServices"]
        prompt = f"""Based on the planning analysis, search the AWS documentation.

Original Query: {request.query}
Planning Approach: {planning["recommendedApproach"]}
Identified Services: {", ".join(services)}
Search Strategy: {planning["searchStrategy"]}
Complexity: {planning["estimatedComplexity"]}

Provide:
1. Relevant documentation sections for each service, with page URLs
2. {"Code examples in fenced code blocks" if request.include_examples else "No code examples"}
3. Best practices
4. A direct answer to the query"""

        try:
            text, retries = retry_agent_operation(
                lambda: str(self.documentation_agent(prompt)), request.retry, self._sleep
            )
        except Exception as e:
            retries = max(1, request.retry.max_retries) - 1
            logger.error("Documentation agent failed: %s", e)
            errors.append(_agent_error("documentation", "documentationAgent", e, retries))
            return {
                "documentsFound": 0,
                "relevantSections": [],
                "codeExamples": [],
                "bestPractices": [],
                "agentUsed": "documentationAgent",
                "executionTime": _elapsed_ms(started),
            }, retries

        sections = []
        if text.strip():
            for index, service in enumerate(services[: request.max_results]):
                sections.append(
                    {
                        "service": service,
                        "section": f"Documentation for {service}",
                        "relevance": max(0.5, round(1 - index * 0.1, 2)),
                        "summary": _truncate(
                            text[index * SUMMARY_LENGTH :], SUMMARY_LENGTH
                        ).strip(),
                    }
                )

        examples = []
        if request.include_examples:
            for block in _CODE_BLOCK.findall(text)[:MAX_CODE_EXAMPLES]:
                service = next((s for s in services if s in block.lower()), services[0])
                examples.append(
                    {
                        "service": service,
                        "example": block.strip(),
                        "description": f"Code example for {service} based on documentation",
                    }
                )

        return {
            "documentsFound": len(sections),
            "relevantSections": sections,
            "codeExamples": examples,
            "bestPractices": list(BEST_PRACTICES),
            "agentUsed": "documentationAgent",
            "executionTime": _elapsed_ms(started),
        }, retries
