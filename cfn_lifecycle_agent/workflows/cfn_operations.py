"""Stack lifecycle orchestration: create/update/delete/list/template flows with status polling."""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from ..errors import CfnValidationError, StackNotFoundError, classify_error, error_entry
from ..models import (
    CREATE_RESOURCE,
    DELETE_RESOURCE,
    LIST_RESOURCES,
    TEMPLATE_GENERATION,
    UPDATE_RESOURCE,
    LifecycleRequest,
)
from ..templates import stack_name_errors, utc_now_iso
from ..tools.cfn_tools import CloudFormationTools

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 10
DEFAULT_MAX_WAIT_TIME = 300


@dataclass
class StackWaitResult:
    is_complete: bool
    is_successful: bool
    final_status: str
    status_checks: list[dict[str, Any]] = field(default_factory=list)
    polls: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "isComplete": self.is_complete,
            "isSuccessful": self.is_successful,
            "finalStatus": self.final_status,
        }


def wait_for_stack_completion(
    tools: CloudFormationTools,
    stack_id: str,
    max_wait_time: float = DEFAULT_MAX_WAIT_TIME,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
    sleep: Callable[[float], Any] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> StackWaitResult:
    """Poll the stack until it reaches a terminal status or ``max_wait_time`` seconds pass.

    A missing stack ends the wait as a completed failure (``NOT_FOUND``). Other status
    check errors are logged and polling continues. Timing out leaves the remote
    operation running; only the local wait gives up.
    """
    started = clock()
    result = StackWaitResult(is_complete=False, is_successful=False, final_status="TIMEOUT")

    while True:
        result.polls += 1
        try:
            status = tools.get_request_status(stack_id)
        except Exception as e:
            if classify_error(e) is StackNotFoundError:
                logger.info("Stack %s no longer exists", stack_id)
                result.is_complete = True
                result.final_status = "NOT_FOUND"
                return result
            logger.warning("Status check for %s failed, will retry: %s", stack_id, e)
        else:
            result.status_checks.append(
                {
                    "timestamp": utc_now_iso(),
                    "stackStatus": status["stackStatus"],
                    "isComplete": status["isComplete"],
                    "isSuccessful": status["isSuccessful"],
                }
            )
            if status["isComplete"]:
                result.is_complete = True
                result.is_successful = status["isSuccessful"]
                result.final_status = status["stackStatus"]
                return result
            logger.debug("Stack %s is %s", stack_id, status["stackStatus"])

        remaining = max_wait_time - (clock() - started)
        if remaining <= 0:
            logger.warning("Gave up waiting for %s after %ss", stack_id, max_wait_time)
            return result
        sleep(min(poll_interval, remaining))


class LifecycleOrchestrator:
    """Runs one lifecycle request against CloudFormation and reports a structured result."""

    def __init__(
        self,
        tools: CloudFormationTools,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        sleep: Callable[[float], Any] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.tools = tools
        self.poll_interval = poll_interval
        self._sleep = sleep
        self._clock = clock
        self._flows = {
            CREATE_RESOURCE: self._create,
            UPDATE_RESOURCE: self._update,
            DELETE_RESOURCE: self._delete,
            TEMPLATE_GENERATION: self._template,
            LIST_RESOURCES: self._list,
        }

    def run(self, request: LifecycleRequest) -> dict[str, Any]:
        """Execute ``request``. Expected failures come back as ``status: failed``."""
        started = time.monotonic()
        steps: list[str] = []
        status_checks: list[dict[str, Any]] = []

        try:
            flow = self._flows.get(request.operation)
            if flow is None:
                raise CfnValidationError(
                    f"CloudFormation validation error: Unsupported operation: {request.operation}"
                )
            payload = flow(request, steps, status_checks)
        except Exception as e:
            logger.warning("%s failed: %s", request.operation, e)
            result = {
                "status": "failed",
                "operation": request.operation,
                "errors": [error_entry(e)],
                "executionTime": self._elapsed_ms(started),
                "stepsCompleted": steps,
            }
            if status_checks:
                result["statusChecks"] = status_checks
            return result

        result = {"status": "completed", "operation": request.operation, **payload}
        if status_checks:
            result["statusChecks"] = status_checks
        result["executionTime"] = self._elapsed_ms(started)
        result["stepsCompleted"] = steps
        return result

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.monotonic() - started) * 1000)

    def _wait(self, request: LifecycleRequest, stack_id: str, status_checks: list) -> StackWaitResult:
        waited = wait_for_stack_completion(
            self.tools,
            stack_id,
            max_wait_time=request.max_wait_time,
            poll_interval=self.poll_interval,
            sleep=self._sleep,
            clock=self._clock,
        )
        status_checks.extend(waited.status_checks)
        return waited

    def _create(self, request: LifecycleRequest, steps: list, status_checks: list) -> dict:
        if not request.resource_type:
            raise CfnValidationError(
                "CloudFormation validation error: resourceType is required to create a resource"
            )
        if request.stack_name:
            problems = stack_name_errors(request.stack_name)
            if problems:
                raise CfnValidationError(f"CloudFormation validation error: {'; '.join(problems)}")

        created = self.tools.create_resource(
            request.resource_type, request.resource_properties, stack_name=request.stack_name
        )
        steps.append("create-stack")
        payload: dict[str, Any] = {"createdResource": created}

        if request.wait_for_completion:
            waited = self._wait(request, created["stackId"], status_checks)
            steps.append("wait-for-completion")
            payload["completion"] = waited.to_dict()
            if waited.is_complete and waited.is_successful:
                payload["resourceDetails"] = self.tools.get_resource(created["stackId"])
                steps.append("fetch-resource-details")
        return payload

    def _update(self, request: LifecycleRequest, steps: list, status_checks: list) -> dict:
        if not request.stack_id:
            raise CfnValidationError(
                "CloudFormation validation error: stackId is required to update a resource"
            )
        if not request.updated_properties:
            raise CfnValidationError(
                "CloudFormation validation error: updatedProperties must not be empty"
            )

        updated = self.tools.update_resource(request.stack_id, request.updated_properties)
        steps.append("update-stack")
        payload: dict[str, Any] = {"updateResult": updated}

        if request.wait_for_completion:
            waited = self._wait(request, updated["stackId"], status_checks)
            steps.append("wait-for-completion")
            payload["completion"] = waited.to_dict()
            if waited.is_complete and waited.is_successful:
                payload["resourceDetails"] = self.tools.get_resource(updated["stackId"])
                steps.append("fetch-resource-details")
        return payload

    def _delete(self, request: LifecycleRequest, steps: list, status_checks: list) -> dict:
        if not request.stack_id:
            raise CfnValidationError(
                "CloudFormation validation error: stackId is required to delete a resource"
            )

        deleted = self.tools.delete_resource(request.stack_id, request.retain_resources)
        steps.append("delete-stack")
        payload: dict[str, Any] = {"deletionResult": deleted}

        if request.wait_for_completion:
            waited = self._wait(request, deleted["stackId"], status_checks)
            steps.append("wait-for-completion")
            payload["completion"] = waited.to_dict()
        return payload

    def _template(self, request: LifecycleRequest, steps: list, status_checks: list) -> dict:
        if not request.resource_type and not request.stack_id:
            raise CfnValidationError(
                "CloudFormation validation error: resourceType or stackId is required "
                "for template generation"
            )

        payload: dict[str, Any] = {}
        if request.resource_type:
            payload["schemaInfo"] = self.tools.get_resource_schema_information(
                request.resource_type, request.schema_version
            )
            steps.append("fetch-resource-schema")
        if request.stack_id:
            payload["template"] = self.tools.create_template(
                request.stack_id, request.template_format
            )
            steps.append("fetch-stack-template")
        return payload

    def _list(self, request: LifecycleRequest, steps: list, status_checks: list) -> dict:
        listed = self.tools.list_resources(
            resource_type_filter=request.resource_type_filter, max_results=request.max_results
        )
        steps.append("list-stacks")
        return {
            "resources": listed["resources"],
            "totalCount": listed["totalCount"],
            "hasMore": listed["hasMore"],
        }


def run_cfn_operation(
    request: LifecycleRequest,
    tools: CloudFormationTools,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
) -> dict[str, Any]:
    return LifecycleOrchestrator(tools, poll_interval=poll_interval).run(request)
