from __future__ import annotations

import asyncio
import re
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from fieldllm.config import Settings
from fieldllm.logging import get_logger, log_workflow_trace
from fieldllm.service.dispatch import StepDispatcher
from fieldllm.service.errors import (
    StepParameterError,
    StepTransportError,
    VariableConflictError,
    WorkflowStepError,
)
from fieldllm.service.plan import (
    ExecutionReport,
    RestEndpoint,
    StepError,
    StepMetadata,
    StepResult,
    WorkflowExecution,
    WorkflowStep,
)

logger = get_logger(__name__)

DEFAULT_STEP_TIMEOUT_MS = 30000
DEFAULT_WORKFLOW_TIMEOUT_MS = 300000
DEFAULT_STEP_MAX_RETRIES = 2
DEFAULT_BACKOFF_MS = 500  # quadruples each retry
MAX_RETRIES_HARD_CAP = 3
RETRYABLE_STATUSES = frozenset({502, 503, 504})

_MISSING = object()
_INDEX_RE = re.compile(r"\[(\d+)\]")


@dataclass
class ExecutionConfig:
    step_timeout_ms: int = DEFAULT_STEP_TIMEOUT_MS
    workflow_timeout_ms: int = DEFAULT_WORKFLOW_TIMEOUT_MS
    continue_on_error: bool = False
    max_retries: int = DEFAULT_STEP_MAX_RETRIES
    backoff_ms: int = DEFAULT_BACKOFF_MS

    @classmethod
    def from_settings(cls, settings: Settings) -> "ExecutionConfig":
        return cls(
            step_timeout_ms=settings.workflow_step_timeout_ms,
            workflow_timeout_ms=settings.workflow_timeout_ms,
            continue_on_error=settings.workflow_continue_on_error,
            max_retries=min(settings.workflow_step_max_retries, MAX_RETRIES_HARD_CAP),
            backoff_ms=settings.workflow_retry_backoff_ms,
        )


def extract_path(data: Any, path: str) -> Any:
    """Walk ``a.b.0.c`` or ``a.b[0].c``; returns ``_MISSING`` when absent."""
    current = data
    for part in _INDEX_RE.sub(r".\1", path).split("."):
        if not part:
            continue
        if isinstance(current, dict):
            if part not in current:
                return _MISSING
            current = current[part]
        elif isinstance(current, list) and part.isdigit():
            index = int(part)
            if index >= len(current):
                return _MISSING
            current = current[index]
        else:
            return _MISSING
    return current


def dependency_root(path: str) -> str:
    return re.split(r"[.\[]", path, maxsplit=1)[0]


class WorkflowEngine:
    """Runs hydrated workflow plans one step at a time."""

    def __init__(
        self,
        dispatcher: StepDispatcher,
        config: Optional[ExecutionConfig] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.dispatcher = dispatcher
        self.config = config or ExecutionConfig()
        self._clock = clock
        self._sleep = sleep
        self.logger = logger

    # Parameter resolution ---------------------------------------------

    def check_dependencies(self, step: WorkflowStep, execution: WorkflowExecution) -> None:
        for dep in step.dependencies:
            root = dependency_root(dep)
            if root not in execution.step_variables:
                raise WorkflowStepError(
                    f"Dependency {dep} is not available",
                    code="DEPENDENCY_UNRESOLVED",
                )

    @staticmethod
    def _dependency_leaf(dep: str) -> str:
        return _INDEX_RE.sub("", dep).rsplit(".", 1)[-1]

    def _from_dependencies(
        self, step: WorkflowStep, variables: Dict[str, Any], name: str
    ) -> Any:
        """Named matches first; then a scalar dependency no other parameter claims."""
        for dep in step.dependencies:
            if self._dependency_leaf(dep) == name:
                value = extract_path(variables, dep)
            else:
                value = extract_path(variables, f"{dep}.{name}")
            if value is not _MISSING and value is not None:
                return value
        claimed = {param.name for param in step.parameters}
        for dep in step.dependencies:
            if "." not in dep or self._dependency_leaf(dep) in claimed:
                continue
            value = extract_path(variables, dep)
            if value is not _MISSING and not isinstance(value, (dict, list, type(None))):
                return value
        return _MISSING

    def resolve_parameters(
        self, step: WorkflowStep, execution: WorkflowExecution
    ) -> Dict[str, Any]:
        """Input variables, then step variables, then dependencies, then defaults."""
        resolved: Dict[str, Any] = {}
        for param in step.parameters:
            value: Any = _MISSING
            if execution.input_variables.get(param.name) is not None:
                value = execution.input_variables[param.name]
            elif execution.step_variables.get(param.name) is not None:
                value = execution.step_variables[param.name]
            else:
                value = self._from_dependencies(step, execution.step_variables, param.name)
            if value is _MISSING and param.default is not None:
                value = param.default
            if value is _MISSING:
                if param.required:
                    raise StepParameterError(f"Missing required parameter: {param.name}")
                continue
            param.validate_value(value)
            resolved[param.name] = value
        return resolved

    # Execution --------------------------------------------------------

    def _elapsed_ms(self, started: float) -> float:
        return (self._clock() - started) * 1000

    def _failure(
        self,
        step: WorkflowStep,
        code: str,
        message: str,
        started: float,
        *,
        details: Any = None,
        status: Optional[int] = None,
        request_id: Optional[str] = None,
    ) -> StepResult:
        return StepResult(
            step=step,
            success=False,
            error=StepError.build(code, message, details),
            execution_time_ms=int(self._elapsed_ms(started)),
            metadata=StepMetadata(status=status, request_id=request_id)
            if status is not None
            else None,
        )

    def _is_retryable(self, step: WorkflowStep, exc: StepTransportError) -> bool:
        if not isinstance(step.target, RestEndpoint) or step.method.upper() != "GET":
            return False
        if exc.status is not None:
            return exc.status in RETRYABLE_STATUSES
        return exc.code == StepTransportError.code

    async def run_step(
        self,
        step: WorkflowStep,
        execution: WorkflowExecution,
        workflow_started: float,
    ) -> StepResult:
        started = self._clock()
        try:
            self.check_dependencies(step, execution)
            parameters = self.resolve_parameters(step, execution)
        except WorkflowStepError as exc:
            return self._failure(step, exc.code, exc.message, started, details=exc.details)

        attempt = 0
        while True:
            remaining_ms = self.config.workflow_timeout_ms - self._elapsed_ms(workflow_started)
            if remaining_ms <= 0:
                return self._failure(
                    step,
                    "WORKFLOW_TIMEOUT",
                    f"Workflow timeout after {self.config.workflow_timeout_ms}ms",
                    started,
                )
            budget_ms = min(self.config.step_timeout_ms, remaining_ms)
            try:
                outcome = await asyncio.wait_for(
                    self.dispatcher.dispatch(step, parameters, execution.context),
                    timeout=budget_ms / 1000.0,
                )
            except asyncio.TimeoutError:
                if budget_ms < self.config.step_timeout_ms:
                    return self._failure(
                        step,
                        "WORKFLOW_TIMEOUT",
                        f"Workflow timeout after {self.config.workflow_timeout_ms}ms",
                        started,
                    )
                self.logger.warning(
                    "workflow_step_timeout",
                    step_id=step.id,
                    timeout_ms=self.config.step_timeout_ms,
                )
                return self._failure(
                    step,
                    "STEP_TIMEOUT",
                    f"Step timeout after {self.config.step_timeout_ms}ms",
                    started,
                )
            except StepTransportError as exc:
                if attempt < self.config.max_retries and self._is_retryable(step, exc):
                    backoff_ms = self.config.backoff_ms * (4 ** attempt)
                    attempt += 1
                    self.logger.info(
                        "workflow_step_backoff",
                        step_id=step.id,
                        attempt=attempt,
                        backoff_ms=backoff_ms,
                    )
                    await self._sleep(backoff_ms / 1000.0)
                    continue
                return self._failure(
                    step,
                    exc.code,
                    exc.message,
                    started,
                    details=exc.details,
                    status=exc.status,
                    request_id=exc.request_id,
                )
            except WorkflowStepError as exc:
                return self._failure(step, exc.code, exc.message, started, details=exc.details)
            except Exception as exc:
                self.logger.error(
                    "workflow_step_crashed", step_id=step.id, error=str(exc), exc_info=True
                )
                return self._failure(step, "STEP_EXECUTION_ERROR", str(exc), started)

            return StepResult(
                step=step,
                success=True,
                data=outcome.data,
                execution_time_ms=int(self._elapsed_ms(started)),
                metadata=StepMetadata(status=outcome.status, request_id=outcome.request_id)
                if outcome.status is not None
                else None,
            )

    async def execute(self, execution: WorkflowExecution) -> ExecutionReport:
        workflow_started = self._clock()
        definition = execution.definition
        errors: List[Dict[str, Any]] = []
        timed_out = False
        self.logger.info(
            "workflow_started",
            workflow_id=definition.id,
            account_id=execution.context.account_id,
            steps=len(definition.steps),
        )

        for index, step in enumerate(definition.steps):
            execution.current_step = index
            result = await self.run_step(step, execution, workflow_started)
            if result.success and result.data is not None:
                try:
                    execution.record_variable(step.variable_key, result.data)
                except VariableConflictError as exc:
                    result = self._failure(step, exc.code, exc.message, self._clock())
            execution.record_result(result)

            if result.success:
                continue
            errors.append(
                {
                    "stepId": step.id,
                    "code": result.error.code,
                    "message": result.error.message,
                }
            )
            self.logger.warning(
                "workflow_step_failed",
                workflow_id=definition.id,
                step_id=step.id,
                tool=step.tool,
                code=result.error.code,
                optional=step.optional,
            )
            if result.error.code == "WORKFLOW_TIMEOUT":
                timed_out = True
                break
            if not step.optional and not self.config.continue_on_error:
                break

        results = execution.step_results
        required_failed = any(not r.success and not r.step.optional for r in results)
        success = not required_failed and not timed_out
        if not success:
            status = "failed"
        elif all(r.success for r in results):
            status = "succeeded"
        else:
            status = "partially_failed"

        log_workflow_trace(
            [
                {
                    "step": r.step.id,
                    "tool": r.step.tool,
                    "success": r.success,
                    "ms": r.execution_time_ms,
                }
                for r in results
            ],
            logger=self.logger,
        )
        self.logger.info(
            "workflow_finished",
            workflow_id=definition.id,
            status=status,
            duration_ms=int(self._elapsed_ms(workflow_started)),
        )
        return ExecutionReport(
            success=success,
            status=status,
            results=list(results),
            variables=dict(execution.step_variables),
            errors=errors,
        )
