from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from fieldllm.logging import sanitize_error_message, sanitize_response_data
from fieldllm.service.context import ExecutionContext
from fieldllm.service.errors import StepParameterError, VariableConflictError


class _PlanModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Step parameters ------------------------------------------------------


class _ParameterBase(_PlanModel):
    name: str
    required: bool = False
    default: Any = None
    description: str = ""

    def _fail(self, message: str) -> StepParameterError:
        return StepParameterError(f"Parameter {self.name} {message}")


class StringParameter(_ParameterBase):
    type: Literal["string"] = "string"
    pattern: Optional[str] = None

    def validate_value(self, value: Any) -> None:
        if not isinstance(value, str):
            raise self._fail("must be a string")
        if self.pattern and not re.search(self.pattern, value):
            raise self._fail("does not match required pattern")


class NumberParameter(_ParameterBase):
    type: Literal["number"] = "number"
    minimum: Optional[float] = None
    maximum: Optional[float] = None

    def validate_value(self, value: Any) -> None:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise self._fail("must be a number")
        if self.minimum is not None and value < self.minimum:
            raise self._fail(f"must be at least {self.minimum:g}")
        if self.maximum is not None and value > self.maximum:
            raise self._fail(f"must be at most {self.maximum:g}")


class BooleanParameter(_ParameterBase):
    type: Literal["boolean"] = "boolean"

    def validate_value(self, value: Any) -> None:
        if not isinstance(value, bool):
            raise self._fail("must be a boolean")


class ArrayParameter(_ParameterBase):
    type: Literal["array"] = "array"

    def validate_value(self, value: Any) -> None:
        if not isinstance(value, list):
            raise self._fail("must be an array")


class ObjectParameter(_ParameterBase):
    type: Literal["object"] = "object"

    def validate_value(self, value: Any) -> None:
        if not isinstance(value, dict):
            raise self._fail("must be an object")


StepParameter = Annotated[
    Union[
        StringParameter,
        NumberParameter,
        BooleanParameter,
        ArrayParameter,
        ObjectParameter,
    ],
    Field(discriminator="type"),
]


def parameter_for_value(name: str, value: Any) -> StepParameter:
    """Infer a typed parameter from an extracted value.

    Blank values (None or empty string) become required string
    parameters without a default.
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        return StringParameter(name=name, required=True)
    # bool before number: bool is an int subclass
    if isinstance(value, bool):
        return BooleanParameter(name=name, default=value)
    if isinstance(value, (int, float)):
        return NumberParameter(name=name, default=value)
    if isinstance(value, list):
        return ArrayParameter(name=name, default=value)
    if isinstance(value, dict):
        return ObjectParameter(name=name, default=value)
    return StringParameter(name=name, default=str(value))


# Dispatch targets -----------------------------------------------------


class ClientAction(_PlanModel):
    kind: Literal["client"] = "client"
    action: str

    @property
    def marker(self) -> str:
        return f"client:{self.action}"


class ToolRpc(_PlanModel):
    kind: Literal["tool_rpc"] = "tool_rpc"
    tool_name: str

    @property
    def marker(self) -> str:
        return f"mcp:{self.tool_name}"


class RestEndpoint(_PlanModel):
    kind: Literal["rest"] = "rest"
    path: str

    @property
    def marker(self) -> str:
        return self.path


StepTarget = Annotated[
    Union[ClientAction, ToolRpc, RestEndpoint],
    Field(discriminator="kind"),
]


def parse_target(marker: Optional[str], tool: str) -> Union[ClientAction, ToolRpc, RestEndpoint]:
    """Resolve a ``client:``, ``mcp:`` or path marker into a target.

    A missing marker targets the tool RPC endpoint for ``tool``.
    """
    marker = (marker or "").strip()
    if not marker:
        return ToolRpc(tool_name=tool)
    if marker.startswith("client:"):
        action = marker[len("client:"):].strip()
        if not action:
            raise ValueError("client target requires an action")
        return ClientAction(action=action)
    if marker.startswith("mcp:"):
        name = marker[len("mcp:"):].strip()
        if not name:
            raise ValueError("tool target requires a name")
        return ToolRpc(tool_name=name)
    # Internal paths only; absolute or scheme-relative URLs are rejected
    if marker.startswith("/") and not marker.startswith("//") and "://" not in marker:
        return RestEndpoint(path=marker)
    raise ValueError(f"unsupported step target: {marker}")


# Workflow shape -------------------------------------------------------


class WorkflowStep(_PlanModel):
    id: str
    tool: str
    description: str = ""
    target: StepTarget
    method: str = "POST"
    parameters: List[StepParameter] = Field(default_factory=list)
    optional: bool = False
    dependencies: List[str] = Field(default_factory=list)

    @property
    def variable_key(self) -> str:
        return f"step_{self.id}"


class WorkflowDefinition(_PlanModel):
    id: str
    description: str
    steps: List[WorkflowStep] = Field(default_factory=list)


# Results --------------------------------------------------------------


class StepError(_PlanModel):
    code: str
    message: str
    details: Any = None

    model_config = ConfigDict(frozen=True)

    @classmethod
    def build(cls, code: str, message: str, details: Any = None) -> "StepError":
        """Scrubbed error descriptor; the only way results get an error."""
        return cls(
            code=code,
            message=sanitize_error_message(message),
            details=sanitize_response_data(details) if details is not None else None,
        )


class StepMetadata(_PlanModel):
    status: int
    request_id: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class StepResult(_PlanModel):
    step: WorkflowStep
    success: bool
    data: Any = None
    error: Optional[StepError] = None
    execution_time_ms: int = 0
    metadata: Optional[StepMetadata] = None

    model_config = ConfigDict(frozen=True)


class ExecutionReport(_PlanModel):
    success: bool
    status: Literal["succeeded", "partially_failed", "failed"]
    results: List[StepResult] = Field(default_factory=list)
    variables: Dict[str, Any] = Field(default_factory=dict)
    errors: List[Dict[str, Any]] = Field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


@dataclass
class WorkflowExecution:
    """Mutable state of one workflow run."""

    definition: WorkflowDefinition
    context: ExecutionContext
    input_variables: Dict[str, Any] = field(default_factory=dict)
    step_variables: Dict[str, Any] = field(default_factory=dict)
    current_step: int = 0
    step_results: List[StepResult] = field(default_factory=list)

    def record_variable(self, key: str, value: Any) -> None:
        if key in self.step_variables:
            raise VariableConflictError(f"Variable {key} is already set")
        self.step_variables[key] = value

    def record_result(self, result: StepResult) -> None:
        self.step_results.append(result)
