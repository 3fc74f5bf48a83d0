from __future__ import annotations

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from fieldllm.config import UseCase

# Maximum nested JSON depth accepted in free-form request objects
MAX_JSON_DEPTH = 20
MAX_PROMPT_LENGTH = 65536


def _validate_json_depth(obj: Any, max_depth: int = MAX_JSON_DEPTH, current_depth: int = 0) -> None:
    if current_depth > max_depth:
        raise ValueError(f"JSON nesting depth exceeds maximum of {max_depth}")
    if isinstance(obj, dict):
        for value in obj.values():
            _validate_json_depth(value, max_depth, current_depth + 1)
    elif isinstance(obj, list):
        for item in obj:
            _validate_json_depth(item, max_depth, current_depth + 1)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class WorkflowOptions(_CamelModel):
    enable: bool = False
    context: Optional[Dict[str, Any]] = None
    auto_execute: bool = False
    variables: Optional[Dict[str, Any]] = None

    @field_validator("context", "variables")
    @classmethod
    def _validate_depth(cls, value: Optional[dict]) -> Optional[dict]:
        if value is not None:
            _validate_json_depth(value)
        return value


class LLMRequest(_CamelModel):
    account_id: Optional[str] = Field(None, max_length=128)
    use_case: UseCase = UseCase.GENERAL
    # Optional here so a missing prompt maps to "Prompt is required"
    prompt: Optional[str] = Field(None, max_length=MAX_PROMPT_LENGTH)
    system_prompt: Optional[str] = Field(None, max_length=MAX_PROMPT_LENGTH)
    max_tokens: Optional[int] = Field(None, ge=1, le=32000)
    temperature: Optional[float] = Field(None, ge=0.0, le=2.0)
    model_override: Optional[str] = Field(None, max_length=128)
    stream: bool = False
    tools: Optional[Union[List[Any], Dict[str, Any]]] = None
    tool_choice: Optional[Union[str, Dict[str, Any]]] = None
    max_steps: int = Field(1, ge=1, le=10)
    workflow: Optional[WorkflowOptions] = None

    @field_validator("tools")
    @classmethod
    def _validate_tools_depth(cls, value: Any) -> Any:
        if value is not None:
            _validate_json_depth(value)
        return value


class LLMResponse(_CamelModel):
    success: bool = True
    text: str
    provider: str
    model: str
    tool_calls: List[Dict[str, Any]] = Field(default_factory=list)
    usage: Dict[str, int] = Field(default_factory=dict)


class ProviderInvalidateRequest(_CamelModel):
    account_id: Optional[str] = Field(None, max_length=128)
    all_accounts: bool = False


class WorkflowCategory(BaseModel):
    id: str
    description: str


class WorkflowCatalogResponse(BaseModel):
    workflows: List[WorkflowCategory]
    tools: Dict[str, List[str]]
