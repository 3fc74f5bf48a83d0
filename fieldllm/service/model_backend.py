from __future__ import annotations

import json
import re
from dataclasses import dataclass, field, replace
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Protocol, Union

import anthropic
import openai
from anthropic import AsyncAnthropic
from cryptography.fernet import Fernet, InvalidToken
from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError
from openai import AsyncOpenAI

from fieldllm.config import ProviderFamily, Settings
from fieldllm.logging import get_logger
from fieldllm.service.errors import BadRequestError, ConfigurationError, ProviderCallError
from fieldllm.storage.models import ProviderRecord

logger = get_logger(__name__)

# Dated or retired model ids mapped to their current equivalents so stored
# provider rows keep working across upstream renames.
MODEL_ALIASES: Dict[str, Dict[str, str]] = {
    ProviderFamily.ANTHROPIC.value: {
        "claude-3-5-sonnet-20241022": "claude-sonnet-4-5",
        "claude-3-5-sonnet-20240620": "claude-sonnet-4-5",
        "claude-3-5-sonnet-latest": "claude-sonnet-4-5",
        "claude-3-7-sonnet-20250219": "claude-sonnet-4-5",
        "claude-3-5-haiku-20241022": "claude-haiku-4-5",
        "claude-3-5-haiku-latest": "claude-haiku-4-5",
        "claude-3-opus-20240229": "claude-opus-4-1",
    },
    ProviderFamily.OPENAI.value: {
        "gpt-4-turbo-preview": "gpt-4-turbo",
        "gpt-4-1106-preview": "gpt-4-turbo",
    },
}

_TOOL_NAME_RE = re.compile(r"^[a-zA-Z0-9_-]{1,64}$")
_TOOL_CHOICE_MODES = {"auto", "none", "required"}
_EMPTY_SCHEMA = {"type": "object", "properties": {}}

ToolChoice = Union[str, Dict[str, str]]


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    parameters: Dict[str, Any]


@dataclass(frozen=True)
class GenerationRequest:
    prompt: str
    system_prompt: Optional[str] = None
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    tools: tuple = ()
    tool_choice: ToolChoice = "auto"
    # Accepted and validated only. Request-supplied tools have no
    # server-side executors, so tool calls are returned to the caller
    # after a single model round.
    max_steps: int = 1


@dataclass
class GenerationResult:
    text: str
    tool_calls: List[Dict[str, Any]] = field(default_factory=list)
    usage: Dict[str, int] = field(default_factory=dict)
    finish_reason: Optional[str] = None


class ChatModel(Protocol):
    """A concrete, callable model handle."""

    provider: str
    model: str

    async def generate(self, request: GenerationRequest) -> GenerationResult: ...

    def stream(self, request: GenerationRequest) -> AsyncIterator[str]: ...


def _parse_arguments(raw: Any) -> Any:
    if isinstance(raw, str):
        try:
            return json.loads(raw) if raw else {}
        except json.JSONDecodeError:
            return raw
    return raw or {}


def _provider_error(exc: Exception, family: str) -> ProviderCallError:
    status = getattr(exc, "status_code", None)
    if isinstance(
        exc,
        (
            openai.APITimeoutError,
            openai.APIConnectionError,
            anthropic.APITimeoutError,
            anthropic.APIConnectionError,
        ),
    ):
        transient = True
    elif status is not None:
        transient = status == 429 or status >= 500
    else:
        transient = False
    return ProviderCallError(
        f"{family} request failed: {exc}",
        transient=transient,
        upstream_status=status,
    )


class OpenAIChatModel:
    """Chat completions against the OpenAI API."""

    provider = ProviderFamily.OPENAI.value

    def __init__(
        self,
        model: str,
        api_key: str,
        *,
        timeout: float = 60.0,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        self.model = model
        # Retries belong to the resilience layer
        self.client = client or AsyncOpenAI(api_key=api_key, timeout=timeout, max_retries=0)

    def _params(self, request: GenerationRequest) -> Dict[str, Any]:
        messages = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.append({"role": "user", "content": request.prompt})
        params: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
        }
        if request.tools and request.tool_choice != "none":
            params["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": tool.name,
                        "description": tool.description,
                        "parameters": tool.parameters,
                    },
                }
                for tool in request.tools
            ]
            if isinstance(request.tool_choice, dict):
                params["tool_choice"] = {
                    "type": "function",
                    "function": {"name": request.tool_choice["name"]},
                }
            else:
                params["tool_choice"] = request.tool_choice
        return params

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        try:
            completion = await self.client.chat.completions.create(**self._params(request))
        except openai.APIError as exc:
            raise _provider_error(exc, self.provider) from exc

        choices = getattr(completion, "choices", None) or []
        first_choice = next(iter(choices), None)
        if not first_choice:
            logger.warning("openai_completion_empty", model=self.model)
            return GenerationResult(text="")
        message = first_choice.message
        tool_calls = [
            {
                "id": call.id,
                "name": call.function.name,
                "arguments": _parse_arguments(call.function.arguments),
            }
            for call in (getattr(message, "tool_calls", None) or [])
        ]
        usage = getattr(completion, "usage", None)
        return GenerationResult(
            text=message.content or "",
            tool_calls=tool_calls,
            usage={
                "prompt_tokens": getattr(usage, "prompt_tokens", 0) or 0,
                "completion_tokens": getattr(usage, "completion_tokens", 0) or 0,
                "total_tokens": getattr(usage, "total_tokens", 0) or 0,
            },
            finish_reason=getattr(first_choice, "finish_reason", None),
        )

    async def stream(self, request: GenerationRequest) -> AsyncIterator[str]:
        params = self._params(request)
        params["stream"] = True
        try:
            stream = await self.client.chat.completions.create(**params)
            async for chunk in stream:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta
                if delta is not None and delta.content:
                    yield delta.content
        except openai.APIError as exc:
            raise _provider_error(exc, self.provider) from exc


class AnthropicChatModel:
    """Messages API calls against Anthropic."""

    provider = ProviderFamily.ANTHROPIC.value

    def __init__(
        self,
        model: str,
        api_key: str,
        *,
        timeout: float = 60.0,
        client: Optional[AsyncAnthropic] = None,
    ) -> None:
        self.model = model
        self.client = client or AsyncAnthropic(api_key=api_key, timeout=timeout, max_retries=0)

    def _params(self, request: GenerationRequest) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
            "messages": [{"role": "user", "content": request.prompt}],
        }
        if request.system_prompt:
            params["system"] = request.system_prompt
        if request.tools and request.tool_choice != "none":
            params["tools"] = [
                {
                    "name": tool.name,
                    "description": tool.description,
                    "input_schema": tool.parameters,
                }
                for tool in request.tools
            ]
            if isinstance(request.tool_choice, dict):
                params["tool_choice"] = {"type": "tool", "name": request.tool_choice["name"]}
            elif request.tool_choice == "required":
                params["tool_choice"] = {"type": "any"}
            else:
                params["tool_choice"] = {"type": "auto"}
        return params

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        try:
            response = await self.client.messages.create(**self._params(request))
        except anthropic.APIError as exc:
            raise _provider_error(exc, self.provider) from exc

        text_parts: List[str] = []
        tool_calls: List[Dict[str, Any]] = []
        for block in response.content or []:
            block_type = getattr(block, "type", None)
            if block_type == "text":
                text_parts.append(block.text)
            elif block_type == "tool_use":
                tool_calls.append(
                    {"id": block.id, "name": block.name, "arguments": block.input or {}}
                )
        usage = getattr(response, "usage", None)
        input_tokens = getattr(usage, "input_tokens", 0) or 0
        output_tokens = getattr(usage, "output_tokens", 0) or 0
        return GenerationResult(
            text="".join(text_parts),
            tool_calls=tool_calls,
            usage={
                "prompt_tokens": input_tokens,
                "completion_tokens": output_tokens,
                "total_tokens": input_tokens + output_tokens,
            },
            finish_reason=getattr(response, "stop_reason", None),
        )

    async def stream(self, request: GenerationRequest) -> AsyncIterator[str]:
        try:
            async with self.client.messages.stream(**self._params(request)) as stream:
                async for text in stream.text_stream:
                    if text:
                        yield text
        except anthropic.APIError as exc:
            raise _provider_error(exc, self.provider) from exc


ModelFactory = Callable[..., ChatModel]


def default_model_factories() -> Dict[str, ModelFactory]:
    return {
        ProviderFamily.OPENAI.value: OpenAIChatModel,
        ProviderFamily.ANTHROPIC.value: AnthropicChatModel,
    }


def normalize_model_name(family: str, model: str) -> str:
    """Map deprecated model ids for ``family`` to their current names."""
    aliases = MODEL_ALIASES.get((family or "").lower(), {})
    return aliases.get(model, model)


def encrypt_api_key(api_key: str, secret: str) -> str:
    """Encrypt a provider API key for storage in ``llm_providers``."""
    return Fernet(secret.encode()).encrypt(api_key.encode()).decode()


def normalize_tools(raw: Any) -> List[ToolSpec]:
    """Accept OpenAI-style tool lists or name-keyed tool maps.

    Every ``parameters`` object must be a valid JSON Schema.
    """
    if not raw:
        return []
    entries: List[tuple[Any, Any]] = []
    if isinstance(raw, dict):
        for name, definition in raw.items():
            entries.append((name, definition))
    elif isinstance(raw, list):
        for item in raw:
            if not isinstance(item, dict):
                raise BadRequestError("Each tool must be an object")
            definition = item.get("function") if item.get("type") == "function" else item
            if not isinstance(definition, dict):
                raise BadRequestError("Tool function definition must be an object")
            entries.append((definition.get("name"), definition))
    else:
        raise BadRequestError("tools must be a list or an object")

    specs: List[ToolSpec] = []
    seen: set[str] = set()
    for name, definition in entries:
        if not isinstance(name, str) or not _TOOL_NAME_RE.match(name):
            raise BadRequestError(f"Invalid tool name: {name!r}")
        if name in seen:
            raise BadRequestError(f"Duplicate tool name: {name}")
        seen.add(name)
        definition = definition if isinstance(definition, dict) else {}
        parameters = definition.get("parameters") or dict(_EMPTY_SCHEMA)
        if not isinstance(parameters, dict):
            raise BadRequestError(f"Tool {name} parameters must be an object")
        try:
            Draft202012Validator.check_schema(parameters)
        except SchemaError as exc:
            raise BadRequestError(
                f"Invalid JSON schema for tool {name}: {exc.message}"
            ) from exc
        specs.append(
            ToolSpec(
                name=name,
                description=str(definition.get("description") or ""),
                parameters=parameters,
            )
        )
    return specs


def normalize_tool_choice(raw: Any, tools: List[ToolSpec]) -> ToolChoice:
    if raw is None:
        return "auto"
    if isinstance(raw, str):
        if raw not in _TOOL_CHOICE_MODES:
            raise BadRequestError(f"Unsupported toolChoice: {raw}")
        return raw
    if isinstance(raw, dict):
        name = None
        if raw.get("type") == "function" and isinstance(raw.get("function"), dict):
            name = raw["function"].get("name")
        elif raw.get("type") == "tool":
            name = raw.get("toolName") or raw.get("name")
        if not name or name not in {t.name for t in tools}:
            raise BadRequestError("toolChoice must name one of the supplied tools")
        return {"name": name}
    raise BadRequestError("Unsupported toolChoice")


class ModelAdapter:
    """Turns provider records into callable model handles."""

    def __init__(
        self,
        settings: Settings,
        *,
        factories: Optional[Dict[str, ModelFactory]] = None,
    ) -> None:
        self.settings = settings
        self.factories: Dict[str, ModelFactory] = factories or default_model_factories()
        self._env_keys = {
            ProviderFamily.OPENAI.value: settings.openai_api_key,
            ProviderFamily.ANTHROPIC.value: settings.anthropic_api_key,
        }
        self._fernet: Optional[Fernet] = None
        if settings.provider_key_encryption_key:
            try:
                self._fernet = Fernet(settings.provider_key_encryption_key.encode())
            except ValueError as exc:
                raise ConfigurationError(
                    "PROVIDER_KEY_ENCRYPTION_KEY is not a valid Fernet key"
                ) from exc

    def resolve_api_key(self, provider: ProviderRecord, encrypted_key: Optional[str]) -> str:
        env_key = self._env_keys.get(provider.provider.lower())
        if env_key:
            return env_key
        if encrypted_key:
            return self._decrypt(provider, encrypted_key)
        raise ConfigurationError(f"Missing API Key for {provider.name}")

    def _decrypt(self, provider: ProviderRecord, encrypted_key: str) -> str:
        if self._fernet is None:
            # Rows written before encryption was configured hold the raw key
            return encrypted_key
        try:
            return self._fernet.decrypt(encrypted_key.encode()).decode()
        except InvalidToken as exc:
            logger.error("provider_key_decrypt_failed", provider_id=provider.id)
            raise ConfigurationError(
                f"Could not decrypt API key for {provider.name}"
            ) from exc

    def apply_defaults(
        self, request: GenerationRequest, provider: ProviderRecord
    ) -> GenerationRequest:
        return replace(
            request,
            max_tokens=request.max_tokens
            or provider.max_tokens
            or self.settings.default_max_tokens,
            temperature=(
                request.temperature
                if request.temperature is not None
                else self.settings.default_temperature
            ),
        )

    def build(self, provider: ProviderRecord, api_key: str) -> ChatModel:
        family = provider.provider.lower()
        factory = self.factories.get(family)
        if factory is None:
            raise ConfigurationError(f"Unsupported provider: {provider.provider}")
        model = normalize_model_name(family, provider.model)
        if model != provider.model:
            logger.info(
                "model_alias_normalized",
                provider_id=provider.id,
                configured=provider.model,
                resolved=model,
            )
        return factory(
            model, api_key, timeout=self.settings.provider_request_timeout_seconds
        )
