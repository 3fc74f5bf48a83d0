from __future__ import annotations

import itertools
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx

from fieldllm.config import Settings
from fieldllm.logging import get_logger
from fieldllm.service.context import ExecutionContext
from fieldllm.service.errors import StepParameterError, StepTransportError
from fieldllm.service.plan import ClientAction, RestEndpoint, ToolRpc, WorkflowStep

logger = get_logger(__name__)

_PATH_PARAM_RE = re.compile(r"\[([^\]]+)\]|\{([^}]+)\}")
_BODY_METHODS = {"POST", "PUT", "PATCH"}
_rpc_ids = itertools.count(1)


@dataclass
class DispatchOutcome:
    data: Any
    status: Optional[int] = None
    request_id: Optional[str] = None


def _lookup(parameters: Dict[str, Any], name: str) -> Any:
    if name in parameters:
        return parameters[name]
    current: Any = parameters
    for part in name.split("."):
        if isinstance(current, dict):
            current = current.get(part)
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return None
    return current


def substitute_path(path: str, parameters: Dict[str, Any]) -> tuple[str, set[str]]:
    """Fill ``[param]`` / ``{param}`` segments; returns the path and used names."""
    used: set[str] = set()

    def _replace(match: re.Match) -> str:
        name = match.group(1) or match.group(2)
        value = _lookup(parameters, name)
        if value is None or value == "":
            raise StepParameterError(f"Missing required path parameter: {name}")
        used.add(name)
        return quote(str(value), safe="")

    return _PATH_PARAM_RE.sub(_replace, path), used


def _error_message(payload: Any, status: int) -> str:
    if isinstance(payload, dict):
        for key in ("error", "message"):
            value = payload.get(key)
            if isinstance(value, str) and value:
                return value
            if isinstance(value, dict) and isinstance(value.get("message"), str):
                return value["message"]
    return f"HTTP {status}"


def _is_success(status: int) -> bool:
    return 200 <= status < 300


def _transport_reason(exc: httpx.HTTPError) -> str:
    return str(exc) or type(exc).__name__


def _decode(response: httpx.Response) -> Any:
    if "application/json" in response.headers.get("content-type", ""):
        try:
            return response.json()
        except ValueError:
            return response.text
    return response.text


class StepDispatcher:
    """Sends one resolved step to its target."""

    def __init__(
        self, settings: Settings, *, client: Optional[httpx.AsyncClient] = None
    ) -> None:
        self.settings = settings
        self.step_timeout_ms = settings.workflow_step_timeout_ms
        step_seconds = self.step_timeout_ms / 1000.0
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(step_seconds, connect=min(10.0, step_seconds)),
        )

    def _timeout_error(self, exc: httpx.TimeoutException) -> StepTransportError:
        return StepTransportError(
            f"Step timeout after {self.step_timeout_ms}ms",
            code="STEP_TIMEOUT",
            details={"reason": type(exc).__name__},
        )

    async def dispatch(
        self,
        step: WorkflowStep,
        parameters: Dict[str, Any],
        context: ExecutionContext,
    ) -> DispatchOutcome:
        target = step.target
        if isinstance(target, ClientAction):
            return self._client_action(target, parameters, context)
        if isinstance(target, ToolRpc):
            return await self._tool_rpc(target, parameters, context)
        return await self._rest(step, target, parameters, context)

    def _client_action(
        self,
        target: ClientAction,
        parameters: Dict[str, Any],
        context: ExecutionContext,
    ) -> DispatchOutcome:
        return DispatchOutcome(
            data={
                "type": target.action,
                "parameters": parameters,
                "context": context.public_view(),
            }
        )

    async def _tool_rpc(
        self,
        target: ToolRpc,
        parameters: Dict[str, Any],
        context: ExecutionContext,
    ) -> DispatchOutcome:
        headers = {
            "Content-Type": "application/json",
            "X-Account-ID": context.account_id,
        }
        if self.settings.service_role_key:
            headers["Authorization"] = f"Bearer {self.settings.service_role_key}"
        forwarded = context.forwarded_authorization
        if forwarded:
            headers["X-User-Authorization"] = forwarded
        envelope = {
            "jsonrpc": "2.0",
            "method": "tools/call",
            "params": {"name": target.tool_name, "arguments": parameters},
            "id": next(_rpc_ids),
        }
        try:
            response = await self.client.post(
                self.settings.tool_rpc_url, json=envelope, headers=headers
            )
        except httpx.TimeoutException as exc:
            raise self._timeout_error(exc) from exc
        except httpx.HTTPError as exc:
            raise StepTransportError(
                f"Tool call {target.tool_name} failed: {_transport_reason(exc)}",
                code="RPC_EXECUTION_ERROR",
            ) from exc
        request_id = response.headers.get("x-request-id")
        if not _is_success(response.status_code):
            payload = _decode(response)
            logger.warning(
                "workflow_rpc_step_failed",
                tool=target.tool_name,
                status=response.status_code,
                request_id=request_id,
            )
            raise StepTransportError(
                _error_message(payload, response.status_code),
                code=f"HTTP_{response.status_code}",
                details=payload,
                status=response.status_code,
                request_id=request_id,
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise StepTransportError(
                f"Tool call {target.tool_name} returned invalid JSON",
                code="RPC_EXECUTION_ERROR",
            ) from exc
        if not isinstance(body, dict):
            raise StepTransportError(
                "Tool call returned a non-object response", code="RPC_EXECUTION_ERROR"
            )
        error = body.get("error")
        if error:
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise StepTransportError(
                message or "Tool call failed", code="RPC_ERROR", details=error
            )
        return DispatchOutcome(
            data=body.get("result"),
            status=response.status_code,
            request_id=request_id,
        )

    async def _rest(
        self,
        step: WorkflowStep,
        target: RestEndpoint,
        parameters: Dict[str, Any],
        context: ExecutionContext,
    ) -> DispatchOutcome:
        path, used = substitute_path(target.path, parameters)
        remaining = {k: v for k, v in parameters.items() if k not in used}
        headers = {
            "Content-Type": "application/json",
            "X-Account-ID": context.account_id,
            "X-User-Role": context.role,
            "X-User-ID": context.user_id,
        }
        forwarded = context.forwarded_authorization
        if forwarded:
            headers["Authorization"] = forwarded
        method = step.method.upper()
        url = self.settings.app_base_url.rstrip("/") + path
        request_kwargs: Dict[str, Any] = {"headers": headers}
        if method in _BODY_METHODS:
            if remaining:
                request_kwargs["json"] = remaining
        elif remaining:
            request_kwargs["params"] = {
                k: v if isinstance(v, (str, int, float)) else str(v)
                for k, v in remaining.items()
            }

        try:
            response = await self.client.request(method, url, **request_kwargs)
        except httpx.TimeoutException as exc:
            raise self._timeout_error(exc) from exc
        except httpx.TransportError as exc:
            raise StepTransportError(
                f"{method} {path} failed: {_transport_reason(exc)}"
            ) from exc
        payload = _decode(response)
        request_id = response.headers.get("x-request-id")
        if not _is_success(response.status_code):
            logger.warning(
                "workflow_rest_step_failed",
                step_id=step.id,
                status=response.status_code,
                request_id=request_id,
            )
            raise StepTransportError(
                _error_message(payload, response.status_code),
                code=f"HTTP_{response.status_code}",
                details=payload,
                status=response.status_code,
                request_id=request_id,
            )
        return DispatchOutcome(
            data=payload, status=response.status_code, request_id=request_id
        )

    async def aclose(self) -> None:
        await self.client.aclose()
