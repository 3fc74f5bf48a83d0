from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Cookie, Request
from fastapi.responses import StreamingResponse

from fieldllm.api.schemas import (
    LLMRequest,
    LLMResponse,
    ProviderInvalidateRequest,
    WorkflowCatalogResponse,
    WorkflowCategory,
    WorkflowOptions,
)
from fieldllm.logging import get_logger
from fieldllm.service.classifier import ClassificationResult
from fieldllm.service.context import ExecutionContext
from fieldllm.service.errors import BadRequestError, ForbiddenError
from fieldllm.service.model_backend import (
    GenerationRequest,
    normalize_tool_choice,
    normalize_tools,
)
from fieldllm.service.plan import WorkflowExecution
from fieldllm.service.registry import TOOL_VOCABULARY, all_workflows
from fieldllm.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/api/llm")


async def _resolve_context(
    request: Request, session_id: Optional[str], account_id: Optional[str]
) -> ExecutionContext:
    runtime = get_runtime()
    return await runtime.context_resolver.resolve(
        request.headers, session_id=session_id, body_account_id=account_id
    )


async def _run_workflow(
    body: LLMRequest, options: WorkflowOptions, ctx: ExecutionContext
) -> Dict[str, Any]:
    runtime = get_runtime()
    ctx = ctx.with_overrides(options.context)
    classification: ClassificationResult = await runtime.classifier.classify(
        body.prompt, ctx, max_tokens=body.max_tokens
    )
    workflow_id = classification.workflow.id

    if classification.missing_info:
        logger.info(
            "workflow_requires_input",
            account_id=ctx.account_id,
            workflow_id=workflow_id,
            missing=classification.missing_info,
        )
        return {
            "success": False,
            "requiresInput": True,
            "workflow": workflow_id,
            "missingInfo": classification.missing_info,
            "extractedVariables": classification.variables,
        }

    plan = classification.to_dict()
    if not options.auto_execute:
        return {
            "success": True,
            "workflow": workflow_id,
            "plan": plan["steps"],
            "classification": plan,
        }

    if classification.confidence < runtime.settings.workflow_min_confidence:
        logger.info(
            "workflow_requires_confirmation",
            account_id=ctx.account_id,
            workflow_id=workflow_id,
            confidence=classification.confidence,
        )
        return {
            "success": False,
            "requiresConfirmation": True,
            "workflow": workflow_id,
            "plan": plan["steps"],
            "classification": plan,
        }

    # Caller-supplied variables win over values the model extracted
    variables = {**classification.variables, **(options.variables or {})}
    execution = WorkflowExecution(
        definition=classification.workflow,
        context=ctx,
        input_variables=variables,
    )
    report = await runtime.workflow.execute(execution)
    return {
        "success": True,
        "workflow": workflow_id,
        "execution": report.to_dict(),
    }


@router.post("", tags=["llm"])
async def invoke_llm(
    body: LLMRequest,
    request: Request,
    session_id: Optional[str] = Cookie(None),
):
    ctx = await _resolve_context(request, session_id, body.account_id)
    if not body.prompt or not body.prompt.strip():
        raise BadRequestError("Prompt is required")

    if body.workflow and body.workflow.enable:
        return await _run_workflow(body, body.workflow, ctx)

    runtime = get_runtime()
    tools = normalize_tools(body.tools)
    generation = GenerationRequest(
        prompt=body.prompt,
        system_prompt=body.system_prompt,
        max_tokens=body.max_tokens,
        temperature=body.temperature,
        tools=tuple(tools),
        tool_choice=normalize_tool_choice(body.tool_choice, tools),
        max_steps=body.max_steps,
    )
    use_case = body.use_case.value

    if body.stream:
        routed = await runtime.router.stream(
            ctx, generation, use_case=use_case, model_override=body.model_override
        )
        return StreamingResponse(
            routed.chunks,
            media_type="text/plain; charset=utf-8",
            headers={"X-Provider": routed.provider.name, "X-Model": routed.model},
        )

    routed = await runtime.router.generate(
        ctx, generation, use_case=use_case, model_override=body.model_override
    )
    response = LLMResponse(
        text=routed.result.text,
        provider=routed.provider.name,
        model=routed.model,
        tool_calls=routed.result.tool_calls,
        usage=routed.result.usage,
    )
    return response.model_dump(by_alias=True)


@router.get("/workflows", response_model=WorkflowCatalogResponse, tags=["llm"])
async def list_workflows():
    return WorkflowCatalogResponse(
        workflows=[
            WorkflowCategory(id=wf.id, description=wf.description) for wf in all_workflows()
        ],
        tools={group: list(tools) for group, tools in TOOL_VOCABULARY.items()},
    )


@router.post("/providers/invalidate", tags=["llm"])
async def invalidate_providers(
    body: ProviderInvalidateRequest,
    request: Request,
    session_id: Optional[str] = Cookie(None),
):
    ctx = await _resolve_context(request, session_id, body.account_id)
    if not ctx.trusted:
        raise ForbiddenError("Provider cache invalidation requires a service credential")
    runtime = get_runtime()
    target = None if body.all_accounts else ctx.account_id
    await runtime.providers.invalidate(target)
    return {"success": True, "accountId": target}
