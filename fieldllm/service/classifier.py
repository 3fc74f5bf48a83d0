from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from fieldllm.config import Settings
from fieldllm.logging import get_logger
from fieldllm.service.context import ExecutionContext
from fieldllm.service.errors import ConfigurationError, ProviderCallError
from fieldllm.service.model_backend import GenerationRequest
from fieldllm.service.plan import (
    ToolRpc,
    WorkflowDefinition,
    WorkflowStep,
    parameter_for_value,
    parse_target,
)
from fieldllm.service.registry import (
    FALLBACK_WORKFLOW_ID,
    WORKFLOW_CATEGORIES,
    fallback_workflow,
    get_workflow,
    has_workflow,
    is_known_tool,
    vocabulary_summary,
)
from fieldllm.service.router import ProviderRouter
from fieldllm.storage.models import ProviderRecord

logger = get_logger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?", re.IGNORECASE)
_METHODS = {"GET", "POST", "PUT", "PATCH", "DELETE"}


class ClassificationFailure(Exception):
    """Model output could not be turned into a plan."""


@dataclass
class ClassificationResult:
    workflow: WorkflowDefinition
    confidence: float
    variables: Dict[str, Any] = field(default_factory=dict)
    missing_info: List[str] = field(default_factory=list)
    rationale: str = ""

    @property
    def is_fallback(self) -> bool:
        return self.workflow.id == FALLBACK_WORKFLOW_ID and not self.workflow.steps

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workflow": self.workflow.id,
            "description": self.workflow.description,
            "confidence": self.confidence,
            "variables": self.variables,
            "missingInfo": self.missing_info,
            "rationale": self.rationale,
            "steps": [
                step.model_dump(mode="json", by_alias=True) for step in self.workflow.steps
            ],
        }


def build_system_prompt() -> str:
    category_ids = ", ".join(f'"{cid}"' for cid in WORKFLOW_CATEGORIES)
    return f"""You are the CRM AI Architect.
Analyze the user's request and construct a DETERMINISTIC execution plan using ONLY the available tools.

{vocabulary_summary()}

CORE DIRECTIVES:
1. Professionalism: maintain a formal, efficient operational tone.
2. Determinism: do not invent tools. If the request cannot be fulfilled with the tools listed, use "{FALLBACK_WORKFLOW_ID}" with no steps.
3. Logical chaining: for multi-step tasks (e.g. "estimate then email"), order the tool calls so outputs flow into later steps.

INSTRUCTIONS:
1. Identify the user's intent.
2. Select the most relevant workflow id from: [{category_ids}].
3. Reason step by step about which inputs are needed and which outputs feed later steps.
4. Generate steps. Extract concrete parameter values from the request. Leave a value as "" when it is required but unknown.
5. When a step needs the output of an earlier step, list that step's id in "depends_on" (e.g. "1" or "1.customer_email").

RESPONSE FORMAT (JSON ONLY):
{{
  "workflowId": "selected_workflow_id",
  "confidence": 0.95,
  "thought_process": "Brief explanation of the plan.",
  "variables": {{"name": "value extracted from the request"}},
  "missing_info": ["inputs the user still has to provide"],
  "dynamic_steps": [
    {{
      "id": "1",
      "tool": "exact_tool_name_from_list",
      "description": "Professional description of the action",
      "parameters": {{"paramName": "extracted_value"}},
      "endpoint": "mcp:exact_tool_name_from_list",
      "method": "POST",
      "optional": false,
      "depends_on": []
    }}
  ]
}}"""


def _clamp(value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if number != number:  # NaN
        return 0.0
    return max(0.0, min(1.0, number))


def _string_list(value: Any) -> List[str]:
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, list):
        return [str(v) for v in value if v is not None and str(v).strip()]
    return []


class IntentClassifier:
    """Asks the model for a JSON plan and hydrates it into a workflow."""

    def __init__(self, router: ProviderRouter, settings: Settings) -> None:
        self.router = router
        self.settings = settings
        self.system_prompt = build_system_prompt()

    def _fallback_provider(self) -> ProviderRecord:
        return ProviderRecord(
            id="classifier",
            name=f"openai-{self.settings.classifier_model}",
            provider="openai",
            model=self.settings.classifier_model,
            use_cases=("workflow",),
            max_tokens=self.settings.classifier_max_tokens,
        )

    @staticmethod
    def fallback(rationale: str = "") -> ClassificationResult:
        return ClassificationResult(
            workflow=fallback_workflow(), confidence=0.0, rationale=rationale
        )

    async def classify(
        self,
        prompt: str,
        ctx: ExecutionContext,
        *,
        max_tokens: Optional[int] = None,
    ) -> ClassificationResult:
        request = GenerationRequest(
            prompt=prompt,
            system_prompt=self.system_prompt,
            max_tokens=max_tokens or self.settings.classifier_max_tokens,
            temperature=0.0,
        )
        try:
            routed = await self.router.generate(
                ctx,
                request,
                use_case="workflow",
                fallback=self._fallback_provider(),
                skip_default=True,
            )
        except (ProviderCallError, ConfigurationError) as exc:
            logger.warning(
                "classification_model_failed",
                account_id=ctx.account_id,
                error=exc.message,
            )
            return self.fallback("Classification model unavailable")
        try:
            result = self.parse(routed.result.text)
        except ClassificationFailure as exc:
            logger.warning(
                "classification_failed", account_id=ctx.account_id, reason=str(exc)
            )
            return self.fallback("Classification output could not be used")
        logger.info(
            "classification_completed",
            account_id=ctx.account_id,
            workflow_id=result.workflow.id,
            steps=[step.tool for step in result.workflow.steps],
            confidence=result.confidence,
        )
        return result

    def parse(self, text: str) -> ClassificationResult:
        cleaned = _FENCE_RE.sub("", text or "").strip()
        try:
            data = json.loads(cleaned)
        except json.JSONDecodeError as exc:
            raise ClassificationFailure(f"invalid JSON: {exc.msg}") from exc
        if not isinstance(data, dict):
            raise ClassificationFailure("plan is not a JSON object")

        workflow_id = data.get("workflowId")
        if not isinstance(workflow_id, str) or not has_workflow(workflow_id):
            raise ClassificationFailure(f"unknown workflow id: {workflow_id!r}")

        raw_steps = data.get("dynamic_steps") or []
        if not isinstance(raw_steps, list):
            raise ClassificationFailure("dynamic_steps must be a list")
        variables = data.get("variables")
        variables = dict(variables) if isinstance(variables, dict) else {}

        steps: List[WorkflowStep] = []
        tool_to_step: Dict[str, str] = {}
        for index, raw in enumerate(raw_steps):
            step = self._hydrate_step(index, raw, tool_to_step)
            tool_to_step.setdefault(step.tool, step.id)
            steps.append(step)

        workflow = get_workflow(workflow_id)
        workflow = workflow.model_copy(update={"steps": steps})

        missing = _string_list(data.get("missing_info"))
        for step in steps:
            if step.dependencies:
                continue
            for param in step.parameters:
                if param.required and param.default is None and param.name not in variables:
                    missing.append(param.name)

        return ClassificationResult(
            workflow=workflow,
            confidence=_clamp(data.get("confidence")),
            variables=variables,
            missing_info=list(dict.fromkeys(missing)),
            rationale=str(data.get("thought_process") or ""),
        )

    def _hydrate_step(
        self, index: int, raw: Any, tool_to_step: Dict[str, str]
    ) -> WorkflowStep:
        if not isinstance(raw, dict):
            raise ClassificationFailure(f"step {index + 1} is not an object")
        tool = raw.get("tool")
        if not isinstance(tool, str) or not is_known_tool(tool):
            raise ClassificationFailure(f"tool outside vocabulary: {tool!r}")
        try:
            target = parse_target(raw.get("endpoint"), tool)
        except ValueError as exc:
            raise ClassificationFailure(str(exc)) from exc
        if isinstance(target, ToolRpc) and not is_known_tool(target.tool_name):
            raise ClassificationFailure(f"tool outside vocabulary: {target.tool_name!r}")

        method = str(raw.get("method") or "POST").upper()
        if method not in _METHODS:
            raise ClassificationFailure(f"unsupported method: {method}")

        raw_params = raw.get("parameters") or {}
        if not isinstance(raw_params, dict):
            raise ClassificationFailure(f"step {index + 1} parameters must be an object")

        raw_deps = raw.get("depends_on") or raw.get("dependencies") or []
        if isinstance(raw_deps, str):
            raw_deps = [raw_deps]
        dependencies = [
            self._normalize_dependency(str(dep), tool_to_step)
            for dep in raw_deps
            if str(dep).strip()
        ]

        return WorkflowStep(
            id=str(raw.get("id") or index + 1),
            tool=tool,
            description=str(raw.get("description") or ""),
            target=target,
            method=method,
            parameters=[parameter_for_value(str(k), v) for k, v in raw_params.items()],
            optional=bool(raw.get("optional", False)),
            dependencies=dependencies,
        )

    @staticmethod
    def _normalize_dependency(dep: str, tool_to_step: Dict[str, str]) -> str:
        """Map ``1.x`` or ``<tool>.x`` references onto ``step_<id>.x``."""
        dep = dep.strip()
        if dep.startswith("step_"):
            return dep
        root, dot, rest = dep.partition(".")
        step_id = tool_to_step.get(root, root)
        return f"step_{step_id}{dot}{rest}"
