import json

import pytest

from fieldllm.config import Settings
from fieldllm.service.classifier import (
    ClassificationFailure,
    IntentClassifier,
    build_system_prompt,
)
from fieldllm.service.context import ExecutionContext
from fieldllm.service.errors import ConfigurationError, ProviderCallError, RateLimitedError
from fieldllm.service.model_backend import GenerationResult
from fieldllm.service.plan import ClientAction, RestEndpoint, ToolRpc
from fieldllm.service.registry import FALLBACK_WORKFLOW_ID, TOOL_VOCABULARY
from fieldllm.service.router import RoutedResult
from fieldllm.storage.models import DEFAULT_PROVIDER

CTX = ExecutionContext(user_id="u-1", account_id="acme", role="owner")

ESTIMATE_THEN_EMAIL = {
    "workflowId": "sales_engagement",
    "confidence": 0.92,
    "thought_process": "Estimate the job, then email it to the customer.",
    "variables": {"jobId": "J-100"},
    "missing_info": [],
    "dynamic_steps": [
        {
            "id": "1",
            "tool": "ai_estimate_job",
            "description": "Estimate the water heater replacement",
            "parameters": {"jobId": "J-100", "laborHours": 3},
            "endpoint": "mcp:ai_estimate_job",
            "method": "POST",
        },
        {
            "id": "2",
            "tool": "send_email",
            "description": "Email the estimate to the customer",
            "parameters": {"to": "", "estimateId": ""},
            "endpoint": "mcp:send_email",
            "method": "POST",
            "depends_on": ["1.customer_email", "ai_estimate_job.estimateId"],
        },
    ],
}


class StubRouter:
    def __init__(self, text=None, error=None):
        self.text = text
        self.error = error
        self.calls = []

    async def generate(self, ctx, request, **kwargs):
        self.calls.append({"request": request, **kwargs})
        if self.error:
            raise self.error
        return RoutedResult(
            provider=DEFAULT_PROVIDER,
            model="gpt-4o",
            result=GenerationResult(text=self.text),
        )


def _classifier(router):
    return IntentClassifier(router, Settings(classifier_model="gpt-4o"))


def test_system_prompt_lists_every_tool_and_category():
    prompt = build_system_prompt()
    for tools in TOOL_VOCABULARY.values():
        for tool in tools:
            assert tool in prompt
    assert '"dispatch_operations"' in prompt
    assert FALLBACK_WORKFLOW_ID in prompt


async def test_classify_uses_temperature_zero_and_workflow_use_case():
    router = StubRouter(json.dumps(ESTIMATE_THEN_EMAIL))
    classifier = _classifier(router)
    await classifier.classify("estimate J-100 and email it", CTX)

    call = router.calls[0]
    assert call["request"].temperature == 0.0
    assert call["use_case"] == "workflow"
    assert call["skip_default"] is True
    assert call["fallback"].model == "gpt-4o"


async def test_estimate_then_email_plan_chains_steps():
    classifier = _classifier(StubRouter(json.dumps(ESTIMATE_THEN_EMAIL)))
    result = await classifier.classify("estimate J-100 and email it", CTX)

    assert result.workflow.id == "sales_engagement"
    assert [s.tool for s in result.workflow.steps] == ["ai_estimate_job", "send_email"]
    assert result.confidence == pytest.approx(0.92)
    assert result.variables == {"jobId": "J-100"}
    assert result.missing_info == []

    estimate, email = result.workflow.steps
    assert isinstance(estimate.target, ToolRpc)
    assert estimate.target.tool_name == "ai_estimate_job"
    assert email.dependencies == ["step_1.customer_email", "step_1.estimateId"]
    labor = next(p for p in estimate.parameters if p.name == "laborHours")
    assert labor.type == "number"
    assert labor.default == 3
    to_param = next(p for p in email.parameters if p.name == "to")
    assert to_param.required and to_param.default is None


async def test_repeated_classification_is_deterministic():
    classifier = _classifier(StubRouter(json.dumps(ESTIMATE_THEN_EMAIL)))
    first = await classifier.classify("estimate J-100 and email it", CTX)
    second = await classifier.classify("estimate J-100 and email it", CTX)
    assert first.workflow.id == second.workflow.id
    assert [s.tool for s in first.workflow.steps] == [s.tool for s in second.workflow.steps]


async def test_code_fences_are_stripped():
    fenced = "```json\n" + json.dumps(ESTIMATE_THEN_EMAIL) + "\n```"
    result = await _classifier(StubRouter(fenced)).classify("x", CTX)
    assert result.workflow.id == "sales_engagement"


async def test_malformed_output_returns_fallback():
    result = await _classifier(StubRouter("Sure! Here is your plan:")).classify("x", CTX)
    assert result.is_fallback
    assert result.workflow.id == FALLBACK_WORKFLOW_ID
    assert result.workflow.steps == []
    assert result.confidence == 0.0


async def test_unknown_workflow_returns_fallback():
    plan = dict(ESTIMATE_THEN_EMAIL, workflowId="world_domination")
    result = await _classifier(StubRouter(json.dumps(plan))).classify("x", CTX)
    assert result.is_fallback


async def test_out_of_vocabulary_tool_collapses_whole_plan():
    plan = json.loads(json.dumps(ESTIMATE_THEN_EMAIL))
    plan["dynamic_steps"][1]["tool"] = "delete_all_customers"
    result = await _classifier(StubRouter(json.dumps(plan))).classify("x", CTX)
    assert result.is_fallback
    assert result.confidence == 0.0


async def test_mcp_marker_naming_unknown_tool_collapses_plan():
    plan = json.loads(json.dumps(ESTIMATE_THEN_EMAIL))
    plan["dynamic_steps"][0]["endpoint"] = "mcp:drop_tables"
    result = await _classifier(StubRouter(json.dumps(plan))).classify("x", CTX)
    assert result.is_fallback


async def test_provider_failure_returns_fallback():
    router = StubRouter(error=ProviderCallError("upstream down", transient=True))
    result = await _classifier(router).classify("x", CTX)
    assert result.is_fallback

    router = StubRouter(error=ConfigurationError("Missing API Key for classifier"))
    result = await _classifier(router).classify("x", CTX)
    assert result.is_fallback


async def test_rate_limit_is_not_swallowed():
    router = StubRouter(error=RateLimitedError("Rate limit exceeded"))
    with pytest.raises(RateLimitedError):
        await _classifier(router).classify("x", CTX)


def test_missing_info_collects_blank_required_params():
    plan = {
        "workflowId": "dispatch_operations",
        "confidence": 0.8,
        "missing_info": ["preferred time"],
        "variables": {"jobId": "J-5"},
        "dynamic_steps": [
            {
                "tool": "assign_tech_by_name",
                "parameters": {"jobId": "", "techName": ""},
                "endpoint": "mcp:assign_tech_by_name",
            }
        ],
    }
    result = _classifier(StubRouter()).parse(json.dumps(plan))
    assert result.missing_info == ["preferred time", "techName"]
    assert result.workflow.steps[0].id == "1"


def test_parse_targets_and_methods():
    plan = {
        "workflowId": "field_work",
        "confidence": "0.7",
        "dynamic_steps": [
            {
                "tool": "get_job",
                "endpoint": "/api/jobs/[jobId]",
                "method": "get",
                "parameters": {"jobId": "J-1"},
            },
            {
                "tool": "capture_location",
                "endpoint": "client:capture_location",
                "parameters": {},
            },
        ],
    }
    result = _classifier(StubRouter()).parse(json.dumps(plan))
    rest, client = result.workflow.steps
    assert isinstance(rest.target, RestEndpoint)
    assert rest.method == "GET"
    assert isinstance(client.target, ClientAction)
    assert client.target.action == "capture_location"
    assert result.confidence == pytest.approx(0.7)


@pytest.mark.parametrize(
    "step",
    [
        {"tool": "get_job", "endpoint": "https://evil.example.com/x"},
        {"tool": "get_job", "endpoint": "//evil.example.com/x"},
        {"tool": "get_job", "method": "TRACE"},
        {"tool": "get_job", "parameters": ["jobId"]},
        "get_job",
    ],
)
def test_parse_rejects_unsafe_steps(step):
    plan = {"workflowId": "field_work", "dynamic_steps": [step]}
    with pytest.raises(ClassificationFailure):
        _classifier(StubRouter()).parse(json.dumps(plan))


def test_confidence_is_clamped():
    plan = {"workflowId": "field_work", "confidence": 7, "dynamic_steps": []}
    assert _classifier(StubRouter()).parse(json.dumps(plan)).confidence == 1.0
    plan["confidence"] = "high"
    assert _classifier(StubRouter()).parse(json.dumps(plan)).confidence == 0.0


def test_to_dict_shape():
    result = _classifier(StubRouter()).parse(json.dumps(ESTIMATE_THEN_EMAIL))
    payload = result.to_dict()
    assert payload["workflow"] == "sales_engagement"
    assert payload["missingInfo"] == []
    assert payload["steps"][0]["target"] == {"kind": "tool_rpc", "toolName": "ai_estimate_job"}
    assert payload["steps"][1]["dependencies"] == ["step_1.customer_email", "step_1.estimateId"]
