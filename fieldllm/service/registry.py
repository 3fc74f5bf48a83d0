from __future__ import annotations

from typing import Dict, List, Optional

from fieldllm.service.plan import WorkflowDefinition

FALLBACK_WORKFLOW_ID = "general_inquiry"

# Category id -> description. Steps are produced per request by the classifier.
WORKFLOW_CATEGORIES: Dict[str, str] = {
    "executive_action": "High-level business intelligence, financials, and urgent oversight.",
    "dispatch_operations": "Scheduling, routing, technician management, and emergency response.",
    "sales_engagement": "Lead management, proposal generation, pricing, and customer interaction.",
    "field_work": "On-site job execution, documentation, and technical compliance.",
    "admin_compliance": "System health, user management, audit logs, and configuration.",
    FALLBACK_WORKFLOW_ID: "General questions or chat not requiring tool execution.",
}

TOOL_VOCABULARY: Dict[str, List[str]] = {
    "FINANCIAL": [
        "get_dashboard_stats",
        "get_revenue_analytics",
        "list_invoices",
        "create_invoice",
        "process_crypto_payment",
        "generate_report",
    ],
    "JOBS": [
        "list_jobs",
        "get_job",
        "create_job",
        "update_job_status",
        "assign_tech_by_name",
        "get_my_jobs",
        "get_tech_jobs",
        "get_job_analytics",
    ],
    "CONTACTS": [
        "list_contacts",
        "get_contact",
        "create_contact",
        "update_contact",
        "analyze_customer_sentiment",
        "predict_customer_churn",
    ],
    "ESTIMATES": [
        "create_estimate",
        "ai_estimate_job",
        "create_formal_estimate_from_ai",
        "calculate_dynamic_pricing",
    ],
    "FIELD": [
        "upload_job_photo",
        "analyze_job_photos",
        "clock_in",
        "clock_out",
        "capture_location",
        "monitor_compliance",
        "verify_signature",
    ],
    "ADMIN": [
        "list_users",
        "get_audit_logs",
        "list_automation_rules",
        "create_notification",
        "get_account_settings",
    ],
    "COMMS": ["send_email", "list_conversations", "send_message", "add_job_note"],
}

_KNOWN_TOOLS = frozenset(tool for tools in TOOL_VOCABULARY.values() for tool in tools)


def is_known_tool(name: str) -> bool:
    return name in _KNOWN_TOOLS


def has_workflow(workflow_id: Optional[str]) -> bool:
    return bool(workflow_id) and workflow_id in WORKFLOW_CATEGORIES


def get_workflow(workflow_id: str) -> WorkflowDefinition:
    """Fresh, step-less definition for a category id."""
    return WorkflowDefinition(
        id=workflow_id, description=WORKFLOW_CATEGORIES[workflow_id], steps=[]
    )


def fallback_workflow() -> WorkflowDefinition:
    return get_workflow(FALLBACK_WORKFLOW_ID)


def all_workflows() -> List[WorkflowDefinition]:
    return [get_workflow(workflow_id) for workflow_id in WORKFLOW_CATEGORIES]


def vocabulary_summary() -> str:
    lines = ["AVAILABLE TOOLS (Strictly limit plans to these functions):"]
    for group, tools in TOOL_VOCABULARY.items():
        lines.append(f"- {group}: {', '.join(tools)}")
    return "\n".join(lines)
