from __future__ import annotations

from datetime import UTC, datetime

import allure
import pytest

from master_control.orchestrator.decisions import (
    Decision,
    DecisionCategory,
    DecisionContext,
    DockerParams,
    GenericParams,
    SubagentParams,
    SystemParams,
    parse_decision,
    validate_decision,
)
from master_control.orchestrator.errors import ValidationError
from master_control.orchestrator.models import Task, TaskStatus
from master_control.orchestrator.oracle import KeywordDecisionOracle

pytestmark = [
    allure.epic("Decisions"),
    allure.feature("Parsing, Policy & Oracle"),
]


def _task(task_type: str, description: str = "", **payload) -> Task:
    return Task(
        task_id="task-00000001",
        task_type=task_type,
        description=description,
        priority=5,
        payload=payload,
        status=TaskStatus.PENDING,
        created_at=datetime(2026, 1, 5, tzinfo=UTC),
        retry_count=0,
        max_retries=3,
    )


def _context() -> DecisionContext:
    return DecisionContext(
        active_tasks=0,
        available_subagents=0,
        integration_status={},
        capabilities=("subagent", "system"),
    )


def test_parse_decision_builds_typed_params() -> None:
    decision = parse_decision(
        {
            "category": "docker",
            "action": "restart",
            "params": {"container": "web"},
            "confidence": 0.8,
            "requiresApproval": True,
            "risks": ["may drop connections"],
            "estimatedDuration": 1500,
        },
    )

    assert decision.category == DecisionCategory.DOCKER
    assert decision.params == DockerParams(container="web")
    assert decision.requires_approval is True
    assert decision.estimated_duration_ms == 1500


def test_parse_decision_maps_general_to_generic_passthrough() -> None:
    decision = parse_decision({"category": "general", "action": "respond", "params": {"x": 1}})

    assert decision.category == DecisionCategory.GENERIC
    assert decision.params == GenericParams(content={"x": 1})


@pytest.mark.parametrize(
    ("raw", "message"),
    [
        ({"category": "ftp", "action": "x"}, "Unknown decision category"),
        ({"category": "docker", "action": " "}, "action"),
        ({"category": "docker", "action": "run", "params": {"bogus": 1}}, "Unknown docker params"),
        ({"category": "docker", "action": "run", "risks": "rm -rf"}, "risks"),
        ({"category": "docker", "action": "run", "confidence": 1.5}, "confidence"),
    ],
)
def test_parse_decision_rejects_malformed_payloads(raw: dict, message: str) -> None:
    with pytest.raises(ValidationError, match=message):
        parse_decision(raw)


def test_decision_requires_params_matching_category() -> None:
    with pytest.raises(ValidationError, match="needs SystemParams"):
        Decision(category=DecisionCategory.SYSTEM, action="get_metrics", params=GenericParams())


def test_policy_gate_checks_capabilities_and_high_risk_approval() -> None:
    risky = Decision(
        category=DecisionCategory.SUBAGENT,
        action="remove",
        params=SubagentParams(subagent_id="abc"),
        risks=("Will DELETE the subagent",),
    )

    rejected = validate_decision(risky, capabilities={"subagent"})
    assert not rejected.valid
    assert rejected.reasons == ("High-risk operation requires approval",)

    approved = Decision(
        category=DecisionCategory.SUBAGENT,
        action="remove",
        params=SubagentParams(subagent_id="abc"),
        risks=("Will DELETE the subagent",),
        requires_approval=True,
    )
    assert validate_decision(approved, capabilities={"subagent"}).valid

    unavailable = validate_decision(approved, capabilities={"system"})
    assert unavailable.reasons == ("Capability not available: subagent",)


@pytest.mark.parametrize(
    ("task_type", "description", "category", "action"),
    [
        ("ops", "Check system health", DecisionCategory.SYSTEM, "health_check"),
        ("ops", "Show metrics", DecisionCategory.SYSTEM, "get_metrics"),
        ("ops", "List subagent pool", DecisionCategory.SUBAGENT, "list"),
        ("ops", "Restart the container", DecisionCategory.DOCKER, "execute"),
        ("ops", "Add a CNAME record", DecisionCategory.DOMAIN, "execute"),
        ("chat", "Tell me a joke", DecisionCategory.GENERIC, "respond"),
    ],
)
def test_keyword_oracle_routes_by_keywords(
    task_type: str,
    description: str,
    category: DecisionCategory,
    action: str,
) -> None:
    decision = KeywordDecisionOracle().classify(_task(task_type, description), _context())

    assert decision.category == category
    assert decision.action == action


def test_keyword_oracle_prefers_explicit_payload_decision() -> None:
    task = _task(
        "ops",
        "Check system health",
        decision={"category": "system", "action": "get_audit_log", "params": {"limit": 5}},
    )

    decision = KeywordDecisionOracle().classify(task, _context())

    assert decision.action == "get_audit_log"
    assert decision.params == SystemParams(limit=5)
