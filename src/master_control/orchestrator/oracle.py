"""Decision oracle contract and a deterministic keyword oracle."""

from __future__ import annotations

from typing import Protocol

from master_control.orchestrator.decisions import (
    Decision,
    DecisionCategory,
    DecisionContext,
    parse_decision,
)
from master_control.orchestrator.models import Task

KEYWORD_ORACLE_VERSION = 1


class DecisionOracle(Protocol):
    """External classifier; may raise ``OracleUnavailable``."""

    def classify(self, task: Task, context: DecisionContext) -> Decision: ...


_SUBAGENT_PATTERNS: tuple[str, ...] = ("subagent", "worker pool", "deploy agent")
_DOCKER_PATTERNS: tuple[str, ...] = ("docker", "container", "image", "compose")
_DOMAIN_PATTERNS: tuple[str, ...] = ("dns", "domain", "cname")
_CLOUDFLARE_PATTERNS: tuple[str, ...] = ("cloudflare", "worker script", "r2", "kv namespace")
_MCP_PATTERNS: tuple[str, ...] = ("mcp", "tool call")
_KNOWLEDGE_PATTERNS: tuple[str, ...] = ("knowledge", "remember", "recall")
_SYSTEM_PATTERNS: tuple[str, ...] = ("health", "metrics", "audit", "configure")

_RULES: tuple[tuple[DecisionCategory, tuple[str, ...]], ...] = (
    (DecisionCategory.SUBAGENT, _SUBAGENT_PATTERNS),
    (DecisionCategory.DOCKER, _DOCKER_PATTERNS),
    (DecisionCategory.DOMAIN, _DOMAIN_PATTERNS),
    (DecisionCategory.CLOUDFLARE, _CLOUDFLARE_PATTERNS),
    (DecisionCategory.MCP, _MCP_PATTERNS),
    (DecisionCategory.KNOWLEDGE, _KNOWLEDGE_PATTERNS),
    (DecisionCategory.SYSTEM, _SYSTEM_PATTERNS),
)

_SYSTEM_ACTIONS: tuple[tuple[str, str], ...] = (
    ("health", "health_check"),
    ("metrics", "get_metrics"),
    ("audit", "get_audit_log"),
    ("configure", "configure"),
)

_SUBAGENT_ACTIONS: tuple[tuple[str, str], ...] = (
    ("remove", "remove"),
    ("list", "list"),
    ("health", "health"),
)


class KeywordDecisionOracle:
    """Rule-table oracle for local runs and tests.

    A task payload may carry an explicit ``decision`` object, which wins over
    keyword matching.
    """

    def classify(self, task: Task, context: DecisionContext) -> Decision:
        explicit = task.payload.get("decision")
        if isinstance(explicit, dict):
            return parse_decision(explicit)

        haystack = f"{task.task_type}\n{task.description}".lower()
        for category, patterns in _RULES:
            pattern = _first_match(haystack, patterns)
            if pattern is None:
                continue
            return parse_decision(
                {
                    "category": category.value,
                    "action": _action_for(category, haystack),
                    "params": _params_for(category, task),
                    "confidence": 0.6,
                    "reasoning": f"matched keyword {pattern!r}",
                },
            )

        return parse_decision(
            {
                "category": DecisionCategory.GENERIC.value,
                "action": "respond",
                "params": {"command": task.description, **task.payload},
                "confidence": 0.3,
                "reasoning": "no keyword matched",
            },
        )


def _action_for(category: DecisionCategory, haystack: str) -> str:
    if category == DecisionCategory.SYSTEM:
        return _first_action(haystack, _SYSTEM_ACTIONS, default="health_check")
    if category == DecisionCategory.SUBAGENT:
        return _first_action(haystack, _SUBAGENT_ACTIONS, default="create")
    return "execute"


def _params_for(category: DecisionCategory, task: Task) -> dict[str, object]:
    params = task.payload.get("params")
    if isinstance(params, dict):
        return dict(params)
    if category == DecisionCategory.SUBAGENT:
        return {"name": f"{task.task_type}-{task.task_id[:8]}"}
    if category == DecisionCategory.KNOWLEDGE:
        return {"query": task.description}
    return {}


def _first_action(haystack: str, table: tuple[tuple[str, str], ...], *, default: str) -> str:
    for pattern, action in table:
        if pattern in haystack:
            return action
    return default


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
