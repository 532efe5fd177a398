"""Typed decisions produced by the decision oracle, and the policy gate."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

from master_control.orchestrator.errors import ValidationError


class DecisionCategory(str, Enum):
    """Closed set of categories a task can be routed to."""

    CLOUDFLARE = "cloudflare"
    DOCKER = "docker"
    SUBAGENT = "subagent"
    MCP = "mcp"
    DOMAIN = "domain"
    KNOWLEDGE = "knowledge"
    SYSTEM = "system"
    GENERIC = "generic"


HIGH_RISK_MARKERS: tuple[str, ...] = ("delete", "destroy", "remove")


@dataclass(slots=True, frozen=True)
class CloudflareParams:
    resource: str = ""
    name: str | None = None
    settings: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class DockerParams:
    container: str | None = None
    image: str | None = None
    options: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class SubagentParams:
    subagent_id: str | None = None
    subagent_type: str = "worker"
    name: str | None = None
    domain: str | None = None


@dataclass(slots=True, frozen=True)
class McpParams:
    server: str = ""
    tool: str | None = None
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class DomainParams:
    domain: str = ""
    record_type: str | None = None
    value: str | None = None


@dataclass(slots=True, frozen=True)
class KnowledgeParams:
    query: str | None = None
    entry: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class SystemParams:
    limit: int = 100
    config: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class GenericParams:
    """Free-form pass-through; ``content`` is untyped at this boundary."""

    content: dict[str, Any] = field(default_factory=dict)


DecisionParams = Union[
    CloudflareParams,
    DockerParams,
    SubagentParams,
    McpParams,
    DomainParams,
    KnowledgeParams,
    SystemParams,
    GenericParams,
]

PARAMS_BY_CATEGORY: dict[DecisionCategory, type] = {
    DecisionCategory.CLOUDFLARE: CloudflareParams,
    DecisionCategory.DOCKER: DockerParams,
    DecisionCategory.SUBAGENT: SubagentParams,
    DecisionCategory.MCP: McpParams,
    DecisionCategory.DOMAIN: DomainParams,
    DecisionCategory.KNOWLEDGE: KnowledgeParams,
    DecisionCategory.SYSTEM: SystemParams,
    DecisionCategory.GENERIC: GenericParams,
}


@dataclass(slots=True, frozen=True)
class Decision:
    """Classification of one task into category, action and parameters."""

    category: DecisionCategory
    action: str
    params: DecisionParams
    confidence: float = 1.0
    requires_approval: bool = False
    risks: tuple[str, ...] = ()
    reasoning: str = ""
    estimated_duration_ms: int | None = None

    def __post_init__(self) -> None:
        expected = PARAMS_BY_CATEGORY[self.category]
        if not isinstance(self.params, expected):
            raise ValidationError(
                f"{self.category.value} decision needs {expected.__name__}, "
                f"got {type(self.params).__name__}",
            )
        if not 0.0 <= self.confidence <= 1.0:
            raise ValidationError(f"confidence must be within [0, 1], got {self.confidence}")
        if not self.action.strip():
            raise ValidationError("decision action must be a non-empty string")

    @property
    def is_high_risk(self) -> bool:
        return any(marker in risk.lower() for risk in self.risks for marker in HIGH_RISK_MARKERS)

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category.value,
            "action": self.action,
            "params": _params_to_dict(self.params),
            "confidence": self.confidence,
            "requires_approval": self.requires_approval,
            "risks": list(self.risks),
            "reasoning": self.reasoning,
            "estimated_duration_ms": self.estimated_duration_ms,
        }


@dataclass(slots=True)
class DecisionContext:
    """Snapshot of the agent handed to the oracle alongside the task."""

    active_tasks: int
    available_subagents: int
    integration_status: dict[str, bool]
    capabilities: tuple[str, ...]
    recent_activity: list[dict[str, str]] = field(default_factory=list)


@dataclass(slots=True)
class PolicyVerdict:
    valid: bool
    reasons: tuple[str, ...] = ()


def parse_decision(raw: dict[str, Any]) -> Decision:
    """Validate raw oracle output into a typed ``Decision``."""

    if not isinstance(raw, dict):
        raise ValidationError("decision payload must be an object")
    category_raw = raw.get("category")
    if category_raw == "general":
        category_raw = DecisionCategory.GENERIC.value
    try:
        category = DecisionCategory(category_raw)
    except ValueError as error:
        raise ValidationError(f"Unknown decision category: {category_raw!r}") from error

    action = raw.get("action")
    if not isinstance(action, str) or not action.strip():
        raise ValidationError("decision.action must be a non-empty string")
    params_raw = raw.get("params") or {}
    if not isinstance(params_raw, dict):
        raise ValidationError("decision.params must be an object")
    risks = raw.get("risks") or []
    if not isinstance(risks, list) or not all(isinstance(risk, str) for risk in risks):
        raise ValidationError("decision.risks must be an array of strings")
    try:
        confidence = float(raw.get("confidence", 1.0))
    except (TypeError, ValueError) as error:
        raise ValidationError("decision.confidence must be a number") from error
    duration = raw.get("estimated_duration_ms", raw.get("estimatedDuration"))

    return Decision(
        category=category,
        action=action.strip(),
        params=_build_params(category, params_raw),
        confidence=confidence,
        requires_approval=bool(raw.get("requires_approval", raw.get("requiresApproval", False))),
        risks=tuple(risks),
        reasoning=str(raw.get("reasoning", "")),
        estimated_duration_ms=int(duration) if duration is not None else None,
    )


def validate_decision(decision: Decision, *, capabilities: set[str]) -> PolicyVerdict:
    """Policy gate run before dispatch; a failed verdict is not a crash."""

    reasons: list[str] = []
    if decision.category.value not in capabilities:
        reasons.append(f"Capability not available: {decision.category.value}")
    if decision.is_high_risk and not decision.requires_approval:
        reasons.append("High-risk operation requires approval")
    return PolicyVerdict(valid=not reasons, reasons=tuple(reasons))


def _build_params(category: DecisionCategory, raw: dict[str, Any]) -> DecisionParams:
    if category == DecisionCategory.GENERIC:
        return GenericParams(content=dict(raw))
    params_type = PARAMS_BY_CATEGORY[category]
    allowed = set(params_type.__dataclass_fields__)
    unknown = set(raw) - allowed
    if unknown:
        raise ValidationError(
            f"Unknown {category.value} params: {sorted(unknown)}",
        )
    try:
        return params_type(**raw)
    except TypeError as error:
        raise ValidationError(f"Invalid {category.value} params: {error}") from error


def _params_to_dict(params: DecisionParams) -> dict[str, Any]:
    return {name: getattr(params, name) for name in type(params).__dataclass_fields__}
