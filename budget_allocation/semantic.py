"""External semantic validation of a recommended allocation.

Defines the contract of an external validator (typically a large language
model behind an API), the prompt sent to it, tolerant parsing of its JSON
reply, and a local heuristic validator used when no external service is
configured.
"""

import json
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from budget_allocation.exceptions import ExternalValidationError
from budget_allocation.models import (
    CHANNELS,
    SEVERITIES,
    Allocation,
    Assumptions,
    Channel,
    ChannelPriors,
    Severity,
    ValidationWarning,
)
from budget_allocation.objective import expected_funnel

logger = logging.getLogger(__name__)

MAX_WARNINGS = 10
_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


class SemanticWarning(BaseModel):
    """Warning reported by the external validator, sanitized on parse."""

    model_config = ConfigDict(extra="ignore")

    type: str = "unknown"
    message: str = "No message provided"
    severity: Severity = "medium"
    channel: Channel | None = None

    @field_validator("severity", mode="before")
    @classmethod
    def coerce_severity(cls, v: Any) -> str:
        """Unknown severities become ``medium``."""
        return v if v in SEVERITIES else "medium"

    @field_validator("channel", mode="before")
    @classmethod
    def drop_unknown_channel(cls, v: Any) -> str | None:
        return v if v in CHANNELS else None

    def to_warning(self) -> ValidationWarning:
        return ValidationWarning(type=self.type, message=self.message, severity=self.severity, channel=self.channel)


class SemanticValidation(BaseModel):
    """Verdict of a semantic validator.

    Accepts both ``is_valid`` and the camelCase ``isValid`` key.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    is_valid: bool = Field(default=True, alias="isValid")
    confidence: float = 0.5
    reasoning: str = "No reasoning provided"
    warnings: list[SemanticWarning] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp_confidence(cls, v: Any) -> float:
        """Clamp into [0, 1]; non-numeric values fall back to 0.5."""
        if isinstance(v, bool) or not isinstance(v, (int, float)) or v != v:
            return 0.5
        return min(1.0, max(0.0, float(v)))

    @field_validator("warnings", mode="before")
    @classmethod
    def keep_warning_objects(cls, v: Any) -> list:
        if not isinstance(v, list):
            return []
        return [w for w in v if isinstance(w, (dict, SemanticWarning))][:MAX_WARNINGS]

    @field_validator("suggestions", mode="before")
    @classmethod
    def keep_string_suggestions(cls, v: Any) -> list:
        if not isinstance(v, list):
            return []
        return [s for s in v if isinstance(s, str)]


@dataclass(frozen=True)
class OptimizationContext:
    """Inputs of the request, handed to the validator alongside the allocation."""

    budget: float
    priors: ChannelPriors
    assumptions: Assumptions


class SemanticValidator(Protocol):
    """Structural interface for external semantic validators.

    Implementations may raise any exception; callers treat failure as the
    absence of an external signal.
    """

    def validate(self, allocation: Allocation, context: OptimizationContext) -> SemanticValidation:
        """Judge ``allocation`` in ``context``."""
        ...

    def explain(self, allocation: Allocation, assumptions: Assumptions) -> str:
        """Plain-language rationale for ``allocation``."""
        ...


def parse_validation_response(text: str) -> SemanticValidation:
    """Parse a validator reply, tolerating markdown code fences.

    Raises
    ------
    ExternalValidationError
        If the reply is not a JSON object.
    """
    cleaned = _FENCE.sub("", text.strip()).strip()
    try:
        payload = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise ExternalValidationError(f"Validator response is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise ExternalValidationError("Validator response must be a JSON object")
    try:
        return SemanticValidation.model_validate(payload)
    except ValidationError as exc:
        raise ExternalValidationError(f"Validator response has an unexpected shape: {exc}") from exc


def _percent(value: float, digits: int = 1) -> str:
    return f"{value * 100:.{digits}f}%"


def build_validation_prompt(allocation: Allocation, context: OptimizationContext) -> str:
    """Prompt asking an external model to validate ``allocation``."""
    budget, priors, assumptions = context.budget, context.priors, context.assumptions
    funnel = expected_funnel(budget, allocation, priors)["total"]

    lines = ["You are an expert advertising budget allocation validator.", "", "ALLOCATION TO VALIDATE:"]
    for channel in CHANNELS:
        lines.append(f"- {channel}: {_percent(allocation[channel])} (${allocation[channel] * budget:,.0f})")
    lines += ["", "CONTEXT:", f"- Total budget: ${budget:,.0f}", f"- Optimization goal: {assumptions.goal}"]
    if assumptions.avg_deal_size:
        lines.append(f"- Average deal size: ${assumptions.avg_deal_size:,.2f}")
    if assumptions.target_cac:
        lines.append(f"- Target CAC: ${assumptions.target_cac:,.2f}")
    lines += ["", "CHANNEL PERFORMANCE EXPECTATIONS:"]
    for channel, prior in priors.items():
        lines.append(
            f"- {channel}: CPM ${prior.cpm.low:g}-${prior.cpm.high:g}, "
            f"CTR {_percent(prior.ctr.low, 2)}-{_percent(prior.ctr.high, 2)}, "
            f"CVR {_percent(prior.cvr.low, 2)}-{_percent(prior.cvr.high, 2)}"
        )
    lines += [
        "",
        "EXPECTED PERFORMANCE:",
        f"- Impressions: {funnel['impressions']:,.0f}",
        f"- Clicks: {funnel['clicks']:,.0f}",
        f"- Conversions: {funnel['conversions']:,.0f}",
        "",
        "Reply with JSON only:",
        '{"isValid": bool, "confidence": number in [0, 1], "reasoning": str,',
        ' "warnings": [{"type": str, "message": str, "severity": "low|medium|high", "channel": str}],',
        ' "suggestions": [str]}',
    ]
    return "\n".join(lines)


def build_explanation_prompt(allocation: Allocation, assumptions: Assumptions) -> str:
    """Prompt asking an external model to explain ``allocation``."""
    lines = ["You are an expert advertising strategist. Explain why this allocation suits the goal.", ""]
    lines += [f"- {channel}: {_percent(allocation[channel])}" for channel in CHANNELS]
    lines += ["", f"Primary goal: {assumptions.goal}"]
    lines += [f"- {channel} minimum: {_percent(value)}" for channel, value in assumptions.min_pct.items()]
    lines += [f"- {channel} maximum: {_percent(value)}" for channel, value in assumptions.max_pct.items()]
    lines += ["", 'Reply with JSON only: {"explanation": str}']
    return "\n".join(lines)


def fallback_explanation(allocation: Allocation, assumptions: Assumptions) -> str:
    """Template rationale naming the largest channel."""
    top = max(CHANNELS, key=lambda channel: allocation[channel])
    return (
        f"This allocation prioritizes {top} ({_percent(allocation[top])}) to optimize for {assumptions.goal}. "
        "The distribution balances performance potential across channels within the specified constraints."
    )


class CompletionSemanticValidator:
    """Semantic validator backed by a text-completion function.

    Parameters
    ----------
    complete : Callable[[str], str]
        Sends a prompt to the external model and returns its raw reply.
        Network and API errors propagate to the caller.
    """

    def __init__(self, complete: Callable[[str], str]) -> None:
        self._complete = complete

    def validate(self, allocation: Allocation, context: OptimizationContext) -> SemanticValidation:
        return parse_validation_response(self._complete(build_validation_prompt(allocation, context)))

    def explain(self, allocation: Allocation, assumptions: Assumptions) -> str:
        reply = self._complete(build_explanation_prompt(allocation, assumptions)).strip()
        try:
            payload = json.loads(_FENCE.sub("", reply).strip())
        except json.JSONDecodeError:
            logger.debug("Explanation reply is not JSON, using it verbatim")
            return reply
        if isinstance(payload, dict) and isinstance(payload.get("explanation"), str):
            return payload["explanation"]
        return reply


class HeuristicSemanticValidator:
    """Local stand-in for an external validator.

    Flags very large (> ``max_share``) and very small non-zero
    (< ``min_share``) channel shares.
    """

    def __init__(self, max_share: float = 0.7, min_share: float = 0.05, confidence: float = 0.6) -> None:
        self.max_share = max_share
        self.min_share = min_share
        self.confidence = confidence

    def validate(self, allocation: Allocation, context: OptimizationContext) -> SemanticValidation:
        warnings = []
        for channel in CHANNELS:
            share = allocation[channel]
            if share > self.max_share:
                warnings.append(
                    SemanticWarning(
                        type="allocation_imbalance",
                        message=f"{channel} allocation is very high ({_percent(share)}), consider diversifying",
                        severity="medium",
                        channel=channel,
                    )
                )
            elif 0 < share < self.min_share:
                warnings.append(
                    SemanticWarning(
                        type="allocation_imbalance",
                        message=f"{channel} allocation is very low ({_percent(share)}), consider increasing or removing",
                        severity="low",
                        channel=channel,
                    )
                )
        return SemanticValidation(
            is_valid=not any(w.severity == "high" for w in warnings),
            confidence=self.confidence,
            reasoning="External validation unavailable, using basic heuristic checks",
            warnings=warnings,
            suggestions=["Run validation again when the external service is available"],
        )

    def explain(self, allocation: Allocation, assumptions: Assumptions) -> str:
        return fallback_explanation(allocation, assumptions)
