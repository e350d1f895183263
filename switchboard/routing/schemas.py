"""Pydantic models for classification, model selection and cost accounting.

Costs are plain floats in USD; nothing is rounded before display.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, ConfigDict

from switchboard.llm.schemas import ModelTier, TokenUsage


class MessageClass(StrEnum):
    SIMPLE_TOOL = "SIMPLE_TOOL"
    ANALYSIS = "ANALYSIS"
    PLANNING = "PLANNING"
    CHITCHAT = "CHITCHAT"


FallbackReason = Literal["timeout", "error", "unrecognized", "empty"]


class ClassificationResult(BaseModel):
    """Outcome of one classifier call.

    ``fallback_reason`` is None when the classifier answered with a
    recognised class; otherwise it names why the fallback class was used.
    """

    model_config = ConfigDict(frozen=True)

    message_class: MessageClass
    router_usage: TokenUsage
    latency_ms: float
    fallback_reason: FallbackReason | None = None

    @property
    def is_fallback(self) -> bool:
        return self.fallback_reason is not None


class ModelSelection(BaseModel):
    model_config = ConfigDict(frozen=True)

    model: ModelTier
    message_class: MessageClass
    reason: str


class CostBreakdown(BaseModel):
    model_config = ConfigDict(frozen=True)

    input_cost: float
    output_cost: float
    total_cost: float
    model: str  # provider model id, or "combined" for summary totals


class CostModels(BaseModel):
    model_config = ConfigDict(frozen=True)

    router: str
    execution: str


class CostSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    router_cost: CostBreakdown
    execution_cost: CostBreakdown
    total_cost: CostBreakdown
    models: CostModels


class RoutingResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    classification: ClassificationResult
    model_selection: ModelSelection
    router_cost: CostBreakdown
