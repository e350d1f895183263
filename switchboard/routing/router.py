"""RouterService -- classify, pick a tier, price the result.

Constructed once by ``main.build_services`` and passed down; tests build
their own instances.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping

from switchboard.llm.schemas import DEFAULT_MODEL_IDS, ModelTier, TokenUsage
from switchboard.routing import pricing
from switchboard.routing.classifier import Classifier
from switchboard.routing.schemas import (
    ClassificationResult,
    CostBreakdown,
    CostModels,
    CostSummary,
    MessageClass,
    ModelSelection,
    RoutingResult,
)

logger = logging.getLogger(__name__)


class RouterService:
    """Cost-tier routing on top of a Classifier."""

    def __init__(
        self,
        classifier: Classifier,
        *,
        model_ids: Mapping[str, str] | None = None,
    ) -> None:
        self._classifier = classifier
        ids = {tier.value: model_id for tier, model_id in DEFAULT_MODEL_IDS.items()}
        ids.update(model_ids or {})
        self._model_ids = ids

    def model_id(self, tier: ModelTier) -> str:
        return self._model_ids[ModelTier(tier).value]

    async def classify_message(
        self, text: str, cancel: asyncio.Event | None = None
    ) -> ClassificationResult:
        return await self._classifier.classify(text, cancel=cancel)

    def select_model(self, message_class: MessageClass) -> ModelSelection:
        return pricing.select_model(message_class)

    def calculate_cost(self, usage: TokenUsage, tier: ModelTier) -> CostBreakdown:
        return pricing.calculate_cost(usage, tier, self.model_id(tier))

    def calculate_cost_summary(
        self,
        router_usage: TokenUsage,
        execution_usage: TokenUsage,
        execution_tier: ModelTier,
    ) -> CostSummary:
        """Router cost (always the fast tier) plus execution cost.

        Totals are exact float sums of the two components.
        """
        router_cost = self.calculate_cost(router_usage, pricing.ROUTER_TIER)
        execution_cost = self.calculate_cost(execution_usage, execution_tier)
        return CostSummary(
            router_cost=router_cost,
            execution_cost=execution_cost,
            total_cost=CostBreakdown(
                input_cost=router_cost.input_cost + execution_cost.input_cost,
                output_cost=router_cost.output_cost + execution_cost.output_cost,
                total_cost=router_cost.total_cost + execution_cost.total_cost,
                model="combined",
            ),
            models=CostModels(
                router=self.model_id(pricing.ROUTER_TIER),
                execution=self.model_id(execution_tier),
            ),
        )

    async def route_message(
        self, text: str, cancel: asyncio.Event | None = None
    ) -> RoutingResult:
        classification = await self.classify_message(text, cancel=cancel)
        selection = self.select_model(classification.message_class)
        router_cost = self.calculate_cost(classification.router_usage, pricing.ROUTER_TIER)
        logger.info(
            "Routed message: class=%s tier=%s fallback=%s latency=%.1fms",
            classification.message_class,
            selection.model,
            classification.fallback_reason,
            classification.latency_ms,
        )
        return RoutingResult(
            classification=classification,
            model_selection=selection,
            router_cost=router_cost,
        )
