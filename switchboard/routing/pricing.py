"""Static pricing table, class-to-tier map and cost arithmetic.

All tables are read-only mapping proxies shared by every request. The
functions here are pure; ``RouterService`` wraps them with configured
model ids.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType

from switchboard.llm.schemas import DEFAULT_MODEL_IDS, ModelTier, TokenUsage
from switchboard.routing.schemas import CostBreakdown, MessageClass, ModelSelection

# Cache reads are already counted in input_tokens; they bill at 10% of input
CACHE_READ_DISCOUNT = 0.9

_PER_MILLION = 1_000_000


@dataclass(frozen=True)
class ModelPrice:
    """USD per million tokens."""

    input: float
    output: float


PRICING: Mapping[ModelTier, ModelPrice] = MappingProxyType(
    {
        ModelTier.FAST: ModelPrice(input=0.80, output=4.00),
        ModelTier.BALANCED: ModelPrice(input=3.00, output=15.00),
        ModelTier.REASONING: ModelPrice(input=15.00, output=75.00),
    }
)

MODEL_FOR_CLASS: Mapping[MessageClass, ModelTier] = MappingProxyType(
    {
        MessageClass.SIMPLE_TOOL: ModelTier.FAST,
        MessageClass.ANALYSIS: ModelTier.BALANCED,
        MessageClass.PLANNING: ModelTier.REASONING,
        MessageClass.CHITCHAT: ModelTier.FAST,
    }
)

SELECTION_REASONS: Mapping[MessageClass, str] = MappingProxyType(
    {
        MessageClass.SIMPLE_TOOL: "Simple tool invocation - fast tier is quick and cheap",
        MessageClass.ANALYSIS: (
            "Analysis task - balanced tier trades capability against cost"
        ),
        MessageClass.PLANNING: "Complex planning - reasoning tier for multi-step strategies",
        MessageClass.CHITCHAT: "Casual conversation - fast tier handles chitchat efficiently",
    }
)

# Tier used for classification calls, and therefore for router cost
ROUTER_TIER = ModelTier.FAST


def select_model(message_class: MessageClass) -> ModelSelection:
    """Map a message class to its tier with a human-readable reason."""
    message_class = MessageClass(message_class)
    return ModelSelection(
        model=MODEL_FOR_CLASS[message_class],
        message_class=message_class,
        reason=SELECTION_REASONS[message_class],
    )


def calculate_cost(
    usage: TokenUsage,
    tier: ModelTier,
    model_id: str | None = None,
) -> CostBreakdown:
    """Price one usage record against a tier.

    ``model_id`` labels the breakdown; it defaults to the tier's stock
    provider model id.
    """
    tier = ModelTier(tier)
    price = PRICING[tier]

    input_cost = (usage.input_tokens / _PER_MILLION) * price.input
    output_cost = (usage.output_tokens / _PER_MILLION) * price.output

    cache_discount = 0.0
    if usage.cache_read_input_tokens:
        cache_discount = (
            (usage.cache_read_input_tokens / _PER_MILLION) * price.input * CACHE_READ_DISCOUNT
        )

    return CostBreakdown(
        input_cost=input_cost,
        output_cost=output_cost,
        total_cost=input_cost + output_cost - cache_discount,
        model=model_id or DEFAULT_MODEL_IDS[tier],
    )
