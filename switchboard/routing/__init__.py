"""Routing -- message classification, tier selection and cost accounting.

Public API:
    RouterService  - classify_message / select_model / calculate_cost /
                     calculate_cost_summary / route_message
    Classifier     - fast-tier classification with timeout + fallback
    select_model, calculate_cost - pure functions over the static tables
"""

from switchboard.routing.classifier import Classifier
from switchboard.routing.pricing import (
    MODEL_FOR_CLASS,
    PRICING,
    ModelPrice,
    calculate_cost,
    select_model,
)
from switchboard.routing.router import RouterService
from switchboard.routing.schemas import (
    ClassificationResult,
    CostBreakdown,
    CostSummary,
    MessageClass,
    ModelSelection,
    RoutingResult,
)

__all__ = [
    "MODEL_FOR_CLASS",
    "PRICING",
    "ClassificationResult",
    "Classifier",
    "CostBreakdown",
    "CostSummary",
    "MessageClass",
    "ModelPrice",
    "ModelSelection",
    "RouterService",
    "RoutingResult",
    "calculate_cost",
    "select_model",
]
