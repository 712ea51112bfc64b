"""Model normalization: raw ccusage records to display-ready breakdowns."""

from decimal import ROUND_HALF_UP, Decimal

from .config import MODEL_FAMILIES, MODEL_LABELS
from .models import ModelBreakdown, RawRecord

CENT = Decimal("0.01")


def display_name(model_id: str) -> str:
    """Short human name for a model identifier.

    Rules are evaluated in order: exact table, family substring, identity.
    """
    label = MODEL_LABELS.get(model_id)
    if label is not None:
        return label
    lowered = model_id.lower()
    for token, family in MODEL_FAMILIES:
        if token in lowered:
            return family
    return model_id


def normalize(raw: RawRecord) -> ModelBreakdown:
    return ModelBreakdown(
        model_id=raw.model_name,
        display_name=display_name(raw.model_name),
        input_tokens=raw.input_tokens,
        output_tokens=raw.output_tokens,
        cache_creation_tokens=raw.cache_creation_tokens,
        cache_read_tokens=raw.cache_read_tokens,
        cost=raw.cost,
    )


def format_cost(cost: Decimal) -> str:
    return f"${cost.quantize(CENT, rounding=ROUND_HALF_UP)}"


def format_cost_line(breakdown: ModelBreakdown) -> str:
    """Menu label such as ``Opus 4: $1.23``."""
    return f"{breakdown.display_name}: {format_cost(breakdown.cost)}"
