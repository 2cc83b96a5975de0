"""Model tiers used for generation attempts, ordered weakest to strongest."""

from __future__ import annotations

from enum import Enum


class ModelTier(str, Enum):
    """Capability tier of the model asked to implement a function.

    Escalation only ever moves a task upward through ``TIER_ORDER``.
    """

    WORKER = "worker"
    FALLBACK = "fallback"
    ARCHITECT = "architect"


TIER_ORDER: tuple[ModelTier, ...] = (
    ModelTier.WORKER,
    ModelTier.FALLBACK,
    ModelTier.ARCHITECT,
)


def tier_index(tier: ModelTier) -> int:
    """Position of ``tier`` in the escalation order (worker is 0)."""
    return TIER_ORDER.index(tier)


def next_tier(tier: ModelTier) -> ModelTier | None:
    """Return the tier above ``tier``, or None when already at architect."""
    index = tier_index(tier)
    if index + 1 >= len(TIER_ORDER):
        return None
    return TIER_ORDER[index + 1]


def is_highest_tier(tier: ModelTier) -> bool:
    return tier is TIER_ORDER[-1]


__all__ = [
    "ModelTier",
    "TIER_ORDER",
    "is_highest_tier",
    "next_tier",
    "tier_index",
]
