# Overview: Customer loyalty tiers and points (pure functions of lifetime totals).

from __future__ import annotations

from dataclasses import dataclass

BRONZE = "bronze"
SILVER = "silver"
GOLD = "gold"
PLATINUM = "platinum"


@dataclass(frozen=True)
class TierThreshold:
    tier: str
    min_spent_cents: int
    min_orders: int


# Ascending; a tier is reached only when BOTH thresholds are met
TIER_THRESHOLDS = (
    TierThreshold(BRONZE, 0, 0),
    TierThreshold(SILVER, 50_000_00, 10),
    TierThreshold(GOLD, 150_000_00, 25),
    TierThreshold(PLATINUM, 300_000_00, 50),
)

# One point per 100 currency units
POINTS_UNIT_CENTS = 100_00


def compute_tier(total_spent_cents: int, total_orders: int) -> str:
    tier = BRONZE
    for threshold in TIER_THRESHOLDS:
        if total_spent_cents >= threshold.min_spent_cents and total_orders >= threshold.min_orders:
            tier = threshold.tier
    return tier


def points_for_amount(amount_cents: int) -> int:
    if amount_cents <= 0:
        return 0
    return amount_cents // POINTS_UNIT_CENTS


def next_tier_requirement(tier: str, total_spent_cents: int, total_orders: int) -> dict | None:
    """
    What the customer still needs for the next tier.

    Returns None at the top tier.
    """
    names = [t.tier for t in TIER_THRESHOLDS]
    idx = names.index(tier) if tier in names else 0
    if idx >= len(TIER_THRESHOLDS) - 1:
        return None

    nxt = TIER_THRESHOLDS[idx + 1]
    return {
        "tier": nxt.tier,
        "spent_needed_cents": max(0, nxt.min_spent_cents - total_spent_cents),
        "orders_needed": max(0, nxt.min_orders - total_orders),
    }
