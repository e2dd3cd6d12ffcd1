"""
Requirement Differ - minimal incremental evidence for a tier upgrade.

Evidence verified at the approved tier carries forward: it is still listed for
display but flagged `already_verified`, and never collected again.
Nothing here is cached; callers re-run it whenever the approved tier changes.
"""

from typing import Iterable, List

from config.tiers import (
    EvidenceCategory,
    TIER_REQUIREMENTS,
    to_tier,
    verified_evidence_set,
)
from config.document_schema import UpgradeRequirement


# Canonical display order
CATEGORY_ORDER: List[EvidenceCategory] = list(EvidenceCategory)


def requirements_for_upgrade(approved_tier, target_tier) -> List[EvidenceCategory]:
    """
    Union of the requirement sets of every tier in (approved_tier, target_tier].

    Returns an empty list when target_tier <= approved_tier; the caller must
    treat that as a rejected selection.
    """
    approved = to_tier(approved_tier)
    target = to_tier(target_tier)
    if target <= approved:
        return []

    union = set()
    for level in range(approved + 1, target + 1):
        union.update(TIER_REQUIREMENTS[to_tier(level)])

    return [category for category in CATEGORY_ORDER if category in union]


def with_verified_flags(
    categories: Iterable[EvidenceCategory],
    approved_tier,
) -> List[UpgradeRequirement]:
    """Annotate categories with whether the approved tier already satisfies them."""
    verified = verified_evidence_set(approved_tier)
    return [
        UpgradeRequirement(category=category, already_verified=category in verified)
        for category in categories
    ]


def outstanding_requirements(approved_tier, target_tier) -> List[EvidenceCategory]:
    """Categories the user must actually supply for this upgrade."""
    verified = verified_evidence_set(approved_tier)
    return [
        category
        for category in requirements_for_upgrade(approved_tier, target_tier)
        if category not in verified
    ]


def requirements_with_status(approved_tier, target_tier) -> List[UpgradeRequirement]:
    """Everything the target tier requires, flagged against the approved tier."""
    return with_verified_flags(requirements_for_upgrade(approved_tier, target_tier), approved_tier)
