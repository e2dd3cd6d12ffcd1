"""
Tier Model - the five ordinal trust tiers and the evidence each one requires.

Requirement sets are cumulative: every tier lists everything the tier below it
required, plus whatever it adds. `check_tier_table` enforces that rule.
"""

import math
from enum import Enum, IntEnum
from typing import Dict, FrozenSet, List, Optional, Tuple


class Tier(IntEnum):
    """Ordinal trust tiers (values match the on-chain level)."""
    NONE = 0
    BRONZE = 1
    SILVER = 2
    GOLD = 3
    DIAMOND = 4

    @property
    def label(self) -> str:
        return self.name.capitalize()


class EvidenceCategory(str, Enum):
    """Discrete kinds of proof a tier can require."""
    PERSONAL_INFO = "personalInfo"
    ID_DOCUMENT = "idDocument"
    SELFIE = "selfie"
    LIVENESS = "liveness"
    ADDRESS_PROOF = "addressProof"
    ACCREDITED_PROOF = "accreditedProof"

    @property
    def label(self) -> str:
        return EVIDENCE_LABELS[self]


EVIDENCE_LABELS: Dict[EvidenceCategory, str] = {
    EvidenceCategory.PERSONAL_INFO: "Personal Information",
    EvidenceCategory.ID_DOCUMENT: "Valid ID document",
    EvidenceCategory.SELFIE: "Selfie photo",
    EvidenceCategory.LIVENESS: "Liveness Check",
    EvidenceCategory.ADDRESS_PROOF: "Proof of address",
    EvidenceCategory.ACCREDITED_PROOF: "Accredited investor proof",
}

MAX_TIER = Tier.DIAMOND

_BRONZE = (EvidenceCategory.PERSONAL_INFO, EvidenceCategory.ID_DOCUMENT)
_SILVER = _BRONZE + (EvidenceCategory.SELFIE, EvidenceCategory.ADDRESS_PROOF)
_GOLD = _SILVER + (EvidenceCategory.LIVENESS,)
_DIAMOND = _GOLD + (EvidenceCategory.ACCREDITED_PROOF,)

# Ordered, cumulative requirements per tier
TIER_REQUIREMENTS: Dict[Tier, Tuple[EvidenceCategory, ...]] = {
    Tier.NONE: (),
    Tier.BRONZE: _BRONZE,
    Tier.SILVER: _SILVER,
    Tier.GOLD: _GOLD,
    Tier.DIAMOND: _DIAMOND,
}

# Investment ceilings in USD; the top tier is unbounded
DEFAULT_TIER_LIMITS: Dict[Tier, float] = {
    Tier.NONE: 0,
    Tier.BRONZE: 10_000,
    Tier.SILVER: 100_000,
    Tier.GOLD: 1_000_000,
    Tier.DIAMOND: math.inf,
}

TIER_DESCRIPTIONS: Dict[Tier, str] = {
    Tier.NONE: "No verification",
    Tier.BRONZE: "Basic verification",
    Tier.SILVER: "Enhanced verification",
    Tier.GOLD: "Advanced verification",
    Tier.DIAMOND: "Maximum verification",
}


class TierTableError(ValueError):
    """Raised when the tier table violates its ordering rules."""
    pass


def to_tier(value) -> Tier:
    """Coerce an int / name / Tier into a Tier."""
    if isinstance(value, Tier):
        return value
    if isinstance(value, str) and not value.isdigit():
        try:
            return Tier[value.upper()]
        except KeyError:
            raise ValueError(f"Unknown tier: {value}")
    return Tier(int(value))


def requirements_for_tier(tier) -> Tuple[EvidenceCategory, ...]:
    return TIER_REQUIREMENTS[to_tier(tier)]


def verified_evidence_set(approved_tier) -> FrozenSet[EvidenceCategory]:
    """Categories already satisfied by the account's approved tier."""
    return frozenset(TIER_REQUIREMENTS[to_tier(approved_tier)])


def limit_for(tier, limits: Optional[Dict[Tier, float]] = None) -> float:
    """Investment ceiling for a tier (math.inf when unbounded)."""
    table = limits or DEFAULT_TIER_LIMITS
    return table[to_tier(tier)]


def format_limit(value: float) -> str:
    """
    Format an investment limit for display.

    Examples:
        inf        -> "Unlimited"
        2_500_000  -> "$2.5M"
        10_000     -> "$10K"
        1_500      -> "$1.5K"
        500        -> "$500"
    """
    if value is None or math.isinf(value):
        return "Unlimited"
    if round(value / 1_000, 1) >= 1_000:
        return f"${value / 1_000_000:.1f}M"
    if round(value) >= 1_000:
        thousands = f"{value / 1_000:.1f}".rstrip("0").rstrip(".")
        return f"${thousands}K"
    return f"${value:,.0f}"


def check_tier_table(
    requirements: Optional[Dict[Tier, Tuple[EvidenceCategory, ...]]] = None,
    limits: Optional[Dict[Tier, float]] = None,
) -> List[str]:
    """
    Check the tier table ordering rules.

    - every tier requires everything the previous tier required
    - limits strictly increase with tier index (only the top tier may be unbounded)

    Raises:
        TierTableError listing every violation found.
    """
    requirements = requirements or TIER_REQUIREMENTS
    limits = limits or DEFAULT_TIER_LIMITS
    problems = []

    tiers = sorted(requirements)
    for lower, upper in zip(tiers, tiers[1:]):
        missing = set(requirements[lower]) - set(requirements[upper])
        if missing:
            names = ", ".join(sorted(c.value for c in missing))
            problems.append(f"{upper.label} drops requirements of {lower.label}: {names}")

        low_limit, high_limit = limits[lower], limits[upper]
        if math.isinf(low_limit):
            problems.append(f"{lower.label} is unbounded but is not the top tier")
        elif not high_limit > low_limit:
            problems.append(f"{upper.label} limit {high_limit} is not above {lower.label} limit {low_limit}")

    if problems:
        raise TierTableError("; ".join(problems))
    return problems


def tier_overview(limits: Optional[Dict[Tier, float]] = None) -> List[dict]:
    """Display rows for the tier picker."""
    return [
        {
            "tier": tier,
            "name": tier.label,
            "limit": format_limit(limit_for(tier, limits)),
            "limit_value": limit_for(tier, limits),
            "description": TIER_DESCRIPTIONS[tier],
            "requirements": [c.label for c in TIER_REQUIREMENTS[tier]],
        }
        for tier in Tier
    ]


# Fail fast on a data-entry mistake in the table above
check_tier_table()
