"""
Country table for KYC onboarding.
ISO 3166-1 numeric codes (what the contract stores) with names and alpha-3 codes
(what a passport MRZ carries).
"""

from typing import Optional

from .document_schema import Country


# numeric code -> (name, alpha-3)
COUNTRY_TABLE: dict[int, tuple[str, str]] = {
    840: ("United States", "USA"),
    826: ("United Kingdom", "GBR"),
    276: ("Germany", "DEU"),
    250: ("France", "FRA"),
    208: ("Denmark", "DNK"),
    380: ("Italy", "ITA"),
    724: ("Spain", "ESP"),
    528: ("Netherlands", "NLD"),
    56: ("Belgium", "BEL"),
    40: ("Austria", "AUT"),
    756: ("Switzerland", "CHE"),
    620: ("Portugal", "PRT"),
    372: ("Ireland", "IRL"),
    752: ("Sweden", "SWE"),
    578: ("Norway", "NOR"),
    246: ("Finland", "FIN"),
    616: ("Poland", "POL"),
    203: ("Czech Republic", "CZE"),
    348: ("Hungary", "HUN"),
    300: ("Greece", "GRC"),
    124: ("Canada", "CAN"),
    36: ("Australia", "AUS"),
    554: ("New Zealand", "NZL"),
    392: ("Japan", "JPN"),
    410: ("South Korea", "KOR"),
    702: ("Singapore", "SGP"),
    344: ("Hong Kong", "HKG"),
    158: ("Taiwan", "TWN"),
    484: ("Mexico", "MEX"),
    76: ("Brazil", "BRA"),
    32: ("Argentina", "ARG"),
    # Blocked jurisdictions
    408: ("North Korea", "PRK"),
    364: ("Iran", "IRN"),
    760: ("Syria", "SYR"),
    729: ("Sudan", "SDN"),
    192: ("Cuba", "CUB"),
}

DEFAULT_BLOCKED_COUNTRIES = [408, 364, 760, 729, 192]

# Used when GET /api/kyc/countries is unreachable
FALLBACK_COUNTRIES = [
    Country(code=840, name="United States", blocked=False),
    Country(code=826, name="United Kingdom", blocked=False),
    Country(code=276, name="Germany", blocked=False),
    Country(code=250, name="France", blocked=False),
    Country(code=208, name="Denmark", blocked=False),
]


def get_supported_countries(blocked_codes: Optional[list[int]] = None) -> list[Country]:
    """All known countries, blocked ones flagged, sorted by name."""
    blocked = set(DEFAULT_BLOCKED_COUNTRIES if blocked_codes is None else blocked_codes)
    countries = [
        Country(code=code, name=name, blocked=code in blocked)
        for code, (name, _alpha3) in COUNTRY_TABLE.items()
    ]
    return sorted(countries, key=lambda c: c.name)


def get_country_name(code: int) -> Optional[str]:
    entry = COUNTRY_TABLE.get(code)
    return entry[0] if entry else None


def country_name_for_alpha3(alpha3: str) -> Optional[str]:
    """Map an MRZ nationality / issuing state code to a country name."""
    alpha3 = (alpha3 or "").upper().replace("<", "")
    # German documents carry "D" instead of "DEU"
    if alpha3 == "D":
        alpha3 = "DEU"
    for name, code in COUNTRY_TABLE.values():
        if code == alpha3:
            return name
    return None


def is_blocked(code: int, blocked_codes: Optional[list[int]] = None) -> bool:
    blocked = DEFAULT_BLOCKED_COUNTRIES if blocked_codes is None else blocked_codes
    return code in blocked
