"""
Document Validator - matches OCR text against the personal data a user entered.

Provides:
- Name, date of birth, country, document number and expiry finders
- MRZ-first matching (MRZ fields are the most reliable source)
- Score aggregation into a ValidationResult
"""

import re
import time
import logging
import unicodedata
from datetime import date
from typing import List, Optional, Tuple

from config.countries import country_name_for_alpha3
from config.document_schema import (
    DOCUMENT_TYPES,
    DocumentType,
    ExpectedPersonalData,
    FieldMatch,
    FoundText,
    MRZData,
    ValidationMatches,
    ValidationResult,
)
from backend.mrz_parser import extract_mrz, has_mrz


logger = logging.getLogger(__name__)


# Maximum points per field
NAME_MAX = 30
DOB_MAX = 25
COUNTRY_MAX = 15
DOCUMENT_NUMBER_MAX = 15
EXPIRY_MAX = 15

# Characters OCR commonly confuses (digit -> letter)
OCR_SUBSTITUTIONS = {
    "0": "O",
    "1": "I",
    "5": "S",
    "8": "B",
    "2": "Z",
    "6": "G",
}

COUNTRY_VARIATIONS = {
    "united states": ["usa", "united states of america", "u s a", "estados unidos"],
    "united kingdom": ["uk", "gbr", "great britain", "britain", "england", "reino unido"],
    "brazil": ["bra", "brasil", "republica federativa do brasil"],
    "germany": ["deu", "deutschland", "bundesrepublik deutschland", "alemania", "allemagne"],
    "france": ["fra", "republique francaise", "francia"],
    "spain": ["esp", "espana", "reino de espana"],
    "italy": ["ita", "italia", "repubblica italiana"],
    "portugal": ["prt", "republica portuguesa"],
    "canada": ["can"],
    "australia": ["aus"],
    "japan": ["jpn", "nihon", "nippon"],
    "mexico": ["mex", "estados unidos mexicanos"],
    "argentina": ["arg", "republica argentina"],
    "south korea": ["kor", "republic of korea", "korea"],
    "netherlands": ["nld", "holland", "nederland", "the netherlands"],
    "belgium": ["bel", "belgique", "belgie", "belgien"],
    "switzerland": ["che", "suisse", "schweiz", "svizzera"],
    "austria": ["aut", "osterreich"],
    "sweden": ["swe", "sverige"],
    "denmark": ["dnk", "danmark"],
    "norway": ["nor", "norge"],
    "finland": ["fin", "suomi"],
    "poland": ["pol", "polska"],
}

MONTH_NAMES = ["jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec"]
MONTH_FULL_NAMES = [
    "january", "february", "march", "april", "may", "june",
    "july", "august", "september", "october", "november", "december",
]


# ============================================================================
# TEXT HELPERS
# ============================================================================

def _strip_accents(text: str) -> str:
    decomposed = unicodedata.normalize("NFD", text)
    return "".join(c for c in decomposed if not unicodedata.combining(c))


def normalize_text(text: str) -> str:
    """Lowercase, strip diacritics, keep alphanumerics separated by single spaces."""
    text = _strip_accents((text or "").lower())
    text = re.sub(r"[^a-z0-9\s]", " ", text)
    return re.sub(r"\s+", " ", text).strip()


def normalize_name(name: str) -> str:
    """Like normalize_text but letters only."""
    name = _strip_accents((name or "").lower())
    name = re.sub(r"[^a-z\s]", "", name)
    return re.sub(r"\s+", " ", name).strip()


def ocr_variations(text: str) -> List[str]:
    """The text plus its digit->letter and letter->digit confusions."""
    upper = text.upper()
    to_letters = upper
    to_digits = upper
    for digit, letter in OCR_SUBSTITUTIONS.items():
        to_letters = to_letters.replace(digit, letter)
        to_digits = to_digits.replace(letter, digit)

    variations = [text]
    for variation in (to_letters, to_digits):
        if variation != upper and variation not in variations:
            variations.append(variation)
    return variations


# ============================================================================
# DATE HELPERS
# ============================================================================

_DATE_PATTERNS = [
    (re.compile(r"^(\d{4})[/\-.](\d{1,2})[/\-.](\d{1,2})$"), "ymd"),
    (re.compile(r"^(\d{1,2})[/\-.](\d{1,2})[/\-.](\d{4})$"), "dmy"),
    (re.compile(r"^(\d{4})(\d{2})(\d{2})$"), "ymd"),
    (re.compile(r"^(\d{2})(\d{2})(\d{4})$"), "dmy"),
    (re.compile(r"^(\d{1,2})[/\-.](\d{1,2})[/\-.](\d{2})$"), "dmy2"),
]


def parse_date(value: str) -> Optional[date]:
    """Parse a printed date (day-first unless year-first) into a date."""
    cleaned = re.sub(r"[^\d/\-.]", "", value or "")
    for pattern, order in _DATE_PATTERNS:
        match = pattern.match(cleaned)
        if not match:
            continue
        a, b, c = (int(g) for g in match.groups())
        if order == "ymd":
            year, month, day = a, b, c
        elif order == "dmy":
            day, month, year = a, b, c
        else:
            day, month = a, b
            year = c + (1900 if c > 50 else 2000)
        if 1900 <= year <= 2100:
            try:
                return date(year, month, day)
            except ValueError:
                continue
    return None


def date_formats(iso_date: str) -> List[str]:
    """Printed renderings of an ISO date to search OCR text for."""
    try:
        value = date.fromisoformat(iso_date)
    except (TypeError, ValueError):
        return []

    d, m, y = value.day, value.month, value.year
    dd, mm, yy = f"{d:02d}", f"{m:02d}", f"{y % 100:02d}"
    short_month = MONTH_NAMES[m - 1]
    long_month = MONTH_FULL_NAMES[m - 1]

    return [
        iso_date,
        f"{dd}/{mm}/{y}", f"{dd}-{mm}-{y}", f"{dd}.{mm}.{y}",
        f"{dd}/{mm}/{yy}", f"{dd}-{mm}-{yy}", f"{dd}.{mm}.{yy}",
        f"{d}/{m}/{y}", f"{d}-{m}-{y}",
        f"{mm}/{dd}/{y}", f"{m}/{d}/{y}",
        f"{dd} {short_month} {y}", f"{d} {short_month} {y}",
        f"{dd} {long_month} {y}", f"{d} {long_month} {y}",
        f"{short_month} {dd}, {y}", f"{long_month} {d}, {y}",
        f"{yy}{mm}{dd}",
        f"{dd}{mm}{y}", f"{y}{mm}{dd}",
    ]


# ============================================================================
# FIELD FINDERS
# Each returns (score, found_text)
# ============================================================================

def find_name(text: str, expected_name: str, mrz: Optional[MRZData] = None) -> Tuple[int, Optional[str]]:
    """Score how many parts of the expected name appear (max 30)."""
    parts = [p for p in normalize_name(expected_name).split(" ") if len(p) > 1]
    if not parts:
        return 0, None

    best_score, found = 0, None

    if mrz and mrz.surname and mrz.given_names:
        mrz_parts = normalize_name(mrz.full_name).split(" ")
        matched = sum(
            1 for part in parts
            if any(part in mrz_part or mrz_part in part for mrz_part in mrz_parts if mrz_part)
        )
        if matched == len(parts):
            return NAME_MAX, f"{mrz.full_name} (MRZ)"
        if matched:
            best_score = round(matched / len(parts) * 25)
            found = f"{mrz.full_name} (MRZ partial)"

    normalized = normalize_text(text)
    found_parts = []
    for part in parts:
        for variation in ocr_variations(part):
            if variation.lower() in normalized:
                found_parts.append(variation.lower())
                break

    if found_parts:
        score = round(len(found_parts) / len(parts) * NAME_MAX)
        if score > best_score:
            best_score, found = score, " ".join(found_parts)

    return best_score, found


def find_date_of_birth(text: str, expected_dob: str, mrz: Optional[MRZData] = None) -> Tuple[int, Optional[str]]:
    """Score the expected date of birth (max 25; 20 for partial, 10-15 for components)."""
    if mrz and mrz.date_of_birth:
        if mrz.date_of_birth == expected_dob:
            return DOB_MAX, f"{mrz.date_of_birth} (MRZ)"
        if mrz.date_of_birth[:7] == expected_dob[:7]:
            return 20, f"{mrz.date_of_birth} (MRZ partial)"

    compact_text = re.sub(r"\s+", "", (text or "").lower())
    for fmt in date_formats(expected_dob):
        if re.sub(r"\s+", "", fmt.lower()) in compact_text:
            return DOB_MAX, fmt
        if re.sub(r"[/\-.]", "", fmt) in compact_text:
            return 20, fmt

    try:
        value = date.fromisoformat(expected_dob)
    except (TypeError, ValueError):
        return 0, None

    year, month, day = str(value.year), f"{value.month:02d}", f"{value.day:02d}"
    if year in compact_text:
        if month in compact_text and day in compact_text:
            return 15, f"{day}/{month}/{year} (components)"
        return 10, f"Year {year} found"

    return 0, None


def find_country(text: str, expected_country: str, mrz: Optional[MRZData] = None) -> Tuple[int, Optional[str]]:
    """Score the issuing country (max 15)."""
    normalized = normalize_text(text)
    expected = normalize_text(expected_country)
    if not expected:
        return 0, None

    if mrz:
        mrz_code = mrz.nationality or mrz.issuing_country
        mrz_country = country_name_for_alpha3(mrz_code) if mrz_code else None
        if mrz_country:
            mrz_normalized = normalize_text(mrz_country)
            if mrz_normalized in expected or expected in mrz_normalized:
                return COUNTRY_MAX, f"{mrz_country} ({mrz_code}) (MRZ)"
        if mrz_code and mrz_code.lower() in COUNTRY_VARIATIONS.get(expected, []):
            return COUNTRY_MAX, f"{expected_country} ({mrz_code}) (MRZ)"

    padded = f" {normalized} "
    if f" {expected} " in padded:
        return COUNTRY_MAX, expected_country

    for variation in COUNTRY_VARIATIONS.get(expected, []):
        if f" {normalize_text(variation)} " in padded:
            return COUNTRY_MAX, variation

    for code in re.findall(r"\b[A-Z]{3}\b", (text or "").upper()):
        name = country_name_for_alpha3(code)
        if name and normalize_text(name) == expected:
            return COUNTRY_MAX, f"{name} ({code})"

    return 0, None


def _positional_matches(a: str, b: str) -> int:
    return sum(1 for x, y in zip(a, b) if x == y)


def find_document_number(text: str, expected_number: str, mrz: Optional[MRZData] = None) -> Tuple[int, Optional[str]]:
    """Score the document number (max 15; 12 for OCR-confused, 10 for 70% similar)."""
    compact_text = re.sub(r"\s+", "", (text or "").upper())
    expected = re.sub(r"[\s\-.]", "", (expected_number or "").upper())
    if not expected:
        return 0, None

    if mrz and mrz.document_number:
        mrz_number = mrz.document_number.replace("<", "").upper()
        if mrz_number == expected:
            return DOCUMENT_NUMBER_MAX, f"{mrz_number} (MRZ)"
        shortest = min(len(mrz_number), len(expected))
        if shortest and _positional_matches(mrz_number, expected) >= shortest * 0.8:
            return 12, f"{mrz_number} (MRZ partial)"

    if expected in compact_text:
        return DOCUMENT_NUMBER_MAX, expected_number

    for variation in ocr_variations(expected)[1:]:
        if variation in compact_text:
            return 12, variation

    if len(expected) >= 4:
        for i in range(len(compact_text) - len(expected) + 1):
            window = compact_text[i:i + len(expected)]
            if _positional_matches(window, expected) >= len(expected) * 0.7:
                return 10, window

    return 0, None


_EXPIRY_PATTERNS = [
    re.compile(r"(?:expir[yied]*|valid(?:ity)?|validade|exp|venc(?:imiento)?)[:\s]*(\d{1,2}[/\-.]\d{1,2}[/\-.]\d{2,4})", re.I),
    re.compile(r"(\d{1,2}[/\-.]\d{1,2}[/\-.]\d{2,4})[:\s]*(?:expir[yied]*|valid|validade)", re.I),
]
_ANY_DATE = re.compile(r"\b(\d{1,2}[/\-.]\d{1,2}[/\-.]\d{2,4})\b")


def find_expiry(
    text: str,
    mrz: Optional[MRZData] = None,
    today: Optional[date] = None,
) -> Tuple[int, Optional[str], Optional[bool]]:
    """
    Locate the expiry date (max 15).

    Returns:
        (score, found_text, is_valid) where is_valid is False for an expired document
    """
    today = today or date.today()

    if mrz and mrz.expiry_date:
        expiry = date.fromisoformat(mrz.expiry_date)
        return EXPIRY_MAX, f"{mrz.expiry_date} (MRZ)", expiry > today

    for pattern in _EXPIRY_PATTERNS:
        for match in pattern.finditer(text or ""):
            parsed = parse_date(match.group(1))
            if parsed and -5 <= parsed.year - today.year <= 15:
                return EXPIRY_MAX, parsed.isoformat(), parsed > today

    # Any future date is plausibly the expiry
    for match in _ANY_DATE.finditer(text or ""):
        parsed = parse_date(match.group(1))
        if parsed and parsed > today and parsed.year <= today.year + 15:
            return 10, f"{parsed.isoformat()} (possible)", True

    return 0, None, None


# ============================================================================
# AGGREGATION
# ============================================================================

def validate_document_text(
    text: str,
    expected: ExpectedPersonalData,
    document_type: DocumentType,
    today: Optional[date] = None,
) -> ValidationResult:
    """
    Match combined OCR text (front + back) against the expected personal data.

    Args:
        text: OCR transcription of every captured side
        expected: data the user entered on the form
        document_type: selected document type (decides whether an MRZ is expected)
        today: reference date for expiry checks

    Returns:
        ValidationResult with per-field scores, errors and warnings
    """
    start = time.time()
    errors: List[str] = []
    warnings: List[str] = []

    mrz_detected = has_mrz(text)
    mrz = extract_mrz(text) if mrz_detected else None
    if not mrz and DOCUMENT_TYPES[document_type].has_mrz:
        warnings.append("MRZ not detected - using visual text matching")
    if mrz_detected and not mrz:
        logger.debug("[Document Validator] MRZ detected but extraction failed")

    name_score, name_text = find_name(text, expected.full_name, mrz)
    dob_score, dob_text = find_date_of_birth(text, expected.date_of_birth, mrz)
    country_score, country_text = find_country(text, expected.country, mrz)

    doc_score, doc_text = 0, None
    if expected.document_number:
        doc_score, doc_text = find_document_number(text, expected.document_number, mrz)

    expiry_score, expiry_text, expiry_valid = find_expiry(text, mrz, today)

    max_total = NAME_MAX + DOB_MAX + COUNTRY_MAX + EXPIRY_MAX
    total = name_score + dob_score + country_score + expiry_score
    if expected.document_number:
        max_total += DOCUMENT_NUMBER_MAX
        total += doc_score
    confidence = round(total / max_total * 100)

    matches = ValidationMatches(
        name=FieldMatch(score=name_score, max_score=NAME_MAX, found=name_score >= 10),
        date_of_birth=FieldMatch(score=dob_score, max_score=DOB_MAX, found=dob_score >= 10),
        country=FieldMatch(score=country_score, max_score=COUNTRY_MAX, found=country_score >= 5),
        document_number=FieldMatch(score=doc_score, max_score=DOCUMENT_NUMBER_MAX, found=doc_score >= 5),
        expiry=FieldMatch(score=expiry_score, max_score=EXPIRY_MAX, found=expiry_score >= 5, is_valid=expiry_valid),
    )

    if name_score < 10:
        errors.append("Name not found or does not match")
    if dob_score < 10 and country_score < 5:
        errors.append("Neither date of birth nor country could be verified")
    if 0 < dob_score < 20:
        warnings.append("Date of birth partially matched - please verify")
    if expiry_valid is False:
        errors.append("Document appears to be expired")
    if not expiry_text:
        warnings.append("Expiry date not found - manual verification recommended")

    is_valid = name_score >= 10 and (dob_score >= 10 or country_score >= 5)
    requires_manual_review = not is_valid or confidence < 50 or bool(errors)

    logger.info(
        f"[Document Validator] name={name_score} dob={dob_score} country={country_score} "
        f"doc={doc_score} expiry={expiry_score} -> {confidence}% valid={is_valid}"
    )

    return ValidationResult(
        is_valid=is_valid,
        confidence=confidence,
        matches=matches,
        found_text=FoundText(
            name=name_text,
            date_of_birth=dob_text,
            country=country_text,
            document_number=doc_text,
            expiry=expiry_text,
        ),
        errors=errors,
        warnings=warnings,
        requires_manual_review=requires_manual_review,
        mrz_detected=mrz_detected,
        mrz_data=mrz,
        raw_text=text,
        processing_time_ms=int((time.time() - start) * 1000),
    )
