"""
MRZ Parser - machine readable zone detection and decoding.

Supports the two layouts carried by accepted documents:
- TD1: ID cards, 3 lines x 30 characters
- TD3: passports, 2 lines x 44 characters

Check digits use the ICAO 9303 7-3-1 weighting.
"""

import re
from datetime import date
from typing import List, Optional

from config.document_schema import MRZData


_MRZ_LINE = re.compile(r"^[A-Z0-9<]{25,48}$")
_WEIGHTS = (7, 3, 1)

TD1_LENGTH = 30
TD3_LENGTH = 44


def _char_value(char: str) -> int:
    if char.isdigit():
        return int(char)
    if "A" <= char <= "Z":
        return ord(char) - ord("A") + 10
    return 0  # filler '<'


def check_digit(value: str) -> int:
    """ICAO 9303 check digit."""
    total = sum(_char_value(c) * _WEIGHTS[i % 3] for i, c in enumerate(value))
    return total % 10


def _check(value: str, digit: str) -> bool:
    return digit.isdigit() and check_digit(value) == int(digit)


def parse_mrz_date(raw: str, is_expiry: bool = False, today: Optional[date] = None) -> Optional[str]:
    """
    Parse a YYMMDD MRZ date to ISO format.

    Birth dates pivot on the current year + 5; expiry dates prefer 20YY when
    that lands within ten years back / twenty years ahead.
    """
    if not re.fullmatch(r"\d{6}", raw or ""):
        return None

    yy, mm, dd = int(raw[0:2]), int(raw[2:4]), int(raw[4:6])
    if not (1 <= mm <= 12 and 1 <= dd <= 31):
        return None

    today = today or date.today()
    if is_expiry:
        century_2000 = 2000 + yy
        century_1900 = 1900 + yy
        if today.year - 10 <= century_2000 <= today.year + 20:
            year = century_2000
        elif century_1900 >= today.year - 10:
            year = century_1900
        else:
            year = century_2000
    else:
        year = 1900 + yy if yy > (today.year % 100) + 5 else 2000 + yy

    try:
        return date(year, mm, dd).isoformat()
    except ValueError:
        return None


def _clean_lines(text: str) -> List[str]:
    """Normalize OCR output into candidate MRZ lines."""
    lines = []
    for line in (text or "").splitlines():
        cleaned = line.strip().upper().replace(" ", "").replace("«", "<")
        if _MRZ_LINE.match(cleaned) and "<" in cleaned:
            lines.append(cleaned)
    return lines


def has_mrz(text: str) -> bool:
    """Quick check for MRZ-looking content."""
    upper = (text or "").upper().replace(" ", "")
    patterns = [
        r"P<[A-Z]{3}[A-Z<]+<<[A-Z<]+",  # Passport line 1
        r"[A-Z0-9<]{9}[0-9][A-Z]{3}[0-9]{6}[0-9][MF<][0-9]{6}",  # Passport line 2
        r"I[A-Z<][A-Z]{3}[A-Z0-9<]{9}[0-9<]",  # ID card line 1
        r"[0-9]{6}[0-9][MF<][0-9]{6}[0-9][A-Z]{3}",  # ID card line 2
    ]
    return any(re.search(p, upper) for p in patterns)


def _split_name(field: str) -> tuple[str, str]:
    parts = field.strip("<").split("<<", 1)
    surname = parts[0].replace("<", " ").strip()
    given = parts[1].replace("<", " ").strip() if len(parts) > 1 else ""
    return surname, " ".join(given.split())


def _pad(line: str, length: int) -> str:
    return (line + "<" * length)[:length]


def parse_td3(line1: str, line2: str) -> Optional[MRZData]:
    """Decode a passport MRZ (2 x 44)."""
    l1, l2 = _pad(line1, TD3_LENGTH), _pad(line2, TD3_LENGTH)
    if not l1.startswith("P"):
        return None

    surname, given_names = _split_name(l1[5:44])
    document_number = l2[0:9]
    dob_raw, expiry_raw = l2[13:19], l2[21:27]

    valid = (
        _check(document_number, l2[9])
        and _check(dob_raw, l2[19])
        and _check(expiry_raw, l2[27])
    )
    composite = l2[0:10] + l2[13:20] + l2[21:43]
    if l2[43].isdigit():
        valid = valid and _check(composite, l2[43])

    return MRZData(
        format="TD3",
        document_code=l1[0:2].replace("<", ""),
        issuing_country=l1[2:5].replace("<", ""),
        document_number=document_number.replace("<", ""),
        surname=surname,
        given_names=given_names,
        nationality=l2[10:13].replace("<", ""),
        date_of_birth=parse_mrz_date(dob_raw),
        sex=l2[20] if l2[20] in "MF" else None,
        expiry_date=parse_mrz_date(expiry_raw, is_expiry=True),
        check_digits_valid=valid,
        raw_lines=[line1, line2],
    )


def parse_td1(line1: str, line2: str, line3: str) -> Optional[MRZData]:
    """Decode an ID card MRZ (3 x 30)."""
    l1, l2, l3 = (_pad(x, TD1_LENGTH) for x in (line1, line2, line3))
    if l1[0] not in "IAC":
        return None

    document_number = l1[5:14]
    dob_raw, expiry_raw = l2[0:6], l2[8:14]

    valid = (
        _check(document_number, l1[14])
        and _check(dob_raw, l2[6])
        and _check(expiry_raw, l2[14])
    )
    composite = l1[5:30] + l2[0:7] + l2[8:15] + l2[18:29]
    if l2[29].isdigit():
        valid = valid and _check(composite, l2[29])

    surname, given_names = _split_name(l3)

    return MRZData(
        format="TD1",
        document_code=l1[0:2].replace("<", ""),
        issuing_country=l1[2:5].replace("<", ""),
        document_number=document_number.replace("<", ""),
        surname=surname,
        given_names=given_names,
        nationality=l2[15:18].replace("<", ""),
        date_of_birth=parse_mrz_date(dob_raw),
        sex=l2[7] if l2[7] in "MF" else None,
        expiry_date=parse_mrz_date(expiry_raw, is_expiry=True),
        check_digits_valid=valid,
        raw_lines=[line1, line2, line3],
    )


def extract_mrz(text: str) -> Optional[MRZData]:
    """
    Find and decode the first MRZ block in OCR text.
    Returns None when no complete block is present.
    """
    lines = _clean_lines(text)

    for i, line in enumerate(lines):
        # TD3: passport line 1 followed by data line
        if line.startswith("P") and len(line) >= 40 and i + 1 < len(lines):
            parsed = parse_td3(line, lines[i + 1])
            if parsed:
                return parsed

        # TD1: three ~30 character lines starting with a document code
        if line[0] in "IAC" and len(line) <= 34 and i + 2 < len(lines):
            parsed = parse_td1(line, lines[i + 1], lines[i + 2])
            if parsed:
                return parsed

    return None
