"""Decoder for AAMVA-style driver-license / ID PDF417 payloads.

Scanner firmwares disagree on separators, so the payload is first folded to
one element per line, then each line is matched against the three-letter
AAMVA element codes. Decoding never raises: whatever cannot be read is left
blank and noted in ``warnings``.
"""

from __future__ import annotations

import hashlib
import re
from datetime import date

from agegate.schemas.verification import DecodedDocument

# Literal tokens and control characters various scanners emit between elements.
_SEPARATOR_PATTERN = re.compile(r"\r\n|\r|\n|\x1e|\x1d|\x1c|<(?:LF|CR|RS|GS|FS)>|\\[nr]", re.IGNORECASE)
# Header line: "ANSI 636015090002DL00410278ZT03190007DLDAQ...". The first data element follows the subfile type.
_SUBFILE_PATTERN = re.compile(r"(DL|ID)(D[A-Z]{2}.*)$")
_ELEMENT_PATTERN = re.compile(r"^(D[A-Z]{2})(.*)$")
_PLACEHOLDER_PREFIX = "UNKNOWN-"

SEX_CODES = {
    "1": "M",
    "2": "F",
    "9": "X",
    "M": "M",
    "F": "F",
    "X": "X",
}


def normalize_separators(raw: str) -> str:
    return _SEPARATOR_PATTERN.sub("\n", raw)


def extract_elements(raw: str) -> tuple[dict[str, str], str | None]:
    """Return element code -> value (first occurrence wins) and the subfile type if seen."""
    elements: dict[str, str] = {}
    subfile: str | None = None
    for line in normalize_separators(raw).split("\n"):
        line = line.strip()
        if not line:
            continue
        # No element code starts with DL or ID, so those prefixes are always a subfile marker.
        header = _SUBFILE_PATTERN.match(line) or (
            None if _ELEMENT_PATTERN.match(line) else _SUBFILE_PATTERN.search(line)
        )
        if header:
            subfile = subfile or header.group(1)
            line = header.group(2)
        match = _ELEMENT_PATTERN.match(line)
        if not match:
            continue
        code, value = match.group(1), match.group(2).strip()
        if code not in elements and value:
            elements[code] = value
    return elements, subfile


def is_plausible_year(value: int) -> bool:
    return 1900 <= value <= 2099


def _safe_date(year: int, month: int, day: int) -> date | None:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def parse_document_date(value: str | None) -> date | None:
    """Parse YYYYMMDD, MMDDYYYY, YYYY-MM-DD or MM/DD/YYYY.

    An 8-digit run is read as YYYYMMDD when its first four digits look like a
    year and form a real date, otherwise as MMDDYYYY when the last four do.
    """
    if not value:
        return None
    text = value.strip()

    delimited = re.fullmatch(r"(\d{1,4})[-/.](\d{1,2})[-/.](\d{1,4})", text)
    if delimited:
        first, middle, last = delimited.groups()
        if len(first) == 4 and is_plausible_year(int(first)):
            return _safe_date(int(first), int(middle), int(last))
        if len(last) == 4 and is_plausible_year(int(last)):
            return _safe_date(int(last), int(first), int(middle))
        return None

    if not re.fullmatch(r"\d{8}", text):
        return None

    leading_year = int(text[:4])
    if is_plausible_year(leading_year):
        parsed = _safe_date(leading_year, int(text[4:6]), int(text[6:8]))
        if parsed is not None:
            return parsed

    trailing_year = int(text[4:])
    if is_plausible_year(trailing_year):
        return _safe_date(trailing_year, int(text[:2]), int(text[2:4]))
    return None


def compute_age(dob: date | None, today: date | None = None) -> int | None:
    if dob is None:
        return None
    today = today or date.today()
    if dob > today:
        return None
    age = today.year - dob.year
    if (today.month, today.day) < (dob.month, dob.day):
        age -= 1
    return age


def normalize_sex(value: str | None) -> str:
    if not value:
        return ""
    text = value.strip().upper()
    if text in SEX_CODES:
        return SEX_CODES[text]
    if text.startswith("MALE"):
        return "M"
    if text.startswith("FEMALE"):
        return "F"
    if text.startswith("NON"):
        return "X"
    return ""


def normalize_document_number(value: str | None) -> str:
    if not value:
        return ""
    return re.sub(r"\s+", "", value).upper()


def placeholder_document_number(raw: str) -> str:
    digest = hashlib.sha256(raw.encode("utf-8", errors="replace")).hexdigest()
    return f"{_PLACEHOLDER_PREFIX}{digest[:12].upper()}"


def _first_given_name(value: str) -> str:
    # DCT and the tail of DAA may carry "FIRST,MIDDLE" or "FIRST MIDDLE".
    return re.split(r"[,\s]+", value.strip(), maxsplit=1)[0] if value.strip() else ""


def _resolve_names(elements: dict[str, str]) -> tuple[str, str, str]:
    first = elements.get("DAC", "")
    last = elements.get("DCS", "")
    middle = elements.get("DAD", "")

    if not first and elements.get("DCT"):
        given = elements["DCT"]
        first = _first_given_name(given)
        if not middle and "," in given:
            middle = given.split(",", 1)[1].strip()
    if not last and elements.get("DAB"):
        last = elements["DAB"]

    if (not first or not last) and elements.get("DAA"):
        full_name = elements["DAA"]
        if "," in full_name:
            family, given = full_name.split(",", 1)
            last = last or family.strip()
            first = first or _first_given_name(given)
        else:
            parts = full_name.split()
            if parts:
                first = first or parts[0]
                if len(parts) > 1:
                    last = last or parts[-1]

    return first.strip().upper(), middle.strip().upper(), last.strip().upper()


def _postal_code(value: str | None) -> str:
    if not value:
        return ""
    digits = re.sub(r"[^0-9A-Za-z]", "", value).upper()
    # US ZIP+4 is padded with zeros when the +4 part is unknown.
    if len(digits) == 9 and digits.isdigit():
        return digits[:5] if digits[5:] == "0000" else f"{digits[:5]}-{digits[5:]}"
    return digits


def decode(raw_payload: str | bytes | None, today: date | None = None) -> DecodedDocument:
    if isinstance(raw_payload, bytes):
        raw = raw_payload.decode("utf-8", errors="replace")
    else:
        raw = raw_payload or ""

    elements, subfile = extract_elements(raw)
    warnings: list[str] = []

    first, middle, last = _resolve_names(elements)
    if not first or not last:
        warnings.append("name_incomplete")

    dob = parse_document_date(elements.get("DBB"))
    age = compute_age(dob, today)
    if age is None:
        warnings.append("dob_unreadable")
        dob = None

    document_number = normalize_document_number(elements.get("DAQ"))
    is_placeholder = not document_number
    if is_placeholder:
        document_number = placeholder_document_number(raw)
        warnings.append("document_number_missing")

    return DecodedDocument(
        first_name=first,
        middle_name=middle,
        last_name=last,
        date_of_birth=dob,
        age=age,
        document_type="id_card" if subfile == "ID" else "drivers_license",
        document_number=document_number,
        document_number_is_placeholder=is_placeholder,
        issuing_region=elements.get("DAJ", "").strip().upper(),
        issuing_country=elements.get("DCG", "").strip().upper(),
        sex=normalize_sex(elements.get("DBC")),
        expiry_date=parse_document_date(elements.get("DBA")),
        address1=elements.get("DAG", "").strip(),
        address2=elements.get("DAH", "").strip(),
        city=elements.get("DAI", "").strip(),
        state=elements.get("DAJ", "").strip().upper(),
        postal_code=_postal_code(elements.get("DAK")),
        warnings=tuple(warnings),
    )
