from __future__ import annotations

import re
import unicodedata
from collections.abc import Callable
from datetime import date, timedelta

"""Value normalizers for Swiss school-administration data.

Every normalizer is a pure function `str -> str | None`:
- returns the canonical form of the value when it can derive one
- returns None when the value cannot be normalized unambiguously
- maps an already canonical value to itself

The last property makes normalizers usable as format rules
(value conforms iff normalizer(value) == value) and as bulk fixes
(fixable iff normalizer(value) is not None and differs from value).
"""

__all__ = [
    "Normalizer",
    "NORMALIZERS",
    "get_normalizer",
    "ahv_format",
    "phone_format",
    "email_format",
    "plz_format",
    "gender_format",
    "name_format",
    "street_format",
    "postfach_format",
    "iban_format",
    "date_format",
    "date_de_format",
    "whitespace_trim",
]

Normalizer = Callable[[str], str | None]

_NON_DIGIT = re.compile(r"\D")
_POSTFACH = re.compile(r"^(?:postfach|pf\.?|p\.\s*f\.)?\s*(\d+)$", re.IGNORECASE)
_DATE_DE = re.compile(r"^\d{2}\.\d{2}\.\d{4}$")
_EMAIL = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
EXCEL_EPOCH = date(1899, 12, 30)

# よくあるドメインの打ち間違い
_EMAIL_DOMAIN_TYPOS = (
    ("@gmial.", "@gmail."),
    ("@gmai.", "@gmail."),
    ("@gamil.", "@gmail."),
    ("@hotmal.", "@hotmail."),
    ("@outllok.", "@outlook."),
    ("@outlok.", "@outlook."),
)

_GENDER_MALE = {"MÄNNLICH", "MALE", "MANN", "M", "MAENNLICH", "HERR", "H"}
_GENDER_FEMALE = {"WEIBLICH", "FEMALE", "FRAU", "W", "F"}
_GENDER_DIVERSE = {"DIVERS", "DIVERSE", "D", "X", "ANDERES"}


def _strip_accents(value: str) -> str:
    decomposed = unicodedata.normalize("NFD", value)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def _is_single_case(value: str) -> bool:
    upper = value == value.upper() and value != value.lower()
    lower = value == value.lower() and value != value.upper()
    return upper or lower


def _capitalize_parts(parts: list[str]) -> str:
    out = []
    for part in parts:
        if part == "-" or part.isspace() or not part:
            out.append(part)
        else:
            out.append(part[:1].upper() + part[1:])
    return "".join(out)


def ahv_format(value: str) -> str | None:
    """756XXXXXXXXXX (any separators) -> 756.XXXX.XXXX.XX"""
    digits = _NON_DIGIT.sub("", value)
    if len(digits) == 13 and digits.startswith("756"):
        return f"{digits[0:3]}.{digits[3:7]}.{digits[7:11]}.{digits[11:13]}"
    return None


def phone_format(value: str) -> str | None:
    """Swiss numbers -> +41 XX XXX XX XX.

    Accepts national (0XX XXX XX XX), bare 9 digit subscriber numbers
    (missing prefix), 41XXXXXXXXX and 0041XXXXXXXXX.
    """
    digits = _NON_DIGIT.sub("", value)
    if len(digits) == 13 and digits.startswith("0041"):
        digits = digits[2:]
    elif len(digits) == 10 and digits.startswith("0"):
        digits = "41" + digits[1:]
    elif len(digits) == 9 and not digits.startswith("0"):
        digits = "41" + digits
    if len(digits) != 11 or not digits.startswith("41"):
        return None
    return f"+41 {digits[2:4]} {digits[4:7]} {digits[7:9]} {digits[9:11]}"


def email_format(value: str) -> str | None:
    cleaned = value.strip().lower()
    cleaned = re.sub(r"\s+", "", cleaned)
    cleaned = _strip_accents(cleaned)
    cleaned = cleaned.replace(",", ".")
    cleaned = re.sub(r"\.+", ".", cleaned)
    cleaned = re.sub(r"@+", "@", cleaned)
    for wrong, right in _EMAIL_DOMAIN_TYPOS:
        cleaned = cleaned.replace(wrong, right, 1)
    if _EMAIL.match(cleaned):
        return cleaned
    return None


def plz_format(value: str) -> str | None:
    """Swiss (4) and DE/AT (5) digit postal codes, separators removed."""
    digits = _NON_DIGIT.sub("", value)
    if len(digits) in (4, 5):
        return digits
    return None


def gender_format(value: str) -> str | None:
    normalized = value.strip().upper()
    if normalized in _GENDER_MALE:
        return "M"
    if normalized in _GENDER_FEMALE:
        return "W"
    if normalized in _GENDER_DIVERSE:
        return "D"
    return None


def name_format(value: str) -> str | None:
    """MÜLLER-MEIER / müller-meier -> Müller-Meier. Mixed case is kept as is."""
    trimmed = value.strip()
    if not trimmed:
        return None
    if not _is_single_case(trimmed):
        return trimmed
    return _capitalize_parts(re.split(r"(\s+|-)", trimmed.lower()))


def street_format(value: str) -> str | None:
    trimmed = value.strip()
    if not trimmed:
        return None
    if not _is_single_case(trimmed):
        return trimmed
    formatted = trimmed.lower()
    formatted = re.sub(r"^str\.?\s*", "Strasse ", formatted)
    formatted = re.sub(r"\bstr\.?$", "strasse", formatted)
    formatted = re.sub(r"\bpl\.?$", "platz", formatted)
    return _capitalize_parts(re.split(r"(\s+)", formatted))


def postfach_format(value: str) -> str | None:
    """Postfach 123 / PF 123 / p.f. 123 / 123 -> Postfach 123"""
    m = _POSTFACH.match(value.strip())
    if m:
        return f"Postfach {int(m.group(1))}"
    return None


def iban_format(value: str) -> str | None:
    """CH IBAN -> CHXX XXXX XXXX XXXX XXXX X"""
    cleaned = re.sub(r"\s", "", value).upper()
    if cleaned.startswith("CH") and len(cleaned) == 21:
        groups = [cleaned[i:i + 4] for i in range(0, 20, 4)]
        return " ".join(groups) + " " + cleaned[20:]
    return None


def date_format(value: str) -> str | None:
    """Excel serial number (e.g. 44927) -> DD.MM.YYYY"""
    stripped = value.strip()
    if _DATE_DE.match(stripped):
        return stripped
    if not stripped.isdigit():
        return None
    serial = int(stripped)
    if not 1 < serial < 100000:
        return None
    d = EXCEL_EPOCH + timedelta(days=serial)
    return d.strftime("%d.%m.%Y")


def date_de_format(value: str) -> str | None:
    """D-M-YYYY / YYYY-MM-DD -> DD.MM.YYYY"""
    stripped = value.strip()
    if _DATE_DE.match(stripped):
        return stripped
    m = re.match(r"^(\d{1,2})-(\d{1,2})-(\d{4})$", stripped)
    if m:
        return f"{m.group(1).zfill(2)}.{m.group(2).zfill(2)}.{m.group(3)}"
    m = re.match(r"^(\d{4})-(\d{2})-(\d{2})$", stripped)
    if m:
        return f"{m.group(3)}.{m.group(2)}.{m.group(1)}"
    return None


def whitespace_trim(value: str) -> str | None:
    """Strip leading/trailing whitespace and collapse inner runs to one space."""
    return re.sub(r"\s{2,}", " ", value.strip())


NORMALIZERS: dict[str, Normalizer] = {
    "ahv_format": ahv_format,
    "phone_format": phone_format,
    "email_format": email_format,
    "plz_format": plz_format,
    "gender_format": gender_format,
    "name_format": name_format,
    "street_format": street_format,
    "postfach_format": postfach_format,
    "iban_format": iban_format,
    "date_format": date_format,
    "date_de_format": date_de_format,
    "whitespace_trim": whitespace_trim,
}


def get_normalizer(name: str) -> Normalizer:
    """Look up a normalizer by its registered name. Raises KeyError if unknown."""
    try:
        return NORMALIZERS[name]
    except KeyError:
        raise KeyError(f"unknown normalizer: {name}") from None
