from __future__ import annotations

import pytest

from school_import.services.formatters import (
    NORMALIZERS,
    ahv_format,
    date_de_format,
    date_format,
    email_format,
    gender_format,
    get_normalizer,
    iban_format,
    name_format,
    phone_format,
    plz_format,
    postfach_format,
    street_format,
    whitespace_trim,
)


@pytest.mark.parametrize(
    "value, expected",
    [
        ("7561234567897", "756.1234.5678.97"),
        ("756 1234 5678 97", "756.1234.5678.97"),
        ("756.1234.5678.97", "756.1234.5678.97"),
        ("123.4567.8901.23", None),
        ("756123", None),
    ],
)
def test_ahv_format(value, expected):
    assert ahv_format(value) == expected


@pytest.mark.parametrize(
    "value, expected",
    [
        ("079 123 45 67", "+41 79 123 45 67"),
        ("0791234567", "+41 79 123 45 67"),
        ("79 123 45 67", "+41 79 123 45 67"),
        ("+41791234567", "+41 79 123 45 67"),
        ("0041791234567", "+41 79 123 45 67"),
        ("+41 79 123 45 67", "+41 79 123 45 67"),
        ("+49 30 1234567", None),
        ("12345", None),
    ],
)
def test_phone_format(value, expected):
    assert phone_format(value) == expected


def test_email_format_fixes_common_mistakes():
    assert email_format(" Max.Muster@GMIAL.com ") == "max.muster@gmail.com"
    assert email_format("anna,meier@bluewin.ch") == "anna.meier@bluewin.ch"
    assert email_format("zoë@example..ch") == "zoe@example.ch"
    assert email_format("no-at-sign") is None


def test_plz_gender_iban():
    assert plz_format("8000") == "8000"
    assert plz_format("CH-8000") == "8000"
    assert plz_format("800") is None
    assert gender_format("männlich") == "M"
    assert gender_format("Frau") == "W"
    assert gender_format("x") == "D"
    assert gender_format("?") is None
    assert iban_format("ch9300762011623852957") == "CH93 0076 2011 6238 5295 7"
    assert iban_format("DE89370400440532013000") is None


def test_name_and_street_keep_mixed_case():
    assert name_format("MÜLLER-MEIER") == "Müller-Meier"
    assert name_format("VAN DER BERG") == "Van Der Berg"
    assert name_format("McDonald") == "McDonald"
    assert street_format("BAHNHOF STR.") == "Bahnhof Strasse"
    assert street_format("Bahnhofstrasse 5") == "Bahnhofstrasse 5"


def test_date_normalizers():
    assert date_format("44927") == "01.01.2023"
    assert date_format("01.01.2023") == "01.01.2023"
    assert date_format("abc") is None
    assert date_de_format("1-2-2020") == "01.02.2020"
    assert date_de_format("2020-02-01") == "01.02.2020"
    assert date_de_format("01.02.2020") == "01.02.2020"
    assert date_de_format("2020/02/01") is None


def test_whitespace_trim():
    assert whitespace_trim("  Max   Muster ") == "Max Muster"
    assert whitespace_trim("Max Muster") == "Max Muster"


def test_canonical_values_are_fixed_points():
    samples = {
        "ahv_format": "756.1234.5678.97",
        "phone_format": "+41 79 123 45 67",
        "email_format": "max@example.ch",
        "plz_format": "8000",
        "gender_format": "W",
        "name_format": "Muster",
        "street_format": "Bahnhofstrasse 5",
        "postfach_format": "Postfach 123",
        "iban_format": "CH93 0076 2011 6238 5295 7",
        "date_format": "05.01.2024",
        "date_de_format": "05.01.2024",
        "whitespace_trim": "Max Muster",
    }
    assert set(samples) == set(NORMALIZERS)
    for name, value in samples.items():
        assert NORMALIZERS[name](value) == value, name


def test_get_normalizer_unknown():
    assert get_normalizer("phone_format") is phone_format
    with pytest.raises(KeyError, match="unknown normalizer"):
        get_normalizer("nope")


def test_postfach_format():
    assert postfach_format("Postfach 123") == "Postfach 123"
    assert postfach_format("postfach123") == "Postfach 123"
    assert postfach_format("PF. 45") == "Postfach 45"
    assert postfach_format(" p.f. 7 ") == "Postfach 7"
    assert postfach_format("88") == "Postfach 88"
    assert postfach_format("Bahnhofstrasse 5") is None
    assert NORMALIZERS["postfach_format"] is postfach_format
