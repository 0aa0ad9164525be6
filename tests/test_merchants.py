import pytest

from conftest import make_transaction
from finance_categorizer.domain.merchants import merchant_key, merchant_text, normalize_merchant_name


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("STARBUCKS #4521", "STARBUCKS"),
        ("Whole Foods Market #12", "WHOLE FOODS MARKET"),
        ("AMAZON.COM*MK1234 - DEBIT", "AMAZON.COM MK1234"),
        ("SQ *BLUE BOTTLE COFFEE", "SQ BLUE BOTTLE COFFEE"),
        ("CHECKCARD 0412 SHELL OIL 57442 CA", "SHELL OIL"),
        ("ACME WIDGETS LLC", "ACME WIDGETS"),
        ("UBER TRIP REF 88XZ", "UBER TRIP"),
        ("  trader   joe's  ", "TRADER JOE'S"),
    ],
)
def test_normalize_merchant_name(raw: str, expected: str) -> None:
    assert normalize_merchant_name(raw) == expected


def test_normalize_keeps_single_token() -> None:
    # A lone legal suffix or state code is not stripped down to nothing.
    assert normalize_merchant_name("CO") == "CO"
    assert normalize_merchant_name("") == ""
    assert normalize_merchant_name(None) == ""


def test_merchant_falls_back_to_description() -> None:
    transaction = make_transaction("t1", merchant=None, description="Netflix.com 1234")
    assert merchant_text(transaction) == "Netflix.com 1234"
    assert merchant_key(transaction) == "NETFLIX.COM"
