from finance_categorizer.models import Transaction

# Card-processor boilerplate removed as literal substrings.
_BOILERPLATE = (
    "- DEBIT",
    "- CREDIT",
    "- CHECKCARD",
    "DEBIT CARD",
    "CREDIT CARD",
    "CHECKCARD",
    "*",
)

_LEGAL_SUFFIXES = {"LLC", "INC", "CORP", "LTD", "CO", "GMBH", "PLC"}
_REFERENCE_PREFIXES = {"REF", "TXN"}

_STATE_CODES = {
    "AL", "AK", "AZ", "AR", "CA", "CO", "CT", "DE", "FL", "GA", "HI", "ID", "IL", "IN", "IA",
    "KS", "KY", "LA", "ME", "MD", "MA", "MI", "MN", "MS", "MO", "MT", "NE", "NV", "NH", "NJ",
    "NM", "NY", "NC", "ND", "OH", "OK", "OR", "PA", "RI", "SC", "SD", "TN", "TX", "UT", "VT",
    "VA", "WA", "WV", "WI", "WY", "DC",
}


def _is_reference_token(token: str) -> bool:
    if token.startswith("#") and len(token) > 1:
        return True
    return token.isdigit() and len(token) >= 4


def _is_trailing_noise(token: str) -> bool:
    return token.rstrip(".,") in _LEGAL_SUFFIXES or token in _STATE_CODES or _is_reference_token(token)


def normalize_merchant_name(merchant_name: str | None) -> str:
    """
    Uppercase the merchant and drop processor boilerplate, store and reference
    numbers, trailing state codes and legal suffixes. Cleanup is literal and
    token based; no regular expressions are applied.
    """
    if not merchant_name:
        return ""
    cleaned = merchant_name.upper()
    for boilerplate in _BOILERPLATE:
        cleaned = cleaned.replace(boilerplate, " ")

    tokens: list[str] = []
    skip_next = False
    for token in cleaned.split():
        if skip_next:
            skip_next = False
            continue
        if token in _REFERENCE_PREFIXES:
            skip_next = True
            continue
        if _is_reference_token(token):
            continue
        tokens.append(token)

    while len(tokens) > 1 and _is_trailing_noise(tokens[-1]):
        tokens.pop()

    if not tokens:
        return " ".join(merchant_name.upper().split())
    return " ".join(tokens)


def merchant_text(transaction: Transaction) -> str:
    """Merchant name, falling back to the description."""
    if transaction.merchant_name and transaction.merchant_name.strip():
        return transaction.merchant_name.strip()
    if transaction.description and transaction.description.strip():
        return transaction.description.strip()
    return ""


def merchant_key(transaction: Transaction) -> str:
    return normalize_merchant_name(merchant_text(transaction))
