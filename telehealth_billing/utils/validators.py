import re

_CURRENCY_RE = re.compile(r"^[A-Za-z]{3}$")
_JURISDICTION_RE = re.compile(r"^[A-Za-z]{2,3}$")

def clean_str(val: str | None, max_len: int = 255) -> str | None:
    """
    Collapse whitespace, trim, enforce max length. Returns None if empty after cleaning.
    """
    if val is None:
        return None
    s = re.sub(r"\s+", " ", str(val)).strip()
    if not s:
        return None
    return s[:max_len]

def normalize_currency(val: str | None, default: str = "USD") -> str | None:
    """ISO-4217 style three-letter code, upper-cased. None if malformed."""
    if not val:
        return default
    s = val.strip()
    if not _CURRENCY_RE.match(s):
        return None
    return s.upper()

def normalize_jurisdiction(val: str | None) -> str:
    """State/region code for tax lookup; anything odd falls through to ''."""
    if not val:
        return ""
    s = val.strip()
    if not _JURISDICTION_RE.match(s):
        return ""
    return s.upper()
