import re


_PII_PATTERNS = [
    (re.compile(r"\b[\w.+-]+@[\w-]+\.[\w.-]+\b"), "[EMAIL]"),
    (re.compile(r"\b\d{3}[-.]?\d{3}[-.]?\d{4}\b"), "[PHONE]"),
    (re.compile(r"\b\d{4}[\s-]?\d{4}[\s-]?\d{4}[\s-]?\d{4}\b"), "[CARD]"),
]

# Signed object-storage URLs carry credentials in the query string
_URL_QUERY_RE = re.compile(r"(https?://[^\s?#]+)\?[^\s#]*")


def scrub_url(url: str) -> str:
    return _URL_QUERY_RE.sub(r"\1?[REDACTED]", url)


def scrub_pii(text: str) -> str:
    text = scrub_url(text)
    for pattern, replacement in _PII_PATTERNS:
        text = pattern.sub(replacement, text)
    return text
