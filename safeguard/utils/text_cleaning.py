from __future__ import annotations

import re
import unicodedata

_WHITESPACE_RE = re.compile(r"\s+")
_URL_RE = re.compile(r"https?://\S+")
_HTML_TAG_RE = re.compile(r"<[^>]+>")
_PUNCT_RE = re.compile(r"[“”’‘]")
_TOKEN_RE = re.compile(r"[a-z0-9']+")

_SSN_RE = re.compile(r"\b\d{3}-\d{2}-\d{4}\b")
_CARD_RE = re.compile(r"\b\d{4}[-\s]?\d{4}[-\s]?\d{4}[-\s]?\d{4}\b")
_EMAIL_RE = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
_PHONE_RE = re.compile(r"(?<!\d)(?:\+?\d{1,2}[\s.-]?)?\(?\d{3}\)?[\s.-]?\d{3}[\s.-]?\d{4}\b")
_ADDRESS_RE = re.compile(
    r"\b\d{1,5}\s+(?:[A-Za-z]+\s){1,4}"
    r"(?:street|st|avenue|ave|road|rd|boulevard|blvd|lane|ln|drive|dr)\b",
    re.IGNORECASE,
)


def strip_accents(text: str) -> str:
    normalized = unicodedata.normalize("NFKD", text)
    return "".join(ch for ch in normalized if not unicodedata.combining(ch))


def remove_urls(text: str) -> str:
    return _URL_RE.sub(" ", text)


def remove_html(text: str) -> str:
    return _HTML_TAG_RE.sub(" ", text)


def normalize_whitespace(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text).strip()


def normalize_punctuation(text: str) -> str:
    return _PUNCT_RE.sub("'", text)


def clean_text(text: str | None) -> str:
    if not text:
        return ""
    cleaned = text.lower()
    cleaned = strip_accents(cleaned)
    cleaned = normalize_punctuation(cleaned)
    cleaned = remove_html(cleaned)
    cleaned = remove_urls(cleaned)
    cleaned = re.sub(r"[^a-z0-9\s\.\,\!\?']", " ", cleaned)
    cleaned = normalize_whitespace(cleaned)
    return cleaned


def tokenize(text: str) -> list[str]:
    """Lowercased word tokens with surrounding punctuation dropped."""
    return _TOKEN_RE.findall(clean_text(text))


def sanitize_pii(text_value: str) -> str:
    """Replace SSNs, card numbers, emails, phone numbers and street addresses."""
    if not text_value:
        return text_value
    s = _SSN_RE.sub("[SSN]", text_value)
    s = _CARD_RE.sub("[CARD]", s)
    s = _EMAIL_RE.sub("[EMAIL]", s)
    s = _PHONE_RE.sub("[PHONE]", s)
    s = _ADDRESS_RE.sub("[ADDRESS]", s)
    return s
