"""
Deterministic extractors used by the rule tier.

Each extractor looks for one kind of value anywhere in an utterance and
returns the raw text it found (or None). Values are not validated here;
the Validation Engine decides whether they are acceptable.
"""

import re
from typing import Iterable, Optional

YES_SET = {"yes", "yeah", "yep", "correct", "right", "affirmative", "sure", "ok", "okay", "true", "i do", "i have"}
NO_SET = {"no", "nope", "incorrect", "wrong", "nah", "negative", "false", "not", "don't", "do not", "never"}

SKIP_WORDS = {"skip", "n/a", "na", "none", "not applicable", "prefer not to say"}

ADDRESS_KEYWORDS = ("address", "street", "live at", "moved to", "reside at")

_EMAIL_RE = re.compile(r"[A-Z0-9._%+\-]+@[A-Z0-9.\-]+\.[A-Z]{2,}", re.I)
_PHONE_RE = re.compile(r"(\+?\d[\d\s\-().]{5,}\d)")
_NUMBER_RE = re.compile(r"(?<![\w/\-])[-+]?\$?\d[\d,]*(\.\d+)?(?![\w/\-])")

_MONTHS = (
    "jan(?:uary)?|feb(?:ruary)?|mar(?:ch)?|apr(?:il)?|may|jun(?:e)?|jul(?:y)?|"
    "aug(?:ust)?|sep(?:t(?:ember)?)?|oct(?:ober)?|nov(?:ember)?|dec(?:ember)?"
)
_DATE_RES = (
    re.compile(r"\b\d{4}-\d{1,2}-\d{1,2}\b"),
    re.compile(r"\b\d{1,2}/\d{1,2}/\d{2,4}\b"),
    re.compile(rf"\b(?:{_MONTHS})\.?\s+\d{{1,2}}(?:st|nd|rd|th)?,?\s+\d{{4}}\b", re.I),
    re.compile(rf"\b\d{{1,2}}(?:st|nd|rd|th)?\s+(?:{_MONTHS})\.?,?\s+\d{{4}}\b", re.I),
    re.compile(r"\b(?:today|yesterday|tomorrow)\b", re.I),
)
_ORDINAL_RE = re.compile(r"(\d)(st|nd|rd|th)\b", re.I)

_LEAD_IN_RE = re.compile(r"^\s*(?:is|was|are|:|=|-)?\s*", re.I)


def clean_text(t: str) -> str:
    return (t or "").strip()


def _words(text: str) -> str:
    return " " + re.sub(r"[^\w/'\s]", " ", text.lower()) + " "


def yes_no(text: str) -> Optional[str]:
    """'true' / 'false' when the utterance is clearly affirmative or negative"""
    s = _words(text or "")
    if not s.strip():
        return None
    has_yes = any(f" {w} " in s for w in YES_SET)
    has_no = any(f" {w} " in s for w in NO_SET)
    if has_yes and not has_no:
        return "true"
    if has_no and not has_yes:
        return "false"
    return None


def is_skip(text: str) -> bool:
    return clean_text(text).lower().strip(".! ") in SKIP_WORDS


def extract_email(text: str) -> Optional[str]:
    if not text:
        return None
    s = re.sub(r"\s+at\s+", "@", text, flags=re.I)
    s = re.sub(r"\s+dot\s+", ".", s, flags=re.I)
    m = _EMAIL_RE.search(s)
    return m.group(0).lower() if m else None


def extract_phone(text: str) -> Optional[str]:
    if not text:
        return None
    for m in _PHONE_RE.finditer(text):
        candidate = m.group(1)
        digits = re.sub(r"\D", "", candidate)
        if 7 <= len(digits) <= 15 and not _looks_like_date(candidate):
            return candidate.strip()
    return None


def _looks_like_date(text: str) -> bool:
    return any(r.fullmatch(text.strip()) for r in _DATE_RES)


def extract_date(text: str) -> Optional[str]:
    if not text:
        return None
    for pattern in _DATE_RES:
        m = pattern.search(text)
        if m:
            return _ORDINAL_RE.sub(r"\1", m.group(0))
    return None


def extract_number(text: str) -> Optional[str]:
    if not text:
        return None
    m = _NUMBER_RE.search(text)
    return m.group(0) if m else None


def extract_choice(text: str, options: Iterable[str]) -> Optional[str]:
    """Option mentioned in the text (whole-word, case-insensitive, longest first)"""
    s = _words(text or "")
    for option in sorted(options, key=len, reverse=True):
        needle = _words(option).strip()
        if needle and f" {needle} " in s:
            return option
    return None


def text_after_keyword(text: str, keywords: Iterable[str]) -> Optional[str]:
    """
    Text following the first keyword found, minus a lead-in ('is', ':').

    'My address is 12 Main St' with keyword 'address' -> '12 Main St'
    """
    if not text:
        return None
    lowered = text.lower()
    best = None
    for keyword in keywords:
        k = keyword.lower()
        pos = lowered.find(k)
        if pos != -1 and (best is None or pos < best[0]):
            best = (pos, len(k))
    if best is None:
        return None
    remainder = _LEAD_IN_RE.sub("", text[best[0] + best[1]:], count=1)
    remainder = remainder.strip(" .,!?;")
    return remainder or None
