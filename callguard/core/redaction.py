"""
Transcript redaction policy.

Detects payment card data and other personal information in transcripts
using keyword proximity and digit heuristics (no model calls). Spans are
located with word-level timestamps and padded to absorb timestamp drift.
"""

import re
from dataclasses import dataclass
from typing import List, Optional, Protocol, Sequence

from .transcription import TranscriptWord
from callguard.storage.models import RedactedSegment

DEFAULT_PADDING_SECONDS = 0.5
DOB_PADDING_SECONDS = 0.15
REDACTED = "[REDACTED]"

CARD_KEYWORDS = ("credit", "card", "visa", "mastercard", "amex", "discover", "debit", "payment", "number")
CVV_KEYWORDS = ("cvv", "cvc", "security", "code", "verification")
EXPIRY_KEYWORDS = ("expir", "expire", "valid", "exp")
DOB_KEYWORDS = ("dob", "birthday", "birthdate", "dateofbirth")
PASSWORD_KEYWORDS = ("password", "passcode", "pin", "pincode")
ADDRESS_KEYWORDS = ("address", "streetaddress")
STREET_SUFFIXES = frozenset({
    "st", "street", "rd", "road", "ave", "avenue", "blvd", "boulevard", "dr", "drive",
    "ln", "lane", "ct", "court", "way", "circle", "cir", "pkwy", "parkway", "trail", "trl",
})

KEYWORD_LOOKAHEAD = 15
SSN_LOOKAHEAD = 20
CARD_SEQUENCE_WINDOW = 10

_EMAIL_RE = re.compile(r"[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}", re.IGNORECASE)
_SSN_TOKEN_RE = re.compile(r"^\d{3}[-\s]?\d{2}[-\s]?\d{4}$")

# (pattern, replacement) pairs applied in order to transcript text
_TEXT_RULES = (
    (re.compile(r"(credit\s*card|card\s*number|visa|mastercard|amex|discover|debit|payment\s*card)"
                r"(\s+\w+){0,20}?(\d[\d\s\-]*\d)", re.IGNORECASE), r"\1 " + REDACTED),
    (re.compile(r"(cvv|cvc|security\s*code|verification\s*code|card\s*code)(\s+\w+){0,10}?(\d[\d\s\-]*)",
                re.IGNORECASE), r"\1 " + REDACTED),
    (re.compile(r"(expir\w*|exp\s*date|valid\s*through)(\s+\w+){0,10}?(\d[\d\s\-/]*)", re.IGNORECASE),
     r"\1 " + REDACTED),
    (re.compile(r"\b(date(?:\s|-)+of(?:\s|-)+birth|dateofbirth|dob|birthday|birth(?:\s|-)?date)\b"
                r"[^.\n]{0,150}?(\d[\d\s\-/]*\d)", re.IGNORECASE), r"\1 " + REDACTED),
    (re.compile(r"\b(ssn|social\s+security(?:\s+number)?)\b[^.\n]{0,80}\b(\d{3}[-\s]?\d{2}[-\s]?\d{4})\b",
                re.IGNORECASE), r"\1 " + REDACTED),
    (re.compile(r"\b\d{3}[-\s]\d{2}[-\s]\d{4}\b"), REDACTED),
    (re.compile(r"(\d[\d\s-]{10,}\d)"), REDACTED),
    (_EMAIL_RE, REDACTED),
    (re.compile(r"\b([a-z0-9._%+-]+)\s+at\s+([a-z0-9.-]+)\s+dot\s+([a-z]{2,})(\s+dot\s+([a-z]{2,}))?\b",
                re.IGNORECASE), REDACTED),
    (re.compile(r"\b(password|passcode|pin|pincode)\b(\s+\S+){0,10}", re.IGNORECASE), r"\1 " + REDACTED),
    (re.compile(r"\b(street\s+address|address)\b(\s+\S+){0,25}", re.IGNORECASE), r"\1 " + REDACTED),
    (re.compile(r"\b\d{1,6}\s+[a-z0-9.\-]+\s+(st|street|rd|road|ave|avenue|blvd|boulevard|dr|drive|ln|lane"
                r"|ct|court|way|cir|circle|pkwy|parkway|trl|trail)\b[^.\n]{0,60}", re.IGNORECASE), REDACTED),
)


class RedactionPolicy(Protocol):
    def scan(self, transcript: str, words: Sequence[TranscriptWord] = ()) -> List[RedactedSegment]:
        """Return the audio segments that must be redacted."""
        ...

    def sanitize(self, transcript: str) -> str:
        """Return the transcript with sensitive values masked."""
        ...


class NoRedactionPolicy:
    """Policy used when redaction is disabled for a deployment."""

    def scan(self, transcript: str, words: Sequence[TranscriptWord] = ()) -> List[RedactedSegment]:
        return []

    def sanitize(self, transcript: str) -> str:
        return transcript


@dataclass
class _Token:
    raw: str
    lower: str
    normalized: str
    start: float
    end: float


@dataclass
class _Span:
    start: float
    end: float
    reason: str


def _normalize(value: str) -> str:
    return re.sub(r"[^0-9a-z]", "", value.lower())


def _has_digit(value: str) -> bool:
    return any(ch.isdigit() for ch in value)


def _matches(token: str, keywords: Sequence[str]) -> bool:
    return bool(token) and any(token.startswith(kw) for kw in keywords)


class KeywordRedactionPolicy:
    """Heuristic detector for card, identity and contact details.

    A span runs from a trigger keyword to the last digit-bearing word in a
    short lookahead window; long digit runs are caught without a keyword.
    Overlapping spans are merged and their reasons joined with commas.
    """

    def __init__(self, padding_seconds: float = DEFAULT_PADDING_SECONDS):
        if padding_seconds < 0:
            raise ValueError("padding_seconds cannot be negative")
        self.padding_seconds = padding_seconds

    def scan(self, transcript: str, words: Sequence[TranscriptWord] = ()) -> List[RedactedSegment]:
        """Detect sensitive spans from word timestamps.

        Without word timestamps no audio position can be attributed, so
        nothing is returned; the text is still masked by ``sanitize``.
        """
        if not words:
            return []

        tokens = [
            _Token(raw=w.word, lower=w.word.lower(), normalized=_normalize(w.word), start=w.start, end=w.end)
            for w in words
        ]
        spans: List[_Span] = []

        def add(first: int, last: int, reason: str, padding: Optional[float] = None) -> None:
            pad = self.padding_seconds if padding is None else padding
            spans.append(_Span(
                start=max(0.0, tokens[first].start - pad),
                end=tokens[last].end + pad,
                reason=reason,
            ))

        self._scan_payment_and_dob(tokens, add)
        self._scan_digit_sequences(tokens, add)
        self._scan_ssn(tokens, add)
        self._scan_email(tokens, add)
        self._scan_password(tokens, add)
        self._scan_address(tokens, add)

        return [RedactedSegment(start_sec=s.start, end_sec=s.end, reason=s.reason) for s in _merge(spans)]

    def sanitize(self, transcript: str) -> str:
        if not transcript:
            return ""
        sanitized = transcript
        for pattern, replacement in _TEXT_RULES:
            sanitized = pattern.sub(replacement, sanitized)
        return sanitized

    def _scan_payment_and_dob(self, tokens: List[_Token], add) -> None:
        for i, token in enumerate(tokens):
            following = [t.normalized for t in tokens[i + 1:i + 3]]
            is_dob = (
                _matches(token.normalized, DOB_KEYWORDS)
                or (token.normalized == "date" and following == ["of", "birth"])
                or (token.normalized == "birth" and following[:1] == ["date"])
            )
            is_cvv = _matches(token.normalized, CVV_KEYWORDS)
            is_expiry = _matches(token.normalized, EXPIRY_KEYWORDS)
            is_card = _matches(token.normalized, CARD_KEYWORDS)
            if not (is_dob or is_cvv or is_expiry or is_card):
                continue

            digit_indices = [
                j for j in range(i, min(i + KEYWORD_LOOKAHEAD, len(tokens)))
                if _has_digit(tokens[j].normalized)
            ]
            if not digit_indices:
                continue

            if is_dob:
                # Only the date value itself, with tight padding.
                add(digit_indices[0], digit_indices[-1], "dob", min(self.padding_seconds, DOB_PADDING_SECONDS))
            elif is_cvv:
                add(i, digit_indices[-1], "cvv")
            elif is_expiry:
                add(i, digit_indices[-1], "expiry")
            else:
                add(i, digit_indices[-1], "card_number")

    def _scan_digit_sequences(self, tokens: List[_Token], add) -> None:
        for i in range(len(tokens)):
            window = tokens[i:i + CARD_SEQUENCE_WINDOW]
            digits = re.sub(r"\D", "", "".join(t.normalized for t in window))
            if 12 <= len(digits) <= 19:
                add(i, i + len(window) - 1, "card_number_sequence")

    def _scan_ssn(self, tokens: List[_Token], add) -> None:
        for i, token in enumerate(tokens):
            if _SSN_TOKEN_RE.match(token.raw.strip()):
                add(i, i, "ssn")

        for i, token in enumerate(tokens):
            next_token = tokens[i + 1].normalized if i + 1 < len(tokens) else ""
            is_keyword = "ssn" in token.normalized or (token.normalized == "social" and "security" in next_token)
            if not is_keyword:
                continue
            last = -1
            for j in range(i, min(i + SSN_LOOKAHEAD, len(tokens) - 1) + 1):
                if _has_digit(tokens[j].raw):
                    last = j
            if last != -1:
                add(i, last, "ssn")

    def _scan_email(self, tokens: List[_Token], add) -> None:
        for i, token in enumerate(tokens):
            if "@" in token.raw or _EMAIL_RE.search(token.raw):
                add(i, i, "email")

        for i, token in enumerate(tokens):
            if token.lower != "at":
                continue
            for j in range(i + 1, min(i + 8, len(tokens) - 1) + 1):
                if tokens[j].lower == "dot":
                    add(max(0, i - 2), min(len(tokens) - 1, j + 2), "email_spoken")
                    break

    def _scan_password(self, tokens: List[_Token], add) -> None:
        for i, token in enumerate(tokens):
            if token.normalized in PASSWORD_KEYWORDS or _matches(token.normalized, ("password", "passcode")):
                add(i, min(i + 10, len(tokens) - 1), "password_or_pin")

    def _scan_address(self, tokens: List[_Token], add) -> None:
        for i, token in enumerate(tokens):
            if _matches(token.normalized, ADDRESS_KEYWORDS):
                add(i, min(i + 25, len(tokens) - 1), "address")

        for i, token in enumerate(tokens):
            if not _has_digit(token.raw):
                continue
            for j in range(i + 1, min(i + 6, len(tokens) - 1) + 1):
                if tokens[j].normalized in STREET_SUFFIXES:
                    add(i, min(j + 6, len(tokens) - 1), "address_pattern")
                    break


def _merge(spans: List[_Span]) -> List[_Span]:
    merged: List[_Span] = []
    for span in sorted(spans, key=lambda s: s.start):
        if merged and span.start <= merged[-1].end:
            last = merged[-1]
            last.end = max(last.end, span.end)
            if span.reason not in last.reason.split(","):
                last.reason = f"{last.reason},{span.reason}"
        else:
            merged.append(_Span(span.start, span.end, span.reason))
    return merged
