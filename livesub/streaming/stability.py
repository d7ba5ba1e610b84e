# coding=utf-8
from __future__ import annotations

import re
import string
from collections import Counter
from dataclasses import dataclass
from typing import List, Optional

_ASCII_WS = " \t\n\v\f\r"
_ASCII_PUNCT = string.punctuation
_TOKEN_SPLIT = re.compile(r"[ \t\n\v\f\r]+")

DOMINANT_MIN_TOKENS = 8
DOMINANT_RATIO = 0.75
CONSECUTIVE_REPEAT_RUN = 5
SUFFIX_REPEAT_MIN_TOKENS = 4


def _lower_ascii(text: str) -> str:
    return "".join(c.lower() if c < "\x80" else c for c in text)


def normalize_for_dedup(text: str) -> str:
    out = []
    for c in str(text or ""):
        if c in _ASCII_WS or c in _ASCII_PUNCT:
            continue
        out.append(c.lower() if c < "\x80" else c)
    return "".join(out)


def normalize_repeat_token(token: str) -> str:
    return _lower_ascii(str(token or "").strip(_ASCII_PUNCT))


def split_repetition_tokens(text: str) -> List[str]:
    tokens = []
    for raw in _TOKEN_SPLIT.split(str(text or "")):
        token = normalize_repeat_token(raw)
        if token:
            tokens.append(token)
    return tokens


def repetition_reason(text: str, prev_text: str = "") -> Optional[str]:
    tokens = split_repetition_tokens(text)
    if not tokens:
        return None

    if len(tokens) >= DOMINANT_MIN_TOKENS:
        top = Counter(tokens).most_common(1)[0][1]
        if float(top) / float(len(tokens)) >= DOMINANT_RATIO:
            return "dominant-token-ratio"

    run = 1
    for prev_tok, tok in zip(tokens, tokens[1:]):
        run = run + 1 if tok == prev_tok else 1
        if run >= CONSECUTIVE_REPEAT_RUN:
            return "consecutive-token-repeat"

    src = str(text or "")
    prev = str(prev_text or "")
    if prev and len(src) > len(prev) and src.startswith(prev):
        suffix_tokens = split_repetition_tokens(src[len(prev):].strip())
        if len(suffix_tokens) >= SUFFIX_REPEAT_MIN_TOKENS and len(set(suffix_tokens)) == 1:
            return "suffix-single-token-repeat"

    return None


@dataclass(frozen=True)
class FilterDecision:
    accept: bool
    reason: str
    normalized: str


class TranscriptStabilityFilter:
    """
    Reject recognizer output that repeats the last published caption or loops on one token.

    The reference is the last *published* text, so windows dropped in between
    do not reset it.
    """

    def __init__(self) -> None:
        self.last_text = ""
        self.last_normalized = ""
        self.has_emitted = False

    def check(self, text: str) -> FilterDecision:
        src = str(text or "").strip()
        normalized = normalize_for_dedup(src)
        if self.has_emitted and normalized and normalized == self.last_normalized:
            return FilterDecision(accept=False, reason="duplicate-text", normalized=normalized)

        reason = repetition_reason(src, self.last_text)
        if reason:
            return FilterDecision(accept=False, reason=reason, normalized=normalized)
        return FilterDecision(accept=True, reason="accepted", normalized=normalized)

    def remember(self, text: str, normalized: Optional[str] = None) -> None:
        self.last_text = str(text or "").strip()
        self.last_normalized = normalize_for_dedup(self.last_text) if normalized is None else str(normalized)
        self.has_emitted = True
