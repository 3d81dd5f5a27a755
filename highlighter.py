from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Tuple

from sentiment import is_complex_word, score_word

__all__ = ["StyledSpan", "TOKEN_CLASSES", "tokenize", "is_word_token", "tier_classes", "highlight"]

# word run | punctuation run | whitespace run; together they cover every character
_TOKEN_RE = re.compile(r"\w+|[^\w\s]+|\s+")
_WORD_RE = re.compile(r"\w")

TOKEN_CLASSES = ("lt-token", "pos", "neg", "s2", "s3", "long", "pop")


@dataclass(frozen=True)
class StyledSpan:
    text: str
    classes: Tuple[str, ...] = ()

    @property
    def is_word(self) -> bool:
        return bool(self.classes)


def tokenize(text: str) -> List[str]:
    return _TOKEN_RE.findall(text or "")


def is_word_token(token: str) -> bool:
    return bool(_WORD_RE.match(token))


def tier_classes(magnitude: int) -> Tuple[str, ...]:
    if magnitude >= 2:
        return ("pos", "s3")
    if magnitude == 1:
        return ("pos", "s2")
    if magnitude <= -2:
        return ("neg", "s3")
    if magnitude == -1:
        return ("neg", "s2")
    return ()


def highlight(text: str) -> List[StyledSpan]:
    """Split interim text into spans, styling word tokens by sentiment tier."""
    parts = tokenize(text)
    last_word = -1
    for idx in range(len(parts) - 1, -1, -1):
        if is_word_token(parts[idx]):
            last_word = idx
            break

    spans: List[StyledSpan] = []
    for idx, part in enumerate(parts):
        if not is_word_token(part):
            spans.append(StyledSpan(part))
            continue
        classes = ["lt-token"]
        if idx == last_word:
            classes.append("pop")
        classes.extend(tier_classes(score_word(part)))
        if is_complex_word(part):
            classes.append("long")
        spans.append(StyledSpan(part, tuple(classes)))
    return spans
