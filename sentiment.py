"""Per-word sentiment/complexity scoring and the session sentiment tally."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Optional, Tuple

__all__ = [
    "POSITIVE_WORDS",
    "NEGATIVE_WORDS",
    "INTENSIFIERS",
    "score_word",
    "is_complex_word",
    "score_token",
    "chunk_sentiment",
    "SentimentTally",
]

POSITIVE_WORDS = frozenset({
    "love", "lovely", "amazing", "great", "happy", "excited", "wonderful", "awesome", "fantastic", "beautiful",
    "incredible", "brilliant", "yes", "yay", "win", "success", "excellent", "perfect", "joy", "joyful", "delight",
})
NEGATIVE_WORDS = frozenset({
    "hate", "terrible", "bad", "sad", "angry", "frustrated", "awful", "horrible", "annoying", "no", "pain", "ugh",
    "disaster", "broken", "worst", "fail", "failure", "angst",
})
INTENSIFIERS = frozenset({"very", "really", "super", "extremely", "so", "too"})

MIN_SCORE = -3
MAX_SCORE = 3

_NON_ALPHA = re.compile(r"[^a-zA-Z]")
_VOWEL_RUN = re.compile(r"[aeiouy]+")
_WORD_RE = re.compile(r"\w+")


def _direction(score: int) -> int:
    # Sign of the score so far; an undecided score leans positive
    if score < 0:
        return -1
    return 1


def score_word(raw: str) -> int:
    """Score one word token in [-3, 3]; positive is favorable."""
    word = raw.lower()
    score = 0
    if word in POSITIVE_WORDS:
        score += 2
    if word in NEGATIVE_WORDS:
        score -= 2
    if word in INTENSIFIERS:
        score += _direction(score)
    if raw == raw.upper() and len(raw) >= 3:
        # shouting
        score += _direction(score)
    return max(MIN_SCORE, min(MAX_SCORE, score))


def is_complex_word(raw: str) -> bool:
    word = _NON_ALPHA.sub("", raw)
    if len(word) >= 7:
        return True
    # crude syllable count: maximal vowel runs
    return len(_VOWEL_RUN.findall(word.lower())) >= 3


def score_token(raw: str) -> Tuple[int, bool]:
    return score_word(raw), is_complex_word(raw)


def chunk_sentiment(text: str) -> str:
    """Label a finalized chunk positive/negative/neutral by its summed word scores."""
    total = sum(score_word(word) for word in _WORD_RE.findall(text or ""))
    if total > 0:
        return "positive"
    if total < 0:
        return "negative"
    return "neutral"


@dataclass
class SentimentTally:
    """Running count of chunk sentiments for the current session."""

    positive: int = 0
    negative: int = 0
    neutral: int = 0

    @property
    def total(self) -> int:
        return self.positive + self.negative + self.neutral

    def add(self, sentiment: str) -> None:
        if sentiment == "positive":
            self.positive += 1
        elif sentiment == "negative":
            self.negative += 1
        else:
            self.neutral += 1

    def add_text(self, text: str) -> str:
        sentiment = chunk_sentiment(text)
        self.add(sentiment)
        return sentiment

    def extend(self, sentiments: Iterable[str]) -> None:
        for sentiment in sentiments:
            self.add(sentiment)

    def reset(self) -> None:
        self.positive = self.negative = self.neutral = 0

    @property
    def score(self) -> Optional[int]:
        # -100 (all negative) .. +100 (all positive)
        if self.total == 0:
            return None
        return round((self.positive - self.negative) / self.total * 100)

    def color(self) -> Optional[str]:
        score = self.score
        if score is None:
            return None
        if score >= 40:
            return "#22c55e"
        if score >= 10:
            return "#84cc16"
        if score >= -10:
            return "#eab308"
        if score >= -40:
            return "#f97316"
        return "#ef4444"

    def description(self) -> str:
        score = self.score
        if score is None:
            return "No sentiment data"
        if score >= 60:
            return "Very Positive"
        if score >= 40:
            return "Positive"
        if score >= 10:
            return "Mildly Positive"
        if score >= -10:
            return "Neutral"
        if score >= -40:
            return "Mildly Negative"
        if score >= -60:
            return "Negative"
        return "Very Negative"
