"""On-track / branch classification of transcript chunks.

The remote analysis endpoint is tried first for every chunk. Any transport,
status or parse failure drops to a keyword heuristic for that chunk only.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Optional, Tuple

import httpx

from discourse_graph import next_branch_level
from talk_parameters import ClassifierConfig

__all__ = [
    "ChunkResult",
    "ChunkClassifier",
    "ClassificationError",
    "FALLBACK_LABEL",
    "TOPIC_SHIFT_HINTS",
    "simple_summarize",
    "simple_is_on_track",
]

CLASSIFY_LOG = logging.getLogger("tangent_map.classify")

FALLBACK_LABEL = "No content"
TOPIC_SHIFT_HINTS = ("but", "however", "wait", "side", "off", "tangent", "anyway")
SUMMARY_WORDS = 4

_NON_ALNUM = re.compile(r"[^a-zA-Z0-9\s]")


class ClassificationError(RuntimeError):
    """The analysis endpoint answered with something unusable."""


def simple_summarize(text: str) -> str:
    words = _NON_ALNUM.sub(" ", text or "").split()
    return " ".join(words[:SUMMARY_WORDS]) or FALLBACK_LABEL


def simple_is_on_track(text: str) -> bool:
    lowered = (text or "").lower()
    return not any(hint in lowered for hint in TOPIC_SHIFT_HINTS)


@dataclass(frozen=True)
class ChunkResult:
    label: str
    branch_level: int
    on_track: bool
    source: str  # "remote" | "fallback"


class ChunkClassifier:
    def __init__(
        self,
        config: Optional[ClassifierConfig] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.cfg = config or ClassifierConfig.from_env()
        self._transport = transport

    async def classify(
        self,
        text: str,
        previous_label: Optional[str] = None,
        previous_branch_level: Optional[int] = None,
    ) -> ChunkResult:
        """Classify one chunk. Never raises for transport or parse problems."""
        if not self.cfg.endpoint:
            CLASSIFY_LOG.debug("no analysis endpoint configured; classifying locally")
            return self.classify_locally(text, previous_branch_level)

        try:
            on_track, summary = await self.request_remote(text, previous_label)
        except (httpx.HTTPError, ValueError, ClassificationError) as exc:
            CLASSIFY_LOG.warning("remote classification failed, using heuristic: %s", exc)
            return self.classify_locally(text, previous_branch_level)

        label = summary.strip() or simple_summarize(text)
        return ChunkResult(
            label=label,
            branch_level=next_branch_level(previous_branch_level, on_track),
            on_track=on_track,
            source="remote",
        )

    def classify_locally(self, text: str, previous_branch_level: Optional[int] = None) -> ChunkResult:
        on_track = simple_is_on_track(text)
        return ChunkResult(
            label=simple_summarize(text),
            branch_level=next_branch_level(previous_branch_level, on_track),
            on_track=on_track,
            source="fallback",
        )

    async def request_remote(self, text: str, previous_label: Optional[str]) -> Tuple[bool, str]:
        payload = {"transcript": text, "previousSummary": previous_label}
        async with httpx.AsyncClient(timeout=self.cfg.timeout_s, transport=self._transport) as client:
            CLASSIFY_LOG.info("POST %s chars=%d", self.cfg.endpoint, len(text))
            response = await client.post(self.cfg.endpoint, json=payload)
            response.raise_for_status()
            data = response.json()

        if not isinstance(data, dict):
            raise ClassificationError(f"expected a JSON object, got {type(data).__name__}")
        on_track = data.get("isOnTrack")
        if not isinstance(on_track, bool):
            raise ClassificationError(f"isOnTrack missing or not a boolean: {on_track!r}")
        summary = data.get("summary")
        return on_track, summary if isinstance(summary, str) else ""
