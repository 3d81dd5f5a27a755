from __future__ import annotations

import json
import logging
import re
from typing import Dict, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from openai import OpenAI
from pydantic import BaseModel

from talk_parameters import LLMConfig

__all__ = [
    "AnalyzeRequest",
    "AnalyzeResponse",
    "LLMRouter",
    "build_analysis_prompt",
    "parse_llm_answer",
    "heuristic_analysis",
    "analyze_chunk",
    "create_app",
]

SERVICE_LOG = logging.getLogger("tangent_map.service")

MAIN_TOPIC = "Main topic"
SIDE_TOPIC = "Side topic"
NO_CONTENT = "No content"

_SHIFT_RE = re.compile(r"(but|however|anyway|side|off|tangent)")
_NON_ALNUM = re.compile(r"[^a-zA-Z0-9\s]")
_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


class AnalyzeRequest(BaseModel):
    transcript: Optional[str] = None
    previousSummary: Optional[str] = None


class AnalyzeResponse(BaseModel):
    summary: str
    isOnTrack: bool
    topic: str


# ---------------------------------------------------------------------------
# LLM access


class LLMRouter:
    def __init__(self, cfg: Optional[LLMConfig] = None):
        self.cfg = cfg or LLMConfig.from_env()
        self._openai_client: Optional[OpenAI] = None

    @property
    def available(self) -> bool:
        return bool(self.cfg.api_key)

    def _ensure_openai_client(self) -> OpenAI:
        if self._openai_client is not None:
            return self._openai_client
        if not self.cfg.api_key:
            raise RuntimeError("openai backend requested but OPENAI_API_KEY is not set (or openai_api_key.txt is missing).")
        self._openai_client = OpenAI(api_key=self.cfg.api_key, base_url=self.cfg.base_url)
        return self._openai_client

    def query(self, prompt: str, model: Optional[str] = None) -> str:
        client = self._ensure_openai_client()
        try:
            response = client.responses.create(
                model=model or self.cfg.model,
                input=[{"role": "user", "content": prompt}],
                timeout=self.cfg.timeout_s,
            )
        except Exception as exc:  # pragma: no cover - network failure
            raise RuntimeError(f"OpenAI completion failed: {exc}") from exc
        return _extract_response_text(response)


def _extract_response_text(response) -> str:
    """Best-effort extraction of text from a Responses API result."""
    if response is None:
        return ""
    text = getattr(response, "output_text", None)
    if callable(text):
        text = text()
    if isinstance(text, str) and text.strip():
        return text.strip()

    parts = []
    for item in getattr(response, "output", None) or []:
        for content in getattr(item, "content", None) or []:
            value = content.get("text") if isinstance(content, dict) else getattr(content, "text", "")
            if value:
                parts.append(str(value).strip())
    return " ".join(parts).strip()


# ---------------------------------------------------------------------------
# Analysis


def build_analysis_prompt(transcript: str, previous_summary: Optional[str]) -> str:
    return (
        "You are classifying and summarizing a conversation. "
        f"Previous summary: {previous_summary or '(none)'}\n"
        f"Transcript chunk (15s): {transcript}\n"
        "Return JSON with keys: summary (3-4 words), isOnTrack (boolean), topic (short)."
    )


def parse_llm_answer(text: str, transcript: str) -> Dict[str, object]:
    """Read the model's JSON answer; prose answers keep the defaults and a 4-word summary."""
    summary, on_track, topic = NO_CONTENT, True, MAIN_TOPIC
    try:
        parsed = json.loads(_FENCE_RE.sub("", (text or "").strip()))
    except ValueError:
        parsed = None
    if isinstance(parsed, dict):
        summary = str(parsed.get("summary") or summary)
        if isinstance(parsed.get("isOnTrack"), bool):
            on_track = parsed["isOnTrack"]
        topic = str(parsed.get("topic") or topic)
    else:
        summary = " ".join(transcript.split()[:4]) or summary
    return {"summary": summary, "isOnTrack": on_track, "topic": topic}


def heuristic_analysis(transcript: str) -> Dict[str, object]:
    on_track = _SHIFT_RE.search(transcript.lower()) is None
    summary = " ".join(_NON_ALNUM.sub(" ", transcript).split()[:4]) or NO_CONTENT
    return {"summary": summary, "isOnTrack": on_track, "topic": MAIN_TOPIC if on_track else SIDE_TOPIC}


def analyze_chunk(transcript: str, previous_summary: Optional[str], router: Optional[LLMRouter]) -> Dict[str, object]:
    if router is not None and router.available:
        try:
            answer = router.query(build_analysis_prompt(transcript, previous_summary))
            return parse_llm_answer(answer, transcript)
        except Exception as exc:
            SERVICE_LOG.warning("LLM analysis failed, using heuristic: %s", exc)
    return heuristic_analysis(transcript)


# ---------------------------------------------------------------------------
# HTTP surface


def create_app(router: Optional[LLMRouter] = None) -> FastAPI:
    router = router if router is not None else LLMRouter()
    app = FastAPI(title="Tangent Map analysis")

    # CORS configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.post("/api/analyze-chunk", response_model=AnalyzeResponse)
    def analyze(body: AnalyzeRequest):
        transcript = body.transcript
        if not isinstance(transcript, str) or not transcript.strip():
            raise HTTPException(status_code=400, detail="Invalid transcript")
        try:
            result = analyze_chunk(transcript, body.previousSummary, router)
        except Exception as exc:
            SERVICE_LOG.error("analysis failed: %s", exc)
            raise HTTPException(status_code=500, detail="Analysis failed")
        SERVICE_LOG.info("analyzed %d chars -> %r on_track=%s", len(transcript), result["summary"], result["isOnTrack"])
        return result

    @app.get("/api/health")
    def health():
        return {"status": "ok", "llm": router.available}

    return app
