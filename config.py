from __future__ import annotations
import os

# === Simple knobs (edit these numbers if you dislike envs) ===
ANALYZE_URL = os.environ.get("TANGENT_ANALYZE_URL", "http://127.0.0.1:5174/api/analyze-chunk")
FLUSH_SECONDS = os.environ.get("TANGENT_FLUSH_SECONDS", "15")
DB_URL = os.environ.get("TANGENT_DB_URL", "sqlite:///tangent_map.db")
SERVE_PORT = int(os.environ.get("TANGENT_SERVE_PORT", "5174"))

STT_MODEL = os.environ.get("STT_MODEL", "gpt-4o-mini-transcribe")
STT_LANGUAGE = os.environ.get("STT_LANGUAGE", "en")

# Energy gate for the microphone session (milliseconds / decibels / seconds)
VAD = {
    "ENERGY_CAL_MS": int(os.environ.get("STT_VAD_ENERGY_CAL_MS", "3000")),
    "ENERGY_FLOOR_DBFS": float(os.environ.get("STT_VAD_ENERGY_FLOOR_DBFS", "-50.0")),
    "ENERGY_OFFSET_DB": float(os.environ.get("STT_VAD_ENERGY_OFFSET_DB", "12.0")),
    "MIN_SPEECH_MS": int(os.environ.get("STT_VAD_MIN_SPEECH_MS", "300")),
    "MAX_SILENCE_MS": int(os.environ.get("STT_VAD_MAX_SILENCE_MS", "200")),
    "MAX_SEGMENT_SECONDS": float(os.environ.get("STT_VAD_MAX_SEGMENT_SECONDS", "5.0")),
    "PRE_ROLL_MS": int(os.environ.get("STT_VAD_PRE_ROLL_MS", "120")),
}

# Write env once so downstream .from_env() picks them up predictably.
os.environ.setdefault("TANGENT_ANALYZE_URL", ANALYZE_URL)
os.environ.setdefault("TANGENT_FLUSH_SECONDS", FLUSH_SECONDS)
os.environ.setdefault("TANGENT_DB_URL", DB_URL)
os.environ.setdefault("STT_MODEL", STT_MODEL)
os.environ.setdefault("STT_LANGUAGE", STT_LANGUAGE)

os.environ.setdefault("STT_VAD_ENERGY_CAL_MS", str(VAD["ENERGY_CAL_MS"]))
os.environ.setdefault("STT_VAD_ENERGY_FLOOR_DBFS", str(VAD["ENERGY_FLOOR_DBFS"]))
os.environ.setdefault("STT_VAD_ENERGY_OFFSET_DB", str(VAD["ENERGY_OFFSET_DB"]))
os.environ.setdefault("STT_VAD_MIN_SPEECH_MS", str(VAD["MIN_SPEECH_MS"]))
os.environ.setdefault("STT_VAD_MAX_SILENCE_MS", str(VAD["MAX_SILENCE_MS"]))
os.environ.setdefault("STT_VAD_MAX_SEGMENT_SECONDS", str(VAD["MAX_SEGMENT_SECONDS"]))
os.environ.setdefault("STT_VAD_PRE_ROLL_MS", str(VAD["PRE_ROLL_MS"]))

# Re-export the dataclasses so the rest of the code imports from `config`.
from talk_parameters import (  # noqa: E402
    CaptureLoopConfig,
    ClassifierConfig,
    HTTPSTTConfig,
    LayoutConfig,
    LLMConfig,
    SegmentConfig,
    StoreConfig,
    load_http_stt_config,
    load_openai_api_key,
)
