from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

__all__ = [
    "SegmentConfig",
    "HTTPSTTConfig",
    "ClassifierConfig",
    "LayoutConfig",
    "CaptureLoopConfig",
    "StoreConfig",
    "LLMConfig",
    "load_http_stt_config",
    "load_openai_api_key",
]


def _env_int(name: str, default: int) -> int:
    val = os.environ.get(name)
    if val is None:
        return default
    try:
        return int(val)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    val = os.environ.get(name)
    if val is None:
        return default
    try:
        return float(val)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    val = os.environ.get(name)
    if val is None:
        return default
    return val.strip().lower() not in {"0", "false", "no", "off"}


DEFAULT_STT_MODEL = "gpt-4o-mini-transcribe"
DEFAULT_STT_ENDPOINT = "https://api.openai.com/v1/audio/transcriptions"
DEFAULT_LANGUAGE = "en"
DEFAULT_ANALYZE_URL = "http://127.0.0.1:5174/api/analyze-chunk"
DEFAULT_DB_URL = "sqlite:///tangent_map.db"
DEFAULT_LLM_MODEL = "gpt-4o-mini"


def _default_key_file() -> Path:
    # Prefer openai_api_key.txt alongside the app, fall back to the parent dir.
    script_dir = Path(__file__).resolve().parent
    candidates = [
        script_dir / "openai_api_key.txt",
        script_dir.parent / "openai_api_key.txt",
    ]
    for path in candidates:
        if path.exists():
            return path
    return candidates[0]


def load_openai_api_key() -> Optional[str]:
    """Load the OpenAI API key from env or a local text file."""
    key = os.environ.get("OPENAI_API_KEY")
    if key:
        key = key.strip()
        if key:
            return key

    key_file = os.environ.get("OPENAI_API_KEY_FILE")
    path = Path(key_file).expanduser() if key_file else _default_key_file()
    if not path.exists():
        return None

    try:
        text = path.read_text(encoding="utf-8").strip()
    except OSError:
        return None
    return text or None


@dataclass
class SegmentConfig:
    """Lightweight energy VAD used before HTTP transcription."""

    energy_calibration_ms: int = 3000
    energy_floor_dbfs: float = -50.0
    energy_offset_db: float = 12.0

    min_speech_ms: int = 300
    max_silence_ms: int = 200
    max_segment_seconds: float = 5.0
    pre_roll_ms: int = 120

    @classmethod
    def from_env(cls) -> "SegmentConfig":
        d = cls()
        return cls(
            energy_calibration_ms=_env_int("STT_VAD_ENERGY_CAL_MS", d.energy_calibration_ms),
            energy_floor_dbfs=_env_float("STT_VAD_ENERGY_FLOOR_DBFS", d.energy_floor_dbfs),
            energy_offset_db=_env_float("STT_VAD_ENERGY_OFFSET_DB", d.energy_offset_db),
            min_speech_ms=_env_int("STT_VAD_MIN_SPEECH_MS", d.min_speech_ms),
            max_silence_ms=_env_int("STT_VAD_MAX_SILENCE_MS", d.max_silence_ms),
            max_segment_seconds=_env_float("STT_VAD_MAX_SEGMENT_SECONDS", d.max_segment_seconds),
            pre_roll_ms=_env_int("STT_VAD_PRE_ROLL_MS", d.pre_roll_ms),
        )


@dataclass
class HTTPSTTConfig:
    """HTTP transcription parameters for the microphone session."""

    model: str = DEFAULT_STT_MODEL
    language: str = DEFAULT_LANGUAGE
    endpoint: str = DEFAULT_STT_ENDPOINT
    prompt: Optional[str] = field(default_factory=lambda: os.environ.get("STT_PROMPT"))

    # Deltas feed the interim transcript, so streaming stays on by default
    enable_delta_streaming: bool = True

    segment: SegmentConfig = field(default_factory=SegmentConfig)

    @classmethod
    def from_env(cls, segment: Optional[SegmentConfig] = None) -> "HTTPSTTConfig":
        seg = segment or SegmentConfig.from_env()
        d = cls(segment=seg)
        return cls(
            model=os.environ.get("STT_MODEL", d.model),
            language=os.environ.get("STT_LANGUAGE", d.language),
            endpoint=os.environ.get("STT_ENDPOINT", d.endpoint),
            prompt=os.environ.get("STT_PROMPT", d.prompt),
            enable_delta_streaming=_env_bool("STT_ENABLE_DELTA_STREAMING", d.enable_delta_streaming),
            segment=seg,
        )


@dataclass
class ClassifierConfig:
    """Where chunks are sent for on-track/branch classification."""

    # Empty endpoint means "always classify locally"
    endpoint: str = DEFAULT_ANALYZE_URL
    timeout_s: float = 20.0

    @classmethod
    def from_env(cls) -> "ClassifierConfig":
        d = cls()
        return cls(
            endpoint=os.environ.get("TANGENT_ANALYZE_URL", d.endpoint).strip(),
            timeout_s=_env_float("TANGENT_ANALYZE_TIMEOUT_S", d.timeout_s),
        )


@dataclass(frozen=True)
class LayoutConfig:
    """Box geometry and pitches for the discourse graph."""

    node_width: float = 240.0
    node_height: float = 48.0
    lane_pitch: float = 180.0
    row_pitch: float = 90.0
    origin_x: float = 80.0
    origin_y: float = 60.0
    canvas_width: float = 800.0
    min_canvas_height: float = 500.0
    bottom_margin: float = 120.0


@dataclass
class CaptureLoopConfig:
    flush_seconds: float = 15.0
    user_id: Optional[str] = "local-user"

    @classmethod
    def from_env(cls) -> "CaptureLoopConfig":
        d = cls()
        user_id = os.environ.get("TANGENT_USER_ID", d.user_id or "").strip()
        return cls(
            flush_seconds=max(0.5, _env_float("TANGENT_FLUSH_SECONDS", d.flush_seconds)),
            user_id=user_id or None,
        )


@dataclass
class StoreConfig:
    url: str = DEFAULT_DB_URL
    echo: bool = False

    @classmethod
    def from_env(cls) -> "StoreConfig":
        d = cls()
        return cls(
            url=os.environ.get("TANGENT_DB_URL", d.url),
            echo=_env_bool("TANGENT_DB_ECHO", d.echo),
        )


@dataclass
class LLMConfig:
    model: str = DEFAULT_LLM_MODEL
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    timeout_s: float = 30.0

    @classmethod
    def from_env(cls) -> "LLMConfig":
        d = cls()
        return cls(
            model=os.environ.get("TANGENT_LLM_MODEL", d.model),
            api_key=load_openai_api_key(),
            base_url=os.environ.get("OPENAI_BASE_URL"),
            timeout_s=_env_float("OPENAI_TIMEOUT_S", d.timeout_s),
        )


def load_http_stt_config() -> HTTPSTTConfig:
    return HTTPSTTConfig.from_env()
