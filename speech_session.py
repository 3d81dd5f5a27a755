"""Microphone speech session: capture, energy gate, HTTP transcription.

The session reports through three callbacks:

* ``on_result(finals, interims)`` for streamed deltas (interims) and completed
  segments (finals),
* ``on_error(exc)`` when capture cannot continue,
* ``on_end()`` once the session has shut down on its own.
"""

from __future__ import annotations

import io
import json
import logging
import queue
import threading
import wave
from typing import Callable, Dict, List, Optional, Sequence

import httpx
import numpy as np

from talk_parameters import HTTPSTTConfig, SegmentConfig, load_openai_api_key

__all__ = [
    "SAMPLE_RATE",
    "FRAME_MS",
    "FRAME_SAMPLES",
    "EnergyGate",
    "SegmentTranscriber",
    "MicrophoneSession",
    "pcm_to_wav",
]

SPEECH_LOG = logging.getLogger("tangent_map.speech")
HTTP_LOG = logging.getLogger("tangent_map.speech.http")

SAMPLE_RATE = 16000
FRAME_MS = 10
FRAME_SAMPLES = SAMPLE_RATE * FRAME_MS // 1000  # 160 samples @16 kHz, 10 ms frame

FAILURE_LOG_EVERY = 5

ResultCallback = Callable[[Sequence[str], Sequence[str]], None]


def frame_dbfs(pcm16: bytes) -> float:
    samples = np.frombuffer(pcm16, dtype=np.int16).astype(np.float32)
    if samples.size == 0:
        return -120.0
    rms = np.sqrt(np.mean(np.square(samples))) + 1e-12
    db = 20.0 * np.log10(rms / 32768.0)
    if not np.isfinite(db):
        return -120.0
    return float(db)


def pcm_to_wav(pcm16: bytes, sample_rate: int = SAMPLE_RATE) -> bytes:
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(sample_rate)
        wf.writeframes(pcm16)
    return buffer.getvalue()


# ---------------------------------------------------------------------------
# Energy gate


class EnergyGate:
    """Adaptive dBFS gate that cuts a 10 ms PCM frame stream into speech segments."""

    def __init__(self, cfg: Optional[SegmentConfig] = None):
        self.cfg = cfg or SegmentConfig()
        self._calibration_left = max(1, self.cfg.energy_calibration_ms // FRAME_MS)
        self._calibration: List[float] = []
        self.noise_floor_dbfs = self.cfg.energy_floor_dbfs
        self.threshold_dbfs = self.noise_floor_dbfs + self.cfg.energy_offset_db
        self._pre_roll_frames = max(1, self.cfg.pre_roll_ms // FRAME_MS)
        self._min_speech_frames = max(1, self.cfg.min_speech_ms // FRAME_MS)
        self._max_silence_frames = max(1, self.cfg.max_silence_ms // FRAME_MS)
        self._max_segment_frames = max(
            self._min_speech_frames + 1,
            int(self.cfg.max_segment_seconds * 1000 / FRAME_MS),
        )
        self._prebuffer: List[bytes] = []
        self._segment: List[bytes] = []
        self._speaking = False
        self._speech_frames = 0
        self._silence_frames = 0

    @property
    def calibrated(self) -> bool:
        return self._calibration_left == 0

    @property
    def speaking(self) -> bool:
        return self._speaking

    def _retune(self) -> None:
        self.threshold_dbfs = max(self.cfg.energy_floor_dbfs, self.noise_floor_dbfs + self.cfg.energy_offset_db)

    def _remember(self, pcm16: bytes) -> None:
        self._prebuffer.append(pcm16)
        if len(self._prebuffer) > self._pre_roll_frames:
            self._prebuffer.pop(0)

    def _close(self) -> Optional[bytes]:
        data = b"".join(self._segment) if self._speech_frames >= self._min_speech_frames else None
        self._segment = []
        self._speaking = False
        self._speech_frames = 0
        self._silence_frames = 0
        return data

    def add_frame(self, pcm16: bytes) -> List[bytes]:
        """Feed one frame; returns any segments it completed."""
        dbfs = frame_dbfs(pcm16)

        if self._calibration_left > 0:
            self._calibration.append(dbfs)
            self._calibration_left -= 1
            if self._calibration_left == 0:
                baseline = float(np.mean(self._calibration))
                if not np.isfinite(baseline):
                    baseline = self.cfg.energy_floor_dbfs
                self.noise_floor_dbfs = max(self.cfg.energy_floor_dbfs, baseline)
                self._retune()
            self._remember(pcm16)
            return []

        is_speech = dbfs >= self.threshold_dbfs
        if not self._speaking:
            if is_speech:
                self._speaking = True
                self._segment = list(self._prebuffer) + [pcm16]
                self._prebuffer.clear()
                self._speech_frames = 1
                self._silence_frames = 0
            else:
                self._remember(pcm16)
                # drift the floor slowly towards the ambient level
                self.noise_floor_dbfs = 0.95 * self.noise_floor_dbfs + 0.05 * dbfs
                self._retune()
            return []

        self._segment.append(pcm16)
        self._speech_frames += 1
        self._silence_frames = 0 if is_speech else self._silence_frames + 1
        if self._speech_frames >= self._max_segment_frames or self._silence_frames >= self._max_silence_frames:
            data = self._close()
            return [data] if data else []
        return []

    def flush(self) -> Optional[bytes]:
        """Close any open segment; returns it when long enough to transcribe."""
        if not self._segment:
            self._close()
            return None
        return self._close()


# ---------------------------------------------------------------------------
# HTTP transcription


def _event_text(message: Dict[str, object]) -> str:
    transcript = message.get("transcript") if isinstance(message.get("transcript"), dict) else {}
    data = message.get("data") if isinstance(message.get("data"), dict) else {}
    text = (
        message.get("text")
        or message.get("delta")
        or transcript.get("text")
        or transcript.get("delta")
        or data.get("text")
        or data.get("delta")
    )
    return str(text or "")


class SegmentTranscriber:
    """Uploads one WAV segment at a time to an OpenAI-compatible transcription endpoint."""

    def __init__(
        self,
        on_interim: Callable[[str], None],
        on_final: Callable[[str], None],
        *,
        config: Optional[HTTPSTTConfig] = None,
        api_key: Optional[str] = None,
        client: Optional[httpx.Client] = None,
    ):
        self.cfg = config or HTTPSTTConfig.from_env()
        self.on_interim = on_interim
        self.on_final = on_final
        self._accum = ""
        if client is None:
            headers: Dict[str, str] = {}
            if api_key:
                headers["Authorization"] = f"Bearer {api_key}"
            client = httpx.Client(
                timeout=httpx.Timeout(connect=10.0, read=None, write=None, pool=None),
                headers=headers,
            )
        self._client = client

    def close(self) -> None:
        self._client.close()

    @property
    def uses_sse(self) -> bool:
        return self.cfg.enable_delta_streaming and not (self.cfg.model or "").lower().startswith("whisper")

    def transcribe(self, pcm16: bytes) -> None:
        """Upload a segment. Raises httpx errors so the caller can count failures."""
        if not pcm16:
            return
        data = {
            "model": self.cfg.model,
            "language": self.cfg.language,
            "stream": self.uses_sse,
            "response_format": "text",
            "temperature": 0,
        }
        if self.cfg.prompt:
            data["prompt"] = self.cfg.prompt
        files = {"file": ("segment.wav", pcm_to_wav(pcm16), "audio/wav")}
        self._accum = ""

        if not self.uses_sse:
            HTTP_LOG.info("POST %s stream=False model=%s", self.cfg.endpoint, self.cfg.model)
            response = self._client.post(self.cfg.endpoint, data=data, files=files)
            response.raise_for_status()
            self._handle_body(response)
            return

        HTTP_LOG.info("POST %s stream=True model=%s", self.cfg.endpoint, self.cfg.model)
        with self._client.stream(
            "POST", self.cfg.endpoint, data=data, files=files, headers={"Accept": "text/event-stream"}
        ) as response:
            if response.status_code != 200:
                response.read()
                HTTP_LOG.warning("streaming transcription error %s; retrying without stream", response.status_code)
            else:
                for line in response.iter_lines():
                    line = line.strip()
                    if not line.startswith("data:"):
                        continue
                    payload = line[5:].strip()
                    if payload == "[DONE]":
                        break
                    try:
                        message = json.loads(payload)
                    except json.JSONDecodeError:
                        HTTP_LOG.debug("SSE non-JSON payload: %s", payload)
                        continue
                    if isinstance(message, dict):
                        self.handle_event(message)
                return

        data["stream"] = False
        retry = self._client.post(self.cfg.endpoint, data=data, files=files)
        retry.raise_for_status()
        self._handle_body(retry)

    def handle_event(self, message: Dict[str, object]) -> None:
        kind = str(message.get("type") or message.get("event") or "").lower()
        text = _event_text(message)
        if kind.endswith(".delta") or kind.endswith("_delta"):
            if text:
                self._accum = f"{self._accum}{text}" if self._accum else text
                self.on_interim(self._accum.strip())
        elif kind.endswith("completed") or kind.endswith(".done"):
            final_text = text.strip() or self._accum.strip()
            self._accum = ""
            if final_text:
                self.on_final(final_text)
        elif kind == "error" or message.get("error"):
            HTTP_LOG.warning("SSE error event: %s", message)

    def _handle_body(self, response: httpx.Response) -> None:
        try:
            payload = response.json()
        except ValueError:
            payload = response.text
        text = _event_text(payload) if isinstance(payload, dict) else str(payload or "")
        text = text.strip()
        if text:
            self.on_final(text)


# ---------------------------------------------------------------------------
# Session


class MicrophoneSession:
    """Default-input microphone session feeding the capture loop."""

    def __init__(
        self,
        on_result: ResultCallback,
        on_error: Callable[[BaseException], None],
        on_end: Callable[[], None],
        *,
        config: Optional[HTTPSTTConfig] = None,
        device: Optional[int] = None,
        max_queue: int = 2048,
    ):
        self.cfg = config or HTTPSTTConfig.from_env()
        self.on_result = on_result
        self.on_error = on_error
        self.on_end = on_end
        self.device = device
        self._frames: "queue.Queue[bytes]" = queue.Queue(maxsize=max_queue)
        self._stop_event = threading.Event()
        self._threads: List[threading.Thread] = []
        self._failures = 0

    def start(self) -> None:
        api_key = load_openai_api_key()
        if not api_key:
            raise RuntimeError("OPENAI_API_KEY missing; set it or OPENAI_API_KEY_FILE to transcribe speech")
        self._stop_event.clear()
        self._transcriber = SegmentTranscriber(
            lambda text: self.on_result([], [text]),
            lambda text: self.on_result([text], []),
            config=self.cfg,
            api_key=api_key,
        )
        self._threads = [
            threading.Thread(target=self._capture, name="mic-capture", daemon=True),
            threading.Thread(target=self._transcribe_loop, name="mic-transcribe", daemon=True),
        ]
        for thread in self._threads:
            thread.start()
        SPEECH_LOG.info("microphone session started (model=%s)", self.cfg.model)

    def stop(self) -> None:
        self._stop_event.set()

    def _capture(self) -> None:
        import sounddevice as sd

        def cb(indata, _frames, _time_info, status):
            if status:
                SPEECH_LOG.debug("input status: %s", status)
            if self._stop_event.is_set():
                raise sd.CallbackStop()
            frame = indata[:, 0].astype(np.float32)
            pcm16 = np.clip(frame * 32768.0, -32768, 32767).astype(np.int16)
            try:
                self._frames.put_nowait(pcm16.tobytes())
            except queue.Full:
                SPEECH_LOG.warning("dropped frame: queue full")

        try:
            with sd.InputStream(
                samplerate=SAMPLE_RATE,
                channels=1,
                dtype="float32",
                blocksize=FRAME_SAMPLES,
                latency="low",
                device=self.device,
                callback=cb,
            ):
                while not self._stop_event.is_set():
                    sd.sleep(100)
        except Exception as exc:
            SPEECH_LOG.warning("microphone capture failed: %s", exc)
            self._stop_event.set()
            self.on_error(exc)

    def _transcribe_loop(self) -> None:
        gate = EnergyGate(self.cfg.segment)
        try:
            while not self._stop_event.is_set():
                try:
                    frame = self._frames.get(timeout=0.1)
                except queue.Empty:
                    continue
                for segment in gate.add_frame(frame):
                    self._upload(segment)
            trailing = gate.flush()
            if trailing:
                self._upload(trailing)
        finally:
            self._transcriber.close()
            SPEECH_LOG.info("microphone session ended")
            self.on_end()

    def _upload(self, segment: bytes) -> None:
        try:
            self._transcriber.transcribe(segment)
        except httpx.HTTPError as exc:
            self._failures += 1
            if self._failures == 1 or self._failures % FAILURE_LOG_EVERY == 0:
                HTTP_LOG.warning("upload failed (%d so far): %s", self._failures, exc)
            return
        self._failures = 0
