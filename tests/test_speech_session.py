"""
Speech session pieces that run without a microphone: the energy gate on synthetic
frames and the HTTP transcriber against httpx.MockTransport.
"""

import json
import logging

import httpx
import numpy as np
import pytest

from speech_session import (
    FRAME_SAMPLES,
    EnergyGate,
    MicrophoneSession,
    SegmentTranscriber,
    pcm_to_wav,
)
from talk_parameters import HTTPSTTConfig, SegmentConfig

URL = "http://stt.test/v1/audio/transcriptions"

SILENCE = np.zeros(FRAME_SAMPLES, dtype=np.int16).tobytes()
LOUD = np.full(FRAME_SAMPLES, 10000, dtype=np.int16).tobytes()


def calibrated_gate():
    gate = EnergyGate(SegmentConfig(energy_calibration_ms=100))
    for _ in range(10):
        assert gate.add_frame(SILENCE) == []
    assert gate.calibrated
    return gate


def feed(gate, frame, count):
    segments = []
    for _ in range(count):
        segments.extend(gate.add_frame(frame))
    return segments


class TestEnergyGate:
    def test_calibration_sets_floor(self):
        gate = calibrated_gate()
        assert gate.noise_floor_dbfs == pytest.approx(-50.0)
        assert gate.threshold_dbfs == pytest.approx(-38.0)

    def test_speech_then_silence_yields_one_segment(self):
        gate = calibrated_gate()
        assert feed(gate, SILENCE, 20) == []
        assert feed(gate, LOUD, 40) == []
        assert gate.speaking
        segments = feed(gate, SILENCE, 20)
        assert len(segments) == 1
        # pre-roll (12) + speech (40) + trailing silence (20)
        assert len(segments[0]) == 72 * FRAME_SAMPLES * 2
        assert not gate.speaking

    def test_short_blip_is_dropped(self):
        gate = calibrated_gate()
        feed(gate, LOUD, 5)
        assert feed(gate, SILENCE, 20) == []

    def test_flush_returns_open_segment(self):
        gate = calibrated_gate()
        feed(gate, LOUD, 40)
        assert gate.flush()
        assert gate.flush() is None

    def test_wav_header(self):
        wav = pcm_to_wav(LOUD)
        assert wav[:4] == b"RIFF"
        assert wav[8:12] == b"WAVE"


def make_transcriber(handler, **config):
    finals, interims = [], []
    transcriber = SegmentTranscriber(
        interims.append,
        finals.append,
        config=HTTPSTTConfig(endpoint=URL, prompt=None, **config),
        client=httpx.Client(transport=httpx.MockTransport(handler)),
    )
    return transcriber, finals, interims


def sse(*messages):
    lines = [f"data: {json.dumps(m)}\n\n" for m in messages] + ["data: [DONE]\n\n"]
    return "".join(lines).encode()


class TestSegmentTranscriber:
    def test_streamed_deltas_then_completion(self):
        seen = {}

        def handler(request):
            seen["accept"] = request.headers.get("accept")
            seen["body"] = request.read()
            body = sse(
                {"type": "transcript.text.delta", "delta": "Hel"},
                {"type": "transcript.text.delta", "delta": "lo"},
                {"type": "transcript.text.done", "text": "Hello"},
            )
            return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

        transcriber, finals, interims = make_transcriber(handler)
        assert transcriber.uses_sse
        transcriber.transcribe(LOUD)
        assert interims == ["Hel", "Hello"]
        assert finals == ["Hello"]
        assert seen["accept"] == "text/event-stream"
        assert b"segment.wav" in seen["body"]

    def test_whisper_posts_without_stream(self):
        transcriber, finals, _ = make_transcriber(
            lambda request: httpx.Response(200, text="hello world"), model="whisper-1"
        )
        assert not transcriber.uses_sse
        transcriber.transcribe(LOUD)
        assert finals == ["hello world"]

    def test_stream_error_retries_without_stream(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                return httpx.Response(400, json={"error": "stream unsupported"})
            return httpx.Response(200, json={"text": "retry ok"})

        transcriber, finals, _ = make_transcriber(handler)
        transcriber.transcribe(LOUD)
        assert len(calls) == 2
        assert finals == ["retry ok"]

    def test_http_error_is_raised(self):
        transcriber, finals, _ = make_transcriber(
            lambda request: httpx.Response(500, text="boom"), model="whisper-1"
        )
        with pytest.raises(httpx.HTTPStatusError):
            transcriber.transcribe(LOUD)
        assert finals == []

    def test_empty_segment_is_skipped(self):
        def handler(request):
            raise AssertionError("no request expected")

        transcriber, _, _ = make_transcriber(handler)
        transcriber.transcribe(b"")

    def test_completion_without_text_uses_accumulated_deltas(self):
        transcriber, finals, interims = make_transcriber(lambda request: httpx.Response(200))
        transcriber.handle_event({"type": "transcript.text.delta", "delta": "so "})
        transcriber.handle_event({"type": "transcript.text.delta", "delta": "anyway"})
        transcriber.handle_event({"type": "transcript.text.completed"})
        assert interims == ["so", "so anyway"]
        assert finals == ["so anyway"]

    def test_error_event_is_logged(self, caplog):
        transcriber, finals, _ = make_transcriber(lambda request: httpx.Response(200))
        with caplog.at_level(logging.WARNING, logger="tangent_map.speech.http"):
            transcriber.handle_event({"type": "error", "error": {"message": "quota"}})
        assert finals == []
        assert any("quota" in rec.getMessage() for rec in caplog.records)


class FailingTranscriber:
    def __init__(self):
        self.closed = False

    def transcribe(self, pcm16):
        raise httpx.ConnectError("offline")

    def close(self):
        self.closed = True


def idle_session(events):
    return MicrophoneSession(
        lambda finals, interims: events.append(("result", finals, interims)),
        lambda exc: events.append(("error", exc)),
        lambda: events.append(("end",)),
        config=HTTPSTTConfig(endpoint=URL, prompt=None),
    )


class TestMicrophoneSession:
    def test_start_without_key_fails(self, monkeypatch, tmp_path):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        monkeypatch.setenv("OPENAI_API_KEY_FILE", str(tmp_path / "missing.txt"))
        with pytest.raises(RuntimeError):
            idle_session([]).start()

    def test_upload_failures_are_rate_limited_in_log(self, caplog):
        session = idle_session([])
        session._transcriber = FailingTranscriber()
        with caplog.at_level(logging.WARNING, logger="tangent_map.speech.http"):
            for _ in range(6):
                session._upload(LOUD)
        assert session._failures == 6
        assert len([r for r in caplog.records if "upload failed" in r.getMessage()]) == 2

    def test_transcribe_loop_reports_end(self):
        events = []
        session = idle_session(events)
        transcriber = FailingTranscriber()
        session._transcriber = transcriber
        session.stop()
        session._transcribe_loop()
        assert transcriber.closed
        assert events == [("end",)]
