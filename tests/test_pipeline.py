import json
import logging
import threading

import numpy as np
import pytest

from livesub.audio.recognizer import RecognitionResult
from livesub.streaming.broadcast import SubtitleBroadcast
from livesub.streaming.pipeline import CaptionPipeline, PipelineSettings, PipelineTrace, UNKNOWN_LANGUAGE

STEP_MS = 100
STEP = 1600


def _chunk(energy: float, n: int = STEP) -> np.ndarray:
    out = np.full((n,), energy, dtype=np.float32)
    out[1::2] *= -1.0
    return out


class FakeCapture:
    def __init__(self, polls=None, stop=None):
        self.polls = list(polls or [])
        self.stop_event = stop
        self.started = False
        self.stopped = False
        self.clears = 0
        self.fetch_ms = []

    def start(self):
        self.started = True

    def stop(self):
        self.stopped = True

    def clear(self):
        self.clears += 1

    def fetch(self, duration_ms):
        self.fetch_ms.append(duration_ms)
        if self.polls:
            return self.polls.pop(0)
        if self.stop_event is not None:
            self.stop_event.set()
        return np.zeros((0,), dtype=np.float32)


class FakeRecognizer:
    def __init__(self, results):
        self.results = list(results)
        self.calls = []

    def recognize(self, samples, language, options):
        self.calls.append((np.array(samples, copy=True), language, options))
        out = self.results.pop(0)
        if isinstance(out, BaseException):
            raise out
        return out


class FakeTranslator:
    def __init__(self, result=None):
        self.result = result
        self.calls = []

    def translate(self, text, source_lang, target_lang):
        self.calls.append((text, source_lang, target_lang))
        if self.result is not None:
            return self.result
        return f"<{target_lang}>{text}"


def _pipeline(results, broadcast=None, translator=None, use_vad=True, capture=None):
    broadcast = broadcast or SubtitleBroadcast()
    settings = PipelineSettings(step_ms=STEP_MS, length_ms=400, keep_ms=200, use_vad=use_vad, poll_interval_sec=0.0)
    recognizer = FakeRecognizer(results)
    p = CaptionPipeline(capture or FakeCapture(), recognizer, broadcast, settings=settings, translator=translator)
    return p, recognizer, broadcast


def test_settings_clamp_keep_and_length_to_step():
    s = PipelineSettings(step_ms=500, length_ms=100, keep_ms=900).normalized()
    assert (s.step_ms, s.length_ms, s.keep_ms) == (500, 500, 500)


def test_silence_then_voice_then_duplicate():
    p, rec, b = _pipeline(
        [
            RecognitionResult(text="hello world", language="en"),
            RecognitionResult(text="Hello World!", language="en"),
        ]
    )

    silent = p.process_chunk(_chunk(0.00001))
    assert silent.status == "rejected"
    assert silent.reason == "silence"
    assert rec.calls == []
    assert b.snapshot().version == 0

    voiced = p.process_chunk(_chunk(0.01))
    assert voiced.status == "published"
    assert voiced.version == 1
    snap = b.snapshot()
    assert (snap.text, snap.translated, snap.language) == ("hello world", "", "en")

    # louder than the adapted gate so it reaches the recognizer
    again = p.process_chunk(_chunk(0.05))
    assert again.status == "dropped"
    assert again.reason == "duplicate-text"
    assert b.snapshot().version == 1
    assert len(rec.calls) == 2


def test_recognizer_sees_assembled_window_and_current_source_lang():
    b = SubtitleBroadcast(source_lang="ja")
    p, rec, _ = _pipeline(
        [RecognitionResult(text="one", language="ja"), RecognitionResult(text="two", language="ja")],
        broadcast=b,
        use_vad=False,
    )
    p.process_chunk(_chunk(0.01))
    b.update_config(source_lang="auto")
    p.process_chunk(_chunk(0.02))

    first, second = rec.calls
    assert first[0].size == STEP
    assert first[1] == "ja"
    # keep=100ms after clamping, length=400ms: previous window fully fits the budget
    assert second[0].size == 2 * STEP
    assert second[1] == "auto"
    assert second[2].beam_size == 1


def test_missing_language_is_published_as_unknown():
    p, _, b = _pipeline([RecognitionResult(text="hmm", language="")], use_vad=False)
    out = p.process_chunk(_chunk(0.01))
    assert out.language == UNKNOWN_LANGUAGE
    assert b.snapshot().language == UNKNOWN_LANGUAGE


def test_recognition_failure_skips_cycle():
    p, _, b = _pipeline([RuntimeError("decoder exploded"), RecognitionResult(text="ok", language="en")], use_vad=False)
    failed = p.process_chunk(_chunk(0.01))
    assert failed.status == "recognition_failed"
    assert "exploded" in failed.reason
    assert b.snapshot().version == 0
    assert p.process_chunk(_chunk(0.01)).status == "published"


def test_blank_transcript_is_not_published():
    p, _, b = _pipeline([RecognitionResult(text="   ", language="en")], use_vad=False)
    assert p.process_chunk(_chunk(0.01)).status == "empty"
    assert b.snapshot().version == 0


def test_translation_attached_when_target_differs():
    b = SubtitleBroadcast(target_lang="ko")
    tr = FakeTranslator()
    p, _, _ = _pipeline([RecognitionResult(text="good night", language="en")], broadcast=b, translator=tr, use_vad=False)
    out = p.process_chunk(_chunk(0.01))
    assert out.translated == "<ko>good night"
    assert b.snapshot().translated == "<ko>good night"
    assert tr.calls == [("good night", "en", "ko")]


def test_translation_skipped_when_target_matches_language_or_empty():
    b = SubtitleBroadcast(target_lang="en")
    tr = FakeTranslator()
    p, _, _ = _pipeline(
        [RecognitionResult(text="same", language="en"), RecognitionResult(text="other", language="en")],
        broadcast=b,
        translator=tr,
        use_vad=False,
    )
    assert p.process_chunk(_chunk(0.01)).translated == ""
    b.update_config(target_lang="")
    assert p.process_chunk(_chunk(0.01)).translated == ""
    assert tr.calls == []


def test_failed_translation_publishes_original_only():
    b = SubtitleBroadcast(target_lang="ko")
    tr = FakeTranslator(result="")
    p, _, _ = _pipeline([RecognitionResult(text="hello", language="en")], broadcast=b, translator=tr, use_vad=False)
    out = p.process_chunk(_chunk(0.01))
    assert out.status == "published"
    assert b.snapshot().text == "hello"
    assert b.snapshot().translated == ""


def test_translation_is_memoized_per_text_and_target():
    tr = FakeTranslator()
    p, _, _ = _pipeline([], translator=tr)
    assert p._translate("hi", "en", "ko") == "<ko>hi"
    assert p._translate("hi", "en", "ko") == "<ko>hi"
    assert p._translate("hi", "en", "ja") == "<ja>hi"
    assert len(tr.calls) == 2


def test_stop_mid_cycle_cancels_publish():
    p, _, b = _pipeline([RecognitionResult(text="late", language="en")], use_vad=False)
    stop = threading.Event()
    stop.set()
    out = p.process_chunk(_chunk(0.01), stop)
    assert out.status == "cancelled"
    assert b.snapshot().version == 0
    assert p.stability.has_emitted is False


def test_collect_chunk_drops_overrun_then_returns_ready_window():
    capture = FakeCapture(polls=[_chunk(0.1, 100), _chunk(0.1, 2 * STEP + 1), _chunk(0.2, STEP)])
    p, _, _ = _pipeline([], capture=capture)
    chunk = p.collect_chunk(threading.Event())
    assert chunk.size == STEP
    assert p.overruns == 1
    assert capture.clears == 2
    assert capture.fetch_ms == [STEP_MS, STEP_MS, STEP_MS]


def test_collect_chunk_returns_none_when_stopped():
    stop = threading.Event()
    stop.set()
    p, _, _ = _pipeline([])
    assert p.collect_chunk(stop) is None


def test_run_publishes_and_shuts_down_broadcast():
    stop = threading.Event()
    capture = FakeCapture(polls=[_chunk(0.01), _chunk(0.00001)], stop=stop)
    p, _, b = _pipeline([RecognitionResult(text="only line", language="en")], capture=capture)
    p.run(stop)
    assert capture.started is True
    assert capture.stopped is True
    snap = b.snapshot()
    assert snap.text == "only line"
    assert snap.running is False


def test_run_shuts_down_even_if_recognizer_crashes_hard():
    stop = threading.Event()

    class Boom(BaseException):
        pass

    capture = FakeCapture(polls=[_chunk(0.01)], stop=stop)
    p, _, b = _pipeline([Boom()], capture=capture)
    with pytest.raises(Boom):
        p.run(stop)
    assert capture.stopped is True
    assert b.snapshot().running is False


def test_trace_rows_are_logged_as_json(caplog):
    caplog.set_level(logging.INFO, logger="livesub.streaming.pipeline")
    trace = PipelineTrace(enabled=True)
    trace.event("gate", admit=True, reason="voice")
    rows = [r.getMessage() for r in caplog.records if r.getMessage().startswith("pipeline_trace ")]
    assert len(rows) == 1
    row = json.loads(rows[0][len("pipeline_trace "):])
    assert row["topic"] == "pipeline"
    assert row["event"] == "gate"
    assert row["seq"] == 1
    assert row["reason"] == "voice"


def test_disabled_trace_logs_nothing(caplog):
    caplog.set_level(logging.INFO, logger="livesub.streaming.pipeline")
    PipelineTrace(enabled=False).event("gate")
    assert not [r for r in caplog.records if "pipeline_trace" in r.getMessage()]


class RaisingTranslator:
    def __init__(self, exc):
        self.exc = exc
        self.calls = 0

    def translate(self, text, source_lang, target_lang):
        self.calls += 1
        raise self.exc


def test_translator_exception_publishes_original_and_keeps_running():
    stop = threading.Event()
    b = SubtitleBroadcast(target_lang="ko")
    tr = RaisingTranslator(RuntimeError("connection reset mid-body"))
    capture = FakeCapture(polls=[_chunk(0.01), _chunk(0.05)], stop=stop)
    p, rec, _ = _pipeline(
        [RecognitionResult(text="first line", language="en"), RecognitionResult(text="second line", language="en")],
        broadcast=b,
        translator=tr,
        capture=capture,
    )
    p.run(stop)
    assert len(rec.calls) == 2
    snap = b.snapshot()
    assert snap.version == 2
    assert (snap.text, snap.translated) == ("second line", "")
    assert tr.calls == 2


def test_failed_translation_is_memoized_as_empty():
    tr = RaisingTranslator(ValueError("bad payload"))
    p, _, _ = _pipeline([], translator=tr)
    assert p._translate("hi", "en", "ko") == ""
    assert p._translate("hi", "en", "ko") == ""
    assert tr.calls == 1


def test_publish_after_shutdown_is_reported_cancelled():
    p, _, b = _pipeline([RecognitionResult(text="too late", language="en")], use_vad=False)
    b.shutdown()
    out = p.process_chunk(_chunk(0.01))
    assert out.status == "cancelled"
    assert out.version == 0
    assert b.snapshot().version == 0
    assert p.stability.has_emitted is False
