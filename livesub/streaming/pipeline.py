# coding=utf-8
from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import numpy as np

from livesub.audio.recognizer import RecognitionOptions
from livesub.streaming.broadcast import SubtitleBroadcast
from livesub.streaming.stability import TranscriptStabilityFilter
from livesub.streaming.translation_memo import TranslationMemo
from livesub.streaming.voice_gate import AdaptiveVoiceGate, GateDecision
from livesub.streaming.window import SAMPLE_RATE, CaptureBackpressure, WindowAssembler, window_samples

logger = logging.getLogger(__name__)

UNKNOWN_LANGUAGE = "??"


@dataclass(frozen=True)
class PipelineSettings:
    step_ms: int = 1000
    length_ms: int = 4000
    keep_ms: int = 200
    vad_threshold: float = 0.6
    use_vad: bool = True
    beam_size: int = 1
    max_tokens: int = 32
    temperature_inc: float = 0.0
    sample_rate: int = SAMPLE_RATE
    poll_interval_sec: float = 0.001

    def normalized(self) -> "PipelineSettings":
        step = max(1, int(self.step_ms))
        return PipelineSettings(
            step_ms=step,
            length_ms=max(int(self.length_ms), step),
            keep_ms=min(max(0, int(self.keep_ms)), step),
            vad_threshold=float(self.vad_threshold),
            use_vad=bool(self.use_vad),
            beam_size=int(self.beam_size),
            max_tokens=int(self.max_tokens),
            temperature_inc=float(self.temperature_inc),
            sample_rate=int(self.sample_rate),
            poll_interval_sec=max(0.0, float(self.poll_interval_sec)),
        )


@dataclass(frozen=True)
class CycleOutcome:
    status: str
    reason: str = ""
    text: str = ""
    translated: str = ""
    language: str = ""
    version: int = 0
    gate: Optional[GateDecision] = None


class PipelineTrace:
    """
    Structured `pipeline_trace {json}` log rows, one per pipeline decision.
    """

    def __init__(self, enabled: bool = False) -> None:
        self.enabled = bool(enabled)
        self.seq = 0
        self.t0 = time.monotonic()

    def event(self, event: str, **payload: Any) -> None:
        if not self.enabled:
            return
        self.seq += 1
        row: Dict[str, Any] = {
            "topic": "pipeline",
            "seq": int(self.seq),
            "ts_ms": int(time.time() * 1000),
            "elapsed_ms": int((time.monotonic() - self.t0) * 1000),
            "event": str(event or ""),
        }
        if payload:
            row.update(payload)
        logger.info("pipeline_trace %s", json.dumps(row, ensure_ascii=False, separators=(",", ":")))


class CaptionPipeline:
    """
    Production loop: capture -> gate -> window -> recognize -> filter -> translate -> publish.

    Runs on one thread. Everything it shares with viewers goes through the
    `SubtitleBroadcast`.
    """

    def __init__(
        self,
        capture: Any,
        recognizer: Any,
        broadcast: SubtitleBroadcast,
        settings: Optional[PipelineSettings] = None,
        translator: Optional[Any] = None,
        trace: Optional[PipelineTrace] = None,
    ) -> None:
        self.capture = capture
        self.recognizer = recognizer
        self.broadcast = broadcast
        self.settings = (settings or PipelineSettings()).normalized()
        self.translator = translator
        self.trace = trace or PipelineTrace(enabled=False)

        rate = self.settings.sample_rate
        self.step_samples = max(1, window_samples(self.settings.step_ms, rate))
        self.backpressure = CaptureBackpressure(self.step_samples)
        self.assembler = WindowAssembler(
            keep_samples=window_samples(self.settings.keep_ms, rate),
            length_samples=window_samples(self.settings.length_ms, rate),
        )
        self.gate = AdaptiveVoiceGate(
            vad_threshold=self.settings.vad_threshold,
            enabled=self.settings.use_vad,
        )
        self.stability = TranscriptStabilityFilter()
        self.memo = TranslationMemo()
        self.options = RecognitionOptions(
            beam_size=self.settings.beam_size,
            max_tokens=self.settings.max_tokens,
            temperature_inc=self.settings.temperature_inc,
        )
        self.overruns = 0

    def collect_chunk(self, stop: threading.Event) -> Optional[np.ndarray]:
        while not stop.is_set():
            chunk = np.asarray(self.capture.fetch(self.settings.step_ms), dtype=np.float32).reshape(-1)
            decision = self.backpressure.evaluate(chunk.size)
            if decision.overrun:
                self.overruns += 1
                logger.warning("cannot process audio fast enough, dropping %d samples", decision.samples)
                self.trace.event("capture_overrun", samples=int(decision.samples))
                self.capture.clear()
                continue
            if decision.ready:
                self.capture.clear()
                return chunk
            stop.wait(self.settings.poll_interval_sec)
        return None

    def _translate(self, text: str, language: str, target_lang: str) -> str:
        def _call() -> str:
            try:
                out = self.translator.translate(text, language, target_lang)
            except Exception as e:
                logger.warning("translation failed lang=%s target=%s err=%s", language, target_lang, e)
                self.trace.event("translation_failed", source_lang=language, target_lang=target_lang, error=str(e))
                return ""
            if not out:
                logger.warning("translation failed lang=%s target=%s", language, target_lang)
            return str(out or "")

        misses = self.memo.misses
        translated = self.memo.lookup(text, target_lang, _call)
        self.trace.event(
            "translation",
            cached=bool(self.memo.misses == misses),
            source_lang=language,
            target_lang=target_lang,
            out_chars=len(translated),
        )
        return translated

    def process_chunk(self, chunk: np.ndarray, stop: Optional[threading.Event] = None) -> CycleOutcome:
        decision = self.gate.evaluate(chunk)
        self.trace.event(
            "gate",
            admit=bool(decision.admit),
            reason=decision.reason,
            energy=round(decision.energy, 8),
            gate=round(decision.gate, 8),
            noise_floor=round(decision.noise_floor, 8),
        )
        if not decision.admit:
            return CycleOutcome(status="rejected", reason=decision.reason, gate=decision)

        window = self.assembler.push(chunk)
        config = self.broadcast.config()
        try:
            result = self.recognizer.recognize(window, config.source_lang, self.options)
        except Exception as e:
            logger.warning("recognition failed: %s", e)
            self.trace.event("recognition_failed", error=str(e))
            return CycleOutcome(status="recognition_failed", reason=str(e), gate=decision)

        text = str(getattr(result, "text", "") or "").strip()
        if not text:
            return CycleOutcome(status="empty", gate=decision)

        verdict = self.stability.check(text)
        if not verdict.accept:
            logger.info("filter: dropped (%s): %s", verdict.reason, text)
            self.trace.event("filter_drop", reason=verdict.reason, text_chars=len(text))
            return CycleOutcome(status="dropped", reason=verdict.reason, text=text, gate=decision)

        language = str(getattr(result, "language", "") or "") or UNKNOWN_LANGUAGE

        translated = ""
        target_lang = ""
        if self.translator is not None:
            target_lang = self.broadcast.config().target_lang
            if target_lang and target_lang != language:
                translated = self._translate(text, language, target_lang)

        if stop is not None and stop.is_set():
            return CycleOutcome(status="cancelled", text=text, language=language, gate=decision)

        before = self.broadcast.snapshot().version
        version = self.broadcast.publish(text, translated, language)
        if version <= before:
            # broadcast shut down between the stop check and the write
            return CycleOutcome(status="cancelled", text=text, language=language, gate=decision)
        self.stability.remember(text, verdict.normalized)
        self.trace.event(
            "publish",
            version=int(version),
            language=language,
            text_chars=len(text),
            translated_chars=len(translated),
        )
        if translated:
            logger.info("[%s->%s] %s -> %s", language, target_lang, text, translated)
        else:
            logger.info("[%s] %s", language, text)
        return CycleOutcome(
            status="published",
            text=text,
            translated=translated,
            language=language,
            version=version,
            gate=decision,
        )

    def run(self, stop: threading.Event) -> None:
        self.capture.start()
        try:
            while not stop.is_set():
                chunk = self.collect_chunk(stop)
                if chunk is None:
                    break
                self.process_chunk(chunk, stop)
        finally:
            try:
                self.capture.stop()
            finally:
                self.broadcast.shutdown()
                logger.info("pipeline stopped overruns=%d", self.overruns)
