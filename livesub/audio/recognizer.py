# coding=utf-8
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

import numpy as np

from livesub.audio.languages import is_multilingual_model

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecognitionOptions:
    beam_size: int = 1
    max_tokens: int = 32
    temperature_inc: float = 0.0


@dataclass(frozen=True)
class RecognitionResult:
    text: str
    language: str


def temperature_schedule(temperature_inc: float) -> Union[float, List[float]]:
    inc = max(0.0, float(temperature_inc))
    if inc <= 0.0:
        return 0.0
    steps = []
    t = 0.0
    while t <= 1.0 + 1e-9:
        steps.append(round(t, 4))
        t += inc
    return steps


class WhisperRecognizer:
    """
    faster-whisper wrapper that decodes one window as a single segment.
    """

    def __init__(
        self,
        model_path: str,
        threads: int = 4,
        use_gpu: bool = True,
        flash_attn: bool = True,
    ) -> None:
        from faster_whisper import WhisperModel

        self.model_path = str(model_path)
        self.is_multilingual = is_multilingual_model(self.model_path)
        device = "cuda" if use_gpu else "cpu"
        model_kwargs: Dict[str, Any] = {
            "device": device,
            "compute_type": "float16" if use_gpu else "int8",
            "cpu_threads": max(1, int(threads)),
        }
        if use_gpu and flash_attn:
            model_kwargs["flash_attention"] = True
        self.model = WhisperModel(self.model_path, **model_kwargs)
        ct2_model = getattr(self.model, "model", None)
        if ct2_model is not None and hasattr(ct2_model, "is_multilingual"):
            self.is_multilingual = bool(ct2_model.is_multilingual)

    def recognize(
        self,
        samples: np.ndarray,
        language: str,
        options: Optional[RecognitionOptions] = None,
    ) -> RecognitionResult:
        opts = options or RecognitionOptions()
        lang = str(language or "").strip()
        wav = np.asarray(samples, dtype=np.float32).reshape(-1)
        segments, info = self.model.transcribe(
            wav,
            language=None if lang in {"", "auto"} else lang,
            task="transcribe",
            beam_size=max(1, int(opts.beam_size)),
            temperature=temperature_schedule(opts.temperature_inc),
            without_timestamps=True,
            condition_on_previous_text=False,
            max_new_tokens=int(opts.max_tokens) if int(opts.max_tokens) > 0 else None,
            vad_filter=False,
        )
        text = "".join(seg.text for seg in segments)
        detected = str(getattr(info, "language", "") or "")
        return RecognitionResult(text=text, language=detected)
