# coding=utf-8
from __future__ import annotations

from dataclasses import dataclass

import numpy as np

SAMPLE_RATE = 16000


def window_samples(duration_ms: int, sample_rate: int = SAMPLE_RATE) -> int:
    return max(0, int(1e-3 * float(duration_ms) * float(sample_rate)))


@dataclass(frozen=True)
class CaptureDecision:
    ready: bool
    overrun: bool
    samples: int
    reason: str


class CaptureBackpressure:
    """
    Classify one capture poll against the configured step size.
    """

    def __init__(self, step_samples: int) -> None:
        self.step_samples = max(1, int(step_samples))

    def evaluate(self, n_samples: int) -> CaptureDecision:
        n = max(0, int(n_samples))
        if n > 2 * self.step_samples:
            return CaptureDecision(ready=False, overrun=True, samples=n, reason="overrun")
        if n >= self.step_samples:
            return CaptureDecision(ready=True, overrun=False, samples=n, reason="ready")
        return CaptureDecision(ready=False, overrun=False, samples=n, reason="pending")


class WindowAssembler:
    """
    Rolling inference window: a bounded tail of the previous window plus the new chunk.
    """

    def __init__(self, keep_samples: int, length_samples: int) -> None:
        self.keep_samples = max(0, int(keep_samples))
        self.length_samples = max(0, int(length_samples))
        self.previous = np.zeros((0,), dtype=np.float32)

    def take_count(self, new_samples: int) -> int:
        budget = max(0, self.keep_samples + self.length_samples - int(new_samples))
        return min(int(self.previous.size), budget)

    def push(self, chunk: np.ndarray) -> np.ndarray:
        new = np.asarray(chunk, dtype=np.float32).reshape(-1)
        take = self.take_count(new.size)
        if take > 0:
            window = np.concatenate((self.previous[-take:], new))
        else:
            window = new.copy()
        self.previous = window
        return window

    def reset(self) -> None:
        self.previous = np.zeros((0,), dtype=np.float32)
