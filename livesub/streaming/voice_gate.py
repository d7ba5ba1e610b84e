# coding=utf-8
from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np

logger = logging.getLogger(__name__)

HARD_SILENCE_ENERGY = 0.00002
WARMUP_CHUNKS = 2
WARMUP_OBVIOUS_VOICE_RATIO = 2.2
STALL_BYPASS_CHUNKS = 6
QUIET_LOG_EVERY = 40


def average_abs_energy(samples: np.ndarray) -> float:
    arr = np.asarray(samples, dtype=np.float32).reshape(-1)
    if arr.size <= 0:
        return 0.0
    return float(np.mean(np.abs(arr, dtype=np.float64)))


def vad_unit(vad_threshold: float) -> float:
    return max(0.0, min(float(vad_threshold), 1.0))


def base_gate(vad_threshold: float) -> float:
    return 0.00008 + 0.00020 * vad_unit(vad_threshold)


def stall_bypass_gate(vad_threshold: float) -> float:
    return 0.00002 + 0.00008 * vad_unit(vad_threshold)


@dataclass(frozen=True)
class GateDecision:
    admit: bool
    reason: str
    energy: float
    gate: float
    noise_floor: float


class AdaptiveVoiceGate:
    """
    Energy gate in front of the recognizer.

    The noise floor follows quiet input quickly and loud input slowly, so speech
    has to stand out from the room. Two policies sit on top of the plain
    threshold: a short warmup that only lets obvious voice through while the
    floor settles, and a stall bypass that re-opens the gate after a long run
    of rejections in case the floor crept above normal speech.
    """

    def __init__(self, vad_threshold: float = 0.6, enabled: bool = True) -> None:
        self.vad_threshold = float(vad_threshold)
        self.enabled = bool(enabled)
        self.noise_floor = 0.0
        self.ready = False
        self.warmup_remaining = WARMUP_CHUNKS
        self.stall_run = 0
        self.quiet_drops = 0

    def threshold(self) -> float:
        gate = base_gate(self.vad_threshold)
        if self.ready:
            adaptive = self.noise_floor * (1.6 + 1.2 * vad_unit(self.vad_threshold))
            gate = max(gate, adaptive)
        return gate

    def _update_floor(self, energy: float) -> None:
        if not self.ready:
            self.noise_floor = energy
            self.ready = True
        elif energy <= self.noise_floor:
            self.noise_floor = 0.85 * self.noise_floor + 0.15 * energy
        else:
            clipped_rise = min(energy, self.noise_floor * 1.3)
            self.noise_floor = 0.96 * self.noise_floor + 0.04 * clipped_rise

    def _decision(self, admit: bool, reason: str, energy: float, gate: float) -> GateDecision:
        if admit:
            self.stall_run = 0
            self.quiet_drops = 0
        return GateDecision(
            admit=admit,
            reason=reason,
            energy=energy,
            gate=gate,
            noise_floor=self.noise_floor,
        )

    def evaluate(self, samples: np.ndarray) -> GateDecision:
        arr = np.asarray(samples, dtype=np.float32).reshape(-1)
        if arr.size <= 0:
            return GateDecision(admit=False, reason="empty", energy=0.0, gate=0.0, noise_floor=self.noise_floor)

        energy = average_abs_energy(arr)
        gate = self.threshold()
        has_voice_energy = energy >= gate
        self._update_floor(energy)

        if energy < HARD_SILENCE_ENERGY:
            return self._decision(False, "silence", energy, gate)

        if self.enabled and self.warmup_remaining > 0:
            if energy < gate * WARMUP_OBVIOUS_VOICE_RATIO:
                self.warmup_remaining -= 1
                return self._decision(False, "warmup", energy, gate)
            self.warmup_remaining = 0

        if self.enabled and not has_voice_energy:
            self.stall_run += 1
            if self.stall_run >= STALL_BYPASS_CHUNKS and energy >= stall_bypass_gate(self.vad_threshold):
                logger.info(
                    "vad: bypass after stall (energy=%.6f gate=%.6f floor=%.6f)",
                    energy,
                    gate,
                    self.noise_floor,
                )
                return self._decision(True, "stall_bypass", energy, gate)
            self.quiet_drops += 1
            if self.quiet_drops % QUIET_LOG_EVERY == 0:
                logger.info(
                    "vad: skipping quiet chunk (energy=%.6f gate=%.6f floor=%.6f)",
                    energy,
                    gate,
                    self.noise_floor,
                )
            return self._decision(False, "below_gate", energy, gate)

        return self._decision(True, "voice" if self.enabled else "vad_off", energy, gate)
