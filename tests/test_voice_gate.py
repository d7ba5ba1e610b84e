import math

import numpy as np
import pytest

from livesub.streaming.voice_gate import (
    AdaptiveVoiceGate,
    average_abs_energy,
    base_gate,
    stall_bypass_gate,
)


def _chunk(energy: float, n: int = 1600) -> np.ndarray:
    # alternating sign keeps mean |x| == energy
    out = np.full((n,), energy, dtype=np.float32)
    out[1::2] *= -1.0
    return out


def test_average_abs_energy():
    assert average_abs_energy(np.zeros((0,), dtype=np.float32)) == 0.0
    assert average_abs_energy(np.array([0.5, -0.5, 0.25, -0.25], dtype=np.float32)) == pytest.approx(0.375)


def test_gate_constants_follow_vad_threshold():
    assert base_gate(0.0) == pytest.approx(0.00008)
    assert base_gate(1.0) == pytest.approx(0.00028)
    assert base_gate(5.0) == pytest.approx(0.00028)
    assert base_gate(-1.0) == pytest.approx(0.00008)
    assert stall_bypass_gate(0.6) == pytest.approx(0.00002 + 0.00008 * 0.6)


@pytest.mark.parametrize("threshold", [0.0, 0.6, 1.0])
@pytest.mark.parametrize("enabled", [True, False])
def test_hard_silence_floor_always_rejects(threshold, enabled):
    gate = AdaptiveVoiceGate(vad_threshold=threshold, enabled=enabled)
    for _ in range(20):
        d = gate.evaluate(_chunk(0.00001))
        assert d.admit is False
        assert d.reason == "silence"


def test_obvious_voice_is_admitted_during_warmup():
    gate = AdaptiveVoiceGate(vad_threshold=0.6)
    d = gate.evaluate(_chunk(100.0 * base_gate(0.6)))
    assert d.admit is True
    assert gate.warmup_remaining == 0


def test_warmup_rejects_moderate_energy_then_expires():
    gate = AdaptiveVoiceGate(vad_threshold=0.0)
    # base gate 0.00008; 0.0001 passes the base decision but not 2.2x during warmup
    first = gate.evaluate(_chunk(0.0001))
    assert first.admit is False
    assert first.reason == "warmup"
    assert gate.warmup_remaining == 1

    second = gate.evaluate(_chunk(0.0001))
    assert second.reason == "warmup"
    assert gate.warmup_remaining == 0

    # above the adapted gate (floor * 1.6) but short of the 2.2x warmup bar
    after = gate.evaluate(_chunk(0.0003))
    assert after.gate == pytest.approx(0.0001 * 1.6, rel=1e-4)
    assert after.energy < after.gate * 2.2
    assert after.admit is True
    assert after.reason == "voice"


def test_silence_does_not_consume_warmup():
    gate = AdaptiveVoiceGate(vad_threshold=0.6)
    gate.evaluate(_chunk(0.00001))
    assert gate.warmup_remaining == 2


def test_noise_floor_tracks_down_fast_and_up_slowly():
    gate = AdaptiveVoiceGate(vad_threshold=0.6)
    gate.evaluate(_chunk(0.001))
    assert gate.ready is True
    assert gate.noise_floor == pytest.approx(0.001, rel=1e-5)

    gate.evaluate(_chunk(0.0005))
    assert gate.noise_floor == pytest.approx(0.85 * 0.001 + 0.15 * 0.0005, rel=1e-5)

    floor = gate.noise_floor
    gate.evaluate(_chunk(0.5))
    expected = 0.96 * floor + 0.04 * min(0.5, floor * 1.3)
    assert gate.noise_floor == pytest.approx(expected, rel=1e-5)
    assert math.isfinite(gate.noise_floor)
    assert gate.noise_floor >= 0.0


def test_adaptive_gate_uses_floor_once_ready():
    gate = AdaptiveVoiceGate(vad_threshold=0.5)
    assert gate.threshold() == pytest.approx(base_gate(0.5))
    gate.evaluate(_chunk(0.01))
    assert gate.threshold() == pytest.approx(gate.noise_floor * (1.6 + 1.2 * 0.5))


def test_stall_bypass_reopens_gate_after_six_rejections():
    gate = AdaptiveVoiceGate(vad_threshold=0.6)
    # settle a high floor, burning the warmup on obvious voice
    gate.evaluate(_chunk(0.05))
    assert gate.warmup_remaining == 0

    quiet = _chunk(0.001)
    reasons = [gate.evaluate(quiet).reason for _ in range(5)]
    assert reasons == ["below_gate"] * 5
    sixth = gate.evaluate(quiet)
    assert sixth.admit is True
    assert sixth.reason == "stall_bypass"
    assert gate.stall_run == 0


def test_stall_bypass_ignores_chunks_below_bypass_gate():
    gate = AdaptiveVoiceGate(vad_threshold=0.6)
    gate.evaluate(_chunk(0.05))

    faint = _chunk(0.00005)
    assert 0.00002 < 0.00005 < stall_bypass_gate(0.6)
    decisions = [gate.evaluate(faint) for _ in range(10)]
    assert [d.reason for d in decisions] == ["below_gate"] * 10
    assert not any(d.admit for d in decisions)
    assert gate.stall_run == 10


def test_vad_disabled_admits_anything_above_silence():
    gate = AdaptiveVoiceGate(vad_threshold=1.0, enabled=False)
    gate.evaluate(_chunk(0.5))
    d = gate.evaluate(_chunk(0.00005))
    assert d.admit is True
    assert d.reason == "vad_off"


def test_empty_chunk_is_rejected():
    gate = AdaptiveVoiceGate()
    d = gate.evaluate(np.zeros((0,), dtype=np.float32))
    assert d.admit is False
    assert gate.ready is False
