import numpy as np
import pytest

from livesub.audio.capture import SoundDeviceCapture, resolve_capture_id_by_name
from livesub.audio.languages import (
    is_multilingual_model,
    is_valid_source_lang,
    source_languages,
    to_title_case_ascii,
)
from livesub.audio.recognizer import RecognitionOptions, WhisperRecognizer, temperature_schedule

DEVICES = [
    {"id": 0, "name": "MacBook Pro Microphone"},
    {"id": 3, "name": "USB Audio Device"},
    {"id": 4, "name": "USB Audio Device 2"},
    {"id": 7, "name": "BlackHole 2ch"},
]


def test_resolve_capture_exact_match_wins_over_partial():
    assert resolve_capture_id_by_name("usb audio device", DEVICES) == 3


def test_resolve_capture_unique_partial_match():
    assert resolve_capture_id_by_name("blackhole", DEVICES) == 7


def test_resolve_capture_ambiguous_or_missing():
    with pytest.raises(RuntimeError, match="multiple"):
        resolve_capture_id_by_name("USB", DEVICES)
    with pytest.raises(RuntimeError, match="no capture device matched"):
        resolve_capture_id_by_name("webcam", DEVICES)
    with pytest.raises(RuntimeError, match="no capture devices"):
        resolve_capture_id_by_name("USB", [])
    with pytest.raises(ValueError):
        resolve_capture_id_by_name("  ", DEVICES)


def test_capture_buffer_accumulates_until_clear_and_keeps_newest():
    cap = SoundDeviceCapture(sample_rate=1000, capacity_ms=10)
    cap._callback(np.arange(4, dtype=np.float32).reshape(-1, 1), 4, None, None)
    cap._callback(np.arange(4, 8, dtype=np.float32).reshape(-1, 1), 4, None, None)
    np.testing.assert_array_equal(cap.fetch(10), np.arange(8, dtype=np.float32))

    cap._callback(np.arange(8, 12, dtype=np.float32).reshape(-1, 1), 4, None, None)
    np.testing.assert_array_equal(cap.fetch(10), np.arange(2, 12, dtype=np.float32))

    cap.clear()
    assert cap.fetch(10).size == 0


def test_languages_table_helpers():
    assert is_valid_source_lang("auto")
    assert is_valid_source_lang("ko")
    assert not is_valid_source_lang("xx")
    assert not is_valid_source_lang("")
    assert to_title_case_ascii("haitian creole") == "Haitian Creole"
    assert is_multilingual_model("large-v3-turbo")
    assert not is_multilingual_model("base.en")
    assert not is_multilingual_model("models/ggml-small.en.bin")
    assert source_languages(False)[-1] == {"code": "en", "name": "English"}
    codes = [x["code"] for x in source_languages(True)]
    assert codes[0] == "auto"
    assert len(codes) == len(set(codes))


def test_temperature_schedule():
    assert temperature_schedule(0.0) == 0.0
    assert temperature_schedule(0.5) == [0.0, 0.5, 1.0]
    assert temperature_schedule(0.4) == [0.0, 0.4, 0.8]


class _Segment:
    def __init__(self, text):
        self.text = text


class _FakeWhisperModel:
    instances = []

    def __init__(self, path, **kwargs):
        self.path = path
        self.kwargs = kwargs
        self.calls = []
        _FakeWhisperModel.instances.append(self)

    def transcribe(self, audio, **kwargs):
        self.calls.append(kwargs)
        info = type("Info", (), {"language": "ko"})()
        return iter([_Segment(" 안녕"), _Segment("하세요")]), info


def test_whisper_recognizer_decodes_window_as_one_segment(monkeypatch):
    monkeypatch.setattr("faster_whisper.WhisperModel", _FakeWhisperModel)
    rec = WhisperRecognizer("small", threads=2, use_gpu=False, flash_attn=True)
    model = _FakeWhisperModel.instances[-1]
    assert model.kwargs["device"] == "cpu"
    assert model.kwargs["cpu_threads"] == 2
    assert "flash_attention" not in model.kwargs
    assert rec.is_multilingual is True

    out = rec.recognize(np.zeros((1600,), dtype=np.float32), "auto", RecognitionOptions(beam_size=3, max_tokens=0))
    assert out.text == " 안녕하세요"
    assert out.language == "ko"
    call = model.calls[-1]
    assert call["language"] is None
    assert call["beam_size"] == 3
    assert call["max_new_tokens"] is None
    assert call["without_timestamps"] is True
    assert call["condition_on_previous_text"] is False

    rec.recognize(np.zeros((1600,), dtype=np.float32), "ko", RecognitionOptions(max_tokens=32))
    assert model.calls[-1]["language"] == "ko"
    assert model.calls[-1]["max_new_tokens"] == 32
