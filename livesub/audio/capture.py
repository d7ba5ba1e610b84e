# coding=utf-8
from __future__ import annotations

import logging
import threading
from typing import Any, Dict, List, Optional

import numpy as np

logger = logging.getLogger(__name__)


def list_input_devices() -> List[Dict[str, Any]]:
    import sounddevice as sd

    out: List[Dict[str, Any]] = []
    for idx, device in enumerate(sd.query_devices()):
        if int(device.get("max_input_channels", 0) or 0) <= 0:
            continue
        out.append({"id": idx, "name": str(device.get("name", "") or "")})
    return out


def resolve_capture_id_by_name(capture_name: str, devices: Optional[List[Dict[str, Any]]] = None) -> int:
    """
    Map a capture device name to its id: an exact (case-insensitive) match wins,
    otherwise the name must be a substring of exactly one device.
    """
    needle = str(capture_name or "").strip().lower()
    if not needle:
        raise ValueError("capture name is empty")
    candidates = list_input_devices() if devices is None else list(devices)
    if not candidates:
        raise RuntimeError("no capture devices found while resolving --capture-name")

    partial: List[Dict[str, Any]] = []
    for dev in candidates:
        name = str(dev.get("name", "") or "").lower()
        if name == needle:
            return int(dev["id"])
        if needle in name:
            partial.append(dev)

    if len(partial) == 1:
        return int(partial[0]["id"])
    if not partial:
        available = ", ".join(f"#{d['id']}: {d['name']}" for d in candidates)
        raise RuntimeError(f"no capture device matched --capture-name '{capture_name}' (available: {available})")
    matched = ", ".join(f"#{d['id']}: {d['name']}" for d in partial)
    raise RuntimeError(
        f"multiple capture devices matched --capture-name '{capture_name}': {matched}; "
        "use --capture N or a more specific name"
    )


class SoundDeviceCapture:
    """
    Microphone capture into a bounded buffer, drained by `fetch` + `clear`.
    """

    def __init__(
        self,
        capture_id: int = -1,
        sample_rate: int = 16000,
        capacity_ms: int = 10000,
    ) -> None:
        self.capture_id = int(capture_id)
        self.sample_rate = max(1, int(sample_rate))
        self.capacity_samples = max(1, int(self.sample_rate * max(1, int(capacity_ms)) / 1000))
        self._buffer = np.zeros((self.capacity_samples,), dtype=np.float32)
        self._len = 0
        self._lock = threading.Lock()
        self._stream = None
        self.status_errors = 0

    def _callback(self, indata, frames, time_info, status) -> None:
        if status:
            self.status_errors += 1
            logger.debug("capture status: %s", status)
        mono = np.asarray(indata, dtype=np.float32)
        if mono.ndim > 1:
            mono = mono[:, 0]
        mono = mono.reshape(-1)
        if mono.size >= self.capacity_samples:
            mono = mono[-self.capacity_samples:]
        with self._lock:
            n = int(mono.size)
            keep = min(self._len, self.capacity_samples - n)
            if keep > 0 and keep != self._len:
                self._buffer[:keep] = self._buffer[self._len - keep : self._len]
            self._buffer[keep : keep + n] = mono
            self._len = keep + n

    def start(self) -> None:
        import sounddevice as sd

        if self._stream is not None:
            return
        self._stream = sd.InputStream(
            samplerate=self.sample_rate,
            channels=1,
            dtype="float32",
            device=self.capture_id if self.capture_id >= 0 else None,
            callback=self._callback,
        )
        self._stream.start()
        logger.info("capture started device=%s sample_rate=%d", self.capture_id, self.sample_rate)

    def stop(self) -> None:
        stream = self._stream
        self._stream = None
        if stream is None:
            return
        try:
            stream.stop()
        finally:
            stream.close()
        logger.info("capture stopped")

    def clear(self) -> None:
        with self._lock:
            self._len = 0

    def fetch(self, duration_ms: int) -> np.ndarray:
        """
        Return every sample accumulated since the last `clear`, oldest first.

        `duration_ms` is the caller's step; the buffer itself is bounded by
        `capacity_ms`, so an idle consumer sees at most that much audio.
        """
        with self._lock:
            return self._buffer[: self._len].copy()
