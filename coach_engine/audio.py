"""
Frame sources: microphone capture (sounddevice) and file replay (soundfile).

Both feed the same FrameSlicer, which down-mixes to mono, resamples to the
service rate, slices fixed-size frames and computes per-frame RMS volume.
Frames are delivered on the capture thread; consumers must not block.
"""

from __future__ import annotations

import logging
import threading
import time
from math import gcd
from pathlib import Path
from typing import Callable, Optional

import numpy as np
import scipy.signal

from .config import AudioConfig
from .errors import DeviceError
from .models import AudioFrame

log = logging.getLogger("coach_engine.audio")

FrameCallback = Callable[[AudioFrame], None]


def compute_rms(samples: np.ndarray) -> float:
    """RMS of a float signal in [-1, 1]."""
    if samples.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(np.square(samples, dtype=np.float64))))


def to_pcm16(samples: np.ndarray) -> bytes:
    """Float [-1, 1] → little-endian int16 bytes."""
    clipped = np.clip(samples, -1.0, 1.0)
    return (clipped * 32767).astype("<i2").tobytes()


class FrameSlicer:
    """Turn arbitrary-size capture blocks into fixed-size service frames."""

    def __init__(self, source_rate: int, target_rate: int = 16000, frame_ms: int = 100):
        self.source_rate = source_rate
        self.target_rate = target_rate
        self.frame_samples = target_rate * frame_ms // 1000
        divisor = gcd(source_rate, target_rate)
        self._up = target_rate // divisor
        self._down = source_rate // divisor
        self._pending = np.zeros(0, dtype=np.float32)
        self._next_seq = 0

    @property
    def next_seq(self) -> int:
        return self._next_seq

    def feed(self, block: np.ndarray) -> list[AudioFrame]:
        samples = np.asarray(block, dtype=np.float32)
        if samples.ndim == 2:
            samples = samples.mean(axis=1)
        if self._up != self._down:
            samples = scipy.signal.resample_poly(samples, self._up, self._down).astype(np.float32)
        self._pending = np.concatenate([self._pending, samples])

        frames: list[AudioFrame] = []
        while self._pending.size >= self.frame_samples:
            chunk = self._pending[: self.frame_samples]
            self._pending = self._pending[self.frame_samples:]
            frames.append(AudioFrame(seq=self._next_seq, pcm=to_pcm16(chunk), rms=compute_rms(chunk)))
            self._next_seq += 1
        return frames


class FrameSource:
    """Common open/on_frame/close contract.

    close() takes the emit lock before flagging the source closed, so no frame
    is delivered once close() has started.
    """

    def __init__(self, config: Optional[AudioConfig] = None):
        self.config = config or AudioConfig()
        self._callbacks: list[FrameCallback] = []
        self._lock = threading.Lock()
        self._closing = False
        self.is_open = False
        self.frames_emitted = 0

    def on_frame(self, callback: FrameCallback) -> None:
        self._callbacks.append(callback)

    def open(self) -> "FrameSource":
        raise NotImplementedError

    def close(self) -> None:
        with self._lock:
            self._closing = True
        self._release()
        if self.is_open:
            log.info("event=frame_source_closed frames=%d", self.frames_emitted)
        self.is_open = False

    def _release(self) -> None:
        """Subclass hook: stop the underlying stream/thread."""

    def _emit(self, frames: list[AudioFrame]) -> None:
        with self._lock:
            if self._closing:
                return
            for frame in frames:
                for callback in self._callbacks:
                    try:
                        callback(frame)
                    except Exception:
                        log.exception("event=frame_callback_error seq=%d", frame.seq)
                self.frames_emitted += 1


# ---------------------------------------------------------------------------
# Microphone
# ---------------------------------------------------------------------------

class MicrophoneFrameSource(FrameSource):
    """Live capture through sounddevice's InputStream callback."""

    def __init__(self, config: Optional[AudioConfig] = None):
        super().__init__(config)
        self._stream = None
        self._slicer: Optional[FrameSlicer] = None

    def open(self) -> "MicrophoneFrameSource":
        sd = _import_sounddevice()
        try:
            info = sd.query_devices(self.config.device, "input")
            device_rate = int(info["default_samplerate"])
            self._slicer = FrameSlicer(device_rate, self.config.sample_rate, self.config.frame_ms)
            self._stream = sd.InputStream(
                samplerate=device_rate,
                channels=1,
                dtype="float32",
                blocksize=device_rate * self.config.frame_ms // 1000,
                device=self.config.device,
                callback=self._audio_callback,
            )
            self._closing = False
            self._stream.start()
        except (sd.PortAudioError, ValueError) as exc:
            log.error("event=mic_open_failed device=%s error=%s", self.config.device, exc)
            self._stream = None
            raise DeviceError(f"Failed to open microphone: {exc}") from exc

        self.is_open = True
        log.info(
            "event=mic_started device=%s device_rate=%d target_rate=%d frame_ms=%d",
            info.get("name", self.config.device), device_rate,
            self.config.sample_rate, self.config.frame_ms,
        )
        return self

    def _audio_callback(self, indata, frames, time_info, status) -> None:
        if status:
            log.warning("event=mic_status status=%s", status)
        if self._slicer is None:
            return
        self._emit(self._slicer.feed(indata.copy()))

    def _release(self) -> None:
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.stop()
            stream.close()
        except Exception as exc:
            log.warning("event=mic_close_error error=%s", exc)


def _import_sounddevice():
    try:
        import sounddevice as sd
    except OSError as exc:  # PortAudio shared library not installed
        raise DeviceError(f"Audio backend unavailable: {exc}") from exc
    return sd


def list_input_devices() -> list[dict]:
    """List available audio input devices."""
    sd = _import_sounddevice()
    devices = []
    for index, info in enumerate(sd.query_devices()):
        if info.get("max_input_channels", 0) > 0:
            devices.append({
                "index": index,
                "name": info.get("name", "Unknown"),
                "channels": info.get("max_input_channels", 0),
                "sample_rate": int(info.get("default_samplerate", 0)),
            })
    return devices


# ---------------------------------------------------------------------------
# File replay
# ---------------------------------------------------------------------------

class WavFrameSource(FrameSource):
    """Replay an audio file through the framing path, paced like a microphone."""

    def __init__(self, path: str | Path, config: Optional[AudioConfig] = None, realtime: bool = True):
        super().__init__(config)
        self.path = Path(path)
        self.realtime = realtime
        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self.finished = threading.Event()

    def open(self) -> "WavFrameSource":
        import soundfile as sf

        try:
            data, file_rate = sf.read(str(self.path), dtype="float32", always_2d=True)
        except (RuntimeError, OSError) as exc:
            raise DeviceError(f"Cannot read audio file {self.path}: {exc}") from exc

        slicer = FrameSlicer(file_rate, self.config.sample_rate, self.config.frame_ms)
        block = max(1, file_rate * self.config.frame_ms // 1000)
        self._closing = False
        self._stop.clear()
        self.finished.clear()
        self._thread = threading.Thread(
            target=self._replay, args=(data, slicer, block), name="wav-replay", daemon=True,
        )
        self.is_open = True
        log.info(
            "event=wav_replay_started path=%s file_rate=%d duration_sec=%.1f",
            self.path, file_rate, len(data) / file_rate,
        )
        self._thread.start()
        return self

    def _replay(self, data: np.ndarray, slicer: FrameSlicer, block: int) -> None:
        pace = self.config.frame_ms / 1000.0
        for i in range(0, len(data), block):
            if self._stop.is_set():
                break
            self._emit(slicer.feed(data[i:i + block]))
            if self.realtime:
                time.sleep(pace)
        self.finished.set()
        log.info("event=wav_replay_done frames=%d", self.frames_emitted)

    def _release(self) -> None:
        self._stop.set()
        thread, self._thread = self._thread, None
        if thread and thread is not threading.current_thread():
            thread.join(timeout=1.0)


def create_frame_source(config: AudioConfig, wav_path: Optional[str | Path] = None) -> FrameSource:
    if wav_path:
        return WavFrameSource(wav_path, config)
    return MicrophoneFrameSource(config)
