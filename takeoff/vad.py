"""
vad.py — energy-based voice activity detection for hands-free arming.

The energy measure mirrors a browser AnalyserNode's byte frequency data:
Blackman-windowed FFT over the newest `fft_size` samples, magnitude smoothed
over time, converted to dB and mapped linearly from [min_db, max_db] onto
0..255.  A frame is voiced when the average over all bins exceeds
`energy_threshold`; the detector fires after `frames_to_trigger` voiced
frames in a row and then stops observing.

The detector owns the audio device only while watching.  It releases it
before invoking the speech callback so the recognizer can take it.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, Union

import numpy as np

from config import VadConfig
from takeoff.audio import AudioDevice, AudioSource

log = logging.getLogger("takeoff.vad")

OWNER = "vad"
_EPS = 1e-12

SpeechCallback = Callable[[], Union[Awaitable[Any], Any]]


class SpectrumAnalyser:
    """Smoothed byte-scaled spectrum, one update per frame."""

    def __init__(self, fft_size: int = 256, smoothing: float = 0.8, min_db: float = -100.0, max_db: float = -30.0):
        if fft_size % 2:
            raise ValueError("fft_size must be even")
        self.fft_size = fft_size
        self.smoothing = smoothing
        self.min_db = min_db
        self.max_db = max_db
        self._window = np.blackman(fft_size)
        self._smoothed = np.zeros(fft_size // 2)

    def reset(self) -> None:
        self._smoothed[:] = 0.0

    def byte_spectrum(self, frame: np.ndarray) -> np.ndarray:
        raw = np.asarray(frame)
        samples = raw.astype(np.float64)
        if raw.dtype == np.int16:
            samples = samples / 32768.0
        if len(samples) < self.fft_size:
            samples = np.pad(samples, (self.fft_size - len(samples), 0))
        block = samples[-self.fft_size:] * self._window
        magnitude = np.abs(np.fft.rfft(block))[: self.fft_size // 2] / self.fft_size
        self._smoothed = self.smoothing * self._smoothed + (1.0 - self.smoothing) * magnitude
        db = 20.0 * np.log10(np.maximum(self._smoothed, _EPS))
        scaled = 255.0 * (db - self.min_db) / (self.max_db - self.min_db)
        return np.clip(np.floor(scaled), 0, 255)

    def energy(self, frame: np.ndarray) -> float:
        return float(self.byte_spectrum(frame).mean())


class VoiceActivityDetector:
    """Watches the device until speech onset, then hands off exactly once."""

    def __init__(self, device: AudioDevice, config: VadConfig, is_listening: Callable[[], bool]):
        self._device = device
        self._config = config
        self._is_listening = is_listening
        self._task: Optional[asyncio.Task] = None

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, on_speech: SpeechCallback) -> None:
        """Begin observing.  No-op while already observing or while a turn is live.

        Raises DeviceBusy or AudioDeviceError if the device cannot be acquired.
        """
        if self.active:
            return
        if self._is_listening():
            log.debug("event=vad_skip reason=listening")
            return
        source = self._device.acquire(OWNER)
        self._task = asyncio.create_task(self._watch(source, on_speech), name="vad_watch")

    def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
        self._device.release(OWNER)

    async def _watch(self, source: AudioSource, on_speech: SpeechCallback) -> None:
        cfg = self._config
        analyser = SpectrumAnalyser(cfg.fft_size, cfg.smoothing, cfg.min_db, cfg.max_db)
        consecutive = 0
        fired = False
        log.info("event=vad_started threshold=%.1f frames=%d", cfg.energy_threshold, cfg.frames_to_trigger)
        try:
            async for frame in source.frames():
                # read at call time: a turn may have started from another path
                if self._is_listening():
                    log.info("event=vad_yield reason=listening")
                    break
                energy = analyser.energy(frame)
                if energy > cfg.energy_threshold:
                    consecutive += 1
                    log.debug("event=vad_voiced energy=%.1f run=%d", energy, consecutive)
                else:
                    consecutive = 0
                if consecutive >= cfg.frames_to_trigger:
                    fired = True
                    break
        finally:
            self._device.release(OWNER)

        if self._task is asyncio.current_task():
            self._task = None
        if not fired:
            log.info("event=vad_stopped fired=false")
            return
        log.info("event=vad_triggered frames=%d", consecutive)
        result = on_speech()
        if inspect.isawaitable(result):
            await result
