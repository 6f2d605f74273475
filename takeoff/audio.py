"""
audio.py — capture sources and exclusive device ownership.

Sources yield int16 mono numpy frames of `frame_size` samples on the event
loop.  `AudioDevice` wraps one source and lets exactly one owner hold it at a
time: the voice activity detector acquires it to watch for speech onset and
releases it before the recognizer acquires it.  Several input devices
(Bluetooth headsets in particular) only serve a single active client.
"""

from __future__ import annotations

import asyncio
import logging
from math import gcd
from pathlib import Path
from typing import AsyncIterator, Optional

import numpy as np
import scipy.signal
import soundfile as sf

log = logging.getLogger("takeoff.audio")

_QUEUE_FRAMES = 64


class DeviceBusy(RuntimeError):
    """The audio device is already held by another owner."""


class AudioDeviceError(RuntimeError):
    """The capture device could not be opened or failed while running."""


class AudioSource:
    """Interface for frame producers."""

    sample_rate: int = 16000
    frame_size: int = 512

    def open(self) -> None:
        raise NotImplementedError

    def frames(self) -> AsyncIterator[np.ndarray]:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError


class MicrophoneSource(AudioSource):
    """Live microphone through a sounddevice InputStream.

    The PortAudio callback runs on its own thread; frames are handed to the
    event loop with `call_soon_threadsafe`.  When the consumer falls behind,
    the oldest queued frame is dropped.
    """

    def __init__(self, sample_rate: int = 16000, frame_size: int = 512, device: Optional[int | str] = None):
        self.sample_rate = sample_rate
        self.frame_size = frame_size
        self.device = device
        self._stream = None
        self._queue: Optional[asyncio.Queue] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def _offer(self, frame: Optional[np.ndarray]) -> None:
        queue = self._queue
        if queue is None:
            return
        if queue.full():
            queue.get_nowait()
            log.debug("event=mic_frame_dropped")
        queue.put_nowait(frame)

    def _callback(self, indata, frames, time_info, status) -> None:
        if status:
            log.warning("event=mic_status status=%s", status)
        loop = self._loop
        if loop is not None and not loop.is_closed():
            loop.call_soon_threadsafe(self._offer, indata[:, 0].copy())

    def open(self) -> None:
        import sounddevice as sd

        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue(maxsize=_QUEUE_FRAMES)
        try:
            self._stream = sd.InputStream(
                samplerate=self.sample_rate,
                channels=1,
                dtype="int16",
                blocksize=self.frame_size,
                device=self.device,
                callback=self._callback,
            )
            self._stream.start()
        except sd.PortAudioError as exc:
            self._stream = None
            self._queue = None
            raise AudioDeviceError(str(exc)) from exc
        log.info("event=mic_started sample_rate=%d block=%d", self.sample_rate, self.frame_size)

    async def frames(self) -> AsyncIterator[np.ndarray]:
        queue = self._queue
        if queue is None:
            return
        while True:
            frame = await queue.get()
            if frame is None:
                return
            yield frame

    def close(self) -> None:
        stream, self._stream = self._stream, None
        if stream is not None:
            try:
                stream.stop()
                stream.close()
            except Exception as exc:
                log.warning("event=mic_close_error error=%s", exc)
            log.info("event=mic_stopped")
        if self._queue is not None:
            self._offer(None)
            self._queue = None


class FileAudioSource(AudioSource):
    """WAV/FLAC file played back as if it were a microphone.

    The file is resampled to `sample_rate` when its own rate differs.  The
    read position survives close/open so a VAD and a recognizer taking turns
    on the device see one continuous stream.
    """

    def __init__(self, path: str | Path, sample_rate: int = 16000, frame_size: int = 512, realtime: bool = True):
        self.path = Path(path)
        self.sample_rate = sample_rate
        self.frame_size = frame_size
        self.realtime = realtime
        self._samples: Optional[np.ndarray] = None
        self._position = 0
        self._open = False

    def _load(self) -> np.ndarray:
        data, rate = sf.read(str(self.path), dtype="float32", always_2d=True)
        mono = data.mean(axis=1)
        if rate != self.sample_rate:
            divisor = gcd(int(rate), self.sample_rate)
            mono = scipy.signal.resample_poly(mono, self.sample_rate // divisor, int(rate) // divisor)
        log.info("event=file_loaded path=%s rate=%d samples=%d", self.path, rate, len(mono))
        return (np.clip(mono, -1.0, 1.0) * 32767).astype(np.int16)

    @property
    def exhausted(self) -> bool:
        return self._samples is not None and self._position >= len(self._samples)

    def open(self) -> None:
        if self._samples is None:
            try:
                self._samples = self._load()
            except (OSError, sf.LibsndfileError) as exc:
                raise AudioDeviceError(f"cannot read {self.path}: {exc}") from exc
        self._open = True

    async def frames(self) -> AsyncIterator[np.ndarray]:
        interval = self.frame_size / self.sample_rate
        while self._open and self._samples is not None and not self.exhausted:
            frame = self._samples[self._position:self._position + self.frame_size]
            self._position += self.frame_size
            if len(frame) < self.frame_size:
                frame = np.pad(frame, (0, self.frame_size - len(frame)))
            yield frame
            await asyncio.sleep(interval if self.realtime else 0)

    def close(self) -> None:
        self._open = False


class AudioDevice:
    """Exclusive-access wrapper around one AudioSource."""

    def __init__(self, source: AudioSource):
        self.source = source
        self._owner: Optional[str] = None

    @property
    def owner(self) -> Optional[str]:
        return self._owner

    def acquire(self, owner: str) -> AudioSource:
        if self._owner is not None and self._owner != owner:
            raise DeviceBusy(f"audio device held by {self._owner}")
        if self._owner == owner:
            return self.source
        self.source.open()
        self._owner = owner
        log.info("event=device_acquired owner=%s", owner)
        return self.source

    def release(self, owner: str) -> None:
        if self._owner != owner:
            return
        self._owner = None
        self.source.close()
        log.info("event=device_released owner=%s", owner)
