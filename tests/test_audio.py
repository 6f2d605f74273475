import asyncio

import numpy as np
import pytest
import soundfile as sf

from takeoff.audio import AudioDevice, AudioDeviceError, DeviceBusy, FileAudioSource


def _collect(source, limit=None):
    async def run():
        frames = []
        async for frame in source.frames():
            frames.append(frame)
            if limit is not None and len(frames) >= limit:
                break
        return frames

    return asyncio.run(run())


def test_file_source_resamples_and_pads(tmp_path):
    path = tmp_path / "tone.wav"
    t = np.arange(8000) / 8000.0
    sf.write(str(path), 0.5 * np.sin(2 * np.pi * 440 * t), 8000)

    source = FileAudioSource(path, sample_rate=16000, frame_size=512, realtime=False)
    source.open()
    frames = _collect(source)

    assert all(f.dtype == np.int16 and len(f) == 512 for f in frames)
    # one second at 16 kHz is 31.25 frames of 512
    assert len(frames) == 32
    assert source.exhausted


def test_file_source_position_survives_reopen(tmp_path):
    path = tmp_path / "ramp.wav"
    sf.write(str(path), np.linspace(-0.5, 0.5, 4096), 16000)

    source = FileAudioSource(path, sample_rate=16000, frame_size=1024, realtime=False)
    source.open()
    first = _collect(source, limit=1)
    source.close()
    source.open()
    rest = _collect(source)

    assert len(first) == 1
    assert len(rest) == 3


def test_missing_file_is_a_device_error(tmp_path):
    source = FileAudioSource(tmp_path / "nope.wav")
    with pytest.raises(AudioDeviceError):
        source.open()


def test_device_has_one_owner(tmp_path):
    path = tmp_path / "quiet.wav"
    sf.write(str(path), np.zeros(1600), 16000)
    device = AudioDevice(FileAudioSource(path, realtime=False))

    device.acquire("vad")
    with pytest.raises(DeviceBusy):
        device.acquire("recognizer")

    device.release("recognizer")  # not the owner: ignored
    assert device.owner == "vad"
    device.release("vad")
    device.acquire("recognizer")
    assert device.owner == "recognizer"
