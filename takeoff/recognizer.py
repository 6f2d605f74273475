"""
recognizer.py — streaming speech recognition behind a small callback contract.

A Recognizer emits TranscriptEvent for every interim and final result, an
error callback with a categorized ErrorKind, and an end callback when the
stream stops on its own.  An explicit `stop()` ends the stream without the
end callback.

DeepgramRecognizer streams linear16 frames over a raw websocket to
Deepgram's live endpoint.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional
from urllib.parse import urlencode

import websockets
from websockets.exceptions import ConnectionClosedOK, InvalidStatus, WebSocketException

from config import DeepgramConfig
from takeoff.audio import AudioDevice, AudioDeviceError, AudioSource, DeviceBusy

log = logging.getLogger("takeoff.recognizer")

OWNER = "recognizer"
DEEPGRAM_LISTEN_URL = "wss://api.deepgram.com/v1/listen"
KEEPALIVE_AFTER_SEC = 8.0
CONNECT_TIMEOUT_SEC = 10.0


class ErrorKind(str, Enum):
    NO_SPEECH = "no-speech"
    PERMISSION_DENIED = "permission-denied"
    DEVICE_UNAVAILABLE = "device-unavailable"
    NETWORK_UNAVAILABLE = "network-unavailable"
    ABORTED = "aborted"
    OTHER = "other"

    @property
    def fatal(self) -> bool:
        return self in (ErrorKind.PERMISSION_DENIED, ErrorKind.DEVICE_UNAVAILABLE, ErrorKind.NETWORK_UNAVAILABLE)


class RecognizerError(RuntimeError):
    def __init__(self, kind: ErrorKind, detail: str = ""):
        super().__init__(f"{kind.value}: {detail}" if detail else kind.value)
        self.kind = kind
        self.detail = detail


@dataclass(frozen=True)
class TranscriptEvent:
    text: str
    is_final: bool


TranscriptCallback = Callable[[TranscriptEvent], None]
ErrorCallback = Callable[[RecognizerError], None]
EndCallback = Callable[[], None]


class Recognizer:
    """Interface.  One start/stop cycle per listening attempt."""

    def start(self, on_transcript: TranscriptCallback, on_error: ErrorCallback, on_end: EndCallback) -> None:
        raise NotImplementedError

    def stop(self) -> None:
        raise NotImplementedError


def classify_status(status: int) -> ErrorKind:
    if status in (401, 403):
        return ErrorKind.PERMISSION_DENIED
    if status >= 500 or status in (408, 429):
        return ErrorKind.NETWORK_UNAVAILABLE
    return ErrorKind.OTHER


class DeepgramRecognizer(Recognizer):
    """Live transcription over `wss://api.deepgram.com/v1/listen`."""

    def __init__(
        self,
        device: AudioDevice,
        config: DeepgramConfig,
        sample_rate: int = 16000,
        api_key: Optional[str] = None,
    ):
        self._device = device
        self._config = config
        self._sample_rate = sample_rate
        self._api_key = api_key or os.environ.get("DEEPGRAM_API_KEY", "")
        self._task: Optional[asyncio.Task] = None

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def url(self) -> str:
        cfg = self._config
        params: list[tuple[str, str]] = [
            ("model", cfg.model),
            ("language", cfg.language),
            ("punctuate", str(cfg.punctuate).lower()),
            ("smart_format", str(cfg.smart_format).lower()),
            ("interim_results", str(cfg.interim_results).lower()),
            ("endpointing", str(cfg.endpointing)),
            ("encoding", "linear16"),
            ("sample_rate", str(self._sample_rate)),
            ("channels", "1"),
        ]
        for keyword in cfg.keywords or []:
            params.append(("keywords", keyword))
        return f"{DEEPGRAM_LISTEN_URL}?{urlencode(params)}"

    def start(self, on_transcript: TranscriptCallback, on_error: ErrorCallback, on_end: EndCallback) -> None:
        if self.active:
            return
        self._task = asyncio.create_task(self._run(on_transcript, on_error, on_end), name="deepgram_stream")

    def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
        self._device.release(OWNER)

    # ------------------------------------------------------------------

    async def _run(self, on_transcript: TranscriptCallback, on_error: ErrorCallback, on_end: EndCallback) -> None:
        if not self._api_key:
            on_error(RecognizerError(ErrorKind.PERMISSION_DENIED, "DEEPGRAM_API_KEY is not set"))
            return
        try:
            source = self._device.acquire(OWNER)
        except (AudioDeviceError, DeviceBusy) as exc:
            log.error("event=recognizer_device_error error=%s", exc)
            on_error(RecognizerError(ErrorKind.DEVICE_UNAVAILABLE, str(exc)))
            return

        error: Optional[RecognizerError] = None
        try:
            await self._stream(source, on_transcript)
        except InvalidStatus as exc:
            status = exc.response.status_code
            error = RecognizerError(classify_status(status), f"HTTP {status}")
        except AudioDeviceError as exc:
            error = RecognizerError(ErrorKind.DEVICE_UNAVAILABLE, str(exc))
        except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
            error = RecognizerError(ErrorKind.NETWORK_UNAVAILABLE, str(exc) or type(exc).__name__)
        finally:
            self._device.release(OWNER)

        if error is not None:
            log.error("event=recognizer_error kind=%s detail=%s", error.kind.value, error.detail)
            on_error(error)
        log.info("event=recognizer_ended")
        on_end()

    async def _stream(self, source: AudioSource, on_transcript: TranscriptCallback) -> None:
        headers = {"Authorization": f"Token {self._api_key}"}
        async with websockets.connect(
            self.url(), additional_headers=headers, open_timeout=CONNECT_TIMEOUT_SEC
        ) as ws:
            log.info("event=recognizer_connected model=%s", self._config.model)
            sender = asyncio.create_task(self._send_audio(ws, source), name="deepgram_sender")
            try:
                async for raw in ws:
                    if isinstance(raw, bytes):
                        continue
                    event = parse_result(raw)
                    if event is not None:
                        log.debug("event=transcript final=%s text=%.80s", event.is_final, event.text)
                        on_transcript(event)
            finally:
                sender.cancel()
                try:
                    await sender
                except asyncio.CancelledError:
                    pass

    async def _send_audio(self, ws, source: AudioSource) -> None:
        last_audio = time.monotonic()

        async def keepalive() -> None:
            while True:
                await asyncio.sleep(1.0)
                if time.monotonic() - last_audio >= KEEPALIVE_AFTER_SEC:
                    await ws.send(json.dumps({"type": "KeepAlive"}))
                    log.debug("event=recognizer_keepalive")

        keeper = asyncio.create_task(keepalive(), name="deepgram_keepalive")
        try:
            async for frame in source.frames():
                await ws.send(frame.astype("<i2").tobytes())
                last_audio = time.monotonic()
            # source closed: ask the server to flush and close the stream
            await ws.send(json.dumps({"type": "CloseStream"}))
        except ConnectionClosedOK:
            pass
        except AudioDeviceError:
            await ws.close()
            raise
        finally:
            keeper.cancel()


def parse_result(raw: str) -> Optional[TranscriptEvent]:
    """TranscriptEvent for a non-empty `Results` message, else None."""
    try:
        message = json.loads(raw)
    except json.JSONDecodeError:
        log.warning("event=recognizer_bad_message raw=%.80r", raw)
        return None
    if not isinstance(message, dict) or message.get("type") != "Results":
        return None
    channel = message.get("channel")
    alternatives = channel.get("alternatives") if isinstance(channel, dict) else None
    first = alternatives[0] if isinstance(alternatives, list) and alternatives else None
    text = first.get("transcript") if isinstance(first, dict) else None
    text = text.strip() if isinstance(text, str) else ""
    if not text:
        return None
    return TranscriptEvent(text=text, is_final=bool(message.get("is_final")))
