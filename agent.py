"""
agent.py — Takeoff Voice Agent · Standalone Runner
==================================================
Runs a single project's agent against the local microphone:

    VAD (mic) → Deepgram live → silence-gated turn → Groq intent
              → confirmation gate → in-memory record store

Every assistant message is printed to stdout; everything else goes to the log.

Usage:
    python agent.py <project_id> [config.json] [--typed] [--file recording.wav]

With --typed the microphone is left alone and each stdin line is one turn.
With --file the recording is played through VAD and recognition in place of
the microphone.
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
import time
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

from config import AgentConfig
from takeoff.audio import AudioDevice, FileAudioSource
from takeoff.models import ConversationMessage
from takeoff.records import InMemoryRecordStore
from takeoff.session import VoiceAgent

logging.basicConfig(
    level=logging.DEBUG if os.getenv("VOICE_DEBUG") else logging.INFO,
    format="%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s – %(message)s",
    datefmt="%H:%M:%S",
)
log = logging.getLogger("takeoff.agent")


# ---------------------------------------------------------------------------
#  EVENT LOOP STALL MONITOR
# ---------------------------------------------------------------------------

async def _stall_monitor() -> None:
    """Log a warning whenever the event loop blocks for > 150ms."""
    TICK_MS   = 100.0
    WARN_MS   = 150.0
    prev = time.perf_counter() * 1000.0
    while True:
        await asyncio.sleep(TICK_MS / 1000.0)
        now   = time.perf_counter() * 1000.0
        drift = now - prev - TICK_MS
        if drift > WARN_MS:
            log.warning("event=event_loop_stall stall_ms=%.1f", drift)
        prev = now


def _print_message(message: ConversationMessage) -> None:
    print(f"\n🤖 {message.content}\n", flush=True)


def _print_preview(text: str) -> None:
    if text:
        print(f"   … {text}", flush=True)


async def _typed_loop(agent: VoiceAgent) -> None:
    while True:
        line = await asyncio.to_thread(sys.stdin.readline)
        if not line:
            return
        text = line.strip()
        if text:
            await agent.submit_text(text)


async def main(project_id: str, config: AgentConfig, typed: bool = False, recording: Optional[str] = None) -> None:
    log.info("event=agent_start project=%s typed=%s recording=%s", project_id, typed, recording)
    device = None
    if recording:
        device = AudioDevice(FileAudioSource(recording, config.vad.sample_rate, config.vad.frame_size))
    agent = VoiceAgent(
        project_id,
        config,
        InMemoryRecordStore(),
        device=device,
        on_message=_print_message,
        on_preview=_print_preview,
    )
    await agent.load()

    monitor = asyncio.create_task(_stall_monitor())
    try:
        if typed:
            await _typed_loop(agent)
        else:
            agent.arm()
            # the recognizer keeps restarting itself until stopped or a fatal error
            await asyncio.Event().wait()
    finally:
        monitor.cancel()
        try:
            await monitor
        except asyncio.CancelledError:
            pass
        await agent.close()
        log.info("event=agent_shutdown project=%s", project_id)


USAGE = "Usage: python agent.py <project_id> [config.json] [--typed] [--file recording.wav]"

if __name__ == "__main__":
    argv = sys.argv[1:]
    _recording = None
    if "--file" in argv:
        i = argv.index("--file")
        if i + 1 >= len(argv):
            print(USAGE, file=sys.stderr)
            sys.exit(1)
        _recording = argv[i + 1]
        del argv[i:i + 2]
    args = [a for a in argv if not a.startswith("--")]
    if not args:
        print(USAGE, file=sys.stderr)
        sys.exit(1)

    _config = AgentConfig.load(args[1]) if len(args) > 1 else AgentConfig()
    try:
        asyncio.run(main(args[0], _config, typed="--typed" in argv, recording=_recording))
    except KeyboardInterrupt:
        pass
