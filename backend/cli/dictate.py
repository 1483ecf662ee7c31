"""
Command-line dictation driver.

Streams an audio file through SessionController as if it were a
microphone, triggers once at the start, lets silence detection
finalize, and prints the final transcript on stdout.

Usage:
    dictate --wav speech.wav [--realtime] [--language en]
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from dataclasses import replace
from typing import Optional

import numpy as np
import soundfile as sf

from config import AppConfig
from engine.errors import DictationError
from engine.session_engine import SessionEngine
from engine.transport import make_websocket_factory
from observability.logger import set_json_logs, set_log_level
from observability.metrics import SessionMetrics
from orchestrator.enums.state import State
from orchestrator.runtime import SessionController
from orchestrator.state_dataclass import ControllerState
from protocol.messages import WireDialect
from session.collaborators import ControllerListener, StdoutInjector


BLOCK_DURATION_S = 0.020
SESSION_END_GRACE_S = 5.0


class _CliListener(ControllerListener):
    def __init__(self) -> None:
        self.connect_settled = asyncio.Event()
        self.done = asyncio.Event()
        self.state: Optional[ControllerState] = None
        self.metrics: Optional[SessionMetrics] = None

    def on_state_change(self, state: ControllerState) -> None:
        self.state = state
        print(f"[dictate] state: {state.describe()}", file=sys.stderr)
        if state.state is not State.CONNECTING:
            self.connect_settled.set()
        if state.state in (State.IDLE, State.ERROR):
            self.done.set()

    def on_session_metrics(self, metrics: SessionMetrics) -> None:
        self.metrics = metrics


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    ap = argparse.ArgumentParser(prog="dictate", description="Stream an audio file through the dictation controller.")
    ap.add_argument("--wav", required=True, help="Audio file (any sample rate / channel count)")
    ap.add_argument("--realtime", action="store_true", help="Pace blocks at wall-clock speed.")
    ap.add_argument("--language", default=None, help="Language hint (e.g. en).")
    return ap.parse_args(argv)


async def _feed_file(
    *,
    controller: SessionController,
    path: str,
    realtime: bool,
) -> int:
    audio, sr = sf.read(path, dtype="float32", always_2d=True)
    channels = int(audio.shape[1])
    block_frames = max(1, int(sr * BLOCK_DURATION_S))

    queued = 0
    for start in range(0, len(audio), block_frames):
        block = np.ascontiguousarray(audio[start:start + block_frames])
        if controller.push_audio(block, sr, channels):
            queued += 1
        if realtime:
            await asyncio.sleep(BLOCK_DURATION_S)
        else:
            # let the sender drain between blocks
            await asyncio.sleep(0)
    return queued


async def run(args: argparse.Namespace) -> int:
    app_config = AppConfig.load_from_env()
    set_log_level(app_config.log_level)
    set_json_logs(app_config.enable_json_logs)

    config = app_config.session_config()
    if args.language:
        config = replace(config, language=args.language)

    dialect = WireDialect(app_config.wire_dialect)
    engine = SessionEngine(transport_factory=make_websocket_factory(dialect), dialect=dialect)
    controller = SessionController(engine=engine, injector=StdoutInjector())

    listener = _CliListener()
    controller.add_listener(listener)

    try:
        await controller.start(config)
    except DictationError as e:
        print(f"[dictate] configuration error: {e}", file=sys.stderr)
        return 2

    try:
        await controller.trigger()

        # LISTENING, or ERROR once the connect deadline passes
        await listener.connect_settled.wait()
        if controller.state.state is not State.LISTENING:
            print(f"[dictate] could not start: {controller.state.describe()}", file=sys.stderr)
            return 1

        listener.done.clear()
        queued = await _feed_file(controller=controller, path=args.wav, realtime=args.realtime)
        print(f"[dictate] queued {queued} blocks, waiting for endpointing", file=sys.stderr)

        wait_s = config.silence_timeout_s + SESSION_END_GRACE_S
        try:
            await asyncio.wait_for(listener.done.wait(), timeout=wait_s)
        except asyncio.TimeoutError:
            print("[dictate] no endpoint detected; finalizing", file=sys.stderr)
            await controller.trigger()
            try:
                await asyncio.wait_for(listener.done.wait(), timeout=SESSION_END_GRACE_S)
            except asyncio.TimeoutError:
                print("[dictate] finalize did not complete", file=sys.stderr)
    finally:
        await controller.stop()

    if listener.metrics is not None:
        m = listener.metrics
        print(
            f"[dictate] done: frames_sent={m.frames_sent}, frames_dropped={m.frames_dropped}, "
            f"reconnects={m.reconnect_successes}/{m.reconnect_attempts}, "
            f"reason={m.disconnect_reason.describe()}",
            file=sys.stderr,
        )

    if controller.state.state is State.ERROR:
        return 1
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
