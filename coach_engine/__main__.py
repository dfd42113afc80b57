"""
Live Coaching Engine command line.

    python -m coach_engine                      # coach from the default microphone
    python -m coach_engine -t presentation      # pick the session type
    python -m coach_engine --wav talk.wav       # replay a recording instead of the mic
    python -m coach_engine --list-devices
    python -m coach_engine --serve --port 8000  # run the HTTP/WebSocket control plane

Ctrl+C stops the session and writes coaching_report_<timestamp>.json.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from typing import Optional

from dotenv import load_dotenv

from .audio import FrameSource, WavFrameSource, list_input_devices
from .config import AudioConfig, CoachEngineConfig
from .errors import CoachEngineError
from .models import SESSION_TYPES, FeedbackItem
from .session import SESSION_TIPS, SessionCallbacks, SessionManager
from .token_provider import RealtimeTokenProvider

load_dotenv()

log = logging.getLogger("coach_engine.cli")

LEVEL_ICONS = {"positive": "✅", "neutral": "ℹ️", "warning": "⚠️", "critical": "❌"}


def setup_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if (verbose or os.getenv("COACH_DEBUG")) else logging.INFO,
        format="%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s – %(message)s",
        datefmt="%H:%M:%S",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="coach_engine",
        description="Real-time transcription with live speaking feedback",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--config", "-c", help="Path to a JSON config file")
    parser.add_argument("--session-type", "-t", choices=SESSION_TYPES, default="general",
                        help="Coaching profile (default: general)")
    parser.add_argument("--wav", help="Replay an audio file instead of capturing the microphone")
    parser.add_argument("--report-dir", help="Directory for the session report")
    parser.add_argument("--device", type=int, help="Input device index (see --list-devices)")
    parser.add_argument("--list-devices", action="store_true", help="List audio input devices and exit")
    parser.add_argument("--serve", action="store_true", help="Run the FastAPI control plane")
    parser.add_argument("--host", default="127.0.0.1", help="Control plane bind address")
    parser.add_argument("--port", type=int, default=8000, help="Control plane port")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    return parser


def load_config(args: argparse.Namespace) -> CoachEngineConfig:
    config = CoachEngineConfig.load(args.config) if args.config else CoachEngineConfig()
    patch: dict = {}
    if args.report_dir:
        patch.setdefault("report", {})["directory"] = args.report_dir
    if args.device is not None:
        patch.setdefault("audio", {})["device"] = args.device
    return config.merge_patch(patch) if patch else config


def console_callbacks(stop_event: asyncio.Event) -> SessionCallbacks:
    def on_transcript(text: str, is_final: bool) -> None:
        if is_final:
            print(f"📝 {text}", flush=True)

    def on_feedback(items: list[FeedbackItem]) -> None:
        print("\n🤖 Coach:")
        for item in items:
            print(f"  {LEVEL_ICONS.get(item.level.value, '📊')} {item.message}")
            if item.suggestion:
                print(f"     💡 {item.suggestion}")
        print(flush=True)

    def on_warning(message: Optional[str], metric: str) -> None:
        if message:
            print(f"⚠️  {message}", flush=True)

    def on_error(error: CoachEngineError) -> None:
        print(f"❌ {error}", flush=True)
        stop_event.set()

    return SessionCallbacks(
        on_transcript=on_transcript,
        on_feedback=on_feedback,
        on_warning=on_warning,
        on_connection_change=lambda connected: print("🔌 connected" if connected else "🔌 reconnecting…", flush=True),
        on_notice=lambda message: print(f"🔇 {message}", flush=True),
        on_error=on_error,
    )


async def run_session(config: CoachEngineConfig, session_type: str, wav: Optional[str] = None) -> int:
    stop_event = asyncio.Event()
    sources: list[FrameSource] = []

    def make_source(audio_cfg: AudioConfig) -> FrameSource:
        source = WavFrameSource(wav, audio_cfg)
        sources.append(source)
        return source

    manager = SessionManager(
        config,
        RealtimeTokenProvider(os.getenv("ASSEMBLYAI_API_KEY"), config.service),
        frame_source_factory=make_source if wav else None,
        callbacks=console_callbacks(stop_event),
    )

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, stop_event.set)
    except NotImplementedError:
        pass  # Windows: KeyboardInterrupt cancels asyncio.run instead

    try:
        session = await manager.start(session_type)
    except CoachEngineError as exc:
        print(f"❌ Could not start session: {exc}", file=sys.stderr)
        return 1

    print(f"✅ Coaching session {session.id} started ({session_type})")
    print("💡 Tips:")
    for tip in SESSION_TIPS[session_type]:
        print(f"  • {tip}")
    print("🎙️  Press Ctrl+C to stop.\n", flush=True)

    try:
        while manager.active and not stop_event.is_set():
            if sources and sources[0].finished.is_set():
                log.info("event=replay_complete stopping session")
                break
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=0.5)
            except asyncio.TimeoutError:
                continue
    finally:
        result = await manager.stop()

    report = result.report_path or manager.last_report_path
    if report:
        print(f"\n💾 Report saved: {report}")
    return 0 if result.stopped else 1


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)

    if args.list_devices:
        try:
            devices = list_input_devices()
        except CoachEngineError as exc:
            print(f"❌ {exc}", file=sys.stderr)
            return 1
        for dev in devices:
            print(f"[{dev['index']:>2}] {dev['name']}  ({dev['channels']} ch, {dev['sample_rate']} Hz)")
        return 0

    config = load_config(args)

    if args.serve:
        import uvicorn
        from .server import create_app

        uvicorn.run(create_app(config=config, config_path=args.config), host=args.host, port=args.port)
        return 0

    try:
        return asyncio.run(run_session(config, args.session_type, args.wav))
    except KeyboardInterrupt:
        log.info("event=shutdown reason=keyboard_interrupt")
        return 130


if __name__ == "__main__":
    sys.exit(main())
