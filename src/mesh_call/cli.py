"""Command-line entry points for the relay, a headless participant and diagnostics."""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any, Sequence

import uvicorn
from aiortc.contrib.media import MediaBlackhole

from .app import create_app
from .capture import CaptureError, create_capture
from .config import CAPTURE_CHOICES, ClientSettings, load_settings
from .connection import AiortcConnection
from .diagnostics import collect_diagnostics, diagnostics_exit_code, render_report
from .protocol import TrackKind
from .session import ChatMessage, MeshSession, RelayUnavailable, SessionObserver, WebSocketRelayTransport
from .version import APP_VERSION

logger = logging.getLogger(__name__)

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


class LoggingObserver(SessionObserver):
    """Logs session notifications and drains remote media."""

    def __init__(self) -> None:
        self._sinks: list[MediaBlackhole] = []
        self._tasks: set[asyncio.Task[None]] = set()

    def participant_connected(self, participant_id: str) -> None:
        logger.info("Participant %s connected", participant_id)

    def participant_disconnected(self, participant_id: str) -> None:
        logger.info("Participant %s disconnected", participant_id)

    def remote_track(self, participant_id: str, kind: TrackKind, track: Any) -> None:
        logger.info("Receiving %s from %s", kind.value, participant_id)
        sink = MediaBlackhole()
        sink.addTrack(track)
        self._sinks.append(sink)
        task = asyncio.get_running_loop().create_task(sink.start())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def name_changed(self, participant_id: str, name: str) -> None:
        logger.info("Participant %s is now known as %s", participant_id, name)

    def chat_received(self, message: ChatMessage) -> None:
        logger.info(
            "[%s] %s: %s",
            message.timestamp.strftime("%H:%M:%S"),
            message.sender_name or message.sender_id,
            message.text,
        )

    def capture_failed(self, source: str, error: CaptureError) -> None:
        logger.error("Unable to use %s: %s", source, error)

    def session_ended(self, reason: str) -> None:
        logger.info("Session ended: %s", reason)

    async def close(self) -> None:
        for sink in self._sinks:
            await sink.stop()
        self._sinks.clear()


def build_parser() -> argparse.ArgumentParser:
    """Return the argument parser for the ``mesh-call`` command."""

    parser = argparse.ArgumentParser(
        prog="mesh-call",
        description="Mesh audio/video call relay and headless participant",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {APP_VERSION}")
    parser.add_argument(
        "--log-level",
        default="INFO",
        type=str.upper,
        choices=LOG_LEVELS,
        help="Logging verbosity (default: INFO).",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="JSON configuration file with 'relay' and 'client' sections.",
    )
    subcommands = parser.add_subparsers(dest="command", required=True)

    relay = subcommands.add_parser("relay", help="Run the signalling relay server.")
    relay.add_argument("--host", default=None, help="Listening address (default: 0.0.0.0).")
    relay.add_argument("--port", type=int, default=None, help="Listening port (default: 3000).")

    join = subcommands.add_parser("join", help="Join the room as a headless participant.")
    join.add_argument("--relay-url", default=None, help="Relay WebSocket URL.")
    join.add_argument("--name", default=None, help="Display name announced to the room.")
    join.add_argument("--capture", choices=CAPTURE_CHOICES, default=None, help="Capture backend.")
    join.add_argument("--camera", action="store_true", help="Turn the camera on after joining.")
    join.add_argument(
        "--screen", action="store_true", help="Share the screen after joining."
    )
    join.add_argument(
        "--duration",
        type=float,
        default=None,
        help="Leave the room after this many seconds (default: stay until interrupted).",
    )

    diagnose = subcommands.add_parser("diagnose", help="Check the media stack and devices.")
    diagnose.add_argument("--json", action="store_true", help="Emit results as JSON for scripting.")
    diagnose.add_argument(
        "--probe", action="store_true", help="Try to open every configured capture device."
    )
    return parser


def _client_settings(base: ClientSettings, args: argparse.Namespace) -> ClientSettings:
    overrides: dict[str, object] = {}
    if args.relay_url:
        overrides["relay_url"] = args.relay_url
    if args.name:
        overrides["display_name"] = args.name
    if args.capture:
        overrides["capture"] = args.capture
    return replace(base, **overrides) if overrides else base


async def join_room(settings: ClientSettings, args: argparse.Namespace) -> int:
    logger.debug("Client settings: %s", settings.to_dict())
    observer = LoggingObserver()
    session = MeshSession(
        WebSocketRelayTransport(settings.relay_url),
        create_capture(settings.capture),
        AiortcConnection(settings.ice_servers),
        settings=settings,
        observer=observer,
    )
    try:
        participant_id = await session.start()
    except RelayUnavailable as exc:
        logger.error("%s", exc)
        return 1
    logger.info("Joined as %s (%s)", settings.display_name, participant_id)
    try:
        if args.camera:
            await session.toggle_camera()
        if args.screen:
            await session.toggle_screen_share()
        logger.info("Local media: %s", session.media.state.snapshot())
        if args.duration is None:
            await session.wait_closed()
        else:
            try:
                await asyncio.wait_for(session.wait_closed(), timeout=args.duration)
            except asyncio.TimeoutError:
                logger.info("Leaving after %.1f seconds", args.duration)
    finally:
        await session.hang_up()
        await observer.close()
    return 0 if session.end_reason != "relay-unavailable" else 1


def run(argv: Sequence[str] | None = None) -> int:
    """Execute the CLI with *argv* arguments."""

    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "diagnose":
        payload = collect_diagnostics(probe=args.probe)
        if args.json:
            json.dump(payload, sys.stdout)
            sys.stdout.write("\n")
        else:
            render_report(payload)
        return diagnostics_exit_code(payload)

    try:
        settings = load_settings(args.config)
    except ValueError as exc:
        parser.error(str(exc))

    if args.command == "relay":
        relay_settings = settings.relay
        overrides: dict[str, object] = {}
        if args.host:
            overrides["host"] = args.host
        if args.port is not None:
            overrides["port"] = args.port
        try:
            relay_settings = replace(relay_settings, **overrides)
        except ValueError as exc:
            parser.error(str(exc))
        logger.info("Starting relay on %s:%d", relay_settings.host, relay_settings.port)
        uvicorn.run(
            create_app(relay_settings),
            host=relay_settings.host,
            port=relay_settings.port,
            log_level=args.log_level.lower(),
        )
        return 0

    try:
        client_settings = _client_settings(settings.client, args)
    except ValueError as exc:
        parser.error(str(exc))
    try:
        return asyncio.run(join_room(client_settings, args))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 130


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point used by the ``mesh-call`` console script."""

    return run(argv)


__all__ = ["LoggingObserver", "build_parser", "join_room", "main", "run"]


if __name__ == "__main__":  # pragma: no cover - module behaviour
    sys.exit(main())
