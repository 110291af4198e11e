"""Configuration for the relay server and the client session."""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Mapping, Sequence

logger = logging.getLogger(__name__)

DEFAULT_RELAY_HOST = "0.0.0.0"
DEFAULT_RELAY_PORT = 3000
DEFAULT_RELAY_URL = "ws://127.0.0.1:3000/ws"
DEFAULT_DISPLAY_NAME = "Anonymous"
DEFAULT_ICE_SERVERS: tuple[str, ...] = ("stun:stun.l.google.com:19302",)
DEFAULT_CAPTURE_CHOICE = "auto"
DEFAULT_MAX_PENDING_CANDIDATES = 256
DEFAULT_CHAT_HISTORY = 200

ENV_PREFIX = "MESHCALL_"

CAPTURE_CHOICES = ("auto", "device", "synthetic")


@dataclass(frozen=True, slots=True)
class RelaySettings:
    """Listening address of the relay server."""

    host: str = DEFAULT_RELAY_HOST
    port: int = DEFAULT_RELAY_PORT

    def __post_init__(self) -> None:
        if not isinstance(self.host, str) or not self.host.strip():
            raise ValueError("Relay host must be a non-empty string")
        try:
            port = int(self.port)
        except (TypeError, ValueError) as exc:
            raise ValueError("Relay port must be an integer") from exc
        if not 0 < port < 65536:
            raise ValueError("Relay port must be between 1 and 65535")
        object.__setattr__(self, "host", self.host.strip())
        object.__setattr__(self, "port", port)

    def to_dict(self) -> dict[str, object]:
        return {"host": self.host, "port": self.port}


@dataclass(frozen=True, slots=True)
class ClientSettings:
    """Options for a participant process."""

    relay_url: str = DEFAULT_RELAY_URL
    display_name: str = DEFAULT_DISPLAY_NAME
    ice_servers: tuple[str, ...] = field(default=DEFAULT_ICE_SERVERS)
    capture: str = DEFAULT_CAPTURE_CHOICE
    video_width: int = 640
    video_height: int = 480
    video_fps: int = 30
    max_pending_candidates: int = DEFAULT_MAX_PENDING_CANDIDATES
    chat_history: int = DEFAULT_CHAT_HISTORY

    def __post_init__(self) -> None:
        url = self.relay_url.strip() if isinstance(self.relay_url, str) else ""
        if not url.startswith(("ws://", "wss://")):
            raise ValueError("Relay URL must use the ws:// or wss:// scheme")
        object.__setattr__(self, "relay_url", url)

        name = self.display_name.strip() if isinstance(self.display_name, str) else ""
        if not name:
            raise ValueError("Display name must not be empty")
        if len(name) > 64:
            raise ValueError("Display name must be at most 64 characters")
        object.__setattr__(self, "display_name", name)

        if isinstance(self.ice_servers, str):
            servers: Sequence[object] = [self.ice_servers]
        else:
            servers = list(self.ice_servers)
        cleaned: list[str] = []
        for server in servers:
            if not isinstance(server, str) or not server.strip():
                raise ValueError("ICE server URLs must be non-empty strings")
            if not server.strip().startswith(("stun:", "stuns:", "turn:", "turns:")):
                raise ValueError(f"Unsupported ICE server URL {server!r}")
            cleaned.append(server.strip())
        object.__setattr__(self, "ice_servers", tuple(cleaned))

        capture = self.capture.strip().lower() if isinstance(self.capture, str) else ""
        if capture not in CAPTURE_CHOICES:
            raise ValueError(f"Capture choice must be one of {', '.join(CAPTURE_CHOICES)}")
        object.__setattr__(self, "capture", capture)

        for name_, lower, upper in (
            ("video_width", 16, 7680),
            ("video_height", 16, 4320),
            ("video_fps", 1, 60),
            ("max_pending_candidates", 1, 10000),
            ("chat_history", 0, 10000),
        ):
            value = getattr(self, name_)
            try:
                number = int(value)
            except (TypeError, ValueError) as exc:
                raise ValueError(f"{name_} must be an integer") from exc
            if not lower <= number <= upper:
                raise ValueError(f"{name_} must be between {lower} and {upper}")
            object.__setattr__(self, name_, number)

    def to_dict(self) -> dict[str, object]:
        return {
            "relay_url": self.relay_url,
            "display_name": self.display_name,
            "ice_servers": list(self.ice_servers),
            "capture": self.capture,
            "video_width": self.video_width,
            "video_height": self.video_height,
            "video_fps": self.video_fps,
            "max_pending_candidates": self.max_pending_candidates,
            "chat_history": self.chat_history,
        }


@dataclass(frozen=True, slots=True)
class Settings:
    relay: RelaySettings = field(default_factory=RelaySettings)
    client: ClientSettings = field(default_factory=ClientSettings)


_RELAY_ENV = {
    "HOST": ("host", str),
    "PORT": ("port", int),
}

_CLIENT_ENV = {
    "RELAY_URL": ("relay_url", str),
    "DISPLAY_NAME": ("display_name", str),
    "ICE_SERVERS": ("ice_servers", lambda value: tuple(part for part in value.split(",") if part.strip())),
    "CAPTURE": ("capture", str),
    "VIDEO_WIDTH": ("video_width", int),
    "VIDEO_HEIGHT": ("video_height", int),
    "VIDEO_FPS": ("video_fps", int),
    "MAX_PENDING_CANDIDATES": ("max_pending_candidates", int),
    "CHAT_HISTORY": ("chat_history", int),
}


def _section(payload: Mapping[str, Any], name: str) -> dict[str, Any]:
    section = payload.get(name, {})
    if section is None:
        return {}
    if not isinstance(section, Mapping):
        raise ValueError(f"Configuration section {name!r} must be an object")
    return dict(section)


def _apply_env(
    base: Any,
    mapping: Mapping[str, tuple[str, Any]],
    env: Mapping[str, str],
) -> Any:
    for suffix, (attribute, converter) in mapping.items():
        raw = env.get(f"{ENV_PREFIX}{suffix}")
        if raw is None or not raw.strip():
            continue
        try:
            candidate = replace(base, **{attribute: converter(raw.strip())})
        except (TypeError, ValueError):
            logger.warning("Invalid %s%s value %r; ignoring", ENV_PREFIX, suffix, raw)
            continue
        base = candidate
    return base


def load_settings(
    path: Path | str | None = None,
    *,
    env: Mapping[str, str] | None = None,
) -> Settings:
    """Load settings from an optional JSON file and ``MESHCALL_*`` overrides."""

    if env is None:
        env = os.environ
    payload: dict[str, Any] = {}
    if path is not None:
        config_path = Path(path)
        if config_path.exists():
            try:
                loaded = json.loads(config_path.read_text(encoding="utf-8"))
            except ValueError as exc:
                raise ValueError(f"Configuration file {config_path} is not valid JSON") from exc
            if not isinstance(loaded, dict):
                raise ValueError("Configuration file must contain a JSON object")
            payload = loaded
        else:
            logger.info("Configuration file %s not found; using defaults", config_path)

    relay_payload = _section(payload, "relay")
    client_payload = _section(payload, "client")
    if "ice_servers" in client_payload and isinstance(client_payload["ice_servers"], list):
        client_payload["ice_servers"] = tuple(client_payload["ice_servers"])
    try:
        relay = RelaySettings(**relay_payload)
        client = ClientSettings(**client_payload)
    except TypeError as exc:
        raise ValueError(f"Unknown configuration option: {exc}") from exc

    return Settings(
        relay=_apply_env(relay, _RELAY_ENV, env),
        client=_apply_env(client, _CLIENT_ENV, env),
    )


__all__ = [
    "CAPTURE_CHOICES",
    "ClientSettings",
    "DEFAULT_DISPLAY_NAME",
    "DEFAULT_ICE_SERVERS",
    "RelaySettings",
    "Settings",
    "load_settings",
]
