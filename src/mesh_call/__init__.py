"""mesh-call: signalling relay and mesh call participant.

The FastAPI and media stacks are imported on first use so the relay hub and
the protocol helpers stay importable on their own.
"""

from typing import TYPE_CHECKING

from .protocol import SignalKind, decode_message, encode_message
from .relay import Relay
from .version import APP_VERSION

if TYPE_CHECKING:  # pragma: no cover - import for typing only
    from fastapi import FastAPI

    from .config import RelaySettings


def create_app(settings: "RelaySettings | None" = None, *, relay: Relay | None = None) -> "FastAPI":
    from .app import create_app as _create_app

    return _create_app(settings, relay=relay)


__all__ = [
    "APP_VERSION",
    "Relay",
    "SignalKind",
    "create_app",
    "decode_message",
    "encode_message",
]
