"""Diagnostics helpers for the media stack and capture devices."""
from __future__ import annotations

import asyncio
import importlib
import os
import sys
from typing import Sequence

from .capture import CaptureError, DeviceCapture, DeviceSpec, default_devices
from .version import APP_VERSION

WEBRTC_PIP_HINT = (
    "Ensure PyAV and aiortc are installed inside the active environment "
    "(`pip install av aiortc`)."
)

WEBRTC_PREREQS_HINT = (
    "Install the FFmpeg and libvpx/opus development packages for your platform "
    "before reinstalling PyAV and aiortc."
)

WEBSOCKETS_HINT = "Install the relay client with `pip install websockets`."

CAPTURE_DEVICE_HINT = (
    "No capture devices are configured for this platform; use "
    "`--capture synthetic` (or MESHCALL_CAPTURE=synthetic) to join without devices."
)


def summarise_exception(exc: BaseException) -> str:
    """Collect the unique error messages from an exception chain."""

    messages: list[str] = []
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        text = str(current).strip() or type(current).__name__
        if text not in messages:
            messages.append(text)
        current = current.__cause__ or current.__context__
    return " | ".join(messages)


def diagnose_webrtc_stack() -> dict[str, object]:
    """Return diagnostic details about the WebRTC software stack."""

    status = "ok"
    details: list[str] = []
    hints: list[str] = []
    versions: dict[str, str] = {}

    def mark_error(detail: str) -> None:
        nonlocal status
        status = "error"
        details.append(detail)

    def add_hint(text: str) -> None:
        if text not in hints:
            hints.append(text)

    modules = (
        ("av", "PyAV"),
        ("aiortc", "aiortc"),
        ("websockets", "websockets"),
    )

    for module_name, friendly in modules:
        try:
            module = importlib.import_module(module_name)
        except ModuleNotFoundError:
            mark_error(f"{friendly} module not found.")
            add_hint(WEBSOCKETS_HINT if module_name == "websockets" else WEBRTC_PIP_HINT)
            continue
        except Exception as exc:  # pragma: no cover - depends on runtime environment
            mark_error(f"{friendly} import failed: {summarise_exception(exc)}")
            add_hint(WEBRTC_PREREQS_HINT)
            continue

        version = getattr(module, "__version__", None)
        if isinstance(version, str):
            versions[module_name] = version

        if module_name == "av" and not hasattr(module, "AudioFrame"):
            mark_error("PyAV AudioFrame support unavailable.")
            add_hint(WEBRTC_PIP_HINT)

        if module_name == "aiortc":
            try:
                importlib.import_module("aiortc.contrib.media")
            except Exception as exc:  # pragma: no cover - depends on runtime env
                mark_error(f"aiortc media helpers unavailable: {summarise_exception(exc)}")
                add_hint(WEBRTC_PREREQS_HINT)

    payload: dict[str, object] = {"status": status, "details": details}
    if hints:
        payload["hints"] = hints
    if versions:
        payload["versions"] = versions
    return payload


async def _probe_devices(devices: dict[str, DeviceSpec]) -> dict[str, str]:
    capture = DeviceCapture(devices)
    results: dict[str, str] = {}
    acquirers = {
        "microphone": capture.acquire_audio,
        "camera": capture.acquire_video,
        "screen": capture.acquire_screen,
    }
    for name, acquire in acquirers.items():
        if name not in devices:
            continue
        try:
            track = await acquire()
        except CaptureError as exc:
            results[name] = f"error: {summarise_exception(exc)}"
        else:
            track.stop()
            results[name] = "ok"
    return results


def diagnose_capture(
    *,
    devices: dict[str, DeviceSpec] | None = None,
    probe: bool = False,
) -> dict[str, object]:
    """Report configured capture devices and optionally try to open them."""

    if devices is None:
        devices = default_devices()
    status = "ok"
    details: list[str] = []
    hints: list[str] = []
    entries: dict[str, dict[str, object]] = {}

    if not devices:
        status = "warning"
        details.append(f"No capture devices known for platform {sys.platform}.")
        hints.append(CAPTURE_DEVICE_HINT)

    for name, spec in devices.items():
        entry: dict[str, object] = {"file": spec.file, "format": spec.format}
        if spec.file.startswith("/dev/"):
            present = os.path.exists(spec.file)
            entry["present"] = present
            if not present:
                status = "warning"
                details.append(f"{name} device {spec.file} not found.")
        entries[name] = entry

    if probe and devices:
        for name, result in asyncio.run(_probe_devices(devices)).items():
            entries[name]["probe"] = result
            if result != "ok":
                status = "error"
                details.append(f"{name} could not be opened: {result[len('error: '):]}")

    payload: dict[str, object] = {"status": status, "details": details, "devices": entries}
    if hints:
        payload["hints"] = hints
    return payload


def collect_diagnostics(*, probe: bool = False) -> dict[str, object]:
    """Collect diagnostics payload used by both the CLI and API."""

    return {
        "version": APP_VERSION,
        "platform": sys.platform,
        "webrtc": diagnose_webrtc_stack(),
        "capture": diagnose_capture(probe=probe),
    }


def _print_section(title: str, section: object) -> None:
    if not isinstance(section, dict):
        section = {}
    if section.get("status") == "ok":
        print(f"{title}: OK")
    else:
        print(f"{title} issues detected:")
        for detail in section.get("details", []):
            print(f" - {detail}")
        hints = section.get("hints")
        if hints:
            print("Hints:")
            for hint in hints:
                print(f" * {hint}")


def render_report(payload: dict[str, object]) -> None:
    print(f"mesh-call diagnostics (version {APP_VERSION})")
    webrtc_stack = payload.get("webrtc", {})
    _print_section("WebRTC stack", webrtc_stack)
    if isinstance(webrtc_stack, dict):
        for name, version in dict(webrtc_stack.get("versions", {})).items():
            print(f" - {name} {version}")
    capture = payload.get("capture", {})
    _print_section("Capture devices", capture)
    if isinstance(capture, dict):
        for name, entry in dict(capture.get("devices", {})).items():
            summary = f"{entry.get('file')} ({entry.get('format') or 'auto'})"
            if "probe" in entry:
                summary += f" probe {entry['probe']}"
            print(f" - {name}: {summary}")


def diagnostics_exit_code(payload: dict[str, object]) -> int:
    """Return 1 when any section reports an error."""

    sections: Sequence[object] = (payload.get("webrtc"), payload.get("capture"))
    for section in sections:
        if isinstance(section, dict) and section.get("status") == "error":
            return 1
    return 0


__all__ = [
    "collect_diagnostics",
    "diagnostics_exit_code",
    "diagnose_capture",
    "diagnose_webrtc_stack",
    "render_report",
    "summarise_exception",
]
