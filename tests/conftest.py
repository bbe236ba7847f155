"""
Shared pytest fixtures for the sft_snapit test suite.

The Windows bridge is never launched: tests either replace _run_bridge with a
scripted fake or patch subprocess.run underneath it.
"""

import io
import json
import os
import sys
import tempfile
from pathlib import Path

import pytest

# Keep TSV logs out of the source tree; must happen before the import below
os.environ.setdefault("SFB_LOG_DIR", tempfile.mkdtemp(prefix="sft_snapit_logs_"))

# Add scripts/ to path
SCRIPTS_DIR = Path(__file__).parent.parent / "scripts"
sys.path.insert(0, str(SCRIPTS_DIR))

import sft_snapit as snap  # noqa: E402


def png_bytes(width, height, color=(30, 120, 200), mode="RGB"):
    """Encode a solid image as PNG, the format the bridge returns."""
    from PIL import Image

    buf = io.BytesIO()
    Image.new(mode, (width, height), color).save(buf, format="PNG")
    return buf.getvalue()


def noise_png(width, height):
    """Gaussian noise image; compresses badly, which forces fallback stages."""
    from PIL import Image

    buf = io.BytesIO()
    Image.effect_noise((width, height), 100).convert("RGB").save(buf, format="PNG", compress_level=1)
    return buf.getvalue()


def layout_output(layout_doc):
    return snap.BridgeOutput("LAYOUT:" + json.dumps(layout_doc) + "\r\n", "", 0, 5)


LAYOUT_DOC = {
    "virtual": {"x": -1280, "y": 0, "width": 5760, "height": 1440},
    # Deliberately not in left-to-right order
    "monitors": [
        {"x": 0, "y": 0, "width": 1920, "height": 1080, "primary": True, "name": "\\\\.\\DISPLAY1"},
        {"x": 1920, "y": 0, "width": 2560, "height": 1440, "primary": False, "name": "\\\\.\\DISPLAY2"},
        {"x": -1280, "y": 0, "width": 1280, "height": 1024, "primary": False, "name": "\\\\.\\DISPLAY3"},
    ],
    "windows": [
        {"handle": 101, "title": "Inbox - Google Chrome", "process": "chrome", "x": 0, "y": 0, "width": 1200, "height": 800},
        {"handle": 102, "title": "Untitled - Notepad", "process": "notepad", "x": 100, "y": 100, "width": 640, "height": 480},
        {"handle": 103, "title": "Docs - Google Chrome", "process": "chrome", "x": 1920, "y": 0, "width": 1600, "height": 900},
        {"handle": 104, "title": "Terminal", "process": "WindowsTerminal", "x": -1280, "y": 0, "width": 1280, "height": 1000},
    ],
}


@pytest.fixture
def layout():
    return snap._parse_layout("LAYOUT:" + json.dumps(LAYOUT_DOC))


class FakeBridge:
    """Scripted stand-in for _run_bridge.

    Each queued reply is a BridgeOutput or a callable taking the
    BridgeCommand and returning one.
    """

    def __init__(self):
        self.replies = []
        self.commands = []

    def queue(self, *replies):
        self.replies.extend(replies)
        return self

    def __call__(self, command):
        self.commands.append(command)
        assert self.replies, f"unexpected bridge call: {command.purpose}"
        reply = self.replies.pop(0)
        return reply(command) if callable(reply) else reply


@pytest.fixture
def fake_bridge(monkeypatch):
    bridge = FakeBridge()
    monkeypatch.setattr(snap, "_run_bridge", bridge)
    return bridge


@pytest.fixture
def fake_wslpath(monkeypatch):
    """Map non-/mnt paths the way wslpath -w does for a distro named Ubuntu."""

    def _fake(path, flag):
        if flag == "-w":
            return "\\\\wsl.localhost\\Ubuntu" + path.replace("/", "\\")
        raise AssertionError(f"unexpected wslpath flag {flag}")

    monkeypatch.setattr(snap, "_wslpath", _fake)
    return _fake
