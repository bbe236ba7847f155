#!/usr/bin/env -S uv run --script
# /// script
# requires-python = ">=3.11"
# dependencies = [
#     "fastmcp",
#     "pillow>=10.0",
# ]
# ///
"""Screen and clipboard capture from WSL through Windows PowerShell.

Three tools, shared by CLI and MCP:
  take_screenshot — capture all monitors, one monitor, or a window (title/process)
  read_clipboard  — read the Windows clipboard as text or image
  list_targets    — enumerate monitors (left-to-right) and visible windows

Direct captures come back as JPEG compressed to fit a 950KB budget. File
captures are written as lossless PNG by Windows itself.

Usage:
    sft_snapit.py shot
    sft_snapit.py shot --monitor 2
    sft_snapit.py shot --window-title "Chrome" --window-index 2
    sft_snapit.py shot --process notepad --save --folder /mnt/c/Users/me/Pictures
    sft_snapit.py shot --jpeg /tmp/screen.jpg --quality 60
    sft_snapit.py clipboard [--format auto|text|image]
    sft_snapit.py targets [--no-windows]
    sft_snapit.py mcp-stdio
"""

import argparse
import base64
import binascii
import io
import json
import os
import re
import struct
import subprocess
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path, PureWindowsPath

# =============================================================================
# LOGGING
# =============================================================================
_LEVELS = {"TRACE": 5, "DEBUG": 10, "INFO": 20, "WARN": 30, "ERROR": 40, "FATAL": 50}
_THRESHOLD = _LEVELS.get(os.environ.get("SFB_LOG_LEVEL", "INFO"), 20)
_LOG_DIR = os.environ.get("SFB_LOG_DIR", "")
_SCRIPT = Path(__file__).stem
_LOG = (
    Path(_LOG_DIR) / f"{_SCRIPT}_log.tsv"
    if _LOG_DIR
    else Path(__file__).parent / f"{_SCRIPT}_log.tsv"
)
_HEADER = "#timestamp\tscript\tlevel\tevent\tmessage\tdetail\tmetrics\ttrace\n"


def _log(
    level: str,
    event: str,
    msg: str,
    *,
    detail: str = "",
    metrics: str = "",
    trace: str = "",
):
    """Append TSV log line. Logging never crashes the main flow."""
    if _LEVELS.get(level, 20) < _THRESHOLD:
        return
    try:
        ts = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S")
        write_header = not _LOG.exists()
        with open(_LOG, "a") as f:
            if write_header:
                f.write(_HEADER)
            f.write(
                f"{ts}\t{_SCRIPT}\t{level}\t{event}\t{msg}\t{detail}\t{metrics}\t{trace}\n"
            )
    except Exception:
        pass


# =============================================================================
# CONFIGURATION
# =============================================================================
EXPOSED = ["take_screenshot", "read_clipboard", "list_targets"]

CONFIG = {
    "version": "2.2.0",
    "powershell": os.environ.get("SFB_SNAPIT_POWERSHELL", "powershell.exe"),
    "bridge_timeout_s": float(os.environ.get("SFB_SNAPIT_TIMEOUT", "60")),
    "max_output_bytes": 50 * 1024 * 1024,  # uncompressed PNG of a 3x4K desktop fits
    "max_bytes": 950 * 1024,               # inline image budget (MCP result limit is 1MB)
    "default_quality": 80,
    "quality_floor": 20,
    "quality_step": 10,
    # (stage, width, quality); None keeps the requested quality
    "stages": [("primary", 1920, None), ("medium", 1280, 60), ("small", 800, 50)],
    "settle_ms": 200,
    "default_filename": "screenshot.png",
    "default_folder": "screenshots",
}

CLIPBOARD_FORMATS = ("auto", "text", "image")

# Sentinel tokens written by the bridge scripts
BASE64 = "BASE64:"
ERROR = "ERROR:"
WINDOW_NOT_FOUND = "WINDOW_NOT_FOUND:"
PROCESS_NOT_FOUND = "PROCESS_NOT_FOUND:"
MULTIPLE_WINDOWS_FOUND = "MULTIPLE_WINDOWS_FOUND:"
TEXT_CONTENT = "TEXT_CONTENT:"
EMPTY_CLIPBOARD = "EMPTY_CLIPBOARD"
NO_TEXT_IN_CLIPBOARD = "NO_TEXT_IN_CLIPBOARD"
NO_IMAGE_IN_CLIPBOARD = "NO_IMAGE_IN_CLIPBOARD"
LAYOUT = "LAYOUT:"

_MARKERS = (
    BASE64, ERROR, WINDOW_NOT_FOUND, PROCESS_NOT_FOUND, MULTIPLE_WINDOWS_FOUND,
    TEXT_CONTENT, EMPTY_CLIPBOARD, NO_TEXT_IN_CLIPBOARD, NO_IMAGE_IN_CLIPBOARD, LAYOUT,
)

_CLIPBOARD_EMPTY_REASONS = {
    EMPTY_CLIPBOARD: "empty",
    NO_TEXT_IN_CLIPBOARD: "no_text",
    NO_IMAGE_IN_CLIPBOARD: "no_image",
}
_CLIPBOARD_MARKERS = (*_CLIPBOARD_EMPTY_REASONS, TEXT_CONTENT, BASE64, ERROR)

_BASE64_RUN_RE = re.compile(r"[A-Za-z0-9+/= \t]*")

# CLIXML framing PowerShell leaks onto stderr
_NOISE = ("<Objs", "</Objs>", "<Obj", "</Obj>", "#< CLIXML")

CANCEL_LABEL = "Cancel capture"


# =============================================================================
# ERRORS
# =============================================================================

class SnapError(Exception):
    """Base for every failure surfaced as the single outcome of a request."""


class InvalidRequestError(SnapError):
    pass


class InvalidMonitorIndexError(SnapError):
    def __init__(self, index: int, count: int):
        self.index = index
        self.count = count
        super().__init__(f"Monitor {index} not found. Available monitors: 1 to {count}")


class TargetNotFoundError(SnapError):
    def __init__(self, kind: str, term: str):
        self.kind = kind
        self.term = term
        super().__init__(_format_not_found(kind, term))


class AmbiguousTargetError(SnapError):
    def __init__(self, ambiguous: "Ambiguous"):
        self.ambiguous = ambiguous
        super().__init__(_format_disambiguation(ambiguous))


class BridgeFailureError(SnapError):
    pass


class OutputParseError(SnapError):
    pass


# =============================================================================
# DATA MODEL
# =============================================================================

@dataclass(frozen=True)
class Rect:
    x: int
    y: int
    width: int
    height: int

    @property
    def right(self) -> int:
        return self.x + self.width

    @property
    def bottom(self) -> int:
        return self.y + self.height

    def as_dict(self) -> dict:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}


@dataclass(frozen=True)
class Monitor:
    rect: Rect
    primary: bool = False
    name: str = ""


@dataclass(frozen=True)
class WindowMatch:
    title: str
    process_name: str
    handle: int = 0
    rect: Rect | None = None


@dataclass(frozen=True)
class DesktopLayout:
    virtual: Rect
    monitors: tuple[Monitor, ...] = ()
    windows: tuple[WindowMatch, ...] = ()


# Target specs: exactly one per request. index None means "not supplied".

@dataclass(frozen=True)
class AllMonitors:
    pass


@dataclass(frozen=True)
class PrimaryMonitor:
    pass


@dataclass(frozen=True)
class MonitorIndex:
    number: int


@dataclass(frozen=True)
class WindowByTitle:
    text: str
    index: int | None = None


@dataclass(frozen=True)
class WindowByProcess:
    name: str
    index: int | None = None


@dataclass(frozen=True)
class CaptureRequest:
    target: object = field(default_factory=AllMonitors)
    return_direct: bool = True
    quality: int = 80
    filename: str = "screenshot.png"
    folder: str | None = None


def _check_area(rect: Rect, label: str):
    if rect.width <= 0 or rect.height <= 0:
        raise SnapError(
            f"{label} has no visible area ({rect.width}x{rect.height}); "
            "it may be minimized or hidden"
        )


@dataclass(frozen=True)
class ScreenTarget:
    rect: Rect
    label: str = "all monitors"

    def __post_init__(self):
        _check_area(self.rect, self.label)


@dataclass(frozen=True)
class WindowTarget:
    handle: int
    title: str
    process_name: str
    rect: Rect
    query: str
    query_kind: str  # "title" | "process"
    index: int | None = None

    def __post_init__(self):
        _check_area(self.rect, f"Window '{self.title}'")


# Parser results

@dataclass(frozen=True)
class ImageBytes:
    data: bytes
    width: int = 0
    height: int = 0


@dataclass(frozen=True)
class TextContent:
    text: str


@dataclass(frozen=True)
class ClipboardEmpty:
    reason: str  # "empty" | "no_text" | "no_image"


@dataclass(frozen=True)
class Ambiguous:
    term: str
    matches: tuple[WindowMatch, ...]
    cancel_line: str = ""


@dataclass(frozen=True)
class NotFound:
    kind: str  # "window" | "process"
    term: str


@dataclass(frozen=True)
class BridgeFailure:
    message: str


@dataclass(frozen=True)
class BridgeError:
    """The bridge caught its own exception and reported it as ERROR:."""
    message: str


@dataclass(frozen=True)
class LayoutRecord:
    layout: DesktopLayout


@dataclass(frozen=True)
class Completed:
    pass


@dataclass(frozen=True)
class CompressedImage:
    data: bytes
    quality: int
    width: int
    height: int
    resized: bool
    stage: str
    attempts: tuple[tuple[int, int, int], ...] = ()

    @property
    def size(self) -> int:
        return len(self.data)


# =============================================================================
# TARGET RESOLVER
# =============================================================================

def _sorted_monitors(layout: DesktopLayout) -> list[Monitor]:
    """Monitors in visual left-to-right order, not enumeration order."""
    return sorted(layout.monitors, key=lambda m: (m.rect.x, m.rect.y))


def _strip_exe(name: str) -> str:
    return name[:-4] if name.lower().endswith(".exe") else name


def _match_windows(windows, needle: str, kind: str) -> list[WindowMatch]:
    """Case-insensitive literal substring match, enumeration order kept."""
    if kind == "process":
        needle = _strip_exe(needle)
    needle = needle.casefold()
    found = []
    for win in windows:
        if not win.title:
            continue
        hay = win.title if kind == "title" else win.process_name
        if needle in hay.casefold():
            found.append(win)
    return found


def _resolve_target(request: CaptureRequest, layout: DesktopLayout):
    """Map a request onto one capture region.

    Returns ScreenTarget, WindowTarget, Ambiguous or NotFound. Raises
    InvalidMonitorIndexError for out-of-range monitor numbers. Read-only.
    """
    spec = request.target

    if isinstance(spec, AllMonitors):
        return ScreenTarget(layout.virtual, "all monitors")

    if isinstance(spec, PrimaryMonitor):
        for mon in layout.monitors:
            if mon.primary:
                return ScreenTarget(mon.rect, "primary monitor")
        raise OutputParseError("Bridge reported no primary monitor")

    if isinstance(spec, MonitorIndex):
        ordered = _sorted_monitors(layout)
        if not 1 <= spec.number <= len(ordered):
            raise InvalidMonitorIndexError(spec.number, len(ordered))
        return ScreenTarget(ordered[spec.number - 1].rect, f"monitor {spec.number}")

    if isinstance(spec, (WindowByTitle, WindowByProcess)):
        if isinstance(spec, WindowByTitle):
            term, kind = spec.text, "title"
        else:
            term, kind = spec.name, "process"
        matches = _match_windows(layout.windows, term, kind)
        if not matches:
            return NotFound("window" if kind == "title" else "process", term)
        if len(matches) == 1:
            chosen = matches[0]
        elif spec.index is not None and 1 <= spec.index <= len(matches):
            chosen = matches[spec.index - 1]
        else:
            return Ambiguous(term, tuple(matches), f"{len(matches) + 1}. {CANCEL_LABEL}")
        return WindowTarget(
            handle=chosen.handle,
            title=chosen.title,
            process_name=chosen.process_name,
            rect=chosen.rect or Rect(0, 0, 0, 0),
            query=term,
            query_kind=kind,
            index=spec.index,
        )

    raise InvalidRequestError(f"Unsupported capture target: {spec!r}")


# =============================================================================
# COMMAND FORMATTER (all PowerShell quoting lives here)
# =============================================================================

# PowerShell treats all of these as single quotes inside '...' literals
_PS_SINGLE_QUOTES = ("'", "‘", "’", "‚", "‛")


def _ps_quote(value) -> str:
    """Render any value as a single-quoted PowerShell literal."""
    text = str(value).replace("\x00", "")
    for q in _PS_SINGLE_QUOTES:
        text = text.replace(q, q + q)
    return f"'{text}'"


def _encode_command(script: str) -> str:
    """UTF-16LE + base64, the form -EncodedCommand expects."""
    return base64.b64encode(script.encode("utf-16-le")).decode("ascii")


_PLACEHOLDER_RE = re.compile(r"\{\{(\w+)\}\}")


def _fill(template: str, **values: str) -> str:
    """Substitute {{name}} placeholders in one pass; inserted values are never rescanned."""
    missing = sorted(set(_PLACEHOLDER_RE.findall(template)) - set(values))
    if missing:
        raise InvalidRequestError(f"Bridge script placeholders left unfilled: {', '.join(missing)}")
    return _PLACEHOLDER_RE.sub(lambda m: values[m.group(1)], template)


@dataclass(frozen=True)
class BridgeCommand:
    """One immutable PowerShell payload. Only the formatter builds these."""
    script: str
    purpose: str

    @property
    def encoded(self) -> str:
        return _encode_command(self.script)

    def argv(self) -> list[str]:
        return [
            CONFIG["powershell"],
            "-ExecutionPolicy", "Bypass",
            "-NoProfile",
            "-NonInteractive",
            "-OutputFormat", "Text",
            "-EncodedCommand", self.encoded,
        ]


_PS_PRELUDE = r"""
$ErrorActionPreference = 'Stop'
try { [Console]::OutputEncoding = [System.Text.Encoding]::UTF8 } catch { }
Add-Type -AssemblyName System.Windows.Forms
Add-Type -AssemblyName System.Drawing
"""

_PS_DPI = r"""
Add-Type @"
using System;
using System.Runtime.InteropServices;
public class SnapDpi {
  [DllImport("user32.dll")] public static extern bool SetProcessDPIAware();
  [DllImport("shcore.dll")] public static extern int SetProcessDpiAwareness(int value);
}
"@
# Per-monitor awareness keeps bounds and pixels aligned on mixed-scaling setups
try { [SnapDpi]::SetProcessDpiAwareness(2) | Out-Null } catch { [SnapDpi]::SetProcessDPIAware() | Out-Null }
"""

_PS_WINDOWS = r"""
Add-Type @"
using System;
using System.Collections.Generic;
using System.Diagnostics;
using System.Runtime.InteropServices;
using System.Text;
public class SnapWin {
  [StructLayout(LayoutKind.Sequential)]
  public struct RECT { public int Left; public int Top; public int Right; public int Bottom; }
  public delegate bool EnumWindowsProc(IntPtr hWnd, IntPtr lParam);
  [DllImport("user32.dll")] public static extern bool EnumWindows(EnumWindowsProc enumProc, IntPtr lParam);
  [DllImport("user32.dll", CharSet = CharSet.Unicode)] public static extern int GetWindowText(IntPtr hWnd, StringBuilder lpString, int nMaxCount);
  [DllImport("user32.dll")] public static extern bool IsWindowVisible(IntPtr hWnd);
  [DllImport("user32.dll")] public static extern bool IsWindow(IntPtr hWnd);
  [DllImport("user32.dll")] public static extern uint GetWindowThreadProcessId(IntPtr hWnd, out uint processId);
  [DllImport("user32.dll")] public static extern bool GetWindowRect(IntPtr hWnd, out RECT lpRect);
  [DllImport("user32.dll")] public static extern bool SetForegroundWindow(IntPtr hWnd);
  public class Info {
    public long Handle; public string Title; public string ProcessName;
    public int Left; public int Top; public int Width; public int Height;
  }
  public static List<Info> Visible() {
    List<Info> found = new List<Info>();
    EnumWindows(delegate (IntPtr hWnd, IntPtr lParam) {
      if (!IsWindowVisible(hWnd)) return true;
      StringBuilder title = new StringBuilder(512);
      GetWindowText(hWnd, title, title.Capacity);
      if (title.Length == 0) return true;
      uint pid;
      GetWindowThreadProcessId(hWnd, out pid);
      string name;
      try { name = Process.GetProcessById((int)pid).ProcessName; } catch { return true; }
      RECT r;
      GetWindowRect(hWnd, out r);
      found.Add(new Info {
        Handle = hWnd.ToInt64(), Title = title.ToString(), ProcessName = name,
        Left = r.Left, Top = r.Top, Width = r.Right - r.Left, Height = r.Bottom - r.Top
      });
      return true;
    }, IntPtr.Zero);
    return found;
  }
}
"@
"""

_PS_LAYOUT = r"""
$vs = [System.Windows.Forms.SystemInformation]::VirtualScreen
$monitors = @()
foreach ($s in [System.Windows.Forms.Screen]::AllScreens) {
  $monitors += @{ x = $s.Bounds.X; y = $s.Bounds.Y; width = $s.Bounds.Width; height = $s.Bounds.Height; primary = $s.Primary; name = $s.DeviceName }
}
$windows = @()
if ({{include_windows}}) {
  foreach ($w in [SnapWin]::Visible()) {
    $windows += @{ handle = $w.Handle; title = $w.Title; process = $w.ProcessName; x = $w.Left; y = $w.Top; width = $w.Width; height = $w.Height }
  }
}
$layout = @{
  virtual = @{ x = $vs.X; y = $vs.Y; width = $vs.Width; height = $vs.Height }
  monitors = $monitors
  windows = $windows
}
Write-Output ('LAYOUT:' + (ConvertTo-Json -InputObject $layout -Depth 4 -Compress))
"""

_PS_CAPTURE_RECT = r"""
$left = {{x}}; $top = {{y}}; $width = {{width}}; $height = {{height}}
"""

# Re-search only when the enumerated handle died before capture
_PS_CAPTURE_WINDOW = r"""
$hwnd = New-Object IntPtr ([int64]{{handle}})
$query = {{query}}
$mode = {{mode}}
$index = {{index}}
if (-not [SnapWin]::IsWindow($hwnd)) {
  $needle = $query
  if ($mode -eq 'process' -and $needle.ToLower().EndsWith('.exe')) { $needle = $needle.Substring(0, $needle.Length - 4) }
  $found = @()
  foreach ($w in [SnapWin]::Visible()) {
    if ($mode -eq 'title') { $hay = $w.Title } else { $hay = $w.ProcessName }
    if ($hay.IndexOf($needle, [System.StringComparison]::OrdinalIgnoreCase) -ge 0) { $found += $w }
  }
  if ($found.Count -eq 0) {
    if ($mode -eq 'title') { [Console]::Error.WriteLine('WINDOW_NOT_FOUND:' + $query) }
    else { [Console]::Error.WriteLine('PROCESS_NOT_FOUND:' + $query) }
    exit 1
  }
  if ($found.Count -gt 1 -and -not ($index -ge 1 -and $index -le $found.Count)) {
    $lines = @()
    for ($i = 0; $i -lt $found.Count; $i++) {
      $lines += ('{0}. {1} ({2}.exe)' -f ($i + 1), $found[$i].Title, $found[$i].ProcessName)
    }
    $lines += ('{0}. Cancel capture' -f ($found.Count + 1))
    [Console]::Error.WriteLine('MULTIPLE_WINDOWS_FOUND:' + $query + ':' + ($lines -join "`n"))
    exit 1
  }
  if ($found.Count -eq 1) { $pick = 0 } else { $pick = $index - 1 }
  $hwnd = New-Object IntPtr ([int64]$found[$pick].Handle)
}
[SnapWin]::SetForegroundWindow($hwnd) | Out-Null
Start-Sleep -Milliseconds {{settle_ms}}
$rect = New-Object SnapWin+RECT
[SnapWin]::GetWindowRect($hwnd, [ref]$rect) | Out-Null
$left = $rect.Left; $top = $rect.Top
$width = $rect.Right - $rect.Left; $height = $rect.Bottom - $rect.Top
if ($width -le 0 -or $height -le 0) { throw ('Window has no visible area: ' + $query) }
"""

_PS_GRAB = r"""
$bitmap = New-Object System.Drawing.Bitmap($width, $height)
$graphics = [System.Drawing.Graphics]::FromImage($bitmap)
$graphics.CopyFromScreen($left, $top, 0, 0, $bitmap.Size)
$graphics.Dispose()
"""

_PS_EMIT_DIRECT = r"""
$ms = New-Object System.IO.MemoryStream
$bitmap.Save($ms, [System.Drawing.Imaging.ImageFormat]::Png)
Write-Output ('BASE64:' + [Convert]::ToBase64String($ms.ToArray()))
$ms.Dispose()
$bitmap.Dispose()
"""

_PS_EMIT_FILE = r"""
$bitmap.Save({{path}}, [System.Drawing.Imaging.ImageFormat]::Png)
$bitmap.Dispose()
"""

_PS_CLIPBOARD = r"""
$format = {{format}}
$hasText = [System.Windows.Forms.Clipboard]::ContainsText()
$hasImage = [System.Windows.Forms.Clipboard]::ContainsImage()
if ($format -eq 'auto') {
  if ($hasImage) { $format = 'image' }
  elseif ($hasText) { $format = 'text' }
  else { Write-Output 'EMPTY_CLIPBOARD'; exit 0 }
}
if ($format -eq 'text') {
  if (-not $hasText) { Write-Output 'NO_TEXT_IN_CLIPBOARD'; exit 0 }
  $clipboardText = Get-Clipboard -Raw
  if ($null -eq $clipboardText) { Write-Output 'EMPTY_CLIPBOARD'; exit 0 }
  Write-Output ('TEXT_CONTENT:' + $clipboardText)
} elseif ($format -eq 'image') {
  if (-not $hasImage) { Write-Output 'NO_IMAGE_IN_CLIPBOARD'; exit 0 }
  $image = [System.Windows.Forms.Clipboard]::GetImage()
  if ($null -eq $image) { Write-Output 'NO_IMAGE_IN_CLIPBOARD'; exit 0 }
  $ms = New-Object System.IO.MemoryStream
  $image.Save($ms, [System.Drawing.Imaging.ImageFormat]::Png)
  Write-Output ('BASE64:' + [Convert]::ToBase64String($ms.ToArray()))
  $ms.Dispose()
  $image.Dispose()
}
"""


def _wrap(*parts: str) -> str:
    """Join script parts inside one try/catch that reports ERROR: and exits 1."""
    body = "".join(parts)
    return "try {\n" + body + "\n} catch {\n  Write-Output \"ERROR: $_\"\n  exit 1\n}\n"


def _format_layout_command(include_windows: bool = False) -> BridgeCommand:
    parts = [_PS_PRELUDE, _PS_DPI]
    if include_windows:
        parts.append(_PS_WINDOWS)
    parts.append(_fill(_PS_LAYOUT, include_windows="$true" if include_windows else "$false"))
    return BridgeCommand(_wrap(*parts), "layout")


def _format_capture_command(target, destination: str | None = None) -> BridgeCommand:
    """Render a capture script for a resolved target.

    destination None means Direct mode (BASE64 on stdout); otherwise the
    Windows path the bridge saves a PNG to.
    """
    parts = [_PS_PRELUDE, _PS_DPI]
    if isinstance(target, ScreenTarget):
        r = target.rect
        parts.append(_fill(
            _PS_CAPTURE_RECT,
            x=str(int(r.x)), y=str(int(r.y)),
            width=str(int(r.width)), height=str(int(r.height)),
        ))
    elif isinstance(target, WindowTarget):
        parts.append(_PS_WINDOWS)
        parts.append(_fill(
            _PS_CAPTURE_WINDOW,
            handle=str(int(target.handle)),
            query=_ps_quote(target.query),
            mode=_ps_quote(target.query_kind),
            index=str(int(target.index or 0)),
            settle_ms=str(int(CONFIG["settle_ms"])),
        ))
    else:
        raise InvalidRequestError(f"Cannot capture unresolved target: {target!r}")

    parts.append(_PS_GRAB)
    if destination is None:
        parts.append(_PS_EMIT_DIRECT)
    else:
        parts.append(_fill(_PS_EMIT_FILE, path=_ps_quote(destination)))
    return BridgeCommand(_wrap(*parts), "capture")


def _format_clipboard_command(fmt: str) -> BridgeCommand:
    if fmt not in CLIPBOARD_FORMATS:
        raise InvalidRequestError(f"format must be one of {', '.join(CLIPBOARD_FORMATS)} (got {fmt!r})")
    return BridgeCommand(
        _wrap(_PS_PRELUDE, _fill(_PS_CLIPBOARD, format=_ps_quote(fmt))),
        "clipboard",
    )


# =============================================================================
# BRIDGE EXECUTOR
# =============================================================================

@dataclass(frozen=True)
class BridgeOutput:
    stdout: str
    stderr: str
    returncode: int
    elapsed_ms: int = 0

    @property
    def combined(self) -> str:
        return self.stdout + self.stderr


def _run_bridge(command: BridgeCommand) -> BridgeOutput:
    """Run powershell.exe with the encoded payload. Blocks until it exits.

    Non-zero exit is not an error here: the bridge reports domain failures
    (window not found, ambiguity) as sentinel output with exit 1.
    """
    t0 = time.monotonic()
    exe = CONFIG["powershell"]
    timeout = CONFIG["bridge_timeout_s"]
    try:
        proc = subprocess.run(command.argv(), capture_output=True, timeout=timeout)
    except FileNotFoundError:
        _log("ERROR", "bridge", f"{exe} not found", detail=f"purpose={command.purpose}")
        raise BridgeFailureError(
            f"{exe} not found. Run from WSL with Windows interop enabled."
        ) from None
    except subprocess.TimeoutExpired:
        _log("ERROR", "bridge", f"timeout after {timeout}s", detail=f"purpose={command.purpose}")
        raise BridgeFailureError(f"Capture bridge did not finish within {timeout:g}s") from None

    size = len(proc.stdout or b"") + len(proc.stderr or b"")
    elapsed_ms = int((time.monotonic() - t0) * 1000)
    if size > CONFIG["max_output_bytes"]:
        _log("ERROR", "bridge", f"output {size} bytes over cap",
             detail=f"purpose={command.purpose}", metrics=f"elapsed_ms={elapsed_ms}")
        raise BridgeFailureError(
            f"Capture bridge produced {size} bytes, over the {CONFIG['max_output_bytes']} byte limit"
        )

    out = BridgeOutput(
        stdout=(proc.stdout or b"").decode("utf-8", errors="replace"),
        stderr=(proc.stderr or b"").decode("utf-8", errors="replace"),
        returncode=proc.returncode,
        elapsed_ms=elapsed_ms,
    )
    _log("DEBUG", "bridge", f"{command.purpose} exit={proc.returncode}",
         metrics=f"elapsed_ms={elapsed_ms} bytes={size}")
    return out


# =============================================================================
# RESULT PARSER
# =============================================================================

# Term may itself contain ':'; the option list always opens with "1. "
_MULTIPLE_RE = re.compile(
    re.escape(MULTIPLE_WINDOWS_FOUND) + r"(.*?):\s*(1\.\s.*?)(?:DEBUG:|\Z)", re.S
)
_OPTION_RE = re.compile(r"^\d+\.\s+(.*?)(?:\s+\(([^()]*)\))?$")
_ERROR_RE = re.compile(re.escape(ERROR) + r"\s*(.+)")


def _is_noise(line: str) -> bool:
    return any(tag in line for tag in _NOISE)


def _marker_value(text: str, marker: str) -> str:
    """Rest of the line after the first occurrence of marker."""
    start = text.index(marker) + len(marker)
    return text[start:].split("\n", 1)[0].strip()


def _parse_multiple(text: str) -> Ambiguous:
    m = _MULTIPLE_RE.search(text)
    if not m:
        raise OutputParseError("Malformed multiple-window report from bridge")
    term = m.group(1).strip()
    lines = [
        line.strip() for line in m.group(2).split("\n")
        if line.strip() and not _is_noise(line)
    ]
    cancel_line = ""
    if lines and CANCEL_LABEL in lines[-1]:
        cancel_line = lines.pop()
    matches = []
    for line in lines:
        opt = _OPTION_RE.match(line)
        if not opt:
            continue
        matches.append(WindowMatch(title=opt.group(1), process_name=_strip_exe(opt.group(2) or "")))
    if not matches:
        raise OutputParseError(f"Multiple-window report for '{term}' listed no windows")
    return Ambiguous(term, tuple(matches), cancel_line)


def _png_size(data: bytes) -> tuple[int, int]:
    """Width/height from a PNG IHDR; (0, 0) for anything else."""
    if len(data) >= 24 and data[:8] == b"\x89PNG\r\n\x1a\n":
        return struct.unpack(">II", data[16:24])
    return 0, 0


def _extract_image(output: BridgeOutput) -> ImageBytes:
    """Decode the BASE64: payload, read from stdout where the bridge writes it.

    The payload may wrap across lines. It ends at the next marker, at the
    first character outside the base64 alphabet, or after a padded line.
    """
    stdout = output.stdout.replace("\r", "")
    text = stdout if BASE64 in stdout else output.combined.replace("\r", "")
    start = text.index(BASE64) + len(BASE64)
    payload = text[start:]
    cut = min((i for i in (payload.find(mk) for mk in _MARKERS) if i >= 0), default=-1)
    if cut >= 0:
        payload = payload[:cut]
    runs = []
    for line in payload.split("\n"):
        run = _BASE64_RUN_RE.match(line).group(0)
        if run != line and runs:
            break
        runs.append(run)
        if run != line or run.rstrip().endswith("="):
            break
    payload = "".join("".join(runs).split())
    if not payload:
        raise OutputParseError("Bridge emitted an empty image payload")
    try:
        data = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise OutputParseError(f"Bridge image payload is not valid base64: {e}") from None
    width, height = _png_size(data)
    return ImageBytes(data, width, height)


def _parse_layout(text: str) -> DesktopLayout:
    raw = _marker_value(text, LAYOUT)
    try:
        doc = json.loads(raw)
    except json.JSONDecodeError as e:
        raise OutputParseError(f"Bridge layout record is not JSON: {e}") from None

    def as_list(value):
        # ConvertTo-Json collapses one-element arrays on older PowerShell
        if value is None:
            return []
        return value if isinstance(value, list) else [value]

    def rect(d: dict) -> Rect:
        return Rect(int(d.get("x", 0)), int(d.get("y", 0)),
                    int(d.get("width", 0)), int(d.get("height", 0)))

    try:
        monitors = tuple(
            Monitor(rect(m), bool(m.get("primary", False)), str(m.get("name", "")))
            for m in as_list(doc.get("monitors"))
        )
        windows = tuple(
            WindowMatch(
                title=str(w.get("title", "")),
                process_name=str(w.get("process", "")),
                handle=int(w.get("handle", 0)),
                rect=rect(w),
            )
            for w in as_list(doc.get("windows"))
        )
        virtual = rect(doc.get("virtual") or {})
    except (AttributeError, TypeError, ValueError) as e:
        raise OutputParseError(f"Bridge layout record has unexpected shape: {e}") from None
    return DesktopLayout(virtual, monitors, windows)


def _failure(output: BridgeOutput, text: str):
    if ERROR in text:
        m = _ERROR_RE.search(text)
        return BridgeError(m.group(1).strip() if m else "Unknown bridge error")
    if output.returncode != 0:
        return BridgeFailure(output.stderr.strip() or f"Bridge exited with status {output.returncode}")
    return None


def _parse_bridge_output(output: BridgeOutput, flow: str = "capture"):
    """Classify combined bridge output by sentinel, in fixed precedence.

    flow is "capture", "clipboard" or "layout"; it selects which tokens count
    after the window-resolution markers.
    """
    text = output.combined.replace("\r", "")

    # Clipboard text and window titles are user data; window markers only
    # carry meaning in capture output.
    if flow == "capture":
        if MULTIPLE_WINDOWS_FOUND in text:
            return _parse_multiple(text)
        if WINDOW_NOT_FOUND in text:
            return NotFound("window", _marker_value(text, WINDOW_NOT_FOUND))
        if PROCESS_NOT_FOUND in text:
            return NotFound("process", _marker_value(text, PROCESS_NOT_FOUND))

    if flow == "clipboard":
        # The bridge prints exactly one of these; whatever follows it may be
        # arbitrary clipboard text, so the earliest token wins.
        found = [(text.find(mk), mk) for mk in _CLIPBOARD_MARKERS if mk in text]
        if found:
            pos, marker = min(found)
            if marker == TEXT_CONTENT:
                return TextContent(text[pos + len(TEXT_CONTENT):].strip())
            if marker == BASE64:
                return _extract_image(output)
            if marker != ERROR:
                return ClipboardEmpty(_CLIPBOARD_EMPTY_REASONS[marker])
    elif flow == "layout":
        if LAYOUT in text:
            return LayoutRecord(_parse_layout(text))
    else:
        if BASE64 in text:
            return _extract_image(output)

    return _failure(output, text) or Completed()


def _raise_for_outcome(parsed):
    """Turn non-success parser results into the error taxonomy."""
    if isinstance(parsed, Ambiguous):
        raise AmbiguousTargetError(parsed)
    if isinstance(parsed, NotFound):
        raise TargetNotFoundError(parsed.kind, parsed.term)
    if isinstance(parsed, (BridgeError, BridgeFailure)):
        raise BridgeFailureError(parsed.message)


# =============================================================================
# USER-FACING MESSAGES
# =============================================================================

def _exe_name(process: str) -> str:
    return process if process.lower().endswith(".exe") or not process else f"{process}.exe"


def _format_disambiguation(ambiguous: Ambiguous) -> str:
    """Numbered retry prompt: N matches, one cancel line, then guidance."""
    lines = [
        f"{i}. {m.title} ({_exe_name(m.process_name)})"
        for i, m in enumerate(ambiguous.matches, 1)
    ]
    lines.append(ambiguous.cancel_line or f"{len(ambiguous.matches) + 1}. {CANCEL_LABEL}")
    return (
        f'Multiple windows found matching "{ambiguous.term}". Please choose an option:\n\n'
        + "\n".join(lines)
        + "\n\n"
        + "To select an option, retry the screenshot with windowIndex: 2 (for option 2)\n"
        + "To cancel, simply don't retry the tool call\n\n"
        + "Example: `windowIndex: 2` to capture the second window"
    )


def _format_not_found(kind: str, term: str) -> str:
    if kind == "process":
        return (
            f'No visible windows found for process "{term}"\n\n'
            "Suggestions:\n"
            "  - Make sure the application is running with visible windows\n"
            "  - Try capturing by windowTitle instead of processName\n"
            "  - Check the process name (with or without .exe)"
        )
    return (
        f'No windows found with title containing "{term}"\n\n'
        "Suggestions:\n"
        "  - Check the window's title bar for the exact text\n"
        "  - Try a shorter or different part of the title\n"
        "  - Use processName instead (e.g. 'notepad', 'chrome')"
    )


def _compression_status(prefix: str, img: CompressedImage) -> str:
    kb = int(img.size / 1024 + 0.5)
    status = f"{prefix} ({kb}KB, JPEG quality: {img.quality}%)"
    if img.resized:
        status += f" - Resized to {img.width}px width"
    return status


# =============================================================================
# IMAGE COMPRESSOR
# =============================================================================

def _flatten(img):
    """RGB copy suitable for JPEG; transparency composited onto white."""
    from PIL import Image

    if img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info):
        rgba = img.convert("RGBA")
        background = Image.new("RGB", rgba.size, (255, 255, 255))
        background.paste(rgba, mask=rgba.getchannel("A"))
        return background
    if img.mode != "RGB":
        return img.convert("RGB")
    return img.copy()


def _fit_width(img, width: int):
    """Aspect-preserving downscale to width. Never enlarges."""
    from PIL import Image

    if img.width <= width:
        return img
    height = max(1, round(img.height * width / img.width))
    return img.resize((width, height), Image.Resampling.LANCZOS)


def _compress_image(raw: bytes, quality: int = 80, budget: int | None = None) -> CompressedImage:
    """Shrink a lossless bitmap to a JPEG within budget bytes.

    Order: full width (capped at 1920) at the requested quality, stepping
    quality down by 10 while over budget and above the floor; then 1280px at
    60; then 800px at 50, which is final whatever its size. Every stage
    resizes from the original bitmap, never from a lossy intermediate.
    """
    from PIL import Image, UnidentifiedImageError

    budget = CONFIG["max_bytes"] if budget is None else budget
    try:
        with Image.open(io.BytesIO(raw)) as src:
            src.load()
            original = _flatten(src)
    except (UnidentifiedImageError, OSError) as e:
        raise OutputParseError(f"Captured image could not be decoded: {e}") from None

    attempts: list[tuple[int, int, int]] = []

    def encode(img, q: int) -> bytes:
        buf = io.BytesIO()
        img.save(buf, format="JPEG", quality=q, optimize=True)
        data = buf.getvalue()
        attempts.append((img.width, q, len(data)))
        return data

    stages = CONFIG["stages"]
    stage, first_width, _ = stages[0]
    current = _fit_width(original, first_width)
    q = quality
    data = encode(current, q)
    while len(data) > budget and q > CONFIG["quality_floor"]:
        q -= CONFIG["quality_step"]
        data = encode(current, q)

    for name, width, stage_quality in stages[1:]:
        if len(data) <= budget:
            break
        current = _fit_width(original, width)
        q = stage_quality if stage_quality is not None else quality
        data = encode(current, q)
        stage = name

    result = CompressedImage(
        data=data,
        quality=q,
        width=current.width,
        height=current.height,
        resized=current.width != original.width,
        stage=stage,
        attempts=tuple(attempts),
    )
    level = "WARN" if result.size > budget else "DEBUG"
    _log(level, "compress",
         f"{original.width}x{original.height} -> {result.width}x{result.height} q={q} stage={stage}",
         metrics=f"bytes={result.size} budget={budget} encodes={len(attempts)}")
    return result


# =============================================================================
# PATHS: WSL <-> Windows namespaces
# =============================================================================

_DRIVE_RE = re.compile(r"^([A-Za-z]):[\\/]?(.*)$", re.S)
_MNT_RE = re.compile(r"^/mnt/([A-Za-z])(?:/(.*))?$", re.S)
_WSL_UNC_RE = re.compile(r"^\\\\wsl(?:\$|\.localhost)\\[^\\]+(\\.*)?$", re.I | re.S)


def _is_windows_path(path: str) -> bool:
    return bool(_DRIVE_RE.match(path)) or path.startswith("\\\\")


def _wslpath(path: str, flag: str) -> str:
    try:
        proc = subprocess.run(["wslpath", flag, path], capture_output=True, text=True, timeout=10)
    except (FileNotFoundError, subprocess.TimeoutExpired):
        raise InvalidRequestError(f"Cannot translate path '{path}': wslpath unavailable") from None
    if proc.returncode != 0 or not proc.stdout.strip():
        raise InvalidRequestError(f"Cannot translate path '{path}': {proc.stderr.strip()}")
    return proc.stdout.strip()


def _to_windows_path(path: str) -> str:
    """WSL path -> path powershell.exe can write to."""
    if _is_windows_path(path):
        return path
    m = _MNT_RE.match(path)
    if m:
        rest = (m.group(2) or "").strip("/").replace("/", "\\")
        return f"{m.group(1).upper()}:\\{rest}"
    return _wslpath(str(Path(path).expanduser().resolve()), "-w")


def _to_posix_path(path: str) -> Path:
    """Windows path -> the same location as seen from WSL."""
    m = _DRIVE_RE.match(path)
    if m:
        rest = m.group(2).replace("\\", "/").strip("/")
        return Path(f"/mnt/{m.group(1).lower()}") / rest if rest else Path(f"/mnt/{m.group(1).lower()}")
    m = _WSL_UNC_RE.match(path)
    if m:
        return Path((m.group(1) or "\\").replace("\\", "/"))
    if path.startswith("\\\\"):
        return Path(_wslpath(path, "-u"))
    return Path(path)


@dataclass(frozen=True)
class Destination:
    windows: str
    posix: Path
    display: str


def _resolve_destination(folder: str | None, filename: str) -> Destination:
    """Where a File-mode capture lands, in both namespaces. Creates the folder."""
    if folder:
        if _is_windows_path(folder):
            windows_dir = folder
            posix_dir = _to_posix_path(folder)
        else:
            posix_dir = Path(folder).expanduser().resolve()
            windows_dir = _to_windows_path(str(posix_dir))
        display = None
    else:
        posix_dir = Path.cwd() / CONFIG["default_folder"]
        windows_dir = _to_windows_path(str(posix_dir))
        display = f"{CONFIG['default_folder']}/{filename}"
    posix_dir.mkdir(parents=True, exist_ok=True)
    posix = posix_dir / filename
    return Destination(
        windows=str(PureWindowsPath(windows_dir) / filename),
        posix=posix,
        display=display or str(posix),
    )


# =============================================================================
# REQUEST BUILDING
# =============================================================================

def _parse_monitor(monitor) -> object:
    if monitor is None:
        return AllMonitors()
    if isinstance(monitor, bool):
        raise InvalidRequestError(f"Invalid monitor parameter: {monitor}")
    if isinstance(monitor, int):
        return MonitorIndex(monitor)
    text = str(monitor).strip().lower()
    if text in ("", "all"):
        return AllMonitors()
    if text == "primary":
        return PrimaryMonitor()
    if re.fullmatch(r"\d+", text):
        return MonitorIndex(int(text))
    raise InvalidRequestError(
        f'Invalid monitor parameter: {monitor}. Use "all", "primary", or a monitor number'
    )


def _build_request(
    filename: str = "screenshot.png",
    monitor="all",
    window_title: str | None = None,
    window_index: int | None = None,
    process_name: str | None = None,
    folder: str | None = None,
    return_direct: bool = True,
    quality: int = 80,
) -> CaptureRequest:
    """Validate tool arguments into a CaptureRequest. Title beats process beats monitor."""
    if isinstance(quality, bool) or not isinstance(quality, int) or not 1 <= quality <= 100:
        raise InvalidRequestError(f"quality must be an integer from 1 to 100 (got {quality!r})")
    if window_index is not None and (isinstance(window_index, bool) or not isinstance(window_index, int)):
        raise InvalidRequestError(f"windowIndex must be an integer (got {window_index!r})")
    filename = filename or CONFIG["default_filename"]
    if Path(filename).name != filename or "\\" in filename:
        raise InvalidRequestError(f"filename must be a bare file name, not a path (got {filename!r})")

    if window_title:
        target = WindowByTitle(window_title, window_index)
    elif process_name:
        target = WindowByProcess(process_name, window_index)
    else:
        target = _parse_monitor(monitor)
    return CaptureRequest(target, bool(return_direct), quality, filename, folder or None)


# =============================================================================
# CORE FUNCTIONS — _impl pattern, shared by CLI and MCP
# =============================================================================

def _enumerate_layout_impl(include_windows: bool = False) -> tuple[DesktopLayout, int]:
    """One bridge round-trip for monitors, virtual bounds and (optionally) windows."""
    output = _run_bridge(_format_layout_command(include_windows))
    parsed = _parse_bridge_output(output, "layout")
    _raise_for_outcome(parsed)
    if not isinstance(parsed, LayoutRecord):
        raise OutputParseError("Bridge did not report a desktop layout")
    return parsed.layout, output.elapsed_ms


def _list_targets_impl(include_windows: bool = True) -> tuple[dict, dict]:
    """Monitors numbered left-to-right, plus visible titled windows."""
    t0 = time.monotonic()
    layout, bridge_ms = _enumerate_layout_impl(include_windows)
    monitors = [
        {"monitor": i, **m.rect.as_dict(), "primary": m.primary, "name": m.name}
        for i, m in enumerate(_sorted_monitors(layout), 1)
    ]
    windows = [
        {"title": w.title, "process": _exe_name(w.process_name), "handle": w.handle,
         **(w.rect.as_dict() if w.rect else {})}
        for w in layout.windows
    ]
    elapsed_ms = int((time.monotonic() - t0) * 1000)
    _log("INFO", "list_targets", f"{len(monitors)} monitors, {len(windows)} windows",
         metrics=f"elapsed_ms={elapsed_ms} bridge_ms={bridge_ms}")
    result = {"virtual": layout.virtual.as_dict(), "monitors": monitors, "windows": windows}
    return result, {"elapsed_ms": elapsed_ms, "bridge_ms": bridge_ms}


def _take_screenshot_impl(
    filename: str = "screenshot.png",
    monitor="all",
    window_title: str | None = None,
    window_index: int | None = None,
    process_name: str | None = None,
    folder: str | None = None,
    return_direct: bool = True,
    quality: int = 80,
) -> tuple[dict, dict]:
    """Resolve, capture, and either compress (direct) or save (file).

    CLI: shot
    MCP: take_screenshot
    """
    t0 = time.monotonic()
    request = _build_request(
        filename, monitor, window_title, window_index, process_name,
        folder, return_direct, quality,
    )
    wants_windows = isinstance(request.target, (WindowByTitle, WindowByProcess))
    layout, layout_ms = _enumerate_layout_impl(include_windows=wants_windows)

    target = _resolve_target(request, layout)
    if isinstance(target, (Ambiguous, NotFound)):
        _log("WARN", "take_screenshot", f"unresolved target: {type(target).__name__}",
             detail=f"term={target.term}")
    _raise_for_outcome(target)

    destination = None if request.return_direct else _resolve_destination(request.folder, request.filename)
    command = _format_capture_command(target, destination.windows if destination else None)
    output = _run_bridge(command)
    parsed = _parse_bridge_output(output, "capture")
    _raise_for_outcome(parsed)

    bridge_ms = layout_ms + output.elapsed_ms
    label = target.label if isinstance(target, ScreenTarget) else f"window '{target.title}'"

    if request.return_direct:
        if not isinstance(parsed, ImageBytes):
            raise OutputParseError("Failed to generate base64 output from the capture bridge")
        img = _compress_image(parsed.data, request.quality)
        result = {
            "status": _compression_status("Screenshot captured successfully", img),
            "mode": "direct",
            "target": label,
            "source_px": {"w": parsed.width, "h": parsed.height},
            "output_px": {"w": img.width, "h": img.height},
            "jpeg_quality": img.quality,
            "bytes": img.size,
            "resized": img.resized,
            "stage": img.stage,
            "jpeg": img.data,
        }
    else:
        if not destination.posix.exists():
            raise OutputParseError(
                f"Capture bridge finished but no file exists at {destination.posix}"
            )
        result = {
            "status": f"Screenshot saved successfully to: {destination.display}",
            "mode": "file",
            "target": label,
            "path": str(destination.posix),
            "windows_path": destination.windows,
        }

    elapsed_ms = int((time.monotonic() - t0) * 1000)
    _log("INFO", "take_screenshot", result["status"], detail=f"target={label}",
         metrics=f"elapsed_ms={elapsed_ms} bridge_ms={bridge_ms}")
    return result, {"elapsed_ms": elapsed_ms, "bridge_ms": bridge_ms}


_CLIPBOARD_EMPTY_TEXT = {
    "empty": "Clipboard is empty",
    "no_text": "No text content in clipboard (clipboard may contain an image or other format)",
    "no_image": "No image content in clipboard (clipboard may contain text or other format)",
}


def _read_clipboard_impl(format: str = "auto") -> tuple[dict, dict]:
    """Read clipboard text or image. Empty states are results, not errors.

    CLI: clipboard
    MCP: read_clipboard
    """
    t0 = time.monotonic()
    fmt = (format or "auto").strip().lower()
    if fmt not in CLIPBOARD_FORMATS:
        raise InvalidRequestError(f"format must be one of {', '.join(CLIPBOARD_FORMATS)} (got {format!r})")

    output = _run_bridge(_format_clipboard_command(fmt))
    parsed = _parse_bridge_output(output, "clipboard")
    _raise_for_outcome(parsed)

    if isinstance(parsed, ClipboardEmpty):
        result = {"status": _CLIPBOARD_EMPTY_TEXT[parsed.reason], "kind": parsed.reason}
    elif isinstance(parsed, TextContent):
        result = {"status": f"Clipboard text content:\n\n{parsed.text}", "kind": "text", "text": parsed.text}
    elif isinstance(parsed, ImageBytes):
        img = _compress_image(parsed.data, CONFIG["default_quality"])
        result = {
            "status": _compression_status("Clipboard image retrieved successfully", img),
            "kind": "image",
            "output_px": {"w": img.width, "h": img.height},
            "jpeg_quality": img.quality,
            "bytes": img.size,
            "resized": img.resized,
            "jpeg": img.data,
        }
    else:
        raise OutputParseError("Unable to read clipboard content")

    elapsed_ms = int((time.monotonic() - t0) * 1000)
    _log("INFO", "read_clipboard", f"format={fmt} kind={result['kind']}",
         metrics=f"elapsed_ms={elapsed_ms} bridge_ms={output.elapsed_ms}")
    return result, {"elapsed_ms": elapsed_ms, "bridge_ms": output.elapsed_ms}


# =============================================================================
# CLI INTERFACE
# =============================================================================

def _emit(result: dict, metrics: dict, jpeg_path: str | None = None):
    """Print result JSON; image bytes go to jpeg_path instead of stdout."""
    payload = dict(result)
    data = payload.pop("jpeg", None)
    if data is not None:
        if jpeg_path:
            Path(jpeg_path).write_bytes(data)
            payload["jpeg_path"] = jpeg_path
        else:
            payload["jpeg_base64_chars"] = len(base64.b64encode(data))
    print(json.dumps({"result": payload, "metrics": metrics}, indent=2))


def main():
    parser = argparse.ArgumentParser(
        description="Screen and clipboard capture from WSL via Windows PowerShell.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Targets (first match wins): --window-title, --process, --monitor.
Monitors are numbered left to right. When several windows match, the
command fails with a numbered list; rerun with --window-index N.
""",
    )
    parser.add_argument("-V", "--version", action="version", version=f"sft_snapit {CONFIG['version']}")
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p_shot = sub.add_parser("shot", help="Capture screen, monitor, or window")
    p_shot.add_argument("--monitor", "-m", default="all", help='"all" (default), "primary", or 1-based number')
    p_shot.add_argument("--window-title", "-w", help="Window title substring (case-insensitive)")
    p_shot.add_argument("--process", "-p", help="Process name, with or without .exe")
    p_shot.add_argument("--window-index", "-i", type=int, help="Pick the Nth match when several windows match")
    p_shot.add_argument("--quality", "-q", type=int, default=CONFIG["default_quality"], help="JPEG quality 1-100")
    p_shot.add_argument("--save", action="store_true", help="Save PNG to disk instead of returning JPEG")
    p_shot.add_argument("--folder", "-f", help="Folder for --save (WSL or Windows path)")
    p_shot.add_argument("--filename", default=CONFIG["default_filename"], help="File name for --save")
    p_shot.add_argument("--jpeg", help="Write the compressed JPEG here (direct mode)")

    p_clip = sub.add_parser("clipboard", help="Read Windows clipboard")
    p_clip.add_argument("--format", choices=CLIPBOARD_FORMATS, default="auto")
    p_clip.add_argument("--jpeg", help="Write a clipboard image here as JPEG")

    p_tgt = sub.add_parser("targets", help="List monitors and visible windows")
    p_tgt.add_argument("--no-windows", action="store_true", help="Monitors only")

    sub.add_parser("mcp-stdio", help="Run as MCP server (stdio transport)")

    args = parser.parse_args()

    try:
        if args.command == "mcp-stdio":
            _run_mcp()
            return

        elif args.command == "shot":
            result, metrics = _take_screenshot_impl(
                filename=args.filename,
                monitor=args.monitor,
                window_title=args.window_title,
                window_index=args.window_index,
                process_name=args.process,
                folder=args.folder,
                return_direct=not args.save,
                quality=args.quality,
            )
            _emit(result, metrics, args.jpeg)

        elif args.command == "clipboard":
            result, metrics = _read_clipboard_impl(args.format)
            _emit(result, metrics, args.jpeg)

        elif args.command == "targets":
            result, metrics = _list_targets_impl(include_windows=not args.no_windows)
            print(json.dumps({"result": result, "metrics": metrics}, indent=2))

        else:
            parser.print_help()
            sys.exit(1)

    except SnapError as e:
        print(json.dumps({"error": str(e)}), file=sys.stderr)
        _log("ERROR", args.command or "unknown", str(e).split("\n", 1)[0])
        sys.exit(1)
    except Exception as e:
        print(json.dumps({"error": str(e)}), file=sys.stderr)
        _log("ERROR", args.command or "unknown", str(e), trace=type(e).__name__)
        sys.exit(1)


# =============================================================================
# FASTMCP SERVER
# =============================================================================

def _run_mcp():
    """Start FastMCP server with all tools."""
    from fastmcp import FastMCP
    from fastmcp.utilities.types import Image

    mcp = FastMCP("snapit")

    @mcp.tool()
    def take_screenshot(
        filename: str = "screenshot.png",
        monitor: str | int = "all",
        windowTitle: str | None = None,
        windowIndex: int | None = None,
        processName: str | None = None,
        folder: str | None = None,
        returnDirect: bool = True,
        quality: int = 80,
    ):
        """Capture Windows screens from WSL: all monitors, one monitor, or a window.

        Large images are resized and JPEG-compressed to fit under 1MB.
        If several windows match, the call fails with a numbered list; retry
        with windowIndex set to the chosen number.

        Args:
            filename: File name when saving (default screenshot.png). Ignored when returnDirect is true.
            monitor: "all" (default), "primary", or monitor number (1 = leftmost).
            windowTitle: Capture a window whose title contains this text (case-insensitive).
            windowIndex: Which match to capture when several windows match (1-based).
            processName: Capture a window of this process (e.g. "notepad" or "notepad.exe").
            folder: Folder to save into, WSL or Windows path. Ignored when returnDirect is true.
            returnDirect: Return the image inline (true) or save a PNG to disk (false).
            quality: Starting JPEG quality 1-100 for inline images; lowered automatically if needed.

        Returns:
            Status text, plus the JPEG image when returnDirect is true.
        """
        try:
            result, _ = _take_screenshot_impl(
                filename, monitor, windowTitle, windowIndex, processName,
                folder, returnDirect, quality,
            )
        except SnapError as e:
            _log("ERROR", "take_screenshot", str(e).split("\n", 1)[0])
            raise ValueError(f"Failed to take screenshot: {e}") from None
        if result["mode"] == "direct":
            return [result["status"], Image(data=result["jpeg"], format="jpeg")]
        return result["status"]

    @mcp.tool()
    def read_clipboard(format: str = "auto"):
        """Read the current Windows clipboard content (text or image).

        Args:
            format: "auto" (prefer image, then text), "text", or "image".

        Returns:
            Status or clipboard text, plus a JPEG image when an image was read.
        """
        try:
            result, _ = _read_clipboard_impl(format)
        except SnapError as e:
            _log("ERROR", "read_clipboard", str(e).split("\n", 1)[0])
            raise ValueError(f"Failed to read clipboard: {e}") from None
        if result["kind"] == "image":
            return [result["status"], Image(data=result["jpeg"], format="jpeg")]
        return result["status"]

    @mcp.tool()
    def list_targets(include_windows: bool = True) -> str:
        """List monitors (numbered left to right) and visible windows.

        Args:
            include_windows: Also enumerate visible titled windows (default true).

        Returns:
            JSON with virtual bounds, monitors, windows and metrics.
        """
        try:
            result, metrics = _list_targets_impl(include_windows)
        except SnapError as e:
            _log("ERROR", "list_targets", str(e).split("\n", 1)[0])
            raise ValueError(f"Failed to list targets: {e}") from None
        return json.dumps({"result": result, "metrics": metrics})

    print("snapit MCP server running (stdio transport)", file=sys.stderr)
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
