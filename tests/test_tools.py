"""End-to-end tool flows with a scripted bridge, plus the CLI surface."""

import base64
import json
import sys

import pytest

import sft_snapit as snap
from conftest import LAYOUT_DOC, layout_output, png_bytes


def image_output(width=2400, height=1200, elapsed=40):
    data = base64.b64encode(png_bytes(width, height)).decode()
    return snap.BridgeOutput("BASE64:" + data + "\r\n", "", 0, elapsed)


def script_of(command):
    return base64.b64decode(command.encoded).decode("utf-16-le")


class TestTakeScreenshotDirect:
    def test_all_monitors(self, fake_bridge):
        fake_bridge.queue(layout_output(LAYOUT_DOC), image_output())
        result, metrics = snap._take_screenshot_impl()
        assert result["mode"] == "direct"
        assert result["status"].startswith("Screenshot captured successfully (")
        assert "JPEG quality: 80%" in result["status"]
        assert result["status"].endswith(" - Resized to 1920px width")
        assert result["jpeg"][:3] == b"\xff\xd8\xff"
        assert result["source_px"] == {"w": 2400, "h": 1200}
        assert metrics["bridge_ms"] == 45
        layout_cmd, capture_cmd = fake_bridge.commands
        assert layout_cmd.purpose == "layout"
        assert "if ($false)" in script_of(layout_cmd)
        assert "$left = -1280; $top = 0; $width = 5760; $height = 1440" in script_of(capture_cmd)

    def test_monitor_number_is_left_to_right(self, fake_bridge):
        fake_bridge.queue(layout_output(LAYOUT_DOC), image_output(800, 600))
        result, _ = snap._take_screenshot_impl(monitor="2")
        assert "$left = 0; $top = 0; $width = 1920; $height = 1080" in script_of(fake_bridge.commands[1])
        assert result["target"] == "monitor 2"
        assert "Resized" not in result["status"]

    def test_primary(self, fake_bridge):
        fake_bridge.queue(layout_output(LAYOUT_DOC), image_output(100, 100))
        snap._take_screenshot_impl(monitor="primary")
        assert "$width = 1920; $height = 1080" in script_of(fake_bridge.commands[1])

    def test_direct_mode_leaves_filesystem_alone(self, fake_bridge, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        fake_bridge.queue(layout_output(LAYOUT_DOC), image_output(100, 100))
        snap._take_screenshot_impl(folder=str(tmp_path / "never"), filename="x.png")
        assert list(tmp_path.iterdir()) == []

    def test_quality_passed_through(self, fake_bridge):
        fake_bridge.queue(layout_output(LAYOUT_DOC), image_output(100, 100))
        result, _ = snap._take_screenshot_impl(quality=42)
        assert result["jpeg_quality"] == 42

    def test_invalid_monitor_index(self, fake_bridge):
        fake_bridge.queue(layout_output(LAYOUT_DOC))
        with pytest.raises(snap.InvalidMonitorIndexError, match="1 to 3"):
            snap._take_screenshot_impl(monitor=9)
        assert len(fake_bridge.commands) == 1

    def test_invalid_arguments_skip_bridge(self, fake_bridge):
        with pytest.raises(snap.InvalidRequestError):
            snap._take_screenshot_impl(monitor="left")
        assert fake_bridge.commands == []

    def test_missing_image_payload(self, fake_bridge):
        fake_bridge.queue(layout_output(LAYOUT_DOC), snap.BridgeOutput("", "", 0, 1))
        with pytest.raises(snap.OutputParseError, match="base64"):
            snap._take_screenshot_impl()

    def test_bridge_error_surfaces(self, fake_bridge):
        fake_bridge.queue(
            layout_output(LAYOUT_DOC),
            snap.BridgeOutput("ERROR: The handle is invalid.\r\n", "", 1, 1),
        )
        with pytest.raises(snap.BridgeFailureError, match="The handle is invalid."):
            snap._take_screenshot_impl()


class TestTakeScreenshotWindows:
    def test_ambiguous_title_stops_before_capture(self, fake_bridge):
        fake_bridge.queue(layout_output(LAYOUT_DOC))
        with pytest.raises(snap.AmbiguousTargetError) as exc:
            snap._take_screenshot_impl(window_title="Chrome")
        message = str(exc.value)
        assert "1. Inbox - Google Chrome (chrome.exe)" in message
        assert "2. Docs - Google Chrome (chrome.exe)" in message
        assert "3. Cancel capture" in message
        assert len(fake_bridge.commands) == 1
        assert "if ($true)" in script_of(fake_bridge.commands[0])

    def test_window_index_selects(self, fake_bridge):
        fake_bridge.queue(layout_output(LAYOUT_DOC), image_output(1600, 900))
        result, _ = snap._take_screenshot_impl(process_name="chrome.exe", window_index=2)
        script = script_of(fake_bridge.commands[1])
        assert "[int64]103" in script
        assert "$mode = 'process'" in script
        assert result["target"] == "window 'Docs - Google Chrome'"

    def test_not_found(self, fake_bridge):
        fake_bridge.queue(layout_output(LAYOUT_DOC))
        with pytest.raises(snap.TargetNotFoundError) as exc:
            snap._take_screenshot_impl(window_title="Photoshop")
        assert exc.value.kind == "window"
        assert "Suggestions:" in str(exc.value)

    def test_window_vanished_and_now_ambiguous(self, fake_bridge):
        multi = (
            "MULTIPLE_WINDOWS_FOUND:Notepad:1. a.txt - Notepad (notepad.exe)\n"
            "2. b.txt - Notepad (notepad.exe)\n3. Cancel capture\n"
        )
        fake_bridge.queue(layout_output(LAYOUT_DOC), snap.BridgeOutput("", multi, 1, 1))
        with pytest.raises(snap.AmbiguousTargetError) as exc:
            snap._take_screenshot_impl(window_title="Notepad")
        assert [m.title for m in exc.value.ambiguous.matches] == ["a.txt - Notepad", "b.txt - Notepad"]

    def test_window_vanished_entirely(self, fake_bridge):
        fake_bridge.queue(
            layout_output(LAYOUT_DOC),
            snap.BridgeOutput("", "PROCESS_NOT_FOUND:notepad\r\n", 1, 1),
        )
        with pytest.raises(snap.TargetNotFoundError) as exc:
            snap._take_screenshot_impl(process_name="notepad")
        assert exc.value.kind == "process"


class TestTakeScreenshotFile:
    def test_saves_to_default_folder(self, fake_bridge, fake_wslpath, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)

        def bridge_saves(command):
            (tmp_path / "screenshots" / "shot.png").write_bytes(png_bytes(4, 4))
            return snap.BridgeOutput("", "", 0, 7)

        fake_bridge.queue(layout_output(LAYOUT_DOC), bridge_saves)
        result, _ = snap._take_screenshot_impl(filename="shot.png", return_direct=False)
        assert result["status"] == "Screenshot saved successfully to: screenshots/shot.png"
        assert result["mode"] == "file"
        assert "jpeg" not in result
        script = script_of(fake_bridge.commands[1])
        assert "'BASE64:'" not in script
        assert result["windows_path"].endswith("\\screenshots\\shot.png")
        assert f"$bitmap.Save('{result['windows_path']}'" in script

    def test_missing_file_after_success(self, fake_bridge, fake_wslpath, tmp_path):
        fake_bridge.queue(layout_output(LAYOUT_DOC), snap.BridgeOutput("", "", 0, 7))
        with pytest.raises(snap.OutputParseError, match="no file exists"):
            snap._take_screenshot_impl(folder=str(tmp_path), return_direct=False)


class TestReadClipboard:
    @pytest.mark.parametrize("token,status", [
        ("EMPTY_CLIPBOARD", "Clipboard is empty"),
        ("NO_TEXT_IN_CLIPBOARD", "No text content in clipboard (clipboard may contain an image or other format)"),
        ("NO_IMAGE_IN_CLIPBOARD", "No image content in clipboard (clipboard may contain text or other format)"),
    ])
    def test_empty_states_are_successes(self, fake_bridge, token, status):
        fake_bridge.queue(snap.BridgeOutput(token + "\r\n", "", 0, 2))
        result, _ = snap._read_clipboard_impl("image")
        assert result["status"] == status

    def test_text(self, fake_bridge):
        fake_bridge.queue(snap.BridgeOutput("TEXT_CONTENT:hello\r\nworld\r\n", "", 0, 2))
        result, _ = snap._read_clipboard_impl("text")
        assert result["status"] == "Clipboard text content:\n\nhello\nworld"
        assert result["text"] == "hello\nworld"
        assert "$format = 'text'" in script_of(fake_bridge.commands[0])

    def test_image(self, fake_bridge):
        fake_bridge.queue(image_output(300, 200))
        result, _ = snap._read_clipboard_impl()
        assert result["kind"] == "image"
        assert result["status"].startswith("Clipboard image retrieved successfully (")
        assert result["jpeg"][:2] == b"\xff\xd8"

    def test_format_case_insensitive(self, fake_bridge):
        fake_bridge.queue(snap.BridgeOutput("EMPTY_CLIPBOARD", "", 0, 2))
        snap._read_clipboard_impl("AUTO")
        assert "$format = 'auto'" in script_of(fake_bridge.commands[0])

    def test_bad_format(self, fake_bridge):
        with pytest.raises(snap.InvalidRequestError):
            snap._read_clipboard_impl("html")
        assert fake_bridge.commands == []

    def test_bridge_error(self, fake_bridge):
        fake_bridge.queue(snap.BridgeOutput("ERROR: OpenClipboard Failed\r\n", "", 1, 2))
        with pytest.raises(snap.BridgeFailureError, match="OpenClipboard Failed"):
            snap._read_clipboard_impl()

    def test_silent_bridge(self, fake_bridge):
        fake_bridge.queue(snap.BridgeOutput("", "", 0, 2))
        with pytest.raises(snap.OutputParseError):
            snap._read_clipboard_impl()


class TestListTargets:
    def test_monitors_numbered_left_to_right(self, fake_bridge):
        fake_bridge.queue(layout_output(LAYOUT_DOC))
        result, metrics = snap._list_targets_impl()
        assert [(m["monitor"], m["x"]) for m in result["monitors"]] == [(1, -1280), (2, 0), (3, 1920)]
        assert [m["primary"] for m in result["monitors"]] == [False, True, False]
        assert result["virtual"] == {"x": -1280, "y": 0, "width": 5760, "height": 1440}
        assert result["windows"][0]["process"] == "chrome.exe"
        assert result["windows"][0]["handle"] == 101
        assert metrics["bridge_ms"] == 5

    def test_monitors_only(self, fake_bridge):
        fake_bridge.queue(layout_output(dict(LAYOUT_DOC, windows=[])))
        result, _ = snap._list_targets_impl(include_windows=False)
        assert result["windows"] == []
        assert "if ($false)" in script_of(fake_bridge.commands[0])


class TestCli:
    def _run(self, monkeypatch, *argv):
        monkeypatch.setattr(sys, "argv", ["sft_snapit.py", *argv])
        snap.main()

    def test_shot_writes_jpeg(self, fake_bridge, monkeypatch, capsys, tmp_path):
        fake_bridge.queue(layout_output(LAYOUT_DOC), image_output(640, 480))
        out_file = tmp_path / "s.jpg"
        self._run(monkeypatch, "shot", "--monitor", "3", "--jpeg", str(out_file))
        payload = json.loads(capsys.readouterr().out)
        assert payload["result"]["jpeg_path"] == str(out_file)
        assert "jpeg" not in payload["result"]
        assert out_file.read_bytes()[:2] == b"\xff\xd8"
        assert "elapsed_ms" in payload["metrics"]

    def test_shot_without_jpeg_path(self, fake_bridge, monkeypatch, capsys):
        fake_bridge.queue(layout_output(LAYOUT_DOC), image_output(64, 64))
        self._run(monkeypatch, "shot")
        payload = json.loads(capsys.readouterr().out)
        assert payload["result"]["jpeg_base64_chars"] > 0

    def test_error_json_and_exit_code(self, fake_bridge, monkeypatch, capsys):
        fake_bridge.queue(layout_output(LAYOUT_DOC))
        with pytest.raises(SystemExit) as exc:
            self._run(monkeypatch, "shot", "--monitor", "9")
        assert exc.value.code == 1
        err = json.loads(capsys.readouterr().err)
        assert err["error"] == "Monitor 9 not found. Available monitors: 1 to 3"

    def test_internal_error_logged_with_type(self, monkeypatch, capsys):
        logged = []
        monkeypatch.setattr(snap, "_log", lambda *a, **kw: logged.append((a, kw)))

        def broken(include_windows=True):
            raise AssertionError("invariant broken")

        monkeypatch.setattr(snap, "_list_targets_impl", broken)
        with pytest.raises(SystemExit) as exc:
            self._run(monkeypatch, "targets")
        assert exc.value.code == 1
        assert json.loads(capsys.readouterr().err) == {"error": "invariant broken"}
        assert logged[-1][1]["trace"] == "AssertionError"

    def test_clipboard(self, fake_bridge, monkeypatch, capsys):
        fake_bridge.queue(snap.BridgeOutput("TEXT_CONTENT:abc", "", 0, 1))
        self._run(monkeypatch, "clipboard", "--format", "text")
        payload = json.loads(capsys.readouterr().out)
        assert payload["result"]["text"] == "abc"

    def test_targets(self, fake_bridge, monkeypatch, capsys):
        fake_bridge.queue(layout_output(LAYOUT_DOC))
        self._run(monkeypatch, "targets")
        payload = json.loads(capsys.readouterr().out)
        assert len(payload["result"]["monitors"]) == 3

    def test_no_command_prints_help(self, monkeypatch, capsys):
        with pytest.raises(SystemExit) as exc:
            self._run(monkeypatch)
        assert exc.value.code == 1
        assert "usage:" in capsys.readouterr().out


class _RecordingMCP:
    """Collects the functions registered with @mcp.tool() instead of serving them."""

    def __init__(self, name):
        self.name = name
        self.tools = {}
        self.transport = None

    def tool(self):
        def register(fn):
            self.tools[fn.__name__] = fn
            return fn

        return register

    def run(self, transport):
        self.transport = transport


class _FakeImage:
    def __init__(self, data=None, format=None):
        self.data = data
        self.format = format


@pytest.fixture
def mcp_tools(monkeypatch):
    import fastmcp
    import fastmcp.utilities.types

    servers = []

    def make_server(name):
        servers.append(_RecordingMCP(name))
        return servers[-1]

    monkeypatch.setattr(fastmcp, "FastMCP", make_server)
    monkeypatch.setattr(fastmcp.utilities.types, "Image", _FakeImage)
    snap._run_mcp()
    (server,) = servers
    assert server.name == "snapit"
    assert server.transport == "stdio"
    return server.tools


class TestMcpTools:
    def test_registers_exposed_tools(self, mcp_tools):
        assert sorted(mcp_tools) == sorted(snap.EXPOSED)

    def test_screenshot_direct_returns_status_and_image(self, mcp_tools, fake_bridge):
        fake_bridge.queue(layout_output(LAYOUT_DOC), image_output(640, 480))
        status, image = mcp_tools["take_screenshot"](monitor="2", quality=70)
        assert status.startswith("Screenshot captured successfully (")
        assert "JPEG quality: 70%" in status
        assert image.format == "jpeg"
        assert image.data[:2] == b"\xff\xd8"

    def test_screenshot_file_returns_status_only(self, mcp_tools, fake_bridge, fake_wslpath, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)

        def bridge_saves(command):
            (tmp_path / "screenshots" / "win.png").write_bytes(png_bytes(4, 4))
            return snap.BridgeOutput("", "", 0, 3)

        fake_bridge.queue(layout_output(LAYOUT_DOC), bridge_saves)
        result = mcp_tools["take_screenshot"](filename="win.png", returnDirect=False)
        assert result == "Screenshot saved successfully to: screenshots/win.png"

    def test_screenshot_window_arguments(self, mcp_tools, fake_bridge):
        fake_bridge.queue(layout_output(LAYOUT_DOC), image_output(320, 200))
        mcp_tools["take_screenshot"](processName="chrome", windowIndex=2)
        assert "[int64]103" in script_of(fake_bridge.commands[1])

    def test_screenshot_ambiguous_is_value_error(self, mcp_tools, fake_bridge):
        fake_bridge.queue(layout_output(LAYOUT_DOC))
        with pytest.raises(ValueError, match="^Failed to take screenshot: Multiple windows found") as exc:
            mcp_tools["take_screenshot"](windowTitle="Chrome")
        assert "3. Cancel capture" in str(exc.value)
        assert not isinstance(exc.value, snap.SnapError)

    def test_screenshot_bad_monitor(self, mcp_tools, fake_bridge):
        fake_bridge.queue(layout_output(LAYOUT_DOC))
        with pytest.raises(ValueError, match="^Failed to take screenshot: Monitor 9 not found"):
            mcp_tools["take_screenshot"](monitor=9)

    def test_clipboard_text(self, mcp_tools, fake_bridge):
        fake_bridge.queue(snap.BridgeOutput("TEXT_CONTENT:copied", "", 0, 1))
        assert mcp_tools["read_clipboard"](format="text") == "Clipboard text content:\n\ncopied"

    def test_clipboard_empty_is_success(self, mcp_tools, fake_bridge):
        fake_bridge.queue(snap.BridgeOutput("EMPTY_CLIPBOARD\r\n", "", 0, 1))
        assert mcp_tools["read_clipboard"]() == "Clipboard is empty"

    def test_clipboard_image(self, mcp_tools, fake_bridge):
        fake_bridge.queue(image_output(300, 200))
        status, image = mcp_tools["read_clipboard"]()
        assert status.startswith("Clipboard image retrieved successfully (")
        assert image.format == "jpeg"

    def test_clipboard_failures(self, mcp_tools, fake_bridge):
        with pytest.raises(ValueError, match="^Failed to read clipboard: format must be one of"):
            mcp_tools["read_clipboard"](format="html")
        fake_bridge.queue(snap.BridgeOutput("ERROR: OpenClipboard Failed\r\n", "", 1, 1))
        with pytest.raises(ValueError, match="^Failed to read clipboard: .*OpenClipboard Failed"):
            mcp_tools["read_clipboard"]()

    def test_list_targets_json(self, mcp_tools, fake_bridge):
        fake_bridge.queue(layout_output(LAYOUT_DOC))
        payload = json.loads(mcp_tools["list_targets"]())
        assert [m["monitor"] for m in payload["result"]["monitors"]] == [1, 2, 3]
        assert payload["result"]["windows"][1]["handle"] == 102
        assert "elapsed_ms" in payload["metrics"]

    def test_list_targets_failure(self, mcp_tools, fake_bridge):
        fake_bridge.queue(snap.BridgeOutput("", "", 0, 1))
        with pytest.raises(ValueError, match="^Failed to list targets: "):
            mcp_tools["list_targets"](include_windows=False)
