"""
Tests for TextInjector.

subprocess and tool discovery are patched; nothing is typed for real.
"""

import subprocess
from unittest.mock import patch

import pytest

from wavetalk.injector import DeliveryError, DisplayServer, TextInjector, detect_display_server


def completed(returncode=0, stderr=""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout="", stderr=stderr)


def which_from(available):
    return lambda name: f"/usr/bin/{name}" if name in available else None


@pytest.fixture
def x11(monkeypatch):
    monkeypatch.setenv("XDG_SESSION_TYPE", "x11")


@pytest.fixture
def wayland(monkeypatch):
    monkeypatch.setenv("XDG_SESSION_TYPE", "wayland")


class TestDisplayServer:
    def test_session_type(self, monkeypatch):
        monkeypatch.setenv("XDG_SESSION_TYPE", "wayland")
        assert detect_display_server() == DisplayServer.WAYLAND

    def test_display_fallback(self, monkeypatch):
        monkeypatch.delenv("XDG_SESSION_TYPE", raising=False)
        monkeypatch.delenv("WAYLAND_DISPLAY", raising=False)
        monkeypatch.setenv("DISPLAY", ":0")
        assert detect_display_server() == DisplayServer.X11

    def test_unknown(self, monkeypatch):
        for var in ("XDG_SESSION_TYPE", "WAYLAND_DISPLAY", "DISPLAY"):
            monkeypatch.delenv(var, raising=False)
        assert detect_display_server() == DisplayServer.UNKNOWN


@pytest.mark.usefixtures("x11")
class TestTypeMethod:
    @patch("wavetalk.injector.time.sleep")
    @patch("wavetalk.injector.subprocess.run", return_value=completed())
    @patch("wavetalk.injector.shutil.which", side_effect=which_from({"xdotool"}))
    def test_xdotool_type(self, mock_which, mock_run, mock_sleep):
        injector = TextInjector(delay_ms=12)

        injector.deliver("hello world")

        assert injector.tool_name == "xdotool"
        cmd = mock_run.call_args.args[0]
        assert cmd == ["xdotool", "type", "--clearmodifiers", "--delay", "12", "--", "hello world"]

    @patch("wavetalk.injector.time.sleep")
    @patch("wavetalk.injector.subprocess.run", return_value=completed())
    @patch("wavetalk.injector.shutil.which", side_effect=which_from({"xdotool"}))
    def test_empty_text_is_noop(self, mock_which, mock_run, mock_sleep):
        TextInjector().deliver("")

        mock_run.assert_not_called()

    @patch("wavetalk.injector.time.sleep")
    @patch("wavetalk.injector.subprocess.run", return_value=completed(returncode=1, stderr="no display"))
    @patch("wavetalk.injector.shutil.which", side_effect=which_from({"xdotool"}))
    def test_tool_failure(self, mock_which, mock_run, mock_sleep):
        with pytest.raises(DeliveryError, match="no display"):
            TextInjector().deliver("hello")

    @patch("wavetalk.injector.time.sleep")
    @patch("wavetalk.injector.subprocess.run", side_effect=subprocess.TimeoutExpired(cmd="xdotool", timeout=30))
    @patch("wavetalk.injector.shutil.which", side_effect=which_from({"xdotool"}))
    def test_tool_timeout(self, mock_which, mock_run, mock_sleep):
        with pytest.raises(DeliveryError, match="timed out"):
            TextInjector().deliver("hello")


@pytest.mark.usefixtures("wayland")
class TestWayland:
    @patch("wavetalk.injector.time.sleep")
    @patch("wavetalk.injector.subprocess.run", return_value=completed())
    @patch("wavetalk.injector.shutil.which", side_effect=which_from({"ydotool", "wl-copy"}))
    def test_paste(self, mock_which, mock_run, mock_sleep):
        injector = TextInjector(method="paste")

        injector.deliver("привет")

        copy_call, paste_call = mock_run.call_args_list
        assert copy_call.args[0] == ["wl-copy"]
        assert copy_call.kwargs["input"] == "привет"
        # The clipboard owner outlives the call, so its output must not be piped
        assert copy_call.kwargs["stdout"] is subprocess.DEVNULL
        assert copy_call.kwargs["stderr"] is subprocess.DEVNULL
        assert "capture_output" not in copy_call.kwargs
        assert paste_call.args[0] == ["ydotool", "key", "29:1", "47:1", "47:0", "29:0"]

    @patch("wavetalk.injector.time.sleep")
    @patch("wavetalk.injector.subprocess.run", return_value=completed())
    @patch("wavetalk.injector.shutil.which", side_effect=which_from({"ydotool", "xclip"}))
    def test_paste_with_xclip(self, mock_which, mock_run, mock_sleep, monkeypatch):
        monkeypatch.setenv("XDG_SESSION_TYPE", "x11")
        TextInjector(method="paste").deliver("hello")

        copy_call = mock_run.call_args_list[0]
        assert copy_call.args[0] == ["xclip", "-selection", "clipboard"]
        assert copy_call.kwargs["stdout"] is subprocess.DEVNULL
        assert copy_call.kwargs["stderr"] is subprocess.DEVNULL

    @patch("wavetalk.injector.time.sleep")
    @patch("wavetalk.injector.subprocess.run",
           return_value=subprocess.CompletedProcess(args=[], returncode=1, stdout=None, stderr=None))
    @patch("wavetalk.injector.shutil.which", side_effect=which_from({"ydotool", "wl-copy"}))
    def test_copy_failure(self, mock_which, mock_run, mock_sleep):
        with pytest.raises(DeliveryError, match="exit code 1"):
            TextInjector(method="paste").deliver("hello")

    @patch("wavetalk.injector.time.sleep")
    @patch("wavetalk.injector.subprocess.run",
           return_value=completed(returncode=1, stderr="failed to open uinput device"))
    @patch("wavetalk.injector.shutil.which", side_effect=which_from({"ydotool"}))
    def test_uinput_permission_hint(self, mock_which, mock_run, mock_sleep):
        with pytest.raises(DeliveryError, match="usermod"):
            TextInjector().deliver("hello")


class TestConstruction:
    @patch("wavetalk.injector.shutil.which", return_value=None)
    def test_no_tool(self, mock_which):
        with pytest.raises(DeliveryError, match="No text injection tool"):
            TextInjector()

    @patch("wavetalk.injector.shutil.which", side_effect=which_from({"xdotool"}))
    def test_unknown_method(self, mock_which):
        with pytest.raises(DeliveryError):
            TextInjector(method="shout")
