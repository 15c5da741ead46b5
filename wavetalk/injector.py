"""
Text delivery for WaveTalk.

Puts the transcript into the currently focused window, either by
simulating keystrokes or by pasting through the clipboard.
Supports X11 (xdotool, xclip) and Wayland (ydotool, wl-copy).
"""

import os
import shutil
import subprocess
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Protocol

from wavetalk.log import get_logger


logger = get_logger(__name__)


class DeliveryError(Exception):
    """Exception raised when text could not be inserted."""
    pass


class DeliverySink(Protocol):
    def deliver(self, text: str) -> None: ...


class DisplayServer(Enum):
    """Display server type."""
    X11 = "x11"
    WAYLAND = "wayland"
    UNKNOWN = "unknown"


def detect_display_server() -> DisplayServer:
    """Detect which display server is running."""
    xdg_session = os.environ.get("XDG_SESSION_TYPE", "").lower()
    if xdg_session == "wayland":
        return DisplayServer.WAYLAND
    elif xdg_session == "x11":
        return DisplayServer.X11

    if os.environ.get("WAYLAND_DISPLAY"):
        return DisplayServer.WAYLAND

    if os.environ.get("DISPLAY"):
        return DisplayServer.X11

    return DisplayServer.UNKNOWN


# ydotool works on raw evdev key codes: 29 = KEY_LEFTCTRL, 47 = KEY_V
_YDOTOOL_CTRL_V = ["29:1", "47:1", "47:0", "29:0"]


@dataclass
class TextInjector:
    """
    Inserts text into the currently focused window.

    method="type" simulates keystrokes; method="paste" copies the text to
    the clipboard and sends Ctrl+V.

    Usage:
        injector = TextInjector()
        injector.deliver("Hello, world!")
    """

    method: str = "type"
    delay_ms: int = 0  # Delay between keystrokes (0 = fast)

    _display_server: DisplayServer = field(default=DisplayServer.UNKNOWN, init=False)
    _tool: str = field(default="", init=False)

    def __post_init__(self):
        """Detect the display server and available tools."""
        if self.method not in ("type", "paste"):
            raise DeliveryError(f"Unknown delivery method: {self.method}")
        self._display_server = detect_display_server()
        self._tool = self._detect_tool()

    def _detect_tool(self) -> str:
        """Detect which keystroke tool is available."""
        if self._display_server == DisplayServer.X11 and shutil.which("xdotool"):
            return "xdotool"

        # For Wayland or as fallback, try ydotool
        if shutil.which("ydotool"):
            return "ydotool"

        # Final fallback to xdotool (might work via XWayland)
        if shutil.which("xdotool"):
            return "xdotool"

        raise DeliveryError(
            "No text injection tool found. Please install xdotool (for X11) "
            "or ydotool (for Wayland):\n"
            "  sudo apt install xdotool  # For X11\n"
            "  sudo apt install ydotool  # For Wayland"
        )

    def _run(self, cmd: list, input_text: Optional[str] = None, capture: bool = True) -> None:
        if capture:
            output = {"capture_output": True}
        else:
            # Clipboard tools fork to own the selection and would hold our pipes open
            output = {"stdout": subprocess.DEVNULL, "stderr": subprocess.DEVNULL}
        try:
            result = subprocess.run(
                cmd,
                input=input_text,
                text=True,
                timeout=30,
                **output,
            )
        except subprocess.TimeoutExpired as e:
            raise DeliveryError(f"{cmd[0]} timed out") from e
        except FileNotFoundError as e:
            raise DeliveryError(f"{cmd[0]} not found") from e

        if result.returncode != 0:
            stderr = (result.stderr or "").lower()
            if cmd[0] == "ydotool" and ("uinput" in stderr or "permission" in stderr):
                raise DeliveryError(
                    "ydotool cannot access /dev/uinput. Fix with:\n"
                    "  sudo usermod -aG input $USER\n"
                    "Then log out and back in."
                )
            if cmd[0] == "ydotool" and "ydotoold" in stderr:
                raise DeliveryError(
                    "ydotoold daemon not running. Start with:\n"
                    "  sudo systemctl enable ydotool --now"
                )
            detail = (result.stderr or "").strip() or f"exit code {result.returncode}"
            raise DeliveryError(f"{cmd[0]} failed: {detail}")

    def _type_command(self, text: str) -> list:
        if self._tool == "xdotool":
            cmd = ["xdotool", "type", "--clearmodifiers"]
            if self.delay_ms > 0:
                cmd.extend(["--delay", str(self.delay_ms)])
            return cmd + ["--", text]

        cmd = ["ydotool", "type"]
        if self.delay_ms > 0:
            cmd.append(f"--key-delay={self.delay_ms}")
        return cmd + ["--", text]

    def _copy_command(self) -> list:
        if self._display_server == DisplayServer.WAYLAND and shutil.which("wl-copy"):
            return ["wl-copy"]
        if shutil.which("xclip"):
            return ["xclip", "-selection", "clipboard"]
        if shutil.which("wl-copy"):
            return ["wl-copy"]
        raise DeliveryError(
            "No clipboard tool found. Install wl-clipboard (Wayland) or xclip (X11)."
        )

    def _paste_command(self) -> list:
        if self._tool == "xdotool":
            return ["xdotool", "key", "--clearmodifiers", "ctrl+v"]
        return ["ydotool", "key"] + _YDOTOOL_CTRL_V

    def deliver(self, text: str) -> None:
        """
        Insert text into the currently focused window.

        Raises:
            DeliveryError: If the insertion tool fails
        """
        if not text:
            return

        # Small delay to ensure focus is ready
        time.sleep(0.05)

        if self.method == "paste":
            self._run(self._copy_command(), input_text=text, capture=False)
            self._run(self._paste_command())
        else:
            self._run(self._type_command(text))

        logger.debug("Delivered %d characters via %s (%s)", len(text), self._tool, self.method)

    @property
    def display_server(self) -> DisplayServer:
        """Get the detected display server."""
        return self._display_server

    @property
    def tool_name(self) -> str:
        """Get the name of the tool being used."""
        return self._tool

    @staticmethod
    def is_available() -> bool:
        """Check if any text injection tool is available."""
        return bool(shutil.which("xdotool") or shutil.which("ydotool"))
