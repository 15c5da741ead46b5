"""
Hotkey listener for WaveTalk.

Turns raw key events for the trigger combination into debounced
down/up edges. The evdev listener reads keyboards at the hardware level
and can grab them so the trigger key never reaches other applications.
"""

import select
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, List, Optional

import evdev
from evdev import ecodes, InputDevice, UInput

from wavetalk.log import get_logger


logger = get_logger(__name__)


class HotkeyError(Exception):
    """Exception raised for hotkey errors."""
    pass


class ObservationUnavailable(HotkeyError):
    """Global key events cannot be observed (no device or no permission)."""
    pass


class Edge(Enum):
    """Direction of a trigger transition."""
    DOWN = "down"
    UP = "up"


@dataclass(frozen=True)
class HotkeyEvent:
    """A debounced transition of the trigger combination."""
    edge: Edge
    timestamp: float


EdgeCallback = Callable[[HotkeyEvent], None]


class EdgeDetector:
    """
    Fires only on genuine 0->1 and 1->0 transitions.

    OS key-repeat produces repeated "down" reports while the key is held;
    those return None.
    """

    def __init__(self):
        self._down = False
        self._lock = threading.Lock()

    def feed(self, pressed: bool, timestamp: Optional[float] = None) -> Optional[HotkeyEvent]:
        with self._lock:
            if pressed == self._down:
                return None
            self._down = pressed
        return HotkeyEvent(
            edge=Edge.DOWN if pressed else Edge.UP,
            timestamp=time.monotonic() if timestamp is None else timestamp,
        )

    def reset(self) -> None:
        with self._lock:
            self._down = False

    @property
    def is_down(self) -> bool:
        return self._down


# Modifier names accepted in trigger strings, mapped to their left/right key codes
MODIFIERS = {
    "ctrl": ("KEY_LEFTCTRL", "KEY_RIGHTCTRL"),
    "shift": ("KEY_LEFTSHIFT", "KEY_RIGHTSHIFT"),
    "alt": ("KEY_LEFTALT", "KEY_RIGHTALT"),
    "super": ("KEY_LEFTMETA", "KEY_RIGHTMETA"),
}
MODIFIER_ALIASES = {
    "control": "ctrl",
    "cmd": "super",
    "meta": "super",
    "win": "super",
    "option": "alt",
}


@dataclass(frozen=True)
class Trigger:
    """A parsed key combination: one key plus required modifier groups."""
    key: int
    modifiers: tuple = ()  # tuple of frozensets of alternative key codes

    def is_held(self, pressed: Iterable[int]) -> bool:
        pressed = set(pressed)
        if self.key not in pressed:
            return False
        return all(pressed & group for group in self.modifiers)


def parse_trigger(spec: str) -> Trigger:
    """
    Parse a trigger such as "capslock", "ctrl+b" or "super+shift+space".

    Raises:
        HotkeyError: If a key name is unknown or no main key is given.
    """
    parts = [p.strip().lower() for p in spec.split("+") if p.strip()]
    if not parts:
        raise HotkeyError(f"Empty hotkey trigger: {spec!r}")

    *modifier_names, key_name = parts
    modifiers = []
    for name in modifier_names:
        name = MODIFIER_ALIASES.get(name, name)
        if name not in MODIFIERS:
            raise HotkeyError(f"Unknown modifier {name!r} in trigger {spec!r}")
        modifiers.append(frozenset(ecodes.ecodes[code] for code in MODIFIERS[name]))

    key_code = ecodes.ecodes.get(f"KEY_{key_name.upper()}")
    if key_code is None:
        raise HotkeyError(f"Unknown key {key_name!r} in trigger {spec!r}")

    return Trigger(key=key_code, modifiers=tuple(modifiers))


class HotkeyListener:
    """
    Base class for edge sources.

    Subclasses call _feed() with the current held/not-held state of the
    trigger; registered callbacks receive each debounced edge once.
    """

    def __init__(self):
        self._callbacks: List[EdgeCallback] = []
        self._detector = EdgeDetector()

    def on_edge(self, callback: EdgeCallback) -> None:
        """Register a handler invoked once per genuine transition."""
        self._callbacks.append(callback)

    def _feed(self, pressed: bool) -> None:
        event = self._detector.feed(pressed)
        if event is None:
            return
        for callback in list(self._callbacks):
            try:
                callback(event)
            except Exception:
                logger.exception("Hotkey callback failed")

    def start(self) -> None:
        raise NotImplementedError

    def stop(self) -> None:
        raise NotImplementedError

    @property
    def is_pressed(self) -> bool:
        """Check if the trigger is currently held."""
        return self._detector.is_down

    def __enter__(self) -> "HotkeyListener":
        self.start()
        return self

    def __exit__(self, *args) -> None:
        self.stop()


class ManualHotkeySource(HotkeyListener):
    """
    Edge source driven by code instead of a keyboard.

    Used by tests and as the fallback trigger when global key
    observation is unavailable.
    """

    def __init__(self):
        super().__init__()
        self._running = False

    def start(self) -> None:
        self._running = True

    def stop(self) -> None:
        self._running = False
        self._detector.reset()

    def press(self) -> None:
        self._feed(True)

    def release(self) -> None:
        self._feed(False)

    def toggle(self) -> None:
        self._feed(not self._detector.is_down)

    @property
    def is_running(self) -> bool:
        return self._running


def find_keyboard_devices(trigger: Trigger) -> List[InputDevice]:
    """Find keyboard input devices that can produce the trigger key."""
    keyboards = []
    for path in evdev.list_devices():
        try:
            device = InputDevice(path)
            caps = device.capabilities()
        except OSError as e:
            logger.debug("Skipping %s: %s", path, e)
            continue
        keys = caps.get(ecodes.EV_KEY, [])
        # The trigger key plus a letter key means a real keyboard
        if trigger.key in keys and ecodes.KEY_A in keys:
            keyboards.append(device)
        else:
            device.close()
    return keyboards


class EvdevHotkeyListener(HotkeyListener):
    """
    Hardware-level trigger listener using evdev.

    With grab enabled, keyboards are grabbed exclusively. A trigger key
    press that completes the combination is swallowed together with its
    release; everything else is forwarded through a virtual UInput clone,
    so e.g. CapsLock never toggles but a plain "b" still types with a
    "ctrl+b" trigger.

    Usage:
        listener = EvdevHotkeyListener("ctrl+b")
        listener.on_edge(handle_edge)
        listener.start()  # Runs in background threads
        # ... app runs ...
        listener.stop()
    """

    def __init__(self, trigger: str = "capslock", grab: bool = True):
        super().__init__()
        self.trigger_spec = trigger
        self.trigger = parse_trigger(trigger)
        self.grab = grab
        self._devices: List[InputDevice] = []
        self._uinputs: List[Optional[UInput]] = []
        self._threads: List[threading.Thread] = []
        self._pressed_codes: set = set()
        self._swallowed: set = set()
        self._running = False
        self._lock = threading.Lock()

    def _on_key(self, code: int, value: int) -> bool:
        """Track pressed keys and feed the edge detector. Returns whether the trigger is held."""
        with self._lock:
            if value == 1:
                self._pressed_codes.add(code)
            elif value == 0:
                self._pressed_codes.discard(code)
            held = self.trigger.is_held(self._pressed_codes)
        if value != 2:  # Key-repeat never changes the held state
            self._feed(held)
        return held

    def _swallow(self, code: int, value: int, held: bool) -> bool:
        """
        Decide whether a grabbed key event is kept from other applications.

        Only the trigger key is swallowed, and only when it goes down with the
        whole combination held. Its repeats and release follow the press.
        """
        if code != self.trigger.key:
            return False
        with self._lock:
            if value == 1:
                if held:
                    self._swallowed.add(code)
                return held
            if value == 2:
                return code in self._swallowed
            if code in self._swallowed:
                self._swallowed.discard(code)
                return True
            return False

    def _handle_device(self, device: InputDevice, uinput: Optional[UInput]) -> None:
        """Handle events from a single keyboard device."""
        try:
            if uinput is not None:
                device.grab()

            while self._running:
                # Use select with timeout to allow clean shutdown
                r, _, _ = select.select([device.fd], [], [], 0.1)
                if not r:
                    continue

                for event in device.read():
                    if not self._running:
                        break

                    if event.type == ecodes.EV_KEY:
                        held = self._on_key(event.code, event.value)
                        if uinput is not None and not self._swallow(event.code, event.value, held):
                            uinput.write(event.type, event.code, event.value)
                            uinput.syn()
                    elif uinput is not None and event.type != ecodes.EV_SYN:
                        try:
                            uinput.write(event.type, event.code, event.value)
                        except OSError:
                            logger.debug("Could not forward event type %d", event.type)

        except OSError as e:
            if self._running:
                logger.error("Keyboard handler error on %s: %s", device.path, e)
        finally:
            if uinput is not None:
                try:
                    device.ungrab()
                except OSError:
                    pass

    def start(self) -> None:
        """
        Start listening for the trigger.

        Raises:
            ObservationUnavailable: If no keyboard can be opened or grabbed
        """
        if self._running:
            return

        try:
            self._devices = find_keyboard_devices(self.trigger)
        except OSError as e:
            raise ObservationUnavailable(f"Cannot enumerate input devices: {e}") from e

        if not self._devices:
            raise ObservationUnavailable(
                "No keyboard device found. Make sure you have permission to access "
                "/dev/input/event*. Add your user to the 'input' group:\n"
                "  sudo usermod -aG input $USER\n"
                "Then log out and back in."
            )

        self._running = True

        for device in self._devices:
            uinput = None
            try:
                if self.grab:
                    # Create virtual input device with same capabilities
                    caps = device.capabilities()
                    # EV_SYN is handled by UInput itself
                    caps.pop(ecodes.EV_SYN, None)
                    uinput = UInput(caps, name=f"wavetalk-{device.name}")
                    self._uinputs.append(uinput)

                thread = threading.Thread(
                    target=self._handle_device,
                    args=(device, uinput),
                    name=f"wavetalk-hotkey-{device.path}",
                    daemon=True,
                )
                thread.start()
                self._threads.append(thread)
            except OSError as e:
                logger.warning("Could not open %s: %s", device.name, e)
                continue

        if not self._threads:
            self._running = False
            raise ObservationUnavailable("Failed to open any keyboard device")

        logger.info("Listening for %s on %d keyboard(s)", self.trigger_spec, len(self._threads))

    def stop(self) -> None:
        """Stop listening and release all devices."""
        if not self._running:
            return

        self._running = False

        for thread in self._threads:
            thread.join(timeout=1)

        for device in self._devices:
            try:
                device.close()
            except OSError:
                pass

        for uinput in self._uinputs:
            try:
                uinput.close()
            except OSError:
                pass

        self._devices = []
        self._uinputs = []
        self._threads = []
        self._pressed_codes.clear()
        self._swallowed.clear()
        self._detector.reset()

    @property
    def is_running(self) -> bool:
        """Check if listener is running."""
        return self._running
