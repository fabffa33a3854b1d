"""OS probes used by the capture monitors.

Everything here is best-effort: probes return None rather than raising when
the surface cannot be read, so the monitors stay independent of the
mechanism each desktop uses.
"""

import shutil
import subprocess
import sys
from dataclasses import dataclass
from typing import Optional

import psutil
import pyperclip
from loguru import logger

OSASCRIPT_TIMEOUT = 2.0

FRONTMOST_APP_SCRIPT = (
    'tell application "System Events" to get name of first process whose frontmost is true'
)

# Prints "1" on the first line when the focused element is a secure text
# field, followed by the element value.
FOCUSED_FIELD_SCRIPT = """
tell application "System Events"
    set frontApp to first process whose frontmost is true
    tell frontApp
        try
            set focusedElement to value of attribute "AXFocusedUIElement"
            set elementRole to ""
            try
                set elementRole to value of attribute "AXSubrole" of focusedElement
            end try
            set elementValue to value of focusedElement
            if elementValue is missing value then
                return ""
            end if
            if elementRole is "AXSecureTextField" then
                return "1" & linefeed & elementValue
            end if
            return "0" & linefeed & elementValue
        end try
    end tell
end tell
return ""
"""

ACCESSIBILITY_CHECK_SCRIPT = (
    'tell application "System Events" to get UI elements enabled'
)

PERMISSION_INSTRUCTIONS = """To enable accessibility features:

1. Open System Settings (System Preferences on older macOS)
2. Go to Privacy & Security > Accessibility
3. Click the lock icon to make changes (you may need to enter your password)
4. Find 'fliterec' (or your terminal) in the list and enable it
5. If it is not listed, click the '+' button and add it

After granting permission, restart the fliterec daemon."""

UNSUPPORTED_INSTRUCTIONS = (
    "Focused text field capture is only available on macOS. "
    "Clipboard capture works on all platforms."
)


@dataclass(frozen=True)
class FieldSnapshot:
    """Contents of the focused text input at one instant."""
    content: str
    source_app: Optional[str] = None
    is_password: bool = False


def _run_osascript(script: str) -> Optional[str]:
    """Run an AppleScript snippet and return its stdout, or None on failure."""
    try:
        result = subprocess.run(
            ["osascript", "-e", script],
            capture_output=True,
            text=True,
            timeout=OSASCRIPT_TIMEOUT,
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug(f"osascript failed: {e}")
        return None

    if result.returncode != 0:
        return None
    return result.stdout.rstrip("\n")


def read_clipboard() -> Optional[str]:
    """Current clipboard text, or None when empty or unreadable."""
    try:
        text = pyperclip.paste()
    except pyperclip.PyperclipException as e:
        logger.debug(f"Clipboard read failed: {e}")
        return None
    return text or None


def write_clipboard(text: str) -> None:
    pyperclip.copy(text)


def _process_name(pid: int) -> Optional[str]:
    try:
        name = psutil.Process(pid).name()
    except (psutil.Error, ValueError):
        return None
    if name.lower().endswith(".exe"):
        name = name[:-4]
    return name or None


def _foreground_app_macos() -> Optional[str]:
    name = _run_osascript(FRONTMOST_APP_SCRIPT)
    return name.strip() if name and name.strip() else None


def _foreground_app_windows() -> Optional[str]:
    import ctypes
    from ctypes import wintypes

    user32 = ctypes.WinDLL("user32", use_last_error=True)
    user32.GetForegroundWindow.restype = wintypes.HWND
    user32.GetWindowThreadProcessId.argtypes = [wintypes.HWND, ctypes.POINTER(wintypes.DWORD)]
    user32.GetWindowThreadProcessId.restype = wintypes.DWORD

    hwnd = user32.GetForegroundWindow()
    if not hwnd:
        return None

    pid = wintypes.DWORD()
    user32.GetWindowThreadProcessId(hwnd, ctypes.byref(pid))
    if pid.value == 0:
        return None
    return _process_name(pid.value)


def _foreground_app_linux() -> Optional[str]:
    if not shutil.which("xdotool"):
        return None
    try:
        result = subprocess.run(
            ["xdotool", "getactivewindow", "getwindowpid"],
            capture_output=True,
            text=True,
            timeout=OSASCRIPT_TIMEOUT,
        )
    except (OSError, subprocess.SubprocessError):
        return None

    if result.returncode != 0:
        return None
    try:
        pid = int(result.stdout.strip())
    except ValueError:
        return None
    return _process_name(pid)


def get_foreground_app() -> Optional[str]:
    """Name of the foreground application, or None when it cannot be determined."""
    try:
        if sys.platform == "darwin":
            return _foreground_app_macos()
        if sys.platform == "win32":
            return _foreground_app_windows()
        return _foreground_app_linux()
    except Exception as e:
        logger.debug(f"Foreground app lookup failed: {e}")
        return None


def get_focused_field() -> Optional[FieldSnapshot]:
    """
    Snapshot the focused text input of the frontmost application.

    Returns:
        The field contents, or None when nothing readable is focused or the
        platform has no supported mechanism.
    """
    if sys.platform != "darwin":
        return None

    output = _run_osascript(FOCUSED_FIELD_SCRIPT)
    if not output:
        return None

    flag, _, value = output.partition("\n")
    if flag not in ("0", "1") or not value:
        return None

    return FieldSnapshot(
        content=value,
        source_app=_foreground_app_macos(),
        is_password=flag == "1",
    )


class AccessibilityPermission:
    """Checks for the OS permission needed to read other apps' text fields."""

    def is_granted(self) -> bool:
        if sys.platform != "darwin":
            return False
        return _run_osascript(ACCESSIBILITY_CHECK_SCRIPT) == "true"

    def request(self) -> bool:
        """
        Open the Accessibility settings pane so the user can grant access.

        Returns True when the pane was opened; the user still has to enable
        the permission by hand.
        """
        if sys.platform != "darwin":
            return False
        try:
            result = subprocess.run(
                [
                    "open",
                    "x-apple.systempreferences:com.apple.preference.security?Privacy_Accessibility",
                ],
                capture_output=True,
                timeout=OSASCRIPT_TIMEOUT,
            )
        except (OSError, subprocess.SubprocessError) as e:
            logger.warning(f"Could not open accessibility settings: {e}")
            return False
        return result.returncode == 0

    def instructions(self) -> str:
        if sys.platform != "darwin":
            return UNSUPPORTED_INSTRUCTIONS
        return PERMISSION_INSTRUCTIONS
