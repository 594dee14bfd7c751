"""OS notification backends, one per supported desktop, picked at startup."""

from __future__ import annotations

import json
import logging
import shutil
import subprocess
import sys
from typing import Protocol
from xml.sax.saxutils import escape

logger = logging.getLogger(__name__)

APP_NAME = "SocialHub"
# freedesktop sound naming spec.
LINUX_SOUND = "message-new-instant"


class NotificationBackend(Protocol):
    name: str

    def present(self, title: str, body: str, icon: str = "", sound: bool = False) -> bool:
        ...


class LinuxBackend:
    """freedesktop notifications through notify-send."""

    name = "linux"

    def __init__(self, binary: str = "notify-send") -> None:
        self._binary = binary

    def present(self, title: str, body: str, icon: str = "", sound: bool = False) -> bool:
        cmd = [self._binary, f"--app-name={APP_NAME}"]
        if icon and not icon.startswith(("http://", "https://", "data:")):
            cmd.append(f"--icon={icon}")
        if sound:
            cmd.append(f"--hint=string:sound-name:{LINUX_SOUND}")
        cmd.extend([title, body])
        return _run(self.name, cmd)


class MacBackend:
    name = "macos"

    def present(self, title: str, body: str, icon: str = "", sound: bool = False) -> bool:
        # JSON string literals are valid AppleScript string literals for our text.
        script = f"display notification {json.dumps(body)} with title {json.dumps(title)}"
        if sound:
            script += ' sound name "default"'
        return _run(self.name, ["osascript", "-e", script])


class WindowsBackend:
    name = "windows"

    def present(self, title: str, body: str, icon: str = "", sound: bool = False) -> bool:
        audio = "" if sound else "<audio silent='true'/>"
        xml = (
            "<toast><visual><binding template='ToastGeneric'>"
            f"<text>{escape(title)}</text><text>{escape(body)}</text>"
            f"</binding></visual>{audio}</toast>"
        )
        script = (
            "[Windows.UI.Notifications.ToastNotificationManager, Windows.UI.Notifications, "
            "ContentType = WindowsRuntime] > $null;"
            "$doc = New-Object Windows.Data.Xml.Dom.XmlDocument;"
            f"$doc.LoadXml({_ps_quote(xml)});"
            "$toast = [Windows.UI.Notifications.ToastNotification]::new($doc);"
            "[Windows.UI.Notifications.ToastNotificationManager]::"
            f"CreateToastNotifier({_ps_quote(APP_NAME)}).Show($toast)"
        )
        return _run(self.name, ["powershell", "-NoProfile", "-NonInteractive", "-Command", script])


class NullBackend:
    """Used where no notification service is reachable; only logs."""

    name = "null"

    def present(self, title: str, body: str, icon: str = "", sound: bool = False) -> bool:
        logger.info("notification (no OS backend): %s - %s", title, body)
        return False


def select_backend(platform: str | None = None) -> NotificationBackend:
    target = platform or sys.platform
    if target.startswith("linux"):
        if shutil.which("notify-send"):
            return LinuxBackend()
        logger.warning("notify-send not found; notifications will only be logged")
        return NullBackend()
    if target == "darwin":
        return MacBackend()
    if target in ("win32", "cygwin"):
        return WindowsBackend()
    logger.warning("no notification backend for %s", target)
    return NullBackend()


def _run(backend: str, cmd: list[str]) -> bool:
    try:
        subprocess.run(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            timeout=10,
            check=True,
        )
    except (OSError, subprocess.SubprocessError) as exc:
        logger.warning("%s notification failed: %s", backend, exc)
        return False
    return True


def _ps_quote(text: str) -> str:
    return "'" + text.replace("'", "''") + "'"
