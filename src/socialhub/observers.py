"""State observers: unread counter, theme injector and notification center."""

from __future__ import annotations

import logging
import re
from datetime import datetime, time as dt_time
from threading import Lock
from typing import Any, Callable, Iterable, Iterator

from socialhub.errors import UnknownTheme, ValidationError
from socialhub.native import NotificationBackend, NullBackend
from socialhub.page_scripts import REMOVE_THEME_JS, SET_THEME_JS, THEME_STYLE_ID
from socialhub.protocol import SetTheme, ShowNotification, ToggleNotifications, UpdateUnreadCount

logger = logging.getLogger(__name__)

_UNREAD_PATTERNS = (
    re.compile(r"\((\d+)\)"),
    re.compile(r"·\s*(\d+)"),
)


def parse_unread_count(title: str) -> int | None:
    text = str(title or "")
    for pattern in _UNREAD_PATTERNS:
        match = pattern.search(text)
        if match:
            return int(match.group(1))
    return None


class UnreadCounter:
    """Turns title text into deduplicated update_unread_count commands."""

    def __init__(self, forward: Callable[[UpdateUnreadCount], Any]) -> None:
        self._forward = forward
        self._lock = Lock()
        self._last_forwarded: int | None = None

    @property
    def last_forwarded(self) -> int | None:
        return self._last_forwarded

    @staticmethod
    def counts(titles: Iterable[str]) -> Iterator[int]:
        for title in titles:
            count = parse_unread_count(title)
            if count is not None:
                yield count

    def observe(self, title: str) -> bool:
        forwarded = False
        for count in self.counts((title,)):
            forwarded = self.forward(count)
        return forwarded

    def forward(self, count: int) -> bool:
        with self._lock:
            if count == self._last_forwarded:
                return False
            self._last_forwarded = count
        self._forward(UpdateUnreadCount(count=count))
        return True

    def reset(self) -> None:
        with self._lock:
            self._last_forwarded = None


# Theme CSS follows the selectors used by the wrapped messenger UIs.
_DARK_BASE = """
body{{background:{bg}!important;color:#e0e0e0!important;}}
[role="main"]{{background:{bg}!important;}}
[role="navigation"]{{background:{panel}!important;border-color:{edge}!important;}}
div[role="button"]{{background:{panel}!important;color:#e0e0e0!important;}}
[data-testid="mwthreadlist"]{{background:{bg}!important;}}
[data-testid="mwthreadlist_item"]{{background:{panel}!important;border-color:{edge}!important;}}
input,textarea{{background:{panel}!important;color:#e0e0e0!important;border-color:{edge}!important;}}
[role="banner"]{{background:{panel}!important;border-color:{edge}!important;}}
span:not([role="img"]){{color:#e0e0e0!important;}}
[role="heading"]{{color:#ffffff!important;}}
[role="listitem"]{{background:{panel}!important;border-color:{edge}!important;}}
svg[role="img"]{{color:#e0e0e0!important;}}
[data-testid="mwcomposer"]{{background:{panel}!important;}}
[data-testid="mwthreadlist_header"]{{background:{bg}!important;border-color:{edge}!important;}}
::-webkit-scrollbar{{background:{bg}!important;}}
::-webkit-scrollbar-thumb{{background:{edge}!important;}}
"""

THEMES: dict[str, str] = {
    "light": "",
    "dark": _DARK_BASE.format(bg="#1a1a2e", panel="#16213e", edge="#0f3460").strip(),
    "darker": _DARK_BASE.format(bg="#0d0d1a", panel="#0a0a14", edge="#1a1a2e").strip(),
    "oled-black": _DARK_BASE.format(bg="#000000", panel="#0a0a0a", edge="#1a1a1a").strip(),
}
_THEME_ALIASES = {"oled": "oled-black"}
REMOVE_THEME_NAMES = frozenset({"remove", "default"})
# User-supplied stylesheet, set through the custom_css setting.
CUSTOM_THEME = "custom"
MAX_CUSTOM_CSS = 100_000


def validate_theme(name: Any) -> str:
    key = str(name or "").strip().lower()
    key = _THEME_ALIASES.get(key, key)
    if key in REMOVE_THEME_NAMES or key in THEMES or key == CUSTOM_THEME:
        return key
    raise UnknownTheme(str(name))


def validate_custom_css(css: Any) -> str:
    if not isinstance(css, str):
        raise ValidationError("custom_css must be a string")
    if len(css) > MAX_CUSTOM_CSS:
        raise ValidationError(f"custom_css is longer than {MAX_CUSTOM_CSS} characters")
    return css


class ThemeInjector:
    """Owns the single theme style node of the attached page."""

    def __init__(self) -> None:
        self._page: Any = None
        self._current = "light"
        self._custom_css = ""

    @property
    def current(self) -> str:
        return self._current

    @property
    def custom_css(self) -> str:
        return self._custom_css

    def set_custom_css(self, css: Any) -> None:
        """Store the stylesheet behind the ``custom`` theme.

        Takes effect on the next ``apply("custom")``; the page is not touched here.
        """
        self._custom_css = validate_custom_css(css)

    def attach(self, page: Any) -> None:
        self._page = page
        if self._current != "light":
            self.apply(self._current)

    def detach(self) -> None:
        self._page = None

    def handle_event(self, event: Any) -> None:
        if isinstance(event, SetTheme):
            self.apply(event.name)

    def apply(self, name: str) -> bool:
        try:
            key = validate_theme(name)
        except UnknownTheme as exc:
            logger.warning("rejected theme: %s (keeping %s)", exc, self._current)
            return False
        page = self._page
        try:
            if key in REMOVE_THEME_NAMES:
                if page is not None:
                    page.evaluate(REMOVE_THEME_JS, [THEME_STYLE_ID])
                key = "light"
            elif page is not None:
                css = self._custom_css if key == CUSTOM_THEME else THEMES[key]
                page.evaluate(SET_THEME_JS, [THEME_STYLE_ID, css])
        except Exception as exc:  # noqa: BLE001
            logger.warning("theme %s not applied: %s", key, exc)
            return False
        self._current = key
        logger.info("theme applied: %s", key)
        return True


class NotificationCenter:
    """Native half of the notification interceptor.

    ``show_preview`` off replaces the message body with an empty string before
    it reaches the OS; ``sound_enabled`` asks the backend for an audible alert.
    """

    def __init__(
        self,
        backend: NotificationBackend | None = None,
        *,
        enabled: bool = True,
        do_not_disturb: bool = False,
        dnd_schedule: tuple[str, str] | None = None,
        show_preview: bool = True,
        sound_enabled: bool = False,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._backend = backend or NullBackend()
        self._lock = Lock()
        self._enabled = enabled
        self._do_not_disturb = do_not_disturb
        self._dnd_schedule = _parse_schedule(dnd_schedule) if dnd_schedule else None
        self._show_preview = show_preview
        self._sound_enabled = sound_enabled
        self._clock = clock
        self.shown = 0
        self.suppressed = 0

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def show_preview(self) -> bool:
        return self._show_preview

    @property
    def sound_enabled(self) -> bool:
        return self._sound_enabled

    @property
    def backend_name(self) -> str:
        return self._backend.name

    def set_enabled(self, enabled: bool) -> None:
        with self._lock:
            self._enabled = bool(enabled)
        logger.info("notifications %s", "enabled" if enabled else "disabled")

    def set_do_not_disturb(self, enabled: bool) -> None:
        with self._lock:
            self._do_not_disturb = bool(enabled)
        logger.info("do not disturb %s", "on" if enabled else "off")

    def set_show_preview(self, enabled: bool) -> None:
        with self._lock:
            self._show_preview = bool(enabled)
        logger.info("notification previews %s", "shown" if enabled else "hidden")

    def set_sound_enabled(self, enabled: bool) -> None:
        with self._lock:
            self._sound_enabled = bool(enabled)
        logger.info("notification sound %s", "on" if enabled else "off")

    def handle_event(self, event: Any) -> None:
        if isinstance(event, ToggleNotifications):
            self.set_enabled(event.enabled)

    def show(self, command: ShowNotification) -> bool:
        with self._lock:
            if not self._enabled or self._do_not_disturb or self._in_dnd_window():
                self.suppressed += 1
                suppressed = True
            else:
                self.shown += 1
                suppressed = False
            body = command.body if self._show_preview else ""
            sound = self._sound_enabled
        if suppressed:
            logger.info("notification suppressed: %s", command.title)
            return False
        self._backend.present(command.title, body, command.icon, sound=sound)
        logger.debug("notification shown via %s: %s", self._backend.name, command.title)
        return True

    def _in_dnd_window(self) -> bool:
        if self._dnd_schedule is None:
            return False
        start, end = self._dnd_schedule
        now = self._clock().time()
        if start <= end:
            return start <= now <= end
        # Overnight window, e.g. 22:00-07:00.
        return now >= start or now <= end


def _parse_schedule(schedule: tuple[str, str]) -> tuple[dt_time, dt_time]:
    start, end = schedule
    return (
        datetime.strptime(start, "%H:%M").time(),
        datetime.strptime(end, "%H:%M").time(),
    )
