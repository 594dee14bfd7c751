"""Native orchestrator: command handlers, event fan-out and the main loop."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Executor, ThreadPoolExecutor
from pathlib import Path
from queue import Empty, SimpleQueue
from typing import Any, Callable, Iterator

from socialhub.config import AppConfig
from socialhub.errors import SocialHubError, ValidationError
from socialhub.native import NotificationBackend, select_backend
from socialhub.observers import (
    CUSTOM_THEME,
    NotificationCenter,
    ThemeInjector,
    UnreadCounter,
    validate_custom_css,
    validate_theme,
)
from socialhub.platforms import PlatformDescriptor, resolve
from socialhub.privacy import PrivacyConfig, PrivacyInterceptor
from socialhub.protocol import (
    CommandBus,
    Event,
    EventBus,
    HandleShortcut,
    Navigate,
    SaveSetting,
    SelectPlatform,
    SetPrivacy,
    SetTheme,
    ShowNotification,
    ToggleNotifications,
    UpdatePrivacy,
    UpdateUnreadCount,
)
from socialhub.sessions import SessionManager
from socialhub.storage import SettingsStore, append_log
from socialhub.view import EmbeddedView

logger = logging.getLogger(__name__)

DEFAULT_PLATFORM = "messenger"

SHORTCUT_ACTIONS = frozenset({"new-message", "mute", "switch-conversation"})

# Keys that are owned by dedicated commands and cannot be written directly.
_RESERVED_SETTINGS = frozenset({"privacy", "last_platform"})
_BOOL_SETTINGS = frozenset({"notifications_enabled", "do_not_disturb", "show_preview", "sound_enabled"})

OPEN_RETRY_BASE_S = 1.0
OPEN_RETRY_MAX_S = 30.0


class Orchestrator:
    def __init__(
        self,
        config: AppConfig,
        *,
        settings: SettingsStore | None = None,
        backend: NotificationBackend | None = None,
        executor: Executor | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self._clock = clock
        self.settings = settings or SettingsStore(config.settings_path)
        self._executor = executor or ThreadPoolExecutor(
            max_workers=config.workers, thread_name_prefix="socialhub-worker"
        )
        self.commands = CommandBus(self._executor)
        self.events = EventBus()
        self.sessions = SessionManager(
            config.data_root,
            zero_persistence=config.zero_persistence,
            navigator=self._open_platform,
            audit_log=config.audit_log,
        )
        self.privacy = PrivacyInterceptor(PrivacyConfig.from_dict(self.settings.get("privacy")))
        self.theme = ThemeInjector()
        self._restore_custom_css()
        self.theme.apply(self.settings.get("theme", "light"))
        self.notifications = NotificationCenter(
            backend or select_backend(),
            enabled=bool(self.settings.get("notifications_enabled", True)),
            do_not_disturb=bool(self.settings.get("do_not_disturb", False)),
            dnd_schedule=_parse_dnd_setting(self.settings.get("dnd_schedule")),
            show_preview=bool(self.settings.get("show_preview", True)),
            sound_enabled=bool(self.settings.get("sound_enabled", False)),
        )
        self.unread = UnreadCounter(forward=self.commands.execute)
        self.unread_count = 0
        self.view: Any = None
        self._privacy_lock = threading.Lock()
        self._switches: SimpleQueue[PlatformDescriptor] = SimpleQueue()
        self._outbox: SimpleQueue[Event] = SimpleQueue()
        self._titles: SimpleQueue[str] = SimpleQueue()
        self._loop_thread = threading.get_ident()
        self._stopping = False
        self._open_failures = 0
        self._retry: tuple[PlatformDescriptor, float] | None = None
        self._register_handlers()
        self._subscribe_listeners()

    # wiring

    def _register_handlers(self) -> None:
        self.commands.register(SelectPlatform, self._select_platform)
        self.commands.register(ShowNotification, self._show_notification, offload=True)
        self.commands.register(UpdateUnreadCount, self._update_unread_count)
        self.commands.register(HandleShortcut, self._handle_shortcut)
        self.commands.register(
            SaveSetting, self._save_setting, offload=True, validate=self._validate_setting
        )
        self.commands.register(SetPrivacy, self._set_privacy, offload=True)
        self.commands.ensure_complete()

    def _subscribe_listeners(self) -> None:
        self.events.subscribe(self.privacy.handle_event)
        self.events.subscribe(self.theme.handle_event)
        self.events.subscribe(self.notifications.handle_event)
        self.events.subscribe(self._forward_to_page)

    def _restore_custom_css(self) -> None:
        css = self.settings.get("custom_css")
        if css is None:
            return
        try:
            self.theme.set_custom_css(css)
        except ValidationError as exc:
            logger.warning("ignoring stored custom_css: %s", exc)

    def attach_view(self, view: Any) -> None:
        self.view = view

    def handle_command(self, message: Any) -> dict[str, Any]:
        return self.commands.dispatch(message).to_dict()

    def emit(self, event: Event) -> None:
        """Fan out on the loop thread; worker threads hand events over."""
        if threading.get_ident() == self._loop_thread:
            self.events.emit(event)
        else:
            self._outbox.put(event)

    def request_switch(self, platform: PlatformDescriptor) -> None:
        self._switches.put(platform)

    def navigate(self, route_hash: str) -> None:
        """Ask the page to move to an in-app route, e.g. ``#/t/123``."""
        if not route_hash.startswith("#"):
            route_hash = f"#{route_hash}"
        self.emit(Navigate(route_hash=route_hash))

    # command handlers

    def _select_platform(self, command: SelectPlatform) -> str:
        platform = resolve(command.platform_id)
        self.request_switch(platform)
        return f"Selected platform: {platform.display_name}"

    def _show_notification(self, command: ShowNotification) -> bool:
        return self.notifications.show(command)

    def _update_unread_count(self, command: UpdateUnreadCount) -> int:
        if command.count != self.unread_count:
            logger.info("unread count: %s", command.count)
        self.unread_count = command.count
        return command.count

    def _handle_shortcut(self, command: HandleShortcut) -> dict[str, Any]:
        action = command.action
        if action not in SHORTCUT_ACTIONS:
            raise ValidationError(f"Unknown shortcut action: {action}")
        if action == "mute":
            enabled = not self.notifications.enabled
            self.emit(ToggleNotifications(enabled=enabled))
            return {"action": action, "notifications_enabled": enabled}
        if action == "switch-conversation":
            index = command.data.get("index")
            if isinstance(index, bool) or not isinstance(index, int) or not 1 <= index <= 9:
                raise ValidationError("switch-conversation needs an index between 1 and 9")
            return {"action": action, "index": index}
        logger.info("shortcut: %s", action)
        return {"action": action}

    def _validate_setting(self, command: SaveSetting) -> None:
        key, value = command.key, command.value
        if key in _RESERVED_SETTINGS:
            raise ValidationError(f"Setting '{key}' cannot be written directly")
        if key == "theme":
            validate_theme(value)
        elif key == "custom_css":
            validate_custom_css(value)
        elif key in _BOOL_SETTINGS and not isinstance(value, bool):
            raise ValidationError(f"Setting '{key}' must be a boolean")

    def _save_setting(self, command: SaveSetting) -> str:
        key, value = command.key, command.value
        follow_up: Event | None = None
        if key == "theme":
            value = validate_theme(value)
            follow_up = SetTheme(name=value)
        elif key == "custom_css":
            self.theme.set_custom_css(value)
            self.settings.set("theme", CUSTOM_THEME)
            follow_up = SetTheme(name=CUSTOM_THEME)
        elif key == "notifications_enabled":
            follow_up = ToggleNotifications(enabled=value)
        elif key == "do_not_disturb":
            self.notifications.set_do_not_disturb(value)
        elif key == "show_preview":
            self.notifications.set_show_preview(value)
        elif key == "sound_enabled":
            self.notifications.set_sound_enabled(value)
        self.settings.set(key, value)
        if follow_up is not None:
            self.emit(follow_up)
        return "saved"

    def _set_privacy(self, command: SetPrivacy) -> int:
        with self._privacy_lock:
            current = PrivacyConfig.from_dict(self.settings.get("privacy"))
            base = current if current.version >= self.privacy.config.version else self.privacy.config
            updated = base.merged(
                block_typing=command.block_typing,
                block_read_receipts=command.block_read_receipts,
                hide_last_active=command.hide_last_active,
                block_link_previews=command.block_link_previews,
            )
            self.settings.set("privacy", updated.to_dict())
        self.emit(UpdatePrivacy(config=updated))
        return updated.version

    # event listeners

    def _forward_to_page(self, event: Event) -> None:
        if self.view is not None:
            self.view.emit(event.NAME, event.payload())

    def _on_page_ready(self, page: Any) -> None:
        self.privacy.refresh_styles()
        self.theme.attach(page)
        if self.view is not None:
            self.view.emit(ToggleNotifications.NAME, self.notifications.enabled)

    # platform switching

    def _open_platform(self, platform: PlatformDescriptor, storage_path: Path) -> None:
        view = self.view
        if view is None:
            return
        if view.platform is None or view.platform.id != platform.id or not view.is_open():
            try:
                context, page = view.open(platform, storage_path)
                self.privacy.install(context, page)
            except Exception as exc:  # noqa: BLE001
                self._open_failed(platform, exc)
                return
            self._open_failures = 0
            self._retry = None
            self.theme.attach(page)
            self.unread.reset()
        try:
            view.navigate(platform.url)
        except Exception as exc:  # noqa: BLE001
            logger.warning("navigation to %s failed: %s", platform.url, exc)
        try:
            self.settings.set("last_platform", platform.id)
        except OSError as exc:
            logger.warning("could not remember last platform: %s", exc)

    def _open_failed(self, platform: PlatformDescriptor, exc: Exception) -> None:
        self._open_failures += 1
        delay = min(OPEN_RETRY_BASE_S * 2 ** (self._open_failures - 1), OPEN_RETRY_MAX_S)
        logger.error(
            "could not open %s (attempt %s), retrying in %.0fs: %s",
            platform.id,
            self._open_failures,
            delay,
            exc,
        )
        append_log(self.config.audit_log, f"platform_open_failed platform={platform.id} error={exc}")
        self.privacy.detach()
        self.theme.detach()
        try:
            self.view.close()
        except Exception as close_exc:  # noqa: BLE001
            logger.warning("closing the half-open view failed: %s", close_exc)
        self._retry = (platform, self._clock() + delay)

    def _perform_switch(self, platform: PlatformDescriptor) -> None:
        view = self.view
        if view is not None and view.platform is not None and view.platform.id != platform.id:
            # The outgoing profile must be released before its storage is wiped.
            self.privacy.detach()
            self.theme.detach()
            view.close()
        try:
            self.sessions.switch_to(platform)
        except SocialHubError as exc:
            logger.error("switch to %s failed: %s", platform.id, exc)

    # main loop

    def process_pending(self) -> None:
        for platform in _drain(self._switches):
            self._perform_switch(platform)
        if self._retry is not None and self._clock() >= self._retry[1]:
            platform, _due = self._retry
            self._retry = None
            logger.info("retrying %s", platform.id)
            self._perform_switch(platform)
        for event in _drain(self._outbox):
            self.events.emit(event)
        for count in self.unread.counts(_drain(self._titles)):
            self.unread.forward(count)

    def on_title(self, title: str) -> None:
        self._titles.put(title)

    def run(self, platform_id: str | None = None) -> None:
        from playwright.sync_api import sync_playwright

        self._loop_thread = threading.get_ident()
        initial = resolve(platform_id or self.settings.get("last_platform") or DEFAULT_PLATFORM)
        with sync_playwright() as p:
            self.attach_view(
                EmbeddedView(
                    p,
                    headless=self.config.headless,
                    on_command=self.handle_command,
                    on_title=self.on_title,
                    on_ready=self._on_page_ready,
                )
            )
            self.request_switch(initial)
            try:
                while not self._stopping:
                    self.process_pending()
                    if not self.view.is_open():
                        if self._retry is None:
                            logger.info("embedded view closed; quitting")
                            break
                        time.sleep(self.config.loop_interval_ms / 1000)
                        continue
                    self.view.pump(self.config.loop_interval_ms)
            except KeyboardInterrupt:
                logger.info("interrupted; quitting")
            finally:
                self.shutdown()

    def stop(self) -> None:
        self._stopping = True

    def shutdown(self) -> None:
        self._stopping = True
        self.privacy.detach()
        self.theme.detach()
        if self.view is not None:
            self.view.close()
        self.sessions.shutdown()
        shutdown = getattr(self._executor, "shutdown", None)
        if callable(shutdown):
            shutdown(wait=True)
        logger.info("shutdown complete")


def _drain(queue: SimpleQueue) -> Iterator[Any]:
    while True:
        try:
            yield queue.get_nowait()
        except Empty:
            return


def _parse_dnd_setting(raw: Any) -> tuple[str, str] | None:
    if not isinstance(raw, str) or "-" not in raw:
        return None
    start, _, end = raw.partition("-")
    start, end = start.strip(), end.strip()
    try:
        time.strptime(start, "%H:%M")
        time.strptime(end, "%H:%M")
    except ValueError:
        logger.warning("ignoring malformed dnd_schedule %r", raw)
        return None
    return start, end
