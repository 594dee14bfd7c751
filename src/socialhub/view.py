"""Embedded view: one Playwright persistent Chromium context per platform profile."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable

from socialhub.page_scripts import (
    DEFAULT_TITLE_POLL_MS,
    EMIT_EVENT_JS,
    INVOKE_BINDING,
    TITLE_BINDING,
    build_init_script,
    event_args,
)
from socialhub.platforms import PlatformDescriptor, csp_header

logger = logging.getLogger(__name__)

# Platforms whose web UI has no conflicting keyboard shortcuts of its own.
SHORTCUT_PLATFORMS = frozenset({"messenger", "facebook"})


def page_is_closed(page: Any | None) -> bool:
    if page is None:
        return True
    checker = getattr(page, "is_closed", None)
    if callable(checker):
        try:
            return bool(checker())
        except Exception:
            return True
    return False


class EmbeddedView:
    def __init__(
        self,
        playwright: Any,
        *,
        headless: bool = False,
        on_command: Callable[[Any], dict[str, Any]],
        on_title: Callable[[str], None],
        on_ready: Callable[[Any], None] | None = None,
        title_poll_ms: int = DEFAULT_TITLE_POLL_MS,
    ) -> None:
        self._playwright = playwright
        self._headless = headless
        self._on_command = on_command
        self._on_title = on_title
        self._on_ready = on_ready
        self._title_poll_ms = title_poll_ms
        self._context: Any = None
        self._page: Any = None
        self._platform: PlatformDescriptor | None = None

    @property
    def context(self) -> Any:
        return self._context

    @property
    def page(self) -> Any:
        return self._page

    @property
    def platform(self) -> PlatformDescriptor | None:
        return self._platform

    def is_open(self) -> bool:
        return self._context is not None and not page_is_closed(self._page)

    def open(self, platform: PlatformDescriptor, user_data_dir: Path) -> tuple[Any, Any]:
        """Launch the platform's profile; any previous context is closed first."""
        self.close()
        context = _launch_context(self._playwright, user_data_dir, headless=self._headless)
        context.expose_binding(INVOKE_BINDING, self._handle_invoke)
        context.expose_function(TITLE_BINDING, self._handle_title)
        context.add_init_script(
            build_init_script(
                shortcuts=platform.id in SHORTCUT_PLATFORMS,
                title_poll_ms=self._title_poll_ms,
            )
        )
        apply_csp(context, platform)
        page = context.pages[0] if context.pages else context.new_page()
        page.on("domcontentloaded", self._handle_ready)
        self._context = context
        self._page = page
        self._platform = platform
        logger.info("opened %s profile at %s", platform.id, user_data_dir)
        return context, page

    def navigate(self, url: str) -> None:
        if page_is_closed(self._page):
            raise RuntimeError("embedded view is not open")
        logger.info("navigating to %s", url)
        self._page.goto(url, wait_until="domcontentloaded")

    def emit(self, name: str, payload: Any) -> int:
        """Deliver an event to the page's listeners; 0 when nothing listened."""
        if page_is_closed(self._page):
            return 0
        try:
            delivered = self._page.evaluate(EMIT_EVENT_JS, event_args(name, payload))
        except Exception as exc:  # noqa: BLE001
            logger.debug("page event %s not delivered: %s", name, exc)
            return 0
        return int(delivered or 0)

    def pump(self, timeout_ms: int) -> None:
        """Let Playwright dispatch page callbacks for up to timeout_ms."""
        if page_is_closed(self._page):
            return
        self._page.wait_for_timeout(timeout_ms)

    def close(self) -> None:
        context = self._context
        self._context = None
        self._page = None
        self._platform = None
        if context is None:
            return
        try:
            context.close()
        except Exception as exc:  # noqa: BLE001
            logger.warning("browser context did not close cleanly: %s", exc)

    def _handle_invoke(self, _source: Any, message: Any) -> dict[str, Any]:
        return self._on_command(message)

    def _handle_title(self, title: Any) -> None:
        self._on_title(str(title or ""))

    def _handle_ready(self, _page: Any) -> None:
        if self._on_ready is not None and self._page is not None:
            self._on_ready(self._page)


def apply_csp(context: Any, platform: PlatformDescriptor) -> None:
    """Replace the Content-Security-Policy of top-level documents."""
    policy = csp_header(platform)

    def handler(route: Any, request: Any) -> None:
        if request.resource_type != "document":
            route.fallback()
            return
        try:
            response = route.fetch()
        except Exception as exc:  # noqa: BLE001
            logger.debug("csp fetch failed for %s: %s", request.url, exc)
            route.fallback()
            return
        headers = dict(response.headers)
        headers["content-security-policy"] = policy
        route.fulfill(response=response, headers=headers)

    context.route("**/*", handler)


def _launch_context(playwright_obj: Any, user_data_dir: Path, *, headless: bool) -> Any:
    Path(user_data_dir).mkdir(parents=True, exist_ok=True)
    kwargs: dict[str, Any] = {
        "headless": headless,
        "args": ["--window-size=1200,800"],
        "no_viewport": True,
    }
    try:
        return playwright_obj.chromium.launch_persistent_context(
            str(user_data_dir), channel="chrome", **kwargs
        )
    except Exception:
        return playwright_obj.chromium.launch_persistent_context(str(user_data_dir), **kwargs)
