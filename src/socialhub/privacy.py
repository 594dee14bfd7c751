"""Privacy interception for the embedded page.

Two layers work together:

* ``NetworkGuard`` sits on the browser context route table and inspects every
  ``fetch``/``xhr`` request before it leaves the browser. Requests carrying a
  blocklisted marker (typing indicators, read receipts) are aborted; every
  other request falls through untouched.
* ``apply_style_rules`` injects one scoped ``<style>`` node per active toggle
  to hide read receipts, last-active badges and link-preview cards.

``PrivacyInterceptor`` binds both layers to one page and reacts to
``update-privacy`` events.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import asdict, dataclass, replace
from enum import Enum
from threading import Lock
from typing import Any, Iterator
from urllib.parse import parse_qsl, urlsplit

from socialhub.errors import InstallError
from socialhub.page_scripts import APPLY_PRIVACY_STYLES_JS, PRIVACY_STYLE_ATTR
from socialhub.protocol import UpdatePrivacy

logger = logging.getLogger(__name__)

TOGGLES = ("block_typing", "block_read_receipts", "hide_last_active", "block_link_previews")

# fetch() and XMLHttpRequest as seen by the browser's request pipeline.
INTERCEPTED_RESOURCE_TYPES = frozenset({"fetch", "xhr"})

GUARD_MARKER = "_socialhub_network_guard"

_BLOCK_MARKERS = {
    "block_typing": ("typing", "composing"),
    "block_read_receipts": ("mark_seen", "read_receipt"),
}

_STYLE_RULES = {
    "block_read_receipts": '[aria-label*="Seen"]{display:none!important}',
    "hide_last_active": '[aria-label*="last active"],[data-last-active="true"]{display:none!important}',
    "block_link_previews": '[data-preview="true"],.link-preview{display:none!important}',
}

# Fields whose values name the request operation rather than carry user content.
_OPERATION_FIELDS = frozenset({"fb_api_req_friendly_name", "operationname", "queryname", "action"})
_FIELD_NAME_RE = re.compile(r"[\w.\[\]-]{1,128}")


@dataclass(frozen=True)
class PrivacyConfig:
    block_typing: bool = True
    block_read_receipts: bool = True
    hide_last_active: bool = True
    block_link_previews: bool = True
    version: int = 0

    @classmethod
    def from_dict(cls, payload: Any) -> "PrivacyConfig":
        if not isinstance(payload, dict):
            return cls()
        defaults = cls()
        values: dict[str, Any] = {}
        for key in TOGGLES:
            raw = payload.get(key, getattr(defaults, key))
            values[key] = raw if isinstance(raw, bool) else getattr(defaults, key)
        version = payload.get("version", 0)
        values["version"] = version if isinstance(version, int) and not isinstance(version, bool) else 0
        return cls(**values)

    def merged(self, **toggles: bool) -> "PrivacyConfig":
        unknown = set(toggles) - set(TOGGLES)
        if unknown:
            raise ValueError(f"unknown privacy toggles: {sorted(unknown)}")
        return replace(self, version=self.version + 1, **toggles)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class StyleRule:
    feature: str
    css: str


@dataclass(frozen=True)
class RuleSet:
    version: int
    block_markers: tuple[str, ...]
    style_rules: tuple[StyleRule, ...]

    @classmethod
    def from_config(cls, config: PrivacyConfig) -> "RuleSet":
        markers: list[str] = []
        styles: list[StyleRule] = []
        for toggle in TOGGLES:
            if not getattr(config, toggle):
                continue
            markers.extend(_BLOCK_MARKERS.get(toggle, ()))
            css = _STYLE_RULES.get(toggle)
            if css:
                styles.append(StyleRule(feature=toggle, css=css))
        return cls(version=config.version, block_markers=tuple(markers), style_rules=tuple(styles))

    def match(self, url: str, body: str = "") -> str:
        """Return the first blocklist marker found in the request's protocol tokens, or ''.

        Only the URL path, query field names, body field names and operation
        names are inspected. Field values, and so message text, never are.
        """
        if not self.block_markers:
            return ""
        tokens = list(protocol_tokens(url, body))
        for marker in self.block_markers:
            if any(marker in token for token in tokens):
                return marker
        return ""


def protocol_tokens(url: str, body: str = "") -> Iterator[str]:
    try:
        parts = urlsplit(str(url or ""))
    except ValueError:
        parts = None
    if parts is not None:
        yield parts.path.lower()
        yield from _form_tokens(parts.query)
    text = str(body or "").strip()
    if not text:
        return
    if text[:1] in "{[":
        try:
            payload = json.loads(text)
        except ValueError:
            payload = None
        if payload is not None:
            yield from _json_tokens(payload)
            return
    yield from _form_tokens(text)


def _form_tokens(text: str) -> Iterator[str]:
    for key, value in parse_qsl(text):
        key = key.strip().lower()
        if not _FIELD_NAME_RE.fullmatch(key):
            continue
        yield key
        if key in _OPERATION_FIELDS:
            yield value.lower()


def _json_tokens(payload: Any) -> Iterator[str]:
    if isinstance(payload, dict):
        for key, value in payload.items():
            key = str(key).lower()
            yield key
            if key in _OPERATION_FIELDS and isinstance(value, str):
                yield value.lower()
            elif isinstance(value, (dict, list)):
                yield from _json_tokens(value)
    elif isinstance(payload, list):
        for item in payload:
            yield from _json_tokens(item)


class GuardState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INSTALLED = "installed"
    RECONFIGURING = "reconfiguring"
    DEGRADED = "degraded"
    CLOSED = "closed"


class NetworkGuard:
    def __init__(self, config: PrivacyConfig | None = None) -> None:
        self._rules = RuleSet.from_config(config or PrivacyConfig())
        self._lock = Lock()
        self._install_error_reported = False
        self.state = GuardState.UNINITIALIZED
        self.blocked_count = 0

    @property
    def rules(self) -> RuleSet:
        return self._rules

    def install(self, context: Any) -> bool:
        """Attach to a browser context once. Returns False when degraded."""
        existing = getattr(context, GUARD_MARKER, None)
        if existing is not None:
            logger.debug("network guard already installed on this context")
            return existing.state is not GuardState.DEGRADED
        try:
            context.route("**/*", self.handle_route)
        except Exception as exc:  # noqa: BLE001
            self._report_install_error(exc)
            return False
        setattr(context, GUARD_MARKER, self)
        on = getattr(context, "on", None)
        if callable(on):
            on("close", self._on_close)
        self.state = GuardState.INSTALLED
        logger.info("network guard installed (rules v%s)", self._rules.version)
        return True

    def reconfigure(self, config: PrivacyConfig) -> bool:
        """Swap in a complete rule set; stale versions are ignored."""
        with self._lock:
            if config.version <= self._rules.version:
                logger.debug(
                    "ignoring stale privacy config v%s (current v%s)",
                    config.version,
                    self._rules.version,
                )
                return False
            previous_state = self.state
            if previous_state is GuardState.INSTALLED:
                self.state = GuardState.RECONFIGURING
            rules = RuleSet.from_config(config)
            self._rules = rules
            if previous_state is GuardState.INSTALLED:
                self.state = GuardState.INSTALLED
        logger.info("network guard reconfigured to v%s", rules.version)
        return True

    def handle_route(self, route: Any, request: Any = None) -> None:
        request = request if request is not None else route.request
        if getattr(request, "resource_type", "") not in INTERCEPTED_RESOURCE_TYPES:
            route.fallback()
            return
        rules = self._rules
        marker = rules.match(request.url, _request_body(request))
        if marker:
            self.blocked_count += 1
            logger.info("blocked %s request (%s): %s", request.resource_type, marker, request.url)
            route.abort("blockedbyclient")
            return
        route.fallback()

    def _report_install_error(self, exc: BaseException) -> None:
        self.state = GuardState.DEGRADED
        if self._install_error_reported:
            return
        self._install_error_reported = True
        error = InstallError(f"network interception unavailable: {exc}")
        logger.warning("%s; falling back to style rules only", error)

    def _on_close(self, *_args: Any) -> None:
        self.state = GuardState.CLOSED


def apply_style_rules(page: Any, config: PrivacyConfig) -> tuple[StyleRule, ...]:
    """Replace all injected privacy styles with the ones implied by config."""
    rules = RuleSet.from_config(config).style_rules
    page.evaluate(
        APPLY_PRIVACY_STYLES_JS,
        [PRIVACY_STYLE_ATTR, [asdict(rule) for rule in rules]],
    )
    for rule in rules:
        logger.debug("privacy style active: %s", rule.feature)
    return rules


class PrivacyInterceptor:
    """Keeps one page's network guard and style rules in sync with PrivacyConfig."""

    def __init__(self, config: PrivacyConfig | None = None) -> None:
        self._config = config or PrivacyConfig()
        self._guard = NetworkGuard(self._config)
        self._page: Any = None

    @property
    def config(self) -> PrivacyConfig:
        return self._config

    @property
    def guard(self) -> NetworkGuard:
        return self._guard

    def install(self, context: Any, page: Any) -> None:
        """Bind to a freshly opened context; one guard per context."""
        existing = getattr(context, GUARD_MARKER, None)
        if existing is not None:
            self._guard = existing
            self._guard.reconfigure(self._config)
        else:
            self._guard = NetworkGuard(self._config)
            self._guard.install(context)
        self._page = page
        self.refresh_styles()

    def detach(self) -> None:
        self._page = None

    def handle_event(self, event: Any) -> None:
        if isinstance(event, UpdatePrivacy):
            self.update(event.config)

    def update(self, config: PrivacyConfig) -> bool:
        if config.version <= self._config.version:
            logger.debug("privacy config v%s is not newer than v%s", config.version, self._config.version)
            return False
        self._config = config
        self._guard.reconfigure(config)
        self.refresh_styles()
        return True

    def refresh_styles(self) -> None:
        """Re-push style rules, e.g. after the page re-initialises."""
        page = self._page
        if page is None:
            return
        try:
            apply_style_rules(page, self._config)
        except Exception as exc:  # noqa: BLE001
            logger.warning("could not apply privacy styles, keeping previous rules: %s", exc)


def _request_body(request: Any) -> str:
    try:
        body = request.post_data
    except Exception:  # noqa: BLE001
        try:
            raw = request.post_data_buffer
        except Exception:  # noqa: BLE001
            return ""
        return raw.decode("utf-8", errors="replace") if raw else ""
    return body or ""
