"""Static registry of the wrapped messaging platforms."""

from __future__ import annotations

import re
from dataclasses import dataclass
from urllib.parse import urlparse

from socialhub.errors import UnknownPlatform


@dataclass(frozen=True)
class PlatformDescriptor:
    id: str
    display_name: str
    url: str
    csp_rules: tuple[str, ...]
    storage_key: str
    host_pattern: str

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "name": self.display_name,
            "url": self.url,
            "csp": csp_header(self),
            "storage_key": self.storage_key,
        }


_PLATFORMS: tuple[PlatformDescriptor, ...] = (
    PlatformDescriptor(
        id="instagram",
        display_name="Instagram",
        url="https://www.instagram.com/direct/inbox/",
        csp_rules=(
            "default-src https://www.instagram.com https://*.instagram.com "
            "https://*.cdninstagram.com https://*.fbcdn.net",
            "img-src * data:",
            "media-src *",
        ),
        storage_key="instagram",
        host_pattern=r"(^|\.)instagram\.com$",
    ),
    PlatformDescriptor(
        id="messenger",
        display_name="Messenger",
        url="https://www.messenger.com",
        csp_rules=(
            "default-src https://www.messenger.com https://*.messenger.com "
            "https://*.facebook.com https://*.fbcdn.net",
            "img-src * data:",
        ),
        storage_key="messenger",
        host_pattern=r"(^|\.)messenger\.com$",
    ),
    PlatformDescriptor(
        id="facebook",
        display_name="Facebook",
        url="https://www.facebook.com/messages/",
        csp_rules=(
            "default-src https://www.facebook.com https://*.facebook.com "
            "https://*.fbcdn.net https://*.facebook.net",
            "img-src * data:",
        ),
        storage_key="facebook",
        host_pattern=r"(^|\.)facebook\.com$",
    ),
    PlatformDescriptor(
        id="x",
        display_name="X",
        url="https://x.com/messages",
        csp_rules=(
            "default-src https://x.com https://*.x.com https://*.twimg.com",
            "img-src * data:",
        ),
        storage_key="x",
        host_pattern=r"(^|\.)x\.com$",
    ),
)

_BY_KEY: dict[str, PlatformDescriptor] = {}
for _descriptor in _PLATFORMS:
    _BY_KEY[_descriptor.id] = _descriptor
    _BY_KEY[_descriptor.display_name.lower()] = _descriptor


def resolve(platform_id: str) -> PlatformDescriptor:
    key = str(platform_id or "").strip().lower()
    descriptor = _BY_KEY.get(key)
    if descriptor is None:
        raise UnknownPlatform(str(platform_id))
    return descriptor


def list_platforms() -> tuple[PlatformDescriptor, ...]:
    return _PLATFORMS


def csp_header(descriptor: PlatformDescriptor) -> str:
    return "; ".join(descriptor.csp_rules) + ";"


def detect_platform(url: str) -> PlatformDescriptor | None:
    """Map a page URL back to the platform that serves it, if any."""
    try:
        host = (urlparse(url).hostname or "").lower()
    except ValueError:
        return None
    if not host:
        return None
    for descriptor in _PLATFORMS:
        if re.search(descriptor.host_pattern, host):
            return descriptor
    return None
