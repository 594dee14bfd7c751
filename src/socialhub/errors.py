"""Error taxonomy shared by the native host and the page bridge."""

from __future__ import annotations


class SocialHubError(Exception):
    """Base class for every error raised by this package."""


class ValidationError(SocialHubError):
    """Caller supplied an unknown id or name. Reported as a reason string."""


class UnknownPlatform(ValidationError):
    def __init__(self, platform_id: str) -> None:
        super().__init__(f"Unknown platform: {platform_id}")
        self.platform_id = platform_id


class UnknownTheme(ValidationError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Unknown theme: {name}")
        self.name = name


class ResourceError(SocialHubError):
    """Filesystem failure while wiping or recording session storage."""


class ProtocolError(SocialHubError):
    """Malformed bridge message. Fails only the offending command."""


class InstallError(SocialHubError):
    """Network interception could not be installed in a browser context."""
