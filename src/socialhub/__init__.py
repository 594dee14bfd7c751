"""SocialHub privacy and session isolation engine."""

__version__ = "0.3.0"
