"""Changelog, release notes and version file generation from GitHub."""

__version__ = "0.1.0"
