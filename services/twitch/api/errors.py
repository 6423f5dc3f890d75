"""Errors raised by the upstream Twitch clients."""

from __future__ import annotations


class UpstreamError(Exception):
    """Base class for failures reported by the upstream chat network."""


class UpstreamUnavailable(UpstreamError):
    def __init__(self, message: str = "not connected to Twitch chat"):
        super().__init__(message)


class JoinTimeout(UpstreamError):
    def __init__(self, channel: str, timeout: float):
        super().__init__(f"timed out joining #{channel} after {timeout:g}s")
        self.channel = channel
        self.timeout = timeout


class JoinRejected(UpstreamError):
    def __init__(self, channel: str, reason: str):
        super().__init__(f"join #{channel} rejected: {reason}")
        self.channel = channel
        self.reason = reason


class HelixError(UpstreamError):
    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


__all__ = [
    "UpstreamError",
    "UpstreamUnavailable",
    "JoinTimeout",
    "JoinRejected",
    "HelixError",
]
