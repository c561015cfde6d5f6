"""Error types raised by the live-reload server components."""
from __future__ import annotations


class LiveReloadError(Exception):
    """Base class for every failure raised by this package."""


class InvalidRequest(LiveReloadError):
    """The incoming request carried no URL to resolve."""


class FileUnavailable(LiveReloadError):
    """The resolved file could not be read (missing, unreadable, a directory...)."""

    def __init__(self, path: str, cause: OSError | None = None) -> None:
        super().__init__(f"cannot read {path}: {cause}" if cause else f"cannot read {path}")
        self.path = path
        self.cause = cause


class WatcherFault(LiveReloadError):
    """The filesystem subscription failed."""


class SendFault(LiveReloadError):
    """Delivering a frame to one socket client failed."""


class CompilerUnavailable(LiveReloadError):
    """The external compiler could not be spawned."""


class ListenerUnavailable(LiveReloadError):
    """An HTTP or socket listener could not bind its port."""


__all__ = [
    "LiveReloadError",
    "InvalidRequest",
    "FileUnavailable",
    "WatcherFault",
    "SendFault",
    "CompilerUnavailable",
    "ListenerUnavailable",
]
