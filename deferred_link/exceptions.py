"""Exceptions raised by the deferred deep-link integration layer."""

from __future__ import annotations

from typing import Any, Optional


class DeferredLinkError(Exception):
    """Base class for deferred_link errors."""


class UnsupportedPlatformError(DeferredLinkError):
    """A channel was requested that this client has no collaborator for."""


class ClipboardError(DeferredLinkError):
    """Reading the clipboard failed."""

    def __init__(self, message: str, *, code: Optional[str] = None, details: Any = None):
        super().__init__(message)
        self.code = code
        self.details = details
