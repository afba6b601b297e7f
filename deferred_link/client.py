"""Entry point tying the clipboard and store-referrer channels together."""

from __future__ import annotations

import logging
from typing import Optional, Protocol, Sequence

from .exceptions import ClipboardError, UnsupportedPlatformError
from .matching import PatternMatcher
from .referrer import InstallReferrerService, ReferrerInfo
from .resolver import DeepLinkResolver, MatchResult

logger = logging.getLogger(__name__)


class ClipboardReader(Protocol):
    """Reads plain text from the system clipboard."""

    async def read_text(self) -> Optional[str]:
        ...


class DeferredLinkClient:
    """
    Recovers deferred deep-link context after a fresh install.

    The store channel needs an InstallReferrerService, the clipboard channel
    needs a ClipboardReader. Asking for a channel without its collaborator
    raises UnsupportedPlatformError, the same way a platform without that
    channel would.

    Usage:
        client = DeferredLinkClient(
            clipboard=reader,
            deep_links=["example.com", "*.example.com/profile/*"],
        )
        result = await client.get_clipboard_deep_link()
        if result:
            referrer = result.get_param("referrer")
    """

    def __init__(
        self,
        *,
        referrer_service: Optional[InstallReferrerService] = None,
        clipboard: Optional[ClipboardReader] = None,
        deep_links: Sequence[str] = (),
        matcher: Optional[PatternMatcher] = None,
    ):
        self.referrer_service = referrer_service
        self.clipboard = clipboard
        self.deep_links = tuple(deep_links)
        self.matcher = matcher or PatternMatcher()

    async def get_install_referrer(self) -> ReferrerInfo:
        """Read the store install referrer (raises ReferrerError on store failures)."""
        if self.referrer_service is None:
            raise UnsupportedPlatformError(
                "Install referrer is not available: no referrer service configured."
            )
        return await self.referrer_service.get_install_referrer()

    async def get_clipboard_deep_link(
        self,
        deep_links: Optional[Sequence[str]] = None,
    ) -> Optional[MatchResult]:
        """
        Read the clipboard and return the deep link matching an allow-pattern.

        Returns None when the clipboard is empty or nothing matches.
        """
        if self.clipboard is None:
            raise UnsupportedPlatformError(
                "Clipboard deep links are not available: no clipboard reader configured."
            )

        patterns = self.deep_links if deep_links is None else tuple(deep_links)

        try:
            raw = await self.clipboard.read_text()
        except Exception as exc:
            raise ClipboardError(
                f"Failed to read clipboard text: {exc}",
                code=getattr(exc, "code", None),
                details=getattr(exc, "details", None),
            ) from exc

        text = (raw or "").strip()
        if not text:
            logger.debug("Clipboard is empty")
            return None

        result = DeepLinkResolver(patterns=patterns, matcher=self.matcher).resolve(text)
        if result is None:
            logger.info("Clipboard text did not match any of %d deep-link patterns", len(patterns))
        return result
