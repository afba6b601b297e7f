"""Resolve clipboard text against deep-link allow-patterns."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from functools import cached_property
from types import MappingProxyType
from typing import Iterable, Mapping, Optional, Sequence

from .matching import DEFAULT_MATCHER, PatternMatcher
from .utils.uris import ParsedUri, parse_to_uri

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MatchResult:
    """
    A deep link recovered from clipboard text.

    Example:
        raw = "https://example.com/?referrer=home&uid=1000000"
        result.query_parameters   -> {"referrer": "home", "uid": "1000000"}
        result.get_param("uid")   -> "1000000"
    """

    raw: str
    uri: ParsedUri

    @property
    def full_deep_link(self) -> str:
        return self.raw

    @cached_property
    def query_parameters(self) -> Mapping[str, str]:
        return MappingProxyType(self.uri.query_parameters())

    def get_param(self, name: str) -> Optional[str]:
        return self.query_parameters.get(name)

    def __str__(self) -> str:
        return f"MatchResult(raw={self.raw!r}, query_parameters={dict(self.query_parameters)!r})"


@dataclass(frozen=True)
class DeepLinkResolver:
    """Binds an ordered allow-pattern list to a configured matcher."""

    patterns: Sequence[str]
    matcher: PatternMatcher = field(default=DEFAULT_MATCHER)

    def __post_init__(self):
        object.__setattr__(self, "patterns", tuple(self.patterns))

    def first_match(self, clipboard: str) -> Optional[str]:
        """Return the first pattern accepting the text, if any."""
        for pattern in self.patterns:
            if self.matcher.matches(clipboard, pattern):
                return pattern
        return None

    def resolve(self, clipboard: Optional[str]) -> Optional[MatchResult]:
        if clipboard is None or not clipboard.strip():
            return None

        pattern = self.first_match(clipboard)
        if pattern is None:
            logger.debug("No deep-link pattern matched clipboard text")
            return None

        uri = parse_to_uri(clipboard)
        if uri is None:
            logger.debug("Pattern %r matched but clipboard text is not a URI", pattern)
            return None

        logger.debug("Clipboard deep link matched pattern %r (host=%s)", pattern, uri.host)
        return MatchResult(raw=clipboard, uri=uri)


def resolve(
    clipboard: Optional[str],
    patterns: Iterable[str],
    *,
    matcher: Optional[PatternMatcher] = None,
) -> Optional[MatchResult]:
    """Resolve clipboard text against patterns, first match wins."""
    return DeepLinkResolver(patterns=tuple(patterns), matcher=matcher or DEFAULT_MATCHER).resolve(
        clipboard
    )
