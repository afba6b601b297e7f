"""Deferred deep-link attribution: clipboard pattern matching and store install referrer."""

from .client import ClipboardReader, DeferredLinkClient
from .config import Config, load_config, validate_config
from .exceptions import ClipboardError, DeferredLinkError, UnsupportedPlatformError
from .matching import PatternMatcher, matches, matches_legacy
from .referrer import (
    DeadObjectError,
    InstallReferrerResponse,
    InstallReferrerService,
    ReferrerConnection,
    ReferrerError,
    ReferrerErrorCode,
    ReferrerInfo,
    ServiceDisconnected,
)
from .resolver import DeepLinkResolver, MatchResult, resolve
from .utils.uris import ParsedUri, normalize_url_like, parse_to_uri

__all__ = [
    "ClipboardReader",
    "DeferredLinkClient",
    "Config",
    "load_config",
    "validate_config",
    "ClipboardError",
    "DeferredLinkError",
    "UnsupportedPlatformError",
    "PatternMatcher",
    "matches",
    "matches_legacy",
    "DeadObjectError",
    "InstallReferrerResponse",
    "InstallReferrerService",
    "ReferrerConnection",
    "ReferrerError",
    "ReferrerErrorCode",
    "ReferrerInfo",
    "ServiceDisconnected",
    "DeepLinkResolver",
    "MatchResult",
    "resolve",
    "ParsedUri",
    "normalize_url_like",
    "parse_to_uri",
]
