"""Deep-link allow-pattern matching."""

from __future__ import annotations

from dataclasses import dataclass

from .utils.uris import normalize_url_like, parse_to_uri, strip_www

UNIVERSAL_WILDCARD = "*"
HOST_WILDCARD_PREFIX = "*."
PATH_WILDCARD_SUFFIX = "/*"
_BOUNDARY_CHARS = ("/", "?", "#")


@dataclass(frozen=True)
class PatternMatcher:
    """
    Decides whether a URL-like string satisfies an allow-pattern.

    Supported pattern shapes:
        "*"                       any string that parses as a URL
        "example.com"             that host, its www. form and any subdomain
        "https://example.com"     same as above (scheme is ignored)
        "*.example.com"           any subdomain of example.com, and the root
        "example.com/profile"     path must start with /profile
        "example.com/profile/*"   /profile itself or anything below it

    Options:
        wildcards_enabled: False gives the legacy matcher, which treats "*",
            "*.host" and trailing "/*" literally.
        strict_host_boundary: only accept the plain prefix fast path when the
            prefix ends at a "/", "?" or "#" boundary, so "example.com" no
            longer accepts "example.com.evil.net" through the fast path.
        segment_aware_paths: path prefixes must end on a segment boundary,
            so "/profile" no longer accepts "/profiles/x". Only the structured
            comparison honours this; the fast path follows strict_host_boundary.
    """

    wildcards_enabled: bool = True
    strict_host_boundary: bool = False
    segment_aware_paths: bool = False

    def matches(self, clipboard: str, pattern: str) -> bool:
        trimmed_pattern = (pattern or "").strip()

        if self.wildcards_enabled and trimmed_pattern == UNIVERSAL_WILDCARD:
            return parse_to_uri(clipboard) is not None

        if self._prefix_match(
            normalize_url_like(clipboard), normalize_url_like(trimmed_pattern)
        ):
            return True

        clipboard_uri = parse_to_uri(clipboard)
        pattern_uri = parse_to_uri(trimmed_pattern)
        if clipboard_uri is None or pattern_uri is None:
            return False

        clipboard_host = strip_www(clipboard_uri.host)
        pattern_host = strip_www(pattern_uri.host)
        if not clipboard_host or not pattern_host:
            return False

        if not self._host_matches(clipboard_host, pattern_host):
            return False

        return self._path_matches(clipboard_uri.effective_path, pattern_uri.path)

    def _prefix_match(self, clipboard: str, pattern: str) -> bool:
        if clipboard == pattern:
            return True
        if not clipboard.startswith(pattern):
            return False
        if not self.strict_host_boundary:
            return True
        if pattern.endswith("/"):
            return True
        return clipboard[len(pattern):].startswith(_BOUNDARY_CHARS)

    def _host_matches(self, clipboard_host: str, pattern_host: str) -> bool:
        base = pattern_host
        if self.wildcards_enabled and pattern_host.startswith(HOST_WILDCARD_PREFIX):
            base = pattern_host[len(HOST_WILDCARD_PREFIX):]
        return clipboard_host == base or clipboard_host.endswith(f".{base}")

    def _path_matches(self, clipboard_path: str, pattern_path: str) -> bool:
        if not pattern_path or pattern_path == "/":
            return True

        if self.wildcards_enabled:
            if pattern_path in (PATH_WILDCARD_SUFFIX, UNIVERSAL_WILDCARD):
                return True
            if pattern_path.endswith(PATH_WILDCARD_SUFFIX):
                base_path = pattern_path[:-1]  # keeps the trailing "/"
                return clipboard_path == base_path[:-1] or clipboard_path.startswith(base_path)

        if not self.segment_aware_paths or pattern_path.endswith("/"):
            return clipboard_path.startswith(pattern_path)
        return clipboard_path == pattern_path or clipboard_path.startswith(f"{pattern_path}/")


DEFAULT_MATCHER = PatternMatcher()
LEGACY_MATCHER = PatternMatcher(wildcards_enabled=False)


def matches(clipboard: str, pattern: str) -> bool:
    """Match with wildcard support ("*", "*.host", "host/path/*")."""
    return DEFAULT_MATCHER.matches(clipboard, pattern)


def matches_legacy(clipboard: str, pattern: str) -> bool:
    """Match without wildcard syntax: host/subdomain and literal path prefix only."""
    return LEGACY_MATCHER.matches(clipboard, pattern)
