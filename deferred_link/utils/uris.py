"""URL-like string coercion and normalization."""

from __future__ import annotations

import ipaddress
import re
from dataclasses import dataclass
from typing import Optional
from urllib.parse import parse_qsl, urlsplit, urlunsplit

HTTP_PREFIXES = ("https://", "http://")
DEFAULT_SCHEME = "https"

# reg-name characters (unreserved, sub-delims, pct-encoded); "*" stays legal
# so wildcard patterns such as "*.example.com" parse like any other host.
_REG_NAME_RE = re.compile(r"^[\w\-.~!$&'()*+,;=%]+$")
_BAD_ESCAPE_RE = re.compile(r"%(?![0-9A-Fa-f]{2})")
_CONTROL_RE = re.compile(r"[\x00-\x1f\x7f]")
_AUTHORITY_MARKER_RE = re.compile(r"^[A-Za-z][A-Za-z0-9+.\-]*://")


@dataclass(frozen=True)
class ParsedUri:
    """Structured view of a URL-like string."""

    scheme: str
    host: str
    path: str = ""
    query: Optional[str] = None
    fragment: Optional[str] = None
    port: Optional[int] = None

    @property
    def effective_path(self) -> str:
        return self.path or "/"

    def query_parameters(self) -> dict[str, str]:
        """Decode the query component (last value wins for repeated keys)."""
        if not self.query:
            return {}
        return dict(parse_qsl(self.query, keep_blank_values=True))

    def geturl(self) -> str:
        netloc = self.host if self.port is None else f"{self.host}:{self.port}"
        return urlunsplit(
            (self.scheme, netloc, self.path, self.query or "", self.fragment or "")
        )

    def __str__(self) -> str:
        return self.geturl()


def has_http_scheme(value: str) -> bool:
    return value.lower().startswith(HTTP_PREFIXES)


def normalize_url_like(value: str) -> str:
    """
    Strip surrounding whitespace and one leading http(s) scheme.

    "https://example.com/profile?ref=abc", "http://example.com/profile?ref=abc"
    and "example.com/profile?ref=abc" all become "example.com/profile?ref=abc".
    """
    raw = (value or "").strip()
    lowered = raw.lower()
    for prefix in HTTP_PREFIXES:
        if lowered.startswith(prefix):
            return raw[len(prefix):]
    return raw


def strip_www(host: str) -> str:
    """Return the host base: the host without a leading "www." label."""
    if host.lower().startswith("www."):
        return host[4:]
    return host


def _valid_host(host: str, netloc: str) -> bool:
    if "[" in netloc:
        try:
            ipaddress.ip_address(host.split("%", 1)[0])
        except ValueError:
            return False
        return True
    return bool(_REG_NAME_RE.match(host))


def _try_parse(candidate: str) -> Optional[ParsedUri]:
    if _CONTROL_RE.search(candidate) or _BAD_ESCAPE_RE.search(candidate):
        return None

    try:
        parts = urlsplit(candidate)
        host = parts.hostname or ""
        port = parts.port
    except ValueError:
        return None

    if not host and not parts.netloc and not _AUTHORITY_MARKER_RE.match(candidate):
        return None
    if host and not _valid_host(host, parts.netloc):
        return None

    before_fragment = candidate.split("#", 1)[0]
    return ParsedUri(
        scheme=parts.scheme or DEFAULT_SCHEME,
        host=host,
        port=port,
        path=parts.path,
        query=parts.query if "?" in before_fragment else None,
        fragment=parts.fragment if "#" in candidate else None,
    )


def parse_to_uri(value: str) -> Optional[ParsedUri]:
    """
    Parse a URL-like string, assuming "https://" when no http(s) scheme is present.

    Returns None instead of raising when the text is not a usable URI: no
    host and no authority, invalid host characters, malformed percent
    escapes, a bad port or a malformed IPv6 literal. An empty authority
    ("https://", "https:///p") still counts as an authority.
    """
    raw = (value or "").strip()
    if has_http_scheme(raw):
        return _try_parse(raw)
    return _try_parse(f"https://{raw}")
