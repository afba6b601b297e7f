"""Configuration management for deferred_link."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import tldextract
import yaml
from dotenv import load_dotenv

from .matching import HOST_WILDCARD_PREFIX, PATH_WILDCARD_SUFFIX, UNIVERSAL_WILDCARD, PatternMatcher
from .referrer import DEFAULT_MAX_WAITERS, ConnectionFactory, InstallReferrerService
from .resolver import DeepLinkResolver
from .utils.uris import parse_to_uri, strip_www

logger = logging.getLogger(__name__)

# Bundled public suffix snapshot; validation must not hit the network.
_suffix_extract = tldextract.TLDExtract(suffix_list_urls=())


@dataclass
class Config:
    """Deep-link matching configuration loaded from environment and config files."""

    # Ordered allow-patterns, first match wins
    deep_link_patterns: list[str] = field(default_factory=list)

    # Matcher options
    wildcards_enabled: bool = True
    strict_host_boundary: bool = False  # reject "example.com.evil.net" on the fast path
    segment_aware_paths: bool = False  # reject "/profiles/x" for "/profile"

    # Store referrer channel
    referrer_max_waiters: int = DEFAULT_MAX_WAITERS

    # Paths
    config_dir: Path = field(default_factory=lambda: Path("./config"))

    def __post_init__(self):
        """Normalize paths and merge the pattern list file."""
        self.config_dir = Path(self.config_dir)
        self._load_lists()

    def _load_lists(self):
        """Append patterns from config/deep_links.txt, keeping order and dropping duplicates."""
        patterns_path = self.config_dir / "deep_links.txt"
        merged = [p.strip() for p in self.deep_link_patterns if p and p.strip()]
        if patterns_path.exists():
            merged.extend(self._load_list_file(patterns_path))
        self.deep_link_patterns = list(dict.fromkeys(merged))

    @staticmethod
    def _load_list_file(path: Path) -> list[str]:
        """Load a list file, ignoring comments and empty lines."""
        items = []
        with open(path) as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith("#"):
                    items.append(line)
        return items

    def build_matcher(self) -> PatternMatcher:
        return PatternMatcher(
            wildcards_enabled=self.wildcards_enabled,
            strict_host_boundary=self.strict_host_boundary,
            segment_aware_paths=self.segment_aware_paths,
        )

    def build_resolver(self) -> DeepLinkResolver:
        return DeepLinkResolver(patterns=self.deep_link_patterns, matcher=self.build_matcher())

    def build_referrer_service(self, connection_factory: ConnectionFactory) -> InstallReferrerService:
        return InstallReferrerService(connection_factory, max_waiters=self.referrer_max_waiters)


def _coerce_bool(value, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"true", "1", "yes"}:
            return True
        if lowered in {"false", "0", "no"}:
            return False
    return default


def _env_flag(name: str, default: bool) -> bool:
    return _coerce_bool(os.getenv(name), default)


def _load_matching_overrides(config_dir: Path) -> dict:
    """Load matching overrides from config/matching.yaml (optional)."""
    path = Path(config_dir or ".") / "matching.yaml"
    if not path.exists():
        return {}

    try:
        data = yaml.safe_load(path.read_text()) or {}
    except Exception as exc:
        logger.warning("Failed to parse matching.yaml: %s", exc)
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring matching.yaml: expected a mapping, got %s", type(data).__name__)
        return {}

    patterns = [str(p).strip() for p in data.get("patterns") or [] if str(p).strip()]
    matching_cfg = data.get("matching") or {}
    if not isinstance(matching_cfg, dict):
        matching_cfg = {}

    overrides: dict = {"deep_link_patterns": patterns}
    for key in ("wildcards_enabled", "strict_host_boundary", "segment_aware_paths"):
        if key in matching_cfg:
            overrides[key] = _coerce_bool(matching_cfg[key], Config.__dataclass_fields__[key].default)
    return overrides


def load_config() -> Config:
    """Load configuration from environment variables and the config directory."""
    load_dotenv()

    config_dir = Path(os.getenv("CONFIG_DIR", "./config"))
    overrides = _load_matching_overrides(config_dir)

    patterns_str = os.getenv("DEEP_LINK_PATTERNS", "")
    patterns = [p.strip() for p in patterns_str.split(",") if p.strip()]
    patterns.extend(overrides.get("deep_link_patterns", []))

    config = Config(
        deep_link_patterns=patterns,
        wildcards_enabled=_env_flag(
            "DEEP_LINK_WILDCARDS", overrides.get("wildcards_enabled", True)
        ),
        strict_host_boundary=_env_flag(
            "DEEP_LINK_STRICT_HOST", overrides.get("strict_host_boundary", False)
        ),
        segment_aware_paths=_env_flag(
            "DEEP_LINK_SEGMENT_PATHS", overrides.get("segment_aware_paths", False)
        ),
        referrer_max_waiters=int(os.getenv("REFERRER_MAX_WAITERS", str(DEFAULT_MAX_WAITERS))),
        config_dir=config_dir,
    )
    logger.info(
        "Loaded %d deep-link patterns (wildcards=%s, strict_host=%s, segment_paths=%s)",
        len(config.deep_link_patterns),
        config.wildcards_enabled,
        config.strict_host_boundary,
        config.segment_aware_paths,
    )
    return config


def _uses_wildcards(pattern: str) -> bool:
    if pattern == UNIVERSAL_WILDCARD:
        return True
    uri = parse_to_uri(pattern)
    if uri is None:
        return False
    return strip_www(uri.host).startswith(HOST_WILDCARD_PREFIX) or uri.path.endswith(
        PATH_WILDCARD_SUFFIX
    )


def validate_config(config: Config) -> list[str]:
    """Validate deep-link configuration and return list of error messages."""
    errors: list[str] = []
    if not config.deep_link_patterns:
        errors.append("No deep-link patterns configured (DEEP_LINK_PATTERNS or deep_links.txt)")

    if config.referrer_max_waiters < 1:
        errors.append("REFERRER_MAX_WAITERS must be at least 1")

    for pattern in config.deep_link_patterns:
        if not config.wildcards_enabled and _uses_wildcards(pattern):
            errors.append(f"Pattern {pattern!r} uses wildcard syntax but wildcards are disabled")
            continue
        if pattern == UNIVERSAL_WILDCARD:
            continue

        uri = parse_to_uri(pattern)
        if uri is None:
            errors.append(f"Pattern {pattern!r} is not a valid URL")
            continue

        host = strip_www(uri.host)
        if host.startswith(HOST_WILDCARD_PREFIX):
            host = host[len(HOST_WILDCARD_PREFIX):]
        if not host:
            errors.append(f"Pattern {pattern!r} has no host")
            continue

        extracted = _suffix_extract(host)
        if extracted.suffix and not extracted.domain:
            errors.append(
                f"Pattern {pattern!r} covers the whole public suffix {extracted.suffix!r}"
            )

    return errors
