from __future__ import annotations

import hashlib
import json
import re
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

TRACKING_PREFIXES = ("utm_",)
TRACKING_KEYS = frozenset({"ref", "fbclid", "gclid", "source"})
DEFAULT_PORTS = {"http": "80", "https": "443"}
_WHITESPACE_RE = re.compile(r"\s+")


@dataclass(frozen=True, slots=True)
class HostRule:
    """Extra canonicalization applied to one publisher domain and its subdomains."""

    drop_params: frozenset[str] = field(default_factory=frozenset)
    drop_prefixes: tuple[str, ...] = ()
    strip_www: bool = False
    force_https: bool = False

    def drops(self, key: str) -> bool:
        return key in self.drop_params or key.startswith(self.drop_prefixes)


def canonical_hash(normalized_url: str) -> str:
    return hashlib.sha256(normalized_url.encode("utf-8")).hexdigest()


def content_checksum(title: str | None, body: str | None) -> str:
    """Checksum of article text, stable under case and whitespace changes."""
    folded = " ".join(_fold_text(part) for part in (title, body))
    return hashlib.sha256(folded.encode("utf-8")).hexdigest()


def word_count(text: str | None) -> int:
    return len(text.split()) if text else 0


def source_domain(normalized_url: str) -> str | None:
    host = urlparse(normalized_url).hostname
    if not host:
        return None
    return host.removeprefix("www.")


def parse_normalization_overrides(raw: str | None) -> dict[str, HostRule]:
    """Read per-domain rules from JSON; anything malformed is ignored."""
    if not raw:
        return {}
    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    if not isinstance(decoded, dict):
        return {}

    rules: dict[str, HostRule] = {}
    for domain, options in decoded.items():
        if not isinstance(domain, str) or not isinstance(options, dict):
            continue
        domain = domain.strip().lower().lstrip(".")
        if not domain:
            continue
        rules[domain] = HostRule(
            drop_params=frozenset(_lowered_strings(options.get("strip_query_params"))),
            drop_prefixes=tuple(sorted(_lowered_strings(options.get("strip_query_prefixes")))),
            strip_www=bool(options.get("strip_www", False)),
            force_https=bool(options.get("force_https", False)),
        )
    return rules


def normalize_url(raw_url: str, *, overrides: dict[str, HostRule] | None = None) -> str:
    parsed = urlparse(raw_url.strip())
    if not parsed.scheme or not parsed.netloc:
        raise ValueError(f"url must be absolute: {raw_url!r}")

    scheme = parsed.scheme.lower()
    host, port = _split_netloc(parsed.netloc.lower())
    if DEFAULT_PORTS.get(scheme) == port:
        port = ""

    rule = _rule_for_host(host, overrides or {})
    if rule is not None:
        if rule.strip_www:
            host = host.removeprefix("www.")
        if rule.force_https and scheme == "http":
            scheme = "https"

    netloc = f"{host}:{port}" if port else host
    return urlunparse((scheme, netloc, _clean_path(parsed.path), "", _clean_query(parsed.query, rule), ""))


def _fold_text(value: str | None) -> str:
    return _WHITESPACE_RE.sub(" ", (value or "").casefold()).strip()


def _lowered_strings(value: Any) -> set[str]:
    if not isinstance(value, list):
        return set()
    return {item.strip().lower() for item in value if isinstance(item, str) and item.strip()}


def _split_netloc(netloc: str) -> tuple[str, str]:
    host, sep, port = netloc.rpartition(":")
    if not sep or not port.isdigit():
        return netloc, ""
    return host, port


def _clean_path(path: str) -> str:
    if not path or path == "/":
        return "/"
    return path.rstrip("/") or "/"


def _clean_query(query: str, rule: HostRule | None) -> str:
    kept = []
    for key, value in parse_qsl(query, keep_blank_values=True):
        lowered = key.lower()
        if lowered.startswith(TRACKING_PREFIXES) or lowered in TRACKING_KEYS:
            continue
        if rule is not None and rule.drops(lowered):
            continue
        kept.append((key, value))
    kept.sort(key=lambda pair: pair[0])
    return urlencode(kept, doseq=True)


def _rule_for_host(host: str, overrides: dict[str, HostRule]) -> HostRule | None:
    labels = host.split(".")
    for index in range(len(labels)):
        rule = overrides.get(".".join(labels[index:]))
        if rule is not None:
            return rule
    return None
