import re
from typing import Iterable, List

_HOST_LABEL_RE = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$")


def normalize_host(host: str) -> str:
    value = (host or "").strip().lower()
    if value.endswith("."):
        value = value[:-1]
    return value


def matches_pattern(host: str, pattern: str) -> bool:
    candidate = normalize_host(host)
    rule = normalize_host(pattern)
    if not candidate or not rule:
        return False
    if rule == "*":
        return True
    if rule.startswith("*."):
        # "*.example.com" keeps the leading dot, so the bare apex never matches.
        return candidate.endswith(rule[1:])
    return candidate == rule


def matches(host: str, patterns: Iterable[str]) -> bool:
    return any(matches_pattern(host, p) for p in patterns or [])


def validate_host_pattern(pattern: str) -> List[str]:
    """Return errors for a single allow-list entry (``*``, ``*.domain`` or a bare host)."""
    value = normalize_host(pattern)
    if not value:
        return ["host pattern must not be empty."]
    if value == "*":
        return []
    body = value[2:] if value.startswith("*.") else value
    if "*" in body:
        return [f"host pattern '{pattern}' may only use a leading '*.' wildcard."]
    if any(ch in body for ch in "/:?#@ "):
        return [f"host pattern '{pattern}' must be a bare hostname without scheme, port, or path."]
    labels = body.split(".")
    if not all(_HOST_LABEL_RE.match(label) for label in labels):
        return [f"host pattern '{pattern}' is not a valid hostname."]
    return []


class HostPolicyMatcher:
    """Host allow-list matcher. Case-insensitive; a trailing dot on either side is ignored."""

    def matches(self, host: str, patterns: Iterable[str]) -> bool:
        return matches(host, patterns)
