import os
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Iterable, List, Tuple

REDACTED_SECRET = "[REDACTED_SECRET]"
DEFAULT_REPLACEMENT = "REDACTED"
_DEFAULT_PATTERNS = (
    (r"sk-[A-Za-z0-9_-]{10,}", "sk-REDACTED"),
    (r"gh[pousr]_[A-Za-z0-9]{20,}", "gh-REDACTED"),
    (r"github_pat_[A-Za-z0-9_]{20,}", "github_pat_REDACTED"),
    (r"AKIA[0-9A-Z]{16}", "AKIA_REDACTED"),
    (r"(?i)\bBearer\s+[A-Za-z0-9\-._~+/]+=*\b", "Bearer REDACTED"),
    (r"-----BEGIN [A-Z ]*PRIVATE KEY-----[\s\S]+?-----END [A-Z ]*PRIVATE KEY-----", "PRIVATE_KEY_REDACTED"),
)
_EXTRA_PATTERNS_ENV = "REDACTION_EXTRA_PATTERNS"


@dataclass(frozen=True)
class RedactionResult:
    text: str
    redacted: bool
    replacements: int


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def redact(text: str) -> str:
    return redact_with_audit(text).text


def redact_with_audit(text: str) -> RedactionResult:
    value = text or ""
    total = 0
    for regex, replacement in _compiled_patterns():
        value, count = regex.subn(replacement, value)
        total += count
    return RedactionResult(text=value, redacted=total > 0, replacements=total)


def redact_secret(text: str, secret: str) -> str:
    """Replace every occurrence of ``secret`` in ``text``."""
    if not secret or not text:
        return text or ""
    return text.replace(secret, REDACTED_SECRET)


def scrub_value(value: Any, secrets: Iterable[str]) -> Any:
    """Recursively redact known secret values plus well-known token shapes."""
    known = [s for s in secrets if s]
    if isinstance(value, str):
        for secret in known:
            value = redact_secret(value, secret)
        return redact(value)
    if isinstance(value, dict):
        return {str(k): scrub_value(v, known) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [scrub_value(v, known) for v in value]
    return value


def truncate_text(text: str, max_chars: int) -> Tuple[str, bool, int]:
    """Return (text, truncated, omitted_chars)."""
    if max_chars <= 0 or len(text) <= max_chars:
        return text, False, 0
    omitted = len(text) - max_chars
    notice = f"\n\n[response body truncated: omitted {omitted} chars]"
    return text[:max_chars] + notice, True, omitted


@lru_cache(maxsize=2)
def _compiled_patterns() -> List[Tuple[re.Pattern, str]]:
    items: List[Tuple[re.Pattern, str]] = [
        (re.compile(pattern), replacement) for pattern, replacement in _DEFAULT_PATTERNS
    ]
    extra_raw = (os.environ.get(_EXTRA_PATTERNS_ENV) or "").strip()
    if not extra_raw:
        return items
    for token in extra_raw.split(";;"):
        pattern = token.strip()
        if not pattern:
            continue
        try:
            items.append((re.compile(pattern), DEFAULT_REPLACEMENT))
        except re.error:
            continue
    return items
