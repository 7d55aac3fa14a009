"""
Secret redaction for log payloads.

Every free-text field is passed through redact() before it reaches a session
log. Rules are applied in order. Each rule's pattern refuses to match its own
(or any other rule's) replacement text, so redact() is idempotent and a
replacement is never re-redacted by a later rule.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable

RULES_VERSION = "3"

REDACTED = "[REDACTED]"

# Shared negative lookahead: value already masked.
_NOT_MASKED = r"(?!\[REDACTED)"


@dataclass(frozen=True)
class RedactionRule:
    """A named pattern and the text (or callable) that replaces each match."""

    name: str
    pattern: re.Pattern[str]
    replacement: str | Callable[[re.Match[str]], str]

    def apply(self, text: str) -> str:
        return self.pattern.sub(self.replacement, text)


def _rule(name: str, pattern: str, replacement, flags: int = 0) -> RedactionRule:
    return RedactionRule(name=name, pattern=re.compile(pattern, flags), replacement=replacement)


def _pem_replacement(match: re.Match[str]) -> str:
    label = match.group(1) or ""
    return f"-----BEGIN {label}PRIVATE KEY-----\n{REDACTED}\n-----END {label}PRIVATE KEY-----"


RULES: tuple[RedactionRule, ...] = (
    # Multi-line key blocks go first so nothing else rewrites their bodies.
    _rule(
        "pem_private_key",
        r"-----BEGIN ((?:[A-Z0-9]+ )*)PRIVATE KEY-----(?!\n\[REDACTED\]\n)[\s\S]*?-----END \1PRIVATE KEY-----",
        _pem_replacement,
    ),
    # Credential-carrying header lines
    _rule(
        "set_cookie_header",
        r"\bSet-Cookie:[ \t]*" + _NOT_MASKED + r"[^\r\n]+",
        "Set-Cookie: " + REDACTED,
        re.IGNORECASE,
    ),
    _rule(
        "cookie_header",
        r"(?<![\w-])Cookie:[ \t]*" + _NOT_MASKED + r"[^\r\n]+",
        "Cookie: " + REDACTED,
        re.IGNORECASE,
    ),
    _rule(
        "authorization_header",
        r"\b((?:Proxy-)?Authorization):[ \t]*" + _NOT_MASKED + r"[^\r\n]+",
        r"\1: " + REDACTED,
        re.IGNORECASE,
    ),
    _rule(
        "api_key_header",
        r"\b(X-API-Key|X-Auth-Token|X-Access-Token|X-CSRF-Token|Api-Key):[ \t]*" + _NOT_MASKED + r"[^\r\n]+",
        r"\1: " + REDACTED,
        re.IGNORECASE,
    ),
    # Token fields in structured data, whatever the surrounding JSON looks like
    _rule(
        "json_token_field",
        r"([\"'])((?:access|refresh|csrf|id)[_-]?token)\1\s*:\s*([\"'])" + _NOT_MASKED + r"[^\"']*\3",
        r'"\2": "[REDACTED]"',
        re.IGNORECASE,
    ),
    # Client-side storage and cookie assignments
    _rule(
        "storage_assignment",
        r"(localStorage|sessionStorage)\[([\"'])([^\"']*(?:token|key|secret|password|auth)[^\"']*)\2\]\s*=\s*([\"'])"
        + _NOT_MASKED
        + r"[^\"']+\4",
        r"\1['\3'] = '[REDACTED]'",
        re.IGNORECASE,
    ),
    _rule(
        "storage_set_item",
        r"(localStorage|sessionStorage)\.setItem\(\s*([\"'])([^\"']*(?:token|key|secret|password|auth)[^\"']*)\2\s*,\s*([\"'])"
        + _NOT_MASKED
        + r"[^\"']*\4\s*\)",
        r"\1.setItem('\3', '[REDACTED]')",
        re.IGNORECASE,
    ),
    _rule(
        "document_cookie",
        r"document\.cookie\s*=\s*([\"'`])" + _NOT_MASKED + r"[^\"'`]+\1",
        "document.cookie = '[REDACTED]'",
        re.IGNORECASE,
    ),
    _rule("php_session_id", r"PHPSESSID=[A-Za-z0-9]+", "PHPSESSID=" + REDACTED, re.IGNORECASE),
    _rule("java_session_id", r"JSESSIONID=[A-Za-z0-9]+", "JSESSIONID=" + REDACTED, re.IGNORECASE),
    # Basic-auth credentials embedded in connection strings
    _rule(
        "database_url_credentials",
        r"\b(mongodb(?:\+srv)?|postgres(?:ql)?|mysql|mariadb|redis|rediss|amqp)://(?!\[USER\])[^:/@\s]+:[^@\s]+@",
        r"\1://[USER]:[REDACTED]@",
        re.IGNORECASE,
    ),
    _rule(
        "url_credentials",
        r"://(?!\[USER\])[^:/@\s]+:[^@\s/]+@",
        "://[USER]:[REDACTED]@",
    ),
    # key=value / key: value assignments with secret-looking names
    _rule(
        "export_assignment",
        r"\bexport\s+([A-Z_]*(?:KEY|TOKEN|SECRET|PASSWORD|PASSWD)[A-Z_]*)\s*=\s*[\"']?" + _NOT_MASKED + r"[^\s\"']{8,}[\"']?",
        r"export \1=[REDACTED]",
        re.IGNORECASE,
    ),
    _rule(
        "aws_secret_access_key",
        r"\baws_secret_access_key\s*[=:]\s*" + _NOT_MASKED + r"[^\s]+",
        "aws_secret_access_key=" + REDACTED,
        re.IGNORECASE,
    ),
    # Card masks are in place before assignment values are measured.
    _rule(
        "card_number",
        r"\b\d{4}[ -]?\d{4}[ -]?\d{4}[ -]?\d{4}\b",
        "XXXX-XXXX-XXXX-" + REDACTED,
    ),
    _rule(
        "credential_assignment",
        r"\b([A-Za-z0-9_-]*(?:api[_-]?key|token|secret|password|passwd|pwd)[A-Za-z0-9_-]*)\s*[=:]\s*[\"']?"
        + _NOT_MASKED
        + r"([A-Za-z0-9_\-./+=]{16,})[\"']?",
        r"\1=[REDACTED]",
        re.IGNORECASE,
    ),
    # Provider token formats, each with its own prefix and minimum length
    _rule("aws_access_key_id", r"\bAKIA[0-9A-Z]{16}\b", "AKIA" + REDACTED),
    _rule("github_token", r"\bgh[pousr]_[A-Za-z0-9]{36,}", "ghp_" + REDACTED),
    _rule("github_fine_grained_token", r"\bgithub_pat_[A-Za-z0-9_]{40,}", "github_pat_" + REDACTED),
    _rule("stripe_secret_key", r"\bsk_live_[A-Za-z0-9]{24,}", "sk_live_" + REDACTED),
    _rule("stripe_publishable_key", r"\bpk_live_[A-Za-z0-9]{24,}", "pk_live_" + REDACTED),
    _rule("anthropic_api_key", r"\bsk-ant-[A-Za-z0-9_-]{80,}", "sk-ant-" + REDACTED),
    _rule("openai_api_key", r"\bsk-(?:proj-)?[A-Za-z0-9_-]{40,}", "sk-" + REDACTED),
    _rule("slack_token", r"\bxox[baprs]-[A-Za-z0-9-]{10,}", "xox-" + REDACTED),
    # Authorization-shaped strings outside of header lines
    _rule(
        "bearer_token",
        r"\bBearer\s+" + _NOT_MASKED + r"[A-Za-z0-9_\-.=~+/]+",
        "Bearer " + REDACTED,
        re.IGNORECASE,
    ),
    _rule(
        "jwt",
        r"\beyJ[A-Za-z0-9_-]{10,}\.[A-Za-z0-9_-]{10,}\.[A-Za-z0-9_-]{10,}",
        "eyJ[REDACTED_JWT]",
    ),
)


def redact(text: str) -> str:
    """
    Mask secrets in text.

    Args:
        text: Raw text from a producer

    Returns:
        Text with every rule applied in order
    """
    if not text:
        return text
    for rule in RULES:
        text = rule.apply(text)
    return text


def contains_secrets(text: str) -> bool:
    """Report whether any rule matches, without modifying anything."""
    if not text:
        return False
    return any(rule.pattern.search(text) is not None for rule in RULES)


def find_secret_rules(text: str) -> list[str]:
    """Names of the rules that match text, in rule order."""
    if not text:
        return []
    return [rule.name for rule in RULES if rule.pattern.search(text) is not None]


__all__ = [
    "RULES",
    "RULES_VERSION",
    "REDACTED",
    "RedactionRule",
    "contains_secrets",
    "find_secret_rules",
    "redact",
]
