"""Redaction of sensitive substrings from human-readable fault text.

Fault messages frequently carry credentials, client addresses and server
paths. Anything that leaves a fault isolation boundary (fallback views,
exported reports, log records) goes through :func:`redact` first.

Redaction only touches text. It never changes a fault's classification;
classify first, redact second.

Example:
    >>> redact("GET /api?token=abc123def failed from 10.0.0.12")
    'GET /api?token=[REDACTED] failed from [IP]'
"""

from __future__ import annotations

import re

REDACTED = "[REDACTED]"
IP_PLACEHOLDER = "[IP]"
PATH_PLACEHOLDER = "[PATH]"

_CREDENTIAL_KEYS = (
    r"access[_-]?token|refresh[_-]?token|id[_-]?token|token|secret|client[_-]?secret"
    r"|api[_-]?key|apikey|x-api-key|password|passwd|pwd|session[_-]?id|sessionid|sid"
    r"|auth|authorization|credential|credentials|private[_-]?key"
)

# key=value, key: value, "key": "value"
_KEY_VALUE = re.compile(
    r"""(?P<key>["']?\b(?:%s)\b["']?\s*[:=]\s*["']?)(?P<value>[^\s"'&,;}]+)""" % _CREDENTIAL_KEYS,
    re.IGNORECASE,
)
_BEARER = re.compile(r"\b(Bearer|Basic)\s+[A-Za-z0-9\-._~+/]+=*", re.IGNORECASE)
_JWT = re.compile(r"\beyJ[A-Za-z0-9_-]{5,}\.[A-Za-z0-9_-]{5,}\.[A-Za-z0-9_-]{5,}\b")
_PREFIXED_KEY = re.compile(r"\b(?:sk|pk|rk|ghp|gho|xox[abp])[-_][A-Za-z0-9_-]{8,}\b")
_IPV4 = re.compile(r"\b(?:(?:25[0-5]|2[0-4]\d|1?\d?\d)\.){3}(?:25[0-5]|2[0-4]\d|1?\d?\d)\b")
_IPV6 = re.compile(r"(?<![\w:])(?:[0-9A-Fa-f]{1,4}:){3,7}[0-9A-Fa-f]{1,4}(?![\w:])")
_WINDOWS_PATH = re.compile(r"\b[A-Za-z]:\\(?:[^\\\s\"'<>|:*?]+\\)*[^\\\s\"'<>|:*?]*")
_POSIX_PATH = re.compile(
    r"(?<![\w:/.])/(?:home|Users|root|var|etc|opt|usr|srv|tmp|private|mnt|app|data|proc|lib|Library|workspace|code)"
    r"(?:/[^\s\"'<>:]+)+"
)


def redact(text: str | None) -> str:
    """Return ``text`` with credentials, IP addresses and absolute paths masked."""
    if not text:
        return ""
    text = _JWT.sub(REDACTED, text)
    text = _BEARER.sub(lambda m: f"{m.group(1)} {REDACTED}", text)
    text = _KEY_VALUE.sub(lambda m: f"{m.group('key')}{REDACTED}", text)
    text = _PREFIXED_KEY.sub(REDACTED, text)
    text = _IPV4.sub(IP_PLACEHOLDER, text)
    text = _IPV6.sub(IP_PLACEHOLDER, text)
    text = _WINDOWS_PATH.sub(PATH_PLACEHOLDER, text)
    text = _POSIX_PATH.sub(PATH_PLACEHOLDER, text)
    return text


def redact_mapping(data: dict[str, object]) -> dict[str, object]:
    """Redact string values (and credential-named keys) in a flat mapping."""
    cleaned: dict[str, object] = {}
    key_pattern = re.compile(r"^(?:%s)$" % _CREDENTIAL_KEYS, re.IGNORECASE)
    for key, value in data.items():
        if key_pattern.match(str(key)):
            cleaned[key] = REDACTED
        elif isinstance(value, str):
            cleaned[key] = redact(value)
        else:
            cleaned[key] = value
    return cleaned
