"""IOC types and classification for cyberlens.

Classification is an ordered cascade of independent tests; the first match
wins. Hash detection runs last so anything matched by an earlier rule never
reaches it.
"""
from __future__ import annotations

import ipaddress
import re
import urllib.parse
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Literal, Optional, Tuple

__all__ = [
    "IocType",
    "DetectedIoc",
    "ValidationOutcome",
    "detect_ioc_type",
    "validate_ioc_type",
]


class IocType(str, Enum):
    IP = "ip"
    DOMAIN = "domain"
    URL = "url"
    HASH = "hash"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class DetectedIoc:
    type: Optional[IocType]
    ip_version: Optional[Literal[4, 6]] = None


@dataclass(frozen=True)
class ValidationOutcome:
    is_valid: bool
    detected: DetectedIoc


_RE_IPV4 = re.compile(
    r"^(25[0-5]|2[0-4]\d|1\d\d|[1-9]?\d)(\.(25[0-5]|2[0-4]\d|1\d\d|[1-9]?\d)){3}$",
    re.ASCII,
)
_RE_DOMAIN = re.compile(r"^([A-Za-z0-9-]+\.)+[A-Za-z]{2,}$")
_RE_HASH = re.compile(r"^(?:[A-Fa-f0-9]{32}|[A-Fa-f0-9]{40}|[A-Fa-f0-9]{64})$")
_RE_WHITESPACE = re.compile(r"\s")
# Characters a URL host may never contain
_FORBIDDEN_HOST_CHARS = frozenset("#/<>?@[\\]^|") | frozenset(map(chr, range(0x20))) | {"\x7f"}


def _valid_ipv4(v: str) -> bool:
    return bool(_RE_IPV4.fullmatch(v))


def _valid_ipv6(v: str) -> bool:
    # Zone ids and bracketed forms are not bare literals
    if ":" not in v or "%" in v or v.startswith("["):
        return False
    try:
        ipaddress.IPv6Address(v)
    except ValueError:
        return False
    return True


def _valid_url(v: str) -> bool:
    if _RE_WHITESPACE.search(v):
        return False
    try:
        p = urllib.parse.urlsplit(v)
        host = p.hostname
        p.port  # raises on a non-numeric or out-of-range port
    except ValueError:
        return False
    if p.scheme.lower() not in ("http", "https"):
        return False
    if not p.netloc or not host:
        return False
    return not _FORBIDDEN_HOST_CHARS.intersection(host)


def _valid_domain(v: str) -> bool:
    return bool(_RE_DOMAIN.fullmatch(v))


def _valid_hash(v: str) -> bool:
    return bool(_RE_HASH.fullmatch(v))


# Priority order matters: first match wins.
_CASCADE: Tuple[Tuple[Callable[[str], bool], DetectedIoc], ...] = (
    (_valid_ipv4, DetectedIoc(IocType.IP, 4)),
    (_valid_ipv6, DetectedIoc(IocType.IP, 6)),
    (_valid_url, DetectedIoc(IocType.URL)),
    (_valid_domain, DetectedIoc(IocType.DOMAIN)),
    (_valid_hash, DetectedIoc(IocType.HASH)),
)

_UNKNOWN = DetectedIoc(None)


def detect_ioc_type(value: str) -> DetectedIoc:
    """Classify *value* as ip, domain, url or hash.

    The input is trimmed first. Returns ``DetectedIoc(type=None)`` when no
    rule matches; that is a normal result, not an error.
    """
    v = value.strip()
    for test, detected in _CASCADE:
        if test(v):
            return detected
    return _UNKNOWN


def validate_ioc_type(value: str, selected_type: IocType | str) -> ValidationOutcome:
    """Report whether *selected_type* agrees with the detected type of *value*.

    Never corrects or infers a type; it only compares.
    """
    detected = detect_ioc_type(value)
    return ValidationOutcome(
        is_valid=detected.type is not None and detected.type == selected_type,
        detected=detected,
    )
