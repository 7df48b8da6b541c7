"""
Defensive re-validation of the (url, tag) pair handed to the pipeline.

Callers are expected to have screened input already; a failure here is
reported as a normal failure result, never raised.
"""

import ipaddress
import re
import socket
from dataclasses import dataclass
from typing import Optional, Union
from urllib.parse import urlsplit, urlunsplit

from core.config import Settings

TAG_PATTERN = re.compile(r"^[a-z][a-z0-9]*$")
ALLOWED_SCHEMES = ("http", "https")
# inet_aton accepts shorthand, decimal, octal and hex IPv4 forms
NUMERIC_HOST = re.compile(r"^[0-9a-fx.]+$", re.IGNORECASE)


@dataclass(frozen=True)
class Target:
    """A normalized request target."""

    url: str
    host: str
    path: str
    tag: str


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    error: Optional[str] = None
    target: Optional[Target] = None


def parse_ip_host(host: str) -> Optional[Union[ipaddress.IPv4Address, ipaddress.IPv6Address]]:
    """
    Interpret a URL host as an IP literal the way the system resolver would,
    or return None for a name.
    """
    host = host.strip("[]")
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        if not NUMERIC_HOST.match(host):
            return None
        try:
            ip = ipaddress.ip_address(socket.inet_ntoa(socket.inet_aton(host)))
        except OSError:
            return None
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


def _is_disallowed_ip(host: str) -> bool:
    ip = parse_ip_host(host)
    if ip is None:
        return False
    return (
        ip.is_loopback
        or ip.is_private
        or ip.is_link_local
        or ip.is_reserved
        or ip.is_multicast
        or ip.is_unspecified
    )


def validate_tag(tag: str, max_length: int = 20) -> ValidationResult:
    if not tag or not tag.strip():
        return ValidationResult(False, "An element name is required")
    tag = tag.strip().lower()
    if not TAG_PATTERN.match(tag):
        return ValidationResult(
            False,
            "Invalid HTML element name. Use only letters and numbers, starting with a letter.",
        )
    if len(tag) > max_length:
        return ValidationResult(False, f"Element name is too long (max {max_length} characters)")
    return ValidationResult(True, target=Target(url="", host="", path="", tag=tag))


def validate_target(url: str, tag: str, settings: Settings) -> ValidationResult:
    """Validate and normalize a target URL and tag name."""
    if not url or not url.strip():
        return ValidationResult(False, "A URL is required")
    url = url.strip()

    lowered = url.lower()
    if lowered.startswith("data:") or lowered.startswith("javascript:"):
        return ValidationResult(False, "Only HTTP and HTTPS URLs are supported")

    try:
        parts = urlsplit(url)
        host = (parts.hostname or "").lower().rstrip(".")
    except ValueError:
        return ValidationResult(False, "Invalid URL format")

    scheme = parts.scheme.lower()
    if scheme not in ALLOWED_SCHEMES:
        return ValidationResult(False, "Only HTTP and HTTPS URLs are supported")
    if not host:
        return ValidationResult(False, "Invalid hostname in URL")

    blocked = {h.lower() for h in settings.BLOCKED_HOSTS}
    if host in blocked or host.endswith(".localhost") or _is_disallowed_ip(host):
        return ValidationResult(
            False, f"Host '{host}' is not allowed. Local and private addresses are off-limits."
        )

    path = parts.path or "/"
    for ext in settings.BLOCKED_EXTENSIONS:
        if path.lower().endswith(ext.lower()):
            return ValidationResult(False, "That file type isn't allowed.")

    tag_result = validate_tag(tag, settings.TAG_MAX_LENGTH)
    if not tag_result.valid:
        return tag_result

    netloc = parts.netloc.lower()
    full_url = urlunsplit((scheme, netloc, path, parts.query, ""))
    stored_path = f"{path}?{parts.query}" if parts.query else path

    return ValidationResult(
        True,
        target=Target(url=full_url, host=host, path=stored_path, tag=tag_result.target.tag),
    )
