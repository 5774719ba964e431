"""
Common utility functions.

Provides flag parsing (tags, durations), vault URL formation and the
merge of command-line overrides onto the configured certificate template.
"""

import copy
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .config_loader import CertificateTemplate


VAULT_DOMAIN = "vault.azure.net"


class FlagParseError(Exception):
    """Raised when a command-line value cannot be parsed."""
    pass


@dataclass
class FlagOverrides:
    """
    Per-invocation overrides for the configured certificate template.

    Empty strings, empty lists, empty maps and 0 mean "inherit from the
    config". enabled is tri-state: None inherits.
    """
    subject: str = ""
    sans: List[str] = field(default_factory=list)
    tags: Dict[str, str] = field(default_factory=dict)
    validity_in_months: int = 0
    enabled: Optional[bool] = None
    issuer_name: str = ""


def apply_flag_overrides(
    template: CertificateTemplate,
    overrides: FlagOverrides,
) -> CertificateTemplate:
    """
    Overlay command-line overrides onto a certificate template.

    Precedence (highest to lowest):
    1. Override value, when set
    2. Config value
    3. Zero value

    SANs and tags given on the command line replace the configured
    list/map wholesale; they are not merged.

    Args:
        template: Template loaded from the config (left untouched)
        overrides: Values taken from command-line flags

    Returns:
        A new, merged CertificateTemplate
    """
    merged = copy.deepcopy(template)
    policy = merged.certificate_policy
    x509 = policy.x509_certificate_properties

    if overrides.subject:
        x509.subject = overrides.subject
    if overrides.sans:
        x509.subject_alternative_names = list(overrides.sans)
    if overrides.tags:
        merged.tags = dict(overrides.tags)
    if overrides.validity_in_months:
        x509.validity_in_months = overrides.validity_in_months
    if overrides.enabled is not None:
        merged.certificate_attributes.enabled = overrides.enabled
    if overrides.issuer_name:
        policy.issuer_parameters.name = overrides.issuer_name

    return merged


def parse_tags(tokens: List[str]) -> Dict[str, str]:
    """
    Parse repeated ``key=value`` flag values into a mapping.

    Later duplicates overwrite earlier ones.

    Args:
        tokens: Raw flag values

    Returns:
        Dict of tag names to values

    Raises:
        FlagParseError: If a token does not contain exactly one ``=``
    """
    tags = {}
    for token in tokens:
        parts = token.split("=")
        if not token or len(parts) != 2:
            raise FlagParseError(f"tags should be formatted key=value: {token}")
        tags[parts[0]] = parts[1]
    return tags


_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}

_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")


def parse_duration(text: str) -> float:
    """
    Parse a human duration such as ``30s``, ``1m30s`` or ``1.5h``.

    Args:
        text: Duration string (``0`` is accepted without a unit)

    Returns:
        Duration in seconds

    Raises:
        FlagParseError: If the string is not a valid duration
    """
    value = text.strip()
    if value in ("0", "+0", "-0"):
        return 0.0

    negative = value.startswith("-")
    if value[:1] in ("-", "+"):
        value = value[1:]

    if not value:
        raise FlagParseError(f"invalid duration: {text!r}")

    total = 0.0
    pos = 0
    while pos < len(value):
        match = _DURATION_PART.match(value, pos)
        if not match:
            raise FlagParseError(
                f"invalid duration: {text!r} (examples: 30s, 1m, 1m30s, 500ms)"
            )
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()

    if negative:
        raise FlagParseError(f"duration must not be negative: {text!r}")

    return total


def vault_url_for(vault_name: str) -> str:
    """
    Build the Key Vault URL for a vault name.

    Examples:
        >>> vault_url_for("kv1")
        'https://kv1.vault.azure.net'
    """
    return f"https://{vault_name}.{VAULT_DOMAIN}"


def vault_host_for(vault_name: str) -> str:
    """Return the DNS name of a vault."""
    return f"{vault_name}.{VAULT_DOMAIN}"
