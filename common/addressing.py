"""Peer address validation."""

import ipaddress
import re

from common.exceptions import AddressValidationError

_HOSTNAME_LABEL = re.compile(r"^(?!-)[A-Za-z0-9-]{1,63}(?<!-)$")


def validate_peer_address(address: str) -> str:
    """
    Check that an address is an IP literal or a well-formed hostname.

    Args:
        address: Remote address as resolved from the link transport

    Returns:
        The address, stripped of surrounding whitespace

    Raises:
        AddressValidationError: If the address is empty or malformed
    """
    if not isinstance(address, str) or not address.strip():
        raise AddressValidationError("Peer address is empty")
    candidate = address.strip()

    try:
        ipaddress.ip_address(candidate)
        return candidate
    except ValueError:
        pass

    # Dotted quads that failed IP parsing are malformed, not hostnames.
    if re.fullmatch(r"[\d.]+", candidate):
        raise AddressValidationError(f"Invalid IP address format: {candidate!r}")

    if len(candidate) > 253:
        raise AddressValidationError(f"Hostname too long: {candidate[:32]}...")
    labels = candidate.rstrip('.').split('.')
    if not all(_HOSTNAME_LABEL.match(label) for label in labels):
        raise AddressValidationError(f"Invalid peer address: {candidate!r}")
    return candidate
