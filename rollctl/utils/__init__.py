"""Utility functions and helpers for the rollctl application."""
import ipaddress
from typing import Tuple


def address_key(address: str) -> Tuple[int, int, object]:
    """Sort key ordering IP addresses numerically and anything else by string.

    IPv4 sorts before IPv6, and both sort before hostnames.
    """
    try:
        ip = ipaddress.ip_address(address.strip())
    except ValueError:
        return (1, 0, address)
    return (0, ip.version, int(ip))


def is_version(token: str) -> bool:
    """Return True when ``token`` looks like an OS version (``1.10.0``)."""
    return bool(token) and token[0].isdigit() and token.count('.') <= 2


def strip_v(version: str) -> str:
    """Drop a leading ``v`` from a release tag."""
    return version[1:] if version.startswith('v') else version
