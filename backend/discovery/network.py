"""Address helpers for candidate generation and reverse resolution."""

import ipaddress
import logging
import socket

from config import (
    EXCLUDED_PREFIXES,
    PEER_NAME_RANGE,
    PEER_NAME_TEMPLATE,
    PREFERRED_PREFIX,
    SUBNET_SCAN_LIMIT,
)

logger = logging.getLogger(__name__)


def candidate_hostnames(template: str = PEER_NAME_TEMPLATE, numbers=PEER_NAME_RANGE) -> list[str]:
    """Expand the naming template, e.g. ``uninovis-tp-{:02d}`` -> uninovis-tp-01 ..."""
    return [template.format(n) for n in numbers]


def local_ipv4_addresses() -> list[str]:
    """Non-loopback IPv4 addresses bound to this host."""
    addresses: list[str] = []
    try:
        _, _, ips = socket.gethostbyname_ex(socket.gethostname())
        addresses.extend(ips)
    except OSError as e:
        logger.debug(f"Error resolving local IPs: {e}")

    # Route lookup finds the outbound interface even when the host name
    # only maps to loopback. No packet is sent.
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as probe:
            probe.connect(("10.255.255.255", 1))
            addresses.append(probe.getsockname()[0])
    except OSError:
        pass

    result = []
    for ip in addresses:
        if not is_loopback(ip) and ip not in result and ip != "0.0.0.0":
            result.append(ip)
    return result


def pick_local_address(addresses: list[str], excluded=EXCLUDED_PREFIXES) -> str | None:
    """Prefer the overlay network, then any non-emulator address, then anything."""
    for ip in addresses:
        if ip.startswith(PREFERRED_PREFIX):
            return ip
    for ip in addresses:
        if not ip.startswith(tuple(excluded)):
            return ip
    return addresses[0] if addresses else None


def subnet_candidates(
    local_ip: str | None,
    limit: int = SUBNET_SCAN_LIMIT,
    excluded=EXCLUDED_PREFIXES,
    skip: set[str] | frozenset = frozenset(),
) -> list[str]:
    """First *limit* addresses of the local /24, minus ourselves and *skip*."""
    if not local_ip or local_ip.startswith(tuple(excluded)):
        return []
    prefix = local_ip.rsplit(".", 1)[0]
    candidates = []
    for i in range(1, limit + 1):
        ip = f"{prefix}.{i}"
        if ip != local_ip and ip not in skip:
            candidates.append(ip)
    return candidates


def is_loopback(host: str) -> bool:
    if host.lower() == "localhost":
        return True
    try:
        return ipaddress.ip_address(host).is_loopback
    except ValueError:
        return False


def resolve_peer_hostname(address: str) -> str:
    """
    Reverse-resolve a caller address to a short host name.

    Falls back to the raw address when resolution fails, echoes the
    address back, or lands on localhost.
    """
    try:
        name, _, _ = socket.gethostbyaddr(address)
    except (OSError, UnicodeError) as e:
        logger.debug(f"Reverse DNS failed for {address}: {e}")
        return address

    if not name or name == address or _is_ip_literal(name):
        return address

    short_name = name.split(".")[0] or name
    if is_loopback(short_name):
        return address
    logger.debug(f"Resolved {address} to {name}, using short name: {short_name}")
    return short_name


def _is_ip_literal(host: str) -> bool:
    try:
        ipaddress.ip_address(host)
    except ValueError:
        return False
    return True
