import hashlib
import logging

from fastapi import Request

from backend.config import TRUST_PROXY_HEADERS

logger = logging.getLogger(__name__)

_IPV4_MAPPED_PREFIX = "::ffff:"


def _normalize_ipv4(ip: str | None) -> str | None:
    if not ip:
        return None
    candidate = ip.strip()
    if candidate.lower().startswith(_IPV4_MAPPED_PREFIX):
        candidate = candidate[len(_IPV4_MAPPED_PREFIX):]

    octets = candidate.split(".")
    if len(octets) != 4:
        return None
    for octet in octets:
        # str.isdigit() also accepts non-ASCII digits that int() rejects
        if not (octet.isascii() and octet.isdigit()) or len(octet) > 3 or int(octet) > 255:
            return None
    return ".".join(str(int(octet)) for octet in octets)


def subnet_from_ip(ip: str | None) -> str | None:
    """
    Coarse network identity for an IPv4 address: first three octets + ".0".

    Assumes a /24 and never consults a real netmask. Returns None for
    missing or malformed input.
    """
    address = _normalize_ipv4(ip)
    if address is None:
        logger.debug("subnet_from_ip: unusable address %r", ip)
        return None
    subnet = ".".join(address.split(".")[:3]) + ".0"
    logger.debug("subnet_from_ip: %s -> %s", address, subnet)
    return subnet


def device_fingerprint(user_agent: str | None) -> str:
    return hashlib.sha256((user_agent or "").encode("utf-8")).hexdigest()


def client_ip(request: Request) -> str | None:
    if TRUST_PROXY_HEADERS:
        forwarded = request.headers.get("x-forwarded-for", "")
        first = forwarded.split(",")[0].strip()
        if first:
            return first
        real_ip = request.headers.get("x-real-ip", "").strip()
        if real_ip:
            return real_ip
    if request.client is None:
        return None
    return request.client.host
