from __future__ import annotations

import hashlib
import ipaddress
from dataclasses import asdict, dataclass
from typing import Mapping, Optional

from user_agents import parse as parse_ua

UNKNOWN = "Unknown"
LOCAL_NETWORK = "Local Network"


@dataclass(frozen=True)
class DeviceInfo:
    browser: str
    os: str
    device_type: str
    device_name: str
    fingerprint: str
    location: Optional[str] = None
    client_supplied: bool = False

    @property
    def trust_key(self) -> Optional[str]:
        """Fingerprint usable for device trust; derived fingerprints never qualify."""
        return self.fingerprint if self.client_supplied else None

    def as_session_fields(self) -> dict:
        return asdict(self)


def _family_with_major(family: Optional[str], version: tuple) -> str:
    name = family or UNKNOWN
    if name == "Other":
        name = UNKNOWN
    if version and name != UNKNOWN:
        return f"{name} {version[0]}"
    return name


def _device_type(ua) -> str:
    if ua.is_tablet:
        return "tablet"
    if ua.is_mobile:
        return "mobile"
    return "desktop"


def device_fingerprint(browser: str, os: str, device_type: str) -> str:
    """Stable hash of the parsed user-agent fields."""
    raw = f"{browser or 'unknown'}|{os or 'unknown'}|{device_type or 'unknown'}"
    return hashlib.sha256(raw.encode()).hexdigest()[:32]


def device_name(browser: str, os: str) -> str:
    if not browser or not os or (browser == UNKNOWN and os == UNKNOWN):
        return "Unknown Device"
    return f"{browser.split(' ')[0]} on {os.split(' ')[0]}"


def normalize_ip(ip_address: Optional[str]) -> Optional[str]:
    if not ip_address:
        return None
    candidate = ip_address.strip()
    # Proxies and dual-stack sockets report IPv4 peers as ::ffff:a.b.c.d
    if candidate.lower().startswith("::ffff:"):
        candidate = candidate[7:]
    return candidate or None


def _parse_ip(ip_address: Optional[str]):
    try:
        return ipaddress.ip_address(ip_address) if ip_address else None
    except ValueError:
        return None


def location_for_ip(ip_address: Optional[str]) -> Optional[str]:
    parsed = _parse_ip(normalize_ip(ip_address))
    if parsed is None:
        return None
    if parsed.is_private or parsed.is_loopback or parsed.is_link_local:
        return LOCAL_NETWORK
    return None


def ip_prefix(ip_address: Optional[str]) -> Optional[str]:
    """Network prefix used for location novelty: /16 for IPv4, /48 for IPv6."""
    parsed = _parse_ip(normalize_ip(ip_address))
    if parsed is None:
        return None
    prefix = 16 if parsed.version == 4 else 48
    return str(ipaddress.ip_network(f"{parsed}/{prefix}", strict=False))


def client_ip(headers: Mapping[str, str], peer: Optional[str]) -> Optional[str]:
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        return normalize_ip(forwarded.split(",")[0])
    real_ip = headers.get("x-real-ip")
    if real_ip:
        return normalize_ip(real_ip)
    return normalize_ip(peer)


def describe_device(
    user_agent: Optional[str],
    *,
    ip_address: Optional[str] = None,
    fingerprint: Optional[str] = None,
) -> DeviceInfo:
    """Parse a user agent into display metadata.

    A client-supplied ``fingerprint`` wins over the one derived from the
    parsed fields and is the only kind that can back device trust.
    """
    if user_agent:
        ua = parse_ua(user_agent)
        browser = _family_with_major(ua.browser.family, ua.browser.version)
        os_name = _family_with_major(ua.os.family, ua.os.version)
        kind = _device_type(ua)
    else:
        browser, os_name, kind = UNKNOWN, UNKNOWN, "unknown"
    return DeviceInfo(
        browser=browser,
        os=os_name,
        device_type=kind,
        device_name=device_name(browser, os_name),
        fingerprint=fingerprint or device_fingerprint(browser, os_name, kind),
        location=location_for_ip(ip_address),
        client_supplied=bool(fingerprint),
    )
