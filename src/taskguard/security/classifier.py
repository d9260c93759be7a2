"""
Request classification helpers.

Turns a raw IP address and user-agent string into location and device tags,
and recognizes IP prefixes that the reputation engine treats as suspicious.
No external geolocation service is consulted.
"""

from datetime import datetime
from typing import List, NamedTuple, Tuple

from taskguard.core.logging import get_logger
from taskguard.core.timeutils import ensure_utc

logger = get_logger(__name__)

UNKNOWN = "Unknown"
LOCAL = "Local"

LOCAL_PREFIXES = ("192.168.", "10.", "172.16.", "127.")
LOCAL_HOSTS = ("::1", "localhost")

SUSPICIOUS_PREFIXES = {
    "192.168.": "Private network address range",
    "10.": "Private network address range",
    "172.16.": "Private network address range",
    "127.": "Loopback address",
    "0.0.0.0": "Unspecified address",
    "255.255.255.255": "Broadcast address",
}

WORK_DAY_START_HOUR = 8
WORK_DAY_END_HOUR = 18


class DeviceInfo(NamedTuple):
    device_type: str
    browser: str
    operating_system: str


def classify_location(ip_address: str) -> Tuple[str, str]:
    """
    Map an IP address to a (country, city) pair.

    Private and loopback addresses map to ("Local", "Local"); everything else,
    including unparseable input, maps to ("Unknown", "Unknown").
    """
    try:
        if ip_address.startswith(LOCAL_PREFIXES) or ip_address in LOCAL_HOSTS:
            return LOCAL, LOCAL
        return UNKNOWN, UNKNOWN
    except Exception as e:
        logger.error(f"Error getting location for IP {ip_address}: {e}")
        return UNKNOWN, UNKNOWN


def parse_user_agent(user_agent: str) -> DeviceInfo:
    """Substring-based device, browser and OS detection"""
    user_agent = user_agent or ""

    device_type = "Desktop"
    if "Mobile" in user_agent or "Android" in user_agent or "iPhone" in user_agent:
        device_type = "Mobile"
    elif "Tablet" in user_agent or "iPad" in user_agent:
        device_type = "Tablet"

    browser = UNKNOWN
    for name in ("Chrome", "Firefox", "Safari", "Edge"):
        if name in user_agent:
            browser = name
            break

    operating_system = UNKNOWN
    for marker, name in (("Windows", "Windows"), ("Mac", "macOS"), ("Linux", "Linux"),
                         ("Android", "Android"), ("iOS", "iOS")):
        if marker in user_agent:
            operating_system = name
            break

    return DeviceInfo(device_type, browser, operating_system)


def is_off_hours(timestamp: datetime) -> bool:
    """Before 08:00, after 18:59 or on a weekend (UTC)"""
    timestamp = ensure_utc(timestamp)
    return (
        timestamp.hour < WORK_DAY_START_HOUR
        or timestamp.hour > WORK_DAY_END_HOUR
        or timestamp.weekday() >= 5
    )


def suspicious_ip_reasons(ip_address: str) -> List[str]:
    reasons = []

    for prefix, reason in SUSPICIOUS_PREFIXES.items():
        if ip_address.startswith(prefix):
            reasons.append(f"{reason} ({prefix})")

    if ".." in ip_address or len(ip_address) > 15:
        reasons.append("Malformed IP address")

    return reasons
